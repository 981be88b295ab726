from . import __version__ as CLI_VERSION
import functools
import importlib.resources
import json
import logging
import os
import sys
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.text import Text as RichText
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from difmigrate import __version__ as LIB_VERSION
from difmigrate.core.runner import MigrationRunner
from difmigrate.core.source import MIGRATION_FILE_PATTERN, RegistrySource
from difmigrate.utils.config import get_config
from difmigrate.utils.exceptions import DifMigrateError
from difmigrate.utils.logging import setup_logging

from .deploy import run_deploy
from .report import print_result, print_status

"""
difmigrate CLI - Ferramenta de linha de comando para as migrações de schema do Doing is Fun.
"""

# --- Decorators ---
def run_safe_cli(func):
    """Decorator para tratamento seguro de erros em comandos CLI."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise  # Sempre re-raise para Typer
        except DifMigrateError as e:
            console.print(f"[bold red]❌ {escape(str(e))}[/bold red]")
            raise typer.Exit(1)
        except Exception as e:
            console.print(f"[bold red]Erro inesperado:[/bold red] {escape(str(e))}")
            raise typer.Exit(1)
    return wrapper

# --- Configuração ---
app = typer.Typer(
    help="[bold blue]difmigrate CLI[/bold blue] - Migrações de schema do Doing is Fun.",
    add_completion=False,
    rich_markup_mode="rich",
)
migrate_app = typer.Typer(
    help="[bold green]Comandos para gerenciar migrações de schema.[/bold green]",
    rich_markup_mode="rich",
)
app.add_typer(migrate_app, name="migrate")
console = Console()

MIGRATIONS_DIR = "migrations"


def build_runner(config: dict, with_source: bool = True) -> MigrationRunner:
    """Cria o runner a partir da configuração. Sem fonte, serve apenas para testar a conexão."""
    if with_source:
        return MigrationRunner.from_config(config)
    return MigrationRunner.from_config(config, source=RegistrySource([], origin="<check>"))


def ensure_migrations_dir(path: str):
    """Garante que o diretório de migrações exista."""
    if not os.path.exists(path):
        os.makedirs(path)
        console.print(f"[yellow]Diretório '{escape(path)}' criado.[/yellow]")


# --- Migrations ---

@migrate_app.command("run", help="Aplica as migrações pendentes.")
@run_safe_cli
def migrate_run(
    ctx: typer.Context,
    timeout: Optional[float] = typer.Option(
        None, "--timeout", "-t", help="Prazo total da execução, em segundos."
    ),
    lock_timeout: Optional[float] = typer.Option(
        None,
        "--lock-timeout",
        help="Tempo máximo de espera pelo lock de deploy (sobrescreve DIFMIGRATE_LOCK_TIMEOUT).",
    ),
):
    """Aplica as migrações pendentes, em ordem, sob o lock de deploy."""
    config = dict(ctx.obj["config"])
    if lock_timeout is not None:
        config["lock_timeout"] = lock_timeout

    console.print("[bold blue]🚀 Executando migrações do banco de dados...[/bold blue]")
    runner = build_runner(config)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("Conectando ao banco de dados...", total=None)
            runner.initialize()
            progress.update(task, description="Conectado! Aplicando migrações pendentes...")
            result = runner.run_migrations(timeout=timeout)
    finally:
        runner.close()

    print_result(console, result)


@migrate_app.command(
    "status", help="Mostra o status das migrações (aplicadas vs. pendentes)."
)
@run_safe_cli
def migrate_status(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Saída em JSON."),
):
    """Mostra o status das migrações. Somente leitura: não aplica nada."""
    config = ctx.obj["config"]
    runner = build_runner(config)
    try:
        runner.initialize()
        status = runner.check_status()
    finally:
        runner.close()

    if as_json:
        typer.echo(json.dumps(status.to_dict(), indent=2))
        return
    print_status(console, status)


@migrate_app.command("check", help="Testa a conexão com o banco de dados.")
@run_safe_cli
def migrate_check(ctx: typer.Context):
    """Inicializa o runner (conexão + tabela de migrações) e nada mais."""
    config = ctx.obj["config"]
    console.print("[bold blue]🔍 Verificando conexão com o banco de dados...[/bold blue]")
    runner = build_runner(config, with_source=False)
    try:
        runner.initialize()
    finally:
        runner.close()
    console.print("[bold green]✅ Conexão com o banco de dados estabelecida[/bold green]")


@migrate_app.command("new", help="Cria um novo arquivo de migração.")
@run_safe_cli
def migrate_new(
    ctx: typer.Context,
    name: str = typer.Argument(
        ..., help="Nome descritivo da migração (ex: 'add_badges')."
    ),
):
    """Cria um novo arquivo de migração numerado a partir de um template."""
    directory = ctx.obj["config"].get("migrations_dir") or MIGRATIONS_DIR
    ensure_migrations_dir(directory)

    # Sanitizar o nome para ser um nome de arquivo válido (simples)
    sanitized_name = "_".join(name.strip().lower().replace("-", " ").split())

    versions = []
    for existing in os.listdir(directory):
        match = MIGRATION_FILE_PATTERN.match(existing)
        if match:
            versions.append(int(match.group("version")))
    next_version = max(versions, default=0) + 1
    file_name = f"{next_version:03d}_{sanitized_name}.sql"
    if not MIGRATION_FILE_PATTERN.match(file_name):
        console.print(f"[bold red]Nome de migração inválido:[/bold red] {escape(name)}")
        raise typer.Exit(1)
    file_path = os.path.join(directory, file_name)

    template_content = importlib.resources.files("difmigrate_cli.templates").joinpath(
        "migration_template.sql.j2"
    ).read_text(encoding="utf-8")
    formatted_template = template_content.format(
        name=sanitized_name, created_at=datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    )

    with open(file_path, "w", encoding="utf-8") as f:
        f.write(formatted_template)
    console.print(f"[bold green]Migração criada:[/bold green] {escape(file_path)}")


# --- Deploy ---

@app.command("deploy", help="Pré-verificação de deploy: valida, conecta, migra e confere o status.")
@run_safe_cli
def deploy(
    ctx: typer.Context,
    timeout: Optional[float] = typer.Option(
        None, "--timeout", "-t", help="Prazo total das migrações, em segundos."
    ),
):
    exit_code = run_deploy(ctx.obj["config"], console, timeout=timeout)
    if exit_code != 0:
        raise typer.Exit(exit_code)


@app.command(help="Mostra informações sobre a CLI.")
def info(ctx: typer.Context):
    """Mostra informações sobre a CLI e configuração."""
    config = ctx.obj["config"]
    database_url = config["database_url"]
    if database_url:
        # Nunca exibir a senha
        try:
            database_url = make_url(database_url).render_as_string(hide_password=True)
        except ArgumentError:
            database_url = "(inválido)"

    info_panel = Panel(
        RichText.assemble(
            ("difmigrate CLI", "bold blue"),
            "\n\n",
            ("Versão: ", "bold"),
            CLI_VERSION,
            "\n",
            ("Python: ", "bold"),
            f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            "\n\n",
            ("Configuração:", "bold"),
            "\n",
            ("Banco (DATABASE_URL): ", "bold"),
            database_url or "(não definido)",
            "\n",
            ("Tabela de migrações: ", "bold"),
            config["table"],
            "\n",
            ("Migrações (DIFMIGRATE_MIGRATIONS_DIR): ", "bold"),
            config["migrations_dir"] or "(embutidas no pacote)",
            "\n",
            ("Timeout do lock: ", "bold"),
            f"{config['lock_timeout']}s",
            "\n\n",
            ("Comandos disponíveis:", "bold"),
            "\n• migrate run - Aplicar migrações pendentes",
            "\n• migrate status - Mostrar status das migrações",
            "\n• migrate check - Testar conexão",
            "\n• migrate new - Criar arquivo de migração",
            "\n• deploy - Pré-verificação de deploy",
        ),
        title="[bold blue]difmigrate CLI[/bold blue]",
        border_style="blue",
    )
    console.print(info_panel)


@app.command("version", help="Mostra a versão do difmigrate CLI.")
def version_cmd():
    console.print(f"difmigrate CLI [bold]{CLI_VERSION}[/bold] (difmigrate {LIB_VERSION})")


@app.callback()
def main(
    ctx: typer.Context,
    database_url: Optional[str] = typer.Option(
        None,
        "--database-url",
        "-d",
        help="URL do banco de dados (sobrescreve DATABASE_URL e difmigrate.toml).",
    ),
    migrations_dir: Optional[str] = typer.Option(
        None,
        "--migrations-dir",
        "-m",
        help="Diretório das migrações .sql (sobrescreve DIFMIGRATE_MIGRATIONS_DIR e difmigrate.toml).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Mostra os logs do runner."),
):
    """difmigrate CLI - Migrações de schema do Doing is Fun."""
    setup_logging(logging.DEBUG if verbose else logging.WARNING)

    # Armazena as opções globais no contexto para que os subcomandos possam acessá-las
    ctx.ensure_object(dict)
    try:
        config = get_config()  # Carrega a configuração base (de toml e env)
    except DifMigrateError as e:
        console.print(f"[bold red]❌ {escape(str(e))}[/bold red]")
        raise typer.Exit(1)

    # Sobrescreve com os valores passados via CLI, se existirem
    if database_url:
        config["database_url"] = database_url
    if migrations_dir:
        config["migrations_dir"] = migrations_dir

    ctx.obj["config"] = config


if __name__ == "__main__":
    app()
