"""
Pré-verificação de deploy.

Garante que o ambiente está válido, que o banco responde e que todas as
migrações foram aplicadas antes de declarar o deploy pronto. Cada etapa que
falha encerra o processo com uma mensagem clara.
"""

from typing import Any, Dict, Optional

from rich.console import Console
from rich.markup import escape

from difmigrate.core.runner import MigrationRunner
from difmigrate.utils.config import validate_environment
from difmigrate.utils.exceptions import DifMigrateError
from difmigrate.utils.logging import get_logger

from .report import print_status

logger = get_logger("deploy")


def _fail(console: Console, message: str, error: Exception) -> int:
    logger.error("Deploy falhou: %s", error)
    console.print(f"[bold red]❌ {message}:[/bold red] {escape(str(error))}")
    return 1


def run_deploy(config: Dict[str, Any], console: Console, timeout: Optional[float] = None) -> int:
    """Executa as etapas do deploy e devolve o exit code (0 = pronto)."""
    console.print("[bold blue]🚀 Iniciando processo de deploy...[/bold blue]\n")

    # 1. Validar ambiente
    console.print("1️⃣  Validando variáveis de ambiente...")
    try:
        for warning in validate_environment(config):
            console.print(f"[yellow]⚠️  {escape(warning)}[/yellow]")
    except DifMigrateError as e:
        return _fail(console, "Validação do ambiente falhou", e)
    console.print("[green]✅ Ambiente validado[/green]")

    # 2. Testar conexão
    console.print("\n2️⃣  Testando conexão com o banco de dados...")
    runner = None
    try:
        try:
            runner = MigrationRunner.from_config(config)
            runner.initialize()
        except DifMigrateError as e:
            return _fail(console, "Conexão com o banco de dados falhou", e)
        console.print("[green]✅ Conexão com o banco de dados estabelecida[/green]")

        # 3. Aplicar migrações
        console.print("\n3️⃣  Executando migrações do banco de dados...")
        try:
            result = runner.run_migrations(timeout=timeout)
        except DifMigrateError as e:
            return _fail(console, "Migração falhou", e)
        if result.executed > 0:
            console.print(f"[green]✅ Migrações concluídas: {result.executed} executada(s)[/green]")
        else:
            console.print("[green]✅ Banco de dados em dia[/green]")

        # 4. Verificar prontidão
        console.print("\n4️⃣  Verificando prontidão do deploy...")
        try:
            status = runner.check_status()
        except DifMigrateError as e:
            return _fail(console, "Verificação do deploy falhou", e)
        if status.pending > 0:
            console.print(f"[bold red]❌ {status.pending} migração(ões) ainda pendente(s)[/bold red]")
            print_status(console, status)
            return 1
        if status.drifted:
            ids = ", ".join(item.id for item in status.drifted)
            console.print(f"[bold red]❌ Migrações com drift: {escape(ids)}[/bold red]")
            return 1
        console.print("[green]✅ Todas as migrações aplicadas[/green]")
    finally:
        if runner is not None:
            runner.close()

    console.print("\n[bold green]🎉 Deploy pronto![/bold green]")
    print_status(console, status)
    return 0
