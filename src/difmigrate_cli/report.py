"""
Formatação do status das migrações e do resultado de uma execução.

Usado da mesma forma pelo comando ``migrate status`` e pelo ``deploy``.
"""

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from difmigrate.core.runner import MigrationResult
from difmigrate.core.status import MigrationState, MigrationStatus

STATE_LABELS = {
    MigrationState.APPLIED: ("✅", "[bold green]APLICADA[/bold green]"),
    MigrationState.PENDING: ("⏳", "[bold yellow]PENDENTE[/bold yellow]"),
    MigrationState.DRIFTED: ("⚠️", "[bold red]DRIFT[/bold red] [red](conteúdo alterado)[/red]"),
    MigrationState.MISSING: ("❓", "[bold green]APLICADA[/bold green] [red](arquivo ausente)[/red]"),
}


def status_table(status: MigrationStatus) -> Table:
    table = Table(title="Status das Migrações")
    table.add_column("", width=2)
    table.add_column("Migração", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Aplicada em", style="dim")

    for item in status.migrations:
        icon, label = STATE_LABELS[item.state]
        applied_at = item.applied_at.strftime("%Y-%m-%d %H:%M:%S") if item.applied_at else "-"
        table.add_row(icon, escape(item.id), label, applied_at)
    return table


def print_summary(console: Console, status: MigrationStatus) -> None:
    console.print("📈 [bold]Status das migrações:[/bold]")
    console.print(f"   Total: {status.total}")
    console.print(f"   Executadas: {status.executed}")
    console.print(f"   Pendentes: {status.pending}")
    if status.drifted:
        console.print(f"   [bold red]Com drift: {len(status.drifted)}[/bold red]")
    if status.missing:
        console.print(f"   [red]Sem arquivo: {len(status.missing)}[/red]")


def print_status(console: Console, status: MigrationStatus) -> None:
    print_summary(console, status)
    if status.migrations:
        console.print()
        console.print(status_table(status))


def print_result(console: Console, result: MigrationResult) -> None:
    if result.executed == 0:
        console.print(
            f"[bold green]✅ Banco de dados em dia: 0/{result.total} migrações executadas.[/bold green]"
        )
        return
    console.print(
        f"[bold green]✅ Migrações concluídas: {result.executed}/{result.total} executadas.[/bold green]"
    )
    for applied in result.applied:
        console.print(f"   • {escape(applied.id)} [dim]({applied.execution_time_ms}ms)[/dim]")
