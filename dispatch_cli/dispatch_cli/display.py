"""Rich output formatting for the dispatch CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from credit_engine.ledger import Balance, CreditTransaction
    from dispatch_api.services.job_runner import MaintenanceSummary
    from dispatch_api.services.notification_scheduler import JobRunSummary


# ---------------------------------------------------------------------------
# Operation colour mapping
# ---------------------------------------------------------------------------

_OPERATION_COLOURS: dict[str, str] = {
    "deduct": "red",
    "purchase": "green",
    "reset": "cyan",
    "initialize": "blue",
}


def _coloured_operation(operation: str) -> str:
    """Return a Rich markup string with the operation colour-coded."""
    colour = _OPERATION_COLOURS.get(operation, "white")
    return f"[{colour}]{operation}[/{colour}]"


def _signed(amount: int) -> str:
    return f"+{amount}" if amount > 0 else str(amount)


# ---------------------------------------------------------------------------
# Balances
# ---------------------------------------------------------------------------


def display_balance(console: Console, balance: Balance) -> None:
    """Render a tenant's two credit pools.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    balance:
        Snapshot returned by the credit ledger.
    """
    reset = balance.reset_date.isoformat() if balance.reset_date else "(none)"
    lines = [
        f"[bold]Tenant:[/bold]     {balance.tenant_id}",
        f"[bold]Monthly:[/bold]    {balance.monthly}",
        f"[bold]Purchased:[/bold]  {balance.purchased}",
        f"[bold]Total:[/bold]      {balance.total}",
        f"[bold]Used:[/bold]       {balance.used_this_month} this month",
        f"[bold]Next reset:[/bold] {reset}",
    ]
    style = "red" if balance.total == 0 else "blue"
    console.print(Panel("\n".join(lines), title="Credit Balance", border_style=style))


def display_transactions(console: Console, tenant_id: str, transactions: list[CreditTransaction]) -> None:
    """Render the tenant's transaction history, newest first."""
    if not transactions:
        console.print(f"[yellow]No credit transactions for {tenant_id}.[/yellow]")
        return

    table = Table(title=f"Credit History: {tenant_id}", show_lines=False, pad_edge=True, expand=False)
    table.add_column("ID", style="dim", justify="right")
    table.add_column("When")
    table.add_column("Operation")
    table.add_column("Feature")
    table.add_column("Amount", justify="right")
    table.add_column("Balance After", justify="right")

    for txn in transactions:
        table.add_row(
            str(txn.id),
            txn.created_at.strftime("%Y-%m-%d %H:%M"),
            _coloured_operation(txn.operation),
            txn.feature,
            _signed(txn.amount),
            str(txn.balance_after),
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Job runs
# ---------------------------------------------------------------------------


def display_job_summary(console: Console, summary: JobRunSummary) -> None:
    """Render the counters of one job run."""
    table = Table(title=f"Job: {summary.job}", show_header=False, expand=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Candidates", str(summary.candidates))
    table.add_row("Sent", f"[green]{summary.sent}[/green]")
    table.add_row("Already sent", str(summary.already_sent))
    failed_style = "red" if summary.failed else "dim"
    table.add_row("Failed", f"[{failed_style}]{summary.failed}[/{failed_style}]")
    for reason, count in sorted(summary.skipped.items()):
        table.add_row(f"Skipped ({reason})", f"[yellow]{count}[/yellow]")

    console.print(table)
    if summary.aborted:
        console.print("[red]Run aborted: the state store became unreachable.[/red]")


def display_maintenance(console: Console, summary: MaintenanceSummary) -> None:
    """Render the outcome of a credit reset pass."""
    if summary.reset_tenants:
        console.print(f"[green]Reset monthly credits for {len(summary.reset_tenants)} tenant(s):[/green]")
        for tenant_id in summary.reset_tenants:
            console.print(f"  - {tenant_id}")
    elif not summary.failed_tenants:
        console.print("[dim]No tenants due for a monthly reset.[/dim]")
    if summary.failed_tenants:
        console.print(f"[red]Reset failed for {len(summary.failed_tenants)} tenant(s); they will be retried:[/red]")
        for tenant_id in summary.failed_tenants:
            console.print(f"  - {tenant_id}")
    if summary.birthday_flags_cleared:
        console.print(f"[cyan]Cleared {summary.birthday_flags_cleared} birthday flag(s) for the new year.[/cyan]")
