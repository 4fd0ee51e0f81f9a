"""Dispatch CLI application -- Typer-based operator interface.

Provides commands for preparing the state store, running the scheduled SMS
jobs by hand, resetting monthly credits, and inspecting or topping up tenant
balances.  Human-readable output goes to *stderr* via Rich; ``--json``
switches to machine-readable JSON on *stdout* so that scripts can compose
cleanly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import typer
from credit_engine.audit.sink import DatabaseAuditSink
from credit_engine.errors import RunAbortedError, TenantNotFoundError
from credit_engine.ledger import CreditLedger
from credit_engine.ledger.allocations import known_tiers
from credit_engine.state.database import get_engine, get_session_factory
from credit_engine.state.repository import TenantRepository
from credit_engine.state.sqlite_adapter import create_local_tables
from dispatch_api.config import APISettings, load_api_settings
from dispatch_api.dependencies import build_scheduler
from dispatch_api.services.job_runner import run_daily_maintenance
from dispatch_api.services.messaging_provider import build_provider
from dispatch_api.services.notification_scheduler import JobName, get_job
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_cli.display import (
    display_balance,
    display_job_summary,
    display_maintenance,
    display_transactions,
)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="dispatch",
    help="Dispatch - credit ledger and compliance-gated SMS notifications",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Register the serve command.
from dispatch_cli.commands.serve import serve_command  # noqa: E402

app.command(name="serve")(serve_command)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None

# Actor recorded on audit events written by CLI commands.
CLI_ACTOR = "cli"


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="State store URL (overrides DISPATCH_DATABASE_URL).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log at DEBUG level to stderr.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> APISettings:
    """Load settings, applying the ``--database-url`` override."""
    settings = load_api_settings()
    if _database_url:
        settings = settings.model_copy(update={"database_url": _database_url})
    return settings


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run *coro* to completion on a fresh event loop."""
    return asyncio.run(coro)


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


@asynccontextmanager
async def _session_factory(settings: APISettings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Open the state store for one command and dispose of it afterwards.

    Local SQLite stores get their tables created on first use, matching the
    API's startup behaviour.
    """
    engine = get_engine(settings.database_url)
    try:
        if settings.is_local():
            await create_local_tables(engine)
        yield get_session_factory(engine)
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# init-db / init-tenant
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the state store tables in a local SQLite database.

    PostgreSQL deployments are migrated with Alembic instead
    (``alembic upgrade head`` from the repository root).
    """
    settings = _settings()
    if not settings.is_local():
        console.print("[yellow]Not a local database; run the Alembic migrations instead.[/yellow]")
        raise typer.Exit(code=3)

    async def _init() -> None:
        async with _session_factory(settings):
            pass

    _run(_init())
    console.print(f"[green]✓[/green] State store ready at {settings.database_url}")


@app.command("init-tenant")
def init_tenant(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
    tier: str = typer.Option("trial", "--tier", help=f"Subscription tier ({', '.join(known_tiers())})."),
    name: str = typer.Option("", "--name", help="Business name used in message templates."),
    timezone: str = typer.Option("America/New_York", "--timezone", help="IANA timezone of the business."),
) -> None:
    """Create a tenant (if missing) and set its starting credit balances."""
    settings = _settings()

    async def _init() -> bool:
        async with _session_factory(settings) as factory, factory() as session:
            repo = TenantRepository(session)
            if await repo.get(tenant_id) is None:
                await repo.create(tenant_id, name=name, subscription_tier=tier, timezone=timezone)
            ledger = CreditLedger(session, audit_sink=DatabaseAuditSink(session), actor=CLI_ACTOR)
            created = await ledger.initialize(tenant_id, tier)
            await session.commit()
            return created

    try:
        _run(_init())
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=3) from exc

    console.print(f"[green]✓[/green] Tenant [bold]{tenant_id}[/bold] initialised on the {tier} tier")


# ---------------------------------------------------------------------------
# run-job / reset-credits
# ---------------------------------------------------------------------------


@app.command("run-job")
def run_job(
    job: str = typer.Argument(..., help=f"Job to run ({', '.join(j.value for j in JobName)})."),
) -> None:
    """Run one scheduled SMS job now, exactly as the cron trigger would."""
    try:
        definition = get_job(job)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=3) from exc

    settings = _settings()

    async def _execute():
        provider = build_provider(settings)
        try:
            async with _session_factory(settings) as factory:
                scheduler = build_scheduler(settings, provider, factory)
                return await scheduler.run(definition.name)
        finally:
            await provider.close()

    try:
        summary = _run(_execute())
    except RunAbortedError as exc:
        if exc.summary is not None:
            if _json_output:
                _emit_json(exc.summary.model_dump(mode="json"))
            else:
                display_job_summary(console, exc.summary)
        console.print(f"[red]Job {definition.name.value} aborted: {exc}[/red]")
        raise typer.Exit(code=1) from exc

    if _json_output:
        _emit_json(summary.model_dump(mode="json"))
    else:
        display_job_summary(console, summary)


@app.command("reset-credits")
def reset_credits() -> None:
    """Reset monthly credits for every due tenant.

    On January 1st the yearly birthday flags are cleared as well.
    """
    settings = _settings()

    async def _reset():
        async with _session_factory(settings) as factory:
            return await run_daily_maintenance(factory)

    summary = _run(_reset())
    if _json_output:
        _emit_json(summary.model_dump(mode="json"))
    else:
        display_maintenance(console, summary)


# ---------------------------------------------------------------------------
# balance / history / grant-pack
# ---------------------------------------------------------------------------


@app.command()
def balance(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
) -> None:
    """Show a tenant's monthly and purchased credit pools."""
    settings = _settings()

    async def _balance():
        async with _session_factory(settings) as factory, factory() as session:
            return await CreditLedger(session).get_balance(tenant_id)

    try:
        result = _run(_balance())
    except TenantNotFoundError as exc:
        console.print(f"[red]Tenant '{tenant_id}' not found.[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json(result.model_dump(mode="json"))
    else:
        display_balance(console, result)


@app.command()
def history(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
    limit: int = typer.Option(
        20,
        "--limit",
        help="Maximum number of transactions to show.",
        min=1,
        max=500,
    ),
) -> None:
    """Show a tenant's most recent credit transactions."""
    settings = _settings()

    async def _history():
        async with _session_factory(settings) as factory, factory() as session:
            return await CreditLedger(session).get_transaction_history(tenant_id, limit=limit)

    transactions = _run(_history())
    if _json_output:
        _emit_json([t.model_dump(mode="json") for t in transactions])
    else:
        display_transactions(console, tenant_id, transactions)


@app.command("grant-pack")
def grant_pack(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
    pack_id: str = typer.Argument(..., help="Credit pack identifier, e.g. pack_medium."),
    payment_ref: str | None = typer.Option(None, "--payment-ref", help="Payment processor reference."),
) -> None:
    """Add a purchased credit pack to a tenant's balance."""
    settings = _settings()

    async def _grant():
        async with _session_factory(settings) as factory, factory() as session:
            ledger = CreditLedger(session, audit_sink=DatabaseAuditSink(session), actor=CLI_ACTOR)
            result = await ledger.add_pack(tenant_id, pack_id, payment_ref=payment_ref)
            await session.commit()
            return result

    try:
        result = _run(_grant())
    except TenantNotFoundError as exc:
        console.print(f"[red]Tenant '{tenant_id}' not found.[/red]")
        raise typer.Exit(code=3) from exc
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json(result.model_dump(mode="json"))
    else:
        console.print(f"[green]✓[/green] Granted {pack_id} to {tenant_id}")
        display_balance(console, result)
