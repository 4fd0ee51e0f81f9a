"""``dispatch serve`` -- run the dispatcher API locally.

Starts the FastAPI application through uvicorn against the configured state
store.  With the default settings that is a local SQLite file, so the API,
the cron endpoints and the inbound SMS webhook work with no external
services.  ``--scheduler`` also starts the in-process job runner so the SMS
jobs fire on their own cadence instead of waiting for an external cron.
"""

from __future__ import annotations

import logging
import os

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

logger = logging.getLogger(__name__)


def serve_command(
    port: int = typer.Option(
        8000,
        "--port",
        "-p",
        help="API server port.",
    ),
    host: str = typer.Option(
        "127.0.0.1",
        "--host",
        help="Host to bind the API server to.",
    ),
    scheduler: bool = typer.Option(
        False,
        "--scheduler/--no-scheduler",
        help="Run the scheduled SMS jobs in-process.",
    ),
    reload: bool = typer.Option(
        False,
        "--reload",
        help="Enable auto-reload on code changes.",
    ),
) -> None:
    """Serve the dispatcher API with uvicorn."""
    console = Console(stderr=True)

    # The app reads its settings from the environment inside its lifespan.
    if scheduler:
        os.environ["DISPATCH_SCHEDULER_ENABLED"] = "true"

    console.print(
        Panel(
            _build_services_table(host, port, scheduler),
            title="Dispatch API",
            border_style="blue",
        )
    )
    console.print("[dim]Press Ctrl+C to stop.[/dim]\n")

    try:
        import uvicorn

        uvicorn_config = uvicorn.Config(
            "dispatch_api.main:app",
            host=host,
            port=port,
            reload=reload,
            log_level="info",
            access_log=False,
        )
        server = uvicorn.Server(uvicorn_config)
        server.run()
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/yellow]")
    except Exception as exc:
        console.print(f"[red]Server error: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    console.print("[green]Server stopped cleanly.[/green]")


def _build_services_table(host: str, port: int, scheduler: bool) -> Table:
    """Build a Rich table listing the endpoints being served."""
    table = Table(show_header=True, header_style="bold", expand=False)
    table.add_column("Service")
    table.add_column("URL / Status")

    base = f"http://{host}:{port}"
    table.add_row("API", f"{base}/api/v1")
    table.add_row("OpenAPI docs", f"{base}/docs")
    table.add_row("Readiness", f"{base}/ready")
    table.add_row("Inbound SMS webhook", f"{base}/api/v1/sms/inbound?tenant=<id>")
    table.add_row(
        "Job runner",
        "[green]in-process[/green]" if scheduler else "[dim]disabled (use /api/v1/cron/jobs/{job})[/dim]",
    )
    return table
