"""Implementation of the 'pocketledger' scheduler commands.

Each batch job is one command so any scheduler (cron, a cloud
scheduler) can invoke it. Jobs are resumable: pass the printed cursor
back with --cursor to continue a run that --max-pages cut short.
"""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pocketledger.audit import AuditLogger
from pocketledger.config import get_settings, validate_all_settings
from pocketledger.orchestrator import (
    create_fx_refresher,
    create_reconciler,
    create_recurring_job,
    create_store,
)
from pocketledger.services.fx import OpenErApiRateProvider

console = Console()

app = typer.Typer(help="PocketLedger batch jobs")


def _print_report(title: str, summary: dict) -> None:
    table = Table(title=title, show_header=False)
    table.add_column("field", style="cyan")
    table.add_column("value")
    for key, value in summary.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


def _open_store(settings):
    """The configured store. The memory backend is refused since it starts empty."""
    if settings.store.backend == "memory":
        console.print(
            "[red]error[/red] the memory store starts empty in every process, "
            "set LEDGER_STORE_BACKEND=sql"
        )
        raise typer.Exit(code=2)
    return create_store(settings.store)


def _close(store) -> None:
    close = getattr(store, "close", None)
    if close is not None:
        close()


@app.command(name="run-recurring")
def run_recurring(
    cursor: Optional[str] = typer.Option(
        None,
        "--cursor",
        help="Resume a previous run from this cursor",
    ),
    max_pages: Optional[int] = typer.Option(
        None,
        "--max-pages",
        min=1,
        help="Stop after this many scan pages",
    ),
) -> None:
    """Materialize every due recurring rule (one occurrence per rule)."""
    settings = get_settings()
    store = _open_store(settings)
    job = create_recurring_job(store, settings, AuditLogger(keep_events=False))
    try:
        report = asyncio.run(job.run(cursor=cursor, max_pages=max_pages))
    finally:
        _close(store)

    _print_report("Recurring run", report.summary())
    if report.failed:
        console.print(f"[yellow]{report.failed} rule(s) failed, see logs[/yellow]")


@app.command(name="refresh-fx")
def refresh_fx(
    cursor: Optional[str] = typer.Option(
        None,
        "--cursor",
        help="Resume a previous run from this cursor",
    ),
    max_pages: Optional[int] = typer.Option(
        None,
        "--max-pages",
        min=1,
        help="Stop after this many scan pages",
    ),
    offline: bool = typer.Option(
        False,
        "--offline",
        help="Skip the rate provider and use the fallback table only",
    ),
) -> None:
    """Re-price non-base transactions at the latest rates."""
    settings = get_settings()
    store = _open_store(settings)
    audit_logger = AuditLogger(keep_events=False)
    provider = None if offline else OpenErApiRateProvider(
        api_url=settings.fx.api_url,
        timeout=settings.fx.timeout_seconds,
    )

    async def _run():
        job = create_fx_refresher(store, settings, audit_logger, provider, offline=offline)
        try:
            return await job.run(cursor=cursor, max_pages=max_pages)
        finally:
            if provider is not None:
                await provider.close()

    try:
        report = asyncio.run(_run())
    finally:
        _close(store)

    _print_report("FX refresh", report.summary())
    if report.rate_source != "remote":
        console.print("[yellow]Rate provider unavailable, fallback rates used[/yellow]")


@app.command(name="reconcile")
def reconcile(
    max_pages: Optional[int] = typer.Option(
        None,
        "--max-pages",
        min=1,
        help="Stop after this many scan pages",
    ),
) -> None:
    """Compare stored balances with their transactions. Exits 1 on drift."""
    settings = get_settings()
    store = _open_store(settings)
    job = create_reconciler(store, settings, AuditLogger(keep_events=False))
    try:
        report = asyncio.run(job.run(max_pages=max_pages))
    finally:
        _close(store)

    _print_report("Reconciliation", report.summary())
    for drift in report.drift:
        console.print(
            f"[red]Drift:[/red] {drift.user_id}/{drift.account_id} "
            f"stored {drift.stored} expected {drift.expected}"
        )
    if report.drift:
        raise typer.Exit(1)


@app.command(name="check-config")
def check_config() -> None:
    """Validate settings from the environment and .env."""
    results = validate_all_settings()
    failed = False
    for name in ("store", "fx", "jobs", "app"):
        if results.get(name):
            console.print(f"[green]ok[/green]    {name}")
        else:
            failed = True
            console.print(f"[red]error[/red] {name}: {escape(str(results.get(f'{name}_error')))}")
    if failed:
        raise typer.Exit(1)


def main() -> None:
    app()
