from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from supplyscan import services
from supplyscan.agent import LLMClient
from supplyscan.db import get_session, init_db, session_scope
from supplyscan.importer import import_roster_xlsx
from supplyscan.market_data import MarketDataClient
from supplyscan.scanner import ScanOutcome, run_scan
from supplyscan.search import SearchClient

app = typer.Typer(help="AI infrastructure supply-chain bottleneck scanner")
console = Console(stderr=True)

log = logging.getLogger(__name__)


def configure_logging(*, verbose: int = 0, json_output: bool = False) -> None:
    """Rich console logging; ``SUPPLYSCAN_LOG_LEVEL`` applies when no -v is given."""
    if verbose <= 0:
        level: int | str = os.environ.get("SUPPLYSCAN_LOG_LEVEL", "").strip().upper() or logging.INFO
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=True, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db: str | None = typer.Option(None, "--db", help="SQLite database path (default: SUPPLYSCAN_DB)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if db:
        os.environ["SUPPLYSCAN_DB"] = str(Path(db).expanduser().resolve())
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _print(title: str, payload: dict[str, Any], ctx: typer.Context, *, border_style: str = "cyan") -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        table.add_row(key, _format_scalar(value))
    Console().print(Panel(table, title=title, border_style=border_style))


def _fail(ctx: typer.Context, message: str) -> None:
    _print("Error", {"error": message}, ctx, border_style="red")
    raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _scan(trigger_type: str) -> ScanOutcome:
    market, search, llm = MarketDataClient(), SearchClient(), LLMClient()
    try:
        if not market.configured:
            raise RuntimeError("FMP_API_KEY not configured")
        if not llm.configured:
            raise RuntimeError("LLM_API_KEY not configured")
        return await run_scan(get_session, market, search, llm, trigger_type=trigger_type)
    finally:
        await asyncio.gather(market.aclose(), search.aclose(), llm.aclose())


@app.command()
def scan(
    ctx: typer.Context,
    trigger_type: str = typer.Option("manual", "--trigger-type", help="Recorded on the scan run."),
) -> None:
    """Run one bottleneck scan over the whole roster."""
    init_db()
    try:
        outcome = asyncio.run(_scan(trigger_type))
    except Exception as exc:
        log.debug("Scan failed", exc_info=True)
        _fail(ctx, str(exc) or type(exc).__name__)
    _print("Scan", outcome.as_dict(), ctx, border_style="green")


@app.command("import-roster")
def import_roster(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="XLSX with id, ticker, name columns."),
) -> None:
    """Insert or update companies from a spreadsheet."""
    init_db()
    with session_scope() as session:
        result = import_roster_xlsx(path, session)
    _print("Roster import", result.model_dump(), ctx)


@app.command()
def runs(ctx: typer.Context, limit: int = typer.Option(10, "--limit", min=1)) -> None:
    """Show recent scan runs."""
    init_db()
    with session_scope() as session:
        rows = services.list_scan_runs(session, limit=limit)
    if _wants_json(ctx):
        typer.echo(json.dumps(rows, indent=2, ensure_ascii=False))
        return

    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED, title="Scan runs")
    for col in ("started", "status", "trigger", "companies", "signals", "relationships", "error"):
        table.add_column(col)
    status_style = {"completed": "green", "failed": "red", "running": "yellow"}
    for r in rows:
        style = status_style.get(r["status"], "")
        table.add_row(
            _format_scalar(r["started_at"]),
            f"[{style}]{r['status']}[/{style}]" if style else r["status"],
            r["trigger_type"],
            _format_scalar(r["companies_scanned"]),
            _format_scalar(r["signals_found"]),
            _format_scalar(r["relationships_found"]),
            _format_scalar(r["error_message"]),
        )
    Console().print(table)


@app.command()
def stats(ctx: typer.Context) -> None:
    """Row counts and the latest scan status."""
    init_db()
    with session_scope() as session:
        payload = services.compute_stats(session)
    _print("Stats", payload, ctx)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8001, "--port"),
    reload: bool = typer.Option(False, "--reload"),
) -> None:
    """Serve the HTTP API."""
    import uvicorn

    uvicorn.run("supplyscan.app:app", host=host, port=port, reload=reload, log_config=None)


def scheduled_scan() -> None:
    """Console entry for cron: one scheduled scan, JSON outcome on stdout."""
    app(args=["--json", "scan", "--trigger-type", "scheduled", *sys.argv[1:]])


if __name__ == "__main__":
    app()
