"""reportbot CLI: Typer-based command-line interface."""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime

import typer
from rich.console import Console
from rich.table import Table

from reportbot import __version__

app = typer.Typer(
    name="reportbot",
    help="reportbot - scheduled git activity reports",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"reportbot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
) -> None:
    """reportbot - scheduled git activity reports."""


def _load():
    """Config + store, with the loguru sink set to the configured level."""
    from loguru import logger

    from reportbot.core.config.loader import load_config
    from reportbot.memory.store import ReportStore

    config = load_config()
    logger.remove()
    logger.add(sys.stderr, level=config.logging.level.upper())
    return config, ReportStore(str(config.db_path))


def _run_with_scheduler(fn):
    """Build a scheduler around a shared HTTP client and await ``fn(scheduler)``."""
    import httpx

    from reportbot.core.cron.scheduler import create_scheduler

    config, store = _load()

    async def _main():
        async with httpx.AsyncClient() as client:
            return await fn(create_scheduler(config, store, client=client))

    return asyncio.run(_main())


def _fmt(dt: datetime | None) -> str:
    return dt.strftime("%Y-%m-%d %H:%M UTC") if dt else "-"


# ════════════════════════════════════════════════════════════
# run: start API server
# ════════════════════════════════════════════════════════════


@app.command()
def run(
    port: int = typer.Option(8000, "--port", "-p", help="Port number"),
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Host address"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
) -> None:
    """Start the API server (uvicorn) with the scheduler running."""
    import uvicorn

    console.print(f"[green]Starting reportbot API on {host}:{port}[/green]")
    uvicorn.run("reportbot.api.app:app", host=host, port=port, reload=reload)


# ════════════════════════════════════════════════════════════
# tick: one scheduler pass
# ════════════════════════════════════════════════════════════


@app.command()
def tick() -> None:
    """Process every due configuration once, then exit."""

    async def _tick(scheduler):
        return await scheduler.tick()

    stats = _run_with_scheduler(_tick)
    if stats.skipped:
        console.print("[yellow]Tick skipped: another tick is running[/yellow]")
        return
    console.print(
        f"[green]Tick complete:[/green] {stats.due} due, "
        f"{stats.successful} successful, {stats.failed} failed"
    )


# ════════════════════════════════════════════════════════════
# status: config + configurations
# ════════════════════════════════════════════════════════════


@app.command()
def status() -> None:
    """Show configuration, database and schedule status."""
    from reportbot.core.cron.evaluator import describe_schedule, next_run_time
    from reportbot.core.utils import utcnow

    config, store = _load()
    configurations = store.list_configurations()

    table = Table(title="reportbot status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Version", __version__)
    table.add_row("Model", config.summarizer.model)
    table.add_row("DB Path", str(config.db_path))
    table.add_row("Tick", config.scheduler.tick_cron)
    table.add_row("Configurations", str(len(configurations)))
    console.print(table)

    if not configurations:
        console.print("[dim]No report configurations found.[/dim]")
        return

    now = utcnow()
    cfg_table = Table(title="Report Configurations")
    cfg_table.add_column("ID", style="cyan")
    cfg_table.add_column("User", style="blue")
    cfg_table.add_column("Schedule", style="yellow")
    cfg_table.add_column("Last Run", style="dim")
    cfg_table.add_column("Status", style="white")
    cfg_table.add_column("Runs", style="magenta")
    cfg_table.add_column("Next Run", style="green")

    for cfg in configurations:
        tz = store.get_user_timezone(cfg.user_id) or config.scheduler.default_timezone
        next_at = next_run_time(cfg.schedule, cfg.last_run_at or now, tz) if cfg.enabled else None
        cfg_table.add_row(
            cfg.id,
            cfg.user_id,
            f"{describe_schedule(cfg.schedule)} ({tz})",
            _fmt(cfg.last_run_at),
            cfg.last_run_status.value if cfg.last_run_status else "-",
            str(store.count_configuration_runs(cfg.id)),
            _fmt(next_at) if cfg.enabled else "[dim]disabled[/dim]",
        )
    console.print(cfg_table)


# ════════════════════════════════════════════════════════════
# next: evaluate a cron expression
# ════════════════════════════════════════════════════════════


@app.command("next")
def next_run(
    expression: str = typer.Argument(help="Cron expression, e.g. '0 9 * * 1-5'"),
    tz: str = typer.Option("UTC", "--tz", help="IANA timezone"),
    from_time: str | None = typer.Option(None, "--from", help="ISO-8601 start instant (default: now)"),
) -> None:
    """Print the next run time of a cron expression."""
    from reportbot.core.cron.evaluator import describe_schedule, next_run_time
    from reportbot.core.utils import ensure_utc, utcnow

    try:
        start = ensure_utc(datetime.fromisoformat(from_time)) if from_time else utcnow()
    except ValueError:
        console.print(f"[red]Invalid --from value:[/red] {from_time}")
        raise typer.Exit(code=1)

    result = next_run_time(expression, start, tz)
    if result is None:
        console.print(f"[red]Unsupported schedule:[/red] {expression}")
        raise typer.Exit(code=1)
    console.print(f"{describe_schedule(expression)}: [green]{result.isoformat()}[/green]")


# ════════════════════════════════════════════════════════════
# usage / runs: per-user history
# ════════════════════════════════════════════════════════════


@app.command()
def usage(user_id: str = typer.Argument(help="User ID")) -> None:
    """Show this month's run usage for a user."""
    from reportbot.core.runs.usage import UsageGate

    config, store = _load()
    gate = UsageGate(store, default_limit=config.usage.default_monthly_runs_limit)
    summary = gate.monthly_usage(user_id)
    if summary is None:
        console.print(f"[red]Could not read usage for[/red] {user_id}")
        raise typer.Exit(code=1)

    table = Table(title=f"Usage for {user_id} since {summary.month:%Y-%m-%d}")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Runs", f"{summary.successful_runs} / {gate.limit_for(user_id)}")
    table.add_row("Failed", str(summary.failed_runs))
    table.add_row("Tokens", str(summary.total_tokens))
    table.add_row("Cost", f"${summary.total_cost_usd:.4f}")
    table.add_row("Last Run", _fmt(summary.last_run_at))
    console.print(table)


@app.command()
def runs(
    user_id: str = typer.Argument(help="User ID"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs"),
) -> None:
    """List a user's most recent report runs."""
    _, store = _load()
    history = store.list_runs(user_id, limit=limit)
    if not history:
        console.print("[dim]No report runs found.[/dim]")
        return

    table = Table(title=f"Report runs for {user_id}")
    table.add_column("Run", style="cyan")
    table.add_column("Started", style="dim")
    table.add_column("Status", style="yellow")
    table.add_column("Commits", style="white")
    table.add_column("Delivered", style="green")
    table.add_column("Error", style="red")

    for r in history:
        table.add_row(
            r.id,
            _fmt(r.started_at),
            r.status.value,
            str(r.commits_processed),
            f"{r.webhook_delivered} ({r.webhook_delivery_attempts})",
            r.error_code or "-",
        )
    console.print(table)


# ════════════════════════════════════════════════════════════
# test-webhook: send a test report
# ════════════════════════════════════════════════════════════


@app.command("test-webhook")
def test_webhook(
    config_id: str = typer.Argument(help="Report configuration ID"),
    user_id: str = typer.Argument(help="Owner user ID"),
) -> None:
    """Summarize the last 7 days and send it to the configured webhook as a test."""
    from reportbot.core.errors import ReportBotError

    async def _test(scheduler):
        return await scheduler.test_configuration(config_id, user_id)

    try:
        outcome = _run_with_scheduler(_test)
    except ReportBotError as e:
        console.print(f"[red]{e.code}:[/red] {e}")
        raise typer.Exit(code=1)

    colour = "green" if outcome.success else "red"
    console.print(f"[{colour}]{outcome.message}[/{colour}]")
    if outcome.commits_found:
        console.print(f"  [dim]{outcome.commits_found} commits, {outcome.attempts} attempt(s)[/dim]")
    if not outcome.success:
        raise typer.Exit(code=1)
