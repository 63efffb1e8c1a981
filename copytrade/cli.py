"""
CLI entrypoint for the copy-trading engine.

Provides the operator jobs: init-db, reconcile, repair-quantity,
repair-close-reasons, link-orphans, and events.
"""
import asyncio
from pathlib import Path
from typing import Optional

import typer

from copytrade.config.config import Config, load_config
from copytrade.domain.models import JobSummary
from copytrade.exceptions import CopyTradeError
from copytrade.monitoring.logger import get_logger, setup_logging
from copytrade.storage.db import init_db

app = typer.Typer(
    name="copytrade",
    help="Copy-trading position lifecycle engine",
    add_completion=False,
)

logger = get_logger(__name__)

ConfigOption = typer.Option(None, "--config", help="Path to config file (defaults to the packaged config.yaml)")
UserOption = typer.Option(None, "--user", help="Limit the job to one user id")


def _bootstrap(config_path: Optional[Path]) -> Config:
    config = load_config(str(config_path) if config_path else None)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    if not config.data.database_url:
        typer.secho("DATABASE_URL is not set", fg=typer.colors.RED)
        raise typer.Exit(1)
    init_db(config.data.database_url)
    return config


def _print_summary(title: str, summary: JobSummary) -> None:
    typer.echo("\n" + "=" * 40)
    typer.echo(title)
    typer.echo("=" * 40)
    for key, value in summary.as_dict().items():
        typer.echo(f"{key:<10} {value}")
    typer.echo("=" * 40 + "\n")


def _fail(e: CopyTradeError) -> None:
    logger.error("JOB_FAILED", error=str(e), error_type=type(e).__name__)
    typer.secho(f"Failed: {e}", fg=typer.colors.RED)
    raise typer.Exit(1)


@app.command("init-db")
def init_db_command(config_path: Optional[Path] = ConfigOption):
    """Create tables and indexes."""
    _bootstrap(config_path)
    typer.echo("Database initialized")


@app.command()
def reconcile(
    user: Optional[str] = UserOption,
    config_path: Optional[Path] = ConfigOption,
):
    """
    Converge stored positions to the exchange's closed-position history.

    Unverified closed positions are DELETED. Without --user every user is
    reconciled against their own account from the accounts section.
    """
    from copytrade.services import operator_jobs

    config = _bootstrap(config_path)
    try:
        summary = asyncio.run(operator_jobs.reconcile(user, config=config))
    except CopyTradeError as e:
        _fail(e)
    _print_summary("RECONCILE", summary)


@app.command("repair-quantity")
def repair_quantity(
    user: Optional[str] = UserOption,
    no_exchange: bool = typer.Option(False, "--no-exchange", help="Skip leverage lookup against exchange history"),
    config_path: Optional[Path] = ConfigOption,
):
    """Re-derive quantities from P&L and repair legacy leverage."""
    from copytrade.services import operator_jobs

    config = _bootstrap(config_path)
    try:
        summary = asyncio.run(
            operator_jobs.repair_quantity_and_leverage(user, config=config, use_exchange=not no_exchange)
        )
    except CopyTradeError as e:
        _fail(e)
    _print_summary("REPAIR QUANTITY / LEVERAGE", summary)


@app.command("repair-close-reasons")
def repair_close_reasons(
    user: Optional[str] = UserOption,
    config_path: Optional[Path] = ConfigOption,
):
    """Fill in unknown close reasons and missing P&L."""
    from copytrade.services import operator_jobs

    config = _bootstrap(config_path)
    _print_summary("REPAIR CLOSE REASONS", operator_jobs.repair_close_reasons(user, config=config))


@app.command("link-orphans")
def link_orphans(
    user: Optional[str] = UserOption,
    config_path: Optional[Path] = ConfigOption,
):
    """Link closed positions without a signal to their originating alert."""
    from copytrade.services import operator_jobs

    config = _bootstrap(config_path)
    _print_summary("LINK ORPHANS", operator_jobs.link_orphans(user, config=config))


@app.command()
def events(
    limit: int = typer.Option(20, "--limit", help="Number of events"),
    event_type: Optional[str] = typer.Option(None, "--type", help="Filter by event type"),
    config_path: Optional[Path] = ConfigOption,
):
    """Show recent audit events (rejections, deletions, links)."""
    from copytrade.storage.repository import get_recent_events

    _bootstrap(config_path)
    for event in get_recent_events(limit=limit, event_type=event_type):
        typer.echo(
            f"{event['timestamp'].isoformat()}  {event['event_type']:<30} "
            f"{event['symbol']:<12} {event['user_id'] or '-':<12} {event['details']}"
        )


if __name__ == "__main__":
    app()
