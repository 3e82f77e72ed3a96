"""CLI for calsync: migrate, run the sync service, and inspect the outbox."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import click

from calsync import __version__
from calsync.config import CalsyncConfig, ConfigError, load_config
from calsync.core.logging import configure_logging
from calsync.db import SyncDatabase
from calsync.errors import CalendarCredentialError
from calsync.google import CalendarRemote, GoogleCalendarRemote, GoogleOAuthCredentials
from calsync.migrations import run_migrations
from calsync.outbox import DEFAULT_LIST_LIMIT
from calsync.service import CalendarSyncService
from calsync.store import PostgresSyncStore

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to calsync.toml (defaults to $CALSYNC_CONFIG or ./calsync.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync: outbox-based sync between a local calendar store and Google Calendar."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=log_root,
        calendar_id=config.google.calendar_id,
    )
    ctx.obj = config


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def _build_remote(config: CalsyncConfig) -> CalendarRemote | None:
    try:
        credentials = GoogleOAuthCredentials.from_env(config.google.credentials_env)
    except CalendarCredentialError as exc:
        logger.warning("Google Calendar disabled: %s", exc)
        return None
    return GoogleCalendarRemote(credentials, timeout=config.google.request_timeout_s)


@asynccontextmanager
async def _open_service(config: CalsyncConfig) -> AsyncIterator[CalendarSyncService]:
    """Connect to the database and yield a service that is not yet started."""
    db = SyncDatabase(config.database)
    await db.provision()
    pool = await db.connect()
    remote = _build_remote(config)
    store = PostgresSyncStore(
        pool,
        window_past_days=config.sync.window_past_days,
        window_future_days=config.sync.window_future_days,
    )
    service = CalendarSyncService(
        store,
        remote,
        sync_config=config.sync,
        holiday_calendar_id=config.google.holiday_calendar_id,
    )
    try:
        yield service
    finally:
        if remote is not None:
            await remote.shutdown()
        await db.close()


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _run(config: CalsyncConfig, action) -> object:
    """Open a service, await ``action(service)``, and return its result."""

    async def _main() -> object:
        async with _open_service(config) as service:
            return await action(service)

    return asyncio.run(_main())


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_obj
def migrate(config: CalsyncConfig) -> None:
    """Create the database if needed and upgrade the schema to head."""

    async def _migrate() -> None:
        db = SyncDatabase(config.database)
        await db.provision()
        await run_migrations(config.database.url, schema=config.database.schema)

    asyncio.run(_migrate())
    click.echo(f"Migrated {config.database.name}")


@cli.command()
@click.pass_obj
def run(config: CalsyncConfig) -> None:
    """Run the outbox worker and sync poller until SIGINT or SIGTERM."""
    asyncio.run(_run_service(config))


async def _run_service(config: CalsyncConfig) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    async with _open_service(config) as service:
        await service.start(default_calendar_id=config.google.calendar_id)
        click.echo("calsync running")
        try:
            await shutdown_event.wait()
        finally:
            await service.stop()


@cli.command()
@click.pass_obj
def sync(config: CalsyncConfig) -> None:
    """Drain the outbox and pull remote changes once."""

    async def _sync(service: CalendarSyncService):
        await service.select_default_calendar(config.google.calendar_id)
        return await service.run_sync_now()

    result = _run(config, _sync)
    _echo_json(result.model_dump(mode="json"))


@cli.command("force-push")
@click.pass_obj
def force_push(config: CalsyncConfig) -> None:
    """Re-enqueue every local event so it overwrites the remote copy."""
    result = _run(config, lambda service: service.force_push_all())
    _echo_json(result.model_dump(mode="json"))


@cli.command()
@click.pass_obj
def calendars(config: CalsyncConfig) -> None:
    """List calendars the account can write to."""
    entries = _run(config, lambda service: service.list_calendars())
    if not entries:
        click.echo("No writable calendars (is Google Calendar configured?)")
        return

    click.echo(f"{'ID':<50} {'Role':<8} {'Summary'}")
    click.echo("-" * 80)
    for entry in entries:
        marker = " (primary)" if entry.primary else ""
        click.echo(f"{entry.id:<50} {entry.access_role:<8} {entry.summary}{marker}")


@cli.command("select-calendar")
@click.argument("calendar_id")
@click.option("--summary", default=None, help="Display name to store with the selection")
@click.pass_obj
def select_calendar(config: CalsyncConfig, calendar_id: str, summary: str | None) -> None:
    """Select the calendar to sync. Switching calendars clears the local cache."""
    changed = _run(
        config, lambda service: service.set_selected_calendar(calendar_id, summary)
    )
    if changed:
        click.echo(f"Selected {calendar_id}; local events and outbox cleared")
    else:
        click.echo(f"{calendar_id} is already selected")


# ---------------------------------------------------------------------------
# Outbox commands
# ---------------------------------------------------------------------------


@cli.group()
def outbox() -> None:
    """Inspect and manage pending outbox jobs."""


@outbox.command("list")
@click.option("--limit", type=int, default=DEFAULT_LIST_LIMIT, show_default=True)
@click.option("--all", "include_completed", is_flag=True, help="Include DONE and CANCELLED jobs")
@click.pass_obj
def outbox_list(config: CalsyncConfig, limit: int, include_completed: bool) -> None:
    """List outbox jobs, newest first."""
    jobs = _run(
        config,
        lambda service: service.list_outbox_jobs(
            limit=limit, include_completed=include_completed
        ),
    )
    _echo_json([job.to_dict() for job in jobs])


@outbox.command("count")
@click.pass_obj
def outbox_count(config: CalsyncConfig) -> None:
    """Print the number of active outbox jobs."""
    click.echo(_run(config, lambda service: service.get_outbox_count()))


@outbox.command("flush")
@click.pass_obj
def outbox_flush(config: CalsyncConfig) -> None:
    """Process due outbox jobs now."""
    processed = _run(config, lambda service: service.process_outbox_now())
    click.echo(f"Processed {processed} job(s)")


@outbox.command("cancel")
@click.argument("job_id", type=click.UUID)
@click.pass_obj
def outbox_cancel(config: CalsyncConfig, job_id: uuid.UUID) -> None:
    """Cancel an active job and every job that depends on it."""
    cancelled = _run(config, lambda service: service.cancel_outbox_job(job_id))
    if not cancelled:
        raise click.ClickException(f"Job {job_id} is not active")
    click.echo(f"Cancelled {job_id}")
