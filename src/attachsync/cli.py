"""Command-line interface for AttachSync.

Commands:
- serve: Run the HTTP server with workers and scheduler
- work: Process queued jobs without the HTTP server
- sweep-sessions: Delete expired upload sessions
- status: Show the sync state of a work item
- subscribe: Register a webhook subscription
"""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import replace
from pathlib import Path

import click

from attachsync.core.config import SyncConfig
from attachsync.server.app import LOG_FORMAT, build_engine, setup_logging
from attachsync.sync.orchestrator import SyncOrchestrator

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to database file (default: ATTACHSYNC_DB_PATH or ./attachsync.db).",
)


def _load_engine(db_path: Path | None) -> SyncOrchestrator:
    config = SyncConfig.from_env()
    if db_path is not None:
        config = replace(config, db_path=db_path)
    return build_engine(config)


@click.group()
@click.version_option(package_name="attachsync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """AttachSync - Work item attachment synchronization."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port.")
def serve(host: str, port: int) -> None:
    """Run the HTTP server.

    Configuration is read from ATTACHSYNC_* and AZDO_* environment
    variables. Workers and the maintenance scheduler run inside the server
    unless ATTACHSYNC_RUN_WORKERS=false.
    """
    import uvicorn

    config = SyncConfig.from_env()
    if not config.remote_configured:
        click.echo("Warning: AZDO_ORG_URL / AZDO_PROJECT not set, remote calls will fail.", err=True)
    uvicorn.run("attachsync.server.app:app_factory", factory=True, host=host, port=port)


@cli.command()
@click.option("--once", is_flag=True, help="Drain the queue once and exit.")
@db_path_option
def work(once: bool, db_path: Path | None) -> None:
    """Process queued sync jobs.

    With --once, every currently runnable job is processed and the command
    exits. Otherwise the worker pool runs until interrupted.
    """
    engine = _load_engine(db_path)
    try:
        if once:
            released = engine.queue.release_due_retries()
            processed = engine.pool.drain()
            click.echo(
                f"Processed {processed} jobs "
                f"({engine.pool.error_count} failed, {released} retries released)."
            )
            return

        setup_logging(engine.config.log_path)
        engine.start()
        click.echo(f"Worker pool running with {engine.config.worker_count} workers. Ctrl+C to stop.")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            click.echo("Stopping workers...")
    finally:
        engine.close()


@cli.command("sweep-sessions")
@db_path_option
def sweep_sessions(db_path: Path | None) -> None:
    """Delete expired upload sessions and their staged chunks."""
    engine = _load_engine(db_path)
    try:
        swept = engine.sweep_sessions()
        recovered = engine.recover_stale_jobs()
    finally:
        engine.close()
    if swept:
        click.echo(f"Deleted {swept} expired sessions.")
    else:
        click.echo("No expired sessions.")
    if recovered:
        click.echo(f"Requeued {recovered} stale jobs.")


@cli.command()
@click.argument("work_item_id", type=int)
@db_path_option
def status(work_item_id: int, db_path: Path | None) -> None:
    """Show the sync state of WORK_ITEM_ID."""
    engine = _load_engine(db_path)
    try:
        summary = engine.status(work_item_id)
    finally:
        engine.close()

    click.echo(f"Work item {work_item_id}: {summary['total_attachments']} attachments")
    for sync_status, count in summary["counts"].items():
        if count:
            click.echo(f"  {sync_status:<8} {count}")
    click.echo(f"  Total size: {summary['total_size_bytes']} bytes")

    if summary["unlinked"]:
        click.echo("Unlinked attachments:")
        for record in summary["unlinked"]:
            click.echo(f"  {record.attachment_id}  {record.file_name}  {record.last_error or ''}")

    if summary["recent_jobs"]:
        click.echo("Recent jobs:")
        for job in summary["recent_jobs"]:
            error = f"  [{job.error_category}] {job.error_message}" if job.error_category else ""
            click.echo(f"  #{job.id} {job.job_type:<8} {job.status:<10} retries={job.retry_count}{error}")


@cli.command()
@click.argument("callback_url")
@click.option("--secret", default=None, help="Shared secret (generated when omitted).")
@click.option(
    "--event-type",
    "event_types",
    multiple=True,
    help="Accepted event type (repeatable; default: all).",
)
@db_path_option
def subscribe(
    callback_url: str,
    secret: str | None,
    event_types: tuple[str, ...],
    db_path: Path | None,
) -> None:
    """Register a webhook subscription for CALLBACK_URL."""
    if not callback_url.startswith(("http://", "https://")):
        click.echo(f"Error: Invalid callback URL: {callback_url}", err=True)
        sys.exit(1)

    engine = _load_engine(db_path)
    try:
        subscription = engine.webhooks.register_subscription(
            callback_url,
            secret=secret,
            event_types=list(event_types) or None,
        )
    finally:
        engine.close()

    click.echo(f"Subscription: {subscription.subscription_id}")
    click.echo(f"Receiver:     /api/webhooks/{subscription.subscription_id}")
    click.echo(f"Secret:       {subscription.secret}")


def main() -> None:
    """Console script entry point."""
    cli()
