#!/usr/bin/env python3
"""Command line entrypoint for recordsync."""

import logging
import signal
import sys
import uuid
from pathlib import Path
from typing import Optional

import click

from recordsync.cli.progress import SyncConsole
from recordsync.config import ConfigIssue, load_config, validate_sync_config
from recordsync.domain.errors import SyncError
from recordsync.domain.models import ResultStatus
from recordsync.sync.engine import SyncOrchestrator
from recordsync.sync.session_store import SqliteSessionStore
from recordsync.sync.tracker import SessionTracker
from recordsync.utils.logging import StructuredLogger, setup_console_logging

logger = logging.getLogger(__name__)


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to YAML configuration")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str]) -> None:
    """Batch record synchronization between a source and a target."""
    app_config = load_config(config_path)
    setup_console_logging(app_config.log_level)
    ctx.obj = app_config


@cli.command()
@click.option("--dry-run", is_flag=True, help="Validate configuration and connections only")
@click.option("--limit", type=int, help="Maximum number of records to process")
@click.option("--batch-size", type=int, help="Records per batch")
@click.option("--actor", help="Who initiated the run")
@click.option("--stream", is_flag=True, help="Report each batch as it finishes")
@click.pass_obj
def run(
    app_config,
    dry_run: bool,
    limit: Optional[int],
    batch_size: Optional[int],
    actor: Optional[str],
    stream: bool,
) -> None:
    """Run a sync once."""
    console = SyncConsole()
    sync_config = app_config.sync
    changes = {}
    if limit is not None:
        changes["limit"] = limit
    if batch_size is not None:
        changes["batch_size"] = batch_size
    if changes:
        sync_config = sync_config.with_processing(**changes)

    sync_type = sync_config.session_config.sync_type
    console.show_banner(sync_type)
    structured_logger = StructuredLogger(app_config.log_dir)

    issues = validate_sync_config(sync_config)
    if not console.validate_config([issue.to_dict() for issue in issues]):
        structured_logger.log_validation_error([issue.to_dict() for issue in issues])
        sys.exit(2)

    orchestrator = SyncOrchestrator(tracker=SessionTracker(store=_session_store(app_config)))
    structured_logger.log_sync_start(
        sync_type, str(sync_config.source_adapter), str(sync_config.target_resource), dry_run
    )
    try:
        if stream and not dry_run:
            session = _stream_run(console, orchestrator, sync_config, actor)
            if session["status"] == "failed":
                sys.exit(1)
            return
        with console.progress_spinner(f"Syncing {sync_type}..."):
            result = orchestrator.execute_sync(sync_config, actor=actor, dry_run=dry_run)
    except SyncError as e:
        structured_logger.log_sync_error(sync_type, e.to_dict())
        console.show_error(str(e))
        sys.exit(1)

    structured_logger.log_sync_complete(result, sync_type)
    console.show_result(result)
    if result.status is ResultStatus.FAILURE:
        sys.exit(1)


@cli.command()
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_obj
def history(app_config, limit: int) -> None:
    """Show recent sync sessions."""
    store = _session_store(app_config)
    SyncConsole().show_sessions([session.to_dict() for session in store.list_sessions(limit)])


@cli.command()
@click.option("--port", type=int, help="Port of the status API")
@click.pass_obj
def daemon(app_config, port: Optional[int]) -> None:
    """Run scheduled syncs and serve the status API."""
    from recordsync.daemon import SyncDaemon
    from recordsync.web.app import create_app

    issues = validate_sync_config(app_config.sync)
    if issues:
        _log_issues(issues)
        sys.exit(2)

    sync_daemon = SyncDaemon(app_config)
    sync_daemon.start()

    app = create_app(sync_daemon)
    port = port or app_config.web_port
    logger.info(f"Starting status API on port {port}...")

    def signal_handler(signum, frame) -> None:  # type: ignore
        """Handle shutdown signals."""
        logger.info("Shutdown signal received, stopping daemon...")
        sync_daemon.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        app.run(
            host="0.0.0.0",  # nosec S104 - intended for container deployment
            port=port,
            debug=False,
            use_reloader=False,
            threaded=True,
        )
    except OSError as e:
        logger.error(f"Failed to start status API: {e}")
        sync_daemon.stop()
        sys.exit(1)


def _stream_run(console: SyncConsole, orchestrator: SyncOrchestrator, sync_config, actor: Optional[str]) -> dict:
    """Run batch by batch and return the final session status."""
    session_id = str(uuid.uuid4())
    for batch in orchestrator.stream_and_process(sync_config, actor=actor, session_id=session_id):
        console.show_batch(batch.batch_number, batch.stats.to_dict(), batch.failed)
    session = orchestrator.get_sync_status(session_id)
    console.show_sessions([session])
    return session


def _session_store(app_config) -> SqliteSessionStore:
    return SqliteSessionStore(str(Path(app_config.data_dir) / "sessions.db"))


def _log_issues(issues: list[ConfigIssue]) -> None:
    logger.error("Configuration validation failed:")
    for issue in issues:
        logger.error(f"  - {issue.field}: {issue.message}")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
