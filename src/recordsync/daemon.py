"""Background daemon for scheduled synchronization."""

import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from recordsync.config import AppConfig
from recordsync.domain.errors import SyncError
from recordsync.domain.models import SyncResult
from recordsync.monitoring.health_check import HealthChecker
from recordsync.monitoring.metrics_exporter import MetricsExporter
from recordsync.sync.engine import SyncOrchestrator
from recordsync.sync.events import StructlogEventSink
from recordsync.sync.session_store import SqliteSessionStore
from recordsync.sync.tracker import SessionTracker
from recordsync.utils.logging import StructuredLogger

logger = logging.getLogger(__name__)


class SyncDaemon:
    """Manages scheduled synchronization."""

    def __init__(
        self,
        config: AppConfig,
        orchestrator: Optional[SyncOrchestrator] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        """Initialize daemon.

        Args:
            config: Application configuration
            orchestrator: Orchestrator to run syncs with; by default one
                backed by a SQLite session store in ``data_dir``
            scheduler: APScheduler instance
        """
        self.config = config
        self.scheduler = scheduler or BackgroundScheduler()

        if orchestrator is None:
            sink = StructlogEventSink()
            store = SqliteSessionStore(str(Path(config.data_dir) / "sessions.db"))
            orchestrator = SyncOrchestrator(
                tracker=SessionTracker(store=store, event_sink=sink), event_sink=sink
            )
        self.orchestrator = orchestrator
        self.structured_logger = StructuredLogger(config.log_dir)
        self.metrics = MetricsExporter(config.metrics_dir)
        self.health = HealthChecker(config.sync)

    @property
    def sync_type(self) -> str:
        return self.config.sync.session_config.sync_type

    def _sync_job(self, session_id: Optional[str] = None) -> Optional[SyncResult]:
        """Execute a sync job."""
        logger.info("Starting scheduled sync job...")
        sync = self.config.sync
        self.structured_logger.log_sync_start(
            self.sync_type, str(sync.source_adapter), str(sync.target_resource)
        )

        try:
            result = self.orchestrator.execute_sync(
                sync, actor=sync.session_config.initiated_by or "scheduler", session_id=session_id
            )
        except SyncError as e:
            self.structured_logger.log_sync_error(self.sync_type, e.to_dict())
            logger.error(f"Sync job failed: {e}")
            return None

        self.structured_logger.log_sync_complete(result, self.sync_type)
        self.metrics.export_sync_metrics(result, self.sync_type)
        logger.info(
            f"Sync completed in {result.processing_time_ms / 1000:.2f}s with status "
            f"{result.status.value}: {result.stats.to_dict()}"
        )
        return result

    def start(self) -> None:
        """Start the daemon."""
        logger.info("Starting SyncDaemon...")

        schedule = self.config.schedule
        logger.info(f"Scheduling sync with cron: {schedule}")

        self.scheduler.add_job(
            self._sync_job,
            "cron",
            **self._parse_cron(schedule),
            id="sync_job",
            name=f"{self.sync_type} sync",
            max_instances=1,
        )

        self.scheduler.start()
        logger.info("SyncDaemon started")

    def stop(self) -> None:
        """Stop the daemon."""
        logger.info("Stopping SyncDaemon...")
        self.scheduler.shutdown(wait=True)
        logger.info("SyncDaemon stopped")

    def sync_now(self) -> Dict[str, Any]:
        """Execute sync immediately.

        Returns:
            Sync result, or the structured error if the run could not start
        """
        logger.info("Manual sync triggered")
        try:
            return self.orchestrator.execute_sync(
                self.config.sync, actor="manual"
            ).to_dict()
        except SyncError as e:
            logger.error(f"Manual sync failed: {e}")
            return {"status": "failure", "error": e.to_dict()}

    def sync_in_background(self) -> str:
        """Queue a one-off sync on the scheduler and return its session id."""
        session_id = str(uuid.uuid4())
        self.scheduler.add_job(
            self._sync_job,
            kwargs={"session_id": session_id},
            id=f"manual-{session_id}",
            name="manual sync",
        )
        logger.info(f"Queued manual sync {session_id}")
        return session_id

    def check_health(self) -> Dict[str, Dict[str, Any]]:
        health = self.health.check_all()
        self.metrics.export_health_metrics(health)
        return health

    @staticmethod
    def _parse_cron(cron_string: str) -> dict:
        """Parse cron string to APScheduler kwargs.

        Args:
            cron_string: Cron format string (minute hour day month day_of_week)

        Returns:
            Dictionary for APScheduler
        """
        parts = cron_string.split()
        if len(parts) != 5:
            logger.warning(f"Invalid cron format: {cron_string}, using hourly")
            return {"minute": 0}

        minute, hour, day, month, day_of_week = parts

        return {
            "minute": minute if minute != "*" else 0,
            "hour": hour,
            "day": day,
            "month": month,
            "day_of_week": day_of_week,
        }
