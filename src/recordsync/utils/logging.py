"""Structured logging setup for machine-readable logs."""

import json
import logging
import structlog
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..domain.models import SyncResult


class StructuredLogger:
    """Handles structured JSON logging for sync runs."""

    def __init__(self, log_dir: str = "./logs"):
        self.log_dir = Path(log_dir)
        self.log_file = self.log_dir / "sync.jsonl"

        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="ISO"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.JSONRenderer(),
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        self.logger = structlog.get_logger("recordsync.sync")

    def log_sync_start(
        self,
        sync_type: str,
        source: str,
        target: str,
        dry_run: bool = False,
    ) -> None:
        """Log sync run start."""
        self.logger.info(
            "sync_started",
            operation="sync",
            sync_type=sync_type,
            source=source,
            target=target,
            dry_run=dry_run,
            timestamp=datetime.now().isoformat(),
        )

    def log_sync_complete(self, result: SyncResult, sync_type: str) -> None:
        """Log sync run completion and append it to the JSONL file."""
        log_entry: Dict[str, Any] = {
            "operation": "sync",
            "sync_type": sync_type,
            "session_id": result.session_id,
            "status": result.status.value,
            "duration_ms": result.processing_time_ms,
            "results": result.stats.to_dict(),
            "timestamp": datetime.now().isoformat(),
        }
        if result.error_details:
            log_entry["errors"] = result.error_details[:10]

        self.logger.info("sync_completed", **log_entry)
        self._write_to_file(log_entry)

    def log_sync_error(self, sync_type: str, error: Dict[str, Any]) -> None:
        """Log a run that failed before it could produce a result."""
        log_entry = {
            "operation": "sync",
            "sync_type": sync_type,
            "status": "failure",
            "error": error,
            "timestamp": datetime.now().isoformat(),
        }
        self.logger.error("sync_failed", **log_entry)
        self._write_to_file(log_entry)

    def log_validation_error(self, issues: List[Dict[str, Any]]) -> None:
        """Log configuration validation errors."""
        self.logger.error(
            "validation_failed",
            operation="validation",
            errors=issues,
            timestamp=datetime.now().isoformat(),
        )

    def _write_to_file(self, log_entry: Dict[str, Any]) -> None:
        """Write log entry to JSONL file."""
        try:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(log_entry, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            # Don't fail the sync run due to logging issues
            logging.getLogger(__name__).warning(f"Failed to write to log file: {e}")


def read_log_entries(log_dir: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Read the most recent entries of ``sync.jsonl``, newest last."""
    log_file = Path(log_dir) / "sync.jsonl"
    if not log_file.exists():
        return []
    with open(log_file, "r", encoding="utf-8") as f:
        entries = [json.loads(line) for line in f if line.strip()]
    return entries[-limit:] if limit else entries


def setup_console_logging(level: str) -> None:
    """Setup basic console logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )
