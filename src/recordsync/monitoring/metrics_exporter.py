"""Prometheus metrics exporter for monitoring."""

import os
from pathlib import Path
from datetime import datetime
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Gauge, Info, write_to_textfile

from ..domain.models import ResultStatus, SyncResult


class MetricsExporter:
    """Export sync metrics to Prometheus textfile format."""

    def __init__(self, metrics_dir: str = "./metrics"):
        self.metrics_dir = Path(metrics_dir)
        self.metrics_dir.mkdir(parents=True, exist_ok=True)
        self.metrics_file = self.metrics_dir / "recordsync.prom"
        self.health_file = self.metrics_dir / "recordsync_health.prom"

    def export_sync_metrics(
        self,
        result: SyncResult,
        sync_type: str,
        error: Optional[str] = None,
    ) -> None:
        """Export the result of a sync run."""
        registry = CollectorRegistry()
        stats = result.stats

        Gauge(
            "recordsync_sync_duration_seconds",
            "Duration of the last sync run in seconds",
            registry=registry,
        ).set(result.processing_time_ms / 1000.0)

        Gauge(
            "recordsync_records_processed",
            "Records processed by the last sync run",
            registry=registry,
        ).set(stats.total_processed)

        outcomes = Gauge(
            "recordsync_records",
            "Records by outcome in the last sync run",
            ["outcome"],
            registry=registry,
        )
        outcomes.labels(outcome="created").set(stats.created)
        outcomes.labels(outcome="updated").set(stats.updated)
        outcomes.labels(outcome="existing").set(stats.existing)
        outcomes.labels(outcome="error").set(stats.errors)

        Gauge(
            "recordsync_last_sync_timestamp",
            "Timestamp of the last sync run",
            registry=registry,
        ).set(datetime.now().timestamp())

        Gauge(
            "recordsync_sync_success",
            "Whether the last sync run succeeded (1=success, 0=otherwise)",
            registry=registry,
        ).set(1 if result.status is ResultStatus.SUCCESS else 0)

        Info("recordsync_build_info", "Build information", registry=registry).info(
            {
                "version": os.getenv("APP_VERSION", "0.1.0"),
                "sync_type": sync_type,
                "status": result.status.value,
                "error": error or "",
            }
        )

        write_to_textfile(str(self.metrics_file), registry)

    def export_health_metrics(self, health: Dict[str, Dict[str, str]]) -> None:
        """Export the output of ``HealthChecker.check_all``."""
        registry = CollectorRegistry()
        gauge = Gauge(
            "recordsync_component_healthy",
            "Component health status (1=healthy, 0=unhealthy)",
            ["component"],
            registry=registry,
        )
        for component, status in health.items():
            gauge.labels(component=component).set(1 if status["status"] == "healthy" else 0)

        write_to_textfile(str(self.health_file), registry)
