"""Health checks for the configured source and target."""

import logging
from typing import Any, Dict, Tuple

from ..config.manager import SyncConfig
from ..factories.registry import create_adapter, create_target

logger = logging.getLogger(__name__)


class HealthChecker:
    """Health check for the source adapter and target store of a sync config."""

    def __init__(self, config: SyncConfig):
        self.config = config

    def check_source_health(self) -> Tuple[bool, str]:
        """Initialize the source adapter and validate its connection."""
        try:
            adapter = create_adapter(self.config.source_adapter)
            state = adapter.initialize(self.config.source_config)
            adapter.validate_connection(state)
            return True, "OK"
        except Exception as e:
            logger.error(f"Source health check failed: {e}")
            return False, str(e)

    def check_target_health(self) -> Tuple[bool, str]:
        """Ping the target store."""
        try:
            store = create_target(
                self.config.target_resource,
                self.config.target_config.unique_field,
                self.config.target_options,
            )
            if store.ping():
                return True, "OK"
            return False, "Connection test failed"
        except Exception as e:
            logger.error(f"Target health check failed: {e}")
            return False, str(e)

    def check_all(self) -> Dict[str, Dict[str, Any]]:
        """Perform all health checks and return status."""
        source_healthy, source_msg = self.check_source_health()
        target_healthy, target_msg = self.check_target_health()
        healthy = source_healthy and target_healthy

        return {
            "source": {
                "status": "healthy" if source_healthy else "unhealthy",
                "message": source_msg,
            },
            "target": {
                "status": "healthy" if target_healthy else "unhealthy",
                "message": target_msg,
            },
            "overall": {
                "status": "healthy" if healthy else "unhealthy",
                "message": "All components healthy" if healthy else "One or more components unhealthy",
            },
        }
