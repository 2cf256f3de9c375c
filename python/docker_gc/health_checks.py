"""
Health check utilities for verifying connectivity and configuration.

This module provides health checks for:
- Configuration validity
- Docker daemon connectivity (required)
- Usage store access (optional: the daemon degrades to memory-only)
"""

import os
from dataclasses import dataclass
from typing import Dict, List, Optional

from docker_gc.config_manager import ConfigManager, ConfigValidationError
from docker_gc.error_utils import create_docker_connection_error
from docker_gc.logging_utils import get_logger
from docker_gc.runtime_client import DockerRuntime, RuntimeObserver, RuntimeObserverError
from docker_gc.usage_store import StoreError, open_usage_store

REQUIRED_CHECKS = ("configuration", "docker_connectivity")


@dataclass
class HealthCheckResult:
    """Result of a health check"""

    name: str
    status: bool  # True if healthy, False if unhealthy
    message: str
    details: Optional[Dict] = None


class HealthChecker:
    """Performs health checks on system components"""

    def __init__(self, config: ConfigManager, runtime: Optional[RuntimeObserver] = None):
        self.config = config
        self.runtime = runtime
        self.logger = get_logger(self.__class__.__name__)

    def check_configuration(self) -> HealthCheckResult:
        try:
            self.config.validate_config()
        except ConfigValidationError as e:
            return HealthCheckResult(name="configuration", status=False, message=str(e))
        return HealthCheckResult(
            name="configuration",
            status=True,
            message="Configuration is valid",
            details={
                "max_age": str(self.config.get_max_age()),
                "purge_frequency": str(self.config.get_purge_frequency()),
                "store_backend": self.config.get_store_backend(),
            },
        )

    def check_docker_connectivity(self) -> HealthCheckResult:
        """Check if the Docker daemon is reachable

        Returns:
            HealthCheckResult indicating Docker connectivity status
        """
        base_url = self.config.get_docker_base_url()
        self.logger.info(f"Checking Docker connectivity at {base_url or os.environ.get('DOCKER_HOST') or 'the default socket'}")
        try:
            if self.runtime is None:
                self.runtime = DockerRuntime(base_url=base_url, timeout=self.config.get_docker_timeout())
            self.runtime.ping()
            return HealthCheckResult(
                name="docker_connectivity",
                status=True,
                message="Successfully connected to Docker daemon",
                details={"base_url": base_url or "default"},
            )
        except RuntimeObserverError as e:
            actionable_error = create_docker_connection_error(base_url, e)
            return HealthCheckResult(
                name="docker_connectivity",
                status=False,
                message=actionable_error.message,
                details={
                    "base_url": base_url,
                    "error": str(e),
                    "suggestions": actionable_error.suggestions,
                },
            )

    def check_usage_store(self) -> HealthCheckResult:
        backend = self.config.get_store_backend()
        if backend == "none":
            return HealthCheckResult(
                name="usage_store", status=True, message="Persistence disabled by configuration"
            )
        store = open_usage_store(self.config)
        if store is None:
            return HealthCheckResult(
                name="usage_store",
                status=False,
                message=f"Cannot open {backend} usage store, usage history would be kept in memory only",
                details={"backend": backend},
            )
        try:
            count = len(store.load_all())
        except StoreError as e:
            return HealthCheckResult(
                name="usage_store",
                status=False,
                message=f"Cannot read {backend} usage store: {e}",
                details={"backend": backend},
            )
        finally:
            store.close()
        return HealthCheckResult(
            name="usage_store",
            status=True,
            message=f"Successfully opened {backend} usage store",
            details={"backend": backend, "records": count},
        )

    def run_all_checks(self, skip_optional: bool = False) -> List[HealthCheckResult]:
        results = [self.check_configuration(), self.check_docker_connectivity()]
        if not skip_optional:
            results.append(self.check_usage_store())
        return results

    def print_health_report(self, results: List[HealthCheckResult]) -> None:
        """Print a human readable health report"""
        print("\n" + "=" * 60)
        print("Health Check Report")
        print("=" * 60)
        for result in results:
            marker = "OK  " if result.status else "FAIL"
            print(f"[{marker}] {result.name}: {result.message}")
            if result.details:
                for key, value in result.details.items():
                    if key == "suggestions":
                        for suggestion in value:
                            print(f"         - {suggestion}")
                    else:
                        print(f"         {key}: {value}")
        print("=" * 60)

    @staticmethod
    def all_required_passed(results: List[HealthCheckResult]) -> bool:
        return all(r.status for r in results if r.name in REQUIRED_CHECKS)
