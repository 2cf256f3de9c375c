"""
Docker image garbage collection daemon.

Wires the usage ledger, the event ingestor, the startup reconciliation and
the periodic sweep together:

    Docker events -> EventIngestor -> UsageLedger
    SweepScheduler tick -> ImageCollector -> removals -> UsageLedger
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from docker_gc.bootstrap import BootstrapSummary, ReconciliationBootstrapper
from docker_gc.collector import CollectionSummary, ImageCollector
from docker_gc.config_manager import ConfigManager
from docker_gc.error_utils import create_docker_connection_error
from docker_gc.event_ingestor import EventIngestor
from docker_gc.logging_utils import get_logger
from docker_gc.runtime_client import DockerRuntime, RuntimeObserver, RuntimeObserverError
from docker_gc.scheduler import SweepScheduler
from docker_gc.usage_ledger import UsageLedger, utcnow
from docker_gc.usage_store import open_usage_store

logger = get_logger(__name__)

# Seconds to wait for the event subscription before reconciling without it
SUBSCRIBE_TIMEOUT = 10.0


class ImageGCDaemon:
    """Tracks image usage and periodically removes unused images"""

    def __init__(
        self,
        runtime: RuntimeObserver,
        ledger: UsageLedger,
        max_age: timedelta = timedelta(hours=72),
        purge_frequency: timedelta = timedelta(seconds=57),
        dry_run: bool = False,
        prune_missing_on_start: bool = False,
        reconnect_delay: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.runtime = runtime
        self.ledger = ledger
        self.max_age = max_age
        self.bootstrapper = ReconciliationBootstrapper(
            runtime, ledger, clock=clock, prune_missing=prune_missing_on_start
        )
        self.collector = ImageCollector(runtime, ledger, max_age, clock=clock, dry_run=dry_run)
        self.ingestor = EventIngestor(runtime, ledger, clock=clock, reconnect_delay=reconnect_delay)
        self.scheduler = SweepScheduler(purge_frequency, self.collect)
        self._stop = threading.Event()
        self._bootstrapped = False

    @classmethod
    def from_config(cls, config: ConfigManager, runtime: Optional[RuntimeObserver] = None) -> "ImageGCDaemon":
        """Build a daemon from configuration.

        Raises:
            ActionableError: If the Docker daemon cannot be reached
        """
        base_url = config.get_docker_base_url()
        try:
            if runtime is None:
                runtime = DockerRuntime(base_url=base_url, timeout=config.get_docker_timeout())
            runtime.ping()
        except RuntimeObserverError as e:
            raise create_docker_connection_error(base_url, e) from e

        ledger = UsageLedger(open_usage_store(config))
        return cls(
            runtime,
            ledger,
            max_age=config.get_max_age(),
            purge_frequency=config.get_purge_frequency(),
            dry_run=config.is_dry_run(),
            prune_missing_on_start=config.prune_missing_on_start(),
            reconnect_delay=config.get_reconnect_delay(),
        )

    def bootstrap(self) -> BootstrapSummary:
        summary = self.bootstrapper.reconcile()
        self._bootstrapped = True
        return summary

    def collect(self) -> CollectionSummary:
        """Run one sweep; safe to call from the timer or manually"""
        return self.collector.collect()

    def start(self) -> None:
        """Subscribe to Docker events, reconcile, then sweep periodically until stopped"""
        # Reading the event stream blocks indefinitely, so it gets its own thread
        # and the caller only waits for stop(). Subscribing before reconciling
        # means containers destroyed during startup are still seen; the ledger
        # keeps whichever of the event and reconciliation times is newer.
        ingest_thread = threading.Thread(
            target=self.ingestor.run_forever, args=(self._stop,), name="event-ingestor", daemon=True
        )
        ingest_thread.start()
        if not self.ingestor.subscribed.wait(SUBSCRIBE_TIMEOUT):
            logger.warning(
                f"Not subscribed to Docker events after {SUBSCRIBE_TIMEOUT}s, reconciling anyway; "
                "containers destroyed meanwhile may be missed"
            )
        if not self._bootstrapped:
            self.bootstrap()
        logger.info(f"Will purge all images unused for {self.max_age}")
        self.scheduler.start()
        try:
            while not self._stop.wait(1.0):
                pass
        finally:
            self.scheduler.stop()

    def stop(self) -> None:
        self._stop.set()
        self.scheduler.stop()

    def close(self) -> None:
        self.stop()
        self.ledger.close()
