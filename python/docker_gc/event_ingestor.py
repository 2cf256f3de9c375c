"""Records image usage from Docker "container destroyed" events"""

import threading
from datetime import datetime
from typing import Callable, Iterable, Optional

from docker_gc.logging_utils import get_logger, log_exception
from docker_gc.runtime_client import (
    CONTAINER_DESTROYED,
    ImageNotFoundError,
    RuntimeEvent,
    RuntimeObserver,
    RuntimeObserverError,
)
from docker_gc.usage_ledger import UsageLedger, utcnow

logger = get_logger(__name__)


class EventIngestor:
    """Consumes runtime events in arrival order and updates the ledger.

    The recorded time is when the event was observed, not the event's own
    timestamp: the ledger's "only if newer" rule relies on observation order.
    """

    def __init__(self, runtime: RuntimeObserver, ledger: UsageLedger,
                 clock: Callable[[], datetime] = utcnow, reconnect_delay: float = 5.0):
        self.runtime = runtime
        self.ledger = ledger
        self.clock = clock
        self.reconnect_delay = reconnect_delay
        self.processed = 0
        self.dropped = 0
        # Set once a subscription is open; events from then on are not missed
        self.subscribed = threading.Event()

    def handle(self, event: RuntimeEvent) -> bool:
        """Apply one event; returns True when the ledger was consulted for an update"""
        if event.kind != CONTAINER_DESTROYED:
            return False

        observed_at = self.clock()
        if not event.resource_ref:
            self.dropped += 1
            logger.warning(f"Destroy event for container {event.actor_id} carries no image reference, ignoring")
            return False

        # Resolve and record under the ledger lock so a sweep cannot remove the
        # image (and its record) between the two steps
        with self.ledger.lock:
            try:
                image = self.runtime.inspect_image(event.resource_ref)
            except ImageNotFoundError:
                self.dropped += 1
                logger.info(
                    f"Image {event.resource_ref} of destroyed container {event.actor_id} no longer exists, "
                    "ignoring event"
                )
                return False
            except RuntimeObserverError as e:
                self.dropped += 1
                logger.warning(f"Cannot inspect image {event.resource_ref} for container {event.actor_id}: {e}")
                return False

            logger.debug(f"Container {event.actor_id} destroyed, image {image.id} last used at {observed_at}")
            self.ledger.set(image.id, observed_at)
        self.processed += 1
        return True

    def run(self, events: Iterable[RuntimeEvent], stop_event: Optional[threading.Event] = None) -> None:
        """Process events strictly in arrival order until the stream ends or stop is requested"""
        for event in events:
            if stop_event is not None and stop_event.is_set():
                break
            self.handle(event)

    def run_forever(self, stop_event: threading.Event) -> None:
        """Subscribe to runtime events, resubscribing whenever the stream ends or fails"""
        while not stop_event.is_set():
            try:
                events = self.runtime.subscribe_events()
                self.subscribed.set()
                self.run(events, stop_event)
                if not stop_event.is_set():
                    logger.warning("Docker event stream ended")
            except RuntimeObserverError as e:
                logger.error(f"Docker event stream failed: {e}")
            except Exception as e:
                log_exception(logger, "Unexpected error while reading Docker events", e)
            if stop_event.wait(self.reconnect_delay):
                break
            logger.info("Resubscribing to Docker events")
