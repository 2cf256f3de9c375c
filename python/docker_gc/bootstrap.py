"""
Startup reconciliation of the usage ledger against Docker state.

Runs once before the first sweep:

1. Load persisted usage records.
2. For every container (running or stopped), record a use of its image:
   the finish time for exited containers, now for the others.
3. Record "now" for every image that still has no usage record, so images
   with unknown history are kept for a full retention window.

Listing failures only make the ledger more conservative, so they are logged
as warnings and never abort startup.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Set

from docker_gc.logging_utils import get_logger
from docker_gc.runtime_client import ContainerDescriptor, RuntimeObserver, RuntimeObserverError
from docker_gc.usage_ledger import UsageLedger, utcnow

logger = get_logger(__name__)


@dataclass
class BootstrapSummary:
    loaded: int = 0
    from_containers: int = 0
    from_images: int = 0
    pruned: int = 0
    containers_listed: bool = False
    images_listed: bool = False


class ReconciliationBootstrapper:
    """Rebuilds the usage ledger from the usage store and the runtime"""

    def __init__(self, runtime: RuntimeObserver, ledger: UsageLedger,
                 clock: Callable[[], datetime] = utcnow, prune_missing: bool = False):
        """
        Args:
            runtime: Container runtime to reconcile against
            ledger: Ledger to populate
            clock: Source of "now"
            prune_missing: Drop records of images that no longer exist
        """
        self.runtime = runtime
        self.ledger = ledger
        self.clock = clock
        self.prune_missing = prune_missing

    def reconcile(self) -> BootstrapSummary:
        summary = BootstrapSummary()
        now = self.clock()
        with self.ledger.lock:
            summary.loaded = self.ledger.load()
            self._load_from_containers(now, summary)
            self._load_from_images(now, summary)
        logger.info(
            f"Loaded {len(self.ledger)} images from Docker "
            f"(persisted: {summary.loaded}, from containers: {summary.from_containers}, "
            f"new images: {summary.from_images}, pruned: {summary.pruned})"
        )
        return summary

    def _load_from_containers(self, now: datetime, summary: BootstrapSummary) -> None:
        logger.info("Setting last use from containers")
        try:
            containers = self.runtime.list_containers(all=True)
        except RuntimeObserverError as e:
            logger.warning(f"Cannot get list of containers, image last usage may be less accurate: {e}")
            return
        summary.containers_listed = True

        for container in containers:
            logger.debug(f"Reading container {container.id}")
            image_id = self._resolve_image(container)
            if image_id is None:
                continue
            usage = self._container_usage(container, now)
            if usage is None:
                continue
            if self.ledger.set(image_id, usage) is not None:
                summary.from_containers += 1

    def _resolve_image(self, container: ContainerDescriptor) -> Optional[str]:
        if container.image_id:
            return container.image_id
        try:
            return self.runtime.inspect_image(container.image_ref).id
        except RuntimeObserverError as e:
            logger.warning(f"Cannot inspect image {container.image_ref} for container {container.id}: {e}")
            return None

    def _container_usage(self, container: ContainerDescriptor, now: datetime) -> Optional[datetime]:
        if not container.exited:
            return now
        logger.debug(f"Container {container.id} exited, adjusting image last usage")
        try:
            details = self.runtime.inspect_container(container.id)
        except RuntimeObserverError as e:
            logger.warning(f"Cannot inspect container {container.id}, skipping image update: {e}")
            return None
        if details.finished_at is None:
            logger.warning(f"Container {container.id} has no finish time, skipping image update")
            return None
        return details.finished_at

    def _load_from_images(self, now: datetime, summary: BootstrapSummary) -> None:
        logger.info("Reading image data from Docker")
        try:
            images = self.runtime.list_images()
        except RuntimeObserverError as e:
            logger.warning(f"Cannot list images from Docker: {e}")
            return
        summary.images_listed = True

        existing: Set[str] = set()
        for image in images:
            existing.add(image.id)
            old = self.ledger.get(image.id)
            if old is not None:
                logger.debug(f"Not updating image {image.id}, last use {old}")
                continue
            logger.debug(f"Updating image {image.id}, last use {now}")
            self.ledger.set(image.id, now)
            summary.from_images += 1

        if self.prune_missing:
            for image_id, _ in self.ledger.items():
                if image_id not in existing:
                    logger.info(f"Image {image_id} no longer exists, dropping its usage record")
                    self.ledger.delete(image_id)
                    summary.pruned += 1
