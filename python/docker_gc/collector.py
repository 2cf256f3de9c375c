"""
Image eviction sweep.

Each sweep:

1. Removes dangling images (untagged build byproducts) unconditionally.
2. Collects the ids of images referenced by any container, running or not.
3. Removes images whose last recorded use is older than the retention
   cutoff and which no container references. Images without a usage record
   are never removed here.
4. Forgets expired usage records of images that are already gone.

Removal failures are logged and the sweep moves on to the next image.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Set

from tabulate import tabulate

from docker_gc.logging_utils import get_logger
from docker_gc.runtime_client import ImageNotFoundError, RuntimeObserver, RuntimeObserverError
from docker_gc.usage_ledger import UsageLedger, utcnow

logger = get_logger(__name__)


@dataclass
class CollectionSummary:
    """What a single sweep did"""

    dangling_removed: List[str] = field(default_factory=list)
    expired_removed: List[str] = field(default_factory=list)
    skipped_in_use: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    forgotten: List[str] = field(default_factory=list)
    age_eviction_skipped: bool = False
    dry_run: bool = False

    @property
    def removed(self) -> List[str]:
        return self.dangling_removed + self.expired_removed


class ImageCollector:
    """Removes dangling images and images unused for longer than ``max_age``"""

    def __init__(self, runtime: RuntimeObserver, ledger: UsageLedger, max_age: timedelta,
                 clock: Callable[[], datetime] = utcnow, dry_run: bool = False):
        self.runtime = runtime
        self.ledger = ledger
        self.max_age = max_age
        self.clock = clock
        self.dry_run = dry_run

    def collect(self) -> CollectionSummary:
        summary = CollectionSummary(dry_run=self.dry_run)
        with self.ledger.lock:
            self._remove_dangling(summary)
            in_use = self._images_in_use()
            if in_use is None:
                summary.age_eviction_skipped = True
                logger.warning("Skipping age based eviction, images in use are unknown")
            else:
                self._remove_expired(in_use, summary)
        self.log_summary(summary)
        return summary

    def _remove_dangling(self, summary: CollectionSummary) -> None:
        try:
            dangling = self.runtime.list_images(dangling=True)
        except RuntimeObserverError as e:
            logger.error(f"Cannot get list of dangling images: {e}")
            return
        for image in dangling:
            logger.info(f"Remove dangling image {image.id}")
            if self._remove_image(image.id, summary):
                summary.dangling_removed.append(image.id)

    def _images_in_use(self) -> Optional[Set[str]]:
        """Ids of images referenced by any container, or None if containers cannot be listed"""
        try:
            containers = self.runtime.list_containers(all=True)
        except RuntimeObserverError as e:
            logger.error(f"Cannot get list of containers: {e}")
            return None

        in_use: Set[str] = set()
        for container in containers:
            image_id = container.image_id
            if not image_id:
                try:
                    image_id = self.runtime.inspect_image(container.image_ref).id
                except RuntimeObserverError as e:
                    logger.warning(f"Cannot inspect image {container.image_ref} for container {container.id}: {e}")
                    continue
            logger.debug(f"Image {image_id} is used by container {container.id}")
            in_use.add(image_id)
        return in_use

    def _remove_expired(self, in_use: Set[str], summary: CollectionSummary) -> None:
        cutoff = self.clock() - self.max_age
        logger.debug(f"Purging all unused images since {cutoff.replace(microsecond=0)}")
        try:
            images = self.runtime.list_images()
        except RuntimeObserverError as e:
            logger.error(f"Cannot list images: {e}")
            return

        already_removed = set(summary.dangling_removed)
        for image in images:
            if image.id in already_removed:
                continue
            last_use = self.ledger.get(image.id)
            if last_use is None or not last_use < cutoff:
                continue
            if image.id in in_use:
                logger.debug(f"Keeping image {image.id} unused since {last_use}, referenced by a container")
                summary.skipped_in_use.append(image.id)
                continue
            logger.info(f"Purging unused image {image.id}, last use {last_use}")
            if self._remove_image(image.id, summary):
                summary.expired_removed.append(image.id)

        self._forget_missing({image.id for image in images}, cutoff, summary)

    def _forget_missing(self, existing: Set[str], cutoff: datetime, summary: CollectionSummary) -> None:
        """Drop expired records of images that no longer exist.

        Such a record could only ever make its image eligible for removal, so
        once expired it carries nothing and would otherwise stay forever.
        """
        if self.dry_run:
            return
        for image_id, last_use in self.ledger.items():
            if image_id in existing or not last_use < cutoff:
                continue
            logger.info(f"Image {image_id} no longer exists, forgetting its usage since {last_use}")
            self.ledger.delete(image_id)
            summary.forgotten.append(image_id)

    def _remove_image(self, image_id: str, summary: CollectionSummary) -> bool:
        if self.dry_run:
            logger.info(f"DRY RUN: would remove image {image_id}")
            return True
        logger.info(f"Removing image {image_id}")
        try:
            self.runtime.remove_image(image_id)
        except ImageNotFoundError:
            # Removed by someone else in the meantime
            logger.info(f"Image {image_id} is already gone")
        except RuntimeObserverError as e:
            logger.error(f"Cannot remove image {image_id}: {e}")
            summary.failed.append(image_id)
            return False
        self.ledger.delete(image_id)
        return True

    def log_summary(self, summary: CollectionSummary) -> None:
        mode = "DRY RUN: " if summary.dry_run else ""
        if not summary.removed and not summary.failed:
            logger.debug(f"{mode}Nothing to remove")
            return
        verb = "Would remove" if summary.dry_run else "Removed"
        logger.info(
            f"{mode}Sweep summary: {verb} {len(summary.dangling_removed)} dangling and "
            f"{len(summary.expired_removed)} expired images, {len(summary.failed)} failed, "
            f"{len(summary.skipped_in_use)} kept (in use)"
        )


def format_usage_report(runtime: RuntimeObserver, ledger: UsageLedger, max_age: timedelta,
                        now: datetime) -> str:
    """Render the ledger as a table, oldest use first, with the time left before eviction"""
    tags = {}
    try:
        for image in runtime.list_images():
            tags[image.id] = ", ".join(image.tags) or "<dangling>"
    except RuntimeObserverError as e:
        logger.warning(f"Cannot list images, tags will be missing from the report: {e}")

    headers = ["Image ID", "Tags", "Last use", "Idle", "Evicted in"]
    rows = []
    for image_id, last_use in sorted(ledger.items(), key=lambda item: item[1]):
        idle = now - last_use
        remaining = max(max_age - idle, timedelta(0))
        rows.append((
            image_id,
            tags.get(image_id, "<not present>"),
            last_use.replace(microsecond=0).isoformat(),
            str(idle).split(".")[0],
            str(remaining).split(".")[0],
        ))
    return tabulate(rows, headers=headers, tablefmt="grid")
