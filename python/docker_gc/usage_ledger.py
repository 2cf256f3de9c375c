"""Last-use ledger for Docker images"""

import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple

from docker_gc.logging_utils import get_logger
from docker_gc.usage_store import StoreError, UsageStore

logger = get_logger(__name__)


class PersistResult(Enum):
    """Outcome of mirroring a ledger change to the usage store"""

    PERSISTED = "persisted"
    DEGRADED = "degraded"  # store configured but the write failed
    MEMORY_ONLY = "memory_only"  # no store configured


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _utc(when: datetime) -> datetime:
    if when.tzinfo is None:
        return when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc)


class UsageLedger:
    """Maps image ids to the last time the image was known to be used.

    The in-memory map is authoritative for the running process; the optional
    store is a best-effort mirror. Store failures are logged and reported
    through ``PersistResult`` but never raised.

    ``lock`` is re-entrant so a sweep can hold it across several ledger calls
    while the event thread waits.
    """

    def __init__(self, store: Optional[UsageStore] = None):
        self.store = store
        self.lock = threading.RLock()
        self._last_use: Dict[str, datetime] = {}
        self.degraded_writes = 0

    @property
    def persistent(self) -> bool:
        return self.store is not None

    def load(self) -> int:
        """Load persisted records into memory; returns the number loaded"""
        if self.store is None:
            return 0
        try:
            records = self.store.load_all()
        except StoreError as e:
            logger.warning(f"Cannot load persisted image usage, starting from Docker state only: {e}")
            return 0
        with self.lock:
            for image_id, when in records.items():
                when = _utc(when)
                old = self._last_use.get(image_id)
                if old is None or old < when:
                    self._last_use[image_id] = when
        logger.info(f"Loaded {len(records)} image usage records from {self.store.backend} store")
        return len(records)

    def get(self, image_id: str) -> Optional[datetime]:
        with self.lock:
            return self._last_use.get(image_id)

    def set(self, image_id: str, when: datetime) -> Optional[PersistResult]:
        """Record a use of ``image_id`` at ``when`` if it is newer than the known one.

        Returns:
            None when the record already holds the same or a later time,
            otherwise how the update was persisted
        """
        when = _utc(when)
        with self.lock:
            old = self._last_use.get(image_id)
            if old is not None and not old < when:
                logger.debug(f"Not updating image {image_id}: last use {old} is not before {when}")
                return None

            logger.debug(f"Updating image {image_id} last use to {when}")
            self._last_use[image_id] = when
            if self.store is None:
                return PersistResult.MEMORY_ONLY
            try:
                self.store.put(image_id, when)
            except StoreError as e:
                self.degraded_writes += 1
                logger.error(f"Cannot update image data for {image_id}: {e}")
                return PersistResult.DEGRADED
            return PersistResult.PERSISTED

    def delete(self, image_id: str) -> PersistResult:
        """Forget ``image_id`` in memory and in the store"""
        with self.lock:
            self._last_use.pop(image_id, None)
            if self.store is None:
                return PersistResult.MEMORY_ONLY
            logger.debug(f"Removing image {image_id} from {self.store.backend} store")
            try:
                self.store.delete(image_id)
            except StoreError as e:
                self.degraded_writes += 1
                logger.warning(f"Error while removing image {image_id} from store: {e}")
                return PersistResult.DEGRADED
            return PersistResult.PERSISTED

    def items(self) -> Iterator[Tuple[str, datetime]]:
        """Snapshot of all records"""
        with self.lock:
            return iter(list(self._last_use.items()))

    def __len__(self) -> int:
        with self.lock:
            return len(self._last_use)

    def __contains__(self, image_id: str) -> bool:
        with self.lock:
            return image_id in self._last_use

    def close(self) -> None:
        if self.store is not None:
            self.store.close()
