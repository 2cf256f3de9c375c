"""
Durable storage for image last-use records.

A usage store is a single key-value namespace: one key per image id, the
value being the encoded last-use timestamp. Two backends are provided:

- ``SqliteUsageStore``: embedded database file on the host (default)
- ``MongoUsageStore``: a MongoDB collection, for hosts that already run one

``open_usage_store`` never raises: when the configured backend cannot be
opened, persistence is disabled and the caller keeps a memory-only ledger.
"""

import os
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from pymongo.errors import PyMongoError

from docker_gc.config_manager import ConfigManager
from docker_gc.error_utils import create_store_error
from docker_gc.logging_utils import get_logger
from docker_gc.mongo_utils import get_collection, get_mongo_client

logger = get_logger(__name__)

TABLE_IMAGES = "images"


class StoreError(Exception):
    """Raised when a usage store read, write or delete fails"""


def encode_timestamp(when: datetime) -> str:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc).isoformat()


def decode_timestamp(value) -> datetime:
    """Decode a stored timestamp into an aware UTC datetime.

    Raises:
        ValueError: If the value is not a timestamp
    """
    if isinstance(value, datetime):
        decoded = value
    elif isinstance(value, str):
        decoded = datetime.fromisoformat(value)
    else:
        raise ValueError(f"unsupported timestamp value: {value!r}")
    if decoded.tzinfo is None:
        decoded = decoded.replace(tzinfo=timezone.utc)
    return decoded.astimezone(timezone.utc)


class UsageStore(ABC):
    """Key-value persistence for image last-use timestamps"""

    backend = "abstract"

    @abstractmethod
    def load_all(self) -> Dict[str, datetime]:
        """Return every decodable record; undecodable entries are logged and skipped"""

    @abstractmethod
    def put(self, image_id: str, when: datetime) -> None:
        pass

    @abstractmethod
    def delete(self, image_id: str) -> None:
        pass

    def close(self) -> None:
        pass


class SqliteUsageStore(UsageStore):
    """Usage store in an embedded SQLite database file"""

    backend = "sqlite"

    def __init__(self, db_path: str, timeout: float = 1.0):
        """Open (and create if needed) the database.

        Args:
            db_path: Database file; its directory is created with mode 0700
            timeout: Seconds to wait for a database lock held by another process

        Raises:
            StoreError: If the directory or database cannot be created or opened
        """
        self.db_path = db_path
        dirname = os.path.dirname(os.path.abspath(db_path))
        try:
            Path(dirname).mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create db directory {dirname}: {e}") from e

        try:
            # Access is serialized by the ledger lock; the connection is shared
            # between the event and sweep threads
            self.conn = sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)
            with self.conn:
                self.conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {TABLE_IMAGES} (id TEXT PRIMARY KEY, last_use TEXT NOT NULL)"
                )
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open database {db_path}: {e}") from e
        logger.debug(f"Using table {TABLE_IMAGES} in {db_path}")

    def load_all(self) -> Dict[str, datetime]:
        try:
            rows = self.conn.execute(f"SELECT id, last_use FROM {TABLE_IMAGES}").fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot read image data from {self.db_path}: {e}") from e

        records: Dict[str, datetime] = {}
        for image_id, value in rows:
            try:
                records[image_id] = decode_timestamp(value)
            except ValueError as e:
                logger.warning(f"Cannot decode last usage for image {image_id}: {e}")
                continue
            logger.debug(f"Retrieved image data: image={image_id} last_use={records[image_id]}")
        return records

    def put(self, image_id: str, when: datetime) -> None:
        try:
            with self.conn:
                self.conn.execute(
                    f"INSERT INTO {TABLE_IMAGES} (id, last_use) VALUES (?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET last_use = excluded.last_use",
                    (image_id, encode_timestamp(when)),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Cannot update image data for {image_id}: {e}") from e

    def delete(self, image_id: str) -> None:
        try:
            with self.conn:
                self.conn.execute(f"DELETE FROM {TABLE_IMAGES} WHERE id = ?", (image_id,))
        except sqlite3.Error as e:
            raise StoreError(f"Cannot remove image {image_id} from database: {e}") from e

    def close(self) -> None:
        self.conn.close()


class MongoUsageStore(UsageStore):
    """Usage store in a MongoDB collection: ``{_id: image_id, last_use: date}``"""

    backend = "mongo"

    def __init__(self, collection, client=None):
        self.collection = collection
        self.client = client

    @classmethod
    def from_config(cls, config: ConfigManager) -> "MongoUsageStore":
        """Connect and verify the server answers a ping.

        Raises:
            StoreError: If MongoDB is not reachable
        """
        try:
            client = get_mongo_client(config)
            client.admin.command("ping")
        except PyMongoError as e:
            raise StoreError(f"Cannot connect to MongoDB: {e}") from e
        return cls(get_collection(config, client), client=client)

    def load_all(self) -> Dict[str, datetime]:
        try:
            documents = list(self.collection.find({}, {"last_use": 1}))
        except PyMongoError as e:
            raise StoreError(f"Cannot read image data from MongoDB: {e}") from e

        records: Dict[str, datetime] = {}
        for doc in documents:
            image_id = str(doc["_id"])
            try:
                records[image_id] = decode_timestamp(doc.get("last_use"))
            except ValueError as e:
                logger.warning(f"Cannot decode last usage for image {image_id}: {e}")
        return records

    def put(self, image_id: str, when: datetime) -> None:
        try:
            self.collection.replace_one(
                {"_id": image_id},
                {"_id": image_id, "last_use": decode_timestamp(when)},
                upsert=True,
            )
        except PyMongoError as e:
            raise StoreError(f"Cannot update image data for {image_id}: {e}") from e

    def delete(self, image_id: str) -> None:
        try:
            self.collection.delete_one({"_id": image_id})
        except PyMongoError as e:
            raise StoreError(f"Cannot remove image {image_id} from MongoDB: {e}") from e

    def close(self) -> None:
        if self.client is not None:
            self.client.close()


def open_usage_store(config: ConfigManager) -> Optional[UsageStore]:
    """Open the configured usage store, or return None for memory-only operation."""
    backend = config.get_store_backend()
    if backend == "none":
        logger.info("Persistence disabled by configuration, usage history is kept in memory only")
        return None

    if backend == "mongo":
        location = (
            f"{config.get_mongo_host()}:{config.get_mongo_port()}/{config.get_mongo_db()}.{config.get_mongo_collection()}"
        )
    else:
        location = config.get_db_path()

    try:
        if backend == "mongo":
            store = MongoUsageStore.from_config(config)
        else:
            store = SqliteUsageStore(location)
    except StoreError as e:
        error = create_store_error(backend, location, e)
        logger.warning(error.format_message())
        return None

    logger.info(f"Persisting image usage in {backend} store at {location}")
    return store
