"""
MongoDB utility helpers for the mongo usage store backend.
"""

from typing import Optional

from pymongo import MongoClient
from pymongo.collection import Collection

from docker_gc.config_manager import ConfigManager


def get_mongo_client(config: ConfigManager) -> MongoClient:
    """Return a MongoClient using the centralized connection string."""
    return MongoClient(
        config.get_mongo_connection_string(),
        serverSelectionTimeoutMS=config.get_mongo_server_selection_timeout_ms(),
        tz_aware=True,
    )


def get_collection(config: ConfigManager, client: Optional[MongoClient] = None) -> Collection:
    """Return the configured usage collection.

    If client is not provided, a new client is created.
    Caller is responsible for closing the client they create/manage.
    """
    if client is None:
        client = get_mongo_client(config)
    return client[config.get_mongo_db()][config.get_mongo_collection()]
