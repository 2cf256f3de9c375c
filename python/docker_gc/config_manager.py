#!/usr/bin/env python3
"""
Configuration Manager for the Docker image garbage collector

This module handles loading and managing configuration from config.yaml
and environment variables.
"""

import logging
import os
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

import yaml

SUPPORTED_STORE_BACKENDS = ("sqlite", "mongo", "none")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""


def parse_duration(value: Union[str, int, float, timedelta]) -> timedelta:
    """Parse a duration given as seconds or as a Go-style string.

    Accepts numbers (seconds), numeric strings, and strings such as "72h",
    "1h30m", "57s" or "500ms".

    Raises:
        ValueError: If the value cannot be parsed or is negative
    """
    if isinstance(value, timedelta):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    elif isinstance(value, (int, float)):
        result = timedelta(seconds=value)
    elif isinstance(value, str):
        text = value.strip().lower()
        try:
            result = timedelta(seconds=float(text))
        except OverflowError:
            raise ValueError(f"invalid duration: {value!r}")
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos == 0 or pos != len(text):
                raise ValueError(f"invalid duration: {value!r}")
            result = timedelta(seconds=seconds)
    else:
        raise ValueError(f"invalid duration: {value!r}")

    if result < timedelta(0):
        raise ValueError(f"duration must not be negative: {value!r}")
    return result


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


class ConfigManager:
    """Manages configuration for the Docker image garbage collector"""

    def __init__(self, config_file: str = None, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to config.yaml or CONFIG_FILE env var)
            validate: If True, validate configuration on initialization
        """
        # Allow override via environment variable for containerized deployments
        if config_file is None:
            config_file = os.environ.get("CONFIG_FILE", "config.yaml")
        self.config_file = config_file
        self.config = self._load_config()
        self.overrides: Dict[str, Dict[str, Any]] = {}

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        default_config = {
            "docker": {"base_url": None, "timeout": 60},
            "store": {"backend": "sqlite", "db_path": "/var/db/docker-gc/state.db"},
            "mongo": {
                "host": "localhost",
                "port": 27017,
                "db": "docker_gc",
                "collection": "images",
                "server_selection_timeout_ms": 2000,
            },
            "gc": {
                "max_age": "72h",
                "purge_frequency": "57s",
                "dry_run": False,
                "prune_missing_on_start": False,
            },
            "events": {"reconnect_delay": 5},
            "logging": {"debug": False},
        }

        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r") as f:
                    user_config = yaml.safe_load(f) or {}
                return self._merge_config(default_config, user_config)
            else:
                logging.debug(f"Config file {self.config_file} not found, using defaults")
                return default_config
        except Exception as e:
            logging.error(f"Error loading config file: {e}")
            return default_config

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def set_override(self, section: str, key: str, value: Any) -> None:
        """Override a single value, e.g. from a command line flag.

        Overrides take precedence over both environment variables and config.yaml.
        """
        self.overrides.setdefault(section, {})[key] = value
        self.config.setdefault(section, {})[key] = value

    def _get(self, section: str, key: str, env_var: Optional[str] = None, default: Any = None) -> Any:
        """Resolve a value: override, then environment variable, then config"""
        if key in self.overrides.get(section, {}):
            return self.overrides[section][key]
        if env_var and os.environ.get(env_var):
            return os.environ[env_var]
        return self.config.get(section, {}).get(key, default)

    # Docker configuration
    def get_docker_base_url(self) -> Optional[str]:
        """Get an explicit Docker daemon URL from config.

        None means the docker SDK environment (DOCKER_HOST, DOCKER_TLS_VERIFY,
        DOCKER_CERT_PATH) decides.
        """
        return self._get("docker", "base_url")

    def get_docker_timeout(self) -> int:
        """Get Docker API timeout from config, with type coercion"""
        timeout = self.config["docker"].get("timeout", 60)
        try:
            return int(timeout)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"docker.timeout must be an integer, got: {timeout} (type: {type(timeout).__name__})"
            )

    # Store configuration
    def get_store_backend(self) -> str:
        """Get usage store backend from environment or config"""
        backend = self._get("store", "backend", "DOCKER_GC_STORE", "sqlite")
        return str(backend).strip().lower()

    def get_db_path(self) -> str:
        """Get SQLite database path from environment or config"""
        return self._get("store", "db_path", "DOCKER_GC_DB")

    # Mongo configuration
    def get_mongo_host(self) -> str:
        return self.config["mongo"]["host"]

    def get_mongo_port(self) -> int:
        """Get MongoDB port from config, with type coercion"""
        port = self.config["mongo"]["port"]
        try:
            return int(port)
        except (ValueError, TypeError):
            raise ConfigValidationError(f"MongoDB port must be an integer, got: {port} (type: {type(port).__name__})")

    def get_mongo_db(self) -> str:
        return self.config["mongo"]["db"]

    def get_mongo_collection(self) -> str:
        return self.config["mongo"]["collection"]

    def get_mongo_server_selection_timeout_ms(self) -> int:
        return int(self.config["mongo"].get("server_selection_timeout_ms", 2000))

    def get_mongo_connection_string(self) -> str:
        username = os.environ.get("MONGODB_USERNAME", "admin")
        password = os.environ.get("MONGODB_PASSWORD")
        auth = f"{username}:{password}@" if password else ""
        return f"mongodb://{auth}{self.get_mongo_host()}:{self.get_mongo_port()}/"

    # GC configuration
    def get_max_age(self) -> timedelta:
        """Get the retention window after which unused images are removed"""
        value = self._get("gc", "max_age", "DOCKER_GC_MAX_AGE")
        try:
            return parse_duration(value)
        except ValueError as e:
            raise ConfigValidationError(f"gc.max_age is not a valid duration: {e}")

    def get_purge_frequency(self) -> timedelta:
        """Get how often the image purge runs"""
        value = self._get("gc", "purge_frequency", "DOCKER_GC_PURGE_FREQUENCY")
        try:
            return parse_duration(value)
        except ValueError as e:
            raise ConfigValidationError(f"gc.purge_frequency is not a valid duration: {e}")

    def is_dry_run(self) -> bool:
        return _as_bool(self.config["gc"].get("dry_run", False))

    def prune_missing_on_start(self) -> bool:
        return _as_bool(self.config["gc"].get("prune_missing_on_start", False))

    def get_reconnect_delay(self) -> float:
        """Get delay before resubscribing to Docker events, in seconds"""
        delay = self.config["events"].get("reconnect_delay", 5)
        try:
            return parse_duration(delay).total_seconds()
        except ValueError as e:
            raise ConfigValidationError(f"events.reconnect_delay is not a valid duration: {e}")

    # Logging configuration
    def is_debug(self) -> bool:
        return _as_bool(self._get("logging", "debug", "DOCKER_GC_DEBUG", False))

    def get_log_level(self) -> int:
        return logging.DEBUG if self.is_debug() else logging.INFO

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        errors: List[str] = []
        warnings: List[str] = []

        backend = self.get_store_backend()
        if backend not in SUPPORTED_STORE_BACKENDS:
            errors.append(
                f"store.backend must be one of {', '.join(SUPPORTED_STORE_BACKENDS)}, got: {backend}"
            )
        elif backend == "sqlite":
            db_path = self.get_db_path()
            if not db_path or not str(db_path).strip():
                errors.append("store.db_path is required when using the sqlite backend")
        elif backend == "mongo":
            try:
                port = self.get_mongo_port()
                if port < 1 or port > 65535:
                    errors.append(f"MongoDB port must be an integer between 1 and 65535, got: {port}")
            except ConfigValidationError as e:
                errors.append(str(e))
            if not self.get_mongo_collection():
                errors.append("mongo.collection is required when using the mongo backend")

        try:
            max_age = self.get_max_age()
            if max_age < timedelta(hours=1):
                warnings.append(f"gc.max_age is very low ({max_age}), images may be removed shortly after use")
        except ConfigValidationError as e:
            errors.append(str(e))

        try:
            frequency = self.get_purge_frequency()
            if frequency <= timedelta(0):
                errors.append("gc.purge_frequency must be greater than zero")
        except ConfigValidationError as e:
            errors.append(str(e))

        try:
            if self.get_docker_timeout() < 1:
                errors.append("docker.timeout must be a positive integer (seconds)")
        except ConfigValidationError as e:
            errors.append(str(e))

        try:
            self.get_reconnect_delay()
        except ConfigValidationError as e:
            errors.append(str(e))

        for warning in warnings:
            logging.warning(f"Configuration warning: {warning}")

        if errors:
            raise ConfigValidationError("Configuration validation failed:\n  - " + "\n  - ".join(errors))

