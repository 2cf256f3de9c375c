"""
Error message utilities for providing actionable guidance to operators.

This module provides functions to create helpful error messages with
suggested fixes and troubleshooting steps for the failures the daemon
reports: Docker connectivity, usage store access and configuration.
"""

import os
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""
    CONNECTION = "connection"
    CONFIGURATION = "configuration"
    PERMISSION = "permission"
    PERSISTENCE = "persistence"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ActionableError(Exception):
    """Exception with actionable guidance for operators"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [self.message]

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("\nAdditional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


def create_docker_connection_error(base_url: Optional[str], error: Exception) -> ActionableError:
    """Create actionable error for Docker daemon connection failures"""
    error_str = str(error).lower()
    target = base_url or os.environ.get("DOCKER_HOST") or "the default Docker socket"

    suggestions = [
        f"Verify the Docker daemon is running and reachable at {target}",
        "Check the DOCKER_HOST environment variable or docker.base_url in config.yaml",
        "Verify the daemon socket is mounted into this container (-v /var/run/docker.sock:/var/run/docker.sock)",
    ]

    if "permission denied" in error_str:
        suggestions.insert(0, "Run as a user that can access the Docker socket (member of the docker group)")

    if "timeout" in error_str or "timed out" in error_str:
        suggestions.insert(1, "Increase docker.timeout in config.yaml if the daemon is under heavy load")

    if "permission denied" in error_str:
        category = ErrorCategory.PERMISSION
    elif "timeout" in error_str or "timed out" in error_str:
        category = ErrorCategory.TIMEOUT
    else:
        category = ErrorCategory.CONNECTION

    return ActionableError(
        message=f"Failed to connect to Docker daemon at {target}",
        category=category,
        suggestions=suggestions,
        details={
            "base_url": base_url,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_store_error(backend: str, location: str, error: Exception) -> ActionableError:
    """Create actionable error for usage store open failures"""
    error_str = str(error).lower()

    suggestions = [
        "Image usage history will be kept in memory only until the next restart",
        f"Verify the {backend} store location is correct: {location}",
    ]

    if backend == "sqlite":
        suggestions.append("Check that the database directory exists or can be created, and is writable")
        if "locked" in error_str:
            suggestions.insert(1, "Another docker-gc process may hold the database lock")
    elif backend == "mongo":
        suggestions.append("Verify MongoDB is running and MONGODB_PASSWORD is set (if required)")

    return ActionableError(
        message=f"Cannot open {backend} usage store at {location}, persistence disabled",
        category=ErrorCategory.PERSISTENCE,
        suggestions=suggestions,
        details={
            "backend": backend,
            "location": location,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_config_error(field: str, value: Any, reason: str) -> ActionableError:
    """Create actionable error for configuration validation failures"""
    suggestions = [
        f"Check the '{field}' value in config.yaml",
        "Verify the value matches the expected format",
        "Check config-example.yaml for correct format",
    ]

    if "max_age" in field or "frequency" in field or "delay" in field:
        suggestions.insert(1, "Durations are numbers of seconds or strings such as '72h', '1h30m' or '57s'")
    elif "backend" in field:
        suggestions.insert(1, "Supported store backends are: sqlite, mongo, none")

    return ActionableError(
        message=f"Configuration error: Invalid value for '{field}'",
        category=ErrorCategory.CONFIGURATION,
        suggestions=suggestions,
        details={
            "field": field,
            "value": value,
            "reason": reason
        }
    )
