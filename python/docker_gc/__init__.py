"""Docker image garbage collector: tracks image usage and removes images unused for too long."""

__version__ = "1.0.0"
