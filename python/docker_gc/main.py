#!/usr/bin/env python3
"""
docker-gc: remove Docker images that have not been used for a while.

Tracks when each image was last used (running containers, container
destroy events) and periodically removes dangling images and images that
no container references and that have been unused for longer than the
configured maximum age.
"""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from docker_gc.collector import format_usage_report
from docker_gc.config_manager import ConfigManager, ConfigValidationError, parse_duration
from docker_gc.error_utils import ActionableError, create_config_error
from docker_gc.gc_daemon import ImageGCDaemon
from docker_gc.health_checks import HealthChecker
from docker_gc.logging_utils import get_logger, setup_logging
from docker_gc.usage_ledger import utcnow


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="docker-gc",
        description="Remove Docker images unused for longer than a maximum age",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the daemon with the defaults (72h max age, purge every 57s)
  docker-gc

  # Keep images for a week, state in a custom location
  docker-gc --max-age 168h --db /data/docker-gc/state.db

  # Show what one sweep would remove, then exit
  docker-gc --once --dry-run

  # List recorded image usage and time left before eviction
  docker-gc --show-usage
        """,
    )
    parser.add_argument("--config", help="Path to config.yaml (default: CONFIG_FILE env var or ./config.yaml)")
    parser.add_argument("--db", help="Location of the database file (default: /var/db/docker-gc/state.db)")
    parser.add_argument("--store", choices=["sqlite", "mongo", "none"], help="Usage store backend")
    parser.add_argument("--max-age", help="Max duration for an unused image, e.g. 72h (default: 72h)")
    parser.add_argument("--purge-frequency", help="How often the image purge will be run, e.g. 57s (default: 57s)")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    parser.add_argument("--dry-run", action="store_true", help="Log images that would be removed without removing them")
    parser.add_argument("--once", action="store_true", help="Reconcile, run a single purge and exit")
    parser.add_argument("--health-check", action="store_true", help="Run health checks and exit")
    parser.add_argument("--show-usage", action="store_true", help="Print recorded image usage and exit")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ConfigManager:
    """Load configuration and apply command line overrides

    Raises:
        ActionableError: If an override or the resulting configuration is invalid
    """
    config = ConfigManager(config_file=args.config, validate=False)
    for flag, key in (("max_age", "max_age"), ("purge_frequency", "purge_frequency")):
        value = getattr(args, flag)
        if value is None:
            continue
        try:
            parse_duration(value)
        except ValueError as e:
            raise create_config_error(f"gc.{key}", value, str(e))
        config.set_override("gc", key, value)
    if args.db:
        config.set_override("store", "db_path", args.db)
    if args.store:
        config.set_override("store", "backend", args.store)
    if args.dry_run:
        config.set_override("gc", "dry_run", True)
    if args.debug:
        config.set_override("logging", "debug", True)
    try:
        config.validate_config()
    except ConfigValidationError as e:
        raise ActionableError(str(e)) from e
    return config


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_arguments(argv)
    setup_logging(level=logging.DEBUG if args.debug else None)
    logger = get_logger("docker_gc")

    try:
        config = build_config(args)
    except ActionableError as e:
        logger.error(e.format_message())
        return 2
    setup_logging(level=config.get_log_level())

    if args.health_check:
        checker = HealthChecker(config)
        results = checker.run_all_checks()
        checker.print_health_report(results)
        return 0 if checker.all_required_passed(results) else 1

    try:
        daemon = ImageGCDaemon.from_config(config)
    except ActionableError as e:
        logger.error(e.format_message())
        return 1

    try:
        if args.show_usage:
            # Only what is persisted, without reconciling against Docker
            daemon.ledger.load()
            print(format_usage_report(daemon.runtime, daemon.ledger, daemon.max_age, utcnow()))
            return 0

        if args.once:
            daemon.bootstrap()
            summary = daemon.collect()
            return 1 if summary.failed else 0

        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, shutting down")
            daemon.stop()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)
        daemon.start()
        return 0
    finally:
        daemon.close()


if __name__ == "__main__":
    sys.exit(main())
