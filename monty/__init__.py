"""Monty - Uptime and certificate monitoring for HTTP, TCP, DNS, domain and SSL endpoints."""

import argparse
import json
import logging
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from threading import Event

__version__ = "0.1.0"

# Used when -c is not given and the file exists in the working directory
DEFAULT_CONFIG_FILE = "config.yaml"

# Global shutdown event for signal handlers
_shutdown_event: Event | None = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _resolve_config_path(path: str | None) -> str | None:
    if path is None and Path(DEFAULT_CONFIG_FILE).exists():
        return DEFAULT_CONFIG_FILE
    return path


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the scheduler and API server."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("Monty %s starting...", __version__)

    # Import here to allow logging setup first
    from . import checkers
    from .api import ApiError, ApiServer
    from .config import ConfigError, load_config
    from .database import DatabaseError, init_db
    from .endpoints import EndpointStore, ValidationError
    from .scheduler import Scheduler

    # 1. Load configuration
    config_path = _resolve_config_path(args.config)
    try:
        config = load_config(config_path)
        logger.info("Configuration loaded from %s", config_path or "defaults")
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    checkers.set_rdap_base_url(config.monitor.rdap_base_url)

    # 2. Initialize database
    try:
        db_conn = init_db(config.database.path)
        logger.info("Database initialized at %s", config.database.path)
    except DatabaseError as e:
        logger.error("Database error: %s", e)
        sys.exit(1)

    # 3. Wire the store to the scheduler and seed an empty database
    scheduler = Scheduler(
        db_conn,
        workers=config.monitor.workers,
        discovery_interval=config.monitor.discovery_interval,
        retention_days=config.database.retention_days,
    )
    store = EndpointStore(db_conn, on_change=scheduler.handle_change)
    try:
        store.seed(config.endpoints)
    except (ValidationError, DatabaseError) as e:
        logger.error("Failed to seed endpoints: %s", e)
        db_conn.close()
        sys.exit(1)

    # 4. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 5. Start components
    api_server: ApiServer | None = None

    try:
        scheduler.start()

        if config.api.enabled:
            try:
                api_server = ApiServer(config.api, store, db_conn)
                api_server.start()
            except ApiError as e:
                logger.error("Failed to start API server: %s", e)
                logger.warning("Continuing without API server")
                api_server = None

        logger.info("All components started, waiting for shutdown signal...")

        # 6. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 7. Cleanup - stop all components
        logger.info("Shutting down components...")

        scheduler.stop()

        if api_server is not None:
            api_server.stop()

        db_conn.close()
        logger.info("Database connection closed")

        logger.info("Shutdown complete")


def _cmd_check(args: argparse.Namespace) -> None:
    """Execute the check command - probe one target once and print the outcome."""
    _setup_logging(args.verbose)

    from . import checkers
    from .config import ConfigError, load_config
    from .endpoints import ValidationError, build_endpoint

    try:
        config = load_config(_resolve_config_path(args.config))
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)
    checkers.set_rdap_base_url(config.monitor.rdap_base_url)

    payload: dict = {
        "url": args.url.strip(),
        "check_type": args.type,
        "interval": max(args.timeout + 1, 60),
        "timeout": args.timeout,
    }
    if args.expected_status:
        payload["expected_status_codes"] = tuple(args.expected_status)
    if args.port is not None:
        payload["tcp_port"] = args.port
    if args.record_type:
        payload["dns_record_type"] = args.record_type
    if args.expected_answer:
        payload["expected_dns_answers"] = tuple(args.expected_answer)
    if args.min_days_valid is not None:
        payload["min_days_valid"] = args.min_days_valid

    try:
        endpoint = build_endpoint(payload)
    except ValidationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    outcome = checkers.check_endpoint(endpoint)
    print(json.dumps(asdict(outcome), indent=2, default=str))

    if not outcome.succeeded:
        sys.exit(1)


def _cmd_clean(args: argparse.Namespace) -> None:
    """Execute the clean command - remove old check records from the database."""
    from .config import ConfigError, load_config
    from .database import DatabaseError, cleanup_old_checks, delete_all_checks, init_db

    # 1. Load configuration
    try:
        config = load_config(_resolve_config_path(args.config))
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    # 2. Validate database exists
    if not Path(config.database.path).exists():
        print(f"Error: Database not found at {config.database.path}")
        sys.exit(1)

    # 3. Determine retention days
    if args.all:
        retention_days = None  # Delete all
    elif args.retention_days is not None:
        if args.retention_days < 0:
            print("Error: retention-days must be a non-negative integer")
            sys.exit(1)
        retention_days = args.retention_days
    else:
        retention_days = config.database.retention_days

    # 4. Connect to database and perform cleanup
    try:
        conn = init_db(config.database.path)
        try:
            if retention_days is None:
                deleted = delete_all_checks(conn)
                print(f"Deleted all {deleted} check records from database.")
            else:
                deleted = cleanup_old_checks(conn, retention_days)
                print(f"Deleted {deleted} check records older than {retention_days} days.")
        finally:
            conn.close()
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _build_parser() -> argparse.ArgumentParser:
    from .models import CHECK_TYPES, DNS_RECORD_TYPES

    parser = argparse.ArgumentParser(description="Monty - Uptime and certificate monitoring")
    parser.add_argument(
        "--version",
        action="version",
        version=f"monty {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the scheduler and API server (default)",
    )
    run_parser.add_argument(
        "-c",
        "--config",
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_FILE} if present)",
    )
    run_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Check subcommand
    check_parser = subparsers.add_parser(
        "check",
        help="Probe a single target once and print the outcome as JSON",
    )
    check_parser.add_argument("url", help="Target URL or host")
    check_parser.add_argument(
        "-t",
        "--type",
        choices=CHECK_TYPES,
        default="http",
        help="Check type (default: http)",
    )
    check_parser.add_argument(
        "--timeout",
        type=int,
        default=10,
        help="Probe timeout in seconds (default: 10)",
    )
    check_parser.add_argument(
        "--expected-status",
        type=int,
        action="append",
        help="HTTP status code counted as success (repeatable)",
    )
    check_parser.add_argument("--port", type=int, help="TCP port")
    check_parser.add_argument(
        "--record-type",
        choices=DNS_RECORD_TYPES,
        help="DNS record type (default: A)",
    )
    check_parser.add_argument(
        "--expected-answer",
        action="append",
        help="Expected DNS answer (repeatable)",
    )
    check_parser.add_argument(
        "--min-days-valid",
        type=int,
        help="Minimum days before certificate expiry (default: 7)",
    )
    check_parser.add_argument(
        "-c",
        "--config",
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_FILE} if present)",
    )
    check_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    check_parser.set_defaults(func=_cmd_check)

    # Clean subcommand
    clean_parser = subparsers.add_parser(
        "clean",
        help="Remove old check records from the database",
    )
    clean_parser.add_argument(
        "-c",
        "--config",
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_FILE} if present)",
    )
    clean_parser.add_argument(
        "--retention-days",
        type=int,
        help="Delete records older than this many days (overrides config)",
    )
    clean_parser.add_argument(
        "--all",
        action="store_true",
        help="Delete all check records (ignores retention_days)",
    )
    clean_parser.set_defaults(func=_cmd_clean)

    return parser


def main() -> None:
    """Main entry point for the monty package."""
    parser = _build_parser()
    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = None
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
