"""
CLI entry point for the job queue.
"""

import argparse
import dataclasses
import json
import logging
import os
import sys
import time
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

from .config import (
    EXIT_INVALID_INPUT,
    EXIT_PUBLISH_REJECTED,
    EXIT_SCHEMA_ERROR,
    EXIT_SUCCESS,
    QueueConfig,
)
from .errors import SchemaError, ValidationError
from .logging_config import setup_logging
from .service import QueueService


logger = logging.getLogger(__name__)


def parse_json_arg(raw: Optional[str]):
    """
    Parse a --data argument.

    Raises:
        ValidationError: If raw is not valid JSON
    """
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"--data is not valid JSON: {e}") from e


def build_service(args: argparse.Namespace) -> QueueService:
    """Create a service from the environment, applying command line overrides."""
    config = QueueConfig.from_env()
    if args.database_url:
        config = dataclasses.replace(config, database_url=args.database_url)
    return QueueService.create(config)


def cmd_init(service: QueueService, args: argparse.Namespace) -> int:
    """Create the job tables if missing."""
    service.store.ensure_schema()
    print("Job queue schema is ready")
    return EXIT_SUCCESS


def cmd_publish(service: QueueService, args: argparse.Namespace) -> int:
    """
    Publish one job.

    Returns:
        EXIT_PUBLISH_REJECTED if a singleton window rejected the job
    """
    data = parse_json_arg(args.data)

    options = {
        "priority": args.priority,
        "retry_limit": args.retry_limit,
        "singleton_next_slot": args.next_slot,
    }
    if args.start_after is not None:
        options["start_after"] = args.start_after
    if args.expire_in is not None:
        options["expire_in"] = args.expire_in
    if args.singleton_key is not None:
        options["singleton_key"] = args.singleton_key
    if args.singleton_seconds is not None:
        options["singleton_seconds"] = args.singleton_seconds

    service.connect()
    job_id = service.publish(args.name, data, options)

    if job_id is None:
        print(f"Publish to '{args.name}' rejected by singleton constraint", file=sys.stderr)
        return EXIT_PUBLISH_REJECTED

    print(job_id)
    return EXIT_SUCCESS


def cmd_complete(service: QueueService, args: argparse.Namespace) -> int:
    data = parse_json_arg(args.data)
    service.connect()
    result = service.complete(args.ids, data)
    print(f"Completed {result.updated}/{result.requested} job(s)")
    return EXIT_SUCCESS


def cmd_fail(service: QueueService, args: argparse.Namespace) -> int:
    data = parse_json_arg(args.data)
    service.connect()
    result = service.fail(args.ids, data)
    print(f"Failed {result.updated}/{result.requested} job(s)")
    return EXIT_SUCCESS


def cmd_cancel(service: QueueService, args: argparse.Namespace) -> int:
    service.connect()
    result = service.cancel(args.ids)
    print(f"Cancelled {result.updated}/{result.requested} job(s)")
    return EXIT_SUCCESS


def cmd_counts(service: QueueService, args: argparse.Namespace) -> int:
    """Print job counts by state as JSON."""
    service.connect()
    print(json.dumps(service.count_states(), indent=2, sort_keys=True))
    return EXIT_SUCCESS


def cmd_maintain(service: QueueService, args: argparse.Namespace) -> int:
    """
    Run expire, archive and purge.

    With --loop, keep running the periodic tasks until interrupted.
    """
    service.connect()

    if not args.loop:
        stats = service.maintenance.run_all()
        print(json.dumps(stats, indent=2))
        return EXIT_SUCCESS

    service.maintenance.start()
    print("Maintenance running, press Ctrl+C to stop")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping maintenance")
    finally:
        service.maintenance.stop()

    return EXIT_SUCCESS


COMMANDS = {
    "init": cmd_init,
    "publish": cmd_publish,
    "complete": cmd_complete,
    "fail": cmd_fail,
    "cancel": cmd_cancel,
    "counts": cmd_counts,
    "maintain": cmd_maintain,
}


def create_parser() -> argparse.ArgumentParser:
    """
    Create argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="jobqueue",
        description="Durable job queue on SQLite or PostgreSQL",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument(
        "--database-url",
        help="sqlite:///path or postgresql://... (default: $JOBQUEUE_DATABASE_URL)"
    )
    parser.add_argument(
        "--log-dir",
        help="Write daily log files to this directory"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("init", help="Create the job queue tables")

    # publish command
    publish_parser = subparsers.add_parser("publish", help="Publish a job")
    publish_parser.add_argument("name", help="Queue name")
    publish_parser.add_argument("--data", help="Job payload as JSON")
    publish_parser.add_argument("--priority", type=int, default=0, help="Higher runs first (default: 0)")
    publish_parser.add_argument("--start-after", type=float, help="Delay in seconds")
    publish_parser.add_argument("--retry-limit", type=int, default=0, help="Automatic retries (default: 0)")
    publish_parser.add_argument("--expire-in", type=float, help="Seconds before an active job expires (default: 900)")
    publish_parser.add_argument("--singleton-key", help="Only one queued or active job per key")
    publish_parser.add_argument("--singleton-seconds", type=int, help="Only one job per time window")
    publish_parser.add_argument(
        "--next-slot",
        action="store_true",
        help="Debounce into the next window instead of dropping"
    )

    for command, verb in (("complete", "Complete"), ("fail", "Fail")):
        command_parser = subparsers.add_parser(command, help=f"{verb} jobs by id")
        command_parser.add_argument("ids", nargs="+", help="Job ids")
        command_parser.add_argument("--data", help="Response payload as JSON")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel jobs by id")
    cancel_parser.add_argument("ids", nargs="+", help="Job ids")

    subparsers.add_parser("counts", help="Show job counts by state")

    maintain_parser = subparsers.add_parser("maintain", help="Expire, archive and purge jobs")
    maintain_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running on the configured intervals"
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    # .env from the working directory; variables already set take precedence
    load_dotenv(find_dotenv(usecwd=True))

    parser = create_parser()
    args = parser.parse_args(argv)

    log_level = "DEBUG" if args.verbose else os.getenv("LOG_LEVEL", "INFO")
    setup_logging(log_level, log_dir=args.log_dir)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return EXIT_SUCCESS

    try:
        service = build_service(args)
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    try:
        return command(service, args)
    except ValidationError as e:
        logger.error(f"Invalid input: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID_INPUT
    except SchemaError as e:
        logger.error(f"Schema error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        print("Create the tables with: jobqueue init", file=sys.stderr)
        return EXIT_SCHEMA_ERROR
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
