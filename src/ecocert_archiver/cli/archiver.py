"""Command line interface for the ecocert archiver.

Usage:
    ecocert-archiver <command> [OPTIONS]
    python -m ecocert_archiver.cli <command> [OPTIONS]

Examples:
    # Archive every sample ecocert
    ecocert-archiver process-all

    # Archive specific ecocerts
    ecocert-archiver process 42220-0x16bA53B74c234C870c61EFC04cD418B8f2865959-123

    # Show the URLs that would be archived without writing anything
    ecocert-archiver process-all --dry-run

    # Archiving statistics as JSON
    ecocert-archiver stats --json

    # Retry up to 20 failed archive records
    ecocert-archiver retry --limit 20

    # Readiness check (exit code 1 when unhealthy)
    ecocert-archiver health

    # Apply migrations / rebuild the schema
    ecocert-archiver db migrate
    ecocert-archiver db reset --confirm
"""

import asyncio
import json
import os
import sys
from argparse import ArgumentParser, Namespace

import structlog
from alembic import command
from alembic.config import Config

from ecocert_archiver.app import ArchiverApp, ProcessingSummary
from ecocert_archiver.core import timezone  # noqa: F401
from ecocert_archiver.core.config import Settings, configure_logging, load_settings
from ecocert_archiver.services.archiver import EcocertProcessingResult
from ecocert_archiver.services.exceptions import ServiceError

logger = structlog.get_logger()


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="ecocert-archiver",
        description="Archive content cited by ecocert attestations to IPFS",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    verbose = ArgumentParser(add_help=False)
    verbose.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    process_all = subparsers.add_parser(
        "process-all", parents=[verbose], help="Archive all sample ecocerts"
    )
    process_all.add_argument(
        "--dry-run", action="store_true", help="List URLs that would be archived, then exit"
    )

    process = subparsers.add_parser(
        "process", parents=[verbose], help="Archive specific ecocerts"
    )
    process.add_argument("ecocert_ids", nargs="+", help="Ecocert ids (chain-contract-token)")
    process.add_argument(
        "--dry-run", action="store_true", help="List URLs that would be archived, then exit"
    )

    stats = subparsers.add_parser("stats", parents=[verbose], help="Show archiving statistics")
    stats.add_argument("--json", action="store_true", help="Print statistics as JSON")

    retry = subparsers.add_parser("retry", parents=[verbose], help="Retry failed archive records")
    retry.add_argument(
        "--limit", type=int, default=50, help="Maximum records to retry (default: 50, max: 200)"
    )

    health = subparsers.add_parser("health", parents=[verbose], help="Check service readiness")
    health.add_argument("--json", action="store_true", help="Print health report as JSON")

    db = subparsers.add_parser("db", help="Database schema management")
    db_commands = db.add_subparsers(dest="db_command", required=True)
    db_commands.add_parser("migrate", parents=[verbose], help="Apply all migrations")
    reset = db_commands.add_parser(
        "reset", parents=[verbose], help="Drop and recreate the schema (destroys all data)"
    )
    reset.add_argument(
        "--confirm", action="store_true", help="Required: confirm that all data will be lost"
    )

    return parser


def print_results(results: list[EcocertProcessingResult], summary: ProcessingSummary) -> None:
    print("\n" + "=" * 60)
    print("Ecocert Processing Summary")
    print("=" * 60)
    print(f"Ecocerts processed: {summary.total_ecocerts}")
    print(f"Completed: {summary.completed}  Failed: {summary.failed}")
    print(f"Attestations found: {summary.total_attestations}")
    print(f"URLs extracted: {summary.total_urls}")
    print(f"Archived: {summary.archived} ({summary.archival_rate:.1f}%)")
    print(f"Duration: {summary.duration_seconds:.2f}s")

    for result in results:
        print(f"\n{result.ecocert_id}: {result.status.value}")
        for note in result.notes:
            print(f"  note: {note}")
        for error in result.errors[:5]:  # Show first 5 errors
            print(f"  error: {error}")
        if len(result.errors) > 5:
            print(f"  ... and {len(result.errors) - 5} more errors")

    print("=" * 60 + "\n")


def summary_exit_code(summary: ProcessingSummary) -> int:
    if summary.failed == 0:
        return 0
    if summary.completed > 0:
        return 2  # Partial success
    return 1


def alembic_config(settings: Settings) -> Config:
    config = Config(os.environ.get("ALEMBIC_CONFIG", "alembic.ini"))
    config.set_main_option("sqlalchemy.url", settings.database_url)
    return config


async def run_db_command(args: Namespace, settings: Settings) -> int:
    config = alembic_config(settings)

    if args.db_command == "migrate":
        # env.py calls asyncio.run(), which cannot run inside this loop
        await asyncio.to_thread(command.upgrade, config, "head")
        logger.info("db.migrated")
        print("Database migrated to head")
        return 0

    if not args.confirm:
        print("Refusing to reset the database without --confirm", file=sys.stderr)
        return 1

    await asyncio.to_thread(command.downgrade, config, "base")
    await asyncio.to_thread(command.upgrade, config, "head")
    logger.warning("db.reset")
    print("Database reset: all data removed and schema recreated")
    return 0


async def run_process(args: Namespace, app: ArchiverApp) -> int:
    if args.command == "process-all":
        ecocert_ids = list(app.source.sample_ecocert_ids())
    else:
        ecocert_ids = args.ecocert_ids

    if args.dry_run:
        planned = await app.plan(ecocert_ids)
        print("\n[DRY RUN] URLs that would be archived:")
        for ecocert_id, urls in planned.items():
            print(f"\n{ecocert_id}: {len(urls)} URL(s)")
            for url in urls:
                print(f"  - {url}")
        print("\n[DRY RUN] No changes were made")
        return 0

    await app.initialize()
    if args.command == "process-all":
        results, summary = await app.process_all()
    else:
        results, summary = await app.process_specific(ecocert_ids)

    print_results(results, summary)
    return summary_exit_code(summary)


async def run_stats(args: Namespace, app: ArchiverApp) -> int:
    await app.initialize()
    stats = await app.statistics()

    if args.json:
        print(json.dumps(stats, indent=2, default=str))
        return 0

    archiving = stats["archiving"]
    print("\nArchiving Statistics")
    print("=" * 60)
    print(f"Ecocerts: {archiving['total_ecocerts']} ({archiving['processed_ecocerts']} processed)")
    print(f"Attestations: {archiving['total_attestations']}")
    print(f"URLs: {archiving['total_urls']}")
    print(f"  archived: {archiving['archived_urls']}")
    print(f"  failed: {archiving['failed_urls']}")
    print(f"  pending: {archiving['pending_urls']}")
    print(f"Average URLs per ecocert: {archiving['average_urls_per_ecocert']:.2f}")
    print(f"Success rate: {archiving['success_rate']:.1f}%")
    print(f"Database: {'ok' if stats['health']['database'] else 'unavailable'}")
    print(f"IPFS: {'ok' if stats['health']['ipfs'] else 'unavailable'}")
    return 0


async def run_retry(args: Namespace, app: ArchiverApp) -> int:
    await app.initialize()
    result = await app.retry_failed(args.limit)

    print(
        f"Retried {result.attempted} record(s): "
        f"{result.successful} succeeded, {result.still_failed} still failed"
    )
    if result.still_failed == 0:
        return 0
    return 2 if result.successful > 0 else 1


async def run_health(args: Namespace, app: ArchiverApp) -> int:
    health = await app.health()
    healthy = bool(health["database"] and health["ipfs"])

    if args.json:
        print(json.dumps({"healthy": healthy, **health}, indent=2, default=str))
    else:
        print(f"Database: {'ok' if health['database'] else 'unavailable'}")
        if health["database_latency_ms"] is not None:
            print(f"  latency: {health['database_latency_ms']:.1f} ms")
        print(f"IPFS: {'ok' if health['ipfs'] else 'unavailable'}")
    return 0 if healthy else 1


COMMANDS = {
    "process-all": run_process,
    "process": run_process,
    "stats": run_stats,
    "retry": run_retry,
    "health": run_health,
}


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (partial success), 130 (interrupted)
    """
    args = build_parser().parse_args(argv)

    app: ArchiverApp | None = None
    try:
        settings = load_settings()
        if args.verbose:
            settings.log_level = "DEBUG"
        configure_logging(settings)

        logger.info("cli.started", command=args.command, environment=settings.app_env)

        if args.command == "db":
            return await run_db_command(args, settings)

        app = ArchiverApp.from_settings(settings)
        return await COMMANDS[args.command](args, app)

    except ServiceError as e:
        logger.error("cli.service_error", code=e.code, error=e.message)
        print(f"\nError [{e.code}]: {e.message}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nInterrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        if app is not None:
            await app.shutdown()


def main() -> None:
    """Synchronous entry point for CLI."""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
