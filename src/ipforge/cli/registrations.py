"""CLI for derivative registration status, retry/backfill and webhook recovery.

Usage:
    python -m ipforge.cli <command> [OPTIONS]

Examples:
    # Registration coverage of succeeded training jobs
    python -m ipforge.cli status

    # Retry up to 10 unregistered jobs from the last 7 days
    python -m ipforge.cli retry --limit 10

    # Show what a retry would do (no network calls, no writes)
    python -m ipforge.cli retry --dry-run --limit 10

    # Re-register one job even if it already has an IP id
    python -m ipforge.cli retry --job-id <uuid-or-replicate-id> --force

    # Pull the current state of a training from Replicate (missed webhook)
    python -m ipforge.cli sync --job-id <uuid-or-replicate-id>

Exit codes: 0 when the command ran (individual job failures included),
1 when the database is unreachable or configuration is unusable.
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import DBAPIError, OperationalError

from ipforge.core import timezone  # noqa: F401
from ipforge.core.config import Settings, configure_logging
from ipforge.core.database import setup_db_session
from ipforge.core.rate_limit import IntervalRateLimiter
from ipforge.services.exceptions import (
    RegistrationPersistenceError,
    ReplicateError,
    ServiceError,
    TrainingJobNotFoundError,
)
from ipforge.services.registration.backfill import RegistrationBackfillService
from ipforge.services.registration.engine import RegistrationEngine
from ipforge.services.replicate.client import fetch_training_state
from ipforge.services.story.client import create_story_client
from ipforge.services.webhook.notification import TrainingNotification
from ipforge.services.webhook.reconciler import WebhookReconciler
from ipforge.uow import create_uow_factory

logger = structlog.get_logger()

DATABASE_ERRORS = (OperationalError, DBAPIError, OSError)


class ConfigurationError(Exception):
    """Settings are insufficient for the requested command."""

    pass


def parse_args(argv: list[str] | None = None, settings: Settings | None = None) -> Namespace:
    """Parse command-line arguments."""
    default_limit = settings.backfill_default_limit if settings else 5
    default_age = settings.backfill_max_age_days if settings else 7

    parser = ArgumentParser(
        prog="python -m ipforge.cli",
        description="Story Protocol derivative registration tools",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser("status", help="Show registration coverage")
    status_parser.add_argument(
        "--max-age-days",
        type=int,
        default=None,
        help="Only count jobs completed in the last N days (default: all)",
    )

    retry_parser = subparsers.add_parser("retry", help="Retry failed/missing registrations")
    retry_parser.add_argument(
        "--limit",
        type=int,
        default=default_limit,
        help=f"Maximum number of jobs to process (default: {default_limit})",
    )
    retry_parser.add_argument(
        "--force",
        action="store_true",
        help="Re-register jobs that already have an IP id",
    )
    retry_parser.add_argument(
        "--job-id",
        help="Retry a single job (internal UUID or Replicate id)",
    )
    retry_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show candidates without network calls or database writes",
    )
    retry_parser.add_argument(
        "--max-age-days",
        type=int,
        default=default_age,
        help=f"Only jobs completed in the last N days (default: {default_age})",
    )

    sync_parser = subparsers.add_parser(
        "sync", help="Fetch a training's state from Replicate and apply it"
    )
    sync_parser.add_argument(
        "--job-id", required=True, help="Internal UUID or Replicate training id"
    )

    return parser.parse_args(argv)


def _print_header(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


async def cmd_status(args: Namespace, backfill: RegistrationBackfillService) -> int:
    report = await backfill.status(max_age_days=args.max_age_days)

    _print_header("Registration Status")
    if report.max_age_days:
        print(f"Window: last {report.max_age_days} days")
    print(f"Succeeded training jobs: {report.total}")
    print(f"Registered: {report.registered}")
    print(f"Unregistered: {report.unregistered}")
    print(f"Unregistered with parent IP ids: {report.unregistered_with_parent_ids}")
    print(f"Registration rate: {report.registration_rate}%")
    print("=" * 60 + "\n")
    return 0


async def cmd_retry(args: Namespace, backfill: RegistrationBackfillService) -> int:
    if args.dry_run:
        report = await backfill.dry_run_batch(
            limit=args.limit, force=args.force, max_age_days=args.max_age_days
        )
        _print_header("Registration Retry (DRY RUN)")
        print(f"Candidates: {len(report.candidates)}")
        print(f"Would attempt: {report.would_attempt}")
        print(f"Without parent IP ids: {report.no_parent_ips}")
        for candidate in report.candidates:
            action = "register" if candidate.would_attempt else "skip"
            print(
                f"  - {candidate.external_id or candidate.job_id} "
                f"[{candidate.trigger_word or '-'}] flow={candidate.flow.value} "
                f"parents={candidate.parent_ips_to_submit}/{candidate.parent_ips_total} "
                f"-> {action}"
            )
        print("\n[DRY RUN] No registrations were submitted")
        print("=" * 60 + "\n")
        return 0

    if backfill.engine is None:
        raise ConfigurationError(
            "Story Protocol is not configured (STORY_PRIVATE_KEY, STORY_SPG_NFT_CONTRACT)"
        )

    if args.job_id:
        try:
            outcome = await backfill.retry_one(args.job_id, force=args.force)
        except TrainingJobNotFoundError as e:
            print(f"\nError: {e}", file=sys.stderr)
            return 0
        _print_header("Registration Retry")
        print(f"Job: {outcome.external_id or outcome.job_id}")
        print(f"Outcome: {outcome.kind.value}")
        if outcome.ip_id:
            print(f"IP id: {outcome.ip_id}")
        if outcome.tx_hash:
            print(f"Transaction: {outcome.tx_hash}")
        if outcome.parent_ips_total:
            print(f"Parents used: {outcome.parent_ips_used}/{outcome.parent_ips_total}")
        if outcome.error:
            print(f"Error: {outcome.error}")
        print("=" * 60 + "\n")
        return 0

    report = await backfill.retry_batch(
        limit=args.limit, force=args.force, max_age_days=args.max_age_days
    )
    _print_header("Registration Retry Summary")
    print(f"Processed: {report.processed}")
    print(f"Registered: {report.registered}")
    print(f"Failed: {report.failed}")
    print(f"Skipped: {report.skipped}")

    failures = [r for r in report.results if not r.success and r.error]
    if failures:
        print(f"\nErrors encountered: {len(failures)}")
        for result in failures[:5]:
            print(f"  - {result.external_id or result.job_id}: {result.error}")
        if len(failures) > 5:
            print(f"  ... and {len(failures) - 5} more errors")
    print("=" * 60 + "\n")
    return 0


async def cmd_sync(
    args: Namespace, settings: Settings, uow_factory, reconciler: WebhookReconciler
) -> int:
    async with await uow_factory() as uow:
        job = await uow.training_jobs.resolve(args.job_id)
        external_id = job.replicate_job_id if job and job.replicate_job_id else args.job_id

    try:
        payload = await fetch_training_state(external_id, settings.replicate_api_token)
        notification = TrainingNotification.model_validate(payload)
    except (ReplicateError, ServiceError, ValidationError) as e:
        logger.error("cli.sync_fetch_failed", external_id=external_id, error=str(e))
        print(f"\nError: could not fetch training {external_id}: {e}", file=sys.stderr)
        return 0

    result = await reconciler.handle_notification(notification)
    await reconciler.drain()

    _print_header("Training Sync")
    print(f"Training: {external_id}")
    print(f"Status: {result.status.value}")
    print(f"Action: {result.action.value}")
    print(f"Registration scheduled: {result.registration_scheduled}")
    print("=" * 60 + "\n")
    return 0


async def run(args: Namespace, settings: Settings, session_factory, client) -> int:
    """Run a parsed command against an existing database and registration client.

    Returns:
        Exit code
    """
    uow_factory = create_uow_factory(session_factory)
    engine = None
    if client is not None:
        engine = RegistrationEngine(
            uow_factory=uow_factory,
            client=client,
            license_terms_id=settings.story_license_terms_id,
            claim_ttl_seconds=settings.registration_claim_ttl_seconds,
        )
    backfill = RegistrationBackfillService(
        uow_factory=uow_factory,
        engine=engine,
        rate_limiter=IntervalRateLimiter(settings.registration_min_interval_seconds),
    )

    logger.info("cli.started", command=args.command, registration_enabled=engine is not None)

    try:
        if args.command == "status":
            return await cmd_status(args, backfill)
        if args.command == "retry":
            return await cmd_retry(args, backfill)
        if args.command == "sync":
            reconciler = WebhookReconciler(uow_factory=uow_factory, engine=engine)
            return await cmd_sync(args, settings, uow_factory, reconciler)
        raise ConfigurationError(f"Unknown command: {args.command}")

    except ConfigurationError as e:
        logger.error("cli.configuration_error", error=str(e))
        print(f"\nError: {e}", file=sys.stderr)
        return 1

    except RegistrationPersistenceError as e:
        logger.error(
            "cli.persistence_failed", ip_id=e.ip_id, tx_hash=e.tx_hash, job_id=e.job_id
        )
        print(f"\nError: {e}", file=sys.stderr)
        print("Record the IP id and transaction hash above manually.", file=sys.stderr)
        return 0

    except DATABASE_ERRORS as e:
        logger.error("cli.database_unreachable", error=str(e), error_type=type(e).__name__)
        print(f"\nError: database unreachable: {e}", file=sys.stderr)
        return 1


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (command ran), 1 (database unreachable or bad configuration)
    """
    try:
        settings = Settings()  # type: ignore[call-arg]
    except (ValidationError, ValueError) as e:
        print(f"Error: invalid configuration:\n{e}", file=sys.stderr)
        return 1

    args = parse_args(argv, settings)

    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    needs_client = args.command == "sync" or (args.command == "retry" and not args.dry_run)
    client = create_story_client(settings) if needs_client else None

    try:
        return await run(args, settings, session_factory, client)
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nInterrupted by user", file=sys.stderr)
        return 130
    finally:
        await session_factory.kw["bind"].dispose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
