"""Registration retry and backfill.

Drives the registration engine over a single job or a batch of eligible jobs.
Batches run sequentially with a minimum interval between registration calls,
and one failing job never stops the rest of the batch.
"""

from dataclasses import dataclass, field
from uuid import UUID

import structlog

from ipforge.core.rate_limit import IntervalRateLimiter
from ipforge.models.training_job import ProvenanceFlow
from ipforge.services.registration.engine import (
    MAX_PARENT_IPS,
    RegistrationOutcome,
    RegistrationOutcomeKind,
)

logger = structlog.get_logger()


@dataclass
class BackfillJobResult:
    """Outcome of one job within a batch."""

    job_id: UUID
    external_id: str | None
    outcome: RegistrationOutcomeKind | None
    ip_id: str | None = None
    tx_hash: str | None = None
    parent_ips_used: int = 0
    parent_ips_total: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome == RegistrationOutcomeKind.REGISTERED


@dataclass
class BackfillReport:
    """Aggregate result of retry_batch()."""

    processed: int = 0
    registered: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[BackfillJobResult] = field(default_factory=list)

    def add(self, result: BackfillJobResult) -> None:
        self.processed += 1
        self.results.append(result)
        if result.success:
            self.registered += 1
        elif result.outcome in (
            RegistrationOutcomeKind.ALREADY_REGISTERED,
            RegistrationOutcomeKind.IN_PROGRESS,
        ):
            self.skipped += 1
        else:
            self.failed += 1


@dataclass
class DryRunCandidate:
    job_id: UUID
    external_id: str | None
    trigger_word: str | None
    flow: ProvenanceFlow
    parent_ips_total: int
    parent_ips_to_submit: int
    already_registered: bool
    would_attempt: bool


@dataclass
class DryRunReport:
    candidates: list[DryRunCandidate] = field(default_factory=list)

    @property
    def would_attempt(self) -> int:
        return sum(1 for candidate in self.candidates if candidate.would_attempt)

    @property
    def no_parent_ips(self) -> int:
        return sum(1 for candidate in self.candidates if candidate.parent_ips_total == 0)


@dataclass
class RegistrationStatusReport:
    total: int
    registered: int
    unregistered: int
    unregistered_with_parent_ids: int
    registration_rate: float
    max_age_days: int | None = None


def _job_result(outcome: RegistrationOutcome) -> BackfillJobResult:
    return BackfillJobResult(
        job_id=outcome.job_id,
        external_id=outcome.external_id,
        outcome=outcome.kind,
        ip_id=outcome.ip_id,
        tx_hash=outcome.tx_hash,
        parent_ips_used=outcome.parent_ips_used,
        parent_ips_total=outcome.parent_ips_total,
        error=outcome.error,
    )


class RegistrationBackfillService:
    """Retries registration for single jobs and sweeps eligible jobs in bulk."""

    def __init__(self, uow_factory, engine, rate_limiter: IntervalRateLimiter | None = None):
        """
        Args:
            uow_factory: Factory returning UnitOfWork instances
            engine: RegistrationEngine that performs each registration
            rate_limiter: Limits the pace of registration calls in a batch
        """
        self.uow_factory = uow_factory
        self.engine = engine
        self.rate_limiter = rate_limiter or IntervalRateLimiter(0)

    async def retry_one(self, job_ref: str | UUID, force: bool = False) -> RegistrationOutcome:
        """Retry registration for one job.

        An already registered job is returned as ALREADY_REGISTERED without any
        network call unless force is set.

        Raises:
            TrainingJobNotFoundError: No job matches job_ref
        """
        logger.info("backfill.retry_one", job_ref=str(job_ref), force=force)
        return await self.engine.register_job_as_derivative(job_ref, force=force)

    async def _select(self, limit: int, force: bool, max_age_days: int | None):
        async with await self.uow_factory() as uow:
            return await uow.training_jobs.select_retry_candidates(
                limit=limit, force=force, max_age_days=max_age_days
            )

    async def retry_batch(
        self, limit: int, force: bool = False, max_age_days: int | None = 7
    ) -> BackfillReport:
        """Register every eligible job (up to limit), one at a time.

        Args:
            limit: Maximum number of jobs to process
            force: Also re-register jobs that already have an IP id
            max_age_days: Only jobs completed in the last N days

        Returns:
            BackfillReport with per-job results and counts
        """
        candidates = await self._select(limit, force, max_age_days)
        report = BackfillReport()
        logger.info(
            "backfill.batch_started",
            candidates=len(candidates),
            limit=limit,
            force=force,
            max_age_days=max_age_days,
        )

        for job in candidates:
            await self.rate_limiter.wait()
            try:
                outcome = await self.engine.register_job_as_derivative(job.id, force=force)
                result = _job_result(outcome)
            except Exception as e:
                logger.error(
                    "backfill.job_failed",
                    job_id=str(job.id),
                    external_id=job.replicate_job_id,
                    error=str(e),
                    exc_type=type(e).__name__,
                )
                result = BackfillJobResult(
                    job_id=job.id,
                    external_id=job.replicate_job_id,
                    outcome=None,
                    error=str(e) or type(e).__name__,
                )
            report.add(result)

        logger.info(
            "backfill.batch_completed",
            processed=report.processed,
            registered=report.registered,
            failed=report.failed,
            skipped=report.skipped,
        )
        return report

    async def dry_run_batch(
        self, limit: int, force: bool = False, max_age_days: int | None = 7
    ) -> DryRunReport:
        """Show what retry_batch() would do without calling the network or writing.

        Uses the same selection query and parent resolution as the real run.
        """
        report = DryRunReport()
        async with await self.uow_factory() as uow:
            candidates = await uow.training_jobs.select_retry_candidates(
                limit=limit, force=force, max_age_days=max_age_days
            )
            for job in candidates:
                parents = await uow.training_jobs.find_parent_ip_set(job)
                already_registered = bool(job.ip_id)
                report.candidates.append(
                    DryRunCandidate(
                        job_id=job.id,
                        external_id=job.replicate_job_id,
                        trigger_word=job.trigger_word,
                        flow=parents.flow,
                        parent_ips_total=len(parents),
                        parent_ips_to_submit=min(len(parents), MAX_PARENT_IPS),
                        already_registered=already_registered,
                        would_attempt=bool(parents) and (force or not already_registered),
                    )
                )
            await uow.rollback()

        logger.info(
            "backfill.dry_run_completed",
            candidates=len(report.candidates),
            would_attempt=report.would_attempt,
        )
        return report

    async def status(self, max_age_days: int | None = None) -> RegistrationStatusReport:
        """Report registered vs. unregistered eligible jobs."""
        async with await self.uow_factory() as uow:
            counts = await uow.training_jobs.count_registration_status(max_age_days)
        return RegistrationStatusReport(
            total=counts.total,
            registered=counts.registered,
            unregistered=counts.unregistered,
            unregistered_with_parent_ids=counts.unregistered_with_parent_ids,
            registration_rate=counts.registration_rate,
            max_age_days=max_age_days,
        )
