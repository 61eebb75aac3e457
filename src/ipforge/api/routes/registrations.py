"""Derivative registration API endpoints.

This module implements REST endpoints for Story Protocol registration:
- GET /api/registrations/status - Registration coverage of eligible training jobs
- POST /api/registrations/retry - Retry one job, or backfill a batch (optionally dry run)
- POST /api/training-jobs/{job_ref}/register-derivative - Register one model on demand

Jobs can be addressed by internal UUID or by Replicate training id.
"""

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ipforge.api.dependencies import get_backfill_service, get_registration_engine
from ipforge.services.exceptions import RegistrationPersistenceError, TrainingJobNotFoundError
from ipforge.services.registration.backfill import RegistrationBackfillService
from ipforge.services.registration.engine import RegistrationEngine, RegistrationOutcome

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["registrations"])


# Request/Response Models


class RetryRequest(BaseModel):
    """Retry/backfill request. job_id targets a single job and ignores limit."""

    limit: int = Field(default=5, ge=1, le=100)
    force: bool = False
    job_id: str | None = Field(default=None, description="Internal UUID or Replicate id")
    dry_run: bool = False
    max_age_days: int | None = Field(default=7, ge=1)


class RegistrationOutcomeResponse(BaseModel):
    job_id: UUID
    external_id: str | None
    outcome: str | None
    success: bool
    ip_id: str | None = None
    tx_hash: str | None = None
    parent_ips_used: int = 0
    parent_ips_total: int = 0
    error: str | None = None

    @classmethod
    def from_outcome(cls, outcome: RegistrationOutcome) -> "RegistrationOutcomeResponse":
        return cls(
            job_id=outcome.job_id,
            external_id=outcome.external_id,
            outcome=outcome.kind.value,
            success=outcome.success,
            ip_id=outcome.ip_id,
            tx_hash=outcome.tx_hash,
            parent_ips_used=outcome.parent_ips_used,
            parent_ips_total=outcome.parent_ips_total,
            error=outcome.error,
        )


class DryRunCandidateResponse(BaseModel):
    job_id: UUID
    external_id: str | None
    trigger_word: str | None
    flow: str
    parent_ips_total: int
    parent_ips_to_submit: int
    already_registered: bool
    would_attempt: bool


class RetryResponse(BaseModel):
    dry_run: bool
    processed: int
    registered: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[RegistrationOutcomeResponse] = Field(default_factory=list)
    candidates: list[DryRunCandidateResponse] = Field(default_factory=list)


class RegistrationStatusResponse(BaseModel):
    total: int
    registered: int
    unregistered: int
    unregistered_with_parent_ids: int
    registration_rate: float


# Endpoints


@router.get("/registrations/status", response_model=RegistrationStatusResponse)
async def get_registration_status(
    max_age_days: int | None = Query(default=None, ge=1),
    backfill: RegistrationBackfillService = Depends(get_backfill_service),
) -> RegistrationStatusResponse:
    """Count registered vs. unregistered succeeded training jobs."""
    report = await backfill.status(max_age_days=max_age_days)
    return RegistrationStatusResponse(
        total=report.total,
        registered=report.registered,
        unregistered=report.unregistered,
        unregistered_with_parent_ids=report.unregistered_with_parent_ids,
        registration_rate=report.registration_rate,
    )


def _not_found(e: TrainingJobNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _persistence_failed(e: RegistrationPersistenceError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": str(e), "ip_id": e.ip_id, "tx_hash": e.tx_hash},
    )


@router.post("/registrations/retry", response_model=RetryResponse)
async def retry_registrations(
    body: RetryRequest,
    request: Request,
    backfill: RegistrationBackfillService = Depends(get_backfill_service),
) -> RetryResponse:
    """Retry failed registrations for one job or a batch of eligible jobs.

    HTTP Status Codes:
        200: Retry (or dry run) completed; individual failures are in results
        404: job_id does not match any training job
        503: Story Protocol is not configured (real runs only)
    """
    if body.dry_run:
        dry = await backfill.dry_run_batch(
            limit=body.limit, force=body.force, max_age_days=body.max_age_days
        )
        return RetryResponse(
            dry_run=True,
            processed=len(dry.candidates),
            candidates=[
                DryRunCandidateResponse(
                    job_id=c.job_id,
                    external_id=c.external_id,
                    trigger_word=c.trigger_word,
                    flow=c.flow.value,
                    parent_ips_total=c.parent_ips_total,
                    parent_ips_to_submit=c.parent_ips_to_submit,
                    already_registered=c.already_registered,
                    would_attempt=c.would_attempt,
                )
                for c in dry.candidates
            ],
        )

    # Raises 503 when registration is unavailable
    get_registration_engine(request)

    if body.job_id:
        try:
            outcome = await backfill.retry_one(body.job_id, force=body.force)
        except TrainingJobNotFoundError as e:
            raise _not_found(e)
        except RegistrationPersistenceError as e:
            raise _persistence_failed(e)
        return RetryResponse(
            dry_run=False,
            processed=1,
            registered=int(outcome.success),
            failed=int(outcome.retryable),
            skipped=int(not outcome.success and not outcome.retryable),
            results=[RegistrationOutcomeResponse.from_outcome(outcome)],
        )

    report = await backfill.retry_batch(
        limit=body.limit, force=body.force, max_age_days=body.max_age_days
    )
    return RetryResponse(
        dry_run=False,
        processed=report.processed,
        registered=report.registered,
        failed=report.failed,
        skipped=report.skipped,
        results=[
            RegistrationOutcomeResponse(
                job_id=r.job_id,
                external_id=r.external_id,
                outcome=r.outcome.value if r.outcome else None,
                success=r.success,
                ip_id=r.ip_id,
                tx_hash=r.tx_hash,
                parent_ips_used=r.parent_ips_used,
                parent_ips_total=r.parent_ips_total,
                error=r.error,
            )
            for r in report.results
        ],
    )


@router.post(
    "/training-jobs/{job_ref}/register-derivative", response_model=RegistrationOutcomeResponse
)
async def register_derivative(
    job_ref: str,
    force: bool = Query(default=False),
    engine: RegistrationEngine = Depends(get_registration_engine),
) -> RegistrationOutcomeResponse:
    """Register a trained model as a derivative of its parent IPs.

    HTTP Status Codes:
        200: Outcome returned (check success/outcome for failures)
        404: Training job not found
        500: Registered on-chain but the result could not be stored
        503: Story Protocol is not configured
    """
    logger.info("registration.requested", job_ref=job_ref, force=force)
    try:
        outcome = await engine.register_job_as_derivative(job_ref, force=force)
    except TrainingJobNotFoundError as e:
        raise _not_found(e)
    except RegistrationPersistenceError as e:
        raise _persistence_failed(e)
    return RegistrationOutcomeResponse.from_outcome(outcome)
