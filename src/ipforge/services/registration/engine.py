"""Derivative IP registration for completed training jobs.

A registration runs in three steps so that no database transaction stays open
across the network call:

1. Resolve the job and its parents, then take the per-job registration claim.
2. Call the registration client exactly once. When an earlier attempt timed
   out after broadcasting, its receipt is looked up instead and a new
   transaction is only sent if that one reverted.
3. Record the outcome with a conditional write that only lands while the
   job is still unregistered (or still has the ip_id a forced run expected).
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from uuid import UUID, uuid4

import structlog

from ipforge.core.timezone import utcnow
from ipforge.models.training_job import ProvenanceFlow
from ipforge.services.exceptions import RegistrationPersistenceError, TrainingJobNotFoundError
from ipforge.services.story.metadata import IPMetadata, build_model_metadata

logger = structlog.get_logger()

# Story rejects derivative calls with more parents than this
MAX_PARENT_IPS = 16

NO_PARENTS_ERROR = "No parent IP IDs found for training job"


class RegistrationOutcomeKind(str, Enum):
    REGISTERED = "registered"
    ALREADY_REGISTERED = "already_registered"
    IN_PROGRESS = "in_progress"
    NO_PARENT_IPS = "no_parent_ips"
    EXTERNAL_CALL_FAILED = "external_call_failed"


@dataclass
class RegistrationOutcome:
    """Result of one register_job_as_derivative call."""

    kind: RegistrationOutcomeKind
    job_id: UUID
    external_id: str | None = None
    ip_id: str | None = None
    tx_hash: str | None = None
    parent_ips_used: int = 0
    parent_ips_total: int = 0
    flow: ProvenanceFlow = ProvenanceFlow.NONE
    parent_ip_ids: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.kind == RegistrationOutcomeKind.REGISTERED

    @property
    def retryable(self) -> bool:
        return self.kind in (
            RegistrationOutcomeKind.NO_PARENT_IPS,
            RegistrationOutcomeKind.EXTERNAL_CALL_FAILED,
        )


def apply_parent_ceiling(parent_ip_ids: list[str]) -> list[str]:
    """Keep the first MAX_PARENT_IPS parents in their existing order."""
    return list(parent_ip_ids[:MAX_PARENT_IPS])


@dataclass
class _PreparedRegistration:
    job_id: UUID
    external_id: str | None
    expected_ip_id: str | None
    flow: ProvenanceFlow
    parents_total: int
    submitted: list[str]
    metadata: IPMetadata
    claim: str
    pending_tx_hash: str | None = None


class RegistrationEngine:
    """Registers a training job's model as a derivative of its parent IPs."""

    def __init__(
        self,
        uow_factory,
        client,
        license_terms_id: str = "1",
        claim_ttl_seconds: int = 900,
    ):
        """
        Args:
            uow_factory: Factory returning UnitOfWork instances
            client: Registration client exposing mint_and_register_derivative()
            license_terms_id: License terms id attached to every parent
            claim_ttl_seconds: Age after which an unreleased claim is considered abandoned
        """
        self.uow_factory = uow_factory
        self.client = client
        self.license_terms_id = license_terms_id
        self.claim_ttl_seconds = claim_ttl_seconds

    async def register_job_as_derivative(
        self, job_ref: str | UUID, force: bool = False
    ) -> RegistrationOutcome:
        """Register one job's model as a derivative IP.

        Args:
            job_ref: Internal UUID or external training job id
            force: Re-register even if the job already has an ip_id

        Returns:
            RegistrationOutcome describing what happened

        Raises:
            TrainingJobNotFoundError: No job matches job_ref
            RegistrationPersistenceError: The registration succeeded on-chain but
                could not be stored
        """
        prepared = await self._prepare(job_ref, force)
        if isinstance(prepared, RegistrationOutcome):
            return prepared

        log = logger.bind(job_id=str(prepared.job_id), external_id=prepared.external_id)
        if prepared.pending_tx_hash:
            settled = await self._settle_pending_transaction(prepared)
            if settled is not None:
                return settled

        log.info(
            "registration.submitting",
            flow=prepared.flow.value,
            parent_ips_used=len(prepared.submitted),
            parent_ips_total=prepared.parents_total,
            force=force,
        )

        try:
            result = await self.client.mint_and_register_derivative(
                parent_ip_ids=prepared.submitted,
                license_terms_id=self.license_terms_id,
                metadata=prepared.metadata,
            )
            error = None if result.success and result.ip_id else (result.error or "Unknown error")
        except Exception as e:
            result = None
            error = str(e) or type(e).__name__
            log.error("registration.client_raised", error=error, exc_type=type(e).__name__)

        if error is not None:
            pending_tx_hash = result.tx_hash if result is not None and result.pending else None
            return await self._record_failure(prepared, error, pending_tx_hash=pending_tx_hash)
        return await self._record_success(prepared, result.ip_id, result.tx_hash)

    async def _prepare(
        self, job_ref: str | UUID, force: bool
    ) -> _PreparedRegistration | RegistrationOutcome:
        async with await self.uow_factory() as uow:
            found = await uow.training_jobs.get_with_children(job_ref)
            if found is None:
                raise TrainingJobNotFoundError(str(job_ref))
            job, images = found

            if job.ip_id and not force:
                logger.info(
                    "registration.already_registered", job_id=str(job.id), ip_id=job.ip_id
                )
                return RegistrationOutcome(
                    kind=RegistrationOutcomeKind.ALREADY_REGISTERED,
                    job_id=job.id,
                    external_id=job.replicate_job_id,
                    ip_id=job.ip_id,
                    tx_hash=job.registration_tx_hash,
                    parent_ip_ids=list(job.parent_ip_ids or []),
                )

            parents = await uow.training_jobs.find_parent_ip_set(job)
            if not parents:
                await uow.training_jobs.record_registration_failure(job.id, NO_PARENTS_ERROR)
                logger.warning(
                    "registration.no_parent_ips",
                    job_id=str(job.id),
                    external_id=job.replicate_job_id,
                )
                return RegistrationOutcome(
                    kind=RegistrationOutcomeKind.NO_PARENT_IPS,
                    job_id=job.id,
                    external_id=job.replicate_job_id,
                    error=NO_PARENTS_ERROR,
                )

            submitted = apply_parent_ceiling(parents.ip_ids)
            if len(submitted) < len(parents):
                logger.warning(
                    "registration.parent_ceiling_applied",
                    job_id=str(job.id),
                    parent_ips_total=len(parents),
                    parent_ips_used=len(submitted),
                    dropped_parent_ip_ids=parents.ip_ids[MAX_PARENT_IPS:],
                )

            metadata = build_model_metadata(
                job,
                parent_count=len(submitted),
                image_count=len(images) or len(parents),
            )

            claim = uuid4().hex
            expected_ip_id = job.ip_id if force else None
            claimed = await uow.training_jobs.try_claim_registration(
                job.id,
                claim,
                expected_ip_id=expected_ip_id,
                stale_before=utcnow() - timedelta(seconds=self.claim_ttl_seconds),
            )
            if not claimed:
                return await self._claim_refused(uow, job.id, expected_ip_id)

            # Re-read under the claim so a hash stored by the previous holder is seen
            await uow.session.refresh(job)

            return _PreparedRegistration(
                job_id=job.id,
                external_id=job.replicate_job_id,
                expected_ip_id=expected_ip_id,
                flow=parents.flow,
                parents_total=len(parents),
                submitted=submitted,
                metadata=metadata,
                claim=claim,
                pending_tx_hash=job.registration_pending_tx_hash,
            )

    async def _claim_refused(self, uow, job_id: UUID, expected_ip_id: str | None):
        current = await uow.training_jobs.get_by_id(job_id)
        await uow.session.refresh(current)
        if current.ip_id and current.ip_id != expected_ip_id:
            logger.info(
                "registration.already_registered", job_id=str(job_id), ip_id=current.ip_id
            )
            kind = RegistrationOutcomeKind.ALREADY_REGISTERED
        else:
            logger.info("registration.in_progress", job_id=str(job_id))
            kind = RegistrationOutcomeKind.IN_PROGRESS
        return RegistrationOutcome(
            kind=kind,
            job_id=job_id,
            external_id=current.replicate_job_id,
            ip_id=current.ip_id,
            tx_hash=current.registration_tx_hash,
        )

    async def _settle_pending_transaction(
        self, prepared: _PreparedRegistration
    ) -> RegistrationOutcome | None:
        """Resolve a registration broadcast by an earlier attempt before sending another.

        Returns:
            The outcome when the earlier transaction decides it, or None when it
            reverted and a new submission may go ahead
        """
        tx_hash = prepared.pending_tx_hash
        log = logger.bind(job_id=str(prepared.job_id), tx_hash=tx_hash)
        log.info("registration.checking_pending_transaction")

        try:
            check = await self.client.check_registration_transaction(tx_hash)
        except Exception as e:
            log.error("registration.pending_check_raised", error=str(e))
            return await self._record_failure(
                prepared, str(e) or type(e).__name__, pending_tx_hash=tx_hash
            )

        if check.success and check.ip_id:
            log.info("registration.pending_transaction_confirmed", ip_id=check.ip_id)
            return await self._record_success(prepared, check.ip_id, check.tx_hash or tx_hash)

        if check.pending:
            if check.error:
                return await self._record_failure(prepared, check.error, pending_tx_hash=tx_hash)
            async with await self.uow_factory() as uow:
                await uow.training_jobs.release_claim(prepared.job_id, prepared.claim)
            log.info("registration.in_progress", reason="transaction_pending")
            return RegistrationOutcome(
                kind=RegistrationOutcomeKind.IN_PROGRESS,
                job_id=prepared.job_id,
                external_id=prepared.external_id,
                tx_hash=tx_hash,
            )

        log.warning("registration.pending_transaction_reverted", error=check.error)
        async with await self.uow_factory() as uow:
            await uow.training_jobs.set_pending_transaction(prepared.job_id, prepared.claim, None)
        prepared.pending_tx_hash = None
        return None

    async def _record_failure(
        self,
        prepared: _PreparedRegistration,
        error: str,
        pending_tx_hash: str | None = None,
    ) -> RegistrationOutcome:
        async with await self.uow_factory() as uow:
            await uow.training_jobs.set_pending_transaction(
                prepared.job_id, prepared.claim, pending_tx_hash
            )
            await uow.training_jobs.record_registration_failure(
                prepared.job_id, error, claim=prepared.claim
            )
        logger.warning(
            "registration.failed",
            job_id=str(prepared.job_id),
            external_id=prepared.external_id,
            error=error,
            pending_tx_hash=pending_tx_hash,
        )
        return RegistrationOutcome(
            kind=RegistrationOutcomeKind.EXTERNAL_CALL_FAILED,
            job_id=prepared.job_id,
            external_id=prepared.external_id,
            parent_ips_used=len(prepared.submitted),
            parent_ips_total=prepared.parents_total,
            flow=prepared.flow,
            parent_ip_ids=prepared.submitted,
            tx_hash=pending_tx_hash,
            error=error,
        )

    async def _record_success(
        self, prepared: _PreparedRegistration, ip_id: str, tx_hash: str | None
    ) -> RegistrationOutcome:
        try:
            async with await self.uow_factory() as uow:
                stored = await uow.training_jobs.record_registration_success(
                    prepared.job_id,
                    ip_id=ip_id,
                    tx_hash=tx_hash,
                    parent_ip_ids_used=prepared.submitted,
                    claim=prepared.claim,
                    expected_ip_id=prepared.expected_ip_id,
                )
        except Exception as e:
            logger.error(
                "registration.persistence_failed",
                job_id=str(prepared.job_id),
                external_id=prepared.external_id,
                ip_id=ip_id,
                tx_hash=tx_hash,
                error=str(e),
            )
            raise RegistrationPersistenceError(str(prepared.job_id), ip_id, tx_hash) from e

        outcome = RegistrationOutcome(
            kind=RegistrationOutcomeKind.REGISTERED,
            job_id=prepared.job_id,
            external_id=prepared.external_id,
            ip_id=ip_id,
            tx_hash=tx_hash,
            parent_ips_used=len(prepared.submitted),
            parent_ips_total=prepared.parents_total,
            flow=prepared.flow,
            parent_ip_ids=prepared.submitted,
        )
        if not stored:
            # Someone else stored a registration first; ours is an orphan on-chain
            logger.warning(
                "registration.orphaned",
                job_id=str(prepared.job_id),
                orphan_ip_id=ip_id,
                orphan_tx_hash=tx_hash,
            )
            outcome.kind = RegistrationOutcomeKind.ALREADY_REGISTERED
            outcome.ip_id = None
            outcome.tx_hash = None
            outcome.error = f"Job already registered; orphaned {ip_id} (tx {tx_hash})"
            return outcome

        logger.info(
            "registration.succeeded",
            job_id=str(prepared.job_id),
            external_id=prepared.external_id,
            ip_id=ip_id,
            tx_hash=tx_hash,
            parent_ips_used=outcome.parent_ips_used,
            parent_ips_total=outcome.parent_ips_total,
        )
        return outcome
