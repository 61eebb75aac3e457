"""TrainingJob repository for ipforge.

Provides data access methods for TrainingJob entities, including the
conditional writes that keep IP registration exclusive per job.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from ipforge.core.timezone import utcnow
from ipforge.models.training_image import TrainingImage
from ipforge.models.training_job import (
    ParentIpSet,
    TrainingJob,
    TrainingJobStatus,
    resolve_parent_ip_set,
)


@dataclass
class RegistrationStatusCounts:
    """Registration coverage of eligible (succeeded, complete) jobs."""

    total: int
    registered: int
    unregistered: int
    unregistered_with_parent_ids: int

    @property
    def registration_rate(self) -> float:
        """Percentage of eligible jobs that have an IP id (0.0 when there are none)."""
        if self.total == 0:
            return 0.0
        return round(self.registered / self.total * 100, 1)


def _parse_uuid(value: str | UUID) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(value)
    except (ValueError, TypeError, AttributeError):
        return None


def _ip_id_matches(expected_ip_id: str | None):
    if expected_ip_id is None:
        return TrainingJob.ip_id.is_(None)  # type: ignore[union-attr]
    return TrainingJob.ip_id == expected_ip_id


class TrainingJobRepository:
    """Repository for TrainingJob entities.

    Jobs are addressed either by internal UUID or by the training provider's
    job id; resolve() is the single lookup used by every entry point.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: TrainingJob) -> TrainingJob:
        """Persist new training job to database.

        Args:
            job: TrainingJob entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> TrainingJob | None:
        """Retrieve job by internal UUID."""
        result = await self.session.execute(select(TrainingJob).where(TrainingJob.id == job_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_id: str) -> TrainingJob | None:
        """Retrieve job by the training provider's job id."""
        result = await self.session.execute(
            select(TrainingJob).where(TrainingJob.replicate_job_id == external_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def resolve(self, job_ref: str | UUID) -> TrainingJob | None:
        """Find a job by internal UUID or external job id, whichever matches.

        Args:
            job_ref: Internal UUID (as UUID or string) or provider job id

        Returns:
            TrainingJob if found, None otherwise
        """
        job_uuid = _parse_uuid(job_ref)
        if job_uuid is not None:
            job = await self.get_by_id(job_uuid)
            if job is not None:
                return job
        return await self.get_by_external_id(str(job_ref))

    async def get_with_children(
        self, job_ref: str | UUID
    ) -> tuple[TrainingJob, list[TrainingImage]] | None:
        """Retrieve a job and its training images (ordered by display order).

        Returns:
            (job, images) if found, None otherwise
        """
        job = await self.resolve(job_ref)
        if job is None:
            return None
        return job, await self._get_images(job.id)

    async def _get_images(self, job_id: UUID) -> list[TrainingImage]:
        result = await self.session.execute(
            select(TrainingImage)
            .where(TrainingImage.training_job_id == job_id)  # type: ignore[arg-type]
            .order_by(TrainingImage.display_order.asc(), TrainingImage.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def find_parent_ip_set(self, job: TrainingJob) -> ParentIpSet:
        """Resolve the candidate parent IP set for a job (Flow A before Flow B)."""
        images = await self._get_images(job.id)
        return resolve_parent_ip_set(job, images)

    async def upsert_on_notification(
        self, external_id: str, status: TrainingJobStatus
    ) -> tuple[TrainingJob, bool]:
        """Insert a job for an unknown external id, then load it locked for update.

        Uses INSERT ... ON CONFLICT (replicate_job_id) DO NOTHING, so concurrent
        deliveries of the same notification create at most one row.

        Args:
            external_id: Training provider job id
            status: Status to store when the row is created

        Returns:
            Tuple of (job, created) where created is True if this call inserted the row
        """
        now = utcnow()
        dialect = postgresql if self.session.bind.dialect.name == "postgresql" else sqlite
        stmt = (
            dialect.insert(TrainingJob)
            .values(
                id=uuid4(),
                replicate_job_id=external_id,
                status=status,
                parent_ip_ids=[],
                registration_failed=False,
                is_hidden=False,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["replicate_job_id"])
        )
        result = await self.session.execute(stmt)
        created = result.rowcount == 1

        locked = await self.session.execute(
            select(TrainingJob)
            .where(TrainingJob.replicate_job_id == external_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return locked.scalar_one(), created

    async def save(self, job: TrainingJob) -> None:
        """Flush pending changes on a job and refresh it."""
        job.updated_at = utcnow()
        self.session.add(job)
        await self.session.flush()
        await self.session.refresh(job)

    async def try_claim_registration(
        self,
        job_id: UUID,
        claim: str,
        expected_ip_id: str | None,
        stale_before: datetime,
    ) -> bool:
        """Take the per-job registration lease with a conditional update.

        The claim succeeds only if ip_id still equals expected_ip_id and no other
        live claim exists (claims taken before stale_before are treated as abandoned).

        Query explanation:
        - WHERE id = :job_id
        - AND ip_id IS NULL (or = :expected_ip_id for forced re-registration)
        - AND (registration_claim IS NULL OR registration_claimed_at < :stale_before)

        Returns:
            True if this caller now holds the claim
        """
        now = utcnow()
        result = await self.session.execute(
            update(TrainingJob)
            .where(
                and_(
                    TrainingJob.id == job_id,  # type: ignore[arg-type]
                    _ip_id_matches(expected_ip_id),
                    or_(
                        TrainingJob.registration_claim.is_(None),  # type: ignore[union-attr]
                        TrainingJob.registration_claimed_at < stale_before,  # type: ignore[operator]
                    ),
                )
            )
            .values(registration_claim=claim, registration_claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_registration_success(
        self,
        job_id: UUID,
        ip_id: str,
        tx_hash: str | None,
        parent_ip_ids_used: list[str],
        claim: str,
        expected_ip_id: str | None = None,
    ) -> bool:
        """Atomically store a confirmed registration.

        Sets ip_id, stores the submitted parent set, clears failure bookkeeping and
        releases the claim. The update only applies while ip_id still equals
        expected_ip_id (IS NULL for normal registration) and the caller holds the claim.

        Returns:
            True if the row was updated, False if another writer got there first
        """
        if not ip_id:
            raise ValueError("ip_id is required")

        now = utcnow()
        result = await self.session.execute(
            update(TrainingJob)
            .where(
                and_(
                    TrainingJob.id == job_id,  # type: ignore[arg-type]
                    _ip_id_matches(expected_ip_id),
                    TrainingJob.registration_claim == claim,  # type: ignore[arg-type]
                )
            )
            .values(
                ip_id=ip_id,
                registration_tx_hash=tx_hash,
                parent_ip_ids=list(parent_ip_ids_used),
                registered_at=now,
                registration_failed=False,
                registration_error=None,
                registration_failed_at=None,
                registration_pending_tx_hash=None,
                registration_claim=None,
                registration_claimed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_registration_failure(
        self, job_id: UUID, reason: str, claim: str | None = None
    ) -> None:
        """Store the latest registration failure; never touches ip_id.

        Args:
            job_id: Job's internal UUID
            reason: Error description (truncated to 1000 characters)
            claim: Claim token to release, if the caller holds one
        """
        now = utcnow()
        values: dict = {
            "registration_failed": True,
            "registration_error": reason[:1000],
            "registration_failed_at": now,
            "updated_at": now,
        }
        await self.session.execute(
            update(TrainingJob)
            .where(TrainingJob.id == job_id)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if claim is not None:
            await self.release_claim(job_id, claim)

    async def set_pending_transaction(self, job_id: UUID, claim: str, tx_hash: str | None) -> None:
        """Remember (or forget, with None) a broadcast but unconfirmed registration.

        Only applies while the caller holds the claim.
        """
        await self.session.execute(
            update(TrainingJob)
            .where(
                and_(
                    TrainingJob.id == job_id,  # type: ignore[arg-type]
                    TrainingJob.registration_claim == claim,  # type: ignore[arg-type]
                )
            )
            .values(registration_pending_tx_hash=tx_hash, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def release_claim(self, job_id: UUID, claim: str) -> None:
        """Release the registration lease if the caller still holds it."""
        await self.session.execute(
            update(TrainingJob)
            .where(
                and_(
                    TrainingJob.id == job_id,  # type: ignore[arg-type]
                    TrainingJob.registration_claim == claim,  # type: ignore[arg-type]
                )
            )
            .values(registration_claim=None, registration_claimed_at=None)
            .execution_options(synchronize_session=False)
        )

    def _eligible_filter(self, max_age_days: int | None):
        """Succeeded jobs with a trigger word and a model output."""
        conditions = [
            TrainingJob.status == TrainingJobStatus.SUCCEEDED,  # type: ignore[arg-type]
            TrainingJob.trigger_word.is_not(None),  # type: ignore[union-attr]
            TrainingJob.output_model_url.is_not(None),  # type: ignore[union-attr]
        ]
        if max_age_days is not None:
            cutoff: datetime = utcnow() - timedelta(days=max_age_days)
            conditions.append(TrainingJob.completed_at >= cutoff)  # type: ignore[operator]
        return and_(*conditions)

    async def select_retry_candidates(
        self, limit: int, force: bool = False, max_age_days: int | None = 7
    ) -> list[TrainingJob]:
        """Select jobs for registration retry/backfill.

        Used by both the real batch and the dry run so they always see the same
        candidates in the same order.

        Query explanation:
        - status = succeeded, trigger_word and output_model_url present
        - completed_at within max_age_days (None disables the age filter)
        - ip_id IS NULL unless force is set
        - ORDER BY completed_at DESC, id ASC (stable tie-break)

        Args:
            limit: Maximum number of jobs to return
            force: Include jobs that already have an IP id
            max_age_days: Only jobs completed in the last N days

        Returns:
            Ordered list of candidate jobs
        """
        stmt = select(TrainingJob).where(self._eligible_filter(max_age_days))
        if not force:
            stmt = stmt.where(TrainingJob.ip_id.is_(None))  # type: ignore[union-attr]
        stmt = stmt.order_by(
            TrainingJob.completed_at.desc(),  # type: ignore[union-attr]
            TrainingJob.id.asc(),  # type: ignore[attr-defined]
        ).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_registration_status(
        self, max_age_days: int | None = None
    ) -> RegistrationStatusCounts:
        """Count registered vs. unregistered eligible jobs."""
        eligible = self._eligible_filter(max_age_days)

        total = (
            await self.session.execute(select(func.count(TrainingJob.id)).where(eligible))  # type: ignore[arg-type]
        ).scalar() or 0
        registered = (
            await self.session.execute(
                select(func.count(TrainingJob.id)).where(  # type: ignore[arg-type]
                    eligible, TrainingJob.ip_id.is_not(None)  # type: ignore[union-attr]
                )
            )
        ).scalar() or 0

        # Parent id lists are JSON; count non-empty ones in Python
        unregistered_parents = await self.session.execute(
            select(TrainingJob.parent_ip_ids).where(
                eligible, TrainingJob.ip_id.is_(None)  # type: ignore[union-attr]
            )
        )
        with_parents = sum(1 for (ids,) in unregistered_parents.all() if ids)

        return RegistrationStatusCounts(
            total=total,
            registered=registered,
            unregistered=total - registered,
            unregistered_with_parent_ids=with_parents,
        )

    async def hide(self, job: TrainingJob) -> None:
        """Soft-hide a job (rows are never deleted)."""
        job.hide()
        self.session.add(job)
        await self.session.flush()
