"""TrainingImage repository for ipforge.

Provides data access methods for TrainingImage entities.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ipforge.core.timezone import utcnow
from ipforge.models.training_image import ImageRegistrationStatus, TrainingImage


class TrainingImageRepository:
    """Repository for TrainingImage entities.

    Images are the Flow A parents of a training job once they carry a Story IP id.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, image: TrainingImage) -> TrainingImage:
        """Persist new training image to database.

        Args:
            image: TrainingImage entity to persist

        Returns:
            Persisted image with generated ID
        """
        self.session.add(image)
        await self.session.flush()
        return image

    async def get_by_id(self, image_id: UUID) -> TrainingImage | None:
        """Retrieve training image by UUID."""
        result = await self.session.execute(
            select(TrainingImage).where(TrainingImage.id == image_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_job(self, job_id: UUID) -> list[TrainingImage]:
        """Retrieve all images of a training job ordered by display order.

        Args:
            job_id: Parent job's internal UUID

        Returns:
            List of images (may be empty)
        """
        result = await self.session.execute(
            select(TrainingImage)
            .where(TrainingImage.training_job_id == job_id)  # type: ignore[arg-type]
            .order_by(TrainingImage.display_order.asc(), TrainingImage.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def save(self, image: TrainingImage) -> None:
        image.updated_at = utcnow()
        self.session.add(image)
        await self.session.flush()

    async def record_registration(
        self,
        image: TrainingImage,
        status: ImageRegistrationStatus,
        story_ip_id: str | None = None,
        tx_hash: str | None = None,
    ) -> TrainingImage:
        """Record the outcome of an image's own IP registration (once only).

        Args:
            image: Image to update
            status: REGISTERED or FAILED
            story_ip_id: IP id, required when status is REGISTERED
            tx_hash: Registration transaction hash

        Raises:
            InvalidStateTransition: If the image already has a recorded outcome
            ValueError: If status is PENDING, or REGISTERED without an IP id
        """
        if status == ImageRegistrationStatus.REGISTERED:
            image.mark_registered(story_ip_id or "", tx_hash)
        elif status == ImageRegistrationStatus.FAILED:
            image.mark_failed()
        else:
            raise ValueError("Registration outcome must be registered or failed")
        await self.save(image)
        return image
