"""TrainingImage entity - one parent artifact of a training job."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from ipforge.core.timezone import utcnow
from ipforge.models.training_job import InvalidStateTransition


class ImageRegistrationStatus(str, Enum):
    """IP registration status of a single training image."""

    PENDING = "pending"
    REGISTERED = "registered"
    FAILED = "failed"


class TrainingImage(SQLModel, table=True):
    """TrainingImage is an uploaded image that can become a parent IP asset."""

    __tablename__ = "training_images"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    training_job_id: UUID = Field(foreign_key="training_jobs.id", index=True)
    display_order: int = Field(default=0, ge=0)
    original_filename: Optional[str] = Field(default=None, max_length=255)

    story_ip_id: Optional[str] = Field(default=None, max_length=66, index=True)
    story_tx_hash: Optional[str] = Field(default=None, max_length=66)
    registration_status: ImageRegistrationStatus = Field(
        default=ImageRegistrationStatus.PENDING, index=True
    )

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def mark_registered(self, story_ip_id: str, tx_hash: str | None = None) -> None:
        """Transition from pending to registered.

        Raises:
            InvalidStateTransition: If the image registration already completed
            ValueError: If story_ip_id is empty
        """
        if self.registration_status != ImageRegistrationStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot mark registered from {self.registration_status.value}. "
                "Image must be in pending state."
            )
        if not story_ip_id:
            raise ValueError("story_ip_id is required")
        self.story_ip_id = story_ip_id
        self.story_tx_hash = tx_hash
        self.registration_status = ImageRegistrationStatus.REGISTERED
        self.updated_at = utcnow()

    def mark_failed(self) -> None:
        """Transition from pending to failed.

        Raises:
            InvalidStateTransition: If the image registration already completed
        """
        if self.registration_status != ImageRegistrationStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot mark failed from {self.registration_status.value}. "
                "Image must be in pending state."
            )
        self.registration_status = ImageRegistrationStatus.FAILED
        self.updated_at = utcnow()
