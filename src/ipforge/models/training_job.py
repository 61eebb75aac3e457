"""TrainingJob entity - one training run and its IP provenance."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel

from ipforge.core.timezone import utcnow

if TYPE_CHECKING:
    from ipforge.models.training_image import TrainingImage


class TrainingJobStatus(str, Enum):
    """Training job lifecycle status (mirrors the training provider's states)."""

    PENDING = "pending"
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TrainingJobStatus.SUCCEEDED, TrainingJobStatus.FAILED, TrainingJobStatus.CANCELED}
)

# Non-terminal statuses only ever move forward through this order
STATUS_ORDER = {
    TrainingJobStatus.PENDING: 0,
    TrainingJobStatus.STARTING: 1,
    TrainingJobStatus.PROCESSING: 2,
}


class InvalidStateTransition(Exception):
    """Raised when a status change would break the job lifecycle."""

    pass


class DuplicateNotification(InvalidStateTransition):
    """The provider redelivered a status the job is already in."""

    pass


class NotificationAfterFinalState(InvalidStateTransition):
    """A non-terminal status arrived after the job reached a terminal state."""

    pass


class NotificationOutOfOrder(InvalidStateTransition):
    """An earlier non-terminal status arrived after a later one."""

    pass


class ProvenanceFlow(str, Enum):
    """Where a job's parent IP set was discovered."""

    TRAINING_IMAGES = "training_images"  # Flow A: registered child image records
    ASSETS = "assets"  # Flow B: parent ids stored on the job itself
    NONE = "none"


@dataclass(frozen=True)
class ParentIpSet:
    """Resolved candidate parents for derivative registration."""

    ip_ids: list[str] = field(default_factory=list)
    flow: ProvenanceFlow = ProvenanceFlow.NONE

    def __len__(self) -> int:
        return len(self.ip_ids)

    def __bool__(self) -> bool:
        return bool(self.ip_ids)


class TrainingJob(SQLModel, table=True):
    """TrainingJob tracks a Replicate training run and its Story Protocol registration."""

    __tablename__ = "training_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    replicate_job_id: Optional[str] = Field(default=None, unique=True, index=True, max_length=255)
    status: TrainingJobStatus = Field(default=TrainingJobStatus.PENDING, index=True)

    # Training inputs and outputs (copied from provider notifications)
    trigger_word: Optional[str] = Field(default=None, max_length=255, index=True)
    input_images_url: Optional[str] = Field(default=None)
    captioning: Optional[str] = Field(default=None, max_length=50)
    training_steps: Optional[int] = Field(default=None)
    output_model_url: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    logs: Optional[str] = Field(default=None, sa_column=Column(Text))
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None, index=True)
    predict_time: Optional[float] = Field(default=None)
    total_time: Optional[float] = Field(default=None)

    # Provenance
    ip_id: Optional[str] = Field(default=None, max_length=66, index=True)
    parent_ip_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    registration_tx_hash: Optional[str] = Field(default=None, max_length=66)
    registered_at: Optional[datetime] = Field(default=None)

    # Registration bookkeeping (diagnostics and retry targeting only)
    registration_failed: bool = Field(default=False)
    registration_error: Optional[str] = Field(default=None, max_length=1000)
    registration_failed_at: Optional[datetime] = Field(default=None)
    # Broadcast but unconfirmed registration; looked up before any new submission
    registration_pending_tx_hash: Optional[str] = Field(default=None, max_length=66)

    # Per-job registration lease
    registration_claim: Optional[str] = Field(default=None, max_length=64)
    registration_claimed_at: Optional[datetime] = Field(default=None)

    # Soft delete
    is_hidden: bool = Field(default=False)
    hidden_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def transition_to(self, new_status: TrainingJobStatus) -> None:
        """Apply a provider-reported status, enforcing lifecycle monotonicity.

        Terminal statuses may always be (re)applied; non-terminal statuses never
        move a job backwards.

        Raises:
            NotificationAfterFinalState: Non-terminal status after a terminal one
            DuplicateNotification: "processing" while already processing
            NotificationOutOfOrder: A status earlier than the stored one
        """
        current = TrainingJobStatus(self.status)

        if not new_status.is_terminal:
            if current.is_terminal:
                raise NotificationAfterFinalState(
                    f"Cannot move to {new_status.value} from final state {current.value}."
                )
            if new_status == current == TrainingJobStatus.PROCESSING:
                raise DuplicateNotification("Job is already processing.")
            if STATUS_ORDER[new_status] < STATUS_ORDER[current]:
                raise NotificationOutOfOrder(
                    f"Cannot move to {new_status.value} from {current.value}."
                )

        self.status = new_status
        self.updated_at = utcnow()

    def hide(self) -> None:
        """Soft-delete the job; rows are never removed."""
        self.is_hidden = True
        self.hidden_at = utcnow()
        self.updated_at = self.hidden_at


def resolve_parent_ip_set(job: TrainingJob, images: list["TrainingImage"]) -> ParentIpSet:
    """Derive a job's parent IP set.

    Flow A (registered child images, in display order) wins whenever it yields
    at least one id; otherwise Flow B (the job's stored parent_ip_ids) is used.
    The two flows are never merged.
    """
    from ipforge.models.training_image import ImageRegistrationStatus

    ordered = sorted(images, key=lambda image: image.display_order)
    image_ip_ids = [
        image.story_ip_id
        for image in ordered
        if image.story_ip_id and image.registration_status == ImageRegistrationStatus.REGISTERED
    ]
    if image_ip_ids:
        return ParentIpSet(ip_ids=image_ip_ids, flow=ProvenanceFlow.TRAINING_IMAGES)

    collection_ip_ids = list(job.parent_ip_ids or [])
    if collection_ip_ids:
        return ParentIpSet(ip_ids=collection_ip_ids, flow=ProvenanceFlow.ASSETS)

    return ParentIpSet()
