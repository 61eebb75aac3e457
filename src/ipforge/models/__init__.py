"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from ipforge.models.training_image import ImageRegistrationStatus, TrainingImage
from ipforge.models.training_job import (
    DuplicateNotification,
    InvalidStateTransition,
    NotificationAfterFinalState,
    NotificationOutOfOrder,
    ParentIpSet,
    ProvenanceFlow,
    TrainingJob,
    TrainingJobStatus,
    resolve_parent_ip_set,
)

__all__ = [
    "TrainingJob",
    "TrainingJobStatus",
    "TrainingImage",
    "ImageRegistrationStatus",
    "InvalidStateTransition",
    "DuplicateNotification",
    "NotificationAfterFinalState",
    "NotificationOutOfOrder",
    "ParentIpSet",
    "ProvenanceFlow",
    "resolve_parent_ip_set",
]
