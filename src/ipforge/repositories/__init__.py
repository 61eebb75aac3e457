"""Repository layer for ipforge.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from ipforge.repositories.training_image import TrainingImageRepository
from ipforge.repositories.training_job import RegistrationStatusCounts, TrainingJobRepository

__all__ = [
    "TrainingJobRepository",
    "TrainingImageRepository",
    "RegistrationStatusCounts",
]
