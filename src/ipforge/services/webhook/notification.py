"""Training notification payload as delivered by the training provider."""

import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ipforge.core.timezone import to_naive_utc
from ipforge.models.training_job import TrainingJobStatus


class TrainingInput(BaseModel):
    """Training inputs echoed back in notifications."""

    model_config = ConfigDict(extra="ignore")

    trigger_word: Optional[str] = None
    input_images: Optional[str] = None
    captioning: Optional[str] = None
    steps: Optional[int] = None
    training_steps: Optional[int] = None

    @property
    def step_count(self) -> Optional[int]:
        return self.steps if self.steps is not None else self.training_steps


class TrainingMetrics(BaseModel):
    model_config = ConfigDict(extra="ignore")

    predict_time: Optional[float] = None
    total_time: Optional[float] = None


class TrainingNotification(BaseModel):
    """Webhook payload for a training run status change.

    ``output`` arrives as a string or a list (joined with newlines) and
    ``error`` as a string or an object (serialized to JSON).
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    status: TrainingJobStatus
    output: Optional[str] = None
    error: Optional[str] = None
    logs: Optional[str] = None
    input: TrainingInput = Field(default_factory=TrainingInput)
    metrics: TrainingMetrics = Field(default_factory=TrainingMetrics)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("output", mode="before")
    @classmethod
    def _join_output(cls, value: Any) -> Any:
        if isinstance(value, list):
            return "\n".join(str(item) for item in value)
        if isinstance(value, dict):
            # Training outputs are objects like {"version": ..., "weights": ...}
            weights = value.get("weights")
            return str(weights) if weights else json.dumps(value)
        return value

    @field_validator("error", mode="before")
    @classmethod
    def _serialize_error(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value)

    @field_validator("input", "metrics", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("started_at", "completed_at", mode="after")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value) if value is not None else None
