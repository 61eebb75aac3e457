"""IP metadata for registered training models.

Metadata is informational only: it is published inline as a base64 JSON data URI
together with its keccak256 hash, and nothing in the pipeline reads it back.
"""

import base64
import json

from pydantic import BaseModel, Field
from web3 import Web3

from ipforge.models.training_job import TrainingJob

DEFAULT_TRAINING_STEPS = 300


class MetadataAttribute(BaseModel):
    """Single trait_type/value pair."""

    key: str
    value: str


class IPMetadata(BaseModel):
    """IP metadata document attached to a registration."""

    title: str
    description: str
    ip_type: str = Field(default="AI Model", serialization_alias="ipType")
    attributes: list[MetadataAttribute] = Field(default_factory=list)


def build_model_metadata(job: TrainingJob, parent_count: int, image_count: int) -> IPMetadata:
    """Describe a trained model for its derivative registration.

    Args:
        job: Training job being registered
        parent_count: Number of parent IPs actually submitted
        image_count: Number of images the model was trained on
    """
    trigger = job.trigger_word or "unknown"
    captioning = job.captioning or "automatic"
    steps = job.training_steps or DEFAULT_TRAINING_STEPS

    return IPMetadata(
        title=f"AI Model: {trigger}",
        description=(
            f"AI model trained on {image_count} images. Trigger word: {trigger}. "
            f"Generated using {captioning} captioning with {steps} training steps."
        ),
        attributes=[
            MetadataAttribute(key="Model Type", value="LoRA"),
            MetadataAttribute(key="Trigger Word", value=trigger),
            MetadataAttribute(key="Training Steps", value=str(steps)),
            MetadataAttribute(key="Captioning", value=captioning),
            MetadataAttribute(key="Training Images Count", value=str(image_count)),
            MetadataAttribute(key="Parent IP Count", value=str(parent_count)),
            MetadataAttribute(key="Replicate Job ID", value=job.replicate_job_id or ""),
        ],
    )


def encode_metadata(metadata: IPMetadata) -> tuple[str, bytes]:
    """Serialize metadata to a data URI and its keccak256 hash.

    Returns:
        Tuple of (data URI, 32-byte hash of the JSON document)
    """
    document = json.dumps(metadata.model_dump(by_alias=True), separators=(",", ":"))
    uri = "data:application/json;base64," + base64.b64encode(document.encode()).decode()
    return uri, bytes(Web3.keccak(text=document))
