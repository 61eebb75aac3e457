"""Training job record API endpoints.

This module implements REST endpoints for the provenance records:
- POST /api/training-jobs - Record a submitted training job with its parent sources
- GET /api/training-jobs/{job_ref} - Job details, provenance and training images
- POST /api/training-jobs/{job_ref}/hide - Soft-hide a job
- PATCH /api/training-images/{image_id}/registration - Record an image's own IP registration

Training submission itself happens elsewhere; this only records its result.
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field, field_validator
from web3 import Web3

from ipforge.api.dependencies import get_reconciler, get_uow_factory
from ipforge.models.training_image import ImageRegistrationStatus, TrainingImage
from ipforge.models.training_job import (
    InvalidStateTransition,
    TrainingJob,
    TrainingJobStatus,
)
from ipforge.services.webhook.reconciler import WebhookReconciler

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["training-jobs"])


def _checksum(value: str) -> str:
    try:
        return Web3.to_checksum_address(value)
    except ValueError as e:
        raise ValueError(f"Invalid IP id: {e}")


# Request/Response Models


class TrainingImageInput(BaseModel):
    original_filename: str | None = Field(default=None, max_length=255)
    display_order: int = Field(default=0, ge=0)
    story_ip_id: str | None = None
    story_tx_hash: str | None = None

    @field_validator("story_ip_id")
    @classmethod
    def validate_ip_id(cls, v: str | None) -> str | None:
        return _checksum(v) if v else None


class CreateTrainingJobRequest(BaseModel):
    """Submitted training job: Flow A parents come from images, Flow B from parent_ip_ids."""

    replicate_job_id: str | None = Field(default=None, min_length=1, max_length=255)
    trigger_word: str | None = Field(default=None, max_length=255)
    input_images_url: str | None = None
    captioning: str | None = Field(default=None, max_length=50)
    training_steps: int | None = Field(default=None, ge=1)
    parent_ip_ids: list[str] = Field(default_factory=list)
    images: list[TrainingImageInput] = Field(default_factory=list)

    @field_validator("parent_ip_ids")
    @classmethod
    def validate_parent_ip_ids(cls, v: list[str]) -> list[str]:
        return [_checksum(ip_id) for ip_id in v]


class TrainingImageResponse(BaseModel):
    id: UUID
    display_order: int
    original_filename: str | None
    story_ip_id: str | None
    story_tx_hash: str | None
    registration_status: str


class TrainingJobResponse(BaseModel):
    id: UUID
    replicate_job_id: str | None
    status: str
    trigger_word: str | None
    output_model_url: str | None
    error_message: str | None
    completed_at: datetime | None
    ip_id: str | None
    parent_ip_ids: list[str]
    registration_tx_hash: str | None
    registered_at: datetime | None
    registration_failed: bool
    registration_error: str | None
    registration_pending_tx_hash: str | None = None
    is_hidden: bool
    images: list[TrainingImageResponse] = Field(default_factory=list)
    registration_scheduled: bool = False

    @classmethod
    def from_job(
        cls, job: TrainingJob, images: list[TrainingImage]
    ) -> "TrainingJobResponse":
        return cls(
            id=job.id,
            replicate_job_id=job.replicate_job_id,
            status=TrainingJobStatus(job.status).value,
            trigger_word=job.trigger_word,
            output_model_url=job.output_model_url,
            error_message=job.error_message,
            completed_at=job.completed_at,
            ip_id=job.ip_id,
            parent_ip_ids=list(job.parent_ip_ids or []),
            registration_tx_hash=job.registration_tx_hash,
            registered_at=job.registered_at,
            registration_failed=job.registration_failed,
            registration_error=job.registration_error,
            registration_pending_tx_hash=job.registration_pending_tx_hash,
            is_hidden=job.is_hidden,
            images=[
                TrainingImageResponse(
                    id=image.id,
                    display_order=image.display_order,
                    original_filename=image.original_filename,
                    story_ip_id=image.story_ip_id,
                    story_tx_hash=image.story_tx_hash,
                    registration_status=ImageRegistrationStatus(image.registration_status).value,
                )
                for image in images
            ],
        )


class ImageRegistrationRequest(BaseModel):
    status: ImageRegistrationStatus
    story_ip_id: str | None = None
    tx_hash: str | None = Field(default=None, max_length=66)

    @field_validator("story_ip_id")
    @classmethod
    def validate_ip_id(cls, v: str | None) -> str | None:
        return _checksum(v) if v else None


# Endpoints


@router.post(
    "/training-jobs", response_model=TrainingJobResponse, status_code=status.HTTP_201_CREATED
)
async def create_training_job(
    body: CreateTrainingJobRequest,
    response: Response,
    uow_factory=Depends(get_uow_factory),
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> TrainingJobResponse:
    """Record a submitted training job and its parent sources.

    Provider notifications may arrive before the submission. In that case the
    row already exists and the submission is merged into it: empty training
    inputs are filled, parents and images are attached, and a job that has
    already succeeded is queued for registration.

    HTTP Status Codes:
        201: Job recorded
        200: Submission merged into a job first seen through a notification
        409: The existing job already has provenance or an IP id
    """
    async with await uow_factory() as uow:
        if body.replicate_job_id:
            job, created = await uow.training_jobs.upsert_on_notification(
                body.replicate_job_id, TrainingJobStatus.STARTING
            )
            if not created:
                existing_images = await uow.training_images.get_by_job(job.id)
                if job.ip_id or job.parent_ip_ids or existing_images:
                    raise HTTPException(
                        status_code=status.HTTP_409_CONFLICT,
                        detail=f"Training job {body.replicate_job_id} already exists",
                    )
        else:
            job = await uow.training_jobs.add(TrainingJob(status=TrainingJobStatus.PENDING))
            created = True

        _merge_submission(job, body)
        await uow.training_jobs.save(job)

        images = []
        for item in body.images:
            image = TrainingImage(
                training_job_id=job.id,
                display_order=item.display_order,
                original_filename=item.original_filename,
            )
            if item.story_ip_id:
                image.mark_registered(item.story_ip_id, item.story_tx_hash)
            images.append(await uow.training_images.add(image))

        should_register = (
            job.status == TrainingJobStatus.SUCCEEDED
            and not job.ip_id
            and bool(job.parent_ip_ids or any(image.story_ip_id for image in images))
        )

        logger.info(
            "training_job.created" if created else "training_job.submission_merged",
            job_id=str(job.id),
            replicate_job_id=job.replicate_job_id,
            status=TrainingJobStatus(job.status).value,
            image_count=len(images),
            collection_parent_count=len(body.parent_ip_ids),
        )
        images.sort(key=lambda image: image.display_order)
        result = TrainingJobResponse.from_job(job, images)

    if not created:
        response.status_code = status.HTTP_200_OK
    if should_register:
        result.registration_scheduled = reconciler.schedule_registration(result.id)
    return result


def _merge_submission(job: TrainingJob, body: CreateTrainingJobRequest) -> None:
    """Copy submitted inputs onto the job; values already stored are kept."""
    job.trigger_word = job.trigger_word or body.trigger_word
    job.input_images_url = job.input_images_url or body.input_images_url
    job.captioning = job.captioning or body.captioning
    if job.training_steps is None:
        job.training_steps = body.training_steps
    if not job.parent_ip_ids:
        job.parent_ip_ids = list(body.parent_ip_ids)


@router.get("/training-jobs/{job_ref}", response_model=TrainingJobResponse)
async def get_training_job(job_ref: str, uow_factory=Depends(get_uow_factory)):
    """Get a training job by internal UUID or Replicate id."""
    async with await uow_factory() as uow:
        found = await uow.training_jobs.get_with_children(job_ref)
        if found is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"Training job not found: {job_ref}"
            )
        job, images = found
        return TrainingJobResponse.from_job(job, images)


@router.post("/training-jobs/{job_ref}/hide", response_model=TrainingJobResponse)
async def hide_training_job(job_ref: str, uow_factory=Depends(get_uow_factory)):
    """Soft-hide a training job. Provenance and registration data are kept."""
    async with await uow_factory() as uow:
        found = await uow.training_jobs.get_with_children(job_ref)
        if found is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"Training job not found: {job_ref}"
            )
        job, images = found
        await uow.training_jobs.hide(job)
        logger.info("training_job.hidden", job_id=str(job.id))
        return TrainingJobResponse.from_job(job, images)


@router.patch("/training-images/{image_id}/registration", response_model=TrainingImageResponse)
async def record_image_registration(
    image_id: UUID, body: ImageRegistrationRequest, uow_factory=Depends(get_uow_factory)
):
    """Record the outcome of a training image's own IP registration.

    HTTP Status Codes:
        200: Outcome recorded
        400: Invalid outcome (pending, or registered without an IP id)
        404: Image not found
        409: Outcome already recorded for this image
    """
    async with await uow_factory() as uow:
        image = await uow.training_images.get_by_id(image_id)
        if image is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"Training image not found: {image_id}"
            )
        try:
            await uow.training_images.record_registration(
                image, body.status, story_ip_id=body.story_ip_id, tx_hash=body.tx_hash
            )
        except InvalidStateTransition as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        logger.info(
            "training_image.registration_recorded",
            image_id=str(image.id),
            status=body.status.value,
            story_ip_id=image.story_ip_id,
        )
        return TrainingImageResponse(
            id=image.id,
            display_order=image.display_order,
            original_filename=image.original_filename,
            story_ip_id=image.story_ip_id,
            story_tx_hash=image.story_tx_hash,
            registration_status=ImageRegistrationStatus(image.registration_status).value,
        )
