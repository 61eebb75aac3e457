"""Replicate webhook endpoint for training status notifications."""

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError

from ipforge.api.dependencies import get_reconciler, validate_webhook_signature
from ipforge.services.webhook.notification import TrainingNotification
from ipforge.services.webhook.reconciler import WebhookReconciler

logger = structlog.get_logger()
router = APIRouter()


@router.post("/replicate")
async def receive_replicate_webhook(
    raw_body: bytes = Depends(validate_webhook_signature),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """Receive a training status notification.

    The notification is stored before responding; derivative registration for
    a succeeded job continues in the background.

    HTTP Status Codes:
        200: Notification stored (or ignored as duplicate/out of order)
        400: Malformed payload or missing training id
        401: Invalid signature (when verification is enabled)
        500: Notification could not be stored (triggers provider retry)
    """
    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError as e:
        logger.error("webhook.invalid_json", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid JSON payload: {str(e)}",
        )

    if not isinstance(payload, dict) or not payload.get("id"):
        logger.error("webhook.missing_id")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing training id"
        )

    try:
        notification = TrainingNotification.model_validate(payload)
    except ValidationError as e:
        logger.error("webhook.malformed", training_id=payload.get("id"), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid notification payload ({e.error_count()} errors)",
        )

    logger.info("webhook.received", training_id=notification.id, status=notification.status.value)

    try:
        result = await reconciler.handle_notification(notification)
    except Exception as e:
        logger.error(
            "webhook.store_failed",
            training_id=notification.id,
            error=str(e),
            exc_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store notification",
        )

    return {
        "status": "success",
        "action": result.action.value,
        "job_id": str(result.job_id),
        "training_status": result.status.value,
        "registration_scheduled": result.registration_scheduled,
    }
