"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Webhook signature validation
- Access to services built in the application lifespan
"""

from typing import Annotated, Callable

from fastapi import Depends, Header, HTTPException, Request, status

from ipforge.core.config import Settings
from ipforge.services.registration.backfill import RegistrationBackfillService
from ipforge.services.registration.engine import RegistrationEngine
from ipforge.services.webhook.reconciler import WebhookReconciler
from ipforge.services.webhook.signature import validate_replicate_signature
from ipforge.uow import UnitOfWork


def get_settings(request: Request) -> Settings:
    """Get application settings loaded at startup.

    Returns:
        Settings instance stored in app.state.
    """
    return request.app.state.settings


async def validate_webhook_signature(
    request: Request,
    webhook_id: Annotated[str | None, Header()] = None,
    webhook_timestamp: Annotated[str | None, Header()] = None,
    webhook_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Validate Replicate webhook signature before processing request.

    Verification is enabled by configuring REPLICATE_WEBHOOK_SECRET. Without a
    secret every delivery is accepted, which is only appropriate behind a
    trusted network boundary.

    Returns:
        Raw request body bytes (for further processing by the endpoint)

    Raises:
        HTTPException: 401 Unauthorized if signature headers are missing or invalid
    """
    raw_body = await request.body()

    if not settings.replicate_webhook_secret:
        return raw_body

    if not (webhook_id and webhook_timestamp and webhook_signature):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature headers"
        )

    is_valid = validate_replicate_signature(
        raw_body=raw_body,
        webhook_id=webhook_id,
        webhook_timestamp=webhook_timestamp,
        signature_header=webhook_signature,
        secret=settings.replicate_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )

    if not is_valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature"
        )

    return raw_body


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.post("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.training_jobs.resolve(job_ref)
    """
    return request.app.state.uow_factory


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler


def get_registration_engine(request: Request) -> RegistrationEngine:
    """Get the registration engine, or 503 when Story is not configured."""
    engine = request.app.state.registration_engine
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Story Protocol registration is not configured",
        )
    return engine


def get_backfill_service(request: Request) -> RegistrationBackfillService:
    """Get the backfill service (registration-dependent operations 503 without Story)."""
    return request.app.state.backfill_service
