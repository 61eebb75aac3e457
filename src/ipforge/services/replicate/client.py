"""Replicate API client for training state lookups with error classification."""

import asyncio
from typing import Any

import replicate
from replicate.exceptions import ReplicateError as ReplicateAPIError

from ipforge.services.exceptions import (
    ReplicateAuthError,
    ReplicateError,
    ReplicateNetworkError,
    ReplicateNotFoundError,
    ReplicateRateLimitError,
)


def classify_error(exception: Exception) -> ReplicateError | Exception:
    """Classify exception into retry category.

    Args:
        exception: Original exception from Replicate SDK or network layer

    Returns:
        Classified error instance

    Classification rules:
        - Timeout errors → ReplicateNetworkError
        - 429 (rate limit) → ReplicateRateLimitError
        - 503 (service unavailable) → ReplicateNetworkError
        - 401/403 (authentication) → ReplicateAuthError
        - 404 → ReplicateNotFoundError
        - Connection errors → ReplicateNetworkError
        - Anything else → ReplicateError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if "timeout" in error_message_lower:
        return ReplicateNetworkError(f"Network timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return ReplicateRateLimitError(f"Rate limit exceeded: {error_message}")

    if "503" in error_message or "service unavailable" in error_message_lower:
        return ReplicateNetworkError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return ReplicateAuthError(f"Authentication failed: {error_message}")

    if "404" in error_message or "not found" in error_message_lower:
        return ReplicateNotFoundError(f"Not found: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        return ReplicateNetworkError(f"Connection error: {error_message}")

    return ReplicateError(f"Replicate error: {error_message}")


def _isoformat(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value


async def fetch_training_state(external_id: str, api_token: str) -> dict[str, Any]:
    """Fetch the current state of a training run, shaped like a webhook payload.

    Used to recover jobs whose webhooks were never delivered.

    Args:
        external_id: Replicate training/prediction id
        api_token: Replicate API authentication token

    Returns:
        Dict accepted by TrainingNotification

    Raises:
        ReplicateAuthError: Token missing or rejected
        ReplicateError: Any other classified failure
    """
    if not api_token:
        raise ReplicateAuthError("REPLICATE_API_TOKEN not configured")

    client = replicate.Client(api_token=api_token)

    try:
        # SDK is synchronous
        prediction = await asyncio.to_thread(client.predictions.get, external_id)
    except (ReplicateAPIError, ConnectionError, OSError, TimeoutError) as e:
        raise classify_error(e) from e

    metrics = getattr(prediction, "metrics", None) or {}
    return {
        "id": prediction.id,
        "status": prediction.status,
        "output": getattr(prediction, "output", None),
        "error": getattr(prediction, "error", None),
        "logs": getattr(prediction, "logs", None),
        "input": getattr(prediction, "input", None) or {},
        "metrics": {
            "predict_time": metrics.get("predict_time"),
            "total_time": metrics.get("total_time"),
        },
        "started_at": _isoformat(getattr(prediction, "started_at", None)),
        "completed_at": _isoformat(getattr(prediction, "completed_at", None)),
    }
