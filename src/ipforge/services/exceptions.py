"""Service error hierarchy for training provider and blockchain operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    - Gas estimation failures
    - Transaction submission failures
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Transaction reverts
    - Configuration errors
    """

    pass


# Training provider errors
class ReplicateError(ServiceError):
    """Base exception for training provider errors."""

    pass


class ReplicateRateLimitError(TransientError):
    """Rate limit exceeded (429)."""

    pass


class ReplicateNetworkError(TransientError):
    """Network timeout or service unavailable."""

    pass


class ReplicateAuthError(PermanentError):
    """Authentication failure (401, 403)."""

    pass


class ReplicateNotFoundError(PermanentError):
    """Training/prediction does not exist (404)."""

    pass


# Blockchain-specific errors

class GasEstimationError(TransientError):
    """Gas estimation failed."""

    pass


class TransactionSubmissionError(TransientError):
    """Transaction submission failed."""

    pass


class TransactionTimeoutError(TransientError):
    """Transaction confirmation timeout.

    The transaction was broadcast and may still be mined; tx_hash identifies it.
    """

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class TransactionRevertError(PermanentError):
    """Transaction reverted on-chain."""

    pass


class RegistrationEventNotFoundError(PermanentError):
    """Confirmed transaction carries no IPRegistered event."""

    pass


# Registration-specific errors
class RegistrationError(ServiceError):
    """Base exception for derivative registration errors."""

    pass


class TrainingJobNotFoundError(RegistrationError):
    """No training job matches the given internal or external id."""

    def __init__(self, job_ref: str):
        super().__init__(f"Training job not found: {job_ref}")
        self.job_ref = job_ref


class RegistrationPersistenceError(RegistrationError):
    """On-chain registration succeeded but the result could not be stored.

    Carries the on-chain identifiers so an operator can reconcile by hand.
    """

    def __init__(self, job_id: str, ip_id: str, tx_hash: str | None):
        super().__init__(
            f"Registered {ip_id} (tx {tx_hash}) for job {job_id} but failed to store it"
        )
        self.job_id = job_id
        self.ip_id = ip_id
        self.tx_hash = tx_hash
