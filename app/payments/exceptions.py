"""
Escrow and settlement exceptions.

This module maps the escrow error taxonomy onto the core exception
hierarchy so every failure carries a stable, machine-readable error code.

Exception Hierarchy:
    EscrowValidationError - Malformed or out-of-range input (VALIDATION_ERROR)
    NotFoundOrUnauthorizedError - Missing entity or caller is not a party
    InvalidStateError - Operation not legal in the current status
    AmountMismatchError - Paid amount differs from the stage amount
    ConfigurationError - Settlement disabled, missing secret or bank details
    GatewayError - Base for payment gateway failures
    ├── GatewayRequestError - Rejected request (permanent)
    ├── GatewayUnavailableError - 5xx or connection failure (transient, retry)
    └── GatewayTimeoutError - No response within timeout (transient, retry)

    StaleRecordError - Optimistic locking conflict (inherits ConflictError)
    LockAcquisitionError - Distributed lock timeout (inherits ConflictError)

Usage:
    from payments.exceptions import AmountMismatchError, GatewayError

    if paid_amount != stage.amount:
        raise AmountMismatchError(
            "Paid amount does not match stage amount",
            details={"expected": stage.amount, "received": paid_amount},
        )

Note:
    NotFoundOrUnauthorizedError deliberately conflates "does not exist"
    with "not yours" so callers cannot discover other users' contracts.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Escrow Domain Exceptions
# =============================================================================


class EscrowValidationError(ValidationError):
    """
    Raised when escrow input is malformed or out of range.

    Example:
        if total_amount <= 0:
            raise EscrowValidationError("Total amount must be positive")
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundOrUnauthorizedError(NotFoundError):
    """
    Raised when an entity is missing or the caller is not allowed to see it.
    """

    default_error_code: str = "NOT_FOUND_OR_UNAUTHORIZED"


class InvalidStateError(ConflictError):
    """
    Raised when an operation is not legal in the entity's current status.

    Wraps django-fsm's TransitionNotAllowed at the service boundary.

    Example:
        try:
            contract.confirm()
        except TransitionNotAllowed:
            raise InvalidStateError(
                f"Cannot confirm contract in '{contract.status}' status",
                details={"current_status": contract.status},
            )
    """

    default_error_code: str = "INVALID_STATE"


class AmountMismatchError(ConflictError):
    """
    Raised when a reported payment amount differs from the expected amount.

    Always rejected, never auto-corrected.
    """

    default_error_code: str = "AMOUNT_MISMATCH"


class ConfigurationError(BaseApplicationError):
    """
    Raised when the system is not configured for the requested operation.

    Use for:
    - Settlement disabled by configuration
    - Payment gateway credentials missing
    - Webhook secret missing in strict mode
    - Payee bank details incomplete
    """

    default_error_code: str = "CONFIGURATION_ERROR"


# =============================================================================
# Gateway Exceptions
# =============================================================================


class GatewayError(ExternalServiceError):
    """
    Base exception for payment gateway failures.

    Attributes:
        status_code: HTTP status returned by the gateway (if any)
        is_retryable: Whether the same call may succeed later

    Example:
        try:
            PaymentGatewayAdapter._request("POST", "/transfers", json=body)
        except GatewayError as e:
            if e.is_retryable:
                schedule_retry()
    """

    default_error_code: str = "GATEWAY_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, error_code=error_code, details=details)
        self.status_code = status_code


class GatewayRequestError(GatewayError):
    """
    The gateway rejected the request (4xx).

    Permanent: retrying with the same parameters will fail again.
    """

    default_error_code: str = "GATEWAY_REQUEST_REJECTED"
    is_retryable: bool = False


class GatewayUnavailableError(GatewayError):
    """
    The gateway is unreachable or returned a server error (5xx).
    """

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    is_retryable: bool = True


class GatewayTimeoutError(GatewayError):
    """
    The gateway did not answer within PAYMENT_GATEWAY_TIMEOUT_SECONDS.

    IMPORTANT: the operation may have succeeded on the gateway's side.
    Payment ids are generated by us, so a retry with the same id is safe.
    """

    default_error_code: str = "GATEWAY_TIMEOUT"
    is_retryable: bool = True


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    Attributes:
        details: Contains pk, expected_version, and current_version
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    Example:
        lock = DistributedLock("payout:123", ttl=60, timeout=10)
        if not lock.acquire():
            raise LockAcquisitionError(
                "Failed to acquire lock 'payout:123' within 10s",
                details={"key": "payout:123", "timeout": 10}
            )
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Escrow domain
    "EscrowValidationError",
    "NotFoundOrUnauthorizedError",
    "InvalidStateError",
    "AmountMismatchError",
    "ConfigurationError",
    # Gateway
    "GatewayError",
    "GatewayRequestError",
    "GatewayUnavailableError",
    "GatewayTimeoutError",
    # Concurrency control
    "StaleRecordError",
    "LockAcquisitionError",
]
