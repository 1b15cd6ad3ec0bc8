"""
Payment gateway adapter for payment, refund and transfer operations.

This module provides the PaymentGatewayAdapter class which encapsulates all
HTTP calls to the payment gateway (PortOne V2 REST API). All gateway calls
go through this adapter so timeouts, error translation and logging are
consistent.

Features:
- Configurable timeout on every request
- HTTP and network failures translated to GatewayError subclasses
- Structured logging with timing metrics
- Mock bank transfers while TRANSFER_ENABLED is off
- HMAC-SHA256 webhook signature verification with replay protection

Configuration (via settings):
- PAYMENT_GATEWAY_API_URL: Base URL of the gateway API
- PAYMENT_GATEWAY_API_SECRET: API secret ("PortOne <secret>" auth header)
- PAYMENT_GATEWAY_STORE_ID: Store id used for transfers
- PAYMENT_GATEWAY_WEBHOOK_SECRET: Shared webhook signing secret
- PAYMENT_GATEWAY_TIMEOUT_SECONDS: HTTP timeout (default: 10)
- PAYMENT_WEBHOOK_STRICT: Reject webhooks when the secret is missing
- TRANSFER_ENABLED: Real bank transfers instead of mock transfers

Usage:
    from payments.adapters import get_gateway_adapter

    result = get_gateway_adapter().cancel_payment(
        payment_id="ct_...", reason="Customer request", amount=30000
    )
    if not result.success:
        logger.warning(result.error)

Note:
    Public methods never raise for gateway failures. They return result
    objects with success=False, error and error_code so callers can
    record the failure and continue with the next unit of work.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import requests
from django.conf import settings

from core.helpers import mask_identifier
from payments.exceptions import (
    ConfigurationError,
    GatewayError,
    GatewayRequestError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)


# Webhook timestamps further than this from now are rejected
WEBHOOK_TOLERANCE_SECONDS = 5 * 60

MOCK_TRANSFER_PREFIX = "MOCK_TRF_"


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class PaymentResult:
    """
    Result from payment query and stored-credential charge operations.

    Attributes:
        success: Whether the gateway accepted the operation
        payment_id: Our payment id
        transaction_id: Gateway transaction id
        status: Gateway payment status (PAID, FAILED, ...)
        paid_at: ISO timestamp reported by the gateway
        amount: Total amount in minor units
        error / error_code: Failure details when success is False
    """

    success: bool
    payment_id: str | None = None
    transaction_id: str | None = None
    status: str | None = None
    paid_at: str | None = None
    amount: int | None = None
    error: str | None = None
    error_code: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.success and self.status == "PAID"


@dataclass
class RefundResult:
    """Result from payment cancellation (refund)."""

    success: bool
    refund_id: str | None = None
    refunded_amount: int | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass
class TransferResult:
    """Result from a bank transfer."""

    success: bool
    transfer_id: str | None = None
    status: str | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def is_mock(self) -> bool:
        return bool(self.transfer_id and self.transfer_id.startswith(MOCK_TRANSFER_PREFIX))


@dataclass
class WebhookVerification:
    """Outcome of a webhook signature check."""

    valid: bool
    error: str | None = None


# =============================================================================
# Payment Gateway Adapter
# =============================================================================


class PaymentGatewayAdapter:
    """
    Adapter for payment gateway API operations.

    All methods are class methods - no instance state is maintained.
    Thread-safe for use from Celery workers.

    Usage:
        result = PaymentGatewayAdapter.get_payment("ct_...")
        result = PaymentGatewayAdapter.transfer_to_bank(
            amount=50000,
            bank_code="004",
            account_number="12345678901234",
            account_holder_name="Kim",
            reason="Settlement #...",
        )
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Get logger for this adapter."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @staticmethod
    def is_configured() -> bool:
        return bool(settings.PAYMENT_GATEWAY_API_SECRET and settings.PAYMENT_GATEWAY_STORE_ID)

    @staticmethod
    def _headers() -> dict[str, str]:
        return {
            "Authorization": f"PortOne {settings.PAYMENT_GATEWAY_API_SECRET}",
            "Content-Type": "application/json",
        }

    @classmethod
    def _require_configured(cls) -> None:
        if not cls.is_configured():
            raise ConfigurationError("Payment gateway not configured")

    # =========================================================================
    # HTTP Transport
    # =========================================================================

    @classmethod
    def _request(
        cls,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        log_context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Send one request to the gateway and return the decoded JSON body.

        Raises:
            GatewayTimeoutError: No response within the timeout
            GatewayUnavailableError: Connection failure or 5xx response
            GatewayRequestError: 4xx response
        """
        logger = cls.get_logger()
        url = f"{settings.PAYMENT_GATEWAY_API_URL.rstrip('/')}{path}"
        log_context = {**(log_context or {}), "method": method, "path": path}

        start_time = time.time()
        logger.info("Starting gateway request", extra=log_context)

        try:
            response = requests.request(
                method,
                url,
                headers=cls._headers(),
                json=json,
                timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
            )
        except requests.Timeout as e:
            logger.error(
                "Gateway request timed out",
                extra={**log_context, "duration_ms": (time.time() - start_time) * 1000},
            )
            raise GatewayTimeoutError("Payment gateway request timed out") from e
        except requests.RequestException as e:
            logger.error(
                "Gateway connection error",
                extra={**log_context, "duration_ms": (time.time() - start_time) * 1000},
                exc_info=True,
            )
            raise GatewayUnavailableError("Network error") from e

        duration_ms = (time.time() - start_time) * 1000
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 500:
            logger.error(
                "Gateway server error",
                extra={**log_context, "status_code": response.status_code, "duration_ms": duration_ms},
            )
            raise GatewayUnavailableError(
                data.get("message") or "Payment gateway unavailable",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            logger.warning(
                "Gateway rejected request",
                extra={
                    **log_context,
                    "status_code": response.status_code,
                    "gateway_code": data.get("type") or data.get("code"),
                    "duration_ms": duration_ms,
                },
            )
            raise GatewayRequestError(
                data.get("message") or "Payment gateway rejected the request",
                error_code=data.get("type") or data.get("code"),
                status_code=response.status_code,
            )

        logger.info(
            "Gateway request completed",
            extra={**log_context, "status_code": response.status_code, "duration_ms": duration_ms},
        )
        return data

    @staticmethod
    def _error_fields(error: Exception) -> dict[str, str | None]:
        return {
            "error": getattr(error, "message", None) or str(error),
            "error_code": getattr(error, "error_code", None),
        }

    # =========================================================================
    # Payments
    # =========================================================================

    @classmethod
    def get_payment(cls, payment_id: str) -> PaymentResult:
        """
        Query the gateway for the current state of a payment.

        Used by the webhook handler to confirm a payment is PAID and to
        read the amount actually charged.
        """
        try:
            cls._require_configured()
            data = cls._request(
                "GET",
                f"/payments/{quote(payment_id, safe='')}",
                log_context={"operation": "get_payment", "payment_id": payment_id},
            )
        except (GatewayError, ConfigurationError) as e:
            return PaymentResult(success=False, payment_id=payment_id, **cls._error_fields(e))

        return PaymentResult(
            success=True,
            payment_id=data.get("id") or payment_id,
            transaction_id=data.get("transactionId"),
            status=data.get("status"),
            paid_at=data.get("paidAt"),
            amount=(data.get("amount") or {}).get("total"),
            raw_response=data,
        )

    @classmethod
    def create_payment_with_stored_credential(
        cls,
        payment_id: str,
        order_name: str,
        amount: int,
        currency: str,
        credential_ref: str,
        customer: dict[str, Any],
    ) -> PaymentResult:
        """
        Charge a stored credential (billing key) immediately.

        Args:
            payment_id: Our unique payment id; reusing it is idempotent
            order_name: Description shown on the receipt
            amount: Amount in minor units
            currency: ISO 4217 code
            credential_ref: Gateway billing key
            customer: {"id", "email", "name"} of the payer

        Returns:
            PaymentResult; success=False carries the gateway error
        """
        if not credential_ref:
            return PaymentResult(
                success=False,
                payment_id=payment_id,
                error="Billing key required",
                error_code="VALIDATION_ERROR",
            )

        body = {
            "billingKey": credential_ref,
            "orderName": order_name,
            "amount": {"total": amount},
            "currency": currency,
            "customer": customer,
        }
        try:
            cls._require_configured()
            data = cls._request(
                "POST",
                f"/payments/{quote(payment_id, safe='')}/billing-key",
                json=body,
                log_context={
                    "operation": "create_payment_with_stored_credential",
                    "payment_id": payment_id,
                    "amount": amount,
                },
            )
        except (GatewayError, ConfigurationError) as e:
            return PaymentResult(success=False, payment_id=payment_id, **cls._error_fields(e))

        payment = data.get("payment") or data
        return PaymentResult(
            success=True,
            payment_id=payment.get("paymentId") or payment_id,
            transaction_id=payment.get("pgTxId") or payment.get("transactionId"),
            status=payment.get("status") or "PAID",
            paid_at=payment.get("paidAt"),
            amount=amount,
            raw_response=data,
        )

    @classmethod
    def cancel_payment(
        cls,
        payment_id: str,
        reason: str,
        amount: int | None = None,
    ) -> RefundResult:
        """
        Cancel (refund) a payment fully, or partially when amount is given.
        """
        body: dict[str, Any] = {"reason": reason}
        if amount:
            body["amount"] = amount

        try:
            cls._require_configured()
            data = cls._request(
                "POST",
                f"/payments/{quote(payment_id, safe='')}/cancel",
                json=body,
                log_context={"operation": "cancel_payment", "payment_id": payment_id, "amount": amount},
            )
        except (GatewayError, ConfigurationError) as e:
            return RefundResult(success=False, **cls._error_fields(e))

        cancellation = data.get("cancellation") or {}
        return RefundResult(
            success=True,
            refund_id=cancellation.get("id"),
            refunded_amount=cancellation.get("totalAmount") or amount,
        )

    # =========================================================================
    # Transfers
    # =========================================================================

    @classmethod
    def transfer_to_bank(
        cls,
        amount: int,
        bank_code: str,
        account_number: str,
        account_holder_name: str,
        reason: str,
    ) -> TransferResult:
        """
        Send a bank transfer to a payee.

        While TRANSFER_ENABLED is off no external call is made and a mock
        transfer id is returned with status "completed".
        """
        logger = cls.get_logger()
        log_context = {
            "operation": "transfer_to_bank",
            "amount": amount,
            "bank_code": bank_code,
            "account_number": mask_identifier(account_number),
        }

        if not cls.is_configured():
            return TransferResult(
                success=False,
                error="Payment gateway not configured",
                error_code=ConfigurationError.default_error_code,
            )

        if not settings.TRANSFER_ENABLED:
            transfer_id = cls._mock_transfer_id()
            logger.info(
                "Transfer API disabled - returning mock transfer",
                extra={**log_context, "transfer_id": transfer_id},
            )
            return TransferResult(success=True, transfer_id=transfer_id, status="completed")

        body = {
            "storeId": settings.PAYMENT_GATEWAY_STORE_ID,
            "amount": {"total": amount},
            "bankCode": bank_code,
            "accountNumber": account_number,
            "accountHolderName": account_holder_name,
            "reason": reason,
        }
        try:
            data = cls._request("POST", "/transfers", json=body, log_context=log_context)
        except GatewayError as e:
            return TransferResult(success=False, **cls._error_fields(e))

        return TransferResult(
            success=True,
            transfer_id=data.get("transferId"),
            status=data.get("status") or "completed",
        )

    @staticmethod
    def _mock_transfer_id() -> str:
        alphabet = string.ascii_lowercase + string.digits
        suffix = "".join(secrets.choice(alphabet) for _ in range(6))
        return f"{MOCK_TRANSFER_PREFIX}{int(time.time() * 1000)}_{suffix}"

    # =========================================================================
    # Webhooks
    # =========================================================================

    @classmethod
    def verify_webhook_signature(
        cls,
        payload: bytes | str,
        signature: str | None,
        webhook_id: str | None,
        timestamp: str | None,
    ) -> WebhookVerification:
        """
        Verify a webhook's HMAC-SHA256 signature.

        The signed content is "{webhook_id}.{timestamp}.{payload}" and the
        signature is the hex digest, optionally prefixed with "sha256=".
        Timestamps are Unix seconds and must be within five minutes of now.

        A missing secret is a hard failure in strict mode
        (PAYMENT_WEBHOOK_STRICT) and a logged skip otherwise.
        """
        logger = cls.get_logger()
        secret = settings.PAYMENT_GATEWAY_WEBHOOK_SECRET

        if not secret:
            if settings.PAYMENT_WEBHOOK_STRICT:
                logger.critical("Webhook secret not configured in strict mode")
                return WebhookVerification(valid=False, error="Webhook secret required in strict mode")
            logger.warning("Webhook secret not configured - skipping verification")
            return WebhookVerification(valid=True)

        if not signature:
            return WebhookVerification(valid=False, error="Missing x-portone-signature header")
        if not webhook_id:
            return WebhookVerification(valid=False, error="Missing x-portone-webhook-id header")
        if not timestamp:
            return WebhookVerification(valid=False, error="Missing x-portone-timestamp header")

        try:
            sent_at = int(timestamp)
        except (TypeError, ValueError):
            sent_at = None
        if sent_at is None or abs(time.time() - sent_at) > WEBHOOK_TOLERANCE_SECONDS:
            logger.warning("Webhook timestamp invalid or expired", extra={"webhook_id": webhook_id})
            return WebhookVerification(valid=False, error="Timestamp expired or invalid")

        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        signed_content = f"{webhook_id}.{timestamp}.{payload}"
        expected = hmac.new(
            secret.encode("utf-8"),
            signed_content.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        candidate = signature.removeprefix("sha256=")
        if not hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8")):
            logger.warning("Webhook signature mismatch", extra={"webhook_id": webhook_id})
            return WebhookVerification(valid=False, error="Invalid signature")

        return WebhookVerification(valid=True)


# =============================================================================
# Adapter Injection
# =============================================================================

_gateway_adapter: type[PaymentGatewayAdapter] | Any = PaymentGatewayAdapter


def get_gateway_adapter():
    """Return the adapter services should call (PaymentGatewayAdapter by default)."""
    return _gateway_adapter


def set_gateway_adapter(adapter) -> None:
    """
    Replace the gateway adapter, e.g. with a sandbox client.

    Pass None to restore PaymentGatewayAdapter.
    """
    global _gateway_adapter
    _gateway_adapter = adapter if adapter is not None else PaymentGatewayAdapter
