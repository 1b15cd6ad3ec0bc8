"""
Webhook event handlers for payment gateway events.

This module provides a handler registry and the handlers for the gateway
events the escrow ledger cares about.

The gateway payload is never trusted for money: the paid handler re-reads
the payment from the gateway API and uses that status and amount.

Usage:
    from payments.webhooks.handlers import process_event, register_handler

    @register_handler("Transaction.Cancelled")
    def handle_cancelled(webhook_event: WebhookEvent) -> ServiceResult:
        ...

    result = process_event(webhook_event)
"""

from __future__ import annotations

import logging
from typing import Callable

from core.services import ServiceResult

from payments.adapters import get_gateway_adapter
from payments.models import WebhookEvent
from payments.services import EscrowService, parse_payment_reference


logger = logging.getLogger(__name__)


# Failures worth another delivery; anything else is acknowledged as failed
RETRYABLE_ERROR_CODES = frozenset(
    {
        "GATEWAY_ERROR",
        "GATEWAY_UNAVAILABLE",
        "GATEWAY_TIMEOUT",
        "LOCK_ACQUISITION_FAILED",
    }
)


# =============================================================================
# Handler Registry
# =============================================================================


WEBHOOK_HANDLERS: dict[str, Callable[[WebhookEvent], ServiceResult]] = {}


def register_handler(event_type: str) -> Callable:
    """
    Decorator to register a webhook event handler.

    Args:
        event_type: Gateway event type (e.g. "Transaction.Paid")
    """

    def decorator(func: Callable[[WebhookEvent], ServiceResult]) -> Callable:
        WEBHOOK_HANDLERS[event_type] = func
        return func

    return decorator


def dispatch_webhook(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Dispatch a webhook event to its handler.

    Unknown event types succeed without work so the gateway stops
    redelivering them.
    """
    handler = WEBHOOK_HANDLERS.get(webhook_event.event_type)

    if not handler:
        logger.info(
            f"No handler registered for event type: {webhook_event.event_type}",
            extra={"webhook_id": webhook_event.webhook_id},
        )
        return ServiceResult.success(None)

    return handler(webhook_event)


def process_event(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Run a stored webhook event through its handler and record the outcome.

    Already processed events return success without work. Unexpected
    exceptions mark the event failed and propagate.
    """
    if webhook_event.is_processed:
        return ServiceResult.success(None)

    webhook_event.mark_processing()
    webhook_event.save(update_fields=["status", "attempts", "updated_at"])

    try:
        result = dispatch_webhook(webhook_event)
    except Exception as e:
        webhook_event.mark_failed(f"{type(e).__name__}: {e}")
        webhook_event.save(update_fields=["status", "error_message", "updated_at"])
        logger.exception(
            "Webhook processing failed with exception",
            extra={"webhook_id": webhook_event.webhook_id},
        )
        raise

    if result.success:
        webhook_event.mark_processed()
        webhook_event.save(update_fields=["status", "processed_at", "error_message", "updated_at"])
    else:
        webhook_event.mark_failed(result.error or "Handler returned failure")
        webhook_event.save(update_fields=["status", "error_message", "updated_at"])
        logger.warning(
            f"Webhook handler failed: {result.error}",
            extra={
                "webhook_id": webhook_event.webhook_id,
                "error_code": result.error_code,
            },
        )
    return result


def is_retryable(result: ServiceResult) -> bool:
    return not result.success and result.error_code in RETRYABLE_ERROR_CODES


# =============================================================================
# Transaction Handlers
# =============================================================================


@register_handler("Transaction.Paid")
def handle_transaction_paid(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Record a stage payment once the gateway reports it paid.

    Flow:
    1. Decode contract and stage from our payment reference
    2. Re-read the payment from the gateway (status and amount)
    3. Hand the confirmed amount to EscrowService.handle_payment_complete
    """
    payment_id = webhook_event.payment_id
    reference = parse_payment_reference(payment_id)
    if reference is None:
        return ServiceResult.failure(
            f"Unrecognized payment reference: {payment_id}",
            error_code="VALIDATION_ERROR",
        )
    contract_id, stage_id = reference

    payment = get_gateway_adapter().get_payment(payment_id)
    if not payment.success:
        return ServiceResult.failure(
            payment.error or "Could not confirm payment with gateway",
            error_code="GATEWAY_ERROR",
        )
    if not payment.is_paid:
        return ServiceResult.failure(
            f"Payment is not paid (status {payment.status})",
            error_code="INVALID_STATE",
        )

    return EscrowService.handle_payment_complete(
        contract_id=contract_id,
        stage_id=stage_id,
        external_payment_id=payment_id,
        paid_amount=payment.amount,
    )
