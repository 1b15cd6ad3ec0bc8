"""
Celery tasks for payment processing.

This module provides async tasks for:
- Ticking the settlement scheduler (every minute)
- Renewing subscriptions and sending renewal reminders (daily)
- Retrying failed gateway webhook events

Schedules are installed by the payments data migrations
(django-celery-beat DatabaseScheduler).

Usage:
    from payments.tasks import run_subscription_renewals

    # Run renewals now instead of waiting for beat
    run_subscription_renewals.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.utils import timezone

from core.helpers import validate_uuid

from payments.models import WebhookEvent
from payments.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_WEBHOOK_ATTEMPTS = 5
STUCK_PROCESSING_THRESHOLD_MINUTES = 30


# =============================================================================
# Settlement
# =============================================================================


@shared_task(bind=True, ignore_result=True)
def settlement_scheduler_tick(self) -> dict:
    """
    Trigger the settlement batch when its daily window is reached.

    Runs every minute. The scheduler itself decides whether anything
    happens, so extra or missed ticks are harmless.
    """
    from payments.workers import SettlementScheduler

    summary = SettlementScheduler().tick()
    if summary is None:
        return {"status": "idle"}
    return {"status": "ran", **summary.to_dict()}


# =============================================================================
# Subscriptions
# =============================================================================


@shared_task(bind=True, acks_late=True)
def run_subscription_renewals(self) -> dict:
    """
    Daily renewal of due subscriptions, then retries.

    Returns:
        Dict with processed, renewed, failed, suspended and skipped counts
    """
    from payments.services import SubscriptionRenewalService

    logger.info("Starting subscription renewals")
    return SubscriptionRenewalService.run_renewals().to_dict()


@shared_task
def send_subscription_reminders() -> dict:
    """Daily advance notice for upcoming renewals."""
    from payments.services import SubscriptionRenewalService

    return {"sent": SubscriptionRenewalService.send_reminders()}


# =============================================================================
# Webhooks
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_WEBHOOK_ATTEMPTS},
    acks_late=True,
)
def process_webhook_event(self, webhook_event_id: str) -> dict:
    """
    Re-process a stored webhook event.

    Args:
        webhook_event_id: UUID of the WebhookEvent

    Raises:
        Exception: Re-raised to trigger Celery retry
    """
    from payments.webhooks.handlers import process_event

    webhook_event = None
    if validate_uuid(webhook_event_id):
        webhook_event = WebhookEvent.objects.filter(id=webhook_event_id).first()
    if webhook_event is None:
        logger.error("WebhookEvent not found", extra={"webhook_event_id": str(webhook_event_id)})
        return {"status": "not_found", "webhook_event_id": str(webhook_event_id)}

    if webhook_event.is_processed:
        return {"status": "already_processed", "webhook_event_id": str(webhook_event.id)}

    result = process_event(webhook_event)
    if result.success:
        return {"status": "processed", "webhook_event_id": str(webhook_event.id)}
    return {
        "status": "handler_failed",
        "webhook_event_id": str(webhook_event.id),
        "error": result.error,
        "error_code": result.error_code,
    }


@shared_task
def retry_failed_webhooks() -> dict:
    """
    Re-queue failed webhook events that have attempts left.

    Events stuck in PROCESSING longer than the threshold (crashed worker)
    are reset to FAILED first so they are picked up too.
    """
    threshold = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)
    reset_count = WebhookEvent.objects.filter(
        status=WebhookEventStatus.PROCESSING,
        updated_at__lt=threshold,
    ).update(
        status=WebhookEventStatus.FAILED,
        error_message="Processing timed out - reset for retry",
        updated_at=timezone.now(),
    )

    failed_ids = list(
        WebhookEvent.objects.filter(
            status=WebhookEventStatus.FAILED,
            attempts__lt=MAX_WEBHOOK_ATTEMPTS,
        )
        .order_by("created_at")
        .values_list("id", flat=True)[:100]
    )
    for event_id in failed_ids:
        process_webhook_event.delay(str(event_id))

    if reset_count or failed_ids:
        logger.info(
            f"Queued {len(failed_ids)} failed webhooks for retry",
            extra={"queued_count": len(failed_ids), "reset_count": reset_count},
        )
    return {"queued_count": len(failed_ids), "reset_count": reset_count}
