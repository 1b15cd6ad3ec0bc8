"""
WebhookEvent model for payment gateway webhook tracking.

Every verified webhook delivery is stored before it is handled. The
unique webhook_id makes redeliveries detectable, and the stored payload
gives an audit trail for amount disputes.

Usage:
    from payments.models import WebhookEvent

    event, created = WebhookEvent.objects.get_or_create(
        webhook_id=request.headers["x-portone-webhook-id"],
        defaults={"event_type": "Transaction.Paid", "payload": payload},
    )
    if not created and event.is_processed:
        return Response(status=200)  # redelivery
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from payments.state_machines import WebhookEventStatus


class WebhookEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks gateway webhook deliveries for idempotent processing.

    Processing Flow:
        1. Verify the HMAC signature
        2. get_or_create by webhook_id
        3. Already PROCESSED -> acknowledge without work
        4. Mark PROCESSING, dispatch to the handler
        5. Mark PROCESSED or FAILED

    Note:
        Ledger idempotency does not depend on this table alone; the
        escrow transaction's unique payment id rejects replays too.
    """

    webhook_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Gateway webhook delivery id - unique for idempotency",
    )

    event_type = models.CharField(max_length=100, db_index=True)

    payment_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        db_index=True,
        help_text="Gateway payment id referenced by the event",
    )

    payload = models.JSONField()

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PENDING,
        db_index=True,
    )

    processed_at = models.DateTimeField(null=True, blank=True)

    error_message = models.TextField(blank=True, default="")

    attempts = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Webhook Event"
        verbose_name_plural = "Webhook Events"
        indexes = [
            models.Index(fields=["status", "created_at"], name="payments_we_status_71e2c8_idx"),
        ]

    def __str__(self) -> str:
        return f"WebhookEvent({self.webhook_id}, {self.event_type})"

    @property
    def is_processed(self) -> bool:
        return self.status == WebhookEventStatus.PROCESSED

    # Helpers below do not save; the caller saves.

    def mark_processing(self) -> None:
        self.status = WebhookEventStatus.PROCESSING
        self.attempts += 1

    def mark_processed(self) -> None:
        self.status = WebhookEventStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = ""

    def mark_failed(self, error: str) -> None:
        self.status = WebhookEventStatus.FAILED
        self.error_message = error
