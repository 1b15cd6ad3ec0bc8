"""
Payout model for settlement bank transfers.

A Payout is one aggregated disbursement to a single payee, covering one
or more released escrow transactions. Payouts are created by the
settlement batch or by an escrow release, never by user-facing APIs.

Usage:
    from payments.models import Payout

    payout.process()  # pending -> processing
    payout.save()

    # After the bank transfer succeeds
    payout.complete(transfer_id="trf_123")  # processing -> completed
    payout.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin

from payments.state_machines import PayoutStatus


class Payout(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    One settlement disbursement to a payee.

    State Flow:
        PENDING -> PROCESSING -> COMPLETED
        PROCESSING -> FAILED -> PENDING (retry)
        PENDING/PROCESSING -> ON_HOLD (bank details missing)
        PENDING -> CANCELLED (transaction attach rolled back)

    Fields:
        payee: User receiving the transfer
        contract: Set for payouts created by an escrow release
        period_start/end: Settlement period covered
        gross_amount / total_fees / net_amount: gross - fees = net
        transaction_count: Number of attached escrow transactions
        status: Current FSM state
        bank_*: Bank details snapshot taken when the transfer starts
        external_transfer_id: Gateway transfer id
        metadata: {"transaction_ids": [...]} recorded at creation
        version: Optimistic locking version
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    payee = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="payouts",
        help_text="User receiving the payout",
    )

    contract = models.ForeignKey(
        "payments.Contract",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payouts",
        help_text="Contract released into this payout. Null for batch payouts.",
    )

    # ==========================================================================
    # Period & Amounts
    # ==========================================================================

    period_start = models.DateTimeField(null=True, blank=True)
    period_end = models.DateTimeField(null=True, blank=True)

    gross_amount = models.PositiveBigIntegerField(
        help_text="Sum of attached transaction amounts",
    )

    total_fees = models.PositiveBigIntegerField(
        default=0,
        help_text="Sum of platform fees",
    )

    net_amount = models.PositiveBigIntegerField(
        help_text="Amount transferred to the payee",
    )

    currency = models.CharField(max_length=3, default="KRW")

    transaction_count = models.PositiveIntegerField(default=0)

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=PayoutStatus.PENDING,
        choices=PayoutStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the payout (managed by FSM)",
    )

    # ==========================================================================
    # Bank Transfer
    # ==========================================================================

    bank_code = models.CharField(max_length=10, blank=True, default="")
    account_number = models.CharField(max_length=64, blank=True, default="")
    account_holder_name = models.CharField(max_length=100, blank=True, default="")

    external_transfer_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Gateway transfer id",
    )

    retry_count = models.PositiveIntegerField(default=0)

    # ==========================================================================
    # Timestamps
    # ==========================================================================

    scheduled_at = models.DateTimeField(null=True, blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Metadata & Error Info
    # ==========================================================================

    failure_reason = models.TextField(blank=True, default="")

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Attached transaction ids and run context",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payout"
        verbose_name_plural = "Payouts"
        indexes = [
            models.Index(fields=["payee", "status"], name="payments_pa_payee_i_5c2e71_idx"),
            models.Index(fields=["status", "created_at"], name="payments_pa_status_a9d418_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(net_amount__gt=0),
                name="payout_net_amount_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(
                    gross_amount=models.F("net_amount") + models.F("total_fees")
                ),
                name="payout_amounts_balanced",
            ),
        ]

    def __str__(self) -> str:
        return f"Payout({self.id}, {self.status}, {self.net_amount} {self.currency})"

    @property
    def transaction_ids(self) -> list[str]:
        return list(self.metadata.get("transaction_ids", []))

    @property
    def has_bank_details(self) -> bool:
        return bool(self.bank_code and self.account_number and self.account_holder_name)

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=PayoutStatus.PENDING,
        target=PayoutStatus.PROCESSING,
    )
    def process(self, bank_details: dict[str, str]):
        """
        Start the bank transfer with a snapshot of the payee's bank details.

        Transition: PENDING -> PROCESSING
        """
        self.bank_code = bank_details["bank_code"]
        self.account_number = bank_details["account_number"]
        self.account_holder_name = bank_details["account_holder_name"]
        self.processed_at = timezone.now()

    @transition(
        field=status,
        source=PayoutStatus.PROCESSING,
        target=PayoutStatus.COMPLETED,
    )
    def complete(self, transfer_id: str):
        """
        Transition: PROCESSING -> COMPLETED
        """
        self.external_transfer_id = transfer_id
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=PayoutStatus.PROCESSING,
        target=PayoutStatus.FAILED,
    )
    def fail(self, reason: str):
        """
        Transition: PROCESSING -> FAILED
        """
        self.failure_reason = reason
        self.failed_at = timezone.now()

    @transition(
        field=status,
        source=[PayoutStatus.PENDING, PayoutStatus.PROCESSING],
        target=PayoutStatus.ON_HOLD,
    )
    def hold(self, reason: str):
        """
        Park the payout until an operator intervenes.

        Transition: PENDING/PROCESSING -> ON_HOLD
        """
        self.failure_reason = reason

    @transition(
        field=status,
        source=PayoutStatus.ON_HOLD,
        target=PayoutStatus.PENDING,
    )
    def resume(self):
        """
        Release a held payout once its blocker is cleared.

        Transition: ON_HOLD -> PENDING
        """
        self.failure_reason = ""

    @transition(
        field=status,
        source=PayoutStatus.PENDING,
        target=PayoutStatus.CANCELLED,
    )
    def cancel(self, reason: str = ""):
        """
        Transition: PENDING -> CANCELLED
        """
        self.failure_reason = reason
        self.cancelled_at = timezone.now()

    @transition(
        field=status,
        source=PayoutStatus.FAILED,
        target=PayoutStatus.PENDING,
    )
    def retry(self):
        """
        Reset a failed payout for another attempt.

        Transition: FAILED -> PENDING
        """
        self.retry_count += 1
        self.failed_at = None
        self.failure_reason = ""
        self.external_transfer_id = None
