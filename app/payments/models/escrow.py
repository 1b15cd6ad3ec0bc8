"""
Escrow bookkeeping models.

EscrowTransaction records one confirmed funds-in event against a
ContractStage. EscrowAccount holds a user's balances per role in three
buckets that are never merged: available, pending and withdrawable.

Balance flow for settled funds:
    release -> pending -> withdrawable (transfer started) -> 0 (transfer done)
                  ^                |
                  +----------------+ (transfer failed)

Usage:
    from payments.models import EscrowAccount, EscrowTransaction

    # Released and not yet attached to any payout
    EscrowTransaction.objects.unsettled()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from payments.state_machines import (
    AccountRole,
    AccountStatus,
    EscrowTransactionStatus,
    KycStatus,
    MilestoneType,
)

# Transactions still holding the payer's money
HELD_TRANSACTION_STATES = [
    EscrowTransactionStatus.FUNDED,
    EscrowTransactionStatus.COMPLETED,
    EscrowTransactionStatus.FROZEN,
]


class EscrowTransactionQuerySet(models.QuerySet):
    def unsettled(self):
        """Released transactions not yet attached to a payout."""
        return self.filter(
            status=EscrowTransactionStatus.RELEASED,
            payout__isnull=True,
        )

    def held(self):
        return self.filter(status__in=HELD_TRANSACTION_STATES)


class EscrowTransaction(UUIDPrimaryKeyMixin, BaseModel):
    """
    One funds-in event for a contract stage.

    Created only after the gateway confirms the payment; never
    speculatively. Status is a plain column because the ledger moves
    whole sets of transactions with bulk updates.

    Fields:
        contract: Contract the funds belong to
        stage: Stage this payment funded (one transaction per stage)
        milestone_type: Copy of the stage name
        amount: Exactly the stage amount
        status: funded -> completed -> released (or frozen/refunded)
        external_payment_id: Gateway payment id, unique
        platform_fee: Fee taken at release time
        payout: Settlement payout this transaction is paid through

    Note:
        The unique external_payment_id and the one-per-stage constraint
        make replayed payment-complete events fail at the storage layer.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    contract = models.ForeignKey(
        "payments.Contract",
        on_delete=models.PROTECT,
        related_name="transactions",
    )

    stage = models.ForeignKey(
        "payments.ContractStage",
        on_delete=models.PROTECT,
        related_name="transactions",
    )

    payout = models.ForeignKey(
        "payments.Payout",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="transactions",
        help_text="Payout this transaction is settled through (null until attached)",
    )

    # ==========================================================================
    # Amount
    # ==========================================================================

    milestone_type = models.CharField(
        max_length=20,
        choices=MilestoneType.choices,
    )

    amount = models.PositiveBigIntegerField(
        help_text="Funded amount in smallest currency unit",
    )

    currency = models.CharField(max_length=3, default="KRW")

    platform_fee = models.PositiveBigIntegerField(
        default=0,
        help_text="Platform fee deducted at release",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = models.CharField(
        max_length=20,
        choices=EscrowTransactionStatus.choices,
        default=EscrowTransactionStatus.FUNDED,
        db_index=True,
    )

    external_payment_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Gateway payment id confirmed by webhook",
    )

    refund_reason = models.TextField(blank=True, default="")

    refunded_amount = models.PositiveBigIntegerField(default=0)

    # ==========================================================================
    # Timestamps
    # ==========================================================================

    funded_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True, db_index=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    objects = EscrowTransactionQuerySet.as_manager()

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Escrow Transaction"
        verbose_name_plural = "Escrow Transactions"
        indexes = [
            models.Index(fields=["contract", "status"], name="payments_es_contrac_6e0b3f_idx"),
            models.Index(fields=["status", "payout"], name="payments_es_status_27c5d0_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["stage"],
                name="unique_transaction_per_stage",
            ),
            models.CheckConstraint(
                condition=models.Q(amount__gt=0),
                name="escrow_transaction_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"EscrowTransaction({self.id}, {self.status}, {self.amount})"

    @property
    def net_amount(self) -> int:
        return self.amount - self.platform_fee


class EscrowAccount(UUIDPrimaryKeyMixin, BaseModel):
    """
    Per-user, per-role balance holder.

    Balances are only mutated by the escrow and settlement services,
    always with F() expressions or under select_for_update.

    Fields:
        user: Account owner
        role: payer or payee
        available_balance: Funds free to use
        pending_balance: Released funds awaiting settlement
        withdrawable_balance: Funds in an in-flight bank transfer
        kyc_status: Identity verification; only VERIFIED is paid out
        bank_code / account_number / account_holder_name: Payout destination
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="escrow_accounts",
    )

    role = models.CharField(
        max_length=10,
        choices=AccountRole.choices,
    )

    # ==========================================================================
    # Balances (minor units)
    # ==========================================================================

    available_balance = models.BigIntegerField(default=0)
    pending_balance = models.BigIntegerField(default=0)
    withdrawable_balance = models.BigIntegerField(default=0)

    currency = models.CharField(max_length=3, default="KRW")

    status = models.CharField(
        max_length=20,
        choices=AccountStatus.choices,
        default=AccountStatus.ACTIVE,
    )

    kyc_status = models.CharField(
        max_length=20,
        choices=KycStatus.choices,
        default=KycStatus.NONE,
        db_index=True,
    )

    # ==========================================================================
    # Bank Details
    # ==========================================================================

    bank_code = models.CharField(max_length=10, blank=True, default="")
    account_number = models.CharField(max_length=64, blank=True, default="")
    account_holder_name = models.CharField(max_length=100, blank=True, default="")

    class Meta:
        verbose_name = "Escrow Account"
        verbose_name_plural = "Escrow Accounts"
        constraints = [
            models.UniqueConstraint(
                fields=["user", "role"],
                name="unique_escrow_account_per_role",
            ),
        ]

    def __str__(self) -> str:
        return f"EscrowAccount({self.user_id}, {self.role})"

    @property
    def is_kyc_verified(self) -> bool:
        return self.kyc_status == KycStatus.VERIFIED

    @property
    def has_bank_details(self) -> bool:
        return bool(self.bank_code and self.account_number and self.account_holder_name)

    def bank_snapshot(self) -> dict[str, str]:
        return {
            "bank_code": self.bank_code,
            "account_number": self.account_number,
            "account_holder_name": self.account_holder_name,
        }
