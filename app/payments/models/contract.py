"""
Contract and ContractStage models.

A Contract is one commercial agreement between a payer and a payee.
Its fee split is computed once at creation and frozen on the row; the
payment schedule is a set of ordered ContractStages whose amounts sum to
the contract total.

Usage:
    from payments.models import Contract
    from payments.state_machines import ContractStatus

    contract.confirm()  # pending -> confirmed
    contract.save()

    contract.start()  # confirmed -> in_progress (first stage paid)
    contract.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin

from payments.state_machines import (
    CancellationPolicy,
    ContractStatus,
    MilestoneType,
    StageStatus,
)

# States from which either party may still cancel or dispute
OPEN_CONTRACT_STATES = [
    ContractStatus.PENDING,
    ContractStatus.CONFIRMED,
    ContractStatus.IN_PROGRESS,
]


class Contract(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    A commercial agreement between a payer and a payee.

    State Flow:
        PENDING -> CONFIRMED -> IN_PROGRESS -> COMPLETED
        PENDING/CONFIRMED/IN_PROGRESS -> CANCELLED
        PENDING/CONFIRMED/IN_PROGRESS -> DISPUTED
        DISPUTED -> COMPLETED/CANCELLED (operator resolution)

    Fields:
        payer: User funding the escrow
        payee: Service provider receiving the net payout
        total_amount: Contract total in minor currency units
        platform_fee_bps: Fee rate in basis points, frozen at creation
        platform_fee_amount: floor(total_amount * platform_fee_bps / 10000)
        payee_payout_amount: total_amount - platform_fee_amount
        status: Current FSM state
        payer_terms_accepted / payee_terms_accepted: Terms acknowledgements
        version: Optimistic locking version

    Note:
        payee_payout_amount + platform_fee_amount == total_amount is
        enforced by a check constraint.
    """

    # ==========================================================================
    # Parties
    # ==========================================================================

    payer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="contracts_as_payer",
        help_text="User funding the escrow",
    )

    payee = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="contracts_as_payee",
        help_text="Service provider receiving the payout",
    )

    # ==========================================================================
    # Description
    # ==========================================================================

    title = models.CharField(max_length=200)

    description = models.TextField(blank=True, default="")

    # ==========================================================================
    # Amounts (minor units)
    # ==========================================================================

    total_amount = models.PositiveBigIntegerField(
        help_text="Contract total in smallest currency unit",
    )

    currency = models.CharField(
        max_length=3,
        default="KRW",
        help_text="ISO 4217 currency code",
    )

    platform_fee_bps = models.PositiveIntegerField(
        help_text="Platform fee rate in basis points (1200 = 12%)",
    )

    platform_fee_amount = models.PositiveBigIntegerField(
        help_text="Platform fee computed at creation",
    )

    payee_payout_amount = models.PositiveBigIntegerField(
        help_text="Payee share computed at creation",
    )

    # ==========================================================================
    # Service Details
    # ==========================================================================

    cancellation_policy = models.CharField(
        max_length=20,
        choices=CancellationPolicy.choices,
        default=CancellationPolicy.MODERATE,
    )

    service_date = models.DateField(null=True, blank=True)

    service_time = models.TimeField(null=True, blank=True)

    service_location = models.CharField(max_length=255, blank=True, default="")

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=ContractStatus.PENDING,
        choices=ContractStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the contract (managed by FSM)",
    )

    payer_terms_accepted = models.BooleanField(default=False)

    payee_terms_accepted = models.BooleanField(default=False)

    # ==========================================================================
    # Cancellation & Dispute
    # ==========================================================================

    cancel_reason = models.TextField(blank=True, default="")

    cancelled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    dispute_reason = models.TextField(blank=True, default="")

    disputed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    # ==========================================================================
    # Timestamps
    # ==========================================================================

    confirmed_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    disputed_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Contract"
        verbose_name_plural = "Contracts"
        indexes = [
            models.Index(fields=["payer", "status"], name="payments_co_payer_i_8f1c2a_idx"),
            models.Index(fields=["payee", "status"], name="payments_co_payee_i_3b7d9e_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(total_amount__gt=0),
                name="contract_total_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(
                    total_amount=models.F("platform_fee_amount")
                    + models.F("payee_payout_amount")
                ),
                name="contract_fee_split_balanced",
            ),
        ]

    def __str__(self) -> str:
        return f"Contract({self.id}, {self.status}, {self.total_amount} {self.currency})"

    def is_party(self, user) -> bool:
        """Check whether user is the payer or the payee."""
        return user.pk in (self.payer_id, self.payee_id)

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=ContractStatus.PENDING,
        target=ContractStatus.CONFIRMED,
    )
    def confirm(self):
        """
        Payee accepts the contract.

        Transition: PENDING -> CONFIRMED
        """
        self.payee_terms_accepted = True
        self.confirmed_at = timezone.now()

    @transition(
        field=status,
        source=ContractStatus.CONFIRMED,
        target=ContractStatus.IN_PROGRESS,
    )
    def start(self):
        """
        Service starts once the first stage is funded.

        Transition: CONFIRMED -> IN_PROGRESS
        """
        self.started_at = timezone.now()

    @transition(
        field=status,
        source=ContractStatus.IN_PROGRESS,
        target=ContractStatus.COMPLETED,
    )
    def complete(self):
        """
        Payer confirms the service was delivered.

        Transition: IN_PROGRESS -> COMPLETED
        """
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=[*OPEN_CONTRACT_STATES, ContractStatus.DISPUTED],
        target=ContractStatus.CANCELLED,
    )
    def cancel(self, reason: str = "", cancelled_by=None):
        """
        Cancel the contract.

        Transition: PENDING/CONFIRMED/IN_PROGRESS/DISPUTED -> CANCELLED
        """
        self.cancel_reason = reason
        self.cancelled_by = cancelled_by
        self.cancelled_at = timezone.now()

    @transition(
        field=status,
        source=OPEN_CONTRACT_STATES,
        target=ContractStatus.DISPUTED,
    )
    def dispute(self, reason: str, raised_by):
        """
        Either party disputes the contract; escrowed funds are frozen.

        Transition: PENDING/CONFIRMED/IN_PROGRESS -> DISPUTED
        """
        self.dispute_reason = reason
        self.disputed_by = raised_by
        self.disputed_at = timezone.now()

    @transition(
        field=status,
        source=ContractStatus.DISPUTED,
        target=ContractStatus.COMPLETED,
    )
    def resolve_completed(self):
        """
        Operator resolves the dispute in the payee's favour.

        Transition: DISPUTED -> COMPLETED
        """
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=ContractStatus.DISPUTED,
        target=ContractStatus.CANCELLED,
    )
    def resolve_cancelled(self, reason: str = ""):
        """
        Operator resolves the dispute in the payer's favour.

        Transition: DISPUTED -> CANCELLED
        """
        self.cancel_reason = reason or self.dispute_reason
        self.cancelled_at = timezone.now()

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_CONTRACT_STATES

    @property
    def accepts_payments(self) -> bool:
        """Stages can only be paid on a confirmed or running contract."""
        return self.status in (ContractStatus.CONFIRMED, ContractStatus.IN_PROGRESS)


class ContractStage(UUIDPrimaryKeyMixin, BaseModel):
    """
    An ordered payment milestone of a contract.

    Fields:
        contract: Owning contract (cascade)
        name: Milestone type (deposit, middle, final)
        order_index: 1-based payment order
        amount: Stage amount in minor units
        status: pending, paid or canceled
        paid_at: When the stage was funded
    """

    contract = models.ForeignKey(
        Contract,
        on_delete=models.CASCADE,
        related_name="stages",
    )

    name = models.CharField(
        max_length=20,
        choices=MilestoneType.choices,
    )

    order_index = models.PositiveSmallIntegerField()

    amount = models.PositiveBigIntegerField(
        help_text="Stage amount in smallest currency unit",
    )

    currency = models.CharField(max_length=3, default="KRW")

    status = models.CharField(
        max_length=20,
        choices=StageStatus.choices,
        default=StageStatus.PENDING,
        db_index=True,
    )

    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["contract", "order_index"]
        verbose_name = "Contract Stage"
        verbose_name_plural = "Contract Stages"
        constraints = [
            models.UniqueConstraint(
                fields=["contract", "order_index"],
                name="unique_stage_order_per_contract",
            ),
        ]

    def __str__(self) -> str:
        return f"ContractStage({self.contract_id}, {self.name}, {self.amount})"

    @property
    def is_first(self) -> bool:
        return self.order_index == 1
