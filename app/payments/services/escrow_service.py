"""
Escrow service for contract lifecycle and staged payments.

This module provides the EscrowService class which owns every state change
of Contract, ContractStage and EscrowTransaction, and every balance movement
caused by them.

Canonical escrow transaction sequence:
    funded (payment confirmed) -> completed (service confirmed) -> released
    funded/completed -> frozen (dispute) -> released (operator release)
    funded/completed/frozen -> refunded

Money movement with the gateway follows the two-phase pattern: gateway
calls are made outside database transactions and their outcome is written
in a short transaction afterwards.

Usage:
    from payments.services import EscrowService

    result = EscrowService.create_contract(
        payer=traveler,
        payee=guide,
        total_amount=100000,
        title="Seoul night tour",
    )
    if result.success:
        contract = result.data

    # Webhook path
    result = EscrowService.handle_payment_complete(
        contract_id, stage_id, external_payment_id, paid_amount=30000
    )
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone

from django_fsm import TransitionNotAllowed

from core.helpers import generate_token
from core.services import BaseService, ServiceResult

from payments.adapters import get_gateway_adapter
from payments.exceptions import (
    AmountMismatchError,
    EscrowValidationError,
    InvalidStateError,
    LockAcquisitionError,
    NotFoundOrUnauthorizedError,
)
from payments.locks import DistributedLock
from payments.models import (
    Contract,
    ContractStage,
    EscrowAccount,
    EscrowTransaction,
    Payout,
)
from payments.money import allocate_fee, split_fee, split_stages
from payments.state_machines import (
    AccountRole,
    ContractStatus,
    EscrowTransactionStatus,
    MilestoneType,
    StageStatus,
)

if TYPE_CHECKING:
    from django.contrib.auth.models import User


logger = logging.getLogger(__name__)


# =============================================================================
# Payment References
# =============================================================================

PAYMENT_REFERENCE_PATTERN = re.compile(
    r"^ct_(?P<contract>[0-9a-f]{32})_(?P<stage>[0-9a-f]{32})_[A-Za-z0-9]+$"
)


def build_payment_reference(contract: Contract, stage: ContractStage) -> str:
    """
    Generate a unique gateway payment id for one stage payment attempt.

    Format: ct_{contract hex}_{stage hex}_{8 random chars}
    """
    return f"ct_{contract.id.hex}_{stage.id.hex}_{generate_token(8)}"


def parse_payment_reference(payment_id: str) -> tuple[uuid.UUID, uuid.UUID] | None:
    """Return (contract_id, stage_id) encoded in a payment id, or None."""
    match = PAYMENT_REFERENCE_PATTERN.match(payment_id or "")
    if not match:
        return None
    return uuid.UUID(match["contract"]), uuid.UUID(match["stage"])


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class StagePaymentIntent:
    """
    Everything the client needs to open the gateway checkout for a stage.

    Attributes:
        payment_id: Unique payment reference to pass to the gateway
        order_name: "{contract title} - {stage label}"
        amount: Stage amount in minor units
        currency: ISO 4217 code
        customer: Payer details for the checkout form
    """

    contract_id: uuid.UUID
    stage_id: uuid.UUID
    payment_id: str
    order_name: str
    amount: int
    currency: str
    customer: dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentCompletion:
    """
    Outcome of a payment-complete event.

    Attributes:
        transaction: The escrow transaction for the stage
        created: False when the event was a replay of an earlier one
    """

    transaction: EscrowTransaction
    contract_status: str
    created: bool = True


@dataclass
class RefundOutcome:
    """Outcome of an operator refund across a contract's held funds."""

    contract: Contract
    requested_amount: int
    refunded_amount: int = 0
    refunded_transaction_ids: list[str] = field(default_factory=list)
    failed_transaction_ids: list[str] = field(default_factory=list)


@dataclass
class ContractPaymentSummary:
    """
    How much of a contract has been paid, stage by stage.

    Attributes:
        paid_amount: Sum of paid stages
        remaining_amount: Sum of stages still pending payment
        next_stage_id: Lowest pending stage, or None when nothing is owed
        stages: One dict per stage in payment order
    """

    contract_id: uuid.UUID
    currency: str
    total_amount: int
    paid_amount: int
    remaining_amount: int
    paid_stage_count: int
    stage_count: int
    next_stage_id: uuid.UUID | None = None
    stages: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_fully_paid(self) -> bool:
        return self.remaining_amount == 0 and self.paid_stage_count > 0


# =============================================================================
# Escrow Service
# =============================================================================


class EscrowService(BaseService):
    """
    Service for the escrow contract lifecycle.

    All methods are class methods and return ServiceResult for business
    rule violations:
        VALIDATION_ERROR: Malformed input
        NOT_FOUND_OR_UNAUTHORIZED: Missing contract or caller is not the
            required party
        INVALID_STATE: Operation not legal in the current status
        AMOUNT_MISMATCH: Paid amount differs from the stage amount
        GATEWAY_ERROR: Every gateway refund attempt failed

    Database failures propagate as exceptions.
    """

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _fail(exc: Exception) -> ServiceResult:
        return ServiceResult.from_exception(exc)

    @classmethod
    def _not_found(cls, contract_id) -> ServiceResult:
        return cls._fail(
            NotFoundOrUnauthorizedError(
                "Contract not found or unauthorized",
                details={"contract_id": str(contract_id)},
            )
        )

    @classmethod
    def _invalid_state(cls, message: str, contract: Contract | None = None) -> ServiceResult:
        details = {"current_status": contract.status} if contract is not None else None
        return cls._fail(InvalidStateError(message, details=details))

    @staticmethod
    def _locked_contract(contract_id, **party_filter) -> Contract | None:
        """Lock and return a contract matching the party filter. Call inside atomic()."""
        return (
            Contract.objects.select_for_update()
            .filter(id=contract_id, **party_filter)
            .first()
        )

    @staticmethod
    def _locked_party_contract(contract_id, user) -> Contract | None:
        return (
            Contract.objects.select_for_update()
            .filter(Q(payer=user) | Q(payee=user), id=contract_id)
            .first()
        )

    @classmethod
    def _credit_pending(cls, payee, amount: int, currency: str) -> None:
        """Increase the payee account's pending balance."""
        account = cls._get_or_create_account(payee, AccountRole.PAYEE, currency)
        EscrowAccount.objects.filter(pk=account.pk).update(
            pending_balance=F("pending_balance") + amount,
            updated_at=timezone.now(),
        )

    @staticmethod
    def _get_or_create_account(user, role: str, currency: str | None = None) -> EscrowAccount:
        account, _ = EscrowAccount.objects.get_or_create(
            user=user,
            role=role,
            defaults={"currency": currency or settings.ESCROW_DEFAULT_CURRENCY},
        )
        return account

    # =========================================================================
    # Contract Creation & Lookup
    # =========================================================================

    @classmethod
    def create_contract(
        cls,
        payer: User,
        payee: User,
        total_amount: int,
        title: str,
        description: str = "",
        deposit_percent: int | None = None,
        middle_percent: int | None = None,
        currency: str | None = None,
        **service_details: Any,
    ) -> ServiceResult[Contract]:
        """
        Create a pending contract with its payment stages.

        The platform fee is computed once from PLATFORM_FEE_BPS and frozen
        on the contract. The deposit stage is floor(total * deposit% / 100)
        and the final stage takes the remainder.

        Args:
            payer: User funding the escrow
            payee: Service provider
            total_amount: Contract total in minor units, must be positive
            title: Contract title, used in checkout order names
            deposit_percent: Deposit share (default ESCROW_DEFAULT_DEPOSIT_PERCENT)
            middle_percent: Optional middle stage share
            **service_details: cancellation_policy, service_date,
                service_time, service_location

        Returns:
            ServiceResult with the Contract (stages created)
        """
        validation = cls.validate_required(title=title)
        if validation is not None:
            return validation

        if not isinstance(total_amount, int) or isinstance(total_amount, bool) or total_amount <= 0:
            return cls._fail(
                EscrowValidationError(
                    "Total amount must be a positive integer",
                    details={"total_amount": total_amount},
                )
            )
        if payer.pk == payee.pk:
            return cls._fail(EscrowValidationError("Payer and payee must be different users"))

        if deposit_percent is None:
            deposit_percent = settings.ESCROW_DEFAULT_DEPOSIT_PERCENT
        currency = currency or settings.ESCROW_DEFAULT_CURRENCY
        fee_bps = settings.PLATFORM_FEE_BPS

        try:
            stage_amounts = split_stages(total_amount, deposit_percent, middle_percent)
        except EscrowValidationError as e:
            return cls._fail(e)

        platform_fee, payee_share = split_fee(total_amount, fee_bps)

        with cls.atomic():
            contract = Contract.objects.create(
                payer=payer,
                payee=payee,
                title=title,
                description=description,
                total_amount=total_amount,
                currency=currency,
                platform_fee_bps=fee_bps,
                platform_fee_amount=platform_fee,
                payee_payout_amount=payee_share,
                **service_details,
            )
            ContractStage.objects.bulk_create(
                [
                    ContractStage(
                        contract=contract,
                        name=name,
                        order_index=index,
                        amount=amount,
                        currency=currency,
                    )
                    for index, (name, amount) in enumerate(stage_amounts, start=1)
                ]
            )

        cls.get_logger().info(
            "Contract created",
            extra={
                "contract_id": str(contract.id),
                "total_amount": total_amount,
                "platform_fee": platform_fee,
                "stages": [amount for _, amount in stage_amounts],
            },
        )
        return ServiceResult.success(contract)

    @classmethod
    def get_contract(cls, contract_id, user: User) -> ServiceResult[Contract]:
        """Return a contract with its stages, only to one of its parties."""
        contract = (
            Contract.objects.filter(Q(payer=user) | Q(payee=user), id=contract_id)
            .prefetch_related("stages")
            .first()
        )
        if contract is None:
            return cls._not_found(contract_id)
        return ServiceResult.success(contract)

    @classmethod
    def get_contract_payment_summary(cls, contract_id, user: User) -> ServiceResult[ContractPaymentSummary]:
        """Paid and remaining amounts of a contract, for one of its parties."""
        result = cls.get_contract(contract_id, user)
        if not result.success:
            return result
        return ServiceResult.success(cls.build_payment_summary(result.data))

    @staticmethod
    def build_payment_summary(contract: Contract) -> ContractPaymentSummary:
        stages = sorted(contract.stages.all(), key=lambda s: s.order_index)
        paid = [s for s in stages if s.status == StageStatus.PAID]
        pending = [s for s in stages if s.status == StageStatus.PENDING]
        return ContractPaymentSummary(
            contract_id=contract.id,
            currency=contract.currency,
            total_amount=contract.total_amount,
            paid_amount=sum(s.amount for s in paid),
            remaining_amount=sum(s.amount for s in pending),
            paid_stage_count=len(paid),
            stage_count=len(stages),
            next_stage_id=pending[0].id if pending else None,
            stages=[
                {
                    "id": s.id,
                    "name": s.name,
                    "order_index": s.order_index,
                    "amount": s.amount,
                    "status": s.status,
                    "paid_at": s.paid_at,
                }
                for s in stages
            ],
        )

    @staticmethod
    def get_user_contracts(user: User, role: str | None = None):
        """
        Contracts where the user is the payer, the payee, or either.

        Args:
            role: "payer", "payee" or None for both
        """
        if role == AccountRole.PAYER:
            queryset = Contract.objects.filter(payer=user)
        elif role == AccountRole.PAYEE:
            queryset = Contract.objects.filter(payee=user)
        else:
            queryset = Contract.objects.filter(Q(payer=user) | Q(payee=user))
        return queryset.prefetch_related("stages").order_by("-created_at")

    @classmethod
    def get_or_create_escrow_account(cls, user: User, role: str) -> EscrowAccount:
        """Lazily create the user's account for a role (active, KYC none, zero balances)."""
        return cls._get_or_create_account(user, role)

    @staticmethod
    def get_payee_payouts(user: User):
        return Payout.objects.filter(payee=user).order_by("-created_at")

    # =========================================================================
    # Contract Lifecycle
    # =========================================================================

    @classmethod
    def confirm_contract(cls, contract_id, payee: User) -> ServiceResult[Contract]:
        """
        Payee accepts the contract.

        Transition: pending -> confirmed. Only the named payee may confirm.
        """
        with cls.atomic():
            contract = cls._locked_contract(contract_id, payee=payee)
            if contract is None:
                return cls._not_found(contract_id)
            try:
                contract.confirm()
            except TransitionNotAllowed:
                return cls._invalid_state("Contract is not pending", contract)
            contract.save()

        cls.get_logger().info("Contract confirmed", extra={"contract_id": str(contract.id)})
        return ServiceResult.success(contract)

    @classmethod
    def accept_terms(cls, contract_id, payer: User) -> ServiceResult[Contract]:
        """Payer acknowledges the terms. Status does not change."""
        with cls.atomic():
            contract = cls._locked_contract(contract_id, payer=payer)
            if contract is None:
                return cls._not_found(contract_id)
            if not contract.is_open:
                return cls._invalid_state("Contract is no longer open", contract)
            contract.payer_terms_accepted = True
            contract.save(update_fields=["payer_terms_accepted", "updated_at"])

        return ServiceResult.success(contract)

    @classmethod
    def initiate_stage_payment(
        cls,
        contract_id,
        stage_id,
        payer: User,
    ) -> ServiceResult[StagePaymentIntent]:
        """
        Prepare a gateway checkout for one pending stage.

        Side-effect free: nothing is written until the gateway confirms
        the payment through handle_payment_complete.
        """
        contract = Contract.objects.filter(id=contract_id, payer=payer).first()
        if contract is None:
            return cls._not_found(contract_id)
        if not contract.accepts_payments:
            return cls._invalid_state("Contract is not ready for payment", contract)

        stage = ContractStage.objects.filter(id=stage_id, contract=contract).first()
        if stage is None:
            return cls._fail(
                NotFoundOrUnauthorizedError(
                    "Payment stage not found",
                    details={"stage_id": str(stage_id)},
                )
            )
        if stage.status != StageStatus.PENDING:
            return cls._invalid_state("Payment stage is not pending")

        intent = StagePaymentIntent(
            contract_id=contract.id,
            stage_id=stage.id,
            payment_id=build_payment_reference(contract, stage),
            order_name=f"{contract.title} - {MilestoneType(stage.name).label}",
            amount=stage.amount,
            currency=stage.currency,
            customer={
                "id": str(payer.pk),
                "email": payer.email,
                "name": payer.get_full_name() or payer.get_username(),
            },
        )
        cls.get_logger().info(
            "Stage payment initiated",
            extra={
                "contract_id": str(contract.id),
                "stage_id": str(stage.id),
                "payment_id": intent.payment_id,
                "amount": intent.amount,
            },
        )
        return ServiceResult.success(intent)

    @classmethod
    def handle_payment_complete(
        cls,
        contract_id,
        stage_id,
        external_payment_id: str,
        paid_amount: int,
    ) -> ServiceResult[PaymentCompletion]:
        """
        Record a gateway-confirmed stage payment. Idempotent.

        The paid amount must equal the stage amount exactly; a mismatch is
        rejected with AMOUNT_MISMATCH and nothing changes. On success a
        funded EscrowTransaction is created, the stage is marked paid and,
        for the first stage, the contract moves to in_progress.

        A replay with the same external payment id returns the existing
        transaction with created=False.
        """
        log_context = {
            "contract_id": str(contract_id),
            "stage_id": str(stage_id),
            "payment_id": external_payment_id,
            "paid_amount": paid_amount,
        }

        existing = cls._find_recorded_payment(external_payment_id)
        if existing is not None:
            return cls._payment_replay(existing, log_context)

        with cls.atomic():
            contract = cls._locked_contract(contract_id)
            stage = (
                ContractStage.objects.select_for_update()
                .filter(id=stage_id, contract_id=contract_id)
                .first()
            )
            if contract is None or stage is None:
                return cls._fail(
                    NotFoundOrUnauthorizedError("Contract stage not found", details=log_context)
                )

            # A concurrent delivery may have recorded it while we waited for the locks
            existing = cls._find_recorded_payment(external_payment_id)
            if existing is not None:
                return cls._payment_replay(existing, log_context)

            if paid_amount != stage.amount:
                cls.get_logger().error(
                    "Paid amount does not match stage amount",
                    extra={**log_context, "expected_amount": stage.amount},
                )
                return cls._fail(
                    AmountMismatchError(
                        "Amount mismatch",
                        details={"expected": stage.amount, "received": paid_amount},
                    )
                )

            if stage.status != StageStatus.PENDING:
                return cls._invalid_state("Payment stage is not pending")
            if not contract.accepts_payments:
                return cls._invalid_state("Contract is not accepting payments", contract)

            now = timezone.now()
            try:
                with transaction.atomic():
                    escrow_tx = EscrowTransaction.objects.create(
                        contract=contract,
                        stage=stage,
                        milestone_type=stage.name,
                        amount=paid_amount,
                        currency=stage.currency,
                        status=EscrowTransactionStatus.FUNDED,
                        external_payment_id=external_payment_id,
                        funded_at=now,
                    )
            except IntegrityError:
                # Concurrent delivery of the same event won the insert
                escrow_tx = cls._find_recorded_payment(external_payment_id)
                if escrow_tx is None:
                    raise
                return cls._payment_replay(escrow_tx, log_context)

            stage.status = StageStatus.PAID
            stage.paid_at = now
            stage.save(update_fields=["status", "paid_at", "updated_at"])

            if stage.is_first and contract.status == ContractStatus.CONFIRMED:
                contract.start()
                contract.save()

        cls.get_logger().info(
            "Stage payment recorded",
            extra={**log_context, "transaction_id": str(escrow_tx.id), "contract_status": contract.status},
        )
        return ServiceResult.success(
            PaymentCompletion(transaction=escrow_tx, contract_status=contract.status)
        )

    @staticmethod
    def _find_recorded_payment(external_payment_id: str) -> EscrowTransaction | None:
        return (
            EscrowTransaction.objects.select_related("contract")
            .filter(external_payment_id=external_payment_id)
            .first()
        )

    @classmethod
    def _payment_replay(cls, existing: EscrowTransaction, log_context: dict) -> ServiceResult[PaymentCompletion]:
        cls.get_logger().info("Payment already recorded", extra=log_context)
        return ServiceResult.success(
            PaymentCompletion(
                transaction=existing,
                contract_status=existing.contract.status,
                created=False,
            )
        )

    @classmethod
    def confirm_service_complete(cls, contract_id, payer: User) -> ServiceResult[Contract]:
        """
        Payer confirms delivery; escrowed funds are released to the payee.

        Transition: in_progress -> completed. Funded transactions are marked
        completed, then every completed transaction is released with its
        platform fee and the payee's pending balance is credited with the
        net amount.
        """
        with cls.atomic():
            contract = cls._locked_contract(contract_id, payer=payer)
            if contract is None:
                return cls._not_found(contract_id)
            try:
                contract.complete()
            except TransitionNotAllowed:
                return cls._invalid_state("Contract is not in progress", contract)
            contract.save()

            EscrowTransaction.objects.filter(
                contract=contract,
                status=EscrowTransactionStatus.FUNDED,
            ).update(status=EscrowTransactionStatus.COMPLETED, updated_at=timezone.now())

            released_net = cls._release_transactions(
                contract,
                EscrowTransaction.objects.select_for_update().filter(
                    contract=contract,
                    status=EscrowTransactionStatus.COMPLETED,
                ),
            )
            if released_net:
                cls._credit_pending(contract.payee, released_net, contract.currency)

        cls.get_logger().info(
            "Service completed and escrow released",
            extra={"contract_id": str(contract.id), "released_net": released_net},
        )
        return ServiceResult.success(contract)

    @staticmethod
    def _stage_fees(contract: Contract) -> dict:
        """Platform fee owed by each stage, keyed by stage id."""
        stages = list(contract.stages.order_by("order_index").values_list("id", "amount"))
        fees = allocate_fee(
            contract.platform_fee_amount,
            [amount for _, amount in stages],
            contract.platform_fee_bps,
        )
        return {stage_id: fee for (stage_id, _), fee in zip(stages, fees)}

    @classmethod
    def _release_transactions(cls, contract: Contract, transactions, payout: Payout | None = None) -> int:
        """Release transactions with their platform fee; returns the total net amount."""
        stage_fees = cls._stage_fees(contract)
        now = timezone.now()
        released_net = 0
        for escrow_tx in transactions:
            escrow_tx.platform_fee = stage_fees[escrow_tx.stage_id]
            escrow_tx.status = EscrowTransactionStatus.RELEASED
            escrow_tx.released_at = now
            escrow_tx.payout = payout
            escrow_tx.save(update_fields=["platform_fee", "status", "released_at", "payout", "updated_at"])
            released_net += escrow_tx.net_amount
        return released_net

    @classmethod
    def raise_dispute(cls, contract_id, raised_by: User, reason: str) -> ServiceResult[Contract]:
        """
        Either party disputes the contract; held funds are frozen.

        Transition: pending/confirmed/in_progress -> disputed.
        """
        validation = cls.validate_required(reason=reason)
        if validation is not None:
            return validation

        with cls.atomic():
            contract = cls._locked_party_contract(contract_id, raised_by)
            if contract is None:
                return cls._not_found(contract_id)
            try:
                contract.dispute(reason=reason, raised_by=raised_by)
            except TransitionNotAllowed:
                return cls._invalid_state("Contract cannot be disputed", contract)
            contract.save()

            frozen = EscrowTransaction.objects.filter(
                contract=contract,
                status__in=[EscrowTransactionStatus.FUNDED, EscrowTransactionStatus.COMPLETED],
            ).update(status=EscrowTransactionStatus.FROZEN, updated_at=timezone.now())

        cls.get_logger().warning(
            "Dispute raised",
            extra={
                "contract_id": str(contract.id),
                "raised_by": raised_by.pk,
                "frozen_transactions": frozen,
            },
        )
        return ServiceResult.success(contract)

    @classmethod
    def cancel_contract(cls, contract_id, cancelled_by: User, reason: str = "") -> ServiceResult[Contract]:
        """
        Either party cancels; all pending stages are cancelled.

        Not allowed once the contract is completed or already cancelled.
        Funds already held stay in escrow until an operator refunds them.
        """
        with cls.atomic():
            contract = cls._locked_party_contract(contract_id, cancelled_by)
            if contract is None:
                return cls._not_found(contract_id)
            try:
                contract.cancel(reason=reason, cancelled_by=cancelled_by)
            except TransitionNotAllowed:
                return cls._invalid_state("Contract is already completed or cancelled", contract)
            contract.save()

            ContractStage.objects.filter(contract=contract, status=StageStatus.PENDING).update(
                status=StageStatus.CANCELED, updated_at=timezone.now()
            )
            held_count = EscrowTransaction.objects.filter(contract=contract).held().count()

        log_extra = {"contract_id": str(contract.id), "cancelled_by": cancelled_by.pk}
        if held_count:
            cls.get_logger().warning(
                "Contract cancelled with funds still held in escrow",
                extra={**log_extra, "held_transactions": held_count},
            )
        else:
            cls.get_logger().info("Contract cancelled", extra=log_extra)
        return ServiceResult.success(contract)

    @classmethod
    def resolve_dispute(cls, contract_id, resolution: str, note: str = "") -> ServiceResult[Contract]:
        """
        Operator decision on a disputed contract.

        Args:
            resolution: "completed" (payee keeps funds, release_escrow follows)
                or "cancelled" (payer is refunded, process_refund follows)
        """
        if resolution not in (ContractStatus.COMPLETED, ContractStatus.CANCELLED):
            return cls._fail(
                EscrowValidationError(
                    "Resolution must be 'completed' or 'cancelled'",
                    details={"resolution": resolution},
                )
            )

        with cls.atomic():
            contract = cls._locked_contract(contract_id)
            if contract is None:
                return cls._not_found(contract_id)
            try:
                if resolution == ContractStatus.COMPLETED:
                    contract.resolve_completed()
                else:
                    contract.resolve_cancelled(reason=note)
            except TransitionNotAllowed:
                return cls._invalid_state("Contract is not disputed", contract)
            contract.save()

        cls.get_logger().info(
            "Dispute resolved",
            extra={"contract_id": str(contract.id), "resolution": resolution},
        )
        return ServiceResult.success(contract)

    # =========================================================================
    # Refunds & Release
    # =========================================================================

    @classmethod
    def process_refund(cls, contract_id, amount: int, reason: str) -> ServiceResult[RefundOutcome]:
        """
        Refund up to `amount` from the contract's held funds.

        Held transactions (funded, completed, frozen) are refunded oldest
        first. A transaction whose gateway refund fails is skipped and the
        walk continues. A transaction is marked refunded once its whole
        amount has been returned. The contract ends up cancelled.

        Returns:
            ServiceResult with RefundOutcome; GATEWAY_ERROR when no gateway
            refund succeeded (the contract is left unchanged)
        """
        validation = cls.validate_required(reason=reason)
        if validation is not None:
            return validation
        if not isinstance(amount, int) or amount <= 0:
            return cls._fail(EscrowValidationError("Refund amount must be positive"))

        contract = Contract.objects.filter(id=contract_id).first()
        if contract is None:
            return cls._not_found(contract_id)
        if contract.status == ContractStatus.COMPLETED:
            return cls._invalid_state("Completed contracts cannot be refunded", contract)

        try:
            with DistributedLock(f"contract:refund:{contract.id}", ttl=120, blocking=False):
                return cls._process_refund_with_lock(contract, amount, reason)
        except LockAcquisitionError as e:
            return cls._fail(e)

    @classmethod
    def _process_refund_with_lock(cls, contract: Contract, amount: int, reason: str) -> ServiceResult[RefundOutcome]:
        transactions = list(
            EscrowTransaction.objects.filter(contract=contract).held().order_by("created_at")
        )
        if not transactions:
            return cls._invalid_state("No refundable transactions found", contract)

        adapter = get_gateway_adapter()
        outcome = RefundOutcome(contract=contract, requested_amount=amount)
        remaining = amount

        for escrow_tx in transactions:
            if remaining <= 0:
                break
            refundable = escrow_tx.amount - escrow_tx.refunded_amount
            refund_now = min(refundable, remaining)
            if refund_now <= 0:
                continue

            # Gateway call outside any database transaction
            result = adapter.cancel_payment(escrow_tx.external_payment_id, reason, refund_now)
            if not result.success:
                cls.get_logger().error(
                    "Gateway refund failed",
                    extra={
                        "contract_id": str(contract.id),
                        "transaction_id": str(escrow_tx.id),
                        "error": result.error,
                    },
                )
                outcome.failed_transaction_ids.append(str(escrow_tx.id))
                continue

            with cls.atomic():
                locked = EscrowTransaction.objects.select_for_update().get(pk=escrow_tx.pk)
                locked.refunded_amount += refund_now
                locked.refund_reason = f"Refund: {refund_now} {locked.currency} - {reason}"
                if locked.refunded_amount >= locked.amount:
                    locked.status = EscrowTransactionStatus.REFUNDED
                    locked.refunded_at = timezone.now()
                locked.save(
                    update_fields=["refunded_amount", "refund_reason", "status", "refunded_at", "updated_at"]
                )

            remaining -= refund_now
            outcome.refunded_amount += refund_now
            outcome.refunded_transaction_ids.append(str(escrow_tx.id))

        if outcome.refunded_amount == 0:
            return ServiceResult.failure(
                "All gateway refunds failed",
                error_code="GATEWAY_ERROR",
            )

        with cls.atomic():
            locked_contract = cls._locked_contract(contract.id)
            if locked_contract.status != ContractStatus.CANCELLED:
                locked_contract.cancel(reason=reason)
                locked_contract.save()
            outcome.contract = locked_contract

        cls.get_logger().info(
            "Refund processed",
            extra={
                "contract_id": str(contract.id),
                "requested_amount": amount,
                "refunded_amount": outcome.refunded_amount,
                "failed_transactions": len(outcome.failed_transaction_ids),
            },
        )
        return ServiceResult.success(outcome)

    @classmethod
    def release_escrow(cls, contract_id, approved_by: User) -> ServiceResult[Payout]:
        """
        Release frozen funds of a completed contract into a pending payout.

        Only the payer may approve. The frozen transactions are released
        with their platform fee and attached to the new payout, and the
        payee's pending balance is credited with the net amount. The
        settlement batch drives the payout to the bank afterwards.
        """
        with cls.atomic():
            contract = cls._locked_contract(contract_id, payer=approved_by)
            if contract is None:
                return cls._not_found(contract_id)
            if contract.status != ContractStatus.COMPLETED:
                return cls._invalid_state("Contract is not completed", contract)

            frozen = list(
                EscrowTransaction.objects.select_for_update().filter(
                    contract=contract,
                    status=EscrowTransactionStatus.FROZEN,
                )
            )
            if not frozen:
                return cls._invalid_state("No frozen funds to release", contract)

            gross = sum(tx.amount for tx in frozen)
            stage_fees = cls._stage_fees(contract)
            fees = sum(stage_fees[tx.stage_id] for tx in frozen)
            payout = Payout.objects.create(
                payee=contract.payee,
                contract=contract,
                gross_amount=gross,
                total_fees=fees,
                net_amount=gross - fees,
                currency=contract.currency,
                transaction_count=len(frozen),
                scheduled_at=timezone.now(),
                metadata={
                    "source": "escrow_release",
                    "transaction_ids": [str(tx.id) for tx in frozen],
                },
            )
            released_net = cls._release_transactions(contract, frozen, payout=payout)
            cls._credit_pending(contract.payee, released_net, contract.currency)

        cls.get_logger().info(
            "Escrow released",
            extra={
                "contract_id": str(contract.id),
                "payout_id": str(payout.id),
                "gross_amount": gross,
                "net_amount": payout.net_amount,
            },
        )
        return ServiceResult.success(payout)
