"""
Settlement service for turning released escrow funds into bank payouts.

One settlement run:
1. Collect released transactions that are not attached to a payout
2. Group them by payee and bucket each group as eligible, skipped (KYC)
   or below the minimum payout amount
3. For each eligible group: create a payout, attach its transactions and
   process it. A group whose attach step fails is rolled back and its
   payout cancelled.
4. Drive payouts that already sit in PENDING (escrow releases) through
   processing as well, behind the same KYC and minimum-amount gates

Each payee group is an independent unit of work; one group's failure is
recorded in the summary and the run moves on.

process_payout follows the two-phase pattern:
    Phase 1: PENDING -> PROCESSING and pending -> withdrawable balance,
             committed before any external call
    Phase 2: Bank transfer through the gateway (outside any transaction)
    Phase 3: COMPLETED (withdrawable debited) or FAILED (funds back to
             pending, transactions detached for a future run)

Usage:
    from payments.services import SettlementService

    summary = SettlementService.run_settlement_batch()
    logger.info("Settled %s payees", summary.processed_count)
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from django.conf import settings
from django.db import transaction
from django.db.models import Count, F, Sum
from django.utils import timezone

from core.services import BaseService, ServiceResult

from payments.adapters import get_gateway_adapter
from payments.exceptions import (
    ConfigurationError,
    InvalidStateError,
    LockAcquisitionError,
    NotFoundOrUnauthorizedError,
    StaleRecordError,
)
from payments.locks import DistributedLock, check_version
from payments.models import EscrowAccount, EscrowTransaction, Payout
from payments.state_machines import AccountRole, KycStatus, PayoutStatus


logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

PAYOUT_LOCK_TTL = 120

BANK_DETAILS_MISSING = "Bank account information incomplete"

SETTLEMENT_DISABLED = "Settlement is disabled"


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class PayeeGroup:
    """Released transactions of one payee, summed net of platform fees."""

    payee_id: int
    currency: str
    transaction_ids: list[uuid.UUID] = field(default_factory=list)
    gross_amount: int = 0
    total_fees: int = 0
    kyc_status: str | None = None

    @property
    def net_amount(self) -> int:
        return self.gross_amount - self.total_fees


@dataclass
class GroupedTransactions:
    """
    Partition of payee groups.

    Every group lands in exactly one bucket:
        eligible: KYC verified and net total >= minimum payout amount
        skipped_kyc: KYC not verified (or no payee account)
        below_min: Verified but under the minimum payout amount
    """

    eligible: list[PayeeGroup] = field(default_factory=list)
    skipped_kyc: list[PayeeGroup] = field(default_factory=list)
    below_min: list[PayeeGroup] = field(default_factory=list)


@dataclass
class SettlementSummary:
    """
    Observable outcome of a settlement run.

    Attributes:
        success: False only when the run did not happen (disabled, locked)
        processed_count: Payouts completed in this run
        total_amount: Net amount transferred in this run
        skipped_kyc_count: Payee groups and pending payouts skipped for KYC
        below_min_count: Payee groups and pending payouts under the minimum
        failed_count: Payouts or groups that failed
        payout_ids: Payouts created in this run
        errors: Human-readable failure messages
    """

    success: bool = True
    processed_count: int = 0
    total_amount: int = 0
    skipped_kyc_count: int = 0
    below_min_count: int = 0
    failed_count: int = 0
    payout_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# Settlement Service
# =============================================================================


class SettlementService(BaseService):
    """
    Service for the daily settlement batch and payout processing.

    Balances touched here belong to the payee EscrowAccount:
        pending -> withdrawable when a transfer starts
        withdrawable -> 0 when it completes
        withdrawable -> pending when it fails
    """

    # =========================================================================
    # Period
    # =========================================================================

    @staticmethod
    def settlement_period(now: datetime | None = None) -> tuple[datetime, datetime]:
        """Yesterday 00:00 to today 00:00 in SETTLEMENT_TIMEZONE."""
        tz = ZoneInfo(settings.SETTLEMENT_TIMEZONE)
        local_now = (now or timezone.now()).astimezone(tz)
        period_end = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        return period_end - timedelta(days=1), period_end

    # =========================================================================
    # Grouping
    # =========================================================================

    @staticmethod
    def list_released_transactions_without_payout():
        """Released transactions with no payout, oldest first."""
        return (
            EscrowTransaction.objects.unsettled()
            .select_related("contract")
            .order_by("released_at", "created_at")
        )

    @staticmethod
    def _payee_kyc_statuses(payee_ids) -> dict[int, str]:
        return dict(
            EscrowAccount.objects.filter(
                user_id__in=payee_ids,
                role=AccountRole.PAYEE,
            ).values_list("user_id", "kyc_status")
        )

    @classmethod
    def group_by_payee_and_filter(
        cls,
        transactions,
        min_payout_amount: int | None = None,
    ) -> GroupedTransactions:
        """
        Sum transactions per payee and bucket each group.

        Args:
            transactions: Iterable of EscrowTransaction with contract loaded
            min_payout_amount: Override for SETTLEMENT_MIN_PAYOUT_AMOUNT
        """
        if min_payout_amount is None:
            min_payout_amount = settings.SETTLEMENT_MIN_PAYOUT_AMOUNT

        groups: dict[tuple[int, str], PayeeGroup] = {}
        for escrow_tx in transactions:
            key = (escrow_tx.contract.payee_id, escrow_tx.currency)
            group = groups.get(key)
            if group is None:
                group = groups[key] = PayeeGroup(payee_id=key[0], currency=key[1])
            group.transaction_ids.append(escrow_tx.id)
            group.gross_amount += escrow_tx.amount
            group.total_fees += escrow_tx.platform_fee

        kyc_by_payee = cls._payee_kyc_statuses({payee_id for payee_id, _ in groups})

        result = GroupedTransactions()
        for group in groups.values():
            group.kyc_status = kyc_by_payee.get(group.payee_id)
            if group.kyc_status != KycStatus.VERIFIED:
                result.skipped_kyc.append(group)
            elif group.net_amount < min_payout_amount or group.net_amount <= 0:
                result.below_min.append(group)
            else:
                result.eligible.append(group)
        return result

    # =========================================================================
    # Payout Creation
    # =========================================================================

    @classmethod
    def create_payout(
        cls,
        group: PayeeGroup,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> Payout:
        """Create a PENDING payout for a payee group."""
        return Payout.objects.create(
            payee_id=group.payee_id,
            period_start=period_start,
            period_end=period_end,
            gross_amount=group.gross_amount,
            total_fees=group.total_fees,
            net_amount=group.net_amount,
            currency=group.currency,
            transaction_count=len(group.transaction_ids),
            scheduled_at=timezone.now(),
            metadata={
                "source": "settlement",
                "transaction_ids": [str(tx_id) for tx_id in group.transaction_ids],
            },
        )

    @classmethod
    def attach_transactions_to_payout(cls, payout: Payout, transaction_ids) -> bool:
        """
        Link transactions to a payout, all or nothing.

        Only released transactions that are still unattached are linked.
        If any of them was attached elsewhere in the meantime, the whole
        attach is rolled back and False is returned.
        """
        expected = len(transaction_ids)
        with transaction.atomic():
            attached = EscrowTransaction.objects.filter(
                id__in=transaction_ids,
                payout__isnull=True,
            ).unsettled().update(payout=payout, updated_at=timezone.now())
            if attached != expected:
                transaction.set_rollback(True)
                cls.get_logger().warning(
                    "Transaction attach mismatch, rolling back",
                    extra={
                        "payout_id": str(payout.id),
                        "expected": expected,
                        "attached": attached,
                    },
                )
                return False
        return True

    @classmethod
    def cancel_payout(cls, payout_id, reason: str) -> Payout:
        with transaction.atomic():
            payout = Payout.objects.select_for_update().get(id=payout_id)
            payout.cancel(reason=reason)
            payout.save()
        cls.get_logger().info(
            "Payout cancelled",
            extra={"payout_id": str(payout_id), "reason": reason},
        )
        return payout

    # =========================================================================
    # Payout Processing
    # =========================================================================

    @staticmethod
    def _move_balance(payee_id: int, **deltas: int) -> None:
        """Apply signed deltas to the payee account's balance buckets."""
        EscrowAccount.objects.filter(user_id=payee_id, role=AccountRole.PAYEE).update(
            updated_at=timezone.now(),
            **{bucket: F(bucket) + delta for bucket, delta in deltas.items()},
        )

    @classmethod
    def process_payout(cls, payout_id) -> ServiceResult[Payout]:
        """
        Transfer a payout to the payee's bank account.

        Only PENDING payouts (and PROCESSING payouts left behind by a
        crashed worker) are processed. Missing bank details park the
        payout ON_HOLD without calling the gateway.

        Returns:
            ServiceResult with the Payout; failure codes INVALID_STATE,
            CONFIGURATION_ERROR (on hold), GATEWAY_ERROR (transfer failed),
            LOCK_ACQUISITION_FAILED
        """
        try:
            with DistributedLock(f"payout:{payout_id}", ttl=PAYOUT_LOCK_TTL, blocking=False):
                return cls._process_payout_with_lock(payout_id)
        except LockAcquisitionError as e:
            cls.get_logger().warning(
                "Payout is being processed elsewhere",
                extra={"payout_id": str(payout_id)},
            )
            return ServiceResult.from_exception(e)

    @classmethod
    def _process_payout_with_lock(cls, payout_id) -> ServiceResult[Payout]:
        start_time = time.time()
        log_context = {"payout_id": str(payout_id)}

        # Phase 1: reserve funds and move to PROCESSING
        with transaction.atomic():
            payout = Payout.objects.select_for_update().filter(id=payout_id).first()
            if payout is None:
                return ServiceResult.from_exception(
                    NotFoundOrUnauthorizedError("Payout not found", details=log_context)
                )
            if payout.status not in (PayoutStatus.PENDING, PayoutStatus.PROCESSING):
                return ServiceResult.from_exception(
                    InvalidStateError(
                        "Payout is not pending",
                        details={**log_context, "current_status": payout.status},
                    )
                )

            if payout.status == PayoutStatus.PENDING:
                account = EscrowAccount.objects.filter(
                    user_id=payout.payee_id,
                    role=AccountRole.PAYEE,
                ).first()
                if account is None or not account.has_bank_details:
                    payout.hold(reason=BANK_DETAILS_MISSING)
                    payout.save()
                    cls.get_logger().warning("Payout put on hold", extra=log_context)
                    return ServiceResult.from_exception(
                        ConfigurationError(BANK_DETAILS_MISSING, details=log_context)
                    )

                payout.process(account.bank_snapshot())
                payout.save()
                cls._move_balance(
                    payout.payee_id,
                    pending_balance=-payout.net_amount,
                    withdrawable_balance=payout.net_amount,
                )
            else:
                cls.get_logger().warning("Resuming payout left in processing", extra=log_context)

        # Phase 2: transfer, outside any transaction
        transfer = get_gateway_adapter().transfer_to_bank(
            amount=payout.net_amount,
            bank_code=payout.bank_code,
            account_number=payout.account_number,
            account_holder_name=payout.account_holder_name,
            reason=f"Settlement #{payout.id}",
        )

        # Phase 3: record the outcome
        with transaction.atomic():
            payout = Payout.objects.select_for_update().get(id=payout_id)
            if transfer.success:
                payout.complete(transfer_id=transfer.transfer_id)
                payout.save()
                cls._move_balance(payout.payee_id, withdrawable_balance=-payout.net_amount)
            else:
                payout.fail(reason=transfer.error or "Transfer failed")
                payout.save()
                EscrowTransaction.objects.filter(payout=payout).update(
                    payout=None, updated_at=timezone.now()
                )
                cls._move_balance(
                    payout.payee_id,
                    withdrawable_balance=-payout.net_amount,
                    pending_balance=payout.net_amount,
                )

        duration_ms = (time.time() - start_time) * 1000
        if not transfer.success:
            cls.get_logger().error(
                "Payout transfer failed",
                extra={
                    **log_context,
                    "error": transfer.error,
                    "error_code": transfer.error_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            return ServiceResult.failure(
                transfer.error or "Transfer failed",
                error_code="GATEWAY_ERROR",
            )

        cls.get_logger().info(
            "Payout completed",
            extra={
                **log_context,
                "transfer_id": transfer.transfer_id,
                "net_amount": payout.net_amount,
                "mock": transfer.is_mock,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return ServiceResult.success(payout)

    @classmethod
    def retry_failed_payout(cls, payout_id, expected_version: int | None = None) -> ServiceResult[Payout]:
        """
        Move a FAILED payout back to PENDING and process it again.

        The payout's recorded transactions are re-attached first; if any of
        them has been settled by another payout since, nothing changes.

        Args:
            expected_version: Version the operator last saw; a concurrent
                change makes the retry fail with STALE_RECORD
        """
        try:
            with transaction.atomic():
                if expected_version is not None:
                    payout = check_version(Payout, payout_id, expected_version)
                else:
                    payout = Payout.objects.select_for_update().filter(id=payout_id).first()
                    if payout is None:
                        raise NotFoundOrUnauthorizedError(
                            "Payout not found", details={"payout_id": str(payout_id)}
                        )
                if payout.status != PayoutStatus.FAILED:
                    raise InvalidStateError(
                        "Only failed payouts can be retried",
                        details={"current_status": payout.status},
                    )

                payout.retry()
                payout.save()

                transaction_ids = payout.transaction_ids
                if transaction_ids and not cls.attach_transactions_to_payout(payout, transaction_ids):
                    raise InvalidStateError(
                        "Payout transactions were settled elsewhere",
                        details={"payout_id": str(payout_id)},
                    )
        except (NotFoundOrUnauthorizedError, StaleRecordError, InvalidStateError) as e:
            return ServiceResult.from_exception(e)

        cls.get_logger().info(
            "Retrying failed payout",
            extra={"payout_id": str(payout_id), "retry_count": payout.retry_count},
        )
        return cls.process_payout(payout_id)

    @classmethod
    def resume_held_payout(cls, payout_id, expected_version: int | None = None) -> ServiceResult[Payout]:
        """
        Move an ON_HOLD payout back to PENDING and process it again.

        Used once the payee has added bank details. A payout whose blocker
        is still there goes straight back on hold.
        """
        try:
            with transaction.atomic():
                if expected_version is not None:
                    payout = check_version(Payout, payout_id, expected_version)
                else:
                    payout = Payout.objects.select_for_update().filter(id=payout_id).first()
                    if payout is None:
                        raise NotFoundOrUnauthorizedError(
                            "Payout not found", details={"payout_id": str(payout_id)}
                        )
                if payout.status != PayoutStatus.ON_HOLD:
                    raise InvalidStateError(
                        "Only held payouts can be resumed",
                        details={"current_status": payout.status},
                    )

                payout.resume()
                payout.save()
        except (NotFoundOrUnauthorizedError, StaleRecordError, InvalidStateError) as e:
            return ServiceResult.from_exception(e)

        cls.get_logger().info("Resuming held payout", extra={"payout_id": str(payout_id)})
        return cls.process_payout(payout_id)

    # =========================================================================
    # Batch)
    # =========================================================================

    @classmethod
    def run_settlement_batch(cls, now: datetime | None = None) -> SettlementSummary:
        """
        Execute one settlement run.

        A disabled batch performs no writes and returns success=False with
        errors=["Settlement is disabled"].
        """
        if not settings.SETTLEMENT_ENABLED:
            cls.get_logger().info("Settlement batch skipped: disabled")
            return SettlementSummary(success=False, errors=[SETTLEMENT_DISABLED])

        start_time = time.time()
        summary = SettlementSummary()
        period_start, period_end = cls.settlement_period(now)

        grouped = cls.group_by_payee_and_filter(cls.list_released_transactions_without_payout())
        summary.skipped_kyc_count = len(grouped.skipped_kyc)
        summary.below_min_count = len(grouped.below_min)

        for group in grouped.eligible:
            payout = cls.create_payout(group, period_start, period_end)
            summary.payout_ids.append(str(payout.id))

            if not cls.attach_transactions_to_payout(payout, group.transaction_ids):
                cls.cancel_payout(payout.id, reason="Transaction attach failed")
                summary.failed_count += 1
                summary.errors.append(f"Payee {group.payee_id}: transaction attach failed")
                continue

            cls._record_payout_result(summary, payout.id, cls.process_payout(payout.id))

        # Payouts created outside the batch, e.g. escrow releases. They pass
        # the same KYC and minimum gates and stay PENDING until they do.
        existing = list(
            Payout.objects.filter(status=PayoutStatus.PENDING)
            .exclude(id__in=summary.payout_ids)
            .order_by("created_at")
        )
        kyc_by_payee = cls._payee_kyc_statuses({payout.payee_id for payout in existing})
        min_payout_amount = settings.SETTLEMENT_MIN_PAYOUT_AMOUNT
        for payout in existing:
            if kyc_by_payee.get(payout.payee_id) != KycStatus.VERIFIED:
                summary.skipped_kyc_count += 1
                continue
            if payout.net_amount < min_payout_amount:
                summary.below_min_count += 1
                continue
            cls._record_payout_result(summary, payout.id, cls.process_payout(payout.id))

        cls.get_logger().info(
            "Settlement batch finished",
            extra={
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                "processed_count": summary.processed_count,
                "total_amount": summary.total_amount,
                "skipped_kyc_count": summary.skipped_kyc_count,
                "below_min_count": summary.below_min_count,
                "failed_count": summary.failed_count,
                "duration_ms": round((time.time() - start_time) * 1000, 2),
            },
        )
        return summary

    @staticmethod
    def _record_payout_result(summary: SettlementSummary, payout_id, result: ServiceResult) -> None:
        if result.success:
            summary.processed_count += 1
            summary.total_amount += result.data.net_amount
        else:
            summary.failed_count += 1
            summary.errors.append(f"Payout {payout_id}: {result.error}")

    # =========================================================================
    # Queries
    # =========================================================================

    @staticmethod
    def get_settlement_stats() -> dict[str, Any]:
        """Per-status payout counts and the total amount paid out."""
        counts = {status: 0 for status in PayoutStatus.values}
        for row in Payout.objects.values("status").annotate(count=Count("id")):
            counts[row["status"]] = row["count"]
        total_paid = (
            Payout.objects.filter(status=PayoutStatus.COMPLETED)
            .aggregate(total=Sum("net_amount"))["total"]
            or 0
        )
        return {
            "payouts_by_status": counts,
            "total_payouts": sum(counts.values()),
            "total_paid_amount": total_paid,
        }

    @staticmethod
    def get_recent_payouts(limit: int = 20):
        return Payout.objects.select_related("payee").order_by("-created_at")[:limit]
