"""
Tests for SettlementService.

The gateway is the fake_gateway fixture unless a test exercises the
adapter's own mock transfers (TRANSFER_ENABLED off).
"""

import uuid
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from payments.adapters import TransferResult
from payments.models import EscrowAccount, EscrowTransaction, Payout
from payments.services import SettlementService
from payments.state_machines import EscrowTransactionStatus, KycStatus, PayoutStatus
from payments.tests.factories import (
    ContractFactory,
    EscrowAccountFactory,
    EscrowTransactionFactory,
    PayoutFactory,
)

pytestmark = pytest.mark.django_db

SEOUL = ZoneInfo("Asia/Seoul")


def release(payee, amount, fee):
    """A released transaction with no payout, as left by service completion."""
    return EscrowTransactionFactory(
        contract=ContractFactory(payee=payee, stages=False),
        status=EscrowTransactionStatus.RELEASED,
        amount=amount,
        platform_fee=fee,
    )


def account_of(user):
    return EscrowAccount.objects.get(user=user, role="payee")


@pytest.fixture
def settled_funds(payee_account):
    """88,000 net released to a verified payee, credited to pending."""
    release(payee_account.user, 30000, 3600)
    release(payee_account.user, 70000, 8400)
    EscrowAccount.objects.filter(pk=payee_account.pk).update(pending_balance=88000)
    return payee_account


class TestSettlementPeriod:
    def test_period_is_previous_local_day(self):
        now = datetime(2024, 5, 2, 3, 0, tzinfo=SEOUL)

        start, end = SettlementService.settlement_period(now)

        assert start == datetime(2024, 5, 1, tzinfo=SEOUL)
        assert end == datetime(2024, 5, 2, tzinfo=SEOUL)

    def test_utc_input_is_converted_first(self):
        # 16:00 UTC on May 1st is already May 2nd in Seoul
        now = datetime(2024, 5, 1, 16, 0, tzinfo=ZoneInfo("UTC"))

        start, _ = SettlementService.settlement_period(now)

        assert start == datetime(2024, 5, 1, tzinfo=SEOUL)


class TestGroupByPayee:
    def test_groups_are_bucketed(self, payee_account):
        unverified = EscrowAccountFactory(kyc_status=KycStatus.PENDING)
        small = EscrowAccountFactory()
        release(payee_account.user, 30000, 3600)
        release(payee_account.user, 70000, 8400)
        release(unverified.user, 50000, 6000)
        release(small.user, 5000, 600)

        grouped = SettlementService.group_by_payee_and_filter(
            SettlementService.list_released_transactions_without_payout()
        )

        assert [g.payee_id for g in grouped.eligible] == [payee_account.user_id]
        assert grouped.eligible[0].net_amount == 88000
        assert len(grouped.eligible[0].transaction_ids) == 2
        assert [g.payee_id for g in grouped.skipped_kyc] == [unverified.user_id]
        assert [g.payee_id for g in grouped.below_min] == [small.user_id]

    def test_payee_without_account_is_skipped(self, payee):
        release(payee, 30000, 3600)

        grouped = SettlementService.group_by_payee_and_filter(
            SettlementService.list_released_transactions_without_payout()
        )

        assert grouped.skipped_kyc[0].kyc_status is None
        assert not grouped.eligible

    def test_minimum_can_be_overridden(self, payee_account):
        release(payee_account.user, 5000, 600)

        grouped = SettlementService.group_by_payee_and_filter(
            SettlementService.list_released_transactions_without_payout(),
            min_payout_amount=1000,
        )

        assert len(grouped.eligible) == 1

    def test_only_unattached_released_transactions_are_listed(self, payee_account):
        unsettled = release(payee_account.user, 30000, 3600)
        attached = release(payee_account.user, 30000, 3600)
        attached.payout = PayoutFactory(payee=payee_account.user)
        attached.save()
        EscrowTransactionFactory(contract=ContractFactory(payee=payee_account.user, stages=False))

        listed = list(SettlementService.list_released_transactions_without_payout())

        assert listed == [unsettled]


class TestAttachTransactions:
    def test_attach_all(self, payee_account):
        transactions = [release(payee_account.user, 30000, 3600) for _ in range(2)]
        payout = PayoutFactory(payee=payee_account.user)

        assert SettlementService.attach_transactions_to_payout(payout, [tx.id for tx in transactions])
        assert EscrowTransaction.objects.filter(payout=payout).count() == 2

    def test_attach_is_all_or_nothing(self, payee_account):
        free = release(payee_account.user, 30000, 3600)
        taken = release(payee_account.user, 30000, 3600)
        other = PayoutFactory(payee=payee_account.user)
        taken.payout = other
        taken.save()
        payout = PayoutFactory(payee=payee_account.user)

        assert not SettlementService.attach_transactions_to_payout(payout, [free.id, taken.id])
        assert EscrowTransaction.objects.get(pk=free.pk).payout is None
        assert EscrowTransaction.objects.get(pk=taken.pk).payout == other


class TestProcessPayout:
    def test_successful_transfer(self, payee_account, fake_gateway):
        payout = PayoutFactory(payee=payee_account.user)
        EscrowAccount.objects.filter(pk=payee_account.pk).update(pending_balance=26400)

        result = SettlementService.process_payout(payout.id)

        assert result.success
        payout = Payout.objects.get(pk=payout.pk)
        assert payout.status == PayoutStatus.COMPLETED
        assert payout.external_transfer_id == "MOCK_TRF_1_abcdef"
        assert payout.bank_code == payee_account.bank_code
        account = account_of(payee_account.user)
        assert account.pending_balance == 0
        assert account.withdrawable_balance == 0

        kwargs = fake_gateway.transfer_to_bank.call_args.kwargs
        assert kwargs["amount"] == 26400
        assert kwargs["account_number"] == payee_account.account_number
        assert kwargs["reason"] == f"Settlement #{payout.id}"

    def test_mock_transfer_through_real_adapter(self, payee_account):
        payout = PayoutFactory(payee=payee_account.user)
        EscrowAccount.objects.filter(pk=payee_account.pk).update(pending_balance=26400)

        result = SettlementService.process_payout(payout.id)

        assert result.success
        assert result.data.external_transfer_id.startswith("MOCK_TRF_")

    def test_missing_bank_details_puts_payout_on_hold(self, fake_gateway):
        account = EscrowAccountFactory(account_number="")
        payout = PayoutFactory(payee=account.user)

        result = SettlementService.process_payout(payout.id)

        assert result.error_code == "CONFIGURATION_ERROR"
        assert Payout.objects.get(pk=payout.pk).status == PayoutStatus.ON_HOLD
        fake_gateway.transfer_to_bank.assert_not_called()

    def test_failed_transfer_returns_funds_and_detaches(self, settled_funds, fake_gateway):
        fake_gateway.transfer_to_bank.return_value = TransferResult(
            success=False, error="Account closed", error_code="INVALID_ACCOUNT"
        )
        payout = Payout.objects.create(
            payee=settled_funds.user, gross_amount=100000, total_fees=12000, net_amount=88000
        )
        tx_ids = list(EscrowTransaction.objects.values_list("id", flat=True))
        SettlementService.attach_transactions_to_payout(payout, tx_ids)

        result = SettlementService.process_payout(payout.id)

        assert result.error_code == "GATEWAY_ERROR"
        assert result.error == "Account closed"
        payout = Payout.objects.get(pk=payout.pk)
        assert payout.status == PayoutStatus.FAILED
        assert payout.failure_reason == "Account closed"
        assert not EscrowTransaction.objects.filter(payout__isnull=False).exists()
        account = account_of(settled_funds.user)
        assert account.pending_balance == 88000
        assert account.withdrawable_balance == 0

    def test_processing_payout_is_resumed(self, payee_account, fake_gateway):
        payout = PayoutFactory(payee=payee_account.user)
        payout.process(payee_account.bank_snapshot())
        payout.save()
        EscrowAccount.objects.filter(pk=payee_account.pk).update(withdrawable_balance=26400)

        result = SettlementService.process_payout(payout.id)

        assert result.success
        assert account_of(payee_account.user).withdrawable_balance == 0

    def test_completed_payout_is_not_reprocessed(self, payee_account, fake_gateway):
        payout = PayoutFactory(payee=payee_account.user)
        payout.process(payee_account.bank_snapshot())
        payout.complete(transfer_id="trf_done")
        payout.save()

        result = SettlementService.process_payout(payout.id)

        assert result.error_code == "INVALID_STATE"
        fake_gateway.transfer_to_bank.assert_not_called()

    def test_unknown_payout(self, fake_gateway):
        assert SettlementService.process_payout(uuid.uuid4()).error_code == "NOT_FOUND_OR_UNAUTHORIZED"

    def test_payout_locked_elsewhere(self, payee_account, fake_gateway, mock_redis):
        payout = PayoutFactory(payee=payee_account.user)
        mock_redis.set.return_value = False

        result = SettlementService.process_payout(payout.id)

        assert result.error_code == "LOCK_ACQUISITION_FAILED"
        assert Payout.objects.get(pk=payout.pk).status == PayoutStatus.PENDING


class TestRetryFailedPayout:
    @pytest.fixture
    def failed_payout(self, settled_funds, fake_gateway):
        fake_gateway.transfer_to_bank.return_value = TransferResult(success=False, error="Bank offline")
        grouped = SettlementService.group_by_payee_and_filter(
            SettlementService.list_released_transactions_without_payout()
        )
        payout = SettlementService.create_payout(grouped.eligible[0])
        SettlementService.attach_transactions_to_payout(payout, grouped.eligible[0].transaction_ids)
        SettlementService.process_payout(payout.id)
        fake_gateway.transfer_to_bank.return_value = TransferResult(
            success=True, transfer_id="trf_retry", status="completed"
        )
        return Payout.objects.get(pk=payout.pk)

    def test_retry_reattaches_and_completes(self, failed_payout):
        result = SettlementService.retry_failed_payout(
            failed_payout.id, expected_version=failed_payout.version
        )

        assert result.success
        payout = Payout.objects.get(pk=failed_payout.pk)
        assert payout.status == PayoutStatus.COMPLETED
        assert payout.retry_count == 1
        assert EscrowTransaction.objects.filter(payout=payout).count() == 2
        assert account_of(payout.payee).pending_balance == 0

    def test_stale_version(self, failed_payout):
        result = SettlementService.retry_failed_payout(
            failed_payout.id, expected_version=failed_payout.version - 1
        )

        assert result.error_code == "STALE_RECORD"
        assert Payout.objects.get(pk=failed_payout.pk).status == PayoutStatus.FAILED

    def test_only_failed_payouts(self, payee_account):
        payout = PayoutFactory(payee=payee_account.user)

        assert SettlementService.retry_failed_payout(payout.id).error_code == "INVALID_STATE"

    def test_unknown_payout(self):
        result = SettlementService.retry_failed_payout(uuid.uuid4(), expected_version=1)

        assert result.error_code == "NOT_FOUND_OR_UNAUTHORIZED"

    def test_transactions_settled_elsewhere(self, failed_payout):
        other = PayoutFactory(payee=failed_payout.payee)
        EscrowTransaction.objects.update(payout=other)

        result = SettlementService.retry_failed_payout(failed_payout.id)

        assert result.error_code == "INVALID_STATE"
        assert Payout.objects.get(pk=failed_payout.pk).status == PayoutStatus.FAILED


class TestResumeHeldPayout:
    @pytest.fixture
    def held_payout(self, fake_gateway):
        account = EscrowAccountFactory(bank_code="", pending_balance=26400)
        payout = PayoutFactory(payee=account.user)
        SettlementService.process_payout(payout.id)
        return Payout.objects.get(pk=payout.pk)

    def test_resume_after_bank_details_are_added(self, held_payout, fake_gateway):
        assert held_payout.status == PayoutStatus.ON_HOLD
        EscrowAccount.objects.filter(user=held_payout.payee).update(bank_code="004")

        result = SettlementService.resume_held_payout(held_payout.id, expected_version=held_payout.version)

        assert result.success
        payout = Payout.objects.get(pk=held_payout.pk)
        assert payout.status == PayoutStatus.COMPLETED
        assert payout.failure_reason == ""
        assert payout.bank_code == "004"
        assert account_of(payout.payee).pending_balance == 0
        fake_gateway.transfer_to_bank.assert_called_once()

    def test_still_missing_details_goes_back_on_hold(self, held_payout, fake_gateway):
        result = SettlementService.resume_held_payout(held_payout.id)

        assert result.error_code == "CONFIGURATION_ERROR"
        assert Payout.objects.get(pk=held_payout.pk).status == PayoutStatus.ON_HOLD
        assert account_of(held_payout.payee).pending_balance == 26400
        fake_gateway.transfer_to_bank.assert_not_called()

    def test_stale_version(self, held_payout):
        result = SettlementService.resume_held_payout(held_payout.id, expected_version=held_payout.version + 1)

        assert result.error_code == "STALE_RECORD"
        assert Payout.objects.get(pk=held_payout.pk).status == PayoutStatus.ON_HOLD

    def test_only_held_payouts(self, payee_account):
        payout = PayoutFactory(payee=payee_account.user)

        assert SettlementService.resume_held_payout(payout.id).error_code == "INVALID_STATE"
        assert Payout.objects.get(pk=payout.pk).status == PayoutStatus.PENDING

    def test_unknown_payout(self):
        assert SettlementService.resume_held_payout(uuid.uuid4()).error_code == "NOT_FOUND_OR_UNAUTHORIZED"



class TestRunSettlementBatch:
    def test_disabled_batch_writes_nothing(self, settled_funds, fake_gateway):
        summary = SettlementService.run_settlement_batch()

        assert not summary.success
        assert summary.errors == ["Settlement is disabled"]
        assert not Payout.objects.exists()
        fake_gateway.transfer_to_bank.assert_not_called()

    def test_batch_settles_eligible_payees(self, settlement_enabled, settled_funds, fake_gateway):
        unverified = EscrowAccountFactory(kyc_status=KycStatus.NONE)
        release(unverified.user, 50000, 6000)
        small = EscrowAccountFactory()
        release(small.user, 5000, 600)

        summary = SettlementService.run_settlement_batch()

        assert summary.success
        assert summary.processed_count == 1
        assert summary.total_amount == 88000
        assert summary.skipped_kyc_count == 1
        assert summary.below_min_count == 1
        assert summary.failed_count == 0

        payout = Payout.objects.get(payee=settled_funds.user)
        assert str(payout.id) in summary.payout_ids
        assert payout.status == PayoutStatus.COMPLETED
        assert payout.gross_amount == 100000
        assert payout.period_start is not None
        assert EscrowTransaction.objects.filter(payout=payout).count() == 2
        assert EscrowTransaction.objects.unsettled().count() == 2

    def test_batch_is_idempotent_once_settled(self, settlement_enabled, settled_funds, fake_gateway):
        SettlementService.run_settlement_batch()

        summary = SettlementService.run_settlement_batch()

        assert summary.processed_count == 0
        assert Payout.objects.count() == 1

    def test_failed_group_does_not_stop_the_batch(self, settlement_enabled, settled_funds, fake_gateway):
        second = EscrowAccountFactory()
        release(second.user, 20000, 2400)
        EscrowAccount.objects.filter(pk=second.pk).update(pending_balance=17600)
        fake_gateway.transfer_to_bank.side_effect = [
            TransferResult(success=False, error="Bank offline"),
            TransferResult(success=True, transfer_id="trf_2", status="completed"),
        ]

        summary = SettlementService.run_settlement_batch()

        assert summary.processed_count == 1
        assert summary.failed_count == 1
        assert len(summary.errors) == 1
        assert "Bank offline" in summary.errors[0]

    def test_existing_pending_payouts_are_processed(self, settlement_enabled, payee_account, fake_gateway):
        payout = PayoutFactory(payee=payee_account.user)
        EscrowAccount.objects.filter(pk=payee_account.pk).update(pending_balance=26400)

        summary = SettlementService.run_settlement_batch()

        assert summary.processed_count == 1
        assert Payout.objects.get(pk=payout.pk).status == PayoutStatus.COMPLETED

    def test_existing_payout_for_unverified_payee_waits(self, settlement_enabled, fake_gateway):
        account = EscrowAccountFactory(kyc_status=KycStatus.NONE, pending_balance=26400)
        payout = PayoutFactory(payee=account.user)

        summary = SettlementService.run_settlement_batch()

        assert summary.processed_count == 0
        assert summary.skipped_kyc_count == 1
        assert Payout.objects.get(pk=payout.pk).status == PayoutStatus.PENDING
        assert EscrowAccount.objects.get(pk=account.pk).pending_balance == 26400
        fake_gateway.transfer_to_bank.assert_not_called()

    def test_existing_payout_without_payee_account_waits(self, settlement_enabled, fake_gateway):
        payout = PayoutFactory()

        summary = SettlementService.run_settlement_batch()

        assert summary.skipped_kyc_count == 1
        assert Payout.objects.get(pk=payout.pk).status == PayoutStatus.PENDING
        fake_gateway.transfer_to_bank.assert_not_called()

    def test_existing_payout_below_minimum_waits(self, settlement_enabled, payee_account, fake_gateway):
        payout = PayoutFactory(payee=payee_account.user, gross_amount=5000, total_fees=600)
        EscrowAccount.objects.filter(pk=payee_account.pk).update(pending_balance=4400)

        summary = SettlementService.run_settlement_batch()

        assert summary.processed_count == 0
        assert summary.below_min_count == 1
        assert Payout.objects.get(pk=payout.pk).status == PayoutStatus.PENDING
        fake_gateway.transfer_to_bank.assert_not_called()

    def test_on_hold_counts_as_failed(self, settlement_enabled, fake_gateway):
        account = EscrowAccountFactory(bank_code="")
        release(account.user, 30000, 3600)

        summary = SettlementService.run_settlement_batch()

        assert summary.failed_count == 1
        assert Payout.objects.get(payee=account.user).status == PayoutStatus.ON_HOLD


class TestQueries:
    def test_settlement_stats(self, payee_account):
        done = PayoutFactory(payee=payee_account.user)
        done.process(payee_account.bank_snapshot())
        done.complete(transfer_id="trf_1")
        done.save()
        PayoutFactory(payee=payee_account.user)

        stats = SettlementService.get_settlement_stats()

        assert stats["total_payouts"] == 2
        assert stats["payouts_by_status"][PayoutStatus.COMPLETED] == 1
        assert stats["payouts_by_status"][PayoutStatus.PENDING] == 1
        assert stats["payouts_by_status"][PayoutStatus.FAILED] == 0
        assert stats["total_paid_amount"] == 26400

    def test_recent_payouts_are_limited(self):
        PayoutFactory.create_batch(3)

        assert len(SettlementService.get_recent_payouts(limit=2)) == 2
