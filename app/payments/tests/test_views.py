"""
Tests for the payments API.

Requests go through the real URLconf with JWT authentication; the gateway
is replaced by the fake_gateway fixture wherever money would move.
"""

import uuid
from datetime import timedelta

import pytest
from django.urls import reverse
from django.utils import timezone
from rest_framework import status

from payments.adapters import RefundResult
from payments.models import Contract, EscrowAccount, Payout, ScheduledJobState
from payments.state_machines import ContractStatus, PayoutStatus, SubscriptionStatus
from payments.tests.factories import (
    BillingCredentialFactory,
    ContractFactory,
    PayoutFactory,
    SubscriptionFactory,
)

pytestmark = pytest.mark.django_db


def contract_url(name, contract, **kwargs):
    return reverse(f"payments:contract-{name}", kwargs={"pk": contract.pk, **kwargs})


# =============================================================================
# Contracts
# =============================================================================


class TestContractCreateAndList:
    def test_requires_authentication(self, api_client):
        response = api_client.get(reverse("payments:contract-list"))

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_create_contract(self, payer_client, payer, payee):
        response = payer_client.post(
            reverse("payments:contract-list"),
            {"payee_id": payee.pk, "title": "Seoul night tour", "total_amount": 100000},
            format="json",
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["status"] == ContractStatus.PENDING
        assert data["payer"] == payer.pk
        assert data["platform_fee_amount"] == 12000
        assert data["payee_payout_amount"] == 88000
        assert [(s["name"], s["amount"]) for s in data["stages"]] == [("deposit", 30000), ("final", 70000)]

    def test_create_with_middle_stage(self, payer_client, payee):
        response = payer_client.post(
            reverse("payments:contract-list"),
            {
                "payee_id": payee.pk,
                "title": "Three day trek",
                "total_amount": 300000,
                "deposit_percent": 20,
                "middle_percent": 30,
                "currency": "krw",
            },
            format="json",
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["currency"] == "KRW"
        assert len(response.json()["stages"]) == 3

    @pytest.mark.parametrize(
        "payload",
        [
            {"title": "x", "total_amount": 0},
            {"title": "", "total_amount": 1000},
            {"total_amount": 1000},
        ],
    )
    def test_invalid_input(self, payer_client, payee, payload):
        response = payer_client.post(
            reverse("payments:contract-list"), {"payee_id": payee.pk, **payload}, format="json"
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert not Contract.objects.exists()

    def test_cannot_contract_with_yourself(self, payer_client, payer):
        response = payer_client.post(
            reverse("payments:contract-list"),
            {"payee_id": payer.pk, "title": "x", "total_amount": 1000},
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_list_only_own_contracts(self, payer_client, pending_contract):
        ContractFactory()

        response = payer_client.get(reverse("payments:contract-list"))

        assert response.status_code == status.HTTP_200_OK
        assert [c["id"] for c in response.json()["results"]] == [str(pending_contract.id)]

    def test_list_filtered_by_role(self, payer_client, pending_contract):
        response = payer_client.get(reverse("payments:contract-list"), {"role": "payee"})

        assert response.json()["results"] == []

    def test_detail_includes_payment_summary(self, payee_client, in_progress_contract):
        response = payee_client.get(contract_url("detail", in_progress_contract))

        assert response.status_code == status.HTTP_200_OK
        summary = response.json()["payment_summary"]
        assert summary["paid_amount"] == 30000
        assert summary["remaining_amount"] == 70000
        assert summary["is_fully_paid"] is False
        assert [s["status"] for s in summary["stages"]] == ["paid", "pending"]
        assert summary["next_stage_id"] == response.json()["stages"][1]["id"]

    def test_detail_is_hidden_from_outsiders(self, outsider_client, pending_contract):
        response = outsider_client.get(contract_url("detail", pending_contract))

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "NOT_FOUND_OR_UNAUTHORIZED"

    def test_non_uuid_path_is_404(self, payer_client):
        response = payer_client.get("/api/v1/payments/contracts/not-a-uuid/")

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestContractLifecycle:
    def test_payee_confirms(self, payee_client, pending_contract):
        response = payee_client.post(contract_url("confirm", pending_contract))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == ContractStatus.CONFIRMED

    def test_payer_cannot_confirm(self, payer_client, pending_contract):
        response = payer_client.post(contract_url("confirm", pending_contract))

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "NOT_FOUND_OR_UNAUTHORIZED"

    def test_confirm_twice_conflicts(self, payee_client, confirmed_contract):
        response = payee_client.post(contract_url("confirm", confirmed_contract))

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["error_code"] == "INVALID_STATE"

    def test_payer_accepts_terms(self, payer_client, pending_contract):
        response = payer_client.post(contract_url("accept-terms", pending_contract))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["payer_terms_accepted"] is True

    def test_start_stage_payment(self, payer_client, confirmed_contract):
        stage = confirmed_contract.stages.get(order_index=1)

        response = payer_client.post(contract_url("pay", confirmed_contract, stage_id=stage.id))

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["amount"] == 30000
        assert data["payment_id"].startswith(f"ct_{confirmed_contract.id.hex}_{stage.id.hex}_")
        assert data["order_name"] == f"{confirmed_contract.title} - Deposit"

    def test_pending_contract_cannot_be_paid(self, payer_client, pending_contract):
        stage = pending_contract.stages.get(order_index=1)

        response = payer_client.post(contract_url("pay", pending_contract, stage_id=stage.id))

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_complete(self, payer_client, fully_paid_contract):
        response = payer_client.post(contract_url("complete", fully_paid_contract))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == ContractStatus.COMPLETED
        account = EscrowAccount.objects.get(user=fully_paid_contract.payee, role="payee")
        assert account.pending_balance == 88000

    def test_dispute_requires_reason(self, payee_client, in_progress_contract):
        response = payee_client.post(contract_url("dispute", in_progress_contract), {}, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_dispute(self, payee_client, in_progress_contract):
        response = payee_client.post(
            contract_url("dispute", in_progress_contract), {"reason": "Payer unreachable"}, format="json"
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["dispute_reason"] == "Payer unreachable"

    def test_cancel(self, payer_client, confirmed_contract):
        response = payer_client.post(
            contract_url("cancel", confirmed_contract), {"reason": "Plans changed"}, format="json"
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == ContractStatus.CANCELLED
        assert {s["status"] for s in data["stages"]} == {"canceled"}

    def test_cancel_completed_conflicts(self, payer_client, completed_contract):
        response = payer_client.post(contract_url("cancel", completed_contract), {}, format="json")

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_transactions(self, payee_client, fully_paid_contract):
        response = payee_client.get(contract_url("transactions", fully_paid_contract))

        assert response.status_code == status.HTTP_200_OK
        assert sorted(tx["amount"] for tx in response.json()) == [30000, 70000]

    def test_release_frozen_funds(self, payer_client, disputed_contract, staff_client):
        staff_client.post(
            contract_url("resolve-dispute", disputed_contract), {"resolution": "completed"}, format="json"
        )

        response = payer_client.post(contract_url("release", disputed_contract))

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["net_amount"] == 88000
        assert response.json()["status"] == PayoutStatus.PENDING


class TestStaffContractOperations:
    def test_refund_requires_staff(self, payer_client, in_progress_contract, fake_gateway):
        response = payer_client.post(
            contract_url("refund", in_progress_contract), {"amount": 30000, "reason": "x"}, format="json"
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        fake_gateway.cancel_payment.assert_not_called()

    def test_refund(self, staff_client, fully_paid_contract, fake_gateway):
        response = staff_client.post(
            contract_url("refund", fully_paid_contract),
            {"amount": 100000, "reason": "Guide cancelled"},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["refunded_amount"] == 100000
        assert data["contract"]["status"] == ContractStatus.CANCELLED

    def test_refund_gateway_failure(self, staff_client, in_progress_contract, fake_gateway):
        fake_gateway.cancel_payment.return_value = RefundResult(success=False, error="down")

        response = staff_client.post(
            contract_url("refund", in_progress_contract), {"amount": 30000, "reason": "x"}, format="json"
        )

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert response.json()["error_code"] == "GATEWAY_ERROR"

    def test_resolve_dispute(self, staff_client, disputed_contract):
        response = staff_client.post(
            contract_url("resolve-dispute", disputed_contract),
            {"resolution": "cancelled", "note": "No show confirmed"},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["cancel_reason"] == "No show confirmed"

    def test_resolve_dispute_rejects_unknown_resolution(self, staff_client, disputed_contract):
        response = staff_client.post(
            contract_url("resolve-dispute", disputed_contract), {"resolution": "split"}, format="json"
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST


# =============================================================================
# Payouts, Accounts & Subscriptions
# =============================================================================


class TestPayoutsAndAccounts:
    def test_payee_sees_own_payouts_masked(self, payee_client, payee_account):
        payout = PayoutFactory(payee=payee_account.user)
        payout.process(payee_account.bank_snapshot())
        payout.save()
        PayoutFactory()

        response = payee_client.get(reverse("payments:payout-list"))

        results = response.json()["results"]
        assert [p["id"] for p in results] == [str(payout.id)]
        assert results[0]["account_number"] == "*" * 10 + payee_account.account_number[-4:]

    def test_accounts_are_masked(self, payee_client, payee_account):
        response = payee_client.get(reverse("payments:escrow-account-list"))

        account = response.json()["results"][0]
        assert account["account_number"].endswith(payee_account.account_number[-4:])
        assert account["account_number"].startswith("****")


class TestSubscriptionEndpoints:
    @pytest.fixture
    def subscription(self, payer):
        subscription = SubscriptionFactory(user=payer)
        BillingCredentialFactory(user=payer)
        return subscription

    def test_list(self, payer_client, subscription):
        SubscriptionFactory()

        response = payer_client.get(reverse("payments:subscription-list"))

        assert [s["id"] for s in response.json()["results"]] == [str(subscription.id)]

    def test_renew(self, payer_client, subscription, fake_gateway):
        response = payer_client.post(reverse("payments:subscription-renew", kwargs={"pk": subscription.pk}))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == SubscriptionStatus.ACTIVE

    def test_renew_other_users_subscription(self, payee_client, subscription, fake_gateway):
        response = payee_client.post(reverse("payments:subscription-renew", kwargs={"pk": subscription.pk}))

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_cancel(self, payer_client, subscription):
        url = reverse("payments:subscription-cancel", kwargs={"pk": subscription.pk})

        assert payer_client.post(url).json()["status"] == SubscriptionStatus.CANCELED
        assert payer_client.post(url).status_code == status.HTTP_409_CONFLICT


# =============================================================================
# Settlement (staff)
# =============================================================================


class TestSettlementEndpoints:
    def test_staff_only(self, payee_client):
        response = payee_client.get(reverse("payments:settlement-scheduler-status"))

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_status(self, staff_client):
        response = staff_client.get(reverse("payments:settlement-scheduler-status"))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["enabled"] is False
        assert response.json()["is_running"] is False

    def test_run_disabled(self, staff_client):
        response = staff_client.post(reverse("payments:settlement-run"))

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["errors"] == ["Settlement is disabled"]

    def test_run(self, staff_client, settlement_enabled, fake_gateway):
        response = staff_client.post(reverse("payments:settlement-run"))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is True

    def test_run_while_running(self, staff_client, settlement_enabled):
        ScheduledJobState.objects.create(
            job_name="settlement",
            is_running=True,
            lease_expires_at=timezone.now() + timedelta(minutes=10),
        )

        response = staff_client.post(reverse("payments:settlement-run"))

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["errors"] == ["Already running"]

    def test_stats(self, staff_client):
        PayoutFactory()

        response = staff_client.get(reverse("payments:settlement-stats"))

        assert response.json()["total_payouts"] == 1
        assert response.json()["payouts_by_status"]["pending"] == 1

    @pytest.mark.parametrize("limit,expected", [("2", 2), ("abc", 3), ("0", 1)])
    def test_recent_payouts_limit(self, staff_client, limit, expected):
        PayoutFactory.create_batch(3)

        response = staff_client.get(reverse("payments:settlement-payouts"), {"limit": limit})

        assert len(response.json()) == expected

    def test_retry_payout(self, staff_client, payee_account, fake_gateway):
        payout = PayoutFactory(payee=payee_account.user)
        payout.process(payee_account.bank_snapshot())
        payout.fail(reason="Bank offline")
        payout.save()
        payout = Payout.objects.get(pk=payout.pk)
        EscrowAccount.objects.filter(pk=payee_account.pk).update(pending_balance=26400)

        response = staff_client.post(
            reverse("payments:settlement-retry-payout", kwargs={"payout_id": payout.id}),
            {"expected_version": payout.version},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == PayoutStatus.COMPLETED

    def test_retry_with_stale_version(self, staff_client, payee_account):
        payout = PayoutFactory(payee=payee_account.user)
        payout.process(payee_account.bank_snapshot())
        payout.fail(reason="Bank offline")
        payout.save()

        response = staff_client.post(
            reverse("payments:settlement-retry-payout", kwargs={"payout_id": payout.id}),
            {"expected_version": payout.version + 1},
            format="json",
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["error_code"] == "STALE_RECORD"

    def test_retry_unknown_payout(self, staff_client):
        response = staff_client.post(
            reverse("payments:settlement-retry-payout", kwargs={"payout_id": uuid.uuid4()}),
            {},
            format="json",
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_resume_held_payout(self, staff_client, payee_account, fake_gateway):
        payout = PayoutFactory(payee=payee_account.user)
        payout.hold(reason="Bank details missing")
        payout.save()
        EscrowAccount.objects.filter(pk=payee_account.pk).update(pending_balance=26400)

        response = staff_client.post(
            reverse("payments:settlement-resume-payout", kwargs={"payout_id": payout.id}),
            {},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == PayoutStatus.COMPLETED
        assert EscrowAccount.objects.get(pk=payee_account.pk).pending_balance == 0

    def test_resume_pending_payout_conflicts(self, staff_client, payee_account):
        payout = PayoutFactory(payee=payee_account.user)

        response = staff_client.post(
            reverse("payments:settlement-resume-payout", kwargs={"payout_id": payout.id}),
            {},
            format="json",
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["error_code"] == "INVALID_STATE"

    def test_resume_is_staff_only(self, payee_client, payee_account):
        payout = PayoutFactory(payee=payee_account.user)

        response = payee_client.post(
            reverse("payments:settlement-resume-payout", kwargs={"payout_id": payout.id}),
            {},
            format="json",
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
