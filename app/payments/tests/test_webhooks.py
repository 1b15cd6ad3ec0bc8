"""
Tests for the gateway webhook endpoint and event handlers.

Signature tests go through the real adapter with HTTP patched; the rest
use the fake_gateway fixture, which accepts every signature.
"""

import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock, patch

import pytest
from django.urls import reverse

from core.services import ServiceResult
from payments.adapters import PaymentResult
from payments.models import EscrowTransaction, WebhookEvent
from payments.services import EscrowService
from payments.state_machines import ContractStatus, WebhookEventStatus
from payments.tests.factories import WebhookEventFactory
from payments.webhooks import dispatch_webhook, process_event
from payments.webhooks.handlers import is_retryable

pytestmark = pytest.mark.django_db


def webhook_url():
    return reverse("payments:gateway-webhook")


def payment_reference(contract, order_index=1):
    stage = contract.stages.get(order_index=order_index)
    return EscrowService.initiate_stage_payment(contract.id, stage.id, contract.payer).data.payment_id


def paid_event(payment_id, event_type="Transaction.Paid"):
    return json.dumps({"type": event_type, "timestamp": "2024-05-01T10:00:00Z", "data": {"paymentId": payment_id}})


def deliver(client, body, webhook_id="whk_1", secret="whsec_test", signature=None):
    timestamp = str(int(time.time()))
    if signature is None:
        signature = hmac.new(
            secret.encode(), f"{webhook_id}.{timestamp}.{body}".encode(), hashlib.sha256
        ).hexdigest()
    return client.post(
        webhook_url(),
        data=body,
        content_type="application/json",
        headers={
            "x-portone-signature": signature,
            "x-portone-webhook-id": webhook_id,
            "x-portone-timestamp": timestamp,
        },
    )


class TestSignedDelivery:
    """End to end through the real adapter; only the gateway HTTP call is patched."""

    def gateway_payment(self, amount=30000):
        response = MagicMock(status_code=200)
        response.json.return_value = {"status": "PAID", "transactionId": "pg_1", "amount": {"total": amount}}
        return response

    def test_paid_event_funds_escrow(self, client, confirmed_contract):
        payment_id = payment_reference(confirmed_contract)

        with patch(
            "payments.adapters.gateway_adapter.requests.request",
            return_value=self.gateway_payment(),
        ) as mock_request:
            response = deliver(client, paid_event(payment_id))

        assert response.status_code == 200
        assert response.json() == {"success": True, "status": "processed"}
        assert mock_request.call_args[0][1].endswith(f"/payments/{payment_id}")
        escrow_tx = EscrowTransaction.objects.get(external_payment_id=payment_id)
        assert escrow_tx.amount == 30000
        assert escrow_tx.contract.status == ContractStatus.IN_PROGRESS
        event = WebhookEvent.objects.get(webhook_id="whk_1")
        assert event.status == WebhookEventStatus.PROCESSED
        assert event.attempts == 1

    def test_bad_signature_is_rejected(self, client, confirmed_contract):
        payment_id = payment_reference(confirmed_contract)

        with patch("payments.adapters.gateway_adapter.requests.request") as mock_request:
            response = deliver(client, paid_event(payment_id), secret="not-the-secret")

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_SIGNATURE"
        assert not WebhookEvent.objects.exists()
        mock_request.assert_not_called()

    def test_missing_signature(self, client):
        response = deliver(client, paid_event("ct_x"), signature="")

        assert response.status_code == 400

    def test_get_is_not_allowed(self, client):
        assert client.get(webhook_url()).status_code == 405


class TestWebhookResponses:
    def test_redelivery_is_acknowledged_without_work(self, client, confirmed_contract, fake_gateway):
        body = paid_event(payment_reference(confirmed_contract))
        deliver(client, body)

        response = deliver(client, body)

        assert response.status_code == 200
        assert response.json()["status"] == "already_processed"
        assert fake_gateway.get_payment.call_count == 1
        assert EscrowTransaction.objects.count() == 1

    def test_same_payment_under_new_webhook_id_is_not_double_funded(
        self, client, confirmed_contract, fake_gateway
    ):
        body = paid_event(payment_reference(confirmed_contract))
        deliver(client, body, webhook_id="whk_1")

        response = deliver(client, body, webhook_id="whk_2")

        assert response.json()["status"] == "processed"
        assert EscrowTransaction.objects.count() == 1

    def test_invalid_json(self, client, fake_gateway):
        response = deliver(client, "{not json")

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid JSON payload"

    def test_event_without_type(self, client, fake_gateway):
        response = deliver(client, json.dumps({"data": {}}))

        assert response.status_code == 400

    def test_unhandled_event_type_is_acknowledged(self, client, fake_gateway):
        response = deliver(client, paid_event("ct_x", event_type="BillingKey.Issued"))

        assert response.status_code == 200
        assert WebhookEvent.objects.get().status == WebhookEventStatus.PROCESSED

    def test_gateway_outage_asks_for_redelivery(self, client, confirmed_contract, fake_gateway):
        fake_gateway.get_payment.return_value = PaymentResult(
            success=False, error="Service unavailable", error_code="GATEWAY_UNAVAILABLE"
        )
        body = paid_event(payment_reference(confirmed_contract))

        response = deliver(client, body)

        assert response.status_code == 503
        event = WebhookEvent.objects.get()
        assert event.status == WebhookEventStatus.FAILED
        assert event.error_message == "Service unavailable"

        fake_gateway.get_payment.return_value = PaymentResult(
            success=True, status="PAID", amount=30000, transaction_id="pg_tx_1"
        )
        retried = deliver(client, body)

        assert retried.status_code == 200
        assert WebhookEvent.objects.get().attempts == 2
        assert EscrowTransaction.objects.count() == 1

    def test_amount_mismatch_is_a_permanent_failure(self, client, confirmed_contract, fake_gateway):
        fake_gateway.get_payment.return_value = PaymentResult(success=True, status="PAID", amount=1000)

        response = deliver(client, paid_event(payment_reference(confirmed_contract)))

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        assert response.json()["error_code"] == "AMOUNT_MISMATCH"
        assert not EscrowTransaction.objects.exists()

    def test_unexpected_error_returns_500(self, client, confirmed_contract, fake_gateway):
        with patch.object(EscrowService, "handle_payment_complete", side_effect=RuntimeError("db down")):
            response = deliver(client, paid_event(payment_reference(confirmed_contract)))

        assert response.status_code == 500
        event = WebhookEvent.objects.get()
        assert event.status == WebhookEventStatus.FAILED
        assert event.error_message == "RuntimeError: db down"


class TestHandlers:
    def test_paid_handler(self, confirmed_contract, fake_gateway):
        event = WebhookEventFactory(payment_id=payment_reference(confirmed_contract))

        result = process_event(event)

        assert result.success
        assert result.data.created
        fake_gateway.get_payment.assert_called_once_with(event.payment_id)

    def test_foreign_payment_reference(self, fake_gateway):
        result = process_event(WebhookEventFactory(payment_id="order_42"))

        assert result.error_code == "VALIDATION_ERROR"
        fake_gateway.get_payment.assert_not_called()

    def test_unpaid_payment(self, confirmed_contract, fake_gateway):
        fake_gateway.get_payment.return_value = PaymentResult(success=True, status="READY", amount=30000)

        result = process_event(WebhookEventFactory(payment_id=payment_reference(confirmed_contract)))

        assert result.error_code == "INVALID_STATE"

    def test_gateway_lookup_failure_is_retryable(self, confirmed_contract, fake_gateway):
        fake_gateway.get_payment.return_value = PaymentResult(success=False, error="timeout")

        result = process_event(WebhookEventFactory(payment_id=payment_reference(confirmed_contract)))

        assert result.error_code == "GATEWAY_ERROR"
        assert is_retryable(result)

    def test_processed_event_is_skipped(self, fake_gateway):
        event = WebhookEventFactory()
        event.mark_processed()
        event.save()

        assert process_event(event).success
        fake_gateway.get_payment.assert_not_called()

    def test_unknown_event_type_dispatches_to_nothing(self):
        result = dispatch_webhook(WebhookEventFactory(event_type="Transaction.VirtualAccountIssued"))

        assert result.success
        assert result.data is None

    @pytest.mark.parametrize(
        "error_code,expected",
        [
            ("GATEWAY_UNAVAILABLE", True),
            ("LOCK_ACQUISITION_FAILED", True),
            ("AMOUNT_MISMATCH", False),
            ("VALIDATION_ERROR", False),
        ],
    )
    def test_is_retryable(self, error_code, expected):
        assert is_retryable(ServiceResult.failure("x", error_code=error_code)) is expected

    def test_success_is_not_retryable(self):
        assert not is_retryable(ServiceResult.success(None))
