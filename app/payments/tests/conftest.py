"""
Pytest fixtures for payment tests.

This module provides fixtures for creating payment-related test data.
Fixtures are designed to provide objects in various states for testing
state transitions and business logic.

Every test runs with:
- a mocked Redis connection behind DistributedLock (locks always free)
- gateway credentials configured and real transfers disabled

Usage:
    def test_complete_contract(in_progress_contract, fake_gateway):
        result = EscrowService.confirm_service_complete(
            in_progress_contract.id, in_progress_contract.payer
        )
        assert result.success
"""

from unittest.mock import MagicMock, patch

import pytest
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken

from payments.adapters import (
    PaymentResult,
    RefundResult,
    TransferResult,
    WebhookVerification,
    set_gateway_adapter,
)
from payments.models import Contract
from payments.services import EscrowService
from payments.state_machines import EscrowTransactionStatus
from payments.tests.factories import (
    ContractFactory,
    EscrowAccountFactory,
    UserFactory,
)


# =============================================================================
# Environment
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis():
    """Redis connection behind DistributedLock; every lock is free."""
    with patch("payments.locks.get_redis_connection") as mock_get_conn:
        redis_instance = MagicMock()
        redis_instance.set.return_value = True
        redis_instance.eval.return_value = 1
        mock_get_conn.return_value = redis_instance
        yield redis_instance


@pytest.fixture(autouse=True)
def payment_settings(settings):
    """Gateway configured, settlement off, mock transfers."""
    settings.PAYMENT_GATEWAY_API_URL = "https://gateway.test"
    settings.PAYMENT_GATEWAY_API_SECRET = "test-api-secret"
    settings.PAYMENT_GATEWAY_STORE_ID = "store-test"
    settings.PAYMENT_GATEWAY_WEBHOOK_SECRET = "whsec_test"
    settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS = 5
    settings.PAYMENT_WEBHOOK_STRICT = True
    settings.PLATFORM_FEE_BPS = 1200
    settings.ESCROW_DEFAULT_DEPOSIT_PERCENT = 30
    settings.ESCROW_DEFAULT_CURRENCY = "KRW"
    settings.SETTLEMENT_ENABLED = False
    settings.TRANSFER_ENABLED = False
    settings.SETTLEMENT_MIN_PAYOUT_AMOUNT = 10000
    settings.SETTLEMENT_TIMEZONE = "Asia/Seoul"
    settings.SETTLEMENT_RUN_HOUR = 2
    settings.SETTLEMENT_RUN_MINUTE = 0
    settings.SETTLEMENT_TRIGGER_WINDOW_MINUTES = 5
    settings.SETTLEMENT_MIN_INTERVAL_MINUTES = 60
    settings.SETTLEMENT_LEASE_SECONDS = 1800
    settings.SUBSCRIPTION_MAX_RETRY_COUNT = 3
    settings.SUBSCRIPTION_RETRY_INTERVALS_DAYS = [1, 2, 3]
    settings.SUBSCRIPTION_REMINDER_DAYS = [7, 3, 1]
    return settings


@pytest.fixture
def settlement_enabled(payment_settings):
    payment_settings.SETTLEMENT_ENABLED = True
    return payment_settings


@pytest.fixture
def fake_gateway():
    """
    Gateway adapter double installed for the duration of the test.

    Defaults: payments are PAID, refunds and transfers succeed, webhook
    signatures are valid. Override per test, e.g.
        fake_gateway.transfer_to_bank.return_value = TransferResult(success=False, ...)
    """
    gateway = MagicMock()
    gateway.get_payment.return_value = PaymentResult(
        success=True, status="PAID", amount=30000, transaction_id="pg_tx_1"
    )
    gateway.create_payment_with_stored_credential.return_value = PaymentResult(
        success=True, status="PAID", transaction_id="pg_tx_sub"
    )
    gateway.cancel_payment.return_value = RefundResult(success=True, refund_id="cancel_1")
    gateway.transfer_to_bank.return_value = TransferResult(
        success=True, transfer_id="MOCK_TRF_1_abcdef", status="completed"
    )
    gateway.verify_webhook_signature.return_value = WebhookVerification(valid=True)
    set_gateway_adapter(gateway)
    yield gateway
    set_gateway_adapter(None)


# =============================================================================
# Users & Clients
# =============================================================================


@pytest.fixture
def payer(db):
    return UserFactory()


@pytest.fixture
def payee(db):
    return UserFactory()


@pytest.fixture
def staff_user(db):
    return UserFactory(is_staff=True)


@pytest.fixture
def payee_account(payee):
    """KYC-verified payee account with bank details."""
    return EscrowAccountFactory(user=payee)


def _client_for(user) -> APIClient:
    client = APIClient()
    token = RefreshToken.for_user(user)
    client.credentials(HTTP_AUTHORIZATION=f"Bearer {token.access_token}")
    return client


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def payer_client(payer):
    return _client_for(payer)


@pytest.fixture
def payee_client(payee):
    return _client_for(payee)


@pytest.fixture
def staff_client(staff_user):
    return _client_for(staff_user)


@pytest.fixture
def outsider_client(db):
    """Authenticated user who is party to nothing."""
    return _client_for(UserFactory())


# =============================================================================
# Contract State Fixtures
# =============================================================================


def _reload(contract: Contract) -> Contract:
    # status is FSM-protected, so refresh_from_db cannot reset it
    return Contract.objects.get(id=contract.id)


@pytest.fixture
def pending_contract(payer, payee):
    """Pending 100,000 KRW contract: deposit 30,000 and final 70,000."""
    return ContractFactory(payer=payer, payee=payee)


@pytest.fixture
def confirmed_contract(pending_contract):
    contract = pending_contract
    contract.confirm()
    contract.save()
    return _reload(contract)


def pay_stage(contract: Contract, order_index: int, payment_id: str | None = None):
    """Record a gateway-confirmed payment for one stage through the service."""
    stage = contract.stages.get(order_index=order_index)
    result = EscrowService.handle_payment_complete(
        contract_id=contract.id,
        stage_id=stage.id,
        external_payment_id=payment_id or f"pay_{contract.id.hex[:8]}_{order_index}",
        paid_amount=stage.amount,
    )
    assert result.success, result.error
    return result.data.transaction


@pytest.fixture
def in_progress_contract(confirmed_contract):
    """Deposit paid (30,000 funded in escrow)."""
    pay_stage(confirmed_contract, 1)
    return _reload(confirmed_contract)


@pytest.fixture
def fully_paid_contract(in_progress_contract):
    """Deposit and final stage paid (100,000 funded in escrow)."""
    pay_stage(in_progress_contract, 2)
    return _reload(in_progress_contract)


@pytest.fixture
def completed_contract(fully_paid_contract):
    """Service confirmed; both transactions released to the payee."""
    result = EscrowService.confirm_service_complete(
        fully_paid_contract.id, fully_paid_contract.payer
    )
    assert result.success, result.error
    return _reload(fully_paid_contract)


@pytest.fixture
def disputed_contract(fully_paid_contract):
    """Disputed with both transactions frozen."""
    result = EscrowService.raise_dispute(
        fully_paid_contract.id, fully_paid_contract.payer, "Guide did not show up"
    )
    assert result.success, result.error
    contract = _reload(fully_paid_contract)
    assert contract.transactions.filter(status=EscrowTransactionStatus.FROZEN).count() == 2
    return contract
