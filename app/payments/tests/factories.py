"""
Factory Boy factories for payment test data.

This module provides factories for creating test instances of payment models.
Factories generate realistic test data while allowing easy customization.

Usage:
    from payments.tests.factories import (
        ContractFactory,
        EscrowAccountFactory,
        EscrowTransactionFactory,
        PayoutFactory,
        SubscriptionFactory,
    )

    # A pending 100,000 KRW contract with deposit and final stages
    contract = ContractFactory()

    # Payee account ready for settlement
    account = EscrowAccountFactory(user=contract.payee)

    # Released funds waiting for the settlement batch
    escrow_tx = EscrowTransactionFactory(
        contract=contract,
        status=EscrowTransactionStatus.RELEASED,
    )
"""

from datetime import timedelta

import factory
from django.utils import timezone

from payments.models import (
    BillingCredential,
    BillingPlan,
    Contract,
    ContractStage,
    EscrowAccount,
    EscrowTransaction,
    Payout,
    Subscription,
    WebhookEvent,
)
from payments.money import split_fee
from payments.state_machines import (
    AccountRole,
    EscrowTransactionStatus,
    KycStatus,
    MilestoneType,
    WebhookEventStatus,
)


class UserFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating User instances for payment tests.
    """

    class Meta:
        model = "auth.User"

    username = factory.Sequence(lambda n: f"user{n}")
    email = factory.Sequence(lambda n: f"user{n}@example.com")
    first_name = factory.Faker("first_name")
    password = factory.django.Password("testpass123")
    is_active = True


class ContractFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating Contract instances.

    Default creates a PENDING 100,000 KRW contract with the 12% fee split
    and a 30/70 deposit and final stage.

    Example:
        # Default pending contract
        contract = ContractFactory()

        # No stages (build them yourself)
        contract = ContractFactory(stages=False)

    Note: status is managed by FSM; use the conftest fixtures or the
    service to reach later states.
    """

    class Meta:
        model = Contract
        skip_postgeneration_save = True

    payer = factory.SubFactory(UserFactory)
    payee = factory.SubFactory(UserFactory)
    title = factory.Sequence(lambda n: f"City walking tour #{n}")
    total_amount = 100000
    currency = "KRW"
    platform_fee_bps = 1200
    platform_fee_amount = factory.LazyAttribute(
        lambda o: split_fee(o.total_amount, o.platform_fee_bps)[0]
    )
    payee_payout_amount = factory.LazyAttribute(
        lambda o: split_fee(o.total_amount, o.platform_fee_bps)[1]
    )

    @factory.post_generation
    def stages(self, create, extracted, **kwargs):
        """Create deposit (30%) and final stages unless stages=False is passed."""
        if not create or extracted is False:
            return
        deposit = self.total_amount * 30 // 100
        ContractStageFactory(
            contract=self,
            name=MilestoneType.DEPOSIT,
            order_index=1,
            amount=deposit,
        )
        ContractStageFactory(
            contract=self,
            name=MilestoneType.FINAL,
            order_index=2,
            amount=self.total_amount - deposit,
        )


class ContractStageFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ContractStage

    contract = factory.SubFactory(ContractFactory, stages=False)
    name = MilestoneType.DEPOSIT
    order_index = 1
    amount = 30000
    currency = "KRW"


class EscrowTransactionFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating EscrowTransaction instances.

    Default creates a FUNDED transaction for a fresh stage of the contract.

    Example:
        # Released and waiting for settlement
        escrow_tx = EscrowTransactionFactory(
            contract=contract,
            status=EscrowTransactionStatus.RELEASED,
            platform_fee=3600,
        )
    """

    class Meta:
        model = EscrowTransaction

    contract = factory.SubFactory(ContractFactory, stages=False)
    stage = factory.LazyAttribute(
        lambda o: ContractStageFactory(
            contract=o.contract,
            order_index=o.contract.stages.count() + 1,
            amount=o.amount,
        )
    )
    milestone_type = MilestoneType.DEPOSIT
    amount = 30000
    currency = "KRW"
    status = EscrowTransactionStatus.FUNDED
    external_payment_id = factory.Sequence(lambda n: f"pay_test_{n:06d}")
    funded_at = factory.LazyFunction(timezone.now)
    released_at = factory.LazyAttribute(
        lambda o: timezone.now() if o.status == EscrowTransactionStatus.RELEASED else None
    )


class EscrowAccountFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating EscrowAccount instances.

    Default creates a KYC-verified payee account with bank details.
    """

    class Meta:
        model = EscrowAccount

    user = factory.SubFactory(UserFactory)
    role = AccountRole.PAYEE
    currency = "KRW"
    kyc_status = KycStatus.VERIFIED
    bank_code = "004"
    account_number = factory.Sequence(lambda n: f"1002{n:010d}")
    account_holder_name = factory.Faker("name")


class PayoutFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating Payout instances.

    Default creates a PENDING payout of 26,400 net (30,000 gross, 12% fee).
    """

    class Meta:
        model = Payout

    payee = factory.SubFactory(UserFactory)
    gross_amount = 30000
    total_fees = 3600
    net_amount = factory.LazyAttribute(lambda o: o.gross_amount - o.total_fees)
    currency = "KRW"
    transaction_count = 1
    metadata = factory.LazyFunction(dict)


class BillingPlanFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = BillingPlan
        django_get_or_create = ("code",)

    code = factory.Sequence(lambda n: f"plan-{n}")
    name = factory.Sequence(lambda n: f"Guide Pro {n}")
    price_amount = 9900
    currency = "KRW"
    billing_interval_days = 30


class BillingCredentialFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = BillingCredential

    user = factory.SubFactory(UserFactory)
    credential_ref = factory.Sequence(lambda n: f"billing-key-{n:06d}")
    is_default = True
    card_brand = "VISA"
    card_last4 = "4242"


class SubscriptionFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating Subscription instances.

    Default creates an ACTIVE subscription whose period ends in one day,
    so it is due for renewal today.
    """

    class Meta:
        model = Subscription

    user = factory.SubFactory(UserFactory)
    plan = factory.SubFactory(BillingPlanFactory)
    current_period_start = factory.LazyFunction(lambda: timezone.now() - timedelta(days=29))
    current_period_end = factory.LazyAttribute(
        lambda o: o.current_period_start + timedelta(days=30)
    )
    renews_at = factory.LazyFunction(timezone.now)


class WebhookEventFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating WebhookEvent instances.

    Default creates a PENDING Transaction.Paid event.
    """

    class Meta:
        model = WebhookEvent

    webhook_id = factory.Sequence(lambda n: f"whk_test_{n:06d}")
    event_type = "Transaction.Paid"
    payment_id = factory.Sequence(lambda n: f"pay_test_{n:06d}")
    payload = factory.LazyAttribute(
        lambda o: {"type": o.event_type, "data": {"paymentId": o.payment_id}}
    )
    status = WebhookEventStatus.PENDING
