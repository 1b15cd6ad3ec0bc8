"""
Payment services for escrow, settlement and subscription billing.

This module provides:
- EscrowService: Contract lifecycle, staged payments, disputes, refunds
- SettlementService: Daily settlement batch and payout processing
- SubscriptionRenewalService: Recurring renewals with retry and suspension

Usage:
    from payments.services import EscrowService

    result = EscrowService.create_contract(
        payer=traveler,
        payee=guide,
        total_amount=100000,
        title="Seoul night tour",
    )

    # Settlement (normally run by the scheduler)
    from payments.services import SettlementService

    summary = SettlementService.run_settlement_batch()

    # Renewals (normally run by Celery beat)
    from payments.services import SubscriptionRenewalService

    stats = SubscriptionRenewalService.run_renewals()
"""

from payments.services.escrow_service import (
    ContractPaymentSummary,
    EscrowService,
    PaymentCompletion,
    RefundOutcome,
    StagePaymentIntent,
    build_payment_reference,
    parse_payment_reference,
)
from payments.services.settlement_service import (
    GroupedTransactions,
    PayeeGroup,
    SettlementService,
    SettlementSummary,
)
from payments.services.subscription_service import (
    RenewalStats,
    SubscriptionRenewalService,
)

__all__ = [
    "ContractPaymentSummary",
    "EscrowService",
    "GroupedTransactions",
    "PayeeGroup",
    "PaymentCompletion",
    "RefundOutcome",
    "RenewalStats",
    "SettlementService",
    "SettlementSummary",
    "StagePaymentIntent",
    "SubscriptionRenewalService",
    "build_payment_reference",
    "parse_payment_reference",
]
