"""
Escrow, settlement and billing models.

This module contains all payments models:
- Contract / ContractStage: Agreement between payer and payee and its payment schedule
- EscrowTransaction: One confirmed funds-in event held in escrow
- EscrowAccount: Per-user, per-role balance buckets and bank details
- Payout: Aggregated settlement bank transfer to a payee
- BillingPlan / BillingCredential / Subscription: Recurring billing
- ScheduledJobState: Run lease and history for scheduled jobs
- WebhookEvent: Gateway webhook tracking for idempotent processing
"""

from payments.models.contract import Contract, ContractStage
from payments.models.escrow import EscrowAccount, EscrowTransaction
from payments.models.payout import Payout
from payments.models.scheduler import ScheduledJobState
from payments.models.subscription import BillingCredential, BillingPlan, Subscription
from payments.models.webhook_event import WebhookEvent

__all__ = [
    "BillingCredential",
    "BillingPlan",
    "Contract",
    "ContractStage",
    "EscrowAccount",
    "EscrowTransaction",
    "Payout",
    "ScheduledJobState",
    "Subscription",
    "WebhookEvent",
]
