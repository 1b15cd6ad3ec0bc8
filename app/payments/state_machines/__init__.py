"""
State machine enums for escrow, settlement and billing models.

This module re-exports the status enums used with django-fsm.
"""

from payments.state_machines.states import (
    AccountRole,
    AccountStatus,
    CancellationPolicy,
    ContractStatus,
    EscrowTransactionStatus,
    KycStatus,
    MilestoneType,
    PayoutStatus,
    StageStatus,
    SubscriptionStatus,
    WebhookEventStatus,
)

__all__ = [
    "AccountRole",
    "AccountStatus",
    "CancellationPolicy",
    "ContractStatus",
    "EscrowTransactionStatus",
    "KycStatus",
    "MilestoneType",
    "PayoutStatus",
    "StageStatus",
    "SubscriptionStatus",
    "WebhookEventStatus",
]
