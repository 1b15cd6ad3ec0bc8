"""
Status enums for escrow, settlement and billing models.

Django TextChoices used for database storage, admin integration and as
django-fsm states.

State Machines Overview:

Contract:
    pending -> confirmed -> in_progress -> completed
    pending/confirmed/in_progress -> cancelled
    pending/confirmed/in_progress -> disputed -> completed/cancelled (operator)

EscrowTransaction (canonical sequence):
    funded -> completed -> released
    funded/completed -> frozen (dispute) -> released (releaseEscrow)
    funded/completed/frozen -> refunded

Payout:
    pending -> processing -> completed
    pending/processing -> on_hold
    processing -> failed -> pending (retry)
    pending -> cancelled (attach rollback)

Subscription:
    active -> suspended (retries exhausted)
    active/suspended -> canceled
    suspended -> active (manual renewal)
"""

from django.db import models


class ContractStatus(models.TextChoices):
    """
    States for the Contract lifecycle.

    Terminal states: COMPLETED, CANCELLED
    DISPUTED only leaves through an operator decision.
    """

    PENDING = "pending", "Pending"
    CONFIRMED = "confirmed", "Confirmed"
    IN_PROGRESS = "in_progress", "In Progress"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"
    DISPUTED = "disputed", "Disputed"


class CancellationPolicy(models.TextChoices):
    FLEXIBLE = "flexible", "Flexible"
    MODERATE = "moderate", "Moderate"
    STRICT = "strict", "Strict"


class StageStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PAID = "paid", "Paid"
    CANCELED = "canceled", "Canceled"


class MilestoneType(models.TextChoices):
    """
    Payment milestones of a contract, in payment order.
    """

    DEPOSIT = "deposit", "Deposit"
    MIDDLE = "middle", "Middle Payment"
    FINAL = "final", "Final Payment"


class EscrowTransactionStatus(models.TextChoices):
    """
    States for one funds-in event held in escrow.

    Only RELEASED transactions are picked up by the settlement batch.
    """

    PENDING = "pending", "Pending"
    FUNDED = "funded", "Funded"
    COMPLETED = "completed", "Completed"
    RELEASED = "released", "Released"
    REFUNDED = "refunded", "Refunded"
    FROZEN = "frozen", "Frozen"


class AccountRole(models.TextChoices):
    PAYER = "payer", "Payer"
    PAYEE = "payee", "Payee"


class AccountStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    SUSPENDED = "suspended", "Suspended"
    CLOSED = "closed", "Closed"


class KycStatus(models.TextChoices):
    """
    Identity and bank verification status of an escrow account.

    Only VERIFIED accounts are eligible for settlement payouts.
    """

    NONE = "none", "Not Submitted"
    PENDING = "pending", "Pending Review"
    VERIFIED = "verified", "Verified"
    REJECTED = "rejected", "Rejected"


class PayoutStatus(models.TextChoices):
    """
    States for the Payout lifecycle.

    Terminal states: COMPLETED, CANCELLED
    FAILED can be retried; ON_HOLD waits for bank details.
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    ON_HOLD = "on_hold", "On Hold"
    CANCELLED = "cancelled", "Cancelled"


class SubscriptionStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    SUSPENDED = "suspended", "Suspended"
    CANCELED = "canceled", "Canceled"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for WebhookEvent.

    State Flow:
        PENDING -> PROCESSING -> PROCESSED
        PENDING -> PROCESSING -> FAILED (can be redelivered)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"


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
