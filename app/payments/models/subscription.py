"""
Subscription billing models.

BillingPlan is a priced recurring product, BillingCredential a stored
payment credential (gateway billing key) and Subscription ties a user to
a plan with its renewal and retry bookkeeping.

Usage:
    from payments.models import Subscription

    subscription.suspend(reason="Card declined")  # active -> suspended
    subscription.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin

from payments.state_machines import SubscriptionStatus


class BillingPlan(UUIDPrimaryKeyMixin, BaseModel):
    """
    A recurring product with a fixed price and billing interval.
    """

    code = models.SlugField(max_length=50, unique=True)

    name = models.CharField(max_length=100)

    price_amount = models.PositiveBigIntegerField(
        help_text="Price per billing interval in smallest currency unit",
    )

    currency = models.CharField(max_length=3, default="KRW")

    billing_interval_days = models.PositiveIntegerField(default=30)

    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["price_amount"]
        verbose_name = "Billing Plan"
        verbose_name_plural = "Billing Plans"

    def __str__(self) -> str:
        return f"{self.name} ({self.price_amount} {self.currency})"


class BillingCredential(UUIDPrimaryKeyMixin, BaseModel):
    """
    A stored payment credential issued by the gateway.

    Only the gateway reference and display data are stored; card numbers
    never touch this system.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="billing_credentials",
    )

    credential_ref = models.CharField(
        max_length=255,
        unique=True,
        help_text="Gateway billing key",
    )

    is_default = models.BooleanField(default=False)

    card_brand = models.CharField(max_length=30, blank=True, default="")

    card_last4 = models.CharField(max_length=4, blank=True, default="")

    class Meta:
        ordering = ["-is_default", "-created_at"]
        verbose_name = "Billing Credential"
        verbose_name_plural = "Billing Credentials"

    def __str__(self) -> str:
        return f"BillingCredential({self.user_id}, {self.card_brand} *{self.card_last4})"


class Subscription(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    A user's recurring subscription to a billing plan.

    State Flow:
        ACTIVE -> SUSPENDED (retries exhausted)
        SUSPENDED -> ACTIVE (manual renewal succeeded)
        ACTIVE/SUSPENDED -> CANCELED

    Fields:
        user: Subscriber
        plan: Billing plan (price and interval)
        credential: Subscription-specific credential; falls back to the
            user's default credential when null
        current_period_start/end: Paid period
        renews_at: When the next renewal charge is due
        retry_count: Consecutive failed renewal attempts
        next_retry_at: When the next retry may run (null outside a retry cycle)
        last_payment_error: Gateway error of the last failed attempt
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )

    plan = models.ForeignKey(
        BillingPlan,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )

    credential = models.ForeignKey(
        BillingCredential,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subscriptions",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=SubscriptionStatus.ACTIVE,
        choices=SubscriptionStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the subscription (managed by FSM)",
    )

    # ==========================================================================
    # Billing Period
    # ==========================================================================

    current_period_start = models.DateTimeField()

    current_period_end = models.DateTimeField()

    renews_at = models.DateTimeField(db_index=True)

    # ==========================================================================
    # Retry Tracking
    # ==========================================================================

    retry_count = models.PositiveSmallIntegerField(default=0)

    last_retry_at = models.DateTimeField(null=True, blank=True)

    next_retry_at = models.DateTimeField(null=True, blank=True, db_index=True)

    last_payment_error = models.TextField(blank=True, default="")

    # ==========================================================================
    # Payment Tracking
    # ==========================================================================

    last_payment_id = models.CharField(max_length=255, blank=True, default="")

    last_payment_at = models.DateTimeField(null=True, blank=True)

    suspended_at = models.DateTimeField(null=True, blank=True)

    canceled_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        indexes = [
            models.Index(fields=["status", "renews_at"], name="payments_su_status_4d81f6_idx"),
            models.Index(fields=["status", "next_retry_at"], name="payments_su_status_0b9ac3_idx"),
        ]

    def __str__(self) -> str:
        return f"Subscription({self.id}, {self.status}, {self.plan_id})"

    def resolve_credential(self) -> BillingCredential | None:
        """Subscription credential, else the user's default credential."""
        if self.credential_id:
            return self.credential
        return BillingCredential.objects.filter(user_id=self.user_id, is_default=True).first()

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=SubscriptionStatus.ACTIVE,
        target=SubscriptionStatus.SUSPENDED,
    )
    def suspend(self, reason: str = ""):
        """
        Transition: ACTIVE -> SUSPENDED
        """
        self.suspended_at = timezone.now()
        if reason:
            self.last_payment_error = reason
        self.next_retry_at = None

    @transition(
        field=status,
        source=SubscriptionStatus.SUSPENDED,
        target=SubscriptionStatus.ACTIVE,
    )
    def reactivate(self):
        """
        Transition: SUSPENDED -> ACTIVE
        """
        self.suspended_at = None

    @transition(
        field=status,
        source=[SubscriptionStatus.ACTIVE, SubscriptionStatus.SUSPENDED],
        target=SubscriptionStatus.CANCELED,
    )
    def cancel(self):
        """
        Transition: ACTIVE/SUSPENDED -> CANCELED
        """
        self.canceled_at = timezone.now()
        self.next_retry_at = None
