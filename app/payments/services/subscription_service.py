"""
Subscription renewal service.

Renews recurring subscriptions by charging the stored billing credential,
with bounded retries:

    charge ok      -> period extended, retry state cleared
    charge failed  -> retry_count += 1, next_retry_at from the backoff table
    retries spent  -> ACTIVE -> SUSPENDED, no further automatic attempts

Each subscription is renewed under its own distributed lock so a renewal
and a manual renewal of the same subscription never charge twice.

Usage:
    from payments.services import SubscriptionRenewalService

    stats = SubscriptionRenewalService.run_renewals()
    reminders = SubscriptionRenewalService.send_reminders()
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from django_fsm import TransitionNotAllowed

from core.services import BaseService, ServiceResult

from payments import signals
from payments.adapters import PaymentResult, get_gateway_adapter
from payments.exceptions import (
    EscrowValidationError,
    InvalidStateError,
    LockAcquisitionError,
    NotFoundOrUnauthorizedError,
)
from payments.locks import DistributedLock
from payments.models import Subscription
from payments.state_machines import SubscriptionStatus

if TYPE_CHECKING:
    from django.contrib.auth.models import User


logger = logging.getLogger(__name__)


SUBSCRIPTION_LOCK_TTL = 120

# Renewal outcomes
RENEWED = "renewed"
FAILED = "failed"
SUSPENDED = "suspended"
SKIPPED = "skipped"


@dataclass
class RenewalStats:
    processed: int = 0
    renewed: int = 0
    failed: int = 0
    suspended: int = 0
    skipped: int = 0

    def record(self, outcome: str) -> None:
        self.processed += 1
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class SubscriptionRenewalService(BaseService):
    """
    Daily renewal and reminder jobs for subscriptions.

    Selection runs two disjoint queries:
        due: renews_at has arrived, not in a retry cycle, retries left
        retry: next_retry_at has arrived, retries left
    Suspended and canceled subscriptions are never selected.
    """

    # =========================================================================
    # Selection
    # =========================================================================

    @staticmethod
    def _end_of_day(now: datetime) -> datetime:
        return now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)

    @classmethod
    def get_due_subscriptions(cls, now: datetime | None = None):
        """Active subscriptions renewing today that are not in a retry cycle."""
        now = now or timezone.now()
        return Subscription.objects.filter(
            status=SubscriptionStatus.ACTIVE,
            renews_at__lt=cls._end_of_day(now),
            next_retry_at__isnull=True,
            retry_count__lt=settings.SUBSCRIPTION_MAX_RETRY_COUNT,
        ).order_by("renews_at")

    @staticmethod
    def get_retry_subscriptions(now: datetime | None = None):
        """Active subscriptions whose next retry is due."""
        now = now or timezone.now()
        return Subscription.objects.filter(
            status=SubscriptionStatus.ACTIVE,
            next_retry_at__lte=now,
            retry_count__lt=settings.SUBSCRIPTION_MAX_RETRY_COUNT,
        ).order_by("next_retry_at")

    # =========================================================================
    # Renewal
    # =========================================================================

    @classmethod
    def run_renewals(cls, now: datetime | None = None) -> RenewalStats:
        """Renew due subscriptions, then retry failed ones."""
        start_time = time.time()
        stats = RenewalStats()

        subscription_ids = list(cls.get_due_subscriptions(now).values_list("id", flat=True))
        subscription_ids += list(cls.get_retry_subscriptions(now).values_list("id", flat=True))

        for subscription_id in subscription_ids:
            try:
                with DistributedLock(
                    f"subscription:{subscription_id}", ttl=SUBSCRIPTION_LOCK_TTL, blocking=False
                ):
                    stats.record(cls._renew(subscription_id))
            except LockAcquisitionError:
                cls.get_logger().info(
                    "Renewal already in progress",
                    extra={"subscription_id": str(subscription_id)},
                )
                stats.record(SKIPPED)

        cls.get_logger().info(
            "Subscription renewals finished",
            extra={**stats.to_dict(), "duration_ms": round((time.time() - start_time) * 1000, 2)},
        )
        return stats

    @classmethod
    def _renew(cls, subscription_id, manual: bool = False) -> str:
        """
        Charge one subscription and apply the outcome.

        Must be called while holding the subscription lock.
        """
        subscription = (
            Subscription.objects.select_related("plan", "user", "credential")
            .filter(id=subscription_id)
            .first()
        )
        if subscription is None:
            return SKIPPED

        allowed = [SubscriptionStatus.ACTIVE]
        if manual:
            allowed.append(SubscriptionStatus.SUSPENDED)
        if subscription.status not in allowed:
            return SKIPPED

        log_context = {"subscription_id": str(subscription.id), "user_id": subscription.user_id}

        credential = subscription.resolve_credential()
        if credential is None:
            cls.get_logger().warning("No billing credential, skipping renewal", extra=log_context)
            return SKIPPED

        plan = subscription.plan
        payment_id = f"sub_{subscription.id.hex}_{int(time.time() * 1000)}"
        user = subscription.user

        result = get_gateway_adapter().create_payment_with_stored_credential(
            payment_id=payment_id,
            order_name=f"{plan.name} renewal",
            amount=plan.price_amount,
            currency=plan.currency,
            credential_ref=credential.credential_ref,
            customer={
                "id": str(user.pk),
                "email": user.email,
                "name": user.get_full_name() or user.get_username(),
            },
        )

        if result.success:
            return cls._apply_success(subscription_id, payment_id, result)
        return cls._apply_failure(subscription_id, result)

    @classmethod
    def _apply_success(cls, subscription_id, payment_id: str, result: PaymentResult) -> str:
        now = timezone.now()
        with cls.atomic():
            subscription = (
                Subscription.objects.select_for_update().select_related("plan").get(id=subscription_id)
            )
            interval = timedelta(days=subscription.plan.billing_interval_days)
            subscription.current_period_start = subscription.current_period_end
            subscription.current_period_end = subscription.current_period_start + interval
            subscription.renews_at = subscription.current_period_end - timedelta(days=1)
            subscription.retry_count = 0
            subscription.next_retry_at = None
            subscription.last_retry_at = None
            subscription.last_payment_error = ""
            subscription.last_payment_id = result.transaction_id or payment_id
            subscription.last_payment_at = (parse_datetime(result.paid_at) if result.paid_at else None) or now
            if subscription.status == SubscriptionStatus.SUSPENDED:
                subscription.reactivate()
            subscription.save()

        cls.get_logger().info(
            "Subscription renewed",
            extra={
                "subscription_id": str(subscription.id),
                "payment_id": payment_id,
                "period_end": subscription.current_period_end.isoformat(),
            },
        )
        cls._notify(
            subscription,
            signals.SUBSCRIPTION_RENEWED,
            amount=subscription.plan.price_amount,
            currency=subscription.plan.currency,
            period_end=subscription.current_period_end.isoformat(),
        )
        return RENEWED

    @classmethod
    def _apply_failure(cls, subscription_id, result: PaymentResult) -> str:
        now = timezone.now()
        max_retries = settings.SUBSCRIPTION_MAX_RETRY_COUNT
        intervals = settings.SUBSCRIPTION_RETRY_INTERVALS_DAYS
        error = result.error or "Payment failed"

        with cls.atomic():
            subscription = Subscription.objects.select_for_update().get(id=subscription_id)
            if subscription.status == SubscriptionStatus.SUSPENDED:
                # Failed manual renewal of a suspended subscription
                subscription.last_payment_error = error
                subscription.last_retry_at = now
                subscription.save(update_fields=["last_payment_error", "last_retry_at", "updated_at"])
                return FAILED

            previous_count = subscription.retry_count
            subscription.retry_count = previous_count + 1
            subscription.last_retry_at = now
            subscription.last_payment_error = error

            if subscription.retry_count >= max_retries:
                subscription.suspend(reason=error)
                outcome = SUSPENDED
            else:
                days = intervals[min(previous_count, len(intervals) - 1)]
                subscription.next_retry_at = now + timedelta(days=days)
                outcome = FAILED
            subscription.save()

        log_extra = {
            "subscription_id": str(subscription.id),
            "retry_count": subscription.retry_count,
            "error": error,
            "error_code": result.error_code,
        }
        if outcome == SUSPENDED:
            cls.get_logger().warning("Subscription suspended after failed renewals", extra=log_extra)
            cls._notify(
                subscription,
                signals.SUBSCRIPTION_SUSPENDED,
                retry_count=subscription.retry_count,
                error=error,
            )
        else:
            cls.get_logger().warning("Subscription renewal failed", extra=log_extra)
            cls._notify(
                subscription,
                signals.PAYMENT_FAILED,
                retry_count=subscription.retry_count,
                max_retries=max_retries,
                next_retry_at=subscription.next_retry_at.isoformat(),
                error=error,
            )
        return outcome

    @classmethod
    def _notify(cls, subscription: Subscription, notification_type: str, **context: Any) -> None:
        signals.subscription_notification.send(
            sender=cls,
            subscription=subscription,
            notification_type=notification_type,
            context=context,
        )

    # =========================================================================
    # Reminders
    # =========================================================================

    @classmethod
    def send_reminders(cls, now: datetime | None = None) -> int:
        """
        Notify subscribers whose renewal is exactly N days away.

        N comes from SUBSCRIPTION_REMINDER_DAYS. Reminders are
        informational, so running this more than once a day only repeats
        them.
        """
        now = now or timezone.now()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        sent = 0

        for days in settings.SUBSCRIPTION_REMINDER_DAYS:
            window_start = day_start + timedelta(days=days)
            subscriptions = Subscription.objects.filter(
                status=SubscriptionStatus.ACTIVE,
                renews_at__gte=window_start,
                renews_at__lt=window_start + timedelta(days=1),
            ).select_related("plan")
            for subscription in subscriptions:
                cls._notify(
                    subscription,
                    signals.SUBSCRIPTION_EXPIRING,
                    days_left=days,
                    amount=subscription.plan.price_amount,
                    renews_at=subscription.renews_at.isoformat(),
                )
                sent += 1

        cls.get_logger().info("Subscription reminders sent", extra={"sent": sent})
        return sent

    # =========================================================================
    # User Operations
    # =========================================================================

    @staticmethod
    def _owned(subscription_id, user: User) -> Subscription | None:
        return Subscription.objects.filter(id=subscription_id, user=user).first()

    @classmethod
    def manual_renew(cls, subscription_id, user: User) -> ServiceResult[Subscription]:
        """
        Renew a subscription on demand.

        Works for active and suspended subscriptions; a successful renewal
        reactivates a suspended one.
        """
        subscription = cls._owned(subscription_id, user)
        if subscription is None:
            return ServiceResult.from_exception(
                NotFoundOrUnauthorizedError("Subscription not found or unauthorized")
            )
        if subscription.status == SubscriptionStatus.CANCELED:
            return ServiceResult.from_exception(InvalidStateError("Subscription is canceled"))
        if subscription.resolve_credential() is None:
            return ServiceResult.from_exception(
                EscrowValidationError("No billing credential on file")
            )

        try:
            with DistributedLock(
                f"subscription:{subscription.id}", ttl=SUBSCRIPTION_LOCK_TTL, blocking=False
            ):
                outcome = cls._renew(subscription.id, manual=True)
        except LockAcquisitionError as e:
            return ServiceResult.from_exception(e)

        subscription = Subscription.objects.get(id=subscription.id)
        if outcome != RENEWED:
            return ServiceResult.failure(
                subscription.last_payment_error or "Renewal failed",
                error_code="GATEWAY_ERROR",
            )
        return ServiceResult.success(subscription)

    @classmethod
    def cancel_subscription(cls, subscription_id, user: User) -> ServiceResult[Subscription]:
        with cls.atomic():
            subscription = (
                Subscription.objects.select_for_update()
                .filter(id=subscription_id, user=user)
                .first()
            )
            if subscription is None:
                return ServiceResult.from_exception(
                    NotFoundOrUnauthorizedError("Subscription not found or unauthorized")
                )
            try:
                subscription.cancel()
            except TransitionNotAllowed:
                return ServiceResult.from_exception(InvalidStateError("Subscription is already canceled"))
            subscription.save()

        cls.get_logger().info(
            "Subscription canceled",
            extra={"subscription_id": str(subscription.id), "user_id": user.pk},
        )
        return ServiceResult.success(subscription)
