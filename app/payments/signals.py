"""
Django signals for the payments app.

This module defines:
- subscription_notification: emitted by the subscription renewal service
  for renewed, failed, suspended and expiring subscriptions
- log_subscription_notification: default receiver that records every
  notification in the payments log

Notification delivery channels (email, push) connect their own receivers
to subscription_notification; the renewal service does not depend on them.

Related files:
    - services/subscription_service.py: Sends the signal
    - apps.py: Signal registration

Usage:
    from payments.signals import subscription_notification

    @receiver(subscription_notification)
    def send_push(sender, subscription, notification_type, context, **kwargs):
        ...
"""

from __future__ import annotations

import logging

from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)

# Notification types
SUBSCRIPTION_RENEWED = "subscription_renewed"
PAYMENT_FAILED = "payment_failed"
SUBSCRIPTION_SUSPENDED = "subscription_suspended"
SUBSCRIPTION_EXPIRING = "subscription_expiring"

# Sent with: subscription, notification_type, context (dict)
subscription_notification = Signal()


@receiver(subscription_notification)
def log_subscription_notification(sender, subscription, notification_type, context, **kwargs):
    """
    Record a subscription notification in the payments log.

    Args:
        sender: Service class that emitted the notification
        subscription: Subscription instance
        notification_type: One of the notification type constants
        context: Message context (amounts, retry counts, days left)
    """
    logger.info(
        f"Subscription notification: {notification_type}",
        extra={
            "subscription_id": str(subscription.id),
            "user_id": subscription.user_id,
            "notification_type": notification_type,
            **context,
        },
    )
