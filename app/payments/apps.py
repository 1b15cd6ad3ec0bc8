"""
Payments app configuration.

This app provides the escrow and settlement engine:
- Escrow contracts, staged payments and balance bookkeeping
- Daily settlement batch and its scheduler
- Subscription renewal with retry and suspension
- Payment gateway adapter and webhook handling
"""

from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    """Configuration for the payments application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"
    verbose_name = "Payments"

    def ready(self):
        # Connect signal receivers
        from payments import signals  # noqa: F401
