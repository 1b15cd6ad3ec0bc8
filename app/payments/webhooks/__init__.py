"""
Webhook handling for payment gateway events.

Deliveries are verified, stored idempotently and processed synchronously so
the gateway only gets a 200 once the ledger write has committed. Failed
events are retried by the payments.tasks.retry_failed_webhooks task.

Usage:
    # In urls.py
    from payments.webhooks.views import gateway_webhook

    urlpatterns = [
        path("webhooks/gateway/", gateway_webhook, name="gateway_webhook"),
    ]
"""

from payments.webhooks.handlers import dispatch_webhook, process_event, register_handler
from payments.webhooks.views import gateway_webhook

__all__ = [
    "dispatch_webhook",
    "gateway_webhook",
    "process_event",
    "register_handler",
]
