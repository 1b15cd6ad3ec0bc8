"""
Webhook endpoint view for the payment gateway.

The view:
1. Verifies the HMAC signature
2. Creates/retrieves the WebhookEvent record (idempotent by webhook id)
3. Processes the event synchronously
4. Responds 200 only after the ledger write has committed

Response codes:
    200: Processed, already processed, or failed permanently (the gateway
         should not redeliver, e.g. amount mismatch)
    400: Bad signature or payload
    503: Temporary failure, the gateway should redeliver
    500: Unexpected error

Usage:
    # In urls.py
    from payments.webhooks.views import gateway_webhook

    urlpatterns = [
        path("webhooks/gateway/", gateway_webhook, name="gateway_webhook"),
    ]
"""

from __future__ import annotations

import json
import logging

from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from payments.adapters import get_gateway_adapter
from payments.models import WebhookEvent
from payments.webhooks.handlers import is_retryable, process_event


logger = logging.getLogger(__name__)


SIGNATURE_HEADER = "x-portone-signature"
WEBHOOK_ID_HEADER = "x-portone-webhook-id"
TIMESTAMP_HEADER = "x-portone-timestamp"


def _error(message: str, status: int, error_code: str | None = None) -> JsonResponse:
    return JsonResponse({"success": False, "error": message, "error_code": error_code}, status=status)


@csrf_exempt
@require_POST
def gateway_webhook(request: HttpRequest) -> JsonResponse:
    """
    Receive and process gateway webhook events.

    Security:
    - Signature verification rejects spoofed and replayed deliveries
    - CSRF exemption required for external webhooks
    - Only POST requests accepted

    Idempotency:
    - WebhookEvent.webhook_id is unique; processed events return 200
    - EscrowTransaction.external_payment_id is unique, so a replay that
      slips past the event table still cannot fund a stage twice
    """
    try:
        payload = request.body.decode("utf-8")
    except UnicodeDecodeError:
        return _error("Invalid payload encoding", 400)

    webhook_id = request.headers.get(WEBHOOK_ID_HEADER, "")

    verification = get_gateway_adapter().verify_webhook_signature(
        payload=payload,
        signature=request.headers.get(SIGNATURE_HEADER, ""),
        webhook_id=webhook_id,
        timestamp=request.headers.get(TIMESTAMP_HEADER, ""),
    )
    if not verification.valid:
        logger.warning(
            "Webhook signature verification failed",
            extra={"webhook_id": webhook_id, "error": verification.error},
        )
        return _error(verification.error or "Invalid signature", 400, "INVALID_SIGNATURE")

    try:
        event_data = json.loads(payload)
    except ValueError:
        return _error("Invalid JSON payload", 400)

    event_type = event_data.get("type") if isinstance(event_data, dict) else None
    if not event_type:
        return _error("Invalid event", 400)

    data = event_data.get("data") or {}
    payment_id = data.get("paymentId") or ""
    # Permissive mode may accept deliveries without a webhook id header
    webhook_id = webhook_id or f"{event_type}:{payment_id}:{event_data.get('timestamp', '')}"

    logger.info(
        f"Received gateway webhook: {event_type}",
        extra={"webhook_id": webhook_id, "event_type": event_type, "payment_id": payment_id},
    )

    webhook_event, created = WebhookEvent.objects.get_or_create(
        webhook_id=webhook_id,
        defaults={
            "event_type": event_type,
            "payment_id": payment_id,
            "payload": event_data,
        },
    )
    if not created and webhook_event.is_processed:
        logger.info("Webhook already processed", extra={"webhook_id": webhook_id})
        return JsonResponse({"success": True, "status": "already_processed"})

    try:
        result = process_event(webhook_event)
    except Exception:
        # process_event has logged and marked the event failed
        return _error("Internal error", 500, "INTERNAL_ERROR")

    if result.success:
        return JsonResponse({"success": True, "status": "processed"})
    if is_retryable(result):
        return _error(result.error, 503, result.error_code)

    # Permanent failure: acknowledge so the gateway stops redelivering
    return JsonResponse(
        {
            "success": False,
            "status": "failed",
            "error": result.error,
            "error_code": result.error_code,
        }
    )
