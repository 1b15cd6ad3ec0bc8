"""
Payment adapters for external services.

All payment gateway calls go through PaymentGatewayAdapter so error
handling, timeouts and logging are consistent. Services look the adapter
up with get_gateway_adapter() so it can be swapped for a sandbox client.

Usage:
    from payments.adapters import get_gateway_adapter

    result = get_gateway_adapter().get_payment("ct_...")
    if result.is_paid:
        ...
"""

from payments.adapters.gateway_adapter import (
    PaymentGatewayAdapter,
    PaymentResult,
    RefundResult,
    TransferResult,
    WebhookVerification,
    get_gateway_adapter,
    set_gateway_adapter,
)

__all__ = [
    "PaymentGatewayAdapter",
    "PaymentResult",
    "RefundResult",
    "TransferResult",
    "WebhookVerification",
    "get_gateway_adapter",
    "set_gateway_adapter",
]
