"""
URL configuration for the payments app.

Routes:
    /contracts/...            - Escrow contract lifecycle
    /payouts/...              - Payee payouts
    /accounts/...             - Caller's escrow accounts
    /subscriptions/...        - Subscription renew and cancel
    /settlement/...           - Staff settlement controls
    /webhooks/gateway/        - Payment gateway webhook (POST, signature-verified)

All routes are prefixed with /api/v1/payments/ when included in the main URLconf.
"""

from django.urls import path

from rest_framework.routers import DefaultRouter

from payments.views import (
    ContractViewSet,
    EscrowAccountViewSet,
    PayoutViewSet,
    SettlementViewSet,
    SubscriptionViewSet,
)
from payments.webhooks.views import gateway_webhook

router = DefaultRouter()
router.register(r"contracts", ContractViewSet, basename="contract")
router.register(r"payouts", PayoutViewSet, basename="payout")
router.register(r"accounts", EscrowAccountViewSet, basename="escrow-account")
router.register(r"subscriptions", SubscriptionViewSet, basename="subscription")
router.register(r"settlement", SettlementViewSet, basename="settlement")

app_name = "payments"
urlpatterns = router.urls + [
    path("webhooks/gateway/", gateway_webhook, name="gateway-webhook"),
]
