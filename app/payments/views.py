"""
DRF views for the payments app.

This module provides the ViewSets for escrow contracts, payouts,
subscriptions and the operator settlement controls.

ViewSets:
    ContractViewSet: Contract lifecycle for payer and payee; refund and
        dispute resolution for staff
    PayoutViewSet: Payee's own payouts
    EscrowAccountViewSet: Caller's escrow accounts (balances, masked bank details)
    SubscriptionViewSet: User's subscriptions with renew and cancel
    SettlementViewSet: Staff-only settlement status, manual run, stats
        and payout retry or resume

Endpoints (prefixed with /api/v1/payments/):
    GET  contracts/                              - List own contracts (?role=payer|payee)
    POST contracts/                              - Create contract (caller is payer)
    GET  contracts/{id}/                         - Contract detail with payment summary
    POST contracts/{id}/confirm/                 - Payee confirms
    POST contracts/{id}/accept-terms/            - Payer accepts terms
    POST contracts/{id}/stages/{stage_id}/pay/   - Start a stage payment
    POST contracts/{id}/complete/                - Payer confirms service
    POST contracts/{id}/dispute/                 - Either party disputes
    POST contracts/{id}/cancel/                  - Either party cancels
    POST contracts/{id}/release/                 - Payer releases frozen funds
    GET  contracts/{id}/transactions/            - Escrow transactions
    POST contracts/{id}/refund/                  - Staff refund
    POST contracts/{id}/resolve-dispute/         - Staff dispute decision
    GET  payouts/                                - Own payouts
    GET  accounts/                               - Own escrow accounts
    GET  subscriptions/                          - Own subscriptions
    POST subscriptions/{id}/renew/               - Manual renewal
    POST subscriptions/{id}/cancel/              - Cancel
    GET  settlement/status/                      - Scheduler status (staff)
    POST settlement/run/                         - Manual run (staff)
    GET  settlement/stats/                       - Payout stats (staff)
    GET  settlement/payouts/                     - Recent payouts (staff)
    POST settlement/payouts/{id}/retry/          - Retry failed payout (staff)
    POST settlement/payouts/{id}/resume/         - Resume held payout (staff)

Error responses carry {"success": false, "error", "error_code"} with the
HTTP status derived from the error code.
"""

from __future__ import annotations

import logging

from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response

from drf_spectacular.utils import (
    OpenApiParameter,
    OpenApiResponse,
    extend_schema,
    extend_schema_view,
)

from core.services import ServiceResult

from payments.serializers import (
    ContractCreateSerializer,
    ContractDetailSerializer,
    ContractSerializer,
    DisputeSerializer,
    EscrowAccountSerializer,
    EscrowTransactionSerializer,
    PayoutSerializer,
    ReasonSerializer,
    RefundOutcomeSerializer,
    RefundSerializer,
    ResolveDisputeSerializer,
    RetryPayoutSerializer,
    SettlementStatsSerializer,
    SettlementStatusSerializer,
    SettlementSummarySerializer,
    StagePaymentIntentSerializer,
    SubscriptionSerializer,
)
from payments.models import EscrowAccount, EscrowTransaction, Subscription
from payments.services import EscrowService, SettlementService, SubscriptionRenewalService
from payments.workers import ALREADY_RUNNING, SettlementScheduler

logger = logging.getLogger(__name__)


ERROR_STATUS = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "NOT_FOUND_OR_UNAUTHORIZED": status.HTTP_404_NOT_FOUND,
    "INVALID_STATE": status.HTTP_409_CONFLICT,
    "AMOUNT_MISMATCH": status.HTTP_409_CONFLICT,
    "STALE_RECORD": status.HTTP_409_CONFLICT,
    "LOCK_ACQUISITION_FAILED": status.HTTP_409_CONFLICT,
    "GATEWAY_ERROR": status.HTTP_502_BAD_GATEWAY,
    "CONFIGURATION_ERROR": status.HTTP_503_SERVICE_UNAVAILABLE,
}

ERROR_RESPONSES = {
    400: OpenApiResponse(description="Validation error"),
    404: OpenApiResponse(description="Contract not found or caller is not a party"),
    409: OpenApiResponse(description="Operation not allowed in the current status"),
}


# Path ids are UUIDs; anything else 404s at the router
UUID_PATTERN = r"[0-9a-fA-F-]{32,36}"


def error_response(result: ServiceResult) -> Response:
    """Translate a failed ServiceResult into an HTTP error response."""
    return Response(
        result.to_response(),
        status=ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST),
    )


# =============================================================================
# Contracts
# =============================================================================


@extend_schema_view(
    list=extend_schema(
        operation_id="list_contracts",
        summary="List contracts",
        description="Contracts where the caller is the payer or the payee.",
        parameters=[
            OpenApiParameter(
                name="role",
                type=str,
                location=OpenApiParameter.QUERY,
                description="Only contracts where the caller has this role (payer/payee)",
                required=False,
            ),
        ],
        tags=["Escrow - Contracts"],
    ),
    retrieve=extend_schema(
        operation_id="get_contract",
        summary="Get contract",
        description="Contract detail with its payment stages and a summary of paid and remaining amounts.",
        responses={200: ContractDetailSerializer, 404: ERROR_RESPONSES[404]},
        tags=["Escrow - Contracts"],
    ),
)
class ContractViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    """
    ViewSet for the escrow contract lifecycle.

    Permissions:
    - Authenticated parties see and act on their own contracts only
    - refund and resolve-dispute are staff only
    """

    permission_classes = [IsAuthenticated]
    serializer_class = ContractSerializer
    lookup_value_regex = UUID_PATTERN

    def get_queryset(self):
        return EscrowService.get_user_contracts(
            self.request.user,
            role=self.request.query_params.get("role"),
        )

    def _contract_response(self, result: ServiceResult, success_status=status.HTTP_200_OK) -> Response:
        if not result.success:
            return error_response(result)
        return Response(ContractSerializer(result.data).data, status=success_status)

    def retrieve(self, request, pk=None):
        result = EscrowService.get_contract(pk, request.user)
        if not result.success:
            return error_response(result)
        summary = EscrowService.build_payment_summary(result.data)
        serializer = ContractDetailSerializer(result.data, context={"payment_summary": summary})
        return Response(serializer.data)

    @extend_schema(
        operation_id="create_contract",
        summary="Create contract",
        description=(
            "Create a pending contract with the caller as payer. The platform "
            "fee is fixed at creation; stages are deposit (and optional middle) "
            "plus a final stage taking the remainder."
        ),
        request=ContractCreateSerializer,
        responses={201: ContractSerializer, 400: ERROR_RESPONSES[400]},
        tags=["Escrow - Contracts"],
    )
    def create(self, request):
        serializer = ContractCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = EscrowService.create_contract(payer=request.user, **serializer.validated_data)
        return self._contract_response(result, success_status=status.HTTP_201_CREATED)

    @extend_schema(
        operation_id="confirm_contract",
        summary="Confirm contract",
        description="The payee accepts a pending contract.",
        request=None,
        responses={200: ContractSerializer, **ERROR_RESPONSES},
        tags=["Escrow - Contracts"],
    )
    @action(detail=True, methods=["post"])
    def confirm(self, request, pk=None):
        return self._contract_response(EscrowService.confirm_contract(pk, request.user))

    @extend_schema(
        operation_id="accept_contract_terms",
        summary="Accept contract terms",
        description="The payer acknowledges the contract terms. Status does not change.",
        request=None,
        responses={200: ContractSerializer, **ERROR_RESPONSES},
        tags=["Escrow - Contracts"],
    )
    @action(detail=True, methods=["post"], url_path="accept-terms")
    def accept_terms(self, request, pk=None):
        return self._contract_response(EscrowService.accept_terms(pk, request.user))

    @extend_schema(
        operation_id="initiate_stage_payment",
        summary="Start stage payment",
        description=(
            "Return the payment reference, amount and order name for the "
            "gateway checkout. Nothing is recorded until the gateway confirms "
            "the payment by webhook."
        ),
        request=None,
        responses={200: StagePaymentIntentSerializer, **ERROR_RESPONSES},
        tags=["Escrow - Payments"],
    )
    @action(detail=True, methods=["post"], url_path=rf"stages/(?P<stage_id>{UUID_PATTERN})/pay")
    def pay(self, request, pk=None, stage_id=None):
        result = EscrowService.initiate_stage_payment(pk, stage_id, request.user)
        if not result.success:
            return error_response(result)
        return Response(StagePaymentIntentSerializer(result.data).data)

    @extend_schema(
        operation_id="complete_contract",
        summary="Confirm service completed",
        description="The payer confirms delivery; escrowed funds are released to the payee.",
        request=None,
        responses={200: ContractSerializer, **ERROR_RESPONSES},
        tags=["Escrow - Contracts"],
    )
    @action(detail=True, methods=["post"])
    def complete(self, request, pk=None):
        return self._contract_response(EscrowService.confirm_service_complete(pk, request.user))

    @extend_schema(
        operation_id="dispute_contract",
        summary="Raise dispute",
        description="Either party disputes the contract; held funds are frozen.",
        request=DisputeSerializer,
        responses={200: ContractSerializer, **ERROR_RESPONSES},
        tags=["Escrow - Disputes"],
    )
    @action(detail=True, methods=["post"])
    def dispute(self, request, pk=None):
        serializer = DisputeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = EscrowService.raise_dispute(pk, request.user, serializer.validated_data["reason"])
        return self._contract_response(result)

    @extend_schema(
        operation_id="cancel_contract",
        summary="Cancel contract",
        description="Either party cancels; pending stages are cancelled.",
        request=ReasonSerializer,
        responses={200: ContractSerializer, **ERROR_RESPONSES},
        tags=["Escrow - Contracts"],
    )
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = EscrowService.cancel_contract(pk, request.user, serializer.validated_data["reason"])
        return self._contract_response(result)

    @extend_schema(
        operation_id="release_escrow",
        summary="Release frozen funds",
        description="The payer releases frozen funds of a completed contract into a payout.",
        request=None,
        responses={201: PayoutSerializer, **ERROR_RESPONSES},
        tags=["Escrow - Disputes"],
    )
    @action(detail=True, methods=["post"])
    def release(self, request, pk=None):
        result = EscrowService.release_escrow(pk, request.user)
        if not result.success:
            return error_response(result)
        return Response(PayoutSerializer(result.data).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        operation_id="list_contract_transactions",
        summary="List escrow transactions",
        responses={200: EscrowTransactionSerializer(many=True), 404: ERROR_RESPONSES[404]},
        tags=["Escrow - Payments"],
    )
    @action(detail=True, methods=["get"])
    def transactions(self, request, pk=None):
        result = EscrowService.get_contract(pk, request.user)
        if not result.success:
            return error_response(result)
        queryset = EscrowTransaction.objects.filter(contract=result.data)
        return Response(EscrowTransactionSerializer(queryset, many=True).data)

    @extend_schema(
        operation_id="refund_contract",
        summary="Refund contract (staff)",
        description="Refund up to the given amount from held funds, oldest first.",
        request=RefundSerializer,
        responses={
            200: RefundOutcomeSerializer,
            502: OpenApiResponse(description="Every gateway refund failed"),
            **ERROR_RESPONSES,
        },
        tags=["Escrow - Operations"],
    )
    @action(detail=True, methods=["post"], permission_classes=[IsAdminUser])
    def refund(self, request, pk=None):
        serializer = RefundSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = EscrowService.process_refund(pk, **serializer.validated_data)
        if not result.success:
            return error_response(result)
        logger.info(
            "Operator refund",
            extra={"contract_id": str(pk), "operator_id": request.user.pk},
        )
        return Response(RefundOutcomeSerializer(result.data).data)

    @extend_schema(
        operation_id="resolve_contract_dispute",
        summary="Resolve dispute (staff)",
        description="Move a disputed contract to completed or cancelled.",
        request=ResolveDisputeSerializer,
        responses={200: ContractSerializer, **ERROR_RESPONSES},
        tags=["Escrow - Operations"],
    )
    @action(detail=True, methods=["post"], url_path="resolve-dispute", permission_classes=[IsAdminUser])
    def resolve_dispute(self, request, pk=None):
        serializer = ResolveDisputeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        return self._contract_response(EscrowService.resolve_dispute(pk, **serializer.validated_data))


# =============================================================================
# Payouts & Subscriptions
# =============================================================================


@extend_schema_view(
    list=extend_schema(operation_id="list_payouts", summary="List my payouts", tags=["Settlement"]),
    retrieve=extend_schema(operation_id="get_payout", summary="Get payout", tags=["Settlement"]),
)
class PayoutViewSet(viewsets.ReadOnlyModelViewSet):
    permission_classes = [IsAuthenticated]
    serializer_class = PayoutSerializer

    def get_queryset(self):
        return EscrowService.get_payee_payouts(self.request.user)


@extend_schema_view(
    list=extend_schema(operation_id="list_escrow_accounts", summary="List my escrow accounts", tags=["Settlement"]),
    retrieve=extend_schema(operation_id="get_escrow_account", summary="Get escrow account", tags=["Settlement"]),
)
class EscrowAccountViewSet(viewsets.ReadOnlyModelViewSet):
    permission_classes = [IsAuthenticated]
    serializer_class = EscrowAccountSerializer

    def get_queryset(self):
        return EscrowAccount.objects.filter(user=self.request.user)


@extend_schema_view(
    list=extend_schema(operation_id="list_subscriptions", summary="List my subscriptions", tags=["Subscriptions"]),
    retrieve=extend_schema(operation_id="get_subscription", summary="Get subscription", tags=["Subscriptions"]),
)
class SubscriptionViewSet(viewsets.ReadOnlyModelViewSet):
    """
    ViewSet for the caller's subscriptions.

    Provides:
    - renew: POST /{id}/renew/ - Charge now (also reactivates a suspended one)
    - cancel: POST /{id}/cancel/ - Cancel
    """

    permission_classes = [IsAuthenticated]
    serializer_class = SubscriptionSerializer
    lookup_value_regex = UUID_PATTERN

    def get_queryset(self):
        return Subscription.objects.filter(user=self.request.user).select_related("plan")

    def _subscription_response(self, result: ServiceResult) -> Response:
        if not result.success:
            return error_response(result)
        return Response(SubscriptionSerializer(result.data).data)

    @extend_schema(
        operation_id="renew_subscription",
        summary="Renew subscription now",
        request=None,
        responses={200: SubscriptionSerializer, 502: OpenApiResponse(description="Payment failed")},
        tags=["Subscriptions"],
    )
    @action(detail=True, methods=["post"])
    def renew(self, request, pk=None):
        return self._subscription_response(SubscriptionRenewalService.manual_renew(pk, request.user))

    @extend_schema(
        operation_id="cancel_subscription",
        summary="Cancel subscription",
        request=None,
        responses={200: SubscriptionSerializer, 409: ERROR_RESPONSES[409]},
        tags=["Subscriptions"],
    )
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        return self._subscription_response(
            SubscriptionRenewalService.cancel_subscription(pk, request.user)
        )


# =============================================================================
# Settlement (staff)
# =============================================================================


class SettlementViewSet(viewsets.ViewSet):
    """
    Operator controls for the settlement batch.

    Permissions:
    - Staff only
    """

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="get_settlement_status",
        summary="Settlement scheduler status",
        responses={200: SettlementStatusSerializer},
        tags=["Settlement - Operations"],
    )
    @action(detail=False, methods=["get"], url_path="status")
    def scheduler_status(self, request):
        return Response(SettlementStatusSerializer(SettlementScheduler().status()).data)

    @extend_schema(
        operation_id="run_settlement",
        summary="Run settlement now",
        description=(
            "Run the settlement batch immediately, ignoring the daily window. "
            "Returns 409 while another run holds the lease and 503 when "
            "settlement is disabled."
        ),
        request=None,
        responses={
            200: SettlementSummarySerializer,
            409: SettlementSummarySerializer,
            503: SettlementSummarySerializer,
        },
        tags=["Settlement - Operations"],
    )
    @action(detail=False, methods=["post"])
    def run(self, request):
        summary = SettlementScheduler().trigger_manual()
        logger.info(
            "Manual settlement run requested",
            extra={"operator_id": request.user.pk, "success": summary.success},
        )
        response_status = status.HTTP_200_OK
        if not summary.success:
            response_status = (
                status.HTTP_409_CONFLICT
                if ALREADY_RUNNING in summary.errors
                else status.HTTP_503_SERVICE_UNAVAILABLE
            )
        return Response(SettlementSummarySerializer(summary).data, status=response_status)

    @extend_schema(
        operation_id="get_settlement_stats",
        summary="Payout statistics",
        responses={200: SettlementStatsSerializer},
        tags=["Settlement - Operations"],
    )
    @action(detail=False, methods=["get"])
    def stats(self, request):
        return Response(SettlementStatsSerializer(SettlementService.get_settlement_stats()).data)

    @extend_schema(
        operation_id="list_recent_payouts",
        summary="Recent payouts",
        parameters=[
            OpenApiParameter(
                name="limit",
                type=int,
                location=OpenApiParameter.QUERY,
                description="Maximum number of payouts (default 20, max 100)",
                required=False,
            ),
        ],
        responses={200: PayoutSerializer(many=True)},
        tags=["Settlement - Operations"],
    )
    @action(detail=False, methods=["get"])
    def payouts(self, request):
        try:
            limit = min(int(request.query_params.get("limit", 20)), 100)
        except ValueError:
            limit = 20
        payouts = SettlementService.get_recent_payouts(limit=max(limit, 1))
        return Response(PayoutSerializer(payouts, many=True).data)

    @extend_schema(
        operation_id="retry_payout",
        summary="Retry failed payout",
        request=RetryPayoutSerializer,
        responses={200: PayoutSerializer, **ERROR_RESPONSES, 502: OpenApiResponse(description="Transfer failed")},
        tags=["Settlement - Operations"],
    )
    @action(detail=False, methods=["post"], url_path=rf"payouts/(?P<payout_id>{UUID_PATTERN})/retry")
    def retry_payout(self, request, payout_id=None):
        serializer = RetryPayoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = SettlementService.retry_failed_payout(
            payout_id,
            expected_version=serializer.validated_data.get("expected_version"),
        )
        if not result.success:
            return error_response(result)
        return Response(PayoutSerializer(result.data).data)

    @extend_schema(
        operation_id="resume_payout",
        summary="Resume held payout",
        description="Release a payout parked ON_HOLD (e.g. missing bank details) and transfer it.",
        request=RetryPayoutSerializer,
        responses={200: PayoutSerializer, **ERROR_RESPONSES, 502: OpenApiResponse(description="Transfer failed")},
        tags=["Settlement - Operations"],
    )
    @action(detail=False, methods=["post"], url_path=rf"payouts/(?P<payout_id>{UUID_PATTERN})/resume")
    def resume_payout(self, request, payout_id=None):
        serializer = RetryPayoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = SettlementService.resume_held_payout(
            payout_id,
            expected_version=serializer.validated_data.get("expected_version"),
        )
        if not result.success:
            return error_response(result)
        return Response(PayoutSerializer(result.data).data)
