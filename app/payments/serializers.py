"""
Serializers for the payments API.

This module provides DRF serializers for escrow contracts, payouts,
subscriptions and the operator settlement endpoints.

Serializers:
    ContractSerializer: Read-only contract with its stages
    ContractCreateSerializer: Input for contract creation
    ReasonSerializer / RefundSerializer / ResolveDisputeSerializer: Action inputs
    StagePaymentIntentSerializer: Checkout data for a stage payment
    PayoutSerializer: Payout with the bank account masked
    SubscriptionSerializer: Subscription with plan details
    SettlementSummarySerializer / SettlementStatusSerializer: Operator views

Usage:
    from payments.serializers import ContractSerializer

    serializer = ContractSerializer(contract)
    data = serializer.data
"""

from __future__ import annotations

from django.contrib.auth import get_user_model

from rest_framework import serializers

from drf_spectacular.utils import extend_schema_field

from core.helpers import mask_identifier

from payments.models import (
    Contract,
    ContractStage,
    EscrowAccount,
    EscrowTransaction,
    Payout,
    Subscription,
)
from payments.state_machines import CancellationPolicy, ContractStatus


# =============================================================================
# Contracts
# =============================================================================


class ContractStageSerializer(serializers.ModelSerializer):
    label = serializers.CharField(source="get_name_display", read_only=True)

    class Meta:
        model = ContractStage
        fields = ["id", "name", "label", "order_index", "amount", "currency", "status", "paid_at"]
        read_only_fields = fields


class ContractSerializer(serializers.ModelSerializer):
    """
    Read-only contract representation.

    Includes the ordered stages and the frozen fee split.
    """

    stages = ContractStageSerializer(many=True, read_only=True)

    class Meta:
        model = Contract
        fields = [
            "id",
            "payer",
            "payee",
            "title",
            "description",
            "total_amount",
            "currency",
            "platform_fee_bps",
            "platform_fee_amount",
            "payee_payout_amount",
            "cancellation_policy",
            "service_date",
            "service_time",
            "service_location",
            "status",
            "payer_terms_accepted",
            "payee_terms_accepted",
            "cancel_reason",
            "dispute_reason",
            "confirmed_at",
            "started_at",
            "completed_at",
            "cancelled_at",
            "disputed_at",
            "stages",
            "version",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class ContractPaymentStageSerializer(serializers.Serializer):
    id = serializers.UUIDField()
    name = serializers.CharField()
    order_index = serializers.IntegerField()
    amount = serializers.IntegerField()
    status = serializers.CharField()
    paid_at = serializers.DateTimeField(allow_null=True)


class ContractPaymentSummarySerializer(serializers.Serializer):
    contract_id = serializers.UUIDField()
    currency = serializers.CharField()
    total_amount = serializers.IntegerField()
    paid_amount = serializers.IntegerField()
    remaining_amount = serializers.IntegerField()
    paid_stage_count = serializers.IntegerField()
    stage_count = serializers.IntegerField()
    is_fully_paid = serializers.BooleanField()
    next_stage_id = serializers.UUIDField(allow_null=True)
    stages = ContractPaymentStageSerializer(many=True)


class ContractDetailSerializer(ContractSerializer):
    """
    Contract detail with its payment summary.

    The summary is passed in the serializer context under "payment_summary".
    """

    payment_summary = serializers.SerializerMethodField()

    class Meta(ContractSerializer.Meta):
        fields = [*ContractSerializer.Meta.fields, "payment_summary"]
        read_only_fields = fields

    @extend_schema_field(ContractPaymentSummarySerializer)
    def get_payment_summary(self, contract):
        summary = self.context.get("payment_summary")
        if summary is None:
            return None
        return ContractPaymentSummarySerializer(summary).data


class ContractCreateSerializer(serializers.Serializer):
    """
    Input for creating a contract. The authenticated user is the payer.
    """

    payee_id = serializers.PrimaryKeyRelatedField(
        queryset=get_user_model().objects.filter(is_active=True),
        source="payee",
    )
    title = serializers.CharField(max_length=200)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    total_amount = serializers.IntegerField(min_value=1)
    deposit_percent = serializers.IntegerField(min_value=1, max_value=99, required=False)
    middle_percent = serializers.IntegerField(min_value=1, max_value=98, required=False)
    currency = serializers.CharField(min_length=3, max_length=3, required=False)
    cancellation_policy = serializers.ChoiceField(
        choices=CancellationPolicy.choices,
        default=CancellationPolicy.MODERATE,
    )
    service_date = serializers.DateField(required=False, allow_null=True)
    service_time = serializers.TimeField(required=False, allow_null=True)
    service_location = serializers.CharField(max_length=255, required=False, allow_blank=True)

    def validate_currency(self, value: str) -> str:
        return value.upper()


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=1000, required=False, allow_blank=True, default="")


class DisputeSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=1000)


class RefundSerializer(serializers.Serializer):
    amount = serializers.IntegerField(min_value=1)
    reason = serializers.CharField(max_length=1000)


class ResolveDisputeSerializer(serializers.Serializer):
    resolution = serializers.ChoiceField(
        choices=[ContractStatus.COMPLETED, ContractStatus.CANCELLED],
    )
    note = serializers.CharField(max_length=1000, required=False, allow_blank=True, default="")


class StagePaymentIntentSerializer(serializers.Serializer):
    contract_id = serializers.UUIDField()
    stage_id = serializers.UUIDField()
    payment_id = serializers.CharField()
    order_name = serializers.CharField()
    amount = serializers.IntegerField()
    currency = serializers.CharField()
    customer = serializers.DictField()


class EscrowTransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = EscrowTransaction
        fields = [
            "id",
            "contract",
            "stage",
            "milestone_type",
            "amount",
            "platform_fee",
            "currency",
            "status",
            "refunded_amount",
            "payout",
            "funded_at",
            "released_at",
            "refunded_at",
        ]
        read_only_fields = fields


class RefundOutcomeSerializer(serializers.Serializer):
    contract = ContractSerializer()
    requested_amount = serializers.IntegerField()
    refunded_amount = serializers.IntegerField()
    refunded_transaction_ids = serializers.ListField(child=serializers.CharField())
    failed_transaction_ids = serializers.ListField(child=serializers.CharField())


# =============================================================================
# Accounts & Payouts
# =============================================================================


class EscrowAccountSerializer(serializers.ModelSerializer):
    account_number = serializers.SerializerMethodField()

    class Meta:
        model = EscrowAccount
        fields = [
            "id",
            "role",
            "available_balance",
            "pending_balance",
            "withdrawable_balance",
            "currency",
            "status",
            "kyc_status",
            "bank_code",
            "account_number",
            "account_holder_name",
        ]
        read_only_fields = fields

    def get_account_number(self, obj: EscrowAccount) -> str:
        return mask_identifier(obj.account_number)


class PayoutSerializer(serializers.ModelSerializer):
    """
    Payout with the bank account number masked to its last four digits.
    """

    account_number = serializers.SerializerMethodField()

    class Meta:
        model = Payout
        fields = [
            "id",
            "payee",
            "contract",
            "period_start",
            "period_end",
            "gross_amount",
            "total_fees",
            "net_amount",
            "currency",
            "transaction_count",
            "status",
            "bank_code",
            "account_number",
            "account_holder_name",
            "external_transfer_id",
            "retry_count",
            "failure_reason",
            "scheduled_at",
            "processed_at",
            "completed_at",
            "failed_at",
            "version",
            "created_at",
        ]
        read_only_fields = fields

    def get_account_number(self, obj: Payout) -> str:
        return mask_identifier(obj.account_number)


class RetryPayoutSerializer(serializers.Serializer):
    expected_version = serializers.IntegerField(min_value=1, required=False)


# =============================================================================
# Subscriptions
# =============================================================================


class SubscriptionSerializer(serializers.ModelSerializer):
    plan_code = serializers.CharField(source="plan.code", read_only=True)
    plan_name = serializers.CharField(source="plan.name", read_only=True)
    price_amount = serializers.IntegerField(source="plan.price_amount", read_only=True)

    class Meta:
        model = Subscription
        fields = [
            "id",
            "plan_code",
            "plan_name",
            "price_amount",
            "status",
            "current_period_start",
            "current_period_end",
            "renews_at",
            "retry_count",
            "next_retry_at",
            "last_payment_error",
            "last_payment_at",
            "suspended_at",
            "canceled_at",
        ]
        read_only_fields = fields


# =============================================================================
# Settlement (operator)
# =============================================================================


class SettlementSummarySerializer(serializers.Serializer):
    success = serializers.BooleanField()
    processed_count = serializers.IntegerField()
    total_amount = serializers.IntegerField()
    skipped_kyc_count = serializers.IntegerField()
    below_min_count = serializers.IntegerField()
    failed_count = serializers.IntegerField()
    payout_ids = serializers.ListField(child=serializers.CharField())
    errors = serializers.ListField(child=serializers.CharField())


class SettlementStatusSerializer(serializers.Serializer):
    enabled = serializers.BooleanField()
    is_running = serializers.BooleanField()
    last_run_at = serializers.DateTimeField(allow_null=True)
    next_run_at = serializers.DateTimeField(allow_null=True)
    last_result = serializers.JSONField(allow_null=True)


class SettlementStatsSerializer(serializers.Serializer):
    payouts_by_status = serializers.DictField(child=serializers.IntegerField())
    total_payouts = serializers.IntegerField()
    total_paid_amount = serializers.IntegerField()
