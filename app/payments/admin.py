"""
Payment admin configuration.

Registers the escrow, settlement and billing models with the Django
admin. Money-moving state is read-only here: status changes go through
the service layer so balances and the ledger stay consistent.
"""

from django.contrib import admin

from core.helpers import mask_identifier

from payments.models import (
    BillingCredential,
    BillingPlan,
    Contract,
    ContractStage,
    EscrowAccount,
    EscrowTransaction,
    Payout,
    ScheduledJobState,
    Subscription,
    WebhookEvent,
)

__all__ = [
    "ContractAdmin",
    "EscrowTransactionAdmin",
    "EscrowAccountAdmin",
    "PayoutAdmin",
    "BillingPlanAdmin",
    "BillingCredentialAdmin",
    "SubscriptionAdmin",
    "ScheduledJobStateAdmin",
    "WebhookEventAdmin",
]


def format_amount(amount: int, currency: str) -> str:
    return f"{amount:,} {currency.upper()}"


# =============================================================================
# Contracts
# =============================================================================


class ContractStageInline(admin.TabularInline):
    """Inline display of the payment stages of a contract."""

    model = ContractStage
    extra = 0
    readonly_fields = ["id", "name", "order_index", "amount", "currency", "status", "paid_at"]
    can_delete = False

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Contract)
class ContractAdmin(admin.ModelAdmin):
    """
    Admin configuration for Contract.

    The fee split is frozen at creation and the status is FSM-protected,
    so both are read-only.
    """

    list_display = [
        "id",
        "title",
        "payer",
        "payee",
        "amount_display",
        "status",
        "created_at",
    ]
    list_filter = ["status", "currency", "cancellation_policy", "created_at"]
    search_fields = ["id", "title", "payer__email", "payee__email"]
    readonly_fields = [
        "id",
        "status",
        "total_amount",
        "platform_fee_bps",
        "platform_fee_amount",
        "payee_payout_amount",
        "confirmed_at",
        "started_at",
        "completed_at",
        "cancelled_at",
        "disputed_at",
        "created_at",
        "updated_at",
        "version",
    ]
    inlines = [ContractStageInline]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "title", "description", "payer", "payee", "status"),
            },
        ),
        (
            "Amounts",
            {
                "fields": (
                    "total_amount",
                    "currency",
                    "platform_fee_bps",
                    "platform_fee_amount",
                    "payee_payout_amount",
                ),
            },
        ),
        (
            "Service",
            {
                "fields": (
                    "cancellation_policy",
                    "service_date",
                    "service_time",
                    "service_location",
                    "payer_terms_accepted",
                    "payee_terms_accepted",
                ),
            },
        ),
        (
            "Cancellation & Dispute",
            {
                "fields": ("cancel_reason", "cancelled_by", "dispute_reason", "disputed_by"),
                "classes": ("collapse",),
            },
        ),
        (
            "State Timestamps",
            {
                "fields": (
                    "confirmed_at",
                    "started_at",
                    "completed_at",
                    "cancelled_at",
                    "disputed_at",
                ),
                "classes": ("collapse",),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at", "version"),
            },
        ),
    )

    def amount_display(self, obj: Contract) -> str:
        return format_amount(obj.total_amount, obj.currency)

    amount_display.short_description = "Total"

    def has_add_permission(self, request) -> bool:
        """Contracts are created through the API so the fee split is computed."""
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for contracts (audit trail)."""
        return False


# =============================================================================
# Escrow
# =============================================================================


@admin.register(EscrowTransaction)
class EscrowTransactionAdmin(admin.ModelAdmin):
    """
    Admin configuration for EscrowTransaction.

    Transactions are created only from confirmed gateway payments and
    cannot be added or edited here.
    """

    list_display = [
        "id",
        "contract",
        "milestone_type",
        "amount_display",
        "status",
        "payout",
        "funded_at",
        "released_at",
    ]
    list_filter = ["status", "milestone_type", "currency"]
    search_fields = ["id", "external_payment_id", "contract__id"]
    readonly_fields = [field.name for field in EscrowTransaction._meta.fields]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    def amount_display(self, obj: EscrowTransaction) -> str:
        return format_amount(obj.amount, obj.currency)

    amount_display.short_description = "Amount"

    def has_add_permission(self, request) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(EscrowAccount)
class EscrowAccountAdmin(admin.ModelAdmin):
    """
    Admin configuration for EscrowAccount.

    Operators may update KYC status and bank details; balances are only
    moved by the escrow and settlement services.
    """

    list_display = [
        "id",
        "user",
        "role",
        "pending_balance",
        "withdrawable_balance",
        "kyc_status",
        "masked_account_number",
        "status",
    ]
    list_filter = ["role", "kyc_status", "status", "currency"]
    search_fields = ["id", "user__email", "account_holder_name"]
    readonly_fields = [
        "id",
        "available_balance",
        "pending_balance",
        "withdrawable_balance",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "user", "role", "status", "kyc_status"),
            },
        ),
        (
            "Balances",
            {
                "fields": (
                    "available_balance",
                    "pending_balance",
                    "withdrawable_balance",
                    "currency",
                ),
            },
        ),
        (
            "Bank Details",
            {
                "fields": ("bank_code", "account_number", "account_holder_name"),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at"),
            },
        ),
    )

    def masked_account_number(self, obj: EscrowAccount) -> str:
        return mask_identifier(obj.account_number)

    masked_account_number.short_description = "Account number"

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


# =============================================================================
# Settlement
# =============================================================================


@admin.register(Payout)
class PayoutAdmin(admin.ModelAdmin):
    """
    Admin configuration for Payout.

    Provides visibility into payout status and history. Failed payouts
    are retried, and held payouts resumed, through the settlement endpoints.
    """

    list_display = [
        "id",
        "payee",
        "amount_display",
        "transaction_count",
        "status",
        "retry_count",
        "completed_at",
        "created_at",
    ]
    list_filter = ["status", "currency", "created_at"]
    search_fields = ["id", "external_transfer_id", "payee__email", "contract__id"]
    readonly_fields = [
        "id",
        "status",
        "gross_amount",
        "total_fees",
        "net_amount",
        "transaction_count",
        "masked_account_number",
        "external_transfer_id",
        "retry_count",
        "scheduled_at",
        "processed_at",
        "completed_at",
        "failed_at",
        "cancelled_at",
        "created_at",
        "updated_at",
        "version",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "payee", "contract", "status"),
            },
        ),
        (
            "Amount",
            {
                "fields": (
                    "gross_amount",
                    "total_fees",
                    "net_amount",
                    "currency",
                    "transaction_count",
                    "period_start",
                    "period_end",
                ),
            },
        ),
        (
            "Bank Transfer",
            {
                "fields": (
                    "bank_code",
                    "masked_account_number",
                    "account_holder_name",
                    "external_transfer_id",
                    "retry_count",
                ),
            },
        ),
        (
            "Status Timestamps",
            {
                "fields": (
                    "scheduled_at",
                    "processed_at",
                    "completed_at",
                    "failed_at",
                    "cancelled_at",
                ),
                "classes": ("collapse",),
            },
        ),
        (
            "Failure Info",
            {
                "fields": ("failure_reason",),
                "classes": ("collapse",),
            },
        ),
        (
            "Metadata",
            {
                "fields": ("metadata", "version"),
                "classes": ("collapse",),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at"),
            },
        ),
    )

    def amount_display(self, obj: Payout) -> str:
        return format_amount(obj.net_amount, obj.currency)

    amount_display.short_description = "Net"

    def masked_account_number(self, obj: Payout) -> str:
        return mask_identifier(obj.account_number)

    masked_account_number.short_description = "Account number"

    def has_add_permission(self, request) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for payouts (audit trail)."""
        return False


@admin.register(ScheduledJobState)
class ScheduledJobStateAdmin(admin.ModelAdmin):
    list_display = ["job_name", "is_running", "lease_owner", "last_run_at", "next_run_at"]
    readonly_fields = [
        "job_name",
        "lease_owner",
        "lease_expires_at",
        "last_started_at",
        "last_run_at",
        "next_run_at",
        "last_result",
        "created_at",
        "updated_at",
    ]

    def has_add_permission(self, request) -> bool:
        return False


# =============================================================================
# Subscriptions
# =============================================================================


@admin.register(BillingPlan)
class BillingPlanAdmin(admin.ModelAdmin):
    list_display = ["code", "name", "price_amount", "currency", "billing_interval_days", "is_active"]
    list_filter = ["is_active", "currency"]
    search_fields = ["code", "name"]


@admin.register(BillingCredential)
class BillingCredentialAdmin(admin.ModelAdmin):
    list_display = ["id", "user", "card_brand", "card_last4", "is_default", "created_at"]
    list_filter = ["is_default", "card_brand"]
    search_fields = ["user__email", "card_last4"]
    readonly_fields = ["id", "credential_ref", "created_at", "updated_at"]


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """
    Admin configuration for Subscription.

    Renewal bookkeeping is read-only; it is maintained by the renewal
    scheduler.
    """

    list_display = [
        "id",
        "user",
        "plan",
        "status",
        "renews_at",
        "retry_count",
        "next_retry_at",
    ]
    list_filter = ["status", "plan"]
    search_fields = ["id", "user__email", "last_payment_id"]
    readonly_fields = [
        "id",
        "status",
        "retry_count",
        "last_retry_at",
        "next_retry_at",
        "last_payment_error",
        "last_payment_id",
        "last_payment_at",
        "suspended_at",
        "canceled_at",
        "created_at",
        "updated_at",
        "version",
    ]
    ordering = ["-created_at"]


# =============================================================================
# Webhooks
# =============================================================================


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """
    Admin configuration for WebhookEvent.

    Provides visibility into webhook processing status.
    Webhook events are immutable once received.
    """

    list_display = [
        "id",
        "webhook_id",
        "event_type",
        "payment_id",
        "status",
        "attempts",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "event_type", "created_at"]
    search_fields = ["id", "webhook_id", "payment_id", "event_type"]
    readonly_fields = [
        "id",
        "created_at",
        "updated_at",
        "webhook_id",
        "event_type",
        "payment_id",
        "payload",
        "processed_at",
        "attempts",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "webhook_id", "event_type", "payment_id", "status"),
            },
        ),
        (
            "Processing",
            {
                "fields": ("processed_at", "attempts"),
            },
        ),
        (
            "Error Info",
            {
                "fields": ("error_message",),
                "classes": ("collapse",),
            },
        ),
        (
            "Payload",
            {
                "fields": ("payload",),
                "classes": ("collapse",),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at"),
            },
        ),
    )

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for webhook events (audit trail)."""
        return False

    def has_add_permission(self, request) -> bool:
        """Disable adding webhook events through admin."""
        return False
