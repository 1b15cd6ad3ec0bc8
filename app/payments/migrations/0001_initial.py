import uuid

import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Contract",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each save")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("title", models.CharField(max_length=200)),
                ("description", models.TextField(blank=True, default="")),
                ("total_amount", models.PositiveBigIntegerField(help_text="Contract total in smallest currency unit")),
                ("currency", models.CharField(default="KRW", help_text="ISO 4217 currency code", max_length=3)),
                ("platform_fee_bps", models.PositiveIntegerField(help_text="Platform fee rate in basis points (1200 = 12%)")),
                ("platform_fee_amount", models.PositiveBigIntegerField(help_text="Platform fee computed at creation")),
                ("payee_payout_amount", models.PositiveBigIntegerField(help_text="Payee share computed at creation")),
                ("cancellation_policy", models.CharField(choices=[("flexible", "Flexible"), ("moderate", "Moderate"), ("strict", "Strict")], default="moderate", max_length=20)),
                ("service_date", models.DateField(blank=True, null=True)),
                ("service_time", models.TimeField(blank=True, null=True)),
                ("service_location", models.CharField(blank=True, default="", max_length=255)),
                ("status", django_fsm.FSMField(choices=[("pending", "Pending"), ("confirmed", "Confirmed"), ("in_progress", "In Progress"), ("completed", "Completed"), ("cancelled", "Cancelled"), ("disputed", "Disputed")], db_index=True, default="pending", help_text="Current state of the contract (managed by FSM)", max_length=50, protected=True)),
                ("payer_terms_accepted", models.BooleanField(default=False)),
                ("payee_terms_accepted", models.BooleanField(default=False)),
                ("cancel_reason", models.TextField(blank=True, default="")),
                ("dispute_reason", models.TextField(blank=True, default="")),
                ("confirmed_at", models.DateTimeField(blank=True, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("disputed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to=settings.AUTH_USER_MODEL)),
                ("disputed_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to=settings.AUTH_USER_MODEL)),
                ("payee", models.ForeignKey(help_text="Service provider receiving the payout", on_delete=django.db.models.deletion.PROTECT, related_name="contracts_as_payee", to=settings.AUTH_USER_MODEL)),
                ("payer", models.ForeignKey(help_text="User funding the escrow", on_delete=django.db.models.deletion.PROTECT, related_name="contracts_as_payer", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Contract",
                "verbose_name_plural": "Contracts",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["payer", "status"], name="payments_co_payer_i_8f1c2a_idx"),
                    models.Index(fields=["payee", "status"], name="payments_co_payee_i_3b7d9e_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("total_amount__gt", 0)), name="contract_total_positive"),
                    models.CheckConstraint(condition=models.Q(("total_amount", models.F("platform_fee_amount") + models.F("payee_payout_amount"))), name="contract_fee_split_balanced"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ContractStage",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("name", models.CharField(choices=[("deposit", "Deposit"), ("middle", "Middle Payment"), ("final", "Final Payment")], max_length=20)),
                ("order_index", models.PositiveSmallIntegerField()),
                ("amount", models.PositiveBigIntegerField(help_text="Stage amount in smallest currency unit")),
                ("currency", models.CharField(default="KRW", max_length=3)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("paid", "Paid"), ("canceled", "Canceled")], db_index=True, default="pending", max_length=20)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("contract", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="stages", to="payments.contract")),
            ],
            options={
                "verbose_name": "Contract Stage",
                "verbose_name_plural": "Contract Stages",
                "ordering": ["contract", "order_index"],
                "constraints": [
                    models.UniqueConstraint(fields=("contract", "order_index"), name="unique_stage_order_per_contract"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payout",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each save")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("period_start", models.DateTimeField(blank=True, null=True)),
                ("period_end", models.DateTimeField(blank=True, null=True)),
                ("gross_amount", models.PositiveBigIntegerField(help_text="Sum of attached transaction amounts")),
                ("total_fees", models.PositiveBigIntegerField(default=0, help_text="Sum of platform fees")),
                ("net_amount", models.PositiveBigIntegerField(help_text="Amount transferred to the payee")),
                ("currency", models.CharField(default="KRW", max_length=3)),
                ("transaction_count", models.PositiveIntegerField(default=0)),
                ("status", django_fsm.FSMField(choices=[("pending", "Pending"), ("processing", "Processing"), ("completed", "Completed"), ("failed", "Failed"), ("on_hold", "On Hold"), ("cancelled", "Cancelled")], db_index=True, default="pending", help_text="Current state of the payout (managed by FSM)", max_length=50, protected=True)),
                ("bank_code", models.CharField(blank=True, default="", max_length=10)),
                ("account_number", models.CharField(blank=True, default="", max_length=64)),
                ("account_holder_name", models.CharField(blank=True, default="", max_length=100)),
                ("external_transfer_id", models.CharField(blank=True, help_text="Gateway transfer id", max_length=255, null=True, unique=True)),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("scheduled_at", models.DateTimeField(blank=True, null=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("metadata", models.JSONField(blank=True, default=dict, help_text="Attached transaction ids and run context")),
                ("contract", models.ForeignKey(blank=True, help_text="Contract released into this payout. Null for batch payouts.", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="payouts", to="payments.contract")),
                ("payee", models.ForeignKey(help_text="User receiving the payout", on_delete=django.db.models.deletion.PROTECT, related_name="payouts", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Payout",
                "verbose_name_plural": "Payouts",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["payee", "status"], name="payments_pa_payee_i_5c2e71_idx"),
                    models.Index(fields=["status", "created_at"], name="payments_pa_status_a9d418_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("net_amount__gt", 0)), name="payout_net_amount_positive"),
                    models.CheckConstraint(condition=models.Q(("gross_amount", models.F("net_amount") + models.F("total_fees"))), name="payout_amounts_balanced"),
                ],
            },
        ),
        migrations.CreateModel(
            name="EscrowTransaction",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("milestone_type", models.CharField(choices=[("deposit", "Deposit"), ("middle", "Middle Payment"), ("final", "Final Payment")], max_length=20)),
                ("amount", models.PositiveBigIntegerField(help_text="Funded amount in smallest currency unit")),
                ("currency", models.CharField(default="KRW", max_length=3)),
                ("platform_fee", models.PositiveBigIntegerField(default=0, help_text="Platform fee deducted at release")),
                ("status", models.CharField(choices=[("pending", "Pending"), ("funded", "Funded"), ("completed", "Completed"), ("released", "Released"), ("refunded", "Refunded"), ("frozen", "Frozen")], db_index=True, default="funded", max_length=20)),
                ("external_payment_id", models.CharField(help_text="Gateway payment id confirmed by webhook", max_length=255, unique=True)),
                ("refund_reason", models.TextField(blank=True, default="")),
                ("refunded_amount", models.PositiveBigIntegerField(default=0)),
                ("funded_at", models.DateTimeField(blank=True, null=True)),
                ("released_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("contract", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="transactions", to="payments.contract")),
                ("payout", models.ForeignKey(blank=True, help_text="Payout this transaction is settled through (null until attached)", null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="transactions", to="payments.payout")),
                ("stage", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="transactions", to="payments.contractstage")),
            ],
            options={
                "verbose_name": "Escrow Transaction",
                "verbose_name_plural": "Escrow Transactions",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["contract", "status"], name="payments_es_contrac_6e0b3f_idx"),
                    models.Index(fields=["status", "payout"], name="payments_es_status_27c5d0_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("stage",), name="unique_transaction_per_stage"),
                    models.CheckConstraint(condition=models.Q(("amount__gt", 0)), name="escrow_transaction_amount_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="EscrowAccount",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("role", models.CharField(choices=[("payer", "Payer"), ("payee", "Payee")], max_length=10)),
                ("available_balance", models.BigIntegerField(default=0)),
                ("pending_balance", models.BigIntegerField(default=0)),
                ("withdrawable_balance", models.BigIntegerField(default=0)),
                ("currency", models.CharField(default="KRW", max_length=3)),
                ("status", models.CharField(choices=[("active", "Active"), ("suspended", "Suspended"), ("closed", "Closed")], default="active", max_length=20)),
                ("kyc_status", models.CharField(choices=[("none", "Not Submitted"), ("pending", "Pending Review"), ("verified", "Verified"), ("rejected", "Rejected")], db_index=True, default="none", max_length=20)),
                ("bank_code", models.CharField(blank=True, default="", max_length=10)),
                ("account_number", models.CharField(blank=True, default="", max_length=64)),
                ("account_holder_name", models.CharField(blank=True, default="", max_length=100)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="escrow_accounts", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Escrow Account",
                "verbose_name_plural": "Escrow Accounts",
                "constraints": [
                    models.UniqueConstraint(fields=("user", "role"), name="unique_escrow_account_per_role"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingPlan",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("code", models.SlugField(unique=True)),
                ("name", models.CharField(max_length=100)),
                ("price_amount", models.PositiveBigIntegerField(help_text="Price per billing interval in smallest currency unit")),
                ("currency", models.CharField(default="KRW", max_length=3)),
                ("billing_interval_days", models.PositiveIntegerField(default=30)),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={
                "verbose_name": "Billing Plan",
                "verbose_name_plural": "Billing Plans",
                "ordering": ["price_amount"],
            },
        ),
        migrations.CreateModel(
            name="BillingCredential",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("credential_ref", models.CharField(help_text="Gateway billing key", max_length=255, unique=True)),
                ("is_default", models.BooleanField(default=False)),
                ("card_brand", models.CharField(blank=True, default="", max_length=30)),
                ("card_last4", models.CharField(blank=True, default="", max_length=4)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="billing_credentials", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Billing Credential",
                "verbose_name_plural": "Billing Credentials",
                "ordering": ["-is_default", "-created_at"],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each save")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("status", django_fsm.FSMField(choices=[("active", "Active"), ("suspended", "Suspended"), ("canceled", "Canceled")], db_index=True, default="active", help_text="Current state of the subscription (managed by FSM)", max_length=50, protected=True)),
                ("current_period_start", models.DateTimeField()),
                ("current_period_end", models.DateTimeField()),
                ("renews_at", models.DateTimeField(db_index=True)),
                ("retry_count", models.PositiveSmallIntegerField(default=0)),
                ("last_retry_at", models.DateTimeField(blank=True, null=True)),
                ("next_retry_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("last_payment_error", models.TextField(blank=True, default="")),
                ("last_payment_id", models.CharField(blank=True, default="", max_length=255)),
                ("last_payment_at", models.DateTimeField(blank=True, null=True)),
                ("suspended_at", models.DateTimeField(blank=True, null=True)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("credential", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="subscriptions", to="payments.billingcredential")),
                ("plan", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="subscriptions", to="payments.billingplan")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="subscriptions", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "renews_at"], name="payments_su_status_4d81f6_idx"),
                    models.Index(fields=["status", "next_retry_at"], name="payments_su_status_0b9ac3_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ScheduledJobState",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("job_name", models.CharField(max_length=100, unique=True)),
                ("is_running", models.BooleanField(default=False)),
                ("lease_owner", models.CharField(blank=True, default="", max_length=64)),
                ("lease_expires_at", models.DateTimeField(blank=True, null=True)),
                ("last_started_at", models.DateTimeField(blank=True, null=True)),
                ("last_run_at", models.DateTimeField(blank=True, null=True)),
                ("next_run_at", models.DateTimeField(blank=True, null=True)),
                ("last_result", models.JSONField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Scheduled Job State",
                "verbose_name_plural": "Scheduled Job States",
                "ordering": ["job_name"],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("webhook_id", models.CharField(help_text="Gateway webhook delivery id - unique for idempotency", max_length=255, unique=True)),
                ("event_type", models.CharField(db_index=True, max_length=100)),
                ("payment_id", models.CharField(blank=True, db_index=True, default="", help_text="Gateway payment id referenced by the event", max_length=255)),
                ("payload", models.JSONField()),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("processed", "Processed"), ("failed", "Failed")], db_index=True, default="pending", max_length=20)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, default="")),
                ("attempts", models.PositiveSmallIntegerField(default=0, help_text="Number of processing attempts")),
            ],
            options={
                "verbose_name": "Webhook Event",
                "verbose_name_plural": "Webhook Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="payments_we_status_71e2c8_idx"),
                ],
            },
        ),
    ]
