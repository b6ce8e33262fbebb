import uuid

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

STATUS_CHOICES = [
    ("trial", "Trial"),
    ("active", "Active"),
    ("past_due", "Past Due"),
    ("grace_period", "Grace Period"),
    ("cancelled", "Cancelled"),
    ("expired", "Expired"),
]

PURPOSE_CHOICES = [
    ("trial_conversion", "Trial Conversion"),
    ("renewal", "Renewal"),
    ("retry", "Dunning Retry"),
    ("manual", "Manual Payment"),
    ("refund", "Refund"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("organizations", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Plan",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=200)),
                ("description", models.TextField(blank=True)),
                (
                    "plan_code",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Provider plan code, shared by every version of the plan",
                        max_length=100,
                    ),
                ),
                (
                    "amount_cents",
                    models.BigIntegerField(
                        help_text="Price per period in minor units",
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                ("currency", models.CharField(help_text="ISO 4217 currency code", max_length=3)),
                (
                    "interval",
                    models.CharField(
                        choices=[
                            ("daily", "Daily"),
                            ("weekly", "Weekly"),
                            ("monthly", "Monthly"),
                            ("quarterly", "Quarterly"),
                            ("yearly", "Yearly"),
                        ],
                        default="monthly",
                        max_length=20,
                    ),
                ),
                (
                    "interval_count",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Number of intervals per billing period",
                        validators=[django.core.validators.MinValueValidator(1)],
                    ),
                ),
                ("trial_period_days", models.PositiveIntegerField(default=0)),
                ("grace_period_days", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "retry_base_delay_hours",
                    models.PositiveIntegerField(
                        blank=True, null=True, validators=[django.core.validators.MinValueValidator(1)]
                    ),
                ),
                (
                    "retry_max_delay_hours",
                    models.PositiveIntegerField(
                        blank=True, null=True, validators=[django.core.validators.MinValueValidator(1)]
                    ),
                ),
                (
                    "max_retry_attempts",
                    models.PositiveIntegerField(
                        blank=True, null=True, validators=[django.core.validators.MinValueValidator(1)]
                    ),
                ),
                ("features", models.JSONField(blank=True, default=list)),
                ("is_active", models.BooleanField(db_index=True, default=True)),
                ("version", models.PositiveIntegerField(default=1)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "supersedes",
                    models.OneToOneField(
                        blank=True,
                        help_text="Previous version of this plan",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="superseded_by",
                        to="billing.plan",
                    ),
                ),
            ],
            options={
                "verbose_name": "Plan",
                "verbose_name_plural": "Plans",
                "db_table": "billing_plans",
                "ordering": ("amount_cents", "name"),
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("interval_count__gte", 1)), name="plan_interval_count_positive"
                    ),
                    models.CheckConstraint(condition=models.Q(("amount_cents__gte", 0)), name="plan_amount_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("status", models.CharField(choices=STATUS_CHOICES, db_index=True, max_length=20)),
                ("current_period_start", models.DateTimeField()),
                ("current_period_end", models.DateTimeField()),
                ("next_billing_date", models.DateTimeField(blank=True, db_index=True, null=True)),
                (
                    "billing_anchor_day",
                    models.PositiveSmallIntegerField(
                        blank=True, help_text="Day of month that calendar intervals renew on", null=True
                    ),
                ),
                ("trial_start", models.DateTimeField(blank=True, null=True)),
                ("trial_end", models.DateTimeField(blank=True, null=True)),
                ("last_payment_date", models.DateTimeField(blank=True, null=True)),
                (
                    "failed_payment_count",
                    models.PositiveIntegerField(default=0, help_text="Consecutive failed payment attempts"),
                ),
                ("next_retry_at", models.DateTimeField(blank=True, null=True)),
                (
                    "grace_period_ends_at",
                    models.DateTimeField(blank=True, help_text="Deadline of the current dunning stage", null=True),
                ),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                (
                    "cancellation_reason",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("admin_request", "Administrative Request"),
                            ("customer_request", "Customer Request"),
                            ("non_payment", "Non-Payment"),
                            ("retry_budget_exhausted", "Payment Retries Exhausted"),
                            ("plan_change", "Plan Change"),
                            ("other", "Other"),
                        ],
                        max_length=50,
                    ),
                ),
                ("cancellation_note", models.TextField(blank=True)),
                ("ended_at", models.DateTimeField(blank=True, null=True)),
                (
                    "authorization_code",
                    models.CharField(blank=True, help_text="Saved payment method used for renewals", max_length=255),
                ),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("version", models.PositiveBigIntegerField(default=1)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "organization",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="organizations.organization",
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.plan",
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "db_table": "subscriptions",
                "ordering": ("-created_at",),
                "indexes": [
                    models.Index(fields=["organization", "status"], name="sub_org_status_idx"),
                    models.Index(fields=["status", "current_period_end"], name="sub_status_period_end_idx"),
                    models.Index(fields=["status", "grace_period_ends_at"], name="sub_status_grace_end_idx"),
                    models.Index(fields=["status", "next_retry_at"], name="sub_status_retry_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status__in", ["trial", "active", "past_due", "grace_period"])),
                        fields=("organization",),
                        name="one_live_subscription_per_organization",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentRecord",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "amount_cents",
                    models.BigIntegerField(validators=[django.core.validators.MinValueValidator(0)]),
                ),
                ("currency", models.CharField(max_length=3)),
                (
                    "outcome",
                    models.CharField(
                        choices=[("success", "Success"), ("failed", "Failed"), ("refunded", "Refunded")],
                        db_index=True,
                        max_length=20,
                    ),
                ),
                ("purpose", models.CharField(choices=PURPOSE_CHOICES, default="manual", max_length=30)),
                ("provider_reference", models.CharField(max_length=255, unique=True)),
                ("provider_transaction_id", models.CharField(blank=True, max_length=255)),
                ("failure_reason", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "refund_of",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refund",
                        to="billing.paymentrecord",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Record",
                "verbose_name_plural": "Payment Records",
                "db_table": "billing_payment_records",
                "ordering": ("created_at", "id"),
                "indexes": [
                    models.Index(fields=["subscription", "created_at"], name="payment_sub_created_idx"),
                    models.Index(fields=["outcome", "created_at"], name="payment_outcome_created_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gte", 0)), name="payment_amount_non_negative"
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionTransition",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("from_status", models.CharField(blank=True, max_length=20)),
                ("to_status", models.CharField(max_length=20)),
                (
                    "activity_type",
                    models.CharField(
                        choices=[
                            ("subscription_created", "Subscription Created"),
                            ("trial_converted", "Trial Converted"),
                            ("renewed", "Renewed"),
                            ("payment_failed", "Payment Failed"),
                            ("payment_recovered", "Payment Recovered"),
                            ("grace_period_started", "Grace Period Started"),
                            ("retry_budget_exhausted", "Payment Retries Exhausted"),
                            ("cancelled", "Cancelled"),
                            ("expired", "Expired"),
                        ],
                        max_length=40,
                    ),
                ),
                ("reason", models.TextField(blank=True)),
                (
                    "version",
                    models.PositiveBigIntegerField(help_text="Subscription version this transition produced"),
                ),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                (
                    "organization",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscription_transitions",
                        to="organizations.organization",
                    ),
                ),
                (
                    "payment",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transitions",
                        to="billing.paymentrecord",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transitions",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "db_table": "subscription_transitions",
                "ordering": ("-created_at", "-id"),
                "constraints": [
                    models.UniqueConstraint(fields=("subscription", "version"), name="one_transition_per_version"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ChargeAttempt",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("provider_reference", models.CharField(max_length=255, unique=True)),
                ("purpose", models.CharField(choices=PURPOSE_CHOICES, max_length=30)),
                (
                    "amount_cents",
                    models.BigIntegerField(validators=[django.core.validators.MinValueValidator(0)]),
                ),
                ("currency", models.CharField(max_length=3)),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("resolved", "Resolved"), ("abandoned", "Abandoned")],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("last_error", models.TextField(blank=True)),
                ("check_count", models.PositiveIntegerField(default=0)),
                ("next_check_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                (
                    "payment",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="charge_attempt",
                        to="billing.paymentrecord",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="charge_attempts",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "db_table": "billing_charge_attempts",
                "ordering": ("created_at",),
            },
        ),
    ]
