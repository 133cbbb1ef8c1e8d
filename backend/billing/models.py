"""Billing models for subscriptions, metered usage, invoicing, webhooks and job runs."""
import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q

from organizations.models import Organization

from billing.services.plan_catalog import USAGE_TYPES


def _default_currency() -> str:
    """Resolve default billing currency from settings."""
    return getattr(settings, "BILLING_CURRENCY", "zar").lower()


class Subscription(models.Model):
    """
    Organization Subscription - the billing ledger entry for one plan lifecycle.

    Status and cancel-at-period-end are independent: an ``active`` subscription
    can be scheduled to cancel. Rows are never deleted; ``canceled`` is terminal.
    Writes go through ``billing.services.subscription_ledger`` which guards
    every update with ``version``.
    """

    class Status(models.TextChoices):
        TRIALING = "trialing", "Trialing"
        ACTIVE = "active", "Active"
        PAST_DUE = "past_due", "Past Due"
        CANCELED = "canceled", "Canceled"
        PAUSED = "paused", "Paused"
        INCOMPLETE = "incomplete", "Incomplete"

    class BillingInterval(models.TextChoices):
        MONTHLY = "monthly", "Monthly"
        ANNUAL = "annual", "Annual"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    organization = models.ForeignKey(
        Organization,
        on_delete=models.PROTECT,
        related_name="subscriptions",
        help_text="Organization billed by this subscription",
    )
    plan_id = models.CharField(max_length=64, help_text="Catalog key of the current plan")
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ACTIVE)
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    cancel_at_period_end = models.BooleanField(
        default=False,
        help_text="Cancel when the current period ends; does not change status by itself.",
    )
    canceled_at = models.DateTimeField(null=True, blank=True)
    pending_plan_id = models.CharField(
        max_length=64,
        blank=True,
        help_text="Plan scheduled to replace the current one at period end.",
    )
    pending_billing_interval = models.CharField(max_length=10, choices=BillingInterval.choices, blank=True)
    trial_start = models.DateTimeField(null=True, blank=True)
    trial_end = models.DateTimeField(null=True, blank=True)
    billing_interval = models.CharField(
        max_length=10,
        choices=BillingInterval.choices,
        default=BillingInterval.MONTHLY,
    )
    amount = models.PositiveIntegerField(default=0, help_text="Price per billing interval in minor units")
    currency = models.CharField(max_length=3, default=_default_currency)
    external_subscription_ref = models.CharField(max_length=200, blank=True)
    external_customer_ref = models.CharField(max_length=200, blank=True)
    payment_failure_count = models.PositiveIntegerField(
        default=0,
        help_text="Consecutive failed collection attempts since the last successful charge.",
    )
    version = models.PositiveIntegerField(default=1, help_text="Optimistic concurrency counter")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    TERMINAL_STATUSES = frozenset({Status.CANCELED})

    class Meta:
        db_table = "billing_subscription"
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["organization", "status"], name="billing_sub_org_status_idx"),
            models.Index(fields=["external_subscription_ref"], name="billing_sub_external_ref_idx"),
            models.Index(fields=["current_period_end"], name="billing_sub_period_end_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["organization"],
                condition=~Q(status="canceled"),
                name="unique_open_subscription_per_organization",
            ),
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def has_payment_method(self) -> bool:
        return bool(self.external_subscription_ref)

    def delete(self, *args, **kwargs):
        raise ValidationError("Subscriptions are never deleted; cancel them instead.")

    def __str__(self):
        return f"Subscription<{self.organization_id}:{self.plan_id}:{self.status}>"


class UsageRecord(models.Model):
    """Immutable aggregated usage increment written by a usage meter flush."""

    USAGE_TYPE_CHOICES = [(usage_type, usage_type.replace("_", " ").title()) for usage_type in USAGE_TYPES]

    id = models.BigAutoField(primary_key=True)
    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name="usage_records",
    )
    user_id = models.CharField(max_length=64, blank=True)
    usage_type = models.CharField(max_length=40, choices=USAGE_TYPE_CHOICES)
    quantity = models.PositiveBigIntegerField(validators=[MinValueValidator(1)])
    occurred_at = models.DateTimeField(help_text="First event time in the flushed bucket")
    billing_period = models.CharField(max_length=7, help_text="YYYY-MM")
    metadata = models.JSONField(default=dict, blank=True)
    flush_id = models.CharField(max_length=64, blank=True, help_text="Meter flush batch identifier")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_usage_record"
        verbose_name = "Usage record"
        verbose_name_plural = "Usage records"
        ordering = ["-occurred_at"]
        indexes = [
            models.Index(fields=["organization", "billing_period"], name="billing_usage_org_period_idx"),
            models.Index(fields=["organization", "usage_type", "occurred_at"], name="billing_usage_org_type_idx"),
            models.Index(fields=["flush_id"], name="billing_usage_flush_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gt=0), name="usage_record_quantity_positive"),
        ]

    def save(self, *args, **kwargs):
        if self.pk and UsageRecord.objects.filter(pk=self.pk).exists():
            raise ValidationError("UsageRecord rows are immutable and cannot be updated.")
        self.full_clean()
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("UsageRecord rows are immutable and cannot be deleted.")

    def __str__(self):
        return f"UsageRecord<{self.organization_id}:{self.usage_type}={self.quantity}>"


class UsageDailySummary(models.Model):
    """Per-day rollup of usage records, maintained by the aggregate_usage job."""

    id = models.BigAutoField(primary_key=True)
    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name="usage_daily_summaries",
    )
    usage_type = models.CharField(max_length=40)
    day = models.DateField()
    quantity = models.PositiveBigIntegerField(default=0)
    record_count = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_usage_daily_summary"
        verbose_name = "Usage daily summary"
        verbose_name_plural = "Usage daily summaries"
        ordering = ["-day", "usage_type"]
        constraints = [
            models.UniqueConstraint(
                fields=["organization", "usage_type", "day"],
                name="unique_usage_summary_per_day",
            ),
        ]

    def __str__(self):
        return f"UsageDailySummary<{self.organization_id}:{self.usage_type}:{self.day}>"


class Invoice(models.Model):
    """One invoice per organization and billing period."""

    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        PENDING = "pending", "Pending"
        PAID = "paid", "Paid"
        OVERDUE = "overdue", "Overdue"
        CANCELLED = "cancelled", "Cancelled"

    TERMINAL_STATUSES = frozenset({Status.PAID, Status.CANCELLED})

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    organization = models.ForeignKey(
        Organization,
        on_delete=models.PROTECT,
        related_name="invoices",
    )
    period_start = models.DateTimeField()
    period_end = models.DateTimeField()
    billing_period = models.CharField(max_length=7, help_text="YYYY-MM of period_start")
    line_items = models.JSONField(default=list, blank=True)
    subtotal = models.PositiveBigIntegerField(default=0)
    total = models.PositiveBigIntegerField(default=0)
    currency = models.CharField(max_length=3, default=_default_currency)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT)
    external_invoice_ref = models.CharField(
        max_length=200,
        blank=True,
        help_text="Processor payment request code once submitted",
    )
    due_date = models.DateTimeField(null=True, blank=True)
    submitted_at = models.DateTimeField(null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    reminder_sent_at = models.DateTimeField(null=True, blank=True)
    pdf_url = models.URLField(max_length=512, blank=True)
    version = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_invoice"
        verbose_name = "Invoice"
        verbose_name_plural = "Invoices"
        ordering = ["-period_start", "-created_at"]
        indexes = [
            models.Index(fields=["organization", "status"], name="billing_invoice_org_status_idx"),
            models.Index(fields=["status", "due_date"], name="billing_invoice_due_idx"),
            models.Index(fields=["external_invoice_ref"], name="billing_invoice_external_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["organization", "period_start", "period_end"],
                name="unique_invoice_per_organization_period",
            ),
            models.CheckConstraint(condition=Q(period_end__gt=models.F("period_start")), name="invoice_period_ordered"),
        ]

    def clean(self):
        super().clean()
        if self.currency:
            self.currency = self.currency.lower()

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def __str__(self):
        return f"Invoice<{self.organization_id}:{self.billing_period}:{self.status}>"


class PendingCharge(models.Model):
    """Amount owed outside the regular cycle (upgrade proration) awaiting invoicing."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        INVOICED = "invoiced", "Invoiced"
        VOID = "void", "Void"

    id = models.BigAutoField(primary_key=True)
    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name="pending_charges",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.PROTECT,
        related_name="pending_charges",
    )
    amount = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    currency = models.CharField(max_length=3, default=_default_currency)
    description = models.CharField(max_length=255)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="pending_charges",
    )
    idempotency_key = models.CharField(max_length=255, unique=True)
    details = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_pending_charge"
        verbose_name = "Pending charge"
        verbose_name_plural = "Pending charges"
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["organization", "status"], name="billing_charge_org_status_idx"),
        ]

    def __str__(self):
        return f"PendingCharge<{self.organization_id}:{self.amount}:{self.status}>"


class PaymentRecord(models.Model):
    """Payment outcome reported by the processor."""

    class Status(models.TextChoices):
        SUCCESS = "success", "Success"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    organization = models.ForeignKey(
        Organization,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_records",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_records",
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_records",
    )
    reference = models.CharField(max_length=255, unique=True)
    amount = models.PositiveBigIntegerField(default=0)
    currency = models.CharField(max_length=3, default=_default_currency)
    status = models.CharField(max_length=20, choices=Status.choices)
    paid_at = models.DateTimeField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_payment_record"
        verbose_name = "Payment record"
        verbose_name_plural = "Payment records"
        ordering = ["-created_at"]

    def __str__(self):
        return f"PaymentRecord<{self.reference}:{self.status}>"


class WebhookEventRecord(models.Model):
    """Deduplication marker for processor webhook events; ``processed_at`` means applied."""

    class Status(models.TextChoices):
        RECEIVED = "received", "Received"
        PROCESSING = "processing", "Processing"
        PROCESSED = "processed", "Processed"
        IGNORED = "ignored", "Ignored"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    external_event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=100, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.RECEIVED)
    received_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    organization = models.ForeignKey(
        Organization,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="webhook_events",
    )

    class Meta:
        db_table = "billing_webhook_event_record"
        verbose_name = "Webhook event record"
        verbose_name_plural = "Webhook event records"
        ordering = ["-received_at"]
        indexes = [
            models.Index(fields=["status"], name="webhook_record_status_idx"),
            models.Index(fields=["event_type"], name="webhook_record_type_idx"),
        ]

    def __str__(self):
        return f"WebhookEventRecord<{self.external_event_id}:{self.status}>"


class BillingJobRun(models.Model):
    """Claim and outcome of one scheduled job for one period key."""

    class Status(models.TextChoices):
        RUNNING = "running", "Running"
        COMPLETED = "completed", "Completed"
        PARTIAL = "partial", "Partially Completed"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    job_name = models.CharField(max_length=64)
    period_key = models.CharField(max_length=32)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.RUNNING)
    started_at = models.DateTimeField()
    completed_at = models.DateTimeField(null=True, blank=True)
    processed = models.PositiveIntegerField(default=0)
    errors = models.JSONField(default=list, blank=True)
    attempts = models.PositiveIntegerField(default=1)

    class Meta:
        db_table = "billing_job_run"
        verbose_name = "Billing job run"
        verbose_name_plural = "Billing job runs"
        ordering = ["-started_at"]
        constraints = [
            models.UniqueConstraint(fields=["job_name", "period_key"], name="unique_billing_job_run_period"),
        ]

    def failed_unit_ids(self):
        return [entry.get("organization_id") for entry in self.errors or [] if entry.get("organization_id")]

    def __str__(self):
        return f"BillingJobRun<{self.job_name}:{self.period_key}:{self.status}>"


class BillingAuditLog(models.Model):
    """Structured audit log for key billing lifecycle events."""

    id = models.BigAutoField(primary_key=True)
    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name="billing_audit_logs",
        help_text="Organization associated with the event.",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
    )
    event_type = models.CharField(max_length=100, help_text="Classification of the billing event.")
    actor = models.CharField(max_length=255, blank=True, help_text="User or system actor responsible.")
    request_id = models.CharField(max_length=255, blank=True, help_text="Correlation identifier for tracing.")
    details = models.JSONField(blank=True, null=True, help_text="Structured data describing the event.")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_audit_log"
        verbose_name = "Billing audit log"
        verbose_name_plural = "Billing audit logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["organization", "event_type"], name="billing_audit_org_event_idx"),
        ]

    def __str__(self):
        return f"BillingAuditLog<{self.organization_id}:{self.event_type}>"


class CancellationSurvey(models.Model):
    """Exit survey captured when a subscription is scheduled to cancel."""

    class Reason(models.TextChoices):
        TOO_EXPENSIVE = "too_expensive", "Too expensive"
        NOT_USING = "not_using", "Not using it enough"
        MISSING_FEATURES = "missing_features", "Missing features"
        SWITCHING_COMPETITOR = "switching_competitor", "Switching to a competitor"
        TEMPORARY_PAUSE = "temporary_pause", "Temporary pause"
        BUSINESS_CLOSED = "business_closed", "Business closed"
        POOR_SUPPORT = "poor_support", "Poor support"
        TECHNICAL_ISSUES = "technical_issues", "Technical issues"
        OTHER = "other", "Other"

    id = models.BigAutoField(primary_key=True)
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.CASCADE,
        related_name="cancellation_surveys",
    )
    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name="cancellation_surveys",
    )
    reason = models.CharField(max_length=40, choices=Reason.choices)
    other_reason = models.CharField(max_length=500, blank=True)
    feedback = models.TextField(blank=True)
    would_recommend = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(1), MaxValueValidator(10)],
    )
    willing_to_stay_with_discount = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_cancellation_survey"
        verbose_name = "Cancellation survey"
        verbose_name_plural = "Cancellation surveys"
        ordering = ["-created_at"]

    def save(self, *args, **kwargs):
        self.full_clean()
        return super().save(*args, **kwargs)

    def __str__(self):
        return f"CancellationSurvey<{self.organization_id}:{self.reason}>"
