from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html

from .models import (
    BillingAuditLog,
    BillingJobRun,
    CancellationSurvey,
    Invoice,
    PaymentRecord,
    PendingCharge,
    Subscription,
    UsageDailySummary,
    UsageRecord,
    WebhookEventRecord,
)


class OrganizationLinkMixin:
    @admin.display(description="Organization")
    def organization_link(self, obj):
        url = reverse("admin:organizations_organization_change", args=[obj.organization_id])
        return format_html('<a href="{}">{}</a>', url, obj.organization_id)


@admin.register(Subscription)
class SubscriptionAdmin(OrganizationLinkMixin, admin.ModelAdmin):
    """Subscriptions change through the ledger; the admin only inspects them."""

    list_display = (
        "id",
        "organization_link",
        "plan_id",
        "status",
        "billing_interval",
        "current_period_end",
        "cancel_at_period_end",
        "payment_failure_count",
        "version",
    )
    search_fields = ("id", "organization__name", "external_subscription_ref", "external_customer_ref")
    list_filter = ("status", "billing_interval", "cancel_at_period_end", "plan_id")
    readonly_fields = [field.name for field in Subscription._meta.fields]
    ordering = ("-created_at",)
    list_select_related = ("organization",)

    fieldsets = (
        ("Ownership", {"fields": ("id", "organization")}),
        (
            "Plan",
            {
                "fields": (
                    "plan_id",
                    "billing_interval",
                    "amount",
                    "currency",
                    "pending_plan_id",
                    "pending_billing_interval",
                )
            },
        ),
        (
            "Lifecycle",
            {
                "fields": (
                    "status",
                    "current_period_start",
                    "current_period_end",
                    "trial_start",
                    "trial_end",
                    "cancel_at_period_end",
                    "canceled_at",
                    "payment_failure_count",
                )
            },
        ),
        ("Processor", {"fields": ("external_subscription_ref", "external_customer_ref")}),
        ("Timestamps", {"fields": ("version", "created_at", "updated_at")}),
    )

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Invoice)
class InvoiceAdmin(OrganizationLinkMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "organization_link",
        "billing_period",
        "status",
        "total",
        "currency",
        "due_date",
        "external_invoice_ref",
    )
    search_fields = ("id", "organization__name", "external_invoice_ref")
    list_filter = ("status", "billing_period", "currency")
    readonly_fields = [field.name for field in Invoice._meta.fields]
    ordering = ("-period_start",)
    list_select_related = ("organization",)

    def has_add_permission(self, request):
        return False


@admin.register(UsageRecord)
class UsageRecordAdmin(OrganizationLinkMixin, admin.ModelAdmin):
    list_display = ("id", "organization_link", "usage_type", "quantity", "billing_period", "occurred_at")
    search_fields = ("organization__name", "flush_id", "user_id")
    list_filter = ("usage_type", "billing_period")
    readonly_fields = [field.name for field in UsageRecord._meta.fields]
    ordering = ("-occurred_at",)
    list_select_related = ("organization",)

    def has_add_permission(self, request):
        return False


@admin.register(UsageDailySummary)
class UsageDailySummaryAdmin(OrganizationLinkMixin, admin.ModelAdmin):
    list_display = ("organization_link", "usage_type", "day", "quantity", "record_count")
    list_filter = ("usage_type", "day")
    ordering = ("-day",)
    list_select_related = ("organization",)


@admin.register(PendingCharge)
class PendingChargeAdmin(OrganizationLinkMixin, admin.ModelAdmin):
    list_display = ("id", "organization_link", "amount", "currency", "status", "invoice", "created_at")
    search_fields = ("organization__name", "idempotency_key", "description")
    list_filter = ("status",)
    readonly_fields = ("idempotency_key", "created_at")
    raw_id_fields = ("organization", "subscription", "invoice")
    ordering = ("-created_at",)


@admin.register(PaymentRecord)
class PaymentRecordAdmin(admin.ModelAdmin):
    list_display = ("reference", "organization", "amount", "currency", "status", "invoice", "paid_at")
    search_fields = ("reference", "organization__name")
    list_filter = ("status", "currency")
    readonly_fields = [field.name for field in PaymentRecord._meta.fields]
    ordering = ("-created_at",)
    list_select_related = ("organization", "invoice")

    def has_add_permission(self, request):
        return False


@admin.register(WebhookEventRecord)
class WebhookEventRecordAdmin(admin.ModelAdmin):
    list_display = ("external_event_id", "event_type", "status", "attempts", "received_at", "processed_at")
    search_fields = ("external_event_id", "event_type", "last_error")
    list_filter = ("status", "event_type")
    readonly_fields = [field.name for field in WebhookEventRecord._meta.fields]
    ordering = ("-received_at",)

    def has_add_permission(self, request):
        return False


@admin.register(BillingJobRun)
class BillingJobRunAdmin(admin.ModelAdmin):
    list_display = ("job_name", "period_key", "status", "processed", "attempts", "started_at", "completed_at")
    search_fields = ("job_name", "period_key")
    list_filter = ("job_name", "status")
    readonly_fields = [field.name for field in BillingJobRun._meta.fields]
    ordering = ("-started_at",)


@admin.register(BillingAuditLog)
class BillingAuditLogAdmin(OrganizationLinkMixin, admin.ModelAdmin):
    list_display = ("created_at", "organization_link", "event_type", "actor", "request_id")
    search_fields = ("event_type", "actor", "request_id", "organization__name")
    list_filter = ("event_type",)
    readonly_fields = ("organization", "subscription", "event_type", "actor", "request_id", "details", "created_at")
    ordering = ("-created_at",)
    list_select_related = ("organization",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(CancellationSurvey)
class CancellationSurveyAdmin(OrganizationLinkMixin, admin.ModelAdmin):
    list_display = ("created_at", "organization_link", "reason", "would_recommend", "willing_to_stay_with_discount")
    list_filter = ("reason", "willing_to_stay_with_discount")
    search_fields = ("organization__name", "other_reason", "feedback")
    readonly_fields = [field.name for field in CancellationSurvey._meta.fields]
    ordering = ("-created_at",)
