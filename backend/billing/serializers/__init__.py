"""DRF serializers for billing flows (usage tracking, plan changes, invoices, jobs)."""
from __future__ import annotations

from typing import Any, Dict, Optional

from django.utils.translation import gettext_lazy as _
from rest_framework import serializers

from billing.exceptions import BillingError
from billing.models import BillingJobRun, CancellationSurvey, Invoice, Subscription
from billing.services.job_scheduler import JOB_NAMES, RUN_SCHEDULED
from billing.services.plan_catalog import BILLING_INTERVALS, USAGE_TYPES, get_plan


class OrganizationScopedSerializer(serializers.Serializer):
    organization_id = serializers.UUIDField()


class UsageTrackSerializer(OrganizationScopedSerializer):
    user_id = serializers.CharField(required=False, allow_blank=True, max_length=64)
    event_type = serializers.ChoiceField(choices=USAGE_TYPES)
    quantity = serializers.IntegerField(min_value=1, default=1)
    metadata = serializers.DictField(required=False, default=dict)


class PlanPreviewSerializer(OrganizationScopedSerializer):
    plan_id = serializers.CharField(max_length=64)
    billing_interval = serializers.ChoiceField(choices=BILLING_INTERVALS, required=False)

    def validate_plan_id(self, value: str) -> str:
        try:
            get_plan(value)
        except BillingError as exc:
            raise serializers.ValidationError(_(exc.message)) from exc
        return value


class PlanChangeSerializer(PlanPreviewSerializer):
    preview = serializers.DictField(required=False)


class CancellationSerializer(OrganizationScopedSerializer):
    reason = serializers.ChoiceField(choices=CancellationSurvey.Reason.choices)
    other_reason = serializers.CharField(required=False, allow_blank=True, max_length=500, default="")
    feedback = serializers.CharField(required=False, allow_blank=True, default="")
    would_recommend = serializers.IntegerField(required=False, allow_null=True, min_value=1, max_value=10)
    willing_to_stay_with_discount = serializers.BooleanField(required=False, default=False)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        if attrs["reason"] == CancellationSurvey.Reason.OTHER and not attrs.get("other_reason"):
            raise serializers.ValidationError({"other_reason": [_("Describe the reason when choosing 'other'.")]})
        return attrs


class InvoiceGenerateSerializer(OrganizationScopedSerializer):
    period_start = serializers.DateTimeField(required=False)
    period_end = serializers.DateTimeField(required=False)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        start, end = attrs.get("period_start"), attrs.get("period_end")
        if (start is None) != (end is None):
            raise serializers.ValidationError({"non_field_errors": [_("Provide both period_start and period_end.")]})
        return attrs


class InvoiceStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Invoice.Status.choices)
    cause = serializers.CharField(required=False, allow_blank=True, default="manual")


class InvoiceActionSerializer(serializers.Serializer):
    action = serializers.ChoiceField(choices=("sync", "submit", "remind"))


class JobRunRequestSerializer(serializers.Serializer):
    job = serializers.ChoiceField(choices=JOB_NAMES + (RUN_SCHEDULED,))
    billing_period = serializers.CharField(required=False, allow_blank=True, max_length=32)


class SubscriptionSerializer(serializers.ModelSerializer):
    """Snapshot of an organization subscription and its plan."""

    organization_id = serializers.UUIDField(source="organization.id", read_only=True)
    organization_name = serializers.CharField(source="organization.name", read_only=True)
    plan = serializers.SerializerMethodField()

    class Meta:
        model = Subscription
        fields = (
            "id",
            "organization_id",
            "organization_name",
            "plan_id",
            "plan",
            "status",
            "billing_interval",
            "amount",
            "currency",
            "current_period_start",
            "current_period_end",
            "cancel_at_period_end",
            "canceled_at",
            "pending_plan_id",
            "pending_billing_interval",
            "trial_start",
            "trial_end",
            "payment_failure_count",
            "external_subscription_ref",
            "version",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields

    def get_plan(self, obj: Subscription) -> Optional[Dict[str, Any]]:
        try:
            plan = get_plan(obj.plan_id)
        except BillingError:
            return None
        return {
            "key": plan.key,
            "name": plan.name,
            "monthly_price": plan.monthly_price,
            "annual_price": plan.annual_price,
            "per_user": plan.per_user,
            "services": list(plan.services),
        }


class InvoiceSerializer(serializers.ModelSerializer):
    organization_id = serializers.UUIDField(source="organization.id", read_only=True)

    class Meta:
        model = Invoice
        fields = (
            "id",
            "organization_id",
            "billing_period",
            "period_start",
            "period_end",
            "line_items",
            "subtotal",
            "total",
            "currency",
            "status",
            "external_invoice_ref",
            "due_date",
            "submitted_at",
            "paid_at",
            "reminder_sent_at",
            "pdf_url",
            "version",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields


class BillingJobRunSerializer(serializers.ModelSerializer):
    class Meta:
        model = BillingJobRun
        fields = (
            "id",
            "job_name",
            "period_key",
            "status",
            "started_at",
            "completed_at",
            "processed",
            "errors",
            "attempts",
        )
        read_only_fields = fields


__all__ = [
    "BillingJobRunSerializer",
    "CancellationSerializer",
    "InvoiceActionSerializer",
    "InvoiceGenerateSerializer",
    "InvoiceSerializer",
    "InvoiceStatusSerializer",
    "JobRunRequestSerializer",
    "OrganizationScopedSerializer",
    "PlanChangeSerializer",
    "PlanPreviewSerializer",
    "SubscriptionSerializer",
    "UsageTrackSerializer",
]
