"""FilterSet definitions for billing endpoints."""
from __future__ import annotations

import django_filters

from billing.models import BillingJobRun, Invoice


class InvoiceFilter(django_filters.FilterSet):
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    currency = django_filters.CharFilter(field_name="currency", lookup_expr="iexact")
    billing_period = django_filters.CharFilter(field_name="billing_period")
    period_after = django_filters.DateTimeFilter(field_name="period_start", lookup_expr="gte")
    period_before = django_filters.DateTimeFilter(field_name="period_end", lookup_expr="lte")
    due_before = django_filters.DateTimeFilter(field_name="due_date", lookup_expr="lte")

    class Meta:
        model = Invoice
        fields = ["status", "currency", "billing_period"]


class BillingJobRunFilter(django_filters.FilterSet):
    job_name = django_filters.CharFilter(field_name="job_name")
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    period_key = django_filters.CharFilter(field_name="period_key")

    class Meta:
        model = BillingJobRun
        fields = ["job_name", "status", "period_key"]
