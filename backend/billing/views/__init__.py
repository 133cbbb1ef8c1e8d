"""Billing API views."""
from billing.views.invoices import InvoiceDetailView, InvoiceListView
from billing.views.jobs import BillingJobView
from billing.views.subscriptions import (
    CurrentSubscriptionView,
    SubscriptionCancelView,
    SubscriptionChangeView,
    SubscriptionPreviewView,
    SubscriptionReactivateView,
)
from billing.views.usage import UsageTrackView
from billing.views.webhooks import PaymentWebhookView

__all__ = [
    "BillingJobView",
    "CurrentSubscriptionView",
    "InvoiceDetailView",
    "InvoiceListView",
    "PaymentWebhookView",
    "SubscriptionCancelView",
    "SubscriptionChangeView",
    "SubscriptionPreviewView",
    "SubscriptionReactivateView",
    "UsageTrackView",
]
