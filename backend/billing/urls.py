"""URL routes for billing endpoints."""
from django.urls import path

from .views import (
    BillingJobView,
    CurrentSubscriptionView,
    InvoiceDetailView,
    InvoiceListView,
    PaymentWebhookView,
    SubscriptionCancelView,
    SubscriptionChangeView,
    SubscriptionPreviewView,
    SubscriptionReactivateView,
    UsageTrackView,
)

app_name = "billing"

urlpatterns = [
    path("webhooks/payments/", PaymentWebhookView.as_view(), name="payment-webhook"),
    path("billing/track/", UsageTrackView.as_view(), name="usage-track"),
    path("subscriptions/current/", CurrentSubscriptionView.as_view(), name="subscription-current"),
    path("subscriptions/preview/", SubscriptionPreviewView.as_view(), name="subscription-preview"),
    path("subscriptions/change/", SubscriptionChangeView.as_view(), name="subscription-change"),
    path("subscriptions/cancel/", SubscriptionCancelView.as_view(), name="subscription-cancel"),
    path("subscriptions/reactivate/", SubscriptionReactivateView.as_view(), name="subscription-reactivate"),
    path("billing/invoices/", InvoiceListView.as_view(), name="invoice-list"),
    path("billing/invoices/<uuid:pk>/", InvoiceDetailView.as_view(), name="invoice-detail"),
    path("billing/jobs/", BillingJobView.as_view(), name="billing-jobs"),
]
