"""Customer-facing billing notifications; the default backend only logs."""
from __future__ import annotations

import logging
from typing import Optional

from django.conf import settings
from django.utils.module_loading import import_string

from billing.observability.logging import log_billing_event

logger = logging.getLogger(__name__)

DEFAULT_NOTIFIER = "billing.services.notifications.LoggingNotifier"


class LoggingNotifier:
    """Emit each notification as a structured billing log line."""

    def overdue_reminder(self, invoice) -> None:
        log_billing_event(
            message="billing.notification.invoice_overdue",
            organization_id=str(invoice.organization_id),
            extra={
                "invoice_id": str(invoice.pk),
                "total": invoice.total,
                "currency": invoice.currency,
                "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
                "email": invoice.organization.contact_email,
            },
        )

    def trial_ending(self, subscription, days_left: int) -> None:
        log_billing_event(
            message="billing.notification.trial_ending",
            organization_id=str(subscription.organization_id),
            extra={
                "subscription_id": str(subscription.pk),
                "days_left": days_left,
                "trial_end": subscription.trial_end.isoformat() if subscription.trial_end else None,
            },
        )

    def trial_expired(self, subscription) -> None:
        log_billing_event(
            message="billing.notification.trial_expired",
            organization_id=str(subscription.organization_id),
            extra={"subscription_id": str(subscription.pk), "status": subscription.status},
        )

    def payment_failed(self, subscription, reason: Optional[str] = None) -> None:
        log_billing_event(
            message="billing.notification.payment_failed",
            organization_id=str(subscription.organization_id),
            level=logging.WARNING,
            extra={
                "subscription_id": str(subscription.pk),
                "failures": subscription.payment_failure_count,
                "reason": reason,
            },
        )


def get_notifier():
    path = getattr(settings, "BILLING_NOTIFIER", DEFAULT_NOTIFIER) or DEFAULT_NOTIFIER
    return import_string(path)()


__all__ = ["LoggingNotifier", "get_notifier"]
