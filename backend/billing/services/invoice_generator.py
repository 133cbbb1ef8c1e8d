"""Invoice generation, processor submission and status synchronisation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.db.models import Count, F, Q, Sum
from django.utils.dateparse import parse_datetime

from organizations.models import Organization

from billing.clock import Clock, get_clock
from billing.exceptions import (
    ConcurrencyConflict,
    DuplicatePeriodError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from billing.models import BillingAuditLog, Invoice, PendingCharge, Subscription, UsageRecord
from billing.observability.logging import log_billing_event
from billing.services.notifications import get_notifier
from billing.services.paystack import PaystackClient, get_processor_client
from billing.services.plan_catalog import ANNUAL, get_plan, get_usage_pricing, plan_price
from billing.services.subscription_ledger import get_organization

logger = logging.getLogger(__name__)

InvoiceStatus = Invoice.Status

DEFAULT_DUE_DAYS = 7
DEFAULT_CONCURRENCY_RETRIES = 5

INVOICE_TRANSITIONS = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.PENDING, InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
}

BILLABLE_SUBSCRIPTION_STATUSES = (
    Subscription.Status.TRIALING,
    Subscription.Status.ACTIVE,
    Subscription.Status.PAST_DUE,
)


def billable_subscriptions(period_end: datetime):
    """Subscriptions that had started before ``period_end`` and can still be billed."""

    return Subscription.objects.filter(status__in=BILLABLE_SUBSCRIPTION_STATUSES).filter(
        Q(created_at__lt=period_end) | Q(current_period_start__lt=period_end)
    )


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: int
    unit_price: Decimal
    total: int
    kind: str
    service: str = ""
    usage_type: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "total": self.total,
            "service": self.service,
            "usage_type": self.usage_type,
            "kind": self.kind,
        }


def month_bounds(instant: datetime) -> Tuple[datetime, datetime]:
    """Return ``[first of month, first of next month)`` in UTC for ``instant``."""

    instant = instant.astimezone(dt_timezone.utc)
    start = instant.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def check_invoice_transition(invoice: Invoice, new_status: str) -> None:
    if new_status not in INVOICE_TRANSITIONS.get(invoice.status, frozenset()):
        raise InvalidStateError(
            f"Cannot move invoice from '{invoice.status}' to '{new_status}'.",
            details={"invoice_id": str(invoice.pk), "from": invoice.status, "to": new_status},
        )


class InvoiceGenerator:
    def __init__(
        self,
        *,
        clock: Optional[Clock] = None,
        client: Optional[PaystackClient] = None,
        notifier=None,
        max_retries: Optional[int] = None,
    ) -> None:
        self.clock = clock or get_clock()
        self._client = client
        self._notifier = notifier
        self.max_retries = max_retries or getattr(settings, "BILLING_CONCURRENCY_RETRIES", DEFAULT_CONCURRENCY_RETRIES)

    @property
    def client(self) -> PaystackClient:
        if self._client is None:
            self._client = get_processor_client()
        return self._client

    @property
    def notifier(self):
        if self._notifier is None:
            self._notifier = get_notifier()
        return self._notifier

    # Generation

    def generate(
        self,
        organization_id: Any,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        *,
        actor: str = "",
    ) -> Invoice:
        """
        Build and persist the invoice for one organization and period.

        Raises :class:`DuplicatePeriodError` carrying the existing invoice when
        the period was already invoiced, including when a concurrent insert
        wins the race.
        """

        organization = get_organization(organization_id)
        period_start, period_end = self._resolve_period(period_start, period_end)

        existing = Invoice.objects.filter(
            organization=organization, period_start=period_start, period_end=period_end
        ).first()
        if existing is not None:
            raise DuplicatePeriodError(
                "Invoice already exists for this period.",
                invoice=existing,
                details={"invoice_id": str(existing.pk), "billing_period": existing.billing_period},
            )

        subscription = (
            billable_subscriptions(period_end)
            .filter(organization=organization)
            .order_by("-created_at")
            .first()
        )

        items: List[LineItem] = []
        if subscription is not None:
            base = self._base_plan_item(subscription, organization, period_start, period_end)
            if base is not None:
                items.append(base)
        items.extend(self._overage_items(organization, period_start, period_end))
        charges = list(
            PendingCharge.objects.filter(organization=organization, status=PendingCharge.Status.PENDING).order_by("created_at")
        )
        items.extend(
            LineItem(
                description=charge.description,
                quantity=1,
                unit_price=Decimal(charge.amount),
                total=charge.amount,
                kind="proration",
            )
            for charge in charges
        )

        subtotal = sum(item.total for item in items)
        now = self.clock.now()
        due_days = int(getattr(settings, "BILLING_INVOICE_DUE_DAYS", DEFAULT_DUE_DAYS))
        is_free = subtotal == 0

        try:
            with transaction.atomic():
                invoice = Invoice.objects.create(
                    organization=organization,
                    period_start=period_start,
                    period_end=period_end,
                    billing_period=period_start.strftime("%Y-%m"),
                    line_items=[item.as_dict() for item in items],
                    subtotal=subtotal,
                    total=subtotal,
                    currency=subscription.currency if subscription else getattr(settings, "BILLING_CURRENCY", "zar").lower(),
                    status=InvoiceStatus.PAID if is_free else InvoiceStatus.DRAFT,
                    paid_at=now if is_free else None,
                    due_date=period_end + timedelta(days=due_days),
                )
                if charges:
                    PendingCharge.objects.filter(
                        pk__in=[charge.pk for charge in charges],
                        status=PendingCharge.Status.PENDING,
                    ).update(status=PendingCharge.Status.INVOICED, invoice=invoice)
                BillingAuditLog.objects.create(
                    organization=organization,
                    subscription=subscription,
                    event_type="billing.invoice.generated",
                    actor=actor,
                    details={
                        "invoice_id": str(invoice.pk),
                        "billing_period": invoice.billing_period,
                        "total": invoice.total,
                        "line_items": len(items),
                    },
                )
        except IntegrityError as exc:
            existing = Invoice.objects.filter(
                organization=organization, period_start=period_start, period_end=period_end
            ).first()
            if existing is None:
                raise
            raise DuplicatePeriodError(
                "Invoice already exists for this period.",
                invoice=existing,
                details={"invoice_id": str(existing.pk), "billing_period": existing.billing_period},
            ) from exc

        log_billing_event(
            message="billing.invoice.generated",
            organization_id=str(organization.pk),
            actor=actor or None,
            extra={"invoice_id": str(invoice.pk), "total": invoice.total, "status": invoice.status},
        )
        return invoice

    def _resolve_period(
        self, period_start: Optional[datetime], period_end: Optional[datetime]
    ) -> Tuple[datetime, datetime]:
        if period_start is None and period_end is None:
            return month_bounds(self.clock.now())
        if period_start is None or period_end is None:
            raise ValidationError("period_start and period_end must be provided together.")
        if period_end <= period_start:
            raise ValidationError(
                "period_end must be after period_start.",
                details={"period_start": period_start.isoformat(), "period_end": period_end.isoformat()},
            )
        return period_start, period_end

    @staticmethod
    def _base_plan_item(
        subscription: Subscription,
        organization: Organization,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[LineItem]:
        plan = get_plan(subscription.plan_id)
        if subscription.billing_interval == ANNUAL:
            started = subscription.current_period_start
            if started is None or not (period_start <= started < period_end):
                return None

        quantity = max(1, organization.seat_count) if plan.per_user else 1
        unit_price = plan_price(plan, subscription.billing_interval, 1)
        description = plan.name
        if plan.per_user:
            description = f"{plan.name} ({quantity} users)"
        if subscription.status == Subscription.Status.TRIALING:
            unit_price = 0
            description = f"{description} (trial)"
        return LineItem(
            description=description,
            quantity=quantity,
            unit_price=Decimal(unit_price),
            total=unit_price * quantity,
            kind="subscription",
            service=plan.services[0] if len(plan.services) == 1 else "bundle",
        )

    @staticmethod
    def _overage_items(organization: Organization, period_start: datetime, period_end: datetime) -> List[LineItem]:
        totals = (
            UsageRecord.objects.filter(
                organization=organization,
                occurred_at__gte=period_start,
                occurred_at__lt=period_end,
            )
            .values("usage_type")
            .annotate(quantity=Sum("quantity"))
            .order_by("usage_type")
        )
        pricing = get_usage_pricing()
        items: List[LineItem] = []
        for row in totals:
            price = pricing.get(row["usage_type"])
            if price is None or price.unlimited:
                continue
            overage = price.overage_quantity(row["quantity"] or 0)
            if overage <= 0:
                continue
            items.append(
                LineItem(
                    description=f"{price.description} overage ({overage:,} beyond {price.included:,} included)",
                    quantity=overage,
                    unit_price=price.overage_price,
                    total=price.overage_total(row["quantity"]),
                    kind="overage",
                    service=price.service,
                    usage_type=price.usage_type,
                )
            )
        return items

    # Processor

    def ensure_customer(self, organization: Organization) -> str:
        """Return the processor customer code, creating the customer on first use."""

        if organization.external_customer_ref:
            return organization.external_customer_ref
        data = self.client.create_customer(
            email=organization.contact_email,
            name=organization.name,
            metadata={"organization_id": str(organization.pk)},
        )
        customer_code = data.get("customer_code")
        if not customer_code:
            raise ValidationError("Processor did not return a customer code.", details={"organization_id": str(organization.pk)})
        Organization.objects.filter(pk=organization.pk).update(external_customer_ref=customer_code)
        organization.external_customer_ref = customer_code
        return customer_code

    def submit(self, invoice_id: Any, *, actor: str = "") -> Invoice:
        """Create the processor payment request for a draft invoice; a second call is a no-op."""

        invoice = self._get(invoice_id)
        if invoice.external_invoice_ref:
            return invoice
        if invoice.status != InvoiceStatus.DRAFT:
            raise InvalidStateError(
                f"Only draft invoices can be submitted (status is '{invoice.status}').",
                details={"invoice_id": str(invoice.pk)},
            )
        if invoice.total <= 0:
            raise InvalidStateError("Zero-total invoices are not submitted.", details={"invoice_id": str(invoice.pk)})

        customer = self.ensure_customer(invoice.organization)
        data = self._existing_payment_request(customer, invoice) or self.client.create_payment_request(
            customer=customer,
            amount=invoice.total,
            due_date=invoice.due_date,
            description=f"Invoice for {invoice.billing_period}",
            line_items=[
                {"name": item.get("description", ""), "amount": item.get("total", 0), "quantity": item.get("quantity", 1)}
                for item in invoice.line_items
            ],
            currency=invoice.currency,
            metadata={
                "invoice_id": str(invoice.pk),
                "organization_id": str(invoice.organization_id),
                "billing_period": invoice.billing_period,
            },
        )
        request_code = data.get("request_code")
        if not request_code:
            raise ValidationError("Processor did not return a payment request code.", details={"invoice_id": str(invoice.pk)})

        def mutate(current: Invoice) -> Dict[str, Any]:
            if current.external_invoice_ref:
                return {}
            check_invoice_transition(current, InvoiceStatus.PENDING)
            return {
                "external_invoice_ref": request_code,
                "pdf_url": data.get("pdf_url") or current.pdf_url,
                "status": InvoiceStatus.PENDING,
                "submitted_at": self.clock.now(),
            }

        return self._apply_changes(invoice.pk, mutate, event_type="billing.invoice.submitted", actor=actor)

    def _existing_payment_request(self, customer: str, invoice: Invoice) -> Optional[Dict[str, Any]]:
        """Payment request an earlier, unconfirmed submission already created for ``invoice``."""

        listing = self.client.list_payment_requests(customer=customer).get("data") or []
        for request in listing:
            metadata = request.get("metadata") if isinstance(request, dict) else None
            if isinstance(metadata, dict) and metadata.get("invoice_id") == str(invoice.pk):
                logger.info("Reusing payment request %s for invoice %s.", request.get("request_code"), invoice.pk)
                return request
        return None

    def sync_status(self, invoice_id: Any, *, actor: str = "job.sync_invoices") -> Dict[str, Any]:
        """Pull the processor's view of the payment request and reconcile the local row."""

        invoice = self._get(invoice_id)
        if not invoice.external_invoice_ref:
            return {"changed": False, "status": invoice.status, "reason": "not_submitted"}
        if invoice.is_terminal:
            return {"changed": False, "status": invoice.status}

        data = self.client.fetch_payment_request(invoice.external_invoice_ref)
        remote_status = str(data.get("status") or "").lower()
        pdf_url = data.get("pdf_url") or ""

        target: Optional[str] = None
        if data.get("paid") or remote_status in ("success", "paid"):
            target = InvoiceStatus.PAID
        elif remote_status in ("cancelled", "archived"):
            target = InvoiceStatus.CANCELLED

        def mutate(current: Invoice) -> Dict[str, Any]:
            changes: Dict[str, Any] = {}
            if target and target != current.status:
                check_invoice_transition(current, target)
                changes["status"] = target
                if target == InvoiceStatus.PAID:
                    changes["paid_at"] = _parse_timestamp(data.get("paid_at")) or self.clock.now()
            if pdf_url and pdf_url != current.pdf_url:
                changes["pdf_url"] = pdf_url
            return changes

        updated = self._apply_changes(invoice.pk, mutate, event_type="billing.invoice.synced", actor=actor)
        changed = updated.version != invoice.version
        return {"changed": changed, "status": updated.status}

    def send_reminder(self, invoice_id: Any, *, actor: str = "") -> Invoice:
        invoice = self._get(invoice_id)
        if invoice.status not in (InvoiceStatus.PENDING, InvoiceStatus.OVERDUE):
            raise InvalidStateError(
                f"Reminders are only sent for pending or overdue invoices (status is '{invoice.status}').",
                details={"invoice_id": str(invoice.pk)},
            )
        if invoice.external_invoice_ref:
            self.client.notify_payment_request(invoice.external_invoice_ref)
        self.notifier.overdue_reminder(invoice)
        return self._apply_changes(
            invoice.pk,
            lambda current: {"reminder_sent_at": self.clock.now()},
            event_type="billing.invoice.reminder_sent",
            actor=actor,
        )

    # Status

    def update_status(self, invoice_id: Any, new_status: str, cause: str = "", *, actor: str = "") -> Invoice:
        if new_status not in InvoiceStatus.values:
            raise ValidationError(f"Unknown invoice status '{new_status}'.", details={"status": new_status})

        invoice = self._get(invoice_id)
        if invoice.status == new_status:
            return invoice
        check_invoice_transition(invoice, new_status)
        if new_status == InvoiceStatus.CANCELLED and invoice.external_invoice_ref:
            self.client.archive_payment_request(invoice.external_invoice_ref)

        def mutate(current: Invoice) -> Dict[str, Any]:
            if current.status == new_status:
                return {}
            check_invoice_transition(current, new_status)
            changes: Dict[str, Any] = {"status": new_status}
            if new_status == InvoiceStatus.PAID:
                changes["paid_at"] = self.clock.now()
            return changes

        return self._apply_changes(
            invoice.pk,
            mutate,
            event_type="billing.invoice.status_changed",
            actor=actor,
            details={"cause": cause} if cause else None,
        )

    def mark_paid(
        self,
        invoice_id: Any,
        *,
        paid_at: Optional[datetime] = None,
        reference: str = "",
        actor: str = "",
    ) -> Invoice:
        """Mark an invoice paid from a processor notification; already-paid is a no-op."""

        def mutate(current: Invoice) -> Dict[str, Any]:
            if current.status == InvoiceStatus.PAID:
                return {}
            check_invoice_transition(current, InvoiceStatus.PAID)
            return {"status": InvoiceStatus.PAID, "paid_at": paid_at or self.clock.now()}

        return self._apply_changes(
            invoice_id,
            mutate,
            event_type="billing.invoice.paid",
            actor=actor,
            details={"reference": reference} if reference else None,
        )

    def overdue_invoices(self, now: Optional[datetime] = None):
        now = now or self.clock.now()
        return (
            Invoice.objects.select_related("organization")
            .filter(status=InvoiceStatus.PENDING, due_date__lt=now)
            .order_by("due_date")
        )

    def invoices_awaiting_reminder(self, now: Optional[datetime] = None):
        """Past-due pending invoices plus overdue ones whose reminder never went out."""

        now = now or self.clock.now()
        return (
            Invoice.objects.select_related("organization")
            .filter(
                Q(status=InvoiceStatus.PENDING, due_date__lt=now)
                | Q(status=InvoiceStatus.OVERDUE, reminder_sent_at__isnull=True)
            )
            .order_by("due_date")
        )

    def invoice_stats(self, organization_id: Any) -> Dict[str, int]:
        organization = get_organization(organization_id)
        stats = Invoice.objects.filter(organization=organization).aggregate(
            total_paid=Sum("total", filter=Q(status=InvoiceStatus.PAID)),
            total_pending=Sum("total", filter=Q(status__in=[InvoiceStatus.DRAFT, InvoiceStatus.PENDING])),
            total_overdue=Sum("total", filter=Q(status=InvoiceStatus.OVERDUE)),
            invoice_count=Count("id"),
        )
        return {key: int(value or 0) for key, value in stats.items()}

    # Internals

    @staticmethod
    def _get(invoice_id: Any) -> Invoice:
        try:
            return Invoice.objects.select_related("organization").get(pk=invoice_id)
        except (Invoice.DoesNotExist, DjangoValidationError, ValueError, TypeError) as exc:
            raise NotFoundError("Invoice not found.", details={"invoice_id": str(invoice_id)}) from exc

    def _apply_changes(
        self,
        invoice_id: Any,
        mutate: Callable[[Invoice], Dict[str, Any]],
        *,
        event_type: str,
        actor: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> Invoice:
        for attempt in range(1, self.max_retries + 1):
            current = self._get(invoice_id)
            changes = mutate(current)
            if not changes:
                return current

            with transaction.atomic():
                updated = Invoice.objects.filter(pk=current.pk, version=current.version).update(
                    **changes,
                    version=F("version") + 1,
                    updated_at=self.clock.now(),
                )
                if updated:
                    audit = {key: value.isoformat() if isinstance(value, datetime) else value for key, value in changes.items()}
                    audit.update(invoice_id=str(current.pk), previous_status=current.status, **(details or {}))
                    BillingAuditLog.objects.create(
                        organization_id=current.organization_id,
                        event_type=event_type,
                        actor=actor,
                        details=audit,
                    )

            if updated:
                log_billing_event(
                    message=event_type,
                    organization_id=str(current.organization_id),
                    actor=actor or None,
                    extra={"invoice_id": str(current.pk), "changes": sorted(changes)},
                )
                return self._get(current.pk)

            logger.info("Version conflict on invoice %s (attempt %s/%s).", current.pk, attempt, self.max_retries)

        raise ConcurrencyConflict(
            "Invoice kept changing underneath the update.",
            details={"invoice_id": str(invoice_id), "attempts": self.max_retries},
        )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    parsed = parse_datetime(str(value))
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt_timezone.utc)
    return parsed


__all__ = [
    "INVOICE_TRANSITIONS",
    "InvoiceGenerator",
    "LineItem",
    "billable_subscriptions",
    "check_invoice_transition",
    "month_bounds",
]
