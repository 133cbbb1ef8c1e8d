"""
Reconcile payment processor webhooks into local subscription and invoice state.

Each delivery is reserved by dedup key under ``select_for_update`` and the
handler runs while that row lock is held, so concurrent redeliveries of the
same event serialise and the loser sees ``processed_at`` already set.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from typing import Any, Callable, Dict, Mapping, Optional, Union

from django.conf import settings
from django.db import transaction
from django.utils.dateparse import parse_datetime

from organizations.models import Organization

from billing.clock import Clock, get_clock
from billing.exceptions import BillingError, ValidationError
from billing.models import Invoice, PaymentRecord, Subscription, WebhookEventRecord
from billing.observability.logging import log_billing_event
from billing.observability.metrics import (
    PAYMENT_FAILURE_COUNT,
    PAYMENT_SUCCESS_COUNT,
    WEBHOOK_EVENT_COUNT,
    WEBHOOK_FAILURE_COUNT,
)
from billing.services.invoice_generator import InvoiceGenerator
from billing.services.notifications import get_notifier
from billing.services.paystack import PaystackClient, get_processor_client
from billing.services.plan_catalog import find_plan_by_processor_code, get_plan
from billing.services.references import parse_transaction_reference
from billing.services.subscription_ledger import Cause, SubscriptionLedger

logger = logging.getLogger(__name__)

SubscriptionStatus = Subscription.Status

PROCESSOR_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "non-renewing": SubscriptionStatus.ACTIVE,
    "attention": SubscriptionStatus.PAST_DUE,
    "cancelled": SubscriptionStatus.CANCELED,
    "completed": SubscriptionStatus.CANCELED,
}


# Events


@dataclass(frozen=True)
class SubscriptionCreated:
    subscription_code: str
    customer_code: str = ""
    customer_email: str = ""
    organization_id: str = ""
    plan_id: str = ""
    plan_code: str = ""
    processor_status: str = "active"
    next_payment_date: Optional[datetime] = None
    started_at: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionDisabled:
    subscription_code: str


@dataclass(frozen=True)
class SubscriptionNotRenewing:
    subscription_code: str


@dataclass(frozen=True)
class ChargeSucceeded:
    reference: str
    amount: int
    currency: str = ""
    paid_at: Optional[datetime] = None
    customer_code: str = ""
    organization_id: str = ""
    subscription_code: str = ""
    invoice_id: str = ""
    plan_id: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InvoicePaymentFailed:
    subscription_code: str
    invoice_code: str = ""
    amount: int = 0
    description: str = ""


@dataclass(frozen=True)
class PaymentRequestSucceeded:
    request_code: str
    amount: int = 0
    paid_at: Optional[datetime] = None


WebhookEvent = Union[
    SubscriptionCreated,
    SubscriptionDisabled,
    SubscriptionNotRenewing,
    ChargeSucceeded,
    InvoicePaymentFailed,
    PaymentRequestSucceeded,
]


@dataclass(frozen=True)
class WebhookResult:
    """Outcome of :meth:`WebhookReconciler.handle`."""

    status: str
    event_type: str = ""
    event_id: str = ""
    detail: str = ""

    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    REJECTED = "rejected"

    def as_dict(self) -> Dict[str, str]:
        return {"status": self.status, "event_type": self.event_type, "event_id": self.event_id, "detail": self.detail}


# Parsing


def _mapping(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _require(data: Mapping[str, Any], key: str, event_type: str) -> str:
    value = _text(data.get(key))
    if not value:
        raise ValidationError(
            f"Webhook '{event_type}' is missing required field 'data.{key}'.",
            details={"event": event_type, "field": key},
        )
    return value


def _amount(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Webhook amount must be an integer number of minor units.") from exc


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=dt_timezone.utc)
    parsed = parse_datetime(str(value))
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt_timezone.utc)
    return parsed


def _parse_subscription_created(data: Dict[str, Any]) -> SubscriptionCreated:
    customer = _mapping(data.get("customer"))
    plan = _mapping(data.get("plan"))
    metadata = {**_mapping(customer.get("metadata")), **_mapping(data.get("metadata"))}
    return SubscriptionCreated(
        subscription_code=_require(data, "subscription_code", "subscription.create"),
        customer_code=_text(customer.get("customer_code")),
        customer_email=_text(customer.get("email")),
        organization_id=_text(metadata.get("organization_id")),
        plan_id=_text(metadata.get("plan_id")),
        plan_code=_text(plan.get("plan_code")),
        processor_status=_text(data.get("status")).lower() or "active",
        next_payment_date=_timestamp(data.get("next_payment_date")),
        started_at=_timestamp(data.get("start") or data.get("createdAt")),
    )


def _parse_charge(data: Dict[str, Any]) -> ChargeSucceeded:
    customer = _mapping(data.get("customer"))
    metadata = _mapping(data.get("metadata"))
    subscription = _mapping(data.get("subscription"))
    return ChargeSucceeded(
        reference=_require(data, "reference", "charge.success"),
        amount=_amount(data.get("amount")),
        currency=_text(data.get("currency")).lower(),
        paid_at=_timestamp(data.get("paid_at") or data.get("paidAt")),
        customer_code=_text(customer.get("customer_code")),
        organization_id=_text(metadata.get("organization_id") or _mapping(customer.get("metadata")).get("organization_id")),
        subscription_code=_text(data.get("subscription_code") or subscription.get("subscription_code")),
        invoice_id=_text(metadata.get("invoice_id")),
        plan_id=_text(metadata.get("plan_id")),
        metadata=metadata,
    )


def _parse_payment_failed(data: Dict[str, Any]) -> InvoicePaymentFailed:
    subscription = _mapping(data.get("subscription"))
    code = _text(subscription.get("subscription_code") or data.get("subscription_code"))
    if not code:
        raise ValidationError(
            "Webhook 'invoice.payment_failed' is missing 'data.subscription.subscription_code'.",
            details={"event": "invoice.payment_failed", "field": "subscription.subscription_code"},
        )
    return InvoicePaymentFailed(
        subscription_code=code,
        invoice_code=_text(data.get("invoice_code")),
        amount=_amount(data.get("amount")),
        description=_text(data.get("description")),
    )


_PARSERS: Dict[str, Callable[[Dict[str, Any]], WebhookEvent]] = {
    "subscription.create": _parse_subscription_created,
    "subscription.disable": lambda data: SubscriptionDisabled(
        subscription_code=_require(data, "subscription_code", "subscription.disable")
    ),
    "subscription.not_renew": lambda data: SubscriptionNotRenewing(
        subscription_code=_require(data, "subscription_code", "subscription.not_renew")
    ),
    "charge.success": _parse_charge,
    "invoice.payment_failed": _parse_payment_failed,
    "paymentrequest.success": lambda data: PaymentRequestSucceeded(
        request_code=_require(data, "request_code", "paymentrequest.success"),
        amount=_amount(data.get("amount")),
        paid_at=_timestamp(data.get("paid_at")),
    ),
}

SUPPORTED_EVENTS = tuple(_PARSERS)


def parse_event(payload: Any) -> Optional[WebhookEvent]:
    """
    Validate a webhook body into one of the event dataclasses.

    Returns ``None`` for event types outside the supported set and raises
    :class:`ValidationError` when a supported event lacks required fields.
    """

    if not isinstance(payload, Mapping):
        raise ValidationError("Webhook payload must be a JSON object.")
    event_type = _text(payload.get("event"))
    if not event_type:
        raise ValidationError("Webhook payload is missing 'event'.")
    data = payload.get("data")
    if not isinstance(data, Mapping):
        raise ValidationError("Webhook payload is missing 'data'.", details={"event": event_type})
    parser = _PARSERS.get(event_type)
    if parser is None:
        return None
    return parser(dict(data))


def event_dedup_key(payload: Mapping[str, Any]) -> str:
    explicit = _text(payload.get("id"))
    if explicit:
        return explicit
    event_type = _text(payload.get("event"))
    data = _mapping(payload.get("data"))
    identifier = _text(
        data.get("id") or data.get("subscription_code") or data.get("reference") or data.get("request_code")
    )
    if not event_type or not identifier:
        raise ValidationError("Cannot derive an idempotency key for the webhook payload.")
    return f"{event_type}:{identifier}"


def verify(raw_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
    """Check the HMAC-SHA512 hex digest of the raw request body."""

    if not secret or not signature_header:
        return False
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    expected = hmac.new(secret.encode("utf-8"), raw_body or b"", hashlib.sha512).hexdigest()
    provided = signature_header.strip().lower().encode("utf-8", "replace")
    return hmac.compare_digest(expected.encode("ascii"), provided)


def webhook_secret() -> str:
    return getattr(settings, "PAYSTACK_WEBHOOK_SECRET", "") or getattr(settings, "PAYSTACK_SECRET_KEY", "")


# Reconciler


class WebhookReconciler:
    def __init__(
        self,
        *,
        clock: Optional[Clock] = None,
        ledger: Optional[SubscriptionLedger] = None,
        invoices: Optional[InvoiceGenerator] = None,
        client: Optional[PaystackClient] = None,
        notifier=None,
    ) -> None:
        self.clock = clock or get_clock()
        self.ledger = ledger or SubscriptionLedger(clock=self.clock)
        self._client = client
        self.invoices = invoices or InvoiceGenerator(clock=self.clock, client=client)
        self._notifier = notifier

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

    verify = staticmethod(verify)
    parse_event = staticmethod(parse_event)

    def handle(self, payload: Any) -> WebhookResult:
        """Apply one webhook delivery at most once per dedup key."""

        event_type = _text(payload.get("event")) if isinstance(payload, Mapping) else ""
        try:
            event_id = event_dedup_key(payload) if isinstance(payload, Mapping) else ""
        except ValidationError as exc:
            event_id = ""
            logger.warning("Rejecting webhook without a usable identifier: %s", exc)
        if not event_id:
            WEBHOOK_EVENT_COUNT.labels(event_type=event_type or "unknown", result=WebhookResult.REJECTED).inc()
            return WebhookResult(status=WebhookResult.REJECTED, event_type=event_type, detail="missing identifier")

        with transaction.atomic():
            record, _ = WebhookEventRecord.objects.select_for_update().get_or_create(
                external_event_id=event_id,
                defaults={"event_type": event_type[:100]},
            )
            if record.processed_at is not None:
                logger.info("Webhook %s (%s) already processed with status=%s.", event_id, event_type, record.status)
                WEBHOOK_EVENT_COUNT.labels(event_type=event_type, result=WebhookResult.ALREADY_PROCESSED).inc()
                return WebhookResult(
                    status=WebhookResult.ALREADY_PROCESSED,
                    event_type=event_type,
                    event_id=event_id,
                    detail=record.status,
                )

            record.attempts += 1
            record.status = WebhookEventRecord.Status.PROCESSING
            record.last_error = ""
            record.save(update_fields=["attempts", "status", "last_error"])

            try:
                event = parse_event(payload)
            except ValidationError as exc:
                logger.warning("Rejecting malformed webhook %s (%s): %s", event_id, event_type, exc.message)
                return self._finish_failed(record, event_type, event_id, exc.message)

            if event is None:
                logger.info("Ignoring unsupported webhook event type '%s' (%s).", event_type, event_id)
                record.status = WebhookEventRecord.Status.IGNORED
                record.processed_at = self.clock.now()
                record.save(update_fields=["status", "processed_at"])
                WEBHOOK_EVENT_COUNT.labels(event_type=event_type, result="ignored").inc()
                return WebhookResult(
                    status=WebhookResult.REJECTED,
                    event_type=event_type,
                    event_id=event_id,
                    detail="unsupported event type",
                )

            try:
                with transaction.atomic():
                    detail, organization_id = self._dispatch(event)
            except BillingError as exc:
                logger.error("Webhook %s (%s) handling failed: %s", event_id, event_type, exc.message)
                return self._finish_failed(record, event_type, event_id, exc.message, failure=True)
            except Exception as exc:
                logger.exception("Unexpected error handling webhook %s (%s).", event_id, event_type)
                return self._finish_failed(record, event_type, event_id, str(exc), failure=True)

            record.status = WebhookEventRecord.Status.PROCESSED
            record.processed_at = self.clock.now()
            record.organization_id = organization_id
            record.save(update_fields=["status", "processed_at", "organization"])

        WEBHOOK_EVENT_COUNT.labels(event_type=event_type, result=WebhookResult.APPLIED).inc()
        log_billing_event(
            message="billing.webhook.applied",
            organization_id=str(organization_id) if organization_id else None,
            actor="processor",
            extra={"event_id": event_id, "event_type": event_type, "detail": detail},
        )
        return WebhookResult(status=WebhookResult.APPLIED, event_type=event_type, event_id=event_id, detail=detail)

    def _finish_failed(
        self,
        record: WebhookEventRecord,
        event_type: str,
        event_id: str,
        message: str,
        *,
        failure: bool = False,
    ) -> WebhookResult:
        record.status = WebhookEventRecord.Status.FAILED
        record.last_error = message[:2000]
        record.save(update_fields=["status", "last_error"])
        if failure:
            WEBHOOK_FAILURE_COUNT.labels(event_type=event_type).inc()
        WEBHOOK_EVENT_COUNT.labels(event_type=event_type, result=WebhookResult.REJECTED).inc()
        return WebhookResult(status=WebhookResult.REJECTED, event_type=event_type, event_id=event_id, detail=message)

    def _dispatch(self, event: WebhookEvent):
        handler = {
            SubscriptionCreated: self._on_subscription_created,
            SubscriptionDisabled: self._on_subscription_disabled,
            SubscriptionNotRenewing: self._on_subscription_not_renewing,
            ChargeSucceeded: self._on_charge_succeeded,
            InvoicePaymentFailed: self._on_payment_failed,
            PaymentRequestSucceeded: self._on_payment_request_succeeded,
        }[type(event)]
        return handler(event)

    # Lookups

    @staticmethod
    def _organization(organization_id: str = "", customer_code: str = "") -> Optional[Organization]:
        if organization_id:
            try:
                return Organization.objects.filter(pk=uuid.UUID(organization_id)).first()
            except ValueError:
                logger.warning("Webhook carried malformed organization id %r.", organization_id)
        if customer_code:
            return Organization.objects.filter(external_customer_ref=customer_code).first()
        return None

    @staticmethod
    def _subscription_by_code(subscription_code: str) -> Optional[Subscription]:
        if not subscription_code:
            return None
        return (
            Subscription.objects.filter(external_subscription_ref=subscription_code)
            .order_by("-created_at")
            .first()
        )

    @staticmethod
    def _open_subscription(organization: Optional[Organization]) -> Optional[Subscription]:
        if organization is None:
            return None
        return (
            Subscription.objects.filter(organization=organization)
            .exclude(status=SubscriptionStatus.CANCELED)
            .order_by("-created_at")
            .first()
        )

    # Handlers

    def _on_subscription_created(self, event: SubscriptionCreated):
        organization = self._organization(event.organization_id, event.customer_code)
        if organization is None:
            raise ValidationError(
                "Cannot resolve organization for subscription.create.",
                details={"subscription_code": event.subscription_code, "customer_code": event.customer_code},
            )
        if event.customer_code and not organization.external_customer_ref:
            Organization.objects.filter(pk=organization.pk).update(external_customer_ref=event.customer_code)

        status = PROCESSOR_STATUS_MAP.get(event.processor_status, SubscriptionStatus.ACTIVE)
        period_end = event.next_payment_date or self.clock.now() + timedelta(days=30)
        existing = self._open_subscription(organization)
        if existing is not None:
            if existing.status == SubscriptionStatus.TRIALING and status == SubscriptionStatus.ACTIVE:
                cause = Cause.PAYMENT_METHOD_ADDED
            else:
                cause = Cause.PROCESSOR_SYNC
            self.ledger.attach_external(
                existing.pk,
                external_subscription_ref=event.subscription_code,
                external_customer_ref=event.customer_code,
                period_start=event.started_at,
                period_end=period_end,
                status=status,
                cause=cause,
                actor="processor",
            )
            return "subscription attached", organization.pk

        plan = None
        if event.plan_id:
            plan = get_plan(event.plan_id)
        if plan is None:
            plan = find_plan_by_processor_code(event.plan_code)
        if plan is None:
            raise ValidationError(
                "Cannot resolve plan for subscription.create.",
                details={"plan_id": event.plan_id, "plan_code": event.plan_code},
            )
        if status == SubscriptionStatus.CANCELED:
            return "ignored canceled subscription without local counterpart", organization.pk
        self.ledger.start_subscription(
            organization.pk,
            plan.key,
            status=status,
            period_start=event.started_at,
            period_end=period_end,
            external_subscription_ref=event.subscription_code,
            external_customer_ref=event.customer_code,
            actor="processor",
        )
        return "subscription created", organization.pk

    def _on_subscription_disabled(self, event: SubscriptionDisabled):
        subscription = self._subscription_by_code(event.subscription_code)
        if subscription is None:
            logger.warning("subscription.disable for unknown subscription %s.", event.subscription_code)
            return "no matching subscription", None
        self.ledger.transition_subscription(
            subscription.pk, SubscriptionStatus.CANCELED, Cause.EXPLICIT_CANCEL, actor="processor"
        )
        return "subscription canceled", subscription.organization_id

    def _on_subscription_not_renewing(self, event: SubscriptionNotRenewing):
        subscription = self._subscription_by_code(event.subscription_code)
        if subscription is None:
            logger.warning("subscription.not_renew for unknown subscription %s.", event.subscription_code)
            return "no matching subscription", None
        if subscription.is_terminal:
            return "subscription already canceled", subscription.organization_id
        self.ledger.cancel_at_period_end(subscription.pk, actor="processor", details={"source": "processor"})
        return "cancellation scheduled", subscription.organization_id

    def _on_charge_succeeded(self, event: ChargeSucceeded):
        organization = self._organization(event.organization_id, event.customer_code)
        subscription = self._subscription_by_code(event.subscription_code)
        if subscription is not None and organization is None:
            organization = subscription.organization
        if subscription is None:
            subscription = self._open_subscription(organization)

        invoice = None
        if event.invoice_id:
            invoice = Invoice.objects.filter(pk=_uuid_or_none(event.invoice_id)).first()
            if invoice is None:
                logger.warning("charge.success %s references unknown invoice %s.", event.reference, event.invoice_id)

        payment, created = PaymentRecord.objects.get_or_create(
            reference=event.reference,
            defaults={
                "organization": organization,
                "subscription": subscription,
                "invoice": invoice,
                "amount": event.amount,
                "currency": event.currency or getattr(settings, "BILLING_CURRENCY", "zar").lower(),
                "status": PaymentRecord.Status.SUCCESS,
                "paid_at": event.paid_at or self.clock.now(),
                "metadata": event.metadata,
            },
        )
        if not created:
            return "duplicate charge reference", payment.organization_id
        if organization is not None:
            PAYMENT_SUCCESS_COUNT.labels(organization_id=str(organization.pk)).inc()

        if invoice is not None:
            self.invoices.mark_paid(invoice.pk, paid_at=event.paid_at, reference=event.reference, actor="processor")
            if subscription is not None and subscription.status == SubscriptionStatus.PAST_DUE:
                self.ledger.transition_subscription(
                    subscription.pk, SubscriptionStatus.ACTIVE, Cause.CHARGE_SUCCEEDED, actor="processor"
                )
            return "invoice paid", invoice.organization_id

        if subscription is not None and not subscription.is_terminal:
            self.ledger.advance_period(subscription.pk, cause=Cause.CHARGE_SUCCEEDED, actor="processor")
            return "subscription period advanced", subscription.organization_id

        reference = parse_transaction_reference(event.reference)
        plan_id = event.plan_id or (reference.plan_id if reference else "")
        if organization is not None and plan_id:
            created_subscription = self.ledger.start_subscription(
                organization.pk,
                plan_id,
                status=SubscriptionStatus.ACTIVE,
                external_customer_ref=event.customer_code,
                actor="processor",
            )
            PaymentRecord.objects.filter(pk=payment.pk).update(subscription=created_subscription)
            return "subscription started from checkout", organization.pk

        logger.warning("charge.success %s could not be matched to a subscription or invoice.", event.reference)
        return "payment recorded without a match", organization.pk if organization else None

    def _on_payment_failed(self, event: InvoicePaymentFailed):
        subscription = self._subscription_by_code(event.subscription_code)
        if subscription is None:
            logger.warning("invoice.payment_failed for unknown subscription %s.", event.subscription_code)
            return "no matching subscription", None
        updated = self.ledger.record_payment_failure(subscription.pk, actor="processor")
        PAYMENT_FAILURE_COUNT.labels(
            organization_id=str(subscription.organization_id),
            reason=event.description[:64] or "unknown",
        ).inc()
        self.notifier.payment_failed(updated, event.description or None)
        return f"payment failure recorded ({updated.status})", subscription.organization_id

    def _on_payment_request_succeeded(self, event: PaymentRequestSucceeded):
        invoice = Invoice.objects.filter(external_invoice_ref=event.request_code).first()
        if invoice is None:
            logger.warning("paymentrequest.success for unknown request %s.", event.request_code)
            return "no matching invoice", None
        self.invoices.mark_paid(invoice.pk, paid_at=event.paid_at, reference=event.request_code, actor="processor")
        return "invoice paid", invoice.organization_id

    # Pull sync

    def sync_subscription(self, subscription_id: Any) -> Dict[str, Any]:
        """Fetch the processor subscription and align status and period end."""

        subscription = Subscription.objects.select_related("organization").get(pk=subscription_id)
        if not subscription.external_subscription_ref:
            return {"changed": False, "reason": "no_external_ref"}
        data = self.client.fetch_subscription(subscription.external_subscription_ref)
        status = PROCESSOR_STATUS_MAP.get(_text(data.get("status")).lower())
        period_end = _timestamp(data.get("next_payment_date"))

        if status == SubscriptionStatus.CANCELED and not subscription.is_terminal:
            updated = self.ledger.transition_subscription(
                subscription.pk, SubscriptionStatus.CANCELED, Cause.PROCESSOR_SYNC, actor="job.sync_subscriptions"
            )
        elif subscription.is_terminal:
            return {"changed": False, "status": subscription.status}
        else:
            updated = self.ledger.attach_external(
                subscription.pk,
                period_end=period_end,
                status=status,
                cause=Cause.PROCESSOR_SYNC,
                actor="job.sync_subscriptions",
            )
        return {"changed": updated.version != subscription.version, "status": updated.status}


def _uuid_or_none(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


__all__ = [
    "ChargeSucceeded",
    "InvoicePaymentFailed",
    "PROCESSOR_STATUS_MAP",
    "PaymentRequestSucceeded",
    "SUPPORTED_EVENTS",
    "SubscriptionCreated",
    "SubscriptionDisabled",
    "SubscriptionNotRenewing",
    "WebhookEvent",
    "WebhookReconciler",
    "WebhookResult",
    "event_dedup_key",
    "parse_event",
    "verify",
    "webhook_secret",
]
