"""Subscription ledger: state machine, plan changes and optimistic-concurrency writes."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F

from organizations.models import Organization

from billing.clock import Clock, get_clock
from billing.exceptions import (
    ConcurrencyConflict,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from billing.models import BillingAuditLog, CancellationSurvey, PendingCharge, Subscription
from billing.observability.logging import log_billing_event
from billing.observability.metrics import SUBSCRIPTION_TRANSITION_COUNT
from billing.services.plan_catalog import (
    ANNUAL,
    BILLING_INTERVALS,
    MONTHLY,
    get_plan,
    monthly_amount,
    monthly_equivalent,
    plan_price,
)
from billing.services.proration import ProrationPreview, compute_proration, days_remaining, is_upgrade

logger = logging.getLogger(__name__)

Status = Subscription.Status

DEFAULT_CONCURRENCY_RETRIES = 5
PERIOD_LENGTH = {MONTHLY: timedelta(days=30), ANNUAL: timedelta(days=365)}


class Cause:
    CHARGE_SUCCEEDED = "charge_succeeded"
    PAYMENT_METHOD_ADDED = "payment_method_added"
    TRIAL_EXPIRED = "trial_expired"
    PAYMENT_FAILED = "payment_failed"
    RETRIES_EXHAUSTED = "retries_exhausted"
    EXPLICIT_CANCEL = "explicit_cancel"
    PERIOD_END_CANCEL = "period_end_cancel"
    REACTIVATE = "reactivate"
    UPGRADE = "upgrade"
    PROCESSOR_SYNC = "processor_sync"
    ABANDONED = "abandoned"


# (from, to) -> causes allowed to drive it
TRANSITIONS: Dict[tuple, frozenset] = {
    (Status.TRIALING, Status.ACTIVE): frozenset(
        {Cause.CHARGE_SUCCEEDED, Cause.PAYMENT_METHOD_ADDED, Cause.UPGRADE, Cause.PROCESSOR_SYNC}
    ),
    (Status.TRIALING, Status.CANCELED): frozenset(
        {Cause.TRIAL_EXPIRED, Cause.PERIOD_END_CANCEL, Cause.EXPLICIT_CANCEL, Cause.PROCESSOR_SYNC}
    ),
    (Status.TRIALING, Status.PAST_DUE): frozenset({Cause.TRIAL_EXPIRED, Cause.PAYMENT_FAILED}),
    (Status.ACTIVE, Status.PAST_DUE): frozenset({Cause.PAYMENT_FAILED, Cause.PROCESSOR_SYNC}),
    (Status.PAST_DUE, Status.ACTIVE): frozenset({Cause.CHARGE_SUCCEEDED, Cause.UPGRADE, Cause.PROCESSOR_SYNC}),
    (Status.PAST_DUE, Status.CANCELED): frozenset(
        {Cause.RETRIES_EXHAUSTED, Cause.EXPLICIT_CANCEL, Cause.PERIOD_END_CANCEL, Cause.PROCESSOR_SYNC}
    ),
    (Status.ACTIVE, Status.CANCELED): frozenset(
        {Cause.EXPLICIT_CANCEL, Cause.PERIOD_END_CANCEL, Cause.PROCESSOR_SYNC}
    ),
    (Status.CANCELED, Status.ACTIVE): frozenset({Cause.REACTIVATE}),
    (Status.INCOMPLETE, Status.ACTIVE): frozenset({Cause.CHARGE_SUCCEEDED, Cause.PROCESSOR_SYNC}),
    (Status.INCOMPLETE, Status.CANCELED): frozenset({Cause.ABANDONED, Cause.EXPLICIT_CANCEL, Cause.PROCESSOR_SYNC}),
}

Mutator = Callable[[Subscription], Dict[str, Any]]
AfterWrite = Callable[[Subscription, Dict[str, Any]], None]


def get_organization(organization_id: Any) -> Organization:
    """Fetch an organization by id, mapping bad ids to billing errors."""

    try:
        key = organization_id if isinstance(organization_id, uuid.UUID) else uuid.UUID(str(organization_id))
    except (TypeError, ValueError, AttributeError) as exc:
        raise ValidationError("organization_id must be a UUID.", details={"organization_id": str(organization_id)}) from exc
    try:
        return Organization.objects.get(pk=key)
    except Organization.DoesNotExist as exc:
        raise NotFoundError("Organization not found.", details={"organization_id": str(key)}) from exc


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def check_transition(subscription: Subscription, new_status: str, cause: str, now: datetime) -> None:
    """Raise :class:`InvalidStateError` unless the state table allows the move."""

    current = subscription.status
    allowed = TRANSITIONS.get((current, new_status))
    if allowed is None or cause not in allowed:
        raise InvalidStateError(
            f"Cannot transition subscription from '{current}' to '{new_status}' ({cause}).",
            details={"from": current, "to": new_status, "cause": cause, "subscription_id": str(subscription.id)},
        )
    if (current, new_status) == (Status.CANCELED, Status.ACTIVE):
        period_end = subscription.current_period_end
        if not subscription.cancel_at_period_end or period_end is None or period_end <= now:
            raise InvalidStateError(
                "Only a subscription canceled at period end can be reactivated before the period ends.",
                details={"from": current, "to": new_status, "cause": cause, "subscription_id": str(subscription.id)},
            )


class SubscriptionLedger:
    """Owns every write to :class:`Subscription`."""

    def __init__(self, *, clock: Optional[Clock] = None, max_retries: Optional[int] = None) -> None:
        self.clock = clock or get_clock()
        self.max_retries = max_retries or getattr(settings, "BILLING_CONCURRENCY_RETRIES", DEFAULT_CONCURRENCY_RETRIES)

    # Reads

    def get_current(self, organization_id: Any) -> Subscription:
        organization = get_organization(organization_id)
        subscription = self._open_subscription(organization)
        if subscription is None:
            raise NotFoundError(
                "Organization has no open subscription.",
                details={"organization_id": str(organization.pk)},
            )
        return subscription

    @staticmethod
    def _open_subscription(organization: Organization) -> Optional[Subscription]:
        return (
            Subscription.objects.filter(organization=organization)
            .exclude(status=Status.CANCELED)
            .order_by("-created_at")
            .first()
        )

    def preview(self, organization_id: Any, new_plan_id: str, billing_interval: Optional[str] = None) -> ProrationPreview:
        """Compute the effect of a plan change without writing anything."""

        organization = get_organization(organization_id)
        current = self._open_subscription(organization)
        return self._build_preview(organization, current, new_plan_id, billing_interval)

    def _build_preview(
        self,
        organization: Organization,
        current: Optional[Subscription],
        new_plan_id: str,
        billing_interval: Optional[str],
    ) -> ProrationPreview:
        new_plan = get_plan(new_plan_id)
        interval = billing_interval or (current.billing_interval if current else MONTHLY)
        if interval not in BILLING_INTERVALS:
            raise ValidationError(
                f"Unsupported billing interval '{interval}'.",
                details={"billing_interval": interval},
            )
        if current and current.plan_id == new_plan.key and current.billing_interval == interval:
            raise ValidationError(
                "Organization is already on the requested plan.",
                details={"plan_id": new_plan.key, "billing_interval": interval},
            )

        now = self.clock.now()
        new_price = monthly_equivalent(new_plan, interval, organization.seat_count)
        if current is not None:
            old_price = monthly_amount(current.amount, current.billing_interval)
            remaining = days_remaining(current.current_period_end, now)
        else:
            old_price = 0
            remaining = 0

        amounts = compute_proration(old_price, new_price, remaining)
        upgrade = is_upgrade(old_price, new_price)
        return ProrationPreview(
            organization_id=str(organization.pk),
            current_plan_id=current.plan_id if current else None,
            new_plan_id=new_plan.key,
            billing_interval=interval,
            old_price=old_price,
            new_price=new_price,
            days_remaining=amounts.days_remaining,
            credit=amounts.credit,
            charge=amounts.charge,
            proration_amount=amounts.proration_amount,
            is_upgrade=upgrade,
            effective_date=now if upgrade else (current.current_period_end if current and current.current_period_end else now),
            currency=current.currency if current else getattr(settings, "BILLING_CURRENCY", "zar").lower(),
        )

    # Writes

    def start_subscription(
        self,
        organization_id: Any,
        plan_id: str,
        billing_interval: str = MONTHLY,
        *,
        status: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        external_subscription_ref: str = "",
        external_customer_ref: str = "",
        actor: str = "",
        request_id: str = "",
    ) -> Subscription:
        """Create the organization's open subscription; trial plans start ``trialing``."""

        organization = get_organization(organization_id)
        plan = get_plan(plan_id)
        if billing_interval not in BILLING_INTERVALS:
            raise ValidationError(f"Unsupported billing interval '{billing_interval}'.")

        now = self.clock.now()
        start = period_start or now
        trial_start = trial_end = None
        if status is None and plan.trial_days > 0 and not external_subscription_ref:
            status = Status.TRIALING
            trial_start = now
            trial_end = now + timedelta(days=plan.trial_days)
            period_end = period_end or trial_end
        status = status or Status.ACTIVE
        if status not in Status.values:
            raise ValidationError(f"Unknown subscription status '{status}'.")

        try:
            with transaction.atomic():
                subscription = Subscription.objects.create(
                    organization=organization,
                    plan_id=plan.key,
                    status=status,
                    billing_interval=billing_interval,
                    amount=plan_price(plan, billing_interval, organization.seat_count),
                    current_period_start=start,
                    current_period_end=period_end or start + PERIOD_LENGTH[billing_interval],
                    trial_start=trial_start,
                    trial_end=trial_end,
                    external_subscription_ref=external_subscription_ref,
                    external_customer_ref=external_customer_ref or organization.external_customer_ref,
                )
                BillingAuditLog.objects.create(
                    organization=organization,
                    subscription=subscription,
                    event_type="billing.subscription.created",
                    actor=actor,
                    request_id=request_id,
                    details={"plan_id": plan.key, "status": status, "billing_interval": billing_interval},
                )
        except IntegrityError as exc:
            raise InvalidStateError(
                "Organization already has an open subscription.",
                details={"organization_id": str(organization.pk)},
            ) from exc

        log_billing_event(
            message="billing.subscription.created",
            organization_id=str(organization.pk),
            actor=actor or None,
            request_id=request_id or None,
            extra={"subscription_id": str(subscription.pk), "plan_id": plan.key, "status": status},
        )
        return subscription

    def apply_plan_change(
        self,
        organization_id: Any,
        new_plan_id: str,
        preview: Union[ProrationPreview, Mapping[str, Any], None] = None,
        billing_interval: Optional[str] = None,
        *,
        actor: str = "",
        request_id: str = "",
    ) -> Subscription:
        """Upgrade immediately or schedule a downgrade for the period end."""

        client_preview = _preview_fields(preview)
        if client_preview:
            previewed_plan = client_preview.get("new_plan_id")
            if previewed_plan and previewed_plan != new_plan_id:
                raise ValidationError(
                    "Preview was computed for a different plan.",
                    details={"preview_plan_id": previewed_plan, "plan_id": new_plan_id},
                )
            billing_interval = billing_interval or client_preview.get("billing_interval")

        organization = get_organization(organization_id)
        current = self._open_subscription(organization)
        if current is None:
            return self.start_subscription(
                organization.pk,
                new_plan_id,
                billing_interval or MONTHLY,
                actor=actor,
                request_id=request_id,
            )

        new_plan = get_plan(new_plan_id)
        seats = organization.seat_count
        computed: Dict[str, ProrationPreview] = {}

        def mutate(subscription: Subscription) -> Dict[str, Any]:
            self._ensure_open(subscription)
            result = self._build_preview(organization, subscription, new_plan.key, billing_interval)
            computed["preview"] = result
            if client_preview and client_preview.get("proration_amount") not in (None, result.proration_amount):
                logger.info(
                    "Client preview for %s is stale (client=%s server=%s); using server amounts.",
                    organization.pk,
                    client_preview.get("proration_amount"),
                    result.proration_amount,
                )
            if not result.is_upgrade:
                return {
                    "pending_plan_id": new_plan.key,
                    "pending_billing_interval": result.billing_interval,
                }

            changes: Dict[str, Any] = {
                "plan_id": new_plan.key,
                "billing_interval": result.billing_interval,
                "amount": plan_price(new_plan, result.billing_interval, seats),
                "cancel_at_period_end": False,
                "canceled_at": None,
                "pending_plan_id": "",
                "pending_billing_interval": "",
            }
            if subscription.status != Status.ACTIVE:
                check_transition(subscription, Status.ACTIVE, Cause.UPGRADE, self.clock.now())
                changes["status"] = Status.ACTIVE
            return changes

        def record_charge(subscription: Subscription, changes: Dict[str, Any]) -> None:
            result = computed["preview"]
            if not result.is_upgrade or result.proration_amount <= 0:
                return
            PendingCharge.objects.get_or_create(
                idempotency_key=f"subscription:{subscription.pk}:upgrade:{new_plan.key}:v{subscription.version}",
                defaults={
                    "organization_id": subscription.organization_id,
                    "subscription": subscription,
                    "amount": result.proration_amount,
                    "currency": subscription.currency,
                    "description": (
                        f"Upgrade proration {result.current_plan_id} -> {result.new_plan_id} "
                        f"({result.days_remaining} days)"
                    ),
                    "details": result.as_dict(),
                },
            )

        def event_type(changes: Dict[str, Any]) -> str:
            return "billing.subscription.upgrade" if "plan_id" in changes else "billing.subscription.plan_change_scheduled"

        return self._apply_changes(
            current.pk,
            mutate,
            event_type=event_type,
            actor=actor,
            request_id=request_id,
            after_write=record_charge,
        )

    def schedule_cancellation(
        self,
        organization_id: Any,
        reason: str,
        feedback: Optional[str] = None,
        *,
        other_reason: str = "",
        would_recommend: Optional[int] = None,
        willing_to_stay_with_discount: bool = False,
        actor: str = "",
        request_id: str = "",
    ) -> Subscription:
        """Flag the subscription to cancel at period end; status is untouched."""

        if reason not in CancellationSurvey.Reason.values:
            raise ValidationError(f"Unknown cancellation reason '{reason}'.", details={"reason": reason})
        if would_recommend is not None and not 1 <= int(would_recommend) <= 10:
            raise ValidationError("would_recommend must be between 1 and 10.")

        current = self.get_current(organization_id)

        def record_survey(subscription: Subscription, changes: Dict[str, Any]) -> None:
            CancellationSurvey.objects.create(
                subscription=subscription,
                organization_id=subscription.organization_id,
                reason=reason,
                other_reason=other_reason or "",
                feedback=feedback or "",
                would_recommend=would_recommend,
                willing_to_stay_with_discount=bool(willing_to_stay_with_discount),
            )

        return self.cancel_at_period_end(
            current.pk,
            actor=actor,
            request_id=request_id,
            after_write=record_survey,
            details={"reason": reason},
        )

    def cancel_at_period_end(
        self,
        subscription_id: Any,
        *,
        actor: str = "",
        request_id: str = "",
        after_write: Optional[AfterWrite] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """Set ``cancel_at_period_end`` on a subscription; repeated calls are no-ops."""

        def mutate(subscription: Subscription) -> Dict[str, Any]:
            self._ensure_open(subscription)
            if subscription.cancel_at_period_end:
                return {}
            return {"cancel_at_period_end": True, "canceled_at": self.clock.now()}

        return self._apply_changes(
            subscription_id,
            mutate,
            event_type="billing.subscription.cancellation_scheduled",
            actor=actor,
            request_id=request_id,
            after_write=after_write,
            details=details,
        )

    def reactivate(self, organization_id: Any, *, actor: str = "", request_id: str = "") -> Subscription:
        """Undo a scheduled cancellation while the current period is still running."""

        organization = get_organization(organization_id)
        latest = Subscription.objects.filter(organization=organization).order_by("-created_at").first()
        if latest is None:
            raise NotFoundError("Organization has no subscription.", details={"organization_id": str(organization.pk)})

        def mutate(subscription: Subscription) -> Dict[str, Any]:
            now = self.clock.now()
            if not subscription.cancel_at_period_end:
                raise InvalidStateError(
                    "Subscription is not scheduled for cancellation.",
                    details={"subscription_id": str(subscription.pk), "status": subscription.status},
                )
            if subscription.current_period_end is None or subscription.current_period_end <= now:
                raise InvalidStateError(
                    "Subscription period has already ended.",
                    details={"subscription_id": str(subscription.pk)},
                )
            changes: Dict[str, Any] = {"cancel_at_period_end": False, "canceled_at": None}
            if subscription.status == Status.CANCELED:
                check_transition(subscription, Status.ACTIVE, Cause.REACTIVATE, now)
                changes["status"] = Status.ACTIVE
            return changes

        return self._apply_changes(
            latest.pk,
            mutate,
            event_type="billing.subscription.reactivated",
            actor=actor,
            request_id=request_id,
        )

    def transition(self, organization_id: Any, new_status: str, cause: str, *, actor: str = "") -> Subscription:
        """Move the organization's open subscription to ``new_status``."""

        current = self.get_current(organization_id)
        return self.transition_subscription(current.pk, new_status, cause, actor=actor)

    def transition_subscription(self, subscription_id: Any, new_status: str, cause: str, *, actor: str = "") -> Subscription:
        if new_status not in Status.values:
            raise ValidationError(f"Unknown subscription status '{new_status}'.", details={"status": new_status})

        def mutate(subscription: Subscription) -> Dict[str, Any]:
            if subscription.status == new_status:
                logger.info("Subscription %s already %s; transition (%s) is a no-op.", subscription.pk, new_status, cause)
                return {}
            now = self.clock.now()
            check_transition(subscription, new_status, cause, now)
            changes: Dict[str, Any] = {"status": new_status}
            if new_status == Status.CANCELED:
                changes["canceled_at"] = subscription.canceled_at or now
                if cause in (Cause.EXPLICIT_CANCEL, Cause.RETRIES_EXHAUSTED, Cause.TRIAL_EXPIRED):
                    changes["cancel_at_period_end"] = False
                changes["pending_plan_id"] = ""
            if new_status == Status.ACTIVE and cause == Cause.CHARGE_SUCCEEDED:
                changes["payment_failure_count"] = 0
            return changes

        return self._apply_changes(
            subscription_id,
            mutate,
            event_type="billing.subscription.transition",
            actor=actor,
            details={"cause": cause},
        )

    def advance_period(self, subscription_id: Any, *, cause: str = Cause.CHARGE_SUCCEEDED, actor: str = "") -> Subscription:
        """Start the next period after a successful charge and mark the subscription active."""

        def mutate(subscription: Subscription) -> Dict[str, Any]:
            self._ensure_open(subscription)
            now = self.clock.now()
            length = PERIOD_LENGTH.get(subscription.billing_interval, PERIOD_LENGTH[MONTHLY])
            start = subscription.current_period_end or now
            if start + length <= now:
                start = now
            changes: Dict[str, Any] = {
                "current_period_start": start,
                "current_period_end": start + length,
                "payment_failure_count": 0,
            }
            if subscription.status != Status.ACTIVE:
                check_transition(subscription, Status.ACTIVE, cause, now)
                changes["status"] = Status.ACTIVE
            return changes

        return self._apply_changes(
            subscription_id,
            mutate,
            event_type="billing.subscription.period_advanced",
            actor=actor,
            details={"cause": cause},
        )

    def record_payment_failure(self, subscription_id: Any, *, actor: str = "") -> Subscription:
        """Count a failed collection; past_due after the first, canceled once retries run out."""

        max_failures = int(getattr(settings, "BILLING_MAX_PAYMENT_FAILURES", 3))

        def mutate(subscription: Subscription) -> Dict[str, Any]:
            if subscription.is_terminal:
                logger.info("Ignoring payment failure for canceled subscription %s.", subscription.pk)
                return {}
            now = self.clock.now()
            failures = subscription.payment_failure_count + 1
            changes: Dict[str, Any] = {"payment_failure_count": failures}
            if subscription.status == Status.PAST_DUE and failures >= max_failures:
                check_transition(subscription, Status.CANCELED, Cause.RETRIES_EXHAUSTED, now)
                changes.update(status=Status.CANCELED, canceled_at=now, cancel_at_period_end=False)
            elif subscription.status in (Status.ACTIVE, Status.TRIALING):
                check_transition(subscription, Status.PAST_DUE, Cause.PAYMENT_FAILED, now)
                changes["status"] = Status.PAST_DUE
            return changes

        return self._apply_changes(
            subscription_id,
            mutate,
            event_type="billing.subscription.payment_failed",
            actor=actor,
        )

    def attach_external(
        self,
        subscription_id: Any,
        *,
        external_subscription_ref: str = "",
        external_customer_ref: str = "",
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        status: Optional[str] = None,
        cause: str = Cause.PAYMENT_METHOD_ADDED,
        actor: str = "",
    ) -> Subscription:
        """Link processor identifiers and period bounds to an existing subscription."""

        def mutate(subscription: Subscription) -> Dict[str, Any]:
            self._ensure_open(subscription)
            changes: Dict[str, Any] = {}
            if external_subscription_ref and subscription.external_subscription_ref != external_subscription_ref:
                changes["external_subscription_ref"] = external_subscription_ref
            if external_customer_ref and subscription.external_customer_ref != external_customer_ref:
                changes["external_customer_ref"] = external_customer_ref
            if period_start and subscription.current_period_start != period_start:
                changes["current_period_start"] = period_start
            if period_end and subscription.current_period_end != period_end:
                changes["current_period_end"] = period_end
            if status and status != subscription.status:
                check_transition(subscription, status, cause, self.clock.now())
                changes["status"] = status
            return changes

        return self._apply_changes(
            subscription_id,
            mutate,
            event_type="billing.subscription.external_attached",
            actor=actor,
        )

    def rollover(self, subscription_id: Any, *, actor: str = "job.subscription_rollover") -> Subscription:
        """Apply period-end effects: scheduled cancellation first, else a pending plan swap."""

        def mutate(subscription: Subscription) -> Dict[str, Any]:
            now = self.clock.now()
            period_end = subscription.current_period_end
            if subscription.is_terminal or period_end is None or period_end > now:
                return {}
            if subscription.cancel_at_period_end:
                check_transition(subscription, Status.CANCELED, Cause.PERIOD_END_CANCEL, now)
                return {
                    "status": Status.CANCELED,
                    "canceled_at": subscription.canceled_at or now,
                    "pending_plan_id": "",
                    "pending_billing_interval": "",
                }
            if subscription.pending_plan_id:
                plan = get_plan(subscription.pending_plan_id)
                interval = subscription.pending_billing_interval or subscription.billing_interval
                return {
                    "plan_id": plan.key,
                    "billing_interval": interval,
                    "amount": plan_price(plan, interval, subscription.organization.seat_count),
                    "pending_plan_id": "",
                    "pending_billing_interval": "",
                    "current_period_start": period_end,
                    "current_period_end": period_end + PERIOD_LENGTH[interval],
                }
            return {}

        return self._apply_changes(
            subscription_id,
            mutate,
            event_type="billing.subscription.rollover",
            actor=actor,
        )

    def expire_trial(self, subscription_id: Any, *, actor: str = "job.check_trials") -> Subscription:
        """Move an expired trial without a payment method to the configured status."""

        target = getattr(settings, "BILLING_TRIAL_EXPIRY_STATUS", Status.CANCELED)
        if target not in (Status.CANCELED, Status.PAST_DUE):
            raise ValidationError(f"BILLING_TRIAL_EXPIRY_STATUS must be 'canceled' or 'past_due', got '{target}'.")

        def mutate(subscription: Subscription) -> Dict[str, Any]:
            now = self.clock.now()
            if (
                subscription.status != Status.TRIALING
                or subscription.trial_end is None
                or subscription.trial_end > now
                or subscription.has_payment_method
            ):
                return {}
            check_transition(subscription, target, Cause.TRIAL_EXPIRED, now)
            changes: Dict[str, Any] = {"status": target}
            if target == Status.CANCELED:
                changes.update(canceled_at=now, cancel_at_period_end=False)
            return changes

        return self._apply_changes(
            subscription_id,
            mutate,
            event_type="billing.subscription.trial_expired",
            actor=actor,
        )

    # Internals

    @staticmethod
    def _ensure_open(subscription: Subscription) -> None:
        if subscription.is_terminal:
            raise InvalidStateError(
                "Subscription is canceled.",
                details={"subscription_id": str(subscription.pk), "status": subscription.status},
            )

    def _apply_changes(
        self,
        subscription_id: Any,
        mutate: Mutator,
        *,
        event_type: Union[str, Callable[[Dict[str, Any]], str]],
        actor: str = "",
        request_id: str = "",
        after_write: Optional[AfterWrite] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """
        Read, compute and compare-and-set on ``version``; retry on conflict.

        ``mutate`` runs against a fresh row on every attempt so transitions are
        always validated against the latest state. The update, the audit row
        and ``after_write`` share one transaction.
        """

        for attempt in range(1, self.max_retries + 1):
            try:
                current = Subscription.objects.select_related("organization").get(pk=subscription_id)
            except Subscription.DoesNotExist as exc:
                raise NotFoundError("Subscription not found.", details={"subscription_id": str(subscription_id)}) from exc

            changes = mutate(current)
            if not changes:
                return current

            now = self.clock.now()
            try:
                with transaction.atomic():
                    updated = Subscription.objects.filter(pk=current.pk, version=current.version).update(
                        **changes,
                        version=F("version") + 1,
                        updated_at=now,
                    )
                    if updated:
                        refreshed = Subscription.objects.select_related("organization").get(pk=current.pk)
                        resolved_event = event_type(changes) if callable(event_type) else event_type
                        audit_details = {key: _jsonable(value) for key, value in changes.items()}
                        audit_details["previous_status"] = current.status
                        audit_details.update(details or {})
                        BillingAuditLog.objects.create(
                            organization_id=current.organization_id,
                            subscription=refreshed,
                            event_type=resolved_event,
                            actor=actor,
                            request_id=request_id,
                            details=audit_details,
                        )
                        if after_write is not None:
                            after_write(refreshed, changes)
            except IntegrityError as exc:
                raise InvalidStateError(
                    "Change conflicts with another open subscription for this organization.",
                    details={"subscription_id": str(current.pk)},
                ) from exc

            if updated:
                new_status = changes.get("status")
                if new_status and new_status != current.status:
                    SUBSCRIPTION_TRANSITION_COUNT.labels(from_status=current.status, to_status=new_status).inc()
                log_billing_event(
                    message=resolved_event,
                    organization_id=str(current.organization_id),
                    actor=actor or None,
                    request_id=request_id or None,
                    extra={"subscription_id": str(current.pk), "changes": sorted(changes), **(details or {})},
                )
                return refreshed

            logger.info(
                "Version conflict on subscription %s (attempt %s/%s); retrying with a fresh read.",
                current.pk,
                attempt,
                self.max_retries,
            )

        raise ConcurrencyConflict(
            "Subscription kept changing underneath the update.",
            details={"subscription_id": str(subscription_id), "attempts": self.max_retries},
        )


def _preview_fields(preview: Union[ProrationPreview, Mapping[str, Any], None]) -> Dict[str, Any]:
    if preview is None:
        return {}
    if isinstance(preview, ProrationPreview):
        return preview.as_dict()
    if isinstance(preview, Mapping):
        return dict(preview)
    raise ValidationError("preview must be an object.")


def open_subscriptions(statuses: Iterable[str]) -> Iterable[Subscription]:
    return Subscription.objects.select_related("organization").filter(status__in=list(statuses))


__all__ = [
    "Cause",
    "PERIOD_LENGTH",
    "SubscriptionLedger",
    "TRANSITIONS",
    "check_transition",
    "get_organization",
    "open_subscriptions",
]
