"""
Scheduled billing jobs with at-most-once claiming per ``(job_name, period_key)``.

A run is claimed by inserting its :class:`BillingJobRun` row; the unique
constraint on the pair is the only cross-instance lock. Work is split into
per-organization units so a single failing tenant never aborts the batch and
a partial run can be resumed for the failed organizations only.
"""
from __future__ import annotations

import logging
import math
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count, F, Q, Sum

from billing.clock import Clock, get_clock
from billing.exceptions import DuplicatePeriodError, JobAlreadyRunError, ValidationError
from billing.models import BillingJobRun, Invoice, Subscription, UsageDailySummary, UsageRecord
from billing.observability.logging import log_billing_event
from billing.observability.metrics import JOB_RUN_COUNT, JOB_RUN_LATENCY
from billing.services.invoice_generator import InvoiceGenerator, billable_subscriptions
from billing.services.notifications import get_notifier
from billing.services.subscription_ledger import SubscriptionLedger
from billing.services.usage_meter import get_usage_meter
from billing.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

MONTHLY_BILLING = "monthly_billing"
SYNC_INVOICES = "sync_invoices"
OVERDUE_REMINDERS = "overdue_reminders"
AGGREGATE_USAGE = "aggregate_usage"
CHECK_TRIALS = "check_trials"
SUBSCRIPTION_ROLLOVER = "subscription_rollover"
SYNC_SUBSCRIPTIONS = "sync_subscriptions"
RUN_SCHEDULED = "scheduled"

JOB_NAMES = (
    MONTHLY_BILLING,
    SYNC_INVOICES,
    OVERDUE_REMINDERS,
    AGGREGATE_USAGE,
    CHECK_TRIALS,
    SUBSCRIPTION_ROLLOVER,
    SYNC_SUBSCRIPTIONS,
)

JOB_DESCRIPTIONS = {
    MONTHLY_BILLING: "Generate and submit invoices for the previous month",
    SYNC_INVOICES: "Sync invoice status from the payment processor",
    OVERDUE_REMINDERS: "Mark invoices overdue and send payment reminders",
    AGGREGATE_USAGE: "Aggregate usage records into daily summaries",
    CHECK_TRIALS: "Expire finished trials and warn about trials ending soon",
    SUBSCRIPTION_ROLLOVER: "Apply scheduled cancellations and downgrades at period end",
    SYNC_SUBSCRIPTIONS: "Sync subscription status from the payment processor",
}

MONTH_KEY = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
DAY_KEY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
HOUR_KEY = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}$")

KEY_FORMATS = {
    MONTHLY_BILLING: MONTH_KEY,
    SYNC_INVOICES: HOUR_KEY,
    OVERDUE_REMINDERS: DAY_KEY,
    AGGREGATE_USAGE: DAY_KEY,
    CHECK_TRIALS: DAY_KEY,
    SUBSCRIPTION_ROLLOVER: HOUR_KEY,
    SYNC_SUBSCRIPTIONS: HOUR_KEY,
}

# Earliest UTC hour at which a daily job becomes due.
HOUR_GATES = {
    OVERDUE_REMINDERS: 9,
    CHECK_TRIALS: 10,
    AGGREGATE_USAGE: 1,
}

TRIAL_WARNING_DAYS = (1, 3, 7)
DEFAULT_STALE_AFTER_MINUTES = 60

Unit = Tuple[str, Callable[[], None]]


@dataclass(frozen=True)
class JobResult:
    job_name: str
    period_key: str
    processed: int
    errors: List[Dict[str, Any]] = field(default_factory=list)
    status: str = BillingJobRun.Status.COMPLETED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "period_key": self.period_key,
            "processed": self.processed,
            "errors": list(self.errors),
            "status": self.status,
        }


def default_period_key(job_name: str, now: datetime) -> str:
    now = now.astimezone(dt_timezone.utc)
    if job_name == MONTHLY_BILLING:
        previous = now.replace(day=1) - timedelta(days=1)
        return previous.strftime("%Y-%m")
    if job_name == AGGREGATE_USAGE:
        return (now - timedelta(days=1)).strftime("%Y-%m-%d")
    if KEY_FORMATS.get(job_name) is DAY_KEY:
        return now.strftime("%Y-%m-%d")
    return now.strftime("%Y-%m-%dT%H")


def _group_by_organization(rows: Iterable[Any], key: Callable[[Any], Any]) -> "OrderedDict[str, List[Any]]":
    grouped: "OrderedDict[str, List[Any]]" = OrderedDict()
    for row in rows:
        grouped.setdefault(str(key(row)), []).append(row)
    return grouped


class JobScheduler:
    def __init__(
        self,
        *,
        clock: Optional[Clock] = None,
        ledger: Optional[SubscriptionLedger] = None,
        invoices: Optional[InvoiceGenerator] = None,
        reconciler=None,
        meter=None,
        notifier=None,
    ) -> None:
        self.clock = clock or get_clock()
        self.ledger = ledger or SubscriptionLedger(clock=self.clock)
        self.invoices = invoices or InvoiceGenerator(clock=self.clock)
        self._reconciler = reconciler
        self._meter = meter
        self._notifier = notifier

    @property
    def reconciler(self):
        if self._reconciler is None:
            self._reconciler = WebhookReconciler(clock=self.clock, ledger=self.ledger, invoices=self.invoices)
        return self._reconciler

    @property
    def meter(self):
        return self._meter or get_usage_meter()

    @property
    def notifier(self):
        if self._notifier is None:
            self._notifier = get_notifier()
        return self._notifier

    # Public API

    def run(self, job_name: str, period_key: Optional[str] = None) -> JobResult:
        """Claim and execute one job for one period key."""

        key = self._validate(job_name, period_key)
        job_run, only_organizations = self._claim(job_name, key)
        started = time.monotonic()

        processed = 0
        errors: List[Dict[str, Any]] = []
        try:
            units = self._units(job_name, key)
            for organization_id, work in units:
                if only_organizations is not None and organization_id not in only_organizations:
                    continue
                try:
                    work()
                except Exception as exc:
                    logger.warning("Job %s[%s] failed for organization %s: %s", job_name, key, organization_id, exc)
                    errors.append({"organization_id": organization_id, "error": str(exc)})
                else:
                    processed += 1
        except Exception as exc:
            logger.exception("Job %s[%s] aborted.", job_name, key)
            errors.append({"error": str(exc)})
            self._finish(job_run, BillingJobRun.Status.FAILED, processed, errors)
            JOB_RUN_COUNT.labels(job_name=job_name, status=BillingJobRun.Status.FAILED).inc()
            raise

        if not errors:
            status = BillingJobRun.Status.COMPLETED
        elif processed == 0:
            status = BillingJobRun.Status.FAILED
        else:
            status = BillingJobRun.Status.PARTIAL

        self._finish(job_run, status, processed, errors)
        JOB_RUN_COUNT.labels(job_name=job_name, status=status).inc()
        JOB_RUN_LATENCY.labels(job_name=job_name).observe(time.monotonic() - started)
        log_billing_event(
            message="billing.job.finished",
            actor=f"job.{job_name}",
            level=logging.INFO if status == BillingJobRun.Status.COMPLETED else logging.WARNING,
            extra={
                "job_name": job_name,
                "period_key": key,
                "status": status,
                "processed": processed,
                "errors": len(errors),
                "attempt": job_run.attempts,
            },
        )
        return JobResult(job_name=job_name, period_key=key, processed=processed, errors=errors, status=status)

    def plan(self, job_name: str, period_key: Optional[str] = None) -> List[str]:
        """Organizations a run would touch, without claiming or writing anything."""

        key = self._validate(job_name, period_key)
        return [organization_id for organization_id, _ in self._units(job_name, key, include_side_effects=False)]

    def due_jobs(self, now: Optional[datetime] = None) -> List[Tuple[str, str]]:
        now = (now or self.clock.now()).astimezone(dt_timezone.utc)
        candidates: List[Tuple[str, str]] = []
        for job_name in JOB_NAMES:
            gate = HOUR_GATES.get(job_name)
            if gate is not None and now.hour < gate:
                continue
            candidates.append((job_name, default_period_key(job_name, now)))

        completed = set(
            BillingJobRun.objects.filter(
                status=BillingJobRun.Status.COMPLETED,
                job_name__in=[name for name, _ in candidates],
                period_key__in=[key for _, key in candidates],
            ).values_list("job_name", "period_key")
        )
        return [(name, key) for name, key in candidates if (name, key) not in completed]

    def run_scheduled(self, now: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
        results: List[Dict[str, Any]] = []
        skipped: List[Dict[str, Any]] = []
        for job_name, key in self.due_jobs(now):
            try:
                results.append(self.run(job_name, key).as_dict())
            except JobAlreadyRunError as exc:
                skipped.append({"job_name": job_name, "period_key": key, "reason": exc.message})
            except Exception as exc:
                logger.error("Scheduled job %s[%s] raised: %s", job_name, key, exc)
                results.append(
                    JobResult(
                        job_name=job_name,
                        period_key=key,
                        processed=0,
                        errors=[{"error": str(exc)}],
                        status=BillingJobRun.Status.FAILED,
                    ).as_dict()
                )
        return {"results": results, "skipped": skipped}

    # Claiming

    def _validate(self, job_name: str, period_key: Optional[str]) -> str:
        if job_name not in JOB_NAMES:
            raise ValidationError(
                f"Unknown job '{job_name}'.",
                details={"job": job_name, "available": list(JOB_NAMES)},
            )
        key = period_key or default_period_key(job_name, self.clock.now())
        if not KEY_FORMATS[job_name].match(key):
            raise ValidationError(
                f"Period key '{key}' has the wrong format for job '{job_name}'.",
                details={"job": job_name, "period_key": key},
            )
        return key

    def _claim(self, job_name: str, key: str) -> Tuple[BillingJobRun, Optional[Set[str]]]:
        now = self.clock.now()
        try:
            with transaction.atomic():
                job_run = BillingJobRun.objects.create(
                    job_name=job_name,
                    period_key=key,
                    status=BillingJobRun.Status.RUNNING,
                    started_at=now,
                )
            return job_run, None
        except IntegrityError:
            existing = BillingJobRun.objects.get(job_name=job_name, period_key=key)

        stale_after = timedelta(
            minutes=int(getattr(settings, "BILLING_JOB_STALE_AFTER_MINUTES", DEFAULT_STALE_AFTER_MINUTES))
        )
        if existing.status == BillingJobRun.Status.COMPLETED or (
            existing.status == BillingJobRun.Status.RUNNING and existing.started_at > now - stale_after
        ):
            raise JobAlreadyRunError(
                f"Job '{job_name}' for '{key}' is already {existing.status}.",
                job_run=existing,
                details={"job": job_name, "period_key": key, "status": existing.status},
            )

        only: Optional[Set[str]] = None
        if existing.status in (BillingJobRun.Status.PARTIAL, BillingJobRun.Status.FAILED):
            only = set(existing.failed_unit_ids()) or None

        claimed = BillingJobRun.objects.filter(pk=existing.pk, attempts=existing.attempts).update(
            status=BillingJobRun.Status.RUNNING,
            started_at=now,
            completed_at=None,
            attempts=F("attempts") + 1,
        )
        if not claimed:
            raise JobAlreadyRunError(
                f"Job '{job_name}' for '{key}' was reclaimed by another worker.",
                job_run=existing,
                details={"job": job_name, "period_key": key},
            )
        existing.refresh_from_db()
        logger.info(
            "Reclaimed %s job %s[%s] (attempt %s, %s organizations to retry).",
            "stale" if only is None else existing.status,
            job_name,
            key,
            existing.attempts,
            "all" if only is None else len(only),
        )
        return existing, only

    def _finish(self, job_run: BillingJobRun, status: str, processed: int, errors: List[Dict[str, Any]]) -> None:
        previous = job_run.processed if job_run.attempts > 1 else 0
        BillingJobRun.objects.filter(pk=job_run.pk).update(
            status=status,
            completed_at=self.clock.now(),
            processed=previous + processed,
            errors=errors,
        )

    # Units

    def _units(self, job_name: str, key: str, *, include_side_effects: bool = True) -> List[Unit]:
        builder = {
            MONTHLY_BILLING: self._monthly_billing_units,
            SYNC_INVOICES: self._sync_invoice_units,
            OVERDUE_REMINDERS: self._overdue_reminder_units,
            AGGREGATE_USAGE: self._aggregate_usage_units,
            CHECK_TRIALS: self._check_trial_units,
            SUBSCRIPTION_ROLLOVER: self._rollover_units,
            SYNC_SUBSCRIPTIONS: self._sync_subscription_units,
        }[job_name]
        if job_name == MONTHLY_BILLING and include_side_effects:
            flushed = self.meter.flush()
            logger.info("Flushed usage meter before monthly billing: %s", flushed.as_dict())
        return builder(key)

    def _monthly_billing_units(self, key: str) -> List[Unit]:
        year, month = (int(part) for part in key.split("-"))
        period_start = datetime(year, month, 1, tzinfo=dt_timezone.utc)
        period_end = datetime(year + 1, 1, 1, tzinfo=dt_timezone.utc) if month == 12 else datetime(
            year, month + 1, 1, tzinfo=dt_timezone.utc
        )
        organization_ids = (
            billable_subscriptions(period_end)
            .order_by("organization_id")
            .values_list("organization_id", flat=True)
            .distinct()
        )

        def bill(organization_id: str) -> None:
            try:
                invoice = self.invoices.generate(
                    organization_id, period_start, period_end, actor=f"job.{MONTHLY_BILLING}"
                )
            except DuplicatePeriodError as exc:
                invoice = exc.invoice
                if not (
                    invoice is not None
                    and invoice.status == Invoice.Status.DRAFT
                    and invoice.total > 0
                    and not invoice.external_invoice_ref
                ):
                    logger.info("Invoice for %s/%s already exists; skipping.", organization_id, key)
                    return
                logger.info("Resubmitting draft invoice %s for %s/%s.", invoice.pk, organization_id, key)
            if invoice.total > 0 and invoice.status == Invoice.Status.DRAFT:
                self.invoices.submit(invoice.pk, actor=f"job.{MONTHLY_BILLING}")

        return [(str(org_id), lambda org_id=org_id: bill(str(org_id))) for org_id in organization_ids]

    def _sync_invoice_units(self, key: str) -> List[Unit]:
        invoices = (
            Invoice.objects.filter(status__in=[Invoice.Status.PENDING, Invoice.Status.OVERDUE])
            .exclude(external_invoice_ref="")
            .order_by("organization_id", "period_start")
        )
        grouped = _group_by_organization(invoices, lambda invoice: invoice.organization_id)

        def sync(batch: List[Invoice]) -> None:
            for invoice in batch:
                self.invoices.sync_status(invoice.pk)

        return [(org_id, lambda batch=batch: sync(batch)) for org_id, batch in grouped.items()]

    def _overdue_reminder_units(self, key: str) -> List[Unit]:
        grouped = _group_by_organization(
            self.invoices.invoices_awaiting_reminder(self.clock.now()), lambda invoice: invoice.organization_id
        )

        def remind(batch: List[Invoice]) -> None:
            for invoice in batch:
                if invoice.status == Invoice.Status.PENDING:
                    self.invoices.update_status(
                        invoice.pk, Invoice.Status.OVERDUE, "due_date_passed", actor=f"job.{OVERDUE_REMINDERS}"
                    )
                self.invoices.send_reminder(invoice.pk, actor=f"job.{OVERDUE_REMINDERS}")

        return [(org_id, lambda batch=batch: remind(batch)) for org_id, batch in grouped.items()]

    def _aggregate_usage_units(self, key: str) -> List[Unit]:
        day = datetime.strptime(key, "%Y-%m-%d").replace(tzinfo=dt_timezone.utc)
        rows = (
            UsageRecord.objects.filter(occurred_at__gte=day, occurred_at__lt=day + timedelta(days=1))
            .values("organization_id", "usage_type")
            .annotate(quantity=Sum("quantity"), record_count=Count("id"))
            .order_by("organization_id", "usage_type")
        )
        grouped = _group_by_organization(rows, lambda row: row["organization_id"])

        def aggregate(organization_id: str, batch: List[Dict[str, Any]]) -> None:
            with transaction.atomic():
                for row in batch:
                    UsageDailySummary.objects.update_or_create(
                        organization_id=row["organization_id"],
                        usage_type=row["usage_type"],
                        day=day.date(),
                        defaults={"quantity": row["quantity"] or 0, "record_count": row["record_count"]},
                    )

        return [
            (org_id, lambda org_id=org_id, batch=batch: aggregate(org_id, batch)) for org_id, batch in grouped.items()
        ]

    def _check_trial_units(self, key: str) -> List[Unit]:
        now = self.clock.now()
        horizon = now + timedelta(days=max(TRIAL_WARNING_DAYS))
        trials = Subscription.objects.filter(
            status=Subscription.Status.TRIALING,
            trial_end__isnull=False,
            trial_end__lte=horizon,
        ).order_by("organization_id")
        grouped = _group_by_organization(trials, lambda subscription: subscription.organization_id)

        def check(batch: List[Subscription]) -> None:
            for subscription in batch:
                if subscription.trial_end <= now:
                    if subscription.has_payment_method:
                        continue
                    updated = self.ledger.expire_trial(subscription.pk)
                    if updated.status != subscription.status:
                        self.notifier.trial_expired(updated)
                    continue
                days_left = math.ceil((subscription.trial_end - now).total_seconds() / 86400)
                if days_left in TRIAL_WARNING_DAYS:
                    self.notifier.trial_ending(subscription, days_left)

        return [(org_id, lambda batch=batch: check(batch)) for org_id, batch in grouped.items()]

    def _rollover_units(self, key: str) -> List[Unit]:
        subscriptions = (
            Subscription.objects.exclude(status=Subscription.Status.CANCELED)
            .filter(current_period_end__lte=self.clock.now())
            .filter(Q(cancel_at_period_end=True) | ~Q(pending_plan_id=""))
            .order_by("organization_id")
        )
        grouped = _group_by_organization(subscriptions, lambda subscription: subscription.organization_id)

        def rollover(batch: List[Subscription]) -> None:
            for subscription in batch:
                self.ledger.rollover(subscription.pk)

        return [(org_id, lambda batch=batch: rollover(batch)) for org_id, batch in grouped.items()]

    def _sync_subscription_units(self, key: str) -> List[Unit]:
        subscriptions = (
            Subscription.objects.exclude(status=Subscription.Status.CANCELED)
            .exclude(external_subscription_ref="")
            .order_by("organization_id")
        )
        grouped = _group_by_organization(subscriptions, lambda subscription: subscription.organization_id)

        def sync(batch: List[Subscription]) -> None:
            for subscription in batch:
                self.reconciler.sync_subscription(subscription.pk)

        return [(org_id, lambda batch=batch: sync(batch)) for org_id, batch in grouped.items()]


__all__ = [
    "JOB_DESCRIPTIONS",
    "JOB_NAMES",
    "JobResult",
    "JobScheduler",
    "RUN_SCHEDULED",
    "default_period_key",
]
