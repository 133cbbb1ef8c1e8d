"""Celery tasks for scheduled billing jobs, usage flushing and payment event handling."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from celery import shared_task
from django.db import IntegrityError
from django.utils import timezone

from billing.exceptions import JobAlreadyRunError
from billing.models import WebhookEventRecord
from billing.services.job_scheduler import JobScheduler
from billing.services.usage_meter import get_usage_meter
from billing.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)


@shared_task(queue="billing")
def run_billing_job(job_name: str, period_key: Optional[str] = None) -> Dict[str, Any]:
    """Run one billing job for one period; an already claimed period is reported, not raised."""

    try:
        result = JobScheduler().run(job_name, period_key)
    except JobAlreadyRunError as exc:
        logger.info("Skipping billing job %s[%s]: %s", job_name, period_key or "default", exc.message)
        return {"skipped": True, "job_name": job_name, "reason": exc.message}
    return result.as_dict()


@shared_task(queue="billing")
def run_scheduled_billing_jobs() -> Dict[str, Any]:
    """Run every job that is due now and has not completed for its current period."""

    outcome = JobScheduler().run_scheduled()
    logger.info(
        "Scheduled billing sweep finished: %s ran, %s skipped.",
        len(outcome["results"]),
        len(outcome["skipped"]),
    )
    return outcome


@shared_task(bind=True, queue="billing", autoretry_for=(IntegrityError,), retry_backoff=True, max_retries=5)
def process_payment_event_async(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a verified processor event outside the request cycle."""

    result = WebhookReconciler().handle(payload)
    logger.info(
        "Processed payment event %s (%s): %s",
        result.event_id,
        result.event_type,
        result.status,
    )
    return result.as_dict()


@shared_task(queue="billing")
def flush_usage_meter() -> Dict[str, int]:
    """Persist whatever the in-process usage buffer holds."""

    return get_usage_meter().flush().as_dict()


@shared_task(queue="billing")
def cleanup_webhook_event_records(days: int = 30) -> int:
    """Remove processed or ignored webhook events older than ``days`` days."""

    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = WebhookEventRecord.objects.filter(
        status__in=(WebhookEventRecord.Status.PROCESSED, WebhookEventRecord.Status.IGNORED),
        processed_at__lt=cutoff,
    ).delete()

    logger.info("Cleaned up %s webhook event records older than %s days.", deleted, days)
    return deleted
