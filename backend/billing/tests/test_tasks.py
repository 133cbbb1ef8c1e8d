from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError
from django.utils import timezone

from billing.models import BillingJobRun, Invoice, WebhookEventRecord
from billing.services.usage_meter import UsageMeter, set_usage_meter
from billing.tasks import cleanup_webhook_event_records, flush_usage_meter, run_billing_job


def make_record(event_id, status, processed_days_ago):
    record = WebhookEventRecord.objects.create(external_event_id=event_id, event_type="charge.success", status=status)
    if processed_days_ago is not None:
        WebhookEventRecord.objects.filter(pk=record.pk).update(
            processed_at=timezone.now() - timedelta(days=processed_days_ago)
        )
    return record


@pytest.mark.django_db
def test_cleanup_removes_only_old_settled_events():
    make_record("charge.success:OLD", WebhookEventRecord.Status.PROCESSED, 45)
    make_record("charge.success:IGNORED", WebhookEventRecord.Status.IGNORED, 31)
    make_record("charge.success:RECENT", WebhookEventRecord.Status.PROCESSED, 2)
    make_record("charge.success:FAILED", WebhookEventRecord.Status.FAILED, None)

    deleted = cleanup_webhook_event_records(days=30)

    assert deleted == 2
    assert set(WebhookEventRecord.objects.values_list("external_event_id", flat=True)) == {
        "charge.success:RECENT",
        "charge.success:FAILED",
    }


@pytest.mark.django_db
def test_run_billing_job_reports_claimed_period():
    first = run_billing_job("aggregate_usage", "2024-01-01")
    second = run_billing_job("aggregate_usage", "2024-01-01")

    assert first["status"] == BillingJobRun.Status.COMPLETED
    assert second["skipped"] is True
    assert second["job_name"] == "aggregate_usage"
    assert BillingJobRun.objects.get(job_name="aggregate_usage").attempts == 1


@pytest.mark.django_db
def test_flush_usage_meter_task(organization):
    meter = UsageMeter(auto_flush=False)
    set_usage_meter(meter)
    meter.track(organization.pk, "whatsapp_message_sent", 3)

    assert flush_usage_meter() == {"flushed": 1, "failed": 0, "remaining": 0}


@pytest.mark.django_db
def test_run_billing_job_command_output():
    out = StringIO()

    call_command("run_billing_job", "aggregate_usage", "--period", "2024-01-02", stdout=out)
    call_command("run_billing_job", "aggregate_usage", "--period", "2024-01-02", stdout=out)

    lines = out.getvalue().splitlines()
    assert lines[0] == "aggregate_usage [2024-01-02] completed: 0 processed"
    assert lines[1].startswith("Skipped:")


@pytest.mark.django_db
def test_run_billing_job_command_dry_run_claims_nothing(ledger, organization):
    ledger.start_subscription(organization.pk, "ai-assistant")
    out = StringIO()

    call_command("run_billing_job", "monthly_billing", "--period", "2024-03", "--dry-run", stdout=out)

    assert "monthly_billing would touch 1 organizations" in out.getvalue()
    assert str(organization.pk) in out.getvalue()
    assert not BillingJobRun.objects.exists()


@pytest.mark.django_db
def test_run_billing_job_command_rejects_bad_period():
    with pytest.raises(CommandError):
        call_command("run_billing_job", "monthly_billing", "--period", "March", stdout=StringIO())

    with pytest.raises(CommandError):
        call_command("run_billing_job", stdout=StringIO())


@pytest.mark.django_db
def test_sync_invoice_status_command(ledger, invoices, processor, organization):
    ledger.start_subscription(organization.pk, "ai-assistant")
    invoice = invoices.submit(
        invoices.generate(
            organization.pk,
            datetime(2024, 3, 1, tzinfo=dt_timezone.utc),
            datetime(2024, 4, 1, tzinfo=dt_timezone.utc),
        ).pk
    )
    processor.payment_requests[invoice.external_invoice_ref] = {"status": "success", "paid": True}
    out = StringIO()

    call_command("sync_invoice_status", stdout=out)

    assert "Found 1 submitted invoices to check" in out.getvalue()
    assert "Updated 1 invoices" in out.getvalue()
    invoice.refresh_from_db()
    assert invoice.status == Invoice.Status.PAID
