from datetime import datetime, timedelta, timezone as dt_timezone

import pytest

from billing.exceptions import (
    DuplicatePeriodError,
    ExternalProcessorError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from billing.models import Invoice, PendingCharge, UsageRecord
from billing.services.invoice_generator import month_bounds

MARCH_START = datetime(2024, 3, 1, tzinfo=dt_timezone.utc)
APRIL_START = datetime(2024, 4, 1, tzinfo=dt_timezone.utc)


def record_usage(organization, usage_type, quantity, day=15):
    return UsageRecord.objects.create(
        organization=organization,
        usage_type=usage_type,
        quantity=quantity,
        occurred_at=datetime(2024, 3, day, 9, 0, tzinfo=dt_timezone.utc),
        billing_period="2024-03",
    )


@pytest.fixture
def draft_invoice(ledger, invoices, organization):
    ledger.start_subscription(organization.pk, "ai-assistant")
    return invoices.generate(organization.pk, MARCH_START, APRIL_START)


@pytest.fixture
def pending_invoice(invoices, draft_invoice):
    return invoices.submit(draft_invoice.pk)


def test_month_bounds_wraps_year():
    start, end = month_bounds(datetime(2023, 12, 31, 23, 59, tzinfo=dt_timezone.utc))

    assert start == datetime(2023, 12, 1, tzinfo=dt_timezone.utc)
    assert end == datetime(2024, 1, 1, tzinfo=dt_timezone.utc)


@pytest.mark.django_db
def test_generate_bills_plan_and_usage_overage(ledger, invoices, organization):
    ledger.start_subscription(organization.pk, "ai-assistant")
    record_usage(organization, "ai_token", 300000, day=5)
    record_usage(organization, "ai_token", 212345, day=20)
    record_usage(organization, "whatsapp_message_sent", 5100)
    record_usage(organization, "ai_message", 90000)
    UsageRecord.objects.create(
        organization=organization,
        usage_type="ai_token",
        quantity=999999,
        occurred_at=APRIL_START,
        billing_period="2024-04",
    )

    invoice = invoices.generate(organization.pk, MARCH_START, APRIL_START)

    assert invoice.status == Invoice.Status.DRAFT
    assert invoice.billing_period == "2024-03"
    assert invoice.currency == "zar"
    assert invoice.due_date == APRIL_START + timedelta(days=7)
    kinds = [(item["kind"], item.get("usage_type"), item["total"]) for item in invoice.line_items]
    assert kinds == [
        ("subscription", None, 49900),
        ("overage", "ai_token", 1235),
        ("overage", "whatsapp_message_sent", 1000),
    ]
    assert invoice.subtotal == invoice.total == 52135


@pytest.mark.django_db
def test_generate_defaults_to_the_clock_month(ledger, invoices, organization):
    ledger.start_subscription(organization.pk, "ai-assistant")

    invoice = invoices.generate(organization.pk)

    assert (invoice.period_start, invoice.period_end) == (MARCH_START, APRIL_START)


@pytest.mark.django_db
def test_generate_consumes_pending_proration_charges(ledger, invoices, organization, clock):
    ledger.start_subscription(organization.pk, "ai-assistant")
    clock.advance(days=15)
    ledger.apply_plan_change(organization.pk, "bundle")

    invoice = invoices.generate(organization.pk, MARCH_START, APRIL_START)

    proration = [item for item in invoice.line_items if item["kind"] == "proration"]
    assert [item["total"] for item in proration] == [20000]
    assert invoice.total == 89900 + 20000
    charge = PendingCharge.objects.get()
    assert charge.status == PendingCharge.Status.INVOICED
    assert charge.invoice_id == invoice.pk


@pytest.mark.django_db
def test_trial_invoice_is_zero_and_paid(ledger, invoices, organization, clock):
    ledger.start_subscription(organization.pk, "free")

    invoice = invoices.generate(organization.pk, MARCH_START, APRIL_START)

    assert invoice.total == 0
    assert invoice.status == Invoice.Status.PAID
    assert invoice.paid_at == clock.now()
    assert invoice.line_items[0]["description"].endswith("(trial)")


@pytest.mark.django_db
def test_per_user_plan_bills_every_seat(ledger, invoices, organization):
    organization.seat_count = 4
    organization.save(update_fields=["seat_count"])
    ledger.start_subscription(organization.pk, "receipt-assistant")

    invoice = invoices.generate(organization.pk, MARCH_START, APRIL_START)

    item = invoice.line_items[0]
    assert item["quantity"] == 4
    assert item["total"] == 39600


@pytest.mark.django_db
def test_second_generation_for_period_returns_existing(invoices, draft_invoice, organization):
    with pytest.raises(DuplicatePeriodError) as exc:
        invoices.generate(organization.pk, MARCH_START, APRIL_START)

    assert exc.value.invoice.pk == draft_invoice.pk
    assert Invoice.objects.filter(organization=organization).count() == 1


@pytest.mark.django_db
def test_generate_validates_period(invoices, organization):
    with pytest.raises(ValidationError):
        invoices.generate(organization.pk, MARCH_START, None)
    with pytest.raises(ValidationError):
        invoices.generate(organization.pk, APRIL_START, MARCH_START)


@pytest.mark.django_db
def test_submit_creates_customer_and_payment_request_once(invoices, processor, draft_invoice, organization):
    submitted = invoices.submit(draft_invoice.pk)

    assert submitted.status == Invoice.Status.PENDING
    assert submitted.external_invoice_ref == "PRQ_2"
    assert submitted.pdf_url == "https://paystack.test/PRQ_2.pdf"
    organization.refresh_from_db()
    assert organization.external_customer_ref == "CUS_1"
    assert processor.called("create_customer") == [("create_customer", "billing@acme.test")]

    again = invoices.submit(draft_invoice.pk)
    assert again.version == submitted.version
    assert len(processor.called("create_payment_request")) == 1


@pytest.mark.django_db
def test_zero_total_invoices_are_not_submitted(ledger, invoices, processor, organization):
    ledger.start_subscription(organization.pk, "free")
    invoice = invoices.generate(organization.pk, MARCH_START, APRIL_START)

    with pytest.raises(InvalidStateError):
        invoices.submit(invoice.pk)
    assert processor.calls == []


@pytest.mark.django_db
def test_sync_status_marks_paid(invoices, processor, pending_invoice):
    processor.payment_requests[pending_invoice.external_invoice_ref] = {
        "status": "success",
        "paid": True,
        "paid_at": "2024-04-05T10:00:00Z",
    }

    outcome = invoices.sync_status(pending_invoice.pk)

    assert outcome == {"changed": True, "status": Invoice.Status.PAID}
    pending_invoice.refresh_from_db()
    assert pending_invoice.paid_at == datetime(2024, 4, 5, 10, 0, tzinfo=dt_timezone.utc)
    assert invoices.sync_status(pending_invoice.pk) == {"changed": False, "status": Invoice.Status.PAID}


@pytest.mark.django_db
def test_sync_status_without_processor_reference(invoices, draft_invoice):
    assert invoices.sync_status(draft_invoice.pk) == {
        "changed": False,
        "status": Invoice.Status.DRAFT,
        "reason": "not_submitted",
    }


@pytest.mark.django_db
def test_reminders_only_for_outstanding_invoices(invoices, processor, notifier, clock, draft_invoice):
    with pytest.raises(InvalidStateError):
        invoices.send_reminder(draft_invoice.pk)

    pending = invoices.submit(draft_invoice.pk)
    reminded = invoices.send_reminder(pending.pk)

    assert reminded.reminder_sent_at == clock.now()
    assert processor.called("notify_payment_request") == [("notify_payment_request", pending.external_invoice_ref)]
    assert notifier.sent == [("overdue_reminder", pending.pk)]


@pytest.mark.django_db
def test_update_status_follows_invoice_transitions(invoices, processor, pending_invoice):
    overdue = invoices.update_status(pending_invoice.pk, Invoice.Status.OVERDUE, "due_date_passed")
    assert overdue.status == Invoice.Status.OVERDUE

    with pytest.raises(InvalidStateError):
        invoices.update_status(pending_invoice.pk, Invoice.Status.DRAFT)
    with pytest.raises(ValidationError):
        invoices.update_status(pending_invoice.pk, "refunded")

    cancelled = invoices.update_status(pending_invoice.pk, Invoice.Status.CANCELLED, "written_off")
    assert cancelled.status == Invoice.Status.CANCELLED
    assert processor.called("archive_payment_request") == [("archive_payment_request", pending_invoice.external_invoice_ref)]


@pytest.mark.django_db
def test_mark_paid_is_idempotent(invoices, pending_invoice):
    paid = invoices.mark_paid(pending_invoice.pk, reference="T1")
    again = invoices.mark_paid(pending_invoice.pk, reference="T1")

    assert paid.status == Invoice.Status.PAID
    assert again.version == paid.version


@pytest.mark.django_db
def test_overdue_invoices_and_stats(invoices, clock, pending_invoice, organization):
    assert list(invoices.overdue_invoices()) == []

    clock.set(pending_invoice.due_date + timedelta(hours=1))
    assert [invoice.pk for invoice in invoices.overdue_invoices()] == [pending_invoice.pk]

    stats = invoices.invoice_stats(organization.pk)
    assert stats == {"total_paid": 0, "total_pending": 49900, "total_overdue": 0, "invoice_count": 1}


@pytest.mark.django_db
def test_unknown_invoice_is_not_found(invoices):
    with pytest.raises(NotFoundError):
        invoices.submit("00000000-0000-0000-0000-000000000000")
    with pytest.raises(NotFoundError):
        invoices.sync_status("garbage")


@pytest.mark.django_db
def test_resubmission_reuses_unconfirmed_payment_request(invoices, processor, draft_invoice):
    processor.lose_next_create_response = True

    with pytest.raises(ExternalProcessorError):
        invoices.submit(draft_invoice.pk)
    draft_invoice.refresh_from_db()
    assert draft_invoice.status == Invoice.Status.DRAFT

    submitted = invoices.submit(draft_invoice.pk)

    assert submitted.status == Invoice.Status.PENDING
    assert submitted.external_invoice_ref == "PRQ_2"
    assert len(processor.called("create_payment_request")) == 1
