import threading
import uuid

import pytest
from django.db import connection
from django.db.models import Sum

from billing.models import UsageRecord
from billing.services.usage_meter import UsageMeter, sanitize_metadata


@pytest.fixture
def meter(clock):
    return UsageMeter(clock=clock, max_buffer_size=100, flush_interval=3600, auto_flush=False)


@pytest.mark.django_db
def test_track_aggregates_per_organization_and_type(meter, organization):
    meter.track(organization.pk, "ai_conversation")
    meter.track(str(organization.pk), "ai_conversation", 2, user_id="user-1")

    assert meter.buffer_size() == 1
    result = meter.flush()

    assert result.flushed == 1
    assert result.remaining == 0
    record = UsageRecord.objects.get(organization=organization)
    assert record.usage_type == "ai_conversation"
    assert record.quantity == 3
    assert record.user_id == "user-1"
    assert record.billing_period == "2024-03"
    assert record.metadata["event_count"] == 2


@pytest.mark.django_db
def test_ai_message_token_count_also_meters_tokens(meter, organization):
    meter.track(organization.pk, "ai_message", metadata={"token_count": 1200, "model": "small"})
    meter.flush()

    quantities = dict(UsageRecord.objects.filter(organization=organization).values_list("usage_type", "quantity"))
    assert quantities == {"ai_message": 1, "ai_token": 1200}


@pytest.mark.parametrize(
    "organization_id,usage_type,quantity",
    [
        ("not-a-uuid", "ai_message", 1),
        (None, "ai_message", 1),
        ("00000000-0000-0000-0000-000000000001", "fax_sent", 1),
        ("00000000-0000-0000-0000-000000000001", "ai_message", 0),
        ("00000000-0000-0000-0000-000000000001", "ai_message", -4),
        ("00000000-0000-0000-0000-000000000001", "ai_message", "many"),
    ],
)
def test_invalid_events_are_dropped_without_raising(meter, organization_id, usage_type, quantity):
    meter.track(organization_id, usage_type, quantity)

    assert meter.buffer_size() == 0


@pytest.mark.django_db
def test_usage_for_unknown_organization_is_discarded_on_flush(meter, organization):
    meter.track(uuid.uuid4(), "receipt_processed", 5)
    meter.track(organization.pk, "receipt_processed", 2)

    result = meter.flush()

    assert result.flushed == 1
    assert UsageRecord.objects.count() == 1
    assert meter.buffer_size() == 0


@pytest.mark.django_db
def test_failed_flush_keeps_entries_for_the_next_attempt(meter, organization, monkeypatch):
    meter.track(organization.pk, "whatsapp_message_sent", 4)

    def broken_persist(snapshot, flush_id):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(meter, "_persist", broken_persist)
    result = meter.flush()

    assert result.failed == 1
    assert result.flushed == 0
    assert meter.buffer_size() == 1

    monkeypatch.undo()
    meter.track(organization.pk, "whatsapp_message_sent", 6)
    assert meter.flush().flushed == 1
    assert UsageRecord.objects.get(organization=organization).quantity == 10


@pytest.mark.django_db
def test_flush_of_empty_buffer_writes_nothing(meter):
    assert meter.flush().as_dict() == {"flushed": 0, "failed": 0, "remaining": 0}


@pytest.mark.django_db
def test_buffer_flushes_automatically_when_full(clock, organization):
    meter = UsageMeter(clock=clock, max_buffer_size=2, flush_interval=3600)

    meter.track(organization.pk, "receipt_processed")
    assert meter.buffer_size() == 1

    meter.track(organization.pk, "receipt_export")
    assert meter.buffer_size() == 0
    assert UsageRecord.objects.filter(organization=organization).count() == 2


def test_sanitize_metadata_drops_only_malformed_fields():
    cleaned = sanitize_metadata(
        {
            "model": "small",
            "token_count": 10,
            "tags": ("a", "b"),
            "nested": {"deep": {"x": 1}},
            "nan": float("nan"),
            7: "numeric key",
        }
    )

    assert cleaned == {"model": "small", "token_count": 10, "tags": ["a", "b"]}
    assert sanitize_metadata("not a mapping") == {}
    assert sanitize_metadata(None) == {}


@pytest.mark.django_db(transaction=True)
def test_concurrent_tracking_racing_flushes_loses_nothing(meter, organization):
    producers, events_per_producer = 8, 250
    start = threading.Barrier(producers + 1)
    failures = []

    def produce():
        start.wait()
        for _ in range(events_per_producer):
            meter.track(organization.pk, "receipt_processed", 1)

    def drain():
        start.wait()
        try:
            for _ in range(25):
                result = meter.flush()
                if result.failed:
                    failures.append(result.as_dict())
        finally:
            connection.close()

    threads = [threading.Thread(target=produce) for _ in range(producers)]
    threads.append(threading.Thread(target=drain))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    meter.flush()

    total = UsageRecord.objects.filter(organization=organization, usage_type="receipt_processed").aggregate(
        total=Sum("quantity")
    )["total"]
    assert failures == []
    assert total == producers * events_per_producer
    assert meter.buffer_size() == 0
