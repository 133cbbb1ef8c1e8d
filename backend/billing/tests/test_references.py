from datetime import datetime, timezone as dt_timezone

from billing.services.references import generate_transaction_reference, parse_transaction_reference

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=dt_timezone.utc)


def test_generated_reference_round_trips_plan_and_timestamp():
    reference = generate_transaction_reference("ai-assistant", "user-123456789", now=NOW)

    assert reference.startswith("BF-ai-assistant-1710072000000-user-123-")
    parsed = parse_transaction_reference(reference)
    assert parsed.plan_id == "ai-assistant"
    assert parsed.timestamp_ms == 1710072000000


def test_references_are_unique():
    first = generate_transaction_reference("bundle", now=NOW)
    second = generate_transaction_reference("bundle", now=NOW)

    assert first != second


def test_foreign_references_are_not_parsed():
    assert parse_transaction_reference("T123456789") is None
    assert parse_transaction_reference("") is None
    assert parse_transaction_reference(None) is None
