"""In-process usage buffer that aggregates events and flushes them as UsageRecord rows."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from django.conf import settings
from django.db import transaction

from organizations.models import Organization

from billing.clock import Clock, get_clock
from billing.models import UsageRecord
from billing.observability.metrics import USAGE_FLUSH_COUNT, USAGE_FLUSHED_ENTRIES
from billing.services.plan_catalog import USAGE_TYPES

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFER_SIZE = 100
DEFAULT_FLUSH_INTERVAL_SECONDS = 5.0
_SCALARS = (str, int, float, bool, type(None))

BufferKey = Tuple[str, str]


@dataclass
class _Bucket:
    quantity: int
    first_seen: datetime
    event_count: int = 1
    user_id: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def absorb(self, other: "_Bucket") -> None:
        self.quantity += other.quantity
        self.event_count += other.event_count
        self.first_seen = min(self.first_seen, other.first_seen)
        self.user_id = other.user_id or self.user_id
        self.metadata.update(other.metadata)


@dataclass(frozen=True)
class FlushResult:
    flushed: int
    failed: int
    remaining: int

    def as_dict(self) -> Dict[str, int]:
        return {"flushed": self.flushed, "failed": self.failed, "remaining": self.remaining}


def _is_json_safe(value: Any) -> bool:
    if isinstance(value, _SCALARS):
        return not (isinstance(value, float) and value != value)
    if isinstance(value, (list, tuple)):
        return all(isinstance(item, _SCALARS) for item in value)
    if isinstance(value, Mapping):
        return all(isinstance(key, str) and isinstance(item, _SCALARS) for key, item in value.items())
    return False


def sanitize_metadata(metadata: Any) -> Dict[str, Any]:
    """Keep JSON-safe fields, dropping each malformed field individually."""

    if metadata is None:
        return {}
    if not isinstance(metadata, Mapping):
        logger.debug("Dropping non-mapping usage metadata of type %s.", type(metadata).__name__)
        return {}

    cleaned: Dict[str, Any] = {}
    for key, value in metadata.items():
        if not isinstance(key, str):
            logger.debug("Dropping usage metadata field with non-string key %r.", key)
            continue
        if not _is_json_safe(value):
            logger.debug("Dropping malformed usage metadata field %r.", key)
            continue
        cleaned[key] = list(value) if isinstance(value, tuple) else value
    return cleaned


class UsageMeter:
    """
    Buffer usage increments per ``(organization_id, usage_type)``.

    ``track`` never raises. ``flush`` swaps the live map for an empty one under
    the lock and writes the drained snapshot outside it; a failed write merges
    the snapshot back so nothing is lost (at-least-once).
    """

    def __init__(
        self,
        *,
        clock: Optional[Clock] = None,
        max_buffer_size: Optional[int] = None,
        flush_interval: Optional[float] = None,
        auto_flush: bool = True,
    ) -> None:
        self.clock = clock or get_clock()
        self.max_buffer_size = max_buffer_size or getattr(
            settings, "BILLING_USAGE_MAX_BUFFER_SIZE", DEFAULT_MAX_BUFFER_SIZE
        )
        self.flush_interval = flush_interval if flush_interval is not None else getattr(
            settings, "BILLING_USAGE_FLUSH_INTERVAL_SECONDS", DEFAULT_FLUSH_INTERVAL_SECONDS
        )
        self.auto_flush = auto_flush
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._buffer: Dict[BufferKey, _Bucket] = {}
        self._last_flush = time.monotonic()

    def track(
        self,
        organization_id: Any,
        usage_type: str,
        quantity: Any = 1,
        metadata: Any = None,
        user_id: Any = None,
    ) -> None:
        try:
            self._track(organization_id, usage_type, quantity, metadata, user_id)
        except Exception:  # pragma: no cover - tracking must never break the caller
            logger.exception("Usage tracking failed for %s/%s; event dropped.", organization_id, usage_type)
            return

        if self.auto_flush and self._should_flush():
            try:
                self.flush()
            except Exception:  # pragma: no cover - flush errors are already merged back
                logger.exception("Automatic usage flush failed.")

    def _track(self, organization_id, usage_type, quantity, metadata, user_id) -> None:
        org_key = self._normalise_organization_id(organization_id)
        if org_key is None:
            logger.warning("Dropping usage event with invalid organization id %r.", organization_id)
            return
        if usage_type not in USAGE_TYPES:
            logger.warning("Dropping usage event with unknown usage type %r.", usage_type)
            return
        try:
            amount = int(quantity)
        except (TypeError, ValueError):
            logger.warning("Dropping usage event %s/%s with non-integer quantity %r.", org_key, usage_type, quantity)
            return
        if amount <= 0:
            logger.warning("Dropping usage event %s/%s with non-positive quantity %s.", org_key, usage_type, amount)
            return

        clean_metadata = sanitize_metadata(metadata)
        now = self.clock.now()
        user = str(user_id)[:64] if user_id else ""

        increments = [(usage_type, amount)]
        if usage_type == "ai_message":
            token_count = clean_metadata.get("token_count")
            if isinstance(token_count, int) and not isinstance(token_count, bool) and token_count > 0:
                increments.append(("ai_token", token_count))

        with self._lock:
            for increment_type, increment in increments:
                bucket = _Bucket(
                    quantity=increment,
                    first_seen=now,
                    user_id=user,
                    metadata=dict(clean_metadata),
                )
                key = (org_key, increment_type)
                existing = self._buffer.get(key)
                if existing is None:
                    self._buffer[key] = bucket
                else:
                    existing.absorb(bucket)

    @staticmethod
    def _normalise_organization_id(organization_id: Any) -> Optional[str]:
        if isinstance(organization_id, uuid.UUID):
            return str(organization_id)
        try:
            return str(uuid.UUID(str(organization_id)))
        except (TypeError, ValueError, AttributeError):
            return None

    def _should_flush(self) -> bool:
        with self._lock:
            size = len(self._buffer)
        if size == 0:
            return False
        return size >= self.max_buffer_size or (time.monotonic() - self._last_flush) >= self.flush_interval

    def buffer_size(self) -> int:
        with self._lock:
            return len(self._buffer)

    def flush(self) -> FlushResult:
        with self._flush_lock:
            with self._lock:
                snapshot, self._buffer = self._buffer, {}
                self._last_flush = time.monotonic()

            if not snapshot:
                return FlushResult(flushed=0, failed=0, remaining=self.buffer_size())

            flush_id = uuid.uuid4().hex
            try:
                written = self._persist(snapshot, flush_id)
            except Exception as exc:
                self._merge_back(snapshot)
                USAGE_FLUSH_COUNT.labels(result="failed").inc()
                logger.error(
                    "Usage flush %s failed; %s entries returned to the buffer: %s",
                    flush_id,
                    len(snapshot),
                    exc,
                )
                return FlushResult(flushed=0, failed=len(snapshot), remaining=self.buffer_size())

            USAGE_FLUSH_COUNT.labels(result="success").inc()
            USAGE_FLUSHED_ENTRIES.inc(written)
            logger.info("Usage flush %s wrote %s aggregated entries.", flush_id, written)
            return FlushResult(flushed=written, failed=0, remaining=self.buffer_size())

    def _merge_back(self, snapshot: Dict[BufferKey, _Bucket]) -> None:
        with self._lock:
            for key, bucket in snapshot.items():
                existing = self._buffer.get(key)
                if existing is None:
                    self._buffer[key] = bucket
                else:
                    bucket.absorb(existing)
                    self._buffer[key] = bucket

    def _persist(self, snapshot: Dict[BufferKey, _Bucket], flush_id: str) -> int:
        organization_ids = {org_id for org_id, _ in snapshot}
        known = {str(pk) for pk in Organization.objects.filter(pk__in=organization_ids).values_list("pk", flat=True)}
        unknown = organization_ids - known
        if unknown:
            logger.warning("Discarding usage for unknown organizations: %s", sorted(unknown))

        records = []
        for (org_id, usage_type), bucket in snapshot.items():
            if org_id not in known:
                continue
            metadata = dict(bucket.metadata)
            metadata["event_count"] = bucket.event_count
            records.append(
                UsageRecord(
                    organization_id=org_id,
                    user_id=bucket.user_id,
                    usage_type=usage_type,
                    quantity=bucket.quantity,
                    occurred_at=bucket.first_seen,
                    billing_period=bucket.first_seen.strftime("%Y-%m"),
                    metadata=metadata,
                    flush_id=flush_id,
                )
            )

        with transaction.atomic():
            UsageRecord.objects.bulk_create(records)
        return len(records)


_default_meter: Optional[UsageMeter] = None
_default_meter_lock = threading.Lock()


def get_usage_meter() -> UsageMeter:
    """Return the per-process meter shared by views and tasks."""

    global _default_meter
    if _default_meter is None:
        with _default_meter_lock:
            if _default_meter is None:
                _default_meter = UsageMeter()
    return _default_meter


def set_usage_meter(meter: Optional[UsageMeter]) -> None:
    global _default_meter
    _default_meter = meter


__all__ = ["FlushResult", "UsageMeter", "get_usage_meter", "sanitize_metadata", "set_usage_meter"]
