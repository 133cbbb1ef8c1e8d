"""Checkout transaction references of the form ``BF-{plan}-{ms}[-{user}]-{rand}``."""
from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from billing.clock import get_clock

REFERENCE_PREFIX = "BF"
_REFERENCE_PATTERN = re.compile(r"^BF-([a-z-]+)-(\d+)")
_BASE36 = string.digits + string.ascii_lowercase


@dataclass(frozen=True)
class TransactionReference:
    plan_id: str
    timestamp_ms: int


def generate_transaction_reference(plan_id: str, user_id: Optional[str] = None, *, now: Optional[datetime] = None) -> str:
    instant = now or get_clock().now()
    timestamp_ms = int(instant.timestamp() * 1000)
    user_part = f"-{str(user_id)[:8]}" if user_id else ""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{REFERENCE_PREFIX}-{plan_id}-{timestamp_ms}{user_part}-{suffix}"


def parse_transaction_reference(reference: Optional[str]) -> Optional[TransactionReference]:
    """Return the plan and timestamp encoded in ``reference``, or ``None``."""

    if not reference:
        return None
    match = _REFERENCE_PATTERN.match(reference)
    if match is None:
        return None
    return TransactionReference(plan_id=match.group(1), timestamp_ms=int(match.group(2)))


__all__ = ["TransactionReference", "generate_transaction_reference", "parse_transaction_reference"]
