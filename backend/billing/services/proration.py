"""Proration arithmetic for mid-cycle plan changes (integer cents, 30-day month)."""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from billing.services.plan_catalog import round_half_up

DAYS_PER_MONTH = 30
SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class ProrationAmounts:
    days_remaining: int
    credit: int
    charge: int
    proration_amount: int


@dataclass(frozen=True)
class ProrationPreview:
    organization_id: str
    current_plan_id: Optional[str]
    new_plan_id: str
    billing_interval: str
    old_price: int
    new_price: int
    days_remaining: int
    credit: int
    charge: int
    proration_amount: int
    is_upgrade: bool
    effective_date: datetime
    currency: str

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["effective_date"] = self.effective_date.isoformat()
        return payload


def days_remaining(period_end: Optional[datetime], now: datetime) -> int:
    """Whole days left in the period, rounded up and clamped to ``[0, 30]``."""

    if period_end is None:
        return 0
    seconds = (period_end - now).total_seconds()
    if seconds <= 0:
        return 0
    return min(DAYS_PER_MONTH, math.ceil(seconds / SECONDS_PER_DAY))


def compute_proration(old_price: int, new_price: int, remaining_days: int) -> ProrationAmounts:
    remaining_days = max(0, min(DAYS_PER_MONTH, int(remaining_days)))
    credit = round_half_up(Decimal(int(old_price)) * remaining_days / DAYS_PER_MONTH)
    charge = round_half_up(Decimal(int(new_price)) * remaining_days / DAYS_PER_MONTH)
    return ProrationAmounts(
        days_remaining=remaining_days,
        credit=credit,
        charge=charge,
        proration_amount=charge - credit,
    )


def is_upgrade(old_price: int, new_price: int) -> bool:
    return new_price > old_price


__all__ = [
    "DAYS_PER_MONTH",
    "ProrationAmounts",
    "ProrationPreview",
    "compute_proration",
    "days_remaining",
    "is_upgrade",
]
