from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal

import pytest

from billing.exceptions import CatalogConfigurationError, NotFoundError
from billing.services.plan_catalog import (
    ANNUAL,
    get_plan,
    get_usage_price,
    monthly_amount,
    monthly_equivalent,
    plan_price,
    round_half_up,
    validate_catalog,
)
from billing.services.proration import compute_proration, days_remaining, is_upgrade

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=dt_timezone.utc)


@pytest.mark.parametrize(
    "period_end,expected",
    [
        (None, 0),
        (NOW - timedelta(days=1), 0),
        (NOW, 0),
        (NOW + timedelta(days=15), 15),
        (NOW + timedelta(days=10, hours=1), 11),
        (NOW + timedelta(days=45), 30),
    ],
)
def test_days_remaining_rounds_up_and_clamps(period_end, expected):
    assert days_remaining(period_end, NOW) == expected


def test_compute_proration_half_month_upgrade():
    amounts = compute_proration(49900, 89900, 15)

    assert amounts.credit == 24950
    assert amounts.charge == 44950
    assert amounts.proration_amount == 20000


def test_compute_proration_rounds_each_side_half_up():
    amounts = compute_proration(49900, 89900, 7)

    # 49900 * 7 / 30 = 11643.33 and 89900 * 7 / 30 = 20976.67
    assert amounts.credit == 11643
    assert amounts.charge == 20977
    assert amounts.proration_amount == 9334


def test_compute_proration_downgrade_is_negative():
    amounts = compute_proration(89900, 9900, 30)

    assert amounts.proration_amount == -80000


def test_compute_proration_clamps_days():
    assert compute_proration(49900, 89900, 90).days_remaining == 30
    assert compute_proration(49900, 89900, -3).proration_amount == 0


def test_round_half_up_goes_away_from_zero_on_halves():
    assert round_half_up(Decimal("1234.5")) == 1235
    assert round_half_up(Decimal("1234.49")) == 1234


def test_per_user_plan_price_scales_with_seats():
    plan = get_plan("receipt-assistant")

    assert plan_price(plan, seats=3) == 29700
    assert plan_price(get_plan("bundle"), seats=3) == 89900


def test_annual_monthly_equivalent():
    assert monthly_equivalent(get_plan("ai-assistant"), ANNUAL) == 39917


def test_monthly_amount_spreads_annual_charges():
    assert monthly_amount(479000, ANNUAL) == 39917
    assert monthly_amount(39900) == 39900


def test_is_upgrade_only_for_strictly_higher_price():
    assert is_upgrade(39900, 89900) is True
    assert is_upgrade(89900, 39900) is False
    assert is_upgrade(39900, 39900) is False


def test_unknown_plan_raises_not_found():
    with pytest.raises(NotFoundError):
        get_plan("enterprise")


def test_usage_overage_pricing():
    tokens = get_usage_price("ai_token")
    messages = get_usage_price("whatsapp_message_sent")

    assert tokens.overage_quantity(512345) == 12345
    assert tokens.overage_total(512345) == 1235
    assert messages.overage_total(5100) == 1000
    assert messages.overage_total(4000) == 0
    assert get_usage_price("ai_message").overage_total(10**9) == 0


def test_validate_catalog_rejects_malformed_prices(settings):
    settings.BILLING_PLANS = {"starter": {"monthly_price": "cheap"}}

    with pytest.raises(CatalogConfigurationError):
        validate_catalog()


def test_validate_catalog_rejects_negative_overage(settings):
    settings.BILLING_USAGE_PRICING = {"ai_token": {"included": 10, "overage_price": "-1"}}

    with pytest.raises(CatalogConfigurationError):
        validate_catalog()
