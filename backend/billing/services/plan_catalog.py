"""Settings-driven catalog of subscription plans and metered usage pricing."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from django.conf import settings

from billing.exceptions import CatalogConfigurationError, NotFoundError

logger = logging.getLogger(__name__)

MONTHLY = "monthly"
ANNUAL = "annual"
BILLING_INTERVALS = (MONTHLY, ANNUAL)

# Prices are minor units (cents) in BILLING_CURRENCY.
DEFAULT_PLANS: Dict[str, Dict[str, Any]] = {
    "free": {
        "name": "Free Trial",
        "monthly_price": 0,
        "annual_price": 0,
        "trial_days": 14,
        "services": ("ai-assistant", "whatsapp-assistant", "receipt-assistant"),
    },
    "ai-assistant": {
        "name": "AI Assistant",
        "monthly_price": 49900,
        "annual_price": 479000,
        "services": ("ai-assistant",),
    },
    "whatsapp-assistant": {
        "name": "WhatsApp Assistant",
        "monthly_price": 49900,
        "annual_price": 479000,
        "services": ("whatsapp-assistant",),
    },
    "receipt-assistant": {
        "name": "Receipt Assistant",
        "monthly_price": 9900,
        "annual_price": 95000,
        "per_user": True,
        "services": ("receipt-assistant",),
    },
    "bundle": {
        "name": "Complete Bundle",
        "monthly_price": 89900,
        "annual_price": 863000,
        "services": ("ai-assistant", "whatsapp-assistant", "receipt-assistant"),
    },
}

# included = -1 means unlimited; overage_price is cents per unit.
DEFAULT_USAGE_PRICING: Dict[str, Dict[str, Any]] = {
    "ai_conversation": {"description": "AI Conversation", "included": -1, "overage_price": "0"},
    "ai_message": {"description": "AI Message", "included": -1, "overage_price": "0"},
    "ai_token": {"description": "AI Token", "included": 500000, "overage_price": "0.1"},
    "whatsapp_message_sent": {"description": "WhatsApp Message Sent", "included": 5000, "overage_price": "10"},
    "whatsapp_message_received": {"description": "WhatsApp Message Received", "included": -1, "overage_price": "0"},
    "receipt_processed": {"description": "Receipt Processed", "included": -1, "overage_price": "0"},
    "receipt_export": {"description": "Receipt Export", "included": -1, "overage_price": "0"},
}

USAGE_TYPES: Tuple[str, ...] = tuple(DEFAULT_USAGE_PRICING)


@dataclass(frozen=True)
class PlanDefinition:
    """A purchasable subscription plan."""

    key: str
    name: str
    monthly_price: int
    annual_price: int
    per_user: bool = False
    trial_days: int = 0
    services: Tuple[str, ...] = ()
    processor_plan_code: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.monthly_price == 0 and self.annual_price == 0


@dataclass(frozen=True)
class UsagePrice:
    """Included allowance and overage pricing for one usage type."""

    usage_type: str
    description: str
    service: str
    included: int
    overage_price: Decimal

    @property
    def unlimited(self) -> bool:
        return self.included < 0

    def overage_quantity(self, quantity: int) -> int:
        if self.unlimited:
            return 0
        return max(0, int(quantity) - self.included)

    def overage_total(self, quantity: int) -> int:
        return round_half_up(Decimal(self.overage_quantity(quantity)) * self.overage_price)


def round_half_up(value: Decimal) -> int:
    """Round a Decimal amount of cents to an integer, halves away from zero."""

    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def service_for_usage_type(usage_type: str) -> str:
    if usage_type.startswith("whatsapp_"):
        return "whatsapp-assistant"
    if usage_type.startswith("receipt_"):
        return "receipt-assistant"
    return "ai-assistant"


def _coerce_price(key: str, field: str, value: Any) -> int:
    try:
        price = int(value)
    except (TypeError, ValueError) as exc:
        raise CatalogConfigurationError(f"Plan '{key}' has a non-integer {field}: {value!r}.") from exc
    if price < 0:
        raise CatalogConfigurationError(f"Plan '{key}' must not have a negative {field}.")
    return price


def _build_plan_catalog(raw_plans: Mapping[str, Any]) -> Dict[str, PlanDefinition]:
    if not isinstance(raw_plans, Mapping) or not raw_plans:
        raise CatalogConfigurationError("BILLING_PLANS must be a non-empty mapping of plan keys to definitions.")

    catalog: Dict[str, PlanDefinition] = {}
    for key, config in raw_plans.items():
        if not isinstance(config, Mapping):
            raise CatalogConfigurationError(f"Plan '{key}' must be configured as a mapping.")
        monthly_price = _coerce_price(key, "monthly_price", config.get("monthly_price", 0))
        annual_price = _coerce_price(key, "annual_price", config.get("annual_price", monthly_price * 12))
        catalog[key] = PlanDefinition(
            key=key,
            name=str(config.get("name") or key),
            monthly_price=monthly_price,
            annual_price=annual_price,
            per_user=bool(config.get("per_user", False)),
            trial_days=int(config.get("trial_days", 0) or 0),
            services=tuple(config.get("services") or ()),
            processor_plan_code=config.get("processor_plan_code") or None,
        )
    return catalog


def _build_usage_catalog(raw_pricing: Mapping[str, Any]) -> Dict[str, UsagePrice]:
    if not isinstance(raw_pricing, Mapping):
        raise CatalogConfigurationError("BILLING_USAGE_PRICING must be a mapping of usage types to pricing.")

    catalog: Dict[str, UsagePrice] = {}
    for usage_type, config in raw_pricing.items():
        try:
            overage_price = Decimal(str(config.get("overage_price", "0")))
            included = int(config.get("included", -1))
        except (ArithmeticError, TypeError, ValueError, AttributeError) as exc:
            raise CatalogConfigurationError(f"Usage pricing for '{usage_type}' is malformed.") from exc
        if overage_price < 0:
            raise CatalogConfigurationError(f"Usage pricing for '{usage_type}' must not be negative.")
        catalog[usage_type] = UsagePrice(
            usage_type=usage_type,
            description=str(config.get("description") or usage_type),
            service=str(config.get("service") or service_for_usage_type(usage_type)),
            included=included,
            overage_price=overage_price,
        )
    return catalog


def get_plans() -> Tuple[PlanDefinition, ...]:
    """Return all configured plans, cheapest first."""

    catalog = _build_plan_catalog(getattr(settings, "BILLING_PLANS", None) or DEFAULT_PLANS)
    return tuple(sorted(catalog.values(), key=lambda plan: (plan.monthly_price, plan.key)))


def get_plan(key: str) -> PlanDefinition:
    """Fetch a single plan by key, raising if it does not exist."""

    plans = {plan.key: plan for plan in get_plans()}
    try:
        return plans[key]
    except KeyError as exc:
        raise NotFoundError(f"Unknown plan '{key}'.", details={"plan_id": key}) from exc


def find_plan_by_processor_code(plan_code: Optional[str]) -> Optional[PlanDefinition]:
    if not plan_code:
        return None
    for plan in get_plans():
        if plan.processor_plan_code == plan_code:
            return plan
    return None


def get_usage_pricing() -> Dict[str, UsagePrice]:
    return _build_usage_catalog(getattr(settings, "BILLING_USAGE_PRICING", None) or DEFAULT_USAGE_PRICING)


def get_usage_price(usage_type: str) -> UsagePrice:
    try:
        return get_usage_pricing()[usage_type]
    except KeyError as exc:
        raise NotFoundError(f"Unknown usage type '{usage_type}'.", details={"usage_type": usage_type}) from exc


def plan_price(plan: PlanDefinition, interval: str = MONTHLY, seats: int = 1) -> int:
    """Amount charged per billing interval, multiplied by seats for per-user plans."""

    if interval not in BILLING_INTERVALS:
        raise CatalogConfigurationError(f"Unsupported billing interval '{interval}'.")
    base = plan.annual_price if interval == ANNUAL else plan.monthly_price
    return base * max(1, int(seats)) if plan.per_user else base


def monthly_amount(amount: int, interval: str = MONTHLY) -> int:
    """Per-month cents for an ``amount`` charged once per ``interval``."""

    if interval == ANNUAL:
        return round_half_up(Decimal(int(amount)) / Decimal(12))
    return int(amount)


def monthly_equivalent(plan: PlanDefinition, interval: str = MONTHLY, seats: int = 1) -> int:
    return monthly_amount(plan_price(plan, interval, seats), interval)


def validate_catalog() -> None:
    """Build both catalogs once so configuration errors surface at start-up."""

    plans = get_plans()
    pricing = get_usage_pricing()
    logger.debug("Billing catalog loaded: %s plans, %s usage types.", len(plans), len(pricing))


__all__ = [
    "ANNUAL",
    "BILLING_INTERVALS",
    "MONTHLY",
    "PlanDefinition",
    "USAGE_TYPES",
    "UsagePrice",
    "find_plan_by_processor_code",
    "get_plan",
    "get_plans",
    "get_usage_price",
    "get_usage_pricing",
    "monthly_amount",
    "monthly_equivalent",
    "plan_price",
    "round_half_up",
    "service_for_usage_type",
    "validate_catalog",
]
