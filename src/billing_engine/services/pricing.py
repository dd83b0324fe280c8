"""Subscription plans, billing tiers and price breakdowns."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any


@dataclass(frozen=True)
class Plan:
    plan_id: str
    name: str
    monthly_price: int


@dataclass(frozen=True)
class BillingTier:
    """A purchasable duration with its discount and bonus days."""

    months: int
    discount: Decimal
    bonus_days: int


PLANS: dict[str, Plan] = {
    "STANDARD": Plan("STANDARD", "Standard", 100),
    "PRO": Plan("PRO", "Pro", 100),
    "ENTERPRISE": Plan("ENTERPRISE", "Enterprise", 100),
}

BILLING_TIERS: dict[int, BillingTier] = {
    1: BillingTier(1, Decimal("0"), 3),
    3: BillingTier(3, Decimal("0.05"), 5),
    6: BillingTier(6, Decimal("0.10"), 9),
    12: BillingTier(12, Decimal("0.20"), 14),
}


@dataclass(frozen=True)
class PriceBreakdown:
    """Amounts in whole currency units (XAF has no minor unit)."""

    plan_id: str
    duration_months: int
    base_price: int
    total_before_discount: int
    discount_amount: int
    final_amount: int
    bonus_days: int
    discount: Decimal

    def to_metadata(self) -> dict[str, Any]:
        return {
            "basePrice": self.base_price,
            "totalBeforeDiscount": self.total_before_discount,
            "discountAmount": self.discount_amount,
            "finalAmount": self.final_amount,
            "bonusDays": self.bonus_days,
            "discount": str(self.discount),
        }


def get_plan(plan_id: str) -> Plan:
    try:
        return PLANS[plan_id.upper()]
    except (KeyError, AttributeError):
        raise ValueError(f"Unknown plan: {plan_id!r}") from None


def get_tier(duration_months: int) -> BillingTier:
    try:
        return BILLING_TIERS[int(duration_months)]
    except (KeyError, TypeError, ValueError):
        raise ValueError(
            f"Unsupported duration: {duration_months!r} (expected one of "
            f"{sorted(BILLING_TIERS)})"
        ) from None


def bonus_days_for(duration_months: int) -> int:
    return get_tier(duration_months).bonus_days


def calculate_subscription_price(plan_id: str, duration_months: int) -> PriceBreakdown:
    """Price a plan for a duration.

    The discount is rounded half up to a whole unit before it is subtracted,
    so ``final_amount + discount_amount == total_before_discount`` always.

    Raises:
        ValueError: for an unknown plan or an unsupported duration.
    """
    plan = get_plan(plan_id)
    tier = get_tier(duration_months)

    total = plan.monthly_price * tier.months
    discount_amount = int(
        (Decimal(total) * tier.discount).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    return PriceBreakdown(
        plan_id=plan.plan_id,
        duration_months=tier.months,
        base_price=plan.monthly_price,
        total_before_discount=total,
        discount_amount=discount_amount,
        final_amount=total - discount_amount,
        bonus_days=tier.bonus_days,
        discount=tier.discount,
    )
