"""Tests for plan pricing."""

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from billing_engine.services.pricing import (
    BILLING_TIERS,
    PLANS,
    bonus_days_for,
    calculate_subscription_price,
    get_plan,
)


class TestCalculateSubscriptionPrice:
    """Discounts and bonus days per tier."""

    @pytest.mark.parametrize(
        "months,total,discount,final,bonus",
        [
            (1, 100, 0, 100, 3),
            (3, 300, 15, 285, 5),
            (6, 600, 60, 540, 9),
            (12, 1200, 240, 960, 14),
        ],
    )
    def test_tiers(self, months, total, discount, final, bonus):
        price = calculate_subscription_price("PRO", months)

        assert price.total_before_discount == total
        assert price.discount_amount == discount
        assert price.final_amount == final
        assert price.bonus_days == bonus

    def test_plan_id_is_case_insensitive(self):
        assert calculate_subscription_price("standard", 1).plan_id == "STANDARD"

    def test_metadata_shape(self):
        metadata = calculate_subscription_price("PRO", 3).to_metadata()
        assert metadata == {
            "basePrice": 100,
            "totalBeforeDiscount": 300,
            "discountAmount": 15,
            "finalAmount": 285,
            "bonusDays": 5,
            "discount": "0.05",
        }

    @pytest.mark.parametrize("plan_id", ["GOLD", "", None])
    def test_unknown_plan(self, plan_id):
        with pytest.raises(ValueError, match="Unknown plan"):
            calculate_subscription_price(plan_id, 1)

    @pytest.mark.parametrize("months", [0, 2, 24, "x"])
    def test_unsupported_duration(self, months):
        with pytest.raises(ValueError, match="Unsupported duration"):
            calculate_subscription_price("PRO", months)

    def test_bonus_days_for(self):
        assert bonus_days_for(12) == 14
        assert get_plan("enterprise").name == "Enterprise"

    @given(
        plan_id=st.sampled_from(sorted(PLANS)),
        months=st.sampled_from(sorted(BILLING_TIERS)),
    )
    def test_amounts_add_up(self, plan_id, months):
        price = calculate_subscription_price(plan_id, months)

        assert price.final_amount + price.discount_amount == price.total_before_discount
        assert 0 < price.final_amount <= price.total_before_discount
        assert price.discount == BILLING_TIERS[months].discount
        assert isinstance(price.discount, Decimal)
