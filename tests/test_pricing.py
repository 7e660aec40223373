"""
Unit tests for pricing calculations.

Tests cost accuracy, rounding behavior, and error handling.
"""

from decimal import Decimal

import pytest

from edgecharge.core.pricing import (
    DEFAULT_RATE_TABLE,
    BillingType,
    RateCard,
    RateTable,
    billable_quantity,
    calculate_cost,
    to_minor_units,
)


class TestRateTable:
    """Test rate table functionality."""

    def test_get_default_rate(self):
        card = DEFAULT_RATE_TABLE.get_rate_card("rate-gpu-premium")
        assert card.unit_price == Decimal("0.002")
        assert card.minimum_charge == Decimal("0.05")

    def test_unsupported_rate_raises_error(self):
        with pytest.raises(ValueError, match="Unsupported rate: unknown"):
            DEFAULT_RATE_TABLE.get_rate_card("unknown")

    def test_inactive_rate_raises_error(self):
        table = RateTable.from_cards([
            RateCard(rate_id="old", name="Old", unit_price=Decimal("1"), active=False),
        ])
        with pytest.raises(ValueError, match="Inactive rate: old"):
            table.get_rate_card("old")

    def test_duplicate_rate_rejected(self):
        card = RateCard(rate_id="r1", name="One", unit_price=Decimal("1"))
        with pytest.raises(ValueError, match="Duplicate rate card"):
            RateTable.from_cards([card, card])


class TestRateCardValidation:
    """Test rate card invariants."""

    def test_negative_price_rejected(self):
        with pytest.raises(ValueError, match="unit_price"):
            RateCard(rate_id="r1", name="One", unit_price=Decimal("-0.01"))

    def test_maximum_below_minimum_rejected(self):
        with pytest.raises(ValueError, match="maximum_charge"):
            RateCard(
                rate_id="r1",
                name="One",
                unit_price=Decimal("1"),
                minimum_charge=Decimal("5"),
                maximum_charge=Decimal("1"),
            )


class TestCostCalculation:
    """Test cost calculation accuracy."""

    def setup_method(self):
        self.standard = DEFAULT_RATE_TABLE.get_rate_card("rate-gpu-bandwidth-1")

    def test_per_unit_cost(self):
        # 500 units * $0.001 = $0.50
        assert calculate_cost(self.standard, 500) == Decimal("0.50")

    def test_minimum_charge_applies(self):
        # 3 units * $0.001 = $0.003, below the $0.01 minimum
        assert calculate_cost(self.standard, 3) == Decimal("0.01")

    def test_zero_units_pays_minimum(self):
        assert calculate_cost(self.standard, 0) == Decimal("0.01")

    def test_rounds_up_to_cents(self):
        # 1501 units * $0.001 = $1.501 -> $1.51
        assert calculate_cost(self.standard, 1501) == Decimal("1.51")

    def test_maximum_charge_caps_cost(self):
        card = RateCard(
            rate_id="capped",
            name="Capped",
            unit_price=Decimal("1"),
            maximum_charge=Decimal("10"),
        )
        assert calculate_cost(card, 1000) == Decimal("10.00")

    def test_negative_units_rejected(self):
        with pytest.raises(ValueError, match="units must be >= 0"):
            calculate_cost(self.standard, -1)

    def test_cost_precision(self):
        """Verify costs are always quantized to cents."""
        cost = calculate_cost(self.standard, 12345)
        assert cost.as_tuple().exponent == -2


class TestBillableQuantity:
    """Test unit conversion per billing type."""

    def _card(self, billing_type):
        return RateCard(rate_id="r", name="r", unit_price=Decimal("1"), billing_type=billing_type)

    def test_per_hour_has_one_hour_minimum(self):
        assert billable_quantity(self._card(BillingType.PER_HOUR), 60) == Decimal(1)

    def test_per_hour_converts_seconds(self):
        assert billable_quantity(self._card(BillingType.PER_HOUR), 7200) == Decimal(2)

    def test_per_gb_converts_bytes(self):
        assert billable_quantity(self._card(BillingType.PER_GB), 3 * 1024 ** 3) == Decimal(3)

    def test_per_mb_converts_bytes(self):
        assert billable_quantity(self._card(BillingType.PER_MB), 512 * 1024) == Decimal("0.5")


class TestMinorUnits:
    """Test conversion to integer cents."""

    def test_whole_cents(self):
        assert to_minor_units(Decimal("6.00")) == 600

    def test_fraction_rounds_up(self):
        assert to_minor_units(Decimal("0.001")) == 1
