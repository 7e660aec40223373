"""
Pricing calculations and rate management.

Handles cost computation for metered edge usage under provider rate cards.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from enum import Enum
from typing import Dict, Iterable, Optional


class BillingType(Enum):
    """How consumed units translate into billable quantity."""
    PER_UNIT = "per_unit"
    PER_HOUR = "per_hour"  # units are seconds
    PER_GB = "per_gb"      # units are bytes
    PER_MB = "per_mb"      # units are bytes


_BYTES_PER_MB = Decimal(1024 * 1024)
_BYTES_PER_GB = Decimal(1024 * 1024 * 1024)
_SECONDS_PER_HOUR = Decimal(3600)
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class RateCard:
    """Price for one rate id."""
    rate_id: str
    name: str
    unit_price: Decimal
    billing_type: BillingType = BillingType.PER_UNIT
    minimum_charge: Decimal = Decimal("0")
    maximum_charge: Optional[Decimal] = None
    currency: str = "USD"
    active: bool = True

    def __post_init__(self):
        """Validate prices are non-negative and bounds are consistent."""
        if not self.rate_id:
            raise ValueError("rate_id is required")
        if self.unit_price < 0:
            raise ValueError("unit_price must be >= 0")
        if self.minimum_charge < 0:
            raise ValueError("minimum_charge must be >= 0")
        if self.maximum_charge is not None and self.maximum_charge < self.minimum_charge:
            raise ValueError("maximum_charge must be >= minimum_charge")


@dataclass(frozen=True)
class RateTable:
    """Rate cards keyed by rate id."""
    cards: Dict[str, RateCard]

    @classmethod
    def from_cards(cls, cards: Iterable[RateCard]) -> "RateTable":
        table: Dict[str, RateCard] = {}
        for card in cards:
            if card.rate_id in table:
                raise ValueError(f"Duplicate rate card: {card.rate_id}")
            table[card.rate_id] = card
        return cls(table)

    def get_rate_card(self, rate_id: str) -> RateCard:
        """Get the active rate card for a rate id.

        Raises:
            ValueError: If the rate id is unknown or inactive
        """
        card = self.cards.get(rate_id)
        if card is None:
            raise ValueError(f"Unsupported rate: {rate_id}")
        if not card.active:
            raise ValueError(f"Inactive rate: {rate_id}")
        return card


DEFAULT_RATE_TABLE = RateTable.from_cards([
    RateCard(
        rate_id="rate-gpu-bandwidth-1",
        name="GPU + Bandwidth Standard",
        unit_price=Decimal("0.001"),
        minimum_charge=Decimal("0.01"),
    ),
    RateCard(
        rate_id="rate-gpu-premium",
        name="GPU Premium",
        unit_price=Decimal("0.002"),
        minimum_charge=Decimal("0.05"),
    ),
    RateCard(
        rate_id="rate-bandwidth-only",
        name="Bandwidth Only",
        unit_price=Decimal("0.0001"),
        minimum_charge=Decimal("0.005"),
    ),
])


def billable_quantity(card: RateCard, units: int) -> Decimal:
    """Convert raw units into the rate card's billing quantity."""
    if card.billing_type == BillingType.PER_HOUR:
        # one hour minimum
        return max(Decimal(1), Decimal(units) / _SECONDS_PER_HOUR)
    if card.billing_type == BillingType.PER_GB:
        return Decimal(units) / _BYTES_PER_GB
    if card.billing_type == BillingType.PER_MB:
        return Decimal(units) / _BYTES_PER_MB
    return Decimal(units)


def calculate_cost(card: RateCard, units: int) -> Decimal:
    """Calculate cost for consumed units with conservative rounding.

    Args:
        card: Rate card to price against
        units: Units consumed (non-negative)

    Returns:
        Cost clamped to the card's minimum/maximum, rounded UP to cents

    Raises:
        ValueError: If units is negative
    """
    if units < 0:
        raise ValueError("units must be >= 0")

    cost = billable_quantity(card, units) * card.unit_price

    if cost < card.minimum_charge:
        cost = card.minimum_charge
    if card.maximum_charge is not None and cost > card.maximum_charge:
        cost = card.maximum_charge

    return cost.quantize(_CENT, rounding=ROUND_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to integer cents, rounding UP."""
    return int((amount / _CENT).quantize(Decimal(1), rounding=ROUND_UP))
