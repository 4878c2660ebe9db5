"""
Order pricing and grid arithmetic.

Maps the purchasable order sizes to their price and to the number of
grid credits they grant.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict

# Work items covered by one grid credit (one provider call).
ITEMS_PER_GRID = 4


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported order sizes."""
    prices: Dict[int, Decimal]

    def get_price(self, count: int) -> Decimal:
        """Get price for an order of ``count`` items.

        Raises:
            ValueError: If the count is not a supported order size
        """
        if count not in self.prices:
            raise ValueError(f"Unsupported order size: {count}")
        return self.prices[count]

    @property
    def sizes(self):
        return sorted(self.prices)


# Fixed pricing table - no dynamic fetching
PRICING_TABLE = PricingTable({
    4: Decimal("1.00"),
    8: Decimal("2.00"),
    12: Decimal("3.00"),
})


def price_for_count(count: int) -> float:
    """Price of an order of ``count`` items.

    Raises:
        ValueError: If count is not a supported order size
    """
    return float(PRICING_TABLE.get_price(count))


def total_grids_for_count(count: int) -> int:
    """Number of grid credits granted by an order of ``count`` items.

    Raises:
        ValueError: If count is not a supported order size
    """
    PRICING_TABLE.get_price(count)
    return count // ITEMS_PER_GRID
