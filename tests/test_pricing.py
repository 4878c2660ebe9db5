"""
Unit tests for order pricing.

Tests price lookup, grid arithmetic, and error handling.
"""

import pytest
from decimal import Decimal

from credit_guard.core.pricing import (
    ITEMS_PER_GRID,
    PRICING_TABLE,
    price_for_count,
    total_grids_for_count,
)


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_size(self):
        """Verify price retrieval for supported order sizes."""
        assert PRICING_TABLE.get_price(4) == Decimal("1.00")
        assert PRICING_TABLE.get_price(12) == Decimal("3.00")

    def test_unsupported_size_raises_error(self):
        """Verify error for unknown order sizes."""
        with pytest.raises(ValueError, match="Unsupported order size: 5"):
            PRICING_TABLE.get_price(5)

    def test_sizes_sorted(self):
        assert PRICING_TABLE.sizes == [4, 8, 12]


class TestGridArithmetic:
    """Test grid counts derived from order sizes."""

    @pytest.mark.parametrize("count,grids", [(4, 1), (8, 2), (12, 3)])
    def test_total_grids(self, count, grids):
        assert total_grids_for_count(count) == grids
        assert grids * ITEMS_PER_GRID == count

    def test_price_for_count(self):
        assert price_for_count(8) == 2.0

    def test_total_grids_rejects_unsupported_size(self):
        with pytest.raises(ValueError):
            total_grids_for_count(16)
