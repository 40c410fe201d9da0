"""
Decimal Precision Test Suite
Monetary parsing, quantization and base unit conversion
"""

from decimal import Decimal

import pytest

from utils.decimal_precision import MonetaryDecimal


class TestMonetaryDecimal:
    """Test MonetaryDecimal helpers"""

    def test_rejects_float_and_none(self):
        """Test binary floats and None are never accepted as money"""
        with pytest.raises(ValueError):
            MonetaryDecimal.to_decimal(0.1)
        with pytest.raises(ValueError):
            MonetaryDecimal.to_decimal(None)
        with pytest.raises(ValueError):
            MonetaryDecimal.to_decimal("NaN")

    def test_parse_balance_sentinels(self):
        """Test sentinel strings parse to None"""
        assert MonetaryDecimal.parse_balance("Error fetching balance") is None
        assert MonetaryDecimal.parse_balance("75.25") == Decimal("75.25")

    def test_sufficiency_inclusive(self):
        """Test equality counts as sufficient"""
        assert MonetaryDecimal.is_sufficient("50", Decimal("50"))
        assert not MonetaryDecimal.is_sufficient("49.99", "50")

    def test_base_units(self):
        """Test conversion to and from integer base units"""
        assert MonetaryDecimal.to_base_units(Decimal("50"), 6) == 50_000_000
        assert MonetaryDecimal.to_base_units("0.1234567", 6) == 123_456
        assert MonetaryDecimal.from_base_units("30500000000000000000", 18) == Decimal("30.5")

    def test_format_amount(self):
        """Test plain formatting without exponents or trailing zeros"""
        assert MonetaryDecimal.format_amount(Decimal("50.00")) == "50"
        assert MonetaryDecimal.format_amount(Decimal("35.250")) == "35.25"
        assert MonetaryDecimal.format_amount(Decimal("1E+2")) == "100"
        assert MonetaryDecimal.format_amount(Decimal("0.000001")) == "0.000001"
