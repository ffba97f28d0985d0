"""Unit tests for warehouse space calculations."""

from decimal import Decimal

import pytest

from backoffice.errors import ValidationError
from backoffice.services.warehouse_calculations import (
    calculate_over_space_charge,
    calculate_usage_percent,
    is_over_limit,
    quantize_money,
    quantize_volume,
    should_show_space_warning
)


@pytest.mark.unit
class TestSpaceCalculations:
    """Test usage ratios and over-space pricing."""

    def test_quantization_rounds_half_up(self):
        """Test money rounds to cents and volume to litres."""
        assert quantize_money("2.675") == Decimal("2.68")
        assert quantize_money(None) == Decimal("0.00")
        assert quantize_volume("1.0005") == Decimal("1.001")

    def test_usage_percent(self):
        """Test usage is a percentage of the allowance."""
        assert calculate_usage_percent("4", "5") == Decimal("80.0")
        assert calculate_usage_percent("1", "3") == Decimal("33.3")
        assert calculate_usage_percent("1", "0") is None

    def test_over_limit(self):
        """Test strict comparison against the allowance."""
        assert is_over_limit("5.001", "5") is True
        assert is_over_limit("5", "5") is False

    @pytest.mark.parametrize("used, expected", [
        ("4.4", False),
        ("4.5", True),
        ("6.0", True),
        ("6.1", False),
    ])
    def test_warning_band(self, used, expected):
        """Test the warning shows between 90 % and 120 % of the allowance."""
        assert should_show_space_warning(used, "5") is expected

    def test_no_charge_up_to_threshold(self):
        """Test nothing is charged up to 120 % of the allowance."""
        charge = calculate_over_space_charge("6.0", "5.0", "20")

        assert charge.threshold_cbm == Decimal("6.000")
        assert charge.excess_cbm == Decimal("0.000")
        assert charge.amount_eur == Decimal("0.00")
        assert charge.warning is True

    def test_excess_is_charged_at_rate(self):
        """Test volume above the threshold is billed per m³."""
        charge = calculate_over_space_charge("3.3333", "2.5", "20")

        assert charge.threshold_cbm == Decimal("3.000")
        assert charge.excess_cbm == Decimal("0.333")
        assert charge.amount_eur == Decimal("6.67")
        assert charge.usage_percent == Decimal("133.3")

    def test_custom_threshold_ratio(self):
        """Test the threshold ratio can be overridden."""
        charge = calculate_over_space_charge("6", "5", "10", threshold_ratio="1")

        assert charge.amount_eur == Decimal("10.00")

    def test_zero_allowance(self):
        """Test everything stored is excess without an allowance."""
        charge = calculate_over_space_charge("2", "0", "20")

        assert charge.amount_eur == Decimal("40.00")
        assert charge.usage_percent is None
        assert charge.warning is False

    @pytest.mark.parametrize("used, limit, rate", [("-1", "5", "20"), ("1", "-5", "20"), ("1", "5", "-20")])
    def test_negative_inputs(self, used, limit, rate):
        """Test negative volumes and rates are rejected."""
        with pytest.raises(ValidationError):
            calculate_over_space_charge(used, limit, rate)
