"""Unit tests for the billing command line."""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from backoffice.cli import billing as billing_cli
from backoffice.errors import NotFound, PeriodClosed


@pytest.fixture
def runner():
    with patch.object(billing_cli, "init_logging"), patch.object(billing_cli, "init_tracing"):
        yield CliRunner()


@pytest.fixture
def resolver():
    resolver = AsyncMock()
    with patch.object(billing_cli, "get_billing_resolver", return_value=resolver):
        yield resolver


def charge_record(**overrides):
    values = {
        "client_id": "client-a",
        "month": 8,
        "year": 2025,
        "over_space_amount_eur": Decimal("20.00"),
        "additional_services_amount_eur": Decimal("5.00"),
        "total_amount_eur": Decimal("25.00"),
        "over_space_paid_cbm": Decimal("1.000"),
        "version": 3,
        "closed_at": None,
        "persisted": True,
    }
    values.update(overrides)
    return MagicMock(**values)


@pytest.mark.unit
class TestNumberingCommands:
    """Test identifier allocation from the command line."""

    def test_allocate_delivery_number(self, runner):
        """Test the allocated identifier is printed."""
        allocate = AsyncMock(return_value="DEL-2025-007")
        with patch.object(billing_cli, "allocate_identifier", allocate):
            result = runner.invoke(billing_cli.cli, ["allocate", "delivery", "--period", "2025"])

        assert result.exit_code == 0
        assert "DEL-2025-007" in result.output
        allocate.assert_awaited_once_with("DEL", "2025")

    def test_allocate_packing_order_uses_country(self, runner):
        """Test packing orders are numbered per country series."""
        allocate = AsyncMock(return_value="IE-DE-08-001")
        with patch.object(billing_cli, "allocate_identifier", allocate):
            result = runner.invoke(
                billing_cli.cli, ["allocate", "packing-order", "--country", "Germany", "--period", "08"]
            )

        assert result.exit_code == 0
        allocate.assert_awaited_once_with("IE-DE", "08")

    def test_unprovisioned_series_exits_with_warning(self, runner):
        """Test a missing identifier column is reported with exit code 2."""
        with patch.object(billing_cli, "allocate_identifier", AsyncMock(return_value=None)):
            result = runner.invoke(billing_cli.cli, ["allocate", "internal-tracking"])

        assert result.exit_code == 2
        assert "not provisioned" in result.output


@pytest.mark.unit
class TestChargeCommands:
    """Test monthly charge commands."""

    def test_show_charges(self, runner, resolver):
        """Test the charge table is printed for a period."""
        resolver.get_monthly_charges.return_value = charge_record()

        result = runner.invoke(billing_cli.cli, ["charges", "client-a", "--month", "8", "--year", "2025"])

        assert result.exit_code == 0
        assert "25.00" in result.output
        resolver.get_monthly_charges.assert_awaited_once_with("client-a", 8, 2025)

    def test_add_charge_with_reference(self, runner, resolver):
        """Test service charges pass their reference through."""
        resolver.add_additional_service_charge.return_value = charge_record()

        result = runner.invoke(
            billing_cli.cli, ["add-charge", "client-a", "--amount", "5", "--reference", "quote-1"]
        )

        assert result.exit_code == 0
        resolver.add_additional_service_charge.assert_awaited_once_with(
            "client-a", "5", None, None, reference="quote-1"
        )

    def test_domain_error_exits_non_zero(self, runner, resolver):
        """Test domain errors are reported instead of raised."""
        resolver.close_period.side_effect = PeriodClosed("Period 07/2025 is closed")

        result = runner.invoke(
            billing_cli.cli, ["close-period", "client-a", "--month", "7", "--year", "2025"]
        )

        assert result.exit_code == 1
        assert "PeriodClosed" in result.output

    def test_update_plan_clears_promotion(self, runner, resolver):
        """Test --clear-promo removes the promotional price."""
        plan = MagicMock(
            operations_rate_eur=Decimal("59.00"),
            promotional_price_eur=None,
            updated_at=datetime(2025, 8, 17, tzinfo=timezone.utc)
        )
        plan.name = "Basic"
        resolver.update_plan_rate.return_value = plan

        result = runner.invoke(billing_cli.cli, ["update-plan", "plan-1", "--rate", "59", "--clear-promo"])

        assert result.exit_code == 0
        resolver.update_plan_rate.assert_awaited_once_with("plan-1", "59", None)


@pytest.mark.unit
class TestSetupFeeCommands:
    """Test setup fee promotion commands."""

    def test_clear_promotion(self, runner, resolver):
        """Test --clear removes the promotion."""
        resolver.set_setup_fee_promotion.return_value = MagicMock(
            current_amount_eur=None, suggested_amount_eur=Decimal("99.00")
        )

        result = runner.invoke(billing_cli.cli, ["set-setup-fee", "--clear"])

        assert result.exit_code == 0
        assert "cleared" in result.output
        resolver.set_setup_fee_promotion.assert_awaited_once_with(None, None)

    def test_amount_or_clear_is_required(self, runner, resolver):
        """Test the command needs exactly one of --amount and --clear."""
        neither = runner.invoke(billing_cli.cli, ["set-setup-fee"])
        both = runner.invoke(billing_cli.cli, ["set-setup-fee", "--amount", "49", "--clear"])

        assert neither.exit_code == 2
        assert both.exit_code == 2
        resolver.set_setup_fee_promotion.assert_not_awaited()


@pytest.mark.unit
class TestVoucherCommands:
    """Test setup fee voucher commands."""

    def test_create_reusable_voucher(self, runner, resolver):
        """Test --reusable creates a multi-use voucher."""
        resolver.create_voucher.return_value = MagicMock(code="TEAM", amount_eur=Decimal("20.00"))

        result = runner.invoke(billing_cli.cli, ["create-voucher", "team", "--amount", "20", "--reusable"])

        assert result.exit_code == 0
        assert "TEAM" in result.output
        resolver.create_voucher.assert_awaited_once_with("team", "20", None, is_one_time=False)

    def test_list_vouchers(self, runner, resolver):
        """Test vouchers are printed with their claim state."""
        resolver.list_vouchers.return_value = [
            MagicMock(
                code="ONCE",
                amount_eur=Decimal("50.00"),
                is_one_time=True,
                used_by_client_id="client-a",
                expires_at=None
            )
        ]

        result = runner.invoke(billing_cli.cli, ["vouchers"])

        assert result.exit_code == 0
        assert "ONCE" in result.output
        assert "client-a" in result.output

    def test_invalid_voucher_exits_non_zero(self, runner, resolver):
        """Test an unknown code is reported as a failed exit."""
        resolver.quote_setup_fee_with_voucher.side_effect = NotFound("Invalid voucher code")

        result = runner.invoke(billing_cli.cli, ["check-voucher", "NOPE", "client-a"])

        assert result.exit_code == 1
        assert "Invalid voucher code" in result.output
