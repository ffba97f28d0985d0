"""Unit tests for the month-end billing flow."""

import sys
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from backoffice.errors import PeriodClosed


def reload_flow_module():
    """Helper to reload flow module with mocked Prefect decorators."""
    if 'flows.monthly_billing_flow' in sys.modules:
        del sys.modules['flows.monthly_billing_flow']

    with patch('prefect.task', lambda *args, **kwargs: lambda f: f), \
         patch('prefect.flow', lambda *args, **kwargs: lambda f: f), \
         patch('prefect.get_run_logger', lambda: MagicMock()):
        import flows.monthly_billing_flow
        return sys.modules['flows.monthly_billing_flow']


def batch_result(created=1, updated=0, errors=None):
    result = MagicMock(created=created, updated=updated, errors=errors or [])
    result.model_dump.return_value = {
        "month": 7,
        "year": 2025,
        "created": created,
        "updated": updated,
        "errors": errors or [],
    }
    return result


@pytest.mark.unit
class TestMonthlyBillingTasks:
    """Test individual flow tasks."""

    @pytest.mark.asyncio
    async def test_fetch_client_ids(self):
        """Test client ids are read from the store."""
        flow_module = reload_flow_module()
        store = AsyncMock()
        store.select_where.return_value = [{"id": "client-a"}, {"id": "client-b"}]

        with patch.object(flow_module, "get_record_store", return_value=store):
            result = await flow_module.fetch_client_ids()

        assert result == ["client-a", "client-b"]
        store.select_where.assert_awaited_once_with("clients", {}, order_by="id")

    @pytest.mark.asyncio
    async def test_recalculation_reports_total(self):
        """Test a successful recalculation reports the period total."""
        flow_module = reload_flow_module()
        resolver = AsyncMock()
        resolver.recalculate_over_space.return_value = MagicMock(total_amount_eur=Decimal("40.00"))

        with patch.object(flow_module, "get_billing_resolver", return_value=resolver):
            result = await flow_module.recalculate_client_over_space("client-a", 7, 2025)

        assert result == {"client_id": "client-a", "total_amount_eur": "40.00"}

    @pytest.mark.asyncio
    async def test_recalculation_domain_error_is_reported(self):
        """Test closed periods are reported rather than raised."""
        flow_module = reload_flow_module()
        resolver = AsyncMock()
        resolver.recalculate_over_space.side_effect = PeriodClosed("Period 07/2025 is closed")

        with patch.object(flow_module, "get_billing_resolver", return_value=resolver):
            result = await flow_module.recalculate_client_over_space("client-a", 7, 2025)

        assert result == {"client_id": "client-a", "error": "Period 07/2025 is closed"}


@pytest.mark.unit
class TestMonthlyBillingFlow:
    """Test the flow end to end with mocked services."""

    @pytest.mark.asyncio
    async def test_full_run(self):
        """Test recalculation, invoicing and closing run for every client."""
        flow_module = reload_flow_module()
        store = AsyncMock()
        store.select_where.return_value = [{"id": "client-a"}, {"id": "client-b"}]
        resolver = AsyncMock()
        resolver.recalculate_over_space.return_value = MagicMock(total_amount_eur=Decimal("0.00"))
        generator = AsyncMock()
        generator.generate_proformas.return_value = batch_result(created=2)

        with patch.object(flow_module, "get_record_store", return_value=store), \
             patch.object(flow_module, "get_billing_resolver", return_value=resolver), \
             patch.object(flow_module, "get_proforma_generator", return_value=generator):
            result = await flow_module.monthly_billing_flow(month=7, year=2025)

        assert result["status"] == "success"
        assert result["clients_recalculated"] == 2
        assert result["proformas"]["created"] == 2
        assert resolver.recalculate_over_space.await_count == 2
        generator.generate_proformas.assert_awaited_once_with(month=7, year=2025, close_periods=True)

    @pytest.mark.asyncio
    async def test_partial_run_without_recalculation(self):
        """Test skipped recalculation and proforma errors yield a partial status."""
        flow_module = reload_flow_module()
        resolver = AsyncMock()
        generator = AsyncMock()
        generator.generate_proformas.return_value = batch_result(
            created=0, errors=[{"client_id": "client-a", "error": "store down"}]
        )

        with patch.object(flow_module, "get_billing_resolver", return_value=resolver), \
             patch.object(flow_module, "get_proforma_generator", return_value=generator), \
             patch.object(flow_module, "previous_period", return_value=(7, 2025)):
            result = await flow_module.monthly_billing_flow(recalculate=False, close_periods=False)

        assert result["status"] == "partial"
        assert (result["month"], result["year"]) == (7, 2025)
        resolver.recalculate_over_space.assert_not_awaited()
        generator.generate_proformas.assert_awaited_once_with(month=7, year=2025, close_periods=False)
