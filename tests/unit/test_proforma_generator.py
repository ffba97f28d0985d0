"""Unit tests for month-end proforma generation."""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from backoffice.errors import InfrastructuralFailure
from backoffice.schemas.billing import ProformaStatus
from backoffice.services.proforma_generator import (
    PROFORMAS,
    due_date_for,
    generate_proformas,
    previous_period
)
from backoffice.services.billing import CHARGES


RUN_AT = datetime(2025, 8, 1, 2, 0, 0, tzinfo=timezone.utc)


@pytest.mark.unit
class TestPeriodHelpers:
    """Test period arithmetic."""

    def test_previous_period(self):
        """Test the previous calendar month, across year ends."""
        assert previous_period(RUN_AT) == (7, 2025)
        assert previous_period(datetime(2026, 1, 15, tzinfo=timezone.utc)) == (12, 2025)

    def test_due_date_after_month_end(self):
        """Test the due date counts from the last day of the period."""
        assert due_date_for(7, 2025, 7) == datetime(2025, 8, 7, tzinfo=timezone.utc)
        assert due_date_for(2, 2024, 7) == datetime(2024, 3, 7, tzinfo=timezone.utc)
        assert due_date_for(12, 2025, 0) == datetime(2025, 12, 31, tzinfo=timezone.utc)


@pytest.mark.unit
class TestProformaGeneration:
    """Test proforma issuance."""

    @pytest.mark.asyncio
    async def test_billable_clients_get_numbered_proformas(self, proforma_generator, charges, memory_store):
        """Test each client with a positive total gets one pending proforma."""
        charges.create_charge("client-a", 7, 2025, "20", "10")
        charges.create_charge("client-b", 7, 2025, additional_services_amount_eur="5")
        charges.create_charge("client-c", 7, 2025)

        result = await proforma_generator.generate_proformas(7, 2025, close_periods=False, now=RUN_AT)

        assert result.created == 2
        assert result.updated == 0
        assert result.errors == []
        assert [p.client_id for p in result.proformas] == ["client-a", "client-b"]
        assert [p.invoice_number for p in result.proformas] == ["INV-2025-001", "INV-2025-002"]
        assert result.proformas[0].amount_eur == Decimal("30.00")
        assert result.proformas[0].status == ProformaStatus.PENDING
        assert result.proformas[0].due_date == datetime(2025, 8, 7, tzinfo=timezone.utc)
        assert len(memory_store.rows(PROFORMAS)) == 2

    @pytest.mark.asyncio
    async def test_invoiced_periods_are_closed(self, proforma_generator, charges, memory_store):
        """Test periods are closed after invoicing when requested."""
        charges.create_charge("client-a", 7, 2025, "20")

        result = await proforma_generator.generate_proformas(7, 2025, close_periods=True, now=RUN_AT)

        assert result.closed_periods == 1
        assert memory_store.rows(CHARGES)[0]["closed_at"] == RUN_AT

    @pytest.mark.asyncio
    async def test_rerun_refreshes_pending_proforma(self, proforma_generator, charges, memory_store):
        """Test a second run updates the pending proforma instead of issuing another."""
        charges.create_charge("client-a", 7, 2025, "20")
        await proforma_generator.generate_proformas(7, 2025, close_periods=False, now=RUN_AT)

        memory_store.tables[CHARGES][0]["additional_services_amount_eur"] = Decimal("5.00")
        memory_store.tables[CHARGES][0]["total_amount_eur"] = Decimal("25.00")
        result = await proforma_generator.generate_proformas(7, 2025, close_periods=False, now=RUN_AT)

        rows = memory_store.rows(PROFORMAS)
        assert result.created == 0
        assert result.updated == 1
        assert len(rows) == 1
        assert rows[0]["amount_eur"] == Decimal("25.00")
        assert rows[0]["invoice_number"] == "INV-2025-001"

    @pytest.mark.asyncio
    async def test_settled_proforma_is_skipped(self, proforma_generator, charges, memory_store):
        """Test paid proformas are left unchanged."""
        charges.create_charge("client-a", 7, 2025, "20")
        memory_store.seed(PROFORMAS, {
            "client_id": "client-a",
            "month": 7,
            "year": 2025,
            "amount_eur": Decimal("15.00"),
            "status": "PAID",
            "due_date": datetime(2025, 8, 7, tzinfo=timezone.utc),
            "invoice_number": "INV-2025-010",
        })

        result = await proforma_generator.generate_proformas(7, 2025, close_periods=False, now=RUN_AT)

        assert result.skipped == 1
        assert result.total == 0
        assert memory_store.rows(PROFORMAS)[0]["amount_eur"] == Decimal("15.00")

    @pytest.mark.asyncio
    async def test_client_failure_does_not_stop_batch(self, proforma_generator, charges):
        """Test a failing client is reported while the others are invoiced."""
        charges.create_charge("client-a", 7, 2025, "20")
        charges.create_charge("client-b", 7, 2025, "30")

        close = AsyncMock(side_effect=[InfrastructuralFailure("store down"), None])
        with patch.object(proforma_generator.resolver, "close_period", close):
            result = await proforma_generator.generate_proformas(7, 2025, close_periods=True, now=RUN_AT)

        assert len(result.errors) == 1
        assert result.errors[0].client_id == "client-a"
        assert result.closed_periods == 1
        assert result.created == 2

    @pytest.mark.asyncio
    async def test_defaults_to_previous_month(self, proforma_generator, charges):
        """Test omitted period means the month before the run."""
        charges.create_charge("client-a", 7, 2025, "20")

        result = await proforma_generator.generate_proformas(close_periods=False, now=RUN_AT)

        assert (result.month, result.year) == (7, 2025)
        assert result.created == 1

    @pytest.mark.asyncio
    async def test_unreadable_charges_fail_the_batch(self, proforma_generator, memory_store):
        """Test the batch fails when the period cannot be read."""
        memory_store.fail("select_where")

        with pytest.raises(InfrastructuralFailure):
            await proforma_generator.generate_proformas(7, 2025, now=RUN_AT)

    @pytest.mark.asyncio
    async def test_module_helper_uses_global_services(self, memory_store, charges):
        """Test the module-level batch runs on the global services."""
        charges.create_charge("client-a", 7, 2025, "20")

        result = await generate_proformas(7, 2025, close_periods=False)

        assert result.created == 1
        assert result.proformas[0].invoice_number.startswith("INV-2025-")
