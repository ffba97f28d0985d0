"""Unit tests for the plan catalog seeder."""

from unittest.mock import AsyncMock, patch

import pytest

from backoffice.storage.record_store import DuplicateRow
from backoffice.storage.seed import seed_plans


@pytest.mark.unit
class TestSeedPlans:
    """Test plan seeding."""

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, memory_store):
        """Test a second run skips every existing plan."""
        first = await seed_plans(memory_store)
        second = await seed_plans(memory_store)

        assert first["created"] == ["Basic", "Standard", "Professional", "Enterprise"]
        assert second["created"] == []
        assert len(second["skipped"]) == 4
        assert len(memory_store.rows("plans")) == 4

    @pytest.mark.asyncio
    async def test_existing_prices_are_kept(self, memory_store, plans):
        """Test an operator-changed price survives seeding."""
        plans.create_plan("Basic", operations_rate_eur="49.00")

        result = await seed_plans(memory_store)

        basic = [row for row in memory_store.rows("plans") if row["name"] == "Basic"]
        assert "Basic" in result["skipped"]
        assert len(basic) == 1
        assert str(basic[0]["operations_rate_eur"]) == "49.00"

    @pytest.mark.asyncio
    async def test_concurrent_insert_counts_as_skipped(self, memory_store):
        """Test a unique violation from a concurrent seeder is tolerated."""
        with patch.object(memory_store, "insert", AsyncMock(side_effect=DuplicateRow("plans"))):
            result = await seed_plans(memory_store)

        assert result["created"] == []
        assert len(result["skipped"]) == 4

    @pytest.mark.asyncio
    async def test_invalid_catalog_is_rejected(self, memory_store):
        """Test seeding refuses an invalid catalog."""
        with patch("backoffice.storage.seed.get_plan_catalog", return_value={"plans": []}):
            with pytest.raises(ValueError):
                await seed_plans(memory_store)
