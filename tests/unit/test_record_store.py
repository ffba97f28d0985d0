"""Unit tests for the SQL record store and predicate filters."""

import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from backoffice.services.numbering import SequenceAllocator
from backoffice.services.series_lock import LocalSeriesLock
from backoffice.storage.models import Plan
from backoffice.storage.record_store import (
    DuplicateRow,
    NoMatchingRow,
    SchemaAbsent,
    SqlRecordStore,
    StoreUnavailable,
    gt,
    gte,
    is_null,
    lt,
    lte,
    ne,
    row_matches,
    starts_with
)


class _DriverError(Exception):
    """Stand-in for an asyncpg error carrying a SQLSTATE."""

    def __init__(self, message: str, sqlstate: str | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate


def session_factory(session):
    @asynccontextmanager
    async def factory():
        yield session
    return factory


def result_with(instances):
    result = MagicMock()
    result.scalars.return_value.all.return_value = instances
    result.scalars.return_value.first.return_value = instances[0] if instances else None
    return result


@pytest.mark.unit
class TestFilters:
    """Test predicate evaluation."""

    def test_equality_and_comparisons(self):
        """Test plain values match by equality and filters by operator."""
        row = {"month": 7, "total": Decimal("12.50"), "name": "Basic"}

        assert row_matches(row, {"month": 7})
        assert not row_matches(row, {"month": 8})
        assert row_matches(row, {"total": gt(0), "month": lte(7)})
        assert not row_matches(row, {"total": gte(Decimal("13"))})
        assert row_matches(row, {"total": lt(13), "name": ne("Individual")})

    def test_starts_with(self):
        """Test prefix matching."""
        row = {"delivery_number": "DEL-2025-004"}

        assert row_matches(row, {"delivery_number": starts_with("DEL-2025-")})
        assert not row_matches(row, {"delivery_number": starts_with("DEL-2024-")})

    def test_null_handling(self):
        """Test NULL columns never satisfy comparisons."""
        row = {"closed_at": None}

        assert row_matches(row, {"closed_at": is_null()})
        assert not row_matches(row, {"closed_at": is_null(False)})
        assert not row_matches(row, {"closed_at": gt(datetime(2025, 1, 1, tzinfo=timezone.utc))})
        assert row_matches(row, {"closed_at": ne(1)})


@pytest.mark.unit
class TestSqlRecordStore:
    """Test the SQLAlchemy-backed store with a mocked session."""

    @pytest.mark.asyncio
    async def test_select_where_returns_rows(self):
        """Test ORM instances come back as plain dicts."""
        plan = Plan(
            id="plan-1",
            name="Basic",
            deliveries_per_month=4,
            space_limit_cbm=Decimal("2.500"),
            over_space_rate_eur=Decimal("20.00"),
            operations_rate_eur=Decimal("59.00"),
        )
        session = AsyncMock()
        session.execute.return_value = result_with([plan])
        store = SqlRecordStore(session_factory=session_factory(session))

        rows = await store.select_where("plans", {"name": "Basic"}, order_by="name", limit=1)

        assert rows[0]["id"] == "plan-1"
        assert rows[0]["operations_rate_eur"] == Decimal("59.00")
        assert rows[0]["promotional_price_eur"] is None
        session.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_find_max_empty(self):
        """Test find_max returns None when nothing matches."""
        session = AsyncMock()
        session.execute.return_value = result_with([])
        store = SqlRecordStore(session_factory=session_factory(session))

        assert await store.find_max("delivery_expected", "delivery_number", "DEL-2025-") is None

    @pytest.mark.asyncio
    async def test_select_one_without_match(self):
        """Test select_one raises NoMatchingRow on an empty result."""
        session = AsyncMock()
        session.execute.return_value = result_with([])
        store = SqlRecordStore(session_factory=session_factory(session))

        with pytest.raises(NoMatchingRow):
            await store.select_one("clients", {"id": "missing"})

    @pytest.mark.asyncio
    async def test_unknown_table_and_column(self):
        """Test unmapped tables and columns raise SchemaAbsent before any query."""
        session = AsyncMock()
        store = SqlRecordStore(session_factory=session_factory(session))

        with pytest.raises(SchemaAbsent):
            await store.select_where("no_such_table", {})
        with pytest.raises(SchemaAbsent):
            await store.find_max("warehouse_orders", "no_such_column", "INT-2025-")
        with pytest.raises(SchemaAbsent):
            await store.insert("plans", {"name": "Basic", "colour": "blue"})
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_integrity_error_is_duplicate(self):
        """Test unique violations map to DuplicateRow."""
        session = AsyncMock()
        session.add = MagicMock()
        session.flush.side_effect = IntegrityError("INSERT", {}, _DriverError("duplicate key", "23505"))
        store = SqlRecordStore(session_factory=session_factory(session))

        with pytest.raises(DuplicateRow):
            await store.insert("sequence_counters", {"series_tag": "DEL", "period_key": "2025", "last_value": 1})

    @pytest.mark.asyncio
    async def test_undefined_column_is_schema_absent(self):
        """Test undefined column errors map to SchemaAbsent."""
        session = AsyncMock()
        session.execute.side_effect = DBAPIError(
            "SELECT", {}, _DriverError('column "internal_tracking_number" does not exist', "42703")
        )
        store = SqlRecordStore(session_factory=session_factory(session))

        with pytest.raises(SchemaAbsent):
            await store.select_where("warehouse_orders", {"internal_tracking_number": starts_with("INT-")})

    @pytest.mark.asyncio
    async def test_connection_failure_is_unavailable(self):
        """Test driver and network failures map to StoreUnavailable."""
        session = AsyncMock()
        session.execute.side_effect = OperationalError("SELECT", {}, _DriverError("connection refused"))
        store = SqlRecordStore(session_factory=session_factory(session))

        with pytest.raises(StoreUnavailable):
            await store.select_where("plans", {})

        session.execute.side_effect = OSError("network unreachable")
        with pytest.raises(StoreUnavailable):
            await store.update_where("plans", {"id": "plan-1"}, {"operations_rate_eur": Decimal("10")})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message, sqlstate", [
        ('role "app" does not exist', "28000"),
        ('database "backoffice" does not exist', "3D000"),
    ])
    async def test_missing_role_or_database_is_unavailable(self, message, sqlstate):
        """Test SQLSTATE decides over a "does not exist" message."""
        session = AsyncMock()
        session.execute.side_effect = DBAPIError("SELECT", {}, _DriverError(message, sqlstate))
        store = SqlRecordStore(session_factory=session_factory(session))

        with pytest.raises(StoreUnavailable):
            await store.select_where("plans", {})

    @pytest.mark.asyncio
    async def test_message_decides_without_sqlstate(self):
        """Test drivers without a SQLSTATE are classified by message."""
        session = AsyncMock()
        session.execute.side_effect = DBAPIError(
            "SELECT", {}, _DriverError('relation "sequence_counters" does not exist')
        )
        store = SqlRecordStore(session_factory=session_factory(session))

        with pytest.raises(SchemaAbsent):
            await store.select_where("sequence_counters", {})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy", ["counter", "scan"])
    async def test_allocator_falls_back_when_role_is_missing(self, strategy):
        """Test login failures give a timestamp identifier, not None."""
        session = AsyncMock()
        session.execute.side_effect = DBAPIError(
            "SELECT", {}, _DriverError('role "app" does not exist', "28000")
        )
        store = SqlRecordStore(session_factory=session_factory(session))
        allocator = SequenceAllocator(store=store, lock=LocalSeriesLock(), strategy=strategy, max_attempts=2)

        identifier = await allocator.allocate("DEL", "2025")

        assert re.fullmatch(r"DEL-2025-\d{6}", identifier)
