# ==== RECORD STORE ==== #

"""
Narrow async persistence interface used by the allocator and the resolver.

Rows travel as plain dicts keyed by column name. Predicates are
column -> value maps; a value is either matched for equality or is a
``Filter`` built with ``gt``/``gte``/``lt``/``lte``/``ne``/``starts_with``/
``is_null``. ``SqlRecordStore`` implements the interface over the SQLAlchemy
models and maps driver errors onto the store error taxonomy so callers never
see SQLAlchemy exceptions.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.observability.logging import get_logger
from backoffice.observability.metrics import store_errors_total
from backoffice.observability.tracing import get_tracer
from backoffice.storage.db import get_session
from backoffice.storage.models import TABLE_MODELS


logger = get_logger(__name__)
tracer = get_tracer(__name__)

Row = Dict[str, Any]
Predicate = Dict[str, Any]

# Postgres SQLSTATEs for undefined column / undefined table
_SCHEMA_ABSENT_CODES = {"42703", "42P01"}


# ==== STORE ERRORS ==== #


class RecordStoreError(Exception):
    """Base class for record store failures."""


class NoMatchingRow(RecordStoreError):
    """``select_one`` found nothing for the predicate."""


class StoreUnavailable(RecordStoreError):
    """Store unreachable, timed out or failed unexpectedly."""


class SchemaAbsent(RecordStoreError):
    """Referenced table or column does not exist in the deployed schema."""


class DuplicateRow(RecordStoreError):
    """Insert or update violated a unique constraint."""


# ==== PREDICATE FILTERS ==== #


@dataclass(frozen=True)
class Filter:
    """Comparison applied to a single column."""
    op: str
    value: Any = None

    def matches(self, candidate: Any) -> bool:
        if self.op == "is_null":
            return (candidate is None) == bool(self.value)
        if self.op == "ne":
            return candidate != self.value
        if candidate is None:
            return False
        if self.op == "gt":
            return candidate > self.value
        if self.op == "gte":
            return candidate >= self.value
        if self.op == "lt":
            return candidate < self.value
        if self.op == "lte":
            return candidate <= self.value
        if self.op == "starts_with":
            return str(candidate).startswith(self.value)
        raise ValueError(f"Unknown filter operator: {self.op}")


def gt(value: Any) -> Filter:
    return Filter("gt", value)


def gte(value: Any) -> Filter:
    return Filter("gte", value)


def lt(value: Any) -> Filter:
    return Filter("lt", value)


def lte(value: Any) -> Filter:
    return Filter("lte", value)


def ne(value: Any) -> Filter:
    return Filter("ne", value)


def starts_with(prefix: str) -> Filter:
    return Filter("starts_with", prefix)


def is_null(flag: bool = True) -> Filter:
    return Filter("is_null", flag)


def row_matches(row: Row, predicate: Predicate) -> bool:
    """Evaluate a predicate against an in-memory row."""
    for column, expected in predicate.items():
        candidate = row.get(column)
        if isinstance(expected, Filter):
            if not expected.matches(candidate):
                return False
        elif candidate != expected:
            return False
    return True


# ==== INTERFACE ==== #


class RecordStore(ABC):
    """Async persistence operations consumed by the core services."""

    @abstractmethod
    async def find_max(self, table: str, column: str, prefix: str) -> Optional[Row]:
        """Row whose ``column`` is the lexicographically greatest value starting with ``prefix``."""

    @abstractmethod
    async def insert(self, table: str, row: Row) -> Row:
        """Insert a row and return it as stored."""

    @abstractmethod
    async def update_where(self, table: str, predicate: Predicate, patch: Row) -> List[Row]:
        """Apply ``patch`` to every row matching ``predicate``; return updated rows."""

    @abstractmethod
    async def select_where(
        self,
        table: str,
        predicate: Predicate,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Row]:
        """Rows matching ``predicate``."""

    async def select_one(
        self,
        table: str,
        predicate: Predicate,
        order_by: Optional[str] = None,
        descending: bool = False
    ) -> Row:
        """First row matching ``predicate``.

        Raises:
            NoMatchingRow: If nothing matches
        """
        rows = await self.select_where(
            table, predicate, order_by=order_by, descending=descending, limit=1
        )
        if not rows:
            raise NoMatchingRow(f"No row in {table} matches {predicate}")
        return rows[0]


# ==== SQLALCHEMY IMPLEMENTATION ==== #


class SqlRecordStore(RecordStore):
    """Record store backed by the SQLAlchemy async session factory."""

    def __init__(
        self,
        session_factory: Callable[[], Any] = get_session,
        models: Optional[Dict[str, Any]] = None
    ):
        self._session_factory = session_factory
        self._models = models if models is not None else TABLE_MODELS

    # --► SCHEMA RESOLUTION

    def _model(self, table: str):
        model = self._models.get(table)
        if model is None:
            raise SchemaAbsent(f'relation "{table}" does not exist')
        return model

    def _column(self, model, column: str):
        attribute = model.__mapper__.column_attrs.get(column)
        if attribute is None:
            raise SchemaAbsent(
                f'column "{model.__tablename__}.{column}" does not exist'
            )
        return getattr(model, column)

    def _where(self, model, predicate: Predicate) -> list:
        clauses = []
        for column, expected in predicate.items():
            attribute = self._column(model, column)
            if not isinstance(expected, Filter):
                clauses.append(attribute.is_(None) if expected is None else attribute == expected)
            elif expected.op == "gt":
                clauses.append(attribute > expected.value)
            elif expected.op == "gte":
                clauses.append(attribute >= expected.value)
            elif expected.op == "lt":
                clauses.append(attribute < expected.value)
            elif expected.op == "lte":
                clauses.append(attribute <= expected.value)
            elif expected.op == "ne":
                clauses.append(attribute != expected.value)
            elif expected.op == "starts_with":
                clauses.append(attribute.startswith(expected.value, autoescape=True))
            elif expected.op == "is_null":
                clauses.append(attribute.is_(None) if expected.value else attribute.is_not(None))
            else:
                raise ValueError(f"Unknown filter operator: {expected.op}")
        return clauses

    @staticmethod
    def _to_row(instance) -> Row:
        return {
            attribute.key: getattr(instance, attribute.key)
            for attribute in instance.__mapper__.column_attrs
        }

    # --► ERROR MAPPING

    @asynccontextmanager
    async def _session(self, table: str, operation: str) -> AsyncGenerator[AsyncSession, None]:
        """Open a session and translate driver errors into store errors."""
        try:
            async with self._session_factory() as session:
                yield session
        except RecordStoreError:
            raise
        except IntegrityError as e:
            store_errors_total.labels(table=table, operation=operation, kind="duplicate").inc()
            raise DuplicateRow(str(e.orig or e)) from e
        except DBAPIError as e:
            if _is_schema_absent(e):
                store_errors_total.labels(table=table, operation=operation, kind="schema_absent").inc()
                raise SchemaAbsent(str(e.orig or e)) from e
            store_errors_total.labels(table=table, operation=operation, kind="unavailable").inc()
            logger.error(
                "Record store operation failed",
                table=table,
                operation=operation,
                error=str(e)
            )
            raise StoreUnavailable(str(e)) from e
        except (SQLAlchemyError, OSError, TimeoutError) as e:
            store_errors_total.labels(table=table, operation=operation, kind="unavailable").inc()
            logger.error(
                "Record store unreachable",
                table=table,
                operation=operation,
                error=str(e)
            )
            raise StoreUnavailable(str(e)) from e

    # --► OPERATIONS

    async def find_max(self, table: str, column: str, prefix: str) -> Optional[Row]:
        with tracer.start_as_current_span("record_store_find_max") as span:
            span.set_attribute("table", table)
            span.set_attribute("column", column)
            span.set_attribute("prefix", prefix)

            model = self._model(table)
            attribute = self._column(model, column)

            async with self._session(table, "find_max") as session:
                query = (
                    select(model)
                    .where(attribute.startswith(prefix, autoescape=True))
                    .order_by(attribute.desc())
                    .limit(1)
                )
                result = await session.execute(query)
                instance = result.scalars().first()
                return self._to_row(instance) if instance is not None else None

    async def insert(self, table: str, row: Row) -> Row:
        with tracer.start_as_current_span("record_store_insert") as span:
            span.set_attribute("table", table)

            model = self._model(table)
            for column in row:
                self._column(model, column)

            async with self._session(table, "insert") as session:
                instance = model(**row)
                session.add(instance)
                await session.flush()
                return self._to_row(instance)

    async def update_where(self, table: str, predicate: Predicate, patch: Row) -> List[Row]:
        with tracer.start_as_current_span("record_store_update_where") as span:
            span.set_attribute("table", table)

            model = self._model(table)
            clauses = self._where(model, predicate)
            values = {self._column(model, column).key: value for column, value in patch.items()}

            async with self._session(table, "update_where") as session:
                statement = (
                    update(model)
                    .where(*clauses)
                    .values(**values)
                    .returning(model)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(statement)
                rows = [self._to_row(instance) for instance in result.scalars().all()]
                span.set_attribute("rows_updated", len(rows))
                return rows

    async def select_where(
        self,
        table: str,
        predicate: Predicate,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Row]:
        with tracer.start_as_current_span("record_store_select_where") as span:
            span.set_attribute("table", table)

            model = self._model(table)
            query = select(model).where(*self._where(model, predicate))
            if order_by:
                attribute = self._column(model, order_by)
                query = query.order_by(attribute.desc() if descending else attribute.asc())
            if limit is not None:
                query = query.limit(limit)

            async with self._session(table, "select_where") as session:
                result = await session.execute(query)
                return [self._to_row(instance) for instance in result.scalars().all()]


def _is_schema_absent(error: DBAPIError) -> bool:
    """Undefined column/table by SQLSTATE; the message is read only without one.

    Other SQLSTATEs with "does not exist" messages (28000 role, 3D000
    database) are infrastructure failures.
    """
    original = error.orig
    code = getattr(original, "pgcode", None) or getattr(original, "sqlstate", None)
    if code:
        return code in _SCHEMA_ABSENT_CODES
    message = str(original or error).lower()
    return "does not exist" in message or "schema cache" in message


# ==== GLOBAL STORE INSTANCE ==== #


_record_store: Optional[RecordStore] = None


def get_record_store() -> RecordStore:
    """
    Get global record store instance.

    Returns:
        RecordStore: SQL-backed store shared by the services
    """
    global _record_store
    if _record_store is None:
        _record_store = SqlRecordStore()
    return _record_store


def set_record_store(store: Optional[RecordStore]) -> None:
    """Replace the global store (tests, alternative backends)."""
    global _record_store
    _record_store = store
