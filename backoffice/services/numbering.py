# ==== DOCUMENT NUMBERING SERVICE ==== #

"""
Sequence allocator for human-readable document identifiers.

Identifiers look like ``DEL-2025-001``: a series tag, a period key and a
zero-padded sequence number that widens past the pad width instead of
wrapping. Two strategies are available:

* ``counter`` keeps the numeric high-water mark per series period in
  ``sequence_counters`` and advances it with a compare-and-swap under the
  series lock, so concurrent allocations never return the same value.
* ``scan`` derives the next value from the greatest existing identifier in
  the owning table. Concurrent callers can observe the same maximum.

Allocation never fails the caller's write: store outages fall back to a
timestamp-derived identifier, and an optional owning column that is not
migrated yet yields ``None``.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from backoffice.errors import SchemaAbsence, ValidationError
from backoffice.observability.logging import get_logger
from backoffice.observability.metrics import (
    identifiers_allocated_total,
    sequence_conflicts_total,
    sequence_parse_failures_total
)
from backoffice.observability.tracing import get_tracer
from backoffice.resilience.retry_policies import (
    WriteConflict,
    create_sequence_retry_policy,
    retry_async_operation
)
from backoffice.services.policy_loader import get_country_aliases
from backoffice.services.series_lock import SeriesLock, get_series_lock
from backoffice.settings import settings
from backoffice.storage.record_store import (
    DuplicateRow,
    RecordStore,
    SchemaAbsent,
    StoreUnavailable,
    get_record_store,
    starts_with
)


logger = get_logger(__name__)
tracer = get_tracer(__name__)

COUNTER_TABLE = "sequence_counters"

_LEADING_DIGITS = re.compile(r"\s*(\d+)")
_COUNTRY_TAG = re.compile(r"([A-Z]+)-([A-Z]{2})")


# ==== SERIES REGISTRY ==== #


@dataclass(frozen=True)
class SeriesDefinition:
    """Where a series lives and how its period key is derived."""
    name: str
    tag: str
    table: str
    column: str
    period: str = "year"  # year|month
    optional_column: bool = False  # absent column yields None instead of a fallback
    country_scoped: bool = False  # tag is <tag>-<ISO country code>
    fallback_digits: Optional[int] = None

    def period_key(self, now: datetime) -> str:
        if self.period == "month":
            return f"{now.month:02d}"
        return str(now.year)


SERIES: Dict[str, SeriesDefinition] = {
    "delivery": SeriesDefinition(
        name="delivery",
        tag="DEL",
        table="delivery_expected",
        column="delivery_number",
    ),
    "internal-tracking": SeriesDefinition(
        name="internal-tracking",
        tag="INT",
        table="warehouse_orders",
        column="internal_tracking_number",
        optional_column=True,
    ),
    # Tag is IE-<country code>, one counter space per country and month
    "packing-order": SeriesDefinition(
        name="packing-order",
        tag="IE",
        table="shipment_orders",
        column="packing_order_number",
        period="month",
        country_scoped=True,
        fallback_digits=3,
    ),
    "invoice": SeriesDefinition(
        name="invoice",
        tag="INV",
        table="proforma_invoices",
        column="invoice_number",
    ),
}

_SERIES_BY_TAG = {definition.tag: definition for definition in SERIES.values()}


def resolve_series(series_tag: str) -> SeriesDefinition:
    """
    Find the series a tag belongs to.

    Plain series match their tag exactly (``DEL``). Country-scoped series
    only match ``<tag>-<CC>`` with a two-letter country code (``IE-PL``).

    Raises:
        ValidationError: If the tag belongs to no known series
    """
    if not series_tag:
        raise ValidationError("Series tag is required", field="series_tag")

    definition = _SERIES_BY_TAG.get(series_tag)
    if definition is not None and definition.country_scoped:
        raise ValidationError(f"Series {series_tag} needs a country code", field="series_tag")

    if definition is None:
        match = _COUNTRY_TAG.fullmatch(series_tag)
        family = _SERIES_BY_TAG.get(match.group(1)) if match else None
        if family is not None and family.country_scoped:
            definition = family

    if definition is None:
        raise ValidationError(f"Unknown identifier series: {series_tag}", field="series_tag")
    return definition


def format_identifier(series_tag: str, period_key: str, seq: int, width: int = 3) -> str:
    """Render ``<tag>-<period>-<seq>`` with ``seq`` zero-padded to ``width``."""
    return f"{series_tag}-{period_key}-{seq:0{width}d}"


def parse_sequence(value: str, prefix: str) -> Optional[int]:
    """Leading integer after ``prefix``, or None if there is none."""
    if not value or not value.startswith(prefix):
        return None
    match = _LEADING_DIGITS.match(value[len(prefix):])
    if match is None:
        return None
    return int(match.group(1))


def get_country_code(country: Optional[str]) -> str:
    """
    Map a country name or code to the ISO code used in packing numbers.

    Args:
        country: Free-form country (``"Deutschland"``, ``"uk"``, ``"FR"``)

    Returns:
        str: Two-letter code, ``PL`` when unknown or empty
    """
    aliases = get_country_aliases()
    if not country:
        return aliases["*"]
    return aliases.get(country.strip().upper(), aliases["*"])


class _CounterStorageAbsent(SchemaAbsent):
    """The sequence counter table itself is not provisioned."""


# ==== ALLOCATOR ==== #


class SequenceAllocator:
    """
    Issue the next identifier of a series period.

    Args:
        store: Record store holding owning tables and counters
        lock: Series lock serializing writers per series period
        strategy: ``counter`` or ``scan`` (defaults to settings)
        pad_width: Minimum digits of the sequence part
        max_attempts: Compare-and-swap attempts before falling back
        fallback_digits: Epoch-millisecond digits used by the timestamp fallback
    """

    def __init__(
        self,
        store: RecordStore | None = None,
        lock: SeriesLock | None = None,
        strategy: str | None = None,
        pad_width: int | None = None,
        max_attempts: int | None = None,
        fallback_digits: int | None = None
    ):
        self.store = store or get_record_store()
        self.lock = lock or get_series_lock()
        self.strategy = strategy or settings.SEQUENCE_STRATEGY
        self.pad_width = pad_width or settings.SEQUENCE_PAD_WIDTH
        self.fallback_digits = fallback_digits or settings.SEQUENCE_FALLBACK_DIGITS
        self._retry_policy = create_sequence_retry_policy(
            max_attempts or settings.SEQUENCE_MAX_ATTEMPTS
        )

        if self.strategy not in ("counter", "scan"):
            raise ValueError(f"Unknown sequence strategy: {self.strategy}")

    async def allocate(self, series_tag: str, period_key: str) -> Optional[str]:
        """
        Allocate the next identifier for ``(series_tag, period_key)``.

        Args:
            series_tag: Tag such as ``DEL`` or ``IE-PL``
            period_key: Period bucket such as ``2025`` or ``07``

        Returns:
            Optional[str]: Identifier, a timestamp-derived identifier when the
            store fails, or None when an optional owning column does not exist

        Raises:
            ValidationError: If the tag or period is malformed
        """
        definition = resolve_series(series_tag)
        if not period_key:
            raise ValidationError("Period key is required", field="period_key")

        prefix = f"{series_tag}-{period_key}-"

        with tracer.start_as_current_span("sequence_allocate") as span:
            span.set_attribute("series", definition.name)
            span.set_attribute("series_tag", series_tag)
            span.set_attribute("period_key", period_key)
            span.set_attribute("strategy", self.strategy)

            try:
                if self.strategy == "counter":
                    seq = await self._counter_next(definition, series_tag, period_key, prefix)
                else:
                    seq = await self._scan_next(definition, prefix)

            except SchemaAbsent as e:
                absence = SchemaAbsence(
                    f"{definition.table}.{definition.column} is not provisioned",
                    {"series": definition.name, "cause": str(e)}
                )
                if not definition.optional_column:
                    # Required series keep issuing identifiers
                    return self._fallback(definition, series_tag, period_key, span, absence)

                logger.warning(
                    "Identifier column not provisioned, no identifier issued",
                    error_type=type(absence).__name__,
                    error=absence.message,
                    **absence.details
                )
                identifiers_allocated_total.labels(
                    series=definition.name, strategy=self.strategy, outcome="unavailable"
                ).inc()
                span.set_attribute("outcome", "unavailable")
                return None

            except (StoreUnavailable, WriteConflict) as e:
                return self._fallback(definition, series_tag, period_key, span, e)

            identifier = format_identifier(series_tag, period_key, seq, self.pad_width)
            identifiers_allocated_total.labels(
                series=definition.name, strategy=self.strategy, outcome="sequential"
            ).inc()
            span.set_attribute("outcome", "sequential")
            span.set_attribute("sequence", seq)

            logger.debug(
                "Identifier allocated",
                series=definition.name,
                identifier=identifier
            )
            return identifier

    # --► PREFIX SCAN STRATEGY

    async def _scan_next(self, definition: SeriesDefinition, prefix: str) -> int:
        """Greatest existing identifier with the prefix, plus one."""
        row = await self.store.find_max(definition.table, definition.column, prefix)
        if row is None or not row.get(definition.column):
            return 1

        previous = parse_sequence(row[definition.column], prefix)
        if previous is None:
            sequence_parse_failures_total.labels(series=definition.name).inc()
            logger.warning(
                "Unparseable identifier, restarting sequence at 1",
                series=definition.name,
                value=row[definition.column]
            )
            return 1

        return previous + 1

    # --► COUNTER STRATEGY

    async def _counter_next(
        self,
        definition: SeriesDefinition,
        series_tag: str,
        period_key: str,
        prefix: str
    ) -> int:
        async with self.lock.hold(series_tag, period_key):
            try:
                return await retry_async_operation(
                    self._advance_counter,
                    self._retry_policy,
                    "advance_counter",
                    definition,
                    series_tag,
                    period_key,
                    prefix
                )
            except _CounterStorageAbsent as e:
                logger.warning(
                    "Sequence counter table missing, using prefix scan",
                    series=definition.name,
                    error=str(e)
                )
                return await self._scan_next(definition, prefix)

    async def _advance_counter(
        self,
        definition: SeriesDefinition,
        series_tag: str,
        period_key: str,
        prefix: str
    ) -> int:
        """One compare-and-swap round on the counter row."""
        key = {"series_tag": series_tag, "period_key": period_key}
        now = datetime.now(timezone.utc)

        try:
            rows = await self.store.select_where(COUNTER_TABLE, key, limit=1)
        except SchemaAbsent as e:
            raise _CounterStorageAbsent(str(e)) from e

        if not rows:
            seed = await self._bootstrap_seed(definition, prefix)
            try:
                await self.store.insert(
                    COUNTER_TABLE,
                    {**key, "last_value": seed + 1, "updated_at": now}
                )
            except DuplicateRow as e:
                sequence_conflicts_total.labels(series=definition.name).inc()
                raise WriteConflict(f"Counter for {series_tag}-{period_key} created concurrently") from e
            return seed + 1

        current = int(rows[0]["last_value"])
        updated = await self.store.update_where(
            COUNTER_TABLE,
            {**key, "last_value": current},
            {"last_value": current + 1, "updated_at": now}
        )
        if not updated:
            sequence_conflicts_total.labels(series=definition.name).inc()
            raise WriteConflict(f"Counter for {series_tag}-{period_key} moved past {current}")

        return current + 1

    async def _bootstrap_seed(self, definition: SeriesDefinition, prefix: str) -> int:
        """Numeric maximum of identifiers issued before the counter existed."""
        rows = await self.store.select_where(
            definition.table, {definition.column: starts_with(prefix)}
        )

        seed = 0
        for row in rows:
            value = parse_sequence(row.get(definition.column) or "", prefix)
            if value is None:
                sequence_parse_failures_total.labels(series=definition.name).inc()
                continue
            seed = max(seed, value)

        if seed:
            logger.info(
                "Sequence counter seeded from existing identifiers",
                series=definition.name,
                prefix=prefix,
                seed=seed
            )
        return seed

    # --► FALLBACK

    def _fallback(
        self,
        definition: SeriesDefinition,
        series_tag: str,
        period_key: str,
        span,
        error: Exception
    ) -> str:
        identifier = self._timestamp_identifier(definition, series_tag, period_key)
        logger.error(
            "Sequence allocation failed, using timestamp fallback",
            series=definition.name,
            series_tag=series_tag,
            period_key=period_key,
            identifier=identifier,
            error_type=type(error).__name__,
            error=str(error)
        )
        identifiers_allocated_total.labels(
            series=definition.name, strategy=self.strategy, outcome="fallback"
        ).inc()
        span.set_attribute("outcome", "fallback")
        return identifier

    def _timestamp_identifier(
        self,
        definition: SeriesDefinition,
        series_tag: str,
        period_key: str
    ) -> str:
        digits = definition.fallback_digits or self.fallback_digits
        millis = str(int(datetime.now(timezone.utc).timestamp() * 1000))
        return f"{series_tag}-{period_key}-{millis[-digits:]}"


# ==== GLOBAL ALLOCATOR INSTANCE ==== #


_allocator: Optional[SequenceAllocator] = None


def get_sequence_allocator() -> SequenceAllocator:
    """
    Get global sequence allocator instance.

    Returns:
        SequenceAllocator: Allocator bound to the global store and lock
    """
    global _allocator
    if _allocator is None:
        _allocator = SequenceAllocator()
    return _allocator


# ==== CONVENIENCE HELPERS ==== #


def _utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


async def allocate(
    series_tag: str,
    period_key: str,
    allocator: SequenceAllocator | None = None
) -> Optional[str]:
    """Allocate from the global allocator unless one is given."""
    return await (allocator or get_sequence_allocator()).allocate(series_tag, period_key)


async def next_delivery_number(
    now: Optional[datetime] = None,
    allocator: SequenceAllocator | None = None
) -> Optional[str]:
    """Next ``DEL-<year>-###`` number."""
    definition = SERIES["delivery"]
    return await allocate(definition.tag, definition.period_key(_utc(now)), allocator)


async def next_internal_tracking_number(
    now: Optional[datetime] = None,
    allocator: SequenceAllocator | None = None
) -> Optional[str]:
    """Next ``INT-<year>-###`` number, None while the column is unmigrated."""
    definition = SERIES["internal-tracking"]
    return await allocate(definition.tag, definition.period_key(_utc(now)), allocator)


async def next_packing_order_number(
    country: Optional[str] = None,
    now: Optional[datetime] = None,
    allocator: SequenceAllocator | None = None
) -> Optional[str]:
    """Next ``IE-<CC>-<MM>-###`` number for the shipment's country."""
    definition = SERIES["packing-order"]
    series_tag = f"{definition.tag}-{get_country_code(country)}"
    return await allocate(series_tag, definition.period_key(_utc(now)), allocator)


async def next_invoice_number(
    now: Optional[datetime] = None,
    allocator: SequenceAllocator | None = None
) -> Optional[str]:
    """Next ``INV-<year>-###`` proforma number."""
    definition = SERIES["invoice"]
    return await allocate(definition.tag, definition.period_key(_utc(now)), allocator)
