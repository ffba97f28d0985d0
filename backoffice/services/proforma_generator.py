# ==== PROFORMA GENERATOR SERVICE ==== #

"""
Month-end proforma issuance from monthly additional charges.

One proforma exists per client and period. Re-running the batch refreshes
the amount and due date of pending proformas instead of issuing new ones,
so the generator can be retried after a partial failure.
"""

import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from backoffice.errors import BackofficeError
from backoffice.observability.logging import get_logger, log_business_event
from backoffice.observability.metrics import (
    last_proforma_batch_size,
    proforma_failures_total,
    proformas_generated_total
)
from backoffice.observability.tracing import get_tracer
from backoffice.schemas.billing import (
    ChargeRecord,
    ProformaBatchResult,
    ProformaFailure,
    ProformaRecord,
    ProformaStatus
)
from backoffice.services.billing import (
    BillingResolver,
    as_utc,
    get_billing_resolver,
    resolve_period,
    utcnow
)
from backoffice.services.numbering import SERIES, SequenceAllocator, get_sequence_allocator
from backoffice.settings import settings
from backoffice.storage.record_store import RecordStore, RecordStoreError, get_record_store


tracer = get_tracer(__name__)
logger = get_logger(__name__)

PROFORMAS = "proforma_invoices"


def previous_period(now: Optional[datetime] = None) -> Tuple[int, int]:
    """Month and year of the calendar month before ``now``."""
    now = as_utc(now) or utcnow()
    if now.month == 1:
        return 12, now.year - 1
    return now.month - 1, now.year


def due_date_for(month: int, year: int, due_days: Optional[int] = None) -> datetime:
    """Payment due date: ``due_days`` after the last day of the period."""
    last_day = calendar.monthrange(year, month)[1]
    month_end = datetime(year, month, last_day, tzinfo=timezone.utc)
    return month_end + timedelta(days=settings.PROFORMA_DUE_DAYS if due_days is None else due_days)


class ProformaGeneratorService:
    """
    Service issuing proforma invoices for billable charge periods.

    Args:
        store: Record store holding charges and proformas
        resolver: Billing resolver used to read and close charge periods
        allocator: Sequence allocator numbering new proformas
    """

    def __init__(
        self,
        store: RecordStore | None = None,
        resolver: BillingResolver | None = None,
        allocator: SequenceAllocator | None = None
    ):
        self.store = store or get_record_store()
        self.resolver = resolver or get_billing_resolver()
        self.allocator = allocator or get_sequence_allocator()

    async def generate_proformas(
        self,
        month: Optional[int] = None,
        year: Optional[int] = None,
        close_periods: Optional[bool] = None,
        now: Optional[datetime] = None
    ) -> ProformaBatchResult:
        """
        Issue or refresh proformas for every billable client of a period.

        Args:
            month: Period month, defaults to the previous month
            year: Period year, defaults to the previous month's year
            close_periods: Close each invoiced charge period afterwards
                (defaults to ``PROFORMA_CLOSE_PERIODS``)
            now: Clock override

        Returns:
            ProformaBatchResult: Counts, proformas and per-client errors

        Raises:
            InfrastructuralFailure: If the period's charges cannot be read
        """
        now = as_utc(now) or utcnow()
        if month is None or year is None:
            month, year = previous_period(now)
        month, year = resolve_period(month, year, now)
        if close_periods is None:
            close_periods = settings.PROFORMA_CLOSE_PERIODS

        with tracer.start_as_current_span("generate_proformas") as span:
            span.set_attribute("month", month)
            span.set_attribute("year", year)
            span.set_attribute("close_periods", close_periods)

            result = ProformaBatchResult(month=month, year=year)
            charges = await self.resolver.list_period_charges(month, year, billable_only=True)
            due_date = due_date_for(month, year)

            logger.info(
                "Generating proformas",
                month=month,
                year=year,
                billable_clients=len(charges)
            )

            for charge in charges:
                try:
                    proforma, action = await self._upsert_proforma(charge, due_date, now)
                    if action == "skipped":
                        result.skipped += 1
                    else:
                        proformas_generated_total.labels(action=action).inc()
                        if action == "created":
                            result.created += 1
                        else:
                            result.updated += 1
                    result.proformas.append(proforma)

                    if close_periods and not charge.is_closed:
                        await self.resolver.close_period(charge.client_id, month, year, now)
                        result.closed_periods += 1

                except (BackofficeError, RecordStoreError) as e:
                    proforma_failures_total.labels(error_type=type(e).__name__).inc()
                    logger.error(
                        "Failed to generate proforma",
                        client_id=charge.client_id,
                        month=month,
                        year=year,
                        error=str(e)
                    )
                    result.errors.append(ProformaFailure(client_id=charge.client_id, error=str(e)))

            last_proforma_batch_size.set(result.total)
            span.set_attribute("created", result.created)
            span.set_attribute("updated", result.updated)
            span.set_attribute("errors", len(result.errors))

            log_business_event(
                "proformas_generated",
                month=month,
                year=year,
                created=result.created,
                updated=result.updated,
                errors=len(result.errors)
            )
            return result

    async def _upsert_proforma(
        self,
        charge: ChargeRecord,
        due_date: datetime,
        now: datetime
    ) -> Tuple[ProformaRecord, str]:
        """Create the period's proforma or refresh the pending one."""
        key = {"client_id": charge.client_id, "month": charge.month, "year": charge.year}
        rows = await self.store.select_where(PROFORMAS, key, limit=1)

        if rows:
            existing = rows[0]
            if existing.get("status") != ProformaStatus.PENDING.value:
                logger.info(
                    "Proforma already settled, leaving unchanged",
                    client_id=charge.client_id,
                    status=existing.get("status")
                )
                return ProformaRecord.model_validate(existing), "skipped"

            patch = {
                "amount_eur": charge.total_amount_eur,
                "due_date": due_date,
                "updated_at": now,
            }
            if not existing.get("invoice_number"):
                patch["invoice_number"] = await self._next_number(charge.year)

            updated = await self.store.update_where(PROFORMAS, {"id": existing["id"]}, patch)
            return ProformaRecord.model_validate(updated[0] if updated else {**existing, **patch}), "updated"

        created = await self.store.insert(PROFORMAS, {
            **key,
            "amount_eur": charge.total_amount_eur,
            "status": ProformaStatus.PENDING.value,
            "due_date": due_date,
            "invoice_number": await self._next_number(charge.year),
            "created_at": now,
            "updated_at": now,
        })
        return ProformaRecord.model_validate(created), "created"

    async def _next_number(self, year: int) -> Optional[str]:
        return await self.allocator.allocate(SERIES["invoice"].tag, str(year))


# ==== GLOBAL SERVICE INSTANCE ==== #


_proforma_generator: Optional[ProformaGeneratorService] = None


def get_proforma_generator() -> ProformaGeneratorService:
    """
    Get global proforma generator instance.

    Returns:
        ProformaGeneratorService: Generator bound to the global services
    """
    global _proforma_generator
    if _proforma_generator is None:
        _proforma_generator = ProformaGeneratorService()
    return _proforma_generator


async def generate_proformas(
    month: Optional[int] = None,
    year: Optional[int] = None,
    close_periods: Optional[bool] = None
) -> ProformaBatchResult:
    """Run a proforma batch on the global generator."""
    return await get_proforma_generator().generate_proformas(month, year, close_periods)
