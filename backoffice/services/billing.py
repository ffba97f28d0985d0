# ==== BILLING SERVICE ==== #

"""
Billing resolver for monthly additional charges and promotable fees.

This module resolves a client's itemized charges for a calendar month, the
currently effective setup fee, and the public plan price list. It is also
the single mutation path for plan prices, the setup fee promotion and the
monthly charge rows.

Charge rows are written with optimistic versioning: every mutation reads the
row, computes the new figures, and updates it only if ``version`` is still
the one it read, retrying on conflict. ``total_amount_eur`` is recomputed
from its components on every write. Store failures are surfaced as
``InfrastructuralFailure``; money figures are never defaulted on error.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from backoffice.errors import (
    InfrastructuralFailure,
    NotFound,
    PeriodClosed,
    ValidationError
)
from backoffice.observability.logging import get_logger, log_business_event
from backoffice.observability.metrics import (
    charge_mutations_total,
    charge_write_conflicts_total,
    plan_rate_updates_total
)
from backoffice.observability.tracing import get_tracer
from backoffice.resilience.retry_policies import (
    WriteConflict,
    create_charges_retry_policy,
    retry_async_operation
)
from backoffice.schemas.billing import (
    ChargeRecord,
    EffectiveFee,
    PlanRecord,
    PricedPlan,
    PricingCatalog,
    PromotionState,
    SetupFeeRecord,
    VoucherQuote,
    VoucherRecord
)
from backoffice.services.policy_loader import get_hidden_plan_names
from backoffice.services.warehouse_calculations import (
    calculate_over_space_charge,
    quantize_money,
    quantize_volume,
    to_decimal
)
from backoffice.settings import settings
from backoffice.storage.record_store import (
    DuplicateRow,
    NoMatchingRow,
    RecordStore,
    SchemaAbsent,
    StoreUnavailable,
    get_record_store,
    gt,
    gte,
    is_null,
    ne
)


logger = get_logger(__name__)
tracer = get_tracer(__name__)

PLANS = "plans"
SETUP_FEES = "setup_fees"
CLIENTS = "clients"
CAPACITIES = "warehouse_capacities"
CHARGES = "monthly_additional_charges"
VOUCHERS = "setup_fee_vouchers"

_MONEY_FIELDS = ("over_space_amount_eur", "additional_services_amount_eur", "total_amount_eur")


class _Unset:
    """Marker for an argument that was not passed at all."""

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


# ==== TIME AND INPUT HELPERS ==== #


def as_utc(value: Any) -> Optional[datetime]:
    """Timezone-aware UTC datetime; naive values are read as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {value}", field="valid_until") from e
    if not isinstance(value, datetime):
        raise ValidationError(f"Invalid timestamp: {value!r}", field="valid_until")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_period(
    month: Optional[int] = None,
    year: Optional[int] = None,
    now: Optional[datetime] = None
) -> Tuple[int, int]:
    """Requested month/year, each defaulting to the current UTC month."""
    now = as_utc(now) or utcnow()
    month = now.month if month is None else month
    year = now.year if year is None else year

    if isinstance(month, bool) or not isinstance(month, int) or not 1 <= month <= 12:
        raise ValidationError("month must be an integer between 1 and 12", field="month", value=month)
    if isinstance(year, bool) or not isinstance(year, int) or not 2000 <= year <= 9999:
        raise ValidationError("year must be a four-digit integer", field="year", value=year)
    return month, year


def parse_amount(value: Any, field: str) -> Decimal:
    """
    Validate a EUR amount supplied by an operator.

    Raises:
        ValidationError: If missing, non-numeric, non-finite or negative
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} is required", field=field)
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field, value=value)

    try:
        amount = to_decimal(value.strip() if isinstance(value, str) else value)
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValidationError(f"{field} must be a number", field=field, value=str(value)) from e

    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field, value=str(value))
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0", field=field, value=str(value))

    return quantize_money(amount)


def _first_positive(*values: Any) -> Decimal:
    """First value that is set and non-zero, else 0."""
    for value in values:
        if value is not None and to_decimal(value) != 0:
            return to_decimal(value)
    return Decimal("0")


# ==== EFFECTIVE FEE RESOLUTION ==== #


def get_effective_fee_amount(
    setup_fee: SetupFeeRecord | Mapping[str, Any],
    now: Optional[datetime] = None
) -> EffectiveFee:
    """
    Resolve the amount currently payable for a promotable fee.

    The suggested amount applies unless a different current amount is set
    and its validity has not ended; ``valid_until == now`` still counts as
    valid. A current amount of zero is a real (free) promotion. The result
    depends only on the arguments, so the promotion expires on its own when
    the clock passes ``valid_until``.

    Args:
        setup_fee: Fee row or mapping with ``suggested_amount_eur``,
            ``current_amount_eur`` and ``valid_until``
        now: Evaluation instant (defaults to the current UTC time)

    Returns:
        EffectiveFee: Amount, promotional flag and lifecycle state
    """
    if not isinstance(setup_fee, SetupFeeRecord):
        setup_fee = SetupFeeRecord.model_validate(dict(setup_fee))

    now = as_utc(now) or utcnow()
    suggested = quantize_money(setup_fee.suggested_amount_eur)
    valid_until = as_utc(setup_fee.valid_until)

    candidate = None
    if setup_fee.current_amount_eur is not None:
        candidate = quantize_money(setup_fee.current_amount_eur)

    if candidate is None or candidate == suggested:
        return EffectiveFee(
            amount_eur=suggested,
            is_promotional=False,
            suggested_amount_eur=suggested,
            valid_until=valid_until,
            state=PromotionState.SUGGESTED_ONLY
        )

    if valid_until is None or valid_until >= now:
        return EffectiveFee(
            amount_eur=candidate,
            is_promotional=candidate < suggested,
            suggested_amount_eur=suggested,
            valid_until=valid_until,
            state=PromotionState.PROMOTION_PENDING
        )

    return EffectiveFee(
        amount_eur=suggested,
        is_promotional=False,
        suggested_amount_eur=suggested,
        valid_until=valid_until,
        state=PromotionState.PROMOTION_EXPIRED
    )


def normalize_voucher_code(code: Any) -> str:
    """Trimmed, upper-cased voucher code."""
    if not isinstance(code, str) or not code.strip():
        raise ValidationError("Voucher code is required", field="code")
    return code.strip().upper()


def voucher_from_row(row: Mapping[str, Any]) -> VoucherRecord:
    data = dict(row)
    data["amount_eur"] = quantize_money(data.get("amount_eur"))
    data["is_one_time"] = True if data.get("is_one_time") is None else bool(data["is_one_time"])
    for field in ("used_at", "expires_at", "created_at"):
        data[field] = as_utc(data.get(field))
    return VoucherRecord.model_validate(data)


def charge_from_row(row: Mapping[str, Any]) -> ChargeRecord:
    """Build a ChargeRecord from a stored row, normalizing amounts."""
    data = dict(row)
    for field in _MONEY_FIELDS:
        data[field] = quantize_money(data.get(field))
    data["over_space_paid_cbm"] = quantize_volume(data.get("over_space_paid_cbm"))
    data["applied_charge_refs"] = list(data.get("applied_charge_refs") or [])
    data["version"] = data.get("version") or 1
    for field in ("over_space_charged_at", "closed_at", "created_at", "updated_at"):
        data[field] = as_utc(data.get(field))
    return ChargeRecord.model_validate(data)


# ==== BILLING RESOLVER ==== #


class BillingResolver:
    """
    Service resolving and mutating billing figures.

    Args:
        store: Record store with plans, setup fees, clients and charges
        max_write_attempts: Optimistic write attempts before giving up
        lock_closed_periods: Reject mutations of closed charge periods
    """

    def __init__(
        self,
        store: RecordStore | None = None,
        max_write_attempts: int | None = None,
        lock_closed_periods: bool | None = None
    ):
        self.store = store or get_record_store()
        self.lock_closed_periods = (
            settings.CHARGES_LOCK_CLOSED_PERIODS if lock_closed_periods is None else lock_closed_periods
        )
        self._retry_policy = create_charges_retry_policy(
            max_write_attempts or settings.CHARGES_MAX_WRITE_ATTEMPTS
        )

    @contextmanager
    def _surface_store_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (StoreUnavailable, SchemaAbsent) as e:
            logger.error(
                "Billing store failure",
                operation=operation,
                error_type=type(e).__name__,
                error=str(e)
            )
            raise InfrastructuralFailure(
                f"Billing data unavailable during {operation}",
                {"operation": operation, "cause": str(e)}
            ) from e

    # ==== PERIOD CHARGE LOOKUP ==== #

    async def get_monthly_charges(
        self,
        client_id: str,
        month: Optional[int] = None,
        year: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> ChargeRecord:
        """
        Get a client's additional charges for a month.

        A period without a stored row yields a zero-valued record with
        ``persisted=False``; nothing is written.

        Args:
            client_id: Client identifier
            month: 1-12, defaults to the current month
            year: Defaults to the current year
            now: Clock override for the defaults

        Returns:
            ChargeRecord: Stored or zero-valued charges

        Raises:
            InfrastructuralFailure: If the store fails
        """
        if not client_id:
            raise ValidationError("client_id is required", field="client_id")
        month, year = resolve_period(month, year, now)

        with tracer.start_as_current_span("get_monthly_charges") as span:
            span.set_attribute("client_id", client_id)
            span.set_attribute("month", month)
            span.set_attribute("year", year)

            with self._surface_store_errors("get_monthly_charges"):
                rows = await self.store.select_where(
                    CHARGES,
                    {"client_id": client_id, "month": month, "year": year},
                    limit=1
                )

            span.set_attribute("persisted", bool(rows))
            if rows:
                return charge_from_row(rows[0])

            return ChargeRecord(client_id=client_id, month=month, year=year, persisted=False)

    async def list_period_charges(
        self,
        month: int,
        year: int,
        billable_only: bool = True
    ) -> List[ChargeRecord]:
        """Stored charge rows of a period, optionally only those with a positive total."""
        predicate: Dict[str, Any] = {"month": month, "year": year}
        if billable_only:
            predicate["total_amount_eur"] = gt(0)

        with self._surface_store_errors("list_period_charges"):
            rows = await self.store.select_where(CHARGES, predicate, order_by="client_id")
        return [charge_from_row(row) for row in rows]

    # ==== SETUP FEE ==== #

    async def get_current_setup_fee(self) -> SetupFeeRecord:
        """Most recently created setup fee row, or the configured default."""
        with self._surface_store_errors("get_current_setup_fee"):
            rows = await self.store.select_where(
                SETUP_FEES, {}, order_by="created_at", descending=True, limit=1
            )

        if rows:
            return SetupFeeRecord.model_validate({**rows[0], "persisted": True})

        return SetupFeeRecord(
            suggested_amount_eur=quantize_money(settings.SETUP_FEE_DEFAULT_EUR),
            persisted=False
        )

    async def quote_setup_fee(self, now: Optional[datetime] = None) -> EffectiveFee:
        """Effective setup fee at ``now``."""
        with tracer.start_as_current_span("quote_setup_fee") as span:
            fee = await self.get_current_setup_fee()
            effective = get_effective_fee_amount(fee, now)
            span.set_attribute("amount_eur", str(effective.amount_eur))
            span.set_attribute("state", effective.state.value)
            return effective

    async def set_setup_fee_promotion(
        self,
        current_amount_eur: Any,
        valid_until: Any = None,
        now: Optional[datetime] = None
    ) -> SetupFeeRecord:
        """
        Set the promotional setup fee and its expiry.

        Updates the authoritative row, or creates the first one with the
        default suggested amount.

        Args:
            current_amount_eur: Promotional amount, >= 0; None or "" clears
                the promotion so only the suggested amount applies
            valid_until: Expiry instant; None keeps the promotion open-ended
            now: Timestamp for ``updated_at``

        Returns:
            SetupFeeRecord: Stored row

        Raises:
            ValidationError: If the amount or timestamp is invalid
        """
        amount: Optional[Decimal] = None
        if current_amount_eur is not None and not (
            isinstance(current_amount_eur, str) and not current_amount_eur.strip()
        ):
            amount = parse_amount(current_amount_eur, "current_amount_eur")
        expiry = as_utc(valid_until)
        now = as_utc(now) or utcnow()

        with tracer.start_as_current_span("set_setup_fee_promotion") as span:
            span.set_attribute("current_amount_eur", str(amount) if amount is not None else "cleared")

            current = await self.get_current_setup_fee()
            patch = {"current_amount_eur": amount, "valid_until": expiry, "updated_at": now}

            with self._surface_store_errors("set_setup_fee_promotion"):
                if current.persisted:
                    rows = await self.store.update_where(SETUP_FEES, {"id": current.id}, patch)
                    if not rows:
                        raise NotFound(f"Setup fee {current.id} not found")
                    row = rows[0]
                else:
                    row = await self.store.insert(SETUP_FEES, {
                        "suggested_amount_eur": current.suggested_amount_eur,
                        "created_at": now,
                        **patch
                    })

            log_business_event(
                "setup_fee_promotion_set" if amount is not None else "setup_fee_promotion_cleared",
                current_amount_eur=str(amount) if amount is not None else None,
                valid_until=expiry.isoformat() if expiry else None
            )
            return SetupFeeRecord.model_validate({**row, "persisted": True})

    # ==== SETUP FEE VOUCHERS ==== #

    async def create_voucher(
        self,
        code: Any,
        amount_eur: Any,
        expires_at: Any = None,
        is_one_time: bool = True,
        now: Optional[datetime] = None
    ) -> VoucherRecord:
        """
        Create a setup fee voucher.

        Args:
            code: Voucher code, stored trimmed and upper-cased
            amount_eur: Discount on the setup fee, > 0
            expires_at: Last valid instant; None never expires
            is_one_time: Whether the first redeeming client claims the code
            now: Timestamp for ``created_at``

        Returns:
            VoucherRecord: Stored voucher

        Raises:
            ValidationError: If the code is blank or taken, or the amount is not positive
        """
        normalized = normalize_voucher_code(code)
        amount = parse_amount(amount_eur, "amount_eur")
        if amount <= 0:
            raise ValidationError("amount_eur must be > 0", field="amount_eur", value=str(amount))
        expiry = as_utc(expires_at)
        now = as_utc(now) or utcnow()

        with tracer.start_as_current_span("create_voucher") as span:
            span.set_attribute("code", normalized)

            with self._surface_store_errors("create_voucher"):
                existing = await self.store.select_where(VOUCHERS, {"code": normalized}, limit=1)
                if existing:
                    raise ValidationError("Voucher code already exists", field="code", value=normalized)
                try:
                    row = await self.store.insert(VOUCHERS, {
                        "code": normalized,
                        "amount_eur": amount,
                        "is_one_time": bool(is_one_time),
                        "used_by_client_id": None,
                        "used_at": None,
                        "expires_at": expiry,
                        "created_at": now
                    })
                except DuplicateRow as e:
                    raise ValidationError(
                        "Voucher code already exists", field="code", value=normalized
                    ) from e

            log_business_event(
                "setup_fee_voucher_created",
                code=normalized,
                amount_eur=str(amount),
                is_one_time=bool(is_one_time),
                expires_at=expiry.isoformat() if expiry else None
            )
            return voucher_from_row(row)

    async def list_vouchers(self) -> List[VoucherRecord]:
        """All vouchers, newest first."""
        with self._surface_store_errors("list_vouchers"):
            rows = await self.store.select_where(VOUCHERS, {}, order_by="created_at", descending=True)
        return [voucher_from_row(row) for row in rows]

    async def validate_voucher(
        self,
        code: Any,
        client_id: str,
        now: Optional[datetime] = None
    ) -> VoucherRecord:
        """
        Check that a client may use a voucher at ``now``.

        ``expires_at == now`` still counts as valid.

        Raises:
            NotFound: If no voucher has this code
            ValidationError: If the voucher is used up or expired
        """
        normalized = normalize_voucher_code(code)
        if not client_id:
            raise ValidationError("client_id is required", field="client_id")
        now = as_utc(now) or utcnow()

        with self._surface_store_errors("validate_voucher"):
            rows = await self.store.select_where(VOUCHERS, {"code": normalized}, limit=1)
        if not rows:
            raise NotFound("Invalid voucher code", {"code": normalized})

        voucher = voucher_from_row(rows[0])
        if voucher.is_one_time and voucher.used_by_client_id:
            if voucher.used_by_client_id == client_id:
                raise ValidationError("You have already used this voucher", field="code", value=normalized)
            raise ValidationError("This voucher has already been used", field="code", value=normalized)
        if voucher.expires_at is not None and voucher.expires_at < now:
            raise ValidationError("This voucher has expired", field="code", value=normalized)
        return voucher

    async def quote_setup_fee_with_voucher(
        self,
        code: Any,
        client_id: str,
        now: Optional[datetime] = None
    ) -> VoucherQuote:
        """Effective setup fee at ``now`` minus a valid voucher, floored at zero."""
        with tracer.start_as_current_span("quote_setup_fee_with_voucher") as span:
            voucher = await self.validate_voucher(code, client_id, now)
            fee = await self.quote_setup_fee(now)
            due = max(quantize_money(fee.amount_eur - voucher.amount_eur), Decimal("0.00"))
            span.set_attribute("code", voucher.code)
            span.set_attribute("amount_due_eur", str(due))
            return VoucherQuote(
                code=voucher.code,
                voucher_amount_eur=voucher.amount_eur,
                fee=fee,
                amount_due_eur=due
            )

    async def redeem_voucher(
        self,
        code: Any,
        client_id: str,
        now: Optional[datetime] = None
    ) -> VoucherRecord:
        """
        Validate a voucher and, if one-time, claim it for ``client_id``.

        The claim is conditional on the code still being unclaimed, so two
        concurrent redemptions cannot both succeed.

        Raises:
            NotFound: If no voucher has this code
            ValidationError: If the voucher is used up, expired or just claimed
        """
        now = as_utc(now) or utcnow()

        with tracer.start_as_current_span("redeem_voucher") as span:
            voucher = await self.validate_voucher(code, client_id, now)
            span.set_attribute("code", voucher.code)

            if voucher.is_one_time:
                with self._surface_store_errors("redeem_voucher"):
                    rows = await self.store.update_where(
                        VOUCHERS,
                        {"id": voucher.id, "used_by_client_id": is_null()},
                        {"used_by_client_id": client_id, "used_at": now}
                    )
                if not rows:
                    raise ValidationError(
                        "This voucher has already been used", field="code", value=voucher.code
                    )
                voucher = voucher_from_row(rows[0])

            log_business_event(
                "setup_fee_voucher_redeemed",
                code=voucher.code,
                client_id=client_id,
                amount_eur=str(voucher.amount_eur)
            )
            return voucher

    # ==== PLAN PRICES ==== #

    async def update_plan_rate(
        self,
        plan_id: str,
        operations_rate_eur: Any,
        promotional_price_eur: Any = UNSET,
        now: Optional[datetime] = None
    ) -> PlanRecord:
        """
        Update a plan's monthly price and promotion.

        Args:
            plan_id: Plan identifier
            operations_rate_eur: Monthly operations price, >= 0
            promotional_price_eur: Omit to leave unchanged; None or "" clears
                the promotion; otherwise a price >= 0
            now: Timestamp for ``updated_at``

        Returns:
            PlanRecord: Updated plan

        Raises:
            ValidationError: If a price is missing, non-numeric or negative
            NotFound: If the plan does not exist
        """
        rate = parse_amount(operations_rate_eur, "operations_rate_eur")
        patch: Dict[str, Any] = {
            "operations_rate_eur": rate,
            "updated_at": as_utc(now) or utcnow(),
        }

        promotion = "unchanged"
        if promotional_price_eur is not UNSET:
            if promotional_price_eur is None or (
                isinstance(promotional_price_eur, str) and not promotional_price_eur.strip()
            ):
                patch["promotional_price_eur"] = None
                promotion = "cleared"
            else:
                patch["promotional_price_eur"] = parse_amount(
                    promotional_price_eur, "promotional_price_eur"
                )
                promotion = "set"

        with tracer.start_as_current_span("update_plan_rate") as span:
            span.set_attribute("plan_id", plan_id)
            span.set_attribute("operations_rate_eur", str(rate))
            span.set_attribute("promotion", promotion)

            with self._surface_store_errors("update_plan_rate"):
                rows = await self.store.update_where(PLANS, {"id": plan_id}, patch)

            if not rows:
                raise NotFound(f"Plan {plan_id} not found", {"plan_id": plan_id})

            plan_rate_updates_total.labels(promotion=promotion).inc()
            log_business_event(
                "plan_rate_updated",
                plan_id=plan_id,
                operations_rate_eur=str(rate),
                promotion=promotion
            )
            return PlanRecord.model_validate(rows[0])

    async def get_pricing_catalog(self, now: Optional[datetime] = None) -> PricingCatalog:
        """
        Public price list: plans by ascending monthly price and the setup fee.

        Negotiated plans (``Individual``) are left out.
        """
        now = as_utc(now) or utcnow()
        hidden = get_hidden_plan_names()

        with tracer.start_as_current_span("get_pricing_catalog") as span:
            predicate: Dict[str, Any] = {}
            if len(hidden) == 1:
                predicate["name"] = ne(hidden[0])

            with self._surface_store_errors("get_pricing_catalog"):
                rows = await self.store.select_where(PLANS, predicate, order_by="operations_rate_eur")

            plans = []
            for row in rows:
                if row["name"] in hidden:
                    continue
                plan = PlanRecord.model_validate(row)
                rate = quantize_money(plan.operations_rate_eur)
                promo = plan.promotional_price_eur
                effective = quantize_money(promo) if promo is not None else rate
                plans.append(PricedPlan(
                    **plan.model_dump(exclude={"created_at", "updated_at"}),
                    effective_monthly_rate_eur=effective,
                    is_promotional=effective < rate
                ))

            span.set_attribute("plans", len(plans))
            return PricingCatalog(
                plans=plans,
                setup_fee=await self.quote_setup_fee(now),
                generated_at=now
            )

    # ==== CHARGE MUTATIONS ==== #

    async def recalculate_over_space(
        self,
        client_id: str,
        month: Optional[int] = None,
        year: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> ChargeRecord:
        """
        Recompute the over-space charge of a period from current occupancy.

        The allowance is the first configured of warehouse capacity limit,
        client limit and plan limit, extended by over-space paid in other
        periods within the validity window. The over-space amount is set
        absolutely, so repeating the call with unchanged occupancy changes
        nothing. An increase is recorded as paid volume (increase / rate).

        Raises:
            NotFound: If the client does not exist
            PeriodClosed: If the period is closed
            InfrastructuralFailure: If the store fails
        """
        now = as_utc(now) or utcnow()
        month, year = resolve_period(month, year, now)

        with tracer.start_as_current_span("recalculate_over_space") as span:
            span.set_attribute("client_id", client_id)
            span.set_attribute("month", month)
            span.set_attribute("year", year)

            with self._surface_store_errors("recalculate_over_space"):
                try:
                    client = await self.store.select_one(CLIENTS, {"id": client_id})
                except NoMatchingRow as e:
                    raise NotFound(f"Client {client_id} not found", {"client_id": client_id}) from e

                plan: Dict[str, Any] = {}
                if client.get("plan_id"):
                    plan_rows = await self.store.select_where(PLANS, {"id": client["plan_id"]}, limit=1)
                    plan = plan_rows[0] if plan_rows else {}

                capacity_rows = await self.store.select_where(CAPACITIES, {"client_id": client_id}, limit=1)
                capacity = capacity_rows[0] if capacity_rows else {}

                paid_rows = await self.store.select_where(CHARGES, {
                    "client_id": client_id,
                    "over_space_charged_at": gte(
                        now - timedelta(days=settings.PAID_OVER_SPACE_VALIDITY_DAYS)
                    ),
                    "over_space_paid_cbm": gt(0),
                })

            active_paid = sum(
                (
                    to_decimal(row.get("over_space_paid_cbm"))
                    for row in paid_rows
                    if (row.get("month"), row.get("year")) != (month, year)
                ),
                Decimal("0")
            )
            base_limit = _first_positive(
                capacity.get("limit_cbm"), client.get("limit_cbm"), plan.get("space_limit_cbm")
            )
            used = _first_positive(capacity.get("used_cbm"), client.get("used_cbm"))
            rate = _first_positive(
                plan.get("over_space_rate_eur"),
                client.get("individual_over_space_rate_eur"),
                settings.DEFAULT_OVER_SPACE_RATE_EUR
            )

            charge = calculate_over_space_charge(used, base_limit + active_paid, rate)
            span.set_attribute("over_space_amount_eur", str(charge.amount_eur))

            def apply(existing: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
                previous = quantize_money((existing or {}).get("over_space_amount_eur"))
                paid = to_decimal((existing or {}).get("over_space_paid_cbm"))
                charged_at = (existing or {}).get("over_space_charged_at")

                if existing is not None and previous == charge.amount_eur:
                    return None

                increase = charge.amount_eur - previous
                if increase > 0 and charge.rate_eur > 0:
                    paid += increase / charge.rate_eur
                    charged_at = charged_at or now

                return {
                    "over_space_amount_eur": charge.amount_eur,
                    "over_space_paid_cbm": quantize_volume(paid),
                    "over_space_charged_at": charged_at,
                }

            return await self._mutate_charges(
                client_id, month, year, apply, "recalculate_over_space", now
            )

    async def add_additional_service_charge(
        self,
        client_id: str,
        amount_eur: Any,
        month: Optional[int] = None,
        year: Optional[int] = None,
        reference: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> ChargeRecord:
        """
        Add an extra service (local collection, extra delivery) to a period.

        Concurrent calls never lose increments. When ``reference`` is given,
        a second call with the same reference is a no-op.

        Raises:
            ValidationError: If the amount is invalid
            PeriodClosed: If the period is closed
            InfrastructuralFailure: If the store fails
        """
        if not client_id:
            raise ValidationError("client_id is required", field="client_id")
        amount = parse_amount(amount_eur, "amount_eur")
        now = as_utc(now) or utcnow()
        month, year = resolve_period(month, year, now)

        def apply(existing: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
            refs = list((existing or {}).get("applied_charge_refs") or [])
            if reference and reference in refs:
                logger.info(
                    "Service charge already applied",
                    client_id=client_id,
                    reference=reference
                )
                return None

            additional = quantize_money((existing or {}).get("additional_services_amount_eur")) + amount
            patch: Dict[str, Any] = {"additional_services_amount_eur": additional}
            if reference:
                patch["applied_charge_refs"] = refs + [reference]
            return patch

        with tracer.start_as_current_span("add_additional_service_charge") as span:
            span.set_attribute("client_id", client_id)
            span.set_attribute("amount_eur", str(amount))
            if reference:
                span.set_attribute("reference", reference)

            return await self._mutate_charges(
                client_id, month, year, apply, "add_additional_service_charge", now
            )

    async def close_period(
        self,
        client_id: str,
        month: int,
        year: int,
        now: Optional[datetime] = None
    ) -> ChargeRecord:
        """
        Close a client's charge period.

        A period without charges is stored as a closed zero row so later
        mutations are rejected too. Closing twice keeps the first timestamp.
        """
        now = as_utc(now) or utcnow()
        month, year = resolve_period(month, year, now)

        def apply(existing: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
            if existing is not None and existing.get("closed_at") is not None:
                return None
            return {"closed_at": now}

        with tracer.start_as_current_span("close_period") as span:
            span.set_attribute("client_id", client_id)
            span.set_attribute("month", month)
            span.set_attribute("year", year)

            record = await self._mutate_charges(
                client_id, month, year, apply, "close_period", now, allow_closed=True
            )
            log_business_event(
                "charge_period_closed",
                client_id=client_id,
                month=month,
                year=year,
                total_amount_eur=str(record.total_amount_eur)
            )
            return record

    async def _mutate_charges(
        self,
        client_id: str,
        month: int,
        year: int,
        apply: Callable[[Optional[Dict[str, Any]]], Optional[Dict[str, Any]]],
        operation: str,
        now: datetime,
        allow_closed: bool = False
    ) -> ChargeRecord:
        try:
            with self._surface_store_errors(operation):
                record = await retry_async_operation(
                    self._mutate_once,
                    self._retry_policy,
                    operation,
                    client_id,
                    month,
                    year,
                    apply,
                    operation,
                    now,
                    allow_closed
                )
        except WriteConflict as e:
            logger.error(
                "Charge row kept changing, giving up",
                client_id=client_id,
                month=month,
                year=year,
                operation=operation
            )
            raise InfrastructuralFailure(
                f"Concurrent updates prevented {operation}",
                {"client_id": client_id, "month": month, "year": year}
            ) from e

        charge_mutations_total.labels(operation=operation).inc()
        return record

    async def _mutate_once(
        self,
        client_id: str,
        month: int,
        year: int,
        apply: Callable[[Optional[Dict[str, Any]]], Optional[Dict[str, Any]]],
        operation: str,
        now: datetime,
        allow_closed: bool
    ) -> ChargeRecord:
        """One read-modify-write round, raising WriteConflict if the row moved."""
        key = {"client_id": client_id, "month": month, "year": year}
        rows = await self.store.select_where(CHARGES, key, limit=1)
        existing = rows[0] if rows else None

        if (
            existing is not None
            and existing.get("closed_at") is not None
            and self.lock_closed_periods
            and not allow_closed
        ):
            raise PeriodClosed(
                f"Charges for {month:02d}/{year} are closed",
                {**key, "closed_at": as_utc(existing["closed_at"]).isoformat()}
            )

        patch = apply(existing)
        if patch is None:
            if existing is None:
                return ChargeRecord(**key, persisted=False)
            return charge_from_row(existing)

        merged = {**(existing or {}), **patch}
        over_space = quantize_money(merged.get("over_space_amount_eur"))
        additional = quantize_money(merged.get("additional_services_amount_eur"))
        patch["over_space_amount_eur"] = over_space
        patch["additional_services_amount_eur"] = additional
        patch["total_amount_eur"] = over_space + additional
        patch["updated_at"] = now

        if existing is None:
            row = {
                **key,
                "over_space_paid_cbm": Decimal("0.000"),
                "over_space_charged_at": None,
                "applied_charge_refs": [],
                "closed_at": None,
                "version": 1,
                "created_at": now,
                **patch,
            }
            try:
                created = await self.store.insert(CHARGES, row)
            except DuplicateRow as e:
                charge_write_conflicts_total.labels(operation=operation).inc()
                raise WriteConflict(f"Charge row {key} created concurrently") from e
            return charge_from_row(created)

        version = existing.get("version") or 1
        updated = await self.store.update_where(
            CHARGES,
            {"id": existing["id"], "version": version},
            {**patch, "version": version + 1}
        )
        if not updated:
            charge_write_conflicts_total.labels(operation=operation).inc()
            raise WriteConflict(f"Charge row {key} changed since version {version}")

        return charge_from_row(updated[0])


# ==== GLOBAL SERVICE INSTANCE ==== #


_billing_resolver: Optional[BillingResolver] = None


def get_billing_resolver() -> BillingResolver:
    """
    Get global billing resolver instance.

    Returns:
        BillingResolver: Resolver bound to the global record store
    """
    global _billing_resolver
    if _billing_resolver is None:
        _billing_resolver = BillingResolver()
    return _billing_resolver


async def get_monthly_charges(
    client_id: str,
    month: Optional[int] = None,
    year: Optional[int] = None
) -> ChargeRecord:
    """Period charge lookup on the global resolver."""
    return await get_billing_resolver().get_monthly_charges(client_id, month, year)


async def update_plan_rate(
    plan_id: str,
    operations_rate_eur: Any,
    promotional_price_eur: Any = UNSET
) -> PlanRecord:
    """Plan price update on the global resolver."""
    return await get_billing_resolver().update_plan_rate(
        plan_id, operations_rate_eur, promotional_price_eur
    )
