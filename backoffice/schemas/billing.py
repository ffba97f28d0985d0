"""Pydantic schemas for plans, fees, monthly charges and proformas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PromotionState(str, Enum):
    """Lifecycle of a setup fee promotion, derived from the clock on every read."""
    SUGGESTED_ONLY = "SUGGESTED_ONLY"
    PROMOTION_PENDING = "PROMOTION_PENDING"
    PROMOTION_EXPIRED = "PROMOTION_EXPIRED"


class ProformaStatus(str, Enum):
    """Proforma invoice status enumeration."""
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class PlanRecord(BaseModel):
    """Subscription plan as stored."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    deliveries_per_month: int
    space_limit_cbm: Decimal
    over_space_rate_eur: Decimal
    operations_rate_eur: Decimal
    promotional_price_eur: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SetupFeeRecord(BaseModel):
    """Setup fee row; ``persisted`` is False for the configured default."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    suggested_amount_eur: Decimal
    current_amount_eur: Optional[Decimal] = None
    valid_until: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    persisted: bool = True


class ChargeRecord(BaseModel):
    """A client's additional charges for one calendar month.

    ``total_amount_eur`` always equals over-space plus additional services.
    A record with ``persisted=False`` is the zero-valued answer for a period
    that has no stored row yet.
    """

    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    client_id: str
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=9999)
    over_space_amount_eur: Decimal = Decimal("0.00")
    additional_services_amount_eur: Decimal = Decimal("0.00")
    total_amount_eur: Decimal = Decimal("0.00")
    over_space_paid_cbm: Decimal = Decimal("0.000")
    over_space_charged_at: Optional[datetime] = None
    version: int = 0
    applied_charge_refs: List[str] = Field(default_factory=list)
    closed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    persisted: bool = True

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None


class EffectiveFee(BaseModel):
    """Price a client pays right now for a promotable fee."""

    amount_eur: Decimal
    is_promotional: bool
    suggested_amount_eur: Decimal
    valid_until: Optional[datetime] = None
    state: PromotionState


class VoucherRecord(BaseModel):
    """Setup fee voucher row."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    code: str
    amount_eur: Decimal
    is_one_time: bool = True
    used_by_client_id: Optional[str] = None
    used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class VoucherQuote(BaseModel):
    """Setup fee after a voucher discount; never below zero."""

    code: str
    voucher_amount_eur: Decimal
    fee: EffectiveFee
    amount_due_eur: Decimal


class PricedPlan(BaseModel):
    """Plan entry of the public price list."""

    id: str
    name: str
    deliveries_per_month: int
    space_limit_cbm: Decimal
    over_space_rate_eur: Decimal
    operations_rate_eur: Decimal
    promotional_price_eur: Optional[Decimal] = None
    effective_monthly_rate_eur: Decimal
    is_promotional: bool


class PricingCatalog(BaseModel):
    """Public price quote: plans plus the current setup fee."""

    plans: List[PricedPlan]
    setup_fee: EffectiveFee
    generated_at: datetime


class OverSpaceCharge(BaseModel):
    """Over-space tier evaluation for a used/allowed volume pair."""

    used_cbm: Decimal
    limit_cbm: Decimal
    threshold_cbm: Decimal
    excess_cbm: Decimal
    rate_eur: Decimal
    amount_eur: Decimal
    usage_percent: Optional[Decimal] = None
    warning: bool = False


class ProformaRecord(BaseModel):
    """Proforma invoice as stored."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    month: int
    year: int
    amount_eur: Decimal
    status: ProformaStatus
    due_date: datetime
    invoice_number: Optional[str] = None


class ProformaFailure(BaseModel):
    """Per-client failure collected during a proforma batch."""

    client_id: str
    error: str


class ProformaBatchResult(BaseModel):
    """Outcome of a month-end proforma run."""

    month: int
    year: int
    created: int = 0
    updated: int = 0
    skipped: int = 0
    closed_periods: int = 0
    proformas: List[ProformaRecord] = Field(default_factory=list)
    errors: List[ProformaFailure] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.updated
