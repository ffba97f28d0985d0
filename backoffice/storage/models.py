"""SQLAlchemy models for the back office numbering and billing core."""

import datetime as dt
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import (
    String, Integer, JSON, Boolean, ForeignKey, UniqueConstraint,
    DateTime, Numeric, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from backoffice.storage.db import Base


def _uuid() -> str:
    return str(uuid4())


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# Money is stored as NUMERIC(12,2) EUR, volumes as NUMERIC(10,3) m³
Money = Numeric(12, 2)
Volume = Numeric(10, 3)


class Plan(Base):
    """Subscription plan with its monthly operations price."""

    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    deliveries_per_month: Mapped[int] = mapped_column(Integer, nullable=False)
    space_limit_cbm: Mapped[Decimal] = mapped_column(Volume, nullable=False)
    over_space_rate_eur: Mapped[Decimal] = mapped_column(Money, nullable=False)
    operations_rate_eur: Mapped[Decimal] = mapped_column(Money, nullable=False)
    promotional_price_eur: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class SetupFee(Base):
    """One-time onboarding fee; the most recently created row is authoritative."""

    __tablename__ = "setup_fees"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    suggested_amount_eur: Mapped[Decimal] = mapped_column(Money, nullable=False)
    current_amount_eur: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    valid_until: Mapped[Optional[dt.datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class Client(Base):
    """Client account with its plan and storage allowance."""

    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    country: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    plan_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("plans.id"), nullable=True, index=True
    )
    used_cbm: Mapped[Decimal] = mapped_column(Volume, default=Decimal("0"), nullable=False)
    limit_cbm: Mapped[Optional[Decimal]] = mapped_column(Volume, nullable=True)
    individual_over_space_rate_eur: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class Voucher(Base):
    """Setup fee discount code; one-time codes are claimed by a single client."""

    __tablename__ = "setup_fee_vouchers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    amount_eur: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_one_time: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    used_by_client_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("clients.id"), nullable=True
    )
    used_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class WarehouseCapacity(Base):
    """Measured warehouse occupancy for a client."""

    __tablename__ = "warehouse_capacities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("clients.id"), unique=True, nullable=False
    )
    used_cbm: Mapped[Decimal] = mapped_column(Volume, default=Decimal("0"), nullable=False)
    limit_cbm: Mapped[Optional[Decimal]] = mapped_column(Volume, nullable=True)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class MonthlyAdditionalCharges(Base):
    """Per-client, per-month over-space and extra service charges."""

    __tablename__ = "monthly_additional_charges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("clients.id"), nullable=False
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    over_space_amount_eur: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    additional_services_amount_eur: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    total_amount_eur: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    over_space_paid_cbm: Mapped[Decimal] = mapped_column(Volume, default=Decimal("0"), nullable=False)
    over_space_charged_at: Mapped[Optional[dt.datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    applied_charge_refs: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    closed_at: Mapped[Optional[dt.datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("client_id", "month", "year", name="uq_monthly_charges_period"),
        Index("ix_monthly_charges_period", "year", "month"),
    )


class SequenceCounter(Base):
    """Numeric high-water mark of an identifier series for one period."""

    __tablename__ = "sequence_counters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    series_tag: Mapped[str] = mapped_column(String(16), nullable=False)
    period_key: Mapped[str] = mapped_column(String(8), nullable=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("series_tag", "period_key", name="uq_sequence_series_period"),
    )


class DeliveryExpected(Base):
    """Announced inbound delivery numbered from the DEL series."""

    __tablename__ = "delivery_expected"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("clients.id"), nullable=False, index=True
    )
    delivery_number: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class WarehouseOrder(Base):
    """Warehouse order carrying an INT internal tracking number."""

    __tablename__ = "warehouse_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("clients.id"), nullable=False, index=True
    )
    internal_tracking_number: Mapped[Optional[str]] = mapped_column(
        String(32), unique=True, nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class ShipmentOrder(Base):
    """Outbound shipment numbered from the per-country packing series."""

    __tablename__ = "shipment_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("clients.id"), nullable=False, index=True
    )
    country: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    packing_order_number: Mapped[Optional[str]] = mapped_column(
        String(32), unique=True, nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class ProformaInvoice(Base):
    """Month-end proforma issued from a client's additional charges."""

    __tablename__ = "proforma_invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("clients.id"), nullable=False
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_eur: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="PENDING", nullable=False)
    due_date: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    invoice_number: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("client_id", "month", "year", name="uq_proforma_period"),
    )


# Table name -> model, the vocabulary of the record store
TABLE_MODELS = {
    model.__tablename__: model
    for model in (
        Plan,
        SetupFee,
        Client,
        Voucher,
        WarehouseCapacity,
        MonthlyAdditionalCharges,
        SequenceCounter,
        DeliveryExpected,
        WarehouseOrder,
        ShipmentOrder,
        ProformaInvoice,
    )
}
