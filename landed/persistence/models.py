from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON


def _json_type():
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class CurrencyRateModel(Base):
    __tablename__ = "currency_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate_from_usd: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False, default="manual")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaxFeeProfileModel(Base):
    __tablename__ = "tax_fee_profiles"
    __table_args__ = (
        UniqueConstraint("country", "version", name="uq_tax_fee_profile_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    country: Mapped[str] = mapped_column(String(2), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    values_json: Mapped[dict] = mapped_column(_json_type(), nullable=False)
    values_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ShippingRouteModel(Base):
    __tablename__ = "shipping_routes"
    __table_args__ = (
        UniqueConstraint("origin_country", "destination_country", name="uq_shipping_route_lane"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    origin_country: Mapped[str] = mapped_column(String(2), nullable=False)
    destination_country: Mapped[str] = mapped_column(String(2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    base_shipping_cost: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    cost_per_kg: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    surcharge: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    origin_sales_tax_percent: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False, default=Decimal("0"))
    weight_tiers: Mapped[list] = mapped_column(_json_type(), nullable=False, default=list)
    customs_tiers: Mapped[list] = mapped_column(_json_type(), nullable=False, default=list)
    exchange_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 8), nullable=True)
    rate_currency_to: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class QuoteModel(Base):
    __tablename__ = "quotes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    origin_country: Mapped[str] = mapped_column(String(2), nullable=False)
    destination_country: Mapped[str] = mapped_column(String(2), nullable=False)
    origin_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    route_id: Mapped[Optional[int]] = mapped_column(ForeignKey("shipping_routes.id"), nullable=True)
    profile_id: Mapped[int] = mapped_column(ForeignKey("tax_fee_profiles.id"), nullable=False)
    profile_snapshot: Mapped[dict] = mapped_column(_json_type(), nullable=False)
    profile_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    rate_snapshot: Mapped[dict] = mapped_column(_json_type(), nullable=False)
    rate_locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pricing_request: Mapped[dict] = mapped_column(_json_type(), nullable=False)
    current_revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    amount_paid_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="unpaid")
    shipping_address: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    customer_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class QuoteRevisionModel(Base):
    __tablename__ = "quote_revisions"
    __table_args__ = (
        UniqueConstraint("quote_id", "revision", name="uq_quote_revision"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    quote_id: Mapped[str] = mapped_column(ForeignKey("quotes.id"), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)
    breakdown: Mapped[dict] = mapped_column(_json_type(), nullable=False)
    breakdown_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PaymentEventModel(Base):
    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint(
            "gateway_code",
            "external_reference",
            "status",
            name="uq_payment_event_idempotency",
        ),
    )

    seq_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, default=_uuid)
    quote_id: Mapped[str] = mapped_column(ForeignKey("quotes.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    gateway_code: Mapped[str] = mapped_column(String(64), nullable=False)
    external_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    refund_request_id: Mapped[Optional[str]] = mapped_column(ForeignKey("refund_requests.id"), nullable=True)
    actor: Mapped[str] = mapped_column(String(160), nullable=False)
    meta: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)


class RefundRequestModel(Base):
    __tablename__ = "refund_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    quote_id: Mapped[str] = mapped_column(ForeignKey("quotes.id"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    requested_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    approved_minor: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    refund_type: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="requested")
    requested_by: Mapped[str] = mapped_column(String(160), nullable=False)
    approved_by: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class TransitionLogModel(Base):
    __tablename__ = "status_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    quote_id: Mapped[str] = mapped_column(ForeignKey("quotes.id"), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    actor: Mapped[str] = mapped_column(String(160), nullable=False)
    meta: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AddressHistoryModel(Base):
    __tablename__ = "quote_address_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    quote_id: Mapped[str] = mapped_column(ForeignKey("quotes.id"), nullable=False)
    old_address: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    new_address: Mapped[dict] = mapped_column(_json_type(), nullable=False)
    change_type: Mapped[str] = mapped_column(String(16), nullable=False, default="update")
    change_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_by: Mapped[str] = mapped_column(String(160), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

Index("ix_currency_rates_currency_effective", CurrencyRateModel.currency, CurrencyRateModel.effective_from)
Index("ix_tax_fee_profiles_country_effective", TaxFeeProfileModel.country, TaxFeeProfileModel.effective_from)
Index("ix_quotes_status_expires_at", QuoteModel.status, QuoteModel.expires_at)
Index("ix_payment_events_quote_id", PaymentEventModel.quote_id)
Index("ix_payment_events_refund_request_id", PaymentEventModel.refund_request_id)
Index("ix_refund_requests_quote_id", RefundRequestModel.quote_id)
Index("ix_status_transitions_quote_id", TransitionLogModel.quote_id)
Index("ix_quote_address_history_quote_id", AddressHistoryModel.quote_id)
