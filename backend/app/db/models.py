from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    text,
    true,
)

from .core import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TripBookingRecord(Base):
    __tablename__ = "trip_bookings"

    id = Column(String(36), primary_key=True, default=_uuid)
    trip_id = Column(String(64), nullable=True, index=True)
    trip_slug = Column(String(128), nullable=True)
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    trip_date = Column(Date, nullable=True)
    preferred_trip_date = Column(Date, nullable=True)
    selected_trip_date = Column(Date, nullable=True)
    arrival_date = Column(Date, nullable=True)
    departure_date = Column(Date, nullable=True)
    num_adults = Column(Integer, nullable=True)
    num_children = Column(Integer, nullable=True)
    num_hours = Column(Numeric(8, 2), nullable=True)
    num_days = Column(Integer, nullable=True)
    total_price = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(8), nullable=True)
    lang = Column(String(8), nullable=True)
    deposit_paid_at = Column(DateTime(timezone=True), nullable=True)
    deposit_amount = Column(Numeric(12, 2), nullable=True)
    deposit_currency = Column(String(8), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class FulfillmentRecord(Base):
    __tablename__ = "partner_service_fulfillments"

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_id = Column(String(36), nullable=True, index=True)
    partner_id = Column(String(36), nullable=True, index=True)
    resource_type = Column(String(32), nullable=False)
    resource_id = Column(String(64), nullable=True)
    status = Column(
        String(32), nullable=False, default="awaiting_payment", server_default=text("'awaiting_payment'")
    )
    details = Column(JSON, nullable=False, default=dict, server_default=text("'{}'"))
    reference = Column(String(64), nullable=True)
    summary = Column(Text, nullable=True)
    total_price = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(8), nullable=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    contact_revealed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class PartnerMemberRecord(Base):
    __tablename__ = "partner_users"
    __table_args__ = (UniqueConstraint("partner_id", "user_id", name="uq_partner_user"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    partner_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(128), nullable=False, index=True)


class UserProfileRecord(Base):
    __tablename__ = "profiles"

    id = Column(String(128), primary_key=True)
    is_admin = Column(Boolean, nullable=False, default=False, server_default=false())


class DepositRuleRecord(Base):
    __tablename__ = "service_deposit_rules"

    id = Column(String(36), primary_key=True, default=_uuid)
    resource_type = Column(String(32), nullable=False, unique=True)
    mode = Column(String(32), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(8), nullable=True)
    include_children = Column(Boolean, nullable=False, default=False, server_default=false())
    enabled = Column(Boolean, nullable=False, default=True, server_default=true())


class DepositOverrideRecord(Base):
    __tablename__ = "service_deposit_overrides"
    __table_args__ = (
        UniqueConstraint("resource_type", "resource_id", name="uq_deposit_override_resource"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    resource_type = Column(String(32), nullable=False)
    resource_id = Column(String(64), nullable=False)
    mode = Column(String(32), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(8), nullable=True)
    include_children = Column(Boolean, nullable=False, default=False, server_default=false())
    enabled = Column(Boolean, nullable=False, default=True, server_default=true())


class SelectionRequestRecord(Base):
    __tablename__ = "trip_date_selection_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_id = Column(String(36), nullable=False, index=True)
    fulfillment_id = Column(String(36), nullable=False, unique=True)
    partner_id = Column(String(36), nullable=True)
    proposed_dates = Column(JSON, nullable=False, default=list, server_default=text("'[]'"))
    preferred_date = Column(Date, nullable=True)
    stay_from = Column(Date, nullable=True)
    stay_to = Column(Date, nullable=True)
    selected_date = Column(Date, nullable=True)
    status = Column(
        String(32), nullable=False, default="sent_to_customer", server_default=text("'sent_to_customer'")
    )
    selection_token_hash = Column(String(64), nullable=False, unique=True)
    selection_token_expires_at = Column(DateTime(timezone=True), nullable=False)
    selected_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DepositRequestRecord(Base):
    __tablename__ = "service_deposit_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    fulfillment_id = Column(String(36), nullable=False, unique=True)
    partner_id = Column(String(36), nullable=True)
    resource_type = Column(String(32), nullable=False)
    booking_id = Column(String(36), nullable=False, index=True)
    resource_id = Column(String(64), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False)
    status = Column(String(16), nullable=False, default="pending", server_default=text("'pending'"))
    checkout_session_id = Column(String(255), nullable=True)
    checkout_url = Column(Text, nullable=True)
    provider_customer_id = Column(String(255), nullable=True)
    payment_intent_id = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    fulfillment_reference = Column(String(64), nullable=True)
    fulfillment_summary = Column(Text, nullable=True)
    lang = Column(String(8), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class NotificationOutboxRecord(Base):
    __tablename__ = "notification_outbox"

    id = Column(String(36), primary_key=True, default=_uuid)
    category = Column(String(32), nullable=False)
    event = Column(String(64), nullable=False, index=True)
    record_id = Column(String(36), nullable=True)
    table_name = Column(String(64), nullable=True)
    payload = Column(JSON, nullable=False, default=dict, server_default=text("'{}'"))
    dedupe_key = Column(String(255), nullable=False, unique=True)
    status = Column(String(16), nullable=False, default="pending", server_default=text("'pending'"))
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
