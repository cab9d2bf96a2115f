from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from .db.core import ensure_db_initialized, get_session
from .db.models import (
    DepositOverrideRecord,
    DepositRequestRecord,
    DepositRuleRecord,
    FulfillmentRecord,
    NotificationOutboxRecord,
    PartnerMemberRecord,
    SelectionRequestRecord,
    TripBookingRecord,
    UserProfileRecord,
)
from .logging_config import get_logger

logger = get_logger(__name__)

TRIP_RESOURCE_TYPES = ("trips", "trip")
SELECTABLE_STATUSES = ("sent_to_customer", "pending_admin", "selected")


def _iso(dt: datetime) -> str:
    return _ensure_datetime(dt).isoformat()


def _ensure_datetime(value: datetime | str) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _columns(model: Any) -> list[Any]:
    return list(model.__table__.columns)


def _row_to_dict(row: Any) -> dict[str, Any]:
    payload = dict(row)
    for key, value in payload.items():
        if isinstance(value, datetime):
            payload[key] = _ensure_datetime(value)
    return payload


def _record_to_dict(record: Any) -> dict[str, Any]:
    return _row_to_dict({col.name: getattr(record, col.name) for col in _columns(type(record))})


def _dialect_insert(session: AsyncSession, model: Any):
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(model)
    if name == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"Upserts are not supported on dialect '{name}'")


class Database:
    """
    Async access to every table the date selection flow reads or writes.

    Rows leave this class as plain dicts so callers never hold a live session. Every
    state transition the flow relies on is a single conditional statement here; there
    is no read-then-write pair guarding a transition.
    """

    def __init__(self) -> None:
        ensure_db_initialized()

    # ---------- bookings & fulfillments ----------

    async def get_booking(self, booking_id: str) -> dict[str, Any] | None:
        async with get_session() as session:
            record = await session.get(TripBookingRecord, str(booking_id))
            return _record_to_dict(record) if record else None

    async def update_booking(self, booking_id: str, **fields: Any) -> None:
        if not fields:
            return
        async with get_session() as session:
            await session.execute(
                update(TripBookingRecord)
                .where(TripBookingRecord.id == str(booking_id))
                .values(**fields)
            )
            await session.commit()

    async def mark_booking_deposit_paid(
        self, booking_id: str, *, paid_at: datetime, amount: Decimal, currency: str
    ) -> None:
        async with get_session() as session:
            await session.execute(
                update(TripBookingRecord)
                .where(
                    TripBookingRecord.id == str(booking_id),
                    TripBookingRecord.deposit_paid_at.is_(None),
                )
                .values(deposit_paid_at=paid_at, deposit_amount=amount, deposit_currency=currency)
            )
            await session.commit()

    async def get_fulfillment(self, fulfillment_id: str) -> dict[str, Any] | None:
        async with get_session() as session:
            record = await session.get(FulfillmentRecord, str(fulfillment_id))
            return _record_to_dict(record) if record else None

    async def find_trip_fulfillment_by_booking(self, booking_id: str) -> dict[str, Any] | None:
        async with get_session() as session:
            stmt = (
                select(FulfillmentRecord)
                .where(
                    FulfillmentRecord.booking_id == str(booking_id),
                    FulfillmentRecord.resource_type.in_(TRIP_RESOURCE_TYPES),
                )
                .order_by(FulfillmentRecord.created_at.desc())
                .limit(1)
            )
            record = (await session.execute(stmt)).scalars().first()
            return _record_to_dict(record) if record else None

    async def update_fulfillment(self, fulfillment_id: str, **fields: Any) -> None:
        async with get_session() as session:
            await session.execute(
                update(FulfillmentRecord)
                .where(FulfillmentRecord.id == str(fulfillment_id))
                .values(updated_at=datetime.now(UTC), **fields)
            )
            await session.commit()

    async def accept_fulfillment(
        self, fulfillment_id: str, *, now: datetime, from_statuses: Iterable[str] | None = None
    ) -> bool:
        """Flip to `accepted` and reveal contact details; returns False if the gate did not match."""
        stmt = update(FulfillmentRecord).where(FulfillmentRecord.id == str(fulfillment_id))
        if from_statuses is not None:
            stmt = stmt.where(FulfillmentRecord.status.in_(tuple(from_statuses)))
        stmt = stmt.values(status="accepted", contact_revealed_at=now, updated_at=now).returning(
            FulfillmentRecord.id
        )
        async with get_session() as session:
            changed = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            return changed is not None

    # ---------- identity ----------

    async def is_admin_profile(self, user_id: str) -> bool:
        async with get_session() as session:
            record = await session.get(UserProfileRecord, str(user_id))
            return bool(record and record.is_admin)

    async def is_partner_member(self, partner_id: str, user_id: str) -> bool:
        async with get_session() as session:
            stmt = select(PartnerMemberRecord.id).where(
                PartnerMemberRecord.partner_id == str(partner_id),
                PartnerMemberRecord.user_id == str(user_id),
            )
            return (await session.execute(stmt)).first() is not None

    # ---------- deposit rules ----------

    async def get_deposit_override(
        self, resource_type: str, resource_id: str
    ) -> dict[str, Any] | None:
        async with get_session() as session:
            stmt = select(DepositOverrideRecord).where(
                DepositOverrideRecord.resource_type == resource_type,
                DepositOverrideRecord.resource_id == str(resource_id),
            )
            record = (await session.execute(stmt)).scalar_one_or_none()
            return _record_to_dict(record) if record else None

    async def get_deposit_rule(self, resource_type: str) -> dict[str, Any] | None:
        async with get_session() as session:
            stmt = select(DepositRuleRecord).where(DepositRuleRecord.resource_type == resource_type)
            record = (await session.execute(stmt)).scalar_one_or_none()
            return _record_to_dict(record) if record else None

    # ---------- selection requests ----------

    async def upsert_selection_request(self, values: dict[str, Any]) -> dict[str, Any]:
        """Insert or replace the request for `values['fulfillment_id']`, invalidating older tokens."""
        async with get_session() as session:
            insert_stmt = _dialect_insert(session, SelectionRequestRecord).values(**values)
            replaced = {key: value for key, value in values.items() if key != "fulfillment_id"}
            stmt = insert_stmt.on_conflict_do_update(
                index_elements=[SelectionRequestRecord.fulfillment_id], set_=replaced
            ).returning(*_columns(SelectionRequestRecord))
            row = (await session.execute(stmt)).mappings().one()
            await session.commit()
            return _row_to_dict(row)

    async def get_selection_request_by_hash(self, token_hash: str) -> dict[str, Any] | None:
        async with get_session() as session:
            stmt = (
                select(SelectionRequestRecord)
                .where(SelectionRequestRecord.selection_token_hash == token_hash)
                .order_by(SelectionRequestRecord.created_at.desc())
                .limit(1)
            )
            record = (await session.execute(stmt)).scalars().first()
            return _record_to_dict(record) if record else None

    async def mark_selection_expired(self, request_id: str, *, now: datetime) -> None:
        async with get_session() as session:
            await session.execute(
                update(SelectionRequestRecord)
                .where(
                    SelectionRequestRecord.id == str(request_id),
                    SelectionRequestRecord.status != "selected",
                )
                .values(status="expired", updated_at=now)
            )
            await session.commit()

    async def transition_to_selected(
        self, request_id: str, *, token_hash: str, selected_date: date, now: datetime
    ) -> dict[str, Any] | None:
        """
        Compare-and-swap into `selected`.

        Returns the updated row, or None when the row was no longer in a selectable
        status, or no longer carried `token_hash` because a resend replaced it, at the
        moment the statement ran.
        """
        stmt = (
            update(SelectionRequestRecord)
            .where(
                SelectionRequestRecord.id == str(request_id),
                SelectionRequestRecord.selection_token_hash == token_hash,
                SelectionRequestRecord.status.in_(SELECTABLE_STATUSES),
            )
            .values(status="selected", selected_date=selected_date, selected_at=now, updated_at=now)
            .returning(*_columns(SelectionRequestRecord))
        )
        async with get_session() as session:
            row = (await session.execute(stmt)).mappings().first()
            await session.commit()
            return _row_to_dict(row) if row else None

    # ---------- deposit requests ----------

    async def get_deposit_request(self, fulfillment_id: str) -> dict[str, Any] | None:
        async with get_session() as session:
            stmt = select(DepositRequestRecord).where(
                DepositRequestRecord.fulfillment_id == str(fulfillment_id)
            )
            record = (await session.execute(stmt)).scalar_one_or_none()
            return _record_to_dict(record) if record else None

    async def upsert_pending_deposit_request(self, values: dict[str, Any]) -> dict[str, Any]:
        """Write a `pending` row for the fulfillment, clearing any stale provider session."""
        payload = {
            **values,
            "status": "pending",
            "paid_at": None,
            "payment_intent_id": None,
            "checkout_session_id": None,
            "checkout_url": None,
        }
        async with get_session() as session:
            insert_stmt = _dialect_insert(session, DepositRequestRecord).values(**payload)
            replaced = {key: value for key, value in payload.items() if key != "fulfillment_id"}
            replaced["updated_at"] = datetime.now(UTC)
            stmt = insert_stmt.on_conflict_do_update(
                index_elements=[DepositRequestRecord.fulfillment_id],
                set_=replaced,
                where=DepositRequestRecord.status != "paid",
            ).returning(*_columns(DepositRequestRecord))
            row = (await session.execute(stmt)).mappings().first()
            await session.commit()
        if row is None:
            # A concurrent payment landed between the caller's read and this write.
            current = await self.get_deposit_request(values["fulfillment_id"])
            if current is None:  # pragma: no cover - unique row vanished mid-flight
                raise RuntimeError("deposit request disappeared during upsert")
            return current
        return _row_to_dict(row)

    async def _update_deposit_fields(self, deposit_id: str, fields: dict[str, Any]) -> None:
        async with get_session() as session:
            await session.execute(
                update(DepositRequestRecord)
                .where(DepositRequestRecord.id == str(deposit_id))
                .values(updated_at=datetime.now(UTC), **fields)
            )
            await session.commit()

    async def attach_checkout_session(
        self,
        deposit_id: str,
        *,
        session_id: str,
        checkout_url: str,
        customer_id: str | None,
    ) -> None:
        fields: dict[str, Any] = {"checkout_session_id": session_id, "checkout_url": checkout_url}
        if not customer_id:
            await self._update_deposit_fields(deposit_id, fields)
            return
        try:
            await self._update_deposit_fields(
                deposit_id, {**fields, "provider_customer_id": customer_id}
            )
        except DBAPIError as exc:
            if "provider_customer_id" not in str(exc).lower():
                raise
            logger.warning(
                "deposit_customer_id_column_unavailable",
                deposit_request_id=deposit_id,
                error=str(exc.orig),
            )
            await self._update_deposit_fields(deposit_id, fields)

    async def mark_deposit_paid(
        self,
        deposit_id: str,
        *,
        now: datetime,
        session_id: str | None = None,
        payment_intent_id: str | None = None,
    ) -> bool:
        values: dict[str, Any] = {"status": "paid", "paid_at": now, "updated_at": now}
        if session_id:
            values["checkout_session_id"] = session_id
        if payment_intent_id:
            values["payment_intent_id"] = payment_intent_id
        stmt = (
            update(DepositRequestRecord)
            .where(DepositRequestRecord.id == str(deposit_id), DepositRequestRecord.status != "paid")
            .values(**values)
            .returning(DepositRequestRecord.id)
        )
        async with get_session() as session:
            changed = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            return changed is not None

    # ---------- notification outbox ----------

    async def insert_notification(self, values: dict[str, Any]) -> bool:
        """Insert unless `dedupe_key` already exists; True when a new row was written."""
        async with get_session() as session:
            stmt = (
                _dialect_insert(session, NotificationOutboxRecord)
                .values(**values)
                .on_conflict_do_nothing(index_elements=[NotificationOutboxRecord.dedupe_key])
                .returning(NotificationOutboxRecord.id)
            )
            inserted = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            return inserted is not None

    async def list_notifications(self, event: str | None = None) -> list[dict[str, Any]]:
        async with get_session() as session:
            stmt = select(NotificationOutboxRecord).order_by(NotificationOutboxRecord.created_at)
            if event:
                stmt = stmt.where(NotificationOutboxRecord.event == event)
            records = (await session.execute(stmt)).scalars().all()
            return [_record_to_dict(record) for record in records]

    # ---------- maintenance ----------

    async def add_records(self, *records: Any) -> None:
        """Persist externally-owned rows (bookings, fulfillments, rules); used by seeding and tests."""
        async with get_session() as session:
            session.add_all(records)
            await session.commit()

    def add_records_sync(self, *records: Any) -> None:
        """Synchronous helper for tests and scripts."""
        asyncio.run(self.add_records(*records))

    async def purge(self) -> None:
        models = (
            NotificationOutboxRecord,
            DepositRequestRecord,
            SelectionRequestRecord,
            DepositOverrideRecord,
            DepositRuleRecord,
            PartnerMemberRecord,
            UserProfileRecord,
            FulfillmentRecord,
            TripBookingRecord,
        )
        async with get_session() as session:
            for model in models:
                await session.execute(delete(model))
            await session.commit()


DB = Database()
