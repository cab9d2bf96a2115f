"""
Trip date selection: a partner proposes up to three dates, the customer picks one
through a tokenised link, and the pick opens the deposit checkout.

Every state change is a single conditional statement in the store, so concurrent
confirms race on the database and the loser re-reads the winner's outcome.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any, Literal
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict

from . import tokens
from .auth import require_admin, resolve_partner_access
from .checkout import CheckoutOutcome, checkout_outcome
from .errors import ConflictError, ExpiredTokenError, NotFoundError, ValidationError
from .logging_config import get_logger
from .metrics import date_selection_actions_total
from .notifications import enqueue_notification
from .settings import settings
from .storage import DB
from .validators import (
    first_iso,
    in_window,
    normalize_iso_date,
    normalize_lang,
    normalize_resource_type,
    read_localized_text,
    unique_iso_dates,
)

logger = get_logger(__name__)

MAX_OPTIONS = 3
CONFIRMABLE_STATUSES = {"sent_to_customer", "selected"}
TRIPS = "trips"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _details(fulfillment: Mapping[str, Any]) -> dict[str, Any]:
    details = fulfillment.get("details")
    return dict(details) if isinstance(details, Mapping) else {}


class SelectionMirror(BaseModel):
    """Projection of the selection state written into `fulfillment.details`."""

    model_config = ConfigDict(extra="forbid")

    trip_date_selection_status: Literal["options_sent_to_customer", "selected"]
    trip_date_selection_updated_at: datetime
    preferred_date: date | None = None
    arrival_date: date | None = None
    departure_date: date | None = None
    proposed_dates: list[date] | None = None
    partner_proposed_dates: list[date] | None = None
    trip_date_options_sent_at: datetime | None = None
    trip_date_options_expires_at: datetime | None = None
    trip_date: date | None = None
    selected_trip_date: date | None = None

    def merge_into(self, details: Mapping[str, Any]) -> dict[str, Any]:
        """Overlay the explicitly set fields onto `details`, leaving other keys intact."""
        return {**details, **self.model_dump(mode="json", exclude_unset=True)}


def normalize_trip_options(
    values: Any, start: date | None, end: date | None
) -> list[date]:
    options: list[date] = []
    for value in unique_iso_dates(values):
        if not in_window(value, start, end):
            raise ValidationError(f"Date {value.isoformat()} is outside customer stay dates")
        options.append(value)
        if len(options) > MAX_OPTIONS:
            raise ValidationError(f"Maximum {MAX_OPTIONS} date options is allowed")
    if not options:
        raise ValidationError("No valid proposed dates found")
    return options


def selection_url(raw_token: str, lang: str) -> str:
    base = settings.SELECTION_LINK_BASE_URL
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}{urlencode({'token': raw_token, 'lang': lang})}"


def _record(action: str, outcome: str) -> None:
    date_selection_actions_total.labels(action=action, outcome=outcome).inc()


# ---------- send_options ----------


async def _load_trip_fulfillment(
    fulfillment_id: str | None, booking_id: str | None
) -> dict[str, Any]:
    fid = str(fulfillment_id or "").strip()
    bid = str(booking_id or "").strip()
    if not fid and not bid:
        raise ValidationError("fulfillment_id or booking_id is required")
    if fid:
        fulfillment = await DB.get_fulfillment(fid)
        if fulfillment is None:
            raise NotFoundError("Fulfillment not found")
    else:
        fulfillment = await DB.find_trip_fulfillment_by_booking(bid)
        if fulfillment is None:
            raise NotFoundError("Trip fulfillment not found")
    if normalize_resource_type(fulfillment.get("resource_type")) != TRIPS:
        raise ValidationError("Fulfillment is not a trip fulfillment")
    return fulfillment


async def send_options(
    claims: dict[str, Any],
    *,
    fulfillment_id: str | None = None,
    booking_id: str | None = None,
    proposed_dates: list[Any] | None = None,
) -> dict[str, Any]:
    """Propose dates to the customer and issue a fresh selection link."""
    fulfillment = await _load_trip_fulfillment(fulfillment_id, booking_id)
    actor = await resolve_partner_access(claims, fulfillment.get("partner_id"))

    resolved_booking_id = str(fulfillment.get("booking_id") or booking_id or "").strip()
    if not resolved_booking_id:
        raise ValidationError("Missing booking_id on fulfillment")
    booking = await DB.get_booking(resolved_booking_id)
    if booking is None:
        raise NotFoundError("Trip booking not found")

    details = _details(fulfillment)
    stay_from = first_iso(
        booking.get("arrival_date"), details.get("arrival_date"), fulfillment.get("start_date")
    )
    stay_to = first_iso(
        booking.get("departure_date"),
        details.get("departure_date"),
        fulfillment.get("end_date"),
        stay_from,
    )
    if stay_from and stay_to and stay_from > stay_to:
        stay_from, stay_to = stay_to, stay_from
    preferred = first_iso(
        details.get("preferred_date"),
        booking.get("preferred_trip_date"),
        booking.get("trip_date"),
    )

    if proposed_dates:
        raw_options: Any = proposed_dates
    elif isinstance(details.get("partner_proposed_dates"), list):
        raw_options = details["partner_proposed_dates"]
    else:
        raw_options = details.get("proposed_dates") or []
    options = normalize_trip_options(raw_options, stay_from, stay_to)

    issued = tokens.issue()
    now = _utcnow()
    expires_at = now + timedelta(hours=settings.token_ttl_hours)

    request = await DB.upsert_selection_request(
        {
            "booking_id": resolved_booking_id,
            "fulfillment_id": fulfillment["id"],
            "partner_id": fulfillment.get("partner_id"),
            "proposed_dates": [value.isoformat() for value in options],
            "preferred_date": preferred,
            "stay_from": stay_from,
            "stay_to": stay_to,
            "selected_date": None,
            "selected_at": None,
            "status": "sent_to_customer",
            "selection_token_hash": issued.hash,
            "selection_token_expires_at": expires_at,
            "updated_at": now,
        }
    )

    mirror = SelectionMirror(
        trip_date_selection_status="options_sent_to_customer",
        trip_date_selection_updated_at=now,
        preferred_date=preferred,
        arrival_date=stay_from,
        departure_date=stay_to,
        proposed_dates=options,
        partner_proposed_dates=options,
        trip_date_options_sent_at=now,
        trip_date_options_expires_at=expires_at,
    )
    await DB.update_fulfillment(fulfillment["id"], details=mirror.merge_into(details))

    if booking.get("preferred_trip_date") is None and preferred is not None:
        await DB.update_booking(resolved_booking_id, preferred_trip_date=preferred)

    lang = normalize_lang(booking.get("lang"))
    await enqueue_notification(
        category=TRIPS,
        event="trip_date_options_ready",
        record_id=resolved_booking_id,
        table_name="trip_bookings",
        payload={
            "category": TRIPS,
            "event": "trip_date_options_ready",
            "record_id": resolved_booking_id,
            "table": "trip_bookings",
            "fulfillment_id": fulfillment["id"],
            "partner_id": fulfillment.get("partner_id"),
            "trip_date_selection_request_id": request["id"],
            "selection_url": selection_url(issued.raw, lang),
            "selection_token_expires_at": expires_at.isoformat(),
            "proposed_dates": [value.isoformat() for value in options],
            "preferred_date": _iso(preferred),
            "stay_from": _iso(stay_from),
            "stay_to": _iso(stay_to),
        },
        dedupe_key=f"trip_date_options_ready:{request['id']}:{tokens.hash_prefix(issued.hash)}",
    )

    _record("send_options", "sent")
    logger.info(
        "trip_date_options_sent",
        request_id=request["id"],
        fulfillment_id=fulfillment["id"],
        user_id=actor.user_id,
        options_count=len(options),
        token_hash=tokens.hash_prefix(issued.hash),
    )
    return {
        "booking_id": resolved_booking_id,
        "fulfillment_id": fulfillment["id"],
        "request_id": request["id"],
        "status": "sent_to_customer",
        "options_count": len(options),
        "expires_at": expires_at.isoformat(),
    }


# ---------- token-carrying actions ----------


async def _load_request_by_token(action: str, token: str | None) -> tuple[dict[str, Any], str]:
    raw = str(token or "").strip()
    if not raw:
        raise ValidationError("Missing token")
    token_hash = tokens.hash_token(raw)
    request = await DB.get_selection_request_by_hash(token_hash)
    if request is None:
        _record(action, "not_found")
        raise NotFoundError("Invalid or expired selection link")

    status = str(request.get("status") or "").strip().lower()
    expires_at = request.get("selection_token_expires_at")
    now = _utcnow()
    if status != "selected" and expires_at is not None and now > expires_at:
        await DB.mark_selection_expired(request["id"], now=now)
        _record(action, "expired")
        logger.info(
            "trip_date_link_expired",
            request_id=request["id"],
            token_hash=tokens.hash_prefix(token_hash),
        )
        raise ExpiredTokenError("This selection link has expired")
    return request, token_hash


def _is_locked(fulfillment: Mapping[str, Any] | None, deposit: Mapping[str, Any] | None) -> bool:
    deposit_status = str((deposit or {}).get("status") or "").strip().lower()
    if deposit_status == "paid":
        return True
    if not fulfillment:
        return False
    if fulfillment.get("contact_revealed_at"):
        return True
    fulfillment_status = str(fulfillment.get("status") or "").strip().lower()
    return deposit is None and fulfillment_status == "accepted"


def _trip_title(
    fulfillment: Mapping[str, Any] | None, booking: Mapping[str, Any] | None, lang: str
) -> str:
    if fulfillment:
        title = read_localized_text(fulfillment.get("summary"), lang) or read_localized_text(
            fulfillment.get("details"), lang
        )
        if title:
            return title
    slug = str((booking or {}).get("trip_slug") or "").strip()
    return slug or "Trip booking"


async def preview(token: str | None, lang: str | None = None) -> dict[str, Any]:
    """Read-only view of a selection request for whoever holds the link."""
    request, _ = await _load_request_by_token("preview", token)

    booking = await DB.get_booking(request["booking_id"]) or {}
    fulfillment = await DB.get_fulfillment(request["fulfillment_id"])
    deposit = await DB.get_deposit_request(request["fulfillment_id"])
    requested_lang = normalize_lang(lang or booking.get("lang"))

    locked = _is_locked(fulfillment, deposit)
    status = str(request.get("status") or "").strip().lower()
    deposit_state = None
    if deposit is not None:
        deposit_state = {
            "id": deposit["id"],
            "status": str(deposit.get("status") or "").strip().lower(),
            "amount": float(Decimal(str(deposit.get("amount") or 0))),
            "currency": str(deposit.get("currency") or "").strip().upper()
            or settings.DEFAULT_CURRENCY,
        }

    _record("preview", "ok")
    return {
        "request_id": request["id"],
        "booking_id": request["booking_id"],
        "fulfillment_id": request["fulfillment_id"],
        "trip_title": _trip_title(fulfillment, booking, requested_lang),
        "lang": requested_lang,
        "preferred_date": _iso(
            first_iso(
                request.get("preferred_date"),
                booking.get("preferred_trip_date"),
                booking.get("trip_date"),
            )
        ),
        "stay_from": _iso(first_iso(request.get("stay_from"), booking.get("arrival_date"))),
        "stay_to": _iso(first_iso(request.get("stay_to"), booking.get("departure_date"))),
        "proposed_dates": [
            value.isoformat() for value in unique_iso_dates(request.get("proposed_dates"))[:MAX_OPTIONS]
        ],
        "selected_date": _iso(
            first_iso(request.get("selected_date"), booking.get("selected_trip_date"))
        ),
        "status": status,
        "expires_at": _iso(request.get("selection_token_expires_at")),
        "can_confirm": not locked and status in CONFIRMABLE_STATUSES,
        "selection_locked": locked,
        "deposit": deposit_state,
    }


async def confirm(token: str | None, selected_date: Any) -> dict[str, Any]:
    """
    Record the customer's pick and open the deposit checkout.

    Replays are safe: a second confirm of a selected request re-runs the checkout,
    which reuses the pending session instead of opening another one.
    """
    if not str(token or "").strip():
        raise ValidationError("Missing token")
    if not str(selected_date or "").strip():
        raise ValidationError("Missing selected_date")
    picked = normalize_iso_date(selected_date)
    if picked is None:
        raise ValidationError("Invalid selected_date")

    request, token_hash = await _load_request_by_token("confirm", token)

    options = unique_iso_dates(request.get("proposed_dates"))[:MAX_OPTIONS]
    if picked not in options:
        _record("confirm", "rejected_date")
        raise ValidationError("Selected date is not in provided options")

    booking_id = request["booking_id"]
    fulfillment_id = request["fulfillment_id"]
    fulfillment = await DB.get_fulfillment(fulfillment_id)
    if fulfillment is None:
        raise NotFoundError("Fulfillment not found")
    if normalize_resource_type(fulfillment.get("resource_type")) != TRIPS:
        raise ValidationError("Fulfillment is not a trip fulfillment")
    booking = await DB.get_booking(booking_id)
    if booking is None:
        raise NotFoundError("Trip booking not found")

    deposit = await DB.get_deposit_request(fulfillment_id)
    if _is_locked(fulfillment, deposit):
        _record("confirm", "locked")
        return {
            "booking_id": booking_id,
            "fulfillment_id": fulfillment_id,
            "selected_date": _iso(
                first_iso(
                    request.get("selected_date"),
                    booking.get("selected_trip_date"),
                    booking.get("trip_date"),
                    picked,
                )
            ),
            "already_selected": True,
            "locked_after_payment": True,
        }

    now = _utcnow()
    updated = await DB.transition_to_selected(
        request["id"], token_hash=token_hash, selected_date=picked, now=now
    )
    if updated is None:
        latest = await DB.get_selection_request_by_hash(token_hash)
        if latest and str(latest.get("status") or "").strip().lower() == "selected":
            _record("confirm", "already_selected")
            return {
                "booking_id": booking_id,
                "fulfillment_id": fulfillment_id,
                "selected_date": _iso(first_iso(latest.get("selected_date"), picked)),
                "already_selected": True,
            }
        _record("confirm", "conflict")
        logger.warning(
            "trip_date_confirm_conflict",
            request_id=request["id"],
            status=(latest or {}).get("status"),
        )
        raise ConflictError("Date selection state changed. Refresh and try again.")

    booking_patch: dict[str, Any] = {"selected_trip_date": picked, "trip_date": picked}
    if not booking.get("preferred_trip_date"):
        booking_patch["preferred_trip_date"] = first_iso(
            booking.get("trip_date"), request.get("preferred_date"), picked
        )
    await DB.update_booking(booking_id, **booking_patch)

    mirror = SelectionMirror(
        trip_date_selection_status="selected",
        trip_date_selection_updated_at=now,
        preferred_date=first_iso(
            request.get("preferred_date"),
            booking.get("preferred_trip_date"),
            booking.get("trip_date"),
        ),
        trip_date=picked,
        selected_trip_date=picked,
        proposed_dates=options,
        partner_proposed_dates=options,
    )
    await DB.update_fulfillment(fulfillment_id, details=mirror.merge_into(_details(fulfillment)))

    outcome = CheckoutOutcome()
    if settings.DEPOSITS_ENABLED:
        outcome = await checkout_outcome(
            fulfillment, {**booking, **booking_patch}, picked, cause="trip_date_selected"
        )
    elif str(fulfillment.get("status") or "").strip().lower() == "awaiting_payment":
        await DB.accept_fulfillment(fulfillment_id, now=now, from_statuses=("awaiting_payment",))

    _record("confirm", "selected")
    logger.info(
        "trip_date_confirmed",
        request_id=request["id"],
        fulfillment_id=fulfillment_id,
        selected_date=picked.isoformat(),
        payment_link_ready=outcome.ready,
        payment_link_error=outcome.error,
    )
    return {
        "booking_id": booking_id,
        "fulfillment_id": fulfillment_id,
        "selected_date": picked.isoformat(),
        "status": "selected",
        "deposit_request_id": outcome.link.deposit_request_id if outcome.link else None,
        "payment_link_ready": outcome.ready,
        "checkout_url": (outcome.link.checkout_url or None) if outcome.link else None,
        "payment_link_error": outcome.error,
    }


# ---------- payment confirmation ----------


async def mark_paid(
    claims: dict[str, Any],
    *,
    fulfillment_id: str | None,
    checkout_session_id: str | None = None,
    payment_intent_id: str | None = None,
) -> dict[str, Any]:
    """Admin-only: record a confirmed deposit payment and release the fulfillment."""
    actor = await require_admin(claims)
    fid = str(fulfillment_id or "").strip()
    if not fid:
        raise ValidationError("fulfillment_id is required")

    deposit = await DB.get_deposit_request(fid)
    if deposit is None:
        raise NotFoundError("Deposit request not found for fulfillment")

    deposit_id = deposit["id"]
    booking_id = str(deposit.get("booking_id") or "").strip()
    partner_id = str(deposit.get("partner_id") or "").strip()
    now = _utcnow()

    changed = await DB.mark_deposit_paid(
        deposit_id,
        now=now,
        session_id=(checkout_session_id or "").strip() or None,
        payment_intent_id=(payment_intent_id or "").strip() or None,
    )
    if changed:
        await DB.accept_fulfillment(fid, now=now)
        await DB.mark_booking_deposit_paid(
            booking_id,
            paid_at=now,
            amount=Decimal(str(deposit.get("amount") or 0)),
            currency=str(deposit.get("currency") or "").strip() or settings.DEFAULT_CURRENCY,
        )

    category = normalize_resource_type(deposit.get("resource_type")) or TRIPS
    base = {
        "category": category,
        "record_id": booking_id,
        "table": "trip_bookings",
        "deposit_request_id": deposit_id,
    }
    messages = (
        ("partner_deposit_paid", "deposit_partner_paid", {"fulfillment_id": fid, "partner_id": partner_id}),
        ("deposit_paid", "deposit_admin_paid", {"fulfillment_id": fid, "partner_id": partner_id}),
        ("customer_deposit_paid", "deposit_customer_paid", {}),
    )
    for event, dedupe_prefix, extra in messages:
        await enqueue_notification(
            category=category,
            event=event,
            record_id=booking_id,
            table_name="trip_bookings",
            payload={**base, "event": event, **extra},
            dedupe_key=f"{dedupe_prefix}:{deposit_id}",
        )

    _record("mark_paid", "paid" if changed else "already_paid")
    logger.info(
        "deposit_marked_paid",
        deposit_request_id=deposit_id,
        fulfillment_id=fid,
        user_id=actor.user_id,
        already_paid=not changed,
    )
    return {
        "booking_id": booking_id,
        "fulfillment_id": fid,
        "deposit_request_id": deposit_id,
        "status": "paid",
        "already_paid": not changed,
    }


__all__ = [
    "SelectionMirror",
    "confirm",
    "mark_paid",
    "normalize_trip_options",
    "preview",
    "selection_url",
    "send_options",
]
