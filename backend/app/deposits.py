"""Deposit rule resolution and amount calculation."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, assert_never

from .errors import InvalidDepositError
from .logging_config import get_logger
from .settings import settings
from .storage import DB
from .validators import first_iso, read_number

logger = get_logger(__name__)

CENTS = Decimal("0.01")
ONE = Decimal("1")


class DepositMode(str, Enum):
    PER_DAY = "per_day"
    PER_HOUR = "per_hour"
    PER_PERSON = "per_person"
    FLAT = "flat"
    PERCENT_TOTAL = "percent_total"


@dataclass(frozen=True)
class DepositRule:
    mode: DepositMode
    amount: Decimal
    currency: str
    include_children: bool = False


@dataclass(frozen=True)
class DepositFacts:
    """Booking quantities a rule multiplies against."""

    days: int = 1
    hours: Decimal | None = None
    adults: int = 0
    children: int = 0
    booking_total: Decimal | None = None


def _to_decimal(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")
    return parsed if parsed.is_finite() else Decimal("0")


def _rule_from_row(row: Mapping[str, Any] | None) -> DepositRule | None:
    if not row or not row.get("enabled"):
        return None
    try:
        mode = DepositMode(str(row.get("mode") or "").strip())
    except ValueError:
        logger.warning("deposit_rule_unknown_mode", mode=row.get("mode"), rule_id=row.get("id"))
        return None
    currency = str(row.get("currency") or "").strip().upper() or settings.DEFAULT_CURRENCY
    return DepositRule(
        mode=mode,
        amount=_to_decimal(row.get("amount")),
        currency=currency,
        include_children=bool(row.get("include_children")),
    )


async def resolve_deposit_rule(resource_type: str, resource_id: str | None) -> DepositRule | None:
    """
    Effective rule for a resource: an enabled per-resource override wins over the
    enabled type-wide default. Disabled rows and unknown modes count as absent.
    """
    rid = str(resource_id or "").strip()
    if rid:
        override = _rule_from_row(await DB.get_deposit_override(resource_type, rid))
        if override is not None:
            return override
    return _rule_from_row(await DB.get_deposit_rule(resource_type))


def _round_half_up(value: Decimal) -> Decimal:
    return value.quantize(ONE, rounding=ROUND_HALF_UP)


def compute_deposit_amount(rule: DepositRule, facts: DepositFacts) -> Decimal:
    """Deposit for `rule` against `facts`, rounded half-up to cents; always positive."""
    match rule.mode:
        case DepositMode.PERCENT_TOTAL:
            total = facts.booking_total or Decimal("0")
            if total <= 0:
                raise InvalidDepositError("Trip total missing for percent_total deposit")
            if rule.amount <= 0:
                raise InvalidDepositError("Trip deposit percent is 0")
            raw = total * rule.amount / Decimal("100")
        case DepositMode.FLAT:
            raw = rule.amount
        case DepositMode.PER_DAY:
            raw = rule.amount * max(1, facts.days)
        case DepositMode.PER_HOUR:
            hours = _round_half_up(facts.hours) if facts.hours is not None else ONE
            raw = rule.amount * max(ONE, hours)
        case DepositMode.PER_PERSON:
            people = facts.adults + (facts.children if rule.include_children else 0)
            raw = rule.amount * max(1, people)
        case _:
            assert_never(rule.mode)

    amount = raw.quantize(CENTS, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise InvalidDepositError("Trip deposit amount is 0")
    return amount


def diff_days(start: date | None, end: date | None) -> int:
    if start is None or end is None:
        return 1
    return max(1, (end - start).days)


def facts_from_booking(
    booking: Mapping[str, Any],
    fulfillment: Mapping[str, Any],
    selected_date: date | None,
) -> DepositFacts:
    details = fulfillment.get("details") or {}
    if not isinstance(details, Mapping):
        details = {}

    start = first_iso(
        booking.get("arrival_date"),
        details.get("arrival_date"),
        booking.get("trip_date"),
        selected_date,
    )
    end = first_iso(booking.get("departure_date"), details.get("departure_date"), start)

    hours = read_number(booking, "num_hours")
    if hours is None:
        hours = read_number(details, "num_hours", "numHours")
    adults = read_number(booking, "num_adults")
    if adults is None:
        adults = read_number(details, "num_adults", "numAdults")
    children = read_number(booking, "num_children")
    if children is None:
        children = read_number(details, "num_children", "numChildren")

    total = _to_decimal(fulfillment.get("total_price")) or _to_decimal(booking.get("total_price"))

    return DepositFacts(
        days=diff_days(start, end),
        hours=_to_decimal(hours) if hours is not None else None,
        adults=int(adults or 0),
        children=int(children or 0),
        booking_total=total if total > 0 else None,
    )


def deposit_currency(
    rule: DepositRule, fulfillment: Mapping[str, Any], booking: Mapping[str, Any]
) -> str:
    if rule.mode is DepositMode.PERCENT_TOTAL:
        for candidate in (fulfillment.get("currency"), booking.get("currency"), rule.currency):
            cleaned = str(candidate or "").strip().upper()
            if cleaned:
                return cleaned
        return settings.DEFAULT_CURRENCY
    return rule.currency or settings.DEFAULT_CURRENCY


__all__ = [
    "DepositFacts",
    "DepositMode",
    "DepositRule",
    "compute_deposit_amount",
    "deposit_currency",
    "diff_days",
    "facts_from_booking",
    "resolve_deposit_rule",
]
