"""Deposit checkout sessions: at most one live provider session per fulfillment."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Literal
from urllib.parse import urlencode

from .deposits import (
    compute_deposit_amount,
    deposit_currency,
    facts_from_booking,
    resolve_deposit_rule,
)
from .errors import ExternalServiceError, RuleMissingError, TripDateSelectionError, ValidationError
from .logging_config import get_logger
from .metrics import deposit_checkouts_total
from .notifications import enqueue_notification
from .payments import (
    CheckoutSessionRequest,
    PaymentProvider,
    PaymentProviderError,
    get_payment_provider,
)
from .settings import settings
from .storage import DB
from .validators import normalize_lang, read_localized_text

logger = get_logger(__name__)

AMOUNT_TOLERANCE = Decimal("0.009")
TRIPS = "trips"


@dataclass(frozen=True)
class CheckoutLink:
    deposit_request_id: str
    checkout_url: str
    status: Literal["created", "reused", "already_paid"]
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class CheckoutOutcome:
    """Result of the checkout step inside confirm; exactly one of link/error is set."""

    link: CheckoutLink | None = None
    error: str | None = None

    @property
    def ready(self) -> bool:
        return bool(self.link and self.link.checkout_url)


def _clean(value: Any) -> str:
    return str(value or "").strip()


def trip_summary(fulfillment: Mapping[str, Any], booking: Mapping[str, Any]) -> str:
    return _clean(fulfillment.get("summary")) or _clean(booking.get("trip_slug")) or "Trip booking"


def build_deposit_redirect_url(
    *,
    result: Literal["success", "cancel"],
    lang: str,
    deposit_request_id: str,
    booking_id: str,
    amount: Decimal,
    currency: str,
    reference: str | None,
    summary: str | None,
) -> str:
    params: dict[str, str] = {
        "deposit": result,
        "lang": lang,
        "deposit_request_id": deposit_request_id,
        "category": TRIPS,
        "booking_id": booking_id,
        "amount": f"{amount:.2f}",
        "currency": currency,
    }
    if reference:
        params["reference"] = reference
    if summary:
        params["summary"] = summary
    base = settings.DEPOSIT_REDIRECT_BASE_URL
    separator = "&" if "?" in base else "?"
    # the placeholder is substituted by the provider and must stay unencoded
    return f"{base}{separator}{urlencode(params)}&session_id={{CHECKOUT_SESSION_ID}}"


def _amount_matches(stored: Any, amount: Decimal) -> bool:
    try:
        return abs(Decimal(str(stored)) - amount) <= AMOUNT_TOLERANCE
    except ArithmeticError:
        return False


def _currency_matches(stored: Any, currency: str) -> bool:
    existing = _clean(stored).upper()
    return not existing or existing == currency.upper()


async def ensure_checkout(
    fulfillment: Mapping[str, Any],
    booking: Mapping[str, Any],
    selected_date: date | None,
    *,
    cause: str = "trip_date_selected",
    provider: PaymentProvider | None = None,
) -> CheckoutLink:
    """
    Return the checkout link for a fulfillment's deposit, opening a provider session
    only when no paid row or reusable pending row exists.

    The pending row is written before the provider is called, so a failure after that
    point leaves a row the next attempt picks up.
    """
    fulfillment_id = _clean(fulfillment.get("id"))
    booking_id = _clean(fulfillment.get("booking_id") or booking.get("id"))
    partner_id = _clean(fulfillment.get("partner_id"))
    if not fulfillment_id or not booking_id or not partner_id:
        raise ValidationError("Missing fulfillment references for deposit")

    customer_email = _clean(booking.get("customer_email"))
    if not customer_email:
        raise ValidationError("Missing customer email for trip deposit")

    resource_id = _clean(fulfillment.get("resource_id")) or None
    rule = await resolve_deposit_rule(TRIPS, resource_id)
    if rule is None:
        raise RuleMissingError("Trip deposit rule not configured")

    amount = compute_deposit_amount(rule, facts_from_booking(booking, fulfillment, selected_date))
    currency = deposit_currency(rule, fulfillment, booking)

    existing = await DB.get_deposit_request(fulfillment_id)
    if existing:
        status = _clean(existing.get("status")).lower()
        if status == "paid":
            deposit_checkouts_total.labels(result="already_paid").inc()
            return CheckoutLink(
                deposit_request_id=existing["id"],
                checkout_url=_clean(existing.get("checkout_url")),
                status="already_paid",
                amount=Decimal(str(existing.get("amount") or amount)),
                currency=_clean(existing.get("currency")) or currency,
            )
        existing_url = _clean(existing.get("checkout_url"))
        if (
            status == "pending"
            and existing_url
            and _amount_matches(existing.get("amount"), amount)
            and _currency_matches(existing.get("currency"), currency)
        ):
            deposit_checkouts_total.labels(result="reused").inc()
            logger.info(
                "deposit_checkout_reused",
                deposit_request_id=existing["id"],
                fulfillment_id=fulfillment_id,
            )
            return CheckoutLink(
                deposit_request_id=existing["id"],
                checkout_url=existing_url,
                status="reused",
                amount=amount,
                currency=currency,
            )

    lang = normalize_lang(booking.get("lang"))
    reference = _clean(fulfillment.get("reference")) or f"TRIP-{booking_id[:8].upper()}"
    summary = trip_summary(fulfillment, booking)

    deposit = await DB.upsert_pending_deposit_request(
        {
            "fulfillment_id": fulfillment_id,
            "partner_id": partner_id,
            "resource_type": TRIPS,
            "booking_id": booking_id,
            "resource_id": resource_id,
            "fulfillment_reference": reference,
            "fulfillment_summary": summary,
            "customer_name": _clean(booking.get("customer_name")) or None,
            "customer_email": customer_email,
            "customer_phone": _clean(booking.get("customer_phone")) or None,
            "lang": lang,
            "amount": amount,
            "currency": currency,
        }
    )
    deposit_id = deposit["id"]
    if _clean(deposit.get("status")).lower() == "paid":
        deposit_checkouts_total.labels(result="already_paid").inc()
        return CheckoutLink(
            deposit_request_id=deposit_id,
            checkout_url=_clean(deposit.get("checkout_url")),
            status="already_paid",
            amount=Decimal(str(deposit.get("amount") or amount)),
            currency=_clean(deposit.get("currency")) or currency,
        )

    display_summary = read_localized_text(fulfillment.get("summary"), lang)
    redirect = {
        "lang": lang,
        "deposit_request_id": deposit_id,
        "booking_id": booking_id,
        "amount": amount,
        "currency": currency,
        "reference": reference,
        "summary": display_summary or summary,
    }
    metadata = {
        "deposit_request_id": deposit_id,
        "fulfillment_id": fulfillment_id,
        "partner_id": partner_id,
        "resource_type": TRIPS,
        "booking_id": booking_id,
        "deposit_amount": f"{amount:.2f}",
        "deposit_currency": currency.upper(),
    }

    provider = provider or get_payment_provider()
    known_customer_id = await provider.find_customer_id(customer_email)
    try:
        session = await provider.create_checkout_session(
            CheckoutSessionRequest(
                amount=amount,
                currency=currency,
                product_name=f"Deposit: {display_summary}" if display_summary else "Deposit payment",
                success_url=build_deposit_redirect_url(result="success", **redirect),
                cancel_url=build_deposit_redirect_url(result="cancel", **redirect),
                customer_email=customer_email,
                customer_id=known_customer_id,
                client_reference_id=deposit_id,
                metadata=metadata,
            )
        )
    except PaymentProviderError as exc:
        deposit_checkouts_total.labels(result="failed").inc()
        logger.error(
            "deposit_checkout_failed",
            deposit_request_id=deposit_id,
            fulfillment_id=fulfillment_id,
            provider=provider.name,
            error=str(exc),
        )
        raise ExternalServiceError("Failed to create deposit checkout session") from exc

    await DB.attach_checkout_session(
        deposit_id,
        session_id=session.id,
        checkout_url=session.url,
        customer_id=session.customer_id or known_customer_id,
    )

    await enqueue_notification(
        category=TRIPS,
        event="customer_deposit_requested",
        record_id=booking_id,
        table_name="trip_bookings",
        payload={
            "category": TRIPS,
            "record_id": booking_id,
            "event": "customer_deposit_requested",
            "table": "trip_bookings",
            "deposit_request_id": deposit_id,
            "fulfillment_id": fulfillment_id,
            "partner_id": partner_id,
        },
        dedupe_key=f"deposit_customer_requested:{deposit_id}:{cause}",
    )

    deposit_checkouts_total.labels(result="created").inc()
    logger.info(
        "deposit_checkout_created",
        deposit_request_id=deposit_id,
        fulfillment_id=fulfillment_id,
        amount=str(amount),
        currency=currency,
        provider=provider.name,
    )
    return CheckoutLink(
        deposit_request_id=deposit_id,
        checkout_url=session.url,
        status="created",
        amount=amount,
        currency=currency,
    )


async def checkout_outcome(
    fulfillment: Mapping[str, Any],
    booking: Mapping[str, Any],
    selected_date: date | None,
    *,
    cause: str = "trip_date_selected",
) -> CheckoutOutcome:
    """`ensure_checkout`, with service errors captured instead of raised."""
    try:
        link = await ensure_checkout(fulfillment, booking, selected_date, cause=cause)
    except TripDateSelectionError as exc:
        logger.warning(
            "deposit_checkout_unavailable",
            fulfillment_id=fulfillment.get("id"),
            error=exc.message,
        )
        return CheckoutOutcome(error=exc.message)
    return CheckoutOutcome(link=link)


__all__ = [
    "CheckoutLink",
    "CheckoutOutcome",
    "build_deposit_redirect_url",
    "checkout_outcome",
    "ensure_checkout",
    "trip_summary",
]
