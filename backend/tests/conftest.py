import asyncio
import os
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest
import sentry_sdk
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Disable outbound Sentry calls during tests
sentry_sdk.init = lambda *args, **kwargs: None  # type: ignore[assignment]
os.environ["SENTRY_DSN"] = ""
test_data_dir = ROOT / "artifacts" / "test-data"
test_data_dir.mkdir(parents=True, exist_ok=True)
test_db = test_data_dir / "trip_deposits_test.db"
test_db.unlink(missing_ok=True)
os.environ["DATA_DIR"] = str(test_data_dir)
os.environ["DATABASE_URL"] = f"sqlite:///{test_db}"
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["AUTH0_BYPASS"] = "true"

from backend.app.db.models import (  # noqa: E402
    DepositOverrideRecord,
    DepositRuleRecord,
    FulfillmentRecord,
    PartnerMemberRecord,
    TripBookingRecord,
    UserProfileRecord,
)
from backend.app.main import app  # noqa: E402
from backend.app.payments import get_payment_provider  # noqa: E402
from backend.app.settings import settings  # noqa: E402
from backend.app.storage import DB  # noqa: E402

PARTNER_ID = "partner-1"
PARTNER_USER = "local-dev-user"
BOOKING_ID = "b0a1c2d3-0000-4000-8000-000000000001"
FULFILLMENT_ID = "f0a1c2d3-0000-4000-8000-000000000001"


def _purge() -> None:
    asyncio.run(DB.purge())


@pytest.fixture(scope="session")
def client() -> TestClient:
    with TestClient(app, base_url="http://api.testserver") as test_client:
        yield test_client


@pytest.fixture
def provider():
    return get_payment_provider()


@pytest.fixture(autouse=True)
def clean_state(provider) -> None:
    settings.AUTH0_BYPASS = True
    settings.AUTH0_BYPASS_SUBJECT = PARTNER_USER
    settings.RATE_LIMIT_ENABLED = False
    settings.DEPOSITS_ENABLED = True
    settings.SENTRY_DSN = None
    limiter = getattr(app.state, "rate_limiter", None)
    if limiter:
        limiter.reset()
    provider.reset()
    _purge()
    yield
    _purge()


def seed_trip(
    *,
    booking_id: str = BOOKING_ID,
    fulfillment_id: str = FULFILLMENT_ID,
    partner_id: str = PARTNER_ID,
    member: str | None = PARTNER_USER,
    rule: dict | bool | None = None,
    arrival: date | None = date(2026, 7, 1),
    departure: date | None = date(2026, 7, 5),
    fulfillment_status: str = "awaiting_payment",
    customer_email: str | None = "guest@example.com",
    **booking_fields,
) -> None:
    """Insert a trip booking, its fulfillment, partner membership and deposit rule."""
    records: list = [
        TripBookingRecord(
            id=booking_id,
            trip_slug="troodos-day-trip",
            customer_name="Guest Example",
            customer_email=customer_email,
            arrival_date=arrival,
            departure_date=departure,
            lang="en",
            **booking_fields,
        ),
        FulfillmentRecord(
            id=fulfillment_id,
            booking_id=booking_id,
            partner_id=partner_id,
            resource_type="trips",
            resource_id="trip-42",
            status=fulfillment_status,
            details={"source": "partner_portal"},
            summary='{"en": "Troodos Day Trip", "pl": "Wycieczka w Troodos"}',
        ),
    ]
    if member:
        records.append(PartnerMemberRecord(partner_id=partner_id, user_id=member))
    if rule is not False:
        overrides = rule if isinstance(rule, dict) else {}
        values = {"mode": "per_day", "amount": Decimal("20"), "currency": "EUR", **overrides}
        records.append(DepositRuleRecord(resource_type="trips", enabled=True, **values))
    DB.add_records_sync(*records)


def seed_override(resource_id: str = "trip-42", **values) -> None:
    payload = {"mode": "flat", "amount": Decimal("50"), "currency": "EUR", "enabled": True, **values}
    DB.add_records_sync(
        DepositOverrideRecord(resource_type="trips", resource_id=resource_id, **payload)
    )


def seed_admin(user_id: str) -> None:
    DB.add_records_sync(UserProfileRecord(id=user_id, is_admin=True))


def outbox(event: str | None = None) -> list[dict]:
    return asyncio.run(DB.list_notifications(event))


def latest_selection_token() -> str:
    """Raw token recovered from the selection link in the newest outbox payload."""
    payload = outbox("trip_date_options_ready")[-1]["payload"]
    query = parse_qs(urlparse(payload["selection_url"]).query)
    return query["token"][0]


def post_action(client: TestClient, action: str, **body):
    return client.post("/v1/trip-date-selection", json={"action": action, **body})


def send_default_options(client: TestClient, dates=("2026-07-02", "2026-07-03")) -> str:
    response = post_action(
        client, "send_options", fulfillment_id=FULFILLMENT_ID, proposed_dates=list(dates)
    )
    assert response.status_code == 200, response.text
    return latest_selection_token()
