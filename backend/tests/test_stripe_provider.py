"""Stripe Checkout client against a scripted transport."""

import asyncio
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest
from backend.app.circuit_breaker import get_circuit_breaker
from backend.app.payments import CheckoutSessionRequest, PaymentProviderError
from backend.app.payments.stripe import StripeProvider, encode_form


@pytest.fixture(autouse=True)
def closed_breaker():
    get_circuit_breaker("payments").reset()
    yield
    get_circuit_breaker("payments").reset()


class ScriptedStripe:
    """Replays queued responses and keeps every request it saw."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        scripted = self.responses.pop(0)
        if isinstance(scripted, Exception):
            raise scripted
        return scripted

    def form(self, index: int = -1) -> dict[str, list[str]]:
        return parse_qs(self.requests[index].content.decode())


def _provider(stripe: ScriptedStripe, attempts: int = 3) -> StripeProvider:
    return StripeProvider(
        secret_key="sk_test_123",
        api_base="https://stripe.test",
        attempts=attempts,
        transport=httpx.MockTransport(stripe),
    )


def _request(**overrides) -> CheckoutSessionRequest:
    values = {
        "amount": Decimal("80.00"),
        "currency": "EUR",
        "product_name": "Deposit: Troodos Day Trip",
        "success_url": "https://app.test/ok?session_id={CHECKOUT_SESSION_ID}",
        "cancel_url": "https://app.test/cancel",
        "customer_email": "guest@example.com",
        "client_reference_id": "dep-1",
        "metadata": {"deposit_request_id": "dep-1", "deposit_amount": "80.00"},
        **overrides,
    }
    return CheckoutSessionRequest(**values)


def _session(**body) -> httpx.Response:
    payload = {"id": "cs_test_1", "url": "https://pay.stripe.test/cs_1", **body}
    return httpx.Response(200, json=payload)


def test_encode_form_flattens_nested_values():
    encoded = encode_form(
        {
            "mode": "payment",
            "line_items": [{"price_data": {"unit_amount": 8000}, "quantity": 1}],
            "metadata": {"a": "1"},
            "customer": None,
        }
    )
    assert encoded == {
        "mode": "payment",
        "line_items[0][price_data][unit_amount]": "8000",
        "line_items[0][quantity]": "1",
        "metadata[a]": "1",
    }


def test_amount_is_sent_in_minor_units():
    assert _request(amount=Decimal("12.34")).amount_minor == 1234


def test_creates_session_for_new_customer():
    stripe = ScriptedStripe(_session(customer="cus_new"))

    session = asyncio.run(_provider(stripe).create_checkout_session(_request()))

    assert session.id == "cs_test_1"
    assert session.url == "https://pay.stripe.test/cs_1"
    assert session.customer_id == "cus_new"

    sent = stripe.requests[0]
    assert sent.method == "POST"
    assert sent.url.path == "/v1/checkout/sessions"
    assert sent.headers["Authorization"] == "Bearer sk_test_123"
    form = stripe.form()
    assert form["line_items[0][price_data][unit_amount]"] == ["8000"]
    assert form["line_items[0][price_data][currency]"] == ["eur"]
    assert form["customer_email"] == ["guest@example.com"]
    assert form["customer_creation"] == ["always"]
    assert form["metadata[deposit_request_id]"] == ["dep-1"]
    assert form["payment_intent_data[setup_future_usage]"] == ["off_session"]
    assert "customer" not in form


def test_known_customer_is_attached():
    stripe = ScriptedStripe(_session())

    session = asyncio.run(
        _provider(stripe).create_checkout_session(_request(customer_id="cus_known"))
    )

    form = stripe.form()
    assert form["customer"] == ["cus_known"]
    assert "customer_email" not in form
    assert session.customer_id == "cus_known"


def test_server_errors_are_retried():
    stripe = ScriptedStripe(httpx.Response(503, text="busy"), _session())

    session = asyncio.run(_provider(stripe).create_checkout_session(_request()))

    assert session.id == "cs_test_1"
    assert len(stripe.requests) == 2


def test_retry_after_lost_response_reuses_idempotency_key():
    stripe = ScriptedStripe(httpx.ReadTimeout("response lost"), _session())

    session = asyncio.run(_provider(stripe).create_checkout_session(_request()))

    assert session.id == "cs_test_1"
    keys = [request.headers.get("Idempotency-Key") for request in stripe.requests]
    assert keys == ["checkout:dep-1:8000:eur"] * 2


def test_idempotency_key_changes_with_amount():
    stripe = ScriptedStripe(_session(), _session(id="cs_test_2"))
    provider = _provider(stripe)

    asyncio.run(provider.create_checkout_session(_request()))
    asyncio.run(provider.create_checkout_session(_request(amount=Decimal("95.50"))))

    keys = [request.headers["Idempotency-Key"] for request in stripe.requests]
    assert keys == ["checkout:dep-1:8000:eur", "checkout:dep-1:9550:eur"]


def test_persistent_server_errors_raise_after_attempts():
    stripe = ScriptedStripe(*(httpx.Response(502, text="bad gateway") for _ in range(2)))

    with pytest.raises(PaymentProviderError, match="Stripe error 502"):
        asyncio.run(_provider(stripe, attempts=2).create_checkout_session(_request()))

    assert len(stripe.requests) == 2


def test_client_errors_are_not_retried():
    stripe = ScriptedStripe(httpx.Response(400, json={"error": {"message": "bad currency"}}))

    with pytest.raises(PaymentProviderError, match="Stripe error 400"):
        asyncio.run(_provider(stripe).create_checkout_session(_request()))

    assert len(stripe.requests) == 1


def test_missing_session_url_is_an_error():
    stripe = ScriptedStripe(httpx.Response(200, json={"id": "cs_test_1"}))
    with pytest.raises(PaymentProviderError, match="missing id/url"):
        asyncio.run(_provider(stripe).create_checkout_session(_request()))


def test_missing_secret_key_fails_fast():
    provider = StripeProvider(secret_key="", api_base="https://stripe.test")
    with pytest.raises(PaymentProviderError, match="STRIPE_SECRET_KEY"):
        asyncio.run(provider.create_checkout_session(_request()))


def test_open_circuit_short_circuits_calls():
    breaker = get_circuit_breaker("payments")
    for _ in range(breaker.failure_threshold):
        breaker.record_failure()
    stripe = ScriptedStripe(_session())

    with pytest.raises(PaymentProviderError, match="is open"):
        asyncio.run(_provider(stripe).create_checkout_session(_request()))

    assert stripe.requests == []


class TestFindCustomer:
    def test_returns_first_match(self):
        stripe = ScriptedStripe(httpx.Response(200, json={"data": [{"id": "cus_9"}]}))

        customer = asyncio.run(_provider(stripe).find_customer_id(" Guest@Example.com "))

        assert customer == "cus_9"
        sent = stripe.requests[0]
        assert sent.method == "GET"
        assert sent.url.params["email"] == "guest@example.com"
        assert sent.url.params["limit"] == "1"

    def test_no_match(self):
        stripe = ScriptedStripe(httpx.Response(200, json={"data": []}))
        assert asyncio.run(_provider(stripe).find_customer_id("guest@example.com")) is None

    def test_lookup_failure_is_not_fatal(self):
        stripe = ScriptedStripe(httpx.Response(500), httpx.Response(500))
        result = asyncio.run(_provider(stripe, attempts=2).find_customer_id("guest@example.com"))
        assert result is None
