from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..circuit_breaker import CircuitOpenError, get_circuit_breaker
from ..logging_config import get_logger
from ..metrics import payment_provider_calls_total
from ..settings import settings
from .base import CheckoutSession, CheckoutSessionRequest, PaymentProvider, PaymentProviderError

logger = get_logger(__name__)


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"Stripe error {response.status_code}")
        self.response = response


def encode_form(payload: Mapping[str, Any]) -> dict[str, str]:
    """Flatten nested mappings/lists into Stripe's bracketed form keys."""
    out: dict[str, str] = {}

    def walk(prefix: str, value: Any) -> None:
        if value is None:
            return
        if isinstance(value, Mapping):
            for key, nested in value.items():
                walk(f"{prefix}[{key}]", nested)
            return
        if isinstance(value, list | tuple):
            for index, nested in enumerate(value):
                walk(f"{prefix}[{index}]", nested)
            return
        out[prefix] = str(value)

    for key, value in payload.items():
        walk(key, value)
    return out


class StripeProvider(PaymentProvider):
    """Stripe Checkout over its form-encoded REST API."""

    name = "stripe"

    def __init__(
        self,
        *,
        secret_key: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        attempts: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.secret_key = (secret_key or settings.STRIPE_SECRET_KEY or "").strip()
        self.api_base = (api_base or settings.STRIPE_API_BASE).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PAYMENT_TIMEOUT_SECONDS
        self.attempts = max(1, attempts if attempts is not None else settings.PAYMENT_RETRY_ATTEMPTS)
        self._transport = transport
        self._breaker = get_circuit_breaker("payments")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.secret_key}"},
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        async with self._client() as client:
            response = await client.request(method, path, **kwargs)
        if response.status_code >= 500:
            raise _RetryableStatus(response)
        return response

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=0.3, min=0.5, max=3),
            retry=retry_if_exception_type((httpx.TransportError, _RetryableStatus)),
            reraise=True,
        )

        async def _attempt() -> httpx.Response:
            async for attempt in retrying:
                with attempt:
                    return await self._send(method, path, **kwargs)
            raise AssertionError("unreachable")  # pragma: no cover

        try:
            response = await self._breaker.call_async(_attempt)
        except CircuitOpenError as exc:
            payment_provider_calls_total.labels(self.name, operation, "rejected").inc()
            raise PaymentProviderError(str(exc)) from exc
        except _RetryableStatus as exc:
            payment_provider_calls_total.labels(self.name, operation, "error").inc()
            raise PaymentProviderError(
                f"Stripe error {exc.response.status_code}: {exc.response.text[:500]}"
            ) from exc
        except httpx.HTTPError as exc:
            payment_provider_calls_total.labels(self.name, operation, "error").inc()
            raise PaymentProviderError(f"Stripe unreachable: {exc}") from exc

        status = "ok" if response.is_success else "error"
        payment_provider_calls_total.labels(self.name, operation, status).inc()
        return response

    async def find_customer_id(self, email: str) -> str | None:
        normalized = (email or "").strip().lower()
        if not normalized or not self.secret_key:
            return None
        try:
            response = await self._request(
                "find_customer",
                "GET",
                "/v1/customers",
                params={"email": normalized, "limit": 1},
            )
        except PaymentProviderError as exc:
            logger.warning("stripe_customer_lookup_failed", error=str(exc))
            return None
        if not response.is_success:
            return None
        data = response.json().get("data") or []
        customer_id = str((data[0] or {}).get("id") or "").strip() if data else ""
        return customer_id or None

    async def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSession:
        if not self.secret_key:
            raise PaymentProviderError("Missing STRIPE_SECRET_KEY")

        customer_id = (request.customer_id or "").strip()
        payload: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "client_reference_id": request.client_reference_id,
            "line_items": [
                {
                    "price_data": {
                        "currency": request.currency.lower(),
                        "product_data": {"name": request.product_name},
                        "unit_amount": request.amount_minor,
                    },
                    "quantity": 1,
                }
            ],
            "payment_intent_data": {
                "metadata": request.metadata,
                "setup_future_usage": "off_session",
            },
            "metadata": request.metadata,
        }
        if customer_id:
            payload["customer"] = customer_id
        else:
            payload["customer_email"] = request.customer_email
            payload["customer_creation"] = "always"

        # retried attempts must reuse the key so Stripe replays instead of opening a second session
        idempotency_key = (
            f"checkout:{request.client_reference_id}:{request.amount_minor}:{request.currency.lower()}"
        )
        response = await self._request(
            "create_checkout_session",
            "POST",
            "/v1/checkout/sessions",
            data=encode_form(payload),
            headers={"Idempotency-Key": idempotency_key},
        )
        if not response.is_success:
            raise PaymentProviderError(
                f"Stripe error {response.status_code}: {response.text[:500]}"
            )

        body = response.json()
        session_id = str(body.get("id") or "").strip()
        url = str(body.get("url") or "").strip()
        if not session_id or not url:
            raise PaymentProviderError("Stripe session missing id/url")
        resolved_customer = str(body.get("customer") or customer_id or "").strip()
        return CheckoutSession(id=session_id, url=url, customer_id=resolved_customer or None)
