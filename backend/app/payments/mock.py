from __future__ import annotations

from uuid import uuid4

from .base import CheckoutSession, CheckoutSessionRequest, PaymentProvider, PaymentProviderError


class MockPaymentProvider(PaymentProvider):
    """In-memory provider for local runs and tests; records every session it opens."""

    name = "mock"

    def __init__(self) -> None:
        self.sessions: list[CheckoutSessionRequest] = []
        self.customers: dict[str, str] = {}
        self.fail_with: str | None = None

    @property
    def session_count(self) -> int:
        return len(self.sessions)

    def reset(self) -> None:
        self.sessions.clear()
        self.customers.clear()
        self.fail_with = None

    async def find_customer_id(self, email: str) -> str | None:
        return self.customers.get(email.strip().lower())

    async def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSession:
        if self.fail_with:
            raise PaymentProviderError(self.fail_with)
        self.sessions.append(request)
        session_id = f"cs_mock_{uuid4().hex}"
        return CheckoutSession(
            id=session_id,
            url=f"https://checkout.mock.local/pay/{session_id}",
            customer_id=request.customer_id,
        )
