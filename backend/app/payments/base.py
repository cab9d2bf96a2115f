from __future__ import annotations

from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel, Field


class PaymentProviderError(Exception):
    """Raised when the provider rejects a call or cannot be reached."""


class CheckoutSessionRequest(BaseModel):
    amount: Decimal
    currency: str
    product_name: str
    success_url: str
    cancel_url: str
    customer_email: str
    customer_id: str | None = None
    client_reference_id: str
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def amount_minor(self) -> int:
        return int((self.amount * 100).to_integral_value())


class CheckoutSession(BaseModel):
    id: str
    url: str
    customer_id: str | None = None


class PaymentProvider(Protocol):
    name: str

    async def find_customer_id(self, email: str) -> str | None: ...

    async def create_checkout_session(
        self, request: CheckoutSessionRequest
    ) -> CheckoutSession: ...
