from __future__ import annotations

from functools import lru_cache

from ..settings import settings
from .base import PaymentProvider
from .mock import MockPaymentProvider
from .stripe import StripeProvider


@lru_cache(maxsize=1)
def get_payment_provider() -> PaymentProvider:
    provider_name = (settings.PAYMENT_PROVIDER or "mock").lower()

    if provider_name == "mock":
        return MockPaymentProvider()

    if provider_name == "stripe":
        return StripeProvider()

    raise RuntimeError(
        f"Unsupported PAYMENT_PROVIDER '{settings.PAYMENT_PROVIDER}'. Use 'mock' or 'stripe'."
    )
