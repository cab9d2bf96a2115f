"""Payment provider abstraction for deposit checkout sessions."""

from .base import CheckoutSession, CheckoutSessionRequest, PaymentProvider, PaymentProviderError
from .factory import get_payment_provider

__all__ = [
    "CheckoutSession",
    "CheckoutSessionRequest",
    "PaymentProvider",
    "PaymentProviderError",
    "get_payment_provider",
]
