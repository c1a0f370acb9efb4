"""
Payment provider registry.
The backend is chosen once at process start from settings and injected into
the escrow coordinator; nothing downstream switches on provider names.
"""

from typing import Callable, Optional

from tradedesk.config import Settings, get_settings
from tradedesk.payments.base import PaymentIntent, PaymentProvider, PaymentStatus, ProviderHold
from tradedesk.payments.mock import MockPaymentProvider
from tradedesk.payments.stripe import StripePaymentProvider
from tradedesk.utils.logging import get_logger

logger = get_logger(__name__)


def _build_mock(settings: Settings) -> PaymentProvider:
    return MockPaymentProvider()


def _build_stripe(settings: Settings) -> PaymentProvider:
    return StripePaymentProvider(
        secret_key=settings.stripe_secret_key,
        api_url=settings.stripe_api_url,
        currency=settings.currency,
        timeout=settings.provider_timeout_seconds,
    )


PROVIDER_FACTORIES: dict[str, Callable[[Settings], PaymentProvider]] = {
    "mock": _build_mock,
    "stripe": _build_stripe,
}


def create_payment_provider(settings: Optional[Settings] = None) -> PaymentProvider:
    """Build the configured payment provider."""
    settings = settings or get_settings()
    provider = PROVIDER_FACTORIES[settings.payment_provider](settings)
    logger.info("Payment provider selected", provider=provider.name)
    return provider


__all__ = [
    "MockPaymentProvider",
    "PaymentIntent",
    "PaymentProvider",
    "PaymentStatus",
    "ProviderHold",
    "StripePaymentProvider",
    "create_payment_provider",
]
