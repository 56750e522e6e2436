"""
Payment provider registry.

Providers are built once per process from Settings and looked up by name:
transactions remember which provider created them, and webhooks arrive on
/webhooks/{provider}.
"""

import logging

from app.config import Settings, settings as app_settings
from app.exceptions import UnknownProviderError
from app.providers.base import PaymentProvider
from app.providers.stripe import StripeProvider

logger = logging.getLogger(__name__)


def build_providers(settings: Settings) -> dict[str, PaymentProvider]:
    providers: dict[str, PaymentProvider] = {
        "stripe": StripeProvider(
            api_key=settings.STRIPE_API_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            api_base=settings.STRIPE_API_BASE,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
            tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
        ),
    }
    if settings.PAYMENT_PROVIDER not in providers:
        available = ", ".join(sorted(providers))
        raise ValueError(
            f"Unknown PAYMENT_PROVIDER {settings.PAYMENT_PROVIDER!r}. Available providers: {available}"
        )
    if not settings.STRIPE_API_KEY:
        logger.warning("Stripe provider created without STRIPE_API_KEY")
    return providers


_registry: dict[str, PaymentProvider] | None = None


def get_provider_registry() -> dict[str, PaymentProvider]:
    """Process-wide provider registry, built on first use."""
    global _registry
    if _registry is None:
        _registry = build_providers(app_settings)
    return _registry


def get_provider(name: str, registry: dict[str, PaymentProvider] | None = None) -> PaymentProvider:
    providers = registry if registry is not None else get_provider_registry()
    try:
        return providers[name]
    except KeyError:
        raise UnknownProviderError(name) from None


async def close_providers() -> None:
    global _registry
    if _registry is None:
        return
    for provider in _registry.values():
        await provider.aclose()
    _registry = None
