from __future__ import annotations

from genstudio.core.config import get_settings
from genstudio.core.errors import ProviderConfigError
from genstudio.providers.payments.base import PaymentProvider
from genstudio.providers.payments.fake import FakePaymentProvider
from genstudio.providers.payments.stripe import StripePaymentProvider


_instances: dict[str, PaymentProvider] = {}


def get_payment_provider() -> PaymentProvider:
    settings = get_settings()
    provider = (settings.payment_provider or "stripe").lower()
    if provider in _instances:
        return _instances[provider]

    if provider == "fake":
        instance: PaymentProvider = FakePaymentProvider()
    elif provider == "stripe":
        instance = StripePaymentProvider()
    else:
        raise ProviderConfigError(f"Unsupported payment provider: {provider}")
    _instances[provider] = instance
    return instance


def reset_payment_provider() -> None:
    _instances.clear()
