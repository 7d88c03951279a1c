from __future__ import annotations

from typing import Callable, Iterator

import structlog

from core.errors import ProviderNotConfiguredError
from core.payments.flutterwave_provider import FlutterwavePaymentProvider
from core.payments.paystack_provider import PaystackPaymentProvider
from core.payments.provider import PaymentProvider
from core.payments.stripe_provider import StripePaymentProvider
from core.payments.types import PaymentProviderName, resolve_provider_name
from core.settings import Settings

logger = structlog.get_logger(__name__)

AdapterBuilder = Callable[[Settings], "PaymentProvider | None"]


def _build_card(settings: Settings) -> PaymentProvider | None:
    if not (settings.stripe_secret_key and settings.stripe_webhook_secret):
        return None
    return StripePaymentProvider(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.payment_http_timeout_seconds,
    )


def _build_mobile_money(settings: Settings) -> PaymentProvider | None:
    if not settings.paystack_secret_key:
        return None
    return PaystackPaymentProvider(
        secret_key=settings.paystack_secret_key,
        callback_url=settings.paystack_callback_url,
        timeout_seconds=settings.payment_http_timeout_seconds,
    )


def _build_multi_rail(settings: Settings) -> PaymentProvider | None:
    if not (settings.flutterwave_secret_key and settings.flutterwave_webhook_secret_hash):
        return None
    return FlutterwavePaymentProvider(
        secret_key=settings.flutterwave_secret_key,
        webhook_secret_hash=settings.flutterwave_webhook_secret_hash,
        redirect_url=settings.flutterwave_redirect_url,
        timeout_seconds=settings.payment_http_timeout_seconds,
    )


# One entry per PaymentProviderName member.
_ADAPTER_BUILDERS: dict[PaymentProviderName, AdapterBuilder] = {
    PaymentProviderName.CARD: _build_card,
    PaymentProviderName.MOBILE_MONEY: _build_mobile_money,
    PaymentProviderName.MULTI_RAIL: _build_multi_rail,
}


class PaymentManager:
    """Registry of configured adapters keyed by ``PaymentProviderName``."""

    def __init__(self, providers: dict[PaymentProviderName, PaymentProvider] | None = None) -> None:
        self._providers: dict[PaymentProviderName, PaymentProvider] = {}
        for name, provider in (providers or {}).items():
            self.register(name, provider)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaymentManager":
        manager = cls()
        for raw_name in settings.payment_providers:
            name = PaymentProviderName(raw_name)
            provider = _ADAPTER_BUILDERS[name](settings)
            if provider is None:
                logger.warning("payment_provider_not_configured", provider=name.value)
                continue
            manager.register(name, provider)
        logger.info("payment_providers_configured", providers=[name.value for name in manager.names()])
        return manager

    def register(self, name: PaymentProviderName, provider: PaymentProvider) -> None:
        if not isinstance(name, PaymentProviderName):
            raise TypeError(f"Provider key must be a PaymentProviderName, got {name!r}")
        if provider.provider_name != name:
            raise ValueError(f"Adapter {provider.vendor_name} serves {provider.provider_name.value}, not {name.value}")
        self._providers[name] = provider

    def get_provider(self, name: PaymentProviderName | str) -> PaymentProvider:
        resolved = resolve_provider_name(name)
        if resolved is None or resolved not in self._providers:
            raise ProviderNotConfiguredError(str(getattr(name, "value", name)))
        return self._providers[resolved]

    def is_configured(self, name: PaymentProviderName) -> bool:
        return name in self._providers

    def names(self) -> list[PaymentProviderName]:
        return [name for name in PaymentProviderName if name in self._providers]

    def __iter__(self) -> Iterator[PaymentProvider]:
        return iter(self._providers[name] for name in self.names())
