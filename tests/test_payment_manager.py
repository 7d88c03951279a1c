from __future__ import annotations

from dataclasses import replace

import pytest

from core.errors import ErrorCode, ProviderNotConfiguredError
from core.payments import manager as manager_module
from core.payments.manager import PaymentManager
from core.payments.types import PaymentProviderName, resolve_provider_name
from core.settings import Settings


def _settings(**overrides) -> Settings:
    base = Settings(
        env="test",
        mongo_url=None,
        db_name=None,
        cors_origins=(),
        debug_include_error_details=False,
        log_level="INFO",
        celery_broker_url=None,
        celery_result_backend=None,
        payment_providers=("card", "mobile_money", "multi_rail"),
        stripe_secret_key="sk_test",
        stripe_webhook_secret="whsec_test",
        paystack_secret_key="sk_paystack",
        paystack_callback_url=None,
        flutterwave_secret_key="FLWSECK_TEST",
        flutterwave_webhook_secret_hash="flw-hash",
        flutterwave_redirect_url=None,
        payment_http_timeout_seconds=5.0,
        payment_retry_attempts=3,
        payment_retry_base_delay_seconds=0.5,
        outbox_relay_interval_seconds=5,
        reconcile_interval_seconds=300,
        reconcile_stale_after_seconds=900,
        notification_service_url=None,
    )
    return replace(base, **overrides)


def test_every_provider_name_has_an_adapter_builder():
    assert set(manager_module._ADAPTER_BUILDERS) == set(PaymentProviderName)


def test_from_settings_registers_configured_vendors():
    manager = PaymentManager.from_settings(_settings())

    assert manager.names() == list(PaymentProviderName)
    assert manager.get_provider(PaymentProviderName.CARD).vendor_name == "stripe"
    assert manager.get_provider("paystack").vendor_name == "paystack"
    assert manager.get_provider("multi_rail").vendor_name == "flutterwave"


def test_from_settings_skips_providers_without_credentials():
    manager = PaymentManager.from_settings(_settings(flutterwave_webhook_secret_hash=None))

    assert manager.is_configured(PaymentProviderName.MULTI_RAIL) is False
    with pytest.raises(ProviderNotConfiguredError) as exc_info:
        manager.get_provider(PaymentProviderName.MULTI_RAIL)
    assert exc_info.value.status_code == 503
    assert exc_info.value.code == ErrorCode.PAYMENT_PROVIDER_NOT_CONFIGURED


def test_register_rejects_string_keys(fake_adapter_factory):
    manager = PaymentManager()

    with pytest.raises(TypeError):
        manager.register("card", fake_adapter_factory())  # type: ignore[arg-type]


def test_register_rejects_adapter_under_wrong_name(fake_adapter_factory):
    manager = PaymentManager()

    with pytest.raises(ValueError):
        manager.register(PaymentProviderName.MOBILE_MONEY, fake_adapter_factory(PaymentProviderName.CARD))


def test_resolve_provider_name_accepts_vendor_aliases():
    assert resolve_provider_name("Stripe") == PaymentProviderName.CARD
    assert resolve_provider_name("flutterwave") == PaymentProviderName.MULTI_RAIL
    assert resolve_provider_name("mobile_money") == PaymentProviderName.MOBILE_MONEY
    assert resolve_provider_name("crypto") is None
