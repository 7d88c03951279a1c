from __future__ import annotations

import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe

from core.errors import ErrorCode, ProviderError
from core.payments.stripe_provider import StripePaymentProvider
from core.payments.types import NormalizedEventType, ProviderStatus, RefundStatus, SubscriptionStatus

WEBHOOK_SECRET = "whsec_unit"


class _Resource:
    """Async SDK resource double: each method pops a scripted result or raises it."""

    def __init__(self, **results) -> None:
        self.calls: list[tuple[str, tuple, dict]] = []
        self._results = results

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)

        async def _method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            result = self._results[name]
            if isinstance(result, list):
                result = result.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        return _method


def _provider(**resources) -> StripePaymentProvider:
    client = SimpleNamespace(
        customers=resources.get("customers", _Resource()),
        payment_intents=resources.get("payment_intents", _Resource()),
        payment_methods=resources.get("payment_methods", _Resource()),
        refunds=resources.get("refunds", _Resource()),
        subscriptions=resources.get("subscriptions", _Resource()),
    )
    return StripePaymentProvider(secret_key="sk_test", webhook_secret=WEBHOOK_SECRET, client=client)


def _stripe_signature(payload: bytes, *, timestamp: int | None = None, secret: str = WEBHOOK_SECRET) -> str:
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.mark.asyncio
async def test_create_intent_passes_minor_units_and_idempotency_key():
    intents = _Resource(create_async={"id": "pi_abc", "status": "requires_payment_method", "client_secret": "cs_1"})
    provider = _provider(payment_intents=intents)

    handle = await provider.create_intent(
        5000,
        "USD",
        "cus_1",
        {"intent_id": "intent-1"},
        idempotency_key="intent-intent-1",
        customer_email="buyer@example.com",
    )

    assert handle.reference == "pi_abc"
    assert handle.status == ProviderStatus.REQUIRES_ACTION
    assert handle.client_secret == "cs_1"
    _, _, kwargs = intents.calls[0]
    assert kwargs["params"]["amount"] == 5000
    assert kwargs["params"]["currency"] == "usd"
    assert kwargs["params"]["customer"] == "cus_1"
    assert kwargs["options"] == {"idempotency_key": "intent-intent-1"}


@pytest.mark.asyncio
async def test_missing_intent_id_raises_missing_reference():
    provider = _provider(payment_intents=_Resource(create_async={"status": "processing"}))

    with pytest.raises(ProviderError) as exc_info:
        await provider.create_intent(100, "USD", None, {}, idempotency_key="k")

    assert exc_info.value.code == ErrorCode.PAYMENT_MISSING_REFERENCE
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_connection_errors_are_retryable_and_invalid_requests_are_not():
    provider = _provider(
        payment_intents=_Resource(
            create_async=[
                stripe.APIConnectionError("network down"),
                stripe.InvalidRequestError("Amount must be positive", param="amount", http_status=400),
            ]
        )
    )

    with pytest.raises(ProviderError) as first:
        await provider.create_intent(100, "USD", None, {}, idempotency_key="k")
    with pytest.raises(ProviderError) as second:
        await provider.create_intent(100, "USD", None, {}, idempotency_key="k")

    assert first.value.retryable is True
    assert first.value.code == ErrorCode.PAYMENT_PROVIDER_ERROR
    assert second.value.retryable is False
    assert second.value.code == ErrorCode.PAYMENT_PROVIDER_REJECTED


@pytest.mark.asyncio
async def test_card_decline_on_confirm_is_a_failed_payment():
    provider = _provider(
        payment_intents=_Resource(confirm_async=stripe.CardError("Your card was declined.", None, "card_declined"))
    )

    assert await provider.confirm_intent("pi_abc", "pm_card") == ProviderStatus.FAILED


@pytest.mark.asyncio
async def test_confirm_had_no_effect_only_for_untouched_intent():
    provider = _provider(
        payment_intents=_Resource(
            retrieve_async=[
                {"id": "pi_abc", "status": "requires_confirmation", "last_payment_error": None},
                {"id": "pi_abc", "status": "processing"},
            ]
        )
    )

    assert await provider.confirm_had_no_effect("pi_abc") is True
    assert await provider.confirm_had_no_effect("pi_abc") is False


@pytest.mark.asyncio
async def test_refund_tags_metadata_and_detects_prior_attempt():
    refunds = _Resource(
        create_async={"id": "re_1", "status": "pending"},
        list_async={"data": [{"id": "re_1", "metadata": {"refund_id": "refund-r1"}}]},
    )
    provider = _provider(refunds=refunds)

    handle = await provider.cancel_or_refund(
        "pi_abc",
        2000,
        "requested_by_customer",
        currency="USD",
        idempotency_key="refund-r1",
    )

    assert handle.reference == "re_1"
    assert handle.status == RefundStatus.PENDING
    _, _, kwargs = refunds.calls[0]
    assert kwargs["params"]["amount"] == 2000
    assert kwargs["params"]["reason"] == "requested_by_customer"
    assert kwargs["params"]["metadata"]["refund_id"] == "refund-r1"
    assert await provider.refund_had_no_effect("pi_abc", "refund-r1") is False
    assert await provider.refund_had_no_effect("pi_abc", "refund-other") is True


@pytest.mark.asyncio
async def test_create_subscription_reads_period_from_items():
    provider = _provider(
        subscriptions=_Resource(
            create_async={
                "id": "sub_1",
                "status": "trialing",
                "items": {"data": [{"current_period_start": 10, "current_period_end": 20}]},
            }
        )
    )

    handle = await provider.create_subscription("cus_1", "price_1", 14, idempotency_key="subscription-s1")

    assert handle.reference == "sub_1"
    assert handle.status == SubscriptionStatus.TRIALING
    assert (handle.current_period_start, handle.current_period_end) == (10, 20)


def test_webhook_signature_round_trip_and_tamper():
    body = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded"}).encode("utf-8")
    provider = _provider()
    header = _stripe_signature(body)

    assert provider.verify_webhook_signature(body, header) is True
    assert provider.verify_webhook_signature(body.replace(b"evt_1", b"evt_2"), header) is False
    assert provider.verify_webhook_signature(body, None) is False
    assert provider.verify_webhook_signature(body, _stripe_signature(body, timestamp=int(time.time()) - 3600)) is False


def test_parse_payment_intent_succeeded():
    body = json.dumps(
        {
            "id": "evt_1",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_abc", "amount": 5000, "amount_received": 5000, "currency": "usd"}},
        }
    ).encode("utf-8")

    event = _provider().parse_webhook_event(body)

    assert event.event_id == "evt_1"
    assert event.event_type == NormalizedEventType.INTENT_SUCCEEDED
    assert event.provider_reference_id == "pi_abc"
    assert event.amount_minor == 5000
    assert event.currency == "USD"


def test_parse_invoice_paid_links_subscription():
    body = json.dumps(
        {
            "id": "evt_2",
            "type": "invoice.paid",
            "data": {
                "object": {
                    "id": "in_1",
                    "amount_paid": 1500,
                    "currency": "usd",
                    "parent": {"subscription_details": {"subscription": "sub_1"}},
                }
            },
        }
    ).encode("utf-8")

    event = _provider().parse_webhook_event(body)

    assert event.event_type == NormalizedEventType.INVOICE_PAID
    assert event.provider_reference_id == "in_1"
    assert event.related_reference_id == "sub_1"


def test_parse_unknown_type_is_unsupported():
    body = json.dumps({"id": "evt_3", "type": "balance.available", "data": {"object": {}}}).encode("utf-8")

    assert _provider().parse_webhook_event(body).event_type == NormalizedEventType.UNSUPPORTED


@pytest.mark.parametrize(
    ("amount_minor", "currency"),
    [(1, "USD"), (5000, "USD"), (1, "JPY"), (99_999_999, "USD"), (99_999_999, "JPY")],
)
def test_minor_amounts_survive_the_boundary(amount_minor: int, currency: str):
    provider = _provider()

    assert provider.to_provider_amount(amount_minor, currency) == amount_minor
    assert provider.from_provider_amount(provider.to_provider_amount(amount_minor, currency), currency) == amount_minor


def test_fractional_minor_amount_is_rejected():
    with pytest.raises(ValueError):
        _provider().from_provider_amount(4999.5, "USD")
