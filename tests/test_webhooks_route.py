from __future__ import annotations

from dataclasses import replace

from fastapi.testclient import TestClient

from core.payments.manager import PaymentManager
from core.payments.types import NormalizedEventType, PaymentProviderName
from core.settings import Settings
from main import create_app


def _settings(**overrides) -> Settings:
    base = Settings(
        env="test",
        mongo_url=None,
        db_name=None,
        cors_origins=("http://localhost:3000",),
        debug_include_error_details=False,
        log_level="WARNING",
        celery_broker_url=None,
        celery_result_backend=None,
        payment_providers=("card",),
        stripe_secret_key="sk_test",
        stripe_webhook_secret="whsec_test",
        paystack_secret_key=None,
        paystack_callback_url=None,
        flutterwave_secret_key=None,
        flutterwave_webhook_secret_hash=None,
        flutterwave_redirect_url=None,
        payment_http_timeout_seconds=5.0,
        payment_retry_attempts=3,
        payment_retry_base_delay_seconds=0,
        outbox_relay_interval_seconds=5,
        reconcile_interval_seconds=300,
        reconcile_stale_after_seconds=900,
        notification_service_url=None,
    )
    return replace(base, **overrides)


def _client(store, card_adapter, fake_queue, *, raise_server_exceptions: bool = True) -> TestClient:
    app = create_app(
        settings=_settings(),
        store=store,
        providers=PaymentManager({PaymentProviderName.CARD: card_adapter}),
        queue=fake_queue,
        run_scheduler=False,
    )
    return TestClient(app, raise_server_exceptions=raise_server_exceptions)


def _headers() -> dict[str, str]:
    return {"X-User-Id": "user-1", "X-Workspace-Id": "ws-1"}


def test_health_reports_store_and_providers(store, card_adapter, fake_queue):
    with _client(store, card_adapter, fake_queue) as client:
        response = client.get("/health", headers={"X-Request-ID": "req-42"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-42"
    payload = response.json()
    assert payload["requestId"] == "req-42"
    assert payload["data"]["status"] == "healthy"
    assert payload["data"]["services"]["store"]["status"] == "healthy"
    configured = {item["provider"]: item["configured"] for item in payload["data"]["providers"]}
    assert configured == {"card": True, "mobile_money": False, "multi_rail": False}


def test_unknown_route_uses_error_envelope(store, card_adapter, fake_queue):
    with _client(store, card_adapter, fake_queue) as client:
        response = client.get("/v1/does-not-exist")

    assert response.status_code == 404
    payload = response.json()
    assert payload["success"] is False
    assert payload["data"]["code"] == "HTTP_EXCEPTION"


def test_webhook_for_unknown_provider_is_not_found(store, card_adapter, fake_queue, event_body):
    body = event_body("evt_1", NormalizedEventType.INTENT_SUCCEEDED, "pi_abc")

    with _client(store, card_adapter, fake_queue) as client:
        response = client.post("/v1/payments/webhooks/venmo", content=body)

    assert response.status_code == 404
    assert response.json()["data"]["code"] == "RESOURCE_NOT_FOUND"


def test_webhook_with_bad_signature_is_rejected(store, card_adapter, fake_queue, event_body):
    body = event_body("evt_1", NormalizedEventType.INTENT_SUCCEEDED, "pi_abc")

    with _client(store, card_adapter, fake_queue) as client:
        response = client.post(
            "/v1/payments/webhooks/stripe",
            content=body,
            headers={"x-fake-signature": "0" * 64},
        )
        deliveries = client.get(
            "/v1/payments/ledger/deliveries",
            headers={**_headers(), "X-User-Role": "admin"},
        )

    assert response.status_code == 400
    assert response.json()["data"]["code"] == "PAYMENT_WEBHOOK_INVALID"
    [delivery] = deliveries.json()["data"]
    assert delivery["outcome"] == "REJECTED_INVALID_SIGNATURE"


def test_webhook_for_unconfigured_provider_is_unavailable(store, card_adapter, fake_queue, event_body):
    body = event_body("evt_1", NormalizedEventType.INTENT_SUCCEEDED, "ref")

    with _client(store, card_adapter, fake_queue) as client:
        response = client.post("/v1/payments/webhooks/paystack", content=body)

    assert response.status_code == 503


def test_signed_webhook_settles_intent_and_redelivery_is_acknowledged(store, card_adapter, fake_queue, event_body):
    card_adapter.intent_reference = "pi_abc"
    body = event_body("evt_1", NormalizedEventType.INTENT_SUCCEEDED, "pi_abc", amount=5000, currency="USD")
    signed = {"x-fake-signature": card_adapter.sign(body)}

    with _client(store, card_adapter, fake_queue) as client:
        customer = client.post(
            "/v1/payments/customers",
            json={"email": "buyer@example.com"},
            headers=_headers(),
        ).json()["data"]
        intent = client.post(
            "/v1/payments/intents",
            json={"provider": "card", "amount_minor": 5000, "currency": "USD", "customer_id": customer["id"]},
            headers=_headers(),
        ).json()["data"]

        first = client.post("/v1/payments/webhooks/card", content=body, headers=signed)
        second = client.post("/v1/payments/webhooks/stripe", content=body, headers=signed)
        settled = client.get(f"/v1/payments/intents/{intent['id']}", headers=_headers()).json()["data"]
        ledger = client.get(
            "/v1/payments/ledger/events",
            params={"provider": "card"},
            headers={**_headers(), "X-User-Role": "admin"},
        ).json()["data"]

    assert first.status_code == 200
    assert first.json()["data"] == {"received": True, "outcome": "APPLIED", "provider_event_id": "evt_1"}
    assert second.status_code == 200
    assert second.json()["data"]["outcome"] == "IGNORED_DUPLICATE"
    assert settled["status"] == "SUCCEEDED"
    assert [(row["provider_event_id"], row["outcome"]) for row in ledger] == [("evt_1", "APPLIED")]


def test_unhandled_errors_are_enveloped_without_details(store, card_adapter, fake_queue):
    card_adapter.failures["attach_payment_method"] = [RuntimeError("boom")]

    with _client(store, card_adapter, fake_queue, raise_server_exceptions=False) as client:
        customer = client.post(
            "/v1/payments/customers",
            json={"email": "buyer@example.com"},
            headers=_headers(),
        ).json()["data"]
        response = client.post(
            "/v1/payments/payment-methods",
            json={"provider": "card", "customer_id": customer["id"], "method_token": "pm_card", "type": "card"},
            headers=_headers(),
        )

    assert response.status_code == 500
    payload = response.json()
    assert payload["data"] == {"code": "INTERNAL_ERROR", "details": None}
