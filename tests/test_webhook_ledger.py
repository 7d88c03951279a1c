from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from core.errors import SignatureError
from core.payments.flutterwave_provider import FlutterwavePaymentProvider
from core.payments.manager import PaymentManager
from core.payments.types import NormalizedEventType, PaymentProviderName
from core.payments.webhooks import hmac_hexdigest
from repositories.outbox_repo import list_messages
from repositories.store import INVOICES
from repositories.webhook_repo import get_webhook_event
from schemas.imports import (
    IntentStatus,
    InvoiceStatus,
    OutboxTopic,
    RefundStatus,
    SubscriptionStatus,
    WebhookOutcome,
)
from schemas.payment_schema import CustomerIn, PaymentIntentIn, SubscriptionIn
from services.payment_service import PaymentOrchestrator

WORKSPACE = "ws-1"


async def _processing_intent(orchestrator, card_adapter, reference: str = "pi_abc"):
    card_adapter.intent_reference = reference
    customer = await orchestrator.create_customer(
        CustomerIn(email="buyer@example.com"),
        user_id="user-1",
        workspace_id=WORKSPACE,
    )
    return await orchestrator.create_payment_intent(
        PaymentIntentIn(provider="card", amount_minor=5000, currency="USD", customer_id=customer.id),
        workspace_id=WORKSPACE,
    )


async def _deliver(orchestrator, card_adapter, body: bytes):
    return await orchestrator.handle_webhook(PaymentProviderName.CARD, body, card_adapter.sign(body))


@pytest.mark.asyncio
async def test_concurrent_deliveries_apply_exactly_once(orchestrator, card_adapter, event_body, store):
    intent = await _processing_intent(orchestrator, card_adapter)
    body = event_body("evt_1", NormalizedEventType.INTENT_SUCCEEDED, "pi_abc", amount=5000, currency="USD")

    acks = await asyncio.gather(*[_deliver(orchestrator, card_adapter, body) for _ in range(5)])

    outcomes = sorted(ack.outcome.value for ack in acks)
    assert outcomes.count(WebhookOutcome.APPLIED.value) == 1
    assert outcomes.count(WebhookOutcome.IGNORED_DUPLICATE.value) == 4
    assert (await orchestrator.get_payment_intent(intent.id)).status == IntentStatus.SUCCEEDED
    deliveries = await orchestrator.list_webhook_deliveries(provider_event_id="evt_1")
    assert len(deliveries) == 5
    succeeded = await list_messages(store, topic=OutboxTopic.PAYMENT_SUCCEEDED)
    assert len(succeeded) == 1

    ledger_row = await get_webhook_event(store, PaymentProviderName.CARD, "evt_1")
    assert ledger_row.outcome == WebhookOutcome.APPLIED
    assert ledger_row.processed_at is not None


@pytest.mark.asyncio
async def test_tampered_body_is_rejected_and_recorded(orchestrator, card_adapter, event_body):
    intent = await _processing_intent(orchestrator, card_adapter)
    body = event_body("evt_1", NormalizedEventType.INTENT_SUCCEEDED, "pi_abc", amount=5000, currency="USD")
    header = card_adapter.sign(body)
    tampered = body.replace(b"5000", b"9000")

    with pytest.raises(SignatureError) as exc_info:
        await orchestrator.handle_webhook("card", tampered, header)

    assert exc_info.value.status_code == 400
    assert exc_info.value.details is None
    [delivery] = await orchestrator.list_webhook_deliveries()
    assert delivery.outcome == WebhookOutcome.REJECTED_INVALID_SIGNATURE
    assert delivery.raw_payload is None
    assert (await orchestrator.get_payment_intent(intent.id)).status == IntentStatus.PROCESSING


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(orchestrator, event_body):
    body = event_body("evt_1", NormalizedEventType.INTENT_SUCCEEDED, "pi_abc")

    with pytest.raises(SignatureError):
        await orchestrator.handle_webhook("card", body, None)


@pytest.mark.asyncio
async def test_unknown_reference_goes_to_review(orchestrator, card_adapter, event_body, store):
    body = event_body("evt_9", NormalizedEventType.INTENT_SUCCEEDED, "pi_missing", amount=100, currency="USD")

    ack = await _deliver(orchestrator, card_adapter, body)

    assert ack.outcome == WebhookOutcome.REJECTED_UNKNOWN_REFERENCE
    [queued] = await orchestrator.list_review_queue()
    assert queued.provider_event_id == "evt_9"
    assert queued.raw_payload is not None
    assert "pi_missing" in queued.raw_payload
    review = await list_messages(store, topic=OutboxTopic.REVIEW_REQUIRED)
    assert review[0]["payload"]["outcome"] == WebhookOutcome.REJECTED_UNKNOWN_REFERENCE.value
    [ledger_row] = await orchestrator.list_webhook_events(outcome=WebhookOutcome.REJECTED_UNKNOWN_REFERENCE)
    assert ledger_row.provider_reference_id == "pi_missing"
    assert ledger_row.needs_review is True

    reviewed = await orchestrator.mark_delivery_reviewed(queued.id)
    assert reviewed.reviewed_at is not None
    assert await orchestrator.list_review_queue() == []


@pytest.mark.asyncio
async def test_amount_mismatch_is_queued_for_review_without_transition(orchestrator, card_adapter, event_body):
    intent = await _processing_intent(orchestrator, card_adapter)
    body = event_body("evt_2", NormalizedEventType.INTENT_SUCCEEDED, "pi_abc", amount=4000, currency="USD")

    ack = await _deliver(orchestrator, card_adapter, body)

    assert ack.outcome == WebhookOutcome.QUEUED_FOR_REVIEW
    assert (await orchestrator.get_payment_intent(intent.id)).status == IntentStatus.PROCESSING
    [queued] = await orchestrator.list_review_queue()
    assert "expected 5000 USD" in queued.detail


@pytest.mark.asyncio
async def test_late_failure_for_succeeded_intent_is_a_logged_noop(orchestrator, card_adapter, event_body):
    intent = await _processing_intent(orchestrator, card_adapter)
    await _deliver(
        orchestrator,
        card_adapter,
        event_body("evt_ok", NormalizedEventType.INTENT_SUCCEEDED, "pi_abc", amount=5000, currency="USD"),
    )

    ack = await _deliver(
        orchestrator,
        card_adapter,
        event_body("evt_late", NormalizedEventType.INTENT_FAILED, "pi_abc", outcome="card_declined"),
    )

    assert ack.outcome == WebhookOutcome.APPLIED
    assert (await orchestrator.get_payment_intent(intent.id)).status == IntentStatus.SUCCEEDED
    [late] = await orchestrator.list_webhook_deliveries(provider_event_id="evt_late")
    assert late.detail.startswith("no-op")


@pytest.mark.asyncio
async def test_redirect_event_resolves_intent_by_idempotency_key(orchestrator, card_adapter, event_body, store):
    intent = await _processing_intent(orchestrator, card_adapter, reference="pi_other")
    body = event_body(
        "evt_3",
        NormalizedEventType.INTENT_SUCCEEDED,
        f"intent-{intent.id}",
        amount=5000,
        currency="USD",
    )

    ack = await _deliver(orchestrator, card_adapter, body)

    assert ack.outcome == WebhookOutcome.APPLIED
    assert (await orchestrator.get_payment_intent(intent.id)).status == IntentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_unreadable_payload_is_queued_for_review(orchestrator, card_adapter):
    body = b"not json at all"

    ack = await orchestrator.handle_webhook("card", body, card_adapter.sign(body))

    assert ack.outcome == WebhookOutcome.QUEUED_FOR_REVIEW
    assert ack.provider_event_id is None
    [queued] = await orchestrator.list_review_queue()
    assert queued.raw_payload == "not json at all"


@pytest.mark.asyncio
async def test_amount_finer_than_currency_precision_is_queued_for_review(store):
    def unused(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected call to {request.url}")

    provider = FlutterwavePaymentProvider(
        secret_key="FLWSECK_TEST",
        webhook_secret_hash="flw-secret-hash",
        redirect_url="https://shop.example/return",
        transport=httpx.MockTransport(unused),
    )
    orchestrator = PaymentOrchestrator(
        providers=PaymentManager({PaymentProviderName.MULTI_RAIL: provider}),
        store=store,
        retry_base_delay=0,
    )
    body = json.dumps(
        {
            "event": "charge.completed",
            "data": {"id": 9100, "tx_ref": "intent-x", "amount": "10.001", "currency": "USD", "status": "successful"},
        }
    ).encode("utf-8")

    ack = await orchestrator.handle_webhook("multi_rail", body, hmac_hexdigest("flw-secret-hash", body))

    assert ack.outcome == WebhookOutcome.QUEUED_FOR_REVIEW
    [queued] = await orchestrator.list_review_queue()
    assert "more precision than USD allows" in queued.detail
    assert "10.001" in queued.raw_payload
    assert await orchestrator.list_webhook_events() == []


@pytest.mark.asyncio
async def test_adapter_parse_errors_are_queued_for_review(orchestrator, card_adapter, event_body, monkeypatch):
    def broken(raw_payload: bytes):
        raise ValueError("Invalid amount 'abc'")

    monkeypatch.setattr(card_adapter, "parse_webhook_event", broken)
    body = event_body("evt_bad", NormalizedEventType.INTENT_SUCCEEDED, "pi_abc", amount="abc")

    ack = await _deliver(orchestrator, card_adapter, body)

    assert ack.outcome == WebhookOutcome.QUEUED_FOR_REVIEW
    [queued] = await orchestrator.list_review_queue()
    assert queued.detail == "ValueError: Invalid amount 'abc'"


@pytest.mark.asyncio
async def test_unsupported_event_is_acknowledged(orchestrator, card_adapter, event_body):
    body = event_body("evt_4", "customer.updated", "cus_1")

    ack = await _deliver(orchestrator, card_adapter, body)

    assert ack.outcome == WebhookOutcome.IGNORED_UNSUPPORTED_EVENT
    assert await orchestrator.list_review_queue() == []
    assert await orchestrator.list_webhook_events() == []


@pytest.mark.asyncio
async def test_unsupported_state_does_not_claim_the_resource_event_id(orchestrator, card_adapter, event_body):
    intent = await _processing_intent(orchestrator, card_adapter, reference="INV_1")
    unpaid = event_body("invoice.update:5", "invoice.update", "INV_1")
    paid = event_body("invoice.update:5", NormalizedEventType.INTENT_SUCCEEDED, "INV_1", amount=5000, currency="USD")

    first = await _deliver(orchestrator, card_adapter, unpaid)
    second = await _deliver(orchestrator, card_adapter, paid)

    assert first.outcome == WebhookOutcome.IGNORED_UNSUPPORTED_EVENT
    assert second.outcome == WebhookOutcome.APPLIED
    assert (await orchestrator.get_payment_intent(intent.id)).status == IntentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_payment_reported_for_cancelled_intent_goes_to_review(orchestrator, card_adapter, event_body, store):
    intent = await _processing_intent(orchestrator, card_adapter)
    await orchestrator.cancel_payment_intent(intent.id)
    body = event_body("evt_paid_late", NormalizedEventType.INTENT_SUCCEEDED, "pi_abc", amount=5000, currency="USD")

    ack = await _deliver(orchestrator, card_adapter, body)

    assert ack.outcome == WebhookOutcome.QUEUED_FOR_REVIEW
    assert (await orchestrator.get_payment_intent(intent.id)).status == IntentStatus.CANCELLED
    [queued] = await orchestrator.list_review_queue()
    assert queued.provider_event_id == "evt_paid_late"
    assert "CANCELLED intent" in queued.detail
    [review] = await list_messages(store, topic=OutboxTopic.REVIEW_REQUIRED)
    assert review["payload"]["outcome"] == WebhookOutcome.QUEUED_FOR_REVIEW.value
    assert await list_messages(store, topic=OutboxTopic.PAYMENT_SUCCEEDED) == []


@pytest.mark.asyncio
async def test_refund_events_settle_refunds(orchestrator, card_adapter, event_body):
    intent = await _processing_intent(orchestrator, card_adapter)
    await orchestrator.confirm_payment_intent(intent.id)
    ok = await orchestrator.create_refund(intent.id, 2000)
    bad = await orchestrator.create_refund(intent.id, 1000)

    await _deliver(orchestrator, card_adapter, event_body("evt_r1", NormalizedEventType.REFUND_COMPLETED, ok.provider_refund_id))
    await _deliver(
        orchestrator,
        card_adapter,
        event_body("evt_r2", NormalizedEventType.REFUND_FAILED, bad.provider_refund_id, outcome="insufficient_funds"),
    )

    refunds = {r.id: r for r in await orchestrator.list_refunds(intent.id)}
    assert refunds[ok.id].status == RefundStatus.SUCCEEDED
    assert refunds[bad.id].status == RefundStatus.FAILED
    assert refunds[bad.id].failure_message == "insufficient_funds"
    assert (await orchestrator.get_payment_intent(intent.id)).amount_refunded_minor == 2000


@pytest.mark.asyncio
async def test_invoice_events_drive_subscription_status(orchestrator, card_adapter, event_body, store):
    card_adapter.subscription_status = SubscriptionStatus.INCOMPLETE
    customer = await orchestrator.create_customer(CustomerIn(email="sub@example.com"), user_id="u", workspace_id=WORKSPACE)
    subscription = await orchestrator.create_subscription(
        SubscriptionIn(provider="card", customer_id=customer.id, plan_id="price_basic"),
        workspace_id=WORKSPACE,
    )
    reference = subscription.provider_subscription_id
    assert subscription.status == SubscriptionStatus.INCOMPLETE

    failed = event_body(
        "evt_i1",
        NormalizedEventType.INVOICE_PAYMENT_FAILED,
        "in_1",
        related=reference,
        amount=1500,
        currency="USD",
        outcome="card_declined",
    )
    assert (await _deliver(orchestrator, card_adapter, failed)).outcome == WebhookOutcome.APPLIED
    assert (await orchestrator.get_subscription(subscription.id)).status == SubscriptionStatus.PAST_DUE
    [invoice_row] = await store.find(INVOICES, {"provider_invoice_id": "in_1"})
    assert invoice_row["status"] == InvoiceStatus.OPEN.value
    assert invoice_row["amount_minor"] == 1500
    assert len(await list_messages(store, topic=OutboxTopic.INVOICE_PAYMENT_FAILED)) == 1

    paid = event_body("evt_i2", NormalizedEventType.INVOICE_PAID, "in_1", related=reference, amount=1500, currency="USD")
    assert (await _deliver(orchestrator, card_adapter, paid)).outcome == WebhookOutcome.APPLIED
    assert (await orchestrator.get_subscription(subscription.id)).status == SubscriptionStatus.ACTIVE
    [invoice] = await orchestrator.list_invoices(customer.id)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.paid_at is not None

    cancelled = event_body("evt_s1", NormalizedEventType.SUBSCRIPTION_CANCELLED, reference)
    assert (await _deliver(orchestrator, card_adapter, cancelled)).outcome == WebhookOutcome.APPLIED
    assert (await orchestrator.get_subscription(subscription.id)).status == SubscriptionStatus.CANCELLED


@pytest.mark.asyncio
async def test_trialing_activation(orchestrator, card_adapter, event_body):
    card_adapter.subscription_status = SubscriptionStatus.INCOMPLETE
    customer = await orchestrator.create_customer(CustomerIn(email="t@example.com"), user_id="u", workspace_id=WORKSPACE)
    subscription = await orchestrator.create_subscription(
        SubscriptionIn(provider="card", customer_id=customer.id, plan_id="price_trial", trial_days=14),
        workspace_id=WORKSPACE,
    )

    body = event_body(
        "evt_t1",
        NormalizedEventType.SUBSCRIPTION_ACTIVATED,
        subscription.provider_subscription_id,
        outcome="trialing",
    )
    await _deliver(orchestrator, card_adapter, body)

    assert (await orchestrator.get_subscription(subscription.id)).status == SubscriptionStatus.TRIALING
