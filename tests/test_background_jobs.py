from __future__ import annotations

import asyncio
import json
import threading
from types import SimpleNamespace

import httpx
import pytest

import core.task as task_module
from core.errors import ProviderError
from core.payments.types import ProviderStatus
from core.queue.celery_provider import CeleryQueueProvider
from core.queue.types import DELIVER_PAYMENT_EVENT
from core.scheduler import build_scheduler
from repositories.outbox_repo import MAX_DELIVERY_ATTEMPTS, enqueue_message, list_messages, list_pending_messages
from schemas.imports import IntentStatus, OutboxTopic
from schemas.payment_schema import CustomerIn, PaymentIntentIn
from services.outbox_service import OutboxRelay
from services.reconciliation_service import reconcile_stale_intents


async def _stale_intent(orchestrator, card_adapter):
    card_adapter.intent_reference = "pi_stale"
    customer = await orchestrator.create_customer(
        CustomerIn(email="late@example.com"),
        user_id="user-1",
        workspace_id="ws-1",
    )
    return await orchestrator.create_payment_intent(
        PaymentIntentIn(provider="card", amount_minor=1200, currency="USD", customer_id=customer.id),
        workspace_id="ws-1",
    )


async def _queue_message(store, aggregate_id: str = "pi-1") -> dict:
    return await enqueue_message(
        store,
        topic=OutboxTopic.PAYMENT_SUCCEEDED,
        aggregate_type="payment_intent",
        aggregate_id=aggregate_id,
        payload={"payment_intent_id": aggregate_id},
        now=1_700_000_000,
    )


@pytest.mark.asyncio
async def test_relay_hands_pending_messages_to_the_queue(store, fake_queue):
    first = await _queue_message(store, "pi-1")
    await _queue_message(store, "pi-2")
    relay = OutboxRelay(store=store, queue=fake_queue)

    assert await relay.relay_once() == 2
    assert await relay.relay_once() == 0

    task_key, payload = fake_queue.jobs[0]
    assert task_key == DELIVER_PAYMENT_EVENT
    assert payload == {
        "message_id": first["_id"],
        "topic": OutboxTopic.PAYMENT_SUCCEEDED.value,
        "payload": {"payment_intent_id": "pi-1"},
    }
    assert await list_pending_messages(store) == []


@pytest.mark.asyncio
async def test_relay_keeps_message_pending_until_broker_accepts(store, fake_queue):
    await _queue_message(store)
    fake_queue.fail_with = ConnectionError("broker unreachable")
    relay = OutboxRelay(store=store, queue=fake_queue)

    assert await relay.relay_once() == 0

    [message] = await list_pending_messages(store)
    assert message["attempts"] == 1
    assert message["last_error"] == "broker unreachable"

    fake_queue.fail_with = None
    assert await relay.relay_once() == 1


@pytest.mark.asyncio
async def test_relay_gives_up_after_max_attempts(store, fake_queue):
    await _queue_message(store)
    fake_queue.fail_with = ConnectionError("broker unreachable")
    relay = OutboxRelay(store=store, queue=fake_queue)

    for _ in range(MAX_DELIVERY_ATTEMPTS):
        await relay.relay_once()

    assert await list_pending_messages(store) == []
    [message] = await list_messages(store)
    assert message["dead"] is True
    assert message["attempts"] == MAX_DELIVERY_ATTEMPTS


@pytest.mark.asyncio
async def test_relay_does_not_block_the_event_loop_on_a_slow_broker(store, fake_queue):
    await _queue_message(store)
    release = threading.Event()
    accept = fake_queue.enqueue

    def slow_enqueue(task_key, payload):
        release.wait(timeout=5)
        return accept(task_key, payload)

    fake_queue.enqueue = slow_enqueue
    relay = OutboxRelay(store=store, queue=fake_queue)
    relaying = asyncio.create_task(relay.relay_once())

    await asyncio.sleep(0.05)
    assert not relaying.done()
    release.set()

    assert await asyncio.wait_for(relaying, timeout=5) == 1
    assert len(fake_queue.jobs) == 1


def test_celery_provider_sends_registered_task_name():
    sent: list[tuple[str, dict]] = []

    def send_task(name, kwargs=None):
        sent.append((name, kwargs))
        return SimpleNamespace(id="celery-1")

    provider = CeleryQueueProvider(SimpleNamespace(send_task=send_task))
    job = provider.enqueue(DELIVER_PAYMENT_EVENT, {"message_id": "m-1", "topic": "payment.succeeded", "payload": {}})

    assert job.task_id == "celery-1"
    assert job.backend == "celery"
    assert job.task_name == "celery_worker.deliver_payment_event"
    assert sent == [
        (
            "celery_worker.deliver_payment_event",
            {"message_id": "m-1", "topic": "payment.succeeded", "payload": {}},
        )
    ]


def test_celery_provider_rejects_unknown_task_key():
    provider = CeleryQueueProvider(SimpleNamespace(send_task=lambda name, kwargs=None: None))

    with pytest.raises(ValueError):
        provider.enqueue("send_newsletter", {})


@pytest.mark.asyncio
async def test_reconcile_settles_stale_processing_intents(orchestrator, card_adapter):
    intent = await _stale_intent(orchestrator, card_adapter)
    assert intent.status == IntentStatus.PROCESSING
    card_adapter.remote_status = ProviderStatus.SUCCEEDED

    settled = await reconcile_stale_intents(orchestrator, stale_after_seconds=0)

    assert settled == 1
    assert (await orchestrator.get_payment_intent(intent.id)).status == IntentStatus.SUCCEEDED
    assert await reconcile_stale_intents(orchestrator, stale_after_seconds=0) == 0


@pytest.mark.asyncio
async def test_reconcile_skips_intents_whose_provider_check_fails(orchestrator, card_adapter):
    intent = await _stale_intent(orchestrator, card_adapter)
    card_adapter.failures["fetch_intent_status"] = [
        ProviderError("down", provider="fakepay", retryable=False),
    ]

    assert await reconcile_stale_intents(orchestrator, stale_after_seconds=0) == 0
    assert (await orchestrator.get_payment_intent(intent.id)).status == IntentStatus.PROCESSING


@pytest.mark.asyncio
async def test_deliver_payment_event_posts_with_idempotency_key(monkeypatch):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    monkeypatch.setattr(
        task_module,
        "get_settings",
        lambda: SimpleNamespace(
            notification_service_url="https://notify.example/events",
            payment_http_timeout_seconds=5.0,
        ),
    )

    result = await task_module.deliver_payment_event(
        "m-1",
        "payment.succeeded",
        {"payment_intent_id": "pi-1"},
        transport=httpx.MockTransport(handler),
    )

    assert result == {"delivered": True, "message_id": "m-1"}
    request = seen[0]
    assert request.headers["Idempotency-Key"] == "m-1"
    assert json.loads(request.content) == {
        "id": "m-1",
        "topic": "payment.succeeded",
        "payload": {"payment_intent_id": "pi-1"},
    }


@pytest.mark.asyncio
async def test_deliver_payment_event_without_target_is_a_noop(monkeypatch):
    monkeypatch.setattr(
        task_module,
        "get_settings",
        lambda: SimpleNamespace(notification_service_url=None, payment_http_timeout_seconds=5.0),
    )

    result = await task_module.deliver_payment_event("m-2", "refund.succeeded", {})

    assert result == {"delivered": False, "message_id": "m-2"}


@pytest.mark.asyncio
async def test_deliver_payment_event_raises_on_server_error(monkeypatch):
    monkeypatch.setattr(
        task_module,
        "get_settings",
        lambda: SimpleNamespace(
            notification_service_url="https://notify.example/events",
            payment_http_timeout_seconds=5.0,
        ),
    )

    with pytest.raises(httpx.HTTPStatusError):
        await task_module.deliver_payment_event(
            "m-3",
            "payment.failed",
            {},
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )


def test_scheduler_registers_relay_and_reconcile_jobs(orchestrator, store, fake_queue):
    settings = SimpleNamespace(
        outbox_relay_interval_seconds=5,
        reconcile_interval_seconds=300,
        reconcile_stale_after_seconds=900,
    )
    relay = OutboxRelay(store=store, queue=fake_queue)

    scheduler = build_scheduler(settings, orchestrator=orchestrator, relay=relay)

    jobs = {job.id: job for job in scheduler.get_jobs()}
    assert set(jobs) == {"outbox_relay", "reconcile_stale_intents"}
    assert jobs["reconcile_stale_intents"].kwargs["stale_after_seconds"] == 900
