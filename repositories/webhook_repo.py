from __future__ import annotations

import uuid
from typing import Any

from core.errors import DuplicateEventError
from core.payments.types import PaymentProviderName
from repositories.store import WEBHOOK_DELIVERIES, WEBHOOK_EVENTS, DocumentStore, DuplicateRecordError
from schemas.imports import WebhookOutcome
from schemas.payment_schema import WebhookDeliveryOut, WebhookEventOut


async def record_webhook_event(
    store: DocumentStore,
    *,
    provider: PaymentProviderName,
    provider_event_id: str,
    event_type: str,
    provider_reference_id: str | None,
    received_at: int,
    session: Any = None,
) -> WebhookEventOut:
    """Claim ``(provider, provider_event_id)`` in the ledger.

    Raises ``DuplicateEventError`` when the pair was already recorded.
    """
    document = {
        "_id": str(uuid.uuid4()),
        "provider": provider.value,
        "provider_event_id": provider_event_id,
        "event_type": event_type,
        "provider_reference_id": provider_reference_id,
        "outcome": WebhookOutcome.PROCESSING.value,
        "detail": None,
        "needs_review": False,
        "received_at": received_at,
        "processed_at": None,
    }
    try:
        stored = await store.insert(WEBHOOK_EVENTS, document, session=session)
    except DuplicateRecordError as exc:
        raise DuplicateEventError(provider.value, provider_event_id) from exc
    return WebhookEventOut(**stored)


async def set_webhook_event_outcome(
    store: DocumentStore,
    event_row_id: str,
    *,
    outcome: WebhookOutcome,
    processed_at: int,
    detail: str | None = None,
    needs_review: bool = False,
    session: Any = None,
) -> WebhookEventOut | None:
    row = await store.compare_and_set(
        WEBHOOK_EVENTS,
        {"_id": event_row_id},
        set_fields={
            "outcome": outcome.value,
            "processed_at": processed_at,
            "detail": detail,
            "needs_review": needs_review,
        },
        session=session,
    )
    if row is None:
        return None
    return WebhookEventOut(**row)


async def get_webhook_event(
    store: DocumentStore,
    provider: PaymentProviderName,
    provider_event_id: str,
) -> WebhookEventOut | None:
    row = await store.find_one(
        WEBHOOK_EVENTS,
        {"provider": provider.value, "provider_event_id": provider_event_id},
    )
    if row is None:
        return None
    return WebhookEventOut(**row)


async def append_webhook_delivery(
    store: DocumentStore,
    *,
    provider: PaymentProviderName,
    outcome: WebhookOutcome,
    received_at: int,
    provider_event_id: str | None = None,
    event_type: str | None = None,
    detail: str | None = None,
    needs_review: bool = False,
    raw_payload: str | None = None,
) -> WebhookDeliveryOut:
    document = {
        "_id": str(uuid.uuid4()),
        "provider": provider.value,
        "provider_event_id": provider_event_id,
        "event_type": event_type,
        "outcome": outcome.value,
        "detail": detail,
        "needs_review": needs_review,
        "received_at": received_at,
        "reviewed_at": None,
        "raw_payload": raw_payload if needs_review else None,
    }
    stored = await store.insert(WEBHOOK_DELIVERIES, document)
    return WebhookDeliveryOut(**stored)


async def list_webhook_deliveries(
    store: DocumentStore,
    *,
    provider: PaymentProviderName | None = None,
    provider_event_id: str | None = None,
    limit: int = 100,
) -> list[WebhookDeliveryOut]:
    query: dict[str, Any] = {}
    if provider is not None:
        query["provider"] = provider.value
    if provider_event_id is not None:
        query["provider_event_id"] = provider_event_id
    rows = await store.find(WEBHOOK_DELIVERIES, query, sort=[("received_at", -1)], limit=limit)
    return [WebhookDeliveryOut(**row) for row in rows]


async def list_review_queue(store: DocumentStore, *, limit: int = 100) -> list[WebhookDeliveryOut]:
    rows = await store.find(
        WEBHOOK_DELIVERIES,
        {"needs_review": True, "reviewed_at": None},
        sort=[("received_at", 1)],
        limit=limit,
    )
    return [WebhookDeliveryOut(**row) for row in rows]


async def mark_delivery_reviewed(store: DocumentStore, delivery_id: str, *, now: int) -> WebhookDeliveryOut | None:
    row = await store.compare_and_set(
        WEBHOOK_DELIVERIES,
        {"_id": delivery_id, "needs_review": True, "reviewed_at": None},
        set_fields={"reviewed_at": now},
    )
    if row is None:
        return None
    return WebhookDeliveryOut(**row)


async def list_webhook_events(
    store: DocumentStore,
    *,
    provider: PaymentProviderName | None = None,
    outcome: WebhookOutcome | None = None,
    provider_reference_id: str | None = None,
    limit: int = 100,
) -> list[WebhookEventOut]:
    query: dict[str, Any] = {}
    if provider is not None:
        query["provider"] = provider.value
    if outcome is not None:
        query["outcome"] = outcome.value
    if provider_reference_id is not None:
        query["provider_reference_id"] = provider_reference_id
    rows = await store.find(WEBHOOK_EVENTS, query, sort=[("received_at", -1)], limit=limit)
    return [WebhookEventOut(**row) for row in rows]
