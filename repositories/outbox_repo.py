from __future__ import annotations

import uuid
from typing import Any

from repositories.store import OUTBOX, DocumentStore
from schemas.imports import OutboxTopic

MAX_DELIVERY_ATTEMPTS = 10


async def enqueue_message(
    store: DocumentStore,
    *,
    topic: OutboxTopic,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict[str, Any],
    now: int,
    session: Any = None,
) -> dict[str, Any]:
    """Queue an integration event; pass the open ``session`` to commit it with the state change."""
    document = {
        "_id": str(uuid.uuid4()),
        "topic": topic.value,
        "aggregate_type": aggregate_type,
        "aggregate_id": aggregate_id,
        "payload": payload,
        "attempts": 0,
        "last_error": None,
        "created_at": now,
        "delivered_at": None,
        "dead": False,
    }
    return await store.insert(OUTBOX, document, session=session)


async def list_pending_messages(store: DocumentStore, *, limit: int = 100) -> list[dict[str, Any]]:
    return await store.find(
        OUTBOX,
        {"delivered_at": None, "dead": False},
        sort=[("created_at", 1)],
        limit=limit,
    )


async def list_messages(store: DocumentStore, *, topic: OutboxTopic | None = None) -> list[dict[str, Any]]:
    query: dict[str, Any] = {}
    if topic is not None:
        query["topic"] = topic.value
    return await store.find(OUTBOX, query, sort=[("created_at", 1)])


async def mark_message_delivered(store: DocumentStore, message_id: str, *, now: int) -> bool:
    row = await store.compare_and_set(
        OUTBOX,
        {"_id": message_id, "delivered_at": None},
        set_fields={"delivered_at": now},
        inc_fields={"attempts": 1},
    )
    return row is not None


async def mark_message_failed(store: DocumentStore, message_id: str, *, error: str) -> dict[str, Any] | None:
    row = await store.compare_and_set(
        OUTBOX,
        {"_id": message_id, "delivered_at": None},
        set_fields={"last_error": error[:500]},
        inc_fields={"attempts": 1},
    )
    if row is not None and row["attempts"] >= MAX_DELIVERY_ATTEMPTS:
        row = await store.compare_and_set(OUTBOX, {"_id": message_id}, set_fields={"dead": True})
    return row
