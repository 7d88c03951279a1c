from __future__ import annotations

from typing import Any

from core.payments.types import IntentStatus, PaymentProviderName, RefundStatus
from repositories.store import PAYMENT_INTENTS, REFUNDS, DocumentStore
from schemas.payment_schema import PaymentIntentOut, RefundOut


async def insert_payment_intent(store: DocumentStore, document: dict[str, Any]) -> PaymentIntentOut:
    stored = await store.insert(PAYMENT_INTENTS, document)
    return PaymentIntentOut(**stored)


async def get_payment_intent_by_id(store: DocumentStore, intent_id: str, *, session: Any = None) -> PaymentIntentOut | None:
    row = await store.find_one(PAYMENT_INTENTS, {"_id": intent_id}, session=session)
    if row is None:
        return None
    return PaymentIntentOut(**row)


async def get_payment_intent_by_reference(
    store: DocumentStore,
    provider: PaymentProviderName,
    reference: str,
    *,
    session: Any = None,
) -> PaymentIntentOut | None:
    row = await store.find_one(
        PAYMENT_INTENTS,
        {"provider": provider.value, "provider_reference_id": reference},
        session=session,
    )
    if row is None:
        return None
    return PaymentIntentOut(**row)


async def list_payment_intents(
    store: DocumentStore,
    *,
    workspace_id: str,
    status: IntentStatus | None = None,
    created_since: int | None = None,
    limit: int = 0,
) -> list[PaymentIntentOut]:
    query: dict[str, Any] = {"workspace_id": workspace_id}
    if status is not None:
        query["status"] = status.value
    if created_since is not None:
        query["created_at"] = {"$gte": created_since}
    rows = await store.find(PAYMENT_INTENTS, query, sort=[("created_at", -1)], limit=limit)
    return [PaymentIntentOut(**row) for row in rows]


async def list_stale_processing_intents(store: DocumentStore, *, updated_before: int, limit: int) -> list[PaymentIntentOut]:
    rows = await store.find(
        PAYMENT_INTENTS,
        {
            "status": IntentStatus.PROCESSING.value,
            "provider_reference_id": {"$ne": None},
            "updated_at": {"$lte": updated_before},
        },
        sort=[("updated_at", 1)],
        limit=limit,
    )
    return [PaymentIntentOut(**row) for row in rows]


async def transition_payment_intent(
    store: DocumentStore,
    intent_id: str,
    *,
    expected: IntentStatus,
    target: IntentStatus,
    now: int,
    fields: dict[str, Any] | None = None,
    session: Any = None,
) -> PaymentIntentOut | None:
    row = await store.compare_and_set(
        PAYMENT_INTENTS,
        {"_id": intent_id, "status": expected.value},
        set_fields={"status": target.value, "updated_at": now, **(fields or {})},
        session=session,
    )
    if row is None:
        return None
    return PaymentIntentOut(**row)


async def assign_payment_intent_reference(
    store: DocumentStore,
    intent_id: str,
    *,
    reference: str,
    checkout_url: str | None,
    client_secret: str | None,
    now: int,
) -> PaymentIntentOut | None:
    """Write the provider reference once and move PENDING to PROCESSING."""
    row = await store.compare_and_set(
        PAYMENT_INTENTS,
        {"_id": intent_id, "status": IntentStatus.PENDING.value, "provider_reference_id": None},
        set_fields={
            "provider_reference_id": reference,
            "checkout_url": checkout_url,
            "client_secret": client_secret,
            "status": IntentStatus.PROCESSING.value,
            "updated_at": now,
        },
    )
    if row is None:
        return None
    return PaymentIntentOut(**row)


async def reserve_refund_amount(
    store: DocumentStore,
    intent_id: str,
    *,
    amount_minor: int,
    intent_amount_minor: int,
    now: int,
) -> PaymentIntentOut | None:
    """Atomically add ``amount_minor`` to the refunded total if it still fits."""
    row = await store.compare_and_set(
        PAYMENT_INTENTS,
        {
            "_id": intent_id,
            "status": IntentStatus.SUCCEEDED.value,
            "amount_refunded_minor": {"$lte": intent_amount_minor - amount_minor},
        },
        set_fields={"updated_at": now},
        inc_fields={"amount_refunded_minor": amount_minor},
    )
    if row is None:
        return None
    return PaymentIntentOut(**row)


async def release_refund_amount(
    store: DocumentStore,
    intent_id: str,
    *,
    amount_minor: int,
    now: int,
    session: Any = None,
) -> None:
    await store.compare_and_set(
        PAYMENT_INTENTS,
        {"_id": intent_id, "amount_refunded_minor": {"$gte": amount_minor}},
        set_fields={"updated_at": now},
        inc_fields={"amount_refunded_minor": -amount_minor},
        session=session,
    )


async def insert_refund(store: DocumentStore, document: dict[str, Any]) -> RefundOut:
    stored = await store.insert(REFUNDS, document)
    return RefundOut(**stored)


async def get_refund_by_id(store: DocumentStore, refund_id: str) -> RefundOut | None:
    row = await store.find_one(REFUNDS, {"_id": refund_id})
    if row is None:
        return None
    return RefundOut(**row)


async def get_refund_by_reference(
    store: DocumentStore,
    provider: PaymentProviderName,
    reference: str,
    *,
    session: Any = None,
) -> RefundOut | None:
    row = await store.find_one(
        REFUNDS,
        {"provider": provider.value, "provider_refund_id": reference},
        session=session,
    )
    if row is None:
        return None
    return RefundOut(**row)


async def get_refund_by_idempotency_key(
    store: DocumentStore,
    provider: PaymentProviderName,
    idempotency_key: str,
    *,
    session: Any = None,
) -> RefundOut | None:
    row = await store.find_one(
        REFUNDS,
        {"provider": provider.value, "idempotency_key": idempotency_key},
        session=session,
    )
    if row is None:
        return None
    return RefundOut(**row)


async def list_refunds_for_intent(store: DocumentStore, intent_id: str) -> list[RefundOut]:
    rows = await store.find(REFUNDS, {"payment_intent_id": intent_id}, sort=[("created_at", 1)])
    return [RefundOut(**row) for row in rows]


async def list_refunds_for_workspace(store: DocumentStore, *, workspace_id: str, created_since: int) -> list[RefundOut]:
    rows = await store.find(
        REFUNDS,
        {"workspace_id": workspace_id, "created_at": {"$gte": created_since}},
    )
    return [RefundOut(**row) for row in rows]


async def transition_refund(
    store: DocumentStore,
    refund_id: str,
    *,
    expected: RefundStatus,
    target: RefundStatus,
    now: int,
    fields: dict[str, Any] | None = None,
    session: Any = None,
) -> RefundOut | None:
    row = await store.compare_and_set(
        REFUNDS,
        {"_id": refund_id, "status": expected.value},
        set_fields={"status": target.value, "updated_at": now, **(fields or {})},
        session=session,
    )
    if row is None:
        return None
    return RefundOut(**row)


async def assign_refund_reference(
    store: DocumentStore,
    refund_id: str,
    *,
    reference: str,
    status: RefundStatus,
    now: int,
) -> RefundOut | None:
    row = await store.compare_and_set(
        REFUNDS,
        {"_id": refund_id, "status": RefundStatus.PENDING.value, "provider_refund_id": None},
        set_fields={"provider_refund_id": reference, "status": status.value, "updated_at": now},
    )
    if row is None:
        return None
    return RefundOut(**row)


async def get_payment_intent_by_idempotency_key(
    store: DocumentStore,
    provider: PaymentProviderName,
    idempotency_key: str,
    *,
    session: Any = None,
) -> PaymentIntentOut | None:
    row = await store.find_one(
        PAYMENT_INTENTS,
        {"provider": provider.value, "idempotency_key": idempotency_key},
        session=session,
    )
    if row is None:
        return None
    return PaymentIntentOut(**row)
