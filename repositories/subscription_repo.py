from __future__ import annotations

from typing import Any

from core.payments.types import InvoiceStatus, PaymentProviderName, SubscriptionStatus
from repositories.store import INVOICES, SUBSCRIPTIONS, DocumentStore
from schemas.payment_schema import InvoiceOut, SubscriptionOut


async def insert_subscription(store: DocumentStore, document: dict[str, Any]) -> SubscriptionOut:
    stored = await store.insert(SUBSCRIPTIONS, document)
    return SubscriptionOut(**stored)


async def get_subscription_by_id(store: DocumentStore, subscription_id: str) -> SubscriptionOut | None:
    row = await store.find_one(SUBSCRIPTIONS, {"_id": subscription_id})
    if row is None:
        return None
    return SubscriptionOut(**row)


async def get_subscription_by_reference(
    store: DocumentStore,
    provider: PaymentProviderName,
    reference: str,
    *,
    session: Any = None,
) -> SubscriptionOut | None:
    row = await store.find_one(
        SUBSCRIPTIONS,
        {"provider": provider.value, "provider_subscription_id": reference},
        session=session,
    )
    if row is None:
        return None
    return SubscriptionOut(**row)


async def update_subscription(
    store: DocumentStore,
    subscription_id: str,
    *,
    expected: SubscriptionStatus,
    fields: dict[str, Any],
    now: int,
    session: Any = None,
) -> SubscriptionOut | None:
    """Compare-and-set on the status read by the caller."""
    row = await store.compare_and_set(
        SUBSCRIPTIONS,
        {"_id": subscription_id, "status": expected.value},
        set_fields={**fields, "updated_at": now},
        session=session,
    )
    if row is None:
        return None
    return SubscriptionOut(**row)


async def assign_subscription_reference(
    store: DocumentStore,
    subscription_id: str,
    *,
    reference: str,
    fields: dict[str, Any],
    now: int,
) -> SubscriptionOut | None:
    row = await store.compare_and_set(
        SUBSCRIPTIONS,
        {
            "_id": subscription_id,
            "status": SubscriptionStatus.INCOMPLETE.value,
            "provider_subscription_id": None,
        },
        set_fields={**fields, "provider_subscription_id": reference, "updated_at": now},
    )
    if row is None:
        return None
    return SubscriptionOut(**row)


async def insert_invoice(store: DocumentStore, document: dict[str, Any], *, session: Any = None) -> InvoiceOut:
    stored = await store.insert(INVOICES, document, session=session)
    return InvoiceOut(**stored)


async def get_invoice_by_reference(
    store: DocumentStore,
    provider: PaymentProviderName,
    reference: str,
    *,
    session: Any = None,
) -> InvoiceOut | None:
    row = await store.find_one(
        INVOICES,
        {"provider": provider.value, "provider_invoice_id": reference},
        session=session,
    )
    if row is None:
        return None
    return InvoiceOut(**row)


async def transition_invoice(
    store: DocumentStore,
    invoice_id: str,
    *,
    expected: InvoiceStatus,
    target: InvoiceStatus,
    now: int,
    fields: dict[str, Any] | None = None,
    session: Any = None,
) -> InvoiceOut | None:
    row = await store.compare_and_set(
        INVOICES,
        {"_id": invoice_id, "status": expected.value},
        set_fields={"status": target.value, "updated_at": now, **(fields or {})},
        session=session,
    )
    if row is None:
        return None
    return InvoiceOut(**row)


async def list_invoices(
    store: DocumentStore,
    *,
    customer_id: str,
    subscription_id: str | None = None,
) -> list[InvoiceOut]:
    query: dict[str, Any] = {"customer_id": customer_id}
    if subscription_id is not None:
        query["subscription_id"] = subscription_id
    rows = await store.find(INVOICES, query, sort=[("created_at", -1)])
    return [InvoiceOut(**row) for row in rows]
