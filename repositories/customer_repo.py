from __future__ import annotations

from typing import Any

from core.payments.types import PaymentProviderName
from repositories.store import CUSTOMERS, PAYMENT_METHODS, DocumentStore
from schemas.payment_schema import CustomerOut, PaymentMethodOut


async def insert_customer(store: DocumentStore, document: dict[str, Any]) -> CustomerOut:
    stored = await store.insert(CUSTOMERS, document)
    return CustomerOut(**stored)


async def get_customer_by_id(store: DocumentStore, customer_id: str) -> CustomerOut | None:
    row = await store.find_one(CUSTOMERS, {"_id": customer_id})
    if row is None:
        return None
    return CustomerOut(**row)


async def get_customer_by_provider_id(
    store: DocumentStore,
    provider: PaymentProviderName,
    provider_customer_id: str,
) -> CustomerOut | None:
    row = await store.find_one(CUSTOMERS, {f"provider_customer_ids.{provider.value}": provider_customer_id})
    if row is None:
        return None
    return CustomerOut(**row)


async def set_provider_customer_id(
    store: DocumentStore,
    customer_id: str,
    *,
    provider: PaymentProviderName,
    provider_customer_id: str,
    now: int,
) -> CustomerOut | None:
    """Record the external customer id for ``provider`` unless one is already set."""
    path = f"provider_customer_ids.{provider.value}"
    row = await store.compare_and_set(
        CUSTOMERS,
        {"_id": customer_id, path: None},
        set_fields={path: provider_customer_id, "updated_at": now},
    )
    if row is None:
        return None
    return CustomerOut(**row)


async def update_customer_fields(
    store: DocumentStore,
    customer_id: str,
    fields: dict[str, Any],
    *,
    now: int,
) -> CustomerOut | None:
    row = await store.compare_and_set(CUSTOMERS, {"_id": customer_id}, set_fields={**fields, "updated_at": now})
    if row is None:
        return None
    return CustomerOut(**row)


async def insert_payment_method(store: DocumentStore, document: dict[str, Any]) -> PaymentMethodOut:
    stored = await store.insert(PAYMENT_METHODS, document)
    return PaymentMethodOut(**stored)


async def list_payment_methods(store: DocumentStore, customer_id: str) -> list[PaymentMethodOut]:
    rows = await store.find(PAYMENT_METHODS, {"customer_id": customer_id}, sort=[("created_at", 1)])
    return [PaymentMethodOut(**row) for row in rows]


async def clear_default_payment_method(store: DocumentStore, customer_id: str, *, now: int) -> None:
    while await store.compare_and_set(
        PAYMENT_METHODS,
        {"customer_id": customer_id, "is_default": True},
        set_fields={"is_default": False, "updated_at": now},
    ):
        pass
