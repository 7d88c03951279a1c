from __future__ import annotations

from typing import Any, AsyncContextManager, Protocol

PAYMENT_INTENTS = "payment_intents"
REFUNDS = "refunds"
CUSTOMERS = "customers"
PAYMENT_METHODS = "payment_methods"
SUBSCRIPTIONS = "subscriptions"
INVOICES = "invoices"
WEBHOOK_EVENTS = "webhook_events"
WEBHOOK_DELIVERIES = "webhook_deliveries"
OUTBOX = "outbox_messages"

# Unique keys are only enforced once every field in the key is set, so records
# still waiting for a provider reference never collide with each other.
UNIQUE_INDEXES: dict[str, list[tuple[str, ...]]] = {
    WEBHOOK_EVENTS: [("provider", "provider_event_id")],
    PAYMENT_INTENTS: [("provider", "provider_reference_id")],
    SUBSCRIPTIONS: [("provider", "provider_subscription_id")],
    REFUNDS: [("provider", "provider_refund_id")],
    INVOICES: [("provider", "provider_invoice_id")],
    PAYMENT_METHODS: [("provider", "provider_method_id")],
}

SECONDARY_INDEXES: dict[str, list[tuple[str, ...]]] = {
    PAYMENT_INTENTS: [("workspace_id", "created_at"), ("status", "updated_at"), ("provider", "idempotency_key")],
    REFUNDS: [("payment_intent_id",), ("provider", "idempotency_key")],
    CUSTOMERS: [("user_id",)],
    PAYMENT_METHODS: [("customer_id",)],
    SUBSCRIPTIONS: [("customer_id",)],
    INVOICES: [("customer_id", "created_at")],
    WEBHOOK_DELIVERIES: [("needs_review", "received_at"), ("provider", "provider_event_id")],
    OUTBOX: [("delivered_at", "created_at")],
}


class DuplicateRecordError(Exception):
    def __init__(self, collection: str, key: tuple[str, ...]) -> None:
        super().__init__(f"Duplicate key {key} in {collection}")
        self.collection = collection
        self.key = key


class DocumentStore(Protocol):
    """Transactional document storage used by every repository.

    Filters use the MongoDB query subset: equality, ``$in``, ``$nin``,
    ``$ne``, ``$lt``, ``$lte``, ``$gt``, ``$gte`` and ``$exists``. Updates
    support ``$set`` and ``$inc``. Every method accepts the ``session``
    yielded by ``transaction()``; writes made with it commit or roll back
    together.
    """

    async def ensure_indexes(self) -> None:
        ...

    async def insert(self, collection: str, document: dict[str, Any], *, session: Any = None) -> dict[str, Any]:
        ...

    async def find_one(
        self,
        collection: str,
        filter: dict[str, Any],
        *,
        session: Any = None,
    ) -> dict[str, Any] | None:
        ...

    async def find(
        self,
        collection: str,
        filter: dict[str, Any],
        *,
        sort: list[tuple[str, int]] | None = None,
        limit: int = 0,
        session: Any = None,
    ) -> list[dict[str, Any]]:
        ...

    async def compare_and_set(
        self,
        collection: str,
        filter: dict[str, Any],
        *,
        set_fields: dict[str, Any] | None = None,
        inc_fields: dict[str, int] | None = None,
        session: Any = None,
    ) -> dict[str, Any] | None:
        """Atomically update the first match; None when nothing matched."""
        ...

    def transaction(self) -> AsyncContextManager[Any]:
        ...

    async def ping(self) -> None:
        ...
