"""
Guarded status changes shared by the orchestrator and the webhook ledger.

Each ``move_*`` helper consults the transition table, applies the change with
a compare-and-set on the status it was given and queues the matching outbox
message with the same ``session``. A lost compare-and-set returns the fresh
record unchanged; a move out of a terminal state raises ``StateConflictError``.
"""
from __future__ import annotations

from typing import Any

import structlog

from core.errors import StateConflictError
from core.payments.state_machine import (
    Transition,
    decide_intent,
    decide_invoice,
    decide_refund,
    decide_subscription,
)
from repositories.outbox_repo import enqueue_message
from repositories.payment_repo import (
    get_payment_intent_by_id,
    get_refund_by_id,
    release_refund_amount,
    transition_payment_intent,
    transition_refund,
)
from repositories.store import DocumentStore
from repositories.subscription_repo import (
    get_subscription_by_id,
    transition_invoice,
    update_subscription,
)
from schemas.imports import (
    IntentStatus,
    InvoiceStatus,
    OutboxTopic,
    RefundStatus,
    SubscriptionStatus,
)
from schemas.payment_schema import InvoiceOut, PaymentIntentOut, RefundOut, SubscriptionOut

logger = structlog.get_logger(__name__)

_INTENT_TOPICS = {
    IntentStatus.SUCCEEDED: OutboxTopic.PAYMENT_SUCCEEDED,
    IntentStatus.FAILED: OutboxTopic.PAYMENT_FAILED,
    IntentStatus.CANCELLED: OutboxTopic.PAYMENT_CANCELLED,
}
_REFUND_TOPICS = {
    RefundStatus.SUCCEEDED: OutboxTopic.REFUND_SUCCEEDED,
    RefundStatus.FAILED: OutboxTopic.REFUND_FAILED,
}
_SUBSCRIPTION_TOPICS = {
    SubscriptionStatus.TRIALING: OutboxTopic.SUBSCRIPTION_ACTIVATED,
    SubscriptionStatus.ACTIVE: OutboxTopic.SUBSCRIPTION_ACTIVATED,
    SubscriptionStatus.PAST_DUE: OutboxTopic.SUBSCRIPTION_PAST_DUE,
    SubscriptionStatus.CANCELLED: OutboxTopic.SUBSCRIPTION_CANCELLED,
}
_INVOICE_TOPICS = {
    InvoiceStatus.PAID: OutboxTopic.INVOICE_PAID,
}


def _guard(decision: Transition, *, entity: str, entity_id: str, current: Any, target: Any) -> bool:
    if decision == Transition.CONFLICT:
        raise StateConflictError(entity=entity, entity_id=entity_id, current=current.value, target=target.value)
    return decision == Transition.APPLY


async def move_intent(
    store: DocumentStore,
    intent: PaymentIntentOut,
    target: IntentStatus,
    *,
    now: int,
    fields: dict[str, Any] | None = None,
    session: Any = None,
) -> PaymentIntentOut:
    decision = decide_intent(intent.status, target)
    if not _guard(decision, entity="PaymentIntent", entity_id=intent.id, current=intent.status, target=target):
        return intent

    updated = await transition_payment_intent(
        store,
        intent.id,
        expected=intent.status,
        target=target,
        now=now,
        fields=fields,
        session=session,
    )
    if updated is None:
        logger.info("intent_transition_already_handled", intent_id=intent.id, target=target.value)
        latest = await get_payment_intent_by_id(store, intent.id, session=session)
        return latest or intent

    logger.info(
        "intent_transitioned",
        intent_id=intent.id,
        from_status=intent.status.value,
        to_status=target.value,
    )
    topic = _INTENT_TOPICS.get(target)
    if topic is not None:
        await enqueue_message(
            store,
            topic=topic,
            aggregate_type="payment_intent",
            aggregate_id=updated.id,
            payload=intent_payload(updated),
            now=now,
            session=session,
        )
    return updated


async def move_refund(
    store: DocumentStore,
    refund: RefundOut,
    target: RefundStatus,
    *,
    now: int,
    fields: dict[str, Any] | None = None,
    session: Any = None,
) -> RefundOut:
    """Settle a refund; a failed refund gives its reserved amount back to the intent."""
    decision = decide_refund(refund.status, target)
    if not _guard(decision, entity="Refund", entity_id=refund.id, current=refund.status, target=target):
        return refund

    updated = await transition_refund(
        store,
        refund.id,
        expected=refund.status,
        target=target,
        now=now,
        fields=fields,
        session=session,
    )
    if updated is None:
        logger.info("refund_transition_already_handled", refund_id=refund.id, target=target.value)
        latest = await get_refund_by_id(store, refund.id)
        return latest or refund

    if target == RefundStatus.FAILED:
        await release_refund_amount(
            store,
            refund.payment_intent_id,
            amount_minor=refund.amount_minor,
            now=now,
            session=session,
        )
    logger.info("refund_transitioned", refund_id=refund.id, to_status=target.value)
    await enqueue_message(
        store,
        topic=_REFUND_TOPICS[target],
        aggregate_type="refund",
        aggregate_id=updated.id,
        payload=refund_payload(updated),
        now=now,
        session=session,
    )
    return updated


async def move_subscription(
    store: DocumentStore,
    subscription: SubscriptionOut,
    target: SubscriptionStatus,
    *,
    now: int,
    fields: dict[str, Any] | None = None,
    session: Any = None,
) -> SubscriptionOut:
    decision = decide_subscription(subscription.status, target)
    if not _guard(
        decision,
        entity="Subscription",
        entity_id=subscription.id,
        current=subscription.status,
        target=target,
    ):
        return subscription

    changes = {"status": target.value, **(fields or {})}
    if target == SubscriptionStatus.CANCELLED:
        changes["cancel_at_period_end"] = False
    updated = await update_subscription(
        store,
        subscription.id,
        expected=subscription.status,
        fields=changes,
        now=now,
        session=session,
    )
    if updated is None:
        logger.info("subscription_transition_already_handled", subscription_id=subscription.id, target=target.value)
        latest = await get_subscription_by_id(store, subscription.id)
        return latest or subscription

    logger.info(
        "subscription_transitioned",
        subscription_id=subscription.id,
        from_status=subscription.status.value,
        to_status=target.value,
    )
    topic = _SUBSCRIPTION_TOPICS.get(target)
    if topic is not None:
        await enqueue_message(
            store,
            topic=topic,
            aggregate_type="subscription",
            aggregate_id=updated.id,
            payload=subscription_payload(updated),
            now=now,
            session=session,
        )
    return updated


async def move_invoice(
    store: DocumentStore,
    invoice: InvoiceOut,
    target: InvoiceStatus,
    *,
    now: int,
    fields: dict[str, Any] | None = None,
    session: Any = None,
) -> InvoiceOut:
    decision = decide_invoice(invoice.status, target)
    if not _guard(decision, entity="Invoice", entity_id=invoice.id, current=invoice.status, target=target):
        return invoice

    updated = await transition_invoice(
        store,
        invoice.id,
        expected=invoice.status,
        target=target,
        now=now,
        fields=fields,
        session=session,
    )
    if updated is None:
        logger.info("invoice_transition_already_handled", invoice_id=invoice.id, target=target.value)
        return invoice

    logger.info("invoice_transitioned", invoice_id=invoice.id, to_status=target.value)
    topic = _INVOICE_TOPICS.get(target)
    if topic is not None:
        await enqueue_message(
            store,
            topic=topic,
            aggregate_type="invoice",
            aggregate_id=updated.id,
            payload=invoice_payload(updated),
            now=now,
            session=session,
        )
    return updated


def intent_payload(intent: PaymentIntentOut) -> dict[str, Any]:
    return {
        "payment_intent_id": intent.id,
        "workspace_id": intent.workspace_id,
        "customer_id": intent.customer_id,
        "provider": intent.provider.value,
        "status": intent.status.value,
        "amount_minor": intent.amount_minor,
        "currency": intent.currency,
    }


def refund_payload(refund: RefundOut) -> dict[str, Any]:
    return {
        "refund_id": refund.id,
        "payment_intent_id": refund.payment_intent_id,
        "workspace_id": refund.workspace_id,
        "provider": refund.provider.value,
        "status": refund.status.value,
        "amount_minor": refund.amount_minor,
        "currency": refund.currency,
    }


def subscription_payload(subscription: SubscriptionOut) -> dict[str, Any]:
    return {
        "subscription_id": subscription.id,
        "workspace_id": subscription.workspace_id,
        "customer_id": subscription.customer_id,
        "plan_id": subscription.plan_id,
        "provider": subscription.provider.value,
        "status": subscription.status.value,
    }


def invoice_payload(invoice: InvoiceOut) -> dict[str, Any]:
    return {
        "invoice_id": invoice.id,
        "workspace_id": invoice.workspace_id,
        "customer_id": invoice.customer_id,
        "subscription_id": invoice.subscription_id,
        "provider": invoice.provider.value,
        "status": invoice.status.value,
        "amount_minor": invoice.amount_minor,
        "currency": invoice.currency,
    }
