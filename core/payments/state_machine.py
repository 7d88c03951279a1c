"""
Transition tables for every persisted payment record.

``decide`` never mutates anything; callers apply the result with a
compare-and-set on the status they read, so two concurrent writers cannot both
move a record out of the same state.
"""
from __future__ import annotations

from enum import Enum
from typing import Mapping

from core.payments.types import InvoiceStatus, IntentStatus, RefundStatus, SubscriptionStatus


class Transition(str, Enum):
    APPLY = "apply"
    NOOP = "noop"
    CONFLICT = "conflict"


INTENT_TRANSITIONS: dict[IntentStatus, frozenset[IntentStatus]] = {
    IntentStatus.PENDING: frozenset(
        {IntentStatus.PROCESSING, IntentStatus.SUCCEEDED, IntentStatus.FAILED, IntentStatus.CANCELLED}
    ),
    IntentStatus.PROCESSING: frozenset({IntentStatus.SUCCEEDED, IntentStatus.FAILED, IntentStatus.CANCELLED}),
}
INTENT_TERMINAL = frozenset({IntentStatus.SUCCEEDED, IntentStatus.FAILED, IntentStatus.CANCELLED})

SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.INCOMPLETE: frozenset(
        {
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.CANCELLED,
        }
    ),
    SubscriptionStatus.TRIALING: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.PAST_DUE: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}),
}
SUBSCRIPTION_TERMINAL = frozenset({SubscriptionStatus.CANCELLED})

INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.OPEN, InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.OPEN: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID, InvoiceStatus.UNCOLLECTIBLE}),
    InvoiceStatus.UNCOLLECTIBLE: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID}),
}
INVOICE_TERMINAL = frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID})

REFUND_TRANSITIONS: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.PENDING: frozenset({RefundStatus.SUCCEEDED, RefundStatus.FAILED}),
}
REFUND_TERMINAL = frozenset({RefundStatus.SUCCEEDED, RefundStatus.FAILED})


def decide(
    table: Mapping[Enum, frozenset],
    terminal: frozenset,
    current: Enum,
    target: Enum,
) -> Transition:
    """Classify a requested move from ``current`` to ``target``.

    Moving out of a terminal state into a different state is a conflict.
    Staying put, or a move the table does not allow (a stale or out-of-order
    update), is a no-op.
    """
    if current == target:
        return Transition.NOOP
    if current in terminal:
        return Transition.CONFLICT
    if target in table.get(current, frozenset()):
        return Transition.APPLY
    return Transition.NOOP


def decide_intent(current: IntentStatus, target: IntentStatus) -> Transition:
    return decide(INTENT_TRANSITIONS, INTENT_TERMINAL, current, target)


def decide_subscription(current: SubscriptionStatus, target: SubscriptionStatus) -> Transition:
    return decide(SUBSCRIPTION_TRANSITIONS, SUBSCRIPTION_TERMINAL, current, target)


def decide_invoice(current: InvoiceStatus, target: InvoiceStatus) -> Transition:
    return decide(INVOICE_TRANSITIONS, INVOICE_TERMINAL, current, target)


def decide_refund(current: RefundStatus, target: RefundStatus) -> Transition:
    return decide(REFUND_TRANSITIONS, REFUND_TERMINAL, current, target)
