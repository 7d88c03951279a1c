from __future__ import annotations

import pytest

from core.payments.state_machine import (
    INTENT_TERMINAL,
    Transition,
    decide_intent,
    decide_invoice,
    decide_refund,
    decide_subscription,
)
from core.payments.types import IntentStatus, InvoiceStatus, RefundStatus, SubscriptionStatus


def test_intent_forward_moves_apply():
    assert decide_intent(IntentStatus.PENDING, IntentStatus.PROCESSING) == Transition.APPLY
    assert decide_intent(IntentStatus.PROCESSING, IntentStatus.SUCCEEDED) == Transition.APPLY
    assert decide_intent(IntentStatus.PENDING, IntentStatus.SUCCEEDED) == Transition.APPLY


@pytest.mark.parametrize("terminal", sorted(INTENT_TERMINAL, key=lambda s: s.value))
def test_terminal_intents_never_change(terminal: IntentStatus):
    for target in IntentStatus:
        decision = decide_intent(terminal, target)
        if target == terminal:
            assert decision == Transition.NOOP
        else:
            assert decision == Transition.CONFLICT


def test_backward_intent_move_is_a_noop():
    assert decide_intent(IntentStatus.PROCESSING, IntentStatus.PENDING) == Transition.NOOP


def test_subscription_past_due_can_recover():
    assert decide_subscription(SubscriptionStatus.PAST_DUE, SubscriptionStatus.ACTIVE) == Transition.APPLY
    assert decide_subscription(SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING) == Transition.NOOP
    assert decide_subscription(SubscriptionStatus.CANCELLED, SubscriptionStatus.ACTIVE) == Transition.CONFLICT


def test_invoice_uncollectible_can_still_be_paid():
    assert decide_invoice(InvoiceStatus.UNCOLLECTIBLE, InvoiceStatus.PAID) == Transition.APPLY
    assert decide_invoice(InvoiceStatus.PAID, InvoiceStatus.OPEN) == Transition.CONFLICT
    assert decide_invoice(InvoiceStatus.OPEN, InvoiceStatus.OPEN) == Transition.NOOP


def test_refund_settles_once():
    assert decide_refund(RefundStatus.PENDING, RefundStatus.SUCCEEDED) == Transition.APPLY
    assert decide_refund(RefundStatus.SUCCEEDED, RefundStatus.FAILED) == Transition.CONFLICT
