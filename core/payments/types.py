from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PaymentProviderName(str, Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"
    MULTI_RAIL = "multi_rail"


VENDOR_ALIASES: dict[str, PaymentProviderName] = {
    "stripe": PaymentProviderName.CARD,
    "paystack": PaymentProviderName.MOBILE_MONEY,
    "flutterwave": PaymentProviderName.MULTI_RAIL,
}


def resolve_provider_name(value: str | PaymentProviderName) -> PaymentProviderName | None:
    if isinstance(value, PaymentProviderName):
        return value
    key = (value or "").strip().lower()
    if key in VENDOR_ALIASES:
        return VENDOR_ALIASES[key]
    try:
        return PaymentProviderName(key)
    except ValueError:
        return None


class IntentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class SubscriptionStatus(str, Enum):
    INCOMPLETE = "INCOMPLETE"
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    PAID = "PAID"
    VOID = "VOID"
    UNCOLLECTIBLE = "UNCOLLECTIBLE"


class RefundStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class ProviderStatus(str, Enum):
    """Intent status as reported by a processor, before it touches our records."""

    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NormalizedEventType(str, Enum):
    INTENT_SUCCEEDED = "INTENT_SUCCEEDED"
    INTENT_FAILED = "INTENT_FAILED"
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    REFUND_COMPLETED = "REFUND_COMPLETED"
    REFUND_FAILED = "REFUND_FAILED"
    INVOICE_PAID = "INVOICE_PAID"
    INVOICE_PAYMENT_FAILED = "INVOICE_PAYMENT_FAILED"
    UNSUPPORTED = "UNSUPPORTED"


class PaymentMethodType(str, Enum):
    CARD = "card"
    BANK_ACCOUNT = "bank_account"
    WALLET = "wallet"
    MOBILE_MONEY = "mobile_money"


@dataclass(frozen=True)
class ProviderCustomerRequest:
    customer_id: str
    email: str
    name: str | None = None
    phone: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderIntentHandle:
    reference: str
    status: ProviderStatus
    checkout_url: str | None = None
    client_secret: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderRefundHandle:
    reference: str
    status: RefundStatus
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderSubscriptionHandle:
    reference: str
    status: SubscriptionStatus
    current_period_start: int | None = None
    current_period_end: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderPaymentMethodHandle:
    reference: str
    type: PaymentMethodType
    last4: str | None = None
    brand: str | None = None
    expiry_month: int | None = None
    expiry_year: int | None = None


@dataclass(frozen=True)
class NormalizedEvent:
    """A webhook payload reduced to the fields the orchestrator acts on.

    ``provider_reference_id`` names the record the event is about (intent,
    subscription, refund or invoice depending on ``event_type``).
    ``related_reference_id`` points at the parent where there is one: the
    payment for a refund, the subscription for an invoice.
    ``idempotency_key`` is the key this service sent with the request the
    event settles, when the processor echoes it back.
    """

    event_id: str
    event_type: NormalizedEventType
    provider_reference_id: str | None
    outcome: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    related_reference_id: str | None = None
    idempotency_key: str | None = None
    raw_type: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
