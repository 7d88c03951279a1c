from core.payments.manager import PaymentManager
from core.payments.types import (
    IntentStatus,
    NormalizedEvent,
    NormalizedEventType,
    PaymentProviderName,
    ProviderStatus,
    RefundStatus,
    SubscriptionStatus,
)

__all__ = [
    "IntentStatus",
    "NormalizedEvent",
    "NormalizedEventType",
    "PaymentManager",
    "PaymentProviderName",
    "ProviderStatus",
    "RefundStatus",
    "SubscriptionStatus",
]
