from enum import Enum

from core.payments.types import (
    IntentStatus,
    InvoiceStatus,
    NormalizedEventType,
    PaymentMethodType,
    PaymentProviderName,
    RefundStatus,
    SubscriptionStatus,
)


class WebhookOutcome(str, Enum):
    APPLIED = "APPLIED"
    IGNORED_DUPLICATE = "IGNORED_DUPLICATE"
    IGNORED_UNSUPPORTED_EVENT = "IGNORED_UNSUPPORTED_EVENT"
    REJECTED_INVALID_SIGNATURE = "REJECTED_INVALID_SIGNATURE"
    REJECTED_UNKNOWN_REFERENCE = "REJECTED_UNKNOWN_REFERENCE"
    QUEUED_FOR_REVIEW = "QUEUED_FOR_REVIEW"
    PROCESSING = "PROCESSING"


class AnalyticsRange(str, Enum):
    LAST_24H = "24h"
    LAST_7D = "7d"
    LAST_30D = "30d"
    LAST_90D = "90d"

    @property
    def seconds(self) -> int:
        return {
            "24h": 86_400,
            "7d": 7 * 86_400,
            "30d": 30 * 86_400,
            "90d": 90 * 86_400,
        }[self.value]


class OutboxTopic(str, Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELLED = "payment.cancelled"
    REFUND_SUCCEEDED = "refund.succeeded"
    REFUND_FAILED = "refund.failed"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_PAST_DUE = "subscription.past_due"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    REVIEW_REQUIRED = "payments.review_required"


__all__ = [
    "AnalyticsRange",
    "IntentStatus",
    "InvoiceStatus",
    "NormalizedEventType",
    "OutboxTopic",
    "PaymentMethodType",
    "PaymentProviderName",
    "RefundStatus",
    "SubscriptionStatus",
    "WebhookOutcome",
]
