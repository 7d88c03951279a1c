from __future__ import annotations

from typing import Any, Protocol

from core.payments.types import (
    NormalizedEvent,
    PaymentMethodType,
    PaymentProviderName,
    ProviderCustomerRequest,
    ProviderIntentHandle,
    ProviderPaymentMethodHandle,
    ProviderRefundHandle,
    ProviderStatus,
    ProviderSubscriptionHandle,
)


class WebhookVerifier(Protocol):
    signature_header: str

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str | None) -> bool:
        """Pure check of ``signature_header`` against ``raw_payload``. No I/O."""
        ...


class PaymentProvider(WebhookVerifier, Protocol):
    provider_name: PaymentProviderName
    vendor_name: str
    supported_currencies: frozenset[str] | None

    def to_provider_amount(self, amount_minor: int, currency: str) -> Any:
        ...

    def from_provider_amount(self, amount: Any, currency: str) -> int:
        ...

    async def create_customer(self, customer: ProviderCustomerRequest) -> str:
        ...

    async def attach_payment_method(
        self,
        customer_ref: str | None,
        method_token: str,
        method_type: PaymentMethodType,
    ) -> ProviderPaymentMethodHandle:
        ...

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        customer_ref: str | None,
        metadata: dict[str, Any],
        *,
        idempotency_key: str,
        customer_email: str | None = None,
    ) -> ProviderIntentHandle:
        ...

    async def confirm_intent(
        self,
        provider_reference_id: str,
        payment_method_ref: str | None = None,
    ) -> ProviderStatus:
        ...

    async def fetch_intent_status(self, provider_reference_id: str) -> ProviderStatus:
        ...

    async def confirm_had_no_effect(self, provider_reference_id: str) -> bool:
        ...

    async def cancel_intent(self, provider_reference_id: str) -> None:
        ...

    async def cancel_or_refund(
        self,
        provider_reference_id: str,
        amount_minor: int | None = None,
        reason: str | None = None,
        *,
        currency: str,
        idempotency_key: str,
    ) -> ProviderRefundHandle:
        ...

    async def refund_had_no_effect(self, provider_reference_id: str, idempotency_key: str) -> bool:
        ...

    async def create_subscription(
        self,
        customer_ref: str,
        plan_ref: str,
        trial_days: int | None = None,
        *,
        idempotency_key: str,
    ) -> ProviderSubscriptionHandle:
        ...

    async def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> None:
        ...

    def parse_webhook_event(self, raw_payload: bytes) -> NormalizedEvent:
        ...
