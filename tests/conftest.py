from __future__ import annotations

import json
from typing import Any

import pytest

from core.payments.manager import PaymentManager
from core.payments.types import (
    NormalizedEvent,
    NormalizedEventType,
    PaymentMethodType,
    PaymentProviderName,
    ProviderCustomerRequest,
    ProviderIntentHandle,
    ProviderPaymentMethodHandle,
    ProviderRefundHandle,
    ProviderStatus,
    ProviderSubscriptionHandle,
    RefundStatus,
    SubscriptionStatus,
)
from core.payments.webhooks import hmac_hexdigest, load_json_payload, signature_matches
from core.queue.types import QueueJobResult
from repositories.memory_store import InMemoryDocumentStore
from services.payment_service import PaymentOrchestrator


class FakeAdapter:
    """Scriptable stand-in for a processor adapter.

    Webhook bodies are plain JSON (``id``, ``type``, ``reference``, ...) where
    ``type`` is a ``NormalizedEventType`` value, signed with HMAC-SHA256.
    """

    signature_header = "x-fake-signature"

    def __init__(
        self,
        provider_name: PaymentProviderName = PaymentProviderName.CARD,
        *,
        vendor_name: str = "fakepay",
        secret: str = "whsec_test",
        supported_currencies: frozenset[str] | None = None,
    ) -> None:
        self.provider_name = provider_name
        self.vendor_name = vendor_name
        self.supported_currencies = supported_currencies
        self.secret = secret
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.intent_reference: str | None = None
        self.intent_status = ProviderStatus.REQUIRES_ACTION
        self.confirm_status = ProviderStatus.SUCCEEDED
        self.remote_status = ProviderStatus.PROCESSING
        self.refund_status = RefundStatus.PENDING
        self.subscription_status = SubscriptionStatus.ACTIVE
        self.no_effect = True
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _record(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def to_provider_amount(self, amount_minor: int, currency: str) -> int:
        return amount_minor

    def from_provider_amount(self, amount: Any, currency: str) -> int:
        return int(amount)

    async def create_customer(self, customer: ProviderCustomerRequest) -> str:
        self._record("create_customer", customer_id=customer.customer_id)
        return f"cus_{customer.customer_id[:8]}"

    async def attach_payment_method(
        self,
        customer_ref: str | None,
        method_token: str,
        method_type: PaymentMethodType,
    ) -> ProviderPaymentMethodHandle:
        self._record("attach_payment_method", customer_ref=customer_ref, method_token=method_token)
        return ProviderPaymentMethodHandle(reference=method_token, type=method_type, last4="4242", brand="visa")

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
        self._record(
            "create_intent",
            amount_minor=amount_minor,
            currency=currency,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
        return ProviderIntentHandle(
            reference=self.intent_reference or self._next("pi"),
            status=self.intent_status,
            client_secret="secret_123",
        )

    async def confirm_intent(self, provider_reference_id: str, payment_method_ref: str | None = None) -> ProviderStatus:
        self._record("confirm_intent", reference=provider_reference_id)
        return self.confirm_status

    async def fetch_intent_status(self, provider_reference_id: str) -> ProviderStatus:
        self._record("fetch_intent_status", reference=provider_reference_id)
        return self.remote_status

    async def confirm_had_no_effect(self, provider_reference_id: str) -> bool:
        self._record("confirm_had_no_effect", reference=provider_reference_id)
        return self.no_effect

    async def cancel_intent(self, provider_reference_id: str) -> None:
        self._record("cancel_intent", reference=provider_reference_id)

    async def cancel_or_refund(
        self,
        provider_reference_id: str,
        amount_minor: int | None = None,
        reason: str | None = None,
        *,
        currency: str,
        idempotency_key: str,
    ) -> ProviderRefundHandle:
        self._record(
            "cancel_or_refund",
            reference=provider_reference_id,
            amount_minor=amount_minor,
            idempotency_key=idempotency_key,
        )
        return ProviderRefundHandle(reference=self._next("re"), status=self.refund_status)

    async def refund_had_no_effect(self, provider_reference_id: str, idempotency_key: str) -> bool:
        self._record("refund_had_no_effect", reference=provider_reference_id)
        return self.no_effect

    async def create_subscription(
        self,
        customer_ref: str,
        plan_ref: str,
        trial_days: int | None = None,
        *,
        idempotency_key: str,
    ) -> ProviderSubscriptionHandle:
        self._record("create_subscription", customer_ref=customer_ref, plan_ref=plan_ref, idempotency_key=idempotency_key)
        return ProviderSubscriptionHandle(
            reference=self._next("sub"),
            status=self.subscription_status,
            current_period_start=1_700_000_000,
            current_period_end=1_702_592_000,
        )

    async def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> None:
        self._record("cancel_subscription", reference=provider_subscription_id, at_period_end=at_period_end)

    def sign(self, raw_payload: bytes) -> str:
        return hmac_hexdigest(self.secret, raw_payload)

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str | None) -> bool:
        return signature_matches(self.sign(raw_payload), signature_header)

    def parse_webhook_event(self, raw_payload: bytes) -> NormalizedEvent:
        payload = load_json_payload(raw_payload)
        raw_type = str(payload.get("type") or "")
        try:
            event_type = NormalizedEventType(raw_type)
        except ValueError:
            event_type = NormalizedEventType.UNSUPPORTED
        return NormalizedEvent(
            event_id=str(payload.get("id") or ""),
            event_type=event_type,
            provider_reference_id=payload.get("reference"),
            outcome=payload.get("outcome"),
            amount_minor=payload.get("amount"),
            currency=payload.get("currency"),
            related_reference_id=payload.get("related"),
            idempotency_key=payload.get("idempotency_key"),
            raw_type=raw_type,
            raw=payload,
        )


def webhook_body(event_id: str, event_type: NormalizedEventType | str, reference: str | None, **extra: Any) -> bytes:
    value = event_type.value if isinstance(event_type, NormalizedEventType) else event_type
    return json.dumps({"id": event_id, "type": value, "reference": reference, **extra}).encode("utf-8")


class FakeQueue:
    backend_name = "fake"

    def __init__(self) -> None:
        self.jobs: list[tuple[str, dict[str, Any]]] = []
        self.fail_with: Exception | None = None

    def enqueue(self, task_key: str, payload: dict[str, Any]) -> QueueJobResult:
        if self.fail_with is not None:
            raise self.fail_with
        self.jobs.append((task_key, payload))
        return QueueJobResult(task_id=f"task-{len(self.jobs)}", backend=self.backend_name, task_name=task_key)

    def get_status(self, task_id: str) -> str:
        return "PENDING"


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def card_adapter() -> FakeAdapter:
    return FakeAdapter(PaymentProviderName.CARD)


@pytest.fixture
def fake_adapter_factory():
    return FakeAdapter


@pytest.fixture
def event_body():
    return webhook_body


@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def orchestrator(store: InMemoryDocumentStore, card_adapter: FakeAdapter) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        providers=PaymentManager({PaymentProviderName.CARD: card_adapter}),
        store=store,
        retry_attempts=3,
        retry_base_delay=0,
    )
