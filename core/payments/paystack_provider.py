from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

from core.errors import ErrorCode, ProviderError, ValidationError
from core.payments.http import ProviderHttpClient
from core.payments.money import whole_minor_units
from core.payments.provider import PaymentProvider
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
from core.payments.webhooks import (
    as_dict,
    as_str,
    hmac_hexdigest,
    load_json_payload,
    signature_matches,
)

logger = structlog.get_logger(__name__)

_TRANSACTION_STATUSES: dict[str, ProviderStatus] = {
    "success": ProviderStatus.SUCCEEDED,
    "reversed": ProviderStatus.SUCCEEDED,
    "failed": ProviderStatus.FAILED,
    "abandoned": ProviderStatus.PROCESSING,
    "ongoing": ProviderStatus.PROCESSING,
    "pending": ProviderStatus.PROCESSING,
    "processing": ProviderStatus.PROCESSING,
    "queued": ProviderStatus.PROCESSING,
    "send_otp": ProviderStatus.REQUIRES_ACTION,
    "send_pin": ProviderStatus.REQUIRES_ACTION,
}

_REFUND_NOTE_PREFIX = "refund:"

_REFUND_STATUSES: dict[str, RefundStatus] = {
    "processed": RefundStatus.SUCCEEDED,
    "failed": RefundStatus.FAILED,
}

_SUBSCRIPTION_STATUSES: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "non-renewing": SubscriptionStatus.ACTIVE,
    "attention": SubscriptionStatus.PAST_DUE,
    "completed": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
}

_EVENT_TYPES: dict[str, NormalizedEventType] = {
    "charge.success": NormalizedEventType.INTENT_SUCCEEDED,
    "charge.failed": NormalizedEventType.INTENT_FAILED,
    "subscription.create": NormalizedEventType.SUBSCRIPTION_ACTIVATED,
    "subscription.enable": NormalizedEventType.SUBSCRIPTION_ACTIVATED,
    "subscription.disable": NormalizedEventType.SUBSCRIPTION_CANCELLED,
    "refund.processed": NormalizedEventType.REFUND_COMPLETED,
    "refund.failed": NormalizedEventType.REFUND_FAILED,
    "invoice.update": NormalizedEventType.INVOICE_PAID,
    "invoice.payment_failed": NormalizedEventType.INVOICE_PAYMENT_FAILED,
}


class PaystackPaymentProvider(PaymentProvider):
    """Mobile money and bank payments through Paystack.

    Checkout is redirect based: ``create_intent`` returns an authorization URL
    and confirmation degrades to verify-by-reference. Amounts are sent in the
    currency's subunit (kobo, pesewas, cents), same as our minor units.
    """

    provider_name = PaymentProviderName.MOBILE_MONEY
    vendor_name = "paystack"
    signature_header = "x-paystack-signature"
    supported_currencies = frozenset({"NGN", "GHS", "ZAR", "KES", "USD"})

    def __init__(
        self,
        *,
        secret_key: str,
        callback_url: str | None = None,
        base_url: str = "https://api.paystack.co",
        timeout_seconds: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._callback_url = callback_url
        self._http = ProviderHttpClient(
            provider=self.vendor_name,
            base_url=base_url,
            secret_key=secret_key,
            timeout_seconds=timeout_seconds,
            transport=transport,
        )

    def to_provider_amount(self, amount_minor: int, currency: str) -> int:
        return amount_minor

    def from_provider_amount(self, amount: Any, currency: str) -> int:
        return whole_minor_units(amount)

    async def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        body = await self._http.request(method, path, **kwargs)
        if body.get("status") is not True:
            raise ProviderError(
                str(body.get("message") or "Paystack rejected the request"),
                provider=self.vendor_name,
                code=ErrorCode.PAYMENT_PROVIDER_REJECTED,
            )
        data = body.get("data")
        if isinstance(data, list):
            return {"items": data}
        return as_dict(data)

    def _missing_reference(self, operation: str) -> ProviderError:
        logger.error("provider_missing_reference", provider=self.vendor_name, operation=operation)
        return ProviderError(
            f"Paystack {operation} response did not include a reference",
            provider=self.vendor_name,
            code=ErrorCode.PAYMENT_MISSING_REFERENCE,
        )

    async def create_customer(self, customer: ProviderCustomerRequest) -> str:
        first_name, _, last_name = (customer.name or "").partition(" ")
        data = await self._call(
            "POST",
            "/customer",
            json={
                "email": customer.email,
                "first_name": first_name or None,
                "last_name": last_name or None,
                "phone": customer.phone,
                "metadata": {"customer_id": customer.customer_id, **customer.metadata},
            },
        )
        customer_code = as_str(data.get("customer_code"))
        if customer_code is None:
            raise self._missing_reference("customer")
        return customer_code

    async def attach_payment_method(
        self,
        customer_ref: str | None,
        method_token: str,
        method_type: PaymentMethodType,
    ) -> ProviderPaymentMethodHandle:
        # Authorization codes are issued by a completed charge; nothing to register remotely.
        return ProviderPaymentMethodHandle(reference=method_token, type=method_type)

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
        if not customer_email:
            raise ProviderError(
                "Paystack requires a customer email",
                provider=self.vendor_name,
                code=ErrorCode.PAYMENT_PROVIDER_REJECTED,
            )
        payload: dict[str, Any] = {
            "email": customer_email,
            "amount": self.to_provider_amount(amount_minor, currency),
            "currency": currency,
            "reference": idempotency_key,
            "metadata": metadata,
        }
        if self._callback_url:
            payload["callback_url"] = self._callback_url

        data = await self._call("POST", "/transaction/initialize", json=payload)
        reference = as_str(data.get("reference"))
        if reference is None:
            raise self._missing_reference("initialize")
        return ProviderIntentHandle(
            reference=reference,
            status=ProviderStatus.REQUIRES_ACTION,
            checkout_url=as_str(data.get("authorization_url")),
            raw=data,
        )

    async def fetch_intent_status(self, provider_reference_id: str) -> ProviderStatus:
        data = await self._call("GET", f"/transaction/verify/{provider_reference_id}")
        status = str(data.get("status") or "").lower()
        return _TRANSACTION_STATUSES.get(status, ProviderStatus.PROCESSING)

    async def confirm_intent(
        self,
        provider_reference_id: str,
        payment_method_ref: str | None = None,
    ) -> ProviderStatus:
        return await self.fetch_intent_status(provider_reference_id)

    async def confirm_had_no_effect(self, provider_reference_id: str) -> bool:
        # Confirmation is a read-only verify here.
        return True

    async def cancel_intent(self, provider_reference_id: str) -> None:
        logger.info("provider_cancel_noop", provider=self.vendor_name, reference=provider_reference_id)

    async def cancel_or_refund(
        self,
        provider_reference_id: str,
        amount_minor: int | None = None,
        reason: str | None = None,
        *,
        currency: str,
        idempotency_key: str,
    ) -> ProviderRefundHandle:
        payload: dict[str, Any] = {
            "transaction": provider_reference_id,
            "merchant_note": f"{_REFUND_NOTE_PREFIX}{idempotency_key}",
        }
        if amount_minor is not None:
            payload["amount"] = self.to_provider_amount(amount_minor, currency)
        if reason:
            payload["customer_note"] = reason

        data = await self._call("POST", "/refund", json=payload)
        reference = as_str(data.get("id"))
        if reference is None:
            raise self._missing_reference("refund")
        status = str(data.get("status") or "").lower()
        return ProviderRefundHandle(
            reference=reference,
            status=_REFUND_STATUSES.get(status, RefundStatus.PENDING),
            raw=data,
        )

    async def refund_had_no_effect(self, provider_reference_id: str, idempotency_key: str) -> bool:
        data = await self._call("GET", "/refund", params={"transaction": provider_reference_id})
        marker = f"{_REFUND_NOTE_PREFIX}{idempotency_key}"
        return not any(
            marker in str(as_dict(item).get("merchant_note") or "") for item in data.get("items", [])
        )

    async def create_subscription(
        self,
        customer_ref: str,
        plan_ref: str,
        trial_days: int | None = None,
        *,
        idempotency_key: str,
    ) -> ProviderSubscriptionHandle:
        payload: dict[str, Any] = {"customer": customer_ref, "plan": plan_ref}
        if trial_days:
            start = datetime.now(timezone.utc) + timedelta(days=trial_days)
            payload["start_date"] = start.isoformat()

        data = await self._call("POST", "/subscription", json=payload)
        reference = as_str(data.get("subscription_code"))
        if reference is None:
            raise self._missing_reference("subscription")
        status = _SUBSCRIPTION_STATUSES.get(str(data.get("status") or "").lower(), SubscriptionStatus.INCOMPLETE)
        if trial_days and status == SubscriptionStatus.ACTIVE:
            status = SubscriptionStatus.TRIALING
        return ProviderSubscriptionHandle(reference=reference, status=status, raw=data)

    async def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> None:
        # Paystack only supports disabling renewal; access ends with the current period either way.
        data = await self._call("GET", f"/subscription/{provider_subscription_id}")
        token = as_str(data.get("email_token"))
        if token is None:
            raise ProviderError(
                "Paystack subscription has no email token",
                provider=self.vendor_name,
                code=ErrorCode.PAYMENT_PROVIDER_REJECTED,
            )
        await self._call(
            "POST",
            "/subscription/disable",
            json={"code": provider_subscription_id, "token": token},
        )

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str | None) -> bool:
        expected = hmac_hexdigest(self._secret_key, raw_payload, hashlib.sha512)
        return signature_matches(expected, signature_header)

    def parse_webhook_event(self, raw_payload: bytes) -> NormalizedEvent:
        payload = load_json_payload(raw_payload)
        raw_type = str(payload.get("event") or "")
        data = as_dict(payload.get("data"))
        event_type = _EVENT_TYPES.get(raw_type, NormalizedEventType.UNSUPPORTED)

        # Paystack payloads carry no delivery id; the resource id scoped by event name is stable.
        resource_id = as_str(data.get("id")) or as_str(data.get("reference")) or as_str(data.get("subscription_code"))
        if resource_id is None:
            raise ValidationError(
                f"Paystack {raw_type or 'event'} payload has no resource id",
                code=ErrorCode.PAYMENT_WEBHOOK_INVALID,
            )
        event_id = f"{raw_type}:{resource_id}"

        reference: str | None = None
        related: str | None = None
        outcome = as_str(data.get("status"))
        idempotency_key: str | None = None
        amount_minor: int | None = None
        currency = as_str(data.get("currency"))

        if raw_type.startswith("charge."):
            reference = as_str(data.get("reference"))
            if data.get("amount") is not None:
                amount_minor = self.from_provider_amount(data["amount"], currency or "")
        elif raw_type.startswith("subscription."):
            reference = as_str(data.get("subscription_code"))
        elif raw_type.startswith("refund."):
            reference = as_str(data.get("id"))
            related = as_str(data.get("transaction_reference"))
            note = as_str(data.get("merchant_note")) or ""
            if note.startswith(_REFUND_NOTE_PREFIX):
                idempotency_key = note[len(_REFUND_NOTE_PREFIX):]
            if data.get("amount") is not None:
                amount_minor = self.from_provider_amount(data["amount"], currency or "")
        elif raw_type.startswith("invoice."):
            reference = as_str(data.get("invoice_code"))
            related = as_str(as_dict(data.get("subscription")).get("subscription_code"))
            if data.get("amount") is not None:
                amount_minor = self.from_provider_amount(data["amount"], currency or "")
            if raw_type == "invoice.update" and not (data.get("paid") is True or outcome == "success"):
                event_type = NormalizedEventType.UNSUPPORTED

        return NormalizedEvent(
            event_id=event_id,
            event_type=event_type,
            provider_reference_id=reference,
            outcome=outcome,
            amount_minor=amount_minor,
            currency=currency.upper() if currency else None,
            related_reference_id=related,
            idempotency_key=idempotency_key,
            raw_type=raw_type,
            raw=payload,
        )
