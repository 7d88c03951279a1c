from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import httpx
import structlog

from core.errors import ErrorCode, ProviderError, ValidationError
from core.payments.http import ProviderHttpClient
from core.payments.money import format_major, major_to_minor
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
    "successful": ProviderStatus.SUCCEEDED,
    "failed": ProviderStatus.FAILED,
    "cancelled": ProviderStatus.CANCELLED,
    "pending": ProviderStatus.PROCESSING,
}

_REFUND_KEY = re.compile(r"\[(refund-[^\]]+)\]")

_REFUND_STATUSES: dict[str, RefundStatus] = {
    "completed": RefundStatus.SUCCEEDED,
    "successful": RefundStatus.SUCCEEDED,
    "failed": RefundStatus.FAILED,
}

_SUBSCRIPTION_STATUSES: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "cancelled": SubscriptionStatus.CANCELLED,
}


class FlutterwavePaymentProvider(PaymentProvider):
    """Pan-African multi-rail payments (card, bank, USSD, mobile money).

    Flutterwave takes major units, so amounts cross the boundary as decimal
    strings built from the ISO exponent table. Checkout is a hosted link keyed
    by our ``tx_ref``, which doubles as the provider reference.
    """

    provider_name = PaymentProviderName.MULTI_RAIL
    vendor_name = "flutterwave"
    signature_header = "verif-hash"
    supported_currencies = None

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret_hash: str,
        redirect_url: str | None = None,
        base_url: str = "https://api.flutterwave.com/v3",
        timeout_seconds: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._webhook_secret_hash = webhook_secret_hash
        self._redirect_url = redirect_url
        self._http = ProviderHttpClient(
            provider=self.vendor_name,
            base_url=base_url,
            secret_key=secret_key,
            timeout_seconds=timeout_seconds,
            transport=transport,
        )

    def to_provider_amount(self, amount_minor: int, currency: str) -> str:
        return format_major(amount_minor, currency)

    def from_provider_amount(self, amount: Any, currency: str) -> int:
        return major_to_minor(amount if isinstance(amount, Decimal) else str(amount), currency)

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        body = await self._http.request(method, path, **kwargs)
        if body.get("status") != "success":
            raise ProviderError(
                str(body.get("message") or "Flutterwave rejected the request"),
                provider=self.vendor_name,
                code=ErrorCode.PAYMENT_PROVIDER_REJECTED,
            )
        return body.get("data")

    def _missing_reference(self, operation: str) -> ProviderError:
        logger.error("provider_missing_reference", provider=self.vendor_name, operation=operation)
        return ProviderError(
            f"Flutterwave {operation} response did not include a reference",
            provider=self.vendor_name,
            code=ErrorCode.PAYMENT_MISSING_REFERENCE,
        )

    async def create_customer(self, customer: ProviderCustomerRequest) -> str:
        data = as_dict(
            await self._call(
                "POST",
                "/customers",
                json={
                    "email": customer.email,
                    "name": customer.name,
                    "phone_number": customer.phone,
                    "meta": [{"metaname": "customer_id", "metavalue": customer.customer_id}],
                },
            )
        )
        reference = as_str(data.get("id"))
        if reference is None:
            raise self._missing_reference("customer")
        return reference

    async def attach_payment_method(
        self,
        customer_ref: str | None,
        method_token: str,
        method_type: PaymentMethodType,
    ) -> ProviderPaymentMethodHandle:
        # Card tokens come back on a successful charge; there is no separate vault call.
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
        payload: dict[str, Any] = {
            "tx_ref": idempotency_key,
            "amount": self.to_provider_amount(amount_minor, currency),
            "currency": currency,
            "customer": {"email": customer_email},
            "meta": metadata,
        }
        if self._redirect_url:
            payload["redirect_url"] = self._redirect_url

        data = as_dict(await self._call("POST", "/payments", json=payload))
        link = as_str(data.get("link"))
        if link is None:
            raise self._missing_reference("payment link")
        return ProviderIntentHandle(
            reference=idempotency_key,
            status=ProviderStatus.REQUIRES_ACTION,
            checkout_url=link,
            raw=data,
        )

    async def _verify_by_reference(self, provider_reference_id: str) -> dict[str, Any] | None:
        try:
            data = await self._call(
                "GET",
                "/transactions/verify_by_reference",
                params={"tx_ref": provider_reference_id},
            )
        except ProviderError as err:
            # No charge has been attempted against the link yet.
            if err.http_status == 404:
                return None
            raise
        return as_dict(data)

    async def fetch_intent_status(self, provider_reference_id: str) -> ProviderStatus:
        data = await self._verify_by_reference(provider_reference_id)
        if data is None:
            return ProviderStatus.PROCESSING
        status = str(data.get("status") or "").lower()
        return _TRANSACTION_STATUSES.get(status, ProviderStatus.PROCESSING)

    async def confirm_intent(
        self,
        provider_reference_id: str,
        payment_method_ref: str | None = None,
    ) -> ProviderStatus:
        return await self.fetch_intent_status(provider_reference_id)

    async def confirm_had_no_effect(self, provider_reference_id: str) -> bool:
        return True

    async def cancel_intent(self, provider_reference_id: str) -> None:
        logger.info("provider_cancel_noop", provider=self.vendor_name, reference=provider_reference_id)

    async def _transaction_id(self, provider_reference_id: str) -> str:
        data = await self._verify_by_reference(provider_reference_id)
        transaction_id = as_str((data or {}).get("id"))
        if transaction_id is None:
            raise ProviderError(
                "Flutterwave transaction not found for refund",
                provider=self.vendor_name,
                code=ErrorCode.PAYMENT_PROVIDER_REJECTED,
            )
        return transaction_id

    async def cancel_or_refund(
        self,
        provider_reference_id: str,
        amount_minor: int | None = None,
        reason: str | None = None,
        *,
        currency: str,
        idempotency_key: str,
    ) -> ProviderRefundHandle:
        transaction_id = await self._transaction_id(provider_reference_id)
        payload: dict[str, Any] = {"comments": f"{reason or 'refund'} [{idempotency_key}]"}
        if amount_minor is not None:
            payload["amount"] = self.to_provider_amount(amount_minor, currency)

        data = as_dict(await self._call("POST", f"/transactions/{transaction_id}/refund", json=payload))
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
        transaction_id = await self._transaction_id(provider_reference_id)
        refunds = await self._call("GET", "/refunds", params={"id": transaction_id})
        marker = f"[{idempotency_key}]"
        for item in refunds if isinstance(refunds, list) else []:
            row = as_dict(item)
            if as_str(row.get("tx_id")) == transaction_id and marker in str(row.get("comments") or ""):
                return False
        return True

    async def create_subscription(
        self,
        customer_ref: str,
        plan_ref: str,
        trial_days: int | None = None,
        *,
        idempotency_key: str,
    ) -> ProviderSubscriptionHandle:
        start = datetime.now(timezone.utc) + timedelta(days=trial_days or 0)
        data = as_dict(
            await self._call(
                "POST",
                "/subscriptions",
                json={
                    "plan": plan_ref,
                    "customer": customer_ref,
                    "start_date": start.isoformat(),
                    "tx_ref": idempotency_key,
                },
            )
        )
        reference = as_str(data.get("id"))
        if reference is None:
            raise self._missing_reference("subscription")
        status = _SUBSCRIPTION_STATUSES.get(str(data.get("status") or "").lower(), SubscriptionStatus.INCOMPLETE)
        if trial_days and status == SubscriptionStatus.ACTIVE:
            status = SubscriptionStatus.TRIALING
        return ProviderSubscriptionHandle(reference=reference, status=status, raw=data)

    async def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> None:
        # Cancellation takes effect at the end of the paid period on Flutterwave.
        await self._call("PUT", f"/subscriptions/{provider_subscription_id}/cancel")

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str | None) -> bool:
        expected = hmac_hexdigest(self._webhook_secret_hash, raw_payload)
        return signature_matches(expected, signature_header)

    def parse_webhook_event(self, raw_payload: bytes) -> NormalizedEvent:
        payload = load_json_payload(raw_payload)
        raw_type = str(payload.get("event") or "")
        data = as_dict(payload.get("data"))
        outcome = as_str(data.get("status"))
        currency = as_str(data.get("currency"))
        resource_id = as_str(data.get("id")) or as_str(data.get("tx_ref"))
        if resource_id is None:
            raise ValidationError(
                f"Flutterwave {raw_type or 'event'} payload has no resource id",
                code=ErrorCode.PAYMENT_WEBHOOK_INVALID,
            )
        event_id = f"{raw_type}:{resource_id}"

        event_type = NormalizedEventType.UNSUPPORTED
        reference: str | None = None
        related: str | None = None
        amount_minor: int | None = None
        idempotency_key: str | None = None

        if raw_type in {"charge.completed", "charge.failed"}:
            reference = as_str(data.get("tx_ref"))
            status = (outcome or "").lower()
            if raw_type == "charge.completed" and status == "successful":
                event_type = NormalizedEventType.INTENT_SUCCEEDED
            elif raw_type == "charge.failed" or status == "failed":
                event_type = NormalizedEventType.INTENT_FAILED
            if data.get("amount") is not None and currency:
                amount_minor = self.from_provider_amount(data["amount"], currency)
        elif raw_type == "subscription.activated":
            event_type = NormalizedEventType.SUBSCRIPTION_ACTIVATED
            reference = as_str(data.get("id"))
        elif raw_type == "subscription.cancelled":
            event_type = NormalizedEventType.SUBSCRIPTION_CANCELLED
            reference = as_str(data.get("id"))
        elif raw_type == "refund.completed":
            event_type = NormalizedEventType.REFUND_COMPLETED
            reference = as_str(data.get("id"))
            related = as_str(data.get("tx_ref"))
            match = _REFUND_KEY.search(str(data.get("comments") or ""))
            if match:
                idempotency_key = match.group(1)
            amount = data.get("amount_refunded", data.get("amount"))
            if amount is not None and currency:
                amount_minor = self.from_provider_amount(amount, currency)

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
