from __future__ import annotations

from typing import Any

import stripe
import structlog

from core.errors import ErrorCode, ProviderError
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
from core.payments.webhooks import as_dict, as_str, load_json_payload

logger = structlog.get_logger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300

_INTENT_STATUSES: dict[str, ProviderStatus] = {
    "requires_payment_method": ProviderStatus.REQUIRES_ACTION,
    "requires_confirmation": ProviderStatus.REQUIRES_ACTION,
    "requires_action": ProviderStatus.REQUIRES_ACTION,
    "requires_capture": ProviderStatus.PROCESSING,
    "processing": ProviderStatus.PROCESSING,
    "succeeded": ProviderStatus.SUCCEEDED,
    "canceled": ProviderStatus.CANCELLED,
}

_UNCONFIRMED_STATUSES = {"requires_payment_method", "requires_confirmation"}

_REFUND_STATUSES: dict[str, RefundStatus] = {
    "succeeded": RefundStatus.SUCCEEDED,
    "failed": RefundStatus.FAILED,
    "canceled": RefundStatus.FAILED,
}

_SUBSCRIPTION_STATUSES: dict[str, SubscriptionStatus] = {
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}

_STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


class StripePaymentProvider(PaymentProvider):
    """Card payments through Stripe's PaymentIntents API.

    Stripe works in minor units natively and has an explicit confirm step.
    Calls go through ``StripeClient`` async methods with SDK-level retries
    disabled; the orchestrator owns retry policy and passes idempotency keys.
    """

    provider_name = PaymentProviderName.CARD
    vendor_name = "stripe"
    signature_header = "stripe-signature"
    supported_currencies = None

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str,
        timeout_seconds: float = 20.0,
        client: Any | None = None,
    ) -> None:
        self._webhook_secret = webhook_secret
        self._client = client or stripe.StripeClient(
            secret_key,
            http_client=stripe.HTTPXClient(timeout=timeout_seconds),
            max_network_retries=0,
        )

    def to_provider_amount(self, amount_minor: int, currency: str) -> int:
        return amount_minor

    def from_provider_amount(self, amount: Any, currency: str) -> int:
        return whole_minor_units(amount)

    def _translate_error(self, err: stripe.StripeError, operation: str) -> ProviderError:
        http_status = getattr(err, "http_status", None)
        retryable = isinstance(err, (stripe.APIConnectionError, stripe.RateLimitError)) or (
            isinstance(err, stripe.APIError) and (http_status is None or http_status >= 500)
        )
        logger.warning(
            "provider_call_failed",
            provider=self.vendor_name,
            operation=operation,
            error_type=type(err).__name__,
            http_status=http_status,
            retryable=retryable,
        )
        return ProviderError(
            getattr(err, "user_message", None) or f"Stripe {operation} failed",
            provider=self.vendor_name,
            code=ErrorCode.PAYMENT_PROVIDER_ERROR if retryable else ErrorCode.PAYMENT_PROVIDER_REJECTED,
            retryable=retryable,
            provider_code=getattr(err, "code", None),
            http_status=http_status,
        )

    def _missing_reference(self, operation: str) -> ProviderError:
        logger.error("provider_missing_reference", provider=self.vendor_name, operation=operation)
        return ProviderError(
            f"Stripe {operation} response did not include an id",
            provider=self.vendor_name,
            code=ErrorCode.PAYMENT_MISSING_REFERENCE,
        )

    async def create_customer(self, customer: ProviderCustomerRequest) -> str:
        params: dict[str, Any] = {
            "email": customer.email,
            "metadata": {"customer_id": customer.customer_id, **customer.metadata},
        }
        if customer.name:
            params["name"] = customer.name
        if customer.phone:
            params["phone"] = customer.phone
        try:
            created = await self._client.customers.create_async(
                params=params,
                options={"idempotency_key": f"customer-{customer.customer_id}"},
            )
        except stripe.StripeError as err:
            raise self._translate_error(err, "customer create") from err
        reference = as_str(created.get("id"))
        if reference is None:
            raise self._missing_reference("customer")
        return reference

    async def attach_payment_method(
        self,
        customer_ref: str | None,
        method_token: str,
        method_type: PaymentMethodType,
    ) -> ProviderPaymentMethodHandle:
        if not customer_ref:
            raise ProviderError(
                "Stripe payment methods must be attached to a customer",
                provider=self.vendor_name,
                code=ErrorCode.PAYMENT_PROVIDER_REJECTED,
            )
        try:
            method = await self._client.payment_methods.attach_async(
                method_token,
                params={"customer": customer_ref},
            )
        except stripe.StripeError as err:
            raise self._translate_error(err, "payment method attach") from err
        reference = as_str(method.get("id"))
        if reference is None:
            raise self._missing_reference("payment method")
        card = as_dict(method.get("card"))
        return ProviderPaymentMethodHandle(
            reference=reference,
            type=method_type,
            last4=as_str(card.get("last4")),
            brand=as_str(card.get("brand")),
            expiry_month=card.get("exp_month"),
            expiry_year=card.get("exp_year"),
        )

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
        params: dict[str, Any] = {
            "amount": self.to_provider_amount(amount_minor, currency),
            "currency": currency.lower(),
            "metadata": {key: str(value) for key, value in metadata.items()},
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_ref:
            params["customer"] = customer_ref
        if customer_email:
            params["receipt_email"] = customer_email
        try:
            intent = await self._client.payment_intents.create_async(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as err:
            raise self._translate_error(err, "intent create") from err

        reference = as_str(intent.get("id"))
        if reference is None:
            raise self._missing_reference("intent")
        return ProviderIntentHandle(
            reference=reference,
            status=_INTENT_STATUSES.get(str(intent.get("status")), ProviderStatus.REQUIRES_ACTION),
            client_secret=as_str(intent.get("client_secret")),
        )

    async def confirm_intent(
        self,
        provider_reference_id: str,
        payment_method_ref: str | None = None,
    ) -> ProviderStatus:
        params: dict[str, Any] = {}
        if payment_method_ref:
            params["payment_method"] = payment_method_ref
        try:
            intent = await self._client.payment_intents.confirm_async(provider_reference_id, params=params)
        except stripe.CardError as err:
            # A decline is a payment outcome, not a transport failure.
            logger.info(
                "provider_card_declined",
                provider=self.vendor_name,
                reference=provider_reference_id,
                decline_code=getattr(err, "code", None),
            )
            return ProviderStatus.FAILED
        except stripe.StripeError as err:
            raise self._translate_error(err, "intent confirm") from err
        return _INTENT_STATUSES.get(str(intent.get("status")), ProviderStatus.PROCESSING)

    async def _retrieve_intent(self, provider_reference_id: str) -> Any:
        try:
            return await self._client.payment_intents.retrieve_async(provider_reference_id)
        except stripe.StripeError as err:
            raise self._translate_error(err, "intent retrieve") from err

    async def fetch_intent_status(self, provider_reference_id: str) -> ProviderStatus:
        intent = await self._retrieve_intent(provider_reference_id)
        return _INTENT_STATUSES.get(str(intent.get("status")), ProviderStatus.PROCESSING)

    async def confirm_had_no_effect(self, provider_reference_id: str) -> bool:
        intent = await self._retrieve_intent(provider_reference_id)
        return str(intent.get("status")) in _UNCONFIRMED_STATUSES and intent.get("last_payment_error") is None

    async def cancel_intent(self, provider_reference_id: str) -> None:
        try:
            await self._client.payment_intents.cancel_async(provider_reference_id)
        except stripe.StripeError as err:
            raise self._translate_error(err, "intent cancel") from err

    async def cancel_or_refund(
        self,
        provider_reference_id: str,
        amount_minor: int | None = None,
        reason: str | None = None,
        *,
        currency: str,
        idempotency_key: str,
    ) -> ProviderRefundHandle:
        params: dict[str, Any] = {
            "payment_intent": provider_reference_id,
            "metadata": {"refund_id": idempotency_key},
        }
        if amount_minor is not None:
            params["amount"] = self.to_provider_amount(amount_minor, currency)
        if reason in _STRIPE_REFUND_REASONS:
            params["reason"] = reason
        elif reason:
            params["metadata"]["reason"] = reason
        try:
            refund = await self._client.refunds.create_async(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as err:
            raise self._translate_error(err, "refund create") from err

        reference = as_str(refund.get("id"))
        if reference is None:
            raise self._missing_reference("refund")
        return ProviderRefundHandle(
            reference=reference,
            status=_REFUND_STATUSES.get(str(refund.get("status")), RefundStatus.PENDING),
        )

    async def refund_had_no_effect(self, provider_reference_id: str, idempotency_key: str) -> bool:
        try:
            refunds = await self._client.refunds.list_async(
                params={"payment_intent": provider_reference_id, "limit": 100},
            )
        except stripe.StripeError as err:
            raise self._translate_error(err, "refund list") from err
        for refund in refunds.get("data") or []:
            if as_dict(refund.get("metadata")).get("refund_id") == idempotency_key:
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
        params: dict[str, Any] = {
            "customer": customer_ref,
            "items": [{"price": plan_ref}],
            "payment_behavior": "default_incomplete",
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        try:
            subscription = await self._client.subscriptions.create_async(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as err:
            raise self._translate_error(err, "subscription create") from err

        reference = as_str(subscription.get("id"))
        if reference is None:
            raise self._missing_reference("subscription")
        period_start, period_end = _subscription_period(subscription)
        return ProviderSubscriptionHandle(
            reference=reference,
            status=_SUBSCRIPTION_STATUSES.get(str(subscription.get("status")), SubscriptionStatus.INCOMPLETE),
            current_period_start=period_start,
            current_period_end=period_end,
        )

    async def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> None:
        try:
            if at_period_end:
                await self._client.subscriptions.update_async(
                    provider_subscription_id,
                    params={"cancel_at_period_end": True},
                )
            else:
                await self._client.subscriptions.cancel_async(provider_subscription_id)
        except stripe.StripeError as err:
            raise self._translate_error(err, "subscription cancel") from err

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str | None) -> bool:
        if not signature_header:
            return False
        try:
            payload = raw_payload.decode("utf-8")
        except UnicodeDecodeError:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self._webhook_secret,
                tolerance=WEBHOOK_TOLERANCE_SECONDS,
            )
        except stripe.SignatureVerificationError:
            return False
        return True

    def parse_webhook_event(self, raw_payload: bytes) -> NormalizedEvent:
        payload = load_json_payload(raw_payload)
        raw_type = str(payload.get("type") or "")
        obj = as_dict(as_dict(payload.get("data")).get("object"))
        status = as_str(obj.get("status"))
        currency = as_str(obj.get("currency"))

        event_type = NormalizedEventType.UNSUPPORTED
        reference = as_str(obj.get("id"))
        related: str | None = None
        amount: Any = None
        outcome = status
        idempotency_key: str | None = None

        if raw_type == "payment_intent.succeeded":
            event_type = NormalizedEventType.INTENT_SUCCEEDED
            amount = obj.get("amount_received", obj.get("amount"))
        elif raw_type == "payment_intent.payment_failed":
            event_type = NormalizedEventType.INTENT_FAILED
            amount = obj.get("amount")
            outcome = as_str(as_dict(obj.get("last_payment_error")).get("code")) or status
        elif raw_type in {"customer.subscription.created", "customer.subscription.updated", "customer.subscription.resumed"}:
            if status in {"active", "trialing"}:
                event_type = NormalizedEventType.SUBSCRIPTION_ACTIVATED
            elif status in {"canceled", "incomplete_expired"}:
                event_type = NormalizedEventType.SUBSCRIPTION_CANCELLED
        elif raw_type == "customer.subscription.deleted":
            event_type = NormalizedEventType.SUBSCRIPTION_CANCELLED
        elif raw_type in {"refund.created", "refund.updated", "charge.refund.updated"}:
            related = as_str(obj.get("payment_intent"))
            idempotency_key = as_str(as_dict(obj.get("metadata")).get("refund_id"))
            amount = obj.get("amount")
            if status == "succeeded":
                event_type = NormalizedEventType.REFUND_COMPLETED
            elif status in {"failed", "canceled"}:
                event_type = NormalizedEventType.REFUND_FAILED
        elif raw_type in {"invoice.paid", "invoice.payment_succeeded"}:
            event_type = NormalizedEventType.INVOICE_PAID
            related = _invoice_subscription(obj)
            amount = obj.get("amount_paid")
        elif raw_type == "invoice.payment_failed":
            event_type = NormalizedEventType.INVOICE_PAYMENT_FAILED
            related = _invoice_subscription(obj)
            amount = obj.get("amount_due")

        return NormalizedEvent(
            event_id=str(payload.get("id") or ""),
            event_type=event_type,
            provider_reference_id=reference,
            outcome=outcome,
            amount_minor=self.from_provider_amount(amount, currency or "") if amount is not None else None,
            currency=currency.upper() if currency else None,
            related_reference_id=related,
            idempotency_key=idempotency_key,
            raw_type=raw_type,
            raw=payload,
        )


def _subscription_period(subscription: Any) -> tuple[int | None, int | None]:
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        # Newer API versions moved billing periods onto subscription items.
        items = as_dict(subscription.get("items")).get("data") or []
        if items:
            first = as_dict(items[0])
            start = first.get("current_period_start")
            end = first.get("current_period_end")
    return start, end


def _invoice_subscription(invoice: dict[str, Any]) -> str | None:
    direct = invoice.get("subscription")
    if isinstance(direct, dict):
        return as_str(direct.get("id"))
    if direct:
        return str(direct)
    details = as_dict(as_dict(invoice.get("parent")).get("subscription_details"))
    return as_str(details.get("subscription"))
