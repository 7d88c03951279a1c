from __future__ import annotations

import time
import uuid
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from core.errors import (
    ErrorCode,
    ProviderError,
    StateConflictError,
    ValidationError,
    resource_not_found,
)
from core.payments.manager import PaymentManager
from core.payments.money import normalize_currency
from core.payments.provider import PaymentProvider
from core.payments.state_machine import INTENT_TERMINAL
from core.payments.types import ProviderCustomerRequest, ProviderStatus
from repositories.customer_repo import (
    clear_default_payment_method,
    get_customer_by_id,
    insert_customer,
    insert_payment_method,
    list_payment_methods,
    set_provider_customer_id,
    update_customer_fields,
)
from repositories.payment_repo import (
    assign_payment_intent_reference,
    assign_refund_reference,
    get_payment_intent_by_id,
    insert_payment_intent,
    insert_refund,
    list_payment_intents,
    list_refunds_for_intent,
    list_refunds_for_workspace,
    reserve_refund_amount,
)
from repositories.store import DocumentStore
from repositories.subscription_repo import (
    assign_subscription_reference,
    get_subscription_by_id,
    insert_invoice,
    insert_subscription,
    list_invoices,
    update_subscription,
)
from repositories.webhook_repo import (
    list_review_queue,
    list_webhook_deliveries,
    list_webhook_events,
    mark_delivery_reviewed,
)
from schemas.imports import (
    AnalyticsRange,
    IntentStatus,
    InvoiceStatus,
    PaymentProviderName,
    RefundStatus,
    SubscriptionStatus,
    WebhookOutcome,
)
from schemas.payment_schema import (
    AnalyticsSummaryOut,
    CustomerIn,
    CustomerOut,
    CustomerUpdate,
    InvoiceIn,
    InvoiceOut,
    PaymentIntentIn,
    PaymentIntentOut,
    PaymentMethodIn,
    PaymentMethodOut,
    ProviderHealthOut,
    RefundOut,
    SubscriptionIn,
    SubscriptionOut,
    WebhookAck,
    WebhookDeliveryOut,
    WebhookEventOut,
)
from services.analytics_service import summarize_payments
from services.ledger_service import WebhookLedger
from services.state_transitions import move_intent, move_refund, move_subscription

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_INTENT_STATUS_FROM_PROVIDER = {
    ProviderStatus.SUCCEEDED: IntentStatus.SUCCEEDED,
    ProviderStatus.FAILED: IntentStatus.FAILED,
    ProviderStatus.CANCELLED: IntentStatus.CANCELLED,
}


def _epoch() -> int:
    return int(time.time())


def _is_retryable(err: BaseException) -> bool:
    return isinstance(err, ProviderError) and err.retryable


def _absorb_conflict(err: StateConflictError) -> None:
    logger.error(
        "state_conflict_absorbed",
        entity=err.entity,
        entity_id=err.entity_id,
        current=err.current,
        target=err.target,
    )


class PaymentOrchestrator:
    """Provider-agnostic entry point for every payment operation.

    Adapters come from ``providers``; canonical records live in ``store``.
    Creation calls to a processor are retried on retryable errors with a
    deterministic idempotency key. Confirm and refund calls are retried only
    after the adapter proves the failed attempt had no effect.
    """

    def __init__(
        self,
        *,
        providers: PaymentManager,
        store: DocumentStore,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        self._providers = providers
        self._store = store
        self._retry_attempts = max(1, retry_attempts)
        self._retry_base_delay = retry_base_delay
        self._ledger = WebhookLedger(providers=providers, store=store)

    @property
    def providers(self) -> PaymentManager:
        return self._providers

    @property
    def store(self) -> DocumentStore:
        return self._store

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        def log_retry(retry_state: Any) -> None:
            err = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "provider_call_retry",
                operation=operation,
                attempt=retry_state.attempt_number,
                error=str(err),
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_base_delay, max=8),
            before_sleep=log_retry,
            reraise=True,
        )

        # AsyncRetrying awaits only coroutine functions.
        async def invoke() -> T:
            return await call()

        return await retrying(invoke)

    @staticmethod
    async def _only_if_untouched(
        call: Callable[[], Awaitable[T]],
        proof: Callable[[], Awaitable[bool]],
    ) -> T:
        try:
            return await call()
        except ProviderError as err:
            if not err.retryable:
                raise
            try:
                untouched = await proof()
            except ProviderError as lookup_err:
                logger.warning("provider_effect_lookup_failed", error=str(lookup_err))
                untouched = False
            if untouched:
                raise
            raise err.as_final() from err

    @staticmethod
    def _validate_currency(adapter: PaymentProvider, currency: str) -> str:
        code = normalize_currency(currency)
        supported = adapter.supported_currencies
        if code is None or (supported is not None and code not in supported):
            raise ValidationError(
                f"Currency {currency} is not supported by {adapter.vendor_name}",
                code=ErrorCode.UNSUPPORTED_CURRENCY,
                details={"currency": currency, "provider": adapter.provider_name.value},
            )
        return code

    async def create_customer(self, payload: CustomerIn, *, user_id: str, workspace_id: str) -> CustomerOut:
        now = _epoch()
        customer = await insert_customer(
            self._store,
            {
                "_id": str(uuid.uuid4()),
                "user_id": user_id,
                "workspace_id": workspace_id,
                "email": str(payload.email),
                "name": payload.name,
                "phone": payload.phone,
                "metadata": payload.metadata,
                "provider_customer_ids": {},
                "created_at": now,
                "updated_at": now,
            },
        )
        for adapter in self._providers:
            try:
                customer = await self._ensure_provider_customer(adapter, customer)
            except ProviderError as err:
                logger.warning(
                    "provider_customer_create_failed",
                    customer_id=customer.id,
                    provider=adapter.provider_name.value,
                    error=str(err),
                )
        logger.info("customer_created", customer_id=customer.id, providers=list(customer.provider_customer_ids))
        return customer

    async def get_customer(self, customer_id: str) -> CustomerOut:
        customer = await get_customer_by_id(self._store, customer_id)
        if customer is None:
            raise resource_not_found("Customer", customer_id)
        return customer

    async def update_customer(self, customer_id: str, payload: CustomerUpdate) -> CustomerOut:
        changes = payload.model_dump(exclude_unset=True)
        if changes.get("email") is not None:
            changes["email"] = str(changes["email"])
        required = {key for key in ("email", "metadata") if key in changes and changes[key] is None}
        if required:
            raise ValidationError(
                "Customer fields cannot be cleared",
                details={"fields": sorted(required)},
            )
        if not changes:
            return await self.get_customer(customer_id)
        customer = await update_customer_fields(self._store, customer_id, changes, now=_epoch())
        if customer is None:
            raise resource_not_found("Customer", customer_id)
        logger.info("customer_updated", customer_id=customer.id, fields=sorted(changes))
        return customer

    async def _customer_in_workspace(self, customer_id: str, workspace_id: str) -> CustomerOut:
        customer = await get_customer_by_id(self._store, customer_id)
        if customer is None or customer.workspace_id != workspace_id:
            raise resource_not_found("Customer", customer_id)
        return customer

    async def _ensure_provider_customer(self, adapter: PaymentProvider, customer: CustomerOut) -> CustomerOut:
        key = adapter.provider_name.value
        if customer.provider_customer_ids.get(key):
            return customer
        reference = await self._with_retry(
            "create_customer",
            lambda: adapter.create_customer(
                ProviderCustomerRequest(
                    customer_id=customer.id,
                    email=customer.email,
                    name=customer.name,
                    phone=customer.phone,
                    metadata=customer.metadata,
                )
            ),
        )
        updated = await set_provider_customer_id(
            self._store,
            customer.id,
            provider=adapter.provider_name,
            provider_customer_id=reference,
            now=_epoch(),
        )
        return updated or await self.get_customer(customer.id)

    async def add_payment_method(self, payload: PaymentMethodIn, *, workspace_id: str) -> PaymentMethodOut:
        adapter = self._providers.get_provider(payload.provider)
        customer = await self._customer_in_workspace(payload.customer_id, workspace_id)
        customer = await self._ensure_provider_customer(adapter, customer)
        handle = await adapter.attach_payment_method(
            customer.provider_customer_ids.get(adapter.provider_name.value),
            payload.method_token,
            payload.type,
        )
        now = _epoch()
        if payload.is_default:
            await clear_default_payment_method(self._store, customer.id, now=now)
        method = await insert_payment_method(
            self._store,
            {
                "_id": str(uuid.uuid4()),
                "customer_id": customer.id,
                "provider": adapter.provider_name.value,
                "provider_method_id": handle.reference,
                "type": handle.type.value,
                "last4": handle.last4,
                "brand": handle.brand,
                "expiry_month": handle.expiry_month,
                "expiry_year": handle.expiry_year,
                "is_default": payload.is_default,
                "created_at": now,
                "updated_at": now,
            },
        )
        logger.info("payment_method_added", customer_id=customer.id, payment_method_id=method.id)
        return method

    async def list_payment_methods(self, customer_id: str) -> list[PaymentMethodOut]:
        await self.get_customer(customer_id)
        return await list_payment_methods(self._store, customer_id)

    async def create_payment_intent(self, payload: PaymentIntentIn, *, workspace_id: str) -> PaymentIntentOut:
        adapter = self._providers.get_provider(payload.provider)
        currency = self._validate_currency(adapter, payload.currency)
        customer = await self._customer_in_workspace(payload.customer_id, workspace_id)

        now = _epoch()
        intent_id = str(uuid.uuid4())
        idempotency_key = f"intent-{intent_id}"
        intent = await insert_payment_intent(
            self._store,
            {
                "_id": intent_id,
                "amount_minor": payload.amount_minor,
                "amount_refunded_minor": 0,
                "currency": currency,
                "provider": adapter.provider_name.value,
                "provider_reference_id": None,
                "idempotency_key": idempotency_key,
                "status": IntentStatus.PENDING.value,
                "customer_id": customer.id,
                "workspace_id": workspace_id,
                "metadata": payload.metadata,
                "checkout_url": None,
                "client_secret": None,
                "failure_code": None,
                "failure_message": None,
                "created_at": now,
                "updated_at": now,
            },
        )
        log = logger.bind(intent_id=intent.id, provider=adapter.provider_name.value)
        log.info("payment_intent_created", amount_minor=intent.amount_minor, currency=currency)

        try:
            handle = await self._with_retry(
                "create_intent",
                lambda: adapter.create_intent(
                    intent.amount_minor,
                    currency,
                    customer.provider_customer_ids.get(adapter.provider_name.value),
                    {**payload.metadata, "intent_id": intent.id},
                    idempotency_key=idempotency_key,
                    customer_email=customer.email,
                ),
            )
        except ProviderError as err:
            log.error("payment_intent_provider_failed", code=err.code.value, error=err.message)
            async with self._store.transaction() as session:
                await move_intent(
                    self._store,
                    intent,
                    IntentStatus.FAILED,
                    now=_epoch(),
                    fields={"failure_code": err.provider_code or err.code.value, "failure_message": err.message},
                    session=session,
                )
            raise

        assigned = await assign_payment_intent_reference(
            self._store,
            intent.id,
            reference=handle.reference,
            checkout_url=handle.checkout_url,
            client_secret=handle.client_secret,
            now=_epoch(),
        )
        if assigned is None:
            log.info("payment_intent_reference_already_set")
            return await self.get_payment_intent(intent.id)
        log.info("payment_intent_processing", provider_reference_id=handle.reference)
        return await self._apply_provider_status(assigned, handle.status)

    async def get_payment_intent(self, intent_id: str) -> PaymentIntentOut:
        intent = await get_payment_intent_by_id(self._store, intent_id)
        if intent is None:
            raise resource_not_found("PaymentIntent", intent_id)
        return intent

    async def list_payment_intents(
        self,
        *,
        workspace_id: str,
        status: IntentStatus | None = None,
        limit: int = 100,
    ) -> list[PaymentIntentOut]:
        return await list_payment_intents(self._store, workspace_id=workspace_id, status=status, limit=limit)

    async def _apply_provider_status(self, intent: PaymentIntentOut, status: ProviderStatus) -> PaymentIntentOut:
        target = _INTENT_STATUS_FROM_PROVIDER.get(status)
        if target is None:
            if intent.status != IntentStatus.PENDING:
                return intent
            target = IntentStatus.PROCESSING
        fields = None
        if target == IntentStatus.FAILED:
            fields = {"failure_code": status.value, "failure_message": "Payment failed at provider"}
        try:
            async with self._store.transaction() as session:
                return await move_intent(self._store, intent, target, now=_epoch(), fields=fields, session=session)
        except StateConflictError as err:
            _absorb_conflict(err)
            return await self.get_payment_intent(intent.id)

    def _reject_terminal(self, intent: PaymentIntentOut, target: IntentStatus) -> bool:
        if intent.status not in INTENT_TERMINAL:
            return False
        _absorb_conflict(
            StateConflictError(
                entity="PaymentIntent",
                entity_id=intent.id,
                current=intent.status.value,
                target=target.value,
            )
        )
        return True

    async def confirm_payment_intent(self, intent_id: str, payment_method_ref: str | None = None) -> PaymentIntentOut:
        intent = await self.get_payment_intent(intent_id)
        if self._reject_terminal(intent, IntentStatus.SUCCEEDED):
            return intent
        reference = intent.provider_reference_id
        if reference is None:
            raise ValidationError("Payment intent has no provider reference yet", details={"intent_id": intent.id})

        adapter = self._providers.get_provider(intent.provider)
        try:
            status = await self._with_retry(
                "confirm_intent",
                lambda: self._only_if_untouched(
                    lambda: adapter.confirm_intent(reference, payment_method_ref),
                    lambda: adapter.confirm_had_no_effect(reference),
                ),
            )
        except ProviderError as err:
            # The outcome is unknown; webhooks or reconciliation settle it.
            logger.warning(
                "payment_intent_confirm_unresolved",
                intent_id=intent.id,
                code=err.code.value,
                retryable=err.retryable,
            )
            raise
        return await self._apply_provider_status(intent, status)

    async def verify_payment_intent(self, intent_id: str) -> PaymentIntentOut:
        intent = await self.get_payment_intent(intent_id)
        if intent.status in INTENT_TERMINAL or intent.provider_reference_id is None:
            return intent
        adapter = self._providers.get_provider(intent.provider)
        reference = intent.provider_reference_id
        status = await self._with_retry("fetch_intent_status", lambda: adapter.fetch_intent_status(reference))
        logger.info("payment_intent_verified", intent_id=intent.id, provider_status=status.value)
        return await self._apply_provider_status(intent, status)

    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntentOut:
        intent = await self.get_payment_intent(intent_id)
        if self._reject_terminal(intent, IntentStatus.CANCELLED):
            return intent
        if intent.provider_reference_id is not None:
            adapter = self._providers.get_provider(intent.provider)
            await adapter.cancel_intent(intent.provider_reference_id)
        return await self._apply_provider_status(intent, ProviderStatus.CANCELLED)

    async def create_refund(
        self,
        intent_id: str,
        amount_minor: int | None = None,
        reason: str | None = None,
    ) -> RefundOut:
        intent = await self.get_payment_intent(intent_id)
        if intent.status != IntentStatus.SUCCEEDED or intent.provider_reference_id is None:
            raise ValidationError(
                "Only succeeded payments can be refunded",
                details={"intent_id": intent.id, "status": intent.status.value},
            )
        remaining = intent.amount_minor - intent.amount_refunded_minor
        amount = remaining if amount_minor is None else amount_minor
        if amount <= 0 or amount > remaining:
            raise ValidationError(
                "Refund amount exceeds the refundable balance",
                code=ErrorCode.REFUND_EXCEEDS_BALANCE,
                details={"requested_minor": amount, "refundable_minor": remaining},
            )

        now = _epoch()
        reserved = await reserve_refund_amount(
            self._store,
            intent.id,
            amount_minor=amount,
            intent_amount_minor=intent.amount_minor,
            now=now,
        )
        if reserved is None:
            latest = await self.get_payment_intent(intent.id)
            raise ValidationError(
                "Refund amount exceeds the refundable balance",
                code=ErrorCode.REFUND_EXCEEDS_BALANCE,
                details={
                    "requested_minor": amount,
                    "refundable_minor": latest.amount_minor - latest.amount_refunded_minor,
                },
            )

        refund_id = str(uuid.uuid4())
        idempotency_key = f"refund-{refund_id}"
        refund = await insert_refund(
            self._store,
            {
                "_id": refund_id,
                "payment_intent_id": intent.id,
                "workspace_id": intent.workspace_id,
                "provider": intent.provider.value,
                "amount_minor": amount,
                "currency": intent.currency,
                "reason": reason,
                "provider_refund_id": None,
                "idempotency_key": idempotency_key,
                "status": RefundStatus.PENDING.value,
                "failure_message": None,
                "created_at": now,
                "updated_at": now,
            },
        )
        log = logger.bind(refund_id=refund.id, intent_id=intent.id, provider=intent.provider.value)
        log.info("refund_reserved", amount_minor=amount)

        adapter = self._providers.get_provider(intent.provider)
        reference = intent.provider_reference_id
        try:
            handle = await self._with_retry(
                "refund",
                lambda: self._only_if_untouched(
                    lambda: adapter.cancel_or_refund(
                        reference,
                        amount,
                        reason,
                        currency=intent.currency,
                        idempotency_key=idempotency_key,
                    ),
                    lambda: adapter.refund_had_no_effect(reference, idempotency_key),
                ),
            )
        except ProviderError as err:
            if err.effect_unknown or err.code == ErrorCode.PAYMENT_MISSING_REFERENCE:
                # The provider may hold this refund; the reservation stays until a webhook settles it.
                log.error("refund_outcome_unknown", code=err.code.value, error=err.message)
                raise
            log.error("refund_provider_failed", code=err.code.value, error=err.message)
            async with self._store.transaction() as session:
                await move_refund(
                    self._store,
                    refund,
                    RefundStatus.FAILED,
                    now=_epoch(),
                    fields={"failure_message": err.message},
                    session=session,
                )
            raise

        assigned = await assign_refund_reference(
            self._store,
            refund.id,
            reference=handle.reference,
            status=RefundStatus.PENDING,
            now=_epoch(),
        )
        if assigned is None:
            log.info("refund_reference_already_set")
            return refund
        if handle.status == RefundStatus.PENDING:
            return assigned
        async with self._store.transaction() as session:
            return await move_refund(self._store, assigned, handle.status, now=_epoch(), session=session)

    async def list_refunds(self, intent_id: str) -> list[RefundOut]:
        await self.get_payment_intent(intent_id)
        return await list_refunds_for_intent(self._store, intent_id)

    async def create_subscription(self, payload: SubscriptionIn, *, workspace_id: str) -> SubscriptionOut:
        adapter = self._providers.get_provider(payload.provider)
        customer = await self._customer_in_workspace(payload.customer_id, workspace_id)
        customer = await self._ensure_provider_customer(adapter, customer)
        customer_ref = customer.provider_customer_ids[adapter.provider_name.value]

        now = _epoch()
        subscription_id = str(uuid.uuid4())
        subscription = await insert_subscription(
            self._store,
            {
                "_id": subscription_id,
                "customer_id": customer.id,
                "workspace_id": workspace_id,
                "plan_id": payload.plan_id,
                "provider": adapter.provider_name.value,
                "provider_subscription_id": None,
                "status": SubscriptionStatus.INCOMPLETE.value,
                "current_period_start": None,
                "current_period_end": None,
                "cancel_at_period_end": False,
                "trial_days": payload.trial_days,
                "metadata": payload.metadata,
                "failure_code": None,
                "created_at": now,
                "updated_at": now,
            },
        )
        log = logger.bind(subscription_id=subscription.id, provider=adapter.provider_name.value)

        try:
            handle = await self._with_retry(
                "create_subscription",
                lambda: adapter.create_subscription(
                    customer_ref,
                    payload.plan_id,
                    payload.trial_days,
                    idempotency_key=f"subscription-{subscription_id}",
                ),
            )
        except ProviderError as err:
            log.error("subscription_provider_failed", code=err.code.value, error=err.message)
            async with self._store.transaction() as session:
                await move_subscription(
                    self._store,
                    subscription,
                    SubscriptionStatus.CANCELLED,
                    now=_epoch(),
                    fields={"failure_code": err.provider_code or err.code.value},
                    session=session,
                )
            raise

        assigned = await assign_subscription_reference(
            self._store,
            subscription.id,
            reference=handle.reference,
            fields={
                "current_period_start": handle.current_period_start,
                "current_period_end": handle.current_period_end,
            },
            now=_epoch(),
        )
        if assigned is None:
            log.info("subscription_reference_already_set")
            return await self.get_subscription(subscription.id)
        log.info("subscription_created", provider_subscription_id=handle.reference, status=handle.status.value)
        if handle.status == SubscriptionStatus.INCOMPLETE:
            return assigned
        async with self._store.transaction() as session:
            return await move_subscription(self._store, assigned, handle.status, now=_epoch(), session=session)

    async def get_subscription(self, subscription_id: str) -> SubscriptionOut:
        subscription = await get_subscription_by_id(self._store, subscription_id)
        if subscription is None:
            raise resource_not_found("Subscription", subscription_id)
        return subscription

    async def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = True) -> SubscriptionOut:
        subscription = await self.get_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            _absorb_conflict(
                StateConflictError(
                    entity="Subscription",
                    entity_id=subscription.id,
                    current=subscription.status.value,
                    target=SubscriptionStatus.CANCELLED.value,
                )
            )
            return subscription

        reference = subscription.provider_subscription_id
        if reference is not None:
            adapter = self._providers.get_provider(subscription.provider)
            await adapter.cancel_subscription(reference, at_period_end)

        if at_period_end and reference is not None:
            updated = await update_subscription(
                self._store,
                subscription.id,
                expected=subscription.status,
                fields={"cancel_at_period_end": True},
                now=_epoch(),
            )
            logger.info("subscription_cancel_scheduled", subscription_id=subscription.id)
            return updated or await self.get_subscription(subscription.id)

        async with self._store.transaction() as session:
            return await move_subscription(
                self._store,
                subscription,
                SubscriptionStatus.CANCELLED,
                now=_epoch(),
                session=session,
            )

    async def create_invoice(self, payload: InvoiceIn, *, workspace_id: str) -> InvoiceOut:
        adapter = self._providers.get_provider(payload.provider)
        currency = self._validate_currency(adapter, payload.currency)
        customer = await self._customer_in_workspace(payload.customer_id, workspace_id)
        if payload.subscription_id is not None:
            subscription = await get_subscription_by_id(self._store, payload.subscription_id)
            if subscription is None or subscription.customer_id != customer.id:
                raise resource_not_found("Subscription", payload.subscription_id)

        now = _epoch()
        invoice = await insert_invoice(
            self._store,
            {
                "_id": str(uuid.uuid4()),
                "customer_id": customer.id,
                "workspace_id": workspace_id,
                "subscription_id": payload.subscription_id,
                "provider": adapter.provider_name.value,
                "provider_invoice_id": None,
                "amount_minor": payload.amount_minor,
                "currency": currency,
                "status": InvoiceStatus.DRAFT.value,
                "due_date": payload.due_date,
                "paid_at": None,
                "metadata": payload.metadata,
                "created_at": now,
                "updated_at": now,
            },
        )
        logger.info("invoice_created", invoice_id=invoice.id, customer_id=customer.id)
        return invoice

    async def list_invoices(self, customer_id: str, subscription_id: str | None = None) -> list[InvoiceOut]:
        await self.get_customer(customer_id)
        return await list_invoices(self._store, customer_id=customer_id, subscription_id=subscription_id)

    async def handle_webhook(
        self,
        provider: PaymentProviderName | str,
        raw_payload: bytes,
        signature_header: str | None,
    ) -> WebhookAck:
        return await self._ledger.handle(provider, raw_payload, signature_header)

    async def list_webhook_deliveries(
        self,
        *,
        provider: PaymentProviderName | None = None,
        provider_event_id: str | None = None,
        limit: int = 100,
    ) -> list[WebhookDeliveryOut]:
        return await list_webhook_deliveries(
            self._store,
            provider=provider,
            provider_event_id=provider_event_id,
            limit=limit,
        )

    async def list_webhook_events(
        self,
        *,
        provider: PaymentProviderName | None = None,
        outcome: WebhookOutcome | None = None,
        provider_reference_id: str | None = None,
        limit: int = 100,
    ) -> list[WebhookEventOut]:
        return await list_webhook_events(
            self._store,
            provider=provider,
            outcome=outcome,
            provider_reference_id=provider_reference_id,
            limit=limit,
        )

    async def list_review_queue(self, limit: int = 100) -> list[WebhookDeliveryOut]:
        return await list_review_queue(self._store, limit=limit)

    async def mark_delivery_reviewed(self, delivery_id: str) -> WebhookDeliveryOut:
        delivery = await mark_delivery_reviewed(self._store, delivery_id, now=_epoch())
        if delivery is None:
            raise resource_not_found("WebhookDelivery", delivery_id)
        logger.info("webhook_delivery_reviewed", delivery_id=delivery_id)
        return delivery

    async def get_analytics_summary(self, workspace_id: str, time_range: AnalyticsRange) -> AnalyticsSummaryOut:
        since = _epoch() - time_range.seconds
        intents = await list_payment_intents(self._store, workspace_id=workspace_id, created_since=since)
        refunds = await list_refunds_for_workspace(self._store, workspace_id=workspace_id, created_since=since)
        return summarize_payments(
            workspace_id=workspace_id,
            time_range=time_range,
            since=since,
            intents=intents,
            refunds=refunds,
        )

    def provider_health(self) -> list[ProviderHealthOut]:
        health = []
        for name in PaymentProviderName:
            configured = self._providers.is_configured(name)
            health.append(
                ProviderHealthOut(
                    provider=name,
                    vendor=self._providers.get_provider(name).vendor_name if configured else None,
                    configured=configured,
                )
            )
        return health
