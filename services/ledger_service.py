"""
Webhook ingestion: signature check, idempotency ledger, guarded state changes.

The ledger row for ``(provider, provider_event_id)`` is inserted before any
state is touched and inside the same transaction, so the unique index decides
which of several concurrent deliveries gets to apply the event. Every delivery
is appended to the audit trail after that transaction has settled.
"""
from __future__ import annotations

import time
import uuid
from typing import Any

import structlog

from core.errors import (
    DuplicateEventError,
    SignatureError,
    StateConflictError,
    UnknownReferenceError,
    ValidationError,
)
from core.payments.manager import PaymentManager
from core.payments.provider import PaymentProvider
from core.payments.types import NormalizedEvent
from repositories.outbox_repo import enqueue_message
from repositories.payment_repo import (
    get_payment_intent_by_idempotency_key,
    get_payment_intent_by_reference,
    get_refund_by_idempotency_key,
    get_refund_by_reference,
)
from repositories.store import DocumentStore
from repositories.subscription_repo import (
    get_invoice_by_reference,
    get_subscription_by_reference,
    insert_invoice,
)
from repositories.webhook_repo import (
    append_webhook_delivery,
    record_webhook_event,
    set_webhook_event_outcome,
)
from schemas.imports import (
    IntentStatus,
    InvoiceStatus,
    NormalizedEventType,
    OutboxTopic,
    PaymentProviderName,
    RefundStatus,
    SubscriptionStatus,
    WebhookOutcome,
)
from schemas.payment_schema import PaymentIntentOut, WebhookAck
from services.state_transitions import (
    move_intent,
    move_invoice,
    move_refund,
    move_subscription,
)

logger = structlog.get_logger(__name__)

_MAX_STORED_PAYLOAD = 64_000


def _epoch() -> int:
    return int(time.time())


def _decode(raw_payload: bytes) -> str:
    return raw_payload[:_MAX_STORED_PAYLOAD].decode("utf-8", errors="replace")


class _Result:
    __slots__ = ("outcome", "detail", "needs_review")

    def __init__(self, outcome: WebhookOutcome, detail: str | None = None, needs_review: bool = False) -> None:
        self.outcome = outcome
        self.detail = detail
        self.needs_review = needs_review


class WebhookLedger:
    def __init__(self, *, providers: PaymentManager, store: DocumentStore) -> None:
        self._providers = providers
        self._store = store

    async def handle(
        self,
        provider_name: PaymentProviderName | str,
        raw_payload: bytes,
        signature_header: str | None,
    ) -> WebhookAck:
        provider = self._providers.get_provider(provider_name)
        name = provider.provider_name
        received_at = _epoch()
        log = logger.bind(provider=name.value)

        if not provider.verify_webhook_signature(raw_payload, signature_header):
            await append_webhook_delivery(
                self._store,
                provider=name,
                outcome=WebhookOutcome.REJECTED_INVALID_SIGNATURE,
                received_at=received_at,
                detail="signature header missing or invalid",
            )
            log.warning("webhook_signature_rejected", header_present=bool(signature_header))
            raise SignatureError()

        try:
            event = provider.parse_webhook_event(raw_payload)
            if not event.event_id:
                raise ValidationError("Webhook payload has no event id")
        except Exception as err:
            detail = err.message if isinstance(err, ValidationError) else f"{type(err).__name__}: {err}"
            log.error("webhook_payload_unreadable", error=detail)
            return await self._acknowledge(
                name,
                None,
                _Result(WebhookOutcome.QUEUED_FOR_REVIEW, detail, True),
                received_at=received_at,
                raw_payload=raw_payload,
            )

        log = log.bind(provider_event_id=event.event_id, event_type=event.event_type.value)
        if event.event_type == NormalizedEventType.UNSUPPORTED:
            # Unclaimed, so a later state of the same resource can still be applied.
            log.info("webhook_event_unsupported", raw_type=event.raw_type)
            return await self._acknowledge(
                name,
                event,
                _Result(WebhookOutcome.IGNORED_UNSUPPORTED_EVENT, event.raw_type),
                received_at=received_at,
                raw_payload=raw_payload,
            )

        try:
            result = await self._record_and_apply(provider, event, received_at)
        except DuplicateEventError:
            log.info("webhook_duplicate_ignored")
            result = _Result(WebhookOutcome.IGNORED_DUPLICATE)
        except Exception as err:
            # The transaction rolled back; the event stays unclaimed for a redelivery.
            log.exception("webhook_processing_failed")
            result = _Result(WebhookOutcome.QUEUED_FOR_REVIEW, f"{type(err).__name__}: {err}", True)
        else:
            log.info("webhook_processed", outcome=result.outcome.value, detail=result.detail)

        return await self._acknowledge(name, event, result, received_at=received_at, raw_payload=raw_payload)

    async def _acknowledge(
        self,
        name: PaymentProviderName,
        event: NormalizedEvent | None,
        result: _Result,
        *,
        received_at: int,
        raw_payload: bytes,
    ) -> WebhookAck:
        await append_webhook_delivery(
            self._store,
            provider=name,
            outcome=result.outcome,
            received_at=received_at,
            provider_event_id=event.event_id if event else None,
            event_type=event.raw_type if event else None,
            detail=result.detail,
            needs_review=result.needs_review,
            raw_payload=_decode(raw_payload),
        )
        return WebhookAck(outcome=result.outcome, provider_event_id=event.event_id if event else None)

    async def _record_and_apply(self, provider: PaymentProvider, event: NormalizedEvent, received_at: int) -> _Result:
        name = provider.provider_name
        async with self._store.transaction() as session:
            ledger_row = await record_webhook_event(
                self._store,
                provider=name,
                provider_event_id=event.event_id,
                event_type=event.raw_type or event.event_type.value,
                provider_reference_id=event.provider_reference_id,
                received_at=received_at,
                session=session,
            )
            now = _epoch()
            try:
                result = await self._apply(name, event, now=now, session=session)
            except UnknownReferenceError as err:
                logger.warning(
                    "webhook_unknown_reference",
                    provider=name.value,
                    provider_event_id=event.event_id,
                    reference=err.reference,
                )
                result = _Result(
                    WebhookOutcome.REJECTED_UNKNOWN_REFERENCE,
                    f"no record for reference {err.reference}",
                    True,
                )
            except StateConflictError as err:
                logger.error(
                    "state_conflict_absorbed",
                    entity=err.entity,
                    entity_id=err.entity_id,
                    current=err.current,
                    target=err.target,
                    provider_event_id=event.event_id,
                )
                result = _Result(WebhookOutcome.APPLIED, f"no-op: {err.entity} already {err.current}")

            if result.needs_review:
                await enqueue_message(
                    self._store,
                    topic=OutboxTopic.REVIEW_REQUIRED,
                    aggregate_type="webhook_event",
                    aggregate_id=ledger_row.id,
                    payload={
                        "provider": name.value,
                        "provider_event_id": event.event_id,
                        "outcome": result.outcome.value,
                        "detail": result.detail,
                    },
                    now=now,
                    session=session,
                )
            await set_webhook_event_outcome(
                self._store,
                ledger_row.id,
                outcome=result.outcome,
                processed_at=now,
                detail=result.detail,
                needs_review=result.needs_review,
                session=session,
            )
        return result

    async def _apply(self, name: PaymentProviderName, event: NormalizedEvent, *, now: int, session: Any) -> _Result:
        kind = event.event_type
        if kind in (NormalizedEventType.INTENT_SUCCEEDED, NormalizedEventType.INTENT_FAILED):
            return await self._apply_intent_event(name, event, now=now, session=session)
        if kind in (NormalizedEventType.REFUND_COMPLETED, NormalizedEventType.REFUND_FAILED):
            return await self._apply_refund_event(name, event, now=now, session=session)
        if kind in (NormalizedEventType.SUBSCRIPTION_ACTIVATED, NormalizedEventType.SUBSCRIPTION_CANCELLED):
            return await self._apply_subscription_event(name, event, now=now, session=session)
        return await self._apply_invoice_event(name, event, now=now, session=session)

    async def _resolve_intent(self, name: PaymentProviderName, reference: str, session: Any) -> PaymentIntentOut | None:
        intent = await get_payment_intent_by_reference(self._store, name, reference, session=session)
        if intent is None:
            # Redirect processors echo our idempotency key, which may land before the reference is stored.
            intent = await get_payment_intent_by_idempotency_key(self._store, name, reference, session=session)
        return intent

    async def _apply_intent_event(
        self,
        name: PaymentProviderName,
        event: NormalizedEvent,
        *,
        now: int,
        session: Any,
    ) -> _Result:
        reference = event.provider_reference_id
        intent = await self._resolve_intent(name, reference, session) if reference else None
        if intent is None:
            raise UnknownReferenceError(name.value, reference)

        fields: dict[str, Any] = {}
        if intent.provider_reference_id is None:
            fields["provider_reference_id"] = reference

        if event.event_type == NormalizedEventType.INTENT_SUCCEEDED:
            mismatch = (event.amount_minor is not None and event.amount_minor != intent.amount_minor) or (
                event.currency is not None and event.currency != intent.currency
            )
            if mismatch:
                logger.error(
                    "webhook_amount_mismatch",
                    intent_id=intent.id,
                    expected_amount=intent.amount_minor,
                    expected_currency=intent.currency,
                    reported_amount=event.amount_minor,
                    reported_currency=event.currency,
                )
                return _Result(
                    WebhookOutcome.QUEUED_FOR_REVIEW,
                    f"reported {event.amount_minor} {event.currency}, expected {intent.amount_minor} {intent.currency}",
                    True,
                )
            if intent.status in (IntentStatus.CANCELLED, IntentStatus.FAILED):
                logger.error("webhook_payment_for_closed_intent", intent_id=intent.id, status=intent.status.value)
                return _Result(
                    WebhookOutcome.QUEUED_FOR_REVIEW,
                    f"provider reports payment for {intent.status.value} intent",
                    True,
                )
            target = IntentStatus.SUCCEEDED
        else:
            target = IntentStatus.FAILED
            fields["failure_code"] = event.outcome
            fields["failure_message"] = "Payment failed at provider"

        await move_intent(self._store, intent, target, now=now, fields=fields, session=session)
        return _Result(WebhookOutcome.APPLIED)

    async def _apply_refund_event(
        self,
        name: PaymentProviderName,
        event: NormalizedEvent,
        *,
        now: int,
        session: Any,
    ) -> _Result:
        reference = event.provider_reference_id
        refund = await get_refund_by_reference(self._store, name, reference, session=session) if reference else None
        fields: dict[str, Any] = {}
        if refund is None and event.idempotency_key:
            # A refund whose create call ended without an answer has no provider id yet.
            refund = await get_refund_by_idempotency_key(self._store, name, event.idempotency_key, session=session)
            if refund is not None and refund.provider_refund_id is None and reference:
                fields["provider_refund_id"] = reference
        if refund is None:
            raise UnknownReferenceError(name.value, reference)

        if event.event_type == NormalizedEventType.REFUND_COMPLETED:
            await move_refund(self._store, refund, RefundStatus.SUCCEEDED, now=now, fields=fields, session=session)
        else:
            fields["failure_message"] = event.outcome
            await move_refund(self._store, refund, RefundStatus.FAILED, now=now, fields=fields, session=session)
        return _Result(WebhookOutcome.APPLIED)

    async def _apply_subscription_event(
        self,
        name: PaymentProviderName,
        event: NormalizedEvent,
        *,
        now: int,
        session: Any,
    ) -> _Result:
        reference = event.provider_reference_id
        subscription = (
            await get_subscription_by_reference(self._store, name, reference, session=session) if reference else None
        )
        if subscription is None:
            raise UnknownReferenceError(name.value, reference)

        if event.event_type == NormalizedEventType.SUBSCRIPTION_CANCELLED:
            target = SubscriptionStatus.CANCELLED
        elif (event.outcome or "").lower() == "trialing":
            target = SubscriptionStatus.TRIALING
        else:
            target = SubscriptionStatus.ACTIVE
        await move_subscription(self._store, subscription, target, now=now, session=session)
        return _Result(WebhookOutcome.APPLIED)

    async def _apply_invoice_event(
        self,
        name: PaymentProviderName,
        event: NormalizedEvent,
        *,
        now: int,
        session: Any,
    ) -> _Result:
        reference = event.provider_reference_id
        invoice = await get_invoice_by_reference(self._store, name, reference, session=session) if reference else None
        subscription = None
        if event.related_reference_id:
            subscription = await get_subscription_by_reference(
                self._store, name, event.related_reference_id, session=session
            )

        if invoice is None:
            if subscription is None or reference is None:
                raise UnknownReferenceError(name.value, reference or event.related_reference_id)
            invoice = await insert_invoice(
                self._store,
                {
                    "_id": str(uuid.uuid4()),
                    "customer_id": subscription.customer_id,
                    "workspace_id": subscription.workspace_id,
                    "subscription_id": subscription.id,
                    "provider": name.value,
                    "provider_invoice_id": reference,
                    "amount_minor": event.amount_minor or 0,
                    "currency": event.currency or "",
                    "status": InvoiceStatus.OPEN.value,
                    "due_date": None,
                    "paid_at": None,
                    "metadata": {},
                    "created_at": now,
                    "updated_at": now,
                },
                session=session,
            )
            logger.info("invoice_recorded_from_webhook", invoice_id=invoice.id, subscription_id=subscription.id)

        if event.event_type == NormalizedEventType.INVOICE_PAID:
            await move_invoice(self._store, invoice, InvoiceStatus.PAID, now=now, fields={"paid_at": now}, session=session)
            follow_up = SubscriptionStatus.ACTIVE
        else:
            await move_invoice(self._store, invoice, InvoiceStatus.OPEN, now=now, session=session)
            await enqueue_message(
                self._store,
                topic=OutboxTopic.INVOICE_PAYMENT_FAILED,
                aggregate_type="invoice",
                aggregate_id=invoice.id,
                payload={"invoice_id": invoice.id, "customer_id": invoice.customer_id, "outcome": event.outcome},
                now=now,
                session=session,
            )
            follow_up = SubscriptionStatus.PAST_DUE

        if subscription is not None and subscription.status != SubscriptionStatus.CANCELLED:
            await move_subscription(self._store, subscription, follow_up, now=now, session=session)
        return _Result(WebhookOutcome.APPLIED)
