from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.deps import get_orchestrator
from core.errors import ErrorCode
from core.response_envelope import IDENTITY_ERRORS, PROVIDER_ERRORS, document_response
from schemas.imports import AnalyticsRange, IntentStatus, PaymentProviderName, WebhookOutcome
from schemas.payment_schema import (
    CancelSubscriptionIn,
    ConfirmIntentIn,
    CustomerIn,
    CustomerUpdate,
    InvoiceIn,
    PaymentIntentIn,
    PaymentMethodIn,
    RefundIn,
    SubscriptionIn,
)
from security.auth import verify_admin, verify_identity_headers
from security.principal import AuthPrincipal
from services.payment_service import PaymentOrchestrator

router = APIRouter(prefix="/payments", tags=["Payments"])

_SCOPED = (*IDENTITY_ERRORS, ErrorCode.AUTH_PERMISSION_DENIED, ErrorCode.RESOURCE_NOT_FOUND)
_PROVIDER_CALL = (*_SCOPED, *PROVIDER_ERRORS)
_ADMIN = (*IDENTITY_ERRORS, ErrorCode.AUTH_PERMISSION_DENIED)


@router.get("/providers")
@document_response(message="Payment providers fetched", errors=IDENTITY_ERRORS)
async def list_providers(
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.provider_health()


@router.post("/customers")
@document_response(message="Customer created", status_code=201, errors=IDENTITY_ERRORS)
async def create_customer(
    payload: CustomerIn,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.create_customer(
        payload,
        user_id=principal.user_id,
        workspace_id=principal.workspace_id,
    )


@router.get("/customers/{customer_id}")
@document_response(message="Customer fetched", errors=_SCOPED)
async def get_customer(
    customer_id: str,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    customer = await orchestrator.get_customer(customer_id)
    principal.ensure_workspace(customer.workspace_id, permission_key="GET:/v1/payments/customers/{customer_id}")
    return customer


@router.patch("/customers/{customer_id}")
@document_response(message="Customer updated", errors=_SCOPED)
async def update_customer(
    customer_id: str,
    payload: CustomerUpdate,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    customer = await orchestrator.get_customer(customer_id)
    principal.ensure_workspace(customer.workspace_id, permission_key="PATCH:/v1/payments/customers/{customer_id}")
    return await orchestrator.update_customer(customer_id, payload)


@router.post("/payment-methods")
@document_response(message="Payment method added", status_code=201, errors=_PROVIDER_CALL)
async def add_payment_method(
    payload: PaymentMethodIn,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.add_payment_method(payload, workspace_id=principal.workspace_id)


@router.get("/customers/{customer_id}/payment-methods")
@document_response(message="Payment methods fetched", errors=_SCOPED)
async def list_payment_methods(
    customer_id: str,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    customer = await orchestrator.get_customer(customer_id)
    principal.ensure_workspace(customer.workspace_id)
    return await orchestrator.list_payment_methods(customer_id)


@router.post("/intents")
@document_response(
    message="Payment intent created",
    status_code=201,
    errors=(*_PROVIDER_CALL, ErrorCode.UNSUPPORTED_CURRENCY, ErrorCode.PAYMENT_MISSING_REFERENCE),
)
async def create_intent(
    payload: PaymentIntentIn,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.create_payment_intent(payload, workspace_id=principal.workspace_id)


@router.get("/intents")
@document_response(message="Payment intents fetched", errors=IDENTITY_ERRORS)
async def list_intents(
    request: Request,
    status: IntentStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.list_payment_intents(
        workspace_id=principal.workspace_id,
        status=status,
        limit=limit,
    )


@router.get("/intents/{intent_id}")
@document_response(message="Payment intent fetched", errors=_SCOPED)
async def get_intent(
    intent_id: str,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    intent = await orchestrator.get_payment_intent(intent_id)
    principal.ensure_workspace(intent.workspace_id, permission_key="GET:/v1/payments/intents/{intent_id}")
    return intent


@router.post("/intents/{intent_id}/confirm")
@document_response(message="Payment intent confirmed", errors=_PROVIDER_CALL)
async def confirm_intent(
    intent_id: str,
    payload: ConfirmIntentIn,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    intent = await orchestrator.get_payment_intent(intent_id)
    principal.ensure_workspace(intent.workspace_id, permission_key="POST:/v1/payments/intents/{intent_id}/confirm")
    return await orchestrator.confirm_payment_intent(intent_id, payload.payment_method_ref)


@router.post("/intents/{intent_id}/verify")
@document_response(message="Payment intent verified", errors=_PROVIDER_CALL)
async def verify_intent(
    intent_id: str,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    intent = await orchestrator.get_payment_intent(intent_id)
    principal.ensure_workspace(intent.workspace_id, permission_key="POST:/v1/payments/intents/{intent_id}/verify")
    return await orchestrator.verify_payment_intent(intent_id)


@router.post("/intents/{intent_id}/cancel")
@document_response(message="Payment intent cancelled", errors=_PROVIDER_CALL)
async def cancel_intent(
    intent_id: str,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    intent = await orchestrator.get_payment_intent(intent_id)
    principal.ensure_workspace(intent.workspace_id, permission_key="POST:/v1/payments/intents/{intent_id}/cancel")
    return await orchestrator.cancel_payment_intent(intent_id)


@router.post("/intents/{intent_id}/refunds")
@document_response(
    message="Refund created",
    status_code=201,
    errors=(*_PROVIDER_CALL, ErrorCode.REFUND_EXCEEDS_BALANCE),
)
async def create_refund(
    intent_id: str,
    payload: RefundIn,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    intent = await orchestrator.get_payment_intent(intent_id)
    principal.ensure_workspace(intent.workspace_id, permission_key="POST:/v1/payments/intents/{intent_id}/refunds")
    return await orchestrator.create_refund(intent_id, payload.amount_minor, payload.reason)


@router.get("/intents/{intent_id}/refunds")
@document_response(message="Refunds fetched", errors=_SCOPED)
async def list_refunds(
    intent_id: str,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    intent = await orchestrator.get_payment_intent(intent_id)
    principal.ensure_workspace(intent.workspace_id)
    return await orchestrator.list_refunds(intent_id)


@router.post("/subscriptions")
@document_response(message="Subscription created", status_code=201, errors=_PROVIDER_CALL)
async def create_subscription(
    payload: SubscriptionIn,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.create_subscription(payload, workspace_id=principal.workspace_id)


@router.get("/subscriptions/{subscription_id}")
@document_response(message="Subscription fetched", errors=_SCOPED)
async def get_subscription(
    subscription_id: str,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    subscription = await orchestrator.get_subscription(subscription_id)
    principal.ensure_workspace(subscription.workspace_id)
    return subscription


@router.post("/subscriptions/{subscription_id}/cancel")
@document_response(message="Subscription cancelled", errors=_PROVIDER_CALL)
async def cancel_subscription(
    subscription_id: str,
    payload: CancelSubscriptionIn,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    subscription = await orchestrator.get_subscription(subscription_id)
    principal.ensure_workspace(
        subscription.workspace_id,
        permission_key="POST:/v1/payments/subscriptions/{subscription_id}/cancel",
    )
    return await orchestrator.cancel_subscription(subscription_id, at_period_end=payload.at_period_end)


@router.post("/invoices")
@document_response(message="Invoice created", status_code=201, errors=_SCOPED)
async def create_invoice(
    payload: InvoiceIn,
    request: Request,
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.create_invoice(payload, workspace_id=principal.workspace_id)


@router.get("/customers/{customer_id}/invoices")
@document_response(message="Invoices fetched", errors=_SCOPED)
async def list_invoices(
    customer_id: str,
    request: Request,
    subscription_id: str | None = Query(default=None),
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    customer = await orchestrator.get_customer(customer_id)
    principal.ensure_workspace(customer.workspace_id)
    return await orchestrator.list_invoices(customer_id, subscription_id)


@router.get("/analytics/summary")
@document_response(message="Payment analytics fetched", errors=_ADMIN)
async def analytics_summary(
    request: Request,
    time_range: AnalyticsRange = Query(default=AnalyticsRange.LAST_30D),
    workspace_id: str | None = Query(default=None),
    principal: AuthPrincipal = Depends(verify_identity_headers),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    target_workspace = workspace_id or principal.workspace_id
    principal.ensure_workspace(target_workspace, permission_key="GET:/v1/payments/analytics/summary")
    return await orchestrator.get_analytics_summary(target_workspace, time_range)


@router.get("/ledger/review-queue")
@document_response(message="Review queue fetched", errors=_ADMIN)
async def review_queue(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    principal: AuthPrincipal = Depends(verify_admin),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.list_review_queue(limit)


@router.get("/ledger/deliveries")
@document_response(message="Webhook deliveries fetched", errors=_ADMIN)
async def webhook_deliveries(
    request: Request,
    provider_event_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    principal: AuthPrincipal = Depends(verify_admin),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.list_webhook_deliveries(provider_event_id=provider_event_id, limit=limit)


@router.get("/ledger/events")
@document_response(message="Webhook ledger fetched", errors=_ADMIN)
async def webhook_events(
    request: Request,
    provider: PaymentProviderName | None = Query(default=None),
    outcome: WebhookOutcome | None = Query(default=None),
    provider_reference_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    principal: AuthPrincipal = Depends(verify_admin),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.list_webhook_events(
        provider=provider,
        outcome=outcome,
        provider_reference_id=provider_reference_id,
        limit=limit,
    )


@router.post("/ledger/deliveries/{delivery_id}/reviewed")
@document_response(message="Webhook delivery marked reviewed", errors=_SCOPED)
async def mark_reviewed(
    delivery_id: str,
    request: Request,
    principal: AuthPrincipal = Depends(verify_admin),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.mark_delivery_reviewed(delivery_id)
