from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.deps import get_orchestrator
from core.errors import ErrorCode, resource_not_found
from core.payments.types import resolve_provider_name
from core.response_envelope import document_response
from services.payment_service import PaymentOrchestrator

router = APIRouter(prefix="/payments/webhooks", tags=["Payment Webhooks"])


@router.post("/{provider}")
@document_response(
    message="Webhook received",
    errors=(
        ErrorCode.PAYMENT_WEBHOOK_INVALID,
        ErrorCode.RESOURCE_NOT_FOUND,
        ErrorCode.PAYMENT_PROVIDER_NOT_CONFIGURED,
    ),
)
async def receive_webhook(
    provider: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Receive a processor callback.

    Accepted `provider` path values are the internal names (`card`,
    `mobile_money`, `multi_rail`) or the vendor names (`stripe`, `paystack`,
    `flutterwave`). The body is verified byte for byte before it is parsed.
    """
    name = resolve_provider_name(provider)
    if name is None:
        raise resource_not_found("PaymentProvider", provider)

    adapter = orchestrator.providers.get_provider(name)
    raw_payload = await request.body()
    return await orchestrator.handle_webhook(
        name,
        raw_payload,
        request.headers.get(adapter.signature_header),
    )
