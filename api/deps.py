from __future__ import annotations

from fastapi import Request

from core.errors import AppException, ErrorCode
from services.payment_service import PaymentOrchestrator


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise AppException(
            status_code=503,
            code=ErrorCode.PAYMENT_PROVIDER_NOT_CONFIGURED,
            message="Payment orchestration is not available",
        )
    return orchestrator
