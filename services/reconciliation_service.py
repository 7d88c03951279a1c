from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog

from core.errors import AppException
from repositories.payment_repo import list_stale_processing_intents

if TYPE_CHECKING:
    from services.payment_service import PaymentOrchestrator

logger = structlog.get_logger(__name__)


def _epoch() -> int:
    return int(time.time())


async def reconcile_stale_intents(
    orchestrator: "PaymentOrchestrator",
    *,
    stale_after_seconds: int,
    limit: int = 50,
) -> int:
    """Verify intents stuck in PROCESSING with their provider; returns how many settled."""
    intents = await list_stale_processing_intents(
        orchestrator.store,
        updated_before=_epoch() - stale_after_seconds,
        limit=limit,
    )
    settled = 0
    for intent in intents:
        try:
            updated = await orchestrator.verify_payment_intent(intent.id)
        except AppException as err:
            logger.warning("reconcile_intent_failed", intent_id=intent.id, provider=intent.provider.value, error=str(err))
            continue
        if updated.status != intent.status:
            settled += 1
            logger.info("reconcile_intent_settled", intent_id=intent.id, status=updated.status.value)
    logger.info("reconcile_run_completed", checked=len(intents), settled=settled)
    return settled
