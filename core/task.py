from __future__ import annotations

from typing import Any

import httpx
import structlog

from core.settings import get_settings

logger = structlog.get_logger(__name__)


async def deliver_payment_event(
    message_id: str,
    topic: str,
    payload: dict[str, Any],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """Forward one outbox message to the notification service.

    ``message_id`` is sent as the idempotency key so a redelivered task does
    not notify twice. HTTP errors propagate so the worker can retry.
    """
    settings = get_settings()
    if not settings.notification_service_url:
        logger.info("notification_service_not_configured", message_id=message_id, topic=topic)
        return {"delivered": False, "message_id": message_id}

    async with httpx.AsyncClient(timeout=settings.payment_http_timeout_seconds, transport=transport) as client:
        response = await client.post(
            settings.notification_service_url,
            json={"id": message_id, "topic": topic, "payload": payload},
            headers={"Idempotency-Key": message_id},
        )
        response.raise_for_status()

    logger.info("payment_event_delivered", message_id=message_id, topic=topic, status_code=response.status_code)
    return {"delivered": True, "message_id": message_id}
