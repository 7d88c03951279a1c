from __future__ import annotations

import asyncio
import time

import structlog

from core.queue.provider import QueueProvider
from core.queue.types import DELIVER_PAYMENT_EVENT
from repositories.outbox_repo import list_pending_messages, mark_message_delivered, mark_message_failed
from repositories.store import DocumentStore

logger = structlog.get_logger(__name__)


def _epoch() -> int:
    return int(time.time())


class OutboxRelay:
    """Moves committed outbox messages onto the task queue.

    A message is marked delivered once the broker accepted it; the worker
    owns delivery to the notification service from there.
    """

    def __init__(self, *, store: DocumentStore, queue: QueueProvider, batch_size: int = 100) -> None:
        self._store = store
        self._queue = queue
        self._batch_size = batch_size

    async def relay_once(self) -> int:
        messages = await list_pending_messages(self._store, limit=self._batch_size)
        relayed = 0
        for message in messages:
            try:
                # Broker clients are synchronous.
                job = await asyncio.to_thread(
                    self._queue.enqueue,
                    DELIVER_PAYMENT_EVENT,
                    {
                        "message_id": message["_id"],
                        "topic": message["topic"],
                        "payload": message["payload"],
                    },
                )
            except Exception as err:
                # Broker client errors vary by transport; the message stays pending.
                failed = await mark_message_failed(self._store, message["_id"], error=str(err))
                logger.warning(
                    "outbox_enqueue_failed",
                    message_id=message["_id"],
                    topic=message["topic"],
                    attempts=failed["attempts"] if failed else None,
                    dead=bool(failed and failed.get("dead")),
                    error=str(err),
                )
                continue
            if await mark_message_delivered(self._store, message["_id"], now=_epoch()):
                relayed += 1
                logger.info("outbox_message_relayed", message_id=message["_id"], topic=message["topic"], task_id=job.task_id)
        if messages:
            logger.info("outbox_relay_completed", pending=len(messages), relayed=relayed)
        return relayed
