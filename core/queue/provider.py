from __future__ import annotations

from typing import Any, Protocol

from core.queue.types import QueueJobResult, QueueTaskKey


class QueueProvider(Protocol):
    """Where the outbox relay hands delivery jobs.

    ``enqueue`` raises when the broker refuses the job; the relay then keeps
    the outbox message pending and counts the attempt.
    """

    backend_name: str

    def enqueue(self, task_key: QueueTaskKey, payload: dict[str, Any]) -> QueueJobResult: ...

    def get_status(self, task_id: str) -> str: ...
