from __future__ import annotations

from dataclasses import dataclass
from typing import NewType

QueueTaskKey = NewType("QueueTaskKey", str)

# Worker jobs the API hands off; the Celery task name lives with each backend.
DELIVER_PAYMENT_EVENT = QueueTaskKey("deliver_payment_event")


@dataclass(frozen=True)
class QueueJobResult:
    task_id: str
    backend: str
    task_name: str
    status: str = "queued"
