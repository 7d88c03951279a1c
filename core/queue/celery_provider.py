from __future__ import annotations

from typing import Any

from core.queue.types import DELIVER_PAYMENT_EVENT, QueueJobResult, QueueTaskKey

# Queue keys map onto task names registered in celery_worker.
CELERY_TASK_NAMES: dict[str, str] = {
    DELIVER_PAYMENT_EVENT: "celery_worker.deliver_payment_event",
}


class CeleryQueueProvider:
    backend_name = "celery"

    def __init__(self, celery_app: Any) -> None:
        self._celery_app = celery_app

    def enqueue(self, task_key: QueueTaskKey, payload: dict[str, Any]) -> QueueJobResult:
        task_name = CELERY_TASK_NAMES.get(task_key)
        if task_name is None:
            raise ValueError(f"Task key '{task_key}' has no Celery task")
        result = self._celery_app.send_task(task_name, kwargs=payload)
        return QueueJobResult(task_id=result.id, backend=self.backend_name, task_name=task_name)

    def get_status(self, task_id: str) -> str:
        return self._celery_app.AsyncResult(task_id).status
