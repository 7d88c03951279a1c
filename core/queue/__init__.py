from core.queue.celery_provider import CELERY_TASK_NAMES, CeleryQueueProvider
from core.queue.provider import QueueProvider
from core.queue.types import DELIVER_PAYMENT_EVENT, QueueJobResult, QueueTaskKey

__all__ = [
    "CELERY_TASK_NAMES",
    "CeleryQueueProvider",
    "DELIVER_PAYMENT_EVENT",
    "QueueJobResult",
    "QueueProvider",
    "QueueTaskKey",
]
