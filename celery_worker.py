import asyncio
import os

import httpx
from celery import Celery
from dotenv import load_dotenv

from core.logging_config import setup_logging
from core.task import deliver_payment_event as _deliver_payment_event

load_dotenv()

broker_url = os.getenv("CELERY_BROKER_URL")
backend_url = os.getenv("CELERY_RESULT_BACKEND")

setup_logging(os.getenv("LOG_LEVEL", "INFO"))

celery_app = Celery("worker", broker=broker_url, backend=backend_url)
celery_app.conf.update(
    task_track_started=True,
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
)


@celery_app.task(
    name="celery_worker.deliver_payment_event",
    autoretry_for=(httpx.HTTPError,),
    retry_backoff=True,
    retry_backoff_max=600,
    max_retries=8,
)
def deliver_payment_event(message_id: str, topic: str, payload: dict) -> dict:
    return asyncio.run(_deliver_payment_event(message_id=message_id, topic=topic, payload=payload))
