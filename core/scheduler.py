from __future__ import annotations

from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.settings import Settings
from services.reconciliation_service import reconcile_stale_intents

if TYPE_CHECKING:
    from services.outbox_service import OutboxRelay
    from services.payment_service import PaymentOrchestrator


def build_scheduler(
    settings: Settings,
    *,
    orchestrator: "PaymentOrchestrator",
    relay: "OutboxRelay",
) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        relay.relay_once,
        trigger=IntervalTrigger(seconds=settings.outbox_relay_interval_seconds),
        id="outbox_relay",
        name="Outbox relay",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        reconcile_stale_intents,
        trigger=IntervalTrigger(seconds=settings.reconcile_interval_seconds),
        kwargs={
            "orchestrator": orchestrator,
            "stale_after_seconds": settings.reconcile_stale_after_seconds,
        },
        id="reconcile_stale_intents",
        name="Stale payment reconciliation",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler
