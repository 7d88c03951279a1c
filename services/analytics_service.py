from __future__ import annotations

from collections import Counter, defaultdict

from schemas.imports import AnalyticsRange, IntentStatus, RefundStatus
from schemas.payment_schema import AnalyticsSummaryOut, PaymentIntentOut, RefundOut


def summarize_payments(
    *,
    workspace_id: str,
    time_range: AnalyticsRange,
    since: int,
    intents: list[PaymentIntentOut],
    refunds: list[RefundOut],
) -> AnalyticsSummaryOut:
    """Aggregate intents and refunds created since ``since``.

    Volumes stay in minor units per currency. The success rate is taken over
    settled intents only (succeeded or failed).
    """
    by_status = Counter(intent.status.value for intent in intents)
    by_provider = Counter(intent.provider.value for intent in intents)

    succeeded_volume: dict[str, int] = defaultdict(int)
    for intent in intents:
        if intent.status == IntentStatus.SUCCEEDED:
            succeeded_volume[intent.currency] += intent.amount_minor

    refunded_volume: dict[str, int] = defaultdict(int)
    for refund in refunds:
        if refund.status == RefundStatus.SUCCEEDED:
            refunded_volume[refund.currency] += refund.amount_minor

    succeeded = by_status.get(IntentStatus.SUCCEEDED.value, 0)
    settled = succeeded + by_status.get(IntentStatus.FAILED.value, 0)
    return AnalyticsSummaryOut(
        workspace_id=workspace_id,
        time_range=time_range.value,
        since=since,
        total_intents=len(intents),
        by_status=dict(by_status),
        by_provider=dict(by_provider),
        succeeded_volume_minor=dict(succeeded_volume),
        refunded_volume_minor=dict(refunded_volume),
        success_rate=round(succeeded / settled, 4) if settled else 0.0,
    )
