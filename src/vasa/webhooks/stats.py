"""Delivery statistics over delivery logs and subscriptions."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from vasa.webhooks.models import DeliveryStatus

if TYPE_CHECKING:
    from vasa.webhooks.models import DeliveryLog, Subscription

__all__ = [
    "DeliveryStats",
    "ErrorBreakdownEntry",
    "OwnerStats",
    "compute_delivery_stats",
    "error_breakdown",
    "summarize_owner",
]

MAX_ERROR_EXAMPLES = 5


class DeliveryStats(BaseModel):
    total_deliveries: int = 0
    successful_deliveries: int = 0
    abandoned_deliveries: int = 0
    retrying_deliveries: int = 0
    pending_deliveries: int = 0
    average_response_time_ms: float | None = None
    min_response_time_ms: float | None = None
    max_response_time_ms: float | None = None


class ErrorBreakdownEntry(BaseModel):
    error_type: str
    count: int
    examples: list[str] = Field(default_factory=list)


class OwnerStats(BaseModel):
    total_webhooks: int = 0
    active_webhooks: int = 0
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    average_success_rate: float = 0.0


def compute_delivery_stats(logs: Iterable[DeliveryLog]) -> DeliveryStats:
    """Aggregate delivery outcomes.

    Response times use the most recent attempt of each log; logs that were
    never attempted do not contribute.
    """
    stats = DeliveryStats()
    response_times: list[float] = []

    for log in logs:
        stats.total_deliveries += 1
        if log.status == DeliveryStatus.SUCCESS:
            stats.successful_deliveries += 1
        elif log.status == DeliveryStatus.ABANDONED:
            stats.abandoned_deliveries += 1
        elif log.status == DeliveryStatus.RETRY:
            stats.retrying_deliveries += 1
        else:
            stats.pending_deliveries += 1
        if log.retry_history:
            response_times.append(log.retry_history[-1].response_time_ms)

    if response_times:
        stats.average_response_time_ms = round(sum(response_times) / len(response_times), 2)
        stats.min_response_time_ms = min(response_times)
        stats.max_response_time_ms = max(response_times)
    return stats


def error_breakdown(logs: Iterable[DeliveryLog]) -> list[ErrorBreakdownEntry]:
    """Count failing logs per error type, most frequent first.

    Only logs at ``retry`` or ``abandoned`` are counted.
    """
    entries: dict[str, ErrorBreakdownEntry] = {}
    for log in logs:
        if log.status not in (DeliveryStatus.RETRY, DeliveryStatus.ABANDONED):
            continue
        key = log.last_error_type.value if log.last_error_type else "unknown_error"
        entry = entries.setdefault(key, ErrorBreakdownEntry(error_type=key, count=0))
        entry.count += 1
        if log.last_error and len(entry.examples) < MAX_ERROR_EXAMPLES:
            entry.examples.append(log.last_error)
    return sorted(entries.values(), key=lambda entry: entry.count, reverse=True)


def summarize_owner(subscriptions: Iterable[Subscription]) -> OwnerStats:
    """Totals across one owner's subscriptions."""
    summary = OwnerStats()
    rates: list[float] = []
    for subscription in subscriptions:
        summary.total_webhooks += 1
        if subscription.active:
            summary.active_webhooks += 1
        summary.total_deliveries += subscription.stats.total_deliveries
        summary.successful_deliveries += subscription.stats.success_count
        summary.failed_deliveries += subscription.stats.failure_count
        rates.append(subscription.success_rate)
    if rates:
        summary.average_success_rate = round(sum(rates) / len(rates), 2)
    return summary
