"""Prometheus metrics for the webhook engine.

Every ``WebhookMetrics`` instance owns its own ``CollectorRegistry``, so
several runtimes (e.g. in tests) can coexist in one process.

Example:
    >>> metrics = WebhookMetrics()
    >>> metrics.record_delivery("order.created", success=True, latency=0.12)
    >>> metrics.render()
    b'# HELP vasa_webhook_deliveries_total ...'
"""

from __future__ import annotations

import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

__all__ = [
    "CONTENT_TYPE_LATEST",
    "WebhookMetrics",
]


class WebhookMetrics:
    """Collects Prometheus metrics for webhook delivery.

    Metrics collected:
    - vasa_webhook_events_dispatched_total: Events dispatched by type
    - vasa_webhook_deliveries_total: Delivery attempts by event type and outcome
    - vasa_webhook_delivery_latency_seconds: Attempt latency histogram
    - vasa_webhook_retries_scheduled_total: Retries scheduled
    - vasa_webhook_deliveries_abandoned_total: Logs that reached abandoned
    - vasa_webhook_rate_limited_total: Deliveries suppressed by rate limiting
    - vasa_webhook_auto_disabled_total: Subscriptions auto-disabled
    - vasa_webhook_dispatch_queue_depth: Events awaiting dispatch
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.events_dispatched = Counter(
            "vasa_webhook_events_dispatched_total",
            "Events dispatched to subscriptions",
            ["event_type"],
            registry=self.registry,
        )
        self.deliveries = Counter(
            "vasa_webhook_deliveries_total",
            "Delivery attempts by outcome",
            ["event_type", "outcome"],
            registry=self.registry,
        )
        self.delivery_latency = Histogram(
            "vasa_webhook_delivery_latency_seconds",
            "Delivery attempt latency in seconds",
            ["event_type"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self.registry,
        )
        self.retries_scheduled = Counter(
            "vasa_webhook_retries_scheduled_total",
            "Retries scheduled after a failed attempt",
            registry=self.registry,
        )
        self.abandoned = Counter(
            "vasa_webhook_deliveries_abandoned_total",
            "Delivery logs that exhausted their attempts",
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "vasa_webhook_rate_limited_total",
            "Deliveries suppressed by per-subscription rate limits",
            registry=self.registry,
        )
        self.auto_disabled = Counter(
            "vasa_webhook_auto_disabled_total",
            "Subscriptions disabled after consecutive failures",
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "vasa_webhook_dispatch_queue_depth",
            "Events accepted but not yet dispatched",
            registry=self.registry,
        )

    def record_dispatch(self, event_type: str, subscriptions: int) -> None:
        self.events_dispatched.labels(event_type=event_type).inc(subscriptions)

    def record_delivery(self, event_type: str, success: bool, latency: float) -> None:
        """Record one delivery attempt.

        Args:
            event_type: Event type string
            success: Whether the endpoint answered 2xx
            latency: Attempt duration in seconds
        """
        outcome = "success" if success else "failure"
        self.deliveries.labels(event_type=event_type, outcome=outcome).inc()
        self.delivery_latency.labels(event_type=event_type).observe(latency)

    def record_retry_scheduled(self) -> None:
        self.retries_scheduled.inc()

    def record_abandoned(self) -> None:
        self.abandoned.inc()

    def record_rate_limited(self) -> None:
        self.rate_limited.inc()

    def record_auto_disabled(self) -> None:
        self.auto_disabled.inc()

    def set_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)

    def render(self) -> bytes:
        """Serialize the registry in the Prometheus text format."""
        return generate_latest(self.registry)
