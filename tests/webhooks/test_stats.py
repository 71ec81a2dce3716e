"""Tests for delivery statistics."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from vasa.webhooks.models import (
    DeliveryErrorType,
    SubscriptionCreateRequest,
    WebhookEventType,
)
from vasa.webhooks.runtime import WebhookRuntime
from vasa.webhooks.stats import compute_delivery_stats, error_breakdown, summarize_owner


class TestDeliveryStats:
    """Tests for compute_delivery_stats() and error_breakdown()."""

    @pytest.mark.asyncio
    async def test_mixed_outcomes(
        self,
        runtime: WebhookRuntime,
        receiver: Any,
        owner: str,
        make_request: Callable[..., SubscriptionCreateRequest],
    ) -> None:
        subscription = runtime.create_subscription(owner, make_request())
        receiver.respond(200, 500, 429, 500)
        for _ in range(4):
            await runtime.dispatcher.dispatch(WebhookEventType.ORDER_CREATED, {})

        logs = runtime.store.list_deliveries(subscription.id)
        stats = compute_delivery_stats(logs)
        breakdown = error_breakdown(logs)

        assert stats.total_deliveries == 4
        assert stats.successful_deliveries == 1
        assert stats.retrying_deliveries == 3
        assert stats.average_response_time_ms == 0.0
        assert [(entry.error_type, entry.count) for entry in breakdown] == [
            (DeliveryErrorType.SERVER_ERROR.value, 2),
            (DeliveryErrorType.RATE_LIMIT_ERROR.value, 1),
        ]
        assert breakdown[0].examples == ["HTTP 500", "HTTP 500"]

    def test_empty(self) -> None:
        stats = compute_delivery_stats([])

        assert stats.total_deliveries == 0
        assert stats.average_response_time_ms is None
        assert error_breakdown([]) == []


class TestOwnerStats:
    @pytest.mark.asyncio
    async def test_summarize(
        self,
        runtime: WebhookRuntime,
        receiver: Any,
        owner: str,
        make_request: Callable[..., SubscriptionCreateRequest],
    ) -> None:
        runtime.create_subscription(owner, make_request())
        runtime.create_subscription(
            owner, make_request(events=[WebhookEventType.PAYMENT_FAILED])
        )
        receiver.respond(500)
        await runtime.dispatcher.dispatch(WebhookEventType.ORDER_CREATED, {})
        await runtime.dispatcher.dispatch(WebhookEventType.PAYMENT_FAILED, {})

        summary = summarize_owner(runtime.store.list_subscriptions(owner))

        assert summary.total_webhooks == 2
        assert summary.active_webhooks == 2
        assert summary.total_deliveries == 2
        assert summary.successful_deliveries == 1
        assert summary.failed_deliveries == 1
        assert summary.average_success_rate == 50.0
