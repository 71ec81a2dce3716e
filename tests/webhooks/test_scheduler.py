"""Tests for the retry sweep and delivery log cleanup."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import Any

import pytest

from vasa.webhooks.models import (
    DeliveryStatus,
    SubscriptionCreateRequest,
    SubscriptionUpdateRequest,
    WebhookEventType,
)
from vasa.webhooks.runtime import WebhookRuntime
from vasa.webhooks.scheduler import RetryScheduler


class TestSweep:
    """Tests for RetryScheduler.sweep()."""

    @pytest.mark.asyncio
    async def test_picks_up_due_retries(
        self,
        runtime: WebhookRuntime,
        receiver: Any,
        clock: Any,
        owner: str,
        make_request: Callable[..., SubscriptionCreateRequest],
    ) -> None:
        receiver.respond(500)
        runtime.create_subscription(owner, make_request())
        [log] = await runtime.dispatcher.dispatch(WebhookEventType.ORDER_CREATED, {})
        assert log.status == DeliveryStatus.RETRY

        assert await runtime.scheduler.sweep() == 0

        clock.advance(1)
        assert await runtime.scheduler.sweep() == 1

        stored = runtime.store.get_delivery(log.event_id)
        assert stored is not None
        assert stored.status == DeliveryStatus.SUCCESS
        assert stored.attempts == 2

    @pytest.mark.asyncio
    async def test_sweeps_until_abandoned(
        self,
        runtime: WebhookRuntime,
        receiver: Any,
        clock: Any,
        owner: str,
        make_request: Callable[..., SubscriptionCreateRequest],
    ) -> None:
        receiver.default = 500
        runtime.create_subscription(owner, make_request())
        [log] = await runtime.dispatcher.dispatch(WebhookEventType.ORDER_CREATED, {})

        for _ in range(5):
            clock.advance(30)
            await runtime.scheduler.sweep()

        stored = runtime.store.get_delivery(log.event_id)
        assert stored is not None
        assert stored.status == DeliveryStatus.ABANDONED
        assert len(stored.retry_history) == 3
        assert len(receiver.requests) == 3

    @pytest.mark.asyncio
    async def test_inactive_subscription_not_retried(
        self,
        runtime: WebhookRuntime,
        receiver: Any,
        clock: Any,
        owner: str,
        make_request: Callable[..., SubscriptionCreateRequest],
    ) -> None:
        receiver.respond(500)
        subscription = runtime.create_subscription(owner, make_request())
        [log] = await runtime.dispatcher.dispatch(WebhookEventType.ORDER_CREATED, {})
        runtime.update_subscription(
            subscription.id, owner, SubscriptionUpdateRequest(active=False)
        )

        clock.advance(5)
        assert await runtime.scheduler.sweep() == 0
        stored = runtime.store.get_delivery(log.event_id)
        assert stored is not None
        assert stored.status == DeliveryStatus.RETRY

        runtime.update_subscription(
            subscription.id, owner, SubscriptionUpdateRequest(active=True)
        )
        assert await runtime.scheduler.sweep() == 1

    @pytest.mark.asyncio
    async def test_parked_retries_do_not_starve_the_batch(
        self,
        runtime: WebhookRuntime,
        receiver: Any,
        clock: Any,
        owner: str,
        make_request: Callable[..., SubscriptionCreateRequest],
    ) -> None:
        runtime.config.retry_sweep_batch_size = 2
        disabled = runtime.create_subscription(owner, make_request(name="Disabled"))
        receiver.respond(500, 500)
        await runtime.dispatcher.dispatch(WebhookEventType.ORDER_CREATED, {})
        await runtime.dispatcher.dispatch(WebhookEventType.ORDER_CREATED, {})
        runtime.update_subscription(
            disabled.id, owner, SubscriptionUpdateRequest(active=False)
        )

        runtime.create_subscription(
            owner, make_request(name="Live", events=[WebhookEventType.ORDER_UPDATED])
        )
        receiver.respond(500)
        [live] = await runtime.dispatcher.dispatch(WebhookEventType.ORDER_UPDATED, {})
        assert live.status == DeliveryStatus.RETRY

        clock.advance(30)
        assert await runtime.scheduler.sweep() == 1

        stored = runtime.store.get_delivery(live.event_id)
        assert stored is not None
        assert stored.status == DeliveryStatus.SUCCESS
        parked = runtime.store.list_deliveries(disabled.id)
        assert [log.status for log in parked] == [DeliveryStatus.RETRY] * 2

    @pytest.mark.asyncio
    async def test_recovers_first_attempt_that_raised(
        self,
        runtime: WebhookRuntime,
        receiver: Any,
        clock: Any,
        owner: str,
        make_request: Callable[..., SubscriptionCreateRequest],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        runtime.create_subscription(owner, make_request())
        get_subscription = runtime.store.get_subscription
        calls: list[str] = []

        def flaky_get_subscription(subscription_id: str, owner_id: str | None = None) -> Any:
            calls.append(subscription_id)
            if len(calls) == 1:
                raise ConnectionError("store unavailable")
            return get_subscription(subscription_id, owner_id)

        monkeypatch.setattr(runtime.store, "get_subscription", flaky_get_subscription)

        [log] = await runtime.dispatcher.dispatch(WebhookEventType.ORDER_CREATED, {})
        stored = runtime.store.get_delivery(log.event_id)
        assert stored is not None
        assert stored.status == DeliveryStatus.PENDING
        assert stored.claimed_at is not None
        assert receiver.requests == []

        clock.advance(30)
        assert await runtime.scheduler.sweep() == 0

        clock.advance(runtime.config.claim_ttl)
        assert await runtime.scheduler.sweep() == 1

        stored = runtime.store.get_delivery(log.event_id)
        assert stored is not None
        assert stored.status == DeliveryStatus.SUCCESS
        assert stored.attempts == 1
        assert len(receiver.requests) == 1

    @pytest.mark.asyncio
    async def test_deleted_subscription_abandoned(
        self,
        runtime: WebhookRuntime,
        receiver: Any,
        clock: Any,
        owner: str,
        make_request: Callable[..., SubscriptionCreateRequest],
    ) -> None:
        receiver.respond(500)
        subscription = runtime.create_subscription(owner, make_request())
        [log] = await runtime.dispatcher.dispatch(WebhookEventType.ORDER_CREATED, {})
        runtime.store.delete_subscription(subscription.id, owner)

        clock.advance(5)
        await runtime.scheduler.sweep()

        stored = runtime.store.get_delivery(log.event_id)
        assert stored is not None
        assert stored.status == DeliveryStatus.ABANDONED
        assert len(receiver.requests) == 1


class TestCleanup:
    @pytest.mark.asyncio
    async def test_purges_old_terminal_logs(
        self,
        runtime: WebhookRuntime,
        clock: Any,
        owner: str,
        make_request: Callable[..., SubscriptionCreateRequest],
    ) -> None:
        subscription = runtime.create_subscription(owner, make_request())
        await runtime.dispatcher.dispatch(WebhookEventType.ORDER_CREATED, {})

        clock.advance(timedelta(days=31).total_seconds())
        await runtime.dispatcher.dispatch(WebhookEventType.ORDER_CREATED, {})

        assert await runtime.scheduler.cleanup() == 1
        assert len(runtime.store.list_deliveries(subscription.id)) == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self, runtime: WebhookRuntime) -> None:
        scheduler = RetryScheduler(runtime.store, runtime.engine, runtime.config)

        await scheduler.start()
        assert scheduler.running is True
        await scheduler.stop()

        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_runtime_context(self, runtime: WebhookRuntime) -> None:
        async with runtime:
            assert runtime.started is True
            assert runtime.dispatcher.running is True

        assert runtime.started is False
        assert runtime.dispatcher.running is False
        assert runtime.scheduler.running is False
