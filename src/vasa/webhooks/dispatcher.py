"""Event dispatch: subscription resolution, fan-out and the acceptance queue.

Producers hand events to ``WebhookDispatcher.emit``, which only waits for
a slot in a bounded queue. Worker tasks drain the queue and call
``dispatch``, which selects eligible subscriptions, creates one pending
delivery log per subscription and attempts them concurrently.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from vasa.webhooks.clock import Clock, SystemClock
from vasa.webhooks.filters import matches_filters
from vasa.webhooks.models import DeliveryLog, WebhookEventType
from vasa.webhooks.ratelimit import SubscriptionRateLimiter

if TYPE_CHECKING:
    from vasa.webhooks.config import WebhookConfig
    from vasa.webhooks.engine import DeliveryEngine
    from vasa.webhooks.metrics import WebhookMetrics
    from vasa.webhooks.models import Subscription
    from vasa.webhooks.store import WebhookStore

logger = logging.getLogger(__name__)

__all__ = [
    "DispatchJob",
    "WebhookDispatcher",
]


@dataclass
class DispatchJob:
    """An accepted event waiting for dispatch."""

    event_type: WebhookEventType
    data: dict[str, Any]
    owner_id: str | None = None


class WebhookDispatcher:
    """Resolves events to subscriptions and hands them to the engine.

    Example:
        >>> dispatcher = WebhookDispatcher(store, engine, config)
        >>> await dispatcher.start()
        >>> await dispatcher.emit("order.created", {"order": {...}})
        True
        >>> await dispatcher.stop()
    """

    def __init__(
        self,
        store: WebhookStore,
        engine: DeliveryEngine,
        config: WebhookConfig,
        rate_limiter: SubscriptionRateLimiter | None = None,
        clock: Clock | None = None,
        metrics: WebhookMetrics | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.config = config
        self.clock = clock or SystemClock()
        self.rate_limiter = rate_limiter or SubscriptionRateLimiter(store, self.clock)
        self.metrics = metrics
        self._queue: asyncio.Queue[DispatchJob] = asyncio.Queue(
            maxsize=config.dispatch_queue_size
        )
        self._workers: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    # =========================================================================
    # Resolution and fan-out
    # =========================================================================

    def resolve(
        self,
        event_type: WebhookEventType,
        data: dict[str, Any],
        owner_id: str | None = None,
    ) -> list[Subscription]:
        """Subscriptions eligible for the event, before rate limiting."""
        return [
            subscription
            for subscription in self.store.find_subscriptions_for_event(event_type, owner_id)
            if subscription.active
            and subscription.health.is_healthy
            and subscription.is_subscribed(event_type)
            and matches_filters(subscription.filters, data)
        ]

    async def dispatch(
        self,
        event_type: WebhookEventType,
        data: dict[str, Any],
        owner_id: str | None = None,
    ) -> list[DeliveryLog]:
        """Create and attempt one delivery log per eligible subscription.

        Logs are created one subscription at a time so rate-limit counts see
        every earlier log; the first attempts then run concurrently.

        Returns:
            The delivery logs, as updated by their first attempt
        """
        logs: list[DeliveryLog] = []
        for subscription in self.resolve(event_type, data, owner_id):
            if self.rate_limiter.is_rate_limited(subscription):
                if self.metrics:
                    self.metrics.record_rate_limited()
                continue
            logs.append(self.engine.create_log(subscription, event_type, data))
            self.store.mark_triggered(subscription.id, self.clock.now())

        if not logs:
            logger.debug(f"No eligible subscriptions for {event_type.value}")
            return []

        logger.info(f"Dispatching {event_type.value} to {len(logs)} subscriptions")
        if self.metrics:
            self.metrics.record_dispatch(event_type.value, len(logs))

        results = await asyncio.gather(
            *(self.engine.attempt(log.event_id, 0) for log in logs),
            return_exceptions=True,
        )

        updated: list[DeliveryLog] = []
        for log, result in zip(logs, results):
            if isinstance(result, BaseException):
                # The retry sweep picks the log up once its claim goes stale
                logger.error(f"First attempt of {log.event_id} failed: {result!r}")
                updated.append(log)
            else:
                updated.append(result or log)
        return updated

    # =========================================================================
    # Acceptance queue
    # =========================================================================

    async def emit(
        self,
        event_type: WebhookEventType | str,
        data: dict[str, Any],
        owner_id: str | None = None,
    ) -> bool:
        """Accept an event for asynchronous dispatch.

        Waits only for a free slot in the queue, never for delivery.

        Returns:
            True if the event was accepted, False if emission is disabled or
            the event type is unknown or internal
        """
        if not self.config.enabled:
            return False

        try:
            event = WebhookEventType(event_type)
        except ValueError:
            logger.warning(f"Ignoring unknown webhook event type: {event_type}")
            return False

        if event == WebhookEventType.WEBHOOK_VERIFICATION:
            logger.warning("webhook.verification cannot be emitted")
            return False

        await self._queue.put(DispatchJob(event_type=event, data=data, owner_id=owner_id))
        if self.metrics:
            self.metrics.set_queue_depth(self._queue.qsize())
        return True

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.dispatch(job.event_type, job.data, job.owner_id)
            except Exception as e:
                logger.exception(f"Dispatch worker {index} failed on {job.event_type.value}: {e}")
            finally:
                self._queue.task_done()
                if self.metrics:
                    self.metrics.set_queue_depth(self._queue.qsize())

    async def start(self) -> None:
        """Start the queue consumers."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(self.config.dispatch_workers)
        ]
        logger.info(f"Webhook dispatcher started with {len(self._workers)} workers")

    async def join(self) -> None:
        """Wait until every accepted event has been dispatched."""
        await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        """Stop the consumers, first draining accepted events if requested."""
        if not self._workers:
            return
        if drain:
            await self._queue.join()
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        logger.info("Webhook dispatcher stopped")
