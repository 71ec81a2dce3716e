"""Retry scheduler and delivery log maintenance.

The periodic sweep is the durability backstop for retries: any log at
``retry`` whose time has come is re-attempted through the engine's claim,
even if the in-process timer that was armed for it was lost.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from vasa.webhooks.clock import Clock, SystemClock
from vasa.webhooks.models import DeliveryLog

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from vasa.webhooks.config import WebhookConfig
    from vasa.webhooks.engine import DeliveryEngine
    from vasa.webhooks.store import WebhookStore

logger = logging.getLogger(__name__)

__all__ = [
    "RetryScheduler",
]


class RetryScheduler:
    """Runs the retry sweep and the log cleanup on fixed intervals.

    Example:
        >>> scheduler = RetryScheduler(store, engine, config)
        >>> await scheduler.start()
        >>> ...
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        store: WebhookStore,
        engine: DeliveryEngine,
        config: WebhookConfig,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.config = config
        self.clock = clock or SystemClock()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def sweep(self) -> int:
        """Re-attempt due retries and stalled first attempts.

        A ``pending`` log older than the claim TTL lost its first attempt
        (the attempt raised or the process died) and is attempted again.
        Logs of inactive subscriptions are left for the store to skip and
        stay put until the subscription is re-enabled. Logs of deleted
        subscriptions are abandoned by the engine.

        Returns:
            Number of attempts this sweep performed
        """
        now = self.clock.now()
        batch = self.config.retry_sweep_batch_size
        due = self.store.find_due_retries(now, limit=batch)
        stalled = self.store.find_stalled_deliveries(
            now - timedelta(seconds=self.config.claim_ttl), limit=batch
        )
        runnable = due + stalled
        if not runnable:
            return 0

        results = await asyncio.gather(
            *(self.engine.attempt(log.event_id, log.attempts) for log in runnable),
            return_exceptions=True,
        )

        attempted = 0
        for log, result in zip(runnable, results):
            if isinstance(result, BaseException):
                logger.error(f"Retry sweep attempt of {log.event_id} failed: {result!r}")
            elif isinstance(result, DeliveryLog) and result.attempts > log.attempts:
                attempted += 1

        if stalled:
            logger.warning(f"Retry sweep: recovering {len(stalled)} stalled first attempts")
        if attempted:
            logger.info(f"Retry sweep: {attempted} of {len(runnable)} due deliveries attempted")
        return attempted

    async def cleanup(self) -> int:
        """Purge terminal logs older than the retention window.

        Returns:
            Number of logs deleted
        """
        cutoff = self.clock.now() - timedelta(days=self.config.log_retention_days)
        deleted = self.store.delete_deliveries_before(cutoff)
        if deleted:
            logger.info(f"Delivery log cleanup: removed {deleted} logs older than {cutoff.isoformat()}")
        return deleted

    def _loop(
        self, interval: float, job: Callable[[], Awaitable[int]], name: str
    ) -> Callable[[], Awaitable[None]]:
        async def run() -> None:
            while True:
                await self.clock.sleep(interval)
                try:
                    await job()
                except Exception as e:
                    logger.error(f"{name} failed: {e}")

        return run

    async def start(self) -> None:
        """Start the sweep and cleanup loops."""
        if self._tasks:
            return
        sweep_loop = self._loop(self.config.retry_sweep_interval, self.sweep, "Retry sweep")
        cleanup_loop = self._loop(self.config.cleanup_interval, self.cleanup, "Log cleanup")
        self._tasks = [
            asyncio.create_task(sweep_loop()),
            asyncio.create_task(cleanup_loop()),
        ]
        logger.info(
            f"Retry scheduler started: sweep every {self.config.retry_sweep_interval:g}s, "
            f"cleanup every {self.config.cleanup_interval:g}s"
        )

    async def stop(self) -> None:
        """Cancel both loops and wait for them to finish."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._tasks:
            logger.info("Retry scheduler stopped")
        self._tasks = []
