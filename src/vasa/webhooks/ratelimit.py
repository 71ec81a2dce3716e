"""Per-subscription delivery rate limiting.

Counts delivery logs created for a subscription in trailing windows. A
limited subscription is skipped at dispatch time; nothing is queued for
later.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from vasa.webhooks.clock import Clock, SystemClock

if TYPE_CHECKING:
    from vasa.webhooks.models import Subscription
    from vasa.webhooks.store import DeliveryLogStoreProtocol

logger = logging.getLogger(__name__)

__all__ = [
    "SubscriptionRateLimiter",
]

MINUTE = timedelta(seconds=60)
HOUR = timedelta(seconds=3600)


class SubscriptionRateLimiter:
    """Advisory per-subscription backpressure.

    Example:
        >>> limiter = SubscriptionRateLimiter(store, clock)
        >>> if limiter.is_rate_limited(subscription):
        ...     return  # skip, no delivery log
    """

    def __init__(self, store: DeliveryLogStoreProtocol, clock: Clock | None = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def is_rate_limited(self, subscription: Subscription) -> bool:
        """Whether either window already holds its configured cap."""
        limits = subscription.rate_limit
        if not limits.enabled:
            return False

        now = self.clock.now()
        last_minute = self.store.count_deliveries_since(subscription.id, now - MINUTE)
        if last_minute >= limits.per_minute:
            logger.info(
                f"Subscription {subscription.id} rate limited: "
                f"{last_minute}/{limits.per_minute} per minute"
            )
            return True

        last_hour = self.store.count_deliveries_since(subscription.id, now - HOUR)
        if last_hour >= limits.per_hour:
            logger.info(
                f"Subscription {subscription.id} rate limited: "
                f"{last_hour}/{limits.per_hour} per hour"
            )
            return True

        return False
