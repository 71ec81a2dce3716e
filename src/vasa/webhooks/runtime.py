"""Webhook runtime: wires the store, engine, dispatcher and scheduler.

Also hosts the owner-facing subscription operations that need more than
one component (URL validation, per-owner limits, store writes), so the
HTTP router and the CLI share them.

Example:
    >>> async with WebhookRuntime(WebhookConfig()) as runtime:
    ...     await runtime.emitter.emit_order_created(order)
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import TYPE_CHECKING

from vasa.webhooks.clock import Clock, SystemClock
from vasa.webhooks.config import WebhookConfig, get_config
from vasa.webhooks.delivery import WebhookDeliveryService
from vasa.webhooks.dispatcher import WebhookDispatcher
from vasa.webhooks.emitter import WebhookEventEmitter
from vasa.webhooks.engine import DeliveryEngine
from vasa.webhooks.errors import SubscriptionValidationError, WebhookErrorCode
from vasa.webhooks.metrics import WebhookMetrics
from vasa.webhooks.models import RetryPolicy
from vasa.webhooks.ratelimit import SubscriptionRateLimiter
from vasa.webhooks.scheduler import RetryScheduler
from vasa.webhooks.security import URLValidationError, WebhookURLValidator
from vasa.webhooks.store import create_store

if TYPE_CHECKING:
    import httpx

    from vasa.webhooks.models import (
        Subscription,
        SubscriptionCreateRequest,
        SubscriptionUpdateRequest,
    )
    from vasa.webhooks.store import WebhookStore

logger = logging.getLogger(__name__)

__all__ = [
    "WebhookRuntime",
]

# Validator codes that describe a malformed URL rather than a blocked target
_MALFORMED_URL_CODES = frozenset(
    {
        "invalid_url",
        "invalid_scheme",
        "https_required",
        "missing_host",
        "dns_resolution_failed",
        "dns_timeout",
    }
)


class WebhookRuntime:
    """Owns every webhook component and their lifecycle.

    Args:
        config: Engine configuration (environment if omitted)
        store: Storage backend (built from config if omitted)
        clock: Time source shared by every component
        transport: Custom httpx transport for outbound deliveries
        metrics: Prometheus metrics (fresh registry if omitted)
    """

    def __init__(
        self,
        config: WebhookConfig | None = None,
        *,
        store: WebhookStore | None = None,
        clock: Clock | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        metrics: WebhookMetrics | None = None,
    ) -> None:
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.store = store if store is not None else create_store(self.config)
        self.metrics = metrics or WebhookMetrics()
        self.url_validator = WebhookURLValidator(
            allow_private=self.config.allow_private_urls,
            allow_http=self.config.allow_http,
        )
        self.delivery_service = WebhookDeliveryService(
            user_agent=self.config.user_agent,
            max_response_body=self.config.max_response_body,
            url_validator=self.url_validator,
            clock=self.clock,
            transport=transport,
        )
        self.engine = DeliveryEngine(
            self.store,
            self.delivery_service,
            self.config,
            clock=self.clock,
            metrics=self.metrics,
        )
        self.rate_limiter = SubscriptionRateLimiter(self.store, self.clock)
        self.dispatcher = WebhookDispatcher(
            self.store,
            self.engine,
            self.config,
            rate_limiter=self.rate_limiter,
            clock=self.clock,
            metrics=self.metrics,
        )
        self.scheduler = RetryScheduler(self.store, self.engine, self.config, clock=self.clock)
        self.emitter = WebhookEventEmitter(self.dispatcher, self.clock)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the dispatch workers and the retry scheduler."""
        if self._started:
            return
        await self.dispatcher.start()
        await self.scheduler.start()
        self._started = True
        logger.info(f"Webhook runtime started (store: {self.store.mode})")

    async def stop(self) -> None:
        """Drain accepted events, then stop every background task."""
        if self._started:
            await self.dispatcher.stop()
            await self.scheduler.stop()
        await self.engine.close()
        await self.delivery_service.close()
        self._started = False
        logger.info("Webhook runtime stopped")

    async def __aenter__(self) -> WebhookRuntime:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    # =========================================================================
    # Subscription operations
    # =========================================================================

    def default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.config.default_max_retries,
            base_delay_ms=self.config.default_retry_delay_ms,
            backoff_multiplier=self.config.default_backoff_multiplier,
            timeout_ms=self.config.default_timeout_ms,
        )

    def validate_url(self, url: str) -> None:
        """Check a target URL.

        Raises:
            SubscriptionValidationError: With ``WEBHOOK_URL_INVALID`` for a
                malformed URL or ``WEBHOOK_SSRF_BLOCKED`` for a blocked target
        """
        try:
            self.url_validator.validate(url)
        except URLValidationError as e:
            code = (
                WebhookErrorCode.WEBHOOK_URL_INVALID
                if e.code in _MALFORMED_URL_CODES
                else WebhookErrorCode.WEBHOOK_SSRF_BLOCKED
            )
            raise SubscriptionValidationError(e.reason, code=code) from e

    def validate_headers(self, headers: dict[str, str]) -> None:
        """Reject header names that cannot be sent.

        Raises:
            SubscriptionValidationError: For an empty name or one containing
                whitespace or a colon
        """
        for name in headers:
            if not name or any(ch.isspace() or ch == ":" for ch in name):
                raise SubscriptionValidationError(f"Invalid header name: {name!r}")

    def create_subscription(
        self, owner_id: str, request: SubscriptionCreateRequest
    ) -> Subscription:
        """Register a subscription for ``owner_id``.

        Raises:
            SubscriptionValidationError: If the owner is at the limit or the
                URL is rejected
        """
        existing = len(self.store.list_subscriptions(owner_id))
        if existing >= self.config.max_subscriptions_per_owner:
            raise SubscriptionValidationError(
                f"Maximum {self.config.max_subscriptions_per_owner} webhooks allowed per owner",
                code=WebhookErrorCode.WEBHOOK_LIMIT_REACHED,
            )
        self.validate_url(request.url)
        self.validate_headers(request.headers)

        subscription = self.store.create_subscription(
            owner_id, request, self.clock.now(), self.default_retry_policy()
        )
        logger.info(f"Created subscription {subscription.id} for {subscription.url}")
        return subscription

    def update_subscription(
        self,
        subscription_id: str,
        owner_id: str,
        request: SubscriptionUpdateRequest,
    ) -> Subscription | None:
        """Apply a partial update; None if the subscription is not the owner's.

        Raises:
            SubscriptionValidationError: If a new URL is rejected
        """
        if request.url is not None:
            self.validate_url(request.url)
        if request.headers is not None:
            self.validate_headers(request.headers)
        subscription = self.store.update_subscription(
            subscription_id, owner_id, request, self.clock.now()
        )
        if subscription is not None:
            logger.info(f"Updated subscription {subscription_id}")
        return subscription
