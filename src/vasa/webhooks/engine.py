"""Delivery engine: envelope construction, guarded attempts and retries.

Every attempt on a delivery log goes through ``DeliveryEngine.attempt``,
which first claims the log with a compare-and-set on its attempt count.
The in-process retry timer and the periodic retry sweep can therefore both
fire for the same retry without delivering it twice.

Example:
    >>> engine = DeliveryEngine(store, delivery_service, config)
    >>> log = engine.create_log(subscription, WebhookEventType.ORDER_CREATED, data)
    >>> await engine.attempt(log.event_id, expected_attempts=0)
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from vasa.webhooks.clock import Clock, SystemClock
from vasa.webhooks.models import (
    DeliveryErrorType,
    DeliveryLog,
    DeliveryStatus,
    WebhookEnvelope,
    WebhookEventType,
)
from vasa.webhooks.store import generate_delivery_id, generate_event_id

if TYPE_CHECKING:
    from vasa.webhooks.config import WebhookConfig
    from vasa.webhooks.delivery import WebhookDeliveryService
    from vasa.webhooks.metrics import WebhookMetrics
    from vasa.webhooks.models import Subscription
    from vasa.webhooks.store import WebhookStore

logger = logging.getLogger(__name__)

__all__ = [
    "DeliveryEngine",
    "VerificationResult",
]

SUBSCRIPTION_DELETED_REASON = "Subscription deleted"


def _echoes_challenge(body: str | None, challenge: str) -> bool:
    """Whether a JSON response body carries the challenge back."""
    try:
        data = json.loads(body or "")
    except ValueError:
        return False
    return isinstance(data, dict) and data.get("challenge") == challenge


@dataclass
class VerificationResult:
    """Outcome of an endpoint verification request.

    ``challenge_verified`` is the stronger confirmation that the endpoint
    echoed the challenge in its response body.
    """

    success: bool
    challenge_verified: bool = False
    status_code: int = 0
    response_time_ms: float = 0.0
    error: str | None = None
    error_type: DeliveryErrorType | None = None


class DeliveryEngine:
    """Performs delivery attempts and records their outcomes.

    The engine is the only writer of delivery logs after creation and of
    subscription health and stats.
    """

    def __init__(
        self,
        store: WebhookStore,
        delivery_service: WebhookDeliveryService,
        config: WebhookConfig,
        clock: Clock | None = None,
        metrics: WebhookMetrics | None = None,
    ) -> None:
        self.store = store
        self.delivery_service = delivery_service
        self.config = config
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self._semaphore = asyncio.Semaphore(config.max_concurrent_deliveries)
        self._timers: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    # =========================================================================
    # Log creation
    # =========================================================================

    def build_envelope(
        self,
        subscription: Subscription,
        event_type: WebhookEventType,
        data: dict[str, Any],
    ) -> WebhookEnvelope:
        return WebhookEnvelope(
            event=event_type,
            timestamp=self.clock.now().isoformat(),
            webhook_id=subscription.id,
            delivery_id=generate_delivery_id(),
            api_version=self.config.api_version,
            environment=self.config.environment,
            data=data,
        )

    def create_log(
        self,
        subscription: Subscription,
        event_type: WebhookEventType,
        data: dict[str, Any],
        is_test: bool = False,
    ) -> DeliveryLog:
        """Create a pending delivery log with its envelope snapshot.

        The envelope (and its ``delivery_id``) is fixed here, so every
        attempt of this log resends identical bytes.
        """
        now = self.clock.now()
        envelope = self.build_envelope(subscription, event_type, data)
        log = DeliveryLog(
            event_id=generate_event_id(),
            delivery_id=envelope.delivery_id,
            subscription_id=subscription.id,
            owner_id=subscription.owner_id,
            event_type=event_type,
            event_timestamp=now,
            payload=envelope,
            max_attempts=max(subscription.retry_policy.max_retries, 1),
            is_test=is_test,
            created_at=now,
        )
        self.store.create_delivery(log)
        return log

    # =========================================================================
    # Attempts
    # =========================================================================

    async def attempt(self, event_id: str, expected_attempts: int) -> DeliveryLog | None:
        """Claim the log and perform attempt number ``expected_attempts + 1``.

        Args:
            event_id: Delivery log key
            expected_attempts: Attempt count the caller observed

        Returns:
            The updated log, or None if the claim was lost (another path
            already performed or is performing this attempt)
        """
        log = self.store.claim_delivery(
            event_id, expected_attempts, self.clock.now(), self.config.claim_ttl
        )
        if log is None:
            logger.debug(f"Attempt {expected_attempts + 1} of {event_id} already claimed")
            return None

        subscription = self.store.get_subscription(log.subscription_id)
        if subscription is None:
            self.abandon(log, SUBSCRIPTION_DELETED_REASON)
            return log

        if not subscription.active and log.attempts > 0 and not log.is_test:
            # Retries of a disabled subscription wait until it is re-enabled
            log.claimed_at = None
            self.store.save_delivery(log)
            logger.info(f"Skipping retry of {event_id}: subscription {subscription.id} inactive")
            return log

        async with self._semaphore:
            result = await self.delivery_service.send(subscription, log.payload)

        now = self.clock.now()
        log.record_attempt(
            now=now,
            status_code=result.status_code,
            response_time_ms=result.response_time_ms,
            retry_policy=subscription.retry_policy,
            max_delay_ms=self.config.max_retry_delay_ms,
            error=result.error,
            error_type=result.error_type,
            response_body=result.response_body,
        )
        self.store.save_delivery(log)

        _, disabled = self.store.record_delivery_outcome(
            subscription.id,
            result.success,
            result.response_time_ms,
            now,
            self.config.failure_threshold,
        )

        if self.metrics:
            self.metrics.record_delivery(
                log.event_type.value, result.success, result.response_time_ms / 1000
            )

        if result.success:
            logger.info(
                f"Delivered {log.event_type.value} to {subscription.id} "
                f"(event {event_id}, attempt {log.attempts}, HTTP {result.status_code})"
            )
        elif log.status == DeliveryStatus.RETRY:
            logger.info(
                f"Delivery {event_id} failed ({result.error_type.value if result.error_type else 'unknown'}: "
                f"{result.error}), retry {log.attempts + 1}/{log.max_attempts} at "
                f"{log.next_retry_at.isoformat() if log.next_retry_at else '?'}"
            )
            if self.metrics:
                self.metrics.record_retry_scheduled()
            if self.config.immediate_retry_enabled:
                self._arm_timer(log)
        else:
            logger.warning(
                f"Delivery {event_id} abandoned after {log.attempts} attempts: {log.last_error}"
            )
            if self.metrics:
                self.metrics.record_abandoned()

        if disabled:
            logger.warning(
                f"Subscription {subscription.id} auto-disabled after "
                f"{self.config.failure_threshold} consecutive failures"
            )
            if self.metrics:
                self.metrics.record_auto_disabled()

        return log

    def abandon(self, log: DeliveryLog, reason: str) -> None:
        """Terminate a log without attempting it."""
        log.abandon(reason, self.clock.now())
        self.store.save_delivery(log)
        logger.warning(f"Delivery {log.event_id} abandoned: {reason}")
        if self.metrics:
            self.metrics.record_abandoned()

    # =========================================================================
    # Retry timers
    # =========================================================================

    def _arm_timer(self, log: DeliveryLog) -> None:
        if self._closed or log.next_retry_at is None:
            return
        delay = (log.next_retry_at - self.clock.now()).total_seconds()
        task = asyncio.create_task(self._fire_retry(log.event_id, log.attempts, delay))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    async def _fire_retry(self, event_id: str, attempts: int, delay: float) -> None:
        await self.clock.sleep(delay)
        try:
            await self.attempt(event_id, attempts)
        except Exception as e:
            # The retry sweep picks the log up again
            logger.exception(f"Timer retry of {event_id} failed: {e}")

    async def close(self) -> None:
        """Cancel outstanding retry timers."""
        self._closed = True
        timers = list(self._timers)
        for task in timers:
            task.cancel()
        for task in timers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._timers.clear()

    # =========================================================================
    # Manual flows
    # =========================================================================

    async def deliver_test(self, subscription: Subscription) -> DeliveryLog:
        """Send a ``system.alert`` test delivery.

        Bypasses filters and rate limits. The log is created and attempted
        like any other delivery.
        """
        data = {
            "test": True,
            "message": "This is a test webhook from VASA",
            "subscription_name": subscription.name,
            "timestamp": self.clock.now().isoformat(),
        }
        log = self.create_log(subscription, WebhookEventType.SYSTEM_ALERT, data, is_test=True)
        updated = await self.attempt(log.event_id, 0)
        return updated or log

    async def verify_endpoint(self, subscription: Subscription) -> VerificationResult:
        """Send the endpoint a ``webhook.verification`` challenge.

        Success requires a 2xx answer. On success the subscription is marked
        verified and its failure counter reset. No delivery log is written.
        """
        challenge = secrets.token_hex(16)
        envelope = self.build_envelope(
            subscription,
            WebhookEventType.WEBHOOK_VERIFICATION,
            {
                "challenge": challenge,
                "verification_type": "endpoint_verification",
                "webhook_url": subscription.url,
            },
        )

        async with self._semaphore:
            result = await self.delivery_service.send(subscription, envelope)

        verification = VerificationResult(
            success=result.success,
            challenge_verified=(
                result.success and _echoes_challenge(result.response_body, challenge)
            ),
            status_code=result.status_code,
            response_time_ms=result.response_time_ms,
            error=result.error,
            error_type=result.error_type,
        )

        if verification.success:
            self.store.mark_verified(subscription.id, self.clock.now())
            logger.info(
                f"Verified endpoint for {subscription.id} "
                f"(challenge echoed: {verification.challenge_verified})"
            )
        else:
            logger.info(f"Verification of {subscription.id} failed: {result.error}")

        return verification
