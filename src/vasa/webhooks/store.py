"""Subscription and delivery log storage with Redis backend and memory fallback.

Both backends implement the same two repository interfaces. Reads return
copies, so a caller only changes stored state through a store method.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, TypeVar

from vasa.webhooks.models import (
    DeliveryLog,
    DeliveryQuery,
    DeliveryStatus,
    RetryPolicy,
    Subscription,
    SubscriptionCreateRequest,
    SubscriptionUpdateRequest,
    WebhookEventType,
)
from vasa.webhooks.signature import generate_secret

if TYPE_CHECKING:
    import redis

    from vasa.webhooks.config import WebhookConfig

__all__ = [
    "MANUAL_DISABLE_REASON",
    "DeliveryLogStoreProtocol",
    "DuplicateEventError",
    "MemoryWebhookStore",
    "RedisWebhookStore",
    "SubscriptionStoreProtocol",
    "WebhookStore",
    "create_store",
    "generate_delivery_id",
    "generate_event_id",
    "generate_subscription_id",
]

logger = logging.getLogger(__name__)

MANUAL_DISABLE_REASON = "Disabled by owner"

T = TypeVar("T")


def generate_subscription_id() -> str:
    """Generate a unique subscription ID."""
    return f"wh_{secrets.token_hex(12)}"


def generate_event_id() -> str:
    """Generate a unique delivery log key."""
    return f"evt_{secrets.token_hex(12)}"


def generate_delivery_id() -> str:
    """Generate the envelope delivery id (receiver idempotency key)."""
    return str(uuid.uuid4())


class DuplicateEventError(ValueError):
    """A delivery log with the same event id already exists."""


def _build_subscription(
    owner_id: str,
    request: SubscriptionCreateRequest,
    now: datetime,
    default_retry_policy: RetryPolicy | None,
) -> Subscription:
    return Subscription(
        id=generate_subscription_id(),
        owner_id=owner_id,
        name=request.name,
        description=request.description,
        url=request.url,
        method=request.method,
        secret=request.secret or generate_secret(),
        events=request.events,
        headers=request.headers,
        retry_policy=request.retry_policy or default_retry_policy or RetryPolicy(),
        rate_limit=request.rate_limit,
        filters=request.filters,
        tags=request.tags,
        created_at=now,
        updated_at=now,
    )


def _apply_update(
    subscription: Subscription,
    request: SubscriptionUpdateRequest,
    now: datetime,
) -> None:
    if request.name is not None:
        subscription.name = request.name
    if request.description is not None:
        subscription.description = request.description
    if request.url is not None and request.url != subscription.url:
        subscription.url = request.url
        subscription.is_verified = False
    if request.method is not None:
        subscription.method = request.method
    if request.events is not None:
        subscription.events = request.events
    if request.headers is not None:
        subscription.headers = request.headers
    if request.retry_policy is not None:
        subscription.retry_policy = request.retry_policy
    if request.rate_limit is not None:
        subscription.rate_limit = request.rate_limit
    if request.filters is not None:
        subscription.filters = request.filters
    if request.tags is not None:
        subscription.tags = request.tags

    if request.active is not None and request.active != subscription.active:
        if request.active:
            # Re-enabling always zeroes the failure run
            subscription.reset_health(now)
            subscription.active = True
            subscription.disabled_at = None
            subscription.disabled_reason = None
        else:
            subscription.active = False
            subscription.disabled_at = now
            subscription.disabled_reason = MANUAL_DISABLE_REASON

    subscription.updated_at = now


def _matches_query(log: DeliveryLog, query: DeliveryQuery) -> bool:
    if query.status is not None and log.status != query.status:
        return False
    if query.event_type is not None and log.event_type != query.event_type:
        return False
    if query.start_date is not None and log.created_at < query.start_date:
        return False
    if query.end_date is not None and log.created_at > query.end_date:
        return False
    return True


# =============================================================================
# Repository interfaces
# =============================================================================


class SubscriptionStoreProtocol(ABC):
    """Protocol for subscription storage backends."""

    @abstractmethod
    def create_subscription(
        self,
        owner_id: str,
        request: SubscriptionCreateRequest,
        now: datetime,
        default_retry_policy: RetryPolicy | None = None,
    ) -> Subscription:
        """Create a new subscription with a fresh id and secret."""
        ...

    @abstractmethod
    def get_subscription(
        self, subscription_id: str, owner_id: str | None = None
    ) -> Subscription | None:
        """Get subscription by ID (enforces ownership when owner_id is given)."""
        ...

    @abstractmethod
    def list_subscriptions(self, owner_id: str) -> list[Subscription]:
        """List an owner's subscriptions, oldest first."""
        ...

    @abstractmethod
    def update_subscription(
        self,
        subscription_id: str,
        owner_id: str,
        request: SubscriptionUpdateRequest,
        now: datetime,
    ) -> Subscription | None:
        """Apply a partial update (enforces ownership)."""
        ...

    @abstractmethod
    def delete_subscription(self, subscription_id: str, owner_id: str) -> bool:
        """Delete subscription (enforces ownership)."""
        ...

    @abstractmethod
    def find_subscriptions_for_event(
        self, event_type: WebhookEventType, owner_id: str | None = None
    ) -> list[Subscription]:
        """Active subscriptions that list ``event_type``."""
        ...

    @abstractmethod
    def mark_triggered(self, subscription_id: str, now: datetime) -> None:
        """Record that an event was dispatched to the subscription."""
        ...

    @abstractmethod
    def record_delivery_outcome(
        self,
        subscription_id: str,
        success: bool,
        response_time_ms: float,
        now: datetime,
        failure_threshold: int,
    ) -> tuple[Subscription | None, bool]:
        """Fold one attempt into stats and health atomically.

        Returns:
            Tuple of (updated subscription or None if deleted, auto-disabled)
        """
        ...

    @abstractmethod
    def reset_health(
        self, subscription_id: str, owner_id: str, now: datetime
    ) -> Subscription | None:
        """Zero the failure counter, re-enabling an auto-disabled subscription."""
        ...

    @abstractmethod
    def mark_verified(self, subscription_id: str, now: datetime) -> Subscription | None:
        """Record a successful endpoint verification."""
        ...

    @abstractmethod
    def regenerate_secret(
        self, subscription_id: str, owner_id: str, now: datetime
    ) -> Subscription | None:
        """Replace the signing secret."""
        ...


class DeliveryLogStoreProtocol(ABC):
    """Protocol for delivery log storage backends."""

    @abstractmethod
    def create_delivery(self, log: DeliveryLog) -> None:
        """Insert a new log.

        Raises:
            DuplicateEventError: If the event id is already stored
        """
        ...

    @abstractmethod
    def get_delivery(self, event_id: str) -> DeliveryLog | None:
        ...

    @abstractmethod
    def save_delivery(self, log: DeliveryLog) -> None:
        """Overwrite a log and refresh its indexes."""
        ...

    @abstractmethod
    def claim_delivery(
        self,
        event_id: str,
        expected_attempts: int,
        now: datetime,
        claim_ttl: float,
    ) -> DeliveryLog | None:
        """Compare-and-set the in-flight marker.

        Succeeds only if the log is non-terminal, its ``attempts`` equals
        ``expected_attempts`` and no fresh claim is held.

        Returns:
            The claimed log, or None if another path owns this attempt
        """
        ...

    @abstractmethod
    def find_due_retries(self, now: datetime, limit: int = 100) -> list[DeliveryLog]:
        """Logs at ``retry`` whose ``next_retry_at`` has passed, earliest first.

        Logs of inactive subscriptions are skipped without counting against
        ``limit``; logs of deleted subscriptions are included so they can be
        abandoned.
        """
        ...

    @abstractmethod
    def find_stalled_deliveries(
        self, created_before: datetime, limit: int = 100
    ) -> list[DeliveryLog]:
        """Logs still at ``pending`` that were created before ``created_before``.

        A first attempt that crashed or raised leaves its log here. Same
        subscription rules as ``find_due_retries``, oldest first.
        """
        ...

    @abstractmethod
    def query_deliveries(
        self, subscription_id: str, query: DeliveryQuery
    ) -> tuple[list[DeliveryLog], int]:
        """Filtered page of a subscription's logs, newest first, with total."""
        ...

    @abstractmethod
    def list_deliveries(
        self, subscription_id: str, since: datetime | None = None
    ) -> list[DeliveryLog]:
        """All of a subscription's logs created at or after ``since``."""
        ...

    @abstractmethod
    def count_deliveries_since(self, subscription_id: str, since: datetime) -> int:
        """Number of logs created for the subscription at or after ``since``."""
        ...

    @abstractmethod
    def delete_deliveries_before(self, cutoff: datetime) -> int:
        """Purge terminal logs created before ``cutoff``.

        Returns:
            Number of logs deleted
        """
        ...


class WebhookStore(SubscriptionStoreProtocol, DeliveryLogStoreProtocol):
    """Combined store used by the runtime."""

    mode: str = "memory"


# =============================================================================
# In-memory backend
# =============================================================================


class MemoryWebhookStore(WebhookStore):
    """In-memory storage (non-persistent, for development/testing).

    Every method runs without yielding to the event loop, so each call is
    atomic with respect to other tasks.
    """

    def __init__(self, mode: str = "memory") -> None:
        self.mode = mode
        self._subscriptions: dict[str, Subscription] = {}
        self._subscriptions_by_owner: dict[str, list[str]] = {}
        self._deliveries: dict[str, DeliveryLog] = {}
        self._deliveries_by_subscription: dict[str, list[str]] = {}

    def _owned(self, subscription_id: str, owner_id: str | None) -> Subscription | None:
        record = self._subscriptions.get(subscription_id)
        if record is None:
            return None
        if owner_id is not None and record.owner_id != owner_id:
            return None
        return record

    # Subscriptions

    def create_subscription(
        self,
        owner_id: str,
        request: SubscriptionCreateRequest,
        now: datetime,
        default_retry_policy: RetryPolicy | None = None,
    ) -> Subscription:
        record = _build_subscription(owner_id, request, now, default_retry_policy)
        self._subscriptions[record.id] = record
        self._subscriptions_by_owner.setdefault(owner_id, []).append(record.id)
        return record.model_copy(deep=True)

    def get_subscription(
        self, subscription_id: str, owner_id: str | None = None
    ) -> Subscription | None:
        record = self._owned(subscription_id, owner_id)
        return record.model_copy(deep=True) if record else None

    def list_subscriptions(self, owner_id: str) -> list[Subscription]:
        return [
            self._subscriptions[sub_id].model_copy(deep=True)
            for sub_id in self._subscriptions_by_owner.get(owner_id, [])
            if sub_id in self._subscriptions
        ]

    def update_subscription(
        self,
        subscription_id: str,
        owner_id: str,
        request: SubscriptionUpdateRequest,
        now: datetime,
    ) -> Subscription | None:
        record = self._owned(subscription_id, owner_id)
        if record is None:
            return None
        _apply_update(record, request, now)
        return record.model_copy(deep=True)

    def delete_subscription(self, subscription_id: str, owner_id: str) -> bool:
        record = self._owned(subscription_id, owner_id)
        if record is None:
            return False
        del self._subscriptions[subscription_id]
        owned = self._subscriptions_by_owner.get(owner_id, [])
        if subscription_id in owned:
            owned.remove(subscription_id)
        return True

    def find_subscriptions_for_event(
        self, event_type: WebhookEventType, owner_id: str | None = None
    ) -> list[Subscription]:
        return [
            record.model_copy(deep=True)
            for record in self._subscriptions.values()
            if record.active
            and record.is_subscribed(event_type)
            and (owner_id is None or record.owner_id == owner_id)
        ]

    def mark_triggered(self, subscription_id: str, now: datetime) -> None:
        record = self._subscriptions.get(subscription_id)
        if record is not None:
            record.last_triggered_at = now

    def record_delivery_outcome(
        self,
        subscription_id: str,
        success: bool,
        response_time_ms: float,
        now: datetime,
        failure_threshold: int,
    ) -> tuple[Subscription | None, bool]:
        record = self._subscriptions.get(subscription_id)
        if record is None:
            return None, False
        disabled = record.record_outcome(success, response_time_ms, now, failure_threshold)
        return record.model_copy(deep=True), disabled

    def reset_health(
        self, subscription_id: str, owner_id: str, now: datetime
    ) -> Subscription | None:
        record = self._owned(subscription_id, owner_id)
        if record is None:
            return None
        record.reset_health(now)
        return record.model_copy(deep=True)

    def mark_verified(self, subscription_id: str, now: datetime) -> Subscription | None:
        record = self._subscriptions.get(subscription_id)
        if record is None:
            return None
        record.mark_verified(now)
        return record.model_copy(deep=True)

    def regenerate_secret(
        self, subscription_id: str, owner_id: str, now: datetime
    ) -> Subscription | None:
        record = self._owned(subscription_id, owner_id)
        if record is None:
            return None
        record.secret = generate_secret()
        record.updated_at = now
        return record.model_copy(deep=True)

    # Delivery logs

    def create_delivery(self, log: DeliveryLog) -> None:
        if log.event_id in self._deliveries:
            raise DuplicateEventError(f"Delivery log {log.event_id} already exists")
        self._deliveries[log.event_id] = log.model_copy(deep=True)
        self._deliveries_by_subscription.setdefault(log.subscription_id, []).append(
            log.event_id
        )

    def get_delivery(self, event_id: str) -> DeliveryLog | None:
        record = self._deliveries.get(event_id)
        return record.model_copy(deep=True) if record else None

    def save_delivery(self, log: DeliveryLog) -> None:
        if log.event_id not in self._deliveries:
            self._deliveries_by_subscription.setdefault(log.subscription_id, []).append(
                log.event_id
            )
        self._deliveries[log.event_id] = log.model_copy(deep=True)

    def claim_delivery(
        self,
        event_id: str,
        expected_attempts: int,
        now: datetime,
        claim_ttl: float,
    ) -> DeliveryLog | None:
        record = self._deliveries.get(event_id)
        if record is None or not record.is_claimable(expected_attempts, now, claim_ttl):
            return None
        record.claimed_at = now
        return record.model_copy(deep=True)

    def _runnable(self, log: DeliveryLog) -> bool:
        record = self._subscriptions.get(log.subscription_id)
        return record is None or record.active

    def find_due_retries(self, now: datetime, limit: int = 100) -> list[DeliveryLog]:
        due = [
            record
            for record in self._deliveries.values()
            if record.status == DeliveryStatus.RETRY
            and record.next_retry_at is not None
            and record.next_retry_at <= now
            and self._runnable(record)
        ]
        due.sort(key=lambda record: record.next_retry_at or now)
        return [record.model_copy(deep=True) for record in due[:limit]]

    def find_stalled_deliveries(
        self, created_before: datetime, limit: int = 100
    ) -> list[DeliveryLog]:
        stalled = [
            record
            for record in self._deliveries.values()
            if record.status == DeliveryStatus.PENDING
            and record.created_at <= created_before
            and self._runnable(record)
        ]
        stalled.sort(key=lambda record: record.created_at)
        return [record.model_copy(deep=True) for record in stalled[:limit]]

    def _logs_for(self, subscription_id: str) -> list[DeliveryLog]:
        return [
            self._deliveries[event_id]
            for event_id in self._deliveries_by_subscription.get(subscription_id, [])
            if event_id in self._deliveries
        ]

    def query_deliveries(
        self, subscription_id: str, query: DeliveryQuery
    ) -> tuple[list[DeliveryLog], int]:
        matching = [
            log for log in reversed(self._logs_for(subscription_id)) if _matches_query(log, query)
        ]
        page = matching[query.offset : query.offset + query.limit]
        return [log.model_copy(deep=True) for log in page], len(matching)

    def list_deliveries(
        self, subscription_id: str, since: datetime | None = None
    ) -> list[DeliveryLog]:
        return [
            log.model_copy(deep=True)
            for log in self._logs_for(subscription_id)
            if since is None or log.created_at >= since
        ]

    def count_deliveries_since(self, subscription_id: str, since: datetime) -> int:
        return sum(1 for log in self._logs_for(subscription_id) if log.created_at >= since)

    def delete_deliveries_before(self, cutoff: datetime) -> int:
        expired = [
            log
            for log in self._deliveries.values()
            if log.is_terminal and log.created_at < cutoff
        ]
        for log in expired:
            del self._deliveries[log.event_id]
            owned = self._deliveries_by_subscription.get(log.subscription_id, [])
            if log.event_id in owned:
                owned.remove(log.event_id)
        return len(expired)


# =============================================================================
# Redis backend
# =============================================================================


def _decode(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisWebhookStore(WebhookStore):
    """Redis-backed storage.

    Key schema:
        vasa:webhook:sub:{id}                -> JSON: Subscription
        vasa:webhook:sub:by_owner:{owner}    -> ZSet: subscription IDs by creation time
        vasa:webhook:sub:all                 -> Set: subscription IDs
        vasa:webhook:log:{event_id}          -> JSON: DeliveryLog
        vasa:webhook:log:by_sub:{sub_id}     -> ZSet: event IDs by creation time
        vasa:webhook:log:retry               -> ZSet: event IDs by next_retry_at
        vasa:webhook:log:pending             -> ZSet: event IDs by creation time
        vasa:webhook:log:all                 -> ZSet: event IDs by creation time

    Read-modify-write operations run as WATCH/MULTI transactions.
    """

    mode = "redis"

    def __init__(
        self,
        redis_client: redis.Redis,
        prefix: str = "vasa:webhook:",
    ) -> None:
        self._redis = redis_client
        self._prefix = prefix

    def _sub_key(self, subscription_id: str) -> str:
        return f"{self._prefix}sub:{subscription_id}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self._prefix}sub:by_owner:{owner_id}"

    def _all_subs_key(self) -> str:
        return f"{self._prefix}sub:all"

    def _log_key(self, event_id: str) -> str:
        return f"{self._prefix}log:{event_id}"

    def _log_by_sub_key(self, subscription_id: str) -> str:
        return f"{self._prefix}log:by_sub:{subscription_id}"

    def _retry_key(self) -> str:
        return f"{self._prefix}log:retry"

    def _pending_key(self) -> str:
        return f"{self._prefix}log:pending"

    def _all_logs_key(self) -> str:
        return f"{self._prefix}log:all"

    def _load_subscription(self, subscription_id: str) -> Subscription | None:
        data = self._redis.get(self._sub_key(subscription_id))
        if not data:
            return None
        return Subscription.model_validate_json(data)

    def _load_log(self, event_id: str) -> DeliveryLog | None:
        data = self._redis.get(self._log_key(event_id))
        if not data:
            return None
        return DeliveryLog.model_validate_json(data)

    def _mutate_subscription(
        self,
        subscription_id: str,
        owner_id: str | None,
        mutate: Callable[[Subscription], T],
    ) -> tuple[Subscription, T] | None:
        key = self._sub_key(subscription_id)

        def _apply(pipe: redis.client.Pipeline) -> tuple[Subscription, T] | None:
            data = pipe.get(key)
            if not data:
                return None
            record = Subscription.model_validate_json(data)
            if owner_id is not None and record.owner_id != owner_id:
                return None
            result = mutate(record)
            pipe.multi()
            pipe.set(key, record.model_dump_json())
            return record, result

        return self._redis.transaction(_apply, key, value_from_callable=True)

    # Subscriptions

    def create_subscription(
        self,
        owner_id: str,
        request: SubscriptionCreateRequest,
        now: datetime,
        default_retry_policy: RetryPolicy | None = None,
    ) -> Subscription:
        record = _build_subscription(owner_id, request, now, default_retry_policy)

        pipe = self._redis.pipeline()
        pipe.set(self._sub_key(record.id), record.model_dump_json())
        pipe.zadd(self._owner_key(owner_id), {record.id: now.timestamp()})
        pipe.sadd(self._all_subs_key(), record.id)
        pipe.execute()

        logger.info(f"Created subscription {record.id} for owner {owner_id[:8]}...")
        return record

    def get_subscription(
        self, subscription_id: str, owner_id: str | None = None
    ) -> Subscription | None:
        record = self._load_subscription(subscription_id)
        if record is None:
            return None
        if owner_id is not None and record.owner_id != owner_id:
            return None
        return record

    def list_subscriptions(self, owner_id: str) -> list[Subscription]:
        results: list[Subscription] = []
        for sub_id in self._redis.zrange(self._owner_key(owner_id), 0, -1):
            record = self._load_subscription(_decode(sub_id))
            if record is not None:
                results.append(record)
        return results

    def update_subscription(
        self,
        subscription_id: str,
        owner_id: str,
        request: SubscriptionUpdateRequest,
        now: datetime,
    ) -> Subscription | None:
        outcome = self._mutate_subscription(
            subscription_id, owner_id, lambda record: _apply_update(record, request, now)
        )
        return outcome[0] if outcome else None

    def delete_subscription(self, subscription_id: str, owner_id: str) -> bool:
        record = self.get_subscription(subscription_id, owner_id)
        if record is None:
            return False

        pipe = self._redis.pipeline()
        pipe.delete(self._sub_key(subscription_id))
        pipe.zrem(self._owner_key(owner_id), subscription_id)
        pipe.srem(self._all_subs_key(), subscription_id)
        pipe.execute()

        logger.info(f"Deleted subscription {subscription_id}")
        return True

    def find_subscriptions_for_event(
        self, event_type: WebhookEventType, owner_id: str | None = None
    ) -> list[Subscription]:
        if owner_id is not None:
            candidates = [_decode(s) for s in self._redis.zrange(self._owner_key(owner_id), 0, -1)]
        else:
            candidates = [_decode(s) for s in self._redis.smembers(self._all_subs_key())]

        results: list[Subscription] = []
        for sub_id in candidates:
            record = self._load_subscription(sub_id)
            if record is not None and record.active and record.is_subscribed(event_type):
                results.append(record)
        return results

    def mark_triggered(self, subscription_id: str, now: datetime) -> None:
        def _touch(record: Subscription) -> None:
            record.last_triggered_at = now

        self._mutate_subscription(subscription_id, None, _touch)

    def record_delivery_outcome(
        self,
        subscription_id: str,
        success: bool,
        response_time_ms: float,
        now: datetime,
        failure_threshold: int,
    ) -> tuple[Subscription | None, bool]:
        outcome = self._mutate_subscription(
            subscription_id,
            None,
            lambda record: record.record_outcome(
                success, response_time_ms, now, failure_threshold
            ),
        )
        if outcome is None:
            return None, False
        return outcome

    def reset_health(
        self, subscription_id: str, owner_id: str, now: datetime
    ) -> Subscription | None:
        outcome = self._mutate_subscription(
            subscription_id, owner_id, lambda record: record.reset_health(now)
        )
        return outcome[0] if outcome else None

    def mark_verified(self, subscription_id: str, now: datetime) -> Subscription | None:
        outcome = self._mutate_subscription(
            subscription_id, None, lambda record: record.mark_verified(now)
        )
        return outcome[0] if outcome else None

    def regenerate_secret(
        self, subscription_id: str, owner_id: str, now: datetime
    ) -> Subscription | None:
        def _rotate(record: Subscription) -> None:
            record.secret = generate_secret()
            record.updated_at = now

        outcome = self._mutate_subscription(subscription_id, owner_id, _rotate)
        return outcome[0] if outcome else None

    # Delivery logs

    def _index_log(self, pipe: redis.client.Pipeline, log: DeliveryLog) -> None:
        if log.status == DeliveryStatus.RETRY and log.next_retry_at is not None:
            pipe.zadd(self._retry_key(), {log.event_id: log.next_retry_at.timestamp()})
        else:
            pipe.zrem(self._retry_key(), log.event_id)
        if log.status == DeliveryStatus.PENDING:
            pipe.zadd(self._pending_key(), {log.event_id: log.created_at.timestamp()})
        else:
            pipe.zrem(self._pending_key(), log.event_id)

    def create_delivery(self, log: DeliveryLog) -> None:
        created = self._redis.set(self._log_key(log.event_id), log.model_dump_json(), nx=True)
        if not created:
            raise DuplicateEventError(f"Delivery log {log.event_id} already exists")

        score = log.created_at.timestamp()
        pipe = self._redis.pipeline()
        pipe.zadd(self._log_by_sub_key(log.subscription_id), {log.event_id: score})
        pipe.zadd(self._all_logs_key(), {log.event_id: score})
        self._index_log(pipe, log)
        pipe.execute()

    def get_delivery(self, event_id: str) -> DeliveryLog | None:
        return self._load_log(event_id)

    def save_delivery(self, log: DeliveryLog) -> None:
        score = log.created_at.timestamp()
        pipe = self._redis.pipeline()
        pipe.set(self._log_key(log.event_id), log.model_dump_json())
        pipe.zadd(self._log_by_sub_key(log.subscription_id), {log.event_id: score})
        pipe.zadd(self._all_logs_key(), {log.event_id: score})
        self._index_log(pipe, log)
        pipe.execute()

    def claim_delivery(
        self,
        event_id: str,
        expected_attempts: int,
        now: datetime,
        claim_ttl: float,
    ) -> DeliveryLog | None:
        key = self._log_key(event_id)

        def _claim(pipe: redis.client.Pipeline) -> DeliveryLog | None:
            data = pipe.get(key)
            if not data:
                return None
            log = DeliveryLog.model_validate_json(data)
            if not log.is_claimable(expected_attempts, now, claim_ttl):
                return None
            log.claimed_at = now
            pipe.multi()
            pipe.set(key, log.model_dump_json())
            return log

        return self._redis.transaction(_claim, key, value_from_callable=True)

    def _scan_runnable(
        self,
        index_key: str,
        max_score: float,
        status: DeliveryStatus,
        limit: int,
    ) -> list[DeliveryLog]:
        """Page through an index, skipping logs of inactive subscriptions."""
        results: list[DeliveryLog] = []
        active: dict[str, bool] = {}
        page_size = max(limit, 100)
        start = 0
        while len(results) < limit:
            event_ids = self._redis.zrangebyscore(
                index_key, "-inf", max_score, start=start, num=page_size
            )
            if not event_ids:
                break
            start += len(event_ids)
            for raw_id in event_ids:
                log = self._load_log(_decode(raw_id))
                if log is None or log.status != status:
                    continue
                if log.subscription_id not in active:
                    record = self._load_subscription(log.subscription_id)
                    active[log.subscription_id] = record is None or record.active
                if not active[log.subscription_id]:
                    continue
                results.append(log)
                if len(results) >= limit:
                    break
        return results

    def find_due_retries(self, now: datetime, limit: int = 100) -> list[DeliveryLog]:
        return self._scan_runnable(
            self._retry_key(), now.timestamp(), DeliveryStatus.RETRY, limit
        )

    def find_stalled_deliveries(
        self, created_before: datetime, limit: int = 100
    ) -> list[DeliveryLog]:
        return self._scan_runnable(
            self._pending_key(), created_before.timestamp(), DeliveryStatus.PENDING, limit
        )

    def _logs_for(self, subscription_id: str, since: datetime | None = None) -> list[DeliveryLog]:
        low = since.timestamp() if since is not None else "-inf"
        event_ids = self._redis.zrangebyscore(self._log_by_sub_key(subscription_id), low, "+inf")
        results: list[DeliveryLog] = []
        for event_id in event_ids:
            log = self._load_log(_decode(event_id))
            if log is not None:
                results.append(log)
        return results

    def query_deliveries(
        self, subscription_id: str, query: DeliveryQuery
    ) -> tuple[list[DeliveryLog], int]:
        matching = [
            log for log in reversed(self._logs_for(subscription_id)) if _matches_query(log, query)
        ]
        return matching[query.offset : query.offset + query.limit], len(matching)

    def list_deliveries(
        self, subscription_id: str, since: datetime | None = None
    ) -> list[DeliveryLog]:
        return self._logs_for(subscription_id, since)

    def count_deliveries_since(self, subscription_id: str, since: datetime) -> int:
        return int(
            self._redis.zcount(self._log_by_sub_key(subscription_id), since.timestamp(), "+inf")
        )

    def delete_deliveries_before(self, cutoff: datetime) -> int:
        event_ids = self._redis.zrangebyscore(
            self._all_logs_key(), "-inf", f"({cutoff.timestamp()}"
        )
        deleted = 0
        for raw_id in event_ids:
            event_id = _decode(raw_id)
            log = self._load_log(event_id)
            if log is not None and not log.is_terminal:
                continue
            pipe = self._redis.pipeline()
            pipe.delete(self._log_key(event_id))
            pipe.zrem(self._all_logs_key(), event_id)
            pipe.zrem(self._retry_key(), event_id)
            pipe.zrem(self._pending_key(), event_id)
            if log is not None:
                pipe.zrem(self._log_by_sub_key(log.subscription_id), event_id)
            pipe.execute()
            deleted += 1
        return deleted


# =============================================================================
# Backend selection
# =============================================================================


def create_store(config: WebhookConfig) -> WebhookStore:
    """Build the configured store.

    Uses Redis when a URL is configured. If Redis is unreachable, falls back
    to memory in degraded mode when ``fallback_enabled`` is set, otherwise
    raises.

    Raises:
        RuntimeError: If Redis is unavailable and fallback is disabled
    """
    if not config.redis_url:
        logger.info("Webhook store: Using in-memory storage (no Redis URL)")
        return MemoryWebhookStore()

    import redis as redis_lib

    try:
        client = redis_lib.from_url(config.redis_url)
        client.ping()
    except (redis_lib.RedisError, OSError, ValueError) as e:
        if not config.fallback_enabled:
            raise RuntimeError(
                f"Webhook Redis store unavailable: {e}. "
                "Set VASA_WEBHOOK_FALLBACK_ENABLED=true for degraded mode."
            ) from e

        logger.warning(
            "Webhook Redis unavailable - using in-memory fallback. "
            "Subscriptions and delivery logs will not persist across restarts."
        )
        return MemoryWebhookStore(mode="degraded")

    logger.info(f"Webhook store: Redis ({config.redis_url})")
    return RedisWebhookStore(client)
