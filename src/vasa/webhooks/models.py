"""Pydantic models for the webhook delivery engine.

Provides the event taxonomy, subscription records with their health and
statistics, the signed wire envelope, and the delivery log state machine.
All models are designed for API serialization and Redis storage.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

__all__ = [
    "AUTO_DISABLE_REASON",
    "EVENT_CATEGORIES",
    "DeliveryErrorType",
    "DeliveryLog",
    "DeliveryQuery",
    "DeliveryStatus",
    "HealthStatus",
    "HttpMethod",
    "RateLimitConfig",
    "RetryAttempt",
    "RetryPolicy",
    "Subscription",
    "SubscriptionCreateRequest",
    "SubscriptionFilters",
    "SubscriptionHealth",
    "SubscriptionResponse",
    "SubscriptionStats",
    "SubscriptionUpdateRequest",
    "WebhookEnvelope",
    "WebhookEventType",
    "backoff_delay_ms",
]

AUTO_DISABLE_REASON = "Too many consecutive failures"

# Health thresholds for the derived health_status view
DEGRADED_THRESHOLD = 3
UNHEALTHY_THRESHOLD = 5


class WebhookEventType(str, Enum):
    """Closed set of deliverable event types.

    The string values are part of the wire contract. ``WEBHOOK_VERIFICATION``
    is the internal endpoint check and cannot be subscribed to.
    """

    # Order events
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_COMPLETED = "order.completed"
    ORDER_DISPUTED = "order.disputed"

    # Payment events
    PAYMENT_PENDING = "payment.pending"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_ADVANCE_PAID = "payment.advance_paid"
    PAYMENT_SHIPMENT_PAID = "payment.shipment_paid"
    PAYMENT_DELIVERY_PAID = "payment.delivery_paid"

    # Shipping events
    SHIPPING_READY_TO_SHIP = "shipping.ready_to_ship"
    SHIPPING_SHIPPED = "shipping.shipped"
    SHIPPING_IN_TRANSIT = "shipping.in_transit"
    SHIPPING_DELIVERED = "shipping.delivered"
    SHIPPING_DELAYED = "shipping.delayed"
    SHIPPING_RETURNED = "shipping.returned"

    # Product events
    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"
    PRODUCT_DELETED = "product.deleted"
    PRODUCT_LOW_STOCK = "product.low_stock"
    PRODUCT_OUT_OF_STOCK = "product.out_of_stock"

    # User and account events
    USER_VERIFIED = "user.verified"
    USER_SUSPENDED = "user.suspended"
    ACCOUNT_KYC_APPROVED = "account.kyc_approved"
    ACCOUNT_KYC_REJECTED = "account.kyc_rejected"

    # Document events
    DOCUMENT_UPLOADED = "document.uploaded"
    DOCUMENT_VERIFIED = "document.verified"
    DOCUMENT_REJECTED = "document.rejected"

    # Compliance events
    COMPLIANCE_CHECK_REQUIRED = "compliance.check_required"
    COMPLIANCE_CHECK_PASSED = "compliance.check_passed"
    COMPLIANCE_CHECK_FAILED = "compliance.check_failed"

    # System events
    SYSTEM_MAINTENANCE = "system.maintenance"
    SYSTEM_ALERT = "system.alert"

    # Internal
    WEBHOOK_VERIFICATION = "webhook.verification"


EVENT_CATEGORIES: dict[str, list[WebhookEventType]] = {
    "order": [e for e in WebhookEventType if e.value.startswith("order.")],
    "payment": [e for e in WebhookEventType if e.value.startswith("payment.")],
    "shipping": [e for e in WebhookEventType if e.value.startswith("shipping.")],
    "product": [e for e in WebhookEventType if e.value.startswith("product.")],
    "user": [
        e
        for e in WebhookEventType
        if e.value.startswith(("user.", "account."))
    ],
    "document": [e for e in WebhookEventType if e.value.startswith("document.")],
    "compliance": [
        e for e in WebhookEventType if e.value.startswith("compliance.")
    ],
    "system": [e for e in WebhookEventType if e.value.startswith("system.")],
}


class HttpMethod(str, Enum):
    """HTTP methods a subscription may be delivered with."""

    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"


class DeliveryStatus(str, Enum):
    """Delivery log status. ``SUCCESS`` and ``ABANDONED`` are terminal."""

    PENDING = "pending"
    SUCCESS = "success"
    RETRY = "retry"
    ABANDONED = "abandoned"


class DeliveryErrorType(str, Enum):
    """Classification of a failed delivery attempt."""

    NETWORK_ERROR = "network_error"
    TIMEOUT_ERROR = "timeout_error"
    HTTP_ERROR = "http_error"
    SERVER_ERROR = "server_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    AUTHENTICATION_ERROR = "authentication_error"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN_ERROR = "unknown_error"


class HealthStatus(str, Enum):
    """Derived endpoint health, for display."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    DISABLED = "disabled"


def backoff_delay_ms(
    attempt: int,
    base_delay_ms: float,
    multiplier: float,
    max_delay_ms: float,
) -> float:
    """Delay before the retry that follows attempt number ``attempt``.

    ``min(base * multiplier ** (attempt - 1), max_delay)``; non-decreasing
    in ``attempt`` for any multiplier >= 1.
    """
    exponent = max(attempt - 1, 0)
    return float(min(base_delay_ms * (multiplier**exponent), max_delay_ms))


def _validate_subscribed_events(
    events: list[WebhookEventType],
) -> list[WebhookEventType]:
    if WebhookEventType.WEBHOOK_VERIFICATION in events:
        raise ValueError("webhook.verification is an internal event")
    # Set semantics, stable order
    return list(dict.fromkeys(events))


# =============================================================================
# Subscription configuration
# =============================================================================


class RetryPolicy(BaseModel):
    """Per-subscription retry configuration.

    ``max_retries`` is the total number of attempts a delivery may make.
    """

    max_retries: int = Field(default=3, ge=1, le=10)
    base_delay_ms: int = Field(default=1000, ge=100, le=30000)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    timeout_ms: int = Field(default=30000, ge=1000, le=120000)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    def delay_ms(self, attempt: int, max_delay_ms: float) -> float:
        return backoff_delay_ms(
            attempt, self.base_delay_ms, self.backoff_multiplier, max_delay_ms
        )


class RateLimitConfig(BaseModel):
    """Advisory per-subscription delivery caps."""

    enabled: bool = False
    per_minute: int = Field(default=60, ge=1, le=1000)
    per_hour: int = Field(default=1000, ge=1, le=10000)


class SubscriptionFilters(BaseModel):
    """Optional event-data constraints.

    ``None`` or an empty list means no constraint on that dimension.
    """

    order_statuses: list[str] | None = None
    payment_types: list[str] | None = None
    min_order_value: float | None = Field(default=None, ge=0)
    countries: list[str] | None = None
    product_categories: list[str] | None = None


class SubscriptionHealth(BaseModel):
    consecutive_failures: int = Field(default=0, ge=0)
    is_healthy: bool = True
    verified_at: datetime | None = None
    last_ping_at: datetime | None = None


class SubscriptionStats(BaseModel):
    total_deliveries: int = 0
    success_count: int = 0
    failure_count: int = 0
    avg_response_time_ms: float = 0.0
    last_delivery_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None


# =============================================================================
# Request/Response Models (API)
# =============================================================================


class SubscriptionCreateRequest(BaseModel):
    """Request body for subscription registration.

    Example:
        >>> request = SubscriptionCreateRequest(
        ...     name="ERP sync",
        ...     url="https://erp.example.com/hooks/vasa",
        ...     events=[WebhookEventType.ORDER_CREATED],
        ... )
    """

    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    url: str = Field(
        description="HTTP(S) URL to receive webhook events",
        examples=["https://example.com/webhooks/vasa"],
    )
    method: HttpMethod = HttpMethod.POST
    events: list[WebhookEventType] = Field(
        description="Event types to subscribe to",
        min_length=1,
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra headers sent with every delivery",
    )
    retry_policy: RetryPolicy | None = Field(
        default=None,
        description="Retry configuration (server defaults if omitted)",
    )
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    filters: SubscriptionFilters = Field(default_factory=SubscriptionFilters)
    tags: list[str] = Field(default_factory=list)
    secret: str | None = Field(
        default=None,
        description="Signing secret (generated if omitted)",
        min_length=16,
    )

    @field_validator("events")
    @classmethod
    def check_events(cls, value: list[WebhookEventType]) -> list[WebhookEventType]:
        return _validate_subscribed_events(value)


class SubscriptionUpdateRequest(BaseModel):
    """Request body for updating a subscription.

    All fields are optional; only provided fields are updated. Setting
    ``active`` to true also resets endpoint health.
    """

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    url: str | None = None
    method: HttpMethod | None = None
    events: list[WebhookEventType] | None = Field(default=None, min_length=1)
    headers: dict[str, str] | None = None
    retry_policy: RetryPolicy | None = None
    rate_limit: RateLimitConfig | None = None
    filters: SubscriptionFilters | None = None
    tags: list[str] | None = None
    active: bool | None = None

    @field_validator("events")
    @classmethod
    def check_events(
        cls, value: list[WebhookEventType] | None
    ) -> list[WebhookEventType] | None:
        if value is None:
            return None
        return _validate_subscribed_events(value)


class SubscriptionResponse(BaseModel):
    """Subscription details returned by the API.

    Note:
        Only a short preview of the secret is included, except in the
        responses to creation and secret regeneration.
    """

    id: str
    name: str
    description: str | None = None
    url: str
    method: HttpMethod
    events: list[WebhookEventType]
    headers: dict[str, str]
    retry_policy: RetryPolicy
    rate_limit: RateLimitConfig
    filters: SubscriptionFilters
    active: bool
    is_verified: bool
    health: SubscriptionHealth
    health_status: HealthStatus
    stats: SubscriptionStats
    success_rate: float
    tags: list[str]
    created_at: datetime
    updated_at: datetime
    last_triggered_at: datetime | None = None
    disabled_at: datetime | None = None
    disabled_reason: str | None = None
    secret_preview: str
    secret: str | None = Field(
        default=None,
        description="Full signing secret (creation and regeneration only)",
    )


class DeliveryQuery(BaseModel):
    """Filters for listing delivery logs of one subscription."""

    status: DeliveryStatus | None = None
    event_type: WebhookEventType | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# =============================================================================
# Internal Models (Storage)
# =============================================================================


class Subscription(BaseModel):
    """Stored subscription record.

    ``health`` and ``stats`` are mutated only by the delivery engine.
    Whenever ``health.consecutive_failures`` reaches the auto-disable
    threshold the subscription is inactive.
    """

    id: str
    owner_id: str
    name: str
    description: str | None = None
    url: str
    method: HttpMethod = HttpMethod.POST
    secret: str
    events: list[WebhookEventType]
    headers: dict[str, str] = Field(default_factory=dict)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    filters: SubscriptionFilters = Field(default_factory=SubscriptionFilters)
    active: bool = True
    is_verified: bool = False
    health: SubscriptionHealth = Field(default_factory=SubscriptionHealth)
    stats: SubscriptionStats = Field(default_factory=SubscriptionStats)
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    last_triggered_at: datetime | None = None
    disabled_at: datetime | None = None
    disabled_reason: str | None = None

    @field_validator("events")
    @classmethod
    def check_events(cls, value: list[WebhookEventType]) -> list[WebhookEventType]:
        return _validate_subscribed_events(value)

    def is_subscribed(self, event_type: WebhookEventType) -> bool:
        return event_type in self.events

    @property
    def success_rate(self) -> float:
        """Percentage of successful attempts, two decimals."""
        if self.stats.total_deliveries == 0:
            return 0.0
        return round(self.stats.success_count / self.stats.total_deliveries * 100, 2)

    @property
    def health_status(self) -> HealthStatus:
        if not self.active:
            return HealthStatus.DISABLED
        if self.health.consecutive_failures >= UNHEALTHY_THRESHOLD:
            return HealthStatus.UNHEALTHY
        if self.health.consecutive_failures >= DEGRADED_THRESHOLD:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def record_outcome(
        self,
        success: bool,
        response_time_ms: float,
        now: datetime,
        failure_threshold: int,
    ) -> bool:
        """Fold one attempt into stats and health.

        Returns:
            True if this outcome auto-disabled the subscription
        """
        stats = self.stats
        stats.total_deliveries += 1
        stats.last_delivery_at = now
        stats.avg_response_time_ms = (
            stats.avg_response_time_ms * (stats.total_deliveries - 1)
            + response_time_ms
        ) / stats.total_deliveries

        if success:
            stats.success_count += 1
            stats.last_success_at = now
            self.health.consecutive_failures = 0
            return False

        stats.failure_count += 1
        stats.last_failure_at = now
        self.health.consecutive_failures += 1

        if self.active and self.health.consecutive_failures >= failure_threshold:
            self.active = False
            self.health.is_healthy = False
            self.disabled_at = now
            self.disabled_reason = AUTO_DISABLE_REASON
            self.updated_at = now
            return True
        return False

    def reset_health(self, now: datetime) -> None:
        """Zero the failure run; re-enable only an auto-disabled subscription."""
        self.health.consecutive_failures = 0
        self.health.is_healthy = True
        if not self.active and self.disabled_reason == AUTO_DISABLE_REASON:
            self.active = True
            self.disabled_at = None
            self.disabled_reason = None
        self.updated_at = now

    def mark_verified(self, now: datetime) -> None:
        self.is_verified = True
        self.health.verified_at = now
        self.health.last_ping_at = now
        self.health.consecutive_failures = 0
        self.health.is_healthy = True
        self.updated_at = now

    def to_response(self, include_secret: bool = False) -> SubscriptionResponse:
        """Convert to API response (secret masked unless requested)."""
        return SubscriptionResponse(
            id=self.id,
            name=self.name,
            description=self.description,
            url=self.url,
            method=self.method,
            events=self.events,
            headers=self.headers,
            retry_policy=self.retry_policy,
            rate_limit=self.rate_limit,
            filters=self.filters,
            active=self.active,
            is_verified=self.is_verified,
            health=self.health,
            health_status=self.health_status,
            stats=self.stats,
            success_rate=self.success_rate,
            tags=self.tags,
            created_at=self.created_at,
            updated_at=self.updated_at,
            last_triggered_at=self.last_triggered_at,
            disabled_at=self.disabled_at,
            disabled_reason=self.disabled_reason,
            secret_preview=f"{self.secret[:8]}...",
            secret=self.secret if include_secret else None,
        )


class WebhookEnvelope(BaseModel):
    """Signed JSON wrapper actually transmitted to the receiver.

    Receivers use ``delivery_id`` as the idempotency key; every attempt of
    one delivery log resends the same envelope.
    """

    event: WebhookEventType
    timestamp: str = Field(description="ISO 8601 time the envelope was built")
    webhook_id: str
    delivery_id: str
    api_version: str = "1.0"
    environment: str
    data: dict[str, Any]

    def to_body(self) -> bytes:
        """Exact bytes that are signed and sent."""
        return self.model_dump_json().encode("utf-8")


class RetryAttempt(BaseModel):
    """One entry of a delivery log's attempt history."""

    attempt: int = Field(ge=1)
    timestamp: datetime
    status_code: int = Field(description="HTTP status, 0 when no response")
    error: str | None = None
    error_type: DeliveryErrorType | None = None
    response_time_ms: float = 0.0


class DeliveryLog(BaseModel):
    """Record of one event's delivery to one subscription.

    Created at ``pending`` by the dispatcher, advanced by the delivery
    engine on each attempt, read by the retry scheduler. ``next_retry_at``
    is set exactly when ``status`` is ``retry``; ``attempts`` only grows.
    """

    event_id: str = Field(description="Globally unique delivery log key")
    delivery_id: str = Field(description="Envelope delivery id (idempotency key)")
    subscription_id: str
    owner_id: str
    event_type: WebhookEventType
    event_timestamp: datetime
    payload: WebhookEnvelope
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    status: DeliveryStatus = DeliveryStatus.PENDING
    retry_history: list[RetryAttempt] = Field(default_factory=list)
    next_retry_at: datetime | None = None
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    last_error_type: DeliveryErrorType | None = None
    response_status: int | None = None
    response_body: str | None = None
    processed_at: datetime | None = None
    claimed_at: datetime | None = Field(
        default=None,
        description="In-flight marker set by a successful claim",
    )
    is_test: bool = False
    created_at: datetime

    @model_validator(mode="after")
    def check_retry_schedule(self) -> DeliveryLog:
        if (self.status == DeliveryStatus.RETRY) != (self.next_retry_at is not None):
            raise ValueError("next_retry_at must be set if and only if status is retry")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in (DeliveryStatus.SUCCESS, DeliveryStatus.ABANDONED)

    @property
    def total_response_time_ms(self) -> float:
        return sum(entry.response_time_ms for entry in self.retry_history)

    def is_claimable(self, expected_attempts: int, now: datetime, claim_ttl: float) -> bool:
        """Whether an attempt numbered ``expected_attempts + 1`` may start."""
        if self.is_terminal or self.attempts != expected_attempts:
            return False
        if self.claimed_at is None:
            return True
        return now - self.claimed_at >= timedelta(seconds=claim_ttl)

    def record_attempt(
        self,
        *,
        now: datetime,
        status_code: int,
        response_time_ms: float,
        retry_policy: RetryPolicy,
        max_delay_ms: float,
        error: str | None = None,
        error_type: DeliveryErrorType | None = None,
        response_body: str | None = None,
    ) -> RetryAttempt:
        """Apply one attempt's outcome and advance the state machine."""
        self.attempts += 1
        self.last_attempt_at = now
        self.claimed_at = None
        self.response_status = status_code
        self.response_body = response_body

        entry = RetryAttempt(
            attempt=self.attempts,
            timestamp=now,
            status_code=status_code,
            error=error,
            error_type=error_type,
            response_time_ms=response_time_ms,
        )
        self.retry_history.append(entry)

        if 200 <= status_code < 300:
            self.status = DeliveryStatus.SUCCESS
            self.processed_at = now
            self.next_retry_at = None
            return entry

        self.last_error = error or f"HTTP {status_code}"
        self.last_error_type = error_type or DeliveryErrorType.UNKNOWN_ERROR

        if self.attempts >= self.max_attempts:
            self.status = DeliveryStatus.ABANDONED
            self.next_retry_at = None
        else:
            delay = retry_policy.delay_ms(self.attempts, max_delay_ms)
            self.status = DeliveryStatus.RETRY
            self.next_retry_at = now + timedelta(milliseconds=delay)
        return entry

    def abandon(self, reason: str, now: datetime) -> None:
        """Terminate without an attempt (e.g. the subscription was deleted)."""
        self.status = DeliveryStatus.ABANDONED
        self.next_retry_at = None
        self.claimed_at = None
        self.last_error = reason
        self.processed_at = now
