"""Outbound webhook delivery.

Provides subscription management, signed event delivery with exponential
backoff retries, endpoint health tracking, per-subscription rate limiting
and a queryable delivery log. Supports HMAC-SHA256 signatures and SSRF
protection for subscriber URLs.

Example:
    >>> from vasa.webhooks import WebhookConfig, WebhookRuntime
    >>> async with WebhookRuntime(WebhookConfig()) as runtime:
    ...     await runtime.emitter.emit_order_created({"id": "o-1", "status": "pending_payment"})
"""

from vasa.webhooks.clock import Clock, SystemClock
from vasa.webhooks.config import WebhookConfig, get_config
from vasa.webhooks.delivery import DeliveryResult, WebhookDeliveryService
from vasa.webhooks.dispatcher import WebhookDispatcher
from vasa.webhooks.emitter import WebhookEventEmitter
from vasa.webhooks.engine import DeliveryEngine, VerificationResult
from vasa.webhooks.errors import (
    WEBHOOK_ERROR_REGISTRY,
    SubscriptionValidationError,
    WebhookErrorCode,
    classify_error,
    get_webhook_error_message,
    get_webhook_error_status,
)
from vasa.webhooks.filters import matches_filters
from vasa.webhooks.metrics import WebhookMetrics
from vasa.webhooks.models import (
    EVENT_CATEGORIES,
    DeliveryErrorType,
    DeliveryLog,
    DeliveryQuery,
    DeliveryStatus,
    HealthStatus,
    HttpMethod,
    RateLimitConfig,
    RetryAttempt,
    RetryPolicy,
    Subscription,
    SubscriptionCreateRequest,
    SubscriptionFilters,
    SubscriptionResponse,
    SubscriptionUpdateRequest,
    WebhookEnvelope,
    WebhookEventType,
    backoff_delay_ms,
)
from vasa.webhooks.ratelimit import SubscriptionRateLimiter
from vasa.webhooks.router import create_webhook_router
from vasa.webhooks.runtime import WebhookRuntime
from vasa.webhooks.scheduler import RetryScheduler
from vasa.webhooks.security import (
    URLValidationError,
    ValidatedURL,
    WebhookURLValidator,
)
from vasa.webhooks.signature import (
    SIGNATURE_HEADER,
    SignatureError,
    generate_secret,
    sign_payload,
    verify_signature,
)
from vasa.webhooks.store import (
    MemoryWebhookStore,
    RedisWebhookStore,
    WebhookStore,
    create_store,
    generate_delivery_id,
    generate_event_id,
    generate_subscription_id,
)

__all__ = [
    "EVENT_CATEGORIES",
    "SIGNATURE_HEADER",
    "WEBHOOK_ERROR_REGISTRY",
    "Clock",
    "DeliveryEngine",
    "DeliveryErrorType",
    "DeliveryLog",
    "DeliveryQuery",
    "DeliveryResult",
    "DeliveryStatus",
    "HealthStatus",
    "HttpMethod",
    "MemoryWebhookStore",
    "RateLimitConfig",
    "RedisWebhookStore",
    "RetryAttempt",
    "RetryPolicy",
    "RetryScheduler",
    "SignatureError",
    "Subscription",
    "SubscriptionCreateRequest",
    "SubscriptionFilters",
    "SubscriptionRateLimiter",
    "SubscriptionResponse",
    "SubscriptionUpdateRequest",
    "SubscriptionValidationError",
    "SystemClock",
    "URLValidationError",
    "ValidatedURL",
    "VerificationResult",
    "WebhookConfig",
    "WebhookDeliveryService",
    "WebhookDispatcher",
    "WebhookEnvelope",
    "WebhookErrorCode",
    "WebhookEventEmitter",
    "WebhookEventType",
    "WebhookMetrics",
    "WebhookRuntime",
    "WebhookStore",
    "WebhookURLValidator",
    "backoff_delay_ms",
    "classify_error",
    "create_store",
    "create_webhook_router",
    "generate_delivery_id",
    "generate_event_id",
    "generate_secret",
    "generate_subscription_id",
    "get_config",
    "get_webhook_error_message",
    "get_webhook_error_status",
    "matches_filters",
    "sign_payload",
    "verify_signature",
]
