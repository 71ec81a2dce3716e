"""FastAPI router for webhook management endpoints.

Provides REST API endpoints for subscription CRUD, delivery logs and
statistics, test deliveries, endpoint verification, secret rotation and
health reset. Owner identity is the ``X-API-Key`` header.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from vasa.webhooks.errors import (
    SubscriptionValidationError,
    WebhookErrorCode,
    get_webhook_error_message,
    get_webhook_error_status,
)
from vasa.webhooks.models import (
    EVENT_CATEGORIES,
    DeliveryLog,
    DeliveryQuery,
    DeliveryStatus,
    HealthStatus,
    SubscriptionCreateRequest,
    SubscriptionResponse,
    SubscriptionStats,
    SubscriptionUpdateRequest,
    WebhookEventType,
)
from vasa.webhooks.stats import (
    DeliveryStats,
    ErrorBreakdownEntry,
    OwnerStats,
    compute_delivery_stats,
    error_breakdown,
    summarize_owner,
)

if TYPE_CHECKING:
    from slowapi import Limiter

    from vasa.webhooks.models import Subscription
    from vasa.webhooks.runtime import WebhookRuntime

logger = logging.getLogger(__name__)

__all__ = [
    "AvailableEventsResponse",
    "DeleteResponse",
    "DeliveryListResponse",
    "SubscriptionListResponse",
    "SubscriptionStatsResponse",
    "TestDeliveryResponse",
    "VerifyResponse",
    "create_webhook_router",
]


# =============================================================================
# Response Models
# =============================================================================


class SubscriptionListResponse(BaseModel):
    """Response for listing subscriptions."""

    webhooks: list[SubscriptionResponse] = Field(description="List of subscriptions")
    count: int = Field(description="Total number of subscriptions")


class DeliveryListResponse(BaseModel):
    """Response for listing delivery logs."""

    deliveries: list[DeliveryLog] = Field(description="Page of delivery logs, newest first")
    total: int = Field(description="Number of logs matching the filters")
    limit: int
    offset: int


class TestDeliveryResponse(BaseModel):
    """Response for the test delivery endpoint."""

    success: bool = Field(description="Whether the endpoint answered 2xx")
    event_id: str = Field(description="Delivery log key of the test delivery")
    delivery_id: str
    status: DeliveryStatus
    status_code: int | None = None
    response_time_ms: float | None = None
    error: str | None = None


class VerifyResponse(BaseModel):
    """Response for the endpoint verification flow."""

    success: bool
    challenge_verified: bool = Field(
        description="Whether the endpoint echoed the challenge"
    )
    status_code: int
    response_time_ms: float


class SubscriptionStatsResponse(BaseModel):
    """Delivery statistics for one subscription over a timeframe."""

    subscription_id: str
    timeframe_hours: int
    deliveries: DeliveryStats
    error_breakdown: list[ErrorBreakdownEntry]
    lifetime: SubscriptionStats
    health_status: HealthStatus
    success_rate: float


class AvailableEventsResponse(BaseModel):
    categories: dict[str, list[WebhookEventType]]
    total_events: int


class DeleteResponse(BaseModel):
    """Response for delete endpoint."""

    success: bool = Field(description="Whether deletion was successful")
    message: str = Field(description="Status message")


def _raise(code: WebhookErrorCode, message: str | None = None) -> NoReturn:
    raise HTTPException(
        status_code=get_webhook_error_status(code),
        detail={
            "code": code.value,
            "message": message or get_webhook_error_message(code),
        },
    )


# =============================================================================
# Router Factory
# =============================================================================


def create_webhook_router(
    runtime: WebhookRuntime, limiter: Limiter | None = None
) -> APIRouter:
    """Create FastAPI router for webhook endpoints.

    Args:
        runtime: Webhook runtime providing the store, engine and clock
        limiter: Applies the admin read and modification budgets when given

    Returns:
        Configured APIRouter
    """
    router = APIRouter(tags=["webhooks"])
    store = runtime.store

    # -------------------------------------------------------------------------
    # Dependency: Per-client request budgets
    # -------------------------------------------------------------------------

    read_limits: list[Any] = []
    modify_limits: list[Any] = []
    if limiter is not None:

        @limiter.limit(runtime.config.admin_read_limit)
        async def read_quota(request: Request) -> None:
            """Budget shared by the read endpoints."""

        @limiter.limit(runtime.config.admin_modify_limit)
        async def modify_quota(request: Request) -> None:
            """Budget shared by the endpoints that change subscriptions."""

        read_limits = [Depends(read_quota)]
        modify_limits = [Depends(modify_quota)]

    # -------------------------------------------------------------------------
    # Dependency: Get API key from request
    # -------------------------------------------------------------------------

    async def get_api_key(request: Request) -> str:
        """Extract the owner's API key from the request."""
        api_key = request.headers.get("X-API-Key")
        if api_key:
            return str(api_key)
        _raise(WebhookErrorCode.WEBHOOK_UNAUTHORIZED, "API key required")

    def get_owned(subscription_id: str, api_key: str) -> Subscription:
        subscription = store.get_subscription(subscription_id, api_key)
        if subscription is None:
            _raise(
                WebhookErrorCode.WEBHOOK_NOT_FOUND,
                f"Webhook {subscription_id} not found",
            )
        return subscription

    # -------------------------------------------------------------------------
    # Collection endpoints
    # -------------------------------------------------------------------------

    @router.post(  # type: ignore[misc]
        "",
        dependencies=modify_limits,
        response_model=SubscriptionResponse,
        status_code=201,
        summary="Register a new webhook",
        responses={
            201: {"description": "Webhook created; the response carries the secret"},
            400: {"description": "Invalid URL, configuration or limit reached"},
            401: {"description": "Authentication required"},
        },
    )
    async def create_webhook(
        request: SubscriptionCreateRequest,
        api_key: str = Depends(get_api_key),
    ) -> SubscriptionResponse:
        """Register a new webhook subscription.

        The full signing secret is only returned by this call and by secret
        regeneration.
        """
        try:
            subscription = runtime.create_subscription(api_key, request)
        except SubscriptionValidationError as e:
            _raise(e.code, e.message)
        return subscription.to_response(include_secret=True)

    @router.get(  # type: ignore[misc]
        "",
        dependencies=read_limits,
        response_model=SubscriptionListResponse,
        summary="List all webhooks",
    )
    async def list_webhooks(
        api_key: str = Depends(get_api_key),
    ) -> SubscriptionListResponse:
        """List all webhooks owned by the authenticated API key."""
        webhooks = [s.to_response() for s in store.list_subscriptions(api_key)]
        return SubscriptionListResponse(webhooks=webhooks, count=len(webhooks))

    @router.get(  # type: ignore[misc]
        "/events/available",
        response_model=AvailableEventsResponse,
        summary="List subscribable event types",
    )
    async def available_events() -> AvailableEventsResponse:
        return AvailableEventsResponse(
            categories=EVENT_CATEGORIES,
            total_events=sum(len(events) for events in EVENT_CATEGORIES.values()),
        )

    @router.get(  # type: ignore[misc]
        "/owner/stats",
        dependencies=read_limits,
        response_model=OwnerStats,
        summary="Totals across the owner's webhooks",
    )
    async def owner_stats(api_key: str = Depends(get_api_key)) -> OwnerStats:
        return summarize_owner(store.list_subscriptions(api_key))

    # -------------------------------------------------------------------------
    # Single subscription endpoints
    # -------------------------------------------------------------------------

    @router.get(  # type: ignore[misc]
        "/{subscription_id}",
        dependencies=read_limits,
        response_model=SubscriptionResponse,
        summary="Get webhook details",
        responses={404: {"description": "Webhook not found"}},
    )
    async def get_webhook(
        subscription_id: str,
        api_key: str = Depends(get_api_key),
    ) -> SubscriptionResponse:
        return get_owned(subscription_id, api_key).to_response()

    @router.patch(  # type: ignore[misc]
        "/{subscription_id}",
        dependencies=modify_limits,
        response_model=SubscriptionResponse,
        summary="Update webhook",
        responses={
            400: {"description": "Invalid URL or configuration"},
            404: {"description": "Webhook not found"},
        },
    )
    async def update_webhook(
        subscription_id: str,
        request: SubscriptionUpdateRequest,
        api_key: str = Depends(get_api_key),
    ) -> SubscriptionResponse:
        """Update a webhook.

        Only provided fields are updated. Setting ``active`` to true also
        resets endpoint health.
        """
        try:
            subscription = runtime.update_subscription(subscription_id, api_key, request)
        except SubscriptionValidationError as e:
            _raise(e.code, e.message)
        if subscription is None:
            _raise(WebhookErrorCode.WEBHOOK_NOT_FOUND, f"Webhook {subscription_id} not found")
        return subscription.to_response()

    @router.delete(  # type: ignore[misc]
        "/{subscription_id}",
        dependencies=modify_limits,
        response_model=DeleteResponse,
        summary="Delete webhook",
        responses={404: {"description": "Webhook not found"}},
    )
    async def delete_webhook(
        subscription_id: str,
        api_key: str = Depends(get_api_key),
    ) -> DeleteResponse:
        """Delete a webhook.

        Retries still pending for it are abandoned by the next sweep.
        """
        if not store.delete_subscription(subscription_id, api_key):
            _raise(WebhookErrorCode.WEBHOOK_NOT_FOUND, f"Webhook {subscription_id} not found")
        logger.info(f"Deleted subscription {subscription_id}")
        return DeleteResponse(success=True, message=f"Webhook {subscription_id} deleted")

    # -------------------------------------------------------------------------
    # Delivery logs and statistics
    # -------------------------------------------------------------------------

    @router.get(  # type: ignore[misc]
        "/{subscription_id}/logs",
        dependencies=read_limits,
        response_model=DeliveryListResponse,
        summary="Get delivery logs",
    )
    async def get_logs(
        subscription_id: str,
        status: DeliveryStatus | None = None,
        event_type: WebhookEventType | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        api_key: str = Depends(get_api_key),
    ) -> DeliveryListResponse:
        """Filtered, paginated delivery logs, newest first."""
        get_owned(subscription_id, api_key)
        query = DeliveryQuery(
            status=status,
            event_type=event_type,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        )
        deliveries, total = store.query_deliveries(subscription_id, query)
        return DeliveryListResponse(
            deliveries=deliveries, total=total, limit=limit, offset=offset
        )

    @router.get(  # type: ignore[misc]
        "/{subscription_id}/logs/{event_id}",
        dependencies=read_limits,
        response_model=DeliveryLog,
        summary="Get one delivery log",
        responses={404: {"description": "Webhook or delivery not found"}},
    )
    async def get_log(
        subscription_id: str,
        event_id: str,
        api_key: str = Depends(get_api_key),
    ) -> DeliveryLog:
        get_owned(subscription_id, api_key)
        log = store.get_delivery(event_id)
        if log is None or log.subscription_id != subscription_id:
            _raise(WebhookErrorCode.DELIVERY_NOT_FOUND, f"Delivery {event_id} not found")
        return log

    @router.get(  # type: ignore[misc]
        "/{subscription_id}/stats",
        dependencies=read_limits,
        response_model=SubscriptionStatsResponse,
        summary="Get delivery statistics",
    )
    async def get_stats(
        subscription_id: str,
        timeframe: int = Query(24, ge=1, le=720, description="Window in hours"),
        api_key: str = Depends(get_api_key),
    ) -> SubscriptionStatsResponse:
        subscription = get_owned(subscription_id, api_key)
        since = runtime.clock.now() - timedelta(hours=timeframe)
        logs = store.list_deliveries(subscription_id, since=since)
        return SubscriptionStatsResponse(
            subscription_id=subscription_id,
            timeframe_hours=timeframe,
            deliveries=compute_delivery_stats(logs),
            error_breakdown=error_breakdown(logs),
            lifetime=subscription.stats,
            health_status=subscription.health_status,
            success_rate=subscription.success_rate,
        )

    # -------------------------------------------------------------------------
    # Manual flows
    # -------------------------------------------------------------------------

    @router.post(  # type: ignore[misc]
        "/{subscription_id}/test",
        dependencies=modify_limits,
        response_model=TestDeliveryResponse,
        summary="Send a test delivery",
    )
    async def test_webhook(
        subscription_id: str,
        api_key: str = Depends(get_api_key),
    ) -> TestDeliveryResponse:
        """Send a ``system.alert`` test delivery and report its first attempt."""
        subscription = get_owned(subscription_id, api_key)
        log = await runtime.engine.deliver_test(subscription)
        last = log.retry_history[-1] if log.retry_history else None
        return TestDeliveryResponse(
            success=log.status == DeliveryStatus.SUCCESS,
            event_id=log.event_id,
            delivery_id=log.delivery_id,
            status=log.status,
            status_code=last.status_code if last else None,
            response_time_ms=last.response_time_ms if last else None,
            error=last.error if last else None,
        )

    @router.post(  # type: ignore[misc]
        "/{subscription_id}/verify",
        dependencies=modify_limits,
        response_model=VerifyResponse,
        summary="Verify the endpoint",
        responses={400: {"description": "Endpoint did not answer 2xx"}},
    )
    async def verify_webhook(
        subscription_id: str,
        api_key: str = Depends(get_api_key),
    ) -> VerifyResponse:
        subscription = get_owned(subscription_id, api_key)
        result = await runtime.engine.verify_endpoint(subscription)
        if not result.success:
            _raise(
                WebhookErrorCode.WEBHOOK_VERIFICATION_FAILED,
                f"Endpoint verification failed: {result.error}",
            )
        return VerifyResponse(
            success=True,
            challenge_verified=result.challenge_verified,
            status_code=result.status_code,
            response_time_ms=result.response_time_ms,
        )

    @router.post(  # type: ignore[misc]
        "/{subscription_id}/regenerate-secret",
        dependencies=modify_limits,
        response_model=SubscriptionResponse,
        summary="Regenerate the signing secret",
    )
    async def regenerate_secret(
        subscription_id: str,
        api_key: str = Depends(get_api_key),
    ) -> SubscriptionResponse:
        subscription = store.regenerate_secret(subscription_id, api_key, runtime.clock.now())
        if subscription is None:
            _raise(WebhookErrorCode.WEBHOOK_NOT_FOUND, f"Webhook {subscription_id} not found")
        logger.info(f"Regenerated secret for {subscription_id}")
        return subscription.to_response(include_secret=True)

    @router.post(  # type: ignore[misc]
        "/{subscription_id}/reset-health",
        dependencies=modify_limits,
        response_model=SubscriptionResponse,
        summary="Reset endpoint health",
    )
    async def reset_health(
        subscription_id: str,
        api_key: str = Depends(get_api_key),
    ) -> SubscriptionResponse:
        """Zero the failure counter and re-enable an auto-disabled webhook."""
        subscription = store.reset_health(subscription_id, api_key, runtime.clock.now())
        if subscription is None:
            _raise(WebhookErrorCode.WEBHOOK_NOT_FOUND, f"Webhook {subscription_id} not found")
        logger.info(f"Reset health for {subscription_id}")
        return subscription.to_response()

    return router
