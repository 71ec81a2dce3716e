"""Server factory for the webhook admin API.

Example:
    >>> from vasa.server import create_server
    >>> app = create_server()  # Load config from environment

Endpoints:
    /webhooks/...: Subscription management (see ``vasa.webhooks.router``),
        rate limited per client IP
    /health: Liveness with the active store backend
    /metrics: Prometheus text exposition of the webhook metrics
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Response
from pydantic import BaseModel

from vasa import __version__
from vasa.server.rate_limit import create_admin_limiter, init_app
from vasa.webhooks.config import WebhookConfig, get_config
from vasa.webhooks.metrics import CONTENT_TYPE_LATEST
from vasa.webhooks.router import create_webhook_router
from vasa.webhooks.runtime import WebhookRuntime

logger = logging.getLogger(__name__)

__all__ = [
    "HealthResponse",
    "create_server",
]


class HealthResponse(BaseModel):
    """Health check endpoint response schema.

    Attributes:
        status: Always "ok" when the service is running
        service: Service name
        version: Package version
        store: Active store backend (``redis``, ``memory`` or ``degraded``)
        dispatcher_running: Whether dispatch workers are consuming events
        queue_depth: Events accepted but not yet dispatched
        timestamp: ISO 8601 timestamp when health check was performed
    """

    status: str
    service: str
    version: str
    store: str
    dispatcher_running: bool
    queue_depth: int
    timestamp: str


def create_server(
    config: WebhookConfig | None = None,
    runtime: WebhookRuntime | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Webhook configuration (defaults to environment)
        runtime: Pre-built runtime; built from ``config`` if omitted

    Returns:
        FastAPI app whose lifespan starts and stops the runtime
    """
    if runtime is None:
        runtime = WebhookRuntime(config or get_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context for startup and shutdown events."""
        logger.info(f"Starting VASA Webhooks v{__version__}")
        await runtime.start()
        yield
        logger.info("Shutting down gracefully...")
        await runtime.stop()

    app = FastAPI(
        title="VASA Webhooks",
        version=__version__,
        description="Outbound webhook subscriptions and delivery logs",
        lifespan=lifespan,
    )
    app.state.webhooks = runtime

    limiter = create_admin_limiter(runtime.config)
    init_app(app, limiter)
    app.include_router(create_webhook_router(runtime, limiter), prefix="/webhooks")

    @app.get("/health", tags=["monitoring"], response_model=HealthResponse)  # type: ignore[misc]
    async def health() -> HealthResponse:
        """Health check endpoint for monitoring systems."""
        return HealthResponse(
            status="ok",
            service="VASA Webhooks",
            version=__version__,
            store=runtime.store.mode,
            dispatcher_running=runtime.dispatcher.running,
            queue_depth=runtime.dispatcher.queue_depth,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.get("/metrics", tags=["monitoring"], include_in_schema=False)  # type: ignore[misc]
    async def metrics() -> Response:
        return Response(content=runtime.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    return app
