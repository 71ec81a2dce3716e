"""Webhook delivery service using httpx.

Handles the actual HTTP delivery of signed envelopes with connection
pooling, a hard per-subscription deadline, and outcome classification.
Transport failures are returned as results, never raised.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from vasa.webhooks.clock import Clock, SystemClock
from vasa.webhooks.errors import classify_error
from vasa.webhooks.models import DeliveryErrorType
from vasa.webhooks.security import URLValidationError, WebhookURLValidator
from vasa.webhooks.signature import (
    SIGNATURE_ALGORITHM,
    SIGNATURE_ALGORITHM_HEADER,
    SIGNATURE_HEADER,
    sign_payload,
)

if TYPE_CHECKING:
    from vasa.webhooks.models import Subscription, WebhookEnvelope

logger = logging.getLogger(__name__)

__all__ = [
    "RESERVED_HEADERS",
    "DeliveryResult",
    "WebhookDeliveryService",
]

# Headers a subscriber cannot override (compared case-insensitively)
RESERVED_HEADERS = frozenset(
    name.lower()
    for name in (
        "Content-Type",
        "User-Agent",
        "X-Event",
        "X-Delivery-Id",
        "X-Webhook-Id",
        SIGNATURE_HEADER,
        SIGNATURE_ALGORITHM_HEADER,
    )
)


@dataclass
class DeliveryResult:
    """Result of a single delivery attempt.

    ``status_code`` is 0 when no HTTP response was received.
    """

    success: bool
    status_code: int = 0
    response_body: str | None = None
    error: str | None = None
    error_type: DeliveryErrorType | None = None
    response_time_ms: float = 0.0


class WebhookDeliveryService:
    """Handles webhook HTTP delivery.

    Uses httpx.AsyncClient for connection pooling. Redirects are not
    followed.

    Example:
        >>> service = WebhookDeliveryService(user_agent="VASA-Webhooks/1.0")
        >>> result = await service.send(subscription, envelope)
        >>> if result.success:
        ...     print("Delivered successfully")
        ... else:
        ...     print(f"{result.error_type}: {result.error}")
    """

    def __init__(
        self,
        user_agent: str = "VASA-Webhooks/1.0",
        max_response_body: int = 1000,
        url_validator: WebhookURLValidator | None = None,
        clock: Clock | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize delivery service.

        Args:
            user_agent: User-Agent header for every request
            max_response_body: Characters of response body to keep
            url_validator: Re-validates targets before each request
            clock: Time source for response timing
            transport: Custom httpx transport (e.g. ``httpx.MockTransport``)
        """
        self.user_agent = user_agent
        self.max_response_body = max_response_body
        self.url_validator = url_validator
        self.clock = clock or SystemClock()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def build_headers(
        self,
        subscription: Subscription,
        envelope: WebhookEnvelope,
        body: bytes,
    ) -> dict[str, str]:
        """Build the request header set.

        Subscriber headers are applied first and may not replace any of the
        reserved headers.
        """
        headers = {
            name: value
            for name, value in subscription.headers.items()
            if name.lower() not in RESERVED_HEADERS
        }
        headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": self.user_agent,
                "X-Event": envelope.event.value,
                "X-Delivery-Id": envelope.delivery_id,
                "X-Webhook-Id": envelope.webhook_id,
                SIGNATURE_HEADER: sign_payload(body, subscription.secret),
                SIGNATURE_ALGORITHM_HEADER: SIGNATURE_ALGORITHM,
            }
        )
        return headers

    async def _validate_target(self, url: str) -> None:
        if self.url_validator is None:
            return
        if self.url_validator.allow_private:
            self.url_validator.validate(url)
        else:
            # Hostname resolution blocks
            await asyncio.to_thread(self.url_validator.validate, url)

    async def send(
        self,
        subscription: Subscription,
        envelope: WebhookEnvelope,
    ) -> DeliveryResult:
        """Deliver an envelope to the subscription endpoint.

        Args:
            subscription: Target subscription (url, method, secret, headers)
            envelope: Envelope to serialize, sign and send

        Returns:
            DeliveryResult describing the outcome
        """
        start_time = self.clock.monotonic()

        def elapsed_ms() -> float:
            return max((self.clock.monotonic() - start_time) * 1000, 0.0)

        try:
            await self._validate_target(subscription.url)
        except URLValidationError as e:
            return DeliveryResult(
                success=False,
                error=f"URL validation failed: {e.reason}",
                error_type=DeliveryErrorType.VALIDATION_ERROR,
                response_time_ms=elapsed_ms(),
            )

        body = envelope.to_body()
        headers = self.build_headers(subscription, envelope, body)
        timeout = subscription.retry_policy.timeout_seconds

        try:
            client = self._get_client()
            response = await asyncio.wait_for(
                client.request(
                    subscription.method.value,
                    subscription.url,
                    content=body,
                    headers=headers,
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            return DeliveryResult(
                success=False,
                error=f"Timeout after {timeout:g}s: {e}" if str(e) else f"Timeout after {timeout:g}s",
                error_type=DeliveryErrorType.TIMEOUT_ERROR,
                response_time_ms=elapsed_ms(),
            )
        except httpx.HTTPError as e:
            return DeliveryResult(
                success=False,
                error=f"{type(e).__name__}: {e}",
                error_type=classify_error(exc=e),
                response_time_ms=elapsed_ms(),
            )
        except Exception as e:
            logger.exception(f"Unexpected error delivering webhook: {e}")
            return DeliveryResult(
                success=False,
                error=f"Unexpected error: {type(e).__name__}: {e}",
                error_type=DeliveryErrorType.UNKNOWN_ERROR,
                response_time_ms=elapsed_ms(),
            )

        response_time = elapsed_ms()
        response_body = response.text[: self.max_response_body]

        if 200 <= response.status_code < 300:
            return DeliveryResult(
                success=True,
                status_code=response.status_code,
                response_body=response_body,
                response_time_ms=response_time,
            )

        return DeliveryResult(
            success=False,
            status_code=response.status_code,
            response_body=response_body,
            error=f"HTTP {response.status_code}",
            error_type=classify_error(response.status_code),
            response_time_ms=response_time,
        )
