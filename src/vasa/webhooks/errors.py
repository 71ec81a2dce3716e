"""Webhook error codes and delivery error classification.

Error codes in the E4xx range for the admin surface, plus the mapping
from transport failures and HTTP status codes to ``DeliveryErrorType``.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

import httpx

from vasa.webhooks.models import DeliveryErrorType

__all__ = [
    "WEBHOOK_ERROR_REGISTRY",
    "SubscriptionValidationError",
    "WebhookErrorCode",
    "classify_error",
    "get_webhook_error_message",
    "get_webhook_error_status",
]


class WebhookErrorCode(str, Enum):
    """Webhook-specific error codes (E4xx range)."""

    # E40x - Subscription resource errors
    WEBHOOK_NOT_FOUND = "E400"
    WEBHOOK_URL_INVALID = "E401"
    WEBHOOK_SSRF_BLOCKED = "E402"
    WEBHOOK_CONFIG_INVALID = "E403"
    WEBHOOK_LIMIT_REACHED = "E404"
    WEBHOOK_UNAUTHORIZED = "E405"

    # E41x - Subscription state errors
    WEBHOOK_VERIFICATION_FAILED = "E410"

    # E42x - Delivery errors
    DELIVERY_NOT_FOUND = "E420"


# Error registry mapping codes to HTTP status and metadata
WEBHOOK_ERROR_REGISTRY: dict[WebhookErrorCode, dict[str, Any]] = {
    # E40x - Resource errors
    WebhookErrorCode.WEBHOOK_NOT_FOUND: {
        "error": "webhook_not_found",
        "http_status": 404,
        "recoverable": False,
        "message": "Webhook not found",
    },
    WebhookErrorCode.WEBHOOK_URL_INVALID: {
        "error": "webhook_url_invalid",
        "http_status": 400,
        "recoverable": False,
        "message": "Webhook URL is invalid",
    },
    WebhookErrorCode.WEBHOOK_SSRF_BLOCKED: {
        "error": "webhook_ssrf_blocked",
        "http_status": 400,
        "recoverable": False,
        "message": "Webhook URL blocked for security reasons",
    },
    WebhookErrorCode.WEBHOOK_CONFIG_INVALID: {
        "error": "webhook_config_invalid",
        "http_status": 400,
        "recoverable": False,
        "message": "Webhook configuration is invalid",
    },
    WebhookErrorCode.WEBHOOK_LIMIT_REACHED: {
        "error": "webhook_limit_reached",
        "http_status": 400,
        "recoverable": False,
        "message": "Maximum number of webhooks reached",
    },
    WebhookErrorCode.WEBHOOK_UNAUTHORIZED: {
        "error": "webhook_unauthorized",
        "http_status": 401,
        "recoverable": False,
        "message": "Missing API key",
    },
    # E41x - State errors
    WebhookErrorCode.WEBHOOK_VERIFICATION_FAILED: {
        "error": "webhook_verification_failed",
        "http_status": 400,
        "recoverable": True,
        "message": "Endpoint did not answer the verification challenge",
    },
    # E42x - Delivery errors
    WebhookErrorCode.DELIVERY_NOT_FOUND: {
        "error": "delivery_not_found",
        "http_status": 404,
        "recoverable": False,
        "message": "Delivery record not found",
    },
}


class SubscriptionValidationError(ValueError):
    """Subscription configuration rejected outside of model validation.

    Attributes:
        code: Admin-surface error code
        error_type: Always ``validation_error``
    """

    error_type = DeliveryErrorType.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        code: WebhookErrorCode = WebhookErrorCode.WEBHOOK_CONFIG_INVALID,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


def get_webhook_error_status(code: WebhookErrorCode) -> int:
    """Get HTTP status for a webhook error code."""
    entry = WEBHOOK_ERROR_REGISTRY.get(code)
    if entry is None:
        return 500
    status = entry.get("http_status")
    return int(status) if status is not None else 500


def get_webhook_error_message(code: WebhookErrorCode) -> str:
    """Get default message for a webhook error code."""
    entry = WEBHOOK_ERROR_REGISTRY.get(code)
    if entry is None:
        return "Unknown webhook error"
    message = entry.get("message")
    return str(message) if message is not None else "Unknown webhook error"


# =============================================================================
# Delivery error classification
# =============================================================================


def classify_error(
    status_code: int | None = None,
    exc: BaseException | None = None,
) -> DeliveryErrorType:
    """Map a failed attempt to its error type.

    Transport exceptions take precedence over the status code.

    Args:
        status_code: HTTP status of the response, if one was received
        exc: Exception raised by the transport, if any

    Returns:
        Error type recorded on the delivery log

    Example:
        >>> classify_error(503)
        <DeliveryErrorType.SERVER_ERROR: 'server_error'>
        >>> classify_error(exc=httpx.ConnectError("refused"))
        <DeliveryErrorType.NETWORK_ERROR: 'network_error'>
    """
    if exc is not None:
        if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            return DeliveryErrorType.TIMEOUT_ERROR
        if isinstance(exc, (httpx.ConnectError, httpx.NetworkError)):
            return DeliveryErrorType.NETWORK_ERROR
        return DeliveryErrorType.UNKNOWN_ERROR

    if status_code is None:
        return DeliveryErrorType.UNKNOWN_ERROR
    if status_code == 429:
        return DeliveryErrorType.RATE_LIMIT_ERROR
    if status_code in (401, 403):
        return DeliveryErrorType.AUTHENTICATION_ERROR
    if 400 <= status_code < 500:
        return DeliveryErrorType.HTTP_ERROR
    if status_code >= 500:
        return DeliveryErrorType.SERVER_ERROR
    return DeliveryErrorType.UNKNOWN_ERROR
