"""VASA - outbound webhook delivery for the VASA import/export marketplace.

Delivers typed business events (orders, payments, shipping, compliance,
product and account lifecycle) as signed HTTP callbacks to registered
endpoints, with retry/backoff, endpoint health tracking, per-subscription
rate limiting and a delivery audit log.

Quick Start:
    >>> from vasa.webhooks import WebhookConfig, WebhookRuntime
    >>> async with WebhookRuntime(WebhookConfig()) as runtime:
    ...     await runtime.emitter.emit("order.created", {"order": {"id": "o-1"}})
"""

__version__ = "0.1.0"
__author__ = "VASA Engineering"
__license__ = "Apache-2.0"

__all__ = [
    "__author__",
    "__license__",
    "__version__",
]
