"""Per-client rate limiting for the admin API using slowapi.

Read endpoints and endpoints that change state draw from separate
per-IP budgets. Each budget is shared by every route in its group.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

if TYPE_CHECKING:
    from fastapi import FastAPI

    from vasa.webhooks.config import WebhookConfig

logger = logging.getLogger(__name__)

__all__ = [
    "create_admin_limiter",
    "init_app",
]


def create_admin_limiter(config: WebhookConfig) -> Limiter:
    """Create the limiter backing the admin API budgets.

    Counters live in process memory, so each app gets independent budgets.

    Args:
        config: Webhook configuration with the admin limits

    Returns:
        slowapi Limiter keyed by client IP address
    """
    limiter = Limiter(
        key_func=get_remote_address,
        key_prefix="vasa:ratelimit",
        enabled=config.admin_rate_limit_enabled,
    )
    logger.info(
        f"Admin rate limits: reads={config.admin_read_limit}, "
        f"modifications={config.admin_modify_limit}, "
        f"enabled={config.admin_rate_limit_enabled}"
    )
    return limiter


def init_app(app: FastAPI, limiter: Limiter) -> None:
    """Attach the limiter to the app and answer exhausted budgets with 429."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
