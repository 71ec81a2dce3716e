"""Configuration for the webhook delivery engine.

All configuration is loaded from environment variables with sensible defaults.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = [
    "WebhookConfig",
    "get_config",
]


class WebhookConfig(BaseSettings):
    """Webhook engine configuration.

    Environment Variables:
        VASA_WEBHOOK_ENABLED: Enable event emission (default: true)
        VASA_WEBHOOK_ENVIRONMENT: Environment copied into envelopes (default: development)
        VASA_WEBHOOK_REDIS_URL: Redis URL for durable storage (memory store if unset)
        VASA_WEBHOOK_FALLBACK_ENABLED: Degrade to memory if Redis unavailable (default: false)
        VASA_WEBHOOK_DEFAULT_MAX_RETRIES: Default attempts per delivery (default: 3)
        VASA_WEBHOOK_DEFAULT_RETRY_DELAY_MS: Default base backoff delay (default: 1000)
        VASA_WEBHOOK_MAX_RETRY_DELAY_MS: Backoff cap (default: 30000)
        VASA_WEBHOOK_FAILURE_THRESHOLD: Failures before auto-disable (default: 10)
        VASA_WEBHOOK_RETRY_SWEEP_INTERVAL: Retry sweep period in seconds (default: 30)
        VASA_WEBHOOK_DISPATCH_QUEUE_SIZE: Max events awaiting dispatch (default: 1000)
        VASA_WEBHOOK_MAX_CONCURRENT_DELIVERIES: In-flight HTTP cap (default: 20)
        VASA_WEBHOOK_LOG_RETENTION_DAYS: Days to keep finished logs (default: 30)
        VASA_WEBHOOK_ADMIN_READ_LIMIT: Per-IP admin read budget (default: 100 per 15 minutes)
        VASA_WEBHOOK_ADMIN_MODIFY_LIMIT: Per-IP admin write budget (default: 20 per hour)

    Example:
        >>> config = WebhookConfig()
        >>> config.failure_threshold
        10
        >>> config = WebhookConfig(redis_url="redis://localhost:6379", environment="staging")
    """

    model_config = SettingsConfigDict(
        env_prefix="VASA_WEBHOOK_",
        env_file=".env",
        extra="ignore",
    )

    # Feature toggle
    enabled: bool = Field(
        default=True,
        description="Enable event emission",
    )

    # Envelope
    environment: Literal["production", "staging", "development"] = Field(
        default="development",
        description="Deployment environment reported in every envelope",
    )
    api_version: str = Field(
        default="1.0",
        description="Envelope schema version",
    )
    user_agent: str = Field(
        default="VASA-Webhooks/1.0",
        description="User-Agent header for outbound deliveries",
    )

    # Storage
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for subscription and delivery log storage",
    )
    fallback_enabled: bool = Field(
        default=False,
        description="Use in-memory storage if Redis is unreachable",
    )

    # Retry policy defaults (per-subscription policies override these)
    default_max_retries: int = Field(default=3, ge=1, le=10)
    default_retry_delay_ms: int = Field(default=1000, ge=100, le=30000)
    default_backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    default_timeout_ms: int = Field(default=30000, ge=1000, le=120000)
    max_retry_delay_ms: int = Field(
        default=30000,
        description="Upper bound on any single backoff delay",
        ge=100,
    )

    # Health
    failure_threshold: int = Field(
        default=10,
        description="Consecutive failures before auto-disabling a subscription",
        ge=1,
    )

    # Retry scheduling
    retry_sweep_interval: float = Field(
        default=30.0,
        description="Seconds between retry sweeps",
        gt=0,
    )
    retry_sweep_batch_size: int = Field(default=100, ge=1)
    immediate_retry_enabled: bool = Field(
        default=True,
        description="Arm an in-process timer as soon as a retry is scheduled",
    )
    claim_ttl: float = Field(
        default=300.0,
        description="Seconds after which an in-flight claim is considered stale",
        gt=0,
    )

    # Dispatch
    dispatch_queue_size: int = Field(default=1000, ge=1)
    dispatch_workers: int = Field(default=4, ge=1, le=64)
    max_concurrent_deliveries: int = Field(default=20, ge=1)
    max_response_body: int = Field(
        default=1000,
        description="Characters of the response body kept on the delivery log",
        ge=0,
    )

    # Maintenance
    log_retention_days: int = Field(default=30, ge=1)
    cleanup_interval: float = Field(
        default=86400.0,
        description="Seconds between purges of finished delivery logs",
        gt=0,
    )

    # Subscriptions
    max_subscriptions_per_owner: int = Field(default=50, ge=1)
    allow_private_urls: bool = Field(
        default=False,
        description="Allow loopback and private network targets (development only)",
    )
    allow_http: bool = Field(
        default=True,
        description="Allow plain http:// targets",
    )

    # Admin API
    admin_rate_limit_enabled: bool = Field(
        default=True,
        description="Apply per-client request budgets to the admin API",
    )
    admin_read_limit: str = Field(
        default="100 per 15 minutes",
        description="Per-IP budget shared by the admin read endpoints",
    )
    admin_modify_limit: str = Field(
        default="20 per hour",
        description="Per-IP budget shared by endpoints that change subscriptions",
    )


@lru_cache
def get_config() -> WebhookConfig:
    """Return the process-wide configuration loaded from the environment."""
    return WebhookConfig()
