"""Pytest configuration and shared fixtures for VASA tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from vasa.webhooks.config import WebhookConfig
from vasa.webhooks.metrics import WebhookMetrics
from vasa.webhooks.models import SubscriptionCreateRequest, WebhookEventType
from vasa.webhooks.runtime import WebhookRuntime
from vasa.webhooks.store import MemoryWebhookStore

OWNER = "api_key_owner_1"


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instead of waiting."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
        self.elapsed = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.elapsed += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(max(seconds, 0.0))
        await asyncio.sleep(0)


class Receiver:
    """Scripted webhook receiver for ``httpx.MockTransport``.

    Answers with the queued outcomes in order, then with ``default``. An
    exception outcome is raised from the transport.
    """

    def __init__(self, default: int = 200) -> None:
        self.default = default
        self.script: list[int | Exception] = []
        self.requests: list[httpx.Request] = []
        self.echo_challenge = False

    def respond(self, *outcomes: int | Exception) -> None:
        self.script.extend(outcomes)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.script.pop(0) if self.script else self.default
        if isinstance(outcome, Exception):
            raise outcome
        body = "ok"
        if self.echo_challenge:
            challenge = json.loads(request.content)["data"].get("challenge")
            body = json.dumps({"challenge": challenge})
        return httpx.Response(outcome, text=body)

    @property
    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]


@pytest.fixture
def clock() -> FakeClock:
    """Provide a fake clock starting at a fixed UTC instant."""
    return FakeClock()


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()


@pytest.fixture
def config() -> WebhookConfig:
    """Deterministic engine configuration (no in-process retry timers)."""
    return WebhookConfig(
        allow_private_urls=True,
        immediate_retry_enabled=False,
        default_max_retries=3,
        default_retry_delay_ms=1000,
        default_backoff_multiplier=2.0,
        max_retry_delay_ms=30000,
        failure_threshold=10,
        redis_url=None,
    )


@pytest.fixture
def store() -> MemoryWebhookStore:
    return MemoryWebhookStore()


@pytest.fixture
def runtime(
    config: WebhookConfig,
    store: MemoryWebhookStore,
    clock: FakeClock,
    receiver: Receiver,
) -> WebhookRuntime:
    """Runtime wired to the memory store, fake clock and scripted receiver."""
    return WebhookRuntime(
        config,
        store=store,
        clock=clock,
        transport=httpx.MockTransport(receiver),
        metrics=WebhookMetrics(),
    )


@pytest.fixture
def owner() -> str:
    return OWNER


@pytest.fixture
def make_request() -> Callable[..., SubscriptionCreateRequest]:
    """Factory for subscription requests (``order.created`` by default)."""

    def build(**overrides: Any) -> SubscriptionCreateRequest:
        fields: dict[str, Any] = {
            "name": "ERP sync",
            "url": "https://hooks.example.com/vasa",
            "events": [WebhookEventType.ORDER_CREATED],
        }
        fields.update(overrides)
        return SubscriptionCreateRequest(**fields)

    return build
