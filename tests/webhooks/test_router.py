"""Tests for the webhook admin API."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from vasa.server import create_server
from vasa.webhooks.clock import SystemClock
from vasa.webhooks.runtime import WebhookRuntime

HEADERS = {"X-API-Key": "api_key_owner_1"}


@pytest.fixture
def clock() -> SystemClock:
    """Real time; the lifespan starts the scheduler loops."""
    return SystemClock()


@pytest.fixture
def client(runtime: WebhookRuntime) -> Iterator[TestClient]:
    with TestClient(create_server(runtime=runtime)) as test_client:
        yield test_client


def create(client: TestClient, **overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "name": "ERP sync",
        "url": "https://hooks.example.com/vasa",
        "events": ["order.created", "order.updated"],
    }
    body.update(overrides)
    response = client.post("/webhooks", json=body, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


class TestAuth:
    def test_missing_api_key(self, client: TestClient) -> None:
        response = client.get("/webhooks")

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "E405"

    def test_available_events_is_public(self, client: TestClient) -> None:
        response = client.get("/webhooks/events/available")

        assert response.status_code == 200
        data = response.json()
        assert "order.created" in data["categories"]["order"]
        assert "webhook.verification" not in str(data["categories"])
        assert data["total_events"] == sum(len(v) for v in data["categories"].values())


class TestSubscriptionCrud:
    """Tests for create, list, get, update and delete."""

    def test_create_returns_secret_once(self, client: TestClient) -> None:
        created = create(client)

        assert created["id"].startswith("wh_")
        assert len(created["secret"]) == 64
        assert created["secret_preview"] == created["secret"][:8] + "..."

        fetched = client.get(f"/webhooks/{created['id']}", headers=HEADERS).json()
        assert fetched["secret"] is None
        assert fetched["health_status"] == "healthy"

    def test_create_rejects_unknown_event(self, client: TestClient) -> None:
        response = client.post(
            "/webhooks",
            json={"name": "x", "url": "https://a.example.com", "events": ["order.exploded"]},
            headers=HEADERS,
        )

        assert response.status_code == 422

    def test_create_rejects_bad_scheme(self, client: TestClient) -> None:
        response = client.post(
            "/webhooks",
            json={"name": "x", "url": "ftp://a.example.com", "events": ["order.created"]},
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "E401"

    def test_create_rejects_metadata_target(self, client: TestClient) -> None:
        response = client.post(
            "/webhooks",
            json={
                "name": "x",
                "url": "http://169.254.169.254/latest",
                "events": ["order.created"],
            },
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "E402"

    def test_create_rejects_bad_header_name(self, client: TestClient) -> None:
        response = client.post(
            "/webhooks",
            json={
                "name": "x",
                "url": "https://a.example.com",
                "events": ["order.created"],
                "headers": {"Bad Header": "v"},
            },
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "E403"

    def test_owner_limit(self, client: TestClient, runtime: WebhookRuntime) -> None:
        runtime.config.max_subscriptions_per_owner = 1
        create(client)

        response = client.post(
            "/webhooks",
            json={"name": "x", "url": "https://a.example.com", "events": ["order.created"]},
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "E404"

    def test_list_is_owner_scoped(self, client: TestClient) -> None:
        create(client)

        mine = client.get("/webhooks", headers=HEADERS).json()
        theirs = client.get("/webhooks", headers={"X-API-Key": "someone_else"}).json()

        assert mine["count"] == 1
        assert theirs["count"] == 0

    def test_get_other_owner_is_404(self, client: TestClient) -> None:
        created = create(client)

        response = client.get(
            f"/webhooks/{created['id']}", headers={"X-API-Key": "someone_else"}
        )

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "E400"

    def test_update(self, client: TestClient) -> None:
        created = create(client)

        response = client.patch(
            f"/webhooks/{created['id']}",
            json={"name": "Renamed", "active": False},
            headers=HEADERS,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Renamed"
        assert data["active"] is False
        assert data["disabled_reason"] == "Disabled by owner"
        assert data["health_status"] == "disabled"

    def test_update_missing(self, client: TestClient) -> None:
        response = client.patch("/webhooks/wh_missing", json={"name": "x"}, headers=HEADERS)

        assert response.status_code == 404

    def test_delete(self, client: TestClient) -> None:
        created = create(client)

        response = client.delete(f"/webhooks/{created['id']}", headers=HEADERS)
        again = client.delete(f"/webhooks/{created['id']}", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert again.status_code == 404


class TestDeliveryEndpoints:
    """Tests for test delivery, logs and stats."""

    def test_test_delivery_and_logs(self, client: TestClient, receiver: Any) -> None:
        created = create(client)

        test = client.post(f"/webhooks/{created['id']}/test", headers=HEADERS).json()
        logs = client.get(f"/webhooks/{created['id']}/logs", headers=HEADERS).json()

        assert test["success"] is True
        assert test["status_code"] == 200
        assert logs["total"] == 1
        assert logs["deliveries"][0]["event_id"] == test["event_id"]
        assert logs["deliveries"][0]["is_test"] is True
        assert receiver.requests[0].headers["X-Event"] == "system.alert"

    def test_failed_test_delivery(self, client: TestClient, receiver: Any) -> None:
        receiver.respond(500)
        created = create(client)

        test = client.post(f"/webhooks/{created['id']}/test", headers=HEADERS).json()

        assert test["success"] is False
        assert test["status"] == "retry"
        assert test["error"] == "HTTP 500"

    def test_log_filters_and_paging(self, client: TestClient, receiver: Any) -> None:
        created = create(client)
        receiver.respond(200, 500, 200)
        for _ in range(3):
            client.post(f"/webhooks/{created['id']}/test", headers=HEADERS)
        base = f"/webhooks/{created['id']}/logs"

        retrying = client.get(f"{base}?status=retry", headers=HEADERS).json()
        page = client.get(f"{base}?limit=2&offset=2", headers=HEADERS).json()
        too_big = client.get(f"{base}?limit=500", headers=HEADERS)

        assert retrying["total"] == 1
        assert page["total"] == 3
        assert len(page["deliveries"]) == 1
        assert too_big.status_code == 422

    def test_single_log(self, client: TestClient) -> None:
        created = create(client)
        test = client.post(f"/webhooks/{created['id']}/test", headers=HEADERS).json()

        found = client.get(
            f"/webhooks/{created['id']}/logs/{test['event_id']}", headers=HEADERS
        )
        missing = client.get(f"/webhooks/{created['id']}/logs/evt_missing", headers=HEADERS)

        assert found.status_code == 200
        assert found.json()["delivery_id"] == test["delivery_id"]
        assert missing.status_code == 404
        assert missing.json()["detail"]["code"] == "E420"

    def test_stats(self, client: TestClient, receiver: Any) -> None:
        created = create(client)
        receiver.respond(200, 503)
        for _ in range(2):
            client.post(f"/webhooks/{created['id']}/test", headers=HEADERS)

        stats = client.get(
            f"/webhooks/{created['id']}/stats?timeframe=24", headers=HEADERS
        ).json()

        assert stats["timeframe_hours"] == 24
        assert stats["deliveries"]["total_deliveries"] == 2
        assert stats["deliveries"]["successful_deliveries"] == 1
        assert stats["error_breakdown"][0]["error_type"] == "server_error"
        assert stats["lifetime"]["total_deliveries"] == 2
        assert stats["success_rate"] == 50.0

    def test_owner_stats(self, client: TestClient) -> None:
        create(client)
        create(client, name="Second")

        summary = client.get("/webhooks/owner/stats", headers=HEADERS).json()

        assert summary["total_webhooks"] == 2
        assert summary["active_webhooks"] == 2


class TestManagementFlows:
    """Tests for verify, regenerate-secret and reset-health."""

    def test_verify(self, client: TestClient, receiver: Any) -> None:
        receiver.echo_challenge = True
        created = create(client)

        response = client.post(f"/webhooks/{created['id']}/verify", headers=HEADERS)
        fetched = client.get(f"/webhooks/{created['id']}", headers=HEADERS).json()

        assert response.status_code == 200
        assert response.json()["challenge_verified"] is True
        assert fetched["is_verified"] is True

    def test_verify_failure(self, client: TestClient, receiver: Any) -> None:
        receiver.respond(500)
        created = create(client)

        response = client.post(f"/webhooks/{created['id']}/verify", headers=HEADERS)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "E410"

    def test_regenerate_secret(self, client: TestClient) -> None:
        created = create(client)

        rotated = client.post(
            f"/webhooks/{created['id']}/regenerate-secret", headers=HEADERS
        ).json()

        assert rotated["secret"] != created["secret"]
        assert len(rotated["secret"]) == 64

    def test_reset_health_re_enables(
        self, client: TestClient, runtime: WebhookRuntime
    ) -> None:
        created = create(client)
        for _ in range(runtime.config.failure_threshold):
            runtime.store.record_delivery_outcome(
                created["id"], False, 1.0, runtime.clock.now(), runtime.config.failure_threshold
            )
        assert client.get(f"/webhooks/{created['id']}", headers=HEADERS).json()["active"] is False

        response = client.post(f"/webhooks/{created['id']}/reset-health", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["active"] is True
        assert data["health"]["consecutive_failures"] == 0


class TestRateLimits:
    """Tests for the per-client admin budgets."""

    def test_modifications_exhaust_their_budget(self, runtime: WebhookRuntime) -> None:
        runtime.config.admin_modify_limit = "2 per hour"

        with TestClient(create_server(runtime=runtime)) as client:
            create(client)
            create(client, name="Second")
            body = {
                "name": "Third",
                "url": "https://hooks.example.com/vasa",
                "events": ["order.created"],
            }
            response = client.post("/webhooks", json=body, headers=HEADERS)
            listed = client.get("/webhooks", headers=HEADERS)

        assert response.status_code == 429
        assert "Rate limit exceeded" in response.json()["error"]
        assert listed.status_code == 200
        assert listed.json()["count"] == 2

    def test_reads_share_one_budget(self, runtime: WebhookRuntime) -> None:
        runtime.config.admin_read_limit = "3 per 15 minutes"

        with TestClient(create_server(runtime=runtime)) as client:
            created = create(client)
            statuses = [
                client.get("/webhooks", headers=HEADERS).status_code,
                client.get(f"/webhooks/{created['id']}", headers=HEADERS).status_code,
                client.get("/webhooks/owner/stats", headers=HEADERS).status_code,
                client.get(f"/webhooks/{created['id']}/logs", headers=HEADERS).status_code,
            ]
            available = client.get("/webhooks/events/available")

        assert statuses == [200, 200, 200, 429]
        assert available.status_code == 200

    def test_budgets_are_per_app(self, runtime: WebhookRuntime) -> None:
        runtime.config.admin_modify_limit = "1 per hour"

        for name in ("First", "Second"):
            create(TestClient(create_server(runtime=runtime)), name=name)

        assert len(runtime.store.list_subscriptions("api_key_owner_1")) == 2

    def test_disabled(self, runtime: WebhookRuntime) -> None:
        runtime.config.admin_rate_limit_enabled = False
        runtime.config.admin_modify_limit = "1 per hour"

        with TestClient(create_server(runtime=runtime)) as client:
            create(client)
            create(client, name="Second")
