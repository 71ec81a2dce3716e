"""Tests for webhook models: backoff, delivery log state machine, health."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from vasa.webhooks.models import (
    AUTO_DISABLE_REASON,
    EVENT_CATEGORIES,
    DeliveryErrorType,
    DeliveryLog,
    DeliveryStatus,
    HealthStatus,
    RetryPolicy,
    Subscription,
    SubscriptionCreateRequest,
    SubscriptionUpdateRequest,
    WebhookEnvelope,
    WebhookEventType,
    backoff_delay_ms,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_subscription(**overrides: object) -> Subscription:
    fields: dict[str, object] = {
        "id": "wh_test",
        "owner_id": "owner",
        "name": "Test",
        "url": "https://hooks.example.com/vasa",
        "secret": "s" * 32,
        "events": [WebhookEventType.ORDER_CREATED],
        "created_at": NOW,
        "updated_at": NOW,
    }
    fields.update(overrides)
    return Subscription(**fields)


def make_log(max_attempts: int = 3) -> DeliveryLog:
    envelope = WebhookEnvelope(
        event=WebhookEventType.ORDER_CREATED,
        timestamp=NOW.isoformat(),
        webhook_id="wh_test",
        delivery_id="d-1",
        environment="development",
        data={"order": {"id": "o-1"}},
    )
    return DeliveryLog(
        event_id="evt_1",
        delivery_id="d-1",
        subscription_id="wh_test",
        owner_id="owner",
        event_type=WebhookEventType.ORDER_CREATED,
        event_timestamp=NOW,
        payload=envelope,
        max_attempts=max_attempts,
        created_at=NOW,
    )


class TestBackoff:
    """Tests for the capped exponential backoff."""

    def test_sequence(self) -> None:
        delays = [backoff_delay_ms(n, 1000, 2.0, 30000) for n in range(1, 5)]

        assert delays == [1000, 2000, 4000, 8000]

    def test_capped(self) -> None:
        assert backoff_delay_ms(10, 1000, 2.0, 30000) == 30000

    @pytest.mark.parametrize("multiplier", [1.0, 1.5, 2.0, 10.0])
    def test_non_decreasing(self, multiplier: float) -> None:
        delays = [backoff_delay_ms(n, 500, multiplier, 20000) for n in range(1, 12)]

        assert delays == sorted(delays)
        assert max(delays) <= 20000

    def test_policy_delay(self) -> None:
        policy = RetryPolicy(base_delay_ms=1000, backoff_multiplier=3.0)

        assert policy.delay_ms(2, 30000) == 3000
        assert policy.timeout_seconds == 30.0


class TestDeliveryLogStateMachine:
    """Tests for DeliveryLog.record_attempt."""

    def test_success(self) -> None:
        log = make_log()

        log.record_attempt(
            now=NOW, status_code=200, response_time_ms=12.0,
            retry_policy=RetryPolicy(), max_delay_ms=30000,
        )

        assert log.status == DeliveryStatus.SUCCESS
        assert log.next_retry_at is None
        assert log.attempts == 1
        assert log.processed_at == NOW
        assert log.is_terminal

    def test_failure_schedules_retry(self) -> None:
        log = make_log()

        log.record_attempt(
            now=NOW, status_code=500, response_time_ms=5.0,
            retry_policy=RetryPolicy(), max_delay_ms=30000,
            error="HTTP 500", error_type=DeliveryErrorType.SERVER_ERROR,
        )

        assert log.status == DeliveryStatus.RETRY
        assert log.next_retry_at == NOW + timedelta(milliseconds=1000)
        assert log.last_error == "HTTP 500"
        assert log.last_error_type == DeliveryErrorType.SERVER_ERROR

    def test_exhaustion_abandons(self) -> None:
        log = make_log(max_attempts=2)
        for _ in range(2):
            log.record_attempt(
                now=NOW, status_code=503, response_time_ms=1.0,
                retry_policy=RetryPolicy(), max_delay_ms=30000,
            )

        assert log.status == DeliveryStatus.ABANDONED
        assert log.next_retry_at is None
        assert len(log.retry_history) == log.max_attempts == 2
        assert log.last_error_type == DeliveryErrorType.UNKNOWN_ERROR

    def test_history_entries(self) -> None:
        log = make_log()
        log.record_attempt(
            now=NOW, status_code=0, response_time_ms=30000.0,
            retry_policy=RetryPolicy(), max_delay_ms=30000,
            error="Timeout after 30s", error_type=DeliveryErrorType.TIMEOUT_ERROR,
        )

        entry = log.retry_history[0]
        assert entry.attempt == 1
        assert entry.status_code == 0
        assert entry.error_type == DeliveryErrorType.TIMEOUT_ERROR

    def test_attempt_clears_claim(self) -> None:
        log = make_log()
        log.claimed_at = NOW

        log.record_attempt(
            now=NOW, status_code=200, response_time_ms=1.0,
            retry_policy=RetryPolicy(), max_delay_ms=30000,
        )

        assert log.claimed_at is None

    def test_retry_requires_next_retry_at(self) -> None:
        data = make_log().model_dump()
        data["status"] = DeliveryStatus.RETRY

        with pytest.raises(ValidationError):
            DeliveryLog.model_validate(data)

    def test_terminal_cannot_carry_next_retry_at(self) -> None:
        data = make_log().model_dump()
        data["status"] = DeliveryStatus.SUCCESS
        data["next_retry_at"] = NOW

        with pytest.raises(ValidationError):
            DeliveryLog.model_validate(data)

    def test_abandon(self) -> None:
        log = make_log()
        log.claimed_at = NOW

        log.abandon("Subscription deleted", NOW)

        assert log.status == DeliveryStatus.ABANDONED
        assert log.last_error == "Subscription deleted"
        assert log.claimed_at is None
        assert log.attempts == 0


class TestClaimable:
    def test_fresh_log(self) -> None:
        assert make_log().is_claimable(0, NOW, 300) is True

    def test_attempt_count_mismatch(self) -> None:
        assert make_log().is_claimable(1, NOW, 300) is False

    def test_in_flight_claim(self) -> None:
        log = make_log()
        log.claimed_at = NOW

        assert log.is_claimable(0, NOW + timedelta(seconds=10), 300) is False
        assert log.is_claimable(0, NOW + timedelta(seconds=300), 300) is True

    def test_terminal(self) -> None:
        log = make_log()
        log.abandon("gone", NOW)

        assert log.is_claimable(0, NOW, 300) is False


class TestSubscriptionHealth:
    """Tests for Subscription.record_outcome and health views."""

    def test_success_resets_failures(self) -> None:
        subscription = make_subscription()
        subscription.health.consecutive_failures = 4

        disabled = subscription.record_outcome(True, 100.0, NOW, failure_threshold=10)

        assert disabled is False
        assert subscription.health.consecutive_failures == 0
        assert subscription.stats.success_count == 1
        assert subscription.stats.last_success_at == NOW

    def test_running_average(self) -> None:
        subscription = make_subscription()

        subscription.record_outcome(True, 100.0, NOW, 10)
        subscription.record_outcome(False, 300.0, NOW, 10)

        assert subscription.stats.total_deliveries == 2
        assert subscription.stats.avg_response_time_ms == pytest.approx(200.0)
        assert subscription.success_rate == 50.0

    def test_threshold_auto_disables(self) -> None:
        subscription = make_subscription()
        subscription.health.consecutive_failures = 9

        disabled = subscription.record_outcome(False, 10.0, NOW, failure_threshold=10)

        assert disabled is True
        assert subscription.active is False
        assert subscription.health.consecutive_failures == 10
        assert subscription.disabled_reason == AUTO_DISABLE_REASON
        assert subscription.health_status == HealthStatus.DISABLED

    def test_reset_health_re_enables_auto_disabled(self) -> None:
        subscription = make_subscription()
        subscription.health.consecutive_failures = 9
        subscription.record_outcome(False, 10.0, NOW, 10)

        subscription.reset_health(NOW)

        assert subscription.active is True
        assert subscription.health.consecutive_failures == 0
        assert subscription.disabled_reason is None

    def test_reset_health_keeps_manual_disable(self) -> None:
        subscription = make_subscription(active=False, disabled_reason="Disabled by owner")

        subscription.reset_health(NOW)

        assert subscription.active is False

    @pytest.mark.parametrize(
        ("failures", "status"),
        [(0, HealthStatus.HEALTHY), (3, HealthStatus.DEGRADED), (5, HealthStatus.UNHEALTHY)],
    )
    def test_health_status(self, failures: int, status: HealthStatus) -> None:
        subscription = make_subscription()
        subscription.health.consecutive_failures = failures

        assert subscription.health_status == status

    def test_response_masks_secret(self) -> None:
        subscription = make_subscription(secret="abcdefgh12345678abcdefgh")

        response = subscription.to_response()

        assert response.secret is None
        assert response.secret_preview == "abcdefgh..."
        assert subscription.to_response(include_secret=True).secret == subscription.secret


class TestEventValidation:
    def test_unknown_event_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SubscriptionCreateRequest(
                name="x", url="https://a.example.com", events=["order.exploded"]
            )

    def test_verification_event_not_subscribable(self) -> None:
        with pytest.raises(ValidationError):
            SubscriptionCreateRequest(
                name="x",
                url="https://a.example.com",
                events=[WebhookEventType.WEBHOOK_VERIFICATION],
            )

    def test_events_deduplicated(self) -> None:
        request = SubscriptionCreateRequest(
            name="x",
            url="https://a.example.com",
            events=["order.created", "order.created", "payment.failed"],
        )

        assert request.events == [
            WebhookEventType.ORDER_CREATED,
            WebhookEventType.PAYMENT_FAILED,
        ]

    def test_empty_events_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SubscriptionCreateRequest(name="x", url="https://a.example.com", events=[])

    def test_update_rejects_verification_event(self) -> None:
        with pytest.raises(ValidationError):
            SubscriptionUpdateRequest(events=["webhook.verification"])

    def test_retry_policy_bounds(self) -> None:
        with pytest.raises(ValidationError):
            RetryPolicy(max_retries=11)
        with pytest.raises(ValidationError):
            RetryPolicy(max_retries=0)

    def test_categories_exclude_verification(self) -> None:
        subscribable = [event for events in EVENT_CATEGORIES.values() for event in events]

        assert WebhookEventType.WEBHOOK_VERIFICATION not in subscribable
        assert len(subscribable) == len(WebhookEventType) - 1
        assert WebhookEventType.ACCOUNT_KYC_APPROVED in EVENT_CATEGORIES["user"]


class TestEnvelope:
    def test_wire_fields(self) -> None:
        envelope = make_log().payload

        body = envelope.model_dump(mode="json")

        assert set(body) == {
            "event", "timestamp", "webhook_id", "delivery_id",
            "api_version", "environment", "data",
        }
        assert body["event"] == "order.created"
        assert body["api_version"] == "1.0"
        assert envelope.to_body() == envelope.model_dump_json().encode()
