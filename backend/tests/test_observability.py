"""Tests for observability features: metrics, health checks, and request tracing."""

from __future__ import annotations

from uuid import UUID

import structlog
import structlog.testing
from backend.app.circuit_breaker import get_circuit_breaker
from backend.app.config import APP_VERSION, SERVICE_NAME
from backend.app.health import health_checker
from backend.app.logging_config import (
    add_app_context,
    add_request_id,
    get_logger,
    get_request_id,
    request_id_ctx,
)
from backend.app.metrics import normalize_endpoint
from backend.app.settings import settings
from conftest import post_action, seed_trip, send_default_options

# ==============================================================================
# PROMETHEUS METRICS TESTS
# ==============================================================================


class TestPrometheusMetrics:
    def test_metrics_endpoint_returns_prometheus_format(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "# HELP" in response.text
        assert "trip_deposits_info" in response.text

    def test_flow_counters_are_exported(self, client):
        seed_trip()
        token = send_default_options(client)
        post_action(client, "confirm", token=token, selected_date="2026-07-02")

        content = client.get("/metrics").text

        assert 'date_selection_actions_total{action="send_options",outcome="sent"}' in content
        assert 'date_selection_actions_total{action="confirm",outcome="selected"}' in content
        assert 'deposit_checkouts_total{result="created"}' in content
        assert "notifications_enqueued_total" in content
        assert 'endpoint="/v1/trip-date-selection"' in content

    def test_metrics_endpoint_not_tracked(self, client):
        client.get("/metrics")
        assert 'endpoint="/metrics"' not in client.get("/metrics").text

    def test_endpoint_normalization(self):
        assert normalize_endpoint("/v1/trip-date-selection") == "/v1/trip-date-selection"
        assert normalize_endpoint("/bookings/123e4567-e89b-12d3-a456-426614174000") == (
            "/bookings/{id}"
        )
        assert normalize_endpoint("/bookings/12345") == "/bookings/{id}"
        assert normalize_endpoint("/scan/abcdefghijklmnopqrstuvwxyz") == "/scan/{id}"


# ==============================================================================
# HEALTH CHECK TESTS
# ==============================================================================


class TestHealthCheck:
    def test_health_reports_service_and_checks(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == SERVICE_NAME
        assert data["version"] == APP_VERSION
        assert data["checks"]["database"]["status"] == "ok"
        assert data["checks"]["payments"] == {
            "status": "ok",
            "provider": "mock",
            "circuit": "closed",
        }
        assert data["checks"]["auth0"] == {"status": "bypassed"}
        assert data["checks"]["sentry"] == {"status": "disabled"}

    def test_open_payment_circuit_degrades_health(self, client):
        breaker = get_circuit_breaker("payments")
        original = breaker.failure_threshold
        breaker.failure_threshold = 1
        try:
            breaker.record_failure()
            response = client.get("/health")
        finally:
            breaker.failure_threshold = original
            breaker.reset()

        assert response.status_code == 503
        assert response.json()["checks"]["payments"]["circuit"] == "open"

    def test_stripe_without_key_is_degraded(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_PROVIDER", "stripe")
        monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["checks"]["payments"]["error"] == "STRIPE_SECRET_KEY missing"

    def test_payments_disabled_with_deposits_off(self, client):
        settings.DEPOSITS_ENABLED = False
        response = client.get("/health")
        assert response.json()["checks"]["payments"] == {"status": "disabled"}

    def test_auth0_check_is_cached(self, client, monkeypatch):
        monkeypatch.setattr(settings, "AUTH0_BYPASS", False)
        monkeypatch.setattr(settings, "AUTH0_DOMAIN", "tenant.example.com")
        health_checker.clear_cache()
        health_checker.prime("auth0", {"status": "ok", "keys_count": 2})

        data = client.get("/health").json()

        assert data["checks"]["auth0"] == {"status": "ok", "keys_count": 2}
        health_checker.clear_cache()


# ==============================================================================
# REQUEST ID TRACING TESTS
# ==============================================================================


class TestRequestIds:
    def test_minted_when_caller_sends_none(self, client):
        minted = client.get("/health").headers["X-Request-ID"]
        assert UUID(minted).version == 4

    def test_caller_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "partner-trace-7"})
        assert response.headers["X-Request-ID"] == "partner-trace-7"

    def test_each_request_gets_its_own(self, client):
        ids = {client.get("/health").headers["X-Request-ID"] for _ in range(3)}
        assert len(ids) == 3

    def test_context_is_cleared_after_the_request(self, client):
        client.get("/health", headers={"X-Request-ID": "scoped"})
        assert get_request_id() == ""

    def test_api_errors_carry_the_id(self, client):
        response = post_action(client, "preview")
        assert response.status_code == 400
        assert response.headers["X-Request-ID"]

    def test_unknown_routes_carry_the_id(self, client):
        assert "X-Request-ID" in client.get("/nope").headers

class TestStructuredLogging:
    def test_request_id_is_added_to_events(self):
        request_id_ctx.set("log-trace-1")
        try:
            event = add_request_id(None, "info", {"event": "deposit_checkout_ready"})
        finally:
            request_id_ctx.set("")
        assert event == {"event": "deposit_checkout_ready", "request_id": "log-trace-1"}

    def test_no_request_id_outside_requests(self):
        assert "request_id" not in add_request_id(None, "info", {"event": "startup"})

    def test_app_context_is_stamped(self):
        event = add_app_context(None, "info", {"event": "x"})
        assert event["service"] == SERVICE_NAME
        assert event["version"] == APP_VERSION

    def test_logger_emits_through_structlog(self):
        with structlog.testing.capture_logs() as logs:
            get_logger("tests").info("deposit_checkout_ready", amount="80.00")
        assert logs == [
            {"event": "deposit_checkout_ready", "amount": "80.00", "log_level": "info"}
        ]
