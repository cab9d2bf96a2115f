"""Rate limiting, trusted proxies and response hardening middleware."""

from __future__ import annotations

import asyncio

import pytest
from backend.app.main import app
from backend.app.middleware import install_middleware
from backend.app.rate_limit import RateLimiter, _is_trusted_proxy, _is_valid_ip, add_rate_limiting
from backend.app.settings import settings
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.testclient import TestClient


@pytest.fixture
def limited_client(monkeypatch):
    """A bare app behind the limiter, three requests per minute."""
    local_app = FastAPI()
    add_rate_limiting(local_app)

    @local_app.get("/ping")
    def ping():
        return {"ok": True}

    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(settings, "RATE_LIMIT_REQUESTS", 3)
    monkeypatch.setattr(settings, "RATE_LIMIT_WINDOW_SECONDS", 60)
    monkeypatch.setattr(settings, "TRUSTED_PROXIES", "")
    return TestClient(local_app)


class TestRateLimiter:
    def test_blocks_after_budget_is_spent(self, limited_client):
        statuses = [limited_client.get("/ping").status_code for _ in range(5)]

        assert statuses[:3] == [200, 200, 200]
        assert statuses[3:] == [429, 429]

    def test_throttled_response_uses_error_envelope(self, limited_client):
        for _ in range(3):
            limited_client.get("/ping")

        response = limited_client.get("/ping")

        assert response.json() == {"ok": False, "error": "Too many requests"}
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_remaining_header_counts_down(self, limited_client):
        first = limited_client.get("/ping")
        second = limited_client.get("/ping")
        assert first.headers["X-RateLimit-Limit"] == "3"
        assert int(second.headers["X-RateLimit-Remaining"]) < int(
            first.headers["X-RateLimit-Remaining"]
        )

    def test_spoofed_forwarded_for_is_ignored_without_trusted_proxy(self, limited_client):
        statuses = [
            limited_client.get("/ping", headers={"X-Forwarded-For": f"1.2.3.{i}"}).status_code
            for i in range(4)
        ]
        assert statuses[-1] == 429

    def test_trusted_proxy_limits_per_forwarded_client(self, limited_client, monkeypatch):
        monkeypatch.setattr(settings, "TRUSTED_PROXIES", "*")

        for _ in range(3):
            limited_client.get("/ping", headers={"X-Forwarded-For": "1.2.3.4"})
        blocked = limited_client.get("/ping", headers={"X-Forwarded-For": "1.2.3.4"})
        other = limited_client.get("/ping", headers={"X-Forwarded-For": "5.6.7.8, 10.0.0.1"})

        assert blocked.status_code == 429
        assert other.status_code == 200

    def test_disabled_limiter_passes_everything(self, limited_client, monkeypatch):
        monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", False)
        statuses = {limited_client.get("/ping").status_code for _ in range(6)}
        assert statuses == {200}

    def test_window_rolls_over(self):
        now = [0.0]
        limiter = RateLimiter(clock=lambda: now[0])

        verdicts = [asyncio.run(limiter.hit("10.0.0.9", 2, 60)) for _ in range(3)]
        assert [v.allowed for v in verdicts] == [True, True, False]
        assert verdicts[-1].retry_after == pytest.approx(60)

        now[0] = 61.0
        assert asyncio.run(limiter.hit("10.0.0.9", 2, 60)).remaining == 1


class TestTrustedProxies:
    @pytest.mark.parametrize(
        ("configured", "ip", "trusted"),
        [
            ("", "127.0.0.1", False),
            ("*", "203.0.113.9", True),
            ("10.0.0.1", "10.0.0.1", True),
            ("10.0.0.1", "10.0.0.2", False),
            ("10.0.0.0/8, 192.168.0.0/16", "192.168.4.4", True),
            ("not-an-ip, 10.0.0.1", "10.0.0.1", True),
            ("10.0.0.0/8", "garbage", False),
        ],
    )
    def test_matching(self, monkeypatch, configured, ip, trusted):
        monkeypatch.setattr(settings, "TRUSTED_PROXIES", configured)
        assert _is_trusted_proxy(ip) is trusted

    @pytest.mark.parametrize(
        ("ip", "valid"),
        [("1.2.3.4", True), ("::1", True), ("999.1.1.1", False), ("", False)],
    )
    def test_ip_validation(self, ip, valid):
        assert _is_valid_ip(ip) is valid


class TestResponseHardening:
    def test_security_headers_on_api_responses(self, client):
        response = client.post("/v1/trip-date-selection", json={"action": "preview"})
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Referrer-Policy"] == "no-referrer"
        assert response.headers["Cache-Control"] == "no-store"

    def test_errors_do_not_leak_internals(self, client):
        response = client.post("/v1/trip-date-selection", json={"action": "preview", "token": "x"})
        body = response.text.lower()
        assert "traceback" not in body
        assert "sqlalchemy" not in body

    def test_cors_skipped_when_unconfigured(self, monkeypatch):
        monkeypatch.setattr(settings, "CORS_ALLOW_ORIGINS", "")
        local_app = FastAPI()
        install_middleware(local_app)
        assert all(m.cls is not CORSMiddleware for m in local_app.user_middleware)

    def test_cors_added_for_configured_origins(self, monkeypatch):
        monkeypatch.setattr(settings, "CORS_ALLOW_ORIGINS", "https://partners.example.com")
        local_app = FastAPI()
        install_middleware(local_app)
        assert any(m.cls is CORSMiddleware for m in local_app.user_middleware)

    def test_main_app_exposes_limiter(self):
        assert getattr(app.state, "rate_limiter", None) is not None
