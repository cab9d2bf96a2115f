"""Dependency checks behind GET /health."""

from __future__ import annotations

import time
from typing import Any

import httpx
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .circuit_breaker import CircuitState, get_circuit_breaker
from .db.core import get_session
from .settings import settings

Check = dict[str, Any]
PASSING = frozenset({"ok", "disabled", "bypassed"})


def _filled(value: str | None) -> bool:
    return bool(value and value.strip())


class HealthChecker:
    """Runs the checks; remote ones are cached for `ttl` seconds."""

    def __init__(self, ttl: float = 30.0) -> None:
        self.ttl = ttl
        self._cache: dict[str, tuple[float, Check]] = {}

    async def check_all(self) -> dict[str, Any]:
        checks: dict[str, Check] = {
            "database": await self.database(),
            "payments": self.payments(),
            "auth0": await self.auth0(),
            "sentry": self.sentry(),
        }
        healthy = all(check["status"] in PASSING for check in checks.values())
        return {
            "status": "healthy" if healthy else "degraded",
            "timestamp": time.time(),
            "checks": checks,
        }

    async def database(self) -> Check:
        started = time.perf_counter()
        try:
            async with get_session() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            return {"status": "error", "error": str(exc), "error_type": type(exc).__name__}
        return {
            "status": "ok",
            "dialect": settings.async_database_url.partition(":")[0],
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        }

    def payments(self) -> Check:
        if not settings.DEPOSITS_ENABLED:
            return {"status": "disabled"}
        provider = settings.PAYMENT_PROVIDER
        if provider == "stripe" and not _filled(settings.STRIPE_SECRET_KEY):
            return {"status": "error", "provider": provider, "error": "STRIPE_SECRET_KEY missing"}
        state = get_circuit_breaker("payments").state
        return {
            "status": "error" if state is CircuitState.OPEN else "ok",
            "provider": provider,
            "circuit": state.value,
        }

    def sentry(self) -> Check:
        if not _filled(settings.SENTRY_DSN):
            return {"status": "disabled"}
        return {"status": "ok", "environment": settings.SENTRY_ENVIRONMENT}

    async def auth0(self) -> Check:
        if settings.AUTH0_BYPASS or not _filled(settings.AUTH0_DOMAIN):
            return {"status": "bypassed"}
        cached = self._cache.get("auth0")
        if cached and time.monotonic() - cached[0] < self.ttl:
            return cached[1]
        result = await self._fetch_jwks_status()
        self._cache["auth0"] = (time.monotonic(), result)
        return result

    async def _fetch_jwks_status(self) -> Check:
        url = f"{(settings.auth0_issuer or '').rstrip('/')}/.well-known/jwks.json"
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(url)
                response.raise_for_status()
                keys = response.json().get("keys")
        except httpx.TimeoutException:
            return {"status": "error", "error": "Connection timeout"}
        except httpx.HTTPStatusError as exc:
            return {"status": "error", "error": f"HTTP {exc.response.status_code}"}
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            return {"status": "error", "error": str(exc), "error_type": type(exc).__name__}
        if not isinstance(keys, list):
            return {"status": "error", "error": "Invalid JWKS response format"}
        return {"status": "ok", "keys_count": len(keys)}

    def prime(self, name: str, result: Check) -> None:
        self._cache[name] = (time.monotonic(), result)

    def clear_cache(self) -> None:
        self._cache.clear()


health_checker = HealthChecker()
