"""Per-client request budgets for the public API."""

from __future__ import annotations

import asyncio
import ipaddress
import math
import time
from dataclasses import dataclass
from functools import lru_cache

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .metrics import rate_limit_requests_total
from .settings import settings

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@dataclass
class Window:
    started: float
    hits: int = 0


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    remaining: int
    retry_after: float


class RateLimiter:
    """Fixed-window counter keyed by client address."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, Window] = {}
        self._lock = asyncio.Lock()
        self._next_sweep = 0.0

    async def hit(self, client: str, limit: int, window_seconds: int) -> Verdict:
        now = self._clock()
        async with self._lock:
            if now >= self._next_sweep:
                self._sweep(now, window_seconds)
            window = self._windows.get(client)
            if window is None or now - window.started >= window_seconds:
                window = self._windows[client] = Window(started=now)
            if window.hits >= limit:
                return Verdict(False, 0, window.started + window_seconds - now)
            window.hits += 1
            return Verdict(True, limit - window.hits, 0.0)

    def _sweep(self, now: float, window_seconds: int) -> None:
        expired = [key for key, w in self._windows.items() if now - w.started >= window_seconds]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + window_seconds

    def reset(self) -> None:
        self._windows.clear()
        self._next_sweep = 0.0


@lru_cache(maxsize=8)
def _trusted_networks(raw: str) -> tuple[IPNetwork, ...]:
    networks: list[IPNetwork] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            continue
    return tuple(networks)


def _is_valid_ip(ip: str) -> bool:
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        return False
    return True


def _is_trusted_proxy(ip: str) -> bool:
    configured = settings.TRUSTED_PROXIES.strip()
    if configured == "*":
        return True
    if not configured or not _is_valid_ip(ip):
        return False
    address = ipaddress.ip_address(ip)
    return any(address in network for network in _trusted_networks(configured))


def client_address(request: Request) -> str:
    """Peer address, or the leftmost valid X-Forwarded-For hop behind a trusted proxy."""
    peer = request.client.host if request.client else ""
    if not peer:
        return "anonymous"
    if _is_trusted_proxy(peer):
        forwarded = request.headers.get("x-forwarded-for", "")
        hops = [hop.strip() for hop in forwarded.split(",")]
        return next((hop for hop in hops if _is_valid_ip(hop)), peer)
    return peer


def _throttled(limit: int, retry_after: float) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"ok": False, "error": "Too many requests"},
        headers={
            "Retry-After": str(max(1, math.ceil(retry_after))),
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
        },
    )


def add_rate_limiting(app: FastAPI) -> None:
    limiter = RateLimiter()
    app.state.rate_limiter = limiter

    @app.middleware("http")
    async def _rate_limit(request: Request, call_next):  # type: ignore[override]
        limit = settings.RATE_LIMIT_REQUESTS
        window_seconds = settings.RATE_LIMIT_WINDOW_SECONDS
        if not settings.RATE_LIMIT_ENABLED or limit <= 0 or window_seconds <= 0:
            return await call_next(request)

        verdict = await limiter.hit(client_address(request), limit, window_seconds)
        if not verdict.allowed:
            rate_limit_requests_total.labels(result="throttle").inc()
            return _throttled(limit, verdict.retry_after)

        rate_limit_requests_total.labels(result="allow").inc()
        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(verdict.remaining)
        return response


__all__ = ["RateLimiter", "add_rate_limiting", "client_address"]
