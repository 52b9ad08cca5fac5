"""
Composite rate limiting for authentication endpoints.

Each protected action is guarded by three independently keyed counters:
  - IP daily: every attempt from an IP counts (24h window).
  - identifier: failed attempts for one email / token (10 min window).
  - identifier + IP: failed attempts for that pair (10 min window).
Counters live in Redis (or in process memory for tests and single-node dev).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Protocol

from fastapi import Request
from prometheus_client import Counter

from authcore.config import Settings
from authcore.core.errors import AuthError, too_many_requests

logger = logging.getLogger(__name__)

IP_DAILY_WINDOW_SECONDS = 24 * 60 * 60
FAILURE_WINDOW_SECONDS = 10 * 60
UNKNOWN = "unknown"

RATE_LIMIT_REJECTIONS = Counter(
    "auth_rate_limit_rejections_total",
    "Requests rejected by the composite auth rate limiter",
    ["action"],
)


class CounterBackend(Protocol):
    async def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        """Increment key (starting a window on first hit); return (count, seconds left)."""
        ...

    async def peek(self, key: str) -> tuple[int, int]:
        """Return (count, seconds left) without incrementing."""
        ...

    async def close(self) -> None: ...


class RedisCounterBackend:
    """Fixed-window counters on Redis: INCR + TTL in one pipeline, EXPIRE on first hit."""

    def __init__(self, redis_url: str) -> None:
        from redis.asyncio import from_url

        self._client = from_url(redis_url, encoding="utf-8", decode_responses=True)

    async def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        pipe = self._client.pipeline()
        pipe.incr(key)
        pipe.ttl(key)
        results = await pipe.execute()
        count = int(results[0])
        ttl = int(results[1])
        if ttl < 0:
            await self._client.expire(key, window_seconds)
            ttl = window_seconds
        return count, ttl

    async def peek(self, key: str) -> tuple[int, int]:
        pipe = self._client.pipeline()
        pipe.get(key)
        pipe.ttl(key)
        value, ttl = await pipe.execute()
        return int(value or 0), max(int(ttl), 0)

    async def close(self) -> None:
        await self._client.aclose()


class MemoryCounterBackend:
    """In-process fixed-window counters. Not shared between workers."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str, now: float) -> tuple[int, float] | None:
        entry = self._counters.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            del self._counters[key]
            return None
        return entry

    async def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        async with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                entry = (0, now + window_seconds)
            count, expires_at = entry[0] + 1, entry[1]
            self._counters[key] = (count, expires_at)
            return count, int(expires_at - now)

    async def peek(self, key: str) -> tuple[int, int]:
        async with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                return 0, 0
            return entry[0], int(entry[1] - now)

    async def close(self) -> None:
        self._counters.clear()


def create_counter_backend(settings: Settings) -> CounterBackend:
    if settings.rate_limit_backend == "memory":
        return MemoryCounterBackend()
    return RedisCounterBackend(settings.redis_url)


def get_client_ip(request: Request) -> str:
    """IP resolved by the proxy middleware, else first X-Forwarded-For entry, else socket peer, else 'unknown'."""
    trusted = getattr(request.state, "client_ip", None)
    if trusted:
        return trusted
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN


@dataclass(frozen=True)
class ProtectedAction:
    prefix: str
    label: str  # used in client-facing messages


SIGNUP = ProtectedAction("signup", "signup")
LOGIN = ProtectedAction("login", "login")
FORGOT_PASSWORD = ProtectedAction("forgot_pass", "password reset request")
RESET_PASSWORD = ProtectedAction("reset_pass", "password reset")
VERIFY_EMAIL = ProtectedAction("verify_email", "verification")


@dataclass(frozen=True)
class LimiterKeys:
    ip_daily: str
    identifier: str
    identifier_ip: str


def limiter_keys(action: ProtectedAction, identifier: str | None, client_ip: str) -> LimiterKeys:
    ident = (identifier or "").strip() or UNKNOWN
    return LimiterKeys(
        ip_daily=f"{action.prefix}:ip:daily:{client_ip}",
        identifier=f"{action.prefix}:id:{ident}",
        identifier_ip=f"{action.prefix}:id_ip:{ident}:{client_ip}",
    )


class RateLimitGuard:
    def __init__(self, backend: CounterBackend, settings: Settings) -> None:
        self._backend = backend
        self._settings = settings

    async def _check_ip_daily(self, action: ProtectedAction, key: str) -> AuthError | None:
        count, ttl = await self._backend.hit(key, IP_DAILY_WINDOW_SECONDS)
        if count > self._settings.rate_limit_ip_max_per_day:
            return too_many_requests(
                f"Too many {action.label} attempts from this IP. Please try again after 24 hours.",
                retry_after=ttl,
            )
        return None

    async def _check_failures(self, key: str, limit: int, message: str) -> AuthError | None:
        count, ttl = await self._backend.peek(key)
        if count >= limit:
            return too_many_requests(message, retry_after=ttl)
        return None

    async def check(self, action: ProtectedAction, keys: LimiterKeys) -> None:
        """
        Run the three layers concurrently and raise the first tripped one (in layer order).
        Backend errors are logged and the layer passes (fail open).
        """
        results = await asyncio.gather(
            self._check_ip_daily(action, keys.ip_daily),
            self._check_failures(
                keys.identifier,
                self._settings.rate_limit_id_max_fails,
                f"Too many {action.label} failures for this account. Please try again in 10 minutes.",
            ),
            self._check_failures(
                keys.identifier_ip,
                self._settings.rate_limit_id_ip_max_fails,
                f"Too many {action.label} attempts. Please try again in 10 minutes.",
            ),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, AuthError):
                logger.info("Rate limit tripped for %s: %s", action.prefix, result.message)
                RATE_LIMIT_REJECTIONS.labels(action=action.prefix).inc()
                raise result
            if isinstance(result, BaseException):
                logger.warning("Rate limit: counter backend error (%s), skipping layer", result)

    async def record_failure(self, keys: LimiterKeys) -> None:
        results = await asyncio.gather(
            self._backend.hit(keys.identifier, FAILURE_WINDOW_SECONDS),
            self._backend.hit(keys.identifier_ip, FAILURE_WINDOW_SECONDS),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.warning("Rate limit: could not record failure (%s)", result)

    @asynccontextmanager
    async def protect(
        self, action: ProtectedAction, request: Request, identifier: str | None
    ) -> AsyncIterator[None]:
        """
        Guard a protected action. Raises TooManyRequests before the body runs if any layer
        trips; client errors raised by the body count as failures, then propagate.
        """
        keys = limiter_keys(action, identifier, get_client_ip(request))
        await self.check(action, keys)
        try:
            yield
        except AuthError as e:
            if e.counts_as_failure:
                await self.record_failure(keys)
            raise

    async def close(self) -> None:
        try:
            await self._backend.close()
        except Exception as e:
            logger.warning("Rate limit: error closing counter backend: %s", e)
