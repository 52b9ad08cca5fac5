"""Unit tests for the composite rate limiter (counter backends, layers, client IP)."""

from types import SimpleNamespace

import pytest

from authcore.core import rate_limit
from authcore.core.errors import AuthError, ErrorKind, too_many_requests, unauthorized
from authcore.core.rate_limit import (
    FAILURE_WINDOW_SECONDS,
    MemoryCounterBackend,
    RateLimitGuard,
    RedisCounterBackend,
    get_client_ip,
    limiter_keys,
)
from conftest import make_settings


class FakeRedisPipeline:
    """In-memory pipeline that mimics Redis INCR / GET + TTL for rate limit tests."""

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._ops: list = []

    def incr(self, key: str):
        self._ops.append(("incr", key))
        return self

    def get(self, key: str):
        self._ops.append(("get", key))
        return self

    def ttl(self, key: str):
        self._ops.append(("ttl", key))
        return self

    async def execute(self):
        out = []
        for op, key in self._ops:
            if op == "incr":
                self._redis.store[key] = self._redis.store.get(key, 0) + 1
                out.append(self._redis.store[key])
            elif op == "get":
                value = self._redis.store.get(key)
                out.append(None if value is None else str(value))
            else:
                if key not in self._redis.store:
                    out.append(-2)
                else:
                    out.append(self._redis.ttls.get(key, -1))
        return out


class FakeRedis:
    """In-memory Redis-like client for testing."""

    def __init__(self):
        self.store: dict[str, int] = {}
        self.ttls: dict[str, int] = {}

    def pipeline(self):
        return FakeRedisPipeline(self)

    async def expire(self, key: str, ttl: int):
        self.ttls[key] = ttl

    async def aclose(self):
        pass


class BrokenBackend:
    async def hit(self, key, window_seconds):
        raise ConnectionError("redis down")

    async def peek(self, key):
        raise ConnectionError("redis down")

    async def close(self):
        pass


def _request(host: str | None = "10.0.0.1", headers: dict | None = None, client_ip: str | None = None):
    state = SimpleNamespace()
    if client_ip:
        state.client_ip = client_ip
    return SimpleNamespace(
        headers={k.lower(): v for k, v in (headers or {}).items()},
        client=SimpleNamespace(host=host) if host else None,
        state=state,
    )


def _redis_backend() -> tuple[RedisCounterBackend, FakeRedis]:
    backend = RedisCounterBackend.__new__(RedisCounterBackend)
    fake = FakeRedis()
    backend._client = fake
    return backend, fake


def test_limiter_key_format():
    keys = limiter_keys(rate_limit.LOGIN, "a@test.com", "1.2.3.4")
    assert keys.ip_daily == "login:ip:daily:1.2.3.4"
    assert keys.identifier == "login:id:a@test.com"
    assert keys.identifier_ip == "login:id_ip:a@test.com:1.2.3.4"
    assert limiter_keys(rate_limit.RESET_PASSWORD, None, "unknown").identifier == "reset_pass:id:unknown"


def test_client_ip_resolution_order():
    assert get_client_ip(_request(client_ip="9.9.9.9", headers={"X-Forwarded-For": "1.1.1.1"})) == "9.9.9.9"
    assert get_client_ip(_request(headers={"X-Forwarded-For": "1.1.1.1, 2.2.2.2"})) == "1.1.1.1"
    assert get_client_ip(_request(host="10.0.0.7")) == "10.0.0.7"
    assert get_client_ip(_request(host=None)) == "unknown"


@pytest.mark.asyncio
async def test_redis_backend_sets_window_on_first_hit():
    backend, fake = _redis_backend()
    count, ttl = await backend.hit("login:id:x", FAILURE_WINDOW_SECONDS)
    assert (count, ttl) == (1, FAILURE_WINDOW_SECONDS)
    assert fake.ttls["login:id:x"] == FAILURE_WINDOW_SECONDS
    count, _ = await backend.hit("login:id:x", FAILURE_WINDOW_SECONDS)
    assert count == 2
    assert await backend.peek("login:id:x") == (2, FAILURE_WINDOW_SECONDS)
    assert await backend.peek("login:id:missing") == (0, 0)


@pytest.mark.asyncio
async def test_memory_backend_window_expires():
    now = [1000.0]
    backend = MemoryCounterBackend(clock=lambda: now[0])
    assert await backend.hit("k", 60) == (1, 60)
    assert await backend.hit("k", 60) == (2, 60)
    now[0] += 30
    assert await backend.peek("k") == (2, 30)
    now[0] += 31
    assert await backend.peek("k") == (0, 0)
    assert await backend.hit("k", 60) == (1, 60)


@pytest.mark.asyncio
async def test_identifier_layer_counts_only_failures():
    guard = RateLimitGuard(MemoryCounterBackend(), make_settings(rate_limit_id_max_fails=2))
    request = _request()
    for _ in range(5):
        async with guard.protect(rate_limit.LOGIN, request, "a@test.com"):
            pass  # successes never count
    for _ in range(2):
        with pytest.raises(AuthError) as exc_info:
            async with guard.protect(rate_limit.LOGIN, request, "a@test.com"):
                raise unauthorized("Incorrect email or password")
        assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
    with pytest.raises(AuthError) as exc_info:
        async with guard.protect(rate_limit.LOGIN, request, "a@test.com"):
            pytest.fail("protected body must not run once the limit is reached")
    assert exc_info.value.kind is ErrorKind.TOO_MANY_REQUESTS
    assert exc_info.value.message == "Too many login failures for this account. Please try again in 10 minutes."
    assert "Retry-After" in exc_info.value.headers


@pytest.mark.asyncio
async def test_identifier_layer_applies_across_ips():
    guard = RateLimitGuard(
        MemoryCounterBackend(), make_settings(rate_limit_id_max_fails=2, rate_limit_id_ip_max_fails=10)
    )
    for host in ("1.1.1.1", "2.2.2.2"):
        with pytest.raises(AuthError):
            async with guard.protect(rate_limit.LOGIN, _request(host=host), "victim@test.com"):
                raise unauthorized("Incorrect email or password")
    with pytest.raises(AuthError) as exc_info:
        async with guard.protect(rate_limit.LOGIN, _request(host="3.3.3.3"), "victim@test.com"):
            pass
    assert exc_info.value.kind is ErrorKind.TOO_MANY_REQUESTS
    # Another account from the same IPs is unaffected.
    async with guard.protect(rate_limit.LOGIN, _request(host="3.3.3.3"), "other@test.com"):
        pass


@pytest.mark.asyncio
async def test_identifier_ip_layer_message():
    guard = RateLimitGuard(
        MemoryCounterBackend(), make_settings(rate_limit_id_max_fails=10, rate_limit_id_ip_max_fails=1)
    )
    with pytest.raises(AuthError):
        async with guard.protect(rate_limit.SIGNUP, _request(), "a@test.com"):
            raise unauthorized("nope")
    with pytest.raises(AuthError) as exc_info:
        async with guard.protect(rate_limit.SIGNUP, _request(), "a@test.com"):
            pass
    assert exc_info.value.message == "Too many signup attempts. Please try again in 10 minutes."


@pytest.mark.asyncio
async def test_ip_daily_layer_counts_every_attempt():
    guard = RateLimitGuard(MemoryCounterBackend(), make_settings(rate_limit_ip_max_per_day=3))
    for i in range(3):
        async with guard.protect(rate_limit.FORGOT_PASSWORD, _request(), f"user{i}@test.com"):
            pass
    with pytest.raises(AuthError) as exc_info:
        async with guard.protect(rate_limit.FORGOT_PASSWORD, _request(), "fresh@test.com"):
            pass
    assert exc_info.value.status_code == 429
    assert exc_info.value.message == (
        "Too many password reset request attempts from this IP. Please try again after 24 hours."
    )
    # Other actions have their own daily bucket.
    async with guard.protect(rate_limit.LOGIN, _request(), "fresh@test.com"):
        pass


@pytest.mark.asyncio
async def test_rate_limit_rejection_is_not_a_failure():
    backend = MemoryCounterBackend()
    guard = RateLimitGuard(backend, make_settings(rate_limit_ip_max_per_day=1))
    async with guard.protect(rate_limit.LOGIN, _request(), "a@test.com"):
        pass
    with pytest.raises(AuthError):
        async with guard.protect(rate_limit.LOGIN, _request(), "a@test.com"):
            pass
    assert await backend.peek("login:id:a@test.com") == (0, 0)


@pytest.mark.asyncio
async def test_rate_limit_error_from_body_not_counted():
    backend = MemoryCounterBackend()
    guard = RateLimitGuard(backend, make_settings())
    with pytest.raises(AuthError):
        async with guard.protect(rate_limit.LOGIN, _request(), "a@test.com"):
            raise too_many_requests("upstream")
    assert (await backend.peek("login:id:a@test.com"))[0] == 0


@pytest.mark.asyncio
async def test_backend_errors_fail_open():
    guard = RateLimitGuard(BrokenBackend(), make_settings())
    with pytest.raises(AuthError) as exc_info:
        async with guard.protect(rate_limit.LOGIN, _request(), "a@test.com"):
            raise unauthorized("Incorrect email or password")
    # The business error still surfaces; the broken counter did not turn it into a 500.
    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
