"""Unit tests for the fixed-window rate limiter and client address resolution."""
import pytest
from starlette.requests import Request

from app.core.logging import client_ip
from app.guardrails.errors import AppError, ErrorCode
from app.guardrails.rate_limit import FixedWindowRateLimiter, InMemoryRateLimitStore


def _request(headers=None, client=("127.0.0.1", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/convert",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_client_ip_resolution_order():
    assert client_ip(_request({"X-Forwarded-For": "9.9.9.9, 10.0.0.1", "X-Real-IP": "8.8.8.8"})) == "9.9.9.9"
    assert client_ip(_request({"X-Real-IP": "8.8.8.8"})) == "8.8.8.8"
    assert client_ip(_request()) == "127.0.0.1"
    assert client_ip(_request(client=None)) == "unknown"


def test_31st_request_in_window_is_rejected():
    limiter = FixedWindowRateLimiter(max_requests=30, window_seconds=60, clock=FakeClock())

    for i in range(30):
        state = limiter.check(_request())
        assert state.remaining == 29 - i

    req = _request()
    with pytest.raises(AppError) as exc:
        limiter.check(req)

    err = exc.value
    assert err.status_code == 429
    assert err.code == ErrorCode.RATE_LIMITED
    assert err.headers["X-RateLimit-Limit"] == "30"
    assert err.headers["X-RateLimit-Remaining"] == "0"
    assert err.headers["X-RateLimit-Reset"] == "1060"
    assert err.headers["Retry-After"] == "60"
    # middleware reads this to decorate the error response
    assert req.state.rate_limit.remaining == 0


def test_clients_are_counted_separately():
    limiter = FixedWindowRateLimiter(max_requests=30, window_seconds=60, clock=FakeClock())
    for _ in range(30):
        limiter.check(_request({"X-Forwarded-For": "1.1.1.1"}))

    other = limiter.check(_request({"X-Forwarded-For": "2.2.2.2"}))
    assert other.remaining == 29


def test_window_resets():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock)
    limiter.check(_request())
    limiter.check(_request())
    with pytest.raises(AppError):
        limiter.check(_request())

    clock.now += 60
    assert limiter.check(_request()).remaining == 1


def test_store_purges_expired_windows():
    store = InMemoryRateLimitStore(purge_every=3)
    store.hit("a", now=0, window_seconds=10)
    store.hit("b", now=0, window_seconds=10)
    store.hit("c", now=20, window_seconds=10)
    assert set(store.storage) == {"c"}
