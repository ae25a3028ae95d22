import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from starlette.requests import Request

from app.core.logging import client_ip
from app.guardrails.errors import AppError


class RateLimitStore(ABC):
    """Backing store for per-client window counters (in-memory here; a shared counter service in multi-instance deployments)."""

    @abstractmethod
    def hit(self, key: str, now: float, window_seconds: float) -> Tuple[int, float]:
        """Count one request for key and return (count in current window, window reset time)."""
        ...


class InMemoryRateLimitStore(RateLimitStore):
    """Per-process dict of key -> (count, reset_at). Expired windows are purged lazily."""

    def __init__(self, purge_every: int = 1000):
        self.storage: Dict[str, Tuple[int, float]] = {}
        self._purge_every = purge_every
        self._hits = 0

    def hit(self, key: str, now: float, window_seconds: float) -> Tuple[int, float]:
        self._hits += 1
        if self._hits % self._purge_every == 0:
            self.purge(now)

        count, reset_at = self.storage.get(key, (0, 0.0))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        count += 1
        self.storage[key] = (count, reset_at)
        return count, reset_at

    def purge(self, now: float) -> None:
        for key in [k for k, (_, reset_at) in self.storage.items() if now >= reset_at]:
            del self.storage[key]


@dataclass
class RateLimitState:
    limit: int
    remaining: int
    reset_at: float

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


class FixedWindowRateLimiter:
    """Fixed-window limiter keyed by client IP. Used by the upload and convert endpoints.
    Why available: Protects the converter from abuse; headers let clients pace themselves."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        store: RateLimitStore = None,
        clock: Callable[[], float] = time.time,
    ):
        """Configure limiter: max_requests per window_seconds per client."""
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.store = store or InMemoryRateLimitStore()
        self._clock = clock

    def check(self, request: Request) -> RateLimitState:
        """Record the request and return its window state; raise 429 once the client is over the limit.
        The state is also stored on request.state so the middleware can attach the headers to the final response."""
        now = self._clock()
        count, reset_at = self.store.hit(client_ip(request), now, self.window_seconds)
        state = RateLimitState(
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_at=reset_at,
        )
        request.state.rate_limit = state

        if count > self.max_requests:
            headers = state.headers()
            headers["Retry-After"] = str(max(1, math.ceil(reset_at - now)))
            raise AppError.rate_limited(headers)

        return state
