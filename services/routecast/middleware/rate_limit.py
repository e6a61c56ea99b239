"""
Fixed-window per-client rate limiter.

Tiers (per client, per window, window defaults to 60 s):
  - upload:  10 requests  (/upload*)
  - weather: 30 requests  (/weather*)
  - general: 100 requests (everything else)
  /health is never limited.

Window semantics: the first request for a key, or the first after the window
elapsed, starts a new window with count=1 and reset_time = now + window.
Later requests in the window increment the count. A request is limited once
count > max_requests.

Stores:
  - MemoryRateLimitStore: dict guarded by an asyncio.Lock, swept periodically
  - RedisRateLimitStore: INCR + PTTL in one pipeline; PEXPIRE when the key has
    no TTL yet. Redis errors fail open.
"""

from __future__ import annotations

import asyncio
import functools
import hashlib
import inspect
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

UPLOAD_PREFIX = "/upload"
WEATHER_PREFIX = "/weather"
HEALTH_PATH = "/health"

KeyGenerator = Callable[[Request], str]


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    count: int
    remaining: int
    reset_time: float  # epoch ms


# ---------------------------------------------------------------------------
# Client identification
# ---------------------------------------------------------------------------

def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def ip_key(request: Request) -> str:
    return f"rate_limit:{client_ip(request)}"


def make_client_key_generator(prefix: str) -> KeyGenerator:
    """Key on IP plus client identifier so clients sharing a NAT do not collide."""

    def _key(request: Request) -> str:
        ident = request.headers.get("x-client-id") or request.headers.get("user-agent") or ""
        digest = hashlib.sha256(f"{client_ip(request)}|{ident}".encode("utf-8")).hexdigest()[:16]
        return f"{prefix}:{digest}"

    return _key


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class RateLimitStore(Protocol):
    async def hit(self, key: str, window_ms: int) -> tuple[int, float]:
        """Count one request for ``key``; return (count, reset_time_ms)."""
        ...

    async def sweep(self) -> int: ...


class MemoryRateLimitStore:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: dict[str, tuple[int, float]] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000

    async def hit(self, key: str, window_ms: int) -> tuple[int, float]:
        async with self._lock:
            now = self._now_ms()
            entry = self._entries.get(key)
            if entry is None or now > entry[1]:
                entry = (1, now + window_ms)
            else:
                entry = (entry[0] + 1, entry[1])
            self._entries[key] = entry
            return entry

    async def sweep(self) -> int:
        async with self._lock:
            now = self._now_ms()
            expired = [key for key, (_, reset) in self._entries.items() if now > reset]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Rate limit sweep removed %d expired entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisRateLimitStore:
    """Shared counters for multi-process deployments."""

    def __init__(self, redis, clock: Callable[[], float] = time.time) -> None:
        self.redis = redis
        self._clock = clock

    async def hit(self, key: str, window_ms: int) -> tuple[int, float]:
        now = self._clock() * 1000
        pipe = self.redis.pipeline()
        pipe.incr(key)
        pipe.pttl(key)
        count, ttl = await pipe.execute()
        if ttl is None or ttl < 0:
            # new window, or a counter left without expiry
            await self.redis.pexpire(key, window_ms)
            ttl = window_ms
        return int(count), now + ttl

    async def sweep(self) -> int:
        # Redis expires keys itself
        return 0


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------

class RateLimiter:
    """
    Usage:
        limiter = RateLimiter("weather", max_requests=30, window_ms=60_000)
        result = await limiter.check(request)
        if result.limited: ...
    """

    def __init__(
        self,
        name: str,
        max_requests: int,
        window_ms: int = 60_000,
        key_generator: KeyGenerator | None = None,
        message: str | None = None,
        store: RateLimitStore | None = None,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_ms < 1:
            raise ValueError("window_ms must be positive")
        self.name = name
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.key_generator = key_generator or ip_key
        self.message = message or "Too many requests, please try again later."
        self.store = store if store is not None else MemoryRateLimitStore()

    async def is_rate_limited(self, key: str) -> RateLimitResult:
        try:
            count, reset_time = await self.store.hit(key, self.window_ms)
        except Exception:
            logger.warning("Rate limit store failed for %s limiter; allowing request", self.name, exc_info=True)
            return RateLimitResult(
                limited=False,
                count=0,
                remaining=self.max_requests,
                reset_time=time.time() * 1000 + self.window_ms,
            )
        return RateLimitResult(
            limited=count > self.max_requests,
            count=count,
            remaining=max(0, self.max_requests - count),
            reset_time=reset_time,
        )

    async def check(self, request: Request) -> RateLimitResult:
        return await self.is_rate_limited(self.key_generator(request))

    def headers(self, result: RateLimitResult) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.max_requests),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(int(result.reset_time // 1000)),
        }

    def rejection(self, request: Request, result: RateLimitResult) -> JSONResponse:
        headers = self.headers(result)
        retry_after = math.ceil((result.reset_time - time.time() * 1000) / 1000)
        headers["Retry-After"] = str(max(1, retry_after))
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": {"code": "RATE_LIMITED", "message": self.message},
                "requestId": getattr(request.state, "request_id", ""),
            },
            headers=headers,
        )

    async def run_sweeper(self, interval_s: float) -> None:
        """Drop expired counters forever; cancel the task to stop."""
        while True:
            await asyncio.sleep(interval_s)
            await self.store.sweep()


def build_named_limiters(settings, redis=None) -> dict[str, RateLimiter]:
    """The upload / weather / general tiers, each with its own counters."""

    def store():
        return RedisRateLimitStore(redis) if redis is not None else MemoryRateLimitStore()

    window = settings.rate_limit_window_ms
    return {
        "upload": RateLimiter(
            "upload",
            settings.rate_limit_upload_per_window,
            window,
            key_generator=make_client_key_generator("rate_limit:upload"),
            message="Too many uploads, please try again later.",
            store=store(),
        ),
        "weather": RateLimiter(
            "weather",
            settings.rate_limit_weather_per_window,
            window,
            key_generator=make_client_key_generator("rate_limit:weather"),
            message="Too many weather requests, please try again later.",
            store=store(),
        ),
        "general": RateLimiter(
            "general",
            settings.rate_limit_general_per_window,
            window,
            key_generator=ip_key,
            store=store(),
        ),
    }


def _select_limiter(path: str, limiters: dict[str, RateLimiter]) -> RateLimiter | None:
    if path.startswith(UPLOAD_PREFIX):
        return limiters.get("upload")
    if path.startswith(WEATHER_PREFIX):
        return limiters.get("weather")
    return limiters.get("general")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Routes each request to a named limiter by path prefix."""

    def __init__(self, app, limiters: dict[str, RateLimiter]):
        super().__init__(app)
        self.limiters = limiters

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip rate limiting for health checks
        if request.url.path == HEALTH_PATH:
            return await call_next(request)

        limiter = _select_limiter(request.url.path, self.limiters)
        if limiter is None:
            return await call_next(request)

        result = await limiter.check(request)
        if result.limited:
            logger.info("Rate limited %s request to %s", limiter.name, request.url.path)
            return limiter.rejection(request, result)

        response = await call_next(request)
        for key, value in limiter.headers(result).items():
            response.headers[key] = value
        return response


def with_rate_limit(limiter: RateLimiter):
    """
    Guard a single FastAPI handler. The handler must accept ``request: Request``.

        @router.post("/upload")
        @with_rate_limit(upload_limiter)
        async def upload(request: Request): ...
    """

    def decorator(handler):
        @functools.wraps(handler)
        async def wrapper(*args, **kwargs):
            request = kwargs.get("request")
            if request is None:
                request = next((a for a in args if isinstance(a, Request)), None)
            if request is None:
                raise TypeError(f"{handler.__name__} needs a 'request: Request' parameter for rate limiting")

            result = await limiter.check(request)
            if result.limited:
                return limiter.rejection(request, result)

            response = handler(*args, **kwargs)
            if inspect.isawaitable(response):
                response = await response
            if isinstance(response, Response):
                for key, value in limiter.headers(result).items():
                    response.headers[key] = value
            return response

        return wrapper

    return decorator
