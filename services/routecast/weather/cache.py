"""
Weather cache — Redis-backed when REDIS_URL is set, process-local otherwise.

Both backends expose the same async contract (get / set / delete / exists /
expire / keys / flush_pattern) and store JSON-encoded values, so callers never
branch on which one is active. Selection happens once, in the app lifespan.

Key formats:
  weather:{lat:.4f},{lon:.4f}:{provider,...}[:{selection}]
                                               per-coordinate aggregation, 30 min
  forecast:{sha256}                            whole-route forecast bundle, 60 min
  route:{sha256}                               route geometry (points only), 24 h

The forecast hash covers the route points, start time, average speed,
forecast interval, units, provider set and source selection, so two
requests with identical semantic inputs share one entry.

Graceful degradation: cache failures never fail a fetch. A failed read is a
miss, a failed write is a no-op; both are logged at warning level.
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import json
import logging
import time
from typing import Any, Callable, Iterable, Protocol

from services.routecast.weather.models import (
    MultiSourceWeatherForecast,
    ProviderId,
    RoutePoint,
    RouteSettings,
)

logger = logging.getLogger(__name__)

WEATHER_PREFIX = "weather:"
FORECAST_PREFIX = "forecast:"
ROUTE_PREFIX = "route:"

DEFAULT_TTL_SECONDS = 60 * 60


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def _provider_suffix(providers: Iterable[ProviderId | str]) -> str:
    return ",".join(sorted(ProviderId(p).value for p in providers))


def _digest(obj: Any) -> str:
    encoded = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _points_payload(points: Iterable[RoutePoint]) -> list[dict[str, Any]]:
    return [p.model_dump(mode="json") for p in points]


def weather_cache_key(
    lat: float,
    lon: float,
    providers: Iterable[ProviderId | str],
    selection: str = "",
) -> str:
    key = f"{WEATHER_PREFIX}{lat:.4f},{lon:.4f}:{_provider_suffix(providers)}"
    return f"{key}:{selection}" if selection else key


def route_geometry_cache_key(points: Iterable[RoutePoint]) -> str:
    return f"{ROUTE_PREFIX}{_digest(_points_payload(points))}"


def route_forecast_cache_key(
    points: Iterable[RoutePoint],
    settings: RouteSettings,
    providers: Iterable[ProviderId | str],
    selection: str = "",
) -> str:
    key_data = {
        "points": _points_payload(points),
        "startTime": settings.start_time.isoformat(),
        "averageSpeed": settings.average_speed,
        "forecastInterval": settings.forecast_interval,
        "units": settings.units,
        "providers": _provider_suffix(providers),
        "selection": selection,
    }
    return f"{FORECAST_PREFIX}{_digest(key_data)}"


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class CacheBackend(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: int = DEFAULT_TTL_SECONDS) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def expire(self, key: str, ttl: int) -> None: ...

    async def keys(self, pattern: str) -> list[str]: ...

    async def flush_pattern(self, pattern: str) -> None: ...


class RedisCache:
    """
    Redis-backed cache.

    Usage:
        cache = RedisCache(redis_client)
        data = await cache.get("weather:51.5074,-0.1278:open-meteo")
        if data is None:
            data = await fetch(...)
            await cache.set(key, data, ttl=1800)
    """

    def __init__(self, redis) -> None:
        """
        Args:
            redis: An async Redis client (redis.asyncio compatible) with
                   decode_responses=True.
        """
        self._redis = redis

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._redis.get(key)
            if raw is None:
                logger.debug("Cache miss: %s", key)
                return None
            logger.debug("Cache hit: %s", key)
            return json.loads(raw)
        except Exception:
            logger.warning("Cache GET failed for key=%s", key, exc_info=True)
            return None

    async def set(self, key: str, value: Any, ttl: int = DEFAULT_TTL_SECONDS) -> None:
        try:
            await self._redis.setex(key, ttl, json.dumps(value))
            logger.debug("Cached: key=%s ttl=%ds", key, ttl)
        except Exception:
            logger.warning("Cache SET failed for key=%s", key, exc_info=True)

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except Exception:
            logger.warning("Cache DELETE failed for key=%s", key, exc_info=True)

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._redis.exists(key))
        except Exception:
            logger.warning("Cache EXISTS failed for key=%s", key, exc_info=True)
            return False

    async def expire(self, key: str, ttl: int) -> None:
        try:
            await self._redis.expire(key, ttl)
        except Exception:
            logger.warning("Cache EXPIRE failed for key=%s", key, exc_info=True)

    async def keys(self, pattern: str) -> list[str]:
        try:
            return list(await self._redis.keys(pattern))
        except Exception:
            logger.warning("Cache KEYS failed for pattern=%s", pattern, exc_info=True)
            return []

    async def flush_pattern(self, pattern: str) -> None:
        keys = await self.keys(pattern)
        if not keys:
            return
        try:
            await self._redis.delete(*keys)
        except Exception:
            logger.warning("Cache flush failed for pattern=%s", pattern, exc_info=True)


class MemoryCache:
    """
    Process-local fallback used when no Redis is configured.

    Entries expire lazily on access; ``sweep_expired`` (run periodically by
    ``run_sweeper``) reclaims entries nobody reads again.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: dict[str, tuple[float, str]] = {}

    def _live(self, key: str) -> str | None:
        item = self._store.get(key)
        if item is None:
            return None
        expires_at, raw = item
        if self._clock() > expires_at:
            self._store.pop(key, None)
            return None
        return raw

    async def get(self, key: str) -> Any | None:
        raw = self._live(key)
        if raw is None:
            logger.debug("Cache miss: %s", key)
            return None
        logger.debug("Cache hit: %s", key)
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int = DEFAULT_TTL_SECONDS) -> None:
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError):
            logger.warning("Cache SET failed for key=%s: value is not serialisable", key, exc_info=True)
            return
        self._store[key] = (self._clock() + ttl, raw)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def expire(self, key: str, ttl: int) -> None:
        raw = self._live(key)
        if raw is not None:
            self._store[key] = (self._clock() + ttl, raw)

    async def keys(self, pattern: str) -> list[str]:
        return [key for key in list(self._store) if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None]

    async def flush_pattern(self, pattern: str) -> None:
        for key in await self.keys(pattern):
            self._store.pop(key, None)

    def sweep_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._store.items() if now > expires_at]
        for key in expired:
            del self._store[key]
        if expired:
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)

    async def run_sweeper(self, interval_s: float) -> None:
        """Sweep forever; cancel the task to stop."""
        while True:
            await asyncio.sleep(interval_s)
            self.sweep_expired()


def create_cache(redis=None) -> RedisCache | MemoryCache:
    if redis is not None:
        return RedisCache(redis)
    logger.info("Redis not configured, using in-memory cache fallback")
    return MemoryCache()


# ---------------------------------------------------------------------------
# Route-level helpers
# ---------------------------------------------------------------------------

class RouteCache:
    """Route geometry and whole-route forecast bundles on top of a CacheBackend."""

    def __init__(self, cache: CacheBackend, forecast_ttl: int, route_ttl: int) -> None:
        self._cache = cache
        self.forecast_ttl = forecast_ttl
        self.route_ttl = route_ttl

    async def store_route(self, points: list[RoutePoint]) -> str:
        """Cache route geometry and return its route id (the hash part of the key)."""
        key = route_geometry_cache_key(points)
        await self._cache.set(key, _points_payload(points), self.route_ttl)
        return key[len(ROUTE_PREFIX):]

    async def load_route(self, route_id: str) -> list[RoutePoint] | None:
        cached = await self._cache.get(f"{ROUTE_PREFIX}{route_id}")
        if cached is None:
            return None
        return [RoutePoint.model_validate(p) for p in cached]

    async def get_forecasts(self, key: str) -> list[MultiSourceWeatherForecast] | None:
        cached = await self._cache.get(key)
        if cached is None:
            return None
        try:
            return [MultiSourceWeatherForecast.model_validate(f) for f in cached]
        except ValueError:
            logger.warning("Discarding unreadable forecast bundle key=%s", key, exc_info=True)
            return None

    async def set_forecasts(self, key: str, forecasts: list[MultiSourceWeatherForecast]) -> None:
        payload = [f.model_dump(mode="json") for f in forecasts]
        await self._cache.set(key, payload, self.forecast_ttl)
