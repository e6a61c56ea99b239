"""
WeatherSourceManager — fan-out aggregation across weather providers.

For one coordinate the manager:
  1. checks the weather cache (key includes the provider set and, in
     single mode, the primary source)
  2. selects providers: requested or enabled, registered, configured,
     and admitted by their own request budget
  3. fetches them concurrently and settles every call; a failing provider is
     logged and left out, never propagated
  4. builds consensus when at least two providers answered
  5. writes the result to the cache and returns it

Zero answers raise NoWeatherDataError and nothing is cached.

Comparison modes:
  single      only the primary source is asked; when it yields nothing and
              auto_fallback is on, the rest of the enabled sources are asked
  comparison  every enabled source; comparison ranges attached to forecasts
  consensus   every enabled source; consensus is the headline value

Sources always come back in configured provider order, whichever finished
first. Consensus tie-breaks and primary selection rely on that order.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, Mapping, Sequence

from services.routecast.weather.alerts import generate_weather_alerts
from services.routecast.weather.cache import WEATHER_PREFIX, CacheBackend, weather_cache_key
from services.routecast.weather.consensus import calculate_comparison, calculate_consensus
from services.routecast.weather.models import (
    ComparisonMode,
    MultiSourceWeatherData,
    MultiSourceWeatherForecast,
    ProviderId,
    ProviderRateLimitState,
    ProviderStatus,
    ProviderStatusInfo,
    RoutePoint,
    SourcedWeatherData,
    WeatherSourcePreferences,
)
from services.routecast.weather.providers.base import WeatherProvider

logger = logging.getLogger(__name__)

DEFAULT_WEATHER_TTL_SECONDS = 30 * 60


class NoWeatherDataError(RuntimeError):
    """No provider returned data for a coordinate."""

    def __init__(self, lat: float, lon: float, attempted: Sequence[ProviderId] = ()) -> None:
        self.lat = lat
        self.lon = lon
        self.attempted = list(attempted)
        super().__init__(f"No weather data available for {lat:.4f},{lon:.4f}")


class WeatherSourceManager:
    """
    Usage:
        manager = WeatherSourceManager(providers, cache, preferences)
        data = await manager.fetch_multi_source_data(51.5, -0.12)
        forecast = await manager.fetch_multi_source_forecast(route_point)
    """

    def __init__(
        self,
        providers: Mapping[ProviderId, WeatherProvider],
        cache: CacheBackend,
        preferences: WeatherSourcePreferences | None = None,
        weather_ttl: int = DEFAULT_WEATHER_TTL_SECONDS,
    ) -> None:
        """
        Args:
            providers:   Adapters keyed by id, in configured provider order.
            cache:       Any CacheBackend (Redis or in-memory).
            preferences: Default source selection for calls that pass none.
            weather_ttl: Seconds a per-coordinate aggregation stays cached.
        """
        self._providers = dict(providers)
        self._cache = cache
        self._preferences = preferences or WeatherSourcePreferences()
        self._weather_ttl = weather_ttl
        self._statuses: dict[ProviderId, ProviderStatusInfo] = {}

    @property
    def preferences(self) -> WeatherSourcePreferences:
        return self._preferences

    def set_preferences(self, preferences: WeatherSourcePreferences) -> None:
        self._preferences = preferences

    # ------------------------------------------------------------------
    # Provider selection
    # ------------------------------------------------------------------

    def _ordered(self, ids: Iterable[ProviderId]) -> list[ProviderId]:
        """Deduplicate ``ids`` and keep only registered, configured providers, in registry order."""
        wanted = {ProviderId(i) for i in ids}
        return [
            pid for pid, provider in self._providers.items()
            if pid in wanted and provider.is_configured()
        ]

    def available_providers(self) -> list[ProviderId]:
        return [pid for pid, provider in self._providers.items() if provider.is_configured()]

    def _candidates(
        self,
        provider_ids: Sequence[ProviderId] | None,
        prefs: WeatherSourcePreferences,
    ) -> list[ProviderId]:
        if provider_ids:
            return self._ordered(provider_ids)
        return self._ordered(prefs.enabled_sources)

    @staticmethod
    def source_selection(
        provider_ids: Sequence[ProviderId] | None,
        prefs: WeatherSourcePreferences,
    ) -> str:
        """How sources are picked from the candidates; part of every cache key."""
        if prefs.comparison_mode == ComparisonMode.SINGLE and not provider_ids:
            fallback = "+fallback" if prefs.auto_fallback else ""
            return f"single={prefs.primary_source.value}{fallback}"
        return "all"

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def _fetch_one(self, provider_id: ProviderId, lat: float, lon: float) -> SourcedWeatherData | None:
        provider = self._providers[provider_id]
        if not provider.budget.try_acquire():
            logger.info("Skipping %s for %.4f,%.4f: request budget exhausted", provider_id.value, lat, lon)
            return None
        return await provider.fetch(lat, lon)

    async def _fan_out(
        self,
        provider_ids: Sequence[ProviderId],
        lat: float,
        lon: float,
    ) -> list[SourcedWeatherData]:
        if not provider_ids:
            return []

        results = await asyncio.gather(
            *(self._fetch_one(pid, lat, lon) for pid in provider_ids),
            return_exceptions=True,
        )

        sources: list[SourcedWeatherData] = []
        for pid, result in zip(provider_ids, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(
                    "Provider %s failed for %.4f,%.4f: %s", pid.value, lat, lon, result,
                )
                continue
            if result is not None:
                sources.append(result)
        return sources

    async def fetch_multi_source_data(
        self,
        lat: float,
        lon: float,
        provider_ids: Sequence[ProviderId] | None = None,
        preferences: WeatherSourcePreferences | None = None,
    ) -> MultiSourceWeatherData:
        """
        Aggregate every available provider's current weather for one coordinate.

        Raises:
            NoWeatherDataError: when no provider produced data.
        """
        prefs = preferences or self._preferences
        candidates = self._candidates(provider_ids, prefs)

        cache_key = weather_cache_key(lat, lon, candidates, self.source_selection(provider_ids, prefs))
        cached = await self._cache.get(cache_key)
        if cached is not None:
            try:
                return MultiSourceWeatherData.model_validate(cached)
            except ValueError:
                logger.warning("Discarding unreadable cache entry key=%s", cache_key, exc_info=True)

        if prefs.comparison_mode == ComparisonMode.SINGLE and not provider_ids:
            primary = [pid for pid in candidates if pid == prefs.primary_source] or candidates[:1]
            sources = await self._fan_out(primary, lat, lon)
            if not sources and prefs.auto_fallback:
                rest = [pid for pid in candidates if pid not in primary]
                if rest:
                    logger.info(
                        "Primary source %s gave no data for %.4f,%.4f; falling back to %s",
                        primary[0].value if primary else "-", lat, lon, [p.value for p in rest],
                    )
                sources = await self._fan_out(rest, lat, lon)
        else:
            sources = await self._fan_out(candidates, lat, lon)

        if not sources:
            raise NoWeatherDataError(lat, lon, candidates)

        data = MultiSourceWeatherData(
            lat=lat,
            lon=lon,
            timestamp=datetime.now(timezone.utc),
            sources=sources,
            consensus=calculate_consensus(sources) if len(sources) >= 2 else None,
        )

        await self._cache.set(cache_key, data.model_dump(mode="json"), self._weather_ttl)
        return data

    async def fetch_multi_source_forecast(
        self,
        route_point: RoutePoint,
        provider_ids: Sequence[ProviderId] | None = None,
        preferences: WeatherSourcePreferences | None = None,
    ) -> MultiSourceWeatherForecast:
        prefs = preferences or self._preferences
        data = await self.fetch_multi_source_data(
            route_point.lat, route_point.lon, provider_ids=provider_ids, preferences=prefs,
        )

        primary = next(
            (s for s in data.sources if s.source == prefs.primary_source),
            data.sources[0],
        )

        return MultiSourceWeatherForecast(
            route_point=route_point,
            multi_source_data=data,
            primary_weather=primary,
            alerts=generate_weather_alerts(primary),
            source_comparison=calculate_comparison(data.sources),
        )

    # ------------------------------------------------------------------
    # Status and health
    # ------------------------------------------------------------------

    def get_provider_status(self, provider_id: ProviderId) -> ProviderStatusInfo:
        provider_id = ProviderId(provider_id)
        known = self._statuses.get(provider_id)
        if known is not None:
            return known
        return ProviderStatusInfo(
            provider_id=provider_id,
            status=ProviderStatus.UNKNOWN,
            last_checked=datetime.now(timezone.utc),
            error_message=None if provider_id in self._providers else "Provider not registered",
        )

    def all_statuses(self) -> list[ProviderStatusInfo]:
        return [self.get_provider_status(pid) for pid in self._providers]

    async def check_provider_health(self, provider_id: ProviderId) -> ProviderStatusInfo:
        provider_id = ProviderId(provider_id)
        provider = self._providers.get(provider_id)
        if provider is None:
            status = ProviderStatusInfo(
                provider_id=provider_id,
                status=ProviderStatus.UNAVAILABLE,
                last_checked=datetime.now(timezone.utc),
                error_message="Provider not registered",
            )
        elif not provider.is_configured():
            status = ProviderStatusInfo(
                provider_id=provider_id,
                status=ProviderStatus.UNAVAILABLE,
                last_checked=datetime.now(timezone.utc),
                error_message="API key not configured",
            )
        else:
            status = await provider.check_health()

        self._statuses[provider_id] = status
        return status

    async def check_all_providers_health(self) -> list[ProviderStatusInfo]:
        ids = list(self._providers)
        results = await asyncio.gather(
            *(self.check_provider_health(pid) for pid in ids),
            return_exceptions=True,
        )

        statuses: list[ProviderStatusInfo] = []
        for pid, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.warning("Health check for %s raised: %s", pid.value, result)
                result = ProviderStatusInfo(
                    provider_id=pid,
                    status=ProviderStatus.UNAVAILABLE,
                    last_checked=datetime.now(timezone.utc),
                    error_message=str(result) or result.__class__.__name__,
                )
                self._statuses[pid] = result
            statuses.append(result)
        return statuses

    def rate_limit_states(self) -> dict[ProviderId, ProviderRateLimitState]:
        return {pid: provider.budget.snapshot() for pid, provider in self._providers.items()}

    async def clear_cache(self) -> None:
        await self._cache.flush_pattern(f"{WEATHER_PREFIX}*")
        logger.info("Weather cache cleared")
