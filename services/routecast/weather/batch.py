"""
Batch forecast orchestration for whole routes.

Points are processed in fixed-size batches:
  - points inside a batch run concurrently
  - within a batch, sub-groups of ``stagger_group_size`` points start
    ``stagger_ms`` apart to spread provider load
  - batches run sequentially with ``inter_batch_delay_ms`` between them
    (never after the last one)

A point whose aggregation fails is dropped and its coordinates are logged;
the remaining forecasts keep the input order. Progress is reported as
(processed, total) after each batch.

Whole-route results are cached as one bundle (see RouteCache) keyed by the
semantic hash of points, settings, provider set and source selection.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Sequence, Union

from services.routecast.weather.cache import RouteCache, route_forecast_cache_key
from services.routecast.weather.manager import WeatherSourceManager
from services.routecast.weather.models import (
    MultiSourceWeatherForecast,
    ProviderId,
    RoutePoint,
    RouteSettings,
    WeatherSourcePreferences,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Union[None, Awaitable[None]]]


@dataclass
class RouteForecastResult:
    forecasts: list[MultiSourceWeatherForecast]
    providers: list[ProviderId]
    cache_hit: bool
    fetch_duration_ms: float
    failed_points: int = 0
    used_providers: list[ProviderId] = field(default_factory=list)


def estimate_arrival_times(points: Sequence[RoutePoint], settings: RouteSettings) -> list[RoutePoint]:
    """Fill ``estimated_time`` as start + distance / speed where it is missing."""
    estimated = []
    for point in points:
        if point.estimated_time is None:
            hours = point.distance / settings.average_speed
            point = point.model_copy(update={"estimated_time": settings.start_time + timedelta(hours=hours)})
        estimated.append(point)
    return estimated


def used_providers(
    forecasts: Sequence[MultiSourceWeatherForecast],
    candidates: Sequence[ProviderId],
) -> list[ProviderId]:
    """Providers that answered for at least one point, in candidate order."""
    seen = {s.source for f in forecasts for s in f.multi_source_data.sources}
    return [pid for pid in candidates if pid in seen]


class BatchForecastOrchestrator:
    def __init__(
        self,
        manager: WeatherSourceManager,
        batch_size: int = 5,
        stagger_group_size: int = 2,
        stagger_ms: int = 25,
        inter_batch_delay_ms: int = 100,
        route_cache: RouteCache | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if stagger_group_size < 1:
            raise ValueError("stagger_group_size must be at least 1")
        self._manager = manager
        self.batch_size = batch_size
        self.stagger_group_size = stagger_group_size
        self.stagger_ms = stagger_ms
        self.inter_batch_delay_ms = inter_batch_delay_ms
        self._route_cache = route_cache

    async def _staggered(
        self,
        index_in_batch: int,
        point: RoutePoint,
        provider_ids: Sequence[ProviderId] | None,
        preferences: WeatherSourcePreferences | None,
    ) -> MultiSourceWeatherForecast:
        delay_ms = (index_in_batch // self.stagger_group_size) * self.stagger_ms
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)
        return await self._manager.fetch_multi_source_forecast(
            point, provider_ids=provider_ids, preferences=preferences,
        )

    async def fetch_multi_source_forecasts(
        self,
        route_points: Sequence[RoutePoint],
        provider_ids: Sequence[ProviderId] | None = None,
        on_progress: ProgressCallback | None = None,
        preferences: WeatherSourcePreferences | None = None,
    ) -> list[MultiSourceWeatherForecast]:
        total = len(route_points)
        forecasts: list[MultiSourceWeatherForecast] = []
        processed = 0

        for start in range(0, total, self.batch_size):
            batch = route_points[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self._staggered(i, point, provider_ids, preferences) for i, point in enumerate(batch)),
                return_exceptions=True,
            )

            for point, result in zip(batch, results):
                if isinstance(result, BaseException):
                    if isinstance(result, asyncio.CancelledError):
                        raise result
                    logger.warning(
                        "Forecast failed for point %.4f,%.4f: %s", point.lat, point.lon, result,
                    )
                    continue
                forecasts.append(result)

            processed += len(batch)
            if on_progress is not None:
                outcome = on_progress(processed, total)
                if inspect.isawaitable(outcome):
                    await outcome

            if processed < total and self.inter_batch_delay_ms > 0:
                await asyncio.sleep(self.inter_batch_delay_ms / 1000)

        if len(forecasts) < total:
            logger.info("Route forecast: %d of %d points succeeded", len(forecasts), total)
        return forecasts

    async def fetch_route_forecasts(
        self,
        route_points: Sequence[RoutePoint],
        settings: RouteSettings,
        provider_ids: Sequence[ProviderId] | None = None,
        preferences: WeatherSourcePreferences | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> RouteForecastResult:
        """Forecast a whole route, serving the bundle from cache when possible."""
        started = time.perf_counter()
        prefs = preferences or self._manager.preferences
        providers = list(provider_ids) if provider_ids else [
            pid for pid in self._manager.available_providers() if pid in prefs.enabled_sources
        ]
        points = estimate_arrival_times(route_points, settings)
        # primary_weather is baked into every bundled forecast
        selection = self._manager.source_selection(provider_ids, prefs)
        selection = f"{selection}|primary={prefs.primary_source.value}"

        cache_key = None
        if self._route_cache is not None:
            cache_key = route_forecast_cache_key(points, settings, providers, selection)
            cached = await self._route_cache.get_forecasts(cache_key)
            if cached is not None:
                logger.debug("Route forecast cache hit key=%s", cache_key)
                return RouteForecastResult(
                    forecasts=cached,
                    providers=providers,
                    cache_hit=True,
                    fetch_duration_ms=(time.perf_counter() - started) * 1000,
                    used_providers=used_providers(cached, providers),
                )

        forecasts = await self.fetch_multi_source_forecasts(
            points, provider_ids=provider_ids, on_progress=on_progress, preferences=prefs,
        )

        if self._route_cache is not None and cache_key is not None and forecasts:
            await self._route_cache.set_forecasts(cache_key, forecasts)

        return RouteForecastResult(
            forecasts=forecasts,
            providers=providers,
            cache_hit=False,
            fetch_duration_ms=(time.perf_counter() - started) * 1000,
            failed_points=len(points) - len(forecasts),
            used_providers=used_providers(forecasts, providers),
        )
