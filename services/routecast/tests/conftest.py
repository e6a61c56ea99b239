"""
Shared fixtures for the routecast test suite.

Provides:
- FakeProvider: scripted stand-in for a weather adapter (no network)
- make_weather(): factory for SourcedWeatherData records
- an app wired with fake providers, in-memory cache and limiters
- async HTTP client bound to that app
"""

import os
from datetime import datetime, timezone
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure test env vars before any app imports
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SENTRY_DSN", "")

from services.routecast.weather.budget import ProviderBudget  # noqa: E402
from services.routecast.weather.models import (  # noqa: E402
    PROVIDER_CONFIGS,
    ProviderId,
    ProviderStatus,
    ProviderStatusInfo,
    SourcedWeatherData,
    WeatherCondition,
)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def make_weather(source: ProviderId = ProviderId.OPEN_METEO, **overrides: Any) -> SourcedWeatherData:
    now = datetime.now(timezone.utc)
    base = {
        "lat": 51.5074,
        "lon": -0.1278,
        "dt": now,
        "temp": 15.0,
        "feels_like": 14.0,
        "humidity": 60.0,
        "pressure": 1013.0,
        "dew_point": 7.3,
        "clouds": 20.0,
        "visibility": 10_000.0,
        "wind_speed": 3.0,
        "wind_deg": 180.0,
        "uvi": 1.0,
        "condition": WeatherCondition(id=800, main="Clear", description="clear sky", icon="01d"),
        "source": source,
        "fetched_at": now,
    }
    base.update(overrides)
    return SourcedWeatherData(**base)


class FakeProvider:
    """
    Weather provider double.

    ``result`` may be a SourcedWeatherData, None, an exception instance
    (raised on fetch), or a callable (lat, lon) -> any of those.
    """

    def __init__(
        self,
        provider_id: ProviderId,
        result: Any = None,
        configured: bool = True,
        per_minute: int = 1000,
        per_day: int = 100_000,
    ) -> None:
        self.id = provider_id
        self.result = result
        self.configured = configured
        self.calls: list[tuple[float, float]] = []
        self._budget = ProviderBudget(provider_id, per_minute=per_minute, per_day=per_day)

    @property
    def config(self):
        return PROVIDER_CONFIGS[self.id]

    @property
    def budget(self) -> ProviderBudget:
        return self._budget

    def get_name(self) -> str:
        return self.config.name

    def is_configured(self) -> bool:
        return self.configured

    async def fetch(self, lat: float, lon: float) -> SourcedWeatherData | None:
        self.calls.append((lat, lon))
        result = self.result(lat, lon) if callable(self.result) else self.result
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, SourcedWeatherData):
            return result.model_copy(update={"lat": lat, "lon": lon})
        return result

    async def check_health(self) -> ProviderStatusInfo:
        try:
            result = await self.fetch(51.5074, -0.1278)
        except Exception as exc:
            return ProviderStatusInfo(
                provider_id=self.id,
                status=ProviderStatus.UNAVAILABLE,
                last_checked=datetime.now(timezone.utc),
                error_message=str(exc),
            )
        return ProviderStatusInfo(
            provider_id=self.id,
            status=ProviderStatus.AVAILABLE if result is not None else ProviderStatus.DEGRADED,
            last_checked=datetime.now(timezone.utc),
            response_time_ms=1.0,
        )


# ---------------------------------------------------------------------------
# App + client
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_providers() -> dict[ProviderId, FakeProvider]:
    return {
        ProviderId.OPEN_METEO: FakeProvider(
            ProviderId.OPEN_METEO, make_weather(ProviderId.OPEN_METEO, temp=18.0),
        ),
        ProviderId.WEATHERAPI: FakeProvider(
            ProviderId.WEATHERAPI, make_weather(ProviderId.WEATHERAPI, temp=22.0),
        ),
        ProviderId.VISUAL_CROSSING: FakeProvider(ProviderId.VISUAL_CROSSING, configured=False),
        ProviderId.OPENWEATHERMAP: FakeProvider(ProviderId.OPENWEATHERMAP, configured=False),
    }


@pytest.fixture
async def app(fake_providers):
    """The FastAPI app with its lifespan-built state replaced by in-process doubles."""
    from services.routecast.config import settings
    from services.routecast.main import app as _app
    from services.routecast.main import default_preferences
    from services.routecast.middleware.rate_limit import build_named_limiters
    from services.routecast.weather.batch import BatchForecastOrchestrator
    from services.routecast.weather.cache import MemoryCache, RouteCache
    from services.routecast.weather.manager import WeatherSourceManager

    cache = MemoryCache()
    route_cache = RouteCache(cache, forecast_ttl=3600, route_ttl=86400)
    manager = WeatherSourceManager(fake_providers, cache, preferences=default_preferences(settings))

    _app.state.redis = None
    _app.state.settings = settings
    _app.state.weather_cache = cache
    _app.state.route_cache = route_cache
    _app.state.weather_manager = manager
    _app.state.batch_orchestrator = BatchForecastOrchestrator(
        manager, batch_size=5, stagger_ms=0, inter_batch_delay_ms=0, route_cache=route_cache,
    )
    _app.state.rate_limiters = build_named_limiters(settings)
    return _app


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
