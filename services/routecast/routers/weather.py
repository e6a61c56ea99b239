"""
Weather endpoints.

GET  /weather/providers                 registry, configured flag, budget state
GET  /weather/providers/status?refresh= last known health (re-probed on refresh)
POST /weather/multi-source              per-point forecasts for a route

The multi-source route takes either ``points`` (stored as route geometry and
answered with its ``routeId``) or a previously returned ``routeId``. Routes
longer than MAX_ROUTE_POINTS are truncated, not rejected.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field, model_validator

from services.routecast.weather.manager import NoWeatherDataError
from services.routecast.weather.models import (
    PROVIDER_CONFIGS,
    ComparisonMode,
    ProviderId,
    RoutePoint,
    RouteSettings,
)

router = APIRouter(prefix="/weather", tags=["weather"])

DEFAULT_AVERAGE_SPEED_KMH = 15.0
DEFAULT_FORECAST_INTERVAL_KM = 5.0


class RoutePointIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    elevation: Optional[float] = None
    distance: float = Field(default=0.0, ge=0)
    estimatedTime: Optional[datetime] = None

    def to_route_point(self) -> RoutePoint:
        return RoutePoint(
            lat=self.lat,
            lon=self.lon,
            elevation=self.elevation,
            distance=self.distance,
            estimated_time=self.estimatedTime,
        )


class RouteSettingsIn(BaseModel):
    startTime: Optional[datetime] = None
    averageSpeed: float = Field(default=DEFAULT_AVERAGE_SPEED_KMH, gt=0, le=200)
    forecastInterval: float = Field(default=DEFAULT_FORECAST_INTERVAL_KM, gt=0, le=50)
    units: Literal["metric", "imperial"] = "metric"

    def to_route_settings(self) -> RouteSettings:
        return RouteSettings(
            start_time=self.startTime or datetime.now(timezone.utc),
            average_speed=self.averageSpeed,
            forecast_interval=self.forecastInterval,
            units=self.units,
        )


class PreferencesIn(BaseModel):
    primarySource: Optional[ProviderId] = None
    enabledSources: Optional[list[ProviderId]] = Field(default=None, min_length=1)
    comparisonMode: Optional[ComparisonMode] = None
    autoFallback: Optional[bool] = None

    def changes(self) -> dict:
        mapping = {
            "primary_source": self.primarySource,
            "enabled_sources": self.enabledSources,
            "comparison_mode": self.comparisonMode,
            "auto_fallback": self.autoFallback,
        }
        return {k: v for k, v in mapping.items() if v is not None}


class MultiSourceRequest(BaseModel):
    points: Optional[list[RoutePointIn]] = None
    routeId: Optional[str] = Field(default=None, min_length=1, max_length=128)
    settings: RouteSettingsIn = Field(default_factory=RouteSettingsIn)
    sources: Optional[list[ProviderId]] = None
    preferences: Optional[PreferencesIn] = None

    @model_validator(mode="after")
    def _route_given(self) -> MultiSourceRequest:
        if self.points is None and self.routeId is None:
            raise ValueError("Either points or routeId is required")
        if self.points is not None and len(self.points) < 2:
            raise ValueError("A route needs at least 2 points")
        return self


# -- Providers --

@router.get("/providers")
async def list_providers(request: Request) -> dict:
    manager = request.app.state.weather_manager
    available = set(manager.available_providers())
    budgets = manager.rate_limit_states()

    providers = []
    for pid, config in PROVIDER_CONFIGS.items():
        entry = {
            "id": pid.value,
            "name": config.name,
            "description": config.description,
            "apiKeyRequired": config.api_key_required,
            "configured": pid in available,
            "limits": {
                "requestsPerMinute": config.requests_per_minute,
                "requestsPerDay": config.requests_per_day,
            },
        }
        if pid in budgets:
            entry["usage"] = budgets[pid].model_dump(mode="json")
        providers.append(entry)

    return {
        "success": True,
        "data": {
            "providers": providers,
            "preferences": manager.preferences.model_dump(mode="json"),
        },
        "requestId": request.state.request_id,
    }


@router.get("/providers/status")
async def provider_status(
    request: Request,
    refresh: bool = Query(False, description="Re-probe every provider before answering"),
) -> dict:
    manager = request.app.state.weather_manager
    statuses = await manager.check_all_providers_health() if refresh else manager.all_statuses()
    return {
        "success": True,
        "data": {"statuses": [s.model_dump(mode="json") for s in statuses]},
        "requestId": request.state.request_id,
    }


# -- Forecasts --

@router.post("/multi-source")
async def multi_source_forecast(request: Request, body: MultiSourceRequest) -> dict:
    state = request.app.state
    manager = state.weather_manager
    orchestrator = state.batch_orchestrator
    route_cache = state.route_cache
    max_points = state.settings.max_route_points

    if body.points is not None:
        points = [p.to_route_point() for p in body.points]
        route_id = await route_cache.store_route(points)
    else:
        loaded = await route_cache.load_route(body.routeId)
        if loaded is None:
            raise HTTPException(status_code=404, detail=f"Route {body.routeId} not found or expired")
        points, route_id = loaded, body.routeId

    points = points[:max_points]

    preferences = manager.preferences
    if body.preferences is not None:
        try:
            preferences = preferences.updated(**body.preferences.changes())
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    available = manager.available_providers()
    sources = [s for s in body.sources if s in available] if body.sources else None
    if body.sources and not sources:
        raise HTTPException(status_code=422, detail="None of the requested sources are configured")

    result = await orchestrator.fetch_route_forecasts(
        points,
        body.settings.to_route_settings(),
        provider_ids=sources,
        preferences=preferences,
    )
    if not result.forecasts:
        raise NoWeatherDataError(points[0].lat, points[0].lon, result.providers)

    if preferences.comparison_mode == ComparisonMode.SINGLE and not sources:
        forecasts = [f.to_weather_forecast().model_dump(mode="json") for f in result.forecasts]
    else:
        forecasts = [f.model_dump(mode="json") for f in result.forecasts]

    return {
        "success": True,
        "data": {
            "forecasts": forecasts,
            "routeId": route_id,
            "availableProviders": [p.value for p in available],
            "usedProviders": [p.value for p in result.used_providers],
            "pointCount": len(points),
            "failedPoints": result.failed_points,
            "cacheHit": result.cache_hit,
            "fetchDurationMs": round(result.fetch_duration_ms, 1),
        },
        "requestId": request.state.request_id,
    }
