"""
OpenWeatherMap adapter — requires OPENWEATHER_API_KEY.

Endpoint: GET {base_url}/weather?lat&lon&appid&units=metric

With ``units=metric`` the payload already carries °C, m/s, hPa and metres,
and condition codes are OpenWeatherMap's own (2xx storm, 5xx rain, ...).
The current-weather endpoint has no dew point, so it is derived.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from services.routecast.weather.models import ProviderId, SourcedWeatherData, WeatherCondition
from services.routecast.weather.providers.base import BaseWeatherProvider, calculate_dew_point


class OpenWeatherMapProvider(BaseWeatherProvider):
    id = ProviderId.OPENWEATHERMAP

    async def _fetch(self, lat: float, lon: float) -> SourcedWeatherData | None:
        params = {"lat": lat, "lon": lon, "appid": self._api_key, "units": "metric"}
        payload = await self._get_json(f"{self.config.base_url}/weather", params)
        return self._transform(payload, lat, lon)

    def _transform(self, payload: dict[str, Any], lat: float, lon: float) -> SourcedWeatherData | None:
        main = payload.get("main")
        if not main:
            return None

        weather_list = payload.get("weather") or [{}]
        primary = weather_list[0]
        wind = payload.get("wind") or {}
        rain = payload.get("rain") or {}
        snow = payload.get("snow") or {}
        temp = float(main["temp"])
        humidity = float(main["humidity"])
        gust = wind.get("gust")

        return self._sourced(
            lat=lat,
            lon=lon,
            dt=datetime.fromtimestamp(int(payload["dt"]), tz=timezone.utc),
            temp=temp,
            feels_like=float(main.get("feels_like", temp)),
            humidity=humidity,
            pressure=float(main["pressure"]),
            dew_point=calculate_dew_point(temp, humidity),
            clouds=float((payload.get("clouds") or {}).get("all", 0)),
            visibility=float(payload.get("visibility", 10_000)),
            wind_speed=float(wind.get("speed", 0.0)),
            wind_deg=float(wind.get("deg", 0.0)),
            wind_gust=float(gust) if gust is not None else None,
            rain_1h=float(rain["1h"]) if "1h" in rain else None,
            snow_1h=float(snow["1h"]) if "1h" in snow else None,
            condition=WeatherCondition(
                id=int(primary.get("id", 800)),
                main=primary.get("main", "Clear"),
                description=primary.get("description", "clear sky"),
                icon=primary.get("icon", "01d"),
            ),
        )
