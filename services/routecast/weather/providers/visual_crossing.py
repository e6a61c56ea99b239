"""
Visual Crossing adapter — requires VISUAL_CROSSING_API_KEY.

Endpoint: GET {base_url}/{lat},{lon}/today?unitGroup=metric&include=current&key

Metric unit group still reports wind in km/h and visibility in km.
Dew point is supplied natively.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from services.routecast.weather.models import ProviderId, SourcedWeatherData, WeatherCondition
from services.routecast.weather.providers.base import BaseWeatherProvider, kmh_to_ms

# Ordered: first keyword match wins
_CONDITION_RULES: list[tuple[tuple[str, ...], str, int]] = [
    (("thunder",), "Thunderstorm", 200),
    (("snow",), "Snow", 600),
    (("rain",), "Rain", 500),
    (("drizzle",), "Drizzle", 300),
    (("fog", "mist"), "Fog", 741),
    (("cloud", "overcast"), "Clouds", 803),
]

_ICONS = {
    "clear-day": "01d",
    "clear-night": "01n",
    "partly-cloudy-day": "02d",
    "partly-cloudy-night": "02n",
    "cloudy": "04d",
    "rain": "10d",
    "showers-day": "09d",
    "showers-night": "09n",
    "snow": "13d",
    "snow-showers-day": "13d",
    "snow-showers-night": "13n",
    "thunder": "11d",
    "thunder-rain": "11d",
    "thunder-showers-day": "11d",
    "fog": "50d",
    "wind": "50d",
}


def classify_conditions(conditions: str) -> tuple[str, int]:
    lowered = conditions.lower()
    for keywords, main, code in _CONDITION_RULES:
        if any(word in lowered for word in keywords):
            return main, code
    return "Clear", 800


class VisualCrossingProvider(BaseWeatherProvider):
    id = ProviderId.VISUAL_CROSSING

    async def _fetch(self, lat: float, lon: float) -> SourcedWeatherData | None:
        params = {
            "unitGroup": "metric",
            "key": self._api_key,
            "include": "current",
            "contentType": "json",
        }
        payload = await self._get_json(f"{self.config.base_url}/{lat},{lon}/today", params)
        return self._transform(payload, lat, lon)

    def _transform(self, payload: dict[str, Any], lat: float, lon: float) -> SourcedWeatherData | None:
        current = payload.get("currentConditions")
        if not current:
            return None

        conditions = current.get("conditions") or "Unknown"
        main, code = classify_conditions(conditions)
        temp = float(current["temp"])
        precip = float(current.get("precip") or 0.0)
        snow = float(current.get("snow") or 0.0)
        gust = current.get("windgust")

        return self._sourced(
            lat=lat,
            lon=lon,
            dt=datetime.fromtimestamp(int(current["datetimeEpoch"]), tz=timezone.utc),
            temp=temp,
            feels_like=float(current.get("feelslike", temp)),
            humidity=float(current["humidity"]),
            pressure=float(current["pressure"]),
            dew_point=float(current["dew"]),
            clouds=float(current.get("cloudcover") or 0.0),
            visibility=float(current.get("visibility") or 10) * 1000,
            wind_speed=kmh_to_ms(float(current["windspeed"])),
            wind_deg=float(current.get("winddir") or 0.0),
            wind_gust=kmh_to_ms(float(gust)) if gust else None,
            uvi=float(current.get("uvindex") or 0.0),
            rain_1h=precip if precip > 0 else None,
            snow_1h=snow if snow > 0 else None,
            condition=WeatherCondition(
                id=code,
                main=main,
                description=conditions,
                icon=_ICONS.get(current.get("icon", ""), "01d"),
            ),
        )
