"""
Open-Meteo adapter — free, no API key.

Endpoint: GET {base_url}/forecast?latitude&longitude&current=...&wind_speed_unit=ms

Open-Meteo does not report visibility on the current block, so 10 km is
assumed. Dew point is derived from temperature and relative humidity.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from services.routecast.weather.models import ProviderId, SourcedWeatherData, WeatherCondition
from services.routecast.weather.providers.base import BaseWeatherProvider, calculate_dew_point

_CURRENT_VARS = [
    "temperature_2m",
    "relative_humidity_2m",
    "apparent_temperature",
    "precipitation",
    "rain",
    "snowfall",
    "weather_code",
    "cloud_cover",
    "pressure_msl",
    "wind_speed_10m",
    "wind_direction_10m",
    "wind_gusts_10m",
    "uv_index",
]

_DEFAULT_VISIBILITY_M = 10_000.0

# WMO weather interpretation codes -> (main, description, icon)
WMO_CODES: dict[int, tuple[str, str, str]] = {
    0: ("Clear", "Clear sky", "01d"),
    1: ("Clear", "Mainly clear", "01d"),
    2: ("Clouds", "Partly cloudy", "02d"),
    3: ("Clouds", "Overcast", "04d"),
    45: ("Fog", "Fog", "50d"),
    48: ("Fog", "Depositing rime fog", "50d"),
    51: ("Drizzle", "Light drizzle", "09d"),
    53: ("Drizzle", "Moderate drizzle", "09d"),
    55: ("Drizzle", "Dense drizzle", "09d"),
    56: ("Drizzle", "Light freezing drizzle", "09d"),
    57: ("Drizzle", "Dense freezing drizzle", "09d"),
    61: ("Rain", "Slight rain", "10d"),
    63: ("Rain", "Moderate rain", "10d"),
    65: ("Rain", "Heavy rain", "10d"),
    66: ("Rain", "Light freezing rain", "13d"),
    67: ("Rain", "Heavy freezing rain", "13d"),
    71: ("Snow", "Slight snow", "13d"),
    73: ("Snow", "Moderate snow", "13d"),
    75: ("Snow", "Heavy snow", "13d"),
    77: ("Snow", "Snow grains", "13d"),
    80: ("Rain", "Slight rain showers", "09d"),
    81: ("Rain", "Moderate rain showers", "09d"),
    82: ("Rain", "Violent rain showers", "09d"),
    85: ("Snow", "Slight snow showers", "13d"),
    86: ("Snow", "Heavy snow showers", "13d"),
    95: ("Thunderstorm", "Thunderstorm", "11d"),
    96: ("Thunderstorm", "Thunderstorm with slight hail", "11d"),
    99: ("Thunderstorm", "Thunderstorm with heavy hail", "11d"),
}


def map_weather_code(code: int) -> WeatherCondition:
    main, description, icon = WMO_CODES.get(code, ("Unknown", "Unknown weather", "01d"))
    return WeatherCondition(id=code, main=main, description=description, icon=icon)


def _parse_time(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class OpenMeteoProvider(BaseWeatherProvider):
    id = ProviderId.OPEN_METEO

    async def _fetch(self, lat: float, lon: float) -> SourcedWeatherData | None:
        params = {
            "latitude": lat,
            "longitude": lon,
            "current": ",".join(_CURRENT_VARS),
            "wind_speed_unit": "ms",
            "timezone": "UTC",
        }
        payload = await self._get_json(f"{self.config.base_url}/forecast", params)
        return self._transform(payload, lat, lon)

    def _transform(self, payload: dict[str, Any], lat: float, lon: float) -> SourcedWeatherData | None:
        current = payload.get("current")
        if not current:
            return None

        temp = float(current["temperature_2m"])
        humidity = float(current["relative_humidity_2m"])

        # ``precipitation`` is rain + showers + snowfall; split it when possible.
        precipitation = float(current.get("precipitation") or 0.0)
        snowfall_cm = current.get("snowfall")
        snow_mm = float(snowfall_cm) * 10 if snowfall_cm else 0.0
        rain_mm = max(precipitation - snow_mm, 0.0) if snow_mm else precipitation

        gust = current.get("wind_gusts_10m")
        return self._sourced(
            lat=lat,
            lon=lon,
            dt=_parse_time(current.get("time")),
            temp=temp,
            feels_like=float(current.get("apparent_temperature", temp)),
            humidity=humidity,
            pressure=float(current["pressure_msl"]),
            dew_point=calculate_dew_point(temp, humidity),
            clouds=float(current.get("cloud_cover") or 0.0),
            visibility=_DEFAULT_VISIBILITY_M,
            wind_speed=float(current["wind_speed_10m"]),
            wind_deg=float(current.get("wind_direction_10m") or 0.0),
            wind_gust=float(gust) if gust is not None else None,
            uvi=float(current.get("uv_index") or 0.0),
            rain_1h=rain_mm if rain_mm > 0 else None,
            snow_1h=snow_mm if snow_mm > 0 else None,
            condition=map_weather_code(int(current.get("weather_code", 0))),
        )
