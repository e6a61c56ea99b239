"""
WeatherAPI.com adapter — requires WEATHERAPI_KEY.

Endpoint: GET {base_url}/current.json?key&q=lat,lon&aqi=no

Speeds arrive in km/h and visibility in km; both are converted here.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from services.routecast.weather.models import ProviderId, SourcedWeatherData, WeatherCondition
from services.routecast.weather.providers.base import (
    BaseWeatherProvider,
    calculate_dew_point,
    kmh_to_ms,
)


def condition_to_main(text: str) -> str:
    lowered = text.lower()
    if "thunder" in lowered:
        return "Thunderstorm"
    if "snow" in lowered or "blizzard" in lowered or "sleet" in lowered:
        return "Snow"
    if "drizzle" in lowered:
        return "Drizzle"
    if "rain" in lowered:
        return "Rain"
    if "fog" in lowered or "mist" in lowered:
        return "Fog"
    if "cloud" in lowered or "overcast" in lowered:
        return "Clouds"
    return "Clear"


def icon_from_url(icon_url: str) -> str:
    """Map a WeatherAPI icon URL (``//cdn.../day/113.png``) to an icon code."""
    suffix = "n" if "night" in icon_url else "d"
    if "113" in icon_url:
        return f"01{suffix}"
    if "116" in icon_url:
        return f"02{suffix}"
    if "119" in icon_url or "122" in icon_url:
        return f"04{suffix}"
    return f"01{suffix}"


class WeatherAPIProvider(BaseWeatherProvider):
    id = ProviderId.WEATHERAPI

    async def _fetch(self, lat: float, lon: float) -> SourcedWeatherData | None:
        params = {"key": self._api_key, "q": f"{lat},{lon}", "aqi": "no"}
        payload = await self._get_json(f"{self.config.base_url}/current.json", params)
        return self._transform(payload, lat, lon)

    def _transform(self, payload: dict[str, Any], lat: float, lon: float) -> SourcedWeatherData | None:
        current = payload.get("current")
        if not current:
            return None

        temp = float(current["temp_c"])
        humidity = float(current["humidity"])
        condition = current.get("condition") or {}
        text = condition.get("text", "Unknown")
        precip = float(current.get("precip_mm") or 0.0)
        main = condition_to_main(text)
        gust = kmh_to_ms(current.get("gust_kph"))

        return self._sourced(
            lat=lat,
            lon=lon,
            dt=datetime.fromtimestamp(int(current["last_updated_epoch"]), tz=timezone.utc),
            temp=temp,
            feels_like=float(current.get("feelslike_c", temp)),
            humidity=humidity,
            pressure=float(current["pressure_mb"]),
            dew_point=calculate_dew_point(temp, humidity),
            clouds=float(current.get("cloud") or 0.0),
            visibility=float(current.get("vis_km", 10)) * 1000,
            wind_speed=kmh_to_ms(float(current["wind_kph"])),
            wind_deg=float(current.get("wind_degree") or 0.0),
            wind_gust=gust,
            uvi=float(current.get("uv") or 0.0),
            rain_1h=precip if precip > 0 and main != "Snow" else None,
            snow_1h=precip if precip > 0 and main == "Snow" else None,
            condition=WeatherCondition(
                id=int(condition.get("code", 1000)),
                main=main,
                description=text,
                icon=icon_from_url(condition.get("icon", "")),
            ),
        )
