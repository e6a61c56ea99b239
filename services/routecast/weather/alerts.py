"""
Threshold-based weather alerts for a single weather record.

Each rule family (wind, temperature, precipitation, visibility) is evaluated
independently; any subset may fire. Within a family only the most severe
matching band is reported.
"""

from __future__ import annotations

from services.routecast.weather.models import SourcedWeatherData, WeatherAlert

WIND_HIGH_MS = 10.0
WIND_EXTREME_MS = 17.0

TEMP_FREEZING_C = 0.0
TEMP_HOT_C = 30.0
TEMP_EXTREME_HOT_C = 40.0
TEMP_EXTREME_COLD_C = -10.0

PRECIP_HEAVY_MMH = 10.0
PRECIP_EXTREME_MMH = 50.0

VISIBILITY_POOR_M = 1000.0
VISIBILITY_VERY_POOR_M = 200.0


def _wind_alert(weather: SourcedWeatherData) -> WeatherAlert | None:
    speed = weather.wind_speed
    if speed >= WIND_EXTREME_MS:
        return WeatherAlert(
            type="wind",
            severity="extreme",
            title="Extreme Wind Warning",
            description=f"Very strong winds of {round(speed)} m/s. Outdoor activities not recommended.",
        )
    if speed >= WIND_HIGH_MS:
        return WeatherAlert(
            type="wind",
            severity="high",
            title="High Wind Advisory",
            description=f"Strong winds of {round(speed)} m/s. Exercise caution.",
        )
    return None


def _temperature_alert(weather: SourcedWeatherData) -> WeatherAlert | None:
    temp = weather.temp
    if temp >= TEMP_EXTREME_HOT_C:
        return WeatherAlert(
            type="temperature",
            severity="extreme",
            title="Extreme Heat Warning",
            description=f"Dangerous heat of {round(temp)}°C. Risk of heat exhaustion.",
        )
    if temp >= TEMP_HOT_C:
        return WeatherAlert(
            type="temperature",
            severity="medium",
            title="Hot Weather Advisory",
            description=f"High temperature of {round(temp)}°C. Stay hydrated.",
        )
    if temp <= TEMP_EXTREME_COLD_C:
        return WeatherAlert(
            type="temperature",
            severity="extreme",
            title="Extreme Cold Warning",
            description=f"Dangerous cold of {round(temp)}°C. Risk of hypothermia.",
        )
    if temp <= TEMP_FREEZING_C:
        return WeatherAlert(
            type="temperature",
            severity="medium",
            title="Freezing Temperature",
            description=f"Temperature at or below freezing ({round(temp)}°C). Watch for ice.",
        )
    return None


def _precipitation_alert(weather: SourcedWeatherData) -> WeatherAlert | None:
    amount = weather.precipitation
    kind = "snow" if (weather.snow_1h or 0) > (weather.rain_1h or 0) else "rain"
    if amount >= PRECIP_EXTREME_MMH:
        return WeatherAlert(
            type="precipitation",
            severity="extreme",
            title="Extreme Precipitation Warning",
            description=f"Very heavy {kind} of {amount:.1f}mm/h.",
        )
    if amount >= PRECIP_HEAVY_MMH:
        return WeatherAlert(
            type="precipitation",
            severity="high",
            title="Heavy Precipitation Alert",
            description=f"Heavy {kind} of {amount:.1f}mm/h.",
        )
    return None


def _visibility_alert(weather: SourcedWeatherData) -> WeatherAlert | None:
    visibility = weather.visibility
    if visibility <= VISIBILITY_VERY_POOR_M:
        return WeatherAlert(
            type="visibility",
            severity="high",
            title="Very Poor Visibility",
            description=f"Visibility reduced to {visibility:.0f}m. Exercise extreme caution.",
        )
    if visibility <= VISIBILITY_POOR_M:
        return WeatherAlert(
            type="visibility",
            severity="medium",
            title="Poor Visibility",
            description=f"Reduced visibility of {visibility:.0f}m.",
        )
    return None


_RULES = (_wind_alert, _temperature_alert, _precipitation_alert, _visibility_alert)


def generate_weather_alerts(weather: SourcedWeatherData) -> list[WeatherAlert]:
    return [alert for rule in _RULES if (alert := rule(weather)) is not None]
