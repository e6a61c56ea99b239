"""
Weather provider adapters.

One module per external service; ``create_provider`` maps a ProviderId to a
constructed adapter sharing the caller's HTTP client.
"""

from __future__ import annotations

import httpx

from services.routecast.weather.models import ProviderId
from services.routecast.weather.providers.base import (
    BaseWeatherProvider,
    ProviderAuthError,
    ProviderError,
    ProviderQuotaError,
    WeatherProvider,
    calculate_dew_point,
)
from services.routecast.weather.providers.open_meteo import OpenMeteoProvider
from services.routecast.weather.providers.openweathermap import OpenWeatherMapProvider
from services.routecast.weather.providers.visual_crossing import VisualCrossingProvider
from services.routecast.weather.providers.weatherapi import WeatherAPIProvider

_PROVIDER_CLASSES: dict[ProviderId, type[BaseWeatherProvider]] = {
    ProviderId.OPEN_METEO: OpenMeteoProvider,
    ProviderId.WEATHERAPI: WeatherAPIProvider,
    ProviderId.VISUAL_CROSSING: VisualCrossingProvider,
    ProviderId.OPENWEATHERMAP: OpenWeatherMapProvider,
}


def create_provider(
    provider_id: ProviderId | str,
    client: httpx.AsyncClient,
    api_key: str | None = None,
) -> BaseWeatherProvider:
    return _PROVIDER_CLASSES[ProviderId(provider_id)](client, api_key=api_key)


def create_providers(
    client: httpx.AsyncClient,
    api_keys: dict[ProviderId, str],
) -> dict[ProviderId, BaseWeatherProvider]:
    """Build every known adapter in registry order. Unkeyed ones report is_configured() False."""
    return {
        provider_id: create_provider(provider_id, client, api_keys.get(provider_id))
        for provider_id in _PROVIDER_CLASSES
    }


__all__ = [
    "BaseWeatherProvider",
    "OpenMeteoProvider",
    "OpenWeatherMapProvider",
    "ProviderAuthError",
    "ProviderError",
    "ProviderQuotaError",
    "VisualCrossingProvider",
    "WeatherAPIProvider",
    "WeatherProvider",
    "calculate_dew_point",
    "create_provider",
    "create_providers",
]
