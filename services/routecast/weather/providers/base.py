"""
Provider adapter contract and shared plumbing.

Every adapter turns one provider's current-weather endpoint into a
SourcedWeatherData. Adapters share a single ``httpx.AsyncClient`` whose
timeout bounds every provider call, so one slow provider cannot stall a
consensus round.

Error contract:
  - ``fetch`` returns None only when the provider explicitly reports no data.
  - Network errors, timeouts, non-2xx responses and malformed bodies raise
    ProviderError (or a subclass). The manager catches these per provider.
  - Missing API keys are a configuration state, not an error: is_configured()
    returns False and the manager never calls the adapter.
"""

from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

import httpx

from services.routecast.weather.budget import ProviderBudget
from services.routecast.weather.models import (
    PROVIDER_CONFIGS,
    ProviderConfig,
    ProviderId,
    ProviderStatus,
    ProviderStatusInfo,
    SourcedWeatherData,
)

logger = logging.getLogger(__name__)

# London, covered by every provider
HEALTH_CHECK_LAT = 51.5074
HEALTH_CHECK_LON = -0.1278

_MAGNUS_A = 17.27
_MAGNUS_B = 237.7


class ProviderError(RuntimeError):
    """A provider request failed (network, HTTP status, or body shape)."""


class ProviderAuthError(ProviderError):
    """Provider rejected the API key."""


class ProviderQuotaError(ProviderError):
    """Provider reported its own quota as exhausted."""


def calculate_dew_point(temp: float, humidity: float) -> float:
    """Magnus approximation of dew point in °C.

    Relative humidity of zero has no logarithm; fall back to the coarse
    linear approximation in that case.
    """
    if humidity <= 0:
        return temp - (100 - humidity) / 5
    alpha = (_MAGNUS_A * temp) / (_MAGNUS_B + temp) + math.log(humidity / 100)
    return (_MAGNUS_B * alpha) / (_MAGNUS_A - alpha)


def kmh_to_ms(value: float | None) -> float | None:
    if value is None:
        return None
    return value / 3.6


@runtime_checkable
class WeatherProvider(Protocol):
    id: ProviderId

    @property
    def config(self) -> ProviderConfig: ...

    @property
    def budget(self) -> ProviderBudget: ...

    async def fetch(self, lat: float, lon: float) -> SourcedWeatherData | None: ...

    async def check_health(self) -> ProviderStatusInfo: ...

    def is_configured(self) -> bool: ...

    def get_name(self) -> str: ...


class BaseWeatherProvider(ABC):
    """Shared HTTP handling, health probing and success tracking for adapters."""

    id: ProviderId

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str | None = None,
        budget: ProviderBudget | None = None,
    ) -> None:
        self._client = client
        self._api_key = api_key or None
        self._budget = budget or ProviderBudget(
            self.id,
            per_minute=self.config.requests_per_minute,
            per_day=self.config.requests_per_day,
        )
        self._attempts = 0
        self._successes = 0
        self.last_health_check: ProviderStatusInfo | None = None

    @property
    def config(self) -> ProviderConfig:
        return PROVIDER_CONFIGS[self.id]

    @property
    def budget(self) -> ProviderBudget:
        return self._budget

    @property
    def success_rate(self) -> float | None:
        """Percentage of fetches that returned data, or None before the first fetch."""
        if self._attempts == 0:
            return None
        return round(100.0 * self._successes / self._attempts, 1)

    def get_name(self) -> str:
        return self.config.name

    def is_configured(self) -> bool:
        return not self.config.api_key_required or bool(self._api_key)

    # -- Fetch ---------------------------------------------------------------

    async def fetch(self, lat: float, lon: float) -> SourcedWeatherData | None:
        if not self.is_configured():
            raise ProviderError(f"{self.get_name()} API key not configured")

        self._attempts += 1
        try:
            result = await self._fetch(lat, lon)
        except ProviderError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError(f"{self.get_name()} returned a malformed response: {exc!r}") from exc

        if result is not None:
            self._successes += 1
        return result

    @abstractmethod
    async def _fetch(self, lat: float, lon: float) -> SourcedWeatherData | None:
        """Issue the provider request and normalise the body."""

    async def _get_json(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        name = self.get_name()
        try:
            resp = await self._client.get(url, params=params)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("%s returned %d: %s", name, status, exc.response.text[:200])
            if status in (401, 403):
                raise ProviderAuthError(f"Invalid {name} API key") from exc
            if status == 429:
                raise ProviderQuotaError(f"{name} rate limit exceeded") from exc
            raise ProviderError(f"{name} API error: {status}") from exc
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{name} request timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{name} request failed: {exc.__class__.__name__}") from exc

        try:
            payload = resp.json()
        except ValueError as exc:
            raise ProviderError(f"{name} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderError(f"Unexpected {name} response shape")
        return payload

    def _sourced(self, **fields: Any) -> SourcedWeatherData:
        return SourcedWeatherData(
            source=self.id,
            fetched_at=datetime.now(timezone.utc),
            **fields,
        )

    # -- Health ----------------------------------------------------------------

    async def check_health(self) -> ProviderStatusInfo:
        """Probe the provider with a real fetch and classify the outcome."""
        started = time.perf_counter()
        try:
            result = await self.fetch(HEALTH_CHECK_LAT, HEALTH_CHECK_LON)
        except Exception as exc:  # noqa: BLE001 - any failure marks the provider unavailable
            elapsed_ms = (time.perf_counter() - started) * 1000
            status = ProviderStatusInfo(
                provider_id=self.id,
                status=ProviderStatus.UNAVAILABLE,
                last_checked=datetime.now(timezone.utc),
                response_time_ms=round(elapsed_ms, 1),
                error_message=str(exc) or exc.__class__.__name__,
                success_rate=self.success_rate,
            )
        else:
            elapsed_ms = (time.perf_counter() - started) * 1000
            status = ProviderStatusInfo(
                provider_id=self.id,
                status=ProviderStatus.AVAILABLE if result is not None else ProviderStatus.DEGRADED,
                last_checked=datetime.now(timezone.utc),
                response_time_ms=round(elapsed_ms, 1),
                success_rate=self.success_rate,
            )

        self.last_health_check = status
        return status
