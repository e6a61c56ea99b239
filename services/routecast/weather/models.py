"""
Weather domain models.

Every record that crosses a component boundary lives here. Records produced by
providers or by the aggregation step are frozen; they are only read, cached,
or serialised after construction.

Units are normalised at the provider boundary:
  temperature   °C
  pressure      hPa
  wind speed    m/s
  visibility    metres
  precipitation mm in the last hour

Cache round-trips go through ``model_dump(mode="json")`` / ``model_validate``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class ProviderId(str, Enum):
    OPEN_METEO = "open-meteo"
    WEATHERAPI = "weatherapi"
    VISUAL_CROSSING = "visual-crossing"
    OPENWEATHERMAP = "openweathermap"


class ProviderStatus(str, Enum):
    AVAILABLE = "available"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class ComparisonMode(str, Enum):
    SINGLE = "single"
    COMPARISON = "comparison"
    CONSENSUS = "consensus"


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------

class ProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: ProviderId
    name: str
    description: str
    api_key_required: bool
    base_url: str
    requests_per_minute: int
    requests_per_day: int


PROVIDER_CONFIGS: dict[ProviderId, ProviderConfig] = {
    ProviderId.OPEN_METEO: ProviderConfig(
        id=ProviderId.OPEN_METEO,
        name="Open-Meteo",
        description="Free, open-source weather API with high accuracy",
        api_key_required=False,
        base_url="https://api.open-meteo.com/v1",
        requests_per_minute=600,
        requests_per_day=10_000,
    ),
    ProviderId.WEATHERAPI: ProviderConfig(
        id=ProviderId.WEATHERAPI,
        name="WeatherAPI",
        description="Reliable weather data with generous free tier",
        api_key_required=True,
        base_url="https://api.weatherapi.com/v1",
        requests_per_minute=60,
        requests_per_day=1_000_000,
    ),
    ProviderId.VISUAL_CROSSING: ProviderConfig(
        id=ProviderId.VISUAL_CROSSING,
        name="Visual Crossing",
        description="Premium weather data with historical analysis",
        api_key_required=True,
        base_url="https://weather.visualcrossing.com/VisualCrossingWebServices/rest/services/timeline",
        requests_per_minute=100,
        requests_per_day=1_000,
    ),
    ProviderId.OPENWEATHERMAP: ProviderConfig(
        id=ProviderId.OPENWEATHERMAP,
        name="OpenWeatherMap",
        description="Popular weather API with global coverage",
        api_key_required=True,
        base_url="https://api.openweathermap.org/data/2.5",
        requests_per_minute=60,
        requests_per_day=1_000,
    ),
}


# ---------------------------------------------------------------------------
# Provider output
# ---------------------------------------------------------------------------

class WeatherCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    main: str
    description: str
    icon: str = "01d"


class SourcedWeatherData(BaseModel):
    """One provider's normalised snapshot for a coordinate."""

    model_config = ConfigDict(frozen=True)

    lat: float
    lon: float
    dt: datetime
    temp: float
    feels_like: float
    humidity: float
    pressure: float
    dew_point: float
    clouds: float
    visibility: float
    wind_speed: float
    wind_deg: float
    wind_gust: Optional[float] = None
    uvi: float = 0.0
    rain_1h: Optional[float] = None
    snow_1h: Optional[float] = None
    condition: WeatherCondition
    source: ProviderId
    fetched_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def precipitation(self) -> float:
        return (self.rain_1h or 0.0) + (self.snow_1h or 0.0)


class ProviderRateLimitState(BaseModel):
    provider_id: ProviderId
    requests_this_minute: int = 0
    requests_today: int = 0
    last_request_time: Optional[datetime] = None
    minute_window_start: datetime
    day_window_start: datetime


class ProviderStatusInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_id: ProviderId
    status: ProviderStatus
    last_checked: datetime
    response_time_ms: Optional[float] = None
    error_message: Optional[str] = None
    success_rate: Optional[float] = None


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

class ConsensusMetric(BaseModel):
    """Mean and population standard deviation of one metric across providers.

    ``variance`` keeps the wire name used by existing consumers; the value is
    the standard deviation, not its square.
    """

    model_config = ConfigDict(frozen=True)

    value: float
    variance: float
    sources: list[ProviderId]


class ConsensusCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    condition: str
    icon: str


class ConsensusWeatherData(BaseModel):
    model_config = ConfigDict(frozen=True)

    temp: ConsensusMetric
    humidity: ConsensusMetric
    wind_speed: ConsensusMetric
    wind_deg: ConsensusMetric
    pressure: ConsensusMetric
    clouds: ConsensusMetric
    precipitation: ConsensusMetric
    weather: ConsensusCondition


class MultiSourceWeatherData(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lon: float
    timestamp: datetime
    sources: list[SourcedWeatherData]
    consensus: Optional[ConsensusWeatherData] = None

    @model_validator(mode="after")
    def _consensus_requires_two_sources(self) -> MultiSourceWeatherData:
        if (self.consensus is not None) != (len(self.sources) >= 2):
            raise ValueError("consensus must be present exactly when there are two or more sources")
        return self


class MetricRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float
    max: float
    diff: float


class SourceComparisonData(BaseModel):
    model_config = ConfigDict(frozen=True)

    temp_range: MetricRange
    humidity_range: MetricRange
    wind_speed_range: MetricRange
    precipitation_range: MetricRange
    agreement_score: float
    outlier_sources: list[ProviderId]


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------

class WeatherSourcePreferences(BaseModel):
    """Caller-supplied source selection. Never mutated; use ``updated``."""

    model_config = ConfigDict(frozen=True)

    primary_source: ProviderId = ProviderId.OPEN_METEO
    enabled_sources: list[ProviderId] = Field(default_factory=lambda: [ProviderId.OPEN_METEO])
    comparison_mode: ComparisonMode = ComparisonMode.SINGLE
    auto_fallback: bool = True
    refresh_interval: int = Field(default=30, ge=1)
    show_source_indicators: bool = True
    show_reliability_scores: bool = False

    def updated(self, **changes) -> WeatherSourcePreferences:
        """Return a new validated preferences value with ``changes`` applied."""
        unknown = set(changes) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown preference field(s): {', '.join(sorted(unknown))}")
        return type(self).model_validate({**self.model_dump(), **changes})


# ---------------------------------------------------------------------------
# Route input / forecast output
# ---------------------------------------------------------------------------

class RoutePoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    elevation: Optional[float] = None
    distance: float = Field(default=0.0, ge=0)  # cumulative km
    estimated_time: Optional[datetime] = None


class RouteSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_time: datetime
    average_speed: float = Field(default=15.0, gt=0)  # km/h
    forecast_interval: float = Field(default=5.0, gt=0)  # km
    units: Literal["metric", "imperial"] = "metric"


class WeatherAlert(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["wind", "temperature", "precipitation", "visibility", "general"]
    severity: Literal["low", "medium", "high", "extreme"]
    title: str
    description: str


class WeatherForecast(BaseModel):
    """Single-source view of a route point."""

    model_config = ConfigDict(frozen=True)

    route_point: RoutePoint
    weather: SourcedWeatherData
    alerts: list[WeatherAlert] = Field(default_factory=list)


class MultiSourceWeatherForecast(BaseModel):
    model_config = ConfigDict(frozen=True)

    route_point: RoutePoint
    multi_source_data: MultiSourceWeatherData
    primary_weather: SourcedWeatherData
    alerts: list[WeatherAlert] = Field(default_factory=list)
    source_comparison: Optional[SourceComparisonData] = None

    def to_weather_forecast(self) -> WeatherForecast:
        return WeatherForecast(
            route_point=self.route_point,
            weather=self.primary_weather,
            alerts=self.alerts,
        )
