"""
Application configuration via pydantic-settings.
All config read from environment variables with sensible defaults for local dev.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_name: str = "routecast-api"
    app_version: str = "0.1.0"
    environment: str = Field(default="development", pattern=r"^(development|staging|production)$")
    debug: bool = False

    # Redis: empty string means process-local cache and rate limiter
    redis_url: str = ""

    # Sentry
    sentry_dsn: str = ""
    sentry_traces_sample_rate: float = Field(default=0.1, ge=0.0, le=1.0)

    # Weather providers
    # A missing key means that provider is skipped, never an error.
    weatherapi_key: str = ""
    visual_crossing_api_key: str = ""
    openweather_api_key: str = ""
    provider_timeout_s: float = Field(default=5.0, gt=0.0)

    # Default source preferences (per-request overrides are allowed)
    weather_enabled_sources: list[str] = Field(default=["open-meteo"])
    weather_primary_source: str = "open-meteo"
    weather_comparison_mode: str = Field(default="single", pattern=r"^(single|comparison|consensus)$")
    weather_auto_fallback: bool = True

    # Cache TTLs (seconds)
    cache_weather_ttl_s: int = 30 * 60
    cache_forecast_ttl_s: int = 60 * 60
    cache_route_ttl_s: int = 24 * 60 * 60
    cache_sweep_interval_s: float = 5 * 60

    # Rate limiting (per client, per window)
    rate_limit_window_ms: int = 60_000
    rate_limit_upload_per_window: int = 10
    rate_limit_weather_per_window: int = 30
    rate_limit_general_per_window: int = 100

    # Batch orchestration
    batch_size: int = Field(default=5, ge=1, le=50)
    batch_stagger_group_size: int = Field(default=2, ge=1)
    batch_stagger_ms: int = Field(default=25, ge=0)
    batch_inter_delay_ms: int = Field(default=100, ge=0)
    max_route_points: int = Field(default=50, ge=2)

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}


settings = Settings()
