"""
Routecast FastAPI service — multi-source weather forecasts along routes.

Entrypoint: uvicorn services.routecast.main:app --host 0.0.0.0 --port 8000
"""

import asyncio
import contextlib
import logging
import uuid
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

from services.routecast.config import settings
from services.routecast.middleware.rate_limit import RateLimitMiddleware, build_named_limiters
from services.routecast.middleware.sentry import setup_sentry
from services.routecast.routers import health, weather
from services.routecast.weather.batch import BatchForecastOrchestrator
from services.routecast.weather.cache import MemoryCache, RouteCache, create_cache
from services.routecast.weather.manager import NoWeatherDataError, WeatherSourceManager
from services.routecast.weather.models import ComparisonMode, ProviderId, WeatherSourcePreferences
from services.routecast.weather.providers import create_providers

logger = logging.getLogger(__name__)


def default_preferences(cfg) -> WeatherSourcePreferences:
    return WeatherSourcePreferences(
        primary_source=ProviderId(cfg.weather_primary_source),
        enabled_sources=[ProviderId(s) for s in cfg.weather_enabled_sources],
        comparison_mode=ComparisonMode(cfg.weather_comparison_mode),
        auto_fallback=cfg.weather_auto_fallback,
    )


def provider_api_keys(cfg) -> dict[ProviderId, str]:
    return {
        ProviderId.WEATHERAPI: cfg.weatherapi_key,
        ProviderId.VISUAL_CROSSING: cfg.visual_crossing_api_key,
        ProviderId.OPENWEATHERMAP: cfg.openweather_api_key,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    setup_sentry(settings)

    # Redis for cache and rate limiting, optional
    redis_client = None
    if settings.redis_url:
        try:
            redis_client = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await redis_client.ping()
        except Exception as e:
            logger.warning("Redis unavailable, falling back to in-process cache and limiter: %s", e)
            redis_client = None

    http_client = httpx.AsyncClient(timeout=settings.provider_timeout_s)

    cache = create_cache(redis_client)
    route_cache = RouteCache(cache, settings.cache_forecast_ttl_s, settings.cache_route_ttl_s)
    manager = WeatherSourceManager(
        create_providers(http_client, provider_api_keys(settings)),
        cache,
        preferences=default_preferences(settings),
        weather_ttl=settings.cache_weather_ttl_s,
    )
    logger.info(
        "Weather providers configured: %s",
        ", ".join(p.value for p in manager.available_providers()) or "none",
    )

    limiters = build_named_limiters(settings, redis_client)

    app.state.redis = redis_client
    app.state.settings = settings
    app.state.weather_cache = cache
    app.state.route_cache = route_cache
    app.state.weather_manager = manager
    app.state.batch_orchestrator = BatchForecastOrchestrator(
        manager,
        batch_size=settings.batch_size,
        stagger_group_size=settings.batch_stagger_group_size,
        stagger_ms=settings.batch_stagger_ms,
        inter_batch_delay_ms=settings.batch_inter_delay_ms,
        route_cache=route_cache,
    )
    app.state.rate_limiters = limiters

    # Periodic memory hygiene for process-local stores
    sweepers = [
        asyncio.create_task(limiter.run_sweeper(settings.cache_sweep_interval_s))
        for limiter in limiters.values()
    ]
    if isinstance(cache, MemoryCache):
        sweepers.append(asyncio.create_task(cache.run_sweeper(settings.cache_sweep_interval_s)))

    yield

    for task in sweepers:
        task.cancel()
    for task in sweepers:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await http_client.aclose()
    if redis_client:
        await redis_client.aclose()


app = FastAPI(
    title="Routecast API",
    version=settings.app_version,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)

# -- Middleware (order matters: last added = outermost in Starlette) --

app.include_router(health.router)
app.include_router(weather.router)


# Rate limiting: limiters are built in the lifespan
class _LazyRateLimitMiddleware(RateLimitMiddleware):
    """Rate limiter that picks up the named limiters after lifespan init."""

    def __init__(self, app):
        super().__init__(app, limiters={})

    async def dispatch(self, request, call_next):
        self.limiters = getattr(request.app.state, "rate_limiters", None) or {}
        return await super().dispatch(request, call_next)


app.add_middleware(_LazyRateLimitMiddleware)


# Request ID injection (outermost, so 429s carry the id too)
@app.middleware("http")
async def request_envelope_middleware(request: Request, call_next) -> Response:
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    request.state.request_id = request_id

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# -- Exception Handlers --

def _error(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": code, "message": message},
            "requestId": getattr(request.state, "request_id", str(uuid.uuid4())),
        },
    )


@app.exception_handler(404)
async def not_found_handler(request: Request, exc) -> JSONResponse:
    detail = getattr(exc, "detail", None)
    message = detail if isinstance(detail, str) and detail != "Not Found" else "Resource not found."
    return _error(request, 404, "NOT_FOUND", message)


@app.exception_handler(422)
async def validation_error_handler(request: Request, exc) -> JSONResponse:
    return _error(
        request, 422, "VALIDATION_ERROR",
        str(exc.detail) if hasattr(exc, "detail") else "Validation error.",
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Validation error.")
    return _error(request, 422, "VALIDATION_ERROR", f"{location}: {message}" if location else message)


@app.exception_handler(NoWeatherDataError)
async def no_weather_data_handler(request: Request, exc: NoWeatherDataError) -> JSONResponse:
    logger.warning("No provider returned data: %s", exc)
    return _error(request, 502, "NO_WEATHER_DATA", "No weather provider returned data for this route.")


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc) -> JSONResponse:
    return _error(request, 500, "INTERNAL_ERROR", "An unexpected error occurred.")
