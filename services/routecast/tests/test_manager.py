"""
Tests for WeatherSourceManager.

Providers are FakeProvider doubles; the cache is MemoryCache unless a test
needs a failing backend.

Coverage targets:
  - fan-out, ordering, consensus presence
  - failure tolerance and NoWeatherDataError
  - single mode with and without auto fallback
  - budget exhaustion skips a provider
  - cache hit avoids provider calls; cache failure is a miss
  - primary selection, alerts, comparison
  - health checks and status reporting
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from services.routecast.tests.conftest import FakeProvider, make_weather
from services.routecast.weather.cache import MemoryCache, RedisCache
from services.routecast.weather.manager import NoWeatherDataError, WeatherSourceManager
from services.routecast.weather.models import (
    ComparisonMode,
    ProviderId,
    ProviderStatus,
    RoutePoint,
    WeatherSourcePreferences,
)
from services.routecast.weather.providers.base import ProviderError

OM = ProviderId.OPEN_METEO
WA = ProviderId.WEATHERAPI
VC = ProviderId.VISUAL_CROSSING

CONSENSUS = WeatherSourcePreferences(
    primary_source=OM,
    enabled_sources=[OM, WA],
    comparison_mode=ComparisonMode.CONSENSUS,
)


def _manager(providers: dict, preferences=CONSENSUS, cache=None) -> WeatherSourceManager:
    return WeatherSourceManager(providers, cache or MemoryCache(), preferences=preferences)


def _two_providers(temp_a: float = 18.0, temp_b: float = 22.0) -> dict:
    return {
        OM: FakeProvider(OM, make_weather(OM, temp=temp_a)),
        WA: FakeProvider(WA, make_weather(WA, temp=temp_b)),
    }


class TestFetchMultiSourceData:
    @pytest.mark.asyncio
    async def test_two_sources_build_consensus(self):
        manager = _manager(_two_providers())
        data = await manager.fetch_multi_source_data(45.0, 7.0)

        assert [s.source for s in data.sources] == [OM, WA]
        assert data.consensus is not None
        assert data.consensus.temp.value == pytest.approx(20.0)
        assert data.consensus.temp.variance == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_failed_provider_is_left_out(self):
        providers = {
            OM: FakeProvider(OM, ProviderError("boom")),
            WA: FakeProvider(WA, make_weather(WA, temp=12.0)),
        }
        data = await _manager(providers).fetch_multi_source_data(45.0, 7.0)

        assert [s.source for s in data.sources] == [WA]
        assert data.consensus is None

    @pytest.mark.asyncio
    async def test_all_fail_raises(self):
        providers = {
            OM: FakeProvider(OM, ProviderError("boom")),
            WA: FakeProvider(WA, None),
        }
        with pytest.raises(NoWeatherDataError):
            await _manager(providers).fetch_multi_source_data(45.0, 7.0)

    @pytest.mark.asyncio
    async def test_nothing_cached_when_all_fail(self):
        cache = MemoryCache()
        providers = {OM: FakeProvider(OM, ProviderError("boom")), WA: FakeProvider(WA, None)}
        with pytest.raises(NoWeatherDataError):
            await _manager(providers, cache=cache).fetch_multi_source_data(45.0, 7.0)
        assert await cache.keys("weather:*") == []

    @pytest.mark.asyncio
    async def test_order_follows_registry_not_completion(self):
        async def slow(lat, lon):
            await asyncio.sleep(0.05)
            return make_weather(OM)

        class SlowProvider(FakeProvider):
            async def fetch(self, lat, lon):
                self.calls.append((lat, lon))
                return await slow(lat, lon)

        providers = {OM: SlowProvider(OM), WA: FakeProvider(WA, make_weather(WA))}
        data = await _manager(providers).fetch_multi_source_data(1.0, 2.0)
        assert [s.source for s in data.sources] == [OM, WA]

    @pytest.mark.asyncio
    async def test_unconfigured_and_unknown_providers_skipped(self):
        providers = {
            OM: FakeProvider(OM, make_weather(OM)),
            VC: FakeProvider(VC, make_weather(VC), configured=False),
        }
        manager = _manager(providers)
        data = await manager.fetch_multi_source_data(1.0, 2.0, provider_ids=[OM, VC, WA])

        assert [s.source for s in data.sources] == [OM]
        assert providers[VC].calls == []

    @pytest.mark.asyncio
    async def test_exhausted_budget_skips_provider(self):
        providers = _two_providers()
        providers[WA] = FakeProvider(WA, make_weather(WA), per_minute=1)
        manager = _manager(providers)

        await manager.fetch_multi_source_data(1.0, 1.0)
        data = await manager.fetch_multi_source_data(2.0, 2.0)

        assert [s.source for s in data.sources] == [OM]
        assert len(providers[WA].calls) == 1

    @pytest.mark.asyncio
    async def test_cache_hit_skips_providers(self):
        providers = _two_providers()
        manager = _manager(providers)

        first = await manager.fetch_multi_source_data(10.0, 20.0)
        second = await manager.fetch_multi_source_data(10.0, 20.0)

        assert len(providers[OM].calls) == 1
        assert len(providers[WA].calls) == 1
        assert second.consensus.temp.value == pytest.approx(first.consensus.temp.value)

    @pytest.mark.asyncio
    async def test_different_provider_set_is_not_a_cache_hit(self):
        providers = _two_providers()
        manager = _manager(providers)

        await manager.fetch_multi_source_data(10.0, 20.0, provider_ids=[OM])
        data = await manager.fetch_multi_source_data(10.0, 20.0, provider_ids=[OM, WA])
        assert len(data.sources) == 2

    @pytest.mark.asyncio
    async def test_cache_failure_is_a_miss(self):
        redis = AsyncMock()
        redis.get = AsyncMock(side_effect=ConnectionError("redis down"))
        redis.setex = AsyncMock(side_effect=ConnectionError("redis down"))
        manager = _manager(_two_providers(), cache=RedisCache(redis))

        data = await manager.fetch_multi_source_data(1.0, 2.0)
        assert len(data.sources) == 2

    @pytest.mark.asyncio
    async def test_clear_cache_forces_refetch(self):
        providers = _two_providers()
        manager = _manager(providers)

        await manager.fetch_multi_source_data(10.0, 20.0)
        await manager.clear_cache()
        await manager.fetch_multi_source_data(10.0, 20.0)
        assert len(providers[OM].calls) == 2


class TestSingleMode:
    prefs = WeatherSourcePreferences(
        primary_source=WA,
        enabled_sources=[OM, WA],
        comparison_mode=ComparisonMode.SINGLE,
        auto_fallback=True,
    )

    @pytest.mark.asyncio
    async def test_only_primary_is_queried(self):
        providers = _two_providers()
        data = await _manager(providers, self.prefs).fetch_multi_source_data(1.0, 2.0)

        assert [s.source for s in data.sources] == [WA]
        assert providers[OM].calls == []

    @pytest.mark.asyncio
    async def test_falls_back_when_primary_fails(self):
        providers = {
            OM: FakeProvider(OM, make_weather(OM)),
            WA: FakeProvider(WA, ProviderError("down")),
        }
        data = await _manager(providers, self.prefs).fetch_multi_source_data(1.0, 2.0)
        assert [s.source for s in data.sources] == [OM]

    @pytest.mark.asyncio
    async def test_no_fallback_when_disabled(self):
        prefs = self.prefs.updated(auto_fallback=False)
        providers = {
            OM: FakeProvider(OM, make_weather(OM)),
            WA: FakeProvider(WA, ProviderError("down")),
        }
        with pytest.raises(NoWeatherDataError):
            await _manager(providers, prefs).fetch_multi_source_data(1.0, 2.0)
        assert providers[OM].calls == []

    @pytest.mark.asyncio
    async def test_single_result_not_reused_for_consensus(self):
        providers = _two_providers()
        manager = _manager(providers, self.prefs.updated(primary_source=OM))

        single = await manager.fetch_multi_source_data(45.0, 7.0)
        assert [s.source for s in single.sources] == [OM]

        consensus = await manager.fetch_multi_source_data(45.0, 7.0, preferences=CONSENSUS)
        assert [s.source for s in consensus.sources] == [OM, WA]
        assert consensus.consensus is not None
        assert len(providers[WA].calls) == 1

    @pytest.mark.asyncio
    async def test_changed_primary_is_not_a_cache_hit(self):
        providers = _two_providers()
        manager = _manager(providers, self.prefs)

        await manager.fetch_multi_source_data(45.0, 7.0)
        data = await manager.fetch_multi_source_data(
            45.0, 7.0, preferences=self.prefs.updated(primary_source=OM),
        )
        assert [s.source for s in data.sources] == [OM]
        assert len(providers[OM].calls) == 1


class TestFetchMultiSourceForecast:
    @pytest.mark.asyncio
    async def test_primary_is_preferred_source(self):
        prefs = CONSENSUS.updated(primary_source=WA)
        forecast = await _manager(_two_providers(), prefs).fetch_multi_source_forecast(
            RoutePoint(lat=1.0, lon=2.0),
        )
        assert forecast.primary_weather.source == WA
        assert forecast.source_comparison is not None
        assert forecast.source_comparison.agreement_score == pytest.approx(80.0)

    @pytest.mark.asyncio
    async def test_primary_falls_back_to_first_source(self):
        providers = {
            OM: FakeProvider(OM, ProviderError("down")),
            WA: FakeProvider(WA, make_weather(WA, wind_speed=18.0)),
        }
        forecast = await _manager(providers).fetch_multi_source_forecast(RoutePoint(lat=1.0, lon=2.0))

        assert forecast.primary_weather.source == WA
        assert forecast.source_comparison is None
        assert [a.type for a in forecast.alerts] == ["wind"]

    @pytest.mark.asyncio
    async def test_single_source_view(self):
        point = RoutePoint(lat=1.0, lon=2.0, distance=3.0)
        forecast = await _manager(_two_providers()).fetch_multi_source_forecast(point)
        single = forecast.to_weather_forecast()
        assert single.route_point == point
        assert single.weather == forecast.primary_weather


class TestProviderStatus:
    def test_unknown_before_any_check(self):
        manager = _manager(_two_providers())
        assert manager.get_provider_status(OM).status == ProviderStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_check_all_classifies_each_provider(self):
        providers = {
            OM: FakeProvider(OM, make_weather(OM)),
            WA: FakeProvider(WA, None),
            VC: FakeProvider(VC, ProviderError("down")),
        }
        manager = _manager(providers)
        statuses = {s.provider_id: s.status for s in await manager.check_all_providers_health()}

        assert statuses == {
            OM: ProviderStatus.AVAILABLE,
            WA: ProviderStatus.DEGRADED,
            VC: ProviderStatus.UNAVAILABLE,
        }
        assert manager.get_provider_status(WA).status == ProviderStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_unconfigured_provider_unavailable_without_probe(self):
        providers = {VC: FakeProvider(VC, make_weather(VC), configured=False)}
        status = await _manager(providers).check_provider_health(VC)
        assert status.status == ProviderStatus.UNAVAILABLE
        assert providers[VC].calls == []

    def test_available_providers_and_budgets(self):
        providers = _two_providers()
        providers[VC] = FakeProvider(VC, configured=False)
        manager = _manager(providers)

        assert manager.available_providers() == [OM, WA]
        assert set(manager.rate_limit_states()) == {OM, WA, VC}

    def test_set_preferences_replaces_reference(self):
        manager = _manager(_two_providers())
        new = CONSENSUS.updated(primary_source=WA)
        manager.set_preferences(new)
        assert manager.preferences is new
        assert CONSENSUS.primary_source == OM
