"""Tests for the per-provider request budget."""

from __future__ import annotations

import threading

from services.routecast.weather.budget import ProviderBudget
from services.routecast.weather.models import ProviderId


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _budget(per_minute: int = 3, per_day: int = 100, clock=None) -> ProviderBudget:
    return ProviderBudget(ProviderId.OPEN_METEO, per_minute=per_minute, per_day=per_day, clock=clock or FakeClock())


class TestProviderBudget:
    def test_fresh_budget_allows_requests(self):
        assert _budget().can_make_request() is True

    def test_minute_ceiling(self):
        budget = _budget(per_minute=2)
        assert budget.try_acquire() is True
        assert budget.try_acquire() is True
        assert budget.try_acquire() is False
        assert budget.can_make_request() is False

    def test_minute_window_resets_after_60s(self):
        clock = FakeClock()
        budget = _budget(per_minute=1, clock=clock)
        assert budget.try_acquire() is True
        clock.advance(30)
        assert budget.try_acquire() is False
        clock.advance(31)
        assert budget.try_acquire() is True

    def test_day_ceiling_survives_minute_reset(self):
        clock = FakeClock()
        budget = _budget(per_minute=10, per_day=2, clock=clock)
        budget.record_request()
        clock.advance(61)
        budget.record_request()
        clock.advance(61)
        assert budget.can_make_request() is False

    def test_day_window_resets(self):
        clock = FakeClock()
        budget = _budget(per_minute=10, per_day=1, clock=clock)
        assert budget.try_acquire() is True
        clock.advance(24 * 60 * 60 + 1)
        assert budget.try_acquire() is True

    def test_snapshot_reflects_counts(self):
        budget = _budget()
        budget.record_request()
        budget.record_request()
        state = budget.snapshot()
        assert state.provider_id == ProviderId.OPEN_METEO
        assert state.requests_this_minute == 2
        assert state.requests_today == 2
        assert state.last_request_time is not None

    def test_concurrent_acquire_never_overspends(self):
        budget = ProviderBudget(ProviderId.OPEN_METEO, per_minute=50, per_day=1000)
        granted = []

        def worker():
            for _ in range(20):
                if budget.try_acquire():
                    granted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(granted) == 50
        assert budget.snapshot().requests_this_minute == 50
