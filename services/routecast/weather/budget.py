"""
Per-provider request budget.

Each provider adapter owns one ProviderBudget mirroring the provider's
published ceilings (requests per minute, requests per day). Windows are fixed
and reset once elapsed:

  minute window  60 s
  day window     24 h

The WeatherSourceManager calls ``try_acquire()`` before every provider request.
Check and increment happen under one lock so concurrent aggregation rounds
never double-spend the last slot. This is best-effort throttling against the
provider's quota, separate from the per-client limiter in
``middleware/rate_limit.py``.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Callable

from services.routecast.weather.models import ProviderId, ProviderRateLimitState

_MINUTE_S = 60.0
_DAY_S = 24 * 60 * 60.0


def _to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class ProviderBudget:
    def __init__(
        self,
        provider_id: ProviderId,
        per_minute: int,
        per_day: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider_id = provider_id
        self.per_minute = per_minute
        self.per_day = per_day
        self._clock = clock
        self._lock = threading.Lock()

        now = clock()
        self._minute_count = 0
        self._day_count = 0
        self._minute_start = now
        self._day_start = now
        self._last_request: float | None = None

    def _roll_windows(self, now: float) -> None:
        if now - self._minute_start > _MINUTE_S:
            self._minute_count = 0
            self._minute_start = now
        if now - self._day_start > _DAY_S:
            self._day_count = 0
            self._day_start = now

    def _has_room(self) -> bool:
        return self._minute_count < self.per_minute and self._day_count < self.per_day

    def can_make_request(self) -> bool:
        with self._lock:
            self._roll_windows(self._clock())
            return self._has_room()

    def record_request(self) -> None:
        with self._lock:
            now = self._clock()
            self._roll_windows(now)
            self._minute_count += 1
            self._day_count += 1
            self._last_request = now

    def try_acquire(self) -> bool:
        """Reserve one request if both windows have room. Returns False when exhausted."""
        with self._lock:
            now = self._clock()
            self._roll_windows(now)
            if not self._has_room():
                return False
            self._minute_count += 1
            self._day_count += 1
            self._last_request = now
            return True

    def snapshot(self) -> ProviderRateLimitState:
        with self._lock:
            self._roll_windows(self._clock())
            return ProviderRateLimitState(
                provider_id=self.provider_id,
                requests_this_minute=self._minute_count,
                requests_today=self._day_count,
                last_request_time=(
                    _to_datetime(self._last_request) if self._last_request is not None else None
                ),
                minute_window_start=_to_datetime(self._minute_start),
                day_window_start=_to_datetime(self._day_start),
            )
