"""
Consensus and comparison statistics across providers.

Pure functions of the collected sources: no I/O, no provider-specific logic.

Dispersion is the population standard deviation, sqrt(mean((x - mean)^2)),
not the sample standard deviation.

Majority condition: raw vote count over ``condition.main``. Ties go to the
condition whose first vote appears earliest in ``sources``, which callers keep
in configured provider order.

Comparison heuristics:
  agreement score  max(0, 100 - 10 * stddev(temp))
  outliers         |temp - mean(temp)| > 2 * stddev(temp)
"""

from __future__ import annotations

import math
from typing import Callable, Sequence

from services.routecast.weather.models import (
    ConsensusCondition,
    ConsensusMetric,
    ConsensusWeatherData,
    MetricRange,
    SourceComparisonData,
    SourcedWeatherData,
)

_AGREEMENT_PENALTY_PER_STDDEV = 10.0
_OUTLIER_STDDEVS = 2.0


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def population_stddev(values: Sequence[float]) -> float:
    avg = mean(values)
    return math.sqrt(sum((v - avg) ** 2 for v in values) / len(values))


def majority_condition(sources: Sequence[SourcedWeatherData]) -> ConsensusCondition:
    counts: dict[str, int] = {}
    icons: dict[str, str] = {}
    for s in sources:
        name = s.condition.main or "Unknown"
        counts[name] = counts.get(name, 0) + 1
        icons.setdefault(name, s.condition.icon)

    winner = "Clear"
    best = 0
    # dicts keep first-insertion order; strict '>' keeps the earliest on ties
    for name, count in counts.items():
        if count > best:
            winner, best = name, count
    return ConsensusCondition(condition=winner, icon=icons.get(winner, "01d"))


def calculate_consensus(sources: Sequence[SourcedWeatherData]) -> ConsensusWeatherData:
    if len(sources) < 2:
        raise ValueError("consensus needs at least two sources")

    source_ids = [s.source for s in sources]

    def metric(get: Callable[[SourcedWeatherData], float]) -> ConsensusMetric:
        values = [get(s) for s in sources]
        return ConsensusMetric(
            value=mean(values),
            variance=population_stddev(values),
            sources=source_ids,
        )

    return ConsensusWeatherData(
        temp=metric(lambda s: s.temp),
        humidity=metric(lambda s: s.humidity),
        wind_speed=metric(lambda s: s.wind_speed),
        wind_deg=metric(lambda s: s.wind_deg),
        pressure=metric(lambda s: s.pressure),
        clouds=metric(lambda s: s.clouds),
        precipitation=metric(lambda s: s.precipitation),
        weather=majority_condition(sources),
    )


def _range(values: Sequence[float]) -> MetricRange:
    lo, hi = min(values), max(values)
    return MetricRange(min=lo, max=hi, diff=hi - lo)


def calculate_comparison(sources: Sequence[SourcedWeatherData]) -> SourceComparisonData | None:
    if len(sources) < 2:
        return None

    temps = [s.temp for s in sources]
    temp_mean = mean(temps)
    temp_std = population_stddev(temps)

    return SourceComparisonData(
        temp_range=_range(temps),
        humidity_range=_range([s.humidity for s in sources]),
        wind_speed_range=_range([s.wind_speed for s in sources]),
        precipitation_range=_range([s.precipitation for s in sources]),
        agreement_score=max(0.0, 100.0 - temp_std * _AGREEMENT_PENALTY_PER_STDDEV),
        outlier_sources=[
            s.source for s in sources if abs(s.temp - temp_mean) > temp_std * _OUTLIER_STDDEVS
        ],
    )
