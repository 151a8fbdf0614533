"""Numeric primitives shared by every Monte Carlo forecast.

Lognormal effort is parameterised by two quantiles:

    median of lognormal = e^mu           =>  mu    = ln(p50)
    P90 = e^(mu + z_0.90 * sigma)        =>  sigma = (ln(p90) - ln(p50)) / z_0.90

All sampling draws from a module-level ``numpy.random.Generator`` unless
the caller passes its own; ``reseed`` makes runs reproducible.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Final, Iterable, Sequence

import numpy as np
import scipy.stats as st

from capacity_engine.common.errors import InvalidParameterError

Z90: Final[float] = float(st.norm.ppf(0.9))

SampleFn = Callable[[], float]

_rng: np.random.Generator = np.random.default_rng()


@dataclass(frozen=True)
class SimulationResult:
    values: np.ndarray  # sorted ascending
    count: int


@dataclass(frozen=True)
class PercentileResult:
    level: float
    value: float


def reseed(seed: int | None) -> None:
    global _rng
    _rng = np.random.default_rng(seed)


def resolve_rng(rng: np.random.Generator | None) -> np.random.Generator:
    return _rng if rng is None else rng


def standard_normal(rng: np.random.Generator | None = None) -> float:
    """Draw one N(0, 1) variate with the Box-Muller transform."""
    gen = resolve_rng(rng)
    # random() is in [0, 1); flip it so log() never sees zero.
    u1 = 1.0 - gen.random()
    u2 = 1.0 - gen.random()
    return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)


def lognormal_params(p50: float, p90: float) -> tuple[float, float]:
    if p50 <= 0:
        raise InvalidParameterError("p50 must be positive")
    if p90 < p50:
        raise InvalidParameterError("p90 must be >= p50")

    mu = math.log(p50)
    sigma = 0.0 if p90 == p50 else (math.log(p90) - mu) / Z90
    return mu, sigma


def lognormal_sample(p50: float, p90: float, rng: np.random.Generator | None = None) -> float:
    mu, sigma = lognormal_params(p50, p90)
    if sigma == 0.0:
        return float(p50)
    return math.exp(mu + sigma * standard_normal(rng))


def create_sampler(p50: float, p90: float, rng: np.random.Generator | None = None) -> SampleFn:
    """Validate once and return a closure that reuses mu/sigma."""
    mu, sigma = lognormal_params(p50, p90)
    if sigma == 0.0:
        value = float(p50)
        return lambda: value

    def sample() -> float:
        return math.exp(mu + sigma * standard_normal(rng))

    return sample


def run_simulation(n: int, sample_fn: SampleFn) -> SimulationResult:
    if n < 1:
        raise InvalidParameterError("Simulation count must be >= 1")

    values = np.fromiter((sample_fn() for _ in range(n)), dtype=float, count=n)
    values.sort()
    return SimulationResult(values=values, count=n)


def simulation_from_values(values: Iterable[float]) -> SimulationResult:
    arr = np.sort(np.asarray(list(values), dtype=float))
    return SimulationResult(values=arr, count=int(arr.size))


def compute_percentiles(result: SimulationResult, levels: Sequence[float]) -> list[PercentileResult]:
    """Linear-interpolated percentiles at rank ``level / 100 * (count - 1)``."""
    if len(levels) == 0:
        return []
    if result.count == 0:
        return [PercentileResult(level=level, value=0.0) for level in levels]

    values = result.values
    out: list[PercentileResult] = []
    for level in levels:
        q = min(1.0, max(0.0, float(level) / 100.0))
        # values are already sorted; numpy's default "linear" method matches the rank formula.
        out.append(PercentileResult(level=level, value=float(np.quantile(values, q))))
    return out
