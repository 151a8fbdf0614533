from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from capacity_engine.simulation.kernel import PercentileResult


class ForecastMode(str, Enum):
    SCOPE_BASED = "SCOPE_BASED"
    EMPIRICAL = "EMPIRICAL"


Confidence = Literal["low", "moderate", "good"]


@dataclass(frozen=True)
class CompletionCdfPoint:
    period_id: str
    period_label: str
    cumulative_probability: float  # 0..1


@dataclass(frozen=True)
class InitiativeForecast:
    initiative_id: str
    initiative_title: str
    completion_cdf: tuple[CompletionCdfPoint, ...]
    percentiles: tuple[PercentileResult, ...]  # over completion period index
    scope_item_count: int
    has_estimates: bool


@dataclass(frozen=True)
class ScopeForecastResult:
    scenario_id: str
    simulation_count: int
    initiative_forecasts: tuple[InitiativeForecast, ...]
    warnings: tuple[str, ...] = ()
    duration_ms: int = 0
    run_id: str | None = None
    mode: ForecastMode = ForecastMode.SCOPE_BASED


@dataclass(frozen=True)
class EmpiricalInitiativeForecast:
    initiative_id: str
    initiative_title: str
    current_status: str
    elapsed_days: int
    percentiles: tuple[PercentileResult, ...]  # total cycle days
    estimated_completion_days: tuple[PercentileResult, ...]  # remaining days


@dataclass(frozen=True)
class EmpiricalForecastResult:
    simulation_count: int
    historical_data_points: int
    low_confidence: bool
    initiative_forecasts: tuple[EmpiricalInitiativeForecast, ...]
    warnings: tuple[str, ...] = ()
    duration_ms: int = 0
    run_id: str | None = None
    mode: ForecastMode = ForecastMode.EMPIRICAL


@dataclass(frozen=True)
class DataQualityDetails:
    total_scope_items: int
    scope_items_with_estimates: int
    estimate_coverage: float
    scope_items_with_distributions: int
    distribution_coverage: float
    historical_completions: int
    mode_b_viable: bool


@dataclass(frozen=True)
class DataQualityResult:
    score: int  # 0..100
    confidence: Confidence
    details: DataQualityDetails
    issues: tuple[str, ...] = field(default_factory=tuple)
