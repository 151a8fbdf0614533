from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Sequence

import numpy as np

from capacity_engine.adapters.memory import InMemoryAuditSink
from capacity_engine.common.errors import InvalidParameterError, NotFoundError
from capacity_engine.common.time_utils import days_between, utcnow
from capacity_engine.config import EngineSettings
from capacity_engine.forecasting.empirical import bootstrap_sampler, historical_cycle_times, resourcing_starts
from capacity_engine.forecasting.models import (
    Confidence,
    DataQualityDetails,
    DataQualityResult,
    EmpiricalForecastResult,
    EmpiricalInitiativeForecast,
    ForecastMode,
    InitiativeForecast,
    ScopeForecastResult,
)
from capacity_engine.forecasting.scope_based import (
    SampledScopeItem,
    build_period_capacity,
    completion_cdf,
    prepare_scope_item,
    simulate_completion_indices,
)
from capacity_engine.integration.event_bus import EventBus
from capacity_engine.integration.events import ForecastRunCompleted
from capacity_engine.planning.gap_calculator import GapCalculator
from capacity_engine.planning.models import InitiativeStatus, ScopeItem
from capacity_engine.planning.ports import AuditSink, ForecastRunRecord, PlanningStore, StatusLogSource
from capacity_engine.simulation.kernel import (
    PercentileResult,
    compute_percentiles,
    run_simulation,
    simulation_from_values,
)


logger = logging.getLogger(__name__)


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _elapsed_ms(started: float) -> int:
    return _round_half_up((time.perf_counter() - started) * 1000.0)


@dataclass
class ForecastingService:
    """Monte Carlo completion forecasts and forecast-readiness scoring.

    Mode A (scope based) samples scope estimates against the scenario's
    capacity. Mode B (empirical) bootstraps historical cycle times from the
    status log. Every run is written to ``audit_sink``; a failing sink is
    logged and the result is still returned.
    """

    store: PlanningStore
    status_log: StatusLogSource
    calculator: GapCalculator
    audit_sink: AuditSink = field(default_factory=InMemoryAuditSink)
    settings: EngineSettings = field(default_factory=EngineSettings)
    bus: EventBus | None = None
    clock: Callable[[], datetime] = utcnow
    rng: np.random.Generator | None = None

    def __post_init__(self) -> None:
        seed = self.settings.simulation.rng_seed
        if self.rng is None and seed is not None:
            self.rng = np.random.default_rng(seed)

    # --- Mode A -------------------------------------------------------------

    def run_scope_based_forecast(
        self,
        scenario_id: str,
        initiative_ids: Sequence[str],
        simulation_count: int | None = None,
        confidence_levels: Sequence[float] | None = None,
    ) -> ScopeForecastResult:
        n = self._simulation_count(simulation_count)
        levels = self._confidence_levels(confidence_levels)
        started = time.perf_counter()

        if self.store.get_scenario(scenario_id) is None:
            raise NotFoundError("Scenario", scenario_id)

        warnings: list[str] = []
        initiatives = self.store.get_initiatives(list(initiative_ids))
        found = {init.id for init in initiatives}
        for iid in initiative_ids:
            if iid not in found:
                warnings.append(f"Initiative {iid} not found")

        gap = self.calculator.calculate(scenario_id, skip_cache=True)
        periods = build_period_capacity(gap)
        if not periods:
            warnings.append("No periods found in scenario")

        for init in initiatives:
            missing = sum(1 for si in init.scope_items if not si.has_estimates)
            if missing:
                warnings.append(
                    f'Initiative "{init.title}": {missing} of {len(init.scope_items)} scope items missing P50/P90 estimates'
                )
            if not init.scope_items:
                warnings.append(f'Initiative "{init.title}": no scope items defined')

        forecasts: list[InitiativeForecast] = []
        for init in initiatives:
            samplers = self._prepare(init.scope_items)
            indices = simulate_completion_indices(samplers, periods, n)
            forecasts.append(
                InitiativeForecast(
                    initiative_id=init.id,
                    initiative_title=init.title,
                    completion_cdf=completion_cdf(indices, periods),
                    percentiles=tuple(compute_percentiles(simulation_from_values(indices), levels)),
                    scope_item_count=len(init.scope_items),
                    has_estimates=any(si.has_estimates for si in init.scope_items),
                )
            )

        duration_ms = _elapsed_ms(started)
        logger.info(
            "Scope-based forecast for scenario %s: %d initiative(s), %d iteration(s) in %d ms",
            scenario_id,
            len(forecasts),
            n,
            duration_ms,
        )
        for w in warnings:
            logger.warning("Scope-based forecast: %s", w)

        quality = self.assess_data_quality(scenario_id=scenario_id, initiative_ids=list(initiative_ids) or None)

        run_id = self._record(
            ForecastRunRecord(
                mode=ForecastMode.SCOPE_BASED.value,
                scenario_id=scenario_id,
                initiative_ids=tuple(initiative_ids),
                simulation_count=n,
                confidence_levels=levels,
                created_at=self.clock(),
                duration_ms=duration_ms,
                warnings=tuple(warnings),
                input_snapshot={
                    "initiative_count": len(initiatives),
                    "scope_item_count": sum(len(i.scope_items) for i in initiatives),
                    "period_count": len(periods),
                },
                data_quality={
                    "score": quality.score,
                    "confidence": quality.confidence,
                    "issues": list(quality.issues),
                },
            )
        )
        self._publish(ForecastMode.SCOPE_BASED, scenario_id, run_id, {"initiative_count": len(forecasts)})

        return ScopeForecastResult(
            scenario_id=scenario_id,
            simulation_count=n,
            initiative_forecasts=tuple(forecasts),
            warnings=tuple(warnings),
            duration_ms=duration_ms,
            run_id=run_id,
        )

    def _prepare(self, scope_items: Sequence[ScopeItem]) -> list[SampledScopeItem]:
        out: list[SampledScopeItem] = []
        for si in scope_items:
            prepared = prepare_scope_item(si, self.rng)
            if prepared is not None:
                out.append(prepared)
        return out

    # --- Mode B -------------------------------------------------------------

    def run_empirical_forecast(
        self,
        initiative_ids: Sequence[str],
        simulation_count: int | None = None,
        confidence_levels: Sequence[float] | None = None,
    ) -> EmpiricalForecastResult:
        n = self._simulation_count(simulation_count)
        levels = self._confidence_levels(confidence_levels)
        threshold = self.settings.data_quality.min_historical_completions
        started = time.perf_counter()

        warnings: list[str] = []
        cycle_times = historical_cycle_times(self.status_log.get_transitions())
        low_confidence = len(cycle_times) < threshold
        if not cycle_times:
            warnings.append("No historical cycle time data available (no completed RESOURCING->COMPLETE cycles found)")
        elif low_confidence:
            warnings.append(
                f"Low confidence: only {len(cycle_times)} historical data points (minimum {threshold} recommended)"
            )

        initiatives = self.store.get_initiatives(list(initiative_ids))
        found = {init.id for init in initiatives}
        for iid in initiative_ids:
            if iid not in found:
                warnings.append(f"Initiative {iid} not found")

        starts = resourcing_starts(
            self.status_log.get_transitions(initiative_ids=list(initiative_ids), to_status=InitiativeStatus.RESOURCING)
        )
        now = self.clock()
        for init in initiatives:
            if init.id not in starts:
                warnings.append(f'Initiative "{init.title}": no RESOURCING transition found, elapsed days set to 0')

        sampler = bootstrap_sampler(cycle_times, self.rng) if cycle_times else None
        forecasts: list[EmpiricalInitiativeForecast] = []
        for init in initiatives:
            start = starts.get(init.id)
            elapsed = days_between(start, now) if start is not None else 0.0

            if sampler is None:
                zeros = tuple(PercentileResult(level=level, value=0.0) for level in levels)
                total_pct, remaining_pct = zeros, zeros
            else:
                totals = run_simulation(n, sampler)
                remaining = simulation_from_values(np.maximum(totals.values - elapsed, 0.0))
                total_pct = tuple(compute_percentiles(totals, levels))
                remaining_pct = tuple(compute_percentiles(remaining, levels))

            forecasts.append(
                EmpiricalInitiativeForecast(
                    initiative_id=init.id,
                    initiative_title=init.title,
                    current_status=init.status.value,
                    elapsed_days=_round_half_up(elapsed),
                    percentiles=total_pct,
                    estimated_completion_days=remaining_pct,
                )
            )

        duration_ms = _elapsed_ms(started)
        logger.info(
            "Empirical forecast: %d initiative(s), %d historical point(s), %d iteration(s) in %d ms",
            len(forecasts),
            len(cycle_times),
            n,
            duration_ms,
        )
        for w in warnings:
            logger.warning("Empirical forecast: %s", w)

        run_id = self._record(
            ForecastRunRecord(
                mode=ForecastMode.EMPIRICAL.value,
                scenario_id=None,
                initiative_ids=tuple(initiative_ids),
                simulation_count=n,
                confidence_levels=levels,
                created_at=self.clock(),
                duration_ms=duration_ms,
                warnings=tuple(warnings),
                input_snapshot={
                    "historical_data_points": len(cycle_times),
                    "initiative_count": len(initiatives),
                    "low_confidence": low_confidence,
                },
                data_quality={
                    "score": max(5, len(cycle_times) * 3) if low_confidence else min(100, 30 + len(cycle_times)),
                    "issues": [w for w in warnings if "confidence" in w or "No historical" in w],
                },
            )
        )
        self._publish(ForecastMode.EMPIRICAL, None, run_id, {"historical_data_points": len(cycle_times)})

        return EmpiricalForecastResult(
            simulation_count=n,
            historical_data_points=len(cycle_times),
            low_confidence=low_confidence,
            initiative_forecasts=tuple(forecasts),
            warnings=tuple(warnings),
            duration_ms=duration_ms,
            run_id=run_id,
        )

    # --- Data quality -------------------------------------------------------

    def assess_data_quality(
        self,
        scenario_id: str | None = None,
        initiative_ids: Sequence[str] | None = None,
    ) -> DataQualityResult:
        """Score 0..100 for how much to trust either forecast mode."""
        dq = self.settings.data_quality

        if initiative_ids:
            scope_items = self.store.get_scope_items(list(initiative_ids))
        elif scenario_id is not None:
            allocated = list(
                dict.fromkeys(a.initiative_id for a in self.store.get_allocations(scenario_id) if a.initiative_id)
            )
            scope_items = self.store.get_scope_items(allocated) if allocated else self.store.get_all_scope_items()
        else:
            scope_items = self.store.get_all_scope_items()

        total = len(scope_items)
        with_estimates = sum(1 for si in scope_items if si.has_estimates)
        with_distributions = sum(1 for si in scope_items if si.period_distributions)
        estimate_coverage = with_estimates / total if total else 0.0
        distribution_coverage = with_distributions / total if total else 0.0

        completed = {t.initiative_id for t in self.status_log.get_transitions(to_status=InitiativeStatus.COMPLETE)}
        historical = len(completed)
        mode_b_viable = historical >= dq.min_historical_completions

        score = _round_half_up(
            dq.estimate_weight * estimate_coverage
            + dq.distribution_weight * distribution_coverage
            + dq.history_weight * min(1.0, historical / dq.min_historical_completions)
        )

        issues: list[str] = []
        if total == 0:
            issues.append("No scope items found")
        else:
            if with_estimates < total:
                issues.append(f"{total - with_estimates} of {total} scope items missing P50/P90 estimates")
            if with_distributions < total:
                issues.append(f"{total - with_distributions} of {total} scope items missing period distributions")
        if not mode_b_viable:
            issues.append(
                f"Only {historical} historical completions "
                f"(need {dq.min_historical_completions} for empirical forecasting)"
            )

        return DataQualityResult(
            score=score,
            confidence=self.confidence_for(score),
            details=DataQualityDetails(
                total_scope_items=total,
                scope_items_with_estimates=with_estimates,
                estimate_coverage=estimate_coverage,
                scope_items_with_distributions=with_distributions,
                distribution_coverage=distribution_coverage,
                historical_completions=historical,
                mode_b_viable=mode_b_viable,
            ),
            issues=tuple(issues),
        )

    def confidence_for(self, score: float) -> Confidence:
        dq = self.settings.data_quality
        if score >= dq.good_threshold:
            return "good"
        if score >= dq.moderate_threshold:
            return "moderate"
        return "low"

    # --- Helpers ------------------------------------------------------------

    def _simulation_count(self, requested: int | None) -> int:
        n = self.settings.simulation.simulation_count if requested is None else int(requested)
        if n < 1:
            raise InvalidParameterError("Simulation count must be >= 1")
        return n

    def _confidence_levels(self, requested: Sequence[float] | None) -> tuple[float, ...]:
        if requested is None:
            return tuple(self.settings.simulation.confidence_levels)
        return tuple(float(level) for level in requested)

    def _record(self, record: ForecastRunRecord) -> str | None:
        try:
            return self.audit_sink.record_forecast_run(record)
        except Exception:
            logger.exception("Failed to record %s forecast run", record.mode)
            return None

    def _publish(self, mode: ForecastMode, scenario_id: str | None, run_id: str | None, summary: Mapping[str, Any]) -> None:
        if self.bus is None:
            return
        self.bus.publish(
            ForecastRunCompleted(
                occurred_at=self.clock(),
                mode=mode.value,
                scenario_id=scenario_id,
                run_id=run_id,
                summary=dict(summary),
            )
        )
