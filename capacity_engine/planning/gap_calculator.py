from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Sequence

from capacity_engine.adapters.memory import NullCache
from capacity_engine.common.errors import NotFoundError
from capacity_engine.common.time_utils import utcnow
from capacity_engine.config import EngineSettings
from capacity_engine.integration.event_bus import EventBus
from capacity_engine.integration.events import GapCalculated, ScenarioInputsChanged
from capacity_engine.planning.models import (
    ACTIVE_STATUSES,
    Allocation,
    Employee,
    EmploymentType,
    Period,
    Scenario,
    ScenarioAssumptions,
)
from capacity_engine.planning.ports import CachePort, PlanningStore, scenario_cache_key
from capacity_engine.planning.results import (
    SEVERITY_ORDER,
    AffectedInitiative,
    CapacityBySkillPeriod,
    DemandBySkillPeriod,
    EmployeeContribution,
    GapEntry,
    GapIssues,
    GapResult,
    GapSummary,
    InitiativeContribution,
    OverallocatedAssignment,
    Overallocation,
    PeriodInfo,
    Severity,
    Shortage,
    SkillMismatch,
)


logger = logging.getLogger(__name__)

WEEKS_PER_QUARTER = 13


def shortage_severity(shortage_percentage: float) -> Severity:
    if shortage_percentage >= 50:
        return "critical"
    if shortage_percentage >= 30:
        return "high"
    if shortage_percentage >= 15:
        return "medium"
    return "low"


def gap_utilization(demand_hours: float, capacity_hours: float) -> float:
    """Demand as a percentage of capacity, reported as 100 when capacity is zero."""
    if capacity_hours > 0:
        return demand_hours / capacity_hours * 100.0
    return 100.0 if demand_hours > 0 else 0.0


def base_hours_for_period(employee: Employee, period: Period, assumptions: ScenarioAssumptions) -> float:
    entries = [e for e in employee.capacity_calendar if e.period_id == period.id]
    if entries:
        return float(sum(e.hours_available for e in entries))
    return float(employee.hours_per_week * WEEKS_PER_QUARTER) or float(assumptions.hours_per_period)


@dataclass
class _DemandCell:
    total_hours: float = 0.0
    breakdown: list[InitiativeContribution] = field(default_factory=list)


@dataclass
class _CapacityCell:
    total_hours: float = 0.0
    effective_hours: float = 0.0
    breakdown: list[EmployeeContribution] = field(default_factory=list)


@dataclass
class GapCalculator:
    """Supply/demand gap analysis for a scenario, per skill and period.

    Results are memoised in ``cache`` keyed by scenario id. Publishing any
    ScenarioInputsChanged event on ``bus`` evicts the entry.
    """

    store: PlanningStore
    cache: CachePort = field(default_factory=NullCache)
    settings: EngineSettings = field(default_factory=EngineSettings)
    bus: EventBus | None = None
    clock: Callable[[], datetime] = utcnow

    def __post_init__(self) -> None:
        if self.bus is not None:
            self.bus.subscribe(ScenarioInputsChanged, self._on_inputs_changed)

    def close(self) -> None:
        """Stop listening for invalidation events on ``bus``."""
        if self.bus is not None:
            self.bus.unsubscribe(ScenarioInputsChanged, self._on_inputs_changed)

    def _on_inputs_changed(self, e: ScenarioInputsChanged) -> None:
        logger.debug("Invalidating calculations for scenario %s (%s)", e.scenario_id, type(e).__name__)
        self.invalidate_cache(e.scenario_id)

    # --- Public API ---------------------------------------------------------

    def calculate(
        self,
        scenario_id: str,
        skip_cache: bool = False,
        include_breakdown: bool = True,
    ) -> GapResult:
        use_cache = self.settings.cache.enabled and not skip_cache
        ttl = self.settings.cache.calculation_ttl_seconds

        if use_cache:
            cached = self._cache_get(scenario_id)
            if cached is not None:
                hit = cached.as_cache_hit(self.clock() + timedelta(seconds=ttl))
                return hit if include_breakdown else _strip_breakdowns(hit)

        scenario = self.store.get_scenario(scenario_id)
        if scenario is None:
            raise NotFoundError("Scenario", scenario_id)

        periods = sorted(self.store.get_periods(scenario.period_ids), key=lambda p: p.start_date)
        if len(periods) < len(scenario.period_ids):
            logger.warning(
                "Scenario %s references %d unknown period(s)",
                scenario_id,
                len(scenario.period_ids) - len(periods),
            )
        allocations = self.store.get_allocations(scenario_id)
        employees = self.store.get_employees({a.employee_id for a in allocations})

        demand = self._calculate_demand(scenario, periods)
        capacity = self._calculate_capacity(allocations, employees, periods, scenario.assumptions)
        gap_analysis = self._calculate_gap_analysis(demand, capacity, periods)
        issues = GapIssues(
            shortages=tuple(self._identify_shortages(demand, capacity)),
            overallocations=tuple(self._identify_overallocations(allocations, employees, periods)),
            skill_mismatches=tuple(self._identify_skill_mismatches(allocations, employees)),
        )
        summary = self._calculate_summary(demand, capacity, issues, periods, scenario, allocations)

        result = GapResult(
            scenario_id=scenario.id,
            scenario_name=scenario.name,
            periods=tuple(
                PeriodInfo(
                    period_id=p.id,
                    period_label=p.label,
                    period_type=p.period_type.value,
                    start_date=p.start_date,
                    end_date=p.end_date,
                )
                for p in periods
            ),
            calculated_at=self.clock(),
            demand_by_skill_period=tuple(demand),
            capacity_by_skill_period=tuple(capacity),
            gap_analysis=tuple(gap_analysis),
            issues=issues,
            summary=summary,
            cache_hit=False,
        )

        if self.settings.cache.enabled:
            self._cache_set(scenario_id, result, ttl)

        if self.bus is not None:
            self.bus.publish(
                GapCalculated(
                    occurred_at=self.clock(),
                    scenario_id=scenario_id,
                    total_shortages=summary.total_shortages,
                    overall_gap=summary.overall_gap,
                )
            )
        return result if include_breakdown else _strip_breakdowns(result)

    def invalidate_cache(self, scenario_id: str) -> None:
        try:
            self.cache.delete(scenario_cache_key(scenario_id))
        except Exception:
            logger.warning("Cache delete failed for scenario %s", scenario_id, exc_info=True)

    # --- Demand -------------------------------------------------------------

    def _calculate_demand(
        self,
        scenario: Scenario,
        periods: Sequence[Period],
    ) -> list[DemandBySkillPeriod]:
        if not scenario.priority_rankings:
            return []

        rank_map = {pr.initiative_id: pr.rank for pr in scenario.priority_rankings}
        initiatives = [
            init
            for init in self.store.get_initiatives(list(rank_map))
            if init.status in ACTIVE_STATUSES
        ]

        cells: dict[tuple[str, str], _DemandCell] = defaultdict(_DemandCell)
        for init in initiatives:
            rank = rank_map.get(init.id, 0)
            for si in init.scope_items:
                for period in periods:
                    weight = si.distribution_for(period.id)
                    if weight == 0:
                        continue
                    for skill, hours in si.skill_demand.items():
                        hours_for_period = float(hours) * weight
                        cell = cells[(period.id, skill)]
                        cell.total_hours += hours_for_period
                        cell.breakdown.append(
                            InitiativeContribution(
                                initiative_id=init.id,
                                initiative_title=init.title,
                                hours=hours_for_period,
                                rank=rank,
                            )
                        )

        labels = {p.id: p.label for p in periods}
        out = [
            DemandBySkillPeriod(
                period_id=period_id,
                period_label=labels[period_id],
                skill=skill,
                total_hours=cell.total_hours,
                initiative_breakdown=tuple(sorted(cell.breakdown, key=lambda c: c.rank)),
            )
            for (period_id, skill), cell in cells.items()
        ]
        return _sort_by_period_and_skill(out, periods)

    # --- Capacity -----------------------------------------------------------

    def _calculate_capacity(
        self,
        allocations: Sequence[Allocation],
        employees: dict[str, Employee],
        periods: Sequence[Period],
        assumptions: ScenarioAssumptions,
    ) -> list[CapacityBySkillPeriod]:
        by_employee: dict[str, list[Allocation]] = defaultdict(list)
        for alloc in allocations:
            employee = employees.get(alloc.employee_id)
            if employee is None:
                logger.warning("Allocation %s references unknown employee %s", alloc.id, alloc.employee_id)
                continue
            if not assumptions.include_contractors and employee.employment_type == EmploymentType.CONTRACTOR:
                continue
            by_employee[alloc.employee_id].append(alloc)

        proficiency_weighted = assumptions.proficiency_weight_enabled
        buffer_multiplier = 1.0 - assumptions.buffer_percentage / 100.0

        cells: dict[tuple[str, str], _CapacityCell] = defaultdict(_CapacityCell)
        for employee_id, emp_allocs in by_employee.items():
            employee = employees[employee_id]
            for period in periods:
                total_pct = sum(a.percentage * a.overlap_for(period.id) for a in emp_allocs)
                capped_pct = min(total_pct, assumptions.allocation_cap_percentage)
                if capped_pct <= 0:
                    continue

                allocated_hours = base_hours_for_period(employee, period, assumptions) * (capped_pct / 100.0)
                for skill in employee.skills:
                    proficiency_multiplier = skill.proficiency / 5.0 if proficiency_weighted else 1.0
                    effective = allocated_hours * proficiency_multiplier * buffer_multiplier

                    cell = cells[(period.id, skill.name)]
                    cell.total_hours += allocated_hours
                    cell.effective_hours += effective
                    cell.breakdown.append(
                        EmployeeContribution(
                            employee_id=employee.id,
                            employee_name=employee.name,
                            base_hours=allocated_hours,
                            proficiency=skill.proficiency,
                            effective_hours=effective,
                            allocation_percentage=capped_pct,
                        )
                    )

        labels = {p.id: p.label for p in periods}
        out = [
            CapacityBySkillPeriod(
                period_id=period_id,
                period_label=labels[period_id],
                skill=skill,
                total_hours=cell.total_hours,
                effective_hours=cell.effective_hours,
                employee_breakdown=tuple(cell.breakdown),
            )
            for (period_id, skill), cell in cells.items()
        ]
        return _sort_by_period_and_skill(out, periods)

    # --- Gap & issues -------------------------------------------------------

    def _calculate_gap_analysis(
        self,
        demand: Sequence[DemandBySkillPeriod],
        capacity: Sequence[CapacityBySkillPeriod],
        periods: Sequence[Period],
    ) -> list[GapEntry]:
        demand_map = {(d.period_id, d.skill): d.total_hours for d in demand}
        capacity_map = {(c.period_id, c.skill): c.effective_hours for c in capacity}
        labels = {p.id: p.label for p in periods}

        out: list[GapEntry] = []
        for key in dict.fromkeys([*capacity_map, *demand_map]):
            period_id, skill = key
            demand_hours = demand_map.get(key, 0.0)
            capacity_hours = capacity_map.get(key, 0.0)
            out.append(
                GapEntry(
                    period_id=period_id,
                    period_label=labels[period_id],
                    skill=skill,
                    demand_hours=demand_hours,
                    capacity_hours=capacity_hours,
                    gap=capacity_hours - demand_hours,
                    utilization_percentage=gap_utilization(demand_hours, capacity_hours),
                )
            )
        return _sort_by_period_and_skill(out, periods)

    def _identify_shortages(
        self,
        demand: Sequence[DemandBySkillPeriod],
        capacity: Sequence[CapacityBySkillPeriod],
    ) -> list[Shortage]:
        capacity_map = {(c.period_id, c.skill): c.effective_hours for c in capacity}

        shortages: list[Shortage] = []
        for d in demand:
            capacity_hours = capacity_map.get((d.period_id, d.skill), 0.0)
            gap = capacity_hours - d.total_hours
            if gap >= 0:
                continue
            shortage_hours = -gap
            shortage_pct = shortage_hours / d.total_hours * 100.0 if d.total_hours > 0 else 0.0
            shortages.append(
                Shortage(
                    period_id=d.period_id,
                    period_label=d.period_label,
                    skill=d.skill,
                    demand_hours=d.total_hours,
                    capacity_hours=capacity_hours,
                    shortage_hours=shortage_hours,
                    shortage_percentage=shortage_pct,
                    severity=shortage_severity(shortage_pct),
                    affected_initiatives=tuple(
                        AffectedInitiative(
                            initiative_id=c.initiative_id,
                            initiative_title=c.initiative_title,
                            demand_hours=c.hours,
                        )
                        for c in d.initiative_breakdown
                    ),
                )
            )

        shortages.sort(key=lambda s: (SEVERITY_ORDER[s.severity], -s.shortage_percentage))
        return shortages

    def _identify_overallocations(
        self,
        allocations: Sequence[Allocation],
        employees: dict[str, Employee],
        periods: Sequence[Period],
    ) -> list[Overallocation]:
        titles = self._initiative_titles(allocations)
        totals: dict[tuple[str, str], float] = defaultdict(float)
        parts: dict[tuple[str, str], list[OverallocatedAssignment]] = defaultdict(list)

        for alloc in allocations:
            for period in periods:
                overlap = alloc.overlap_for(period.id)
                if overlap == 0:
                    continue
                key = (alloc.employee_id, period.id)
                effective_pct = alloc.percentage * overlap
                totals[key] += effective_pct
                parts[key].append(
                    OverallocatedAssignment(
                        initiative_id=alloc.initiative_id,
                        initiative_title=titles.get(alloc.initiative_id) if alloc.initiative_id else None,
                        percentage=effective_pct,
                        start_date=alloc.start_date,
                        end_date=alloc.end_date,
                    )
                )

        labels = {p.id: p.label for p in periods}
        out: list[Overallocation] = []
        for (employee_id, period_id), total in totals.items():
            if total <= 100:
                continue
            employee = employees.get(employee_id)
            out.append(
                Overallocation(
                    employee_id=employee_id,
                    employee_name=employee.name if employee is not None else employee_id,
                    period_id=period_id,
                    period_label=labels[period_id],
                    total_allocation_percentage=total,
                    overallocation_percentage=total - 100.0,
                    allocations=tuple(parts[(employee_id, period_id)]),
                )
            )

        out.sort(key=lambda o: o.overallocation_percentage, reverse=True)
        return out

    def _identify_skill_mismatches(
        self,
        allocations: Sequence[Allocation],
        employees: dict[str, Employee],
    ) -> list[SkillMismatch]:
        initiative_ids = list(dict.fromkeys(a.initiative_id for a in allocations if a.initiative_id))
        initiatives = {init.id: init for init in self.store.get_initiatives(initiative_ids)}

        mismatches: list[SkillMismatch] = []
        for alloc in allocations:
            if alloc.initiative_id is None:
                continue
            initiative = initiatives.get(alloc.initiative_id)
            employee = employees.get(alloc.employee_id)
            if initiative is None or employee is None:
                continue

            required: dict[str, None] = {}
            for si in initiative.scope_items:
                for skill in si.skill_demand:
                    required.setdefault(skill, None)
            if not required:
                continue

            has = employee.skill_names
            missing = tuple(s for s in required if s not in has)
            if missing:
                mismatches.append(
                    SkillMismatch(
                        employee_id=employee.id,
                        employee_name=employee.name,
                        initiative_id=initiative.id,
                        initiative_title=initiative.title,
                        required_skills=tuple(required),
                        employee_skills=tuple(s.name for s in employee.skills),
                        missing_skills=missing,
                    )
                )
        return mismatches

    def _calculate_summary(
        self,
        demand: Sequence[DemandBySkillPeriod],
        capacity: Sequence[CapacityBySkillPeriod],
        issues: GapIssues,
        periods: Sequence[Period],
        scenario: Scenario,
        allocations: Sequence[Allocation],
    ) -> GapSummary:
        total_demand = sum(d.total_hours for d in demand)
        total_capacity = sum(c.effective_hours for c in capacity)
        return GapSummary(
            total_demand_hours=total_demand,
            total_capacity_hours=total_capacity,
            overall_gap=total_capacity - total_demand,
            overall_utilization=total_demand / total_capacity * 100.0 if total_capacity > 0 else 0.0,
            total_shortages=len(issues.shortages),
            total_overallocations=len(issues.overallocations),
            total_skill_mismatches=len(issues.skill_mismatches),
            period_count=len(periods),
            skill_count=len({d.skill for d in demand} | {c.skill for c in capacity}),
            employee_count=len({a.employee_id for a in allocations}),
            initiative_count=len(scenario.priority_rankings),
        )

    # --- Helpers ------------------------------------------------------------

    def _initiative_titles(self, allocations: Sequence[Allocation]) -> dict[str, str]:
        ids = list(dict.fromkeys(a.initiative_id for a in allocations if a.initiative_id))
        return {init.id: init.title for init in self.store.get_initiatives(ids)}

    def _cache_get(self, scenario_id: str) -> GapResult | None:
        try:
            cached = self.cache.get(scenario_cache_key(scenario_id))
        except Exception:
            logger.warning("Cache read failed for scenario %s", scenario_id, exc_info=True)
            return None
        return cached if isinstance(cached, GapResult) else None

    def _cache_set(self, scenario_id: str, result: GapResult, ttl: int) -> None:
        try:
            self.cache.set(scenario_cache_key(scenario_id), result, ttl)
        except Exception:
            logger.warning("Cache write failed for scenario %s", scenario_id, exc_info=True)


def _sort_by_period_and_skill(rows: list, periods: Sequence[Period]) -> list:
    order = {p.id: i for i, p in enumerate(periods)}
    return sorted(rows, key=lambda r: (order[r.period_id], r.skill))


def _strip_breakdowns(result: GapResult) -> GapResult:
    return replace(
        result,
        demand_by_skill_period=tuple(replace(d, initiative_breakdown=()) for d in result.demand_by_skill_period),
        capacity_by_skill_period=tuple(replace(c, employee_breakdown=()) for c in result.capacity_by_skill_period),
    )
