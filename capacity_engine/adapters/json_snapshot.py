"""Load planning data exported as JSON into the in-memory adapters.

A snapshot is one object with optional top-level lists: ``periods``,
``scenarios``, ``initiatives`` (scope items nested), ``employees``,
``allocations``, ``skill_pools``, ``token_calibrations``,
``token_supplies``, ``token_demands`` and ``status_log``. Allocations
without explicit ``periods`` get overlap ratios computed against their
scenario's periods.

Schedules for the grid/validator live in separate files, see
``load_schedule``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from capacity_engine.adapters.memory import InMemoryPlanningStore, InMemoryStatusLog
from capacity_engine.common.time_utils import parse_date, parse_iso8601
from capacity_engine.planning.models import (
    Allocation,
    AllocationPeriod,
    CapacityCalendarEntry,
    Employee,
    EmployeeSkill,
    EmploymentType,
    Initiative,
    InitiativeStatus,
    Period,
    PeriodDistribution,
    PeriodType,
    PlanningMode,
    PriorityRanking,
    Scenario,
    ScenarioAssumptions,
    ScopeItem,
    SkillPool,
    StatusTransition,
    TokenCalibration,
    TokenDemand,
    TokenSupply,
    allocation_periods,
)
from capacity_engine.scheduling.models import (
    GridWorkItem,
    ScheduledItem,
    ScheduleScenario,
    Team,
    TeamAllocation,
    TeamDemand,
)


logger = logging.getLogger(__name__)


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _opt_float(v: Any) -> float | None:
    return None if v is None else float(v)


def parse_period(d: Mapping[str, Any]) -> Period:
    return Period(
        id=str(d["id"]),
        label=str(d.get("label") or d["id"]),
        start_date=parse_date(d["start_date"]),
        end_date=parse_date(d["end_date"]),
        period_type=PeriodType(d.get("type", "QUARTER")),
    )


def parse_scope_item(d: Mapping[str, Any], initiative_id: str) -> ScopeItem:
    return ScopeItem(
        id=str(d["id"]),
        initiative_id=initiative_id,
        name=str(d.get("name") or d["id"]),
        skill_demand={str(k): float(v) for k, v in (d.get("skill_demand") or {}).items()},
        period_distributions=tuple(
            PeriodDistribution(period_id=str(pd["period_id"]), distribution=float(pd["distribution"]))
            for pd in d.get("period_distributions") or []
        ),
        estimate_p50=_opt_float(d.get("estimate_p50")),
        estimate_p90=_opt_float(d.get("estimate_p90")),
    )


def parse_initiative(d: Mapping[str, Any]) -> Initiative:
    iid = str(d["id"])
    return Initiative(
        id=iid,
        title=str(d.get("title") or iid),
        status=InitiativeStatus(d.get("status", "PROPOSED")),
        scope_items=tuple(parse_scope_item(si, iid) for si in d.get("scope_items") or []),
    )


def parse_employee(d: Mapping[str, Any]) -> Employee:
    return Employee(
        id=str(d["id"]),
        name=str(d.get("name") or d["id"]),
        hours_per_week=float(d.get("hours_per_week", 40.0)),
        employment_type=EmploymentType(d.get("employment_type", "FULL_TIME")),
        skills=tuple(
            EmployeeSkill(name=str(s["name"]), proficiency=int(s.get("proficiency", 3))) for s in d.get("skills") or []
        ),
        capacity_calendar=tuple(
            CapacityCalendarEntry(period_id=str(c["period_id"]), hours_available=float(c["hours_available"]))
            for c in d.get("capacity_calendar") or []
        ),
    )


def parse_scenario(d: Mapping[str, Any]) -> Scenario:
    return Scenario(
        id=str(d["id"]),
        name=str(d.get("name") or d["id"]),
        period_ids=tuple(str(p) for p in d.get("period_ids") or []),
        planning_mode=PlanningMode(d.get("planning_mode", "LEGACY")),
        assumptions=ScenarioAssumptions.model_validate(d.get("assumptions") or {}),
        priority_rankings=tuple(
            PriorityRanking(initiative_id=str(r["initiative_id"]), rank=int(r["rank"]))
            for r in d.get("priority_rankings") or []
        ),
    )


def parse_allocation(d: Mapping[str, Any], store: InMemoryPlanningStore) -> Allocation:
    start = parse_date(d["start_date"])
    end = parse_date(d["end_date"])
    scenario_id = str(d["scenario_id"])

    if "periods" in d:
        periods = tuple(
            AllocationPeriod(period_id=str(ap["period_id"]), overlap_ratio=float(ap["overlap_ratio"]))
            for ap in d["periods"]
        )
    else:
        scenario = store.get_scenario(scenario_id)
        if scenario is None:
            logger.warning("Allocation %s references unknown scenario %s", d.get("id"), scenario_id)
            periods = ()
        else:
            periods = allocation_periods(start, end, store.get_periods(scenario.period_ids))

    initiative_id = d.get("initiative_id")
    return Allocation(
        id=str(d["id"]),
        scenario_id=scenario_id,
        employee_id=str(d["employee_id"]),
        percentage=float(d.get("percentage", 100.0)),
        start_date=start,
        end_date=end,
        initiative_id=str(initiative_id) if initiative_id is not None else None,
        periods=periods,
    )


def parse_transition(d: Mapping[str, Any]) -> StatusTransition:
    from_status = d.get("from_status")
    return StatusTransition(
        initiative_id=str(d["initiative_id"]),
        to_status=InitiativeStatus(d["to_status"]),
        transitioned_at=parse_iso8601(str(d["transitioned_at"])),
        from_status=InitiativeStatus(from_status) if from_status else None,
    )


def build_snapshot(data: Mapping[str, Any]) -> tuple[InMemoryPlanningStore, InMemoryStatusLog]:
    store = InMemoryPlanningStore()
    status_log = InMemoryStatusLog()

    # Periods and scenarios first: allocations resolve overlaps against them.
    for p in data.get("periods") or []:
        store.add_period(parse_period(p))
    for s in data.get("scenarios") or []:
        store.add_scenario(parse_scenario(s))
    for i in data.get("initiatives") or []:
        store.add_initiative(parse_initiative(i))
    for e in data.get("employees") or []:
        store.add_employee(parse_employee(e))
    for a in data.get("allocations") or []:
        store.add_allocation(parse_allocation(a, store))
    for sp in data.get("skill_pools") or []:
        store.add_skill_pool(
            SkillPool(id=str(sp["id"]), name=str(sp["name"]), is_active=bool(sp.get("is_active", True)))
        )
    for tc in data.get("token_calibrations") or []:
        store.add_calibration(
            TokenCalibration(
                skill_pool_id=str(tc["skill_pool_id"]),
                token_per_hour=float(tc["token_per_hour"]),
                effective_date=parse_date(tc["effective_date"]),
            )
        )
    for ts in data.get("token_supplies") or []:
        store.add_token_supply(
            TokenSupply(
                scenario_id=str(ts["scenario_id"]),
                skill_pool_id=str(ts["skill_pool_id"]),
                tokens=float(ts["tokens"]),
            )
        )
    for td in data.get("token_demands") or []:
        store.add_token_demand(
            TokenDemand(
                scenario_id=str(td["scenario_id"]),
                initiative_id=str(td["initiative_id"]),
                skill_pool_id=str(td["skill_pool_id"]),
                tokens_p50=float(td["tokens_p50"]),
                tokens_p90=_opt_float(td.get("tokens_p90")),
            )
        )
    for t in data.get("status_log") or []:
        status_log.log_transition(parse_transition(t))

    logger.debug(
        "Loaded snapshot: %d scenario(s), %d initiative(s), %d employee(s), %d allocation(s), %d transition(s)",
        len(store.scenarios),
        len(store.initiatives),
        len(store.employees),
        len(store.allocations),
        len(status_log.transitions),
    )
    return store, status_log


def load_snapshot(path: Path) -> tuple[InMemoryPlanningStore, InMemoryStatusLog]:
    return build_snapshot(_read_json(path))


# --- Schedules ---------------------------------------------------------------


def parse_work_item(d: Mapping[str, Any]) -> GridWorkItem:
    return GridWorkItem(
        id=str(d["id"]),
        name=str(d.get("name") or d["id"]),
        duration=int(d["duration"]),
        team_demands=tuple(
            TeamDemand(team_id=str(td["team_id"]), tokens_per_period=float(td["tokens_per_period"]))
            for td in d.get("team_demands") or []
        ),
    )


def parse_schedule(d: Mapping[str, Any]) -> ScheduleScenario:
    return ScheduleScenario(
        id=str(d["id"]),
        name=str(d.get("name") or d["id"]),
        horizon=int(d["horizon"]),
        teams=tuple(
            Team(
                id=str(t["id"]),
                name=str(t.get("name") or t["id"]),
                capacity_by_period=tuple(float(c) for c in t.get("capacity_by_period") or []),
            )
            for t in d.get("teams") or []
        ),
        items=tuple(
            ScheduledItem(
                id=str(it["id"]),
                name=str(it.get("name") or it["id"]),
                start_period=int(it["start_period"]),
                duration=int(it["duration"]),
                dependencies=tuple(str(x) for x in it.get("dependencies") or []),
                team_allocations=tuple(
                    TeamAllocation(
                        team_id=str(ta["team_id"]),
                        period_index=int(ta["period_index"]),
                        tokens=float(ta["tokens"]),
                    )
                    for ta in it.get("team_allocations") or []
                ),
            )
            for it in d.get("items") or []
        ),
    )


def load_schedule(path: Path) -> ScheduleScenario:
    return parse_schedule(_read_json(path))
