from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

from capacity_engine.planning.models import (
    Allocation,
    Employee,
    Initiative,
    InitiativeStatus,
    Period,
    Scenario,
    ScopeItem,
    SkillPool,
    StatusTransition,
    TokenCalibration,
    TokenDemand,
    TokenSupply,
)
from capacity_engine.planning.ports import ForecastRunRecord


@dataclass
class InMemoryPlanningStore:
    """Dict-backed PlanningStore used by tests, the CLI and embedding scripts."""

    scenarios: dict[str, Scenario] = field(default_factory=dict)
    periods: dict[str, Period] = field(default_factory=dict)
    initiatives: dict[str, Initiative] = field(default_factory=dict)
    employees: dict[str, Employee] = field(default_factory=dict)
    allocations: list[Allocation] = field(default_factory=list)
    skill_pools: list[SkillPool] = field(default_factory=list)
    calibrations: list[TokenCalibration] = field(default_factory=list)
    token_supplies: list[TokenSupply] = field(default_factory=list)
    token_demands: list[TokenDemand] = field(default_factory=list)

    # --- Writers ------------------------------------------------------------

    def add_scenario(self, scenario: Scenario) -> None:
        self.scenarios[scenario.id] = scenario

    def add_period(self, period: Period) -> None:
        self.periods[period.id] = period

    def add_initiative(self, initiative: Initiative) -> None:
        self.initiatives[initiative.id] = initiative

    def add_employee(self, employee: Employee) -> None:
        self.employees[employee.id] = employee

    def add_allocation(self, allocation: Allocation) -> None:
        self.allocations.append(allocation)

    def add_skill_pool(self, pool: SkillPool) -> None:
        self.skill_pools.append(pool)

    def add_calibration(self, calibration: TokenCalibration) -> None:
        self.calibrations.append(calibration)

    def add_token_supply(self, supply: TokenSupply) -> None:
        self.token_supplies.append(supply)

    def add_token_demand(self, demand: TokenDemand) -> None:
        self.token_demands.append(demand)

    # --- PlanningStore ------------------------------------------------------

    def get_scenario(self, scenario_id: str) -> Scenario | None:
        return self.scenarios.get(scenario_id)

    def get_periods(self, period_ids: Sequence[str]) -> list[Period]:
        return [self.periods[pid] for pid in period_ids if pid in self.periods]

    def get_initiatives(self, initiative_ids: Sequence[str]) -> list[Initiative]:
        return [self.initiatives[iid] for iid in initiative_ids if iid in self.initiatives]

    def get_scope_items(self, initiative_ids: Sequence[str]) -> list[ScopeItem]:
        out: list[ScopeItem] = []
        for init in self.get_initiatives(initiative_ids):
            out.extend(init.scope_items)
        return out

    def get_all_scope_items(self) -> list[ScopeItem]:
        return [si for init in self.initiatives.values() for si in init.scope_items]

    def get_allocations(self, scenario_id: str) -> list[Allocation]:
        return [a for a in self.allocations if a.scenario_id == scenario_id]

    def get_employees(self, employee_ids: Iterable[str]) -> dict[str, Employee]:
        return {eid: self.employees[eid] for eid in employee_ids if eid in self.employees}

    def get_skill_pools(self) -> list[SkillPool]:
        return list(self.skill_pools)

    def get_token_calibrations(self) -> list[TokenCalibration]:
        return list(self.calibrations)

    def get_token_supplies(self, scenario_id: str) -> list[TokenSupply]:
        return [s for s in self.token_supplies if s.scenario_id == scenario_id]

    def get_token_demands(self, scenario_id: str) -> list[TokenDemand]:
        return [d for d in self.token_demands if d.scenario_id == scenario_id]


@dataclass
class InMemoryStatusLog:
    transitions: list[StatusTransition] = field(default_factory=list)

    def log_transition(self, transition: StatusTransition) -> None:
        self.transitions.append(transition)

    def get_transitions(
        self,
        initiative_ids: Sequence[str] | None = None,
        to_status: InitiativeStatus | None = None,
    ) -> list[StatusTransition]:
        wanted = set(initiative_ids) if initiative_ids is not None else None
        rows = [
            t
            for t in self.transitions
            if (wanted is None or t.initiative_id in wanted)
            and (to_status is None or t.to_status == to_status)
        ]
        return sorted(rows, key=lambda t: t.transitioned_at)


class NullCache:
    """Cache that always misses."""

    def get(self, key: str) -> Any | None:
        return None

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        return None

    def delete(self, key: str) -> None:
        return None


@dataclass
class InMemoryCache:
    """TTL cache with an injectable monotonic clock."""

    clock: Callable[[], float] = time.monotonic
    _entries: dict[str, tuple[float, Any]] = field(default_factory=dict)

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        now = self.clock()
        self._sweep(now)
        self._entries[key] = (now + float(ttl_seconds), value)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class InMemoryAuditSink:
    records: dict[str, ForecastRunRecord] = field(default_factory=dict)

    def record_forecast_run(self, record: ForecastRunRecord) -> str:
        run_id = str(uuid.uuid4())
        self.records[run_id] = record
        return run_id
