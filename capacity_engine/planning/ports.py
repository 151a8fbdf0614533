from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Protocol, Sequence

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


class PlanningStore(Protocol):
    """Read access to scenarios, initiatives, employees and allocations."""

    def get_scenario(self, scenario_id: str) -> Scenario | None:
        ...

    def get_periods(self, period_ids: Sequence[str]) -> list[Period]:
        """Return the known periods among ``period_ids`` (unknown ids are dropped)."""
        ...

    def get_initiatives(self, initiative_ids: Sequence[str]) -> list[Initiative]:
        ...

    def get_scope_items(self, initiative_ids: Sequence[str]) -> list[ScopeItem]:
        ...

    def get_all_scope_items(self) -> list[ScopeItem]:
        ...

    def get_allocations(self, scenario_id: str) -> list[Allocation]:
        ...

    def get_employees(self, employee_ids: Iterable[str]) -> dict[str, Employee]:
        ...

    def get_skill_pools(self) -> list[SkillPool]:
        ...

    def get_token_calibrations(self) -> list[TokenCalibration]:
        ...

    def get_token_supplies(self, scenario_id: str) -> list[TokenSupply]:
        ...

    def get_token_demands(self, scenario_id: str) -> list[TokenDemand]:
        ...


class StatusLogSource(Protocol):
    def get_transitions(
        self,
        initiative_ids: Sequence[str] | None = None,
        to_status: InitiativeStatus | None = None,
    ) -> list[StatusTransition]:
        """Transitions ordered by ``transitioned_at`` ascending."""
        ...


class CachePort(Protocol):
    def get(self, key: str) -> Any | None:
        ...

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


@dataclass(frozen=True)
class ForecastRunRecord:
    mode: str
    scenario_id: str | None
    initiative_ids: tuple[str, ...]
    simulation_count: int
    confidence_levels: tuple[float, ...]
    created_at: datetime
    duration_ms: int
    warnings: tuple[str, ...] = ()
    input_snapshot: Mapping[str, Any] = field(default_factory=dict)
    data_quality: Mapping[str, Any] | None = None


class AuditSink(Protocol):
    def record_forecast_run(self, record: ForecastRunRecord) -> str:
        """Persist a forecast run and return an opaque identifier."""
        ...


def scenario_cache_key(scenario_id: str) -> str:
    return f"scenario:{scenario_id}:calculations"
