from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Mapping

from pydantic import BaseModel, Field


class PeriodType(str, Enum):
    QUARTER = "QUARTER"
    MONTH = "MONTH"
    CUSTOM = "CUSTOM"


class InitiativeStatus(str, Enum):
    PROPOSED = "PROPOSED"
    SCOPING = "SCOPING"
    RESOURCING = "RESOURCING"
    IN_EXECUTION = "IN_EXECUTION"
    COMPLETE = "COMPLETE"
    ON_HOLD = "ON_HOLD"
    CANCELLED = "CANCELLED"


ACTIVE_STATUSES: frozenset[InitiativeStatus] = frozenset(
    {InitiativeStatus.RESOURCING, InitiativeStatus.IN_EXECUTION}
)


class EmploymentType(str, Enum):
    FULL_TIME = "FULL_TIME"
    PART_TIME = "PART_TIME"
    CONTRACTOR = "CONTRACTOR"
    INTERN = "INTERN"


class PlanningMode(str, Enum):
    LEGACY = "LEGACY"
    TOKEN = "TOKEN"


@dataclass(frozen=True)
class Period:
    id: str
    label: str
    start_date: date
    end_date: date  # inclusive
    period_type: PeriodType = PeriodType.QUARTER

    @property
    def days(self) -> int:
        return (self.end_date - self.start_date).days + 1


@dataclass(frozen=True)
class PeriodDistribution:
    period_id: str
    distribution: float  # share of the scope item's effort landing in this period


@dataclass(frozen=True)
class ScopeItem:
    id: str
    initiative_id: str
    name: str
    skill_demand: Mapping[str, float] = field(default_factory=dict)  # hours per skill
    period_distributions: tuple[PeriodDistribution, ...] = ()
    estimate_p50: float | None = None
    estimate_p90: float | None = None

    @property
    def has_estimates(self) -> bool:
        return self.estimate_p50 is not None and self.estimate_p90 is not None

    def distribution_for(self, period_id: str) -> float:
        return sum(pd.distribution for pd in self.period_distributions if pd.period_id == period_id)


@dataclass(frozen=True)
class Initiative:
    id: str
    title: str
    status: InitiativeStatus
    scope_items: tuple[ScopeItem, ...] = ()


@dataclass(frozen=True)
class EmployeeSkill:
    name: str
    proficiency: int = 3  # 1..5


@dataclass(frozen=True)
class CapacityCalendarEntry:
    period_id: str
    hours_available: float


@dataclass(frozen=True)
class Employee:
    id: str
    name: str
    hours_per_week: float = 40.0
    employment_type: EmploymentType = EmploymentType.FULL_TIME
    skills: tuple[EmployeeSkill, ...] = ()
    capacity_calendar: tuple[CapacityCalendarEntry, ...] = ()

    @property
    def skill_names(self) -> frozenset[str]:
        return frozenset(s.name for s in self.skills)


@dataclass(frozen=True)
class AllocationPeriod:
    period_id: str
    overlap_ratio: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "overlap_ratio", min(1.0, max(0.0, float(self.overlap_ratio))))


@dataclass(frozen=True)
class Allocation:
    id: str
    scenario_id: str
    employee_id: str
    percentage: float
    start_date: date
    end_date: date
    initiative_id: str | None = None  # None means non-project work
    periods: tuple[AllocationPeriod, ...] = ()

    def overlap_for(self, period_id: str) -> float:
        for ap in self.periods:
            if ap.period_id == period_id:
                return ap.overlap_ratio
        return 0.0


def overlap_ratio(start: date, end: date, period: Period) -> float:
    """Share of ``period`` (inclusive days) covered by [start, end]."""
    overlap_start = max(start, period.start_date)
    overlap_end = min(end, period.end_date)
    if overlap_start > overlap_end:
        return 0.0
    overlap_days = (overlap_end - overlap_start).days + 1
    return min(1.0, overlap_days / period.days)


def allocation_periods(start: date, end: date, periods: tuple[Period, ...] | list[Period]) -> tuple[AllocationPeriod, ...]:
    out: list[AllocationPeriod] = []
    for p in periods:
        ratio = overlap_ratio(start, end, p)
        if ratio > 0:
            out.append(AllocationPeriod(period_id=p.id, overlap_ratio=ratio))
    return tuple(out)


class ScenarioAssumptions(BaseModel):
    """Knobs that shape effective capacity for a scenario."""

    allocation_cap_percentage: float = Field(default=100.0, ge=0.0)
    buffer_percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    proficiency_weight_enabled: bool = Field(default=True)
    include_contractors: bool = Field(default=True)
    hours_per_period: float = Field(default=520.0, description="Fallback when hours/week is unknown.")

    model_config = {"frozen": True}


@dataclass(frozen=True)
class PriorityRanking:
    initiative_id: str
    rank: int


@dataclass(frozen=True)
class Scenario:
    id: str
    name: str
    period_ids: tuple[str, ...]
    planning_mode: PlanningMode = PlanningMode.LEGACY
    assumptions: ScenarioAssumptions = field(default_factory=ScenarioAssumptions)
    priority_rankings: tuple[PriorityRanking, ...] = ()


@dataclass(frozen=True)
class StatusTransition:
    initiative_id: str
    to_status: InitiativeStatus
    transitioned_at: datetime
    from_status: InitiativeStatus | None = None


@dataclass(frozen=True)
class SkillPool:
    id: str
    name: str
    is_active: bool = True


@dataclass(frozen=True)
class TokenCalibration:
    skill_pool_id: str
    token_per_hour: float
    effective_date: date


@dataclass(frozen=True)
class TokenSupply:
    scenario_id: str
    skill_pool_id: str
    tokens: float


@dataclass(frozen=True)
class TokenDemand:
    scenario_id: str
    initiative_id: str
    skill_pool_id: str
    tokens_p50: float
    tokens_p90: float | None = None
