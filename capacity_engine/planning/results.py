from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Literal

Severity = Literal["low", "medium", "high", "critical"]

SEVERITY_ORDER: dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}


@dataclass(frozen=True)
class PeriodInfo:
    period_id: str
    period_label: str
    period_type: str
    start_date: date
    end_date: date


@dataclass(frozen=True)
class InitiativeContribution:
    initiative_id: str
    initiative_title: str
    hours: float
    rank: int


@dataclass(frozen=True)
class DemandBySkillPeriod:
    period_id: str
    period_label: str
    skill: str
    total_hours: float
    initiative_breakdown: tuple[InitiativeContribution, ...] = ()


@dataclass(frozen=True)
class EmployeeContribution:
    employee_id: str
    employee_name: str
    base_hours: float
    proficiency: int
    effective_hours: float
    allocation_percentage: float


@dataclass(frozen=True)
class CapacityBySkillPeriod:
    period_id: str
    period_label: str
    skill: str
    total_hours: float
    effective_hours: float
    employee_breakdown: tuple[EmployeeContribution, ...] = ()


@dataclass(frozen=True)
class GapEntry:
    period_id: str
    period_label: str
    skill: str
    demand_hours: float
    capacity_hours: float
    gap: float
    utilization_percentage: float


@dataclass(frozen=True)
class AffectedInitiative:
    initiative_id: str
    initiative_title: str
    demand_hours: float


@dataclass(frozen=True)
class Shortage:
    period_id: str
    period_label: str
    skill: str
    demand_hours: float
    capacity_hours: float
    shortage_hours: float
    shortage_percentage: float
    severity: Severity
    affected_initiatives: tuple[AffectedInitiative, ...] = ()


@dataclass(frozen=True)
class OverallocatedAssignment:
    initiative_id: str | None
    initiative_title: str | None
    percentage: float
    start_date: date
    end_date: date


@dataclass(frozen=True)
class Overallocation:
    employee_id: str
    employee_name: str
    period_id: str
    period_label: str
    total_allocation_percentage: float
    overallocation_percentage: float
    allocations: tuple[OverallocatedAssignment, ...] = ()


@dataclass(frozen=True)
class SkillMismatch:
    employee_id: str
    employee_name: str
    initiative_id: str
    initiative_title: str
    required_skills: tuple[str, ...]
    employee_skills: tuple[str, ...]
    missing_skills: tuple[str, ...]


@dataclass(frozen=True)
class GapIssues:
    shortages: tuple[Shortage, ...] = ()
    overallocations: tuple[Overallocation, ...] = ()
    skill_mismatches: tuple[SkillMismatch, ...] = ()


@dataclass(frozen=True)
class GapSummary:
    total_demand_hours: float
    total_capacity_hours: float
    overall_gap: float
    overall_utilization: float
    total_shortages: int
    total_overallocations: int
    total_skill_mismatches: int
    period_count: int
    skill_count: int
    employee_count: int
    initiative_count: int


@dataclass(frozen=True)
class GapResult:
    scenario_id: str
    scenario_name: str
    periods: tuple[PeriodInfo, ...]
    calculated_at: datetime
    demand_by_skill_period: tuple[DemandBySkillPeriod, ...]
    capacity_by_skill_period: tuple[CapacityBySkillPeriod, ...]
    gap_analysis: tuple[GapEntry, ...]
    issues: GapIssues
    summary: GapSummary
    cache_hit: bool = False
    cache_expiry: datetime | None = None

    def as_cache_hit(self, expiry: datetime) -> "GapResult":
        return replace(self, cache_hit=True, cache_expiry=expiry)


@dataclass(frozen=True)
class DerivedDemandEntry:
    initiative_id: str
    skill_pool_id: str
    skill_pool_name: str
    tokens_p50: float
    tokens_p90: float | None


@dataclass(frozen=True)
class TokenDemandResult:
    derived_demands: tuple[DerivedDemandEntry, ...] = ()
    warnings: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class TokenLedgerPoolEntry:
    skill_pool_id: str
    pool_name: str
    supply_tokens: float
    demand_p50: float
    demand_p90: float | None
    delta: float


@dataclass(frozen=True)
class BindingConstraint:
    pool_name: str
    deficit: float


@dataclass(frozen=True)
class LedgerExplanation:
    skill_pool: str
    message: str


@dataclass(frozen=True)
class TokenLedgerSummary:
    scenario_id: str
    period_ids: tuple[str, ...]
    period_labels: tuple[str, ...]
    pools: tuple[TokenLedgerPoolEntry, ...] = ()
    binding_constraints: tuple[BindingConstraint, ...] = ()
    explanations: tuple[LedgerExplanation, ...] = ()
