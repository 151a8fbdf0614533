from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Team:
    id: str
    name: str
    capacity_by_period: tuple[float, ...]  # tokens, indexed 0..horizon-1


@dataclass(frozen=True)
class TeamDemand:
    team_id: str
    tokens_per_period: float


@dataclass(frozen=True)
class GridWorkItem:
    """A work item to place onto a CapacityGrid."""

    id: str
    name: str
    duration: int  # periods
    team_demands: tuple[TeamDemand, ...] = ()


@dataclass(frozen=True)
class TeamAllocation:
    team_id: str
    period_index: int
    tokens: float


@dataclass(frozen=True)
class ScheduledItem:
    id: str
    name: str
    start_period: int
    duration: int
    dependencies: tuple[str, ...] = ()
    team_allocations: tuple[TeamAllocation, ...] = ()

    @property
    def end_period(self) -> int:
        """Exclusive end: the first period after the item completes."""
        return self.start_period + self.duration


@dataclass(frozen=True)
class ScheduleScenario:
    id: str
    name: str
    horizon: int
    teams: tuple[Team, ...] = ()
    items: tuple[ScheduledItem, ...] = field(default_factory=tuple)
