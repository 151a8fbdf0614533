from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping


@dataclass(frozen=True)
class DomainEvent:
    """Base type for all domain events."""

    occurred_at: datetime


# --- Scenario write events ---------------------------------------------------


@dataclass(frozen=True)
class ScenarioInputsChanged(DomainEvent):
    """Anything that makes a scenario's derived calculations stale."""

    scenario_id: str


@dataclass(frozen=True)
class AllocationsChanged(ScenarioInputsChanged):
    pass


@dataclass(frozen=True)
class AssumptionsChanged(ScenarioInputsChanged):
    pass


@dataclass(frozen=True)
class PriorityRankingsChanged(ScenarioInputsChanged):
    pass


# --- Engine output events ----------------------------------------------------


@dataclass(frozen=True)
class GapCalculated(DomainEvent):
    scenario_id: str
    total_shortages: int
    overall_gap: float


@dataclass(frozen=True)
class ForecastRunCompleted(DomainEvent):
    mode: str
    scenario_id: str | None
    run_id: str | None
    summary: Mapping[str, Any]
