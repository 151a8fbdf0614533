from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np

from capacity_engine.common.errors import InvalidParameterError, PeriodOutOfRangeError, UnknownTeamError
from capacity_engine.scheduling.models import GridWorkItem, Team


@dataclass(frozen=True)
class CapacitySlot:
    total: float
    allocated: float

    @property
    def remaining(self) -> float:
        return self.total - self.allocated

    @property
    def utilization(self) -> float:
        return _utilization(self.total, self.allocated)


@dataclass(frozen=True)
class ContentionEntry:
    team_id: str
    team_name: str
    utilization: float


def _utilization(total: float, allocated: float) -> float:
    if total > 0:
        return allocated / total
    return math.inf if allocated > 0 else 0.0


class CapacityGrid:
    """Per-team, per-period token ledger.

    Rows are teams, columns are planning periods. Every mutation returns a
    new grid; the receiver is never modified, so speculative "what-if"
    scheduling can be attempted and thrown away freely.

    ``find_feasible_window`` is a greedy forward scan.
    """

    __slots__ = ("_teams", "_index", "_totals", "_allocated", "_horizon")

    def __init__(self, teams: Sequence[Team], horizon: int) -> None:
        horizon = int(horizon)
        totals = np.zeros((len(teams), horizon), dtype=float)
        for row, team in enumerate(teams):
            caps = list(team.capacity_by_period)[:horizon]
            totals[row, : len(caps)] = caps

        self._teams: tuple[Team, ...] = tuple(teams)
        self._index: Mapping[str, int] = {t.id: i for i, t in enumerate(self._teams)}
        self._totals = totals
        self._totals.setflags(write=False)
        self._allocated = np.zeros_like(totals)
        self._allocated.setflags(write=False)
        self._horizon = horizon

    @classmethod
    def _derive(cls, base: "CapacityGrid", allocated: np.ndarray) -> "CapacityGrid":
        grid = cls.__new__(cls)
        grid._teams = base._teams
        grid._index = base._index
        grid._totals = base._totals
        allocated.setflags(write=False)
        grid._allocated = allocated
        grid._horizon = base._horizon
        return grid

    # --- Properties ---------------------------------------------------------

    @property
    def horizon(self) -> int:
        return self._horizon

    @property
    def team_ids(self) -> tuple[str, ...]:
        return tuple(t.id for t in self._teams)

    # --- Mutations (copy-on-write) -----------------------------------------

    def allocate(self, team_id: str, period: int, amount: float) -> "CapacityGrid":
        if amount < 0:
            raise InvalidParameterError(f"Allocation amount must be >= 0, got {amount}")
        row = self._row(team_id)
        self._check_period(period)
        allocated = self._allocated.copy()
        allocated[row, period] += amount
        return CapacityGrid._derive(self, allocated)

    def deallocate(self, team_id: str, period: int, amount: float) -> "CapacityGrid":
        """Release tokens; allocation never drops below zero."""
        row = self._row(team_id)
        self._check_period(period)
        allocated = self._allocated.copy()
        allocated[row, period] = max(0.0, allocated[row, period] - amount)
        return CapacityGrid._derive(self, allocated)

    def schedule_item(self, item: GridWorkItem, start_period: int) -> "CapacityGrid":
        """Allocate every team demand of ``item`` from ``start_period``.

        Periods at or past the horizon are dropped silently.
        """
        allocated = self._allocated.copy()
        lo = max(0, start_period)
        hi = min(self._horizon, start_period + item.duration)
        for demand in item.team_demands:
            row = self._row(demand.team_id)
            if hi > lo:
                allocated[row, lo:hi] += demand.tokens_per_period
        return CapacityGrid._derive(self, allocated)

    # --- Queries ------------------------------------------------------------

    def get_slot(self, team_id: str, period: int) -> CapacitySlot:
        row = self._row(team_id)
        self._check_period(period)
        return CapacitySlot(
            total=float(self._totals[row, period]),
            allocated=float(self._allocated[row, period]),
        )

    def get_utilization(self, team_id: str, period: int) -> float:
        """allocated / total; ``math.inf`` when total is 0 but tokens are allocated."""
        return self.get_slot(team_id, period).utilization

    def find_feasible_window(self, item: GridWorkItem, earliest_start: int = 0) -> int | None:
        """Earliest start >= earliest_start where every demand fits, or None."""
        last_possible_start = self._horizon - item.duration
        for start in range(max(0, earliest_start), last_possible_start + 1):
            if self._can_fit(item, start):
                return start
        return None

    def get_contention(self, period: int) -> list[ContentionEntry]:
        """Teams by utilization, most loaded first; the head is the bottleneck."""
        self._check_period(period)
        entries = [
            ContentionEntry(
                team_id=team.id,
                team_name=team.name,
                utilization=_utilization(
                    float(self._totals[row, period]),
                    float(self._allocated[row, period]),
                ),
            )
            for row, team in enumerate(self._teams)
        ]
        entries.sort(key=lambda e: e.utilization, reverse=True)
        return entries

    # --- Internals ----------------------------------------------------------

    def _can_fit(self, item: GridWorkItem, start: int) -> bool:
        end = start + item.duration
        if end > self._horizon:
            return False
        for demand in item.team_demands:
            row = self._index.get(demand.team_id)
            if row is None:
                return False
            remaining = self._totals[row, start:end] - self._allocated[row, start:end]
            if np.any(remaining < demand.tokens_per_period):
                return False
        return True

    def _row(self, team_id: str) -> int:
        row = self._index.get(team_id)
        if row is None:
            raise UnknownTeamError(team_id)
        return row

    def _check_period(self, period: int) -> None:
        if period < 0 or period >= self._horizon:
            raise PeriodOutOfRangeError(period, self._horizon)
