"""Mode B inputs derived from the initiative status log."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

import numpy as np

from capacity_engine.common.errors import InvalidParameterError
from capacity_engine.common.time_utils import days_between
from capacity_engine.planning.models import InitiativeStatus, StatusTransition
from capacity_engine.simulation.kernel import SampleFn, resolve_rng


@dataclass(frozen=True)
class StatusDuration:
    status: InitiativeStatus
    avg_days: float
    count: int


def resourcing_starts(transitions: Iterable[StatusTransition]) -> dict[str, datetime]:
    """Earliest RESOURCING transition per initiative."""
    starts: dict[str, datetime] = {}
    for t in transitions:
        if t.to_status != InitiativeStatus.RESOURCING:
            continue
        current = starts.get(t.initiative_id)
        if current is None or t.transitioned_at < current:
            starts[t.initiative_id] = t.transitioned_at
    return starts


def completions(transitions: Iterable[StatusTransition]) -> dict[str, datetime]:
    """Latest COMPLETE transition per initiative."""
    ends: dict[str, datetime] = {}
    for t in transitions:
        if t.to_status != InitiativeStatus.COMPLETE:
            continue
        current = ends.get(t.initiative_id)
        if current is None or t.transitioned_at > current:
            ends[t.initiative_id] = t.transitioned_at
    return ends


def historical_cycle_times(transitions: Sequence[StatusTransition]) -> list[float]:
    """Days from first RESOURCING to last COMPLETE for every finished initiative.

    Initiatives that never entered RESOURCING are ignored, as are
    non-positive durations (a COMPLETE logged before RESOURCING).
    """
    starts = resourcing_starts(transitions)
    ends = completions(transitions)

    out: list[float] = []
    for initiative_id, start in starts.items():
        end = ends.get(initiative_id)
        if end is None:
            continue
        days = days_between(start, end)
        if days > 0:
            out.append(days)
    return out


def bootstrap_sampler(cycle_times: Sequence[float], rng: np.random.Generator | None = None) -> SampleFn:
    """Uniform draw with replacement from the observed cycle times."""
    values = np.asarray(cycle_times, dtype=float)
    if values.size == 0:
        raise InvalidParameterError("Cannot bootstrap from an empty sample")

    def sample() -> float:
        return float(values[resolve_rng(rng).integers(0, values.size)])

    return sample


def status_durations(
    transitions: Iterable[StatusTransition],
    initiative_ids: Sequence[str] | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> list[StatusDuration]:
    """Average days spent in each status.

    Time in a status runs from the transition into it until the same
    initiative's next transition. Filters apply before pairing.
    """
    wanted = set(initiative_ids) if initiative_ids else None
    rows = [
        t
        for t in transitions
        if (wanted is None or t.initiative_id in wanted)
        and (from_date is None or t.transitioned_at >= from_date)
        and (to_date is None or t.transitioned_at <= to_date)
    ]
    rows.sort(key=lambda t: (t.initiative_id, t.transitioned_at))

    by_status: dict[InitiativeStatus, list[float]] = defaultdict(list)
    for current, nxt in zip(rows, rows[1:]):
        if current.initiative_id != nxt.initiative_id:
            continue
        by_status[current.to_status].append(days_between(current.transitioned_at, nxt.transitioned_at))

    return [
        StatusDuration(status=status, avg_days=round(sum(days) / len(days), 2), count=len(days))
        for status, days in by_status.items()
    ]
