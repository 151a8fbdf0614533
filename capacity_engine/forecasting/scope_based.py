"""Mode A: completion forecasts driven by scope estimates and scenario capacity.

Each iteration samples the effort of every estimated scope item, spreads
it over skills (by ``skill_demand`` share) and periods (by distribution
weight), then walks the scenario's periods in order. Unmet demand spills
into the next period; the initiative completes in the first period that
leaves no skill with outstanding hours.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np

from capacity_engine.forecasting.models import CompletionCdfPoint
from capacity_engine.planning.models import ScopeItem
from capacity_engine.planning.results import GapResult
from capacity_engine.simulation.kernel import SampleFn, create_sampler

COMPLETION_TOLERANCE_HOURS = 0.001

PeriodSkillHours = dict[str, dict[str, float]]


@dataclass(frozen=True)
class PeriodCapacity:
    period_id: str
    period_label: str
    capacity_by_skill: Mapping[str, float]


@dataclass(frozen=True)
class SampledScopeItem:
    """A scope item reduced to what one simulation iteration needs."""

    scope_item_id: str
    sample: SampleFn
    skill_shares: Mapping[str, float]
    distributions: tuple[tuple[str, float], ...]


def build_period_capacity(gap: GapResult) -> list[PeriodCapacity]:
    """Effective hours per skill for each scenario period, oldest first."""
    by_period: dict[str, dict[str, float]] = defaultdict(dict)
    for entry in gap.capacity_by_skill_period:
        by_period[entry.period_id][entry.skill] = entry.effective_hours

    ordered = sorted(gap.periods, key=lambda p: p.start_date)
    return [
        PeriodCapacity(
            period_id=p.period_id,
            period_label=p.period_label,
            capacity_by_skill=dict(by_period.get(p.period_id, {})),
        )
        for p in ordered
    ]


def prepare_scope_item(item: ScopeItem, rng: np.random.Generator | None = None) -> SampledScopeItem | None:
    """Build a sampler for ``item``, or None when it cannot contribute demand."""
    if item.estimate_p50 is None or item.estimate_p50 <= 0:
        return None

    total_skill_hours = float(sum(item.skill_demand.values()))
    if total_skill_hours == 0:
        return None

    p50 = float(item.estimate_p50)
    # no P90 means no spread; a P90 below P50 is treated the same way
    p90 = max(float(item.estimate_p90), p50) if item.estimate_p90 is not None else p50

    return SampledScopeItem(
        scope_item_id=item.id,
        sample=create_sampler(p50, p90, rng),
        skill_shares={skill: float(h) / total_skill_hours for skill, h in item.skill_demand.items()},
        distributions=tuple(
            (pd.period_id, float(pd.distribution)) for pd in item.period_distributions if pd.distribution > 0
        ),
    )


def sample_initiative_effort(items: Sequence[SampledScopeItem]) -> PeriodSkillHours:
    """One draw of demand hours keyed by period id, then skill."""
    demand: PeriodSkillHours = defaultdict(dict)
    for item in items:
        sampled = item.sample()
        for period_id, weight in item.distributions:
            skill_map = demand[period_id]
            for skill, share in item.skill_shares.items():
                skill_map[skill] = skill_map.get(skill, 0.0) + share * sampled * weight
    return demand


def walk_periods(demand: Mapping[str, Mapping[str, float]], periods: Sequence[PeriodCapacity]) -> int:
    """Index of the first period with no outstanding demand, or ``len(periods)``."""
    remaining: dict[str, float] = {}
    for i, period in enumerate(periods):
        for skill, hours in demand.get(period.period_id, {}).items():
            remaining[skill] = remaining.get(skill, 0.0) + hours

        for skill in list(remaining):
            left = remaining[skill] - min(remaining[skill], period.capacity_by_skill.get(skill, 0.0))
            if left <= COMPLETION_TOLERANCE_HOURS:
                del remaining[skill]
            else:
                remaining[skill] = left

        if not remaining:
            return i
    return len(periods)


def completion_cdf(indices: np.ndarray, periods: Sequence[PeriodCapacity]) -> tuple[CompletionCdfPoint, ...]:
    n = max(int(indices.size), 1)
    return tuple(
        CompletionCdfPoint(
            period_id=p.period_id,
            period_label=p.period_label,
            cumulative_probability=float(np.count_nonzero(indices <= i)) / n,
        )
        for i, p in enumerate(periods)
    )


def simulate_completion_indices(
    items: Sequence[SampledScopeItem],
    periods: Sequence[PeriodCapacity],
    n: int,
) -> np.ndarray:
    out = np.empty(n, dtype=float)
    for k in range(n):
        out[k] = walk_periods(sample_initiative_effort(items), periods)
    return out
