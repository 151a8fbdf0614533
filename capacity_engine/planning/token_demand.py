from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Sequence

from capacity_engine.common.errors import NotFoundError, WorkflowError
from capacity_engine.common.time_utils import utcnow
from capacity_engine.planning.models import PlanningMode, ScopeItem, SkillPool, TokenCalibration, TokenDemand
from capacity_engine.planning.ports import PlanningStore
from capacity_engine.planning.results import (
    BindingConstraint,
    DerivedDemandEntry,
    LedgerExplanation,
    TokenDemandResult,
    TokenLedgerPoolEntry,
    TokenLedgerSummary,
)


logger = logging.getLogger(__name__)

FALLBACK_TOKENS_PER_HOUR = 1.0


@dataclass
class _Aggregate:
    skill_pool: SkillPool
    tokens_p50: float
    tokens_p90: float | None


def latest_calibrations(
    calibrations: list[TokenCalibration],
    active_pool_ids: set[str],
    as_of: date,
) -> dict[str, float]:
    """Most recent tokens-per-hour rate per active pool, ignoring future-dated rows."""
    rates: dict[str, float] = {}
    ordered = sorted(calibrations, key=lambda c: c.effective_date, reverse=True)
    for cal in ordered:
        if cal.skill_pool_id not in active_pool_ids or cal.effective_date > as_of:
            continue
        rates.setdefault(cal.skill_pool_id, float(cal.token_per_hour))
    return rates


def _item_p90_ratio(item: ScopeItem) -> float | None:
    if item.estimate_p50 and item.estimate_p50 > 0 and item.estimate_p90 is not None:
        return item.estimate_p90 / item.estimate_p50
    return None


def derive_token_demand(
    store: PlanningStore,
    scenario_id: str,
    initiative_id: str | None = None,
    now: datetime | None = None,
) -> TokenDemandResult:
    """Convert hour-denominated scope demand into tokens per (initiative, skill pool).

    Only scenarios in TOKEN planning mode are eligible. Skill names match
    active pools case-insensitively. A pool with no calibration falls back
    to one token per hour.
    """
    scenario = store.get_scenario(scenario_id)
    if scenario is None:
        raise NotFoundError("Scenario", scenario_id)
    if scenario.planning_mode != PlanningMode.TOKEN:
        raise WorkflowError(
            "Derive token demand is only available for scenarios using TOKEN planning mode",
            current_state=scenario.planning_mode.value,
        )

    warnings: list[str] = []
    if initiative_id is not None:
        scope_items = store.get_scope_items([initiative_id])
    else:
        initiative_ids = [r.initiative_id for r in scenario.priority_rankings]
        if not initiative_ids:
            warnings.append("Scenario has no priority rankings: no initiatives to derive demand for")
            return TokenDemandResult(derived_demands=(), warnings=tuple(warnings))
        scope_items = store.get_scope_items(initiative_ids)

    if not scope_items:
        return TokenDemandResult(derived_demands=(), warnings=tuple(warnings))

    pools = [p for p in store.get_skill_pools() if p.is_active]
    pool_by_name = {p.name.lower(): p for p in pools}
    as_of = (now or utcnow()).date()
    rates = latest_calibrations(store.get_token_calibrations(), {p.id for p in pools}, as_of)

    warned_pools: set[tuple[str, str]] = set()
    warned_calibrations: set[str] = set()
    aggregates: dict[tuple[str, str], _Aggregate] = {}

    for item in scope_items:
        ratio = _item_p90_ratio(item)
        for skill, hours in item.skill_demand.items():
            pool = pool_by_name.get(skill.lower())
            if pool is None:
                if (skill, item.name) not in warned_pools:
                    warned_pools.add((skill, item.name))
                    warnings.append(
                        f'Skill "{skill}" on scope item "{item.name}" does not match any active skill pool'
                    )
                continue

            rate = rates.get(pool.id)
            if rate is None:
                rate = FALLBACK_TOKENS_PER_HOUR
                if pool.id not in warned_calibrations:
                    warned_calibrations.add(pool.id)
                    warnings.append(f'No calibration for pool "{pool.name}": using 1:1 token-to-hour fallback')

            tokens_p50 = float(hours) * rate
            tokens_p90 = float(hours) * ratio * rate if ratio is not None else None

            key = (item.initiative_id, pool.id)
            agg = aggregates.get(key)
            if agg is None:
                aggregates[key] = _Aggregate(skill_pool=pool, tokens_p50=tokens_p50, tokens_p90=tokens_p90)
                continue
            agg.tokens_p50 += tokens_p50
            # one item without a P90 leaves the whole aggregate without one
            if agg.tokens_p90 is None or tokens_p90 is None:
                agg.tokens_p90 = None
            else:
                agg.tokens_p90 += tokens_p90

    if warnings:
        logger.warning("Token demand for scenario %s derived with %d warning(s)", scenario_id, len(warnings))

    derived = tuple(
        DerivedDemandEntry(
            initiative_id=init_id,
            skill_pool_id=pool_id,
            skill_pool_name=agg.skill_pool.name,
            tokens_p50=agg.tokens_p50,
            tokens_p90=agg.tokens_p90,
        )
        for (init_id, pool_id), agg in aggregates.items()
    )
    return TokenDemandResult(derived_demands=derived, warnings=tuple(warnings))


def demands_from_derived(scenario_id: str, result: TokenDemandResult) -> list[TokenDemand]:
    """Turn a derivation result into ledger demand rows for ``scenario_id``."""
    return [
        TokenDemand(
            scenario_id=scenario_id,
            initiative_id=d.initiative_id,
            skill_pool_id=d.skill_pool_id,
            tokens_p50=d.tokens_p50,
            tokens_p90=d.tokens_p90,
        )
        for d in result.derived_demands
    ]


def token_ledger_summary(
    store: PlanningStore,
    scenario_id: str,
    demands: Sequence[TokenDemand] | None = None,
) -> TokenLedgerSummary:
    """Compare token supply against P50/P90 demand for every active skill pool.

    ``demands`` replaces the stored demand rows when given, e.g. with the
    output of ``derive_token_demand``. A pool is a binding constraint when
    its supply falls short of P50 demand; constraints are ordered by
    deficit, largest first.
    """
    scenario = store.get_scenario(scenario_id)
    if scenario is None:
        raise NotFoundError("Scenario", scenario_id)
    if scenario.planning_mode != PlanningMode.TOKEN:
        raise WorkflowError(
            "Token ledger is only available for scenarios using TOKEN planning mode",
            current_state=scenario.planning_mode.value,
        )

    periods = store.get_periods(scenario.period_ids)
    period_ids = tuple(p.id for p in periods)
    period_labels = tuple(p.label for p in periods)

    pools = [p for p in store.get_skill_pools() if p.is_active]
    if not pools:
        return TokenLedgerSummary(scenario_id=scenario_id, period_ids=period_ids, period_labels=period_labels)

    supply: dict[str, float] = {}
    for s in store.get_token_supplies(scenario_id):
        supply[s.skill_pool_id] = supply.get(s.skill_pool_id, 0.0) + float(s.tokens)

    rows = store.get_token_demands(scenario_id) if demands is None else demands
    demand_p50: dict[str, float] = {}
    demand_p90: dict[str, float | None] = {}
    for d in rows:
        demand_p50[d.skill_pool_id] = demand_p50.get(d.skill_pool_id, 0.0) + float(d.tokens_p50)
        if d.skill_pool_id not in demand_p90:
            demand_p90[d.skill_pool_id] = d.tokens_p90
            continue
        current = demand_p90[d.skill_pool_id]
        # a single row without a P90 leaves the pool without one
        demand_p90[d.skill_pool_id] = None if current is None or d.tokens_p90 is None else current + d.tokens_p90

    entries = []
    for pool in pools:
        supply_tokens = supply.get(pool.id, 0.0)
        p50 = demand_p50.get(pool.id, 0.0)
        entries.append(
            TokenLedgerPoolEntry(
                skill_pool_id=pool.id,
                pool_name=pool.name,
                supply_tokens=supply_tokens,
                demand_p50=p50,
                demand_p90=demand_p90.get(pool.id),
                delta=supply_tokens - p50,
            )
        )

    constraints = sorted(
        (BindingConstraint(pool_name=e.pool_name, deficit=abs(e.delta)) for e in entries if e.delta < 0),
        key=lambda c: c.deficit,
        reverse=True,
    )
    explanations = tuple(
        LedgerExplanation(skill_pool=e.pool_name, message=_explain_pool(e))
        for e in entries
        if e.supply_tokens > 0 or e.demand_p50 > 0
    )
    if constraints:
        logger.info(
            "Scenario %s has %d binding token constraint(s), largest on %s",
            scenario_id,
            len(constraints),
            constraints[0].pool_name,
        )

    return TokenLedgerSummary(
        scenario_id=scenario_id,
        period_ids=period_ids,
        period_labels=period_labels,
        pools=tuple(entries),
        binding_constraints=tuple(constraints),
        explanations=explanations,
    )


def _fmt_tokens(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}".rstrip("0").rstrip(".")


def _explain_pool(entry: TokenLedgerPoolEntry) -> str:
    name = entry.pool_name[:1].upper() + entry.pool_name[1:]
    if entry.supply_tokens == 0 and entry.demand_p50 == 0:
        return f"{name} has no supply or demand configured."
    if entry.supply_tokens == 0:
        return f"{name} has {_fmt_tokens(entry.demand_p50)} tokens of demand but no supply allocated."
    if entry.demand_p50 == 0:
        return f"{name} has {_fmt_tokens(entry.supply_tokens)} tokens of supply with no demand against it."
    if entry.delta < 0:
        return (
            f"{name} throughput is constrained because demand exceeds calibrated quarterly capacity "
            f"by {_fmt_tokens(abs(entry.delta))} tokens."
        )
    if entry.delta == 0:
        return f"{name} supply exactly matches demand at {_fmt_tokens(entry.supply_tokens)} tokens."
    return f"{name} has {_fmt_tokens(entry.delta)} tokens of surplus capacity."
