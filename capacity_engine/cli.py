from __future__ import annotations

import json
import logging
import math
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Iterator, NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

from capacity_engine.adapters.json_snapshot import load_schedule, load_snapshot, parse_work_item
from capacity_engine.adapters.memory import InMemoryAuditSink, InMemoryCache, InMemoryPlanningStore, InMemoryStatusLog
from capacity_engine.adapters.sqlite_audit import SqliteAuditSink
from capacity_engine.common.errors import CapacityEngineError
from capacity_engine.common.logging_config import configure_logging
from capacity_engine.common.seeding import set_global_seed
from capacity_engine.config import EngineSettings
from capacity_engine.forecasting.empirical import status_durations
from capacity_engine.forecasting.service import ForecastingService
from capacity_engine.integration.event_bus import InMemoryEventBus
from capacity_engine.planning.gap_calculator import GapCalculator
from capacity_engine.planning.ports import AuditSink
from capacity_engine.planning.token_demand import demands_from_derived, derive_token_demand, token_ledger_summary
from capacity_engine.scheduling.capacity_grid import CapacityGrid
from capacity_engine.scheduling.constraints import create_constraint_validator


app = typer.Typer(add_completion=False, help="Capacity planning and delivery forecasting.")
console = Console()

EXAMPLE_CONFIG = Path(__file__).resolve().parent / "engine_config.example.toml"


def _settings(config: Optional[str]) -> EngineSettings:
    settings = EngineSettings.load(Path(config).expanduser()) if config else EngineSettings()
    configure_logging(settings.log_level, settings.log_dir or None)
    return settings


def _snapshot(path: str) -> tuple[InMemoryPlanningStore, InMemoryStatusLog]:
    p = Path(path).expanduser()
    if not p.exists():
        raise typer.BadParameter(f"Snapshot not found: {p}")
    return load_snapshot(p)


def _audit_sink(settings: EngineSettings) -> AuditSink:
    db_path = settings.audit.resolved_path()
    if db_path is None:
        return InMemoryAuditSink()
    return SqliteAuditSink.open(db_path)


@contextmanager
def _forecasting(snapshot: str, settings: EngineSettings, seed: Optional[int]) -> Iterator[ForecastingService]:
    """Wire a ForecastingService for one command; the audit database is closed on exit."""
    if seed is not None:
        set_global_seed(seed)
    store, status_log = _snapshot(snapshot)
    bus = InMemoryEventBus()
    calculator = GapCalculator(store=store, cache=InMemoryCache(), settings=settings, bus=bus)
    sink = _audit_sink(settings)
    try:
        yield ForecastingService(
            store=store,
            status_log=status_log,
            calculator=calculator,
            audit_sink=sink,
            settings=settings,
            bus=bus,
        )
    finally:
        calculator.close()
        if isinstance(sink, SqliteAuditSink):
            sink.close()


def _parse_levels(levels: Optional[str]) -> Optional[list[float]]:
    if levels is None:
        return None
    try:
        return [float(x) for x in levels.split(",") if x.strip()]
    except ValueError:
        raise typer.BadParameter(f"Confidence levels must be comma-separated numbers: {levels}")


def _json_safe(value: Any) -> Any:
    # inf/nan (e.g. utilization of a zero-capacity cell) have no JSON form
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(_json_safe(payload), indent=2, default=str, allow_nan=False))


def _fail(exc: CapacityEngineError) -> NoReturn:
    console.print(f"[bold red]Error:[/bold red] {exc}")
    raise typer.Exit(code=1)


def _print_warnings(warnings: tuple[str, ...] | list[str]) -> None:
    for w in warnings:
        console.print(f"[yellow]warning:[/yellow] {w}")


# --- Scheduling ---------------------------------------------------------------


@app.command("validate-schedule")
def validate_schedule_cmd(
    schedule: str = typer.Argument(..., help="Schedule JSON (teams, items, horizon)"),
    config: Optional[str] = typer.Option(None, help="Path to engine TOML config"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Check a schedule against capacity, dependency and horizon rules."""
    settings = _settings(config)
    scenario = load_schedule(Path(schedule).expanduser())
    validator = create_constraint_validator(settings.constraints.utilization_warning_threshold)
    result = validator.validate(scenario)

    if as_json:
        _echo_json(asdict(result))
        return

    status = "[green]feasible[/green]" if result.feasible else "[red]infeasible[/red]"
    console.print(f"Schedule [bold]{scenario.name}[/bold]: {status}")

    if result.violations:
        table = Table(title="Violations")
        table.add_column("Rule")
        table.add_column("Message")
        table.add_column("Items")
        table.add_column("Periods")
        for v in result.violations:
            table.add_row(
                v.constraint_id,
                v.message,
                ", ".join(v.affected_item_ids),
                ", ".join(str(p) for p in v.affected_periods),
            )
        console.print(table)

    if result.warnings:
        table = Table(title="Warnings")
        table.add_column("Rule")
        table.add_column("Message")
        table.add_column("Actual", justify="right")
        table.add_column("Threshold", justify="right")
        for w in result.warnings:
            table.add_row(w.constraint_id, w.message, f"{w.actual:.2f}", f"{w.threshold:.2f}")
        console.print(table)

    if not result.feasible:
        raise typer.Exit(code=2)


@app.command("find-window")
def find_window_cmd(
    schedule: str = typer.Argument(..., help="Schedule JSON whose items are already placed"),
    work_item: str = typer.Argument(..., help="Work item JSON (id, duration, team_demands)"),
    earliest_start: int = typer.Option(0, help="First period to consider"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Find the earliest start period where a work item fits remaining capacity."""
    scenario = load_schedule(Path(schedule).expanduser())
    item = parse_work_item(json.loads(Path(work_item).expanduser().read_text(encoding="utf-8")))

    grid = CapacityGrid(scenario.teams, scenario.horizon)
    try:
        for placed in scenario.items:
            for ta in placed.team_allocations:
                if 0 <= ta.period_index < grid.horizon:
                    grid = grid.allocate(ta.team_id, ta.period_index, ta.tokens)
        start = grid.find_feasible_window(item, earliest_start=earliest_start)
    except CapacityEngineError as exc:
        _fail(exc)

    if as_json:
        _echo_json({"item_id": item.id, "start_period": start})
        return
    if start is None:
        console.print(f"[red]No feasible window[/red] for {item.name} within horizon {grid.horizon}")
        raise typer.Exit(code=2)
    console.print(f"{item.name} fits starting at period [bold]{start}[/bold]")


# --- Planning -----------------------------------------------------------------


@app.command()
def gap(
    snapshot: str = typer.Argument(..., help="Planning snapshot JSON"),
    scenario_id: str = typer.Argument(..., help="Scenario to analyse"),
    config: Optional[str] = typer.Option(None, help="Path to engine TOML config"),
    breakdown: bool = typer.Option(True, help="Include per-initiative/per-employee breakdowns"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Demand vs. capacity per skill and period, with shortages and overallocations."""
    settings = _settings(config)
    store, _ = _snapshot(snapshot)
    calculator = GapCalculator(store=store, settings=settings)
    try:
        result = calculator.calculate(scenario_id, include_breakdown=breakdown)
    except CapacityEngineError as exc:
        _fail(exc)

    if as_json:
        _echo_json(asdict(result))
        return

    table = Table(title=f"Gap analysis: {result.scenario_name}")
    table.add_column("Period")
    table.add_column("Skill")
    table.add_column("Demand (h)", justify="right")
    table.add_column("Capacity (h)", justify="right")
    table.add_column("Gap (h)", justify="right")
    table.add_column("Util %", justify="right")
    for g in result.gap_analysis:
        style = "red" if g.gap < 0 else None
        table.add_row(
            g.period_label,
            g.skill,
            f"{g.demand_hours:.1f}",
            f"{g.capacity_hours:.1f}",
            f"{g.gap:.1f}",
            f"{g.utilization_percentage:.0f}",
            style=style,
        )
    console.print(table)

    if result.issues.shortages:
        shortages = Table(title="Shortages")
        shortages.add_column("Severity")
        shortages.add_column("Period")
        shortages.add_column("Skill")
        shortages.add_column("Short (h)", justify="right")
        shortages.add_column("Short %", justify="right")
        for s in result.issues.shortages:
            shortages.add_row(s.severity, s.period_label, s.skill, f"{s.shortage_hours:.1f}", f"{s.shortage_percentage:.0f}")
        console.print(shortages)

    for o in result.issues.overallocations:
        console.print(
            f"[yellow]overallocated:[/yellow] {o.employee_name} in {o.period_label} "
            f"at {o.total_allocation_percentage:.0f}%"
        )
    for m in result.issues.skill_mismatches:
        console.print(
            f"[yellow]skill mismatch:[/yellow] {m.employee_name} on {m.initiative_title} "
            f"missing {', '.join(m.missing_skills)}"
        )

    s = result.summary
    console.print(
        f"Total demand {s.total_demand_hours:.1f}h, capacity {s.total_capacity_hours:.1f}h, "
        f"gap {s.overall_gap:.1f}h ({s.overall_utilization:.0f}% utilised)"
    )


@app.command("derive-tokens")
def derive_tokens_cmd(
    snapshot: str = typer.Argument(..., help="Planning snapshot JSON"),
    scenario_id: str = typer.Argument(..., help="TOKEN-mode scenario"),
    initiative: Optional[str] = typer.Option(None, help="Restrict to one initiative"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Convert scope hours into token demand per skill pool."""
    configure_logging(logging.INFO)
    store, _ = _snapshot(snapshot)
    try:
        result = derive_token_demand(store, scenario_id, initiative_id=initiative)
    except CapacityEngineError as exc:
        _fail(exc)

    if as_json:
        _echo_json(asdict(result))
        return

    table = Table(title="Derived token demand")
    table.add_column("Initiative")
    table.add_column("Skill pool")
    table.add_column("Tokens P50", justify="right")
    table.add_column("Tokens P90", justify="right")
    for d in result.derived_demands:
        p90 = f"{d.tokens_p90:.1f}" if d.tokens_p90 is not None else "-"
        table.add_row(d.initiative_id, d.skill_pool_name, f"{d.tokens_p50:.1f}", p90)
    console.print(table)
    _print_warnings(result.warnings)


@app.command("token-ledger")
def token_ledger_cmd(
    snapshot: str = typer.Argument(..., help="Planning snapshot JSON"),
    scenario_id: str = typer.Argument(..., help="TOKEN-mode scenario"),
    derive: bool = typer.Option(False, help="Use demand derived from scope items instead of stored token_demands"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Token supply vs. P50/P90 demand per skill pool, with binding constraints."""
    configure_logging(logging.INFO)
    store, _ = _snapshot(snapshot)
    try:
        demands = None
        if derive:
            derived = derive_token_demand(store, scenario_id)
            _print_warnings(derived.warnings)
            demands = demands_from_derived(scenario_id, derived)
        summary = token_ledger_summary(store, scenario_id, demands=demands)
    except CapacityEngineError as exc:
        _fail(exc)

    if as_json:
        _echo_json(asdict(summary))
        return

    table = Table(title=f"Token ledger: {scenario_id} ({', '.join(summary.period_labels) or 'no periods'})")
    table.add_column("Skill pool")
    table.add_column("Supply", justify="right")
    table.add_column("Demand P50", justify="right")
    table.add_column("Demand P90", justify="right")
    table.add_column("Delta", justify="right")
    for p in summary.pools:
        p90 = f"{p.demand_p90:.1f}" if p.demand_p90 is not None else "-"
        delta = f"[red]{p.delta:.1f}[/red]" if p.delta < 0 else f"{p.delta:.1f}"
        table.add_row(p.pool_name, f"{p.supply_tokens:.1f}", f"{p.demand_p50:.1f}", p90, delta)
    console.print(table)
    for e in summary.explanations:
        console.print(f"  - {e.message}")


@app.command("forecast-scope")
def forecast_scope_cmd(
    snapshot: str = typer.Argument(..., help="Planning snapshot JSON"),
    scenario_id: str = typer.Argument(..., help="Scenario providing capacity"),
    initiative: list[str] = typer.Option(..., "--initiative", "-i", help="Initiative id (repeatable)"),
    simulations: Optional[int] = typer.Option(None, help="Monte Carlo iterations"),
    levels: Optional[str] = typer.Option(None, help="Comma-separated confidence levels, e.g. 50,85"),
    seed: Optional[int] = typer.Option(None, help="Random seed for reproducible runs"),
    config: Optional[str] = typer.Option(None, help="Path to engine TOML config"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Scope-based (Mode A) completion forecast."""
    settings = _settings(config)
    with _forecasting(snapshot, settings, seed) as service:
        try:
            with console.status("Running scope-based simulation..."):
                result = service.run_scope_based_forecast(
                    scenario_id,
                    initiative,
                    simulation_count=simulations,
                    confidence_levels=_parse_levels(levels),
                )
        except CapacityEngineError as exc:
            _fail(exc)

    if as_json:
        _echo_json(asdict(result))
        return

    for f in result.initiative_forecasts:
        table = Table(title=f"{f.initiative_title} ({f.scope_item_count} scope items)")
        table.add_column("Period")
        table.add_column("P(complete)", justify="right")
        for point in f.completion_cdf:
            table.add_row(point.period_label, f"{point.cumulative_probability:.2f}")
        console.print(table)
        console.print(
            "  period index: " + ", ".join(f"P{p.level:g}={p.value:.1f}" for p in f.percentiles)
        )
    _print_warnings(result.warnings)
    console.print(f"{result.simulation_count} iterations in {result.duration_ms} ms (run {result.run_id})")


@app.command("forecast-empirical")
def forecast_empirical_cmd(
    snapshot: str = typer.Argument(..., help="Planning snapshot JSON with status_log"),
    initiative: list[str] = typer.Option(..., "--initiative", "-i", help="Initiative id (repeatable)"),
    simulations: Optional[int] = typer.Option(None, help="Monte Carlo iterations"),
    levels: Optional[str] = typer.Option(None, help="Comma-separated confidence levels, e.g. 50,85"),
    seed: Optional[int] = typer.Option(None, help="Random seed for reproducible runs"),
    config: Optional[str] = typer.Option(None, help="Path to engine TOML config"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Empirical (Mode B) forecast from historical cycle times."""
    settings = _settings(config)
    with _forecasting(snapshot, settings, seed) as service:
        try:
            with console.status("Bootstrapping cycle times..."):
                result = service.run_empirical_forecast(
                    initiative,
                    simulation_count=simulations,
                    confidence_levels=_parse_levels(levels),
                )
        except CapacityEngineError as exc:
            _fail(exc)

    if as_json:
        _echo_json(asdict(result))
        return

    table = Table(title=f"Empirical forecast ({result.historical_data_points} historical cycles)")
    table.add_column("Initiative")
    table.add_column("Status")
    table.add_column("Elapsed (d)", justify="right")
    table.add_column("Remaining days", justify="left")
    for f in result.initiative_forecasts:
        remaining = ", ".join(f"P{p.level:g}={p.value:.0f}" for p in f.estimated_completion_days)
        table.add_row(f.initiative_title, f.current_status, str(f.elapsed_days), remaining)
    console.print(table)
    if result.low_confidence:
        console.print("[yellow]Low confidence: too few historical cycles[/yellow]")
    _print_warnings(result.warnings)


@app.command("data-quality")
def data_quality_cmd(
    snapshot: str = typer.Argument(..., help="Planning snapshot JSON"),
    scenario: Optional[str] = typer.Option(None, help="Scope items from this scenario's allocations"),
    initiative: Optional[list[str]] = typer.Option(None, "--initiative", "-i", help="Initiative id (repeatable)"),
    config: Optional[str] = typer.Option(None, help="Path to engine TOML config"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Score how ready the data is for forecasting."""
    settings = _settings(config)
    with _forecasting(snapshot, settings, None) as service:
        result = service.assess_data_quality(scenario_id=scenario, initiative_ids=initiative or None)

    if as_json:
        _echo_json(asdict(result))
        return

    colour = {"good": "green", "moderate": "yellow", "low": "red"}[result.confidence]
    console.print(f"Data quality score [bold]{result.score}[/bold] ([{colour}]{result.confidence}[/{colour}])")
    d = result.details
    console.print(
        f"  estimates {d.scope_items_with_estimates}/{d.total_scope_items}, "
        f"distributions {d.scope_items_with_distributions}/{d.total_scope_items}, "
        f"historical completions {d.historical_completions}"
    )
    for issue in result.issues:
        console.print(f"  - {issue}")


@app.command("status-durations")
def status_durations_cmd(
    snapshot: str = typer.Argument(..., help="Planning snapshot JSON with status_log"),
    initiative: Optional[list[str]] = typer.Option(None, "--initiative", "-i", help="Initiative id (repeatable)"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Average days initiatives spend in each status."""
    _, status_log = _snapshot(snapshot)
    rows = status_durations(status_log.get_transitions(), initiative_ids=initiative or None)

    if as_json:
        _echo_json([{"status": r.status.value, "avg_days": r.avg_days, "count": r.count} for r in rows])
        return

    table = Table(title="Time in status")
    table.add_column("Status")
    table.add_column("Avg days", justify="right")
    table.add_column("Samples", justify="right")
    for r in rows:
        table.add_row(r.status.value, f"{r.avg_days:.2f}", str(r.count))
    console.print(table)


@app.command("init-config")
def init_config(
    path: str = typer.Argument("engine_config.toml", help="Where to write the engine configuration TOML"),
) -> None:
    """Write an example engine_config.toml."""
    if not EXAMPLE_CONFIG.exists():
        raise RuntimeError(f"Missing template file: {EXAMPLE_CONFIG}")

    out = Path(path).expanduser()
    if out.exists():
        raise typer.BadParameter(f"Refusing to overwrite existing file: {out}")

    out.write_text(EXAMPLE_CONFIG.read_text())
    typer.echo(f"Wrote {out} (edit it, then pass --config {out})")


if __name__ == "__main__":
    app()
