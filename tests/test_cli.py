from __future__ import annotations

import json
import sqlite3
from pathlib import Path

import pytest
from typer.testing import CliRunner

from capacity_engine import cli
from capacity_engine.adapters.sqlite_audit import SqliteAuditSink

runner = CliRunner()

SNAPSHOT = {
    "periods": [{"id": "q1", "label": "2025-Q1", "start_date": "2025-01-01", "end_date": "2025-03-31"}],
    "scenarios": [{"id": "sc1", "name": "Baseline", "period_ids": ["q1"], "priority_rankings": [{"initiative_id": "i1", "rank": 1}]}],
    "initiatives": [
        {
            "id": "i1",
            "title": "Checkout",
            "status": "IN_EXECUTION",
            "scope_items": [
                {
                    "id": "s1",
                    "skill_demand": {"backend": 600},
                    "period_distributions": [{"period_id": "q1", "distribution": 1}],
                    "estimate_p50": 600,
                    "estimate_p90": 600,
                }
            ],
        }
    ],
    "employees": [{"id": "alice", "name": "Alice", "skills": [{"name": "backend", "proficiency": 5}]}],
    "allocations": [
        {
            "id": "a1",
            "scenario_id": "sc1",
            "employee_id": "alice",
            "initiative_id": "i1",
            "start_date": "2025-01-01",
            "end_date": "2025-03-31",
        }
    ],
}

SCHEDULE = {
    "id": "plan",
    "horizon": 3,
    "teams": [{"id": "core", "capacity_by_period": [10, 10, 10]}],
    "items": [
        {
            "id": "a",
            "start_period": 0,
            "duration": 1,
            "team_allocations": [{"team_id": "core", "period_index": 0, "tokens": 12}],
        }
    ],
}


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)


def _write(tmp_path: Path, name: str, payload: object) -> str:
    path = tmp_path / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


def test_gap_json(tmp_path: Path) -> None:
    snapshot = _write(tmp_path, "snapshot.json", SNAPSHOT)

    result = runner.invoke(cli.app, ["gap", snapshot, "sc1", "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["summary"]["total_demand_hours"] == 600.0
    assert payload["summary"]["total_capacity_hours"] == 520.0
    assert [s["skill"] for s in payload["issues"]["shortages"]] == ["backend"]


def test_gap_unknown_scenario_exits_nonzero(tmp_path: Path) -> None:
    snapshot = _write(tmp_path, "snapshot.json", SNAPSHOT)

    result = runner.invoke(cli.app, ["gap", snapshot, "nope"])

    assert result.exit_code == 1
    assert "not found" in result.output


def test_forecast_scope_table(tmp_path: Path) -> None:
    snapshot = _write(tmp_path, "snapshot.json", SNAPSHOT)

    result = runner.invoke(
        cli.app,
        ["forecast-scope", snapshot, "sc1", "-i", "i1", "--simulations", "20", "--levels", "50,90", "--seed", "3"],
    )

    assert result.exit_code == 0, result.output
    assert "Checkout" in result.output
    assert "P50=1.0" in result.output


def test_validate_schedule_reports_infeasible(tmp_path: Path) -> None:
    schedule = _write(tmp_path, "schedule.json", SCHEDULE)

    table = runner.invoke(cli.app, ["validate-schedule", schedule])
    as_json = runner.invoke(cli.app, ["validate-schedule", schedule, "--json"])

    assert table.exit_code == 2
    assert "infeasible" in table.output
    assert as_json.exit_code == 0
    assert json.loads(as_json.stdout)["feasible"] is False


def test_find_window_json(tmp_path: Path) -> None:
    schedule = _write(tmp_path, "schedule.json", SCHEDULE)
    item = _write(tmp_path, "item.json", {"id": "b", "duration": 2, "team_demands": [{"team_id": "core", "tokens_per_period": 5}]})

    result = runner.invoke(cli.app, ["find-window", schedule, item, "--json"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {"item_id": "b", "start_period": 1}


def test_init_config_refuses_to_overwrite(tmp_path: Path) -> None:
    out = tmp_path / "engine.toml"

    first = runner.invoke(cli.app, ["init-config", str(out)])
    second = runner.invoke(cli.app, ["init-config", str(out)])

    assert first.exit_code == 0
    assert out.read_text() == cli.EXAMPLE_CONFIG.read_text()
    assert second.exit_code != 0


def _reject_constant(name: str) -> None:
    raise AssertionError(f"non-standard JSON constant {name}")


def test_validate_schedule_json_has_no_infinity(tmp_path: Path) -> None:
    zero = {
        "id": "plan",
        "horizon": 1,
        "teams": [{"id": "core", "capacity_by_period": [0]}],
        "items": [
            {
                "id": "a",
                "start_period": 0,
                "duration": 1,
                "team_allocations": [{"team_id": "core", "period_index": 0, "tokens": 1}],
            }
        ],
    }
    schedule = _write(tmp_path, "schedule.json", zero)

    result = runner.invoke(cli.app, ["validate-schedule", schedule, "--json"])

    assert result.exit_code == 0, result.output
    assert "Infinity" not in result.stdout
    payload = json.loads(result.stdout, parse_constant=_reject_constant)
    [cell] = payload["utilization_map"]
    assert cell["allocated"] == 1.0
    assert cell["utilization"] is None


def test_token_ledger_json(tmp_path: Path) -> None:
    token_snapshot = {
        **SNAPSHOT,
        "scenarios": [{"id": "tok", "name": "Tokens", "period_ids": ["q1"], "planning_mode": "TOKEN"}],
        "skill_pools": [{"id": "pool-be", "name": "backend"}, {"id": "pool-fe", "name": "frontend"}],
        "token_supplies": [
            {"scenario_id": "tok", "skill_pool_id": "pool-be", "tokens": 100},
            {"scenario_id": "tok", "skill_pool_id": "pool-fe", "tokens": 50},
        ],
        "token_demands": [
            {"scenario_id": "tok", "initiative_id": "i1", "skill_pool_id": "pool-be", "tokens_p50": 160, "tokens_p90": 200},
            {"scenario_id": "tok", "initiative_id": "i1", "skill_pool_id": "pool-fe", "tokens_p50": 20},
        ],
    }
    snapshot = _write(tmp_path, "snapshot.json", token_snapshot)

    result = runner.invoke(cli.app, ["token-ledger", snapshot, "tok", "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["period_labels"] == ["2025-Q1"]
    pools = {p["pool_name"]: p for p in payload["pools"]}
    assert pools["backend"]["delta"] == -60.0
    assert pools["frontend"]["demand_p90"] is None
    assert payload["binding_constraints"] == [{"pool_name": "backend", "deficit": 60.0}]


def test_token_ledger_rejects_legacy_scenario(tmp_path: Path) -> None:
    snapshot = _write(tmp_path, "snapshot.json", SNAPSHOT)

    result = runner.invoke(cli.app, ["token-ledger", snapshot, "sc1"])

    assert result.exit_code == 1
    assert "TOKEN" in result.output


def test_forecast_scope_closes_audit_database(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    snapshot = _write(tmp_path, "snapshot.json", SNAPSHOT)
    sink = SqliteAuditSink.open(tmp_path / "runs.db")
    monkeypatch.setattr(cli, "_audit_sink", lambda settings: sink)

    result = runner.invoke(cli.app, ["forecast-scope", snapshot, "sc1", "-i", "i1", "--simulations", "10", "--seed", "1"])

    assert result.exit_code == 0, result.output
    with pytest.raises(sqlite3.ProgrammingError):
        sink.conn.execute("SELECT 1")
