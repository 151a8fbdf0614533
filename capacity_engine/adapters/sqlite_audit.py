from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from capacity_engine.planning.ports import ForecastRunRecord


def connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS forecast_runs (
            id TEXT PRIMARY KEY,
            mode TEXT NOT NULL,
            scenario_id TEXT,
            initiative_ids TEXT NOT NULL,
            simulation_count INTEGER NOT NULL,
            confidence_levels TEXT NOT NULL,
            input_snapshot TEXT,
            data_quality TEXT,
            warnings TEXT,
            duration_ms INTEGER,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_forecast_runs_scenario
            ON forecast_runs (scenario_id, created_at);
        """
    )
    conn.commit()


@dataclass
class SqliteAuditSink:
    """AuditSink writing one row per forecast run into ``forecast_runs``.

    JSON columns hold the list and mapping fields of the record.
    """

    conn: sqlite3.Connection

    @classmethod
    def open(cls, db_path: Path) -> "SqliteAuditSink":
        conn = connect(db_path)
        init_schema(conn)
        return cls(conn=conn)

    def record_forecast_run(self, record: ForecastRunRecord) -> str:
        run_id = str(uuid.uuid4())
        self.conn.execute(
            """
            INSERT INTO forecast_runs (
                id, mode, scenario_id, initiative_ids, simulation_count,
                confidence_levels, input_snapshot, data_quality, warnings,
                duration_ms, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                record.mode,
                record.scenario_id,
                json.dumps(list(record.initiative_ids)),
                int(record.simulation_count),
                json.dumps(list(record.confidence_levels)),
                json.dumps(dict(record.input_snapshot)),
                json.dumps(dict(record.data_quality)) if record.data_quality is not None else None,
                json.dumps(list(record.warnings)) if record.warnings else None,
                int(record.duration_ms),
                record.created_at.isoformat(),
            ),
        )
        self.conn.commit()
        return run_id

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        cur = self.conn.execute(
            """
            SELECT id, mode, scenario_id, initiative_ids, simulation_count,
                   confidence_levels, input_snapshot, data_quality, warnings,
                   duration_ms, created_at
            FROM forecast_runs WHERE id = ?
            """,
            (run_id,),
        )
        row = cur.fetchone()
        if row is None:
            return None
        return _row_to_dict(row)

    def list_runs(self, scenario_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        sql = (
            "SELECT id, mode, scenario_id, initiative_ids, simulation_count, confidence_levels, "
            "input_snapshot, data_quality, warnings, duration_ms, created_at FROM forecast_runs"
        )
        params: list[Any] = []
        if scenario_id is not None:
            sql += " WHERE scenario_id = ?"
            params.append(scenario_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(int(limit))
        return [_row_to_dict(r) for r in self.conn.execute(sql, params).fetchall()]

    def close(self) -> None:
        self.conn.close()


def _row_to_dict(row: tuple[Any, ...]) -> dict[str, Any]:
    (
        run_id,
        mode,
        scenario_id,
        initiative_ids,
        simulation_count,
        confidence_levels,
        input_snapshot,
        data_quality,
        warnings,
        duration_ms,
        created_at,
    ) = row
    return {
        "id": run_id,
        "mode": mode,
        "scenario_id": scenario_id,
        "initiative_ids": json.loads(initiative_ids),
        "simulation_count": simulation_count,
        "confidence_levels": json.loads(confidence_levels),
        "input_snapshot": json.loads(input_snapshot) if input_snapshot else {},
        "data_quality": json.loads(data_quality) if data_quality else None,
        "warnings": json.loads(warnings) if warnings else [],
        "duration_ms": duration_ms,
        "created_at": created_at,
    }
