"""Persistent cycle history, failure state, health reports and per-project change-detection state."""
from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from core import db as core_db
from core.atomic import read_json, write_json_atomic
from core.paths import get_history_db_path, get_project_state_dir

from .types import CycleResult, Outcome

_SCHEMA_SQL = (
    """
    CREATE TABLE IF NOT EXISTS cycles (
      cycle_id TEXT NOT NULL,
      project TEXT NOT NULL,
      started_utc TEXT NOT NULL,
      finished_utc TEXT,
      outcome TEXT NOT NULL,
      phase TEXT NOT NULL,
      files_backed_up INTEGER NOT NULL DEFAULT 0,
      files_failed INTEGER NOT NULL DEFAULT 0,
      archived INTEGER NOT NULL DEFAULT 0,
      databases_ok INTEGER NOT NULL DEFAULT 0,
      databases_failed INTEGER NOT NULL DEFAULT 0,
      errors_json TEXT,
      PRIMARY KEY (project, cycle_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS failure_state (
      project TEXT PRIMARY KEY,
      failing INTEGER NOT NULL DEFAULT 0,
      consecutive INTEGER NOT NULL DEFAULT 0,
      since_utc TEXT,
      last_error TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS health_reports (
      ts REAL PRIMARY KEY,
      major INTEGER NOT NULL,
      minor INTEGER NOT NULL,
      items_json TEXT NOT NULL
    )
    """,
)

HEALTH_REPORTS_KEPT = 200


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass(slots=True)
class FailureState:
    project: str
    failing: bool = False
    consecutive: int = 0
    since_utc: Optional[str] = None
    last_error: Optional[str] = None


@dataclass(slots=True)
class Transition:
    """Change of a project's health caused by the latest cycle."""

    state: FailureState
    entered_failure: bool = False
    recovered: bool = False


class HistoryStore:
    """Record finished cycles and the consecutive-failure count per project."""

    def __init__(self, home: Path) -> None:
        self._db_path = get_history_db_path(Path(home))
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        conn = core_db.connect(self._db_path, read_only=False)
        try:
            for statement in _SCHEMA_SQL:
                conn.execute(statement)
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    def record(self, cycle: CycleResult) -> Transition:
        summary = cycle.summary()
        conn = core_db.connect(self._db_path, read_only=False)
        try:
            with core_db.transaction(conn):
                conn.execute(
                    """
                    REPLACE INTO cycles(cycle_id, project, started_utc, finished_utc, outcome, phase,
                        files_backed_up, files_failed, archived, databases_ok, databases_failed, errors_json)
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        cycle.cycle_id,
                        cycle.project,
                        _iso(cycle.started),
                        _iso(cycle.finished),
                        cycle.outcome.value,
                        cycle.phase.value,
                        summary["files_backed_up"],
                        summary["files_failed"],
                        summary["archived"],
                        summary["databases_ok"],
                        summary["databases_failed"],
                        json.dumps(summary["errors"]),
                    ),
                )
                transition = self._update_failure_state(conn, cycle)
        finally:
            conn.close()
        return transition

    def _update_failure_state(self, conn, cycle: CycleResult) -> Transition:
        previous = self._load_state(conn, cycle.project)
        if cycle.outcome is Outcome.SKIPPED:
            return Transition(state=previous)
        failing = cycle.outcome in (Outcome.FAILED, Outcome.PARTIAL)
        state = FailureState(project=cycle.project)
        if failing:
            state.failing = True
            state.consecutive = previous.consecutive + 1
            state.since_utc = previous.since_utc if previous.failing else _iso(cycle.finished or time.time())
            state.last_error = cycle.errors[0].message if cycle.errors else cycle.outcome.value
        conn.execute(
            "REPLACE INTO failure_state(project, failing, consecutive, since_utc, last_error) VALUES(?, ?, ?, ?, ?)",
            (state.project, int(state.failing), state.consecutive, state.since_utc, state.last_error),
        )
        return Transition(
            state=state,
            entered_failure=failing and not previous.failing,
            recovered=previous.failing and not failing,
        )

    @staticmethod
    def _load_state(conn, project: str) -> FailureState:
        row = conn.execute(
            "SELECT failing, consecutive, since_utc, last_error FROM failure_state WHERE project=?",
            (project,),
        ).fetchone()
        if not row:
            return FailureState(project=project)
        return FailureState(
            project=project,
            failing=bool(row[0]),
            consecutive=int(row[1]),
            since_utc=row[2],
            last_error=row[3],
        )

    def failure_state(self, project: str) -> FailureState:
        conn = core_db.connect(self._db_path, read_only=False)
        try:
            return self._load_state(conn, project)
        finally:
            conn.close()

    def recent(self, project: Optional[str] = None, *, limit: int = 20) -> List[Dict[str, Any]]:
        conn = core_db.connect(self._db_path, read_only=False)
        conn.row_factory = lambda cursor, row: {cursor.description[idx][0]: row[idx] for idx in range(len(row))}
        try:
            if project:
                rows = conn.execute(
                    "SELECT * FROM cycles WHERE project=? ORDER BY started_utc DESC LIMIT ?",
                    (project, int(limit)),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM cycles ORDER BY started_utc DESC LIMIT ?", (int(limit),)).fetchall()
        finally:
            conn.close()
        for row in rows:
            row["errors"] = json.loads(row.pop("errors_json") or "[]")
        return rows

    # ------------------------------------------------------------------
    def record_health(self, ts: float, major: int, minor: int, items: List[Dict[str, Any]]) -> None:
        """Store one health report and drop all but the newest :data:`HEALTH_REPORTS_KEPT`."""

        conn = core_db.connect(self._db_path, read_only=False)
        try:
            with core_db.transaction(conn):
                conn.execute(
                    "REPLACE INTO health_reports(ts, major, minor, items_json) VALUES(?, ?, ?, ?)",
                    (float(ts), int(major), int(minor), json.dumps(items)),
                )
                conn.execute(
                    "DELETE FROM health_reports WHERE ts NOT IN "
                    "(SELECT ts FROM health_reports ORDER BY ts DESC LIMIT ?)",
                    (HEALTH_REPORTS_KEPT,),
                )
        finally:
            conn.close()

    def health_reports(self, *, limit: int = 1) -> List[Dict[str, Any]]:
        """Newest-first health reports as ``{ts, major, minor, items}``."""

        conn = core_db.connect(self._db_path, read_only=False)
        try:
            rows = conn.execute(
                "SELECT ts, major, minor, items_json FROM health_reports ORDER BY ts DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        finally:
            conn.close()
        return [
            {"ts": ts, "major": major, "minor": minor, "items": json.loads(items_json or "[]")}
            for ts, major, minor, items_json in rows
        ]


@dataclass(slots=True)
class ProjectState:
    """What the change detector needs to remember between cycles."""

    last_backup: Optional[float] = None
    last_backup_files: int = 0
    last_head: Optional[str] = None
    last_cycle_id: Optional[str] = None


def _state_path(home: Path, project: str) -> Path:
    return get_project_state_dir(home, project) / "state.json"


def load_project_state(home: Path, project: str) -> ProjectState:
    data = read_json(_state_path(home, project)) or {}
    last_backup = data.get("last_backup")
    return ProjectState(
        last_backup=float(last_backup) if isinstance(last_backup, (int, float)) else None,
        last_backup_files=int(data.get("last_backup_files") or 0),
        last_head=data.get("last_head") or None,
        last_cycle_id=data.get("last_cycle_id") or None,
    )


def save_project_state(home: Path, project: str, state: ProjectState) -> None:
    write_json_atomic(
        _state_path(home, project),
        {
            "last_backup": state.last_backup,
            "last_backup_files": state.last_backup_files,
            "last_head": state.last_head,
            "last_cycle_id": state.last_cycle_id,
        },
    )


__all__ = [
    "FailureState",
    "HEALTH_REPORTS_KEPT",
    "HistoryStore",
    "ProjectState",
    "Transition",
    "load_project_state",
    "save_project_state",
]
