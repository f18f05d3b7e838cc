from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from backup.config import build_cycle_config
from backup.errors import BackupError, describe_error
from backup.history import HistoryStore
from backup.locks import LockManager
from core import db as core_db
from core.atomic import read_json
from core.paths import get_history_db_path, get_locks_dir, get_watchdog_path, resolve_home
from core.process import ToolRunner
from core.settings import load_settings
from core.settings_schema import SETTINGS_VALIDATOR
from orchestrator.heartbeat import evaluate_heartbeat, read_heartbeat
from orchestrator.registry import ProjectRegistry


class HealthSeverity(str, Enum):
    MAJOR = "MAJOR"
    MINOR = "MINOR"


@dataclass(slots=True)
class HealthItem:
    severity: HealthSeverity
    code: str
    where: str
    hint: str
    details: Optional[str] = None


@dataclass(slots=True)
class HealthSummary:
    major: int = 0
    minor: int = 0

    @classmethod
    def from_items(cls, items: Sequence[HealthItem]) -> "HealthSummary":
        major = sum(1 for item in items if item.severity is HealthSeverity.MAJOR)
        minor = sum(1 for item in items if item.severity is HealthSeverity.MINOR)
        return cls(major=major, minor=minor)


@dataclass(slots=True)
class HealthReport:
    ts: float
    items: List[HealthItem]

    @property
    def summary(self) -> HealthSummary:
        return HealthSummary.from_items(self.items)


@dataclass(slots=True)
class CheckContext:
    home: Path
    settings: Dict[str, Any]
    runner: ToolRunner


CheckFunc = Callable[[CheckContext], Iterator[HealthItem]]


def _section(settings: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = settings.get(name)
    return dict(value) if isinstance(value, dict) else {}


def _check_daemon_heartbeat(ctx: CheckContext) -> Iterator[HealthItem]:
    daemon = _section(ctx.settings, "daemon")
    cloud = _section(ctx.settings, "cloud")
    status = evaluate_heartbeat(
        read_heartbeat(ctx.home),
        stale_s=float(daemon.get("heartbeat_stale_s") or 120),
        backup_warning_s=float(daemon.get("backup_warning_s") or 86400),
        backup_critical_s=float(daemon.get("backup_critical_s") or 259200),
        cloud_stale_s=float(cloud.get("stale_s") or 0) if cloud.get("enable") else None,
    )
    if status.severity == "ok":
        return
    severity = HealthSeverity.MAJOR if status.severity == "critical" else HealthSeverity.MINOR
    hints = {
        "missing": "Start the daemon with `checkpoint daemon`",
        "stale": "The daemon stopped updating its heartbeat; restart it",
        "stopped": "The daemon was stopped; start it again when backups should resume",
        "error": "Inspect logs/daemon.jsonl for the failing project",
        "backups-stale": "Backups are overdue; run `checkpoint backup-now --force`",
    }
    yield HealthItem(
        severity=severity,
        code=f"DAEMON_{status.status.upper().replace('-', '_')}",
        where="daemon.heartbeat",
        hint=hints.get(status.status, "Check the daemon"),
        details=status.detail or None,
    )


def _check_watchdog_record(ctx: CheckContext) -> Iterator[HealthItem]:
    record = read_json(get_watchdog_path(ctx.home))
    if not record or not isinstance(record.get("timestamp"), (int, float)):
        yield HealthItem(
            severity=HealthSeverity.MINOR,
            code="WATCHDOG_MISSING",
            where="watchdog.heartbeat",
            hint="Run `checkpoint watchdog` to supervise the daemon",
        )
        return
    watchdog = _section(ctx.settings, "watchdog")
    stale_s = float(watchdog.get("stale_s") or 300)
    age = time.time() - float(record["timestamp"])
    if record.get("status") != "stopped" and age > stale_s:
        yield HealthItem(
            severity=HealthSeverity.MAJOR,
            code="WATCHDOG_STALE",
            where="watchdog.heartbeat",
            hint="The watchdog stopped writing its record; restart it",
            details=f"{int(age)}s old",
        )


def _check_projects(ctx: CheckContext) -> Iterator[HealthItem]:
    history = HistoryStore(ctx.home)
    for project in ProjectRegistry(ctx.home).list(enabled_only=True):
        try:
            build_cycle_config(project, ctx.settings, home=ctx.home)
        except BackupError as exc:
            yield HealthItem(
                severity=HealthSeverity.MAJOR,
                code=f"PROJECT_{exc.code}",
                where=project.name,
                hint=describe_error(exc.code).suggestion,
                details=str(exc),
            )
            continue
        state = history.failure_state(project.name)
        if state.failing:
            yield HealthItem(
                severity=HealthSeverity.MAJOR,
                code="PROJECT_FAILING",
                where=project.name,
                hint="Run `checkpoint backup-now --force` and read the errors",
                details=f"{state.consecutive} consecutive failures: {state.last_error or ''}"[:160],
            )


def _check_locks(ctx: CheckContext) -> Iterator[HealthItem]:
    locks = LockManager(ctx.home)
    for path in sorted(get_locks_dir(ctx.home).glob("*.lock")):
        info = locks.inspect_path(path)
        if info is not None and not info.alive:
            yield HealthItem(
                severity=HealthSeverity.MINOR,
                code="LOCK_STALE",
                where=str(path),
                hint="The next cycle reclaims it; remove it by hand if no backup is running",
                details=f"pid={info.pid} age={int(info.age_s)}s",
            )


def _check_tooling(ctx: CheckContext) -> Iterator[HealthItem]:
    backup = _section(ctx.settings, "backup")
    cloud = _section(ctx.settings, "cloud")
    required: Dict[str, tuple] = {}
    if backup.get("use_git", True):
        required["git"] = (HealthSeverity.MINOR, "Install git for faster change detection")
    if cloud.get("enable"):
        required["rclone"] = (HealthSeverity.MAJOR, "Install rclone and run `checkpoint cloud configure`")
        if cloud.get("encrypt"):
            required["age"] = (HealthSeverity.MAJOR, "Install age to encrypt cloud uploads")
            required["age-keygen"] = (HealthSeverity.MAJOR, "Install age-keygen alongside age")
    for tool, (severity, hint) in required.items():
        if ctx.runner.which(tool) is None:
            yield HealthItem(severity=severity, code=f"TOOL_{tool.upper().replace('-', '_')}_MISSING", where="PATH", hint=hint)
    if cloud.get("enable") and cloud.get("encrypt"):
        key_path = Path(str(cloud.get("key_path") or "")).expanduser()
        if not key_path.is_file():
            yield HealthItem(
                severity=HealthSeverity.MAJOR,
                code="CLOUD_KEY_MISSING",
                where=str(key_path),
                hint="Generate a key with `age-keygen -o` or disable cloud.encrypt",
            )


def _check_history_db(ctx: CheckContext) -> Iterator[HealthItem]:
    db_path = get_history_db_path(ctx.home)
    if not db_path.exists():
        return
    try:
        conn = core_db.connect(db_path, read_only=True, timeout=2.0)
    except sqlite3.Error as exc:
        yield HealthItem(
            severity=HealthSeverity.MAJOR,
            code="HISTORY_OPEN_FAIL",
            where=str(db_path),
            hint="Ensure the history database is readable",
            details=str(exc),
        )
        return
    try:
        result = core_db.quick_check(conn)
    except sqlite3.DatabaseError as exc:
        result = str(exc)
    finally:
        conn.close()
    if result != "ok":
        yield HealthItem(
            severity=HealthSeverity.MAJOR,
            code="HISTORY_CORRUPT",
            where=str(db_path),
            hint="Move the history database aside; it is rebuilt on the next cycle",
            details=result[:160],
        )


def _check_settings_schema(ctx: CheckContext) -> Iterator[HealthItem]:
    unknown_keys = list(SETTINGS_VALIDATOR.unknown_keys(ctx.settings))
    if unknown_keys:
        yield HealthItem(
            severity=HealthSeverity.MINOR,
            code="SETTINGS_UNKNOWN",
            where="settings.json",
            hint="Remove unknown keys or update schema",
            details=", ".join(sorted(unknown_keys))[:120],
        )


CHECKS: Sequence[CheckFunc] = (
    _check_daemon_heartbeat,
    _check_watchdog_record,
    _check_projects,
    _check_locks,
    _check_tooling,
    _check_history_db,
    _check_settings_schema,
)


def run_checks(
    home: Optional[Path] = None,
    *,
    settings: Optional[Dict[str, Any]] = None,
    runner: Optional[ToolRunner] = None,
) -> HealthReport:
    base = Path(home) if home is not None else resolve_home()
    ctx = CheckContext(home=base, settings=settings if settings is not None else load_settings(base), runner=runner or ToolRunner())
    items: List[HealthItem] = []
    for check in CHECKS:
        try:
            items.extend(check(ctx))
        except (BackupError, OSError, ValueError) as exc:
            items.append(
                HealthItem(
                    severity=HealthSeverity.MAJOR,
                    code="CHECK_FAIL",
                    where=getattr(check, "__name__", "health.check"),
                    hint="Check raised unexpectedly; inspect logs",
                    details=str(exc),
                )
            )
    return HealthReport(ts=time.time(), items=items)


__all__ = ["CHECKS", "HealthItem", "HealthReport", "HealthSeverity", "HealthSummary", "run_checks"]
