"""Heartbeat and progress files consumed by the watchdog, the CLI and viewers."""
from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from backup.api import CycleReporter
from backup.types import CycleResult, Phase
from core.atomic import read_json, write_json_atomic
from core.paths import get_heartbeat_path, get_progress_path

STATUS_HEALTHY = "healthy"
STATUS_SYNCING = "syncing"
STATUS_ERROR = "error"
STATUS_STOPPED = "stopped"
STATUS_STALE = "stale"
STATUS_BACKUPS_STALE = "backups-stale"
STATUS_MISSING = "missing"

SYNC_COUNTERS = (
    "syncing_project_index",
    "syncing_total_projects",
    "syncing_current_project",
    "syncing_backed_up",
    "syncing_failed",
    "syncing_skipped",
)
_CYCLE_FIELDS = SYNC_COUNTERS + ("phase", "processed_files", "total_files")

PHASE_PERCENT: Dict[Phase, Tuple[int, int]] = {
    Phase.IDLE: (0, 0),
    Phase.INITIALIZING: (0, 5),
    Phase.SCANNING: (5, 15),
    Phase.PREPARING: (15, 20),
    Phase.COPYING: (20, 80),
    Phase.VERIFYING: (80, 88),
    Phase.MANIFEST: (88, 92),
    Phase.CLOUD_SYNCING: (92, 98),
    Phase.CLOUD_SYNCING_ARCHIVES: (92, 98),
    Phase.CLOUD_SYNCING_ENCRYPTING: (92, 98),
    Phase.CLOUD_SYNCING_DATABASES: (92, 98),
    Phase.CLOUD_SYNCING_FILES: (92, 98),
    Phase.FINALIZING: (100, 100),
}


def phase_percent(phase: Phase, processed: int = 0, total: int = 0) -> Optional[int]:
    span = PHASE_PERCENT.get(phase)
    if span is None:
        return None
    low, high = span
    if total <= 0:
        return low
    fraction = min(1.0, max(0.0, processed / total))
    return int(low + (high - low) * fraction)


def read_heartbeat(home: Path) -> Optional[Dict[str, Any]]:
    return read_json(get_heartbeat_path(home))


def read_progress(home: Path) -> Optional[Dict[str, Any]]:
    return read_json(get_progress_path(home))


class HeartbeatPublisher:
    """Keep ``daemon.heartbeat`` current.

    Phase changes are written at once; counter-only updates are throttled
    to one write per *refresh_s*.
    """

    def __init__(self, home: Path, *, refresh_s: float = 10.0, clock=time.time) -> None:
        self._home = Path(home)
        self._path = get_heartbeat_path(self._home)
        self._refresh_s = refresh_s
        self._clock = clock
        self._lock = threading.Lock()
        previous = read_json(self._path) or {}
        self._state: Dict[str, Any] = {
            "status": STATUS_HEALTHY,
            "project": None,
            "last_backup": previous.get("last_backup"),
            "last_backup_files": previous.get("last_backup_files") or 0,
            "error": None,
            "pid": os.getpid(),
            "last_cloud_upload": previous.get("last_cloud_upload"),
            "cloud_pending_since": previous.get("cloud_pending_since"),
        }
        self._last_write = 0.0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def state(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._state)

    def _flush(self) -> None:
        now = self._clock()
        payload = dict(self._state)
        payload["timestamp"] = int(now)
        write_json_atomic(self._path, payload)
        self._last_write = now

    def publish(self, status: Optional[str] = None, **fields: Any) -> None:
        with self._lock:
            if status is not None:
                self._state["status"] = status
            self._state.update(fields)
            if self._state["status"] != STATUS_SYNCING:
                for key in _CYCLE_FIELDS:
                    self._state.pop(key, None)
            self._flush()

    def update(self, **fields: Any) -> None:
        with self._lock:
            self._state.update(fields)
            if self._clock() - self._last_write >= self._refresh_s:
                self._flush()

    def touch(self) -> None:
        """Rewrite the timestamp so readers see the daemon is alive while idle."""

        with self._lock:
            self._flush()

    def stopped(self) -> None:
        self.publish(STATUS_STOPPED, project=None)


class ProgressReporter(CycleReporter):
    """Republish cycle phases to the heartbeat and ``progress.json``."""

    def __init__(self, home: Path, heartbeat: HeartbeatPublisher, *, min_interval_s: float = 1.0, clock=time.time) -> None:
        self._path = get_progress_path(Path(home))
        self._heartbeat = heartbeat
        self._min_interval_s = min_interval_s
        self._clock = clock
        self._last_write = 0.0
        self._percent = 0

    def _write(self, cycle: CycleResult, phase: Phase, processed: int, total: int, *, force: bool) -> None:
        percent = phase_percent(phase, processed, total)
        if percent is not None:
            self._percent = percent
        now = self._clock()
        if not force and now - self._last_write < self._min_interval_s:
            return
        write_json_atomic(
            self._path,
            {
                "percent": self._percent,
                "phase": phase.value,
                "total_files": total,
                "processed_files": processed,
                "project": cycle.project,
                "timestamp": int(now),
            },
        )
        self._last_write = now

    def phase(self, cycle: CycleResult, phase: Phase) -> None:
        if phase is Phase.ERROR:
            message = cycle.errors[-1].message if cycle.errors else "cycle failed"
            self._heartbeat.publish(STATUS_ERROR, project=cycle.project, error=message, phase=phase.value)
        else:
            self._heartbeat.publish(STATUS_SYNCING, project=cycle.project, phase=phase.value)
        self._write(cycle, phase, 0, 0, force=True)

    def progress(self, cycle: CycleResult, phase: Phase, processed: int, total: int) -> None:
        self._write(cycle, phase, processed, total, force=False)
        self._heartbeat.update(processed_files=processed, total_files=total)


@dataclass(slots=True)
class HeartbeatStatus:
    status: str
    severity: str = "ok"
    age_s: Optional[float] = None
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "severity": self.severity, "age_s": self.age_s, "detail": self.detail}


def evaluate_heartbeat(
    data: Optional[Dict[str, Any]],
    *,
    now: Optional[float] = None,
    stale_s: float = 120.0,
    backup_warning_s: float = 86400.0,
    backup_critical_s: float = 259200.0,
    cloud_stale_s: Optional[float] = None,
) -> HeartbeatStatus:
    """Derive the reader-side status: ``missing``, ``stale`` and ``backups-stale`` on top of what was written."""

    now = time.time() if now is None else now
    if not data or not isinstance(data.get("timestamp"), (int, float)):
        return HeartbeatStatus(STATUS_MISSING, severity="critical", detail="no heartbeat file")
    age = max(0.0, now - float(data["timestamp"]))
    written = str(data.get("status") or STATUS_HEALTHY)
    if written == STATUS_STOPPED:
        return HeartbeatStatus(STATUS_STOPPED, severity="warning", age_s=age, detail="daemon stopped")
    if age > stale_s:
        return HeartbeatStatus(STATUS_STALE, severity="critical", age_s=age, detail=f"heartbeat {int(age)}s old")
    if written == STATUS_ERROR:
        return HeartbeatStatus(STATUS_ERROR, severity="warning", age_s=age, detail=str(data.get("error") or ""))

    last_backup = data.get("last_backup")
    if isinstance(last_backup, (int, float)):
        since = now - float(last_backup)
        if since > backup_critical_s:
            return HeartbeatStatus(STATUS_BACKUPS_STALE, severity="critical", age_s=age, detail=f"last backup {int(since)}s ago")
        if since > backup_warning_s:
            return HeartbeatStatus(STATUS_BACKUPS_STALE, severity="warning", age_s=age, detail=f"last backup {int(since)}s ago")
    last_cloud = data.get("last_cloud_upload")
    pending_since = data.get("cloud_pending_since")
    cloud_since, cloud_detail = 0.0, ""
    if isinstance(last_cloud, (int, float)):
        cloud_since = now - float(last_cloud)
        cloud_detail = f"last cloud upload {int(cloud_since)}s ago"
    elif isinstance(pending_since, (int, float)):
        # No upload ever succeeded; age from the first attempt.
        cloud_since = now - float(pending_since)
        cloud_detail = f"no cloud upload in {int(cloud_since)}s"
    if cloud_stale_s and cloud_detail and cloud_since > cloud_stale_s:
        return HeartbeatStatus(STATUS_BACKUPS_STALE, severity="warning", age_s=age, detail=cloud_detail)
    return HeartbeatStatus(written, age_s=age)


__all__ = [
    "HeartbeatPublisher",
    "HeartbeatStatus",
    "PHASE_PERCENT",
    "ProgressReporter",
    "SYNC_COUNTERS",
    "evaluate_heartbeat",
    "phase_percent",
    "read_heartbeat",
    "read_progress",
]
