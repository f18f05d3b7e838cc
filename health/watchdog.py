"""Independent supervisor for the backup daemon.

The watchdog never touches backups. It reads ``daemon.heartbeat``, keeps
its own ``watchdog.heartbeat`` record fresh, restarts the daemon through a
configured command after repeated stale readings, and rate-limits its
notifications per severity.
"""
from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from core.atomic import read_json, write_json_atomic
from core.paths import get_state_dir, get_watchdog_path
from core.process import ToolRunner
from core.settings import load_settings
from orchestrator.heartbeat import (
    STATUS_BACKUPS_STALE,
    STATUS_ERROR,
    STATUS_HEALTHY,
    STATUS_MISSING,
    STATUS_STALE,
    HeartbeatStatus,
    evaluate_heartbeat,
    read_heartbeat,
)
from orchestrator.logs import DaemonLogger
from orchestrator.notify import Notifier

RECORD_RUNNING = "running"
RECORD_STOPPED = "stopped"
_RESTART_STATUSES = (STATUS_STALE, STATUS_MISSING)


@dataclass(slots=True)
class WatchdogReport:
    self_status: str
    self_age_s: Optional[float]
    daemon: HeartbeatStatus
    consecutive_failures: int
    restarted: bool = False

    @property
    def ok(self) -> bool:
        return self.daemon.severity == "ok"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "self_status": self.self_status,
            "self_age_s": self.self_age_s,
            "daemon": self.daemon.to_dict(),
            "consecutive_failures": self.consecutive_failures,
            "restarted": self.restarted,
        }


def _cooldown_path(home: Path) -> Path:
    return get_state_dir(home) / "notify-cooldown.json"


class Watchdog:
    def __init__(
        self,
        home: Path,
        settings: Optional[Mapping[str, Any]] = None,
        *,
        runner: Optional[ToolRunner] = None,
        notifier: Optional[Notifier] = None,
        logger: Optional[DaemonLogger] = None,
        clock=time.time,
    ) -> None:
        self._home = Path(home)
        self._settings = dict(settings) if settings is not None else load_settings(self._home)
        section = dict(self._settings.get("watchdog") or {})
        self._interval_s = float(section.get("check_interval_s") or 60)
        self._stale_s = float(section.get("stale_s") or 300)
        self._daemon_stale_s = float(dict(self._settings.get("daemon") or {}).get("heartbeat_stale_s") or 120)
        self._max_failures = int(section.get("max_failures") or 3)
        self._restart_command: List[str] = [str(part) for part in section.get("restart_command") or []]
        self._cooldowns = {
            "warning": float(section.get("warning_cooldown_s") or 4 * 3600),
            "critical": float(section.get("critical_cooldown_s") or 2 * 3600),
        }
        self._runner = runner or ToolRunner()
        self._notifier = notifier or Notifier(self._settings.get("notifications"))
        self._logger = logger or DaemonLogger(self._home, filename="watchdog.jsonl")
        self._clock = clock
        self._failures = 0
        self._last_status: Optional[str] = None

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    # ------------------------------------------------------------------
    def _self_status(self, now: float) -> tuple:
        record = read_json(get_watchdog_path(self._home))
        if not record or not isinstance(record.get("timestamp"), (int, float)):
            return STATUS_MISSING, None
        age = max(0.0, now - float(record["timestamp"]))
        if record.get("status") == RECORD_STOPPED or age > self._stale_s:
            return STATUS_STALE, age
        return STATUS_HEALTHY, age

    def check(self, *, now: Optional[float] = None) -> WatchdogReport:
        """Read both heartbeats without side effects."""

        now = self._clock() if now is None else now
        self_status, self_age = self._self_status(now)
        daemon_cfg = dict(self._settings.get("daemon") or {})
        cloud_cfg = dict(self._settings.get("cloud") or {})
        daemon = evaluate_heartbeat(
            read_heartbeat(self._home),
            now=now,
            stale_s=self._daemon_stale_s,
            backup_warning_s=float(daemon_cfg.get("backup_warning_s") or 86400),
            backup_critical_s=float(daemon_cfg.get("backup_critical_s") or 259200),
            cloud_stale_s=float(cloud_cfg.get("stale_s") or 0) if cloud_cfg.get("enable") else None,
        )
        return WatchdogReport(
            self_status=self_status,
            self_age_s=self_age,
            daemon=daemon,
            consecutive_failures=self._failures,
        )

    def _write_record(self, status: str, daemon_status: Optional[str]) -> None:
        write_json_atomic(
            get_watchdog_path(self._home),
            {
                "timestamp": int(self._clock()),
                "pid": os.getpid(),
                "status": status,
                "daemon_status": daemon_status,
                "consecutive_failures": self._failures,
            },
        )

    # ------------------------------------------------------------------
    def _should_notify(self, severity: str) -> bool:
        cooldown = self._cooldowns.get(severity)
        if cooldown is None:
            return True
        path = _cooldown_path(self._home)
        state = read_json(path) or {}
        now = self._clock()
        last = state.get(severity)
        if isinstance(last, (int, float)) and now - last < cooldown:
            self._logger.log_watchdog("notify_suppressed", True, severity=severity, elapsed_s=int(now - last))
            return False
        state[severity] = int(now)
        write_json_atomic(path, state)
        return True

    def _notify(self, title: str, message: str, severity: str) -> None:
        if self._should_notify(severity):
            self._notifier.send(title, message, severity=severity, source="watchdog")

    def restart_daemon(self) -> bool:
        if not self._restart_command:
            self._logger.log_watchdog("restart_unconfigured", False)
            return False
        result = self._runner.run(self._restart_command, timeout=120)
        self._logger.log_watchdog(
            "daemon_restarted" if result.ok else "daemon_restart_failed",
            result.ok,
            command=self._restart_command,
            detail=None if result.ok else result.describe(),
        )
        return result.ok

    def step(self) -> WatchdogReport:
        """One supervision pass: evaluate, maybe restart, notify, write the record."""

        report = self.check()
        status = report.daemon.status
        if status in _RESTART_STATUSES:
            self._failures += 1
            self._logger.log_watchdog(
                "heartbeat_issue", False, daemon_status=status, age_s=report.daemon.age_s, failures=self._failures
            )
            if self._failures >= self._max_failures:
                report.restarted = self.restart_daemon()
                self._notify(
                    "Checkpoint watchdog",
                    "Restarted the backup daemon after a heartbeat timeout"
                    if report.restarted
                    else f"Backup daemon heartbeat is {status} and no restart succeeded",
                    "critical",
                )
                self._failures = 0
        else:
            self._failures = 0
            if status in (STATUS_BACKUPS_STALE, STATUS_ERROR) and status != self._last_status:
                self._notify(f"Checkpoint: {status}", report.daemon.detail or status, report.daemon.severity)
            elif report.daemon.severity == "ok" and self._last_status in _RESTART_STATUSES + (STATUS_BACKUPS_STALE, STATUS_ERROR):
                self._notifier.send("Checkpoint recovered", "the backup daemon is healthy again", severity="info", source="watchdog")
        report.consecutive_failures = self._failures
        self._last_status = status
        self._write_record(RECORD_RUNNING, status)
        return report

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or threading.Event()
        self._logger.log_watchdog("watchdog_started", True, interval_s=self._interval_s, stale_s=self._stale_s)
        try:
            while not stop_event.is_set():
                self.step()
                stop_event.wait(self._interval_s)
        finally:
            self._write_record(RECORD_STOPPED, self._last_status)
            self._logger.log_watchdog("watchdog_stopped", True)


__all__ = ["Watchdog", "WatchdogReport"]
