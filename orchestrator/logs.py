"""Structured logging helpers for the daemon."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from core.paths import get_logs_dir

LOGGER = logging.getLogger("checkpoint.daemon")


class DaemonLogger:
    """Write structured JSONL events for the daemon and watchdog."""

    def __init__(self, home: Path, *, filename: str = "daemon.jsonl") -> None:
        self._home = Path(home)
        self._log_path = get_logs_dir(self._home) / filename
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._log_path

    # ------------------------------------------------------------------
    def log_event(
        self,
        *,
        level: str,
        event: str,
        project: Optional[str],
        phase: str,
        ok: bool,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "project": project,
            "phase": phase,
            "ok": ok,
        }
        if data:
            payload.update(data)
        line = json.dumps(payload, sort_keys=True, default=str)
        with self._lock:
            with self._log_path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        LOGGER.log(getattr(logging, level, logging.INFO), "%s", line)

    # ------------------------------------------------------------------
    def log_tick(self, event: str, ok: bool, **data: Any) -> None:
        self.log_event(level="INFO", event=event, project=None, phase="tick", ok=ok, data=data)

    def log_project(self, project: str, event: str, ok: bool, **data: Any) -> None:
        self.log_event(level="INFO" if ok else "WARNING", event=event, project=project, phase="cycle", ok=ok, data=data)

    def log_watchdog(self, event: str, ok: bool, **data: Any) -> None:
        self.log_event(level="INFO" if ok else "WARNING", event=event, project=None, phase="watchdog", ok=ok, data=data)

    def log_error(self, event: str, project: Optional[str], phase: str, err: BaseException, **data: Any) -> None:
        payload = dict(data)
        payload["err"] = type(err).__name__
        payload["err_msg"] = str(err)
        self.log_event(level="ERROR", event=event, project=project, phase=phase, ok=False, data=payload)


__all__ = ["DaemonLogger"]
