"""Structured JSONL logging for backup cycles."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from core.paths import get_logs_dir

from .errors import BackupError, describe_error

LOGGER = logging.getLogger("checkpoint.backup")


class BackupLogger:
    """Append one JSON object per event to ``<home>/logs/backup.jsonl``.

    Every line is mirrored to the ``checkpoint.backup`` std logger. A logger
    bound to a project stamps that project on each entry.
    """

    def __init__(self, home: Path, *, project: Optional[str] = None, _lock: Optional[Lock] = None) -> None:
        self._home = Path(home)
        self._log_path = get_logs_dir(self._home) / "backup.jsonl"
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._project = project
        self._lock = _lock or Lock()

    @property
    def path(self) -> Path:
        return self._log_path

    def bind(self, project: str) -> "BackupLogger":
        return BackupLogger(self._home, project=project, _lock=self._lock)

    # ------------------------------------------------------------------
    def _write(self, payload: Dict[str, Any], *, level: int) -> None:
        payload.setdefault("ts", datetime.now(timezone.utc).isoformat())
        if self._project is not None:
            payload.setdefault("project", self._project)
        line = json.dumps(payload, sort_keys=True, default=str)
        with self._lock:
            with self._log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        LOGGER.log(level, "%s", line)

    def event(self, *, event: str, phase: str, ok: bool, **extra: Any) -> None:
        payload = {"event": event, "phase": phase, "ok": bool(ok)}
        payload.update(extra)
        self._write(payload, level=logging.INFO if ok else logging.ERROR)

    def info(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": True}, level=logging.INFO)

    def warning(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": False}, level=logging.WARNING)

    def error(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": False}, level=logging.ERROR)

    def failure(self, event: str, exc: BackupError, **extra: Any) -> None:
        entry = describe_error(exc.code)
        self._write(
            {
                "event": event,
                "ok": False,
                "kind": exc.kind,
                "code": exc.code,
                "message": str(exc),
                "hint": entry.suggestion,
                "path": exc.path,
                **extra,
            },
            level=logging.ERROR,
        )


__all__ = ["BackupLogger"]
