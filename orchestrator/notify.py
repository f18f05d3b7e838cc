"""Failure and recovery notifications."""
from __future__ import annotations

import logging
import socket
import time
from typing import Any, Dict, Mapping, Optional

import requests

from backup.history import Transition
from core.logging_utils import redact_secret

LOGGER = logging.getLogger("checkpoint.notify")


class Notifier:
    """Send one message per health transition to the log and an optional webhook."""

    def __init__(self, settings: Optional[Mapping[str, Any]] = None, *, session: Optional[requests.Session] = None) -> None:
        section = dict(settings or {})
        self._enabled = bool(section.get("enable", True))
        self._webhook_url = section.get("webhook_url") or None
        self._timeout = float(section.get("timeout_s") or 10)
        self._session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def send(self, title: str, message: str, *, severity: str = "warning", **extra: Any) -> bool:
        if not self._enabled:
            return False
        level = logging.ERROR if severity == "critical" else logging.WARNING if severity == "warning" else logging.INFO
        LOGGER.log(level, "%s: %s", title, message)
        if not self._webhook_url:
            return True
        payload: Dict[str, Any] = {
            "title": title,
            "message": message,
            "severity": severity,
            "host": socket.gethostname(),
            "timestamp": int(time.time()),
        }
        payload.update(extra)
        try:
            response = self._session.post(self._webhook_url, json=payload, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("webhook delivery failed: %s", redact_secret(str(exc), self._webhook_url))
            return False
        return True

    def cycle_transition(self, project: str, transition: Transition) -> bool:
        """Notify on entering failure and on recovery; repeated failures stay quiet."""

        if transition.entered_failure:
            return self.send(
                f"Checkpoint: {project} backup failing",
                transition.state.last_error or "backup cycle failed",
                severity="critical",
                project=project,
            )
        if transition.recovered:
            return self.send(f"Checkpoint: {project} recovered", "backups are healthy again", severity="info", project=project)
        return False


__all__ = ["Notifier"]
