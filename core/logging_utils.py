from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .paths import get_logs_dir, resolve_home

__all__ = ["JsonLogFormatter", "configure_json_logging", "redact_secret", "redact_url"]


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: Dict[str, Any] = {
            "ts": time.time(),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key, value in getattr(record, "__dict__", {}).items():
            if key.startswith("_") or key in payload or key in _RESERVED:
                continue
            try:
                json.dumps(value)
            except TypeError:
                continue
            payload[key] = value
        return json.dumps(payload, ensure_ascii=False)


_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {"message", "asctime"}


def configure_json_logging(name: str = "checkpoint", home: Optional[Path] = None) -> logging.Logger:
    home = home or resolve_home()
    logs_dir = get_logs_dir(home)
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "checkpoint.log.jsonl"
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler) and getattr(handler, "baseFilename", None) == str(log_path):
            break
    else:
        handler = logging.FileHandler(log_path, encoding="utf-8")
        handler.setFormatter(JsonLogFormatter())
        logger.addHandler(handler)
    return logger


_URL_PASSWORD = re.compile(r"(?P<prefix>[a-zA-Z][a-zA-Z0-9+.-]*://[^:/@\s]+:)(?P<password>[^@\s]+)(?P<suffix>@)")


def redact_url(url: str | None) -> str:
    """Mask the password component of a connection URL."""

    if not url:
        return ""
    return _URL_PASSWORD.sub(lambda match: f"{match.group('prefix')}***{match.group('suffix')}", url)


def redact_secret(text: str | None, secret: str | None) -> str:
    """Replace every occurrence of *secret* in *text* with ``***``."""

    if not text:
        return ""
    if not secret:
        return text
    return text.replace(secret, "***")
