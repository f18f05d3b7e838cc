"""Atomic file writes for state files polled by external readers."""
from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Mapping, Optional

__all__ = ["read_json", "write_json_atomic", "write_text_atomic"]


def _tmp_name(target: Path) -> Path:
    return target.with_name(f".{target.name}.{os.getpid()}.{threading.get_ident()}.tmp")


def write_text_atomic(target: Path, text: str) -> Path:
    """Write *text* to *target* via temp file, fsync and rename.

    Readers either see the previous content or the new content, never a
    partially written file.
    """

    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = _tmp_name(target)
    try:
        with open(tmp, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, target)
    except OSError:
        try:
            if tmp.exists():
                tmp.unlink()
        except OSError:
            pass
        raise
    return target


def write_json_atomic(target: Path, payload: Mapping[str, Any]) -> Path:
    text = json.dumps(dict(payload), ensure_ascii=False, indent=2, sort_keys=True)
    return write_text_atomic(target, text + "\n")


def read_json(path: Path) -> Optional[dict]:
    """Return the JSON object stored at *path* or ``None`` when unreadable."""

    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None
