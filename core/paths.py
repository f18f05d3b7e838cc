from __future__ import annotations

import hashlib
import os
import re
from pathlib import Path
from typing import List, Optional

__all__ = [
    "ensure_home_structure",
    "get_cloud_record_path",
    "get_data_dir",
    "get_default_settings_paths",
    "get_heartbeat_path",
    "get_history_db_path",
    "get_locks_dir",
    "get_logs_dir",
    "get_pause_path",
    "get_progress_path",
    "get_project_state_dir",
    "get_registry_path",
    "get_state_dir",
    "get_trigger_path",
    "get_watchdog_path",
    "project_key",
    "resolve_home",
    "safe_label",
]


def _expand_path(value: str) -> Path:
    expanded = os.path.expandvars(os.path.expanduser(value))
    return Path(expanded).resolve()


def _ensure_writable_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    test_file = path / f".write_test_{os.getpid()}"
    try:
        with open(test_file, "w", encoding="utf-8") as handle:
            handle.write("ok")
        test_file.unlink(missing_ok=True)
        return True
    except OSError:
        try:
            if test_file.exists():
                test_file.unlink()
        except OSError:  # pragma: no cover
            pass
        return False


def _prepare_home(candidate: Path) -> Optional[Path]:
    if not _ensure_writable_dir(candidate):
        return None
    try:
        ensure_home_structure(candidate)
    except OSError:
        return None
    return candidate


def resolve_home() -> Path:
    """Resolve the Checkpoint state directory, creating it if required.

    ``CHECKPOINT_HOME`` wins when it points at a writable location; otherwise
    ``~/.checkpoint`` is used, with ``%LOCALAPPDATA%\\Checkpoint`` as the
    Windows fallback.
    """

    env_home = os.environ.get("CHECKPOINT_HOME")
    if env_home:
        try:
            env_path = _expand_path(env_home)
        except (OSError, RuntimeError):
            env_path = None
        if env_path:
            prepared = _prepare_home(env_path)
            if prepared is not None:
                return prepared

    prepared = _prepare_home(Path.home() / ".checkpoint")
    if prepared is not None:
        return prepared

    local_appdata = os.environ.get("LOCALAPPDATA")
    if local_appdata:
        prepared = _prepare_home(_expand_path(local_appdata) / "Checkpoint")
        if prepared is not None:
            return prepared

    fallback = Path.cwd() / ".checkpoint"
    ensure_home_structure(fallback)
    return fallback


_SAFE_LABEL_PATTERN = re.compile(r"[^A-Za-z0-9_.-]+")


def safe_label(label: str) -> str:
    """Return a filesystem-safe label used for lock and state file names."""

    cleaned = _SAFE_LABEL_PATTERN.sub("_", label.strip()).strip(".")
    return cleaned or "project"


def project_key(name: str) -> str:
    """Return the on-disk key for project *name*, unique per name.

    Names that :func:`safe_label` leaves untouched are used as is. Any other
    name gets a short digest suffix so two projects never share a lock or a
    state directory. Keys never start with ``_``; that prefix is kept for
    internal locks such as the registry's.
    """

    label = safe_label(name).lstrip("_") or "project"
    if label == name:
        return label
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    return f"{label}-{digest}"


def get_data_dir(home: Path) -> Path:
    return home / "data"


def get_history_db_path(home: Path) -> Path:
    return get_data_dir(home) / "checkpoint.db"


def get_logs_dir(home: Path) -> Path:
    return home / "logs"


def get_locks_dir(home: Path) -> Path:
    return home / "locks"


def get_state_dir(home: Path) -> Path:
    return home / "state"


def get_project_state_dir(home: Path, project_name: str) -> Path:
    return get_state_dir(home) / project_key(project_name)


def get_cloud_record_path(home: Path, project_name: str) -> Path:
    return get_project_state_dir(home, project_name) / "cloud-upload.json"


def get_heartbeat_path(home: Path) -> Path:
    return home / "daemon.heartbeat"


def get_watchdog_path(home: Path) -> Path:
    return home / "watchdog.heartbeat"


def get_progress_path(home: Path) -> Path:
    return home / "progress.json"


def get_registry_path(home: Path) -> Path:
    return home / "projects.json"


def get_pause_path(home: Path) -> Path:
    return get_state_dir(home) / "paused.json"


def get_trigger_path(home: Path) -> Path:
    return get_state_dir(home) / "trigger.json"


def get_default_settings_paths(home: Path) -> List[Path]:
    return [home / "settings.json", home / "config" / "settings.json"]


def ensure_home_structure(home: Path) -> None:
    for directory in (
        home,
        get_data_dir(home),
        get_logs_dir(home),
        get_locks_dir(home),
        get_state_dir(home),
    ):
        directory.mkdir(parents=True, exist_ok=True)
