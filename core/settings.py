from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Dict

from .atomic import write_json_atomic
from .paths import get_default_settings_paths, get_logs_dir
from .settings_schema import SETTINGS_VALIDATOR

__all__ = [
    "DEFAULT_SETTINGS",
    "PROJECT_CONFIG_NAME",
    "SETTINGS_VERSION",
    "load_project_overrides",
    "load_settings",
    "merge_defaults",
    "merge_overrides",
    "save_settings",
    "update_settings",
]

SETTINGS_VERSION = 2
PROJECT_CONFIG_NAME = ".checkpoint.json"


DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "daemon": {
        "interval_s": 3600,
        "tick_s": 60,
        "heartbeat_stale_s": 120,
        "heartbeat_refresh_s": 10,
        "backup_warning_s": 24 * 3600,
        "backup_critical_s": 72 * 3600,
        "progress_stale_s": 900,
        "cleanup_every_ticks": 24,
    },
    "backup": {
        "backup_dir_name": "backups",
        "max_file_size_bytes": 0,
        "backup_large_files": True,
        "copy_attempts": 3,
        "copy_backoff_s": 1.0,
        "mtime_skew_s": 2.0,
        "exclude_dirs": [],
        "drive_marker": None,
        "use_git": True,
    },
    "critical": {
        "env_files": True,
        "credentials": True,
        "ide_settings": True,
        "local_notes": True,
        "local_databases": True,
    },
    "databases": {
        "enable": True,
        "dump_timeout_s": 1800,
        "auto_install": False,
        "probe_processes": True,
    },
    "retention": {
        "db_days": 30,
        "file_days": 60,
        "keep_latest_db": 1,
    },
    "cloud": {
        "enable": False,
        "remote": "",
        "remote_path": "Backups/Checkpoint",
        "sync_databases": True,
        "sync_critical": True,
        "sync_files": False,
        "encrypt": False,
        "key_path": "~/.config/checkpoint/age-key.txt",
        "compress": True,
        "workers": 0,
        "parallel_threshold": 8,
        "background": True,
        "timeout_s": 3600,
        "stale_s": 48 * 3600,
    },
    "notifications": {
        "enable": True,
        "webhook_url": None,
        "timeout_s": 10,
    },
    "watchdog": {
        "check_interval_s": 60,
        "stale_s": 300,
        "max_failures": 3,
        "restart_command": [],
        "warning_cooldown_s": 4 * 3600,
        "critical_cooldown_s": 2 * 3600,
    },
    "api": {
        "host": "127.0.0.1",
        "port": 8765,
    },
}


def merge_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    return merge_overrides(DEFAULT_SETTINGS, data or {})


def merge_overrides(default: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in default.items():
        if isinstance(value, dict):
            current = payload.get(key)
            if isinstance(current, dict):
                result[key] = merge_overrides(value, current)
            else:
                result[key] = merge_overrides(value, {})
        elif isinstance(value, list):
            current = payload.get(key)
            result[key] = list(current) if isinstance(current, list) else list(value)
        else:
            result[key] = payload.get(key, value)
    for key, value in payload.items():
        if key not in result:
            result[key] = value
    return result


def _apply_migrations(settings: Dict[str, Any], home: Path) -> Dict[str, Any]:
    version = settings.get("version")
    try:
        version_int = int(version)
    except (TypeError, ValueError):
        version_int = 0
    if version_int < 2:
        backup = settings.get("backup")
        if isinstance(backup, dict) and "max_file_size_mb" in backup:
            try:
                megabytes = float(backup.pop("max_file_size_mb") or 0)
            except (TypeError, ValueError):
                megabytes = 0
            backup["max_file_size_bytes"] = int(megabytes * 1024 * 1024)
    settings["version"] = SETTINGS_VERSION
    return settings


def _log_unknown_keys(settings: Dict[str, Any], home: Path) -> None:
    unknown = list(SETTINGS_VALIDATOR.unknown_keys(settings))
    if not unknown:
        return
    logs_dir = get_logs_dir(home)
    logs_dir.mkdir(parents=True, exist_ok=True)
    payload = {
        "ts": time.time(),
        "unknown": unknown,
    }
    target = logs_dir / "settings_unknown.json"
    try:
        with open(target, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
    except OSError:
        return


def load_settings(home: Path) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for candidate in get_default_settings_paths(home):
        try:
            with open(candidate, "r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError:
            continue
        except OSError:
            continue
        if isinstance(loaded, dict):
            data = loaded
            break
    data = _apply_migrations(data, home)
    merged = merge_defaults(data)
    merged.setdefault("home", str(home))
    _log_unknown_keys(merged, home)
    return merged


def save_settings(settings: Dict[str, Any], home: Path) -> None:
    merged = merge_defaults(_apply_migrations(dict(settings), home))
    merged.setdefault("home", str(home))
    write_json_atomic(home / "settings.json", merged)


def update_settings(home: Path, section: str, **values: Any) -> Dict[str, Any]:
    """Update keys of one settings *section* and persist the result."""

    current = load_settings(home)
    block = current.get(section)
    if not isinstance(block, dict):
        block = {}
    block.update(values)
    current[section] = block
    save_settings(current, home)
    return current


def load_project_overrides(project_root: Path) -> Dict[str, Any]:
    """Return the per-project override mapping from ``.checkpoint.json``.

    A missing file yields ``{}``; an unreadable or malformed one raises
    ``ValueError`` so the caller can fail the cycle with a config error.
    """

    path = Path(project_root) / PROJECT_CONFIG_NAME
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path}: invalid JSON ({exc.msg} at line {exc.lineno})") from exc
    except OSError as exc:
        raise ValueError(f"{path}: unreadable ({exc})") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object")
    return data
