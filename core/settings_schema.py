from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping


_ALLOWED_STRUCTURE: Dict[str, Any] = {
    "daemon": {
        "interval_s",
        "tick_s",
        "heartbeat_stale_s",
        "heartbeat_refresh_s",
        "backup_warning_s",
        "backup_critical_s",
        "progress_stale_s",
        "cleanup_every_ticks",
    },
    "backup": {
        "backup_dir_name",
        "max_file_size_bytes",
        "backup_large_files",
        "copy_attempts",
        "copy_backoff_s",
        "mtime_skew_s",
        "exclude_dirs",
        "drive_marker",
        "use_git",
    },
    "critical": {
        "env_files",
        "credentials",
        "ide_settings",
        "local_notes",
        "local_databases",
    },
    "databases": {"enable", "dump_timeout_s", "auto_install", "probe_processes"},
    "retention": {"db_days", "file_days", "keep_latest_db"},
    "cloud": "*",
    "notifications": "*",
    "watchdog": "*",
    "api": {"host", "port"},
    "home": None,
    "version": None,
}


@dataclass(slots=True)
class SettingsValidator:
    schema: Mapping[str, Any]

    def unknown_keys(self, payload: Mapping[str, Any]) -> Iterable[str]:
        return sorted(self._iter_unknown(payload, self.schema, path=""))

    def _iter_unknown(self, payload: Mapping[str, Any], schema: Mapping[str, Any], *, path: str) -> Iterable[str]:
        for key, value in payload.items():
            if key not in schema:
                yield f"{path}{key}"
                continue
            rule = schema[key]
            if rule is None or rule == "*":
                continue
            if isinstance(rule, set):
                if not isinstance(value, Mapping):
                    continue
                for sub in value.keys():
                    if sub not in rule:
                        yield f"{path}{key}.{sub}"
                continue
            if isinstance(rule, Mapping) and isinstance(value, Mapping):
                yield from self._iter_unknown(value, rule, path=f"{path}{key}.")


SETTINGS_VALIDATOR = SettingsValidator(_ALLOWED_STRUCTURE)

# Keys a project's .checkpoint.json may carry at the top level besides the
# global sections it overrides.
PROJECT_KEYS = frozenset({"name", "backup_dir", "schedule", "exclude"})

__all__ = ["PROJECT_KEYS", "SETTINGS_VALIDATOR"]
