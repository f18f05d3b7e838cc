"""Cloud upload policy derived from the ``cloud`` settings section."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Tuple

DEFAULT_KEY_PATH = "~/.config/checkpoint/age-key.txt"

CRITICAL_CLOUD_PATTERNS: Tuple[str, ...] = (".env", ".env.*", "credentials.*", "*.pem", "*.key")
ALL_FILES_EXCLUDES: Tuple[str, ...] = ("node_modules/*", ".git/*", "*.log")


@dataclass(frozen=True, slots=True)
class CloudPolicy:
    enable: bool = False
    remote: str = ""
    remote_path: str = "Backups/Checkpoint"
    sync_databases: bool = True
    sync_critical: bool = True
    sync_files: bool = False
    encrypt: bool = False
    key_path: Path = Path(DEFAULT_KEY_PATH).expanduser()
    compress: bool = True
    workers: int = 0
    parallel_threshold: int = 8
    background: bool = True
    timeout_s: float = 3600.0
    stale_s: int = 48 * 3600

    @property
    def configured(self) -> bool:
        return self.enable and bool(self.remote)

    @property
    def worker_count(self) -> int:
        if self.workers and self.workers > 0:
            return int(self.workers)
        return max(1, os.cpu_count() or 1)

    def remote_target(self, project: str, category: str) -> str:
        base = self.remote_path.strip("/")
        parts = [part for part in (base, project, category) if part]
        return f"{self.remote.rstrip(':')}:{'/'.join(parts)}"

    @classmethod
    def from_settings(cls, section: Mapping[str, Any]) -> "CloudPolicy":
        key_path = section.get("key_path") or DEFAULT_KEY_PATH
        return cls(
            enable=bool(section.get("enable", False)),
            remote=str(section.get("remote") or ""),
            remote_path=str(section.get("remote_path") or ""),
            sync_databases=bool(section.get("sync_databases", True)),
            sync_critical=bool(section.get("sync_critical", True)),
            sync_files=bool(section.get("sync_files", False)),
            encrypt=bool(section.get("encrypt", False)),
            key_path=Path(os.path.expanduser(str(key_path))),
            compress=bool(section.get("compress", True)),
            workers=int(section.get("workers") or 0),
            parallel_threshold=int(section.get("parallel_threshold") or 8),
            background=bool(section.get("background", True)),
            timeout_s=float(section.get("timeout_s") or 3600),
            stale_s=int(section.get("stale_s") or 48 * 3600),
        )


__all__ = ["ALL_FILES_EXCLUDES", "CRITICAL_CLOUD_PATTERNS", "CloudPolicy", "DEFAULT_KEY_PATH"]
