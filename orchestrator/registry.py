"""Registry of projects protected by the daemon."""
from __future__ import annotations

import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from backup.errors import BackupError, LockHeld
from backup.locks import LockManager
from backup.types import Project
from core.atomic import read_json, write_json_atomic
from core.paths import get_registry_path, project_key

REGISTRY_VERSION = 1
_REGISTRY_LOCK = "_registry"


class RegistryError(BackupError):
    code = "ECONF001"


class ProjectRegistry:
    """Authoritative list of projects, stored in ``<home>/projects.json``.

    Every read-modify-write runs under a dedicated lock so the daemon, the
    CLI and editor hooks can update the file concurrently.
    """

    def __init__(self, home: Path, *, lock_timeout: float = 5.0, locks: Optional[LockManager] = None) -> None:
        self._home = Path(home)
        self._path = get_registry_path(self._home)
        self._lock_timeout = lock_timeout
        self._locks = locks or LockManager(self._home)

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    @contextmanager
    def _locked(self) -> Iterator[None]:
        deadline = time.monotonic() + self._lock_timeout
        while True:
            try:
                handle = self._locks.acquire(_REGISTRY_LOCK, internal=True)
                break
            except LockHeld:
                if time.monotonic() >= deadline:
                    raise RegistryError(f"Timed out waiting for the registry lock after {self._lock_timeout}s")
                time.sleep(0.05)
        try:
            yield
        finally:
            self._locks.release(handle)

    def _read(self) -> List[Project]:
        data = read_json(self._path) or {}
        records = data.get("projects") if isinstance(data, dict) else None
        projects: List[Project] = []
        for record in records or []:
            if isinstance(record, dict) and record.get("path"):
                projects.append(Project.from_record(record))
        return projects

    def _write(self, projects: List[Project]) -> None:
        payload: Dict[str, Any] = {
            "version": REGISTRY_VERSION,
            "projects": [project.to_record() for project in projects],
        }
        write_json_atomic(self._path, payload)

    @staticmethod
    def _same_path(left: Path, right: Path) -> bool:
        try:
            return Path(left).expanduser().resolve() == Path(right).expanduser().resolve()
        except OSError:
            return str(left) == str(right)

    # ------------------------------------------------------------------
    def list(self, *, enabled_only: bool = False) -> List[Project]:
        projects = self._read()
        if enabled_only:
            projects = [project for project in projects if project.enabled]
        return projects

    def get(self, key: str) -> Optional[Project]:
        """Look a project up by name or by path."""

        for project in self._read():
            if project.name == key or self._same_path(project.path, Path(key)):
                return project
        return None

    def register(
        self,
        path: Path,
        *,
        name: Optional[str] = None,
        backup_dir: Optional[Path] = None,
        interval_s: Optional[int] = None,
        cron: Optional[str] = None,
    ) -> Project:
        root = Path(path).expanduser().resolve()
        if not root.is_dir():
            raise RegistryError(f"Not a directory: {root}", code="ECONF002", path=str(root))
        with self._locked():
            projects = self._read()
            for existing in projects:
                if self._same_path(existing.path, root):
                    return existing
            base = name or root.name
            taken = {project.name for project in projects}
            taken_keys = {project_key(project.name).casefold() for project in projects}
            candidate = base
            counter = 2
            while candidate in taken or project_key(candidate).casefold() in taken_keys:
                candidate = f"{base}-{counter}"
                counter += 1
            project = Project(
                name=candidate,
                path=root,
                backup_dir=Path(backup_dir).expanduser() if backup_dir else None,
                added=int(time.time()),
                interval_s=interval_s,
                cron=cron,
            )
            projects.append(project)
            self._write(projects)
        return project

    def unregister(self, key: str) -> bool:
        with self._locked():
            projects = self._read()
            kept = [p for p in projects if p.name != key and not self._same_path(p.path, Path(key))]
            if len(kept) == len(projects):
                return False
            self._write(kept)
        return True

    def _update(self, key: str, **changes: Any) -> Optional[Project]:
        with self._locked():
            projects = self._read()
            for project in projects:
                if project.name == key or self._same_path(project.path, Path(key)):
                    for attr, value in changes.items():
                        setattr(project, attr, value)
                    self._write(projects)
                    return project
        return None

    def set_enabled(self, key: str, enabled: bool) -> Optional[Project]:
        return self._update(key, enabled=bool(enabled))

    def update_last_backup(self, key: str, timestamp: Optional[float] = None) -> Optional[Project]:
        return self._update(key, last_backup=int(timestamp if timestamp is not None else time.time()))

    def cleanup_orphaned(self) -> List[str]:
        """Drop projects whose directory no longer exists; returns their names."""

        with self._locked():
            projects = self._read()
            kept = [project for project in projects if Path(project.path).is_dir()]
            removed = [project.name for project in projects if project not in kept]
            if removed:
                self._write(kept)
        return removed


__all__ = ["ProjectRegistry", "REGISTRY_VERSION", "RegistryError"]
