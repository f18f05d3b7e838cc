"""Build and persist the per-cycle inventory of backed-up files and databases."""
from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from core.atomic import read_json, write_json_atomic

from .databases import find_snapshots
from .logs import BackupLogger
from .types import CycleResult, Manifest

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from .config import CycleConfig

MANIFEST_VERSION = 1
MANIFEST_NAME = ".checkpoint-manifest.json"


def load_manifest(backup_dir: Path) -> Optional[Dict[str, Any]]:
    return read_json(Path(backup_dir) / MANIFEST_NAME)


def _walk_current_tree(files_dir: Path) -> Dict[str, Dict[str, Any]]:
    entries: Dict[str, Dict[str, Any]] = {}
    if not files_dir.is_dir():
        return entries
    for dirpath, _dirnames, filenames in os.walk(files_dir):
        for filename in filenames:
            if filename.endswith(".partial"):
                continue
            path = Path(dirpath) / filename
            try:
                size = path.stat().st_size
            except OSError:
                continue
            rel = path.relative_to(files_dir).as_posix()
            entries[rel] = {"path": rel, "size": size}
    return entries


class ManifestBuilder:
    def __init__(self, config: "CycleConfig", *, logger: BackupLogger) -> None:
        self._config = config
        self._logger = logger

    def _file_entries(self, cycle: CycleResult, previous: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        files_dir = self._config.files_dir
        prior = previous.get("files") if previous and previous.get("project") == self._config.project else None
        if not isinstance(prior, list):
            entries = _walk_current_tree(files_dir)
        else:
            entries = {
                str(item["path"]): {"path": str(item["path"]), "size": int(item.get("size") or 0)}
                for item in prior
                if isinstance(item, dict) and item.get("path")
            }
            snapshot = cycle.snapshot
            touched = set()
            if snapshot is not None:
                touched.update(version.path for version in snapshot.archived)
                touched.update(error.path for error in snapshot.failed if error.path)
                touched.update(copied.path for copied in snapshot.copied)
            for rel in touched:
                current = files_dir / rel
                try:
                    entries[rel] = {"path": rel, "size": current.stat().st_size}
                except OSError:
                    entries.pop(rel, None)
        return [entries[key] for key in sorted(entries)]

    def _database_entries(self, cycle: CycleResult, previous: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        tables: Dict[str, Optional[int]] = {}
        if previous:
            for item in previous.get("databases") or []:
                if isinstance(item, dict) and item.get("path"):
                    tables[str(item["path"])] = item.get("tables")
        for snapshot in cycle.databases:
            if snapshot.usable and snapshot.path is not None:
                tables[snapshot.path.name] = snapshot.tables
        entries: List[Dict[str, Any]] = []
        for path in find_snapshots(self._config.databases_dir):
            entry: Dict[str, Any] = {"path": path.name, "size": path.stat().st_size}
            if tables.get(path.name) is not None:
                entry["tables"] = tables[path.name]
            entries.append(entry)
        return entries

    def build(self, cycle: CycleResult, previous: Optional[Dict[str, Any]] = None) -> Manifest:
        return Manifest(
            version=MANIFEST_VERSION,
            project=self._config.project,
            cycle_id=cycle.cycle_id,
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            outcome=cycle.outcome.value,
            files=self._file_entries(cycle, previous),
            databases=self._database_entries(cycle, previous),
            archived=cycle.archived,
            errors=[error.to_dict() for error in cycle.errors],
        )

    def write(self, manifest: Manifest) -> Path:
        """Persist *manifest* atomically; readers never see a partial file."""

        path = write_json_atomic(self._config.manifest_path, manifest.to_dict())
        manifest.path = path
        totals = manifest.totals
        self._logger.info(
            "manifest_written",
            project=manifest.project,
            cycle_id=manifest.cycle_id,
            files=totals["files"],
            databases=totals["databases"],
            bytes=totals["bytes"],
        )
        return path


__all__ = ["MANIFEST_NAME", "MANIFEST_VERSION", "ManifestBuilder", "load_manifest"]
