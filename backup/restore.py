"""Restore files and database snapshots with a safety copy of what gets replaced."""
from __future__ import annotations

import os
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from core.process import ToolRunner

from .db_detect import detect_candidates
from .db_engines import DatabaseEngine, build_engines, engine_for_artifact, unique_dump_path
from .errors import BackupError, BackupRestoreError
from .logs import BackupLogger
from .retention import STAMP_FORMAT, parse_stamp
from .types import DatabaseCandidate, DatabaseEngineKind, FileVersion, Locality

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from .config import CycleConfig

_VERSION_SUFFIX = re.compile(r"\.(?P<stamp>\d{8}_\d{6})_(?P<pid>\d+)(?:_\d+)?$")


def _checked_rel(config: "CycleConfig", rel: str) -> str:
    rel = Path(rel).as_posix().lstrip("/")
    target = (config.project_root / rel).resolve()
    root = config.project_root.resolve()
    if target != root and root not in target.parents:
        raise BackupRestoreError(f"Path escapes the project: {rel}", path=rel)
    if not rel or rel == ".":
        raise BackupRestoreError("A file path is required")
    return rel


def list_versions(config: "CycleConfig", rel: str) -> List[FileVersion]:
    """Return archived versions of *rel*, newest first."""

    rel = _checked_rel(config, rel)
    folder = (config.archived_dir / rel).parent
    name = Path(rel).name
    if not folder.is_dir():
        return []
    versions: List[FileVersion] = []
    for entry in folder.iterdir():
        if not entry.is_file() or not entry.name.startswith(name + "."):
            continue
        match = _VERSION_SUFFIX.search(entry.name)
        if not match or entry.name[: match.start()] != name:
            continue
        versions.append(
            FileVersion(
                path=rel,
                archived_path=entry,
                timestamp=match.group("stamp"),
                pid=int(match.group("pid")),
                size=entry.stat().st_size,
            )
        )
    versions.sort(key=lambda version: (version.timestamp, version.archived_path.name), reverse=True)
    return versions


def _select_source(config: "CycleConfig", rel: str, version: Optional[str]) -> Path:
    if not version:
        source = config.files_dir / rel
        if not source.is_file():
            raise BackupRestoreError(f"No backed-up copy of {rel}", path=rel)
        return source
    for candidate in list_versions(config, rel):
        if version in (candidate.timestamp, candidate.archived_path.name):
            return candidate.archived_path
    raise BackupRestoreError(f"Version {version} of {rel} not found", path=rel)


def _safety_copy(config: "CycleConfig", rel: str, target: Path) -> Path:
    stamp = datetime.now().strftime(STAMP_FORMAT)
    base = config.archived_dir / f"{rel}.{stamp}_{os.getpid()}"
    safety = base
    counter = 1
    while safety.exists():
        safety = base.with_name(f"{base.name}_{counter}")
        counter += 1
    safety.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(target, safety)
    return safety


def _replace_from(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    staged = target.with_name(f".{target.name}.restore")
    try:
        shutil.copy2(source, staged)
        os.replace(staged, target)
    finally:
        staged.unlink(missing_ok=True)


def restore_file(
    config: "CycleConfig",
    rel: str,
    *,
    logger: BackupLogger,
    version: Optional[str] = None,
    dry_run: bool = False,
) -> Dict[str, object]:
    """Put the current copy (or an archived *version*) of *rel* back in the project.

    The file being overwritten is first kept as an archived version, so a
    restore can itself be undone.
    """

    rel = _checked_rel(config, rel)
    source = _select_source(config, rel, version)
    target = config.project_root / rel
    result: Dict[str, object] = {"path": rel, "source": str(source), "target": str(target), "dry_run": dry_run}
    if dry_run:
        result["safety_copy"] = None
        return result

    safety: Optional[Path] = None
    try:
        if target.is_file():
            safety = _safety_copy(config, rel, target)
        _replace_from(source, target)
    except OSError as exc:
        logger.error("restore_failed", project=config.project, path=rel, error=str(exc))
        if safety is not None and safety.exists():
            _replace_from(safety, target)
        raise BackupRestoreError(f"Cannot restore {rel}: {exc}", path=rel) from exc

    logger.event(event="file_restored", phase="restore", ok=True, project=config.project, path=rel, version=version)
    result["safety_copy"] = str(safety) if safety else None
    return result


def _match_candidate(
    config: "CycleConfig",
    engine: DatabaseEngine,
    artifact: str,
    runner: ToolRunner,
) -> Optional[DatabaseCandidate]:
    for candidate in detect_candidates(config, runner=runner):
        if candidate.engine is not engine.kind or candidate.locality is not Locality.LOCAL:
            continue
        if artifact.startswith(engine.artifact_stem(candidate) + "_"):
            return candidate
    return None


def restore_database(
    config: "CycleConfig",
    artifact: str,
    *,
    logger: BackupLogger,
    runner: Optional[ToolRunner] = None,
    target: Optional[Path] = None,
    dry_run: bool = False,
) -> Dict[str, object]:
    """Load a snapshot from ``databases/`` back into its database.

    SQLite targets are snapshotted again before being replaced. Server
    engines are restored through their client tool into the database the
    project's connection settings point at.
    """

    runner = runner or ToolRunner()
    path = config.databases_dir / Path(artifact).name
    if not path.is_file():
        raise BackupRestoreError(f"Database snapshot {artifact} not found", path=str(path))
    kind = engine_for_artifact(path.name)
    engine = build_engines(runner, timeout=config.databases.dump_timeout_s)[kind]

    verification = engine.verify(path)
    if not verification.ok:
        raise BackupRestoreError(f"Snapshot {path.name} failed verification: {verification.detail}", path=str(path))

    candidate = _match_candidate(config, engine, path.name, runner)
    if kind is DatabaseEngineKind.SQLITE and target is not None:
        candidate = DatabaseCandidate(
            engine=kind, name=Path(target).name, locality=Locality.LOCAL, source=str(target), path=Path(target)
        )
    if candidate is None:
        raise BackupRestoreError(f"No local database matches {path.name}; pass an explicit target", path=str(path))

    result: Dict[str, object] = {
        "artifact": path.name,
        "engine": kind.value,
        "database": candidate.database or candidate.name,
        "target": str(candidate.path) if candidate.path else candidate.host,
        "dry_run": dry_run,
        "safety_copy": None,
    }
    if dry_run:
        return result

    if kind is DatabaseEngineKind.SQLITE and candidate.path is not None and candidate.path.is_file():
        stamp = datetime.now().strftime(STAMP_FORMAT)
        safety = unique_dump_path(config.databases_dir, f"{engine.artifact_stem(candidate)}-pre-restore", stamp, engine.suffix)
        try:
            engine.dump(candidate, safety)
        except BackupError as exc:
            raise BackupRestoreError(f"Cannot take safety copy of {candidate.path}: {exc}", path=str(candidate.path)) from exc
        result["safety_copy"] = str(safety)

    try:
        engine.restore(path, candidate)
    except BackupError as exc:
        logger.failure("database_restore_failed", exc, project=config.project, artifact=path.name)
        raise
    logger.event(
        event="database_restored",
        phase="restore",
        ok=True,
        project=config.project,
        artifact=path.name,
        engine=kind.value,
        created=parse_stamp(path.name).isoformat() if parse_stamp(path.name) else None,
    )
    return result


__all__ = ["list_versions", "restore_database", "restore_file"]
