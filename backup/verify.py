"""Verify a project's backup tree against its manifest."""
from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Optional

from .db_engines import build_engines, engine_for_artifact
from .errors import BackupError, BackupVerificationError
from .logs import BackupLogger
from .manifest import load_manifest

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from core.process import ToolRunner

    from .config import CycleConfig


def verify_backup(
    config: "CycleConfig",
    *,
    logger: BackupLogger,
    check_databases: bool = True,
    runner: Optional["ToolRunner"] = None,
) -> Dict[str, object]:
    """Check every manifest entry exists with its recorded size.

    Database snapshots are additionally decompressed and checked by their
    engine. Raises :class:`BackupVerificationError` listing all problems.
    """

    manifest = load_manifest(config.backup_dir)
    if manifest is None:
        raise BackupVerificationError(f"manifest not found at {config.manifest_path}")
    files = manifest.get("files", [])
    databases = manifest.get("databases", [])
    if not isinstance(files, list) or not isinstance(databases, list):
        raise BackupError("invalid manifest structure")

    problems: List[str] = []
    for entry in files:
        if not isinstance(entry, dict) or not isinstance(entry.get("path"), str):
            problems.append("invalid manifest entry")
            continue
        rel = entry["path"]
        copy = config.files_dir / rel
        if not copy.is_file():
            problems.append(f"missing: {rel}")
            continue
        expected = entry.get("size")
        actual = copy.stat().st_size
        if expected is not None and int(expected) != actual:
            problems.append(f"size mismatch: {rel} (manifest {expected}, disk {actual})")

    verified_dbs: List[str] = []
    if check_databases:
        engines = build_engines(runner)
        for entry in databases:
            name = entry.get("path") if isinstance(entry, dict) else None
            if not isinstance(name, str):
                problems.append("invalid database entry")
                continue
            artifact = config.databases_dir / name
            if not artifact.is_file():
                problems.append(f"missing database snapshot: {name}")
                continue
            result = engines[engine_for_artifact(name)].verify(artifact)
            if not result.ok:
                problems.append(f"database snapshot {name}: {result.detail}")
                continue
            verified_dbs.append(name)

    if problems:
        logger.event(event="backup_verified", phase="verify", ok=False, project=config.project, problems=problems[:50])
        raise BackupVerificationError(f"{len(problems)} problem(s): " + "; ".join(problems[:5]))

    logger.event(event="backup_verified", phase="verify", ok=True, project=config.project, files=len(files))
    return {
        "project": config.project,
        "backup_id": manifest.get("backup_id"),
        "file_count": len(files),
        "verified_dbs": verified_dbs,
    }


__all__ = ["verify_backup"]
