"""Common dataclasses shared across backup modules."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set


class Phase(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    SCANNING = "scanning"
    PREPARING = "preparing"
    COPYING = "copying"
    VERIFYING = "verifying"
    MANIFEST = "manifest"
    CLOUD_SYNCING = "cloud_syncing"
    CLOUD_SYNCING_DATABASES = "cloud_syncing_databases"
    CLOUD_SYNCING_FILES = "cloud_syncing_files"
    CLOUD_SYNCING_ARCHIVES = "cloud_syncing_archives"
    CLOUD_SYNCING_ENCRYPTING = "cloud_syncing_encrypting"
    FINALIZING = "finalizing"
    ERROR = "error"


class Outcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class DatabaseEngineKind(str, Enum):
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MONGODB = "mongodb"


class Locality(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(slots=True)
class Project:
    """A registered directory protected by the daemon."""

    name: str
    path: Path
    enabled: bool = True
    backup_dir: Optional[Path] = None
    last_backup: Optional[int] = None
    added: Optional[int] = None
    interval_s: Optional[int] = None
    cron: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path),
            "enabled": bool(self.enabled),
            "backup_dir": str(self.backup_dir) if self.backup_dir else None,
            "last_backup": self.last_backup,
            "added": self.added,
            "interval_s": self.interval_s,
            "cron": self.cron,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Project":
        path = Path(str(record["path"]))
        backup_dir = record.get("backup_dir")
        return cls(
            name=str(record.get("name") or path.name),
            path=path,
            enabled=bool(record.get("enabled", True)),
            backup_dir=Path(backup_dir) if backup_dir else None,
            last_backup=_int_or_none(record.get("last_backup")),
            added=_int_or_none(record.get("added")),
            interval_s=_int_or_none(record.get("interval_s")),
            cron=record.get("cron") or None,
        )


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(slots=True)
class CycleOptions:
    """Caller supplied switches for one cycle."""

    force: bool = False
    dry_run: bool = False
    files_only: bool = False
    databases_only: bool = False


@dataclass(slots=True)
class CycleError:
    kind: str
    code: str
    message: str
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "code": self.code, "message": self.message, "path": self.path}


@dataclass(slots=True)
class ChangeSet:
    modified: Set[str] = field(default_factory=set)
    added: Set[str] = field(default_factory=set)
    deleted: Set[str] = field(default_factory=set)
    mode: str = "scan"
    first_backup: bool = False
    critical: Set[str] = field(default_factory=set)

    def candidates(self) -> List[str]:
        return sorted(self.modified | self.added | self.critical)


@dataclass(slots=True)
class FileVersion:
    """An archived copy of a file that was superseded by newer content."""

    path: str
    archived_path: Path
    timestamp: str
    pid: int
    size: int


@dataclass(slots=True)
class CopiedFile:
    path: str
    size: int
    destination: Path


@dataclass(slots=True)
class SnapshotResult:
    copied: List[CopiedFile] = field(default_factory=list)
    archived: List[FileVersion] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    skipped: List[CycleError] = field(default_factory=list)
    failed: List[CycleError] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    planned: List[str] = field(default_factory=list)


@dataclass(slots=True)
class DatabaseCandidate:
    engine: DatabaseEngineKind
    name: str
    locality: Locality
    source: str
    path: Optional[Path] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    url: Optional[str] = field(default=None, repr=False)
    server_running: Optional[bool] = None

    def describe(self) -> Dict[str, Any]:
        return {
            "engine": self.engine.value,
            "name": self.name,
            "locality": self.locality.value,
            "source": self.source,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "server_running": self.server_running,
        }


@dataclass(slots=True)
class DatabaseSnapshot:
    engine: DatabaseEngineKind
    name: str
    locality: Locality
    path: Optional[Path]
    size: int = 0
    verified: bool = False
    tables: Optional[int] = None
    error: Optional[CycleError] = None

    @property
    def usable(self) -> bool:
        return self.verified and self.path is not None and self.error is None


@dataclass(slots=True)
class VerificationResult:
    ok: bool
    detail: str = ""
    tables: Optional[int] = None


@dataclass(slots=True)
class Manifest:
    version: int
    project: str
    cycle_id: str
    timestamp: str
    outcome: str
    files: List[Dict[str, Any]]
    databases: List[Dict[str, Any]]
    archived: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    path: Optional[Path] = None

    @property
    def totals(self) -> Dict[str, int]:
        return {
            "files": len(self.files),
            "databases": len(self.databases),
            "bytes": sum(int(entry.get("size") or 0) for entry in self.files)
            + sum(int(entry.get("size") or 0) for entry in self.databases),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "project": self.project,
            "backup_id": self.cycle_id,
            "timestamp": self.timestamp,
            "outcome": self.outcome,
            "files": list(self.files),
            "databases": list(self.databases),
            "archived": self.archived,
            "errors": list(self.errors),
            "totals": self.totals,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, path: Optional[Path] = None) -> "Manifest":
        return cls(
            version=int(data.get("version") or 1),
            project=str(data.get("project") or ""),
            cycle_id=str(data.get("backup_id") or ""),
            timestamp=str(data.get("timestamp") or ""),
            outcome=str(data.get("outcome") or ""),
            files=list(data.get("files") or []),
            databases=list(data.get("databases") or []),
            archived=int(data.get("archived") or 0),
            errors=list(data.get("errors") or []),
            path=path,
        )


@dataclass(slots=True)
class CycleResult:
    """Terminal state of one backup cycle."""

    project: str
    cycle_id: str
    started: float
    finished: Optional[float] = None
    phase: Phase = Phase.IDLE
    outcome: Outcome = Outcome.SUCCESS
    errors: List[CycleError] = field(default_factory=list)
    changes: Optional[ChangeSet] = None
    snapshot: Optional[SnapshotResult] = None
    databases: List[DatabaseSnapshot] = field(default_factory=list)
    remote_databases: List[DatabaseCandidate] = field(default_factory=list)
    manifest: Optional[Manifest] = None
    dry_run: bool = False

    @property
    def files_backed_up(self) -> int:
        return len(self.snapshot.copied) if self.snapshot else 0

    @property
    def files_failed(self) -> int:
        return len(self.snapshot.failed) if self.snapshot else 0

    @property
    def archived(self) -> int:
        return len(self.snapshot.archived) if self.snapshot else 0

    def summary(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "cycle_id": self.cycle_id,
            "outcome": self.outcome.value,
            "phase": self.phase.value,
            "files_backed_up": self.files_backed_up,
            "files_failed": self.files_failed,
            "archived": self.archived,
            "databases_ok": sum(1 for snap in self.databases if snap.usable),
            "databases_failed": sum(1 for snap in self.databases if not snap.usable),
            "remote_databases": len(self.remote_databases),
            "errors": [error.to_dict() for error in self.errors],
            "dry_run": self.dry_run,
        }


@dataclass(slots=True)
class CategoryResult:
    eligible: int = 0
    uploaded: int = 0
    failed: int = 0
    ok: bool = True
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "uploaded": self.uploaded,
            "failed": self.failed,
            "ok": self.ok,
            "error": self.error,
        }


@dataclass(slots=True)
class CloudUploadRecord:
    project: str
    cycle_id: str
    timestamp: int
    categories: Dict[str, CategoryResult] = field(default_factory=dict)
    ok: bool = True
    error: Optional[str] = None
    last_success: Optional[int] = None
    pending: bool = False
    pending_since: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "cycle_id": self.cycle_id,
            "timestamp": self.timestamp,
            "categories": {name: result.to_dict() for name, result in self.categories.items()},
            "ok": self.ok,
            "error": self.error,
            "last_success": self.last_success,
            "pending": self.pending,
            "pending_since": self.pending_since,
        }


@dataclass(slots=True)
class RetentionSummary:
    removed: List[str]
    kept: int
    freed_bytes: int
    dry_run: bool = False


__all__ = [
    "CategoryResult",
    "ChangeSet",
    "CloudUploadRecord",
    "CopiedFile",
    "CycleError",
    "CycleOptions",
    "CycleResult",
    "DatabaseCandidate",
    "DatabaseEngineKind",
    "DatabaseSnapshot",
    "FileVersion",
    "Locality",
    "Manifest",
    "Outcome",
    "Phase",
    "Project",
    "RetentionSummary",
    "SnapshotResult",
    "VerificationResult",
]
