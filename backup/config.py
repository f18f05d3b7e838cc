"""Immutable per-cycle configuration built from settings and project overrides."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional

from cloud.policy import CloudPolicy
from core.paths import get_project_state_dir
from core.settings import PROJECT_CONFIG_NAME, load_project_overrides, merge_overrides
from core.settings_schema import PROJECT_KEYS

from .errors import ConfigInvalid, DriveMissing
from .retention import RetentionPolicy
from .types import Project

# Regenerable directories never walked by the scanner or the detectors.
DEFAULT_EXCLUDED_DIRS: FrozenSet[str] = frozenset(
    {
        ".git",
        "node_modules",
        ".venv",
        "venv",
        "__pycache__",
        "dist",
        "build",
        ".next",
        ".cache",
        ".tox",
        ".mypy_cache",
        ".pytest_cache",
        "backups",
    }
)


@dataclass(frozen=True, slots=True)
class CriticalPolicy:
    env_files: bool = True
    credentials: bool = True
    ide_settings: bool = True
    local_notes: bool = True
    local_databases: bool = True


@dataclass(frozen=True, slots=True)
class DatabasePolicy:
    enable: bool = True
    dump_timeout_s: float = 1800.0
    auto_install: bool = False
    probe_processes: bool = True


@dataclass(frozen=True, slots=True)
class CycleConfig:
    """Everything one cycle needs, resolved once at cycle start."""

    project: str
    project_root: Path
    backup_dir: Path
    home: Path
    state_dir: Path
    excluded_dirs: FrozenSet[str]
    max_file_size: int
    backup_large_files: bool
    copy_attempts: int
    copy_backoff_s: float
    mtime_skew_s: float
    use_git: bool
    drive_marker: Optional[Path]
    critical: CriticalPolicy
    databases: DatabasePolicy
    retention: RetentionPolicy
    cloud: CloudPolicy

    @property
    def files_dir(self) -> Path:
        return self.backup_dir / "files"

    @property
    def archived_dir(self) -> Path:
        return self.backup_dir / "archived"

    @property
    def databases_dir(self) -> Path:
        return self.backup_dir / "databases"

    @property
    def manifest_path(self) -> Path:
        return self.backup_dir / ".checkpoint-manifest.json"

    @property
    def config_file(self) -> Path:
        return self.project_root / PROJECT_CONFIG_NAME

    def is_excluded_dir(self, path: Path) -> bool:
        if path.name in self.excluded_dirs:
            return True
        try:
            return path.resolve() == self.backup_dir.resolve()
        except OSError:
            return False


def _section(settings: Mapping[str, Any], name: str) -> Dict[str, Any]:
    value = settings.get(name)
    return dict(value) if isinstance(value, Mapping) else {}


def _resolve_backup_dir(project: Project, raw: Any, default_name: str) -> Path:
    if project.backup_dir is not None:
        return Path(project.backup_dir).expanduser()
    if isinstance(raw, str) and raw.strip():
        candidate = Path(raw).expanduser()
        return candidate if candidate.is_absolute() else project.path / candidate
    return project.path / default_name


def build_cycle_config(project: Project, settings: Mapping[str, Any], *, home: Path) -> CycleConfig:
    """Merge global *settings* with the project's ``.checkpoint.json``.

    Raises :class:`ConfigInvalid` for unreadable overrides or an unusable
    project/backup directory, and :class:`DriveMissing` when a drive marker
    is configured but absent.
    """

    root = Path(project.path).expanduser()
    if not root.is_dir():
        raise ConfigInvalid(f"Project directory missing: {root}", code="ECONF002", path=str(root))
    try:
        overrides = load_project_overrides(root)
    except ValueError as exc:
        raise ConfigInvalid(str(exc), code="ECONF001", path=str(root / PROJECT_CONFIG_NAME)) from exc

    unknown = [key for key in overrides if key not in PROJECT_KEYS and key not in settings]
    if unknown:
        raise ConfigInvalid(f"Unknown keys in {PROJECT_CONFIG_NAME}: {', '.join(sorted(unknown))}", code="ECONF001")

    merged: Dict[str, Dict[str, Any]] = {}
    for name in ("backup", "critical", "databases", "retention", "cloud"):
        merged[name] = merge_overrides(_section(settings, name), _section(overrides, name))
    backup = merged["backup"]

    backup_dir = _resolve_backup_dir(project, overrides.get("backup_dir"), str(backup.get("backup_dir_name") or "backups"))
    if backup_dir.resolve() == root.resolve():
        raise ConfigInvalid("Backup directory must differ from the project root", code="ECONF003", path=str(backup_dir))

    marker = backup.get("drive_marker")
    drive_marker = Path(str(marker)).expanduser() if marker else None
    if drive_marker is not None and not drive_marker.exists():
        raise DriveMissing(f"Drive marker not found: {drive_marker}", path=str(drive_marker))

    extra_excludes = list(backup.get("exclude_dirs") or []) + list(overrides.get("exclude") or [])
    excluded = frozenset(DEFAULT_EXCLUDED_DIRS | {str(name) for name in extra_excludes if name})

    try:
        critical = CriticalPolicy(**{key: bool(value) for key, value in merged["critical"].items() if key in CriticalPolicy.__slots__})
        db = merged["databases"]
        databases = DatabasePolicy(
            enable=bool(db.get("enable", True)),
            dump_timeout_s=float(db.get("dump_timeout_s") or 1800),
            auto_install=bool(db.get("auto_install", False)),
            probe_processes=bool(db.get("probe_processes", True)),
        )
        retention = RetentionPolicy.from_settings(merged["retention"])
        cloud = CloudPolicy.from_settings(merged["cloud"])
        config = CycleConfig(
            project=project.name,
            project_root=root,
            backup_dir=backup_dir,
            home=home,
            state_dir=get_project_state_dir(home, project.name),
            excluded_dirs=excluded,
            max_file_size=int(backup.get("max_file_size_bytes") or 0),
            backup_large_files=bool(backup.get("backup_large_files", True)),
            copy_attempts=max(1, int(backup.get("copy_attempts") or 3)),
            copy_backoff_s=float(backup.get("copy_backoff_s") or 0),
            mtime_skew_s=float(backup.get("mtime_skew_s") or 0),
            use_git=bool(backup.get("use_git", True)),
            drive_marker=drive_marker,
            critical=critical,
            databases=databases,
            retention=retention,
            cloud=cloud,
        )
    except (TypeError, ValueError) as exc:
        raise ConfigInvalid(f"Invalid configuration value: {exc}", code="ECONF001") from exc
    return config


__all__ = ["CriticalPolicy", "CycleConfig", "DEFAULT_EXCLUDED_DIRS", "DatabasePolicy", "build_cycle_config"]
