"""Retention policy enforcement for database snapshots and archived versions."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from .logs import BackupLogger
from .types import RetentionSummary

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from .config import CycleConfig

STAMP_FORMAT = "%Y%m%d_%H%M%S"
_STAMP_PATTERN = re.compile(r"(\d{8}_\d{6})")
_DB_STAMP_PATTERN = re.compile(r"^(?P<key>.+)_(?P<stamp>\d{8}_\d{6})(?:_\d+)?\.")


@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    db_days: int = 30
    file_days: int = 60
    keep_latest_db: int = 1

    @classmethod
    def from_settings(cls, section: Mapping[str, Any]) -> "RetentionPolicy":
        return cls(
            db_days=int(section.get("db_days", 30) or 0),
            file_days=int(section.get("file_days", 60) or 0),
            keep_latest_db=max(0, int(section.get("keep_latest_db", 1) or 0)),
        )


def parse_stamp(name: str) -> Optional[datetime]:
    """Return the last ``YYYYmmdd_HHMMSS`` stamp embedded in *name*."""

    matches = _STAMP_PATTERN.findall(name)
    if not matches:
        return None
    try:
        return datetime.strptime(matches[-1], STAMP_FORMAT)
    except ValueError:
        return None


@dataclass(slots=True)
class _Artifact:
    path: Path
    created: datetime
    size: int
    key: str


def _created(path: Path, stamp: Optional[datetime]) -> datetime:
    if stamp is not None:
        return stamp
    return datetime.fromtimestamp(path.stat().st_mtime)


def _load_db_snapshots(base: Path) -> List[_Artifact]:
    items: List[_Artifact] = []
    if not base.exists():
        return items
    for child in base.iterdir():
        if not child.is_file() or child.name.startswith("."):
            continue
        match = _DB_STAMP_PATTERN.match(child.name)
        key = match.group("key") if match else child.name
        stamp = parse_stamp(match.group("stamp")) if match else None
        items.append(_Artifact(path=child, created=_created(child, stamp), size=child.stat().st_size, key=key))
    items.sort(key=lambda item: item.created, reverse=True)
    return items


def _load_versions(base: Path) -> List[_Artifact]:
    items: List[_Artifact] = []
    if not base.exists():
        return items
    for dirpath, _dirnames, filenames in os.walk(base):
        for filename in filenames:
            path = Path(dirpath) / filename
            stamp = parse_stamp(filename)
            try:
                items.append(_Artifact(path=path, created=_created(path, stamp), size=path.stat().st_size, key=filename))
            except OSError:
                continue
    return items


def _expired_db_snapshots(items: List[_Artifact], policy: RetentionPolicy, now: datetime) -> List[_Artifact]:
    if policy.db_days <= 0:
        return []
    cutoff = now - timedelta(days=policy.db_days)
    seen: Dict[str, int] = {}
    expired: List[_Artifact] = []
    for item in items:
        rank = seen.get(item.key, 0)
        seen[item.key] = rank + 1
        # The newest snapshots of each database survive regardless of age.
        if rank < policy.keep_latest_db:
            continue
        if item.created < cutoff:
            expired.append(item)
    return expired


def _expired_versions(items: List[_Artifact], policy: RetentionPolicy, now: datetime) -> List[_Artifact]:
    if policy.file_days <= 0:
        return []
    cutoff = now - timedelta(days=policy.file_days)
    return [item for item in items if item.created < cutoff]


def _prune_empty_dirs(base: Path) -> None:
    if not base.exists():
        return
    for dirpath, _dirnames, _filenames in os.walk(base, topdown=False):
        path = Path(dirpath)
        if path == base:
            continue
        try:
            path.rmdir()
        except OSError:
            continue


def apply_retention(
    config: "CycleConfig",
    *,
    logger: BackupLogger,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> RetentionSummary:
    """Delete database snapshots and archived versions past their retention."""

    now = now or datetime.now()
    policy = config.retention
    db_items = _load_db_snapshots(config.databases_dir)
    versions = _load_versions(config.archived_dir)
    expired: List[Tuple[str, _Artifact]] = [("database", item) for item in _expired_db_snapshots(db_items, policy, now)]
    expired.extend(("version", item) for item in _expired_versions(versions, policy, now))

    removed: List[str] = []
    freed = 0
    for category, item in expired:
        if not dry_run:
            try:
                item.path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("retention_remove_failed", project=config.project, path=str(item.path), error=str(exc))
                continue
        removed.append(str(item.path))
        freed += item.size
        logger.info("retention_removed", project=config.project, category=category, path=str(item.path), dry_run=dry_run)

    if not dry_run:
        _prune_empty_dirs(config.archived_dir)
    kept = len(db_items) + len(versions) - len(removed)
    logger.event(
        event="retention_applied",
        phase="retention",
        ok=True,
        project=config.project,
        removed=len(removed),
        kept=kept,
        freed_bytes=freed,
        dry_run=dry_run,
    )
    return RetentionSummary(removed=removed, kept=kept, freed_bytes=freed, dry_run=dry_run)


__all__ = ["RetentionPolicy", "STAMP_FORMAT", "apply_retention", "parse_stamp"]
