"""Detect which project files changed since the previous cycle."""
from __future__ import annotations

import os
from fnmatch import fnmatch
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional, Set

from core.process import ToolRunner

from .critical import collect_critical_files
from .errors import ChangeDetectionFailure
from .logs import BackupLogger
from .types import ChangeSet

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from .config import CycleConfig

HOUSEKEEPING_NAMES = frozenset({".DS_Store", ".localized", "Thumbs.db", "desktop.ini"})
HOUSEKEEPING_PATTERNS = ("*.swp", "*~")
SKIPPED_FILE_NAMES = frozenset({".DS_Store"})


def is_housekeeping(name: str) -> bool:
    return name in HOUSEKEEPING_NAMES or any(fnmatch(name, pattern) for pattern in HOUSEKEEPING_PATTERNS)


def is_first_backup(files_dir: Path) -> bool:
    """Return True when *files_dir* holds nothing but platform housekeeping files."""

    if not files_dir.is_dir():
        return True
    for _dirpath, _dirnames, filenames in os.walk(files_dir):
        if any(not is_housekeeping(name) for name in filenames):
            return False
    return True


def _split_nul(output: str) -> List[str]:
    return [item for item in output.split("\0") if item]


class ChangeDetector:
    """Pick git diff mode when possible, otherwise a modification-time scan."""

    def __init__(
        self,
        config: "CycleConfig",
        *,
        runner: Optional[ToolRunner] = None,
        logger: Optional[BackupLogger] = None,
    ) -> None:
        self._config = config
        self._runner = runner or ToolRunner()
        self._logger = logger

    # ------------------------------------------------------------------
    def git_available(self) -> bool:
        if not self._config.use_git or not self._runner.which("git"):
            return False
        result = self._runner.run(["git", "-C", self._config.project_root, "rev-parse", "--is-inside-work-tree"], timeout=30)
        return result.ok and result.stdout.strip() == "true"

    def head(self) -> Optional[str]:
        result = self._runner.run(["git", "-C", self._config.project_root, "rev-parse", "HEAD"], timeout=30)
        return result.stdout.strip() if result.ok else None

    def _git(self, *args: str) -> List[str]:
        argv = ["git", "-C", str(self._config.project_root), "-c", "core.quotepath=off", *args]
        result = self._runner.run(argv, timeout=300)
        if not result.ok:
            raise ChangeDetectionFailure(result.describe())
        return _split_nul(result.stdout)

    def _detect_git(self, first_backup: bool, last_head: Optional[str]) -> ChangeSet:
        changes = ChangeSet(mode="git", first_backup=first_backup)
        untracked = set(self._git("ls-files", "--others", "--exclude-standard", "-z"))
        if first_backup:
            changes.added = set(self._git("ls-files", "-z")) | untracked
            return changes
        modified = set(self._git("diff", "--name-only", "--relative", "-z"))
        modified |= set(self._git("diff", "--cached", "--name-only", "--relative", "-z"))
        current = self.head()
        if last_head and current and last_head != current:
            # Commits made since the last cycle are no longer in the working-tree diff.
            try:
                modified |= set(self._git("diff", "--name-only", "--relative", "-z", last_head, current))
            except ChangeDetectionFailure:
                if self._logger:
                    self._logger.warning("git_history_diff_failed", project=self._config.project, last_head=last_head)
        changes.deleted = set(self._git("ls-files", "--deleted", "-z"))
        changes.modified = modified - changes.deleted
        changes.added = untracked
        return changes

    def _walk(self) -> Iterable[Path]:
        root = self._config.project_root
        for dirpath, dirnames, filenames in os.walk(root):
            current = Path(dirpath)
            dirnames[:] = sorted(name for name in dirnames if not self._config.is_excluded_dir(current / name))
            for filename in sorted(filenames):
                if filename in SKIPPED_FILE_NAMES:
                    continue
                yield current / filename

    def _detect_scan(self, first_backup: bool, last_backup: Optional[float]) -> ChangeSet:
        changes = ChangeSet(mode="scan", first_backup=first_backup)
        root = self._config.project_root
        files_dir = self._config.files_dir
        threshold = None
        if not first_backup and last_backup is not None:
            threshold = float(last_backup) - self._config.mtime_skew_s
        for path in self._walk():
            rel = path.relative_to(root).as_posix()
            if threshold is not None:
                try:
                    if path.lstat().st_mtime <= threshold:
                        continue
                except OSError:
                    continue
            if (files_dir / rel).exists():
                changes.modified.add(rel)
            else:
                changes.added.add(rel)
        if not first_backup:
            changes.deleted = self._deleted_sources()
        return changes

    def _deleted_sources(self) -> Set[str]:
        deleted: Set[str] = set()
        files_dir = self._config.files_dir
        if not files_dir.is_dir():
            return deleted
        for dirpath, _dirnames, filenames in os.walk(files_dir):
            for filename in filenames:
                copy = Path(dirpath) / filename
                rel = copy.relative_to(files_dir).as_posix()
                if not os.path.lexists(self._config.project_root / rel):
                    deleted.add(rel)
        return deleted

    def _within_scope(self, rel: str) -> bool:
        root = self._config.project_root
        parts = rel.split("/")
        current = root
        for part in parts[:-1]:
            current = current / part
            if self._config.is_excluded_dir(current):
                return False
        return True

    # ------------------------------------------------------------------
    def detect(
        self,
        *,
        last_backup: Optional[float] = None,
        last_head: Optional[str] = None,
        full: bool = False,
    ) -> ChangeSet:
        """Return the change set for this cycle.

        The first cycle for a project treats every file as added. A failing
        git invocation falls back to a full-tree scan, as does *full*.
        """

        first_backup = is_first_backup(self._config.files_dir)
        if full:
            changes = self._detect_scan(first_backup, None)
            changes.mode = "full"
        elif self.git_available():
            try:
                changes = self._detect_git(first_backup, last_head)
            except ChangeDetectionFailure as exc:
                if self._logger:
                    self._logger.failure("change_detection_fallback", exc, project=self._config.project)
                changes = self._detect_scan(first_backup, None)
                changes.mode = "full"
        else:
            changes = self._detect_scan(first_backup, last_backup)

        changes.added = {rel for rel in changes.added if self._within_scope(rel)}
        changes.modified = {rel for rel in changes.modified if self._within_scope(rel)}
        critical = collect_critical_files(self._config)
        changes.critical = critical - changes.added - changes.modified
        if self._logger:
            self._logger.info(
                "changes_detected",
                project=self._config.project,
                mode=changes.mode,
                first_backup=changes.first_backup,
                added=len(changes.added),
                modified=len(changes.modified),
                deleted=len(changes.deleted),
                critical=len(changes.critical),
            )
        return changes


__all__ = ["ChangeDetector", "is_first_backup", "is_housekeeping"]
