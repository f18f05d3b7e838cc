"""Materialize changed files into the current tree and archive superseded copies."""
from __future__ import annotations

import errno
import hashlib
import os
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional

from .errors import (
    BackupError,
    ConfigInvalid,
    DriveMissing,
    FileCopyFailure,
    FileTooLarge,
    SnapshotWriteError,
    SymlinkSkipped,
    code_for_os_error,
)
from .logs import BackupLogger
from .retention import STAMP_FORMAT
from .types import ChangeSet, CopiedFile, CycleError, FileVersion, SnapshotResult

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from .config import CycleConfig

ProgressFn = Callable[[int, int], None]

_DESTINATION_CODES = frozenset({"EDISK001", "EPERM002"})


def sha256_for_path(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def same_content(source: Path, copy: Path) -> bool:
    try:
        if source.stat().st_size != copy.stat().st_size:
            return False
    except OSError:
        return False
    return sha256_for_path(source) == sha256_for_path(copy)


def _error(exc: BackupError, rel: Optional[str] = None) -> CycleError:
    return CycleError(kind=exc.kind, code=exc.code, message=str(exc), path=rel or exc.path)


def _is_retryable(exc: OSError) -> bool:
    if isinstance(exc, PermissionError):
        return False
    return exc.errno not in (errno.ENOSPC, errno.EACCES, errno.EPERM, errno.EROFS)


class SnapshotEngine:
    def __init__(
        self,
        config: "CycleConfig",
        *,
        logger: BackupLogger,
        progress: Optional[ProgressFn] = None,
        sleep: Callable[[float], None] = time.sleep,
        pid: Optional[int] = None,
    ) -> None:
        self._config = config
        self._logger = logger
        self._progress = progress
        self._sleep = sleep
        self._pid = pid if pid is not None else os.getpid()

    # ------------------------------------------------------------------
    def ensure_layout(self) -> None:
        """Create the backup tree and prove it is writable."""

        config = self._config
        try:
            for directory in (config.files_dir, config.archived_dir, config.databases_dir):
                directory.mkdir(parents=True, exist_ok=True)
            probe = config.backup_dir / f".write_test_{self._pid}"
            probe.write_text("ok", encoding="utf-8")
            probe.unlink()
        except OSError as exc:
            if config.drive_marker is not None:
                raise DriveMissing(f"Backup destination unavailable: {exc}", path=str(config.backup_dir)) from exc
            raise ConfigInvalid(
                f"Backup directory not writable: {exc}",
                code="ECONF003",
                path=str(config.backup_dir),
            ) from exc

    def archive_name(self, rel: str, stamp: str) -> Path:
        """Return a collision-free archive path for the current copy of *rel*."""

        base = self._config.archived_dir / f"{rel}.{stamp}_{self._pid}"
        candidate = base
        counter = 1
        while os.path.lexists(candidate):
            candidate = base.with_name(f"{base.name}_{counter}")
            counter += 1
        return candidate

    def _archive(self, rel: str, current: Path) -> FileVersion:
        stamp = datetime.now().strftime(STAMP_FORMAT)
        target = self.archive_name(rel, stamp)
        target.parent.mkdir(parents=True, exist_ok=True)
        size = current.stat().st_size
        os.replace(current, target)
        return FileVersion(
            path=rel,
            archived_path=target,
            timestamp=stamp,
            pid=self._pid,
            size=size,
        )

    def _partial_path(self, dest: Path) -> Path:
        return dest.with_name(f".{dest.name}.{self._pid}.partial")

    def _copy_once(self, source: Path, dest: Path) -> None:
        """Write *source* into the partial file beside *dest*."""

        tmp = self._partial_path(dest)
        try:
            src = source.open("rb")
        except OSError as exc:
            raise FileCopyFailure(f"Cannot read {source}: {exc}", code=code_for_os_error(exc), path=str(source)) from exc
        with src:
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                dst = tmp.open("wb")
            except OSError as exc:
                raise FileCopyFailure(
                    f"Cannot write {dest}: {exc}", code=code_for_os_error(exc, destination=True), path=str(dest)
                ) from exc
            try:
                with dst:
                    shutil.copyfileobj(src, dst, 1024 * 1024)
                try:
                    shutil.copystat(source, tmp)
                except OSError:
                    pass
            except OSError:
                try:
                    tmp.unlink()
                except OSError:
                    pass
                raise

    def copy_with_retry(self, source: Path, dest: Path, *, before_publish: Optional[Callable[[], None]] = None) -> None:
        """Copy with exponential backoff; permission and disk-full errors fail at once.

        The data lands in a partial file first. *before_publish* runs only
        once that file is complete, right before it replaces *dest*.
        """

        attempts = self._config.copy_attempts
        for attempt in range(attempts):
            try:
                self._copy_once(source, dest)
                break
            except FileCopyFailure as exc:
                cause = exc.__cause__
                if not isinstance(cause, OSError) or not _is_retryable(cause) or attempt == attempts - 1:
                    raise
                last: OSError = cause
            except OSError as exc:
                code = code_for_os_error(exc, destination=exc.errno == errno.ENOSPC)
                if not _is_retryable(exc) or attempt == attempts - 1:
                    raise FileCopyFailure(f"Copy failed for {source}: {exc}", code=code, path=str(source)) from exc
                last = exc
            delay = self._config.copy_backoff_s * (2 ** attempt)
            self._logger.warning("copy_retry", path=str(source), attempt=attempt + 1, delay_s=delay, error=str(last))
            if delay > 0:
                self._sleep(delay)

        tmp = self._partial_path(dest)
        try:
            if before_publish is not None:
                before_publish()
            os.replace(tmp, dest)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    def materialize(self, changes: ChangeSet, *, dry_run: bool = False) -> SnapshotResult:
        config = self._config
        result = SnapshotResult(deleted=sorted(changes.deleted))
        candidates = changes.candidates()
        total = len(candidates)
        for index, rel in enumerate(candidates, start=1):
            self._process(rel, result, dry_run=dry_run)
            if self._progress:
                self._progress(index, total)
        if result.deleted:
            self._logger.info("sources_deleted", project=config.project, count=len(result.deleted))
        return result

    def _process(self, rel: str, result: SnapshotResult, *, dry_run: bool) -> None:
        config = self._config
        source = config.project_root / rel
        if source.is_symlink():
            skip = SymlinkSkipped(f"Symlink not followed: {rel}", path=rel)
            result.skipped.append(_error(skip, rel))
            self._logger.warning("symlink_skipped", project=config.project, path=rel)
            return
        if not source.is_file():
            return
        try:
            size = source.stat().st_size
        except OSError as exc:
            failure = FileCopyFailure(f"Cannot stat {rel}: {exc}", code=code_for_os_error(exc), path=rel)
            result.failed.append(_error(failure, rel))
            return
        if config.max_file_size > 0 and size > config.max_file_size and not config.backup_large_files:
            skip = FileTooLarge(f"{rel} is {size} bytes (limit {config.max_file_size})", path=rel)
            result.skipped.append(_error(skip, rel))
            self._logger.warning("file_too_large", project=config.project, path=rel, size=size, limit=config.max_file_size)
            return
        dest = config.files_dir / rel
        if dest.exists() and same_content(source, dest):
            result.unchanged.append(rel)
            return
        if dry_run:
            result.planned.append(rel)
            return
        archived: List[FileVersion] = []

        def archive_current() -> None:
            if dest.exists():
                archived.append(self._archive(rel, dest))

        try:
            self.copy_with_retry(source, dest, before_publish=archive_current)
        except FileCopyFailure as exc:
            result.failed.append(_error(exc, rel))
            self._logger.failure("file_copy_failed", exc, project=config.project)
            return
        except OSError as exc:
            failure = FileCopyFailure(f"Cannot replace {rel}: {exc}", code=code_for_os_error(exc, destination=True), path=rel)
            result.failed.append(_error(failure, rel))
            if archived and not dest.exists():
                try:
                    os.replace(archived.pop().archived_path, dest)
                except OSError as restore_exc:
                    self._logger.error("archive_restore_failed", project=config.project, path=rel, error=str(restore_exc))
            self._logger.failure("file_replace_failed", failure, project=config.project)
            return
        result.archived.extend(archived)
        result.copied.append(CopiedFile(path=rel, size=size, destination=dest))

    def verify(self, result: SnapshotResult) -> List[CycleError]:
        """Compare every copy with the size captured before copying."""

        mismatches: List[CycleError] = []
        kept: List[CopiedFile] = []
        for entry in result.copied:
            try:
                actual = entry.destination.stat().st_size
            except OSError as exc:
                actual = -1
                detail = str(exc)
            else:
                detail = f"expected {entry.size} bytes, found {actual}"
            if actual == entry.size:
                kept.append(entry)
                continue
            failure = FileCopyFailure(f"Verification failed for {entry.path}: {detail}", path=entry.path)
            mismatches.append(_error(failure, entry.path))
            self._logger.failure("file_verify_failed", failure, project=self._config.project)
        result.copied = kept
        result.failed.extend(mismatches)
        return mismatches

    def check_output_written(self, result: SnapshotResult) -> None:
        """Raise when copies were attempted and every one failed on the destination side."""

        if result.copied or not result.failed:
            return
        if all(error.code in _DESTINATION_CODES for error in result.failed):
            raise SnapshotWriteError(
                f"No output could be written to {self._config.backup_dir}", path=str(self._config.backup_dir)
            )


__all__ = ["SnapshotEngine", "same_content", "sha256_for_path"]
