"""Per-project exclusive locks backed by marker files.

A lock is the file ``<home>/locks/<project>.lock`` holding the owner's pid
and acquisition time. Creation uses ``O_CREAT | O_EXCL`` so exactly one of
several concurrent callers succeeds. A marker whose pid is no longer running
is stale and is reclaimed by the next caller; age alone never makes a lock
stale.
"""
from __future__ import annotations

import atexit
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional

from core.paths import get_locks_dir, project_key, safe_label
from core.process import pid_is_running

from .errors import BackupError, LockHeld, StaleLock
from .logs import BackupLogger

# A marker without a readable pid may belong to a holder that has created
# the file but not written it yet.
DEFAULT_GRACE_S = 5.0


@dataclass(slots=True)
class LockInfo:
    path: Path
    pid: Optional[int]
    acquired: Optional[float]
    age_s: float
    alive: bool


@dataclass(slots=True)
class LockHandle:
    project: str
    path: Path
    pid: int
    acquired: float


def _read_marker(path: Path) -> tuple[Optional[int], Optional[float]]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return None, None
    lines = text.split()
    pid: Optional[int] = None
    acquired: Optional[float] = None
    if lines:
        try:
            pid = int(lines[0])
        except ValueError:
            pid = None
    if len(lines) > 1:
        try:
            acquired = float(lines[1])
        except ValueError:
            acquired = None
    return pid, acquired


def _write_marker(path: Path, pid: int, acquired: float) -> None:
    fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    try:
        os.write(fd, f"{pid}\n{acquired:.3f}\n".encode("ascii"))
        os.fsync(fd)
    finally:
        os.close(fd)


class LockManager:
    def __init__(self, home: Path, *, logger: Optional[BackupLogger] = None, grace_s: float = DEFAULT_GRACE_S) -> None:
        self._locks_dir = get_locks_dir(Path(home))
        self._locks_dir.mkdir(parents=True, exist_ok=True)
        self._logger = logger
        self._grace_s = grace_s
        self._held: Dict[str, LockHandle] = {}
        self._guard = threading.Lock()
        atexit.register(self.release_all)

    def path_for(self, project: str, *, internal: bool = False) -> Path:
        label = safe_label(project) if internal else project_key(project)
        return self._locks_dir / f"{label}.lock"

    # ------------------------------------------------------------------
    def inspect(self, project: str, *, internal: bool = False) -> Optional[LockInfo]:
        return self.inspect_path(self.path_for(project, internal=internal))

    def inspect_path(self, path: Path) -> Optional[LockInfo]:
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        pid, acquired = _read_marker(path)
        return LockInfo(
            path=path,
            pid=pid,
            acquired=acquired,
            age_s=max(0.0, time.time() - mtime),
            alive=pid is not None and pid_is_running(pid),
        )

    def _is_stale(self, info: LockInfo) -> bool:
        if info.pid is None:
            return info.age_s >= self._grace_s
        return not pid_is_running(info.pid)

    def acquire(self, project: str, *, internal: bool = False) -> LockHandle:
        """Take the lock for *project* or raise :class:`LockHeld`.

        *internal* locks (names starting with ``_``) live beside project
        locks but can never collide with one.
        """

        path = self.path_for(project, internal=internal)
        pid = os.getpid()
        for attempt in range(2):
            acquired = time.time()
            try:
                _write_marker(path, pid, acquired)
            except FileExistsError:
                info = self.inspect_path(path)
                if info is None:
                    # Released between our attempt and the inspection.
                    continue
                if attempt == 0 and self._is_stale(info) and self._reclaim(path, info):
                    continue
                raise LockHeld(f"Backup already running for {project}", holder_pid=info.pid, path=str(path))
            except OSError as exc:
                raise BackupError(f"Cannot create lock {path}: {exc}", code="EPERM003", path=str(path)) from exc
            handle = LockHandle(project=project, path=path, pid=pid, acquired=acquired)
            with self._guard:
                self._held[str(path)] = handle
            if self._logger:
                self._logger.info("lock_acquired", project=project, pid=pid)
            return handle
        raise LockHeld(f"Backup already running for {project}", path=str(path))

    def _reclaim(self, path: Path, observed: LockInfo) -> bool:
        guard = path.with_name(path.name + ".reclaim")
        try:
            _write_marker(guard, os.getpid(), time.time())
        except FileExistsError:
            guard_pid, _ = _read_marker(guard)
            if guard_pid is not None and pid_is_running(guard_pid):
                return False
            # A reclaimer died mid-way; clear its guard and retry once.
            try:
                guard.unlink()
                _write_marker(guard, os.getpid(), time.time())
            except OSError:
                return False
        try:
            pid, _ = _read_marker(path)
            if pid != observed.pid:
                # Someone else already replaced the stale marker.
                return not path.exists()
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            if self._logger:
                stale = StaleLock(f"Reclaimed lock left by pid {observed.pid}", path=str(path))
                self._logger.failure("stale_lock_reclaimed", stale, holder_pid=observed.pid)
            return True
        finally:
            try:
                guard.unlink()
            except OSError:
                pass

    def release(self, handle: LockHandle) -> None:
        with self._guard:
            self._held.pop(str(handle.path), None)
        pid, _ = _read_marker(handle.path)
        if pid is not None and pid != handle.pid:
            return
        try:
            handle.path.unlink()
        except FileNotFoundError:
            return
        if self._logger:
            self._logger.info("lock_released", project=handle.project, pid=handle.pid)

    def release_all(self) -> None:
        with self._guard:
            handles = list(self._held.values())
        for handle in handles:
            try:
                self.release(handle)
            except OSError:
                continue

    @contextmanager
    def hold(self, project: str) -> Iterator[LockHandle]:
        handle = self.acquire(project)
        try:
            yield handle
        finally:
            self.release(handle)


__all__ = ["DEFAULT_GRACE_S", "LockHandle", "LockInfo", "LockManager"]
