"""Process liveness checks and external tool invocation."""
from __future__ import annotations

import gzip
import logging
import os
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

__all__ = [
    "ToolResult",
    "ToolRunner",
    "pid_is_running",
]

LOGGER = logging.getLogger("checkpoint.process")

_IS_WINDOWS = os.name == "nt"
_STILL_ACTIVE = 259
_PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
_CHUNK = 1024 * 1024


def _windows_pid_running(pid: int) -> bool:
    import ctypes
    from ctypes import wintypes

    kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
    handle = kernel32.OpenProcess(_PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
    if not handle:
        return False
    try:
        code = wintypes.DWORD()
        if not kernel32.GetExitCodeProcess(handle, ctypes.byref(code)):
            return False
        return code.value == _STILL_ACTIVE
    finally:
        kernel32.CloseHandle(handle)


def pid_is_running(pid: object) -> bool:
    """Return True when a process with id *pid* currently exists.

    Uses signal 0 on POSIX. A permission error still means the process
    exists (owned by another user).
    """

    try:
        value = int(pid)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return False
    if value <= 0:
        return False
    if _IS_WINDOWS:
        return _windows_pid_running(value)
    try:
        os.kill(value, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


@dataclass(slots=True)
class ToolResult:
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def describe(self) -> str:
        if self.timed_out:
            return f"{self.args[0]} timed out"
        detail = (self.stderr or self.stdout or "").strip().splitlines()
        tail = detail[-1] if detail else "no output"
        return f"{self.args[0]} exited with status {self.returncode}: {tail}"


@dataclass(slots=True)
class ToolRunner:
    """Thin wrapper around :mod:`subprocess` used for every external tool.

    Dump tools, compressors, ``age`` and ``rclone`` all go through an
    instance of this class so callers can substitute a fake in tests.
    """

    overrides: Mapping[str, str] = field(default_factory=dict)

    def which(self, name: str) -> Optional[str]:
        override = self.overrides.get(name)
        if override:
            return override if Path(override).exists() else None
        return shutil.which(name)

    def run(
        self,
        args: Sequence[str],
        *,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        cwd: Optional[Path] = None,
    ) -> ToolResult:
        argv = [str(part) for part in args]
        try:
            completed = subprocess.run(
                argv,
                check=False,
                capture_output=True,
                text=True,
                env=self._merged_env(env),
                cwd=str(cwd) if cwd else None,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            stderr = exc.stderr.decode("utf-8", "replace") if isinstance(exc.stderr, bytes) else (exc.stderr or "")
            return ToolResult(args=argv, returncode=-1, stderr=stderr, timed_out=True)
        except FileNotFoundError as exc:
            return ToolResult(args=argv, returncode=127, stderr=str(exc))
        return ToolResult(
            args=argv,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def run_to_gzip(
        self,
        args: Sequence[str],
        destination: Path,
        *,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ToolResult:
        """Run *args* and stream its stdout into a gzip file at *destination*."""

        argv = [str(part) for part in args]
        destination.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryFile() as err_handle:
            try:
                proc = subprocess.Popen(
                    argv,
                    stdout=subprocess.PIPE,
                    stderr=err_handle,
                    env=self._merged_env(env),
                )
            except FileNotFoundError as exc:
                return ToolResult(args=argv, returncode=127, stderr=str(exc))
            timer, expired = self._watchdog(proc, timeout)
            try:
                assert proc.stdout is not None
                with gzip.open(destination, "wb") as out:
                    shutil.copyfileobj(proc.stdout, out, _CHUNK)
                returncode = proc.wait()
            finally:
                if timer is not None:
                    timer.cancel()
                if proc.stdout is not None:
                    proc.stdout.close()
            err_handle.seek(0)
            stderr = err_handle.read().decode("utf-8", "replace")
        return ToolResult(args=argv, returncode=returncode, stderr=stderr, timed_out=expired.is_set())

    def run_from_gzip(
        self,
        args: Sequence[str],
        source: Path,
        *,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ToolResult:
        """Run *args* feeding the decompressed content of *source* on stdin."""

        argv = [str(part) for part in args]
        with tempfile.TemporaryFile() as err_handle, tempfile.TemporaryFile() as out_handle:
            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=subprocess.PIPE,
                    stdout=out_handle,
                    stderr=err_handle,
                    env=self._merged_env(env),
                )
            except FileNotFoundError as exc:
                return ToolResult(args=argv, returncode=127, stderr=str(exc))
            timer, expired = self._watchdog(proc, timeout)
            try:
                assert proc.stdin is not None
                with gzip.open(source, "rb") as src:
                    try:
                        shutil.copyfileobj(src, proc.stdin, _CHUNK)
                    except BrokenPipeError:
                        LOGGER.warning("%s closed stdin early", argv[0])
                proc.stdin.close()
                returncode = proc.wait()
            finally:
                if timer is not None:
                    timer.cancel()
            err_handle.seek(0)
            out_handle.seek(0)
            stderr = err_handle.read().decode("utf-8", "replace")
            stdout = out_handle.read().decode("utf-8", "replace")
        return ToolResult(args=argv, returncode=returncode, stdout=stdout, stderr=stderr, timed_out=expired.is_set())

    # ------------------------------------------------------------------
    @staticmethod
    def _merged_env(env: Optional[Mapping[str, str]]) -> Optional[dict]:
        if not env:
            return None
        merged = dict(os.environ)
        merged.update({key: str(value) for key, value in env.items()})
        return merged

    @staticmethod
    def _watchdog(proc: subprocess.Popen, timeout: Optional[float]):
        expired = threading.Event()
        if not timeout:
            return None, expired

        def _kill() -> None:
            expired.set()
            try:
                proc.kill()
            except OSError:
                pass

        timer = threading.Timer(float(timeout), _kill)
        timer.daemon = True
        timer.start()
        return timer, expired
