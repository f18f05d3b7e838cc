"""rclone transport."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from backup.errors import CloudUploadFailure
from core.process import ToolResult, ToolRunner


class RcloneRemote:
    def __init__(self, remote: str, *, runner: Optional[ToolRunner] = None, timeout: float = 3600.0) -> None:
        self._remote = remote.rstrip(":")
        self._runner = runner or ToolRunner()
        self._timeout = timeout

    @property
    def name(self) -> str:
        return self._remote

    def available(self) -> bool:
        return self._runner.which("rclone") is not None

    def _require(self) -> None:
        if not self.available():
            raise CloudUploadFailure("rclone is not installed", code="ENET002")

    def test(self) -> ToolResult:
        """List the remote root; success means credentials and network are usable."""

        self._require()
        return self._runner.run(["rclone", "lsd", f"{self._remote}:"], timeout=60)

    def copy(self, local_dir: Path, target: str) -> ToolResult:
        self._require()
        argv = ["rclone", "copy", str(local_dir), target, "--transfers", "4", "--checkers", "8"]
        return self._runner.run(argv, timeout=self._timeout)


__all__ = ["RcloneRemote"]
