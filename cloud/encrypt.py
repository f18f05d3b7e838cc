"""Encrypt staged files with ``age`` before they leave the machine."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional

from backup.errors import CloudUploadFailure
from core.process import ToolRunner

from .compress import StagedFile


class AgeEncryptor:
    """Wraps ``age -r <recipient>``; the recipient is derived from the private key."""

    def __init__(self, key_path: Path, *, runner: Optional[ToolRunner] = None, timeout: float = 600.0) -> None:
        self._key_path = Path(key_path)
        self._runner = runner or ToolRunner()
        self._timeout = timeout
        self._recipient: Optional[str] = None

    def recipient(self) -> str:
        if self._recipient:
            return self._recipient
        for tool in ("age", "age-keygen"):
            if not self._runner.which(tool):
                raise CloudUploadFailure(f"{tool} is not installed", code="EDB002")
        if not self._key_path.is_file():
            raise CloudUploadFailure(f"age key not found at {self._key_path}", code="ECONF001", path=str(self._key_path))
        result = self._runner.run(["age-keygen", "-y", str(self._key_path)], timeout=30)
        recipient = result.stdout.strip()
        if not result.ok or not recipient:
            raise CloudUploadFailure(f"Cannot derive age recipient: {result.describe()}", code="ECONF001")
        self._recipient = recipient
        return recipient

    def _encrypt_one(self, item: StagedFile, recipient: str) -> StagedFile:
        assert item.staged is not None
        plaintext = item.staged
        encrypted = plaintext.with_name(plaintext.name + ".age")
        result = self._runner.run(
            ["age", "-r", recipient, "-o", str(encrypted), str(plaintext)],
            timeout=self._timeout,
        )
        # Plaintext never survives staging, whether or not encryption worked.
        plaintext.unlink(missing_ok=True)
        if not result.ok:
            encrypted.unlink(missing_ok=True)
            item.error = result.describe()
            item.staged = None
            return item
        item.staged = encrypted
        return item

    def encrypt(self, items: List[StagedFile], *, workers: int = 1) -> List[StagedFile]:
        recipient = self.recipient()
        ready = [item for item in items if item.ok]
        if workers > 1 and len(ready) > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cloud-age") as pool:
                list(pool.map(lambda item: self._encrypt_one(item, recipient), ready))
        else:
            for item in ready:
                self._encrypt_one(item, recipient)
        return items


__all__ = ["AgeEncryptor"]
