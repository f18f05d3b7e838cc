"""Error hierarchy and error-code catalog for backup operations."""
from __future__ import annotations

import errno
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True, slots=True)
class ErrorCode:
    code: str
    title: str
    description: str
    suggestion: str


ERROR_CATALOG: Dict[str, ErrorCode] = {
    entry.code: entry
    for entry in (
        ErrorCode("EPERM001", "Permission denied", "Cannot read a source file.", "Check file permissions or grant disk access to the daemon."),
        ErrorCode("EPERM002", "Permission denied", "Cannot write to the backup directory.", "Fix ownership of the backup directory or choose another location."),
        ErrorCode("EPERM003", "Permission denied", "Cannot create the lock marker.", "Check permissions on the Checkpoint home directory."),
        ErrorCode("EDISK001", "Disk full", "No space left on the backup destination.", "Free space or run 'checkpoint cleanup'."),
        ErrorCode("EDISK002", "Drive missing", "The backup drive is not mounted or its marker file is absent.", "Connect the drive or update backup.drive_marker."),
        ErrorCode("EDISK003", "Write failed", "No output could be written for this cycle.", "Check the backup destination for errors."),
        ErrorCode("ECONF001", "Invalid configuration", "The project configuration could not be read.", "Fix .checkpoint.json or the global settings."),
        ErrorCode("ECONF002", "Project missing", "The project directory does not exist.", "Remove the project or restore its directory."),
        ErrorCode("ECONF003", "Invalid backup directory", "The backup directory is not usable.", "Point backup_dir at a writable directory outside the source tree."),
        ErrorCode("EDB001", "Database dump failed", "The dump tool exited with an error.", "Check the database server is running and credentials are valid."),
        ErrorCode("EDB002", "Dump tool missing", "A required database tool is not installed.", "Install the tool or enable databases.auto_install."),
        ErrorCode("EDB003", "Dump verification failed", "The compressed dump failed its integrity check.", "Re-run the backup; inspect the database for corruption."),
        ErrorCode("ENET001", "Upload failed", "The remote upload did not complete.", "Check connectivity; the upload is retried next cycle."),
        ErrorCode("ENET002", "Remote unreachable", "The configured remote could not be listed.", "Run 'checkpoint cloud test' and check rclone configuration."),
        ErrorCode("EFILE001", "Copy failed", "A file could not be copied after retries.", "Check the file is not locked by another program."),
        ErrorCode("EFILE002", "File too large", "A file exceeded the configured size ceiling.", "Raise backup.max_file_size_bytes or enable backup_large_files."),
        ErrorCode("EFILE003", "Symlink skipped", "Symbolic links are never followed.", "Back up the link target directly if needed."),
        ErrorCode("ELOCK001", "Backup in progress", "Another cycle holds the project lock.", "Wait for the running cycle to finish."),
        ErrorCode("EUNK000", "Unknown error", "An unexpected error occurred.", "Check the logs for details."),
    )
}


def describe_error(code: str) -> ErrorCode:
    return ERROR_CATALOG.get(code, ERROR_CATALOG["EUNK000"])


class BackupError(RuntimeError):
    """Base exception for backup related failures."""

    code = "EUNK000"

    def __init__(self, message: str = "", *, code: Optional[str] = None, path: Optional[str] = None) -> None:
        super().__init__(message)
        if code:
            self.code = code
        self.path = path

    @property
    def kind(self) -> str:
        return type(self).__name__


class BackupVerificationError(BackupError):
    """Raised when verification of a backup fails."""


class BackupRestoreError(BackupError):
    """Raised when restoring a file or database fails."""


class LockHeld(BackupError):
    """Another live cycle holds the project lock; the cycle is skipped."""

    code = "ELOCK001"

    def __init__(self, message: str = "", *, holder_pid: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.holder_pid = holder_pid


class StaleLock(BackupError):
    """A lock whose holder is gone; reclaimed automatically."""

    code = "ELOCK001"


class DependencyMissing(BackupError):
    code = "EDB002"

    def __init__(self, message: str = "", *, tool: str = "", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.tool = tool


class ChangeDetectionFailure(BackupError):
    pass


class FileCopyFailure(BackupError):
    code = "EFILE001"


class SymlinkSkipped(BackupError):
    code = "EFILE003"


class FileTooLarge(BackupError):
    code = "EFILE002"


class DatabaseDumpFailure(BackupError):
    code = "EDB001"

    def __init__(self, message: str = "", *, exit_code: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.exit_code = exit_code


class VerificationFailure(DatabaseDumpFailure, BackupVerificationError):
    code = "EDB003"


class CloudUploadFailure(BackupError):
    code = "ENET001"


class ConfigInvalid(BackupError):
    code = "ECONF001"


class DriveMissing(BackupError):
    code = "EDISK002"


class SnapshotWriteError(BackupError):
    code = "EDISK003"


def code_for_os_error(exc: OSError, *, destination: bool = False) -> str:
    if exc.errno == errno.ENOSPC:
        return "EDISK001"
    if isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.EPERM):
        return "EPERM002" if destination else "EPERM001"
    return "EFILE001"


__all__ = [
    "BackupError",
    "BackupRestoreError",
    "BackupVerificationError",
    "ChangeDetectionFailure",
    "CloudUploadFailure",
    "ConfigInvalid",
    "DatabaseDumpFailure",
    "DependencyMissing",
    "DriveMissing",
    "ERROR_CATALOG",
    "ErrorCode",
    "FileCopyFailure",
    "FileTooLarge",
    "LockHeld",
    "SnapshotWriteError",
    "StaleLock",
    "SymlinkSkipped",
    "VerificationFailure",
    "code_for_os_error",
    "describe_error",
]
