"""Database engine variants: one class per engine family.

Each engine knows which external tool it needs, how to dump a candidate
into a gzip artifact, how to verify that artifact and how to restore it.
"""
from __future__ import annotations

import gzip
import os
import shutil
import sqlite3
import tempfile
import zlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from core.db import SQLITE_HEADER, backup_sqlite, quick_check, table_count
from core.paths import safe_label
from core.process import ToolResult, ToolRunner

from .errors import BackupRestoreError, DatabaseDumpFailure, DependencyMissing
from .types import DatabaseCandidate, DatabaseEngineKind, VerificationResult

_CHUNK = 1024 * 1024
_MONGO_ARCHIVE_MAGIC = bytes.fromhex("6de29981")


def _gzip_file(source: Path, destination: Path) -> None:
    with source.open("rb") as src, gzip.open(destination, "wb") as dst:
        shutil.copyfileobj(src, dst, _CHUNK)


def gunzip_to(source: Path, destination: Path) -> int:
    """Decompress *source* into *destination* and return the byte count."""

    written = 0
    with gzip.open(source, "rb") as src, destination.open("wb") as dst:
        for chunk in iter(lambda: src.read(_CHUNK), b""):
            dst.write(chunk)
            written += len(chunk)
    return written


def read_gzip_head(path: Path, size: int = 4096) -> Tuple[bytes, int]:
    """Return the first *size* decompressed bytes and the total length.

    Reads the whole stream so truncated or corrupt archives are detected.
    """

    head = b""
    total = 0
    with gzip.open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            if len(head) < size:
                head += chunk[: size - len(head)]
            total += len(chunk)
    return head, total


def _rollback_journal(path: Path) -> None:
    # A copy of a WAL database keeps the WAL flag; switch it so the file is self-contained.
    conn = sqlite3.connect(str(path))
    try:
        conn.execute("PRAGMA journal_mode=DELETE")
    finally:
        conn.close()


def unique_dump_path(directory: Path, stem: str, stamp: str, suffix: str) -> Path:
    candidate = directory / f"{stem}_{stamp}{suffix}"
    counter = 1
    while candidate.exists():
        candidate = directory / f"{stem}_{stamp}_{counter}{suffix}"
        counter += 1
    return candidate


class DatabaseEngine(ABC):
    kind: DatabaseEngineKind
    dump_tool: Optional[str] = None
    restore_tool: Optional[str] = None
    suffix = ".gz"

    def __init__(self, runner: Optional[ToolRunner] = None, *, timeout: Optional[float] = None) -> None:
        self._runner = runner or ToolRunner()
        self._timeout = timeout

    def required_tools(self) -> List[str]:
        return [self.dump_tool] if self.dump_tool else []

    def detect(self, candidates: List[DatabaseCandidate]) -> List[DatabaseCandidate]:
        return [candidate for candidate in candidates if candidate.engine is self.kind]

    def artifact_stem(self, candidate: DatabaseCandidate) -> str:
        return f"{self.kind.value}_{safe_label(candidate.database or candidate.name)}"

    @abstractmethod
    def dump(self, candidate: DatabaseCandidate, destination: Path) -> None:
        """Write a gzip dump of *candidate* to *destination* or raise."""

    @abstractmethod
    def verify(self, artifact: Path) -> VerificationResult:
        """Check the integrity of a dump artifact."""

    @abstractmethod
    def restore(self, artifact: Path, candidate: DatabaseCandidate) -> None:
        """Load *artifact* back into the database described by *candidate*."""

    # ------------------------------------------------------------------
    def _ensure_tool(self, tool: Optional[str]) -> None:
        if tool and not self._runner.which(tool):
            raise DependencyMissing(f"{tool} is not installed", tool=tool)

    def _check(self, result: ToolResult, *, artifact: Optional[Path] = None) -> None:
        if result.ok:
            return
        if artifact is not None:
            artifact.unlink(missing_ok=True)
        raise DatabaseDumpFailure(result.describe(), exit_code=result.returncode)

    def _verify_stream(self, artifact: Path, marker: Optional[bytes] = None) -> VerificationResult:
        try:
            head, total = read_gzip_head(artifact)
        except (OSError, EOFError, zlib.error) as exc:
            return VerificationResult(ok=False, detail=f"corrupt archive: {exc}")
        if total == 0:
            return VerificationResult(ok=False, detail="empty dump")
        if marker is not None and marker not in head:
            return VerificationResult(ok=False, detail="dump header not recognised")
        return VerificationResult(ok=True, detail=f"{total} bytes")


class SQLiteEngine(DatabaseEngine):
    kind = DatabaseEngineKind.SQLITE
    suffix = ".db.gz"

    def artifact_stem(self, candidate: DatabaseCandidate) -> str:
        return safe_label(candidate.name)

    def dump(self, candidate: DatabaseCandidate, destination: Path) -> None:
        if candidate.path is None or not candidate.path.is_file():
            raise DatabaseDumpFailure(f"SQLite file missing: {candidate.path}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent)
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            backup_sqlite(candidate.path, tmp)
            _rollback_journal(tmp)
            _gzip_file(tmp, destination)
        except (sqlite3.Error, OSError) as exc:
            destination.unlink(missing_ok=True)
            raise DatabaseDumpFailure(f"SQLite backup of {candidate.path} failed: {exc}") from exc
        finally:
            tmp.unlink(missing_ok=True)

    def verify(self, artifact: Path) -> VerificationResult:
        fd, tmp_name = tempfile.mkstemp(prefix=".verify.", suffix=".db", dir=artifact.parent)
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            try:
                size = gunzip_to(artifact, tmp)
            except (OSError, EOFError, zlib.error) as exc:
                return VerificationResult(ok=False, detail=f"corrupt archive: {exc}")
            if size == 0:
                return VerificationResult(ok=False, detail="empty dump")
            with tmp.open("rb") as handle:
                if handle.read(len(SQLITE_HEADER)) != SQLITE_HEADER:
                    return VerificationResult(ok=False, detail="not a SQLite database")
            try:
                conn = sqlite3.connect(str(tmp))
                try:
                    status = quick_check(conn)
                    tables = table_count(conn)
                finally:
                    conn.close()
            except sqlite3.Error as exc:
                return VerificationResult(ok=False, detail=f"sqlite error: {exc}")
            if status.lower() != "ok":
                return VerificationResult(ok=False, detail=f"quick_check: {status}")
            return VerificationResult(ok=True, detail="quick_check ok", tables=tables)
        finally:
            tmp.unlink(missing_ok=True)

    def restore(self, artifact: Path, candidate: DatabaseCandidate) -> None:
        if candidate.path is None:
            raise BackupRestoreError("SQLite restore needs a target path")
        target = candidate.path
        target.parent.mkdir(parents=True, exist_ok=True)
        staged = target.with_name(f".{target.name}.restore")
        try:
            gunzip_to(artifact, staged)
            conn = sqlite3.connect(str(staged))
            try:
                status = quick_check(conn)
            finally:
                conn.close()
            if status.lower() != "ok":
                raise BackupRestoreError(f"quick_check failed for {artifact}: {status}")
            for suffix in ("-wal", "-shm"):
                Path(f"{target}{suffix}").unlink(missing_ok=True)
            os.replace(staged, target)
        except (OSError, EOFError, zlib.error, sqlite3.Error) as exc:
            raise BackupRestoreError(f"Cannot restore {artifact}: {exc}") from exc
        finally:
            staged.unlink(missing_ok=True)


class PostgresEngine(DatabaseEngine):
    kind = DatabaseEngineKind.POSTGRESQL
    dump_tool = "pg_dump"
    restore_tool = "psql"
    suffix = ".sql.gz"

    def artifact_stem(self, candidate: DatabaseCandidate) -> str:
        return f"postgres_{safe_label(candidate.database or candidate.name)}"

    def _connection(self, candidate: DatabaseCandidate) -> Tuple[List[str], Dict[str, str]]:
        args = ["-h", candidate.host or "localhost", "-p", str(candidate.port or 5432)]
        if candidate.user:
            args += ["-U", candidate.user]
        env = {"PGPASSWORD": candidate.password} if candidate.password else {}
        return args, env

    def dump(self, candidate: DatabaseCandidate, destination: Path) -> None:
        self._ensure_tool(self.dump_tool)
        args, env = self._connection(candidate)
        argv = [self.dump_tool, *args, "--no-password", "--no-owner", candidate.database or candidate.name]
        self._check(self._runner.run_to_gzip(argv, destination, env=env, timeout=self._timeout), artifact=destination)

    def verify(self, artifact: Path) -> VerificationResult:
        return self._verify_stream(artifact, b"PostgreSQL database dump")

    def restore(self, artifact: Path, candidate: DatabaseCandidate) -> None:
        self._ensure_tool(self.restore_tool)
        args, env = self._connection(candidate)
        argv = [self.restore_tool, *args, "--no-password", "-v", "ON_ERROR_STOP=1", "-d", candidate.database or candidate.name]
        result = self._runner.run_from_gzip(argv, artifact, env=env, timeout=self._timeout)
        if not result.ok:
            raise BackupRestoreError(result.describe())


class MySQLEngine(DatabaseEngine):
    kind = DatabaseEngineKind.MYSQL
    dump_tool = "mysqldump"
    restore_tool = "mysql"
    suffix = ".sql.gz"

    def artifact_stem(self, candidate: DatabaseCandidate) -> str:
        return f"mysql_{safe_label(candidate.database or candidate.name)}"

    def _connection(self, candidate: DatabaseCandidate) -> Tuple[List[str], Dict[str, str]]:
        args = ["-h", candidate.host or "localhost", "-P", str(candidate.port or 3306), "-u", candidate.user or "root"]
        env = {"MYSQL_PWD": candidate.password} if candidate.password else {}
        return args, env

    def dump(self, candidate: DatabaseCandidate, destination: Path) -> None:
        self._ensure_tool(self.dump_tool)
        args, env = self._connection(candidate)
        argv = [self.dump_tool, *args, "--single-transaction", "--routines", "--triggers", candidate.database or candidate.name]
        self._check(self._runner.run_to_gzip(argv, destination, env=env, timeout=self._timeout), artifact=destination)

    def verify(self, artifact: Path) -> VerificationResult:
        result = self._verify_stream(artifact, b"dump")
        if result.ok:
            head, _ = read_gzip_head(artifact)
            if b"MySQL dump" not in head and b"MariaDB dump" not in head:
                return VerificationResult(ok=False, detail="dump header not recognised")
        return result

    def restore(self, artifact: Path, candidate: DatabaseCandidate) -> None:
        self._ensure_tool(self.restore_tool)
        args, env = self._connection(candidate)
        argv = [self.restore_tool, *args, candidate.database or candidate.name]
        result = self._runner.run_from_gzip(argv, artifact, env=env, timeout=self._timeout)
        if not result.ok:
            raise BackupRestoreError(result.describe())


class MongoEngine(DatabaseEngine):
    kind = DatabaseEngineKind.MONGODB
    dump_tool = "mongodump"
    restore_tool = "mongorestore"
    suffix = ".archive.gz"

    def artifact_stem(self, candidate: DatabaseCandidate) -> str:
        return f"mongodb_{safe_label(candidate.database or candidate.name)}"

    def _connection(self, candidate: DatabaseCandidate) -> List[str]:
        if candidate.url:
            return [f"--uri={candidate.url}"]
        args = ["--host", candidate.host or "localhost", "--port", str(candidate.port or 27017)]
        if candidate.database:
            args += ["--db", candidate.database]
        return args

    def dump(self, candidate: DatabaseCandidate, destination: Path) -> None:
        self._ensure_tool(self.dump_tool)
        argv = [self.dump_tool, *self._connection(candidate), "--archive", "--quiet"]
        self._check(self._runner.run_to_gzip(argv, destination, timeout=self._timeout), artifact=destination)

    def verify(self, artifact: Path) -> VerificationResult:
        result = self._verify_stream(artifact)
        if result.ok:
            head, _ = read_gzip_head(artifact, size=len(_MONGO_ARCHIVE_MAGIC))
            if head != _MONGO_ARCHIVE_MAGIC:
                return VerificationResult(ok=False, detail="not a mongodump archive")
        return result

    def restore(self, artifact: Path, candidate: DatabaseCandidate) -> None:
        self._ensure_tool(self.restore_tool)
        argv = [self.restore_tool, *self._connection(candidate), "--archive", "--drop"]
        result = self._runner.run_from_gzip(argv, artifact, timeout=self._timeout)
        if not result.ok:
            raise BackupRestoreError(result.describe())


ENGINE_TYPES = {
    DatabaseEngineKind.SQLITE: SQLiteEngine,
    DatabaseEngineKind.POSTGRESQL: PostgresEngine,
    DatabaseEngineKind.MYSQL: MySQLEngine,
    DatabaseEngineKind.MONGODB: MongoEngine,
}


def build_engines(runner: Optional[ToolRunner] = None, *, timeout: Optional[float] = None) -> Dict[DatabaseEngineKind, DatabaseEngine]:
    return {kind: engine_type(runner, timeout=timeout) for kind, engine_type in ENGINE_TYPES.items()}


def engine_for_artifact(name: str) -> DatabaseEngineKind:
    if name.startswith("postgres_"):
        return DatabaseEngineKind.POSTGRESQL
    if name.startswith("mysql_"):
        return DatabaseEngineKind.MYSQL
    if name.startswith("mongodb_"):
        return DatabaseEngineKind.MONGODB
    return DatabaseEngineKind.SQLITE


__all__ = [
    "DatabaseEngine",
    "ENGINE_TYPES",
    "MongoEngine",
    "MySQLEngine",
    "PostgresEngine",
    "SQLiteEngine",
    "build_engines",
    "engine_for_artifact",
    "gunzip_to",
    "read_gzip_head",
    "unique_dump_path",
]
