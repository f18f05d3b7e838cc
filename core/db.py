from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

__all__ = [
    "DEFAULT_BUSY_TIMEOUT_MS",
    "SQLITE_HEADER",
    "backup_sqlite",
    "configure_connection",
    "connect",
    "is_sqlite_file",
    "quick_check",
    "table_count",
    "transaction",
]

DEFAULT_BUSY_TIMEOUT_MS = 5000
SQLITE_HEADER = b"SQLite format 3\x00"


def connect(
    db_path: str | Path,
    *,
    read_only: bool = False,
    timeout: float = 5.0,
    isolation_level: Optional[str] = None,
    check_same_thread: bool = False,
) -> sqlite3.Connection:
    """Return a configured SQLite connection with sane defaults."""

    path = Path(db_path)
    if read_only:
        uri = f"file:{path.resolve().as_posix()}?mode=ro"
        conn = sqlite3.connect(
            uri,
            uri=True,
            timeout=timeout,
            isolation_level=isolation_level,
            check_same_thread=check_same_thread,
        )
    else:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(path),
            timeout=timeout,
            isolation_level=isolation_level,
            check_same_thread=check_same_thread,
        )
    configure_connection(conn, enable_wal=not read_only)
    return conn


def configure_connection(conn: sqlite3.Connection, *, enable_wal: bool = True) -> None:
    conn.execute(f"PRAGMA busy_timeout={int(DEFAULT_BUSY_TIMEOUT_MS)}")
    if enable_wal:
        try:
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.DatabaseError:
            pass


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
    except Exception:
        conn.rollback()
        raise
    else:
        conn.commit()


def is_sqlite_file(path: Path) -> bool:
    """Return True when *path* starts with the SQLite 3 file header."""

    try:
        with open(path, "rb") as handle:
            return handle.read(len(SQLITE_HEADER)) == SQLITE_HEADER
    except OSError:
        return False


def quick_check(conn: sqlite3.Connection) -> str:
    """Return the first row of ``PRAGMA quick_check`` (``"ok"`` when healthy)."""

    row = conn.execute("PRAGMA quick_check").fetchone()
    return str(row[0]) if row else "no result"


def table_count(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT count(*) FROM sqlite_master WHERE type='table'").fetchone()
    return int(row[0]) if row else 0


def backup_sqlite(
    source: sqlite3.Connection | str | Path,
    destination: sqlite3.Connection | str | Path,
    *,
    pages: int = 0,
    progress: Optional[Callable[[int, int, int], None]] = None,
) -> None:
    """Perform a SQLite backup using the built-in online backup API.

    The source is opened read-only so a live application database is copied
    consistently without blocking its writers for long.
    """

    own_source = False
    own_destination = False
    if isinstance(source, (str, Path)):
        source_conn = sqlite3.connect(f"file:{Path(source).resolve().as_posix()}?mode=ro", uri=True)
        source_conn.execute(f"PRAGMA busy_timeout={int(DEFAULT_BUSY_TIMEOUT_MS)}")
        own_source = True
    else:
        source_conn = source
    if isinstance(destination, (str, Path)):
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        destination_conn = sqlite3.connect(str(destination))
        own_destination = True
    else:
        destination_conn = destination
    try:
        source_conn.backup(destination_conn, pages=pages, progress=progress)
    finally:
        if own_destination:
            destination_conn.close()
        if own_source:
            source_conn.close()
