"""Find database candidates in a project and classify them local or remote."""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote, urlsplit

from core.db import is_sqlite_file
from core.process import ToolRunner

from .types import DatabaseCandidate, DatabaseEngineKind, Locality

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from .config import CycleConfig

LOGGER = logging.getLogger("checkpoint.databases")

ENV_FILES: Tuple[str, ...] = (".env", ".env.local", ".env.development")
SQLITE_PATTERNS: Tuple[str, ...] = (".db", ".sqlite", ".sqlite3")
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "0.0.0.0", ""})
DEFAULT_PORTS: Dict[DatabaseEngineKind, int] = {
    DatabaseEngineKind.POSTGRESQL: 5432,
    DatabaseEngineKind.MYSQL: 3306,
    DatabaseEngineKind.MONGODB: 27017,
}
SERVER_PROCESSES: Dict[DatabaseEngineKind, str] = {
    DatabaseEngineKind.POSTGRESQL: "postgres",
    DatabaseEngineKind.MYSQL: "mysqld",
    DatabaseEngineKind.MONGODB: "mongod",
}

_URL_KEYS = (
    re.compile(r"^[A-Z_]*DATABASE_URL$"),
    re.compile(r"^POSTGRES\w*URL$"),
    re.compile(r"^MYSQL\w*URL$"),
    re.compile(r"^MONGO\w*URL$"),
)
_ENV_LINE = re.compile(r"^\s*(?:export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?P<value>.*)$")
_SCHEMES: Dict[str, DatabaseEngineKind] = {
    "postgres": DatabaseEngineKind.POSTGRESQL,
    "postgresql": DatabaseEngineKind.POSTGRESQL,
    "mysql": DatabaseEngineKind.MYSQL,
    "mariadb": DatabaseEngineKind.MYSQL,
    "mongodb": DatabaseEngineKind.MONGODB,
    "mongodb+srv": DatabaseEngineKind.MONGODB,
    "sqlite": DatabaseEngineKind.SQLITE,
}


def classify_host(host: Optional[str]) -> Locality:
    value = (host or "").strip().strip("[]").lower()
    if value in LOCAL_HOSTS or value.startswith("/"):
        return Locality.LOCAL
    return Locality.REMOTE


def parse_env_file(path: Path) -> Dict[str, str]:
    """Parse ``KEY=value`` lines, ignoring comments and stripping quotes."""

    values: Dict[str, str] = {}
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return values
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        match = _ENV_LINE.match(line)
        if not match:
            continue
        value = match.group("value").strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        elif " #" in value:
            value = value.split(" #", 1)[0].rstrip()
        values[match.group("key")] = value
    return values


def parse_connection_url(url: str, *, source: str, root: Path) -> Optional[DatabaseCandidate]:
    """Turn a connection URL into a candidate, or ``None`` for unknown schemes."""

    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    engine = _SCHEMES.get(scheme.split("+", 1)[0] if scheme != "mongodb+srv" else scheme)
    if engine is None:
        return None
    if engine is DatabaseEngineKind.SQLITE:
        raw_path = unquote(parts.path)
        if parts.netloc == "" and raw_path.startswith("//"):
            raw_path = raw_path[1:]
        elif raw_path.startswith("/") and not raw_path.startswith("//"):
            raw_path = raw_path[1:]
        if not raw_path or raw_path == ":memory:":
            return None
        db_path = Path(raw_path)
        if not db_path.is_absolute():
            db_path = (root / db_path).resolve()
        return DatabaseCandidate(
            engine=engine,
            name=db_path.stem,
            locality=Locality.LOCAL,
            source=source,
            path=db_path,
        )
    try:
        port = parts.port
    except ValueError:
        port = None
    host = parts.hostname or ""
    database = unquote(parts.path.lstrip("/").split("/", 1)[0]) or None
    locality = Locality.REMOTE if scheme == "mongodb+srv" else classify_host(host)
    return DatabaseCandidate(
        engine=engine,
        name=database or engine.value,
        locality=locality,
        source=source,
        host=host or "localhost",
        port=port or DEFAULT_PORTS.get(engine),
        database=database,
        user=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else None,
        url=url.strip(),
    )


def _mysql_from_vars(values: Dict[str, str], source: str) -> Optional[DatabaseCandidate]:
    database = values.get("MYSQL_DATABASE")
    if not database:
        return None
    host = values.get("MYSQL_HOST") or "localhost"
    try:
        port = int(values.get("MYSQL_PORT") or DEFAULT_PORTS[DatabaseEngineKind.MYSQL])
    except ValueError:
        port = DEFAULT_PORTS[DatabaseEngineKind.MYSQL]
    return DatabaseCandidate(
        engine=DatabaseEngineKind.MYSQL,
        name=database,
        locality=classify_host(host),
        source=source,
        host=host,
        port=port,
        database=database,
        user=values.get("MYSQL_USER") or "root",
        password=values.get("MYSQL_PASSWORD") or None,
    )


def candidates_from_env(root: Path) -> List[DatabaseCandidate]:
    found: List[DatabaseCandidate] = []
    for name in ENV_FILES:
        path = root / name
        if not path.is_file():
            continue
        values = parse_env_file(path)
        for key, value in values.items():
            if not value or not any(pattern.match(key) for pattern in _URL_KEYS):
                continue
            candidate = parse_connection_url(value, source=f"{name}:{key}", root=root)
            if candidate is not None:
                found.append(candidate)
        mysql = _mysql_from_vars(values, f"{name}:MYSQL_DATABASE")
        if mysql is not None:
            found.append(mysql)
    return found


def candidates_from_files(config: "CycleConfig") -> List[DatabaseCandidate]:
    root = config.project_root
    found: List[DatabaseCandidate] = []
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        dirnames[:] = [name for name in dirnames if not config.is_excluded_dir(current / name)]
        for filename in filenames:
            if not filename.lower().endswith(SQLITE_PATTERNS):
                continue
            path = current / filename
            if path.is_symlink() or not is_sqlite_file(path):
                continue
            rel = path.relative_to(root).as_posix()
            found.append(
                DatabaseCandidate(
                    engine=DatabaseEngineKind.SQLITE,
                    name=path.stem,
                    locality=Locality.LOCAL,
                    source=rel,
                    path=path,
                )
            )
    return found


def running_servers(runner: ToolRunner) -> Dict[DatabaseEngineKind, Optional[bool]]:
    """Probe for local server processes; ``None`` means the probe is unavailable."""

    status: Dict[DatabaseEngineKind, Optional[bool]] = {}
    if not runner.which("pgrep"):
        return {engine: None for engine in SERVER_PROCESSES}
    for engine, process in SERVER_PROCESSES.items():
        result = runner.run(["pgrep", "-x", process], timeout=10)
        status[engine] = result.returncode == 0 if result.returncode in (0, 1) else None
    return status


def _dedupe(candidates: Iterable[DatabaseCandidate]) -> List[DatabaseCandidate]:
    seen: set = set()
    unique: List[DatabaseCandidate] = []
    for candidate in candidates:
        if candidate.engine is DatabaseEngineKind.SQLITE:
            key = (candidate.engine, str(candidate.path.resolve() if candidate.path else candidate.name))
        else:
            key = (candidate.engine, candidate.host, candidate.port, candidate.database)
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)
    return unique


def detect_candidates(config: "CycleConfig", *, runner: Optional[ToolRunner] = None) -> List[DatabaseCandidate]:
    """Combine file patterns, env connection strings and the process probe.

    Server processes only annotate candidates found elsewhere; a running
    server with no configured connection is not dumped.
    """

    runner = runner or ToolRunner()
    env_candidates = candidates_from_env(config.project_root)
    sqlite_from_env = [
        candidate
        for candidate in env_candidates
        if candidate.engine is DatabaseEngineKind.SQLITE and candidate.path is not None and is_sqlite_file(candidate.path)
    ]
    servers = [candidate for candidate in env_candidates if candidate.engine is not DatabaseEngineKind.SQLITE]
    candidates = _dedupe([*candidates_from_files(config), *sqlite_from_env, *servers])
    if servers and config.databases.probe_processes:
        status = running_servers(runner)
        for candidate in candidates:
            if candidate.locality is Locality.LOCAL and candidate.engine in status:
                candidate.server_running = status[candidate.engine]
    for candidate in candidates:
        LOGGER.debug("database candidate %s", candidate.describe())
    return candidates


__all__ = [
    "classify_host",
    "candidates_from_env",
    "candidates_from_files",
    "detect_candidates",
    "parse_connection_url",
    "parse_env_file",
    "running_servers",
]
