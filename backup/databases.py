"""Database snapshot manager: detect, dump, verify and record."""
from __future__ import annotations

import platform
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Set, Tuple

from core.logging_utils import redact_url
from core.process import ToolRunner

from .db_detect import detect_candidates
from .db_engines import DatabaseEngine, build_engines, unique_dump_path
from .errors import BackupError, DatabaseDumpFailure, DependencyMissing, VerificationFailure
from .logs import BackupLogger
from .retention import STAMP_FORMAT
from .types import CycleError, DatabaseCandidate, DatabaseSnapshot, Locality

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from .config import CycleConfig

ApproveFn = Callable[[List[str]], bool]

# tool -> (homebrew package, apt package)
INSTALL_PACKAGES: Dict[str, Tuple[str, str]] = {
    "pg_dump": ("libpq", "postgresql-client"),
    "psql": ("libpq", "postgresql-client"),
    "mysqldump": ("mysql-client", "default-mysql-client"),
    "mysql": ("mysql-client", "default-mysql-client"),
    "mongodump": ("mongodb-database-tools", "mongodb-database-tools"),
    "mongorestore": ("mongodb-database-tools", "mongodb-database-tools"),
}


class DependencyManager:
    """Install missing dump tools on first need after a single approval."""

    def __init__(
        self,
        runner: Optional[ToolRunner] = None,
        *,
        approve: Optional[ApproveFn] = None,
        auto_install: bool = False,
        logger: Optional[BackupLogger] = None,
    ) -> None:
        self._runner = runner or ToolRunner()
        self._approve = approve
        self._auto_install = auto_install
        self._logger = logger
        self._declined: Set[str] = set()

    def install_command(self, tool: str) -> Optional[List[str]]:
        packages = INSTALL_PACKAGES.get(tool)
        if packages is None:
            return None
        brew_pkg, apt_pkg = packages
        if platform.system() == "Darwin" and self._runner.which("brew"):
            return ["brew", "install", brew_pkg]
        if self._runner.which("apt-get"):
            return ["sudo", "-n", "apt-get", "install", "-y", apt_pkg]
        return None

    def ensure(self, tools: Iterable[str]) -> Set[str]:
        """Return the subset of *tools* still unavailable after any install."""

        missing = sorted({tool for tool in tools if not self._runner.which(tool)})
        pending = [tool for tool in missing if tool not in self._declined]
        if not pending:
            return set(missing)
        approved = self._auto_install
        if not approved and self._approve is not None:
            approved = bool(self._approve(pending))
        if not approved:
            self._declined.update(pending)
            if self._logger:
                self._logger.warning("dependencies_missing", tools=pending, installed=False)
            return set(missing)
        for tool in pending:
            command = self.install_command(tool)
            if command is None:
                if self._logger:
                    self._logger.warning("dependency_install_unsupported", tool=tool)
                continue
            result = self._runner.run(command, timeout=900)
            if self._logger:
                if result.ok:
                    self._logger.info("dependency_installed", tool=tool, command=command)
                else:
                    self._logger.error("dependency_install_failed", tool=tool, error=result.describe())
        still_missing = {tool for tool in missing if not self._runner.which(tool)}
        self._declined.update(still_missing)
        return still_missing


def _cycle_error(exc: BackupError, candidate: DatabaseCandidate) -> CycleError:
    return CycleError(kind=exc.kind, code=exc.code, message=str(exc), path=candidate.source)


class DatabaseSnapshotManager:
    def __init__(
        self,
        config: "CycleConfig",
        *,
        logger: BackupLogger,
        runner: Optional[ToolRunner] = None,
        dependencies: Optional[DependencyManager] = None,
        engines: Optional[Dict] = None,
    ) -> None:
        self._config = config
        self._logger = logger
        self._runner = runner or ToolRunner()
        self._dependencies = dependencies or DependencyManager(
            self._runner, auto_install=config.databases.auto_install, logger=logger
        )
        self._engines = engines or build_engines(self._runner, timeout=config.databases.dump_timeout_s)

    def engine(self, candidate: DatabaseCandidate) -> DatabaseEngine:
        return self._engines[candidate.engine]

    # ------------------------------------------------------------------
    def detect(self) -> Tuple[List[DatabaseCandidate], List[DatabaseCandidate]]:
        """Return ``(local, remote)`` candidates for the project."""

        candidates = detect_candidates(self._config, runner=self._runner)
        local = [candidate for candidate in candidates if candidate.locality is Locality.LOCAL]
        remote = [candidate for candidate in candidates if candidate.locality is Locality.REMOTE]
        for candidate in remote:
            self._logger.info(
                "database_remote_skipped",
                project=self._config.project,
                engine=candidate.engine.value,
                host=candidate.host,
                source=candidate.source,
                url=redact_url(candidate.url),
            )
        return local, remote

    def snapshot(self, candidate: DatabaseCandidate, *, stamp: Optional[str] = None) -> DatabaseSnapshot:
        """Dump and verify one local candidate.

        Raises :class:`DatabaseDumpFailure` (including verification failures)
        or :class:`DependencyMissing`. Remote candidates are refused.
        """

        if candidate.locality is not Locality.LOCAL:
            raise DatabaseDumpFailure(f"Refusing to dump remote database {candidate.name}", path=candidate.source)
        if candidate.server_running is False:
            raise DatabaseDumpFailure(f"{candidate.engine.value} server is not running locally", path=candidate.source)
        engine = self.engine(candidate)
        stamp = stamp or datetime.now().strftime(STAMP_FORMAT)
        destination = unique_dump_path(self._config.databases_dir, engine.artifact_stem(candidate), stamp, engine.suffix)
        try:
            engine.dump(candidate, destination)
        except OSError as exc:
            destination.unlink(missing_ok=True)
            raise DatabaseDumpFailure(f"Cannot write {destination.name}: {exc}", path=candidate.source) from exc
        verification = engine.verify(destination)
        if not verification.ok:
            destination.unlink(missing_ok=True)
            raise VerificationFailure(
                f"Verification failed for {destination.name}: {verification.detail}", path=candidate.source
            )
        return DatabaseSnapshot(
            engine=candidate.engine,
            name=candidate.name,
            locality=candidate.locality,
            path=destination,
            size=destination.stat().st_size,
            verified=True,
            tables=verification.tables,
        )

    def _ensure_dependencies(self, local: List[DatabaseCandidate]) -> Set[str]:
        tools: Set[str] = set()
        for candidate in local:
            tools.update(self.engine(candidate).required_tools())
        if not tools:
            return set()
        return self._dependencies.ensure(tools)

    def run(
        self,
        *,
        dry_run: bool = False,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> Tuple[List[DatabaseSnapshot], List[DatabaseCandidate]]:
        """Snapshot every local candidate; failures are recorded per database."""

        if not self._config.databases.enable:
            return [], []
        local, remote = self.detect()
        if dry_run:
            planned = [
                DatabaseSnapshot(engine=c.engine, name=c.name, locality=c.locality, path=None) for c in local
            ]
            return planned, remote
        missing = self._ensure_dependencies(local)
        stamp = datetime.now().strftime(STAMP_FORMAT)
        snapshots: List[DatabaseSnapshot] = []
        for index, candidate in enumerate(local, start=1):
            snapshots.append(self._snapshot_one(candidate, stamp, missing))
            if on_progress:
                on_progress(index, len(local))
        return snapshots, remote

    def _snapshot_one(self, candidate: DatabaseCandidate, stamp: str, missing: Set[str]) -> DatabaseSnapshot:
        engine = self.engine(candidate)
        try:
            absent = [tool for tool in engine.required_tools() if tool in missing]
            if absent:
                raise DependencyMissing(f"{absent[0]} is not installed", tool=absent[0], path=candidate.source)
            snapshot = self.snapshot(candidate, stamp=stamp)
        except (DatabaseDumpFailure, DependencyMissing) as exc:
            self._logger.failure(
                "database_snapshot_failed",
                exc,
                project=self._config.project,
                engine=candidate.engine.value,
                database=candidate.name,
                exit_code=getattr(exc, "exit_code", None),
            )
            return DatabaseSnapshot(
                engine=candidate.engine,
                name=candidate.name,
                locality=candidate.locality,
                path=None,
                error=_cycle_error(exc, candidate),
            )
        self._logger.info(
            "database_snapshot",
            project=self._config.project,
            engine=candidate.engine.value,
            database=candidate.name,
            path=str(snapshot.path),
            size=snapshot.size,
            tables=snapshot.tables,
        )
        return snapshot


def find_snapshots(databases_dir: Path) -> List[Path]:
    if not databases_dir.is_dir():
        return []
    return sorted(
        (path for path in databases_dir.iterdir() if path.is_file() and not path.name.startswith(".") and path.name.endswith(".gz")),
        key=lambda path: path.name,
    )


__all__ = ["DatabaseSnapshotManager", "DependencyManager", "INSTALL_PACKAGES", "find_snapshots"]
