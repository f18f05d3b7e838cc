"""Public API for backup operations."""
from __future__ import annotations

import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from core.process import ToolRunner
from core.settings import load_settings

from .changes import ChangeDetector
from .config import CycleConfig, build_cycle_config
from .databases import ApproveFn, DatabaseSnapshotManager, DependencyManager
from .errors import BackupError, LockHeld, code_for_os_error
from .history import ProjectState, load_project_state, save_project_state
from .locks import LockHandle, LockManager
from .logs import BackupLogger
from .manifest import ManifestBuilder, load_manifest
from .restore import list_versions, restore_database, restore_file
from .retention import STAMP_FORMAT, apply_retention
from .snapshot import SnapshotEngine
from .types import (
    CycleError,
    CycleOptions,
    CycleResult,
    FileVersion,
    Outcome,
    Phase,
    Project,
    RetentionSummary,
)
from .verify import verify_backup

AfterManifest = Callable[[CycleConfig, CycleResult], None]


class CycleReporter:
    """Receives phase transitions and progress counters from a running cycle.

    The base implementation ignores everything; the daemon plugs in a
    reporter that republishes to the heartbeat and progress files.
    """

    def phase(self, cycle: CycleResult, phase: Phase) -> None:
        return None

    def progress(self, cycle: CycleResult, phase: Phase, processed: int, total: int) -> None:
        return None


def _error_from(exc: BackupError) -> CycleError:
    return CycleError(kind=exc.kind, code=exc.code, message=str(exc), path=exc.path)


class BackupService:
    """Coordinate backup cycles, verification, restore, and retention workflows."""

    def __init__(
        self,
        home: Path,
        settings: Optional[Mapping[str, Any]] = None,
        *,
        runner: Optional[ToolRunner] = None,
        logger: Optional[BackupLogger] = None,
        locks: Optional[LockManager] = None,
        approve: Optional[ApproveFn] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._home = Path(home)
        self._settings = dict(settings) if settings is not None else load_settings(self._home)
        self._runner = runner or ToolRunner()
        self._logger = logger or BackupLogger(self._home)
        self._locks = locks or LockManager(self._home, logger=self._logger)
        self._approve = approve
        self._sleep = sleep

    # ------------------------------------------------------------------
    @property
    def home(self) -> Path:
        return self._home

    @property
    def settings(self) -> Dict[str, Any]:
        return self._settings

    @property
    def locks(self) -> LockManager:
        return self._locks

    def config_for(self, project: Project) -> CycleConfig:
        return build_cycle_config(project, self._settings, home=self._home)

    # ------------------------------------------------------------------
    def run_cycle(
        self,
        project: Project,
        options: Optional[CycleOptions] = None,
        *,
        reporter: Optional[CycleReporter] = None,
        after_manifest: Optional[AfterManifest] = None,
    ) -> CycleResult:
        """Run one backup cycle for *project* under its lock.

        Never raises for expected failures: lock contention yields a
        ``skipped`` outcome, per-file and per-database errors a ``partial``
        one, and configuration or no-output errors a ``failed`` one.
        """

        options = options or CycleOptions()
        reporter = reporter or CycleReporter()
        logger = self._logger.bind(project.name)
        cycle = CycleResult(
            project=project.name,
            cycle_id=datetime.now().strftime(STAMP_FORMAT),
            started=time.time(),
            dry_run=options.dry_run,
        )

        handle: Optional[LockHandle] = None
        try:
            if not options.dry_run:
                handle = self._locks.acquire(project.name)
            self._run_phases(cycle, project, options, reporter, logger, after_manifest)
        except LockHeld as exc:
            cycle.outcome = Outcome.SKIPPED
            cycle.phase = Phase.IDLE
            logger.info("cycle_skipped", project=project.name, reason="lock_held", holder_pid=exc.holder_pid)
        except BackupError as exc:
            self._fail(cycle, _error_from(exc), reporter)
            logger.failure("cycle_failed", exc, project=project.name, phase=cycle.phase.value)
        except OSError as exc:
            error = CycleError(kind="OSError", code=code_for_os_error(exc, destination=True), message=str(exc))
            self._fail(cycle, error, reporter)
            logger.error("cycle_failed", project=project.name, phase=cycle.phase.value, error=str(exc))
        finally:
            if handle is not None:
                self._locks.release(handle)
            cycle.finished = time.time()

        summary = cycle.summary()
        summary.pop("phase")
        logger.event(
            event="cycle_finished",
            phase=cycle.phase.value,
            ok=cycle.outcome in (Outcome.SUCCESS, Outcome.SKIPPED),
            **summary,
        )
        return cycle

    def _fail(self, cycle: CycleResult, error: CycleError, reporter: CycleReporter) -> None:
        cycle.errors.append(error)
        cycle.outcome = Outcome.FAILED
        cycle.phase = Phase.ERROR
        reporter.phase(cycle, Phase.ERROR)

    def _enter(self, cycle: CycleResult, phase: Phase, reporter: CycleReporter) -> None:
        cycle.phase = phase
        reporter.phase(cycle, phase)

    def _run_phases(
        self,
        cycle: CycleResult,
        project: Project,
        options: CycleOptions,
        reporter: CycleReporter,
        logger: BackupLogger,
        after_manifest: Optional[AfterManifest],
    ) -> None:
        dry_run = options.dry_run
        self._enter(cycle, Phase.INITIALIZING, reporter)
        config = self.config_for(project)

        def file_progress(processed: int, total: int) -> None:
            reporter.progress(cycle, Phase.COPYING, processed, total)

        engine = SnapshotEngine(config, logger=logger, progress=file_progress, sleep=self._sleep)
        if not dry_run:
            engine.ensure_layout()
        state = load_project_state(self._home, project.name)
        logger.info("cycle_started", project=project.name, cycle_id=cycle.cycle_id, dry_run=dry_run)

        self._enter(cycle, Phase.SCANNING, reporter)
        detector = ChangeDetector(config, runner=self._runner, logger=logger)
        head: Optional[str] = None
        if not options.databases_only:
            cycle.changes = detector.detect(
                last_backup=state.last_backup,
                last_head=state.last_head,
                full=options.force,
            )
            if cycle.changes.mode == "git":
                head = detector.head()
        databases = None
        if not options.files_only:
            databases = DatabaseSnapshotManager(
                config,
                logger=logger,
                runner=self._runner,
                dependencies=DependencyManager(
                    self._runner,
                    approve=self._approve,
                    auto_install=config.databases.auto_install,
                    logger=logger,
                ),
            )

        self._enter(cycle, Phase.PREPARING, reporter)
        total = len(cycle.changes.candidates()) if cycle.changes else 0
        reporter.progress(cycle, Phase.PREPARING, 0, total)

        self._enter(cycle, Phase.COPYING, reporter)
        if cycle.changes is not None:
            cycle.snapshot = engine.materialize(cycle.changes, dry_run=dry_run)
        if databases is not None:
            cycle.databases, cycle.remote_databases = databases.run(
                dry_run=dry_run,
                on_progress=lambda done, count: reporter.progress(cycle, Phase.COPYING, done, count),
            )

        self._enter(cycle, Phase.VERIFYING, reporter)
        if cycle.snapshot is not None and not dry_run:
            engine.verify(cycle.snapshot)
            engine.check_output_written(cycle.snapshot)
        if cycle.snapshot is not None:
            cycle.errors.extend(cycle.snapshot.failed)
        cycle.errors.extend(snap.error for snap in cycle.databases if snap.error is not None)
        cycle.outcome = Outcome.PARTIAL if cycle.errors else Outcome.SUCCESS

        if dry_run:
            self._enter(cycle, Phase.FINALIZING, reporter)
            return

        self._enter(cycle, Phase.MANIFEST, reporter)
        builder = ManifestBuilder(config, logger=logger)
        manifest = builder.build(cycle, load_manifest(config.backup_dir))
        builder.write(manifest)
        cycle.manifest = manifest
        self._save_state(config, cycle, state, head)

        if after_manifest is not None:
            self._enter(cycle, Phase.CLOUD_SYNCING, reporter)
            try:
                after_manifest(config, cycle)
            except BackupError as exc:
                # Upload failures never change the local outcome.
                logger.failure("cloud_sync_failed", exc, project=project.name)
            except Exception as exc:
                logger.error("cloud_sync_failed", project=project.name, kind=type(exc).__name__, error=str(exc))

        self._enter(cycle, Phase.FINALIZING, reporter)

    def _save_state(self, config: CycleConfig, cycle: CycleResult, state: ProjectState, head: Optional[str]) -> None:
        files_failed = cycle.snapshot is not None and bool(cycle.snapshot.failed)
        totals = cycle.manifest.totals if cycle.manifest else {"files": 0}
        updated = ProjectState(
            last_backup=state.last_backup,
            last_backup_files=int(totals["files"]),
            last_head=state.last_head,
            last_cycle_id=cycle.cycle_id,
        )
        if cycle.changes is not None and not files_failed:
            # The cursor only moves on a clean file pass.
            updated.last_backup = cycle.started
            updated.last_head = head or state.last_head
        save_project_state(self._home, config.project, updated)

    # ------------------------------------------------------------------
    def cleanup(self, project: Project, *, dry_run: bool = False) -> RetentionSummary:
        config = self.config_for(project)
        if dry_run:
            return apply_retention(config, logger=self._logger, dry_run=True)
        with self._locks.hold(project.name):
            return apply_retention(config, logger=self._logger)

    def verify(self, project: Project, *, check_databases: bool = True) -> Dict[str, object]:
        config = self.config_for(project)
        return verify_backup(config, logger=self._logger, check_databases=check_databases, runner=self._runner)

    def list_versions(self, project: Project, rel: str) -> List[FileVersion]:
        return list_versions(self.config_for(project), rel)

    def restore_file(
        self,
        project: Project,
        rel: str,
        *,
        version: Optional[str] = None,
        dry_run: bool = False,
    ) -> Dict[str, object]:
        config = self.config_for(project)
        if dry_run:
            return restore_file(config, rel, logger=self._logger, version=version, dry_run=True)
        with self._locks.hold(project.name):
            return restore_file(config, rel, logger=self._logger, version=version)

    def restore_database(
        self,
        project: Project,
        artifact: str,
        *,
        target: Optional[Path] = None,
        dry_run: bool = False,
    ) -> Dict[str, object]:
        config = self.config_for(project)
        if dry_run:
            return restore_database(config, artifact, logger=self._logger, runner=self._runner, target=target, dry_run=True)
        with self._locks.hold(project.name):
            return restore_database(config, artifact, logger=self._logger, runner=self._runner, target=target)


__all__ = [
    "AfterManifest",
    "BackupService",
    "CycleReporter",
]
