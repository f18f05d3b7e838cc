"""Long-running daemon: schedule projects, drive cycles, publish state."""
from __future__ import annotations

import signal
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from backup.api import BackupService
from backup.config import CycleConfig
from backup.databases import ApproveFn
from backup.errors import BackupError
from backup.history import HistoryStore
from backup.types import CloudUploadRecord, CycleOptions, CycleResult, Outcome, Project
from cloud.sync import CloudSyncOrchestrator, load_record
from core.atomic import read_json, write_json_atomic
from core.paths import get_pause_path, get_trigger_path
from core.process import ToolRunner
from core.settings import load_settings

from .heartbeat import STATUS_ERROR, STATUS_HEALTHY, STATUS_SYNCING, HeartbeatPublisher, ProgressReporter
from .logs import DaemonLogger
from .notify import Notifier
from .registry import ProjectRegistry
from .scheduler import is_due


# ----------------------------------------------------------------------
# Pause and trigger files
# ----------------------------------------------------------------------

def pause(home: Path, *, until: Optional[float] = None) -> Dict[str, Any]:
    payload = {"paused_at": int(time.time()), "until": int(until) if until else None}
    write_json_atomic(get_pause_path(Path(home)), payload)
    return payload


def resume(home: Path) -> bool:
    try:
        get_pause_path(Path(home)).unlink()
    except FileNotFoundError:
        return False
    return True


def is_paused(home: Path, *, now: Optional[float] = None) -> bool:
    data = read_json(get_pause_path(Path(home)))
    if data is None:
        return False
    until = data.get("until")
    if isinstance(until, (int, float)) and (now or time.time()) >= until:
        return False
    return True


def request_trigger(home: Path, project: Optional[str] = None) -> None:
    write_json_atomic(get_trigger_path(Path(home)), {"project": project, "requested": int(time.time())})


def consume_trigger(home: Path) -> Optional[Dict[str, Any]]:
    """Claim the pending trigger, if any; at most one consumer sees it."""

    path = get_trigger_path(Path(home))
    claimed = path.with_name(f"{path.name}.claimed")
    try:
        path.replace(claimed)
    except FileNotFoundError:
        return None
    data = read_json(claimed) or {}
    claimed.unlink(missing_ok=True)
    return data


# ----------------------------------------------------------------------
# Daemon
# ----------------------------------------------------------------------

class Daemon:
    """Process due projects one at a time and keep the heartbeat current."""

    def __init__(
        self,
        home: Path,
        settings: Optional[Mapping[str, Any]] = None,
        *,
        service: Optional[BackupService] = None,
        registry: Optional[ProjectRegistry] = None,
        history: Optional[HistoryStore] = None,
        cloud: Optional[CloudSyncOrchestrator] = None,
        notifier: Optional[Notifier] = None,
        heartbeat: Optional[HeartbeatPublisher] = None,
        logger: Optional[DaemonLogger] = None,
        runner: Optional[ToolRunner] = None,
        approve: Optional[ApproveFn] = None,
        foreground_cloud: bool = False,
    ) -> None:
        self._home = Path(home)
        self._settings = dict(settings) if settings is not None else load_settings(self._home)
        daemon_cfg = dict(self._settings.get("daemon") or {})
        self._interval_s = int(daemon_cfg.get("interval_s") or 3600)
        self._tick_s = float(daemon_cfg.get("tick_s") or 60)
        self._refresh_s = float(daemon_cfg.get("heartbeat_refresh_s") or 10)
        self._cleanup_every = int(daemon_cfg.get("cleanup_every_ticks") or 0)
        runner = runner or ToolRunner()
        self._service = service or BackupService(self._home, self._settings, runner=runner, approve=approve)
        self._registry = registry or ProjectRegistry(self._home, locks=self._service.locks)
        self._history = history or HistoryStore(self._home)
        self._cloud = cloud or CloudSyncOrchestrator(self._home, runner=runner)
        self._notifier = notifier or Notifier(self._settings.get("notifications"))
        self._heartbeat = heartbeat or HeartbeatPublisher(self._home, refresh_s=self._refresh_s)
        self._logger = logger or DaemonLogger(self._home)
        self._foreground_cloud = foreground_cloud
        self._ticks = 0
        self._stop_event = threading.Event()

    @property
    def heartbeat(self) -> HeartbeatPublisher:
        return self._heartbeat

    @property
    def cloud(self) -> CloudSyncOrchestrator:
        return self._cloud

    # ------------------------------------------------------------------
    def _select(self, project: Optional[str], force: bool) -> List[Project]:
        if project:
            match = self._registry.get(project)
            if match is None:
                self._logger.log_tick("project_unknown", False, project=project)
                return []
            if not force and not is_due(match, default_interval_s=self._interval_s):
                self._logger.log_tick("project_not_due", True, project=project)
                return []
            return [match]
        projects = self._registry.list(enabled_only=True)
        if force:
            return projects
        due: List[Project] = []
        for candidate in projects:
            try:
                if is_due(candidate, default_interval_s=self._interval_s):
                    due.append(candidate)
            except ValueError as exc:
                self._logger.log_error("schedule_invalid", candidate.name, "tick", exc, cron=candidate.cron)
        return due

    def tick(
        self,
        *,
        force: bool = False,
        project: Optional[str] = None,
        options: Optional[CycleOptions] = None,
        manual: bool = False,
    ) -> List[CycleResult]:
        """Run every due project once.

        *force* ignores schedules; a *manual* run (or a forced one) also ignores
        the pause flag, which only holds back scheduled work.
        """

        trigger = consume_trigger(self._home)
        if trigger is not None:
            force = True
            project = project or trigger.get("project")
            self._logger.log_tick("trigger_consumed", True, project=project)
        if not (force or manual) and is_paused(self._home):
            self._logger.log_tick("tick_paused", True)
            self._heartbeat.touch()
            return []

        projects = self._select(project, force)
        self._ticks += 1
        if not projects:
            self._heartbeat.touch()
            self._maybe_cleanup()
            return []

        options = options or CycleOptions(force=False)
        results: List[CycleResult] = []
        counts = {"syncing_backed_up": 0, "syncing_failed": 0, "syncing_skipped": 0}
        last_error: Optional[str] = None
        for index, current in enumerate(projects, start=1):
            self._heartbeat.publish(
                STATUS_SYNCING,
                project=current.name,
                syncing_project_index=index,
                syncing_total_projects=len(projects),
                syncing_current_project=current.name,
                **counts,
            )
            try:
                cycle = self.run_project(current, options)
            except Exception as exc:  # pragma: no cover - keep the remaining projects running
                self._logger.log_error("cycle_crashed", current.name, "cycle", exc)
                counts["syncing_failed"] += 1
                last_error = f"{current.name}: {exc}"
                continue
            results.append(cycle)
            if cycle.outcome is Outcome.SKIPPED:
                counts["syncing_skipped"] += 1
            elif cycle.outcome is Outcome.SUCCESS:
                counts["syncing_backed_up"] += 1
            else:
                counts["syncing_failed"] += 1
                if cycle.errors:
                    last_error = f"{current.name}: {cycle.errors[0].message}"

        if last_error:
            self._heartbeat.publish(STATUS_ERROR, project=None, error=last_error)
        else:
            self._heartbeat.publish(STATUS_HEALTHY, project=None, error=None)
        self._logger.log_tick("tick_finished", last_error is None, projects=len(projects), **counts)
        self._maybe_cleanup()
        return results

    def run_project(self, project: Project, options: Optional[CycleOptions] = None) -> CycleResult:
        options = options or CycleOptions()
        reporter = ProgressReporter(self._home, self._heartbeat)

        def after_manifest(config: CycleConfig, cycle: CycleResult) -> None:
            if not config.cloud.configured or cycle.manifest is None:
                return
            if config.cloud.background and not self._foreground_cloud:
                self._cloud.sync_in_background(config, cycle.manifest, on_done=self._cloud_done)
                return
            record = self._cloud.sync(config, cycle.manifest, on_phase=lambda phase: reporter.phase(cycle, phase))
            self._cloud_done(record)

        cycle = self._service.run_cycle(project, options, reporter=reporter, after_manifest=after_manifest)
        if cycle.dry_run:
            return cycle

        transition = self._history.record(cycle)
        if cycle.outcome in (Outcome.SUCCESS, Outcome.PARTIAL):
            self._registry.update_last_backup(project.name, cycle.started)
            files = cycle.manifest.totals["files"] if cycle.manifest else 0
            self._heartbeat.update(last_backup=int(cycle.started), last_backup_files=files)
        self._notifier.cycle_transition(project.name, transition)
        self._logger.log_project(
            project.name,
            "cycle_finished",
            cycle.outcome in (Outcome.SUCCESS, Outcome.SKIPPED),
            outcome=cycle.outcome.value,
            cycle_id=cycle.cycle_id,
            consecutive_failures=transition.state.consecutive,
        )
        return cycle

    def _cloud_done(self, record: CloudUploadRecord) -> None:
        if record.ok and record.last_success:
            self._heartbeat.update(last_cloud_upload=record.last_success)
        elif not record.ok:
            self._heartbeat.update(cloud_pending_since=self.cloud_pending_since())

    def last_cloud_upload(self) -> Optional[int]:
        latest: Optional[int] = None
        for project in self._registry.list():
            record = load_record(self._home, project.name) or {}
            value = record.get("last_success")
            if isinstance(value, (int, float)) and (latest is None or value > latest):
                latest = int(value)
        return latest

    def cloud_pending_since(self) -> Optional[int]:
        """Oldest first-failed upload among projects still waiting on the remote."""

        oldest: Optional[int] = None
        for project in self._registry.list():
            record = load_record(self._home, project.name) or {}
            value = record.get("pending_since")
            if isinstance(value, (int, float)) and (oldest is None or value < oldest):
                oldest = int(value)
        return oldest

    def _maybe_cleanup(self) -> None:
        if self._cleanup_every <= 0 or self._ticks % self._cleanup_every:
            return
        for project in self._registry.list(enabled_only=True):
            try:
                self._service.cleanup(project)
            except BackupError as exc:
                self._logger.log_error("retention_failed", project.name, "cleanup", exc)

    # ------------------------------------------------------------------
    def stop(self) -> None:
        self._stop_event.set()

    def _keepalive(self) -> None:
        while not self._stop_event.wait(self._refresh_s):
            self._heartbeat.touch()

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Tick every ``tick_s`` until stopped; always leaves a ``stopped`` heartbeat."""

        if stop_event is not None:
            self._stop_event = stop_event
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, lambda signum, frame: self._stop_event.set())
        self._heartbeat.publish(
            STATUS_HEALTHY,
            project=None,
            error=None,
            last_cloud_upload=self.last_cloud_upload(),
            cloud_pending_since=self.cloud_pending_since(),
        )
        self._logger.log_tick("daemon_started", True, tick_s=self._tick_s, interval_s=self._interval_s)
        keepalive = threading.Thread(target=self._keepalive, name="checkpoint-heartbeat", daemon=True)
        keepalive.start()
        try:
            while not self._stop_event.is_set():
                try:
                    self.tick()
                except Exception as exc:  # pragma: no cover - the loop must survive a bad tick
                    self._logger.log_error("tick_failed", None, "tick", exc)
                self._stop_event.wait(self._tick_s)
        finally:
            self._stop_event.set()
            self._cloud.wait(timeout=self._refresh_s)
            self._service.locks.release_all()
            self._heartbeat.stopped()
            self._logger.log_tick("daemon_stopped", True)


__all__ = ["Daemon", "consume_trigger", "is_paused", "pause", "request_trigger", "resume"]
