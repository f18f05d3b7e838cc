"""Upload a finished cycle's manifest entries to the configured remote."""
from __future__ import annotations

import fnmatch
import shutil
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

from backup.errors import BackupError, CloudUploadFailure, code_for_os_error
from backup.logs import BackupLogger
from backup.manifest import MANIFEST_NAME
from backup.types import CategoryResult, CloudUploadRecord, Manifest, Phase
from core.atomic import read_json, write_json_atomic
from core.paths import get_cloud_record_path, get_project_state_dir
from core.process import ToolRunner

from .compress import StagedFile, stage_files
from .encrypt import AgeEncryptor
from .policy import ALL_FILES_EXCLUDES, CRITICAL_CLOUD_PATTERNS, CloudPolicy
from .remote import RcloneRemote

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from backup.config import CycleConfig

PhaseFn = Callable[[Phase], None]

# category -> remote folder
_REMOTE_FOLDERS = {"databases": "databases", "critical": "files", "files": "files"}


def load_record(home: Path, project: str) -> Optional[Dict[str, object]]:
    return read_json(get_cloud_record_path(home, project))


def is_critical(rel: str) -> bool:
    name = rel.rsplit("/", 1)[-1]
    return any(fnmatch.fnmatch(name, pattern) for pattern in CRITICAL_CLOUD_PATTERNS)


def is_excluded(rel: str) -> bool:
    return any(fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(rel, f"*/{pattern}") for pattern in ALL_FILES_EXCLUDES)


class CloudSyncOrchestrator:
    """Compress, optionally encrypt, and upload one project's backup.

    Each run writes ``state/<project>/cloud-upload.json``. A failed run
    keeps the previous ``last_success`` and marks the record ``pending``.
    """

    def __init__(
        self,
        home: Path,
        *,
        runner: Optional[ToolRunner] = None,
        logger: Optional[BackupLogger] = None,
    ) -> None:
        self._home = Path(home)
        self._runner = runner or ToolRunner()
        self._logger = logger or BackupLogger(self._home)
        self._lock = threading.Lock()
        self._inflight: Dict[str, threading.Thread] = {}

    # ------------------------------------------------------------------
    def test_connection(self, policy: CloudPolicy) -> Tuple[bool, str]:
        remote = RcloneRemote(policy.remote, runner=self._runner, timeout=policy.timeout_s)
        try:
            result = remote.test()
        except CloudUploadFailure as exc:
            return False, str(exc)
        if result.ok:
            return True, f"connected to {remote.name}:"
        return False, result.describe()

    def in_flight(self, project: str) -> bool:
        with self._lock:
            thread = self._inflight.get(project)
            return thread is not None and thread.is_alive()

    # ------------------------------------------------------------------
    def _check_manifest(self, config: "CycleConfig", manifest: Manifest) -> None:
        data = read_json(config.manifest_path)
        if data is None:
            raise CloudUploadFailure(f"{MANIFEST_NAME} not found; refusing to upload", path=str(config.manifest_path))
        if data.get("backup_id") != manifest.cycle_id:
            raise CloudUploadFailure(
                f"Manifest on disk is for cycle {data.get('backup_id')}, not {manifest.cycle_id}",
                path=str(config.manifest_path),
            )

    def _selections(self, config: "CycleConfig", manifest: Manifest) -> Dict[str, List[Tuple[str, Path]]]:
        policy = config.cloud
        selections: Dict[str, List[Tuple[str, Path]]] = {}
        if policy.sync_databases:
            selections["databases"] = [
                (str(entry["path"]), config.databases_dir / str(entry["path"])) for entry in manifest.databases
            ]
        files = [(str(entry["path"]), config.files_dir / str(entry["path"])) for entry in manifest.files]
        if policy.sync_files:
            selections["files"] = [(rel, path) for rel, path in files if not is_excluded(rel)]
        elif policy.sync_critical:
            selections["critical"] = [(rel, path) for rel, path in files if is_critical(rel)]
        return selections

    def _record_failure(self, record: CloudUploadRecord, exc: CloudUploadFailure) -> None:
        record.ok = False
        record.error = str(exc)
        self._logger.failure("cloud_sync_failed", exc, project=record.project, cycle_id=record.cycle_id)

    def _write_record(self, record: CloudUploadRecord) -> None:
        write_json_atomic(get_cloud_record_path(self._home, record.project), record.to_dict())

    def _previous_success(self, project: str) -> Optional[int]:
        previous = load_record(self._home, project) or {}
        value = previous.get("last_success")
        return int(value) if isinstance(value, (int, float)) else None

    def _pending_since(self, project: str, now: int) -> int:
        previous = load_record(self._home, project) or {}
        value = previous.get("pending_since")
        return int(value) if isinstance(value, (int, float)) else now

    def mark_pending(self, config: "CycleConfig", manifest: Manifest) -> None:
        now = int(time.time())
        self._write_record(
            CloudUploadRecord(
                project=config.project,
                cycle_id=manifest.cycle_id,
                timestamp=now,
                ok=False,
                error=None,
                last_success=self._previous_success(config.project),
                pending=True,
                pending_since=self._pending_since(config.project, now),
            )
        )

    # ------------------------------------------------------------------
    def sync(self, config: "CycleConfig", manifest: Manifest, *, on_phase: Optional[PhaseFn] = None) -> CloudUploadRecord:
        """Upload every selected category; raises only when the manifest is not on disk."""

        policy = config.cloud
        self._check_manifest(config, manifest)
        notify = on_phase or (lambda phase: None)
        now = int(time.time())
        record = CloudUploadRecord(
            project=config.project,
            cycle_id=manifest.cycle_id,
            timestamp=now,
            last_success=self._previous_success(config.project),
            pending_since=self._pending_since(config.project, now),
        )
        staging_root = get_project_state_dir(self._home, config.project) / "cloud-staging" / manifest.cycle_id
        remote = RcloneRemote(policy.remote, runner=self._runner, timeout=policy.timeout_s)
        try:
            if not policy.configured:
                raise CloudUploadFailure("Cloud sync is not configured", code="ECONF001")
            if not remote.available():
                raise CloudUploadFailure("rclone is not installed", code="ENET002")
            encryptor = AgeEncryptor(policy.key_path, runner=self._runner) if policy.encrypt else None
            if encryptor is not None:
                encryptor.recipient()
            for category, entries in self._selections(config, manifest).items():
                record.categories[category] = self._sync_category(
                    config, category, entries, staging_root / category, remote, encryptor, notify
                )
            failed = [name for name, result in record.categories.items() if not result.ok]
            if failed:
                record.ok = False
                record.error = "; ".join(f"{name}: {record.categories[name].error}" for name in failed)
        except CloudUploadFailure as exc:
            self._record_failure(record, exc)
        except OSError as exc:
            self._record_failure(
                record, CloudUploadFailure(f"Cloud staging failed: {exc}", code=code_for_os_error(exc, destination=True))
            )
        finally:
            shutil.rmtree(staging_root, ignore_errors=True)

        record.pending = not record.ok
        if record.ok:
            record.last_success = record.timestamp
            record.pending_since = None
        try:
            self._write_record(record)
        except OSError as exc:
            self._logger.error("cloud_record_write_failed", project=config.project, cycle_id=record.cycle_id, error=str(exc))
        self._logger.event(
            event="cloud_sync_finished",
            phase="cloud",
            ok=record.ok,
            project=config.project,
            cycle_id=manifest.cycle_id,
            categories={name: result.to_dict() for name, result in record.categories.items()},
        )
        return record

    def _sync_category(
        self,
        config: "CycleConfig",
        category: str,
        entries: List[Tuple[str, Path]],
        staging: Path,
        remote: RcloneRemote,
        encryptor: Optional[AgeEncryptor],
        notify: PhaseFn,
    ) -> CategoryResult:
        policy = config.cloud
        result = CategoryResult(eligible=len(entries))
        if not entries:
            return result

        notify(Phase.CLOUD_SYNCING_ARCHIVES)
        # Database dumps are already gzip streams.
        staged: List[StagedFile] = stage_files(
            entries,
            staging,
            compress=policy.compress and category != "databases",
            workers=policy.worker_count,
            parallel_threshold=policy.parallel_threshold,
        )
        if encryptor is not None:
            notify(Phase.CLOUD_SYNCING_ENCRYPTING)
            encryptor.encrypt(staged, workers=policy.worker_count)

        ready = [item for item in staged if item.ok]
        result.failed = len(staged) - len(ready)
        if not ready:
            result.ok = False
            result.error = "nothing could be staged"
            return result

        notify(Phase.CLOUD_SYNCING_DATABASES if category == "databases" else Phase.CLOUD_SYNCING_FILES)
        target = policy.remote_target(config.project, _REMOTE_FOLDERS[category])
        outcome = remote.copy(staging, target)
        if not outcome.ok:
            result.ok = False
            result.failed = len(staged)
            result.error = outcome.describe()
            return result
        result.uploaded = len(ready)
        if result.failed:
            result.ok = False
            result.error = f"{result.failed} file(s) could not be staged"
        self._logger.info(
            "cloud_category_uploaded",
            project=config.project,
            category=category,
            uploaded=result.uploaded,
            target=target,
        )
        return result

    # ------------------------------------------------------------------
    def sync_in_background(
        self,
        config: "CycleConfig",
        manifest: Manifest,
        *,
        on_phase: Optional[PhaseFn] = None,
        on_done: Optional[Callable[[CloudUploadRecord], None]] = None,
    ) -> Optional[threading.Thread]:
        """Start :meth:`sync` on a daemon thread unless one is already running for the project."""

        with self._lock:
            current = self._inflight.get(config.project)
            if current is not None and current.is_alive():
                self._logger.info("cloud_sync_in_flight", project=config.project, cycle_id=manifest.cycle_id)
                return None
            self.mark_pending(config, manifest)

            def _run() -> None:
                try:
                    record = self.sync(config, manifest, on_phase=on_phase)
                except BackupError as exc:
                    self._logger.failure("cloud_sync_failed", exc, project=config.project, cycle_id=manifest.cycle_id)
                    return
                finally:
                    with self._lock:
                        if self._inflight.get(config.project) is threading.current_thread():
                            self._inflight.pop(config.project, None)
                if on_done is not None:
                    on_done(record)

            thread = threading.Thread(target=_run, name=f"cloud-sync-{config.project}", daemon=True)
            self._inflight[config.project] = thread
            thread.start()
            return thread

    def wait(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            threads = list(self._inflight.values())
        for thread in threads:
            thread.join(timeout=timeout)


__all__ = ["CloudSyncOrchestrator", "is_critical", "is_excluded", "load_record"]
