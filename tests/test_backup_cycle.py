import json
import os
import time

import pytest

from backup.api import BackupService, CycleReporter
from backup.errors import BackupVerificationError, CloudUploadFailure, FileCopyFailure
from backup.history import load_project_state
from backup.locks import LockManager
from backup.logs import BackupLogger
from backup.manifest import load_manifest
from backup.snapshot import SnapshotEngine
from backup.types import CycleOptions, Outcome, Phase, Project
from conftest import FakeRunner


class RecordingReporter(CycleReporter):
    def __init__(self) -> None:
        self.phases = []
        self.progress_calls = []

    def phase(self, cycle, phase):
        self.phases.append(phase)

    def progress(self, cycle, phase, processed, total):
        self.progress_calls.append((phase, processed, total))


@pytest.fixture
def service(home, settings):
    return BackupService(home, settings, runner=FakeRunner(), sleep=lambda _s: None)


def _bump(path, text):
    path.write_text(text, encoding="utf-8")
    future = time.time() + 10
    os.utime(path, (future, future))


def test_first_cycle_copies_everything_and_writes_manifest(service, make_project):
    project = make_project(files={"src/app.py": "print('hi')", "README.md": "# demo"})
    reporter = RecordingReporter()

    cycle = service.run_cycle(project, reporter=reporter)

    assert cycle.outcome is Outcome.SUCCESS
    assert cycle.files_backed_up == 2
    assert reporter.phases == [
        Phase.INITIALIZING,
        Phase.SCANNING,
        Phase.PREPARING,
        Phase.COPYING,
        Phase.VERIFYING,
        Phase.MANIFEST,
        Phase.FINALIZING,
    ]
    manifest = load_manifest(project.backup_dir)
    assert manifest["project"] == "demo"
    assert manifest["backup_id"] == cycle.cycle_id
    assert [entry["path"] for entry in manifest["files"]] == ["README.md", "src/app.py"]
    assert manifest["totals"]["files"] == 2
    assert load_project_state(service.home, "demo").last_backup == pytest.approx(cycle.started)


def test_second_cycle_archives_modified_file(service, make_project):
    project = make_project(files={"notes.md": "v1", "other.txt": "same"})
    service.run_cycle(project)
    _bump(project.path / "notes.md", "version 2")

    cycle = service.run_cycle(project)

    assert cycle.outcome is Outcome.SUCCESS
    assert cycle.archived == 1
    manifest = load_manifest(project.backup_dir)
    sizes = {entry["path"]: entry["size"] for entry in manifest["files"]}
    assert sizes == {"notes.md": len("version 2"), "other.txt": 4}
    assert manifest["archived"] == 1


def test_deleted_source_keeps_its_copy(service, make_project):
    project = make_project(files={"keep.txt": "k", "drop.txt": "d"})
    service.run_cycle(project)
    (project.path / "drop.txt").unlink()

    service.run_cycle(project, CycleOptions(force=True))

    assert (project.backup_dir / "files" / "drop.txt").exists()
    paths = [entry["path"] for entry in load_manifest(project.backup_dir)["files"]]
    assert "drop.txt" in paths


def test_cycle_is_skipped_while_lock_is_held(service, home, make_project):
    project = make_project(files={"a.txt": "a"})
    other = LockManager(home)
    handle = other.acquire(project.name)
    try:
        cycle = service.run_cycle(project)
    finally:
        other.release(handle)

    assert cycle.outcome is Outcome.SKIPPED
    assert not (project.backup_dir / "files" / "a.txt").exists()


def test_dry_run_writes_nothing(service, make_project):
    project = make_project(files={"a.txt": "a", "b.txt": "b"})

    cycle = service.run_cycle(project, CycleOptions(dry_run=True))

    assert cycle.outcome is Outcome.SUCCESS
    assert cycle.dry_run
    assert sorted(cycle.snapshot.planned) == ["a.txt", "b.txt"]
    assert not project.backup_dir.exists()
    assert load_project_state(service.home, project.name).last_backup is None


def test_single_file_failure_is_partial_and_keeps_cursor(service, make_project, monkeypatch):
    project = make_project(files={"ok.txt": "fine", "locked.txt": "busy"})
    real_copy = SnapshotEngine._copy_once

    def flaky_copy(self, source, dest):
        if source.name == "locked.txt":
            raise FileCopyFailure(f"Cannot read {source}", path=str(source))
        return real_copy(self, source, dest)

    monkeypatch.setattr(SnapshotEngine, "_copy_once", flaky_copy)

    cycle = service.run_cycle(project)

    assert cycle.outcome is Outcome.PARTIAL
    assert cycle.files_backed_up == 1
    assert [error.code for error in cycle.errors] == ["EFILE001"]
    assert load_project_state(service.home, project.name).last_backup is None


def test_missing_project_directory_fails_cycle(service, tmp_path):
    project = Project(name="ghost", path=tmp_path / "missing")

    cycle = service.run_cycle(project)

    assert cycle.outcome is Outcome.FAILED
    assert cycle.phase is Phase.ERROR
    assert cycle.errors[0].code == "ECONF002"


def test_cloud_failure_does_not_change_local_outcome(service, make_project):
    project = make_project(files={"a.txt": "a"})
    reporter = RecordingReporter()

    def broken_upload(config, cycle):
        raise CloudUploadFailure("remote unreachable")

    cycle = service.run_cycle(project, reporter=reporter, after_manifest=broken_upload)

    assert cycle.outcome is Outcome.SUCCESS
    assert Phase.CLOUD_SYNCING in reporter.phases
    assert reporter.phases[-1] is Phase.FINALIZING


def test_cycle_events_are_logged_as_json_lines(service, home, make_project):
    project = make_project(files={"a.txt": "a"})

    service.run_cycle(project)

    lines = [json.loads(line) for line in BackupLogger(home).path.read_text(encoding="utf-8").splitlines()]
    finished = [line for line in lines if line.get("event") == "cycle_finished"]
    assert finished and finished[-1]["outcome"] == "success"


def test_verify_detects_missing_copy(service, make_project):
    project = make_project(files={"a.txt": "a", "b.txt": "bb"})
    service.run_cycle(project)

    report = service.verify(project)
    assert report["file_count"] == 2

    (project.backup_dir / "files" / "b.txt").unlink()
    with pytest.raises(BackupVerificationError) as excinfo:
        service.verify(project)
    assert "missing: b.txt" in str(excinfo.value)


def test_verify_without_manifest_fails(service, make_project):
    with pytest.raises(BackupVerificationError):
        service.verify(make_project())


def test_cleanup_runs_under_lock(service, make_project):
    project = make_project(files={"a.txt": "a"})
    service.run_cycle(project)

    summary = service.cleanup(project)

    assert summary.removed == []
    assert not service.locks.path_for(project.name).exists()


def test_projects_sharing_a_label_keep_separate_cursors(service, make_project):
    spaced = make_project("my app", files={"x.txt": "v1"})
    plain = make_project("my_app", files={"y.txt": "other"})
    service.run_cycle(spaced)
    _bump(spaced.path / "x.txt", "v2")

    assert service.run_cycle(plain).outcome is Outcome.SUCCESS
    cycle = service.run_cycle(spaced)

    assert cycle.files_backed_up == 1
    assert (spaced.backup_dir / "files" / "x.txt").read_text(encoding="utf-8") == "v2"
    assert load_project_state(service.home, "my app").last_backup != load_project_state(service.home, "my_app").last_backup


def test_unexpected_cloud_error_keeps_local_success(service, make_project):
    project = make_project(files={"a.txt": "a"})

    def denied_upload(config, cycle):
        raise PermissionError(13, "Permission denied", str(config.state_dir))

    cycle = service.run_cycle(project, after_manifest=denied_upload)

    assert cycle.outcome is Outcome.SUCCESS
    assert cycle.phase is Phase.FINALIZING
    assert load_manifest(project.backup_dir)["backup_id"] == cycle.cycle_id


def test_failed_copy_keeps_current_file_in_place(service, make_project, monkeypatch):
    project = make_project(files={"notes.md": "v1"})
    service.run_cycle(project)
    _bump(project.path / "notes.md", "version 2")

    def unreadable(self, source, dest):
        raise FileCopyFailure(f"Cannot read {source}", path=str(source))

    monkeypatch.setattr(SnapshotEngine, "_copy_once", unreadable)
    cycle = service.run_cycle(project)

    assert cycle.outcome is Outcome.PARTIAL
    assert cycle.archived == 0
    assert (project.backup_dir / "files" / "notes.md").read_text(encoding="utf-8") == "v1"
    assert not list((project.backup_dir / "archived").glob("notes.md.*"))
    assert [entry["path"] for entry in load_manifest(project.backup_dir)["files"]] == ["notes.md"]
