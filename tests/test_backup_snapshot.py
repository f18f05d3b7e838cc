import errno
import os
import re

import pytest

from backup.config import build_cycle_config
from backup.errors import SnapshotWriteError
from backup.snapshot import SnapshotEngine
from backup.types import ChangeSet, CycleError, SnapshotResult


def _engine(config, logger, **kwargs):
    engine = SnapshotEngine(config, logger=logger, pid=4321, **kwargs)
    engine.ensure_layout()
    return engine


def test_materialize_copies_then_archives_superseded_copy(home, settings, make_project, logger):
    project = make_project(files={"src/app.py": "v1"})
    config = build_cycle_config(project, settings, home=home)
    engine = _engine(config, logger)

    first = engine.materialize(ChangeSet(added={"src/app.py"}))
    assert [entry.path for entry in first.copied] == ["src/app.py"]
    assert (config.files_dir / "src/app.py").read_text(encoding="utf-8") == "v1"

    (project.path / "src/app.py").write_text("version two", encoding="utf-8")
    second = engine.materialize(ChangeSet(modified={"src/app.py"}))

    assert len(second.archived) == 1
    archived = second.archived[0].archived_path
    assert re.fullmatch(r"app\.py\.\d{8}_\d{6}_4321", archived.name)
    assert archived.read_text(encoding="utf-8") == "v1"
    assert (config.files_dir / "src/app.py").read_text(encoding="utf-8") == "version two"


def test_archive_names_never_collide(home, settings, make_project, logger):
    config = build_cycle_config(make_project(), settings, home=home)
    engine = _engine(config, logger)
    first = engine.archive_name("a.txt", "20240101_000000")
    first.parent.mkdir(parents=True, exist_ok=True)
    first.write_text("x", encoding="utf-8")

    second = engine.archive_name("a.txt", "20240101_000000")

    assert second != first
    assert second.name == f"{first.name}_1"


def test_identical_content_is_left_alone(home, settings, make_project, logger):
    project = make_project(files={"a.txt": "same"})
    config = build_cycle_config(project, settings, home=home)
    engine = _engine(config, logger)
    engine.materialize(ChangeSet(added={"a.txt"}))
    os.utime(project.path / "a.txt", None)

    result = engine.materialize(ChangeSet(modified={"a.txt"}))

    assert result.unchanged == ["a.txt"]
    assert result.archived == []


def test_symlinks_and_large_files_are_skipped(home, settings, make_project, logger):
    settings["backup"]["max_file_size_bytes"] = 4
    settings["backup"]["backup_large_files"] = False
    project = make_project(files={"big.bin": "0123456789", "small.txt": "ok"})
    os.symlink(project.path / "small.txt", project.path / "link.txt")
    config = build_cycle_config(project, settings, home=home)

    result = _engine(config, logger).materialize(ChangeSet(added={"big.bin", "small.txt", "link.txt"}))

    assert [entry.path for entry in result.copied] == ["small.txt"]
    assert {error.code for error in result.skipped} == {"EFILE002", "EFILE003"}
    assert not (config.files_dir / "link.txt").exists()


def test_dry_run_only_plans(home, settings, make_project, logger):
    project = make_project(files={"a.txt": "a"})
    config = build_cycle_config(project, settings, home=home)

    result = SnapshotEngine(config, logger=logger).materialize(ChangeSet(added={"a.txt"}), dry_run=True)

    assert result.planned == ["a.txt"]
    assert not config.backup_dir.exists()


def test_transient_errors_are_retried_with_backoff(home, settings, make_project, logger, monkeypatch):
    settings["backup"]["copy_backoff_s"] = 0.5
    project = make_project(files={"a.txt": "a"})
    config = build_cycle_config(project, settings, home=home)
    sleeps = []
    engine = _engine(config, logger, sleep=sleeps.append)
    original = engine._copy_once
    attempts = []

    def flaky(source, dest):
        attempts.append(source)
        if len(attempts) < 3:
            raise OSError(errno.EIO, "I/O error")
        original(source, dest)

    monkeypatch.setattr(engine, "_copy_once", flaky)
    result = engine.materialize(ChangeSet(added={"a.txt"}))

    assert [entry.path for entry in result.copied] == ["a.txt"]
    assert sleeps == [0.5, 1.0]


def test_permission_errors_fail_without_retry(home, settings, make_project, logger, monkeypatch):
    project = make_project(files={"a.txt": "a"})
    config = build_cycle_config(project, settings, home=home)
    engine = _engine(config, logger)
    calls = []

    def denied(source, dest):
        calls.append(source)
        raise PermissionError(errno.EACCES, "denied")

    monkeypatch.setattr(engine, "_copy_once", denied)
    result = engine.materialize(ChangeSet(added={"a.txt"}))

    assert len(calls) == 1
    assert result.failed[0].code == "EPERM001"


def test_verify_drops_size_mismatch(home, settings, make_project, logger):
    project = make_project(files={"a.txt": "abc"})
    config = build_cycle_config(project, settings, home=home)
    engine = _engine(config, logger)
    result = engine.materialize(ChangeSet(added={"a.txt"}))
    (config.files_dir / "a.txt").write_text("truncated!", encoding="utf-8")

    mismatches = engine.verify(result)

    assert len(mismatches) == 1
    assert result.copied == []
    assert result.failed[0].path == "a.txt"


def test_no_output_written_is_fatal(home, settings, make_project, logger):
    config = build_cycle_config(make_project(), settings, home=home)
    engine = SnapshotEngine(config, logger=logger)
    result = SnapshotResult(failed=[CycleError(kind="FileCopyFailure", code="EDISK001", message="full")])

    with pytest.raises(SnapshotWriteError):
        engine.check_output_written(result)

    engine.check_output_written(SnapshotResult(failed=[CycleError(kind="FileCopyFailure", code="EPERM001", message="src")]))
