import os
import threading

import pytest

from backup.api import BackupService, CycleReporter
from backup.errors import LockHeld
from backup.locks import LockManager
from backup.types import Outcome, Phase
from conftest import FakeRunner


def test_second_acquire_is_rejected_while_held(home):
    locks = LockManager(home)
    handle = locks.acquire("demo")
    try:
        with pytest.raises(LockHeld) as excinfo:
            LockManager(home).acquire("demo")
        assert excinfo.value.holder_pid == os.getpid()
        assert excinfo.value.code == "ELOCK001"
    finally:
        locks.release(handle)
    assert not locks.path_for("demo").exists()


def test_stale_lock_is_reclaimed(home, monkeypatch):
    locks = LockManager(home)
    path = locks.path_for("demo")
    path.write_text("424242\n1.0\n", encoding="utf-8")
    monkeypatch.setattr("backup.locks.pid_is_running", lambda pid: int(pid) != 424242)

    handle = locks.acquire("demo")

    assert handle.pid == os.getpid()
    assert path.read_text(encoding="utf-8").split()[0] == str(os.getpid())
    locks.release(handle)


def test_old_lock_of_live_holder_is_not_stale(home):
    locks = LockManager(home)
    path = locks.path_for("demo")
    path.write_text(f"{os.getpid()}\n0.0\n", encoding="utf-8")
    os.utime(path, (0, 0))

    with pytest.raises(LockHeld):
        locks.acquire("demo")
    info = locks.inspect("demo")
    assert info is not None and info.alive


def test_release_leaves_foreign_marker(home):
    locks = LockManager(home)
    handle = locks.acquire("demo")
    handle.path.write_text("1\n0.0\n", encoding="utf-8")

    locks.release(handle)

    assert handle.path.exists()


def test_hold_releases_on_error(home):
    locks = LockManager(home)
    with pytest.raises(RuntimeError):
        with locks.hold("demo"):
            raise RuntimeError("boom")
    assert locks.inspect("demo") is None


def test_release_all_drops_every_held_lock(home):
    locks = LockManager(home)
    locks.acquire("one")
    locks.acquire("two")

    locks.release_all()

    assert locks.inspect("one") is None
    assert locks.inspect("two") is None


def test_names_with_the_same_label_do_not_share_a_lock(home):
    locks = LockManager(home)
    spaced = locks.acquire("my app")
    try:
        plain = LockManager(home).acquire("my_app")
        assert plain.path != spaced.path
        LockManager(home).release(plain)
    finally:
        locks.release(spaced)


def test_project_named_like_an_internal_lock_is_separate(home):
    locks = LockManager(home)
    internal = locks.acquire("_registry", internal=True)
    try:
        project = locks.acquire("_registry")
        assert project.path.name != internal.path.name
        locks.release(project)
    finally:
        locks.release(internal)
    assert locks.inspect("_registry", internal=True) is None


class _HoldWhileOtherRuns(CycleReporter):
    def __init__(self, other_done: threading.Event) -> None:
        self.other_done = other_done

    def phase(self, cycle, phase):
        if phase is Phase.INITIALIZING:
            self.other_done.wait(timeout=5)


def test_simultaneous_triggers_run_one_cycle(home, settings, make_project):
    project = make_project(files={"a.txt": "a", "b.txt": "b"})
    service = BackupService(home, settings, runner=FakeRunner(), sleep=lambda _s: None)
    start = threading.Barrier(2)
    skipped = threading.Event()
    outcomes = []

    def trigger():
        start.wait(timeout=5)
        cycle = service.run_cycle(project, reporter=_HoldWhileOtherRuns(skipped))
        outcomes.append(cycle.outcome)
        if cycle.outcome is Outcome.SKIPPED:
            skipped.set()

    threads = [threading.Thread(target=trigger) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sorted(outcome.value for outcome in outcomes) == ["skipped", "success"]
    assert (project.backup_dir / "files" / "a.txt").is_file()
    assert not service.locks.path_for(project.name).exists()
