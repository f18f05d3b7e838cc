import threading
import time

import pytest

from backup.types import CycleOptions, Outcome
from cloud.sync import load_record
from conftest import FakeRunner
from core.process import ToolResult
from orchestrator.daemon import Daemon, consume_trigger, is_paused, pause, request_trigger, resume
from orchestrator.heartbeat import read_heartbeat
from orchestrator.registry import ProjectRegistry


class RecordingNotifier:
    def __init__(self):
        self.transitions = []

    def cycle_transition(self, project, transition):
        self.transitions.append((project, transition))
        return transition.entered_failure or transition.recovered


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def registered(home, make_project):
    project = make_project(files={"main.py": "print(1)"})
    ProjectRegistry(home).register(project.path, backup_dir=project.backup_dir)
    return project


def _daemon(home, settings, notifier, **kwargs):
    return Daemon(home, settings, runner=kwargs.pop("runner", FakeRunner()), notifier=notifier, **kwargs)


def test_pause_resume_and_expiry(home):
    assert not is_paused(home)
    pause(home)
    assert is_paused(home)
    assert resume(home) is True
    assert resume(home) is False

    pause(home, until=time.time() - 1)
    assert not is_paused(home)


def test_trigger_is_claimed_once(home):
    request_trigger(home, "demo")

    assert consume_trigger(home)["project"] == "demo"
    assert consume_trigger(home) is None


def test_tick_backs_up_due_project_then_waits_for_interval(home, settings, registered, notifier):
    daemon = _daemon(home, settings, notifier)

    first = daemon.tick()
    second = daemon.tick()

    assert [cycle.outcome for cycle in first] == [Outcome.SUCCESS]
    assert second == []
    heartbeat = read_heartbeat(home)
    assert heartbeat["status"] == "healthy"
    assert heartbeat["last_backup"] == int(first[0].started)
    assert heartbeat["last_backup_files"] == 1
    assert ProjectRegistry(home).get("demo").last_backup == int(first[0].started)


def test_pause_blocks_scheduled_ticks_but_not_manual_runs(home, settings, registered, notifier):
    daemon = _daemon(home, settings, notifier)
    pause(home)

    assert daemon.tick() == []
    manual = daemon.tick(manual=True)

    assert [cycle.project for cycle in manual] == ["demo"]


def test_trigger_forces_a_project_that_is_not_due(home, settings, registered, notifier):
    daemon = _daemon(home, settings, notifier)
    daemon.tick()

    assert daemon.tick(project="demo") == []
    request_trigger(home, "demo")
    forced = daemon.tick()

    assert [cycle.project for cycle in forced] == ["demo"]
    assert consume_trigger(home) is None


def test_unknown_project_is_ignored(home, settings, registered, notifier):
    assert _daemon(home, settings, notifier).tick(project="nope", force=True) == []


def test_disabled_projects_are_not_scheduled(home, settings, registered, notifier):
    ProjectRegistry(home).set_enabled("demo", False)

    assert _daemon(home, settings, notifier).tick(force=True) == []


def test_failing_project_sets_error_heartbeat_and_notifies(home, settings, registered, notifier):
    daemon = _daemon(home, settings, notifier)
    registered.path.joinpath("main.py").unlink()
    registered.path.rmdir()

    results = daemon.tick(force=True)

    assert results[0].outcome is Outcome.FAILED
    heartbeat = read_heartbeat(home)
    assert heartbeat["status"] == "error"
    assert heartbeat["error"].startswith("demo:")
    project, transition = notifier.transitions[-1]
    assert project == "demo" and transition.entered_failure


def test_dry_run_is_not_recorded(home, settings, registered, notifier):
    daemon = _daemon(home, settings, notifier)

    results = daemon.tick(force=True, options=CycleOptions(dry_run=True))

    assert results[0].dry_run
    assert notifier.transitions == []
    assert ProjectRegistry(home).get("demo").last_backup is None


def test_foreground_cloud_sync_updates_heartbeat(home, settings, make_project, notifier):
    settings["cloud"].update({"enable": True, "remote": "gdrive"})
    project = make_project(files={".env": "TOKEN=1"})
    ProjectRegistry(home).register(project.path, backup_dir=project.backup_dir)
    runner = FakeRunner(tools={"rclone"}, handlers={"rclone": lambda argv: ToolResult(args=argv, returncode=0)})
    daemon = _daemon(home, settings, notifier, runner=runner, foreground_cloud=True)

    daemon.tick()

    record = load_record(home, "demo")
    assert record["ok"] is True
    assert read_heartbeat(home)["last_cloud_upload"] == record["last_success"]
    assert daemon.last_cloud_upload() == record["last_success"]


def test_unreachable_cloud_publishes_pending_since(home, settings, make_project, notifier):
    settings["cloud"].update({"enable": True, "remote": "gdrive"})
    project = make_project(files={".env": "TOKEN=1"})
    ProjectRegistry(home).register(project.path, backup_dir=project.backup_dir)
    daemon = _daemon(home, settings, notifier, foreground_cloud=True)

    daemon.tick()

    record = load_record(home, "demo")
    assert record["ok"] is False
    assert record["last_success"] is None
    assert daemon.cloud_pending_since() == record["pending_since"]
    assert read_heartbeat(home)["cloud_pending_since"] == record["pending_since"]


def test_run_forever_leaves_stopped_heartbeat(home, settings, notifier):
    daemon = _daemon(home, settings, notifier)
    stop = threading.Event()
    stop.set()

    daemon.run_forever(stop)

    assert read_heartbeat(home)["status"] == "stopped"
