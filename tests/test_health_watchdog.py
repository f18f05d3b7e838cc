import json
import threading
import time

import pytest

from conftest import FakeRunner
from core.atomic import read_json
from core.paths import get_state_dir, get_watchdog_path
from core.process import ToolResult
from health.watchdog import Watchdog
from orchestrator.heartbeat import HeartbeatPublisher
from orchestrator.logs import DaemonLogger

RESTART = ["systemctl", "--user", "restart", "checkpoint"]


class Clock:
    def __init__(self):
        self.value = time.time()

    def __call__(self):
        return self.value


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send(self, title, message, *, severity="warning", **extra):
        self.sent.append((title, severity))
        return True


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


def _watchdog(home, settings, notifier, clock, runner=None, **watchdog):
    settings["watchdog"].update({"max_failures": 2, "restart_command": RESTART})
    settings["watchdog"].update(watchdog)
    return Watchdog(home, settings, runner=runner or FakeRunner(), notifier=notifier, clock=clock)


def test_restarts_daemon_after_repeated_missing_heartbeats(home, settings, notifier, clock):
    runner = FakeRunner()
    watchdog = _watchdog(home, settings, notifier, clock, runner=runner)

    first = watchdog.step()
    second = watchdog.step()

    assert first.daemon.status == "missing"
    assert not first.restarted and first.consecutive_failures == 1
    assert second.restarted and second.consecutive_failures == 0
    assert runner.calls == [RESTART]
    assert notifier.sent == [("Checkpoint watchdog", "critical")]
    record = read_json(get_watchdog_path(home))
    assert record["status"] == "running"
    assert record["daemon_status"] == "missing"


def test_failed_restart_is_reported(home, settings, notifier, clock):
    runner = FakeRunner(handlers={"systemctl": lambda argv: ToolResult(args=argv, returncode=5, stderr="unit not found")})
    watchdog = _watchdog(home, settings, notifier, clock, runner=runner, max_failures=1)

    report = watchdog.step()

    assert report.restarted is False
    events = [json.loads(line)["event"] for line in DaemonLogger(home, filename="watchdog.jsonl").path.read_text(encoding="utf-8").splitlines()]
    assert "daemon_restart_failed" in events


def test_critical_notifications_respect_cooldown(home, settings, notifier, clock):
    watchdog = _watchdog(home, settings, notifier, clock, max_failures=1, critical_cooldown_s=3600)

    watchdog.step()
    watchdog.step()
    assert len(notifier.sent) == 1
    assert "critical" in read_json(get_state_dir(home) / "notify-cooldown.json")

    clock.value += 3601
    watchdog.step()
    assert len(notifier.sent) == 2


def test_error_heartbeat_notifies_once_without_restart(home, settings, notifier, clock):
    runner = FakeRunner()
    HeartbeatPublisher(home, clock=clock).publish("error", error="demo: disk full")
    watchdog = _watchdog(home, settings, notifier, clock, runner=runner, max_failures=1)

    watchdog.step()
    watchdog.step()

    assert runner.calls == []
    assert notifier.sent == [("Checkpoint: error", "warning")]
    assert watchdog.consecutive_failures == 0


def test_recovery_is_announced(home, settings, notifier, clock):
    watchdog = _watchdog(home, settings, notifier, clock, max_failures=5)
    watchdog.step()

    HeartbeatPublisher(home, clock=clock).publish("healthy", last_backup=int(clock.value) - 60)
    report = watchdog.step()

    assert report.ok
    assert notifier.sent == [("Checkpoint recovered", "info")]


def test_self_status_tracks_own_record(home, settings, notifier, clock):
    watchdog = _watchdog(home, settings, notifier, clock)
    assert watchdog.check().self_status == "missing"

    watchdog.step()
    assert watchdog.check().self_status == "healthy"

    clock.value += 10_000
    assert watchdog.check().self_status == "stale"


def test_run_writes_stopped_record(home, settings, notifier, clock):
    watchdog = _watchdog(home, settings, notifier, clock)
    stop = threading.Event()
    stop.set()

    watchdog.run(stop)

    assert read_json(get_watchdog_path(home))["status"] == "stopped"
    assert watchdog.check().self_status == "stale"


def test_daemon_liveness_uses_daemon_threshold(home, settings, notifier, clock):
    settings["daemon"]["heartbeat_stale_s"] = 120
    HeartbeatPublisher(home, clock=clock).publish("healthy", last_backup=int(clock.value))
    watchdog = _watchdog(home, settings, notifier, clock, stale_s=300)

    clock.value += 200
    report = watchdog.check()

    assert report.daemon.status == "stale"
    assert report.self_status == "missing"
