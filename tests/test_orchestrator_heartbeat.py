import pytest

from backup.types import CycleError, CycleResult, Phase
from orchestrator.heartbeat import (
    HeartbeatPublisher,
    ProgressReporter,
    evaluate_heartbeat,
    phase_percent,
    read_heartbeat,
    read_progress,
)

NOW = 1_700_000_000.0


class Clock:
    def __init__(self, value=NOW):
        self.value = value

    def __call__(self):
        return self.value


@pytest.mark.parametrize(
    "data, status, severity",
    [
        (None, "missing", "critical"),
        ({"status": "healthy"}, "missing", "critical"),
        ({"timestamp": NOW - 10, "status": "healthy", "last_backup": NOW - 60}, "healthy", "ok"),
        ({"timestamp": NOW - 10, "status": "syncing"}, "syncing", "ok"),
        ({"timestamp": NOW - 500, "status": "syncing"}, "stale", "critical"),
        ({"timestamp": NOW - 500, "status": "stopped"}, "stopped", "warning"),
        ({"timestamp": NOW - 5, "status": "error", "error": "disk full"}, "error", "warning"),
        ({"timestamp": NOW, "status": "healthy", "last_backup": NOW - 90_000}, "backups-stale", "warning"),
        ({"timestamp": NOW, "status": "healthy", "last_backup": NOW - 300_000}, "backups-stale", "critical"),
    ],
)
def test_evaluate_heartbeat(data, status, severity):
    result = evaluate_heartbeat(data, now=NOW, stale_s=120)

    assert (result.status, result.severity) == (status, severity)


def test_evaluate_heartbeat_flags_stale_cloud_upload_only_when_enabled():
    data = {"timestamp": NOW, "status": "healthy", "last_backup": NOW - 60, "last_cloud_upload": NOW - 7200}

    assert evaluate_heartbeat(data, now=NOW).status == "healthy"
    flagged = evaluate_heartbeat(data, now=NOW, cloud_stale_s=3600)
    assert flagged.status == "backups-stale"
    assert "cloud" in flagged.detail


def test_evaluate_heartbeat_flags_cloud_that_never_uploaded():
    never = {"timestamp": NOW, "status": "healthy", "last_backup": NOW - 60, "last_cloud_upload": None}

    assert evaluate_heartbeat(never, now=NOW, cloud_stale_s=3600).status == "healthy"
    waiting = {**never, "cloud_pending_since": NOW - 7200}
    flagged = evaluate_heartbeat(waiting, now=NOW, cloud_stale_s=3600)
    assert flagged.status == "backups-stale"
    assert flagged.detail == "no cloud upload in 7200s"
    assert evaluate_heartbeat({**waiting, "cloud_pending_since": NOW - 60}, now=NOW, cloud_stale_s=3600).status == "healthy"


def test_phase_percent_spans():
    assert phase_percent(Phase.INITIALIZING) == 0
    assert phase_percent(Phase.COPYING, 30, 60) == 50
    assert phase_percent(Phase.COPYING, 999, 10) == 80
    assert phase_percent(Phase.FINALIZING) == 100
    assert phase_percent(Phase.ERROR) is None


def test_publisher_clears_cycle_counters_outside_syncing(home):
    publisher = HeartbeatPublisher(home, clock=Clock())

    publisher.publish("syncing", project="demo", syncing_project_index=1, syncing_total_projects=2, phase="copying")
    assert read_heartbeat(home)["syncing_total_projects"] == 2

    publisher.publish("healthy", project=None)
    data = read_heartbeat(home)
    assert data["status"] == "healthy"
    assert "syncing_total_projects" not in data
    assert "phase" not in data
    assert data["timestamp"] == int(NOW)


def test_publisher_throttles_counter_updates(home):
    clock = Clock()
    publisher = HeartbeatPublisher(home, refresh_s=10, clock=clock)
    publisher.publish("syncing", processed_files=0)

    clock.value += 2
    publisher.update(processed_files=5)
    assert read_heartbeat(home)["processed_files"] == 0

    clock.value += 10
    publisher.update(processed_files=9)
    assert read_heartbeat(home)["processed_files"] == 9


def test_publisher_keeps_last_backup_across_restarts(home):
    first = HeartbeatPublisher(home, clock=Clock())
    first.publish("healthy", last_backup=int(NOW) - 30, last_backup_files=12)

    second = HeartbeatPublisher(home, clock=Clock())

    assert second.state["last_backup"] == int(NOW) - 30
    assert second.state["last_backup_files"] == 12


def test_progress_reporter_writes_phase_and_percent(home):
    clock = Clock()
    heartbeat = HeartbeatPublisher(home, clock=clock)
    reporter = ProgressReporter(home, heartbeat, min_interval_s=1.0, clock=clock)
    cycle = CycleResult(project="demo", cycle_id="20240101_000000", started=NOW)

    reporter.phase(cycle, Phase.COPYING)
    clock.value += 5
    reporter.progress(cycle, Phase.COPYING, 3, 4)

    progress = read_progress(home)
    assert progress["phase"] == "copying"
    assert progress["percent"] == 65
    assert progress["processed_files"] == 3
    assert read_heartbeat(home)["status"] == "syncing"


def test_progress_reporter_publishes_error_phase(home):
    heartbeat = HeartbeatPublisher(home, clock=Clock())
    reporter = ProgressReporter(home, heartbeat, clock=Clock())
    cycle = CycleResult(project="demo", cycle_id="x", started=NOW)
    cycle.errors.append(CycleError(kind="ConfigInvalid", code="ECONF002", message="Project directory missing"))

    reporter.phase(cycle, Phase.ERROR)

    data = read_heartbeat(home)
    assert data["status"] == "error"
    assert data["error"] == "Project directory missing"
