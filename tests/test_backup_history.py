import time

from backup.history import HistoryStore, ProjectState, load_project_state, save_project_state
from backup.types import CycleError, CycleResult, Manifest, Outcome


def _cycle(cycle_id, outcome, message=None):
    cycle = CycleResult(project="demo", cycle_id=cycle_id, started=time.time(), outcome=outcome)
    cycle.finished = cycle.started + 1
    if message:
        cycle.errors.append(CycleError(kind="FileCopyFailure", code="EFILE001", message=message, path="a.txt"))
    return cycle


def test_failure_transitions(home):
    store = HistoryStore(home)

    first = store.record(_cycle("20240101_000000", Outcome.FAILED, "disk gone"))
    second = store.record(_cycle("20240101_010000", Outcome.PARTIAL, "still bad"))
    skipped = store.record(_cycle("20240101_020000", Outcome.SKIPPED))
    recovered = store.record(_cycle("20240101_030000", Outcome.SUCCESS))

    assert first.entered_failure and not first.recovered
    assert not second.entered_failure
    assert second.state.consecutive == 2
    assert second.state.since_utc == first.state.since_utc
    assert second.state.last_error == "still bad"
    assert skipped.state.consecutive == 2
    assert recovered.recovered
    assert store.failure_state("demo").failing is False


def test_recent_returns_newest_first_with_errors(home):
    store = HistoryStore(home)
    older = _cycle("20240101_000000", Outcome.SUCCESS)
    newer = _cycle("20240102_000000", Outcome.PARTIAL, "locked")
    newer.started = older.started + 60
    store.record(older)
    store.record(newer)

    rows = store.recent("demo", limit=5)

    assert [row["cycle_id"] for row in rows] == ["20240102_000000", "20240101_000000"]
    assert rows[0]["errors"][0]["code"] == "EFILE001"
    assert store.recent("other") == []


def test_project_state_round_trip_defaults(home):
    assert load_project_state(home, "demo") == ProjectState()

    save_project_state(home, "demo", ProjectState(last_backup=12.5, last_backup_files=3, last_head="abc", last_cycle_id="x"))

    state = load_project_state(home, "demo")
    assert state.last_backup == 12.5
    assert state.last_head == "abc"


def test_manifest_from_dict_reads_backup_id():
    manifest = Manifest.from_dict(
        {
            "version": 1,
            "project": "demo",
            "backup_id": "20240101_000000",
            "timestamp": "2024-01-01T00:00:00Z",
            "outcome": "success",
            "files": [{"path": "a.txt", "size": 3}],
            "databases": [{"path": "app_20240101_000000.db.gz", "size": 7}],
        }
    )

    assert manifest.cycle_id == "20240101_000000"
    assert manifest.totals == {"files": 1, "databases": 1, "bytes": 10}
