import json
import time

from backup.history import HistoryStore
from core.atomic import write_json_atomic
from core.paths import get_watchdog_path
from conftest import FakeRunner
from health import run as health_run
from health.checks import HealthReport, HealthSeverity, run_checks
from orchestrator.heartbeat import HeartbeatPublisher
from orchestrator.registry import ProjectRegistry

DEAD_PID = 2_147_480_000


def _codes(report: HealthReport):
    return {item.code for item in report.items}


def _fresh_daemon(home):
    HeartbeatPublisher(home).publish("healthy", last_backup=int(time.time()) - 30)
    write_json_atomic(get_watchdog_path(home), {"timestamp": int(time.time()), "status": "running"})


def test_fresh_home_reports_missing_daemon_and_watchdog(home, settings):
    report = run_checks(home, settings=settings, runner=FakeRunner())

    codes = _codes(report)
    assert "DAEMON_MISSING" in codes
    assert "WATCHDOG_MISSING" in codes
    assert report.summary.major >= 1


def test_healthy_install_is_clean(home, settings):
    _fresh_daemon(home)

    report = run_checks(home, settings=settings, runner=FakeRunner())

    assert report.items == []


def test_missing_cloud_tooling_and_key(home, settings, tmp_path):
    _fresh_daemon(home)
    settings["backup"]["use_git"] = True
    settings["cloud"].update({"enable": True, "encrypt": True, "key_path": str(tmp_path / "absent.txt")})

    report = run_checks(home, settings=settings, runner=FakeRunner(tools={"git", "age", "age-keygen"}))

    by_code = {item.code: item for item in report.items}
    assert set(by_code) == {"TOOL_RCLONE_MISSING", "CLOUD_KEY_MISSING"}
    assert by_code["TOOL_RCLONE_MISSING"].severity is HealthSeverity.MAJOR


def test_stale_lock_and_broken_project(home, settings, make_project):
    _fresh_daemon(home)
    (home / "locks" / "ghost.lock").write_text(f"{DEAD_PID}\n0\n", encoding="utf-8")
    project = make_project()
    ProjectRegistry(home).register(project.path, backup_dir=project.backup_dir)
    project.path.rmdir()

    report = run_checks(home, settings=settings, runner=FakeRunner())

    by_code = {item.code: item for item in report.items}
    assert by_code["LOCK_STALE"].severity is HealthSeverity.MINOR
    assert str(DEAD_PID) in by_code["LOCK_STALE"].details
    assert by_code["PROJECT_ECONF002"].where == "demo"


def test_reports_are_kept_in_the_history_database(home, monkeypatch):
    assert health_run.latest_report(home) is None

    report = health_run.run_health_checks(home)
    latest = health_run.latest_report(home)

    assert latest is not None
    assert [item.code for item in latest.items] == [item.code for item in report.items]
    assert latest.ts == report.ts

    monkeypatch.setattr("backup.history.HEALTH_REPORTS_KEPT", 2)
    store = HistoryStore(home)
    for offset in (1.0, 2.0, 3.0):
        store.record_health(report.ts + offset, 0, 0, [])
    assert [row["ts"] for row in store.health_reports(limit=10)] == [report.ts + 3.0, report.ts + 2.0]


def test_cli_json_output_and_exit_code(home, capsys):
    exit_code = health_run.cli(["--json", "--home", str(home)])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 1
    assert payload["summary"]["major"] >= 1
    assert health_run.latest_report(home) is not None


def test_cli_history_lists_stored_summaries(home, capsys):
    assert health_run.cli(["--history", "5", "--home", str(home)]) == 0
    assert "No health reports recorded" in capsys.readouterr().out

    HistoryStore(home).record_health(time.time(), 1, 0, [{"code": "DAEMON_MISSING"}])
    assert health_run.cli(["--history", "5", "--json", "--home", str(home)]) == 0
    [row] = json.loads(capsys.readouterr().out)
    assert (row["major"], row["items"][0]["code"]) == (1, "DAEMON_MISSING")


def test_format_report_lists_findings(home, settings):
    report = run_checks(home, settings=settings, runner=FakeRunner())

    text = health_run.format_report(report)

    assert "MAJOR:DAEMON_MISSING" in text
    assert text.splitlines()[0].startswith("[")
