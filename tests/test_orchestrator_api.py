import time

import pytest
from fastapi.testclient import TestClient

from backup.api import BackupService
from backup.history import HistoryStore
from conftest import FakeRunner
from core.atomic import write_json_atomic
from core.paths import get_progress_path
from orchestrator.api import APIConfig, _is_loopback_client, create_app, resolve_bind_host
from orchestrator.daemon import consume_trigger, is_paused
from orchestrator.heartbeat import HeartbeatPublisher
from orchestrator.registry import ProjectRegistry


@pytest.fixture
def client(home, settings):
    return TestClient(create_app(APIConfig(home=home, settings=settings, app_version="test")))


@pytest.fixture
def registered(home, make_project):
    project = make_project(files={"app.py": "x = 1"})
    return ProjectRegistry(home).register(project.path, backup_dir=project.backup_dir)


@pytest.mark.parametrize(
    "candidate, expected",
    [(None, "127.0.0.1"), ("localhost", "127.0.0.1"), ("::1", "127.0.0.1"), ("127.0.0.2", "127.0.0.2")],
)
def test_resolve_bind_host_accepts_loopback(candidate, expected):
    assert resolve_bind_host(candidate) == expected


@pytest.mark.parametrize("candidate", ["0.0.0.0", "192.168.1.10", "example.com"])
def test_resolve_bind_host_refuses_other_hosts(candidate):
    with pytest.raises(ValueError):
        resolve_bind_host(candidate)


def test_loopback_client_check():
    assert _is_loopback_client("127.0.0.1")
    assert _is_loopback_client("::ffff:127.0.0.1")
    assert not _is_loopback_client("10.1.2.3")


def test_status_without_daemon_is_missing(client):
    response = client.get("/v1/checkpoint/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "missing"
    assert body["severity"] == "critical"
    assert body["paused"] is False
    assert body["projects"] == 0


def test_status_reports_healthy_heartbeat(client, home, registered):
    HeartbeatPublisher(home).publish("healthy", last_backup=int(time.time()) - 60)

    body = client.get("/v1/checkpoint/status").json()

    assert body["status"] == "healthy"
    assert body["projects"] == 1
    assert body["progress"] is None
    assert body["heartbeat"]["last_backup"] is not None


def test_projects_listing_includes_failures(client, home, registered):
    response = client.get("/v1/checkpoint/projects")

    assert response.status_code == 200
    [item] = response.json()
    assert item["name"] == registered.name
    assert item["enabled"] is True
    assert item["consecutive_failures"] == 0


def test_manifest_and_history_endpoints(client, home, settings, registered):
    service = BackupService(home, settings, runner=FakeRunner())
    cycle = service.run_cycle(registered)
    HistoryStore(home).record(cycle)

    manifest = client.get(f"/v1/checkpoint/projects/{registered.name}/manifest")
    history = client.get(f"/v1/checkpoint/projects/{registered.name}/history", params={"limit": 5})

    assert manifest.status_code == 200
    assert manifest.json()["backup_id"] == cycle.cycle_id
    assert [row["cycle_id"] for row in history.json()] == [cycle.cycle_id]


def test_manifest_missing_or_unknown_project_is_404(client, registered):
    assert client.get(f"/v1/checkpoint/projects/{registered.name}/manifest").status_code == 404
    assert client.get("/v1/checkpoint/projects/nope/manifest").status_code == 404
    assert client.get("/v1/checkpoint/projects/nope/history").status_code == 404


def test_trigger_writes_request(client, home, registered):
    response = client.post("/v1/checkpoint/trigger", json={"project": registered.name})

    assert response.status_code == 202
    assert response.json() == {"queued": True, "project": registered.name}
    assert consume_trigger(home)["project"] == registered.name


def test_trigger_unknown_project_is_rejected(client, home):
    response = client.post("/v1/checkpoint/trigger", json={"project": "ghost"})

    assert response.status_code == 404
    assert consume_trigger(home) is None


def test_pause_and_resume(client, home):
    paused = client.post("/v1/checkpoint/pause", json={"minutes": 30})
    assert paused.status_code == 200
    assert paused.json()["until"] > time.time()
    assert is_paused(home)

    assert client.post("/v1/checkpoint/resume").json() == {"paused": False, "was_paused": True}
    assert not is_paused(home)


def test_pause_rejects_non_positive_minutes(client):
    assert client.post("/v1/checkpoint/pause", json={"minutes": 0}).status_code == 422


def test_status_shows_fresh_progress_only(client, home):
    HeartbeatPublisher(home).publish("syncing", project="demo")
    write_json_atomic(get_progress_path(home), {"project": "demo", "phase": "copying", "percent": 40, "timestamp": int(time.time())})

    assert client.get("/v1/checkpoint/status").json()["progress"]["percent"] == 40

    write_json_atomic(get_progress_path(home), {"project": "demo", "phase": "copying", "percent": 40, "timestamp": int(time.time()) - 3600})

    assert client.get("/v1/checkpoint/status").json()["progress"] is None
