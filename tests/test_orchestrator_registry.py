import json

import pytest

from backup.locks import LockManager
from orchestrator.registry import ProjectRegistry, RegistryError


def test_register_is_idempotent_by_path(home, tmp_path):
    root = tmp_path / "work" / "shop"
    root.mkdir(parents=True)
    registry = ProjectRegistry(home)

    first = registry.register(root)
    again = registry.register(root / ".." / "shop")

    assert first.name == "shop"
    assert again.name == "shop"
    assert len(registry.list()) == 1


def test_register_disambiguates_names(home, tmp_path):
    (tmp_path / "a" / "app").mkdir(parents=True)
    (tmp_path / "b" / "app").mkdir(parents=True)
    registry = ProjectRegistry(home)

    registry.register(tmp_path / "a" / "app")
    second = registry.register(tmp_path / "b" / "app")

    assert second.name == "app-2"


def test_register_disambiguates_case_only_differences(home, tmp_path):
    (tmp_path / "a" / "Demo").mkdir(parents=True)
    (tmp_path / "b" / "demo").mkdir(parents=True)
    registry = ProjectRegistry(home)

    registry.register(tmp_path / "a" / "Demo")
    second = registry.register(tmp_path / "b" / "demo")

    assert second.name == "demo-2"


def test_register_keeps_names_that_only_share_a_label(home, tmp_path):
    (tmp_path / "my app").mkdir()
    (tmp_path / "my_app").mkdir()
    registry = ProjectRegistry(home)

    first = registry.register(tmp_path / "my app")
    second = registry.register(tmp_path / "my_app")

    assert (first.name, second.name) == ("my app", "my_app")
    assert LockManager(home).path_for(first.name) != LockManager(home).path_for(second.name)


def test_register_rejects_missing_directory(home, tmp_path):
    with pytest.raises(RegistryError) as excinfo:
        ProjectRegistry(home).register(tmp_path / "nope")

    assert excinfo.value.code == "ECONF002"


def test_lookup_update_and_persisted_format(home, tmp_path):
    root = tmp_path / "proj"
    root.mkdir()
    registry = ProjectRegistry(home)
    registry.register(root, interval_s=600, cron=None)

    registry.set_enabled("proj", False)
    registry.update_last_backup(str(root), 1700000000.7)

    project = registry.get("proj")
    assert project.enabled is False
    assert project.last_backup == 1700000000
    assert registry.list(enabled_only=True) == []
    data = json.loads(registry.path.read_text(encoding="utf-8"))
    assert data["version"] == 1
    assert data["projects"][0]["interval_s"] == 600


def test_unregister_and_cleanup_orphaned(home, tmp_path):
    keep = tmp_path / "keep"
    gone = tmp_path / "gone"
    other = tmp_path / "other"
    for path in (keep, gone, other):
        path.mkdir()
    registry = ProjectRegistry(home)
    for path in (keep, gone, other):
        registry.register(path)

    assert registry.unregister("other") is True
    assert registry.unregister("other") is False
    gone.rmdir()
    assert registry.cleanup_orphaned() == ["gone"]
    assert [project.name for project in registry.list()] == ["keep"]


def test_registry_lock_timeout(home, tmp_path):
    (tmp_path / "p").mkdir()
    locks = LockManager(home)
    holder = locks.acquire("_registry", internal=True)
    try:
        with pytest.raises(RegistryError):
            ProjectRegistry(home, lock_timeout=0.1).register(tmp_path / "p")
    finally:
        locks.release(holder)
