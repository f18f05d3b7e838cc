import json

import pytest

from backup.config import build_cycle_config
from backup.errors import ConfigInvalid, DriveMissing
from backup.types import Project


def test_defaults_place_backups_inside_project(home, settings, tmp_path):
    root = tmp_path / "proj"
    root.mkdir()
    config = build_cycle_config(Project(name="proj", path=root), settings, home=home)

    assert config.backup_dir == root / "backups"
    assert config.files_dir == root / "backups" / "files"
    assert config.is_excluded_dir(root / "node_modules")
    assert config.is_excluded_dir(root / "backups")
    assert config.state_dir == home / "state" / "proj"


def test_project_overrides_are_merged(home, settings, make_project):
    project = make_project(files={".checkpoint.json": json.dumps({"exclude": ["tmp"], "retention": {"db_days": 7}})})

    config = build_cycle_config(project, settings, home=home)

    assert "tmp" in config.excluded_dirs
    assert config.retention.db_days == 7
    assert config.retention.file_days == settings["retention"]["file_days"]


def test_invalid_override_json_is_a_config_error(home, settings, make_project):
    project = make_project(files={".checkpoint.json": "{not json"})

    with pytest.raises(ConfigInvalid) as excinfo:
        build_cycle_config(project, settings, home=home)
    assert excinfo.value.code == "ECONF001"


def test_missing_project_directory(home, settings, tmp_path):
    with pytest.raises(ConfigInvalid) as excinfo:
        build_cycle_config(Project(name="gone", path=tmp_path / "gone"), settings, home=home)
    assert excinfo.value.code == "ECONF002"


def test_backup_dir_equal_to_root_is_rejected(home, settings, make_project):
    project = make_project()
    project.backup_dir = project.path

    with pytest.raises(ConfigInvalid):
        build_cycle_config(project, settings, home=home)


def test_missing_drive_marker(home, settings, make_project, tmp_path):
    settings["backup"]["drive_marker"] = str(tmp_path / "volume" / ".marker")

    with pytest.raises(DriveMissing) as excinfo:
        build_cycle_config(make_project(), settings, home=home)
    assert excinfo.value.code == "EDISK002"
