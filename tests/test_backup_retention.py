from datetime import datetime, timedelta

from backup.config import build_cycle_config
from backup.retention import RetentionPolicy, apply_retention, parse_stamp

NOW = datetime(2024, 6, 1, 12, 0, 0)


def _stamp(days_ago: int) -> str:
    return (NOW - timedelta(days=days_ago)).strftime("%Y%m%d_%H%M%S")


def _touch(path, size=10):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return path


def test_parse_stamp_uses_last_stamp_in_name():
    assert parse_stamp("notes.md.20240101_101010_42") == datetime(2024, 1, 1, 10, 10, 10)
    assert parse_stamp("postgres_main_20240102_000000_1.sql.gz") == datetime(2024, 1, 2)
    assert parse_stamp("README") is None


def test_policy_from_settings_clamps_keep_latest():
    policy = RetentionPolicy.from_settings({"db_days": 7, "file_days": 0, "keep_latest_db": -3})

    assert policy == RetentionPolicy(db_days=7, file_days=0, keep_latest_db=0)


def test_apply_retention_keeps_latest_snapshot_per_database(home, settings, make_project, logger):
    config = build_cycle_config(make_project(), settings, home=home)
    db_dir = config.databases_dir
    old_app = _touch(db_dir / f"app_{_stamp(90)}.db.gz", 100)
    older_app = _touch(db_dir / f"app_{_stamp(120)}.db.gz", 50)
    only_pg = _touch(db_dir / f"postgres_main_{_stamp(200)}.sql.gz", 70)
    fresh = _touch(db_dir / f"app_{_stamp(1)}.db.gz", 10)

    summary = apply_retention(config, logger=logger, now=NOW)

    assert sorted(summary.removed) == sorted([str(old_app), str(older_app)])
    assert summary.freed_bytes == 150
    assert fresh.exists()
    assert only_pg.exists()
    assert summary.kept == 2


def test_apply_retention_expires_archived_versions_and_prunes_dirs(home, settings, make_project, logger):
    config = build_cycle_config(make_project(), settings, home=home)
    stale = _touch(config.archived_dir / "src" / "deep" / f"app.py.{_stamp(61)}_99")
    recent = _touch(config.archived_dir / "src" / f"main.py.{_stamp(5)}_99")

    summary = apply_retention(config, logger=logger, now=NOW)

    assert summary.removed == [str(stale)]
    assert not (config.archived_dir / "src" / "deep").exists()
    assert recent.exists()


def test_apply_retention_dry_run_reports_without_deleting(home, settings, make_project, logger):
    config = build_cycle_config(make_project(), settings, home=home)
    stale = _touch(config.archived_dir / f"notes.md.{_stamp(400)}_1", 25)

    summary = apply_retention(config, logger=logger, dry_run=True, now=NOW)

    assert summary.dry_run
    assert summary.removed == [str(stale)]
    assert summary.freed_bytes == 25
    assert stale.exists()


def test_zero_days_disables_expiry(home, settings, make_project, logger):
    settings["retention"]["file_days"] = 0
    config = build_cycle_config(make_project(), settings, home=home)
    ancient = _touch(config.archived_dir / f"a.txt.{_stamp(3000)}_1")

    summary = apply_retention(config, logger=logger, now=NOW)

    assert summary.removed == []
    assert ancient.exists()
