import os
import time

from backup.changes import ChangeDetector, is_first_backup
from backup.config import build_cycle_config
from core.process import ToolResult

from conftest import FakeRunner


def _age(path, seconds):
    stamp = time.time() - seconds
    os.utime(path, (stamp, stamp))


def test_first_backup_adds_every_file(home, settings, make_project):
    project = make_project(files={"src/app.py": "print()", "README.md": "hi", "node_modules/x.js": "x"})
    config = build_cycle_config(project, settings, home=home)

    changes = ChangeDetector(config).detect()

    assert changes.first_backup is True
    assert changes.mode == "scan"
    assert changes.added == {"src/app.py", "README.md"}
    assert changes.modified == set()


def test_scan_uses_last_backup_time_and_reports_deletions(home, settings, make_project):
    project = make_project(files={"old.txt": "old", "new.txt": "new"})
    config = build_cycle_config(project, settings, home=home)
    for rel in ("old.txt", "new.txt", "gone.txt"):
        copy = config.files_dir / rel
        copy.parent.mkdir(parents=True, exist_ok=True)
        copy.write_text("previous", encoding="utf-8")
    _age(project.path / "old.txt", 3600)

    changes = ChangeDetector(config).detect(last_backup=time.time() - 60)

    assert changes.first_backup is False
    assert changes.modified == {"new.txt"}
    assert changes.added == set()
    assert changes.deleted == {"gone.txt"}


def test_full_scan_ignores_timestamps(home, settings, make_project):
    project = make_project(files={"old.txt": "old"})
    config = build_cycle_config(project, settings, home=home)
    (config.files_dir).mkdir(parents=True)
    (config.files_dir / "old.txt").write_text("old", encoding="utf-8")
    _age(project.path / "old.txt", 3600)

    changes = ChangeDetector(config).detect(last_backup=time.time(), full=True)

    assert changes.mode == "full"
    assert changes.modified == {"old.txt"}


def test_critical_files_are_always_candidates(home, settings, make_project):
    project = make_project(files={".env": "SECRET=1", "notes.txt": "n", "config/server.pem": "pem"})
    config = build_cycle_config(project, settings, home=home)
    config.files_dir.mkdir(parents=True)
    (config.files_dir / "notes.txt").write_text("n", encoding="utf-8")
    for rel in (".env", "notes.txt", "config/server.pem"):
        _age(project.path / rel, 3600)

    changes = ChangeDetector(config).detect(last_backup=time.time())

    assert changes.modified == set()
    assert changes.critical == {".env", "config/server.pem"}
    assert changes.candidates() == [".env", "config/server.pem"]


def test_housekeeping_files_do_not_count_as_previous_backup(tmp_path):
    files_dir = tmp_path / "files"
    files_dir.mkdir()
    (files_dir / ".DS_Store").write_bytes(b"")
    assert is_first_backup(files_dir)
    (files_dir / "a.txt").write_text("a", encoding="utf-8")
    assert not is_first_backup(files_dir)


def _git_handler(responses):
    def handle(argv):
        for key, (code, stdout) in responses.items():
            if key in " ".join(argv):
                return ToolResult(args=argv, returncode=code, stdout=stdout)
        return ToolResult(args=argv, returncode=0, stdout="")

    return handle


def test_git_mode_collects_diff_untracked_and_deleted(home, settings, make_project):
    settings["backup"]["use_git"] = True
    project = make_project(files={"a.py": "a", "b.py": "b", "new.py": "n"})
    config = build_cycle_config(project, settings, home=home)
    config.files_dir.mkdir(parents=True)
    (config.files_dir / "a.py").write_text("old", encoding="utf-8")
    runner = FakeRunner(
        tools={"git"},
        handlers={
            "git": _git_handler(
                {
                    "--is-inside-work-tree": (0, "true\n"),
                    "--others": (0, "new.py\0"),
                    "--deleted": (0, "c.py\0"),
                    "--cached": (0, "b.py\0"),
                    "diff --name-only": (0, "a.py\0c.py\0"),
                    "rev-parse HEAD": (0, "abc123\n"),
                }
            )
        },
    )

    changes = ChangeDetector(config, runner=runner).detect(last_head="abc123")

    assert changes.mode == "git"
    assert changes.added == {"new.py"}
    assert changes.modified == {"a.py", "b.py"}
    assert changes.deleted == {"c.py"}


def test_git_failure_falls_back_to_full_scan(home, settings, make_project, logger):
    settings["backup"]["use_git"] = True
    project = make_project(files={"a.py": "a"})
    config = build_cycle_config(project, settings, home=home)
    config.files_dir.mkdir(parents=True)
    (config.files_dir / "a.py").write_text("a", encoding="utf-8")
    runner = FakeRunner(
        tools={"git"},
        handlers={"git": _git_handler({"--is-inside-work-tree": (0, "true\n"), "ls-files": (128, "")})},
    )

    changes = ChangeDetector(config, runner=runner, logger=logger).detect(last_backup=time.time())

    assert changes.mode == "full"
    assert changes.modified == {"a.py"}


def test_git_disabled_without_binary(home, settings, make_project):
    settings["backup"]["use_git"] = True
    config = build_cycle_config(make_project(files={"a.py": "a"}), settings, home=home)

    assert ChangeDetector(config, runner=FakeRunner()).git_available() is False
