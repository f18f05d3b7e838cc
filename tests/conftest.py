from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from backup.logs import BackupLogger
from backup.types import Project
from core.paths import ensure_home_structure
from core.process import ToolResult, ToolRunner
from core.settings import merge_defaults

Handler = Callable[[List[str]], ToolResult]


class FakeRunner(ToolRunner):
    """Tool runner that records invocations instead of spawning processes."""

    def __init__(self, tools=(), handlers: Optional[Dict[str, Handler]] = None) -> None:
        super().__init__()
        self.tools = set(tools)
        self.handlers: Dict[str, Handler] = dict(handlers or {})
        self.calls: List[List[str]] = []

    def which(self, name: str) -> Optional[str]:
        return f"/usr/bin/{name}" if name in self.tools else None

    def run(self, args, *, env=None, timeout=None, cwd=None) -> ToolResult:
        argv = [str(part) for part in args]
        self.calls.append(argv)
        handler = self.handlers.get(argv[0])
        if handler is not None:
            return handler(argv)
        return ToolResult(args=argv, returncode=0)


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    ensure_home_structure(path)
    return path


@pytest.fixture
def settings() -> dict:
    data = merge_defaults({})
    data["backup"]["use_git"] = False
    data["backup"]["copy_backoff_s"] = 0
    data["backup"]["mtime_skew_s"] = 0
    data["databases"]["enable"] = False
    data["notifications"]["enable"] = False
    return data


@pytest.fixture
def logger(home: Path) -> BackupLogger:
    return BackupLogger(home)


@pytest.fixture
def make_project(tmp_path: Path):
    def _make(name: str = "demo", files: Optional[Dict[str, str]] = None, backup_dir: Optional[Path] = None) -> Project:
        root = tmp_path / "projects" / name
        root.mkdir(parents=True, exist_ok=True)
        for rel, text in (files or {}).items():
            target = root / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding="utf-8")
        return Project(name=name, path=root, backup_dir=backup_dir or tmp_path / "backups" / name)

    return _make
