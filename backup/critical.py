"""Critical-file inclusion policy.

Sensitive local files (env files, credentials, IDE settings, private notes,
local databases) are usually ignored by version control, so they are added
to every cycle's candidate set regardless of the change-detection strategy.
"""
from __future__ import annotations

import os
from fnmatch import fnmatch
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, List, Set, Tuple

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from .config import CriticalPolicy, CycleConfig

# (basename patterns, relative path patterns, max depth or 0 for unlimited)
CATEGORY_PATTERNS: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...], int]] = {
    "env_files": ((".env", ".env.*"), (), 3),
    "credentials": (
        (
            "*.pem",
            "*.key",
            "credentials.json",
            "secrets.*",
            "*.p12",
            "*.pfx",
            "*.tfvars",
            "*.local.*",
            "local.settings.json",
            "appsettings.*.json",
            "docker-compose.override.yml",
        ),
        (".aws/credentials", ".aws/config", ".gcp/*.json", ".firebase/*.json"),
        0,
    ),
    "ide_settings": (
        (),
        (
            ".vscode/settings.json",
            ".vscode/launch.json",
            ".vscode/extensions.json",
            ".idea/workspace.xml",
            ".idea/codeStyles/*",
        ),
        0,
    ),
    "local_notes": (("NOTES.md", "NOTES.txt", "TODO.local.md", "*.private.md"), (), 0),
    "local_databases": (("*.db", "*.sqlite", "*.sqlite3", "*.sql"), (), 0),
}


def enabled_categories(policy: "CriticalPolicy") -> List[str]:
    return [name for name in CATEGORY_PATTERNS if getattr(policy, name, False)]


def _path_matches(rel: str, pattern: str) -> bool:
    return fnmatch(rel, pattern) or fnmatch(rel, f"*/{pattern}")


def classify(rel: str, categories: Iterable[str]) -> str | None:
    """Return the first critical category *rel* belongs to, if any."""

    name = rel.rsplit("/", 1)[-1]
    depth = rel.count("/") + 1
    for category in categories:
        names, paths, max_depth = CATEGORY_PATTERNS[category]
        if max_depth and depth > max_depth:
            continue
        if any(fnmatch(name, pattern) for pattern in names):
            return category
        if any(_path_matches(rel, pattern) for pattern in paths):
            return category
    return None


def collect_critical_files(config: "CycleConfig") -> Set[str]:
    """Walk the project and return relative paths of critical files."""

    categories = enabled_categories(config.critical)
    found: Set[str] = set()
    if config.config_file.is_file():
        found.add(config.config_file.name)
    if not categories:
        return found
    root = config.project_root
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        dirnames[:] = [name for name in dirnames if not config.is_excluded_dir(current / name)]
        for filename in filenames:
            path = current / filename
            if path.is_symlink():
                continue
            rel = path.relative_to(root).as_posix()
            if classify(rel, categories):
                found.add(rel)
    return found


__all__ = ["CATEGORY_PATTERNS", "classify", "collect_critical_files", "enabled_categories"]
