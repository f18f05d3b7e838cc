"""Backup cycle engine for Checkpoint."""
from __future__ import annotations

from .api import BackupService, CycleReporter
from .errors import BackupError
from .retention import RetentionPolicy
from .types import CycleOptions, CycleResult, Outcome, Phase, Project, RetentionSummary

__all__ = [
    "BackupError",
    "BackupService",
    "CycleOptions",
    "CycleReporter",
    "CycleResult",
    "Outcome",
    "Phase",
    "Project",
    "RetentionPolicy",
    "RetentionSummary",
]
