"""Compression, encryption and upload of manifest entries to a remote."""
from __future__ import annotations

from .policy import CloudPolicy
from .sync import CloudSyncOrchestrator

__all__ = ["CloudPolicy", "CloudSyncOrchestrator"]
