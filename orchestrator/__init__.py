"""Daemon, heartbeat, registry and status API for Checkpoint."""

from .daemon import Daemon, is_paused, pause, request_trigger, resume
from .heartbeat import HeartbeatPublisher, evaluate_heartbeat, read_heartbeat
from .registry import ProjectRegistry, RegistryError

__all__ = [
    "Daemon",
    "HeartbeatPublisher",
    "ProjectRegistry",
    "RegistryError",
    "evaluate_heartbeat",
    "is_paused",
    "pause",
    "read_heartbeat",
    "request_trigger",
    "resume",
]
