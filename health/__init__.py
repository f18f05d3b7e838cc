"""Health checks and the daemon watchdog for Checkpoint."""

from .run import latest_report, run_health_checks
from .watchdog import Watchdog, WatchdogReport

__all__ = [
    "Watchdog",
    "WatchdogReport",
    "latest_report",
    "run_health_checks",
]
