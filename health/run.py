from __future__ import annotations

import argparse
import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from backup.history import HistoryStore
from core.paths import resolve_home

from .checks import HealthItem, HealthReport, HealthSeverity, run_checks


def run_health_checks(home: Optional[Path] = None, persist: bool = True) -> HealthReport:
    base = home or resolve_home()
    report = run_checks(base)
    if persist:
        payload = report_to_dict(report)
        HistoryStore(base).record_health(report.ts, report.summary.major, report.summary.minor, payload["items"])
    return report


def _item_from_dict(payload: Dict[str, Any]) -> HealthItem:
    return HealthItem(
        severity=HealthSeverity(payload.get("severity", "MINOR")),
        code=payload.get("code", "UNKNOWN"),
        where=payload.get("where", ""),
        hint=payload.get("hint", ""),
        details=payload.get("details"),
    )


def latest_report(home: Path) -> Optional[HealthReport]:
    """Return the last persisted report, or ``None`` before the first run."""

    rows = HistoryStore(home).health_reports(limit=1)
    if not rows:
        return None
    return HealthReport(ts=float(rows[0]["ts"]), items=[_item_from_dict(item) for item in rows[0]["items"]])


def report_to_dict(report: HealthReport) -> Dict[str, Any]:
    return {
        "ts": report.ts,
        "summary": {"major": report.summary.major, "minor": report.summary.minor},
        "items": [
            {
                "severity": item.severity.value,
                "code": item.code,
                "where": item.where,
                "hint": item.hint,
                "details": item.details,
            }
            for item in report.items
        ],
    }


def format_report(report: HealthReport, *, include_details: bool = True) -> str:
    timestamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(report.ts))
    lines = [f"[{timestamp}] major={report.summary.major} minor={report.summary.minor}"]
    for item in report.items:
        base = f" - {item.severity.value}:{item.code} @ {item.where} :: {item.hint}"
        if include_details and item.details:
            base += f" ({item.details})"
        lines.append(base)
    if len(report.items) == 0:
        lines.append(" - OK: no findings")
    return "\n".join(lines)


def format_history(rows: List[Dict[str, Any]]) -> str:
    if not rows:
        return "No health reports recorded"
    lines = []
    for row in rows:
        timestamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(row["ts"]))
        codes = sorted({item.get("code", "UNKNOWN") for item in row["items"]})
        lines.append(f"[{timestamp}] major={row['major']} minor={row['minor']} {' '.join(codes)}".rstrip())
    return "\n".join(lines)


def cli(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run Checkpoint health checks")
    parser.add_argument("--json", action="store_true", help="Output report as JSON")
    parser.add_argument("--no-persist", action="store_true", help="Do not persist report")
    parser.add_argument("--history", type=int, default=0, metavar="N", help="Show the last N stored reports instead")
    parser.add_argument("--home", type=Path, default=None, help="Override the Checkpoint home directory")
    args = parser.parse_args(argv)
    if args.history > 0:
        rows = HistoryStore(args.home or resolve_home()).health_reports(limit=args.history)
        print(json.dumps(rows, indent=2) if args.json else format_history(rows))
        return 0
    report = run_health_checks(home=args.home, persist=not args.no_persist)
    if args.json:
        print(json.dumps(report_to_dict(report), indent=2))
    else:
        print(format_report(report))
    return 1 if report.summary.major else 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(cli())
