"""Command line entry point for Checkpoint."""
from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
import time
from pathlib import Path
from typing import Any, List, Optional, Sequence

from backup.api import BackupService
from backup.errors import BackupError, BackupRestoreError, BackupVerificationError, LockHeld, describe_error
from backup.manifest import load_manifest
from backup.types import CycleOptions, CycleResult, Manifest, Outcome, Project
from cloud.policy import CloudPolicy
from cloud.sync import CloudSyncOrchestrator
from core.logging_utils import configure_json_logging
from core.paths import ensure_home_structure, resolve_home
from core.settings import load_settings, update_settings
from health.run import cli as health_cli
from health.watchdog import Watchdog
from orchestrator.api import APIConfig, CheckpointAPI, serve
from orchestrator.daemon import Daemon, pause, resume
from orchestrator.registry import ProjectRegistry, RegistryError

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_BACKUP_FAILED = 2
EXIT_LOCK_HELD = 3

LOGGER = logging.getLogger("checkpoint.cli")


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _confirm(prompt: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    if not sys.stdin.isatty():
        print(f"{prompt} Refusing without --yes on a non-interactive terminal.", file=sys.stderr)
        return False
    return input(f"{prompt} [y/N] ").strip().lower() in ("y", "yes")


def _approve_install(commands: List[str]) -> bool:
    if not sys.stdin.isatty():
        return False
    print("Checkpoint needs to install database tools:")
    for command in commands:
        print(f"  {command}")
    return input("Install now? [y/N] ").strip().lower() in ("y", "yes")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _resolve_project(registry: ProjectRegistry, key: Optional[str]) -> Project:
    lookup = key or str(Path.cwd())
    project = registry.get(lookup)
    if project is None:
        hint = "" if key else " (run `checkpoint projects add .` or pass --project)"
        raise RegistryError(f"No registered project for {lookup}{hint}", code="ECONF002")
    return project


def _exit_code_for(results: Sequence[CycleResult]) -> int:
    if any(result.outcome in (Outcome.FAILED, Outcome.PARTIAL) for result in results):
        return EXIT_BACKUP_FAILED
    if any(result.outcome is Outcome.SKIPPED for result in results):
        return EXIT_LOCK_HELD
    return EXIT_OK


def _print_cycle(result: CycleResult) -> None:
    summary = result.summary()
    label = "dry run" if result.dry_run else summary["outcome"]
    print(
        f"{result.project}: {label} - {summary['files_backed_up']} files, "
        f"{summary['archived']} archived, {summary['databases_ok']} databases"
    )
    if result.snapshot is not None and result.dry_run:
        for rel in result.snapshot.planned:
            print(f"  would copy {rel}")
    for error in result.errors:
        print(f"  [{error.code}] {error.message}" + (f" ({error.path})" if error.path else ""))


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

def cmd_backup_now(args: argparse.Namespace, home: Path, settings: dict) -> int:
    if args.files_only and args.databases_only:
        print("--files-only and --databases-only are mutually exclusive", file=sys.stderr)
        return EXIT_FATAL
    daemon = Daemon(home, settings, foreground_cloud=True, approve=_approve_install)
    project_name: Optional[str] = None
    if not args.all:
        project_name = _resolve_project(ProjectRegistry(home), args.project).name
    options = CycleOptions(
        force=args.full,
        dry_run=args.dry_run,
        files_only=args.files_only,
        databases_only=args.databases_only,
    )
    results = daemon.tick(force=args.force, project=project_name, options=options, manual=True)
    if not results:
        print("Nothing due; pass --force to back up anyway.")
        return EXIT_OK
    if args.json:
        _print_json([result.summary() for result in results])
    else:
        for result in results:
            _print_cycle(result)
    return _exit_code_for(results)


def cmd_status(args: argparse.Namespace, home: Path, settings: dict) -> int:
    api = CheckpointAPI(APIConfig(home=home, settings=settings))
    status = api.status()
    projects = api.projects()
    if args.json:
        payload = status.model_dump()
        payload["projects"] = [project.model_dump() for project in projects]
        _print_json(payload)
        return EXIT_OK
    line = f"daemon: {status.status}"
    if status.detail:
        line += f" ({status.detail})"
    if status.paused:
        line += " [paused]"
    print(line)
    if status.progress:
        progress = status.progress
        print(f"  {progress.get('project')}: {progress.get('phase')} {progress.get('percent')}%")
    for project in projects:
        state = "enabled" if project.enabled else "disabled"
        failures = f", {project.consecutive_failures} failures" if project.consecutive_failures else ""
        print(f"  {project.name} [{state}] last backup: {project.last_backup or 'never'}{failures}")
    return EXIT_OK


def cmd_pause(args: argparse.Namespace, home: Path, settings: dict) -> int:
    until = None
    if args.minutes:
        until = time.time() + args.minutes * 60
    pause(home, until=until)
    print("Scheduled backups paused" + (f" for {args.minutes:g} minutes" if args.minutes else ""))
    return EXIT_OK


def cmd_resume(args: argparse.Namespace, home: Path, settings: dict) -> int:
    print("Scheduled backups resumed" if resume(home) else "Backups were not paused")
    return EXIT_OK


def cmd_cloud(args: argparse.Namespace, home: Path, settings: dict) -> int:
    orchestrator = CloudSyncOrchestrator(home)
    if args.cloud_command == "configure":
        values = {}
        for key in ("remote", "remote_path", "key_path"):
            value = getattr(args, key)
            if value is not None:
                values[key] = value
        for key in ("enable", "encrypt", "sync_files"):
            value = getattr(args, key)
            if value is not None:
                values[key] = value
        settings = update_settings(home, "cloud", **values)
        _print_json(settings["cloud"])
        return EXIT_OK
    if args.cloud_command == "test":
        ok, message = orchestrator.test_connection(CloudPolicy.from_settings(settings.get("cloud") or {}))
        print(message)
        return EXIT_OK if ok else EXIT_FATAL

    service = BackupService(home, settings)
    project = _resolve_project(ProjectRegistry(home), args.project)
    config = service.config_for(project)
    if not config.cloud.configured:
        print("Cloud sync is not configured; run `checkpoint cloud configure --remote NAME --enable`", file=sys.stderr)
        return EXIT_FATAL
    data = load_manifest(config.backup_dir)
    if data is None:
        print(f"No manifest in {config.backup_dir}; run a backup first", file=sys.stderr)
        return EXIT_FATAL
    with service.locks.hold(project.name):
        record = orchestrator.sync(config, Manifest.from_dict(data, path=config.manifest_path))
    _print_json(record.to_dict())
    return EXIT_OK if record.ok else EXIT_BACKUP_FAILED


def cmd_restore(args: argparse.Namespace, home: Path, settings: dict) -> int:
    service = BackupService(home, settings)
    project = _resolve_project(ProjectRegistry(home), args.project)
    if args.restore_command == "file":
        if args.list:
            versions = service.list_versions(project, args.path)
            for version in versions:
                print(f"{version.timestamp}  {version.size:>10}  {version.archived_path.name}")
            if not versions:
                print("No archived versions")
            return EXIT_OK
        if not args.dry_run and not _confirm(f"Overwrite {args.path} in {project.path}?", args.yes):
            return EXIT_FATAL
        outcome = service.restore_file(project, args.path, version=args.version, dry_run=args.dry_run)
    else:
        target = Path(args.target).expanduser() if args.target else None
        if not args.dry_run and not _confirm(f"Restore database snapshot {args.artifact}?", args.yes):
            return EXIT_FATAL
        outcome = service.restore_database(project, args.artifact, target=target, dry_run=args.dry_run)
    _print_json(outcome)
    return EXIT_OK


def cmd_cleanup(args: argparse.Namespace, home: Path, settings: dict) -> int:
    service = BackupService(home, settings)
    registry = ProjectRegistry(home)
    projects = registry.list(enabled_only=True) if args.all else [_resolve_project(registry, args.project)]
    dry_run = args.dry_run
    if not dry_run and not _confirm("Delete expired snapshots and archived versions?", args.yes):
        return EXIT_FATAL
    for project in projects:
        summary = service.cleanup(project, dry_run=dry_run)
        verb = "would remove" if summary.dry_run else "removed"
        print(f"{project.name}: {verb} {len(summary.removed)} items, freed {summary.freed_bytes} bytes, kept {summary.kept}")
        for path in summary.removed:
            print(f"  {path}")
    return EXIT_OK


def cmd_projects(args: argparse.Namespace, home: Path, settings: dict) -> int:
    registry = ProjectRegistry(home)
    command = args.projects_command
    if command == "add":
        project = registry.register(
            Path(args.path),
            name=args.name,
            backup_dir=Path(args.backup_dir) if args.backup_dir else None,
            interval_s=args.interval,
            cron=args.cron,
        )
        print(f"Registered {project.name} -> {project.path}")
        return EXIT_OK
    if command == "remove":
        if not registry.unregister(args.key):
            print(f"Unknown project: {args.key}", file=sys.stderr)
            return EXIT_FATAL
        print(f"Removed {args.key}")
        return EXIT_OK
    if command in ("enable", "disable"):
        project = registry.set_enabled(args.key, command == "enable")
        if project is None:
            print(f"Unknown project: {args.key}", file=sys.stderr)
            return EXIT_FATAL
        print(f"{project.name} {command}d")
        return EXIT_OK
    if command == "prune":
        removed = registry.cleanup_orphaned()
        print(f"Removed {len(removed)} orphaned projects" + (f": {', '.join(removed)}" if removed else ""))
        return EXIT_OK
    projects = registry.list()
    if args.json:
        _print_json([project.to_record() for project in projects])
        return EXIT_OK
    for project in projects:
        state = "enabled" if project.enabled else "disabled"
        if project.cron:
            schedule = project.cron
        elif project.interval_s:
            schedule = f"every {project.interval_s}s"
        else:
            schedule = "default"
        print(f"{project.name:<24} {state:<9} {schedule:<16} {project.path}")
    return EXIT_OK


def cmd_verify(args: argparse.Namespace, home: Path, settings: dict) -> int:
    service = BackupService(home, settings)
    project = _resolve_project(ProjectRegistry(home), args.project)
    report = service.verify(project, check_databases=not args.no_databases)
    _print_json(report)
    return EXIT_OK


def cmd_daemon(args: argparse.Namespace, home: Path, settings: dict) -> int:
    configure_json_logging("checkpoint", home)
    daemon = Daemon(home, settings)
    try:
        daemon.run_forever()
    except KeyboardInterrupt:
        daemon.stop()
    return EXIT_OK


def cmd_watchdog(args: argparse.Namespace, home: Path, settings: dict) -> int:
    watchdog = Watchdog(home, settings)
    if args.once:
        report = watchdog.step()
        _print_json(report.to_dict())
        return EXIT_OK if report.ok else EXIT_BACKUP_FAILED
    configure_json_logging("checkpoint", home)
    stop_event = threading.Event()
    try:
        watchdog.run(stop_event)
    except KeyboardInterrupt:
        stop_event.set()
    return EXIT_OK


def cmd_serve(args: argparse.Namespace, home: Path, settings: dict) -> int:
    try:
        return serve(home, settings, host=args.host, port=args.port)
    except ValueError as exc:
        logging.error("%s", exc)
        return EXIT_FATAL


def cmd_health(args: argparse.Namespace, home: Path, settings: dict) -> int:
    argv = ["--home", str(home)]
    if args.json:
        argv.append("--json")
    if args.history:
        argv += ["--history", str(args.history)]
    return health_cli(argv)


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="checkpoint", description="Automatic project backups")
    parser.add_argument("--home", type=Path, default=None, help="State directory (default: $CHECKPOINT_HOME or ~/.checkpoint)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    backup = sub.add_parser("backup-now", help="Run a backup cycle now")
    backup.add_argument("--project", default=None, help="Project name or path (default: current directory)")
    backup.add_argument("--all", action="store_true", help="All enabled projects")
    backup.add_argument("--force", action="store_true", help="Back up even if the interval has not elapsed")
    backup.add_argument("--full", action="store_true", help="Compare every file instead of only changed ones")
    backup.add_argument("--dry-run", action="store_true", help="Show what would be backed up")
    backup.add_argument("--files-only", action="store_true", help="Skip database snapshots")
    backup.add_argument("--databases-only", action="store_true", help="Skip the file snapshot")
    backup.add_argument("--json", action="store_true", help="Print cycle summaries as JSON")
    backup.set_defaults(handler=cmd_backup_now)

    status = sub.add_parser("status", help="Show daemon and project status")
    status.add_argument("--json", action="store_true")
    status.set_defaults(handler=cmd_status)

    pause_cmd = sub.add_parser("pause", help="Pause scheduled backups")
    pause_cmd.add_argument("--minutes", type=float, default=None, help="Resume automatically after N minutes")
    pause_cmd.set_defaults(handler=cmd_pause)
    sub.add_parser("resume", help="Resume scheduled backups").set_defaults(handler=cmd_resume)

    cloud = sub.add_parser("cloud", help="Cloud upload settings and actions")
    cloud_sub = cloud.add_subparsers(dest="cloud_command", required=True)
    configure = cloud_sub.add_parser("configure", help="Update cloud settings")
    configure.add_argument("--remote", default=None, help="rclone remote name")
    configure.add_argument("--remote-path", dest="remote_path", default=None)
    configure.add_argument("--key-path", dest="key_path", default=None, help="age identity file")
    configure.add_argument("--enable", dest="enable", action="store_true", default=None)
    configure.add_argument("--disable", dest="enable", action="store_false")
    configure.add_argument("--encrypt", dest="encrypt", action="store_true", default=None)
    configure.add_argument("--no-encrypt", dest="encrypt", action="store_false")
    configure.add_argument("--sync-files", dest="sync_files", action="store_true", default=None)
    configure.add_argument("--no-sync-files", dest="sync_files", action="store_false")
    cloud_sub.add_parser("test", help="Check the configured remote")
    upload = cloud_sub.add_parser("upload", help="Upload the latest backup now")
    upload.add_argument("--project", default=None)
    cloud.set_defaults(handler=cmd_cloud)

    restore = sub.add_parser("restore", help="Restore a file or database snapshot")
    restore_sub = restore.add_subparsers(dest="restore_command", required=True)
    restore_file = restore_sub.add_parser("file", help="Restore a file")
    restore_file.add_argument("path", help="Path relative to the project root")
    restore_file.add_argument("--version", default=None, help="Archived version stamp or file name")
    restore_file.add_argument("--list", action="store_true", help="List archived versions")
    restore_db = restore_sub.add_parser("database", help="Restore a database snapshot")
    restore_db.add_argument("artifact", help="Snapshot file name under backups/databases")
    restore_db.add_argument("--target", default=None, help="SQLite file to restore into")
    for child in (restore_file, restore_db):
        child.add_argument("--project", default=None)
        child.add_argument("--dry-run", action="store_true")
        child.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    restore.set_defaults(handler=cmd_restore)

    cleanup = sub.add_parser("cleanup", help="Apply retention")
    cleanup.add_argument("--project", default=None)
    cleanup.add_argument("--all", action="store_true")
    cleanup.add_argument("--dry-run", action="store_true")
    cleanup.add_argument("--yes", action="store_true")
    cleanup.set_defaults(handler=cmd_cleanup)

    projects = sub.add_parser("projects", help="Manage registered projects")
    projects_sub = projects.add_subparsers(dest="projects_command", required=True)
    add = projects_sub.add_parser("add")
    add.add_argument("path")
    add.add_argument("--name", default=None)
    add.add_argument("--backup-dir", dest="backup_dir", default=None)
    add.add_argument("--interval", type=int, default=None, help="Seconds between backups")
    add.add_argument("--cron", default=None, help="5-field cron expression")
    for name in ("remove", "enable", "disable"):
        projects_sub.add_parser(name).add_argument("key", help="Project name or path")
    projects_sub.add_parser("prune", help="Drop projects whose directory is gone")
    listing = projects_sub.add_parser("list")
    listing.add_argument("--json", action="store_true")
    projects.set_defaults(handler=cmd_projects)

    verify = sub.add_parser("verify", help="Check the backup against its manifest")
    verify.add_argument("--project", default=None)
    verify.add_argument("--no-databases", action="store_true")
    verify.set_defaults(handler=cmd_verify)

    sub.add_parser("daemon", help="Run the backup daemon").set_defaults(handler=cmd_daemon)

    watchdog = sub.add_parser("watchdog", help="Supervise the daemon")
    watchdog.add_argument("--once", action="store_true", help="Run a single check and print it")
    watchdog.set_defaults(handler=cmd_watchdog)

    serve_cmd = sub.add_parser("serve", help="Serve the loopback status API")
    serve_cmd.add_argument("--host", default=None)
    serve_cmd.add_argument("--port", type=int, default=None)
    serve_cmd.set_defaults(handler=cmd_serve)

    health = sub.add_parser("health", help="Run health checks")
    health.add_argument("--json", action="store_true")
    health.add_argument("--history", type=int, default=0, metavar="N", help="Show the last N stored reports")
    health.set_defaults(handler=cmd_health)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[%(levelname)s] %(name)s: %(message)s",
    )
    try:
        home = Path(args.home).expanduser() if args.home else resolve_home()
        ensure_home_structure(home)
        settings = load_settings(home)
        return int(args.handler(args, home, settings))
    except LockHeld as exc:
        print(f"[{exc.code}] {exc}", file=sys.stderr)
        return EXIT_LOCK_HELD
    except (BackupVerificationError, BackupRestoreError) as exc:
        print(f"[{exc.code}] {exc}", file=sys.stderr)
        return EXIT_BACKUP_FAILED
    except BackupError as exc:
        print(f"[{exc.code}] {exc}", file=sys.stderr)
        print(f"  {describe_error(exc.code).suggestion}", file=sys.stderr)
        return EXIT_FATAL
    except OSError as exc:
        LOGGER.debug("fatal", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
