"""Loopback HTTP surface for daemon status and control."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backup.config import build_cycle_config
from backup.errors import BackupError
from backup.history import HistoryStore
from backup.manifest import load_manifest
from core.settings import load_settings

from .daemon import is_paused, pause, request_trigger, resume
from .heartbeat import evaluate_heartbeat, read_heartbeat, read_progress
from .registry import ProjectRegistry

LOGGER = logging.getLogger("checkpoint.api")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765
_LOCAL_CLIENTS = {"127.0.0.1", "::1", "localhost", "testclient"}


def resolve_bind_host(candidate: Optional[str]) -> str:
    """Map *candidate* to a loopback address or refuse it."""

    host = (candidate or DEFAULT_HOST).strip() or DEFAULT_HOST
    norm = host.lower()
    if norm.startswith("::ffff:"):
        norm = norm.split("::ffff:")[-1]
    if norm in ("localhost", "::1"):
        return DEFAULT_HOST
    if norm.startswith("127."):
        return norm
    raise ValueError(f"Refusing to bind the status API to non-loopback host '{candidate}'")


def _is_loopback_client(host: Optional[str]) -> bool:
    if host is None:
        return True
    value = host.strip().lower()
    if value.startswith("::ffff:"):
        value = value.split("::ffff:")[-1]
    return value in _LOCAL_CLIENTS or value.startswith("127.")


def _progress_age(progress: Dict[str, Any]) -> float:
    stamp = progress.get("timestamp")
    if not isinstance(stamp, (int, float)):
        return float("inf")
    return max(0.0, time.time() - float(stamp))


@dataclass(slots=True)
class APIConfig:
    home: Path
    settings: Dict[str, Any] = field(default_factory=dict)
    app_version: str = "dev"


class TriggerRequest(BaseModel):
    project: Optional[str] = None


class PauseRequest(BaseModel):
    minutes: Optional[float] = Field(default=None, gt=0)


class ProjectResponse(BaseModel):
    name: str
    path: str
    enabled: bool
    backup_dir: Optional[str] = None
    last_backup: Optional[int] = None
    interval_s: Optional[int] = None
    cron: Optional[str] = None
    consecutive_failures: int = 0


class StatusResponse(BaseModel):
    status: str
    severity: str
    detail: str = ""
    heartbeat_age_s: Optional[float] = None
    paused: bool
    heartbeat: Dict[str, Any] = Field(default_factory=dict)
    progress: Optional[Dict[str, Any]] = None
    projects: int


class CheckpointAPI:
    """Read daemon state files and write pause/trigger requests."""

    def __init__(self, config: APIConfig) -> None:
        self._home = Path(config.home)
        self._settings = dict(config.settings) if config.settings else load_settings(self._home)
        self._registry = ProjectRegistry(self._home)
        self._history = HistoryStore(self._home)

    def status(self) -> StatusResponse:
        daemon_cfg = dict(self._settings.get("daemon") or {})
        cloud_cfg = dict(self._settings.get("cloud") or {})
        heartbeat = read_heartbeat(self._home)
        evaluated = evaluate_heartbeat(
            heartbeat,
            stale_s=float(daemon_cfg.get("heartbeat_stale_s") or 120),
            backup_warning_s=float(daemon_cfg.get("backup_warning_s") or 86400),
            backup_critical_s=float(daemon_cfg.get("backup_critical_s") or 259200),
            cloud_stale_s=float(cloud_cfg.get("stale_s") or 0) if cloud_cfg.get("enable") else None,
        )
        progress = read_progress(self._home)
        if progress and evaluated.status != "syncing":
            progress = None
        if progress and _progress_age(progress) > float(daemon_cfg.get("progress_stale_s") or 900):
            LOGGER.debug("ignoring stale progress for %s", progress.get("project"))
            progress = None
        return StatusResponse(
            status=evaluated.status,
            severity=evaluated.severity,
            detail=evaluated.detail,
            heartbeat_age_s=evaluated.age_s,
            paused=is_paused(self._home),
            heartbeat=heartbeat or {},
            progress=progress,
            projects=len(self._registry.list()),
        )

    def projects(self) -> List[ProjectResponse]:
        items: List[ProjectResponse] = []
        for project in self._registry.list():
            record = project.to_record()
            record["consecutive_failures"] = self._history.failure_state(project.name).consecutive
            items.append(ProjectResponse(**record))
        return items

    def manifest(self, name: str) -> Dict[str, Any]:
        project = self._registry.get(name)
        if project is None:
            raise HTTPException(status_code=404, detail=f"Unknown project: {name}")
        try:
            config = build_cycle_config(project, self._settings, home=self._home)
        except BackupError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        manifest = load_manifest(config.backup_dir)
        if manifest is None:
            raise HTTPException(status_code=404, detail=f"No manifest for {name}")
        return manifest

    def history(self, name: str, limit: int) -> List[Dict[str, Any]]:
        if self._registry.get(name) is None:
            raise HTTPException(status_code=404, detail=f"Unknown project: {name}")
        return self._history.recent(name, limit=limit)

    def router(self) -> APIRouter:
        router = APIRouter(prefix="/v1/checkpoint", tags=["checkpoint"])

        @router.get("/status", response_model=StatusResponse)
        def status() -> StatusResponse:
            return self.status()

        @router.get("/projects", response_model=List[ProjectResponse])
        def projects() -> List[ProjectResponse]:
            return self.projects()

        @router.get("/projects/{name}/manifest")
        def manifest(name: str) -> Dict[str, Any]:
            return self.manifest(name)

        @router.get("/projects/{name}/history")
        def history(name: str, limit: int = 20) -> List[Dict[str, Any]]:
            return self.history(name, max(1, min(limit, 500)))

        @router.post("/trigger", status_code=202)
        def trigger(request: TriggerRequest) -> Dict[str, Any]:
            if request.project and self._registry.get(request.project) is None:
                raise HTTPException(status_code=404, detail=f"Unknown project: {request.project}")
            request_trigger(self._home, request.project)
            return {"queued": True, "project": request.project}

        @router.post("/pause")
        def pause_daemon(request: PauseRequest) -> Dict[str, Any]:
            until = time.time() + request.minutes * 60 if request.minutes else None
            payload = pause(self._home, until=until)
            return {"paused": True, "until": payload["until"]}

        @router.post("/resume")
        def resume_daemon() -> Dict[str, Any]:
            return {"paused": False, "was_paused": resume(self._home)}

        return router


def create_app(config: APIConfig) -> FastAPI:
    app = FastAPI(title="Checkpoint Status API", version=config.app_version, docs_url="/docs")
    service = CheckpointAPI(config)

    @app.middleware("http")
    async def loopback_only(request: Request, call_next):  # type: ignore[override]
        client_host = request.client.host if request.client else None
        if not _is_loopback_client(client_host):
            LOGGER.warning("rejected non-loopback client %s", client_host)
            return JSONResponse(status_code=403, content={"detail": "Loopback clients only"})
        return await call_next(request)

    app.include_router(service.router())
    return app


def serve(home: Path, settings: Dict[str, Any], *, host: Optional[str] = None, port: Optional[int] = None) -> int:
    api_settings = dict(settings.get("api") or {})
    bind_host = resolve_bind_host(host or api_settings.get("host"))
    try:
        bind_port = int(port or api_settings.get("port") or DEFAULT_PORT)
    except (TypeError, ValueError):
        bind_port = DEFAULT_PORT
    app = create_app(APIConfig(home=home, settings=settings))
    print(f"Checkpoint API listening on http://{bind_host}:{bind_port}", flush=True)
    server = uvicorn.Server(uvicorn.Config(app, host=bind_host, port=bind_port, log_level="info", access_log=False))
    server.run()
    return 0


__all__ = ["APIConfig", "CheckpointAPI", "create_app", "resolve_bind_host", "serve"]
