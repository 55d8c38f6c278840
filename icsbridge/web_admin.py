from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Literal

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from icsbridge.caldav_client import CalDAVDestination
from icsbridge.cleanup import CleanupFilters, CleanupOptions, DuplicateCleanupAnalyzer
from icsbridge.config_manager import ConfigManager, config_path_from_env, state_path_from_env
from icsbridge.errors import AuthExpiredError, ConfigurationError
from icsbridge.matcher import ConfidenceMatcher
from icsbridge.models import parse_iso_datetime
from icsbridge.scheduler import RefreshScheduler
from icsbridge.state_store import StateStore
from icsbridge.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CleanupRequest(BaseModel):
    action: Literal["analyze", "cleanup"] = "analyze"
    calendar_ids: list[str] = Field(default_factory=list)
    dry_run: bool = True
    confirm_deletion: bool = False
    preserve_newest: bool | None = None
    max_deletions: int | None = Field(default=None, ge=0)
    create_backup: bool | None = None
    skip_patterns: list[str] | None = None
    filters: dict[str, Any] = Field(default_factory=dict)


class BackupExpireRequest(BaseModel):
    now: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.scheduler = RefreshScheduler()
        self.sync_engine = SyncEngine(
            self.config_manager,
            self.state_store,
            destination_factory=lambda caldav_config: CalDAVDestination(caldav_config),
            scheduler=self.scheduler,
        )

    def cleanup_analyzer(self, require_caldav: bool = True) -> DuplicateCleanupAnalyzer:
        config = self.config_manager.load()
        if require_caldav and not config.caldav.is_complete():
            raise ConfigurationError("CalDAV config missing base_url/username.")
        return DuplicateCleanupAnalyzer(
            CalDAVDestination(config.caldav),
            state_store=self.state_store,
            matcher=ConfidenceMatcher(config.matching),
        )


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_caldav_password = str(current.get("caldav", {}).get("password", ""))

    caldav = sanitized.get("caldav")
    if isinstance(caldav, dict):
        caldav = dict(caldav)
        password = caldav.get("password")
        if password is not None:
            password_text = str(password).strip()
            if password_text in {"", "***"}:
                if current_caldav_password:
                    caldav.pop("password", None)
                else:
                    caldav["password"] = ""
        if caldav:
            sanitized["caldav"] = caldav
        else:
            sanitized.pop("caldav", None)
    return sanitized


def create_app(config_path: str | None = None, state_path: str | None = None) -> FastAPI:
    context = AppContext(
        config_path=config_path or config_path_from_env(),
        state_path=state_path or state_path_from_env(),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        scheduled = app.state.context.sync_engine.start_schedules()
        logger.info("Scheduled %d sync targets", len(scheduled))
        try:
            yield
        finally:
            await app.state.context.scheduler.shutdown()

    app = FastAPI(title="icsbridge Admin", version="0.1.0", lifespan=lifespan)
    app.state.context = context

    @app.exception_handler(AuthExpiredError)
    async def _auth_expired(_: Request, exc: AuthExpiredError) -> JSONResponse:
        content: dict[str, Any] = {"detail": str(exc)}
        if exc.report is not None and hasattr(exc.report, "to_dict"):
            content["report"] = exc.report.to_dict()
        return JSONResponse(status_code=401, content=content)

    @app.exception_handler(ConfigurationError)
    async def _configuration_error(_: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/syncs")
    def list_syncs() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        scheduled = set(app.state.context.scheduler.scheduled_keys())
        items = []
        for target in config.targets:
            runs = app.state.context.state_store.recent_sync_runs(limit=1, target_id=target.target_id)
            items.append(
                {
                    "target_id": target.target_id,
                    "name": target.name,
                    "calendar_id": target.calendar_id,
                    "privacy_level": target.privacy_level,
                    "active": target.active,
                    "scheduled": target.target_id in scheduled,
                    "last_run": runs[0] if runs else None,
                }
            )
        return {"items": items}

    @app.post("/api/syncs/{target_id}/sync")
    async def run_sync(target_id: str) -> dict[str, Any]:
        result = await app.state.context.sync_engine.run_target(target_id, trigger="manual")
        return result.to_dict()

    @app.get("/api/syncs/{target_id}/runs")
    def sync_runs(target_id: str, limit: int = 20) -> dict[str, Any]:
        if app.state.context.config_manager.load().find_target(target_id) is None:
            raise HTTPException(status_code=404, detail="sync target not found")
        return {"items": app.state.context.state_store.recent_sync_runs(limit=limit, target_id=target_id)}

    @app.post("/api/admin/cleanup-duplicates")
    async def cleanup_duplicates(request: CleanupRequest) -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        calendar_ids = request.calendar_ids or sorted(
            {target.calendar_id for target in config.targets if target.calendar_id}
        )
        if not calendar_ids:
            raise HTTPException(status_code=400, detail="no calendar ids to analyze")
        filters = CleanupFilters.from_dict(request.filters)
        analyzer = app.state.context.cleanup_analyzer()

        if request.action == "analyze":
            analysis = await analyzer.analyze(calendar_ids, filters)
            return {"action": "analyze", **analysis.to_dict()}

        if not request.dry_run and not request.confirm_deletion:
            raise HTTPException(status_code=400, detail="confirm_deletion is required when dry_run is false")
        options = CleanupOptions.from_config(
            config.cleanup,
            mode="dry-run" if request.dry_run else "batch",
            filters=filters,
            preserve_newest=request.preserve_newest,
            max_deletions=request.max_deletions,
            create_backup=request.create_backup,
            skip_patterns=request.skip_patterns,
        )
        report = await analyzer.cleanup(calendar_ids, options)
        app.state.context.state_store.record_audit_event(
            calendar_id=",".join(calendar_ids),
            uid=report.operation_id,
            action="cleanup_duplicates",
            details={
                "mode": report.mode,
                "duplicates_found": report.duplicates_found,
                "duplicates_deleted": report.duplicates_deleted,
                "backup_id": report.backup_id,
                "errors": report.errors,
            },
        )
        return {"action": "cleanup", **report.to_dict()}

    @app.get("/api/admin/backups")
    def list_backups() -> dict[str, Any]:
        return {"items": app.state.context.cleanup_analyzer(require_caldav=False).list_backups()}

    @app.post("/api/admin/backups/{backup_id}/restore")
    async def restore_backup(backup_id: str) -> dict[str, Any]:
        if app.state.context.state_store.get_backup(backup_id) is None:
            raise HTTPException(status_code=404, detail="backup not found")
        report = await app.state.context.cleanup_analyzer().restore_backup(backup_id)
        return report.to_dict()

    @app.post("/api/admin/backups/expire")
    def expire_backups(request: BackupExpireRequest | None = None) -> dict[str, Any]:
        now = None
        if request is not None and request.now:
            try:
                now = parse_iso_datetime(request.now)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail="Invalid now datetime") from exc
        expired = app.state.context.cleanup_analyzer(require_caldav=False).expire_backups(now)
        return {"expired": expired}

    return app
