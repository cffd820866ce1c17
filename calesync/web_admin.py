from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from calesync.config_manager import MASK, ConfigManager
from calesync.errors import (
    AuthError,
    ConflictResolutionError,
    LocalStoreError,
    NotFoundError,
    SyncError,
)
from calesync.models import DateRange, LocalEntry, parse_iso_datetime
from calesync.scheduler import SyncScheduler
from calesync.state_store import StateStore
from calesync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class EntryCreateRequest(BaseModel):
    title: str = Field(default="", max_length=500)
    body: str = ""
    event_date: str


class EntryUpdateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=500)
    body: str | None = None
    event_date: str | None = None


class PushRequest(BaseModel):
    calendar_id: str | None = None


class CalendarToggleRequest(BaseModel):
    enabled: bool


class ConflictResolveRequest(BaseModel):
    resolution: str


class RecoveryRequest(BaseModel):
    preserve_entries: bool = True
    include_archive: bool = False


class ArchiveImportRequest(BaseModel):
    calendar_ids: list[str] | None = None
    reset: bool = False


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    has_token = bool(config_dict.get("google", {}).get("access_token", "").strip())
    return {"google": {"access_token": {"is_masked": has_token}}}


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_token = str(current.get("google", {}).get("access_token", ""))

    google = sanitized.get("google")
    if isinstance(google, dict):
        google = dict(google)
        token = google.get("access_token")
        if token is not None:
            token_text = str(token).strip()
            if token_text in {"", MASK}:
                if current_token:
                    google.pop("access_token", None)
                else:
                    google["access_token"] = ""
        if google:
            sanitized["google"] = google
        else:
            sanitized.pop("google", None)

    return sanitized


def _http_error(exc: SyncError) -> HTTPException:
    if isinstance(exc, ConflictResolutionError):
        return HTTPException(status_code=409, detail={"reason": exc.reason, "message": exc.message})
    if isinstance(exc, AuthError):
        return HTTPException(status_code=401, detail=exc.user_message())
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=exc.user_message())
    if isinstance(exc, LocalStoreError):
        return HTTPException(status_code=500, detail=exc.user_message())
    return HTTPException(status_code=502, detail=exc.user_message())


def _parse_date(value: str, field_name: str) -> Any:
    try:
        parsed = parse_iso_datetime(value)
    except ValueError:
        parsed = None
    if parsed is None:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name} datetime")
    return parsed


def create_app() -> FastAPI:
    config_path = os.getenv("CALESYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALESYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Calesync Admin", version="0.1.0")
    app.state.context = context

    def _entry_or_404(entry_id: str) -> LocalEntry:
        entry = app.state.context.state_store.get_entry(entry_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="entry not found")
        return entry

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

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
        try:
            app.state.context.config_manager.update(sanitized_payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/config/raw")
    def get_config_raw() -> dict[str, Any]:
        raw = app.state.context.config_manager.load().to_dict()
        masked = app.state.context.config_manager.masked()
        return {"config": masked, "meta": _masked_meta(raw)}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        calendars = app.state.context.state_store.list_calendars()
        return {"calendars": [calendar.to_dict() for calendar in calendars]}

    @app.post("/api/calendars/refresh")
    def refresh_calendars() -> dict[str, Any]:
        try:
            calendars = app.state.context.sync_engine.sync_calendar_list()
        except SyncError as exc:
            raise _http_error(exc) from exc
        return {"calendars": [calendar.to_dict() for calendar in calendars]}

    @app.put("/api/calendars/{calendar_id}/enabled")
    def set_calendar_enabled(calendar_id: str, request: CalendarToggleRequest) -> dict[str, Any]:
        if not app.state.context.state_store.set_calendar_enabled(calendar_id, request.enabled):
            raise HTTPException(status_code=404, detail="calendar not found")
        calendar = app.state.context.state_store.get_calendar(calendar_id)
        return {"calendar": calendar.to_dict()}

    @app.get("/api/entries")
    def list_entries() -> dict[str, Any]:
        entries = app.state.context.state_store.list_entries()
        return {"entries": [entry.to_dict() for entry in entries]}

    @app.post("/api/entries")
    def create_entry(request: EntryCreateRequest) -> dict[str, Any]:
        entry = app.state.context.sync_engine.create_entry(
            title=request.title,
            body=request.body,
            event_date=_parse_date(request.event_date, "event_date"),
        )
        return {"entry": entry.to_dict()}

    @app.get("/api/entries/{entry_id}")
    def get_entry(entry_id: str) -> dict[str, Any]:
        return {"entry": _entry_or_404(entry_id).to_dict()}

    @app.put("/api/entries/{entry_id}")
    def update_entry(entry_id: str, request: EntryUpdateRequest) -> dict[str, Any]:
        entry = _entry_or_404(entry_id)
        event_date = _parse_date(request.event_date, "event_date") if request.event_date else None
        edited = app.state.context.sync_engine.edit_entry(
            entry,
            title=request.title,
            body=request.body,
            event_date=event_date,
        )
        return {"entry": edited.to_dict()}

    @app.delete("/api/entries/{entry_id}")
    def delete_entry(entry_id: str) -> dict[str, Any]:
        entry = _entry_or_404(entry_id)
        try:
            app.state.context.sync_engine.delete_entry(entry)
        except SyncError as exc:
            raise _http_error(exc) from exc
        return {"message": "entry deleted", "id": entry_id}

    @app.post("/api/entries/{entry_id}/push")
    def push_entry(entry_id: str, request: PushRequest) -> dict[str, Any]:
        entry = _entry_or_404(entry_id)
        result = app.state.context.sync_engine.push_entry(entry, request.calendar_id)
        if result.error is not None:
            raise _http_error(result.error)
        return {"result": result.to_dict(), "entry": result.entry.to_dict() if result.entry else None}

    @app.post("/api/push/pending")
    def push_pending(request: PushRequest) -> dict[str, Any]:
        batch = app.state.context.sync_engine.push_pending(request.calendar_id)
        return {"result": batch.to_dict()}

    @app.get("/api/conflicts")
    def list_conflicts() -> dict[str, Any]:
        entries = app.state.context.state_store.list_conflicted_entries()
        return {"entries": [entry.to_dict() for entry in entries]}

    @app.post("/api/conflicts/{entry_id}/resolve")
    def resolve_conflict(entry_id: str, request: ConflictResolveRequest) -> dict[str, Any]:
        entry = _entry_or_404(entry_id)
        try:
            result = app.state.context.sync_engine.resolve_conflict(entry, request.resolution)
        except ConflictResolutionError as exc:
            raise HTTPException(status_code=409, detail={"reason": exc.reason, "message": exc.message}) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        payload: dict[str, Any] = {"resolution": result.resolution, "entry": result.entry.to_dict()}
        if result.push is not None:
            payload["push"] = result.push.to_dict()
        return payload

    @app.get("/api/events")
    def display_events(start: str, end: str) -> dict[str, Any]:
        window_start = _parse_date(start, "start")
        window_end = _parse_date(end, "end")
        if window_end < window_start:
            raise HTTPException(status_code=400, detail="end must be later than start")
        events = app.state.context.state_store.display_events(DateRange(window_start, window_end))
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/run-now")
    def run_sync_now() -> dict[str, Any]:
        result = app.state.context.sync_engine.run_sync(trigger="manual")
        return {"message": "sync completed", "result": result.to_dict()}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {
            "status": app.state.context.sync_engine.status(),
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
        }

    @app.get("/api/audit")
    def audit_records(limit: int = 100, sync_type: str | None = None) -> dict[str, Any]:
        records = app.state.context.sync_engine.audit_log.recent(limit=limit, sync_type=sync_type)
        return {"records": [record.to_dict() for record in records]}

    @app.get("/api/audit/export")
    def audit_export(limit: int = 500) -> Response:
        document = app.state.context.sync_engine.audit_log.export_json(limit=limit)
        return Response(content=document, media_type="application/json")

    @app.post("/api/archive/import")
    def start_archive_import(request: ArchiveImportRequest) -> dict[str, Any]:
        engine = app.state.context.sync_engine
        current = engine.archive_handle
        if current is not None and current.running:
            raise HTTPException(status_code=409, detail="archive import already running")
        if request.reset:
            targets = request.calendar_ids or [
                calendar.calendar_id for calendar in app.state.context.state_store.list_calendars(enabled_only=True)
            ]
            for calendar_id in targets:
                engine.reset_archive_progress(calendar_id)
        engine.import_archive(request.calendar_ids)
        return {"message": "archive import started"}

    @app.post("/api/archive/cancel")
    def cancel_archive_import() -> dict[str, Any]:
        handle = app.state.context.sync_engine.archive_handle
        if handle is None or not handle.running:
            return {"message": "no archive import running"}
        handle.cancel()
        return {"message": "archive import cancellation requested"}

    @app.get("/api/archive/status")
    def archive_status() -> dict[str, Any]:
        checkpoints = app.state.context.state_store.list_archive_progress()
        return {
            "archive": app.state.context.sync_engine.status()["archive"],
            "checkpoints": [checkpoint.to_dict() for checkpoint in checkpoints],
        }

    @app.post("/api/cache/cleanup")
    def cleanup_cache() -> dict[str, Any]:
        removed = app.state.context.sync_engine.cleanup_cache()
        return {"evicted": removed}

    @app.get("/api/recovery/integrity")
    def check_integrity() -> dict[str, Any]:
        return {"report": app.state.context.sync_engine.check_integrity().to_dict()}

    @app.post("/api/recovery/run")
    def run_recovery(request: RecoveryRequest) -> dict[str, Any]:
        try:
            result = app.state.context.sync_engine.full_recovery(
                preserve_entries=request.preserve_entries,
                include_archive=request.include_archive,
            )
        except SyncError as exc:
            raise HTTPException(status_code=409, detail=exc.user_message()) from exc
        return {"result": result.to_dict()}

    return app


app = create_app()
