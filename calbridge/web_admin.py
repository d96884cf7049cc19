from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from calbridge.config_manager import MASK, SECRET_FIELDS, ConfigManager
from calbridge.connector import CalendarConnector
from calbridge.errors import (
    CalendarAlreadyConfiguredError,
    CalendarSyncError,
    ConfigError,
    ProviderError,
    RecordNotFoundError,
)
from calbridge.models import SUPPORTED_SERVICES, Calendar
from calbridge.persistence import list_appointments, list_calendars, load_calendar, save_calendar
from calbridge.scheduler import SyncScheduler
from calbridge.state_store import StateStore

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CalendarCreateRequest(BaseModel):
    calendar_id: str = Field(min_length=1, max_length=200)
    name: str = ""
    color: str = ""
    timezone: str = "UTC"


class CalendarLinkRequest(BaseModel):
    service: str
    code: str = Field(min_length=1)
    project_url: str = Field(min_length=1)
    provider_calendar_id: str = Field(min_length=1)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.scheduler = SyncScheduler(self.config_manager, self.state_store)

    def connector(self) -> CalendarConnector:
        return CalendarConnector(self.config_manager.load(), self.state_store)

    def calendar(self, calendar_id: str) -> Calendar:
        return load_calendar(self.state_store, calendar_id)


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    return {
        section: {key: {"is_masked": bool(str(config_dict.get(section, {}).get(key, "")).strip())}}
        for section, key in SECRET_FIELDS
    }


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    for section_name, key in SECRET_FIELDS:
        section = sanitized.get(section_name)
        if not isinstance(section, dict):
            continue
        secret = section.get(key)
        if secret is not None and str(secret).strip() in {"", MASK}:
            if str(current.get(section_name, {}).get(key, "")):
                section.pop(key, None)
            else:
                section[key] = ""
        if not section:
            sanitized.pop(section_name, None)
    return sanitized


def create_app() -> FastAPI:
    config_path = os.getenv("CALBRIDGE_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALBRIDGE_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Calbridge Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.exception_handler(RecordNotFoundError)
    def _not_found(request: Request, exc: RecordNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(CalendarAlreadyConfiguredError)
    def _already_configured(request: Request, exc: CalendarAlreadyConfiguredError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ConfigError)
    def _invalid_config(request: Request, exc: ConfigError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc), "section": exc.section})

    @app.exception_handler(CalendarSyncError)
    def _sync_failed(request: Request, exc: CalendarSyncError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": str(exc), "phase": exc.phase})

    @app.exception_handler(ProviderError)
    def _provider_failed(request: Request, exc: ProviderError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": str(exc), "status_code": exc.status_code})

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        raw = app.state.context.config_manager.load().to_dict()
        return {"config": app.state.context.config_manager.masked(), "meta": _masked_meta(raw)}

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/calendars")
    def get_calendars() -> dict[str, Any]:
        return {"calendars": [calendar.to_dict() for calendar in list_calendars(app.state.context.state_store)]}

    @app.post("/api/calendars", status_code=201)
    def create_calendar(request: CalendarCreateRequest) -> dict[str, Any]:
        calendar_id = request.calendar_id.strip()
        try:
            app.state.context.calendar(calendar_id)
        except RecordNotFoundError:
            pass
        else:
            raise HTTPException(status_code=409, detail=f"calendar {calendar_id} already exists")
        calendar = Calendar(
            calendar_id=calendar_id,
            name=request.name.strip() or "-",
            color=request.color.strip(),
            timezone=request.timezone.strip() or "UTC",
        )
        save_calendar(app.state.context.state_store, calendar)
        return {"calendar": calendar.to_dict()}

    @app.post("/api/calendars/{calendar_id}/link")
    def link_calendar(calendar_id: str, request: CalendarLinkRequest) -> dict[str, Any]:
        service = request.service.strip().lower()
        if service not in SUPPORTED_SERVICES:
            raise HTTPException(status_code=400, detail=f"unsupported service: {request.service}")
        if not app.state.context.config_manager.has_credentials(service):
            raise HTTPException(status_code=400, detail=f"{service} client credentials are not configured")
        calendar = app.state.context.connector().link_calendar(
            calendar_id,
            service,
            request.code,
            request.project_url,
            request.provider_calendar_id,
        )
        return {"message": "calendar linked", "calendar": calendar.to_dict()}

    @app.post("/api/calendars/{calendar_id}/refresh")
    def refresh_calendar(calendar_id: str) -> dict[str, Any]:
        calendar = app.state.context.calendar(calendar_id)
        if not calendar.is_linked:
            raise HTTPException(status_code=400, detail="calendar is not linked")
        calendar = app.state.context.connector().update_calendar_configuration(calendar)
        return {"calendar": calendar.to_dict()}

    @app.post("/api/calendars/{calendar_id}/sync")
    def sync_calendar(calendar_id: str) -> dict[str, Any]:
        calendar = app.state.context.calendar(calendar_id)
        if not calendar.is_linked:
            raise HTTPException(status_code=400, detail="calendar is not linked")
        result = app.state.context.scheduler.sync_calendar_now(calendar, trigger="manual-calendar")
        return {"message": "sync completed", "result": result.to_dict()}

    @app.get("/api/calendars/{calendar_id}/appointments")
    def get_appointments(calendar_id: str) -> dict[str, Any]:
        app.state.context.calendar(calendar_id)
        appointments = list_appointments(app.state.context.state_store, calendar_id)
        appointments.sort(key=lambda item: (item.start_time or _FAR_FUTURE, item.appointment_id))
        return {"appointments": [item.to_dict() for item in appointments]}

    @app.get("/api/sync-runs")
    def sync_runs(limit: int = 20, calendar_id: str | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit, calendar_id=calendar_id)}

    @app.post("/api/sync/trigger")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    return app


app = create_app()
