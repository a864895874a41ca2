from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calmirror.config_manager import ConfigManager
from calmirror.locks import SyncInProgressError
from calmirror.models import Provider
from calmirror.state_store import StateStore
from calmirror.sync_engine import ConnectionAccessError, SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ConnectionRequest(BaseModel):
    connection_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    provider: str
    selected_calendar_ids: list[str] = Field(default_factory=list)


class StageEventsRequest(BaseModel):
    user_id: str = Field(min_length=1)
    events: list[dict[str, Any]] = Field(default_factory=list)


class SyncRequest(BaseModel):
    user_id: str = Field(min_length=1)
    provider: str
    calendar_ids: list[str] = Field(default_factory=list)
    deleted_external_event_ids: list[str] = Field(default_factory=list)


class DetachRequest(BaseModel):
    user_id: str = Field(min_length=1)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.state_store = StateStore(state_path, busy_timeout_seconds=config.storage.busy_timeout_seconds)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)


def _parse_provider(value: str) -> Provider:
    try:
        return Provider.parse(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def create_app() -> FastAPI:
    config_path = os.getenv("CALMIRROR_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALMIRROR_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="calmirror", version="0.1.0")
    app.state.context = context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "config updated", "config": updated.to_dict()}

    @app.post("/api/connections")
    def register_connection(request: ConnectionRequest) -> dict[str, Any]:
        provider = _parse_provider(request.provider)
        try:
            connection = app.state.context.sync_engine.register_connection(
                request.connection_id,
                request.user_id,
                provider,
                request.selected_calendar_ids,
            )
        except ConnectionAccessError as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        return {"connection": connection.to_dict()}

    @app.put("/api/connections/{connection_id}/events")
    def stage_events(connection_id: str, request: StageEventsRequest) -> dict[str, Any]:
        try:
            staged = app.state.context.sync_engine.stage_events(connection_id, request.user_id, request.events)
        except ConnectionAccessError as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"staged": staged}

    @app.post("/api/connections/{connection_id}/sync")
    def run_sync(connection_id: str, request: SyncRequest) -> dict[str, Any]:
        provider = _parse_provider(request.provider)
        try:
            result = app.state.context.sync_engine.reconcile(
                connection_id,
                request.user_id,
                provider,
                request.calendar_ids,
                request.deleted_external_event_ids,
                trigger="manual",
            )
        except ConnectionAccessError as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        except SyncInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return result.to_dict()

    @app.get("/api/users/{user_id}/tasks")
    def list_tasks(user_id: str) -> dict[str, Any]:
        rows = app.state.context.state_store.calendar_tasks_with_schedules(user_id)
        return {
            "tasks": [
                {**task.to_dict(), "schedules": [schedule.to_dict() for schedule in schedules]}
                for task, schedules in rows
            ]
        }

    @app.post("/api/tasks/{task_id}/detach")
    def detach_task(task_id: str, request: DetachRequest) -> dict[str, Any]:
        if not app.state.context.sync_engine.detach_task(task_id, request.user_id):
            raise HTTPException(status_code=404, detail="calendar task not found")
        return {"message": "task detached", "task_id": task_id}

    @app.get("/api/sync/status")
    def sync_status(connection_id: str | None = None, limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit, connection_id=connection_id)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    return app
