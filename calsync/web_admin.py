from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calsync.config_manager import ConfigManager
from calsync.scheduler import SyncScheduler
from calsync.state_store import StateStore
from calsync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def create_app(start_scheduler: bool = True) -> FastAPI:
    config_path = os.getenv("CALSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="calsync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        if start_scheduler:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        scheduler = app.state.context.scheduler.status()
        return {
            "status": "ok",
            "scheduler_running": scheduler["running"],
            "next_run_at": scheduler["next_run_at"],
            "last_success_at": app.state.context.state_store.get_meta("last_success_at"),
        }

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not request.payload:
            raise HTTPException(status_code=400, detail="payload must be a non-empty object")
        try:
            app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/users")
    def list_users() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        latest = app.state.context.state_store.latest_user_syncs()
        return {
            "users": [
                {
                    "name": user.name,
                    "target_calendar_id": user.target.calendar_id,
                    "sources": [source.label or source.url or source.calendar_id for source in user.sources],
                    "last_sync": latest.get(user.name),
                }
                for user in config.users
            ]
        }

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/run-now")
    def run_sync_now() -> dict[str, Any]:
        result = app.state.context.scheduler.run_now("manual")
        return {"message": "sync completed", "result": result.to_dict()}

    @app.get("/api/sync/runs")
    def list_sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/sync/runs/{run_id}")
    def get_sync_run(run_id: int) -> dict[str, Any]:
        store = app.state.context.state_store
        return {
            "run_id": run_id,
            "users": store.user_syncs_for_run(run_id),
            "events": store.recent_audit_events(limit=500, run_id=run_id),
        }

    @app.get("/api/audit")
    def list_audit_events(limit: int = 100, user: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, user_name=user)}

    return app
