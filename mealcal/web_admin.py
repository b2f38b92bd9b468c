from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from mealcal.calendar_sync import CalendarSync
from mealcal.config_manager import ConfigManager, setup_logging
from mealcal.errors import InvalidConfigError, MealCalError
from mealcal.events import (
    CONFIG_SAVED,
    DOMAIN_EVENTS,
    INITIAL_SYNC_COMPLETE,
    SYNC_STARTED,
    EventBus,
)
from mealcal.models import SYNC_STATUSES, CaldavAccountConfig, utc_now
from mealcal.planned_store import PlannedItemStore
from mealcal.scheduler import RetryScheduler
from mealcal.state_store import StateStore
from mealcal.sync_manager import ServiceFactory, SyncManager
from mealcal.tasks import BackgroundTasks


logger = logging.getLogger(__name__)

MASKED_SECRET = "***"


class SaveConfigRequest(BaseModel):
    server_url: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = ""
    enabled: bool = True
    breakfast_time: str = "08:00-09:00"
    lunch_time: str = "12:00-13:00"
    dinner_time: str = "18:00-19:00"
    snack_time: str = "15:00-15:30"


class ConnectionTestRequest(BaseModel):
    server_url: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class HouseholdRequest(BaseModel):
    user_ids: list[str] = Field(default_factory=list)


class AppContext:
    """Composition root: owns the bus, the stores and every long-lived component."""

    def __init__(
        self,
        config_path: str,
        state_path: str | None = None,
        service_factory: ServiceFactory | None = None,
    ) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        db_path = state_path or config.app.database_path
        self.event_bus = EventBus()
        self.tasks = BackgroundTasks()
        self.state_store = StateStore(db_path)
        self.planned_store = PlannedItemStore(db_path)
        self.sync_manager = SyncManager(
            self.config_manager,
            self.state_store,
            self.planned_store,
            self.event_bus,
            service_factory=service_factory,
        )
        self.calendar_sync = CalendarSync(
            self.sync_manager,
            self.state_store,
            self.planned_store,
            self.event_bus,
        )
        self.calendar_sync.register()
        self.scheduler = RetryScheduler(
            self.sync_manager,
            self.state_store,
            self.planned_store,
            self.config_manager,
        )


def _sanitize_password(password: str, current: CaldavAccountConfig | None) -> str:
    text = str(password or "").strip()
    if text in {"", MASKED_SECRET} and current is not None:
        return current.password
    return "" if text == MASKED_SECRET else text


def _build_event(name: str, payload: dict[str, Any]) -> Any:
    event_type = DOMAIN_EVENTS.get(name)
    if event_type is None:
        raise HTTPException(status_code=404, detail=f"unknown event: {name}")
    known = {item.name for item in dataclasses.fields(event_type)}
    data = {key: value for key, value in payload.items() if key in known}
    # The planning application names the title differently for recipes and notes.
    if "title" in known and "title" not in data and payload.get("recipe_name"):
        data["title"] = payload["recipe_name"]
    try:
        return event_type(**data)
    except TypeError as exc:
        raise HTTPException(status_code=400, detail=f"invalid {name} payload: {exc}") from exc


def create_app(service_factory: ServiceFactory | None = None) -> FastAPI:
    config_path = os.getenv("MEALCAL_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("MEALCAL_STATE_PATH") or None
    context = AppContext(config_path=config_path, state_path=state_path, service_factory=service_factory)
    setup_logging(context.config_manager.load().logging)

    app = FastAPI(title="MealCal CalDAV Sync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    async def _startup() -> None:
        if app.state.context.config_manager.load().scheduler.enabled:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.context.scheduler.stop()
        await app.state.context.tasks.shutdown()

    @app.exception_handler(MealCalError)
    async def _mealcal_error(_request: Request, exc: MealCalError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": exc.message, "error": exc.to_dict()})

    async def _check_account(account: CaldavAccountConfig) -> tuple[bool, str]:
        service = app.state.context.sync_manager.service_for(account)
        return await asyncio.to_thread(service.test_connection)

    async def _run_full_sync(user_id: str) -> None:
        result = await app.state.context.calendar_sync.sync_all_future_items(user_id)
        app.state.context.event_bus.notify(
            user_id,
            INITIAL_SYNC_COMPLETE,
            {
                "timestamp": utc_now().isoformat(),
                "total_synced": result["total_synced"],
                "total_failed": result["total_failed"],
            },
        )

    async def _run_retry(user_id: str) -> None:
        result = await app.state.context.calendar_sync.retry_failed_syncs(user_id)
        app.state.context.event_bus.notify(
            user_id,
            INITIAL_SYNC_COMPLETE,
            {
                "timestamp": utc_now().isoformat(),
                "total_synced": result["total_retried"],
                "total_failed": result["total_failed"],
            },
        )

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {
            "status": "ok",
            "scheduler_running": app.state.context.scheduler.running,
            "background_tasks": app.state.context.tasks.running,
        }

    @app.get("/api/users/{user_id}/caldav/config")
    def get_config(user_id: str) -> dict[str, Any] | None:
        account = app.state.context.state_store.get_account(user_id)
        if account is None:
            return None
        return account.to_dict(include_password=False)

    @app.get("/api/users/{user_id}/caldav/password")
    def get_password(user_id: str) -> dict[str, Any]:
        account = app.state.context.state_store.get_account(user_id)
        return {"password": account.password if account and account.password else None}

    @app.put("/api/users/{user_id}/caldav/config")
    async def save_config(user_id: str, request: SaveConfigRequest) -> dict[str, Any]:
        current = app.state.context.state_store.get_account(user_id)
        account = CaldavAccountConfig.from_dict({**request.model_dump(), "user_id": user_id})
        account.password = _sanitize_password(request.password, current)
        errors = account.validation_errors()
        if errors:
            raise InvalidConfigError(errors)

        ok, message = await _check_account(account)
        if not ok:
            raise HTTPException(status_code=400, detail=message)

        logger.info("Saving CalDAV configuration for user %s", user_id)
        saved = app.state.context.state_store.save_account(account)
        public = saved.to_dict(include_password=False)
        app.state.context.event_bus.notify(user_id, CONFIG_SAVED, {"config": public})

        if saved.enabled:
            logger.info("CalDAV enabled for user %s, starting initial sync", user_id)
            app.state.context.tasks.spawn(_run_full_sync(user_id), name=f"initial-sync-{user_id}")
        return public

    @app.delete("/api/users/{user_id}/caldav/config")
    async def delete_config(user_id: str, delete_events: bool = False) -> dict[str, Any]:
        logger.info("Deleting CalDAV configuration for user %s (delete_events=%s)", user_id, delete_events)
        removed_events = 0
        if delete_events:
            removed_events = await app.state.context.sync_manager.remove_all_events(user_id)
        deleted = app.state.context.state_store.delete_account(user_id)
        app.state.context.event_bus.notify(user_id, CONFIG_SAVED, {"config": None})
        return {"success": True, "deleted": deleted, "removed_events": removed_events}

    @app.post("/api/caldav/test-connection")
    async def test_connection(request: ConnectionTestRequest) -> dict[str, Any]:
        account = CaldavAccountConfig.from_dict({**request.model_dump(), "user_id": ""})
        ok, message = await _check_account(account)
        return {"success": ok, "message": message}

    @app.get("/api/users/{user_id}/caldav/connection")
    async def check_connection(user_id: str) -> dict[str, Any]:
        account = app.state.context.state_store.get_account(user_id)
        if account is None:
            return {"success": False, "message": "No configuration found"}
        ok, message = await _check_account(account)
        return {"success": ok, "message": "Connected" if ok else message}

    @app.post("/api/users/{user_id}/caldav/sync/retry")
    async def trigger_sync(user_id: str) -> dict[str, bool]:
        logger.info("Manually triggering CalDAV retry for user %s", user_id)
        app.state.context.event_bus.notify(user_id, SYNC_STARTED, {"timestamp": utc_now().isoformat()})
        app.state.context.tasks.spawn(_run_retry(user_id), name=f"retry-sync-{user_id}")
        return {"started": True}

    @app.post("/api/users/{user_id}/caldav/sync/all")
    async def sync_all(user_id: str) -> dict[str, bool]:
        logger.info("Starting full CalDAV sync for user %s", user_id)
        app.state.context.event_bus.notify(user_id, SYNC_STARTED, {"timestamp": utc_now().isoformat()})
        app.state.context.tasks.spawn(_run_full_sync(user_id), name=f"full-sync-{user_id}")
        return {"started": True}

    @app.get("/api/users/{user_id}/caldav/sync-status")
    def sync_status(
        user_id: str,
        status: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        if status is not None and status not in SYNC_STATUSES:
            raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(SYNC_STATUSES)}")
        page = max(1, page)
        page_size = min(100, max(1, page_size))
        rows, total = app.state.context.state_store.list_sync_statuses(
            user_id,
            [status] if status else None,
            page=page,
            page_size=page_size,
        )
        statuses = []
        for row in rows:
            item = row.to_dict()
            planned = app.state.context.planned_store.get_item(row.planned_item_id or row.item_id)
            item["date"] = planned.date if planned else None
            item["slot"] = planned.slot if planned else None
            statuses.append(item)
        return {"statuses": statuses, "total": total, "page": page, "page_size": page_size}

    @app.get("/api/users/{user_id}/caldav/summary")
    def sync_summary(user_id: str) -> dict[str, int]:
        return app.state.context.state_store.summary(user_id)

    @app.post("/api/events/{name}", status_code=202)
    async def ingest_event(name: str, payload: dict[str, Any], wait: bool = False) -> dict[str, Any]:
        event = _build_event(name, payload)
        if wait:
            await app.state.context.event_bus.publish(event)
        else:
            app.state.context.tasks.spawn(app.state.context.event_bus.publish(event), name=f"event-{name}")
        return {"accepted": True, "event": name}

    @app.put("/api/households/{household_id}")
    def put_household(household_id: str, request: HouseholdRequest) -> dict[str, Any]:
        app.state.context.planned_store.set_household(household_id, request.user_ids)
        return {"household_id": household_id, "user_ids": request.user_ids}

    @app.get("/api/users/{user_id}/notifications")
    async def notifications(user_id: str, request: Request) -> StreamingResponse:
        async def stream() -> AsyncIterator[str]:
            with app.state.context.event_bus.user_queue(user_id) as queue:
                while not await request.is_disconnected():
                    try:
                        notification = await asyncio.wait_for(queue.get(), timeout=15)
                    except asyncio.TimeoutError:
                        yield ": keep-alive\n\n"
                        continue
                    yield f"event: {notification.name}\ndata: {json.dumps(notification.to_dict())}\n\n"

        return StreamingResponse(stream(), media_type="text/event-stream")

    return app
