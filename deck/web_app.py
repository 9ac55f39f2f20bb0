from __future__ import annotations

import os
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from deck.calendar_clients import build_clients
from deck.config_manager import ConfigManager
from deck.errors import (
    DeckError,
    NotConfigured,
    NotFound,
    ProviderCallFailed,
    RefreshDenied,
    StoreError,
    ValidationError,
)
from deck.models import Credentials, parse_iso_datetime
from deck.scheduler import SyncScheduler
from deck.services import AccountRegistry, EventService, ProjectService, TaskService
from deck.state_store import StateStore
from deck.sync_engine import SyncEngine


class ConnectAccountRequest(BaseModel):
    provider: str
    email: str = Field(min_length=1, max_length=320)
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: str | None = None
    calendar_id: str | None = None


class ProjectCreateRequest(BaseModel):
    name: str = ""
    description: str | None = None
    category: str | None = None
    status: str | None = None


class ProjectUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    category: str | None = None
    status: str | None = None


class TaskCreateRequest(BaseModel):
    title: str = ""
    description: str | None = None
    project_id: int | None = None
    priority: str | None = None
    status: str | None = None
    due_date: str | None = None


class TaskUpdateRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    project_id: int | None = None
    priority: str | None = None
    status: str | None = None
    due_date: str | None = None


class EventCreateRequest(BaseModel):
    title: str = ""
    start_time: str | None = None
    end_time: str | None = None
    description: str | None = None
    all_day: bool = False
    project_id: int | None = None


class EventUpdateRequest(BaseModel):
    title: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    description: str | None = None
    all_day: bool | None = None
    project_id: int | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.state_store, build_clients(config), config.sync)
        self.accounts = AccountRegistry(self.state_store)
        self.projects = ProjectService(self.state_store)
        self.tasks = TaskService(self.state_store)
        self.events = EventService(self.state_store)
        self.scheduler_enabled = config.sync.scheduler_enabled
        self.scheduler = SyncScheduler(self.sync_engine, config.sync.interval_seconds)


ERROR_STATUS: list[tuple[type[DeckError], int]] = [
    (NotFound, 404),
    (ValidationError, 400),
    (NotConfigured, 400),
    (RefreshDenied, 401),
    (ProviderCallFailed, 502),
    (StoreError, 500),
]


def _status_for(exc: DeckError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _error_detail(exc: DeckError) -> str:
    if isinstance(exc, RefreshDenied):
        return f"Please reconnect your {exc.provider} account"
    if isinstance(exc, StoreError):
        return "Storage failure"
    return str(exc)


def current_user_id(x_user_id: str | None = Header(default=None)) -> int:
    """Acting user as established by the upstream auth middleware."""
    try:
        user_id = int(str(x_user_id or "").strip())
    except ValueError:
        raise HTTPException(status_code=401, detail="Authentication required") from None
    if user_id <= 0:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id


def create_app() -> FastAPI:
    config_path = os.getenv("DECK_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("DECK_STATE_PATH", "data/deck.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="The Deck", version="0.1.0")
    app.state.context = context

    @app.exception_handler(DeckError)
    def _deck_error(_request: Request, exc: DeckError) -> JSONResponse:
        return JSONResponse(status_code=_status_for(exc), content={"detail": _error_detail(exc)})

    @app.on_event("startup")
    def _startup() -> None:
        if app.state.context.scheduler_enabled:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    # Calendar accounts

    @app.get("/api/calendars/accounts")
    def list_accounts(user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        accounts = app.state.context.accounts.list_accounts(user_id)
        return {
            "accounts": [account.to_public_dict() for account in accounts],
            "providers": app.state.context.sync_engine.providers_configured(),
        }

    @app.post("/api/calendars/accounts", status_code=201)
    def connect_account(
        request: ConnectAccountRequest, user_id: int = Depends(current_user_id)
    ) -> dict[str, Any]:
        try:
            expires_at = parse_iso_datetime(request.expires_at)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid expires_at") from exc
        account = app.state.context.accounts.connect(
            user_id,
            provider=request.provider,
            email=request.email,
            credentials=Credentials(
                access_token=request.access_token,
                refresh_token=request.refresh_token or None,
                expires_at=expires_at,
            ),
            calendar_id=request.calendar_id or None,
        )
        return {"account": account.to_public_dict()}

    @app.delete("/api/calendars/accounts/{account_id}")
    def disconnect_account(account_id: int, user_id: int = Depends(current_user_id)) -> dict[str, str]:
        app.state.context.accounts.disconnect(user_id, account_id)
        return {"message": "Calendar account disconnected"}

    @app.patch("/api/calendars/accounts/{account_id}/toggle")
    def toggle_account(account_id: int, user_id: int = Depends(current_user_id)) -> dict[str, bool]:
        return {"enabled": app.state.context.accounts.toggle(user_id, account_id)}

    @app.post("/api/calendars/accounts/{account_id}/sync")
    def sync_account(account_id: int, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        outcome = app.state.context.sync_engine.sync_account(user_id, account_id)
        return {
            "message": f"Synced {outcome.synced} events from {outcome.provider} calendar",
            "result": outcome.to_dict(),
        }

    @app.post("/api/calendars/sync-all")
    def sync_all(user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        outcomes = app.state.context.sync_engine.sync_all_enabled(user_id)
        return {"results": [outcome.to_dict() for outcome in outcomes]}

    @app.get("/api/calendars/sync-runs")
    def sync_runs(limit: int = 20, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(user_id, limit=limit)}

    # Projects

    @app.get("/api/projects")
    def list_projects(
        category: str | None = None,
        status: str | None = None,
        user_id: int = Depends(current_user_id),
    ) -> dict[str, Any]:
        projects = app.state.context.projects.list_projects(user_id, category=category, status=status)
        return {"projects": [project.to_dict() for project in projects]}

    @app.get("/api/projects/{project_id}")
    def get_project(project_id: int, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        project, tasks, events = app.state.context.projects.project_detail(user_id, project_id)
        return {
            "project": project.to_dict(),
            "tasks": [task.to_dict() for task in tasks],
            "events": [event.to_dict() for event in events],
        }

    @app.post("/api/projects", status_code=201)
    def create_project(request: ProjectCreateRequest, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        project = app.state.context.projects.create_project(user_id, **request.model_dump())
        return {"project": project.to_dict()}

    @app.put("/api/projects/{project_id}")
    def update_project(
        project_id: int, request: ProjectUpdateRequest, user_id: int = Depends(current_user_id)
    ) -> dict[str, Any]:
        project = app.state.context.projects.update_project(
            user_id, project_id, request.model_dump(exclude_unset=True)
        )
        return {"project": project.to_dict()}

    @app.delete("/api/projects/{project_id}")
    def delete_project(project_id: int, user_id: int = Depends(current_user_id)) -> dict[str, str]:
        app.state.context.projects.delete_project(user_id, project_id)
        return {"message": "Project deleted successfully"}

    # Tasks

    @app.get("/api/tasks")
    def list_tasks(
        project_id: int | None = None,
        status: str | None = None,
        priority: str | None = None,
        due_before: str | None = None,
        due_after: str | None = None,
        user_id: int = Depends(current_user_id),
    ) -> dict[str, Any]:
        tasks = app.state.context.tasks.list_tasks(
            user_id,
            project_id=project_id,
            status=status,
            priority=priority,
            due_before=due_before,
            due_after=due_after,
        )
        return {"tasks": [task.to_dict() for task in tasks]}

    @app.get("/api/tasks/{task_id}")
    def get_task(task_id: int, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        return {"task": app.state.context.tasks.get_task(user_id, task_id).to_dict()}

    @app.post("/api/tasks", status_code=201)
    def create_task(request: TaskCreateRequest, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        task = app.state.context.tasks.create_task(user_id, **request.model_dump())
        return {"task": task.to_dict()}

    @app.put("/api/tasks/{task_id}")
    def update_task(
        task_id: int, request: TaskUpdateRequest, user_id: int = Depends(current_user_id)
    ) -> dict[str, Any]:
        task = app.state.context.tasks.update_task(user_id, task_id, request.model_dump(exclude_unset=True))
        return {"task": task.to_dict()}

    @app.delete("/api/tasks/{task_id}")
    def delete_task(task_id: int, user_id: int = Depends(current_user_id)) -> dict[str, str]:
        app.state.context.tasks.delete_task(user_id, task_id)
        return {"message": "Task deleted successfully"}

    # Events

    @app.get("/api/events")
    def list_events(
        project_id: int | None = None,
        start_after: str | None = None,
        start_before: str | None = None,
        user_id: int = Depends(current_user_id),
    ) -> dict[str, Any]:
        events = app.state.context.events.list_events(
            user_id,
            project_id=project_id,
            start_after=start_after,
            start_before=start_before,
        )
        return {"events": [event.to_dict() for event in events]}

    @app.get("/api/events/{event_id}")
    def get_event(event_id: int, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        return {"event": app.state.context.events.get_event(user_id, event_id).to_dict()}

    @app.post("/api/events", status_code=201)
    def create_event(request: EventCreateRequest, user_id: int = Depends(current_user_id)) -> dict[str, Any]:
        event = app.state.context.events.create_event(user_id, **request.model_dump())
        return {"event": event.to_dict()}

    @app.put("/api/events/{event_id}")
    def update_event(
        event_id: int, request: EventUpdateRequest, user_id: int = Depends(current_user_id)
    ) -> dict[str, Any]:
        event = app.state.context.events.update_event(user_id, event_id, request.model_dump(exclude_unset=True))
        return {"event": event.to_dict()}

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: int, user_id: int = Depends(current_user_id)) -> dict[str, str]:
        app.state.context.events.delete_event(user_id, event_id)
        return {"message": "Event deleted successfully"}

    return app
