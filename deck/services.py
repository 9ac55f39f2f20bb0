from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any

from deck.errors import NotFound, ValidationError
from deck.models import (
    PROJECT_CATEGORIES,
    PROJECT_STATUSES,
    PROVIDERS,
    TASK_PRIORITIES,
    TASK_STATUSES,
    CalendarAccount,
    Credentials,
    Event,
    Project,
    Task,
    parse_iso_datetime,
)
from deck.state_store import StateStore
from deck.task_linkage import remove_task_mirror, sync_task_mirror


logger = logging.getLogger(__name__)


def _parse_instant(name: str, value: Any) -> datetime | None:
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {name}: {value!r}") from exc


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _check_choice(name: str, value: str, choices: tuple[str, ...]) -> str:
    if value not in choices:
        raise ValidationError(f"Invalid {name}: {value!r} (expected one of {', '.join(choices)})")
    return value


def _owned_project(
    store: StateStore, user_id: int, project_id: int | None, conn: sqlite3.Connection | None = None
) -> int | None:
    if project_id is None:
        return None
    if store.get_project(project_id, user_id=user_id, conn=conn) is None:
        raise ValidationError("Invalid project")
    return int(project_id)


class AccountRegistry:
    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def connect(
        self,
        user_id: int,
        *,
        provider: str,
        email: str,
        credentials: Credentials,
        calendar_id: str | None = None,
    ) -> CalendarAccount:
        """Store the tokens handed back by a completed OAuth handshake."""
        _check_choice("provider", provider, PROVIDERS)
        email = email.strip()
        if not email:
            raise ValidationError("Account email is required")
        if not credentials.access_token:
            raise ValidationError("Access token is required")
        account = self.state_store.upsert_account(
            user_id=user_id,
            provider=provider,
            email=email,
            credentials=credentials,
            calendar_id=calendar_id,
        )
        logger.info("user %s connected %s account %s", user_id, provider, account.id)
        return account

    def list_accounts(self, user_id: int) -> list[CalendarAccount]:
        return self.state_store.list_accounts(user_id)

    def _require(self, user_id: int, account_id: int) -> CalendarAccount:
        account = self.state_store.get_account(account_id, user_id=user_id)
        if account is None:
            raise NotFound("Calendar account not found")
        return account

    def toggle(self, user_id: int, account_id: int) -> bool:
        account = self._require(user_id, account_id)
        enabled = not account.enabled
        self.state_store.set_account_enabled(account.id, enabled)
        return enabled

    def disconnect(self, user_id: int, account_id: int) -> None:
        account = self._require(user_id, account_id)
        self.state_store.delete_account(account.id)
        logger.info("user %s disconnected %s account %s", user_id, account.provider, account.id)


class ProjectService:
    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def get_project(self, user_id: int, project_id: int) -> Project:
        project = self.state_store.get_project(project_id, user_id=user_id)
        if project is None:
            raise NotFound("Project not found")
        return project

    def project_detail(self, user_id: int, project_id: int) -> tuple[Project, list[Task], list[Event]]:
        """The project with the tasks and events filed under it."""
        project = self.get_project(user_id, project_id)
        tasks = self.state_store.list_tasks(user_id, project_id=project.id)
        events = self.state_store.list_events(user_id, project_id=project.id)
        return project, tasks, events

    def list_projects(
        self, user_id: int, *, category: str | None = None, status: str | None = None
    ) -> list[Project]:
        return self.state_store.list_projects(user_id, category=category, status=status)

    def create_project(
        self,
        user_id: int,
        *,
        name: str,
        description: str | None = None,
        category: str | None = None,
        status: str | None = None,
    ) -> Project:
        name = str(name or "").strip()
        if not name:
            raise ValidationError("Project name is required")
        project_id = self.state_store.insert_project(
            user_id=user_id,
            name=name,
            description=_clean_text(description),
            category=_check_choice("category", category or "personal", PROJECT_CATEGORIES),
            status=_check_choice("status", status or "active", PROJECT_STATUSES),
        )
        return self.get_project(user_id, project_id)

    def update_project(self, user_id: int, project_id: int, changes: dict[str, Any]) -> Project:
        project = self.get_project(user_id, project_id)
        fields: dict[str, Any] = {}
        name = str(changes.get("name") or "").strip()
        if name:
            fields["name"] = name
        if "description" in changes:
            fields["description"] = _clean_text(changes["description"])
        if changes.get("category"):
            fields["category"] = _check_choice("category", changes["category"], PROJECT_CATEGORIES)
        if changes.get("status"):
            fields["status"] = _check_choice("status", changes["status"], PROJECT_STATUSES)
        self.state_store.update_project_fields(project.id, fields)
        return self.get_project(user_id, project.id)

    def delete_project(self, user_id: int, project_id: int) -> None:
        project = self.get_project(user_id, project_id)
        self.state_store.delete_project(project.id)


class TaskService:
    """Task mutations, each committed together with its due-date event."""

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def get_task(self, user_id: int, task_id: int) -> Task:
        task = self.state_store.get_task(task_id, user_id=user_id)
        if task is None:
            raise NotFound("Task not found")
        return task

    def list_tasks(
        self,
        user_id: int,
        *,
        project_id: int | None = None,
        status: str | None = None,
        priority: str | None = None,
        due_before: Any = None,
        due_after: Any = None,
    ) -> list[Task]:
        return self.state_store.list_tasks(
            user_id,
            project_id=project_id,
            status=status,
            priority=priority,
            due_before=_parse_instant("due_before", due_before),
            due_after=_parse_instant("due_after", due_after),
        )

    def create_task(
        self,
        user_id: int,
        *,
        title: str,
        description: str | None = None,
        priority: str | None = None,
        status: str | None = None,
        due_date: Any = None,
        project_id: int | None = None,
    ) -> Task:
        title = str(title or "").strip()
        if not title:
            raise ValidationError("Task title is required")
        priority = _check_choice("priority", priority or "medium", TASK_PRIORITIES)
        status = _check_choice("status", status or "pending", TASK_STATUSES)
        due = _parse_instant("due_date", due_date)
        with self.state_store.transaction() as conn:
            task_id = self.state_store.insert_task(
                conn,
                user_id=user_id,
                title=title,
                description=_clean_text(description),
                priority=priority,
                status=status,
                due_date=due,
                project_id=_owned_project(self.state_store, user_id, project_id, conn),
            )
            task = self.state_store.get_task(task_id, conn=conn)
            sync_task_mirror(self.state_store, conn, task)
        return task

    def update_task(self, user_id: int, task_id: int, changes: dict[str, Any]) -> Task:
        """Apply a partial update; keys present with None clear nullable fields."""
        fields: dict[str, Any] = {}
        title = str(changes.get("title") or "").strip()
        if title:
            fields["title"] = title
        if "description" in changes:
            fields["description"] = _clean_text(changes["description"])
        if changes.get("priority"):
            fields["priority"] = _check_choice("priority", changes["priority"], TASK_PRIORITIES)
        if changes.get("status"):
            fields["status"] = _check_choice("status", changes["status"], TASK_STATUSES)
        if "due_date" in changes:
            fields["due_date"] = _parse_instant("due_date", changes["due_date"])
        if "project_id" in changes:
            fields["project_id"] = changes["project_id"]

        with self.state_store.transaction() as conn:
            task = self.state_store.get_task(task_id, user_id=user_id, conn=conn)
            if task is None:
                raise NotFound("Task not found")
            if "project_id" in fields:
                _owned_project(self.state_store, user_id, fields["project_id"], conn)
            self.state_store.update_task_fields(conn, task.id, fields)
            task = self.state_store.get_task(task.id, conn=conn)
            sync_task_mirror(self.state_store, conn, task)
        return task

    def delete_task(self, user_id: int, task_id: int) -> None:
        with self.state_store.transaction() as conn:
            task = self.state_store.get_task(task_id, user_id=user_id, conn=conn)
            if task is None:
                raise NotFound("Task not found")
            remove_task_mirror(self.state_store, conn, task)
            self.state_store.delete_task(conn, task.id)


class EventService:
    """User-authored events; mirror rows and task due-date rows are read-only here."""

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def get_event(self, user_id: int, event_id: int) -> Event:
        event = self.state_store.get_event(event_id, user_id=user_id)
        if event is None:
            raise NotFound("Event not found")
        return event

    def list_events(
        self,
        user_id: int,
        *,
        project_id: int | None = None,
        start_after: Any = None,
        start_before: Any = None,
    ) -> list[Event]:
        return self.state_store.list_events(
            user_id,
            project_id=project_id,
            start_after=_parse_instant("start_after", start_after),
            start_before=_parse_instant("start_before", start_before),
        )

    def create_event(
        self,
        user_id: int,
        *,
        title: str,
        start_time: Any,
        end_time: Any = None,
        description: str | None = None,
        all_day: bool = False,
        project_id: int | None = None,
    ) -> Event:
        title = str(title or "").strip()
        start = _parse_instant("start_time", start_time)
        if not title or start is None:
            raise ValidationError("Event title and start time are required")
        end = _parse_instant("end_time", end_time)
        if end is not None and end < start:
            raise ValidationError("end_time must not be earlier than start_time")
        event_id = self.state_store.insert_local_event(
            user_id=user_id,
            title=title,
            start_time=start,
            end_time=end,
            description=_clean_text(description),
            all_day=all_day,
            project_id=_owned_project(self.state_store, user_id, project_id),
        )
        return self.get_event(user_id, event_id)

    def _require_editable(self, user_id: int, event_id: int) -> Event:
        event = self.get_event(user_id, event_id)
        if event.is_mirror:
            raise ValidationError(f"Event is synced from {event.source} and cannot be changed here")
        if event.task_id is not None:
            raise ValidationError("Event tracks a task due date; edit the task instead")
        return event

    def update_event(self, user_id: int, event_id: int, changes: dict[str, Any]) -> Event:
        event = self._require_editable(user_id, event_id)
        fields: dict[str, Any] = {}
        title = str(changes.get("title") or "").strip()
        if title:
            fields["title"] = title
        if "description" in changes:
            fields["description"] = _clean_text(changes["description"])
        if changes.get("start_time"):
            fields["start_time"] = _parse_instant("start_time", changes["start_time"])
        if "end_time" in changes:
            end = _parse_instant("end_time", changes["end_time"])
            # A cleared end collapses onto the start, as on create.
            fields["end_time"] = end if end is not None else fields.get("start_time", event.start_time)
        elif "start_time" in fields and event.end_time in (None, event.start_time):
            fields["end_time"] = fields["start_time"]
        if "all_day" in changes and changes["all_day"] is not None:
            fields["all_day"] = bool(changes["all_day"])
        if "project_id" in changes:
            fields["project_id"] = _owned_project(self.state_store, user_id, changes["project_id"])
        start = fields.get("start_time", event.start_time)
        end = fields.get("end_time", event.end_time)
        if end is not None and end < start:
            raise ValidationError("end_time must not be earlier than start_time")
        self.state_store.update_event_fields(event.id, fields)
        return self.get_event(user_id, event.id)

    def delete_event(self, user_id: int, event_id: int) -> None:
        event = self._require_editable(user_id, event_id)
        self.state_store.delete_event(event.id)
