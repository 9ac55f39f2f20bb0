from __future__ import annotations

import logging
import sqlite3

from deck.models import Task
from deck.state_store import StateStore


logger = logging.getLogger(__name__)

TITLE_PREFIX = "Task Due: "


def mirror_title(task: Task) -> str:
    return f"{TITLE_PREFIX}{task.title}"


def mirror_description(task: Task) -> str:
    if task.description and task.description.strip():
        return task.description
    return f"Task due: {task.title}"


def sync_task_mirror(store: StateStore, conn: sqlite3.Connection, task: Task) -> None:
    """Bring the task's due-date event in line with the task.

    Runs inside the caller's transaction; ``task.event_id`` is updated in
    place so the caller sees the current link.
    """
    linked = None
    if task.event_id is not None:
        linked = store.get_event(task.event_id, conn=conn)

    if task.due_date is None:
        if linked is not None:
            store.delete_event(linked.id, conn=conn)
            logger.debug("task %s: due date cleared, removed event %s", task.id, linked.id)
        if task.event_id is not None:
            store.set_task_event(conn, task.id, None)
            task.event_id = None
        return

    if linked is not None:
        store.update_event_fields(
            linked.id,
            {
                "title": mirror_title(task),
                "description": mirror_description(task),
                "start_time": task.due_date,
                "end_time": task.due_date,
                "project_id": task.project_id,
                "all_day": True,
            },
            conn=conn,
        )
        return

    event_id = store.insert_local_event(
        user_id=task.user_id,
        title=mirror_title(task),
        description=mirror_description(task),
        start_time=task.due_date,
        end_time=task.due_date,
        all_day=True,
        project_id=task.project_id,
        task_id=task.id,
        conn=conn,
    )
    store.set_task_event(conn, task.id, event_id)
    task.event_id = event_id
    logger.debug("task %s: created due-date event %s", task.id, event_id)


def remove_task_mirror(store: StateStore, conn: sqlite3.Connection, task: Task) -> None:
    if task.event_id is not None:
        store.delete_event(task.event_id, conn=conn)
        task.event_id = None
