from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from deck.errors import StoreError
from deck.models import (
    CalendarAccount,
    Credentials,
    Event,
    Project,
    Task,
    serialize_datetime,
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS calendar_accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    provider TEXT NOT NULL CHECK(provider IN ('google', 'outlook')),
    email TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    token_expires_at TEXT,
    calendar_id TEXT,
    enabled INTEGER NOT NULL DEFAULT 1,
    last_synced_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(user_id, provider, email)
);

CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    category TEXT NOT NULL DEFAULT 'personal' CHECK(category IN ('personal', 'professional', 'academic')),
    status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'completed', 'on-hold')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    project_id INTEGER REFERENCES projects(id) ON DELETE SET NULL,
    event_id INTEGER REFERENCES events(id) ON DELETE SET NULL,
    title TEXT NOT NULL,
    description TEXT,
    priority TEXT NOT NULL DEFAULT 'medium' CHECK(priority IN ('low', 'medium', 'high')),
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'in-progress', 'completed')),
    due_date TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    project_id INTEGER REFERENCES projects(id) ON DELETE SET NULL,
    task_id INTEGER REFERENCES tasks(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT,
    all_day INTEGER NOT NULL DEFAULT 0,
    source TEXT NOT NULL DEFAULT 'local' CHECK(source IN ('local', 'google', 'outlook')),
    external_id TEXT,
    calendar_account_id INTEGER REFERENCES calendar_accounts(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    UNIQUE(external_id, calendar_account_id)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_at TEXT NOT NULL,
    trigger TEXT NOT NULL,
    user_id INTEGER NOT NULL,
    account_id INTEGER NOT NULL,
    provider TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    duration_ms INTEGER NOT NULL,
    synced INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_calendar_accounts_user ON calendar_accounts(user_id);
CREATE INDEX IF NOT EXISTS idx_projects_user ON projects(user_id);
CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id);
CREATE INDEX IF NOT EXISTS idx_tasks_due_date ON tasks(due_date);
CREATE INDEX IF NOT EXISTS idx_events_user ON events(user_id);
CREATE INDEX IF NOT EXISTS idx_events_start_time ON events(start_time);
CREATE INDEX IF NOT EXISTS idx_sync_runs_user ON sync_runs(user_id);
"""

PROJECT_COLUMNS = ("name", "description", "category", "status")
TASK_COLUMNS = ("title", "description", "priority", "status", "due_date", "project_id")
EVENT_COLUMNS = ("title", "description", "start_time", "end_time", "all_day", "project_id")


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return serialize_datetime(value)
    if isinstance(value, bool):
        return int(value)
    return value


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(SCHEMA_SQL)
            except sqlite3.Error as exc:
                raise StoreError(f"schema init failed: {exc}") from exc
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """One unit of work: commit on success, rollback on any exception.

        sqlite3 errors leave as StoreError; everything else is re-raised as is.
        """
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
            finally:
                conn.close()

    @contextmanager
    def _scope(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.transaction() as own_conn:
            yield own_conn

    # Calendar accounts

    def upsert_account(
        self,
        *,
        user_id: int,
        provider: str,
        email: str,
        credentials: Credentials,
        calendar_id: str | None = None,
    ) -> CalendarAccount:
        with self._scope(None) as conn:
            conn.execute(
                """
                INSERT INTO calendar_accounts(
                    user_id, provider, email, access_token, refresh_token, token_expires_at, calendar_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, provider, email) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = COALESCE(excluded.refresh_token, calendar_accounts.refresh_token),
                    token_expires_at = excluded.token_expires_at,
                    calendar_id = COALESCE(excluded.calendar_id, calendar_accounts.calendar_id)
                """,
                (
                    int(user_id),
                    provider,
                    email,
                    credentials.access_token,
                    credentials.refresh_token,
                    serialize_datetime(credentials.expires_at),
                    calendar_id,
                    _utc_now(),
                ),
            )
            row = conn.execute(
                "SELECT * FROM calendar_accounts WHERE user_id = ? AND provider = ? AND email = ?",
                (int(user_id), provider, email),
            ).fetchone()
        return CalendarAccount.from_row(row)

    def get_account(
        self, account_id: int, *, user_id: int | None = None, conn: sqlite3.Connection | None = None
    ) -> CalendarAccount | None:
        with self._scope(conn) as scoped:
            if user_id is None:
                row = scoped.execute(
                    "SELECT * FROM calendar_accounts WHERE id = ?", (int(account_id),)
                ).fetchone()
            else:
                row = scoped.execute(
                    "SELECT * FROM calendar_accounts WHERE id = ? AND user_id = ?",
                    (int(account_id), int(user_id)),
                ).fetchone()
        return CalendarAccount.from_row(row) if row else None

    def list_accounts(self, user_id: int, *, enabled_only: bool = False) -> list[CalendarAccount]:
        with self._scope(None) as conn:
            if enabled_only:
                rows = conn.execute(
                    """
                    SELECT * FROM calendar_accounts
                    WHERE user_id = ? AND enabled = 1
                    ORDER BY id ASC
                    """,
                    (int(user_id),),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM calendar_accounts
                    WHERE user_id = ?
                    ORDER BY created_at DESC, id DESC
                    """,
                    (int(user_id),),
                ).fetchall()
        return [CalendarAccount.from_row(row) for row in rows]

    def users_with_enabled_accounts(self) -> list[int]:
        with self._scope(None) as conn:
            rows = conn.execute(
                "SELECT DISTINCT user_id FROM calendar_accounts WHERE enabled = 1 ORDER BY user_id"
            ).fetchall()
        return [int(row["user_id"]) for row in rows]

    def set_account_enabled(self, account_id: int, enabled: bool) -> None:
        with self._scope(None) as conn:
            conn.execute(
                "UPDATE calendar_accounts SET enabled = ? WHERE id = ?",
                (int(bool(enabled)), int(account_id)),
            )

    def update_credentials(self, account_id: int, credentials: Credentials) -> None:
        with self._scope(None) as conn:
            conn.execute(
                """
                UPDATE calendar_accounts
                SET access_token = ?, refresh_token = COALESCE(?, refresh_token), token_expires_at = ?
                WHERE id = ?
                """,
                (
                    credentials.access_token,
                    credentials.refresh_token,
                    serialize_datetime(credentials.expires_at),
                    int(account_id),
                ),
            )

    def mark_synced(self, account_id: int, when: datetime, *, conn: sqlite3.Connection | None = None) -> None:
        with self._scope(conn) as scoped:
            scoped.execute(
                "UPDATE calendar_accounts SET last_synced_at = ? WHERE id = ?",
                (serialize_datetime(when), int(account_id)),
            )

    def delete_account(self, account_id: int) -> None:
        # Mirror rows go with the account through ON DELETE CASCADE.
        with self._scope(None) as conn:
            conn.execute("DELETE FROM calendar_accounts WHERE id = ?", (int(account_id),))

    # Events

    def upsert_mirror_event(
        self,
        conn: sqlite3.Connection,
        *,
        account: CalendarAccount,
        external_id: str,
        title: str,
        description: str | None,
        start_time: datetime,
        end_time: datetime,
        all_day: bool,
    ) -> None:
        conn.execute(
            """
            INSERT INTO events(
                user_id, title, description, start_time, end_time, all_day,
                source, external_id, calendar_account_id, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(external_id, calendar_account_id) DO UPDATE SET
                title = excluded.title,
                description = excluded.description,
                start_time = excluded.start_time,
                end_time = excluded.end_time,
                all_day = excluded.all_day
            """,
            (
                int(account.user_id),
                title,
                description,
                serialize_datetime(start_time),
                serialize_datetime(end_time),
                int(bool(all_day)),
                account.provider,
                external_id,
                int(account.id),
                _utc_now(),
            ),
        )

    def get_event(
        self, event_id: int, *, user_id: int | None = None, conn: sqlite3.Connection | None = None
    ) -> Event | None:
        with self._scope(conn) as scoped:
            if user_id is None:
                row = scoped.execute("SELECT * FROM events WHERE id = ?", (int(event_id),)).fetchone()
            else:
                row = scoped.execute(
                    "SELECT * FROM events WHERE id = ? AND user_id = ?", (int(event_id), int(user_id))
                ).fetchone()
        return Event.from_row(row) if row else None

    def list_events(
        self,
        user_id: int,
        *,
        project_id: int | None = None,
        start_after: datetime | None = None,
        start_before: datetime | None = None,
    ) -> list[Event]:
        query = "SELECT * FROM events WHERE user_id = ?"
        params: list[Any] = [int(user_id)]
        if project_id is not None:
            query += " AND project_id = ?"
            params.append(int(project_id))
        if start_after is not None:
            query += " AND start_time >= ?"
            params.append(serialize_datetime(start_after))
        if start_before is not None:
            query += " AND start_time <= ?"
            params.append(serialize_datetime(start_before))
        query += " ORDER BY start_time ASC, id ASC"
        with self._scope(None) as conn:
            rows = conn.execute(query, params).fetchall()
        return [Event.from_row(row) for row in rows]

    def insert_local_event(
        self,
        *,
        user_id: int,
        title: str,
        start_time: datetime,
        end_time: datetime | None = None,
        description: str | None = None,
        all_day: bool = False,
        project_id: int | None = None,
        task_id: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        with self._scope(conn) as scoped:
            cursor = scoped.execute(
                """
                INSERT INTO events(
                    user_id, project_id, task_id, title, description, start_time, end_time, all_day, source, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'local', ?)
                """,
                (
                    int(user_id),
                    project_id,
                    task_id,
                    title,
                    description,
                    serialize_datetime(start_time),
                    serialize_datetime(end_time if end_time is not None else start_time),
                    int(bool(all_day)),
                    _utc_now(),
                ),
            )
            return int(cursor.lastrowid)

    def update_event_fields(
        self, event_id: int, fields: dict[str, Any], *, conn: sqlite3.Connection | None = None
    ) -> None:
        unknown = set(fields) - set(EVENT_COLUMNS)
        if unknown:
            raise ValueError(f"unknown event fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_db_value(value) for value in fields.values()]
        with self._scope(conn) as scoped:
            scoped.execute(f"UPDATE events SET {assignments} WHERE id = ?", (*values, int(event_id)))  # nosec B608

    def delete_event(self, event_id: int, *, conn: sqlite3.Connection | None = None) -> None:
        with self._scope(conn) as scoped:
            scoped.execute("DELETE FROM events WHERE id = ?", (int(event_id),))

    # Projects

    def insert_project(
        self,
        *,
        user_id: int,
        name: str,
        description: str | None,
        category: str,
        status: str,
    ) -> int:
        now = _utc_now()
        with self._scope(None) as conn:
            cursor = conn.execute(
                """
                INSERT INTO projects(user_id, name, description, category, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (int(user_id), name, description, category, status, now, now),
            )
            return int(cursor.lastrowid)

    def get_project(
        self, project_id: int, *, user_id: int | None = None, conn: sqlite3.Connection | None = None
    ) -> Project | None:
        with self._scope(conn) as scoped:
            if user_id is None:
                row = scoped.execute("SELECT * FROM projects WHERE id = ?", (int(project_id),)).fetchone()
            else:
                row = scoped.execute(
                    "SELECT * FROM projects WHERE id = ? AND user_id = ?", (int(project_id), int(user_id))
                ).fetchone()
        return Project.from_row(row) if row else None

    def list_projects(
        self, user_id: int, *, category: str | None = None, status: str | None = None
    ) -> list[Project]:
        query = "SELECT * FROM projects WHERE user_id = ?"
        params: list[Any] = [int(user_id)]
        if category:
            query += " AND category = ?"
            params.append(category)
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY updated_at DESC, id DESC"
        with self._scope(None) as conn:
            rows = conn.execute(query, params).fetchall()
        return [Project.from_row(row) for row in rows]

    def update_project_fields(self, project_id: int, fields: dict[str, Any]) -> None:
        unknown = set(fields) - set(PROJECT_COLUMNS)
        if unknown:
            raise ValueError(f"unknown project fields: {sorted(unknown)}")
        assignments = ", ".join([f"{name} = ?" for name in fields] + ["updated_at = ?"])
        values = [_db_value(value) for value in fields.values()] + [_utc_now()]
        with self._scope(None) as conn:
            conn.execute(f"UPDATE projects SET {assignments} WHERE id = ?", (*values, int(project_id)))  # nosec B608

    def delete_project(self, project_id: int) -> None:
        # Tasks and events keep existing with project_id cleared (ON DELETE SET NULL).
        with self._scope(None) as conn:
            conn.execute("DELETE FROM projects WHERE id = ?", (int(project_id),))

    # Tasks

    def get_task(
        self, task_id: int, *, user_id: int | None = None, conn: sqlite3.Connection | None = None
    ) -> Task | None:
        with self._scope(conn) as scoped:
            if user_id is None:
                row = scoped.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),)).fetchone()
            else:
                row = scoped.execute(
                    "SELECT * FROM tasks WHERE id = ? AND user_id = ?", (int(task_id), int(user_id))
                ).fetchone()
        return Task.from_row(row) if row else None

    def list_tasks(
        self,
        user_id: int,
        *,
        project_id: int | None = None,
        status: str | None = None,
        priority: str | None = None,
        due_before: datetime | None = None,
        due_after: datetime | None = None,
    ) -> list[Task]:
        query = "SELECT * FROM tasks WHERE user_id = ?"
        params: list[Any] = [int(user_id)]
        if project_id is not None:
            query += " AND project_id = ?"
            params.append(int(project_id))
        if status:
            query += " AND status = ?"
            params.append(status)
        if priority:
            query += " AND priority = ?"
            params.append(priority)
        if due_before is not None:
            query += " AND due_date <= ?"
            params.append(serialize_datetime(due_before))
        if due_after is not None:
            query += " AND due_date >= ?"
            params.append(serialize_datetime(due_after))
        query += """
            ORDER BY due_date IS NULL, due_date ASC,
                CASE priority WHEN 'high' THEN 0 WHEN 'medium' THEN 1 ELSE 2 END,
                created_at DESC, id DESC
        """
        with self._scope(None) as conn:
            rows = conn.execute(query, params).fetchall()
        return [Task.from_row(row) for row in rows]

    def insert_task(
        self,
        conn: sqlite3.Connection,
        *,
        user_id: int,
        title: str,
        description: str | None,
        priority: str,
        status: str,
        due_date: datetime | None,
        project_id: int | None,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO tasks(user_id, project_id, title, description, priority, status, due_date, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(user_id),
                project_id,
                title,
                description,
                priority,
                status,
                serialize_datetime(due_date),
                _utc_now(),
            ),
        )
        return int(cursor.lastrowid)

    def update_task_fields(self, conn: sqlite3.Connection, task_id: int, fields: dict[str, Any]) -> None:
        unknown = set(fields) - set(TASK_COLUMNS)
        if unknown:
            raise ValueError(f"unknown task fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_db_value(value) for value in fields.values()]
        conn.execute(f"UPDATE tasks SET {assignments} WHERE id = ?", (*values, int(task_id)))  # nosec B608

    def set_task_event(self, conn: sqlite3.Connection, task_id: int, event_id: int | None) -> None:
        conn.execute("UPDATE tasks SET event_id = ? WHERE id = ?", (event_id, int(task_id)))

    def delete_task(self, conn: sqlite3.Connection, task_id: int) -> None:
        conn.execute("DELETE FROM tasks WHERE id = ?", (int(task_id),))

    # Sync runs

    def record_sync_run(
        self,
        *,
        trigger: str,
        user_id: int,
        account_id: int,
        provider: str,
        status: str,
        message: str,
        duration_ms: int,
        synced: int,
    ) -> int:
        with self._scope(None) as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs(run_at, trigger, user_id, account_id, provider, status, message, duration_ms, synced)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _utc_now(),
                    trigger,
                    int(user_id),
                    int(account_id),
                    provider,
                    status,
                    message,
                    int(duration_ms),
                    int(synced),
                ),
            )
            return int(cursor.lastrowid)

    def recent_sync_runs(self, user_id: int, limit: int = 20) -> list[dict[str, Any]]:
        with self._scope(None) as conn:
            rows = conn.execute(
                """
                SELECT id, run_at, trigger, account_id, provider, status, message, duration_ms, synced
                FROM sync_runs
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (int(user_id), max(1, limit)),
            ).fetchall()
        return [dict(row) for row in rows]
