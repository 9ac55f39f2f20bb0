import sqlite3
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from deck.errors import StoreError
from deck.models import Credentials, Event
from deck.state_store import StateStore


START = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)


def _mirror_row(store: StateStore, account_id: int, external_id: str) -> Event | None:
    conn = sqlite3.connect(store.db_path)
    conn.row_factory = sqlite3.Row
    try:
        row = conn.execute(
            "SELECT * FROM events WHERE calendar_account_id = ? AND external_id = ?",
            (account_id, external_id),
        ).fetchone()
    finally:
        conn.close()
    return Event.from_row(row) if row else None


def _mirror_count(store: StateStore, account_id: int) -> int:
    conn = sqlite3.connect(store.db_path)
    try:
        row = conn.execute("SELECT COUNT(*) FROM events WHERE calendar_account_id = ?", (account_id,)).fetchone()
    finally:
        conn.close()
    return int(row[0])


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "deck.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _account(self, email: str = "a@example.com", provider: str = "google"):
        return self.store.upsert_account(
            user_id=1,
            provider=provider,
            email=email,
            credentials=Credentials(access_token="access", refresh_token="refresh"),
            calendar_id="primary",
        )

    def _mirror(self, conn, account, external_id: str, title: str = "Remote") -> None:
        self.store.upsert_mirror_event(
            conn,
            account=account,
            external_id=external_id,
            title=title,
            description=None,
            start_time=START,
            end_time=START,
            all_day=False,
        )

    def test_reconnect_updates_same_account(self) -> None:
        first = self._account()
        second = self.store.upsert_account(
            user_id=1,
            provider="google",
            email="a@example.com",
            credentials=Credentials(access_token="new-access"),
        )
        self.assertEqual(first.id, second.id)
        self.assertEqual(second.credentials.access_token, "new-access")
        self.assertEqual(second.credentials.refresh_token, "refresh")
        self.assertEqual(second.calendar_id, "primary")
        self.assertEqual(len(self.store.list_accounts(1)), 1)

    def test_same_email_different_provider_is_separate(self) -> None:
        google = self._account()
        outlook = self._account(provider="outlook")
        self.assertNotEqual(google.id, outlook.id)

    def test_enabled_filter_and_users_listing(self) -> None:
        enabled = self._account()
        disabled = self._account(email="b@example.com")
        self.store.set_account_enabled(disabled.id, False)
        self.assertEqual([a.id for a in self.store.list_accounts(1, enabled_only=True)], [enabled.id])
        self.assertEqual(self.store.users_with_enabled_accounts(), [1])

    def test_disconnect_cascades_to_mirror_rows_only(self) -> None:
        account = self._account()
        with self.store.transaction() as conn:
            self._mirror(conn, account, "e1")
            self._mirror(conn, account, "e2")
        local_id = self.store.insert_local_event(user_id=1, title="Local", start_time=START)

        self.store.delete_account(account.id)

        self.assertEqual(_mirror_count(self.store, account.id), 0)
        self.assertIsNotNone(self.store.get_event(local_id))

    def test_mirror_upsert_never_duplicates(self) -> None:
        account = self._account()
        with self.store.transaction() as conn:
            self._mirror(conn, account, "e1", title="First")
        with self.store.transaction() as conn:
            self._mirror(conn, account, "e1", title="Second")
        self.assertEqual(_mirror_count(self.store, account.id), 1)
        self.assertEqual(_mirror_row(self.store, account.id, "e1").title, "Second")

    def test_unique_join_key_rejects_plain_duplicate_insert(self) -> None:
        account = self._account()
        with self.store.transaction() as conn:
            self._mirror(conn, account, "e1")
        with self.assertRaises(StoreError):
            with self.store.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO events(user_id, title, start_time, source, external_id, calendar_account_id, created_at)
                    VALUES (1, 'dup', '2024-01-10T09:00:00+00:00', 'google', 'e1', ?, 'now')
                    """,
                    (account.id,),
                )
        self.assertEqual(_mirror_count(self.store, account.id), 1)

    def test_transaction_rolls_back_on_any_error(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.store.transaction() as conn:
                self.store.insert_local_event(user_id=1, title="Temp", start_time=START, conn=conn)
                raise RuntimeError("abort")
        self.assertEqual(self.store.list_events(1), [])

    def test_local_event_end_defaults_to_start(self) -> None:
        event_id = self.store.insert_local_event(user_id=1, title="Call", start_time=START)
        event = self.store.get_event(event_id)
        self.assertEqual(event.end_time, START)
        self.assertEqual(event.source, "local")

    def test_event_listing_filters_by_start(self) -> None:
        self.store.insert_local_event(user_id=1, title="Early", start_time=datetime(2024, 1, 1, tzinfo=timezone.utc))
        self.store.insert_local_event(user_id=1, title="Late", start_time=datetime(2024, 3, 1, tzinfo=timezone.utc))
        self.store.insert_local_event(user_id=2, title="Other user", start_time=START)
        titles = [
            event.title
            for event in self.store.list_events(1, start_after=datetime(2024, 2, 1, tzinfo=timezone.utc))
        ]
        self.assertEqual(titles, ["Late"])

    def test_update_fields_rejects_unknown_columns(self) -> None:
        event_id = self.store.insert_local_event(user_id=1, title="Call", start_time=START)
        with self.assertRaises(ValueError):
            self.store.update_event_fields(event_id, {"source": "google"})

    def test_deleting_project_detaches_tasks_and_events(self) -> None:
        project_id = self.store.insert_project(
            user_id=1, name="Launch", description=None, category="personal", status="active"
        )
        event_id = self.store.insert_local_event(user_id=1, title="Kickoff", start_time=START, project_id=project_id)
        with self.store.transaction() as conn:
            task_id = self.store.insert_task(
                conn,
                user_id=1,
                title="Ship",
                description=None,
                priority="medium",
                status="pending",
                due_date=None,
                project_id=project_id,
            )

        self.store.delete_project(project_id)

        self.assertIsNone(self.store.get_project(project_id))
        self.assertIsNone(self.store.get_event(event_id).project_id)
        self.assertIsNone(self.store.get_task(task_id).project_id)

    def test_unknown_project_id_violates_foreign_key(self) -> None:
        with self.assertRaises(StoreError):
            self.store.insert_local_event(user_id=1, title="Orphan", start_time=START, project_id=42)

    def test_project_listing_filters_and_scopes(self) -> None:
        first = self.store.insert_project(user_id=1, name="A", description=None, category="academic", status="active")
        second = self.store.insert_project(user_id=1, name="B", description=None, category="personal", status="active")
        self.store.insert_project(user_id=2, name="C", description=None, category="academic", status="active")

        self.assertEqual([project.id for project in self.store.list_projects(1, category="academic")], [first])
        self.assertEqual({project.id for project in self.store.list_projects(1)}, {first, second})
        self.assertIsNone(self.store.get_project(first, user_id=2))
        with self.assertRaises(ValueError):
            self.store.update_project_fields(first, {"user_id": 2})

    def test_sync_runs_are_per_user(self) -> None:
        self.store.record_sync_run(
            trigger="manual",
            user_id=1,
            account_id=3,
            provider="google",
            status="success",
            message="Synced 2 events",
            duration_ms=12,
            synced=2,
        )
        runs = self.store.recent_sync_runs(1)
        self.assertEqual(len(runs), 1)
        self.assertEqual(runs[0]["synced"], 2)
        self.assertEqual(self.store.recent_sync_runs(2), [])


if __name__ == "__main__":
    unittest.main()
