import sqlite3
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from deck.calendar_clients import google_event_to_remote
from deck.errors import StoreError
from deck.models import Credentials, Event, RemoteEvent
from deck.reconciler import Reconciler, mirror_fields
from deck.state_store import StateStore


SYNCED_AT = datetime(2024, 1, 9, 12, 0, tzinfo=timezone.utc)


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


STANDUP = {
    "id": "abc123",
    "summary": "Standup",
    "start": {"dateTime": "2024-01-10T09:00:00Z"},
    "end": {"dateTime": "2024-01-10T09:30:00Z"},
    "status": "confirmed",
}


class ReconcilerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "deck.db"))
        self.account = self.store.upsert_account(
            user_id=7,
            provider="google",
            email="a@example.com",
            credentials=Credentials(access_token="token"),
        )
        self.reconciler = Reconciler(self.store, clock=lambda: SYNCED_AT)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _mirror_rows(self) -> list:
        return [event for event in self.store.list_events(7) if event.calendar_account_id == self.account.id]

    def test_standup_scenario_inserts_then_is_idempotent(self) -> None:
        remote = [google_event_to_remote(STANDUP)]

        synced = self.reconciler.reconcile(self.account, remote)

        self.assertEqual(synced, 1)
        rows = self._mirror_rows()
        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row.source, "google")
        self.assertEqual(row.external_id, "abc123")
        self.assertEqual(row.title, "Standup")
        self.assertEqual(row.start_time, datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(row.end_time, datetime(2024, 1, 10, 9, 30, tzinfo=timezone.utc))
        self.assertFalse(row.all_day)
        self.assertEqual(row.user_id, 7)
        self.assertEqual(self.store.get_account(self.account.id).last_synced_at, SYNCED_AT)

        synced_again = self.reconciler.reconcile(self.account, remote)

        self.assertEqual(synced_again, 1)
        rows_again = self._mirror_rows()
        self.assertEqual(len(rows_again), 1)
        self.assertEqual(rows_again[0].id, row.id)
        self.assertEqual(rows_again[0].to_dict(), row.to_dict())

    def test_changed_title_updates_row_in_place(self) -> None:
        self.reconciler.reconcile(self.account, [google_event_to_remote(STANDUP)])
        original = _mirror_row(self.store, self.account.id, "abc123")

        renamed = dict(STANDUP, summary="Daily standup", description="Room 4")
        self.reconciler.reconcile(self.account, [google_event_to_remote(renamed)])

        updated = _mirror_row(self.store, self.account.id, "abc123")
        self.assertEqual(updated.id, original.id)
        self.assertEqual(updated.title, "Daily standup")
        self.assertEqual(updated.description, "Room 4")
        self.assertEqual(updated.source, "google")
        self.assertEqual(updated.calendar_account_id, self.account.id)
        self.assertEqual(_mirror_count(self.store, self.account.id), 1)

    def test_date_only_event_is_all_day_with_end_defaulting_to_start(self) -> None:
        remote = google_event_to_remote({"id": "holiday", "summary": "Holiday", "start": {"date": "2024-02-01"}})

        self.reconciler.reconcile(self.account, [remote])

        row = _mirror_row(self.store, self.account.id, "holiday")
        self.assertTrue(row.all_day)
        self.assertEqual(row.start_time, datetime(2024, 2, 1, tzinfo=timezone.utc))
        self.assertEqual(row.end_time, row.start_time)

    def test_cancelled_event_is_never_inserted(self) -> None:
        cancelled = google_event_to_remote(dict(STANDUP, id="gone", status="cancelled"))

        synced = self.reconciler.reconcile(self.account, [cancelled])

        self.assertEqual(synced, 0)
        self.assertIsNone(_mirror_row(self.store, self.account.id, "gone"))

    def test_cancelled_event_leaves_existing_row_untouched(self) -> None:
        self.reconciler.reconcile(self.account, [google_event_to_remote(STANDUP)])
        before = _mirror_row(self.store, self.account.id, "abc123")

        cancelled = dict(STANDUP, summary="Renamed then cancelled", status="cancelled")
        synced = self.reconciler.reconcile(self.account, [google_event_to_remote(cancelled)])

        after = _mirror_row(self.store, self.account.id, "abc123")
        self.assertEqual(synced, 0)
        self.assertIsNotNone(after)
        self.assertEqual(after.title, before.title)

    def test_missing_from_listing_is_not_pruned(self) -> None:
        self.reconciler.reconcile(self.account, [google_event_to_remote(STANDUP)])

        self.reconciler.reconcile(self.account, [])

        self.assertEqual(_mirror_count(self.store, self.account.id), 1)

    def test_empty_listing_still_stamps_last_synced(self) -> None:
        synced = self.reconciler.reconcile(self.account, [])
        self.assertEqual(synced, 0)
        self.assertEqual(self.store.get_account(self.account.id).last_synced_at, SYNCED_AT)
        self.assertEqual(self.account.last_synced_at, SYNCED_AT)

    def test_empty_title_defaults_to_untitled(self) -> None:
        remote = RemoteEvent(
            external_id="x1",
            title="  ",
            start_time=datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc),
        )
        self.reconciler.reconcile(self.account, [remote])
        self.assertEqual(_mirror_row(self.store, self.account.id, "x1").title, "Untitled")

    def test_events_without_start_are_skipped(self) -> None:
        self.assertIsNone(mirror_fields(RemoteEvent(external_id="x2")))
        synced = self.reconciler.reconcile(self.account, [RemoteEvent(external_id="x2")])
        self.assertEqual(synced, 0)

    def test_mirror_fields_are_the_store_columns(self) -> None:
        start = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)
        fields = mirror_fields(RemoteEvent(external_id="x3", title=" Review ", start_time=start))
        self.assertEqual(
            fields,
            {"title": "Review", "description": None, "start_time": start, "end_time": start, "all_day": False},
        )

    def test_local_events_are_not_touched(self) -> None:
        local_id = self.store.insert_local_event(
            user_id=7,
            title="Dentist",
            start_time=datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc),
        )
        self.reconciler.reconcile(self.account, [google_event_to_remote(STANDUP)])
        local = self.store.get_event(local_id)
        self.assertEqual(local.title, "Dentist")
        self.assertEqual(local.source, "local")
        self.assertIsNone(local.external_id)

    def test_same_external_id_on_two_accounts_gives_two_rows(self) -> None:
        other = self.store.upsert_account(
            user_id=7,
            provider="google",
            email="b@example.com",
            credentials=Credentials(access_token="token-b"),
        )
        self.reconciler.reconcile(self.account, [google_event_to_remote(STANDUP)])
        self.reconciler.reconcile(other, [google_event_to_remote(STANDUP)])
        self.assertEqual(_mirror_count(self.store, self.account.id), 1)
        self.assertEqual(_mirror_count(self.store, other.id), 1)

    def test_store_failure_rolls_back_whole_pass(self) -> None:
        second = dict(STANDUP, id="def456", summary="Retro")
        original_upsert = self.store.upsert_mirror_event
        calls = {"count": 0}

        def flaky_upsert(conn, **kwargs):
            calls["count"] += 1
            if calls["count"] == 2:
                raise sqlite3.OperationalError("disk I/O error")
            return original_upsert(conn, **kwargs)

        with mock.patch.object(self.store, "upsert_mirror_event", side_effect=flaky_upsert):
            with self.assertRaises(StoreError):
                self.reconciler.reconcile(
                    self.account,
                    [google_event_to_remote(STANDUP), google_event_to_remote(second)],
                )

        self.assertEqual(_mirror_count(self.store, self.account.id), 0)
        self.assertIsNone(self.store.get_account(self.account.id).last_synced_at)


if __name__ == "__main__":
    unittest.main()
