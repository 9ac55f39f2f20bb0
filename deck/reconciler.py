from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable

from deck.models import CalendarAccount, RemoteEvent, utc_now
from deck.state_store import StateStore


logger = logging.getLogger(__name__)

UNTITLED = "Untitled"


def mirror_fields(remote: RemoteEvent) -> dict[str, Any] | None:
    """Local row values for a remote event, or None when it cannot be mirrored."""
    if remote.start_time is None:
        return None
    return {
        "title": remote.title.strip() or UNTITLED,
        "description": remote.description or None,
        "start_time": remote.start_time,
        "end_time": remote.end_time or remote.start_time,
        "all_day": bool(remote.all_day),
    }


class Reconciler:
    """Merge one provider listing into the mirror rows of one account.

    Rows are matched on (external_id, calendar_account_id) and written with a
    single INSERT ... ON CONFLICT statement, so a second writer racing on the
    same external id updates the row instead of duplicating it. Cancelled
    events are skipped; rows whose event vanished from the listing are kept.
    """

    def __init__(self, store: StateStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock

    def reconcile(self, account: CalendarAccount, remote_events: Iterable[RemoteEvent]) -> int:
        synced = 0
        skipped = 0
        with self.store.transaction() as conn:
            for remote in remote_events:
                if remote.cancelled:
                    skipped += 1
                    continue
                fields = mirror_fields(remote) if remote.external_id else None
                if fields is None:
                    logger.warning(
                        "account %s: skipping %s event without id or start (%r)",
                        account.id,
                        account.provider,
                        remote.external_id,
                    )
                    skipped += 1
                    continue
                self.store.upsert_mirror_event(conn, account=account, external_id=remote.external_id, **fields)
                synced += 1
            completed_at = self.clock()
            self.store.mark_synced(account.id, completed_at, conn=conn)
        account.last_synced_at = completed_at
        logger.debug("account %s: reconciled %d events, skipped %d", account.id, synced, skipped)
        return synced
