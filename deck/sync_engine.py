from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Mapping

from deck.calendar_clients import CalendarClient
from deck.errors import DeckError, NotConfigured, NotFound, ProviderCallFailed, RefreshDenied
from deck.models import AccountSyncOutcome, CalendarAccount, SyncConfig, sync_window, utc_now
from deck.reconciler import Reconciler
from deck.state_store import StateStore


logger = logging.getLogger(__name__)

NOT_CONFIGURED = "not_configured"
NEEDS_RECONNECT = "needs_reconnect"


class AccountLocks:
    """One mutex per calendar account id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def get(self, account_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock


class SyncEngine:
    def __init__(
        self,
        state_store: StateStore,
        clients: Mapping[str, CalendarClient],
        sync_config: SyncConfig,
        *,
        reconciler: Reconciler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.clients = dict(clients)
        self.sync_config = sync_config
        self.clock = clock
        self.reconciler = reconciler or Reconciler(state_store, clock=clock)
        self.locks = AccountLocks()

    def providers_configured(self) -> dict[str, bool]:
        return {name: client.is_configured() for name, client in sorted(self.clients.items())}

    def _client_for(self, account: CalendarAccount) -> CalendarClient:
        client = self.clients.get(account.provider)
        if client is None or not client.is_configured():
            raise NotConfigured(account.provider)
        return client

    def _ensure_credentials(self, client: CalendarClient, account: CalendarAccount) -> None:
        if not account.credentials.is_expired(self.clock()):
            return
        logger.info("account %s: access token expired, refreshing", account.id)
        credentials = client.refresh_credentials(account)
        self.state_store.update_credentials(account.id, credentials)
        account.credentials = credentials

    def _sync(self, account: CalendarAccount, trigger: str) -> int:
        started_at = self.clock()
        synced = 0
        try:
            client = self._client_for(account)
            with self.locks.get(account.id):
                self._ensure_credentials(client, account)
                window_start, window_end = sync_window(
                    self.clock(), self.sync_config.past_days, self.sync_config.future_days
                )
                remote_events = client.list_events(account, window_start, window_end)
                synced = self.reconciler.reconcile(account, remote_events)
        except Exception as exc:
            status = "error"
            if isinstance(exc, NotConfigured):
                status = NOT_CONFIGURED
            elif isinstance(exc, RefreshDenied):
                status = NEEDS_RECONNECT
            try:
                self._record(account, trigger, started_at, status, f"{type(exc).__name__}: {exc}", 0)
            except Exception:
                logger.exception("account %s: could not record failed sync run", account.id)
            raise
        self._record(account, trigger, started_at, "success", f"Synced {synced} events", synced)
        logger.info("account %s (%s %s): synced %d events", account.id, account.provider, account.email, synced)
        return synced

    def _record(
        self,
        account: CalendarAccount,
        trigger: str,
        started_at: datetime,
        status: str,
        message: str,
        synced: int,
    ) -> None:
        duration_ms = int((self.clock() - started_at).total_seconds() * 1000)
        self.state_store.record_sync_run(
            trigger=trigger,
            user_id=account.user_id,
            account_id=account.id,
            provider=account.provider,
            status=status,
            message=message,
            duration_ms=max(0, duration_ms),
            synced=synced,
        )

    def sync_account(self, user_id: int, account_id: int, trigger: str = "manual") -> AccountSyncOutcome:
        """Sync one account and raise whatever goes wrong."""
        account = self.state_store.get_account(account_id, user_id=user_id)
        if account is None:
            raise NotFound("Calendar account not found")
        synced = self._sync(account, trigger)
        return AccountSyncOutcome(
            provider=account.provider,
            email=account.email,
            account_id=account.id,
            synced=synced,
        )

    def sync_all_enabled(self, user_id: int, trigger: str = "sync-all") -> list[AccountSyncOutcome]:
        accounts = self.state_store.list_accounts(user_id, enabled_only=True)
        results: list[AccountSyncOutcome] = []
        for account in accounts:
            outcome = AccountSyncOutcome(provider=account.provider, email=account.email, account_id=account.id)
            try:
                outcome.synced = self._sync(account, trigger)
            except NotConfigured:
                outcome.error = NOT_CONFIGURED
            except RefreshDenied as exc:
                logger.warning("account %s: refresh denied, reconnect required: %s", account.id, exc)
                outcome.error = NEEDS_RECONNECT
            except ProviderCallFailed as exc:
                logger.warning("account %s: provider call failed: %s", account.id, exc)
                outcome.error = str(exc)
            except DeckError as exc:
                logger.warning("account %s: sync failed: %s", account.id, exc)
                outcome.error = str(exc)
            except Exception as exc:
                logger.exception("account %s: unexpected sync failure", account.id)
                outcome.error = f"{type(exc).__name__}: {exc}"
            results.append(outcome)
        return results

    def sync_all_users(self, trigger: str = "scheduled") -> dict[int, list[AccountSyncOutcome]]:
        return {
            user_id: self.sync_all_enabled(user_id, trigger=trigger)
            for user_id in self.state_store.users_with_enabled_accounts()
        }
