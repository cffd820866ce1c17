from __future__ import annotations

import threading
from datetime import datetime

from calesync.state_store import StateStore


class SyncTokenStore:
    """Durable per-calendar sync tokens; writes for one calendar are serialised."""

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, calendar_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(calendar_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[calendar_id] = lock
            return lock

    def get(self, calendar_id: str) -> str | None:
        token, _ = self.state_store.get_sync_token(calendar_id)
        return token

    def last_synced_at(self, calendar_id: str) -> datetime | None:
        _, synced_at = self.state_store.get_sync_token(calendar_id)
        return synced_at

    def save(self, calendar_id: str, token: str | None, synced_at: datetime) -> None:
        with self.lock_for(calendar_id):
            self.state_store.set_sync_token(calendar_id, token, synced_at)

    def clear(self, calendar_id: str) -> None:
        with self.lock_for(calendar_id):
            self.state_store.set_sync_token(calendar_id, None, None)
