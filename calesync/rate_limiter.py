from __future__ import annotations

import math
from datetime import datetime

from calesync.models import parse_iso_datetime, serialize_datetime
from calesync.state_store import StateStore


LAST_SYNC_META_KEY = "last_sync_started_at"


class SyncRateLimiter:
    """Minimum spacing between accepted sync starts. Rejected calls are not queued."""

    def __init__(self, state_store: StateStore, min_interval_seconds: float = 5.0) -> None:
        self.state_store = state_store
        self.min_interval_seconds = float(min_interval_seconds)

    def last_started_at(self) -> datetime | None:
        return parse_iso_datetime(self.state_store.get_meta(LAST_SYNC_META_KEY))

    def _elapsed(self, now: datetime) -> float | None:
        last = self.last_started_at()
        if last is None:
            return None
        return (now - last).total_seconds()

    def can_sync(self, now: datetime) -> bool:
        elapsed = self._elapsed(now)
        return elapsed is None or elapsed >= self.min_interval_seconds

    def remaining_seconds(self, now: datetime) -> int:
        elapsed = self._elapsed(now)
        if elapsed is None:
            return 0
        return max(0, math.ceil(self.min_interval_seconds - elapsed))

    def mark_started(self, now: datetime) -> None:
        self.state_store.set_meta(LAST_SYNC_META_KEY, serialize_datetime(now) or "")
