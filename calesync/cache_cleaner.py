from __future__ import annotations

import logging
from datetime import datetime

from calesync.models import DateRange, sync_window
from calesync.state_store import CACHED_TABLE, StateStore


logger = logging.getLogger(__name__)


class CacheEvictor:
    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def evict_outside(self, window: DateRange) -> int:
        """Drop short-window cache rows whose start falls outside ``window``."""
        removed = self.state_store.delete_events_outside(CACHED_TABLE, window)
        if removed:
            logger.info("Evicted %d cached events outside %s..%s", removed, window.start.date(), window.end.date())
        return removed

    def evict(self, now: datetime, past_days: int, future_days: int) -> int:
        return self.evict_outside(sync_window(now, past_days, future_days))
