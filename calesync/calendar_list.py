from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from calesync.audit_log import SyncAuditLog
from calesync.errors import SyncError
from calesync.google_client import GoogleCalendarClient
from calesync.models import CalendarDescriptor, utc_now
from calesync.retry import RetryStats
from calesync.state_store import StateStore


logger = logging.getLogger(__name__)


class CalendarListSync:
    """Mirrors the account's calendar list into local descriptors."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        state_store: StateStore,
        audit_log: SyncAuditLog,
        *,
        policy: str = "default",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.state_store = state_store
        self.audit_log = audit_log
        self.policy = policy
        self._clock = clock

    def sync(self) -> list[CalendarDescriptor]:
        record = self.audit_log.start("calendar_list")
        stats = RetryStats()
        seen = 0
        added = 0
        try:
            page_token: str | None = None
            now = self._clock()
            while True:
                page = self.client.list_calendars(page_token, policy=self.policy, stats=stats)
                for remote in page.items:
                    seen += 1
                    existing = self.state_store.get_calendar(remote.calendar_id)
                    if existing is None:
                        added += 1
                        # First sighting: only the primary calendar starts enabled.
                        enabled = remote.primary
                    else:
                        enabled = existing.enabled
                    self.state_store.upsert_calendar(
                        CalendarDescriptor(
                            calendar_id=remote.calendar_id,
                            display_name=remote.summary,
                            enabled=enabled,
                            is_primary=remote.primary,
                            color_id=remote.color_id,
                            last_list_sync_at=now,
                        )
                    )
                page_token = page.next_page_token
                if not page_token:
                    break
        except SyncError as exc:
            self.audit_log.finish(record, updated=seen, stats=stats, error=exc)
            raise
        self.audit_log.finish(record, updated=seen, stats=stats)
        logger.info("Calendar list synced: %d calendars, %d new", seen, added)
        return self.state_store.list_calendars()
