from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable

from calesync.audit_log import SyncAuditLog, hash_calendar_id
from calesync.errors import AuthError, LocalStoreError, SyncError, SyncTokenExpiredError
from calesync.google_client import GoogleCalendarClient
from calesync.models import DateRange, RemoteEvent, utc_now
from calesync.retry import RetryStats
from calesync.state_store import CACHED_TABLE, StateStore
from calesync.sync_tokens import SyncTokenStore


logger = logging.getLogger(__name__)


class PullState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    APPLYING = "applying"
    DONE = "done"
    ERROR = "error"


@dataclass
class CalendarPullResult:
    calendar_id: str
    mode: str = "full"
    state: PullState = PullState.IDLE
    deltas: list[RemoteEvent] = field(default_factory=list)
    updated: int = 0
    deleted: int = 0
    had_410_fallback: bool = False
    stats: RetryStats = field(default_factory=RetryStats)
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.state == PullState.DONE


class PullSyncEngine:
    """Fetches remote deltas into the short-window cache, one calendar at a time."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        state_store: StateStore,
        token_store: SyncTokenStore,
        audit_log: SyncAuditLog,
        *,
        max_workers: int = 4,
        policy: str = "default",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.state_store = state_store
        self.token_store = token_store
        self.audit_log = audit_log
        self.max_workers = max(1, int(max_workers))
        self.policy = policy
        self._clock = clock

    def pull_calendar(self, calendar_id: str, window: DateRange) -> CalendarPullResult:
        token = self.token_store.get(calendar_id)
        result = CalendarPullResult(calendar_id=calendar_id, mode="incremental" if token else "full")
        record = self.audit_log.start(result.mode, calendar_id)

        try:
            if token:
                try:
                    self._traverse(result, sync_token=token)
                except SyncTokenExpiredError:
                    logger.info("Sync token expired for calendar %s; falling back to full sync", hash_calendar_id(calendar_id))
                    result.had_410_fallback = True
                    # Pages already read are superseded by the full listing; their deletions still hold.
                    result.updated = result.deleted = 0
                    result.deltas = [item for item in result.deltas if item.is_cancelled]
                    self.token_store.clear(calendar_id)
                    self.state_store.clear_events(CACHED_TABLE, calendar_id)
                    self._traverse(result, window=window)
            else:
                self._traverse(result, window=window)
            result.state = PullState.DONE
        except SyncError as exc:
            result.state = PullState.ERROR
            result.error = exc
            logger.warning("Pull failed for calendar %s: %s", hash_calendar_id(calendar_id), exc.user_message())

        self.audit_log.finish(
            record,
            updated=result.updated,
            deleted=result.deleted,
            had_410_fallback=result.had_410_fallback,
            stats=result.stats,
            error=result.error,
        )
        if isinstance(result.error, (AuthError, LocalStoreError)):
            raise result.error
        return result

    def _traverse(
        self,
        result: CalendarPullResult,
        *,
        sync_token: str | None = None,
        window: DateRange | None = None,
    ) -> None:
        calendar_id = result.calendar_id
        page_token: str | None = None
        next_sync_token: str | None = None
        while True:
            result.state = PullState.FETCHING
            page = self.client.list_events(
                calendar_id,
                time_min=window.start if window else None,
                time_max=window.end if window else None,
                sync_token=sync_token,
                page_token=page_token,
                policy=self.policy,
                stats=result.stats,
            )
            result.state = PullState.APPLYING
            applied = self.state_store.apply_event_page(CACHED_TABLE, page.items, cached_at=self._clock())
            result.updated += applied.upserted
            result.deleted += applied.deleted

            # Cancelled items carry no extended properties; recover the link from the removed row.
            removed_links = {row.event_id: row.linked_entry_id for row in applied.removed}
            for item in page.items:
                if item.is_cancelled and not item.linked_entry_id:
                    item.linked_entry_id = removed_links.get(item.event_id)
                result.deltas.append(item)

            next_sync_token = page.next_sync_token or next_sync_token
            page_token = page.next_page_token
            if not page_token:
                break

        if next_sync_token:
            self.token_store.save(calendar_id, next_sync_token, self._clock())
        else:
            logger.warning("No sync token returned for calendar %s", hash_calendar_id(calendar_id))

    def pull_calendars(self, calendar_ids: Iterable[str], window: DateRange) -> list[CalendarPullResult]:
        ids = list(dict.fromkeys(calendar_ids))
        if not ids:
            return []
        workers = min(self.max_workers, len(ids))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="calesync-pull") as pool:
            futures = [pool.submit(self.pull_calendar, calendar_id, window) for calendar_id in ids]
            return [future.result() for future in futures]
