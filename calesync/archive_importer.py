from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from dateutil.relativedelta import relativedelta

from calesync.audit_log import SyncAuditLog, hash_calendar_id
from calesync.errors import SyncCancelled, SyncError
from calesync.google_client import GoogleCalendarClient
from calesync.models import ArchiveConfig, ArchiveProgressCheckpoint, DateRange, utc_now
from calesync.retry import RetryStats
from calesync.state_store import ARCHIVED_TABLE, StateStore


logger = logging.getLogger(__name__)


def split_ranges(start: datetime, end: datetime, months: int = 6) -> list[DateRange]:
    """Consecutive windows of ``months`` months covering ``[start, end)``."""
    ranges: list[DateRange] = []
    step = relativedelta(months=max(1, months))
    cursor = start
    while cursor < end:
        upper = min(cursor + step, end)
        ranges.append(DateRange(start=cursor, end=upper))
        cursor = upper
    return ranges


@dataclass
class ArchiveProgress:
    calendar_id: str
    range_index: int
    total_ranges: int
    events_imported: int
    calendars_done: int
    calendars_total: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar_id_hash": hash_calendar_id(self.calendar_id),
            "range_index": self.range_index,
            "total_ranges": self.total_ranges,
            "events_imported": self.events_imported,
            "calendars_done": self.calendars_done,
            "calendars_total": self.calendars_total,
        }


@dataclass
class ArchiveOutcome:
    status: str
    error: BaseException | None = None
    events_imported: int = 0
    calendars_completed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "events_imported": self.events_imported,
            "calendars_completed": len(self.calendars_completed),
        }
        if self.error is not None:
            if isinstance(self.error, SyncError):
                payload["error"] = self.error.user_message()
            else:
                payload["error"] = f"{type(self.error).__name__}: {self.error}"
        return payload


class ArchiveHandle:
    def __init__(self, cancel_event: threading.Event) -> None:
        self._cancel_event = cancel_event
        self._thread: threading.Thread | None = None
        self.outcome: ArchiveOutcome | None = None
        self.progress: ArchiveProgress | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def cancel(self) -> None:
        self._cancel_event.set()

    def wait(self, timeout: float | None = None) -> ArchiveOutcome | None:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.outcome


class ArchiveImporter:
    """Imports the long-window history range by range, resuming from saved checkpoints."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        state_store: StateStore,
        audit_log: SyncAuditLog,
        config: ArchiveConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.state_store = state_store
        self.audit_log = audit_log
        self.config = config
        self._clock = clock

    def ranges(self, now: datetime | None = None) -> list[DateRange]:
        current = now or self._clock()
        end = current + timedelta(days=self.config.future_days)
        return split_ranges(self.config.start, end, self.config.window_months)

    def reset_progress(self, calendar_id: str) -> None:
        self.state_store.clear_archive_progress(calendar_id)

    def start(
        self,
        calendar_ids: Iterable[str],
        on_progress: Callable[[ArchiveProgress], None] | None = None,
    ) -> ArchiveHandle:
        ids = list(dict.fromkeys(calendar_ids))
        cancel_event = threading.Event()
        handle = ArchiveHandle(cancel_event)

        def progress(update: ArchiveProgress) -> None:
            handle.progress = update
            if on_progress is not None:
                on_progress(update)

        def target() -> None:
            try:
                handle.outcome = self.run(ids, cancel_event, progress)
            except Exception as exc:
                logger.exception("Archive import crashed")
                handle.outcome = ArchiveOutcome(status="failed", error=exc)

        thread = threading.Thread(target=target, name="calesync-archive-import", daemon=True)
        handle._thread = thread
        thread.start()
        return handle

    def run(
        self,
        calendar_ids: list[str],
        cancel_event: threading.Event,
        on_progress: Callable[[ArchiveProgress], None] | None = None,
    ) -> ArchiveOutcome:
        ranges = self.ranges()
        outcome = ArchiveOutcome(status="completed")
        for calendar_id in calendar_ids:
            if cancel_event.is_set():
                outcome.status = "cancelled"
                return outcome
            try:
                self._import_calendar(calendar_id, ranges, cancel_event, outcome, len(calendar_ids), on_progress)
            except SyncCancelled:
                outcome.status = "cancelled"
                return outcome
            except SyncError as exc:
                outcome.status = "failed"
                outcome.error = exc
                return outcome
            outcome.calendars_completed.append(calendar_id)
        return outcome

    def _import_calendar(
        self,
        calendar_id: str,
        ranges: list[DateRange],
        cancel_event: threading.Event,
        outcome: ArchiveOutcome,
        calendars_total: int,
        on_progress: Callable[[ArchiveProgress], None] | None,
    ) -> None:
        checkpoint = self.state_store.get_archive_progress(calendar_id)
        start_index = self._resume_index(checkpoint, ranges)
        last_index = len(ranges) - 1
        record = self.audit_log.start("archive", calendar_id)
        stats = RetryStats()
        updated = deleted = 0
        error: BaseException | None = None

        try:
            for index in range(start_index, len(ranges)):
                if cancel_event.is_set():
                    raise SyncCancelled()
                upserted, removed = self._fetch_range(calendar_id, ranges[index], stats)
                updated += upserted
                deleted += removed
                outcome.events_imported += upserted
                now = self._clock()
                self.state_store.save_archive_progress(
                    ArchiveProgressCheckpoint(
                        calendar_id=calendar_id,
                        completed_range_index=index,
                        total_ranges=len(ranges),
                        updated_at=now,
                        completed_at=now if index == last_index else None,
                        range_end=ranges[index].end,
                    )
                )
                if on_progress is not None:
                    on_progress(
                        ArchiveProgress(
                            calendar_id=calendar_id,
                            range_index=index,
                            total_ranges=len(ranges),
                            events_imported=outcome.events_imported,
                            calendars_done=len(outcome.calendars_completed),
                            calendars_total=calendars_total,
                        )
                    )
                if index < last_index:
                    if cancel_event.is_set():
                        raise SyncCancelled()
                    if cancel_event.wait(self.config.pause_seconds):
                        raise SyncCancelled()

            if checkpoint is not None and start_index > last_index and checkpoint.completed_at is None:
                checkpoint.completed_at = self._clock()
                self.state_store.save_archive_progress(checkpoint)
        except SyncCancelled as exc:
            error = exc
            logger.info("Archive import cancelled for calendar %s", hash_calendar_id(calendar_id))
            raise
        except SyncError as exc:
            error = exc
            logger.warning(
                "Archive import failed for calendar %s: %s", hash_calendar_id(calendar_id), exc.user_message()
            )
            raise
        finally:
            self.audit_log.finish(record, updated=updated, deleted=deleted, stats=stats, error=error)

    @staticmethod
    def _resume_index(checkpoint: ArchiveProgressCheckpoint | None, ranges: list[DateRange]) -> int:
        """First range not yet covered by ``checkpoint``.

        Range boundaries are fixed from ``start_date`` except the last one, whose end
        follows the clock. A tail that grew since the checkpoint is fetched again.
        """
        if checkpoint is None:
            return 0
        if checkpoint.range_end is None:
            return checkpoint.completed_range_index + 1
        for index, window in enumerate(ranges):
            if window.end > checkpoint.range_end:
                return index
        return len(ranges)

    def _fetch_range(self, calendar_id: str, window: DateRange, stats: RetryStats) -> tuple[int, int]:
        upserted = deleted = 0
        page_token: str | None = None
        while True:
            page = self.client.list_events(
                calendar_id,
                time_min=window.start,
                time_max=window.end,
                page_token=page_token,
                policy=self.config.retry_policy,
                stats=stats,
            )
            applied = self.state_store.apply_event_page(ARCHIVED_TABLE, page.items, cached_at=self._clock())
            upserted += applied.upserted
            deleted += applied.deleted
            page_token = page.next_page_token
            if not page_token:
                return upserted, deleted
