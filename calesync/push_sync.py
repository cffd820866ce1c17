from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from calesync.audit_log import SyncAuditLog, hash_calendar_id
from calesync.errors import ConflictResolutionError, LocalStoreError, NotFoundError, SyncError
from calesync.google_client import GoogleCalendarClient, build_event_body
from calesync.models import LocalEntry, RemoteEvent, utc_now
from calesync.retry import RetryStats
from calesync.state_store import ARCHIVED_TABLE, CACHED_TABLE, StateStore


logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Journal"


@dataclass
class PushResult:
    entry_id: str
    status: str
    entry: LocalEntry | None = None
    event: RemoteEvent | None = None
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        return self.status in {"pushed", "noop"}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"entry_id": self.entry_id, "status": self.status}
        if self.event is not None:
            payload["event_id"] = self.event.event_id
        if self.error is not None:
            payload["error"] = self.error.user_message()
        return payload


@dataclass
class PushBatchResult:
    pushed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"pushed": list(self.pushed), "failed": dict(self.failed)}


class PushSyncEngine:
    def __init__(
        self,
        client: GoogleCalendarClient,
        state_store: StateStore,
        audit_log: SyncAuditLog,
        *,
        event_duration_minutes: int = 30,
        policy: str = "default",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.state_store = state_store
        self.audit_log = audit_log
        self.event_duration_minutes = max(1, int(event_duration_minutes))
        self.policy = policy
        self._clock = clock

    def build_payload(self, entry: LocalEntry) -> dict[str, Any]:
        start = entry.event_date
        return build_event_body(
            title=entry.title.strip() or DEFAULT_TITLE,
            body=entry.body,
            start=start,
            end=start + timedelta(minutes=self.event_duration_minutes),
            entry_id=entry.id,
        )

    def _drop_cached_copies(self, calendar_id: str, event_id: str) -> None:
        self.state_store.delete_event(CACHED_TABLE, calendar_id, event_id)
        self.state_store.delete_event(ARCHIVED_TABLE, calendar_id, event_id)

    def _remove_remote(self, calendar_id: str, event_id: str, stats: RetryStats) -> None:
        try:
            self.client.delete_event(calendar_id, event_id, policy=self.policy, stats=stats)
        except NotFoundError:
            logger.info("Remote event %s already gone", event_id)
        self._drop_cached_copies(calendar_id, event_id)

    def _send(self, entry: LocalEntry, target_calendar_id: str, stats: RetryStats) -> RemoteEvent:
        body = self.build_payload(entry)
        if entry.is_linked and entry.linked_calendar_id == target_calendar_id:
            try:
                return self.client.update_event(
                    target_calendar_id, entry.linked_event_id, body, policy=self.policy, stats=stats
                )
            except NotFoundError:
                logger.info("Linked event %s missing remotely; inserting a new one", entry.linked_event_id)
                self._drop_cached_copies(target_calendar_id, entry.linked_event_id)

        elif entry.is_linked:
            # Moving to another calendar: the old copy goes first.
            self._remove_remote(entry.linked_calendar_id, entry.linked_event_id, stats)

        # A previous insert may have landed without the link being saved.
        existing = self.client.find_event_by_entry_id(
            target_calendar_id, entry.id, policy=self.policy, stats=stats
        )
        if existing is not None:
            return self.client.update_event(
                target_calendar_id, existing.event_id, body, policy=self.policy, stats=stats
            )
        return self.client.insert_event(target_calendar_id, body, policy=self.policy, stats=stats)

    def push_entry(self, entry: LocalEntry, target_calendar_id: str) -> PushResult:
        if entry.has_conflict:
            return PushResult(
                entry_id=entry.id,
                status="failed",
                entry=entry,
                error=ConflictResolutionError("unresolved_conflict", "Resolve the conflict before pushing this entry."),
            )
        if (
            not entry.needs_remote_sync
            and entry.is_linked
            and entry.linked_calendar_id == target_calendar_id
        ):
            return PushResult(entry_id=entry.id, status="noop", entry=entry)

        record = self.audit_log.start("push", target_calendar_id)
        stats = RetryStats()
        try:
            event = self._send(entry, target_calendar_id, stats)
        except LocalStoreError:
            raise
        except SyncError as exc:
            logger.warning(
                "Push failed for entry %s on calendar %s: %s",
                entry.id,
                hash_calendar_id(target_calendar_id),
                exc.user_message(),
            )
            self.audit_log.finish(record, skipped=1, stats=stats, error=exc)
            return PushResult(entry_id=entry.id, status="failed", entry=entry, error=exc)

        event.linked_entry_id = entry.id
        pushed = entry.clone()
        pushed.linked_calendar_id = target_calendar_id
        pushed.linked_event_id = event.event_id
        pushed.linked_event_updated_at = event.updated_at or self._clock()
        pushed.needs_remote_sync = False
        pushed.remote_deleted_at = None
        self.state_store.save_entry(pushed)
        self.state_store.upsert_event(CACHED_TABLE, event, cached_at=self._clock())
        self.audit_log.finish(record, updated=1, stats=stats)
        return PushResult(entry_id=entry.id, status="pushed", entry=pushed, event=event)

    def push_pending(self, target_calendar_id: str, *, include_remote_deleted: bool = True) -> PushBatchResult:
        batch = PushBatchResult()
        for entry in self.state_store.list_pending_entries(include_remote_deleted=include_remote_deleted):
            result = self.push_entry(entry, target_calendar_id)
            if result.ok:
                batch.pushed.append(entry.id)
            else:
                batch.failed[entry.id] = result.error.user_message() if result.error else "push failed"
        return batch

    def delete_entry(self, entry: LocalEntry) -> bool:
        """Delete the remote copy (if any) and then the local entry."""
        if entry.is_linked:
            record = self.audit_log.start("push", entry.linked_calendar_id)
            stats = RetryStats()
            try:
                self._remove_remote(entry.linked_calendar_id, entry.linked_event_id, stats)
            except SyncError as exc:
                self.audit_log.finish(record, stats=stats, error=exc)
                raise
            self.audit_log.finish(record, deleted=1, stats=stats)
        return self.state_store.delete_entry(entry.id)
