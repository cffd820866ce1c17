from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable

from calesync.models import LocalEntry, RemoteEvent, utc_now
from calesync.state_store import CACHED_TABLE, StateStore


logger = logging.getLogger(__name__)

CONFLICT_TOLERANCE = timedelta(seconds=30)


@dataclass
class ReflectOutcome:
    action: str
    reason: str
    entry: LocalEntry


@dataclass
class ApplyResult:
    updated: int = 0
    unlinked: int = 0
    skipped: int = 0
    conflicts: int = 0

    def merge(self, other: "ApplyResult") -> None:
        self.updated += other.updated
        self.unlinked += other.unlinked
        self.skipped += other.skipped
        self.conflicts += other.conflicts


def is_conflict(
    entry: LocalEntry,
    remote: RemoteEvent,
    tolerance: timedelta = CONFLICT_TOLERANCE,
) -> bool:
    """True when a synced entry was edited locally more than ``tolerance`` after the remote copy."""
    if entry.linked_event_updated_at is None or remote.updated_at is None:
        return False
    return entry.updated_at > remote.updated_at and entry.updated_at - remote.updated_at > tolerance


def reflect_event(
    *,
    entry: LocalEntry,
    remote: RemoteEvent,
    detected_at: datetime,
    tolerance: timedelta = CONFLICT_TOLERANCE,
) -> ReflectOutcome:
    if entry.is_linked and (entry.linked_calendar_id, entry.linked_event_id) != remote.key:
        return ReflectOutcome(action="skipped", reason="linked_elsewhere", entry=entry)

    if remote.is_cancelled:
        if not entry.is_linked:
            return ReflectOutcome(action="skipped", reason="not_linked", entry=entry)
        updated = entry.clone()
        updated.clear_link()
        updated.clear_conflict()
        # Kept pending so the user can re-publish it; scheduled cycles leave it alone.
        updated.needs_remote_sync = True
        updated.remote_deleted_at = detected_at
        return ReflectOutcome(action="unlinked", reason="remote_deleted", entry=updated)

    if remote.updated_at is None:
        return ReflectOutcome(action="skipped", reason="missing_remote_timestamp", entry=entry)

    baseline = entry.linked_event_updated_at
    if baseline is not None and baseline >= remote.updated_at:
        return ReflectOutcome(action="skipped", reason="already_applied", entry=entry)

    if is_conflict(entry, remote, tolerance):
        if (
            entry.has_conflict
            and entry.conflict_remote_updated_at is not None
            and remote.updated_at <= entry.conflict_remote_updated_at
        ):
            return ReflectOutcome(action="skipped", reason="conflict_recorded", entry=entry)
        updated = entry.clone()
        updated.has_conflict = True
        updated.conflict_remote_title = remote.title
        updated.conflict_remote_body = remote.body
        updated.conflict_remote_updated_at = remote.updated_at
        updated.conflict_remote_event_date = remote.start or entry.event_date
        updated.conflict_detected_at = detected_at
        return ReflectOutcome(action="conflict", reason="local_edit_newer", entry=updated)

    updated = entry.clone()
    updated.title = remote.title
    updated.body = remote.body
    if remote.start is not None:
        updated.event_date = remote.start
    updated.updated_at = remote.updated_at
    updated.linked_calendar_id = remote.calendar_id
    updated.linked_event_id = remote.event_id
    updated.linked_event_updated_at = remote.updated_at
    updated.needs_remote_sync = False
    updated.clear_conflict()
    return ReflectOutcome(action="updated", reason="remote_applied", entry=updated)


class ReflectionEngine:
    """Applies pulled remote changes to the local entries they are linked to."""

    def __init__(
        self,
        state_store: StateStore,
        *,
        tolerance: timedelta = CONFLICT_TOLERANCE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.tolerance = tolerance
        self._clock = clock

    def _resolve_entry(self, remote: RemoteEvent) -> LocalEntry | None:
        if remote.linked_entry_id:
            entry = self.state_store.get_entry(remote.linked_entry_id)
            if entry is not None:
                return entry
        return self.state_store.find_entry_by_link(remote.calendar_id, remote.event_id)

    def apply_deltas(self, deltas: Iterable[RemoteEvent]) -> ApplyResult:
        result = ApplyResult()
        for remote in deltas:
            entry = self._resolve_entry(remote)
            if entry is None:
                if remote.linked_entry_id:
                    result.skipped += 1
                continue
            outcome = reflect_event(
                entry=entry,
                remote=remote,
                detected_at=self._clock(),
                tolerance=self.tolerance,
            )
            if outcome.action == "skipped":
                result.skipped += 1
                continue
            self.state_store.save_entry(outcome.entry)
            if outcome.action == "updated":
                result.updated += 1
            elif outcome.action == "unlinked":
                result.unlinked += 1
            elif outcome.action == "conflict":
                result.conflicts += 1
                logger.info("Conflict recorded for entry %s", entry.id)
        return result

    def apply_from_cache(self, calendar_id: str | None = None) -> ApplyResult:
        rows = self.state_store.list_events(CACHED_TABLE, calendar_id)
        return self.apply_deltas(row.to_remote() for row in rows)
