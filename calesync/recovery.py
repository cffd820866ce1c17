from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from calesync.models import LocalEntry
from calesync.state_store import ARCHIVED_TABLE, CACHED_TABLE, StateStore


logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    entries: int = 0
    linked_entries: int = 0
    cached_events: int = 0
    archived_events: int = 0
    calendars: int = 0
    enabled_calendars: int = 0
    orphaned_entry_ids: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["is_healthy"] = self.is_healthy
        return payload


@dataclass
class RecoveryResult:
    status: str = "completed"
    preserve_entries: bool = True
    calendars: int = 0
    pulled: int = 0
    archived: int = 0
    relinked: int = 0
    failed_calendars: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DataRecovery:
    """Local-state diagnostics plus the reset and relink halves of a full rebuild.

    Fetching is left to the caller: after ``reset`` the caller refreshes the
    calendar list and pulls, then ``relink`` reattaches entries to the rows
    that came back.
    """

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def check_integrity(self) -> IntegrityReport:
        store = self.state_store
        entries = store.list_entries()
        calendars = store.list_calendars()
        report = IntegrityReport(
            entries=len(entries),
            cached_events=store.count_events(CACHED_TABLE),
            archived_events=store.count_events(ARCHIVED_TABLE),
            calendars=len(calendars),
            enabled_calendars=sum(1 for calendar in calendars if calendar.enabled),
        )

        for entry in entries:
            if not entry.is_linked:
                continue
            report.linked_entries += 1
            key = (entry.linked_calendar_id, entry.linked_event_id)
            if store.get_event(CACHED_TABLE, *key) is None and store.get_event(ARCHIVED_TABLE, *key) is None:
                report.orphaned_entry_ids.append(entry.id)

        pragma = store.integrity_check()
        if pragma != ["ok"]:
            report.issues.append(f"Database integrity check failed: {'; '.join(pragma[:5])}")
        if not calendars:
            report.issues.append("No calendars are stored; fetch the calendar list.")
        elif report.enabled_calendars and not report.cached_events and report.linked_entries:
            report.issues.append("Calendars are enabled but the event cache is empty.")
        if report.orphaned_entry_ids:
            report.issues.append(
                f"{len(report.orphaned_entry_ids)} linked entries point at events missing from both caches."
            )
        return report

    def reset(self, *, preserve_entries: bool = True) -> int:
        """Drop every fetched row and sync token; returns the number of entries kept."""
        store = self.state_store
        cached = store.clear_table(CACHED_TABLE)
        archived = store.clear_table(ARCHIVED_TABLE)
        store.clear_all_sync_tokens()
        for checkpoint in store.list_archive_progress():
            store.clear_archive_progress(checkpoint.calendar_id)
        logger.info("Recovery cleared %d cached and %d archived events", cached, archived)

        kept = 0
        for entry in store.list_entries():
            if not preserve_entries:
                store.delete_entry(entry.id)
                continue
            store.save_entry(_detached(entry))
            kept += 1
        return kept

    def relink(self) -> int:
        """Reattach entries to fetched events carrying their id; returns how many were linked."""
        store = self.state_store
        relinked = 0
        seen: set[str] = set()
        # Short-window rows first so their fresher timestamps win.
        for table in (CACHED_TABLE, ARCHIVED_TABLE):
            for event in store.list_events(table):
                entry_id = event.linked_entry_id
                if not entry_id or entry_id in seen or event.status == "cancelled":
                    continue
                entry = store.get_entry(entry_id)
                if entry is None:
                    continue
                seen.add(entry_id)
                linked = entry.clone()
                linked.linked_calendar_id = event.calendar_id
                linked.linked_event_id = event.event_id
                linked.linked_event_updated_at = event.updated_at
                linked.needs_remote_sync = False
                linked.remote_deleted_at = None
                store.save_entry(linked)
                relinked += 1
        logger.info("Recovery relinked %d entries", relinked)
        return relinked


def _detached(entry: LocalEntry) -> LocalEntry:
    detached = entry.clone()
    detached.linked_calendar_id = None
    detached.linked_event_id = None
    detached.linked_event_updated_at = None
    detached.needs_remote_sync = True
    detached.has_conflict = False
    detached.conflict_remote_title = None
    detached.conflict_remote_body = None
    detached.conflict_remote_updated_at = None
    detached.conflict_remote_event_date = None
    detached.conflict_detected_at = None
    detached.remote_deleted_at = None
    return detached
