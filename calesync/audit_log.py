from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Callable

from calesync.errors import SyncError, http_status_of
from calesync.models import SYNC_TYPES, SyncAuditRecord, serialize_datetime, utc_now
from calesync.retry import RetryStats
from calesync.state_store import StateStore


def hash_calendar_id(calendar_id: str | None) -> str | None:
    if not calendar_id:
        return None
    return hashlib.sha256(calendar_id.encode("utf-8")).hexdigest()[:8]


class SyncAuditLog:
    """Append-only diagnostics; records counts and flags, never entry content."""

    def __init__(self, state_store: StateStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.state_store = state_store
        self._clock = clock

    def start(self, sync_type: str, calendar_id: str | None = None) -> SyncAuditRecord:
        if sync_type not in SYNC_TYPES:
            raise ValueError(f"Unknown sync type: {sync_type}")
        return SyncAuditRecord(
            sync_type=sync_type,
            calendar_id_hash=hash_calendar_id(calendar_id),
            timestamp=self._clock(),
        )

    def finish(
        self,
        record: SyncAuditRecord,
        *,
        updated: int = 0,
        deleted: int = 0,
        skipped: int = 0,
        conflicts: int = 0,
        had_410_fallback: bool = False,
        stats: RetryStats | None = None,
        error: BaseException | None = None,
    ) -> SyncAuditRecord:
        record.end_timestamp = self._clock()
        record.updated_count = updated
        record.deleted_count = deleted
        record.skipped_count = skipped
        record.conflict_count = conflicts
        record.had_410_fallback = had_410_fallback
        if stats is not None:
            record.had_429_retry = stats.rate_limited
            record.retry_count = stats.retry_count
            record.total_wait_seconds = stats.total_wait_seconds
        if error is not None:
            record.error_type = type(error).__name__
            record.error_message = error.user_message() if isinstance(error, SyncError) else str(error)
            record.http_status = http_status_of(error)
        record.id = self.state_store.insert_audit_record(record)
        return record

    def recent(self, limit: int = 100, sync_type: str | None = None) -> list[SyncAuditRecord]:
        return self.state_store.recent_audit_records(limit=limit, sync_type=sync_type)

    def export_json(self, limit: int = 500) -> str:
        records = self.recent(limit=limit)
        document = {
            "exportedAt": serialize_datetime(self._clock()),
            "recordCount": len(records),
            "records": [record.to_dict() for record in records],
        }
        return json.dumps(document, ensure_ascii=False, indent=2)
