from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from calesync.errors import LocalStoreError
from calesync.models import (
    ArchiveProgressCheckpoint,
    ArchivedRemoteEvent,
    CachedRemoteEvent,
    CalendarDescriptor,
    DateRange,
    LocalEntry,
    RemoteEvent,
    SyncAuditRecord,
    utc_now,
)


CACHED_TABLE = "cached_events"
ARCHIVED_TABLE = "archived_events"
_EVENT_TABLES = {CACHED_TABLE, ARCHIVED_TABLE}

_ENTRY_COLUMNS = (
    "id",
    "title",
    "body",
    "event_date",
    "created_at",
    "updated_at",
    "linked_calendar_id",
    "linked_event_id",
    "linked_event_updated_at",
    "needs_remote_sync",
    "has_conflict",
    "conflict_remote_title",
    "conflict_remote_body",
    "conflict_remote_updated_at",
    "conflict_remote_event_date",
    "conflict_detected_at",
    "remote_deleted_at",
)
_ENTRY_DATETIMES = {
    "event_date",
    "created_at",
    "updated_at",
    "linked_event_updated_at",
    "conflict_remote_updated_at",
    "conflict_remote_event_date",
    "conflict_detected_at",
    "remote_deleted_at",
}
_ENTRY_FLAGS = {"needs_remote_sync", "has_conflict"}

_EVENT_COLUMNS = (
    "calendar_id",
    "event_id",
    "title",
    "body",
    "start",
    "end_at",
    "all_day",
    "status",
    "linked_entry_id",
    "updated_at",
    "cached_at",
)


def _ts(value: datetime | None) -> str | None:
    # Fixed-width UTC text so SQL string comparison matches time order.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class PageApplyResult:
    upserted: int = 0
    deleted: int = 0
    removed: list[CachedRemoteEvent] = field(default_factory=list)


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn: sqlite3.Connection | None = None
            try:
                conn = self._connect()
                with conn:
                    yield conn
            except sqlite3.Error as exc:
                raise LocalStoreError(f"State store operation failed: {exc}", cause=exc) from exc
            finally:
                if conn is not None:
                    conn.close()

    def _init_schema(self) -> None:
        event_columns = """
            calendar_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            title TEXT NOT NULL,
            body TEXT NOT NULL,
            start TEXT,
            end_at TEXT,
            all_day INTEGER NOT NULL,
            status TEXT NOT NULL,
            linked_entry_id TEXT,
            updated_at TEXT,
            cached_at TEXT NOT NULL,
            PRIMARY KEY (calendar_id, event_id)
        """
        schema_sql = f"""
        CREATE TABLE IF NOT EXISTS local_entries (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            body TEXT NOT NULL,
            event_date TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            linked_calendar_id TEXT,
            linked_event_id TEXT,
            linked_event_updated_at TEXT,
            needs_remote_sync INTEGER NOT NULL,
            has_conflict INTEGER NOT NULL,
            conflict_remote_title TEXT,
            conflict_remote_body TEXT,
            conflict_remote_updated_at TEXT,
            conflict_remote_event_date TEXT,
            conflict_detected_at TEXT,
            remote_deleted_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_local_entries_link
            ON local_entries(linked_calendar_id, linked_event_id);

        CREATE TABLE IF NOT EXISTS {CACHED_TABLE} ({event_columns});
        CREATE TABLE IF NOT EXISTS {ARCHIVED_TABLE} ({event_columns});

        CREATE TABLE IF NOT EXISTS calendars (
            calendar_id TEXT PRIMARY KEY,
            display_name TEXT NOT NULL,
            enabled INTEGER NOT NULL,
            is_primary INTEGER NOT NULL,
            color_id TEXT,
            last_list_sync_at TEXT
        );

        CREATE TABLE IF NOT EXISTS sync_tokens (
            calendar_id TEXT PRIMARY KEY,
            sync_token TEXT,
            last_synced_at TEXT
        );

        CREATE TABLE IF NOT EXISTS archive_progress (
            calendar_id TEXT PRIMARY KEY,
            completed_range_index INTEGER NOT NULL,
            total_ranges INTEGER NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT,
            range_end TEXT
        );

        CREATE TABLE IF NOT EXISTS sync_audit (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            end_timestamp TEXT,
            sync_type TEXT NOT NULL,
            calendar_id_hash TEXT,
            updated_count INTEGER NOT NULL,
            deleted_count INTEGER NOT NULL,
            skipped_count INTEGER NOT NULL,
            conflict_count INTEGER NOT NULL,
            had_410_fallback INTEGER NOT NULL,
            had_429_retry INTEGER NOT NULL,
            retry_count INTEGER NOT NULL,
            total_wait_seconds REAL NOT NULL,
            http_status INTEGER,
            error_type TEXT,
            error_message TEXT
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            deleted INTEGER NOT NULL,
            conflicts INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._session() as conn:
            conn.executescript(schema_sql)

    # Local entries

    @staticmethod
    def _entry_from_row(row: sqlite3.Row) -> LocalEntry:
        values: dict[str, Any] = {}
        for column in _ENTRY_COLUMNS:
            value = row[column]
            if column in _ENTRY_DATETIMES:
                value = _dt(value)
            elif column in _ENTRY_FLAGS:
                value = bool(value)
            values[column] = value
        return LocalEntry(**values)

    def save_entry(self, entry: LocalEntry) -> LocalEntry:
        values = []
        for column in _ENTRY_COLUMNS:
            value = getattr(entry, column)
            if column in _ENTRY_DATETIMES:
                value = _ts(value)
            elif column in _ENTRY_FLAGS:
                value = int(bool(value))
            values.append(value)
        placeholders = ", ".join("?" for _ in _ENTRY_COLUMNS)
        updates = ", ".join(f"{column} = excluded.{column}" for column in _ENTRY_COLUMNS[1:])
        with self._session() as conn:
            conn.execute(
                f"""
                INSERT INTO local_entries({", ".join(_ENTRY_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT(id) DO UPDATE SET {updates}
                """,
                values,
            )
        return entry

    def get_entry(self, entry_id: str) -> LocalEntry | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM local_entries WHERE id = ?", (str(entry_id),)).fetchone()
        return self._entry_from_row(row) if row else None

    def find_entry_by_link(self, calendar_id: str, event_id: str) -> LocalEntry | None:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT * FROM local_entries
                WHERE linked_calendar_id = ? AND linked_event_id = ?
                """,
                (calendar_id, event_id),
            ).fetchone()
        return self._entry_from_row(row) if row else None

    def _list_entries(self, where: str = "", params: Iterable[Any] = ()) -> list[LocalEntry]:
        query = "SELECT * FROM local_entries"
        if where:
            query += f" WHERE {where}"
        query += " ORDER BY event_date DESC, id"
        with self._session() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._entry_from_row(row) for row in rows]

    def list_entries(self) -> list[LocalEntry]:
        return self._list_entries()

    def list_pending_entries(self, *, include_remote_deleted: bool = True) -> list[LocalEntry]:
        """Entries waiting for a push. Conflicted entries wait for a resolution instead."""
        where = "needs_remote_sync = 1 AND has_conflict = 0"
        if not include_remote_deleted:
            where += " AND remote_deleted_at IS NULL"
        return self._list_entries(where)

    def list_conflicted_entries(self) -> list[LocalEntry]:
        return self._list_entries("has_conflict = 1")

    def delete_entry(self, entry_id: str) -> bool:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM local_entries WHERE id = ?", (str(entry_id),))
        return cursor.rowcount > 0

    def integrity_check(self) -> list[str]:
        """SQLite's own consistency report; ``["ok"]`` for a sound file."""
        with self._session() as conn:
            rows = conn.execute("PRAGMA integrity_check").fetchall()
        return [str(row[0]) for row in rows]

    # Cached / archived remote events

    @staticmethod
    def _check_table(table: str) -> str:
        if table not in _EVENT_TABLES:
            raise ValueError(f"Unknown event table: {table}")
        return table

    @staticmethod
    def _event_from_row(row: sqlite3.Row, table: str) -> CachedRemoteEvent:
        cls = ArchivedRemoteEvent if table == ARCHIVED_TABLE else CachedRemoteEvent
        return cls(
            calendar_id=row["calendar_id"],
            event_id=row["event_id"],
            title=row["title"],
            body=row["body"],
            start=_dt(row["start"]),
            end=_dt(row["end_at"]),
            all_day=bool(row["all_day"]),
            status=row["status"],
            linked_entry_id=row["linked_entry_id"],
            updated_at=_dt(row["updated_at"]),
            cached_at=_dt(row["cached_at"]) or utc_now(),
        )

    @staticmethod
    def _upsert_event_row(conn: sqlite3.Connection, table: str, event: RemoteEvent, cached_at: datetime) -> None:
        conn.execute(
            f"""
            INSERT INTO {table}({", ".join(_EVENT_COLUMNS)})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(calendar_id, event_id) DO UPDATE SET
                title = excluded.title,
                body = excluded.body,
                start = excluded.start,
                end_at = excluded.end_at,
                all_day = excluded.all_day,
                status = excluded.status,
                linked_entry_id = excluded.linked_entry_id,
                updated_at = excluded.updated_at,
                cached_at = excluded.cached_at
            """,
            (
                event.calendar_id,
                event.event_id,
                event.title or "",
                event.body or "",
                _ts(event.start),
                _ts(event.end),
                int(event.all_day),
                event.status or "confirmed",
                event.linked_entry_id,
                _ts(event.updated_at),
                _ts(cached_at),
            ),
        )

    def apply_event_page(
        self,
        table: str,
        events: Iterable[RemoteEvent],
        *,
        cached_at: datetime | None = None,
    ) -> PageApplyResult:
        """Apply one page atomically: cancelled items delete, the rest upsert."""
        table = self._check_table(table)
        stamp = cached_at or utc_now()
        result = PageApplyResult()
        with self._session() as conn:
            for event in events:
                if event.is_cancelled:
                    row = conn.execute(
                        f"SELECT * FROM {table} WHERE calendar_id = ? AND event_id = ?",
                        (event.calendar_id, event.event_id),
                    ).fetchone()
                    if row is None:
                        continue
                    conn.execute(
                        f"DELETE FROM {table} WHERE calendar_id = ? AND event_id = ?",
                        (event.calendar_id, event.event_id),
                    )
                    result.removed.append(self._event_from_row(row, table))
                    result.deleted += 1
                else:
                    self._upsert_event_row(conn, table, event, stamp)
                    result.upserted += 1
        return result

    def upsert_event(self, table: str, event: RemoteEvent, *, cached_at: datetime | None = None) -> None:
        table = self._check_table(table)
        with self._session() as conn:
            self._upsert_event_row(conn, table, event, cached_at or utc_now())

    def get_event(self, table: str, calendar_id: str, event_id: str) -> CachedRemoteEvent | None:
        table = self._check_table(table)
        with self._session() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE calendar_id = ? AND event_id = ?",
                (calendar_id, event_id),
            ).fetchone()
        return self._event_from_row(row, table) if row else None

    def delete_event(self, table: str, calendar_id: str, event_id: str) -> bool:
        table = self._check_table(table)
        with self._session() as conn:
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE calendar_id = ? AND event_id = ?",
                (calendar_id, event_id),
            )
        return cursor.rowcount > 0

    def list_events(self, table: str, calendar_id: str | None = None) -> list[CachedRemoteEvent]:
        table = self._check_table(table)
        with self._session() as conn:
            if calendar_id is None:
                rows = conn.execute(
                    f"SELECT * FROM {table} ORDER BY start, calendar_id, event_id"
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT * FROM {table} WHERE calendar_id = ? ORDER BY start, event_id",
                    (calendar_id,),
                ).fetchall()
        return [self._event_from_row(row, table) for row in rows]

    def count_events(self, table: str, calendar_id: str | None = None) -> int:
        table = self._check_table(table)
        with self._session() as conn:
            if calendar_id is None:
                row = conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()
            else:
                row = conn.execute(
                    f"SELECT COUNT(*) AS n FROM {table} WHERE calendar_id = ?", (calendar_id,)
                ).fetchone()
        return int(row["n"])

    def clear_events(self, table: str, calendar_id: str) -> int:
        table = self._check_table(table)
        with self._session() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE calendar_id = ?", (calendar_id,))
        return cursor.rowcount

    def clear_table(self, table: str) -> int:
        table = self._check_table(table)
        with self._session() as conn:
            cursor = conn.execute(f"DELETE FROM {table}")
        return cursor.rowcount

    def delete_events_outside(self, table: str, window: DateRange) -> int:
        table = self._check_table(table)
        with self._session() as conn:
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE start IS NULL OR start < ? OR start > ?",
                (_ts(window.start), _ts(window.end)),
            )
        return cursor.rowcount

    def display_events(self, window: DateRange) -> list[CachedRemoteEvent]:
        """Events in ``window`` from both caches; the short-window copy wins on overlap."""
        merged: dict[tuple[str, str], CachedRemoteEvent] = {}
        with self._session() as conn:
            for table in (ARCHIVED_TABLE, CACHED_TABLE):
                rows = conn.execute(
                    f"SELECT * FROM {table} WHERE start >= ? AND start <= ?",
                    (_ts(window.start), _ts(window.end)),
                ).fetchall()
                for row in rows:
                    event = self._event_from_row(row, table)
                    merged[event.key] = event
        return sorted(merged.values(), key=lambda item: (_ts(item.start) or "", item.calendar_id, item.event_id))

    # Calendars and sync tokens

    def upsert_calendar(self, calendar: CalendarDescriptor) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO calendars(calendar_id, display_name, enabled, is_primary, color_id, last_list_sync_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(calendar_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    enabled = excluded.enabled,
                    is_primary = excluded.is_primary,
                    color_id = excluded.color_id,
                    last_list_sync_at = excluded.last_list_sync_at
                """,
                (
                    calendar.calendar_id,
                    calendar.display_name,
                    int(calendar.enabled),
                    int(calendar.is_primary),
                    calendar.color_id,
                    _ts(calendar.last_list_sync_at),
                ),
            )

    @staticmethod
    def _calendar_from_row(row: sqlite3.Row) -> CalendarDescriptor:
        return CalendarDescriptor(
            calendar_id=row["calendar_id"],
            display_name=row["display_name"],
            enabled=bool(row["enabled"]),
            is_primary=bool(row["is_primary"]),
            color_id=row["color_id"],
            sync_token=row["sync_token"],
            last_list_sync_at=_dt(row["last_list_sync_at"]),
        )

    def list_calendars(self, *, enabled_only: bool = False) -> list[CalendarDescriptor]:
        query = """
            SELECT c.*, t.sync_token AS sync_token
            FROM calendars c
            LEFT JOIN sync_tokens t ON t.calendar_id = c.calendar_id
        """
        if enabled_only:
            query += " WHERE c.enabled = 1"
        query += " ORDER BY c.is_primary DESC, c.display_name, c.calendar_id"
        with self._session() as conn:
            rows = conn.execute(query).fetchall()
        return [self._calendar_from_row(row) for row in rows]

    def get_calendar(self, calendar_id: str) -> CalendarDescriptor | None:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT c.*, t.sync_token AS sync_token
                FROM calendars c
                LEFT JOIN sync_tokens t ON t.calendar_id = c.calendar_id
                WHERE c.calendar_id = ?
                """,
                (calendar_id,),
            ).fetchone()
        return self._calendar_from_row(row) if row else None

    def set_calendar_enabled(self, calendar_id: str, enabled: bool) -> bool:
        with self._session() as conn:
            cursor = conn.execute(
                "UPDATE calendars SET enabled = ? WHERE calendar_id = ?",
                (int(enabled), calendar_id),
            )
        return cursor.rowcount > 0

    def get_sync_token(self, calendar_id: str) -> tuple[str | None, datetime | None]:
        with self._session() as conn:
            row = conn.execute(
                "SELECT sync_token, last_synced_at FROM sync_tokens WHERE calendar_id = ?",
                (calendar_id,),
            ).fetchone()
        if row is None:
            return None, None
        return row["sync_token"], _dt(row["last_synced_at"])

    def set_sync_token(self, calendar_id: str, token: str | None, synced_at: datetime | None) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO sync_tokens(calendar_id, sync_token, last_synced_at)
                VALUES (?, ?, ?)
                ON CONFLICT(calendar_id) DO UPDATE SET
                    sync_token = excluded.sync_token,
                    last_synced_at = COALESCE(excluded.last_synced_at, sync_tokens.last_synced_at)
                """,
                (calendar_id, token, _ts(synced_at)),
            )

    def clear_all_sync_tokens(self) -> int:
        with self._session() as conn:
            cursor = conn.execute("UPDATE sync_tokens SET sync_token = NULL")
        return cursor.rowcount

    # Archive checkpoints

    def get_archive_progress(self, calendar_id: str) -> ArchiveProgressCheckpoint | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM archive_progress WHERE calendar_id = ?", (calendar_id,)
            ).fetchone()
        if row is None:
            return None
        return ArchiveProgressCheckpoint(
            calendar_id=row["calendar_id"],
            completed_range_index=int(row["completed_range_index"]),
            total_ranges=int(row["total_ranges"]),
            updated_at=_dt(row["updated_at"]),
            completed_at=_dt(row["completed_at"]),
            range_end=_dt(row["range_end"]),
        )

    def list_archive_progress(self) -> list[ArchiveProgressCheckpoint]:
        with self._session() as conn:
            rows = conn.execute("SELECT calendar_id FROM archive_progress ORDER BY calendar_id").fetchall()
        output = []
        for row in rows:
            checkpoint = self.get_archive_progress(row["calendar_id"])
            if checkpoint is not None:
                output.append(checkpoint)
        return output

    def save_archive_progress(self, checkpoint: ArchiveProgressCheckpoint) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO archive_progress(
                    calendar_id, completed_range_index, total_ranges, updated_at, completed_at, range_end
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(calendar_id) DO UPDATE SET
                    completed_range_index = excluded.completed_range_index,
                    total_ranges = excluded.total_ranges,
                    updated_at = excluded.updated_at,
                    completed_at = excluded.completed_at,
                    range_end = excluded.range_end
                """,
                (
                    checkpoint.calendar_id,
                    int(checkpoint.completed_range_index),
                    int(checkpoint.total_ranges),
                    _ts(checkpoint.updated_at or utc_now()),
                    _ts(checkpoint.completed_at),
                    _ts(checkpoint.range_end),
                ),
            )

    def clear_archive_progress(self, calendar_id: str) -> None:
        with self._session() as conn:
            conn.execute("DELETE FROM archive_progress WHERE calendar_id = ?", (calendar_id,))

    # Audit records

    def insert_audit_record(self, record: SyncAuditRecord) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_audit(
                    timestamp, end_timestamp, sync_type, calendar_id_hash,
                    updated_count, deleted_count, skipped_count, conflict_count,
                    had_410_fallback, had_429_retry, retry_count, total_wait_seconds,
                    http_status, error_type, error_message
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _ts(record.timestamp),
                    _ts(record.end_timestamp),
                    record.sync_type,
                    record.calendar_id_hash,
                    int(record.updated_count),
                    int(record.deleted_count),
                    int(record.skipped_count),
                    int(record.conflict_count),
                    int(record.had_410_fallback),
                    int(record.had_429_retry),
                    int(record.retry_count),
                    float(record.total_wait_seconds),
                    record.http_status,
                    record.error_type,
                    record.error_message,
                ),
            )
            return int(cursor.lastrowid)

    def recent_audit_records(self, limit: int = 100, sync_type: str | None = None) -> list[SyncAuditRecord]:
        with self._session() as conn:
            if sync_type is None:
                rows = conn.execute(
                    "SELECT * FROM sync_audit ORDER BY id DESC LIMIT ?", (max(1, limit),)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sync_audit WHERE sync_type = ? ORDER BY id DESC LIMIT ?",
                    (sync_type, max(1, limit)),
                ).fetchall()
        return [
            SyncAuditRecord(
                id=int(row["id"]),
                timestamp=_dt(row["timestamp"]) or utc_now(),
                end_timestamp=_dt(row["end_timestamp"]),
                sync_type=row["sync_type"],
                calendar_id_hash=row["calendar_id_hash"],
                updated_count=int(row["updated_count"]),
                deleted_count=int(row["deleted_count"]),
                skipped_count=int(row["skipped_count"]),
                conflict_count=int(row["conflict_count"]),
                had_410_fallback=bool(row["had_410_fallback"]),
                had_429_retry=bool(row["had_429_retry"]),
                retry_count=int(row["retry_count"]),
                total_wait_seconds=float(row["total_wait_seconds"]),
                http_status=row["http_status"],
                error_type=row["error_type"],
                error_message=row["error_message"],
            )
            for row in rows
        ]

    # Sync run history

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        updated: int,
        deleted: int,
        conflicts: int,
    ) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, updated, deleted, conflicts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (_ts(utc_now()), trigger, status, message, duration_ms, updated, deleted, conflicts),
            )
            return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT id, run_at, trigger, status, message, duration_ms, updated, deleted, conflicts
                FROM sync_runs
                ORDER BY id DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()
        return [dict(row) for row in rows]

    # Key/value metadata

    def set_meta(self, key: str, value: str) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO app_meta(key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (str(key), str(value), _ts(utc_now())),
            )

    def get_meta(self, key: str) -> str | None:
        with self._session() as conn:
            row = conn.execute("SELECT value FROM app_meta WHERE key = ?", (str(key),)).fetchone()
        if row is None:
            return None
        return str(row["value"])
