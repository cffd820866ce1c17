from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


DEFAULT_GOOGLE_BASE_URL = "https://www.googleapis.com/calendar/v3"
RETRY_POLICY_NAMES = ("default", "aggressive", "conservative")
SYNC_TYPES = ("incremental", "full", "archive", "push", "calendar_list", "recovery")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _policy_name(value: Any, default: str) -> str:
    name = str(value or default).strip().lower()
    return name if name in RETRY_POLICY_NAMES else default


@dataclass
class GoogleAPIConfig:
    base_url: str = DEFAULT_GOOGLE_BASE_URL
    access_token: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleAPIConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", DEFAULT_GOOGLE_BASE_URL)).strip().rstrip("/")
            or DEFAULT_GOOGLE_BASE_URL,
            access_token=str(data.get("access_token", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class SyncConfig:
    past_days: int = 30
    future_days: int = 90
    interval_seconds: int = 300
    target_calendar_id: str = "primary"
    event_duration_minutes: int = 30
    max_concurrent_calendars: int = 4
    min_request_interval_ms: int = 100
    rate_limit_seconds: int = 5
    retry_policy: str = "default"
    push_on_sync: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            past_days=max(0, int(data.get("past_days", 30))),
            future_days=max(0, int(data.get("future_days", 90))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            target_calendar_id=str(data.get("target_calendar_id", "primary")).strip() or "primary",
            event_duration_minutes=max(1, int(data.get("event_duration_minutes", 30))),
            max_concurrent_calendars=max(1, int(data.get("max_concurrent_calendars", 4))),
            min_request_interval_ms=max(100, int(data.get("min_request_interval_ms", 100))),
            rate_limit_seconds=max(0, int(data.get("rate_limit_seconds", 5))),
            retry_policy=_policy_name(data.get("retry_policy"), "default"),
            push_on_sync=bool(data.get("push_on_sync", True)),
        )


@dataclass
class ArchiveConfig:
    start_date: str = "2000-01-01"
    future_days: int = 365
    window_months: int = 6
    pause_seconds: float = 0.2
    retry_policy: str = "conservative"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ArchiveConfig":
        data = data or {}
        start_text = str(data.get("start_date", "2000-01-01")).strip() or "2000-01-01"
        # Raises on a malformed date.
        date.fromisoformat(start_text)
        return cls(
            start_date=start_text,
            future_days=max(0, int(data.get("future_days", 365))),
            window_months=max(1, int(data.get("window_months", 6))),
            pause_seconds=max(0.0, float(data.get("pause_seconds", 0.2))),
            retry_policy=_policy_name(data.get("retry_policy"), "conservative"),
        )

    @property
    def start(self) -> datetime:
        return datetime.combine(date.fromisoformat(self.start_date), time.min, tzinfo=timezone.utc)


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    google: GoogleAPIConfig = field(default_factory=GoogleAPIConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleAPIConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
            archive=ArchiveConfig.from_dict(data.get("archive")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def contains(self, value: datetime | None) -> bool:
        if value is None:
            return False
        return self.start <= value <= self.end

    def to_dict(self) -> dict[str, Any]:
        return {"start": serialize_datetime(self.start), "end": serialize_datetime(self.end)}


def sync_window(now: datetime, past_days: int, future_days: int) -> DateRange:
    now_utc = _ensure_tz(now)
    return DateRange(
        start=now_utc - timedelta(days=max(0, past_days)),
        end=now_utc + timedelta(days=max(0, future_days)),
    )


@dataclass
class LocalEntry:
    id: str
    title: str = ""
    body: str = ""
    event_date: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    linked_calendar_id: str | None = None
    linked_event_id: str | None = None
    linked_event_updated_at: datetime | None = None
    needs_remote_sync: bool = False
    has_conflict: bool = False
    conflict_remote_title: str | None = None
    conflict_remote_body: str | None = None
    conflict_remote_updated_at: datetime | None = None
    conflict_remote_event_date: datetime | None = None
    conflict_detected_at: datetime | None = None
    remote_deleted_at: datetime | None = None

    @property
    def is_linked(self) -> bool:
        return bool(self.linked_calendar_id and self.linked_event_id)

    @property
    def has_conflict_snapshot(self) -> bool:
        return (
            self.conflict_remote_title is not None
            and self.conflict_remote_body is not None
            and self.conflict_remote_updated_at is not None
            and self.conflict_remote_event_date is not None
        )

    def clear_conflict(self) -> None:
        self.has_conflict = False
        self.conflict_remote_title = None
        self.conflict_remote_body = None
        self.conflict_remote_updated_at = None
        self.conflict_remote_event_date = None
        self.conflict_detected_at = None

    def clear_link(self) -> None:
        self.linked_calendar_id = None
        self.linked_event_id = None
        self.linked_event_updated_at = None

    def clone(self) -> "LocalEntry":
        return LocalEntry(**{f.name: getattr(self, f.name) for f in fields(self)})

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = serialize_datetime(value)
        return payload


@dataclass
class RemoteEvent:
    """An event as returned by the remote calendar service."""

    calendar_id: str
    event_id: str
    status: str = "confirmed"
    title: str = ""
    body: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    updated_at: datetime | None = None
    linked_entry_id: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @property
    def key(self) -> tuple[str, str]:
        return (self.calendar_id, self.event_id)


@dataclass
class CachedRemoteEvent:
    calendar_id: str
    event_id: str
    title: str = ""
    body: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    status: str = "confirmed"
    linked_entry_id: str | None = None
    updated_at: datetime | None = None
    cached_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> tuple[str, str]:
        return (self.calendar_id, self.event_id)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("start", "end", "updated_at", "cached_at"):
            payload[key] = serialize_datetime(payload[key])
        return payload

    def to_remote(self) -> RemoteEvent:
        return RemoteEvent(
            calendar_id=self.calendar_id,
            event_id=self.event_id,
            status=self.status,
            title=self.title,
            body=self.body,
            start=self.start,
            end=self.end,
            all_day=self.all_day,
            updated_at=self.updated_at,
            linked_entry_id=self.linked_entry_id,
        )


@dataclass
class ArchivedRemoteEvent(CachedRemoteEvent):
    pass


@dataclass
class EventPage:
    items: list[RemoteEvent] = field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None


@dataclass
class RemoteCalendar:
    calendar_id: str
    summary: str = ""
    primary: bool = False
    color_id: str | None = None


@dataclass
class CalendarPage:
    items: list[RemoteCalendar] = field(default_factory=list)
    next_page_token: str | None = None


@dataclass
class CalendarDescriptor:
    calendar_id: str
    display_name: str = ""
    enabled: bool = False
    is_primary: bool = False
    color_id: str | None = None
    sync_token: str | None = None
    last_list_sync_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_list_sync_at"] = serialize_datetime(self.last_list_sync_at)
        # Tokens are opaque cursors; only expose whether one is held.
        payload["has_sync_token"] = bool(payload.pop("sync_token"))
        return payload


@dataclass
class ArchiveProgressCheckpoint:
    calendar_id: str
    completed_range_index: int = -1
    total_ranges: int = 0
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    range_end: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        payload["completed_at"] = serialize_datetime(self.completed_at)
        payload["range_end"] = serialize_datetime(self.range_end)
        return payload


@dataclass
class SyncAuditRecord:
    sync_type: str
    calendar_id_hash: str | None = None
    timestamp: datetime = field(default_factory=utc_now)
    end_timestamp: datetime | None = None
    updated_count: int = 0
    deleted_count: int = 0
    skipped_count: int = 0
    conflict_count: int = 0
    had_410_fallback: bool = False
    had_429_retry: bool = False
    retry_count: int = 0
    total_wait_seconds: float = 0.0
    http_status: int | None = None
    error_type: str | None = None
    error_message: str | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "timestamp": serialize_datetime(self.timestamp),
            "syncType": self.sync_type,
            "updatedCount": self.updated_count,
            "deletedCount": self.deleted_count,
            "skippedCount": self.skipped_count,
            "conflictCount": self.conflict_count,
            "had410Fallback": self.had_410_fallback,
            "had429Retry": self.had_429_retry,
            "retryCount": self.retry_count,
            "totalWaitSeconds": round(self.total_wait_seconds, 3),
        }
        if self.end_timestamp is not None:
            payload["endTimestamp"] = serialize_datetime(self.end_timestamp)
            payload["durationSeconds"] = (self.end_timestamp - self.timestamp).total_seconds()
        if self.calendar_id_hash is not None:
            payload["calendarIdHash"] = self.calendar_id_hash
        if self.http_status is not None:
            payload["httpStatusCode"] = self.http_status
        if self.error_type is not None:
            payload["errorType"] = self.error_type
        if self.error_message is not None:
            payload["errorMessage"] = self.error_message
        return payload


@dataclass
class SyncSummary:
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    conflicts: int = 0
    unlinked: int = 0
    reflected: int = 0
    evicted: int = 0
    failed_calendars: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    summary: SyncSummary = field(default_factory=SyncSummary)
    pushed: int = 0
    push_failed: int = 0
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "summary": self.summary.to_dict(),
            "pushed": self.pushed,
            "push_failed": self.push_failed,
            "run_at": serialize_datetime(self.run_at),
        }
