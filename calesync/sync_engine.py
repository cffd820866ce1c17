from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable

from calesync.archive_importer import ArchiveHandle, ArchiveImporter, ArchiveProgress
from calesync.audit_log import SyncAuditLog
from calesync.cache_cleaner import CacheEvictor
from calesync.calendar_list import CalendarListSync
from calesync.config_manager import ConfigManager
from calesync.conflict_resolver import ConflictResolver, ResolutionResult
from calesync.errors import SyncError
from calesync.google_client import GoogleCalendarClient, StaticTokenProvider
from calesync.models import (
    AppConfig,
    CalendarDescriptor,
    DateRange,
    LocalEntry,
    SyncResult,
    SyncSummary,
    sync_window,
    utc_now,
)
from calesync.pull_sync import PullSyncEngine
from calesync.push_sync import PushBatchResult, PushResult, PushSyncEngine
from calesync.rate_limiter import SyncRateLimiter
from calesync.reconciler import ReflectionEngine
from calesync.recovery import DataRecovery, IntegrityReport, RecoveryResult
from calesync.retry import RetryExecutor
from calesync.state_store import ARCHIVED_TABLE, CACHED_TABLE, StateStore
from calesync.sync_tokens import SyncTokenStore


logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, dict[str, Any]], None]


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        token_provider: Callable[[], str] | None = None,
        client: GoogleCalendarClient | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        on_change: ChangeListener | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.token_provider = token_provider
        self.on_change = on_change
        self._clock = clock
        self._sleep = sleep
        self._client = client
        self._client_key: tuple[Any, ...] | None = None
        self.retry_executor = RetryExecutor(sleep=sleep)
        self.token_store = SyncTokenStore(state_store)
        self.audit_log = SyncAuditLog(state_store, clock=clock)
        self.reflection = ReflectionEngine(state_store, clock=clock)
        self.evictor = CacheEvictor(state_store)
        self._pull_guard = threading.Lock()
        self._client_lock = threading.Lock()
        self._archive_lock = threading.Lock()
        self._archive_handle: ArchiveHandle | None = None

    # Wiring

    def acquire_valid_token(self) -> str:
        if self.token_provider is not None:
            return self.token_provider()
        return StaticTokenProvider(self.config_manager.load().google.access_token)()

    def client_for(self, config: AppConfig) -> GoogleCalendarClient:
        if self._client is not None and self._client_key is None:
            return self._client
        key = (
            config.google.base_url,
            config.google.timeout_seconds,
            config.sync.min_request_interval_ms,
            config.sync.retry_policy,
        )
        with self._client_lock:
            if self._client is None or self._client_key != key:
                self._client = GoogleCalendarClient(
                    config.google,
                    self.acquire_valid_token,
                    retry_executor=self.retry_executor,
                    min_request_interval=config.sync.min_request_interval_ms / 1000.0,
                    default_policy=config.sync.retry_policy,
                    sleep=self._sleep,
                )
                self._client_key = key
            return self._client

    def _pull_engine(self, config: AppConfig) -> PullSyncEngine:
        return PullSyncEngine(
            self.client_for(config),
            self.state_store,
            self.token_store,
            self.audit_log,
            max_workers=config.sync.max_concurrent_calendars,
            policy=config.sync.retry_policy,
            clock=self._clock,
        )

    def _push_engine(self, config: AppConfig) -> PushSyncEngine:
        return PushSyncEngine(
            self.client_for(config),
            self.state_store,
            self.audit_log,
            event_duration_minutes=config.sync.event_duration_minutes,
            policy=config.sync.retry_policy,
            clock=self._clock,
        )

    def _notify(self, kind: str, payload: dict[str, Any]) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(kind, payload)
        except Exception:
            logger.exception("Change listener failed for %s", kind)

    def _window(self, config: AppConfig) -> DateRange:
        return sync_window(self._clock(), config.sync.past_days, config.sync.future_days)

    def _enabled_calendar_ids(self) -> list[str]:
        return [calendar.calendar_id for calendar in self.state_store.list_calendars(enabled_only=True)]

    # Pull

    @property
    def is_syncing(self) -> bool:
        return self._pull_guard.locked()

    def _pull(
        self,
        config: AppConfig,
        calendar_ids: Iterable[str] | None,
        window: DateRange | None,
    ) -> SyncSummary:
        ids = list(calendar_ids) if calendar_ids is not None else self._enabled_calendar_ids()
        results = self._pull_engine(config).pull_calendars(ids, window or self._window(config))
        summary = SyncSummary()
        for result in results:
            summary.updated += result.updated
            summary.deleted += result.deleted
            if result.error is not None:
                summary.failed_calendars.append(result.calendar_id)
            reflected = self.reflection.apply_deltas(result.deltas)
            summary.reflected += reflected.updated
            summary.unlinked += reflected.unlinked
            summary.skipped += reflected.skipped
            summary.conflicts += reflected.conflicts
        return summary

    def run_pull_sync(
        self,
        calendar_ids: Iterable[str] | None = None,
        window: DateRange | None = None,
    ) -> SyncSummary:
        if not self._pull_guard.acquire(blocking=False):
            raise SyncError("A sync cycle is already running.")
        try:
            summary = self._pull(self.config_manager.load(), calendar_ids, window)
        finally:
            self._pull_guard.release()
        self._notify("pull", summary.to_dict())
        return summary

    def run_sync(self, trigger: str = "manual") -> SyncResult:
        started_at = self._clock()
        if not self._pull_guard.acquire(blocking=False):
            return SyncResult(
                status="rejected",
                message="A sync cycle is already running.",
                duration_ms=0,
                trigger=trigger,
            )

        summary = SyncSummary()
        pushed = 0
        push_failed = 0
        try:
            config = self.config_manager.load()
            limiter = SyncRateLimiter(self.state_store, config.sync.rate_limit_seconds)
            if not limiter.can_sync(started_at):
                message = f"Sync rate limited; retry in {limiter.remaining_seconds(started_at)}s."
                self.state_store.record_sync_run(
                    trigger=trigger,
                    status="rate_limited",
                    message=message,
                    duration_ms=0,
                    updated=0,
                    deleted=0,
                    conflicts=0,
                )
                return SyncResult(status="rate_limited", message=message, duration_ms=0, trigger=trigger)
            limiter.mark_started(started_at)

            summary = self._pull(config, None, None)
            summary.evicted = self.evictor.evict(self._clock(), config.sync.past_days, config.sync.future_days)
            if config.sync.push_on_sync:
                batch = self._push_engine(config).push_pending(
                    config.sync.target_calendar_id, include_remote_deleted=False
                )
                pushed = len(batch.pushed)
                push_failed = len(batch.failed)

            status = "partial" if summary.failed_calendars or push_failed else "success"
            message = (
                f"Pulled {summary.updated} changes, {summary.deleted} deletions, "
                f"{summary.conflicts} conflicts; pushed {pushed} entries."
            )
        except Exception as exc:
            logger.exception("Sync run failed")
            status = "error"
            message = exc.user_message() if isinstance(exc, SyncError) else f"{type(exc).__name__}: {exc}"
        finally:
            self._pull_guard.release()

        duration_ms = int((self._clock() - started_at).total_seconds() * 1000)
        run_id = self.state_store.record_sync_run(
            trigger=trigger,
            status=status,
            message=message,
            duration_ms=duration_ms,
            updated=summary.updated,
            deleted=summary.deleted,
            conflicts=summary.conflicts,
        )
        result = SyncResult(
            status=status,
            message=f"{message} run_id={run_id}",
            duration_ms=duration_ms,
            trigger=trigger,
            summary=summary,
            pushed=pushed,
            push_failed=push_failed,
            run_at=started_at,
        )
        self._notify("sync", result.to_dict())
        return result

    # Push and local edits

    def create_entry(self, *, title: str, body: str, event_date: datetime) -> LocalEntry:
        now = self._clock()
        entry = LocalEntry(
            id=uuid.uuid4().hex,
            title=title,
            body=body,
            event_date=event_date,
            created_at=now,
            updated_at=now,
            needs_remote_sync=True,
        )
        self.state_store.save_entry(entry)
        self._notify("entry", {"id": entry.id, "action": "created"})
        return entry

    def edit_entry(self, entry: LocalEntry, **changes: Any) -> LocalEntry:
        edited = entry.clone()
        for key in ("title", "body", "event_date"):
            if key in changes and changes[key] is not None:
                setattr(edited, key, changes[key])
        edited.updated_at = self._clock()
        edited.needs_remote_sync = True
        self.state_store.save_entry(edited)
        self._notify("entry", {"id": edited.id, "action": "updated"})
        return edited

    def push_entry(self, entry: LocalEntry, target_calendar_id: str | None = None) -> PushResult:
        config = self.config_manager.load()
        target = target_calendar_id or config.sync.target_calendar_id
        result = self._push_engine(config).push_entry(entry, target)
        self._notify("push", result.to_dict())
        return result

    def push_pending(self, target_calendar_id: str | None = None) -> PushBatchResult:
        config = self.config_manager.load()
        target = target_calendar_id or config.sync.target_calendar_id
        batch = self._push_engine(config).push_pending(target)
        self._notify("push", batch.to_dict())
        return batch

    def delete_entry(self, entry: LocalEntry) -> bool:
        deleted = self._push_engine(self.config_manager.load()).delete_entry(entry)
        self._notify("entry", {"id": entry.id, "action": "deleted"})
        return deleted

    def resolve_conflict(self, entry: LocalEntry, resolution: str) -> ResolutionResult:
        def push(resolved: LocalEntry) -> PushResult:
            return self.push_entry(resolved, resolved.linked_calendar_id)

        result = ConflictResolver(self.state_store, push=push).resolve(entry, resolution)
        self._notify("conflict", {"id": entry.id, "resolution": resolution})
        return result


    # Recovery

    def check_integrity(self) -> IntegrityReport:
        return DataRecovery(self.state_store).check_integrity()

    def full_recovery(self, preserve_entries: bool = True, include_archive: bool = False) -> RecoveryResult:
        """Rebuild local remote state from scratch and reattach entries by their stored id.

        Entries whose events are not found again stay pending, so the next
        push finds or recreates them through the entry id lookup.
        """
        if not self._pull_guard.acquire(blocking=False):
            raise SyncError("A sync cycle is already running.")
        handle = self._archive_handle
        if handle is not None and handle.running:
            self._pull_guard.release()
            raise SyncError("An archive import is running.")

        config = self.config_manager.load()
        recovery = DataRecovery(self.state_store)
        result = RecoveryResult(preserve_entries=preserve_entries)
        record = self.audit_log.start("recovery")
        error: BaseException | None = None
        try:
            recovery.reset(preserve_entries=preserve_entries)
            result.calendars = len(
                CalendarListSync(
                    self.client_for(config),
                    self.state_store,
                    self.audit_log,
                    policy=config.sync.retry_policy,
                    clock=self._clock,
                ).sync()
            )
            ids = self._enabled_calendar_ids()
            for pulled in self._pull_engine(config).pull_calendars(ids, self._window(config)):
                result.pulled += pulled.updated
                if pulled.error is not None:
                    result.failed_calendars.append(pulled.calendar_id)
            if include_archive and ids:
                importer = ArchiveImporter(
                    self.client_for(config), self.state_store, self.audit_log, config.archive, clock=self._clock
                )
                outcome = importer.run(ids, threading.Event())
                result.archived = outcome.events_imported
                if outcome.error is not None:
                    raise outcome.error
            result.relinked = recovery.relink()
            if result.failed_calendars:
                result.status = "partial"
        except SyncError as exc:
            logger.warning("Recovery failed: %s", exc.user_message())
            error = exc
            result.status = "failed"
            result.error = exc.user_message()
        finally:
            self._pull_guard.release()

        self.audit_log.finish(record, updated=result.pulled + result.archived, error=error)
        self._notify("recovery", result.to_dict())
        return result

    # Archive, cache and calendars

    def import_archive(
        self,
        calendar_ids: Iterable[str] | None = None,
        on_progress: Callable[[ArchiveProgress], None] | None = None,
    ) -> ArchiveHandle:
        with self._archive_lock:
            if self._archive_handle is not None and self._archive_handle.running:
                return self._archive_handle
            config = self.config_manager.load()
            importer = ArchiveImporter(
                self.client_for(config),
                self.state_store,
                self.audit_log,
                config.archive,
                clock=self._clock,
            )
            ids = list(calendar_ids) if calendar_ids is not None else self._enabled_calendar_ids()
            self._archive_handle = importer.start(ids, on_progress)
            return self._archive_handle

    @property
    def archive_handle(self) -> ArchiveHandle | None:
        return self._archive_handle

    def reset_archive_progress(self, calendar_id: str) -> None:
        self.state_store.clear_archive_progress(calendar_id)

    def cleanup_cache(self, window: DateRange | None = None) -> int:
        removed = self.evictor.evict_outside(window or self._window(self.config_manager.load()))
        self._notify("cache", {"evicted": removed})
        return removed

    def sync_calendar_list(self) -> list[CalendarDescriptor]:
        config = self.config_manager.load()
        calendars = CalendarListSync(
            self.client_for(config),
            self.state_store,
            self.audit_log,
            policy=config.sync.retry_policy,
            clock=self._clock,
        ).sync()
        self._notify("calendars", {"count": len(calendars)})
        return calendars

    def status(self) -> dict[str, Any]:
        handle = self._archive_handle
        archive: dict[str, Any] = {"running": bool(handle and handle.running)}
        if handle is not None and handle.outcome is not None:
            archive["outcome"] = handle.outcome.to_dict()
        if handle is not None and handle.progress is not None:
            archive["progress"] = handle.progress.to_dict()
        return {
            "syncing": self.is_syncing,
            "pending_entries": len(self.state_store.list_pending_entries()),
            "conflicts": len(self.state_store.list_conflicted_entries()),
            "cached_events": self.state_store.count_events(CACHED_TABLE),
            "archived_events": self.state_store.count_events(ARCHIVED_TABLE),
            "archive": archive,
            "recent_runs": self.state_store.recent_sync_runs(limit=10),
        }
