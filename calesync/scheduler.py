from __future__ import annotations

import logging
import threading
from typing import Optional

from calesync.config_manager import ConfigManager
from calesync.errors import SyncError
from calesync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 30


class SyncScheduler:
    """Background loop: a cycle at startup, then every ``sync.interval_seconds``.

    A manual trigger wakes the loop early. The calendar list is fetched before
    the first cycle when no calendars are known yet.
    """

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calesync-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def trigger_manual(self) -> None:
        self._wake_event.set()

    def _has_token(self) -> bool:
        return bool(self.config_manager.load().google.access_token)

    def _bootstrap_calendars(self) -> None:
        if self.sync_engine.state_store.list_calendars():
            return
        try:
            self.sync_engine.sync_calendar_list()
        except SyncError as exc:
            logger.warning("Initial calendar list fetch failed: %s", exc.user_message())

    def run_cycle(self, trigger: str) -> None:
        if self.sync_engine.token_provider is None and not self._has_token():
            logger.info("Skipping %s sync: no access token configured", trigger)
            return
        if trigger == "startup":
            self._bootstrap_calendars()
        result = self.sync_engine.run_sync(trigger=trigger)
        logger.info("Sync %s finished with status %s in %dms", trigger, result.status, result.duration_ms)

    def _interval(self) -> int:
        try:
            return max(MIN_INTERVAL_SECONDS, int(self.config_manager.load().sync.interval_seconds))
        except (OSError, ValueError) as exc:
            logger.warning("Could not read sync interval, using %ss: %s", MIN_INTERVAL_SECONDS, exc)
            return MIN_INTERVAL_SECONDS

    def _loop(self) -> None:
        trigger = "startup"
        while not self._stop_event.is_set():
            try:
                self.run_cycle(trigger)
            except Exception:
                logger.exception("Scheduled %s sync crashed", trigger)
            woke = self._wake_event.wait(timeout=self._interval())
            self._wake_event.clear()
            trigger = "manual" if woke else "scheduled"
