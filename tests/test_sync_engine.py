import tempfile
import unittest
from datetime import timedelta
from pathlib import Path

from calesync.config_manager import ConfigManager
from calesync.errors import AuthError, ServerError, SyncError
from calesync.models import CalendarDescriptor, RemoteEvent
from calesync.state_store import ARCHIVED_TABLE, CACHED_TABLE, StateStore
from calesync.sync_engine import SyncEngine
from tests.fakes import BASE_TIME, FakeCalendarClient, FakeClock


class SyncEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.config_manager = ConfigManager(str(root / "config.yaml"))
        self.config_manager.update({"archive": {"start_date": "2025-01-01", "future_days": 0, "pause_seconds": 0}})
        self.store = StateStore(str(root / "state.db"))
        self.store.upsert_calendar(
            CalendarDescriptor(calendar_id="primary", display_name="Me", enabled=True, is_primary=True)
        )
        self.clock = FakeClock()
        self.remote = FakeCalendarClient()
        self.changes: list[tuple[str, dict]] = []
        self.engine = SyncEngine(
            self.config_manager,
            self.store,
            client=self.remote,
            clock=self.clock,
            sleep=lambda _: None,
            on_change=lambda kind, payload: self.changes.append((kind, payload)),
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_run_sync_pushes_new_entries(self) -> None:
        entry = self.engine.create_entry(title="Note", body="Body", event_date=BASE_TIME + timedelta(days=1))

        result = self.engine.run_sync(trigger="manual")

        self.assertEqual(result.status, "success")
        self.assertEqual(result.pushed, 1)
        saved = self.store.get_entry(entry.id)
        self.assertTrue(saved.is_linked)
        self.assertFalse(saved.needs_remote_sync)
        self.assertEqual(self.store.recent_sync_runs()[0]["status"], "success")
        self.assertIn("sync", [kind for kind, _ in self.changes])

    def test_run_sync_is_rate_limited(self) -> None:
        self.assertEqual(self.engine.run_sync().status, "success")
        self.clock.advance(seconds=2)
        limited = self.engine.run_sync()
        self.assertEqual(limited.status, "rate_limited")
        self.assertIn("3s", limited.message)
        self.clock.advance(seconds=4)
        self.assertEqual(self.engine.run_sync().status, "success")

    def test_overlapping_cycle_is_rejected(self) -> None:
        self.engine._pull_guard.acquire()
        try:
            self.assertEqual(self.engine.run_sync().status, "rejected")
            with self.assertRaises(SyncError):
                self.engine.run_pull_sync()
        finally:
            self.engine._pull_guard.release()

    def test_pull_reflects_remote_edits(self) -> None:
        entry = self.engine.create_entry(title="Note", body="Body", event_date=BASE_TIME + timedelta(days=1))
        pushed = self.engine.push_entry(entry)
        self.engine.run_pull_sync()
        self.remote.add_event(
            "primary",
            event_id=pushed.event.event_id,
            title="Edited remotely",
            start=BASE_TIME + timedelta(days=2),
            linked_entry_id=entry.id,
        )

        summary = self.engine.run_pull_sync()

        self.assertEqual(summary.reflected, 1)
        self.assertEqual(summary.conflicts, 0)
        self.assertEqual(self.store.get_entry(entry.id).title, "Edited remotely")

    def test_conflict_then_use_local(self) -> None:
        entry = self.engine.create_entry(title="Note", body="Body", event_date=BASE_TIME + timedelta(days=1))
        pushed = self.engine.push_entry(entry)
        self.engine.run_pull_sync()
        self.clock.advance(minutes=10)
        edited = self.engine.edit_entry(self.store.get_entry(entry.id), title="Local edit")
        self.remote.add_event(
            "primary",
            event_id=pushed.event.event_id,
            title="Remote edit",
            start=BASE_TIME + timedelta(days=1),
            linked_entry_id=entry.id,
        )

        summary = self.engine.run_pull_sync()
        self.assertEqual(summary.conflicts, 1)
        conflicted = self.store.get_entry(entry.id)
        self.assertEqual(conflicted.title, "Local edit")
        self.assertEqual(conflicted.conflict_remote_title, "Remote edit")

        result = self.engine.resolve_conflict(conflicted, "use_local")

        self.assertEqual(result.push.status, "pushed")
        self.assertEqual(self.remote.live_events("primary")[0].title, edited.title)
        self.assertFalse(self.store.get_entry(entry.id).needs_remote_sync)

    def test_remote_deletion_requeues_entry(self) -> None:
        entry = self.engine.create_entry(title="Note", body="Body", event_date=BASE_TIME + timedelta(days=1))
        pushed = self.engine.push_entry(entry)
        self.engine.run_pull_sync()
        self.remote.cancel_event("primary", pushed.event.event_id)

        summary = self.engine.run_pull_sync()

        self.assertEqual(summary.unlinked, 1)
        saved = self.store.get_entry(entry.id)
        self.assertFalse(saved.is_linked)
        self.assertTrue(saved.needs_remote_sync)

    def test_run_sync_leaves_conflicts_for_the_user(self) -> None:
        entry = self.engine.create_entry(title="Note", body="Body", event_date=BASE_TIME + timedelta(days=1))
        pushed = self.engine.push_entry(entry)
        self.engine.run_pull_sync()
        self.clock.advance(minutes=10)
        self.engine.edit_entry(self.store.get_entry(entry.id), title="Local edit")
        self.remote.add_event(
            "primary",
            event_id=pushed.event.event_id,
            title="Remote edit",
            start=BASE_TIME + timedelta(days=1),
            linked_entry_id=entry.id,
        )

        result = self.engine.run_sync()

        self.assertEqual(result.summary.conflicts, 1)
        self.assertEqual(result.pushed, 0)
        self.assertEqual(self.remote.live_events("primary")[0].title, "Remote edit")
        saved = self.store.get_entry(entry.id)
        self.assertTrue(saved.has_conflict)
        self.assertEqual(saved.title, "Local edit")
        self.assertEqual(saved.conflict_remote_title, "Remote edit")

    def test_run_sync_does_not_recreate_remotely_deleted_events(self) -> None:
        entry = self.engine.create_entry(title="Note", body="Body", event_date=BASE_TIME + timedelta(days=1))
        pushed = self.engine.push_entry(entry)
        self.engine.run_pull_sync()
        self.remote.cancel_event("primary", pushed.event.event_id)

        result = self.engine.run_sync()

        self.assertEqual(result.summary.unlinked, 1)
        self.assertEqual(result.pushed, 0)
        self.assertEqual(self.remote.live_events("primary"), [])
        self.assertTrue(self.store.get_entry(entry.id).needs_remote_sync)

        batch = self.engine.push_pending()
        self.assertEqual(batch.pushed, [entry.id])
        self.assertEqual(len(self.remote.live_events("primary")), 1)

    def test_run_sync_evicts_rows_outside_the_window(self) -> None:
        start = BASE_TIME - timedelta(days=60)
        self.store.upsert_event(
            CACHED_TABLE,
            RemoteEvent(calendar_id="primary", event_id="evt-stale", start=start, end=start, updated_at=start),
        )

        result = self.engine.run_sync()

        self.assertEqual(result.summary.evicted, 1)
        self.assertIsNone(self.store.get_event(CACHED_TABLE, "primary", "evt-stale"))

    def test_auth_failure_is_reported(self) -> None:
        self.remote.fail_next("list_events", AuthError("Invalid Credentials", status_code=401))
        result = self.engine.run_sync()
        self.assertEqual(result.status, "error")
        self.assertIn("HTTP 401", result.message)

    def test_partial_when_one_calendar_fails(self) -> None:
        self.store.upsert_calendar(CalendarDescriptor(calendar_id="broken", display_name="Broken", enabled=True))
        original = self.remote.list_events

        def list_events(calendar_id, **kwargs):
            if calendar_id == "broken":
                raise ServerError("Backend Error", status_code=500)
            return original(calendar_id, **kwargs)

        self.remote.list_events = list_events
        result = self.engine.run_sync()
        self.assertEqual(result.status, "partial")
        self.assertEqual(result.summary.failed_calendars, ["broken"])

    def test_archive_and_cleanup(self) -> None:
        self.remote.add_event("primary", start=BASE_TIME - timedelta(days=200))
        handle = self.engine.import_archive()
        outcome = handle.wait(5)
        self.assertEqual(outcome.status, "completed")
        self.assertEqual(self.store.count_events(ARCHIVED_TABLE), 1)

        self.engine.run_pull_sync()
        self.assertEqual(self.engine.cleanup_cache(), 0)
        status = self.engine.status()
        self.assertEqual(status["archive"]["outcome"]["status"], "completed")
        self.assertEqual(status["archived_events"], 1)

    def test_delete_entry_propagates(self) -> None:
        entry = self.engine.create_entry(title="Note", body="Body", event_date=BASE_TIME + timedelta(days=1))
        self.engine.push_entry(entry)
        self.assertTrue(self.engine.delete_entry(self.store.get_entry(entry.id)))
        self.assertEqual(self.remote.live_events("primary"), [])
        self.assertIsNone(self.store.get_entry(entry.id))


if __name__ == "__main__":
    unittest.main()
