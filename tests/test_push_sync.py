import tempfile
import unittest
from datetime import timedelta
from pathlib import Path

from calesync.audit_log import SyncAuditLog
from calesync.errors import ConflictResolutionError, NetworkError
from calesync.models import LocalEntry
from calesync.push_sync import PushSyncEngine
from calesync.state_store import ARCHIVED_TABLE, CACHED_TABLE, StateStore
from tests.fakes import BASE_TIME, FakeCalendarClient, FakeClock


def _entry(entry_id: str = "entry-1", **overrides) -> LocalEntry:
    values = dict(
        id=entry_id,
        title="Morning pages",
        body="Wrote three pages.",
        event_date=BASE_TIME + timedelta(days=1),
        created_at=BASE_TIME,
        updated_at=BASE_TIME,
        needs_remote_sync=True,
    )
    values.update(overrides)
    return LocalEntry(**values)


class PushSyncTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.remote = FakeCalendarClient()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.audit = SyncAuditLog(self.store, clock=self.clock)
        self.engine = PushSyncEngine(self.remote, self.store, self.audit, event_duration_minutes=45, clock=self.clock)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_insert_links_entry_and_writes_through(self) -> None:
        entry = self.store.save_entry(_entry())
        result = self.engine.push_entry(entry, "primary")

        self.assertEqual(result.status, "pushed")
        saved = self.store.get_entry("entry-1")
        self.assertFalse(saved.needs_remote_sync)
        self.assertEqual(saved.linked_calendar_id, "primary")
        self.assertEqual(saved.linked_event_id, result.event.event_id)
        self.assertEqual(saved.linked_event_updated_at, result.event.updated_at)

        remote = self.remote.live_events("primary")[0]
        self.assertEqual(remote.linked_entry_id, "entry-1")
        self.assertEqual(remote.end - remote.start, timedelta(minutes=45))
        cached = self.store.get_event(CACHED_TABLE, "primary", remote.event_id)
        self.assertEqual(cached.linked_entry_id, "entry-1")
        self.assertEqual(self.audit.recent()[0].sync_type, "push")

    def test_push_is_idempotent(self) -> None:
        self.store.save_entry(_entry())
        self.engine.push_entry(self.store.get_entry("entry-1"), "primary")
        second = self.engine.push_entry(self.store.get_entry("entry-1"), "primary")

        self.assertEqual(second.status, "noop")
        self.assertEqual(self.remote.count("insert_event"), 1)
        self.assertEqual(len(self.remote.live_events("primary")), 1)

    def test_linked_pending_entry_updates_in_place(self) -> None:
        self.store.save_entry(_entry())
        first = self.engine.push_entry(self.store.get_entry("entry-1"), "primary")
        edited = self.store.get_entry("entry-1")
        edited.title = "Evening pages"
        edited.needs_remote_sync = True

        result = self.engine.push_entry(edited, "primary")

        self.assertEqual(result.event.event_id, first.event.event_id)
        self.assertEqual(self.remote.count("update_event"), 1)
        self.assertEqual(self.remote.live_events("primary")[0].title, "Evening pages")

    def test_empty_title_falls_back(self) -> None:
        self.store.save_entry(_entry(title="  "))
        self.engine.push_entry(self.store.get_entry("entry-1"), "primary")
        self.assertEqual(self.remote.live_events("primary")[0].title, "Journal")

    def test_existing_remote_copy_is_reused_after_crash(self) -> None:
        self.remote.add_event("primary", title="Morning pages", linked_entry_id="entry-1")
        self.store.save_entry(_entry())

        result = self.engine.push_entry(self.store.get_entry("entry-1"), "primary")

        self.assertEqual(result.status, "pushed")
        self.assertEqual(self.remote.count("insert_event"), 0)
        self.assertEqual(len(self.remote.live_events("primary")), 1)

    def test_moving_to_another_calendar(self) -> None:
        self.store.save_entry(_entry())
        first = self.engine.push_entry(self.store.get_entry("entry-1"), "primary")
        self.store.upsert_event(ARCHIVED_TABLE, first.event)

        result = self.engine.push_entry(self.store.get_entry("entry-1"), "work")

        self.assertEqual(result.status, "pushed")
        self.assertEqual(self.remote.live_events("primary"), [])
        self.assertEqual(len(self.remote.live_events("work")), 1)
        self.assertIsNone(self.store.get_event(CACHED_TABLE, "primary", first.event.event_id))
        self.assertIsNone(self.store.get_event(ARCHIVED_TABLE, "primary", first.event.event_id))
        self.assertEqual(self.store.get_entry("entry-1").linked_calendar_id, "work")

    def test_failure_leaves_entry_pending(self) -> None:
        self.store.save_entry(_entry())
        self.remote.fail_next("insert_event", NetworkError("Connection failed."))

        result = self.engine.push_entry(self.store.get_entry("entry-1"), "primary")

        self.assertEqual(result.status, "failed")
        self.assertIsInstance(result.error, NetworkError)
        saved = self.store.get_entry("entry-1")
        self.assertTrue(saved.needs_remote_sync)
        self.assertFalse(saved.is_linked)
        self.assertEqual(self.audit.recent()[0].error_type, "NetworkError")

    def test_conflicted_entry_is_not_pushed(self) -> None:
        entry = self.store.save_entry(
            _entry(
                linked_calendar_id="primary",
                linked_event_id="e1",
                linked_event_updated_at=BASE_TIME,
                has_conflict=True,
            )
        )

        result = self.engine.push_entry(entry, "primary")

        self.assertEqual(result.status, "failed")
        self.assertIsInstance(result.error, ConflictResolutionError)
        self.assertEqual(result.error.reason, "unresolved_conflict")
        self.assertEqual(self.remote.calls, [])
        self.assertEqual(self.engine.push_pending("primary").pushed, [])
        self.assertEqual(self.audit.recent(), [])

    def test_push_clears_remote_deletion_marker(self) -> None:
        self.store.save_entry(_entry(remote_deleted_at=BASE_TIME))
        self.assertEqual(self.engine.push_pending("primary", include_remote_deleted=False).pushed, [])

        batch = self.engine.push_pending("primary")

        self.assertEqual(batch.pushed, ["entry-1"])
        self.assertIsNone(self.store.get_entry("entry-1").remote_deleted_at)

    def test_push_pending_continues_after_failure(self) -> None:
        self.store.save_entry(_entry("entry-1"))
        self.store.save_entry(_entry("entry-2", event_date=BASE_TIME + timedelta(days=2)))
        self.remote.fail_next("find_event_by_entry_id", NetworkError("Connection failed."))

        batch = self.engine.push_pending("primary")

        self.assertEqual(len(batch.pushed), 1)
        self.assertEqual(len(batch.failed), 1)
        self.assertEqual(len(self.store.list_pending_entries()), 1)

    def test_delete_propagates(self) -> None:
        self.store.save_entry(_entry())
        pushed = self.engine.push_entry(self.store.get_entry("entry-1"), "primary")

        self.assertTrue(self.engine.delete_entry(self.store.get_entry("entry-1")))

        self.assertIsNone(self.store.get_entry("entry-1"))
        self.assertEqual(self.remote.live_events("primary"), [])
        self.assertIsNone(self.store.get_event(CACHED_TABLE, "primary", pushed.event.event_id))

    def test_delete_tolerates_missing_remote(self) -> None:
        entry = _entry(linked_calendar_id="primary", linked_event_id="ghost", needs_remote_sync=False)
        self.store.save_entry(entry)
        self.assertTrue(self.engine.delete_entry(entry))
        self.assertIsNone(self.store.get_entry("entry-1"))


if __name__ == "__main__":
    unittest.main()
