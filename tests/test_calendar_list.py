import tempfile
import unittest
from pathlib import Path

from calesync.audit_log import SyncAuditLog
from calesync.calendar_list import CalendarListSync
from calesync.errors import AuthError
from calesync.models import RemoteCalendar
from calesync.state_store import StateStore
from tests.fakes import FakeCalendarClient, FakeClock


class CalendarListSyncTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.remote = FakeCalendarClient()
        self.audit = SyncAuditLog(self.store, clock=FakeClock())
        self.sync = CalendarListSync(self.remote, self.store, self.audit, clock=FakeClock())

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_only_primary_enabled_on_first_sight(self) -> None:
        self.remote.calendar_list = [
            RemoteCalendar(calendar_id="me@example.com", summary="Me", primary=True),
            RemoteCalendar(calendar_id="team@example.com", summary="Team", color_id="5"),
        ]
        calendars = {c.calendar_id: c for c in self.sync.sync()}
        self.assertTrue(calendars["me@example.com"].enabled)
        self.assertTrue(calendars["me@example.com"].is_primary)
        self.assertFalse(calendars["team@example.com"].enabled)
        self.assertEqual(calendars["team@example.com"].color_id, "5")
        self.assertEqual(self.audit.recent()[0].sync_type, "calendar_list")

    def test_user_choice_survives_refresh(self) -> None:
        self.remote.calendar_list = [RemoteCalendar(calendar_id="team@example.com", summary="Team")]
        self.sync.sync()
        self.store.set_calendar_enabled("team@example.com", True)
        self.remote.calendar_list = [RemoteCalendar(calendar_id="team@example.com", summary="Team (renamed)")]
        calendar = self.sync.sync()[0]
        self.assertTrue(calendar.enabled)
        self.assertEqual(calendar.display_name, "Team (renamed)")

    def test_errors_are_audited_and_raised(self) -> None:
        self.remote.fail_next("list_calendars", AuthError("Invalid Credentials", status_code=401))
        with self.assertRaises(AuthError):
            self.sync.sync()
        self.assertEqual(self.audit.recent()[0].http_status, 401)


if __name__ == "__main__":
    unittest.main()
