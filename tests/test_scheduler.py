import tempfile
import unittest
from pathlib import Path
from unittest import mock

from calesync.config_manager import ConfigManager
from calesync.errors import NetworkError
from calesync.models import CalendarDescriptor, SyncResult
from calesync.scheduler import SyncScheduler


class SyncSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_manager = ConfigManager(str(Path(self.temp_dir.name) / "config.yaml"))
        self.engine = mock.Mock()
        self.engine.token_provider = None
        self.engine.state_store.list_calendars.return_value = []
        self.engine.run_sync.return_value = SyncResult(status="success", message="", duration_ms=5, trigger="x")
        self.scheduler = SyncScheduler(self.engine, self.config_manager)

    def tearDown(self) -> None:
        self.scheduler.stop()
        self.temp_dir.cleanup()

    def test_skips_without_token(self) -> None:
        self.scheduler.run_cycle("scheduled")
        self.engine.run_sync.assert_not_called()

    def test_startup_fetches_calendars_once(self) -> None:
        self.config_manager.update({"google": {"access_token": "tok"}})
        self.scheduler.run_cycle("startup")
        self.engine.sync_calendar_list.assert_called_once()
        self.engine.run_sync.assert_called_once_with(trigger="startup")

        self.engine.state_store.list_calendars.return_value = [CalendarDescriptor(calendar_id="primary")]
        self.scheduler.run_cycle("startup")
        self.engine.sync_calendar_list.assert_called_once()

    def test_calendar_fetch_failure_still_syncs(self) -> None:
        self.config_manager.update({"google": {"access_token": "tok"}})
        self.engine.sync_calendar_list.side_effect = NetworkError("offline")
        self.scheduler.run_cycle("startup")
        self.engine.run_sync.assert_called_once_with(trigger="startup")

    def test_manual_trigger_wakes_loop(self) -> None:
        self.config_manager.update({"google": {"access_token": "tok"}, "sync": {"interval_seconds": 3600}})
        self.engine.state_store.list_calendars.return_value = [CalendarDescriptor(calendar_id="primary")]
        self.scheduler.start()
        self.assertTrue(self.scheduler.running)
        self.scheduler.trigger_manual()
        for _ in range(200):
            if self.engine.run_sync.call_count >= 2:
                break
            self.scheduler._stop_event.wait(0.01)
        triggers = [call.kwargs["trigger"] for call in self.engine.run_sync.call_args_list]
        self.assertEqual(triggers[:2], ["startup", "manual"])
        self.scheduler.stop()
        self.assertFalse(self.scheduler.running)


if __name__ == "__main__":
    unittest.main()
