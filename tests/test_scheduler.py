import tempfile
import unittest
from pathlib import Path
from unittest import mock

from calbridge.config_manager import ConfigManager
from calbridge.connector import CalendarConnector
from calbridge.errors import CalendarSyncError, ProviderError
from calbridge.google_provider import GoogleCalendarProvider
from calbridge.models import Appointment, Calendar, ExternalCalendarInfo
from calbridge.persistence import list_appointments, load_calendar, save_appointments, save_calendar
from calbridge.providers import ChangeSet, Cursor, ProviderSession
from calbridge.scheduler import STATUS_FAILED, STATUS_PARTIAL, STATUS_SUCCESS, SyncScheduler
from calbridge.state_store import StateStore
from calbridge.sync_engine import SyncPassReport


def report(caught_up: bool, full_resync: bool = False) -> SyncPassReport:
    return SyncPassReport(calendar_id="cal-1", first_sync=False, caught_up=caught_up, full_resync=full_resync)


class SyncSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.config_manager = ConfigManager(str(root / "config.yaml"))
        self.store = StateStore(str(root / "state.db"))
        self.connector = mock.Mock()
        self.connector.open_session.side_effect = lambda calendar: ProviderSession(calendar=calendar)
        self.scheduler = SyncScheduler(
            self.config_manager, self.store, connector_factory=lambda config, store: self.connector
        )
        self.calendar = Calendar(
            calendar_id="cal-1", external=ExternalCalendarInfo(service="google", calendar_id="primary")
        )
        save_calendar(self.store, self.calendar)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_pages_until_caught_up_with_one_session(self) -> None:
        self.connector.run_sync_pass.side_effect = [report(False), report(False), report(True)]

        results = self.scheduler.run_once(trigger="manual")

        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].status, STATUS_SUCCESS)
        self.assertEqual(results[0].pages, 3)
        calls = self.connector.run_sync_pass.call_args_list
        sessions = {id(call.kwargs["session"]) for call in calls}
        self.assertEqual(len(sessions), 1)
        self.assertTrue(all(call.kwargs["first_sync"] for call in calls))
        runs = self.store.recent_sync_runs()
        self.assertEqual(runs[0]["status"], STATUS_SUCCESS)
        self.assertEqual(runs[0]["trigger"], "manual")
        self.assertEqual(runs[0]["pages"], 3)

    def test_page_limit_reports_partial(self) -> None:
        self.config_manager.update({"sync": {"max_pages_per_run": 2}})
        self.connector.run_sync_pass.return_value = report(False)

        results = self.scheduler.run_once(trigger="scheduled")

        self.assertEqual(results[0].status, STATUS_PARTIAL)
        self.assertEqual(self.connector.run_sync_pass.call_count, 2)

    def test_failure_is_recorded(self) -> None:
        self.connector.run_sync_pass.side_effect = CalendarSyncError(
            "cal-1", "fetching", ProviderError(503, "unavailable")
        )

        results = self.scheduler.run_once(trigger="scheduled")

        self.assertEqual(results[0].status, STATUS_FAILED)
        self.assertIn("CalendarSyncError", results[0].message)
        self.assertEqual(self.store.recent_sync_runs()[0]["status"], STATUS_FAILED)

    def test_failed_calendar_does_not_stop_the_others(self) -> None:
        save_calendar(
            self.store,
            Calendar(calendar_id="cal-2", external=ExternalCalendarInfo(service="google", calendar_id="other")),
        )
        self.connector.run_sync_pass.side_effect = [RuntimeError("boom"), report(True)]

        results = self.scheduler.run_once()

        self.assertEqual([item.status for item in results], [STATUS_FAILED, STATUS_SUCCESS])
        self.assertEqual([item.calendar_id for item in results], ["cal-1", "cal-2"])

    def test_unlinked_calendars_are_skipped_and_bookmarked_ones_run_delta(self) -> None:
        save_calendar(self.store, Calendar(calendar_id="local"))
        self.calendar.external.sync_bookmark = "sync-1"
        save_calendar(self.store, self.calendar)
        self.connector.run_sync_pass.return_value = report(True)

        results = self.scheduler.run_once()

        self.assertEqual([item.calendar_id for item in results], ["cal-1"])
        self.assertFalse(self.connector.run_sync_pass.call_args.kwargs["first_sync"])

    def test_full_resync_keeps_store_owned_links(self) -> None:
        link = [{"calendar_id": "cal-2", "appointment_id": "mirror"}]
        save_appointments(self.store, [Appointment(calendar_id="cal-1", appointment_id="a", linked_to=link)])
        self.calendar.external.sync_bookmark = "expired"
        save_calendar(self.store, self.calendar)
        event = {
            "id": "a",
            "summary": "Standup",
            "start": {"dateTime": "2026-06-01T09:00:00Z"},
            "end": {"dateTime": "2026-06-01T09:30:00Z"},
        }
        pages = [ChangeSet.full_resync(), ChangeSet(changed_items=[event], next_cursor=Cursor(sync_bookmark="sync-2"))]
        connector = CalendarConnector(self.config_manager.load(), self.store)

        with mock.patch.object(GoogleCalendarProvider, "fetch_changes", side_effect=pages), mock.patch.object(
            connector.engine, "run_pass", wraps=connector.engine.run_pass
        ) as run_pass:
            result = self.scheduler.sync_until_caught_up(connector, self.calendar, "manual", max_pages=5)

        self.assertEqual(result.status, STATUS_SUCCESS)
        self.assertEqual(result.pages, 2)
        self.assertEqual([call.kwargs["first_sync"] for call in run_pass.call_args_list], [False, False])
        stored = list_appointments(self.store, "cal-1")
        self.assertEqual(stored[0].title, "Standup")
        self.assertEqual(stored[0].linked_to, link)
        self.assertEqual(load_calendar(self.store, "cal-1").external.sync_bookmark, "sync-2")

    def test_empty_unbookmarked_calendar_is_a_first_sync(self) -> None:
        self.assertTrue(self.scheduler.is_first_sync(self.calendar))
        save_appointments(self.store, [Appointment(calendar_id="cal-1", appointment_id="a")])
        self.assertFalse(self.scheduler.is_first_sync(self.calendar))
        self.calendar.external.page_bookmark = "page-2"
        self.assertFalse(self.scheduler.is_first_sync(Calendar(calendar_id="other", external=self.calendar.external)))


if __name__ == "__main__":
    unittest.main()
