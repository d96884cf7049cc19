import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

import requests

from calbridge.errors import AppointmentCancelledError, ProviderError
from calbridge.google_provider import GoogleCalendarProvider
from calbridge.models import ATTENDANCE_DECLINED, Appointment, Calendar, ExternalCalendarInfo, GoogleConfig
from calbridge.persistence import load_refresh_token, save_refresh_token
from calbridge.providers import Cursor, ProviderSession
from calbridge.state_store import StateStore


def _response(status_code: int = 200, payload: dict | None = None) -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.content = json.dumps(payload).encode("utf-8") if payload is not None else b""
    response.text = json.dumps(payload) if payload is not None else ""
    response.json.return_value = payload
    return response


class GoogleProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        save_refresh_token(self.store, "cal-1", "refresh-1")
        self.provider = GoogleCalendarProvider(
            GoogleConfig(client_id="gid", client_secret="gsecret"), self.store, persist_tokens_async=False
        )
        self.calendar = Calendar(
            calendar_id="cal-1",
            external=ExternalCalendarInfo(service="google", calendar_id="work@example.com", email="me@example.com"),
        )
        self.session = ProviderSession(calendar=self.calendar)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_first_sync_classifies_cancelled_records(self) -> None:
        responses = [
            _response(payload={"access_token": "token-1"}),
            _response(
                payload={
                    "items": [
                        {"id": "a", "status": "confirmed", "summary": "A"},
                        {"id": "b", "status": "cancelled"},
                    ],
                    "nextSyncToken": "sync-1",
                }
            ),
        ]
        with mock.patch("calbridge.providers.requests.request", side_effect=responses) as request:
            change_set = self.provider.fetch_changes(self.session, Cursor())

        self.assertEqual([item["id"] for item in change_set.changed_items], ["a"])
        self.assertEqual(change_set.removed_ids, ["b"])
        self.assertEqual(change_set.next_cursor, Cursor(sync_bookmark="sync-1"))
        self.assertFalse(change_set.has_more_pages)
        self.assertFalse(change_set.must_full_resync)

        token_call, events_call = request.call_args_list
        self.assertEqual(token_call.kwargs["data"]["grant_type"], "refresh_token")
        self.assertEqual(token_call.kwargs["data"]["refresh_token"], "refresh-1")
        self.assertIn("work%40example.com/events", events_call.args[1])
        params = events_call.kwargs["params"]
        self.assertEqual(params["maxResults"], 250)
        self.assertEqual(params["maxAttendees"], 50)
        self.assertNotIn("syncToken", params)
        self.assertEqual(events_call.kwargs["headers"]["Authorization"], "Bearer token-1")

    def test_page_token_is_sent_and_next_page_reported(self) -> None:
        self.session.access_token = "cached"
        with mock.patch(
            "calbridge.providers.requests.request",
            return_value=_response(payload={"items": [], "nextPageToken": "page-3"}),
        ) as request:
            change_set = self.provider.fetch_changes(self.session, Cursor(sync_bookmark="sync-1", page_bookmark="page-2"))

        params = request.call_args.kwargs["params"]
        self.assertEqual(params["pageToken"], "page-2")
        self.assertEqual(params["syncToken"], "sync-1")
        self.assertTrue(change_set.has_more_pages)
        self.assertEqual(change_set.next_cursor.page_bookmark, "page-3")

    def test_gone_sync_token_requests_full_resync(self) -> None:
        self.session.access_token = "cached"
        with mock.patch("calbridge.providers.requests.request", return_value=_response(410)):
            change_set = self.provider.fetch_changes(self.session, Cursor(sync_bookmark="expired"))

        self.assertTrue(change_set.must_full_resync)
        self.assertTrue(change_set.next_cursor.is_empty)

    def test_server_error_propagates(self) -> None:
        self.session.access_token = "cached"
        with mock.patch("calbridge.providers.requests.request", return_value=_response(503)):
            with self.assertRaises(ProviderError) as ctx:
                self.provider.fetch_changes(self.session, Cursor(sync_bookmark="sync-1"))
        self.assertEqual(ctx.exception.status_code, 503)

    def test_transport_error_is_wrapped(self) -> None:
        self.session.access_token = "cached"
        with mock.patch(
            "calbridge.providers.requests.request", side_effect=requests.ConnectionError("no route")
        ):
            with self.assertRaises(ProviderError) as ctx:
                self.provider.fetch_changes(self.session, Cursor())
        self.assertIsNone(ctx.exception.status_code)

    def test_rejected_access_token_is_refreshed_once(self) -> None:
        self.session.access_token = "stale"
        responses = [
            _response(401),
            _response(payload={"access_token": "fresh", "refresh_token": "refresh-2"}),
            _response(payload={"items": [], "nextSyncToken": "sync-1"}),
        ]
        with mock.patch("calbridge.providers.requests.request", side_effect=responses) as request:
            self.provider.fetch_changes(self.session, Cursor())

        self.assertEqual(request.call_count, 3)
        self.assertEqual(request.call_args.kwargs["headers"]["Authorization"], "Bearer fresh")
        self.assertEqual(self.session.access_token, "fresh")
        self.assertEqual(load_refresh_token(self.store, "cal-1"), "refresh-2")

    def test_cancelled_appointment_cannot_be_fetched(self) -> None:
        self.session.access_token = "cached"
        with mock.patch(
            "calbridge.providers.requests.request",
            return_value=_response(payload={"id": "a", "status": "cancelled"}),
        ):
            with self.assertRaises(AppointmentCancelledError):
                self.provider.get_appointment(self.session, "a")

    def test_all_day_event_conversion(self) -> None:
        raw = {
            "id": "holiday",
            "summary": "Conference",
            "start": {"date": "2026-05-01"},
            "end": {"date": "2026-05-03"},
            "recurringEventId": "series-1",
            "attendees": [{"email": "me@example.com", "self": True, "responseStatus": "accepted"}],
            "reminders": {"overrides": [{"method": "email", "minutes": 30}]},
        }

        appointment = self.provider.convert_from_external(raw, self.calendar)

        self.assertTrue(appointment.all_day)
        self.assertEqual(appointment.start_time, datetime(2026, 5, 1, tzinfo=timezone.utc))
        self.assertEqual(appointment.end_time.date().isoformat(), "2026-05-02")
        self.assertEqual(appointment.master_appointment_id, "series-1")
        self.assertEqual(appointment.notifications[0].minutes, 30)
        self.assertTrue(appointment.attendees[0].is_self)

        external = self.provider.convert_to_external(appointment)
        self.assertEqual(external["start"]["date"], "2026-05-01")
        self.assertEqual(external["end"]["date"], "2026-05-03")
        self.assertFalse(external["reminders"]["useDefault"])

    def test_untitled_event_gets_placeholder_title(self) -> None:
        raw = {"id": "x", "start": {"dateTime": "2026-05-01T10:00:00Z"}, "end": {"dateTime": "2026-05-01T11:00:00Z"}}
        appointment = self.provider.convert_from_external(raw, self.calendar)
        self.assertEqual(appointment.title, "?")
        self.assertFalse(appointment.all_day)
        self.assertIsNone(appointment.master_appointment_id)

    def test_attendance_update_patches_own_attendee(self) -> None:
        self.session.access_token = "cached"
        appointment = self.provider.convert_from_external(
            {
                "id": "evt",
                "start": {"dateTime": "2026-05-01T10:00:00Z"},
                "end": {"dateTime": "2026-05-01T11:00:00Z"},
                "attendees": [
                    {"email": "boss@example.com", "organizer": True, "responseStatus": "accepted"},
                    {"email": "me@example.com", "responseStatus": "needsAction"},
                ],
            },
            self.calendar,
        )
        with mock.patch("calbridge.providers.requests.request", return_value=_response(payload={})) as request:
            self.provider.update_appointment_attendance(self.session, appointment, ATTENDANCE_DECLINED)

        call = request.call_args
        self.assertEqual(call.args[0], "PATCH")
        self.assertEqual(call.kwargs["params"], {"sendUpdates": "all"})
        statuses = {item["email"]: item["responseStatus"] for item in call.kwargs["json"]["attendees"]}
        self.assertEqual(statuses, {"boss@example.com": "accepted", "me@example.com": "declined"})

    def timed_appointment(self, appointment_id: str = "") -> Appointment:
        return Appointment(
            calendar_id="cal-1",
            appointment_id=appointment_id,
            title="Planning",
            location="Room 4",
            start_time=datetime(2026, 5, 1, 10, tzinfo=timezone.utc),
            end_time=datetime(2026, 5, 1, 11, tzinfo=timezone.utc),
        )

    def test_post_appointment_creates_event(self) -> None:
        self.session.access_token = "cached"
        created = {
            "id": "new-1",
            "summary": "Planning",
            "start": {"dateTime": "2026-05-01T10:00:00Z"},
            "end": {"dateTime": "2026-05-01T11:00:00Z"},
        }
        with mock.patch("calbridge.providers.requests.request", return_value=_response(payload=created)) as request:
            appointment = self.provider.post_appointment(self.session, self.timed_appointment())

        self.assertEqual(appointment.appointment_id, "new-1")
        self.assertEqual(appointment.calendar_id, "cal-1")
        call = request.call_args
        self.assertEqual(call.args[0], "POST")
        self.assertEqual(call.args[1], "https://www.googleapis.com/calendar/v3/calendars/work%40example.com/events")
        body = call.kwargs["json"]
        self.assertEqual(body["summary"], "Planning")
        self.assertEqual(body["location"], "Room 4")
        self.assertEqual(body["start"]["dateTime"], "2026-05-01T10:00:00+00:00")
        self.assertIsNone(body["start"]["date"])
        self.assertEqual(body["reminders"], {"useDefault": True})

    def test_put_appointment_patches_event(self) -> None:
        self.session.access_token = "cached"
        with mock.patch("calbridge.providers.requests.request", return_value=_response(payload={})) as request:
            self.provider.put_appointment(self.session, self.timed_appointment("evt/1"))

        call = request.call_args
        self.assertEqual(call.args[0], "PATCH")
        self.assertTrue(call.args[1].endswith("/calendars/work%40example.com/events/evt%2F1"))
        self.assertEqual(call.kwargs["params"], {"sendUpdates": "all"})
        self.assertEqual(call.kwargs["json"]["end"]["dateTime"], "2026-05-01T11:00:00+00:00")

    def test_delete_appointment(self) -> None:
        self.session.access_token = "cached"
        with mock.patch("calbridge.providers.requests.request", return_value=_response(204)) as request:
            self.provider.delete_appointment(self.session, "evt-1")

        call = request.call_args
        self.assertEqual(call.args[0], "DELETE")
        self.assertTrue(call.args[1].endswith("/events/evt-1"))
        self.assertIsNone(call.kwargs["json"])

    def test_rotated_token_kept_in_memory_when_persisting_fails(self) -> None:
        token_response = _response(payload={"access_token": "fresh", "refresh_token": "refresh-2"})
        with mock.patch("calbridge.providers.requests.request", return_value=token_response), mock.patch(
            "calbridge.providers.save_refresh_token", side_effect=RuntimeError("disk full")
        ):
            with self.assertLogs("calbridge.providers", level="WARNING") as logs:
                token = self.provider.get_access_token(self.session)

        self.assertEqual(token, "fresh")
        self.assertEqual(self.session.access_token, "fresh")
        self.assertEqual(load_refresh_token(self.store, "cal-1"), "refresh-1")
        self.assertIn("cal-1", logs.output[0])
        with mock.patch("calbridge.providers.requests.request") as request:
            self.assertEqual(self.provider.get_access_token(self.session), "fresh")
        request.assert_not_called()

    def test_rotated_token_persisted_on_background_thread(self) -> None:
        provider = GoogleCalendarProvider(GoogleConfig(client_id="gid", client_secret="gsecret"), self.store)
        token_response = _response(payload={"access_token": "fresh", "refresh_token": "refresh-2"})
        with mock.patch("calbridge.providers.requests.request", return_value=token_response), mock.patch(
            "calbridge.providers.threading.Thread"
        ) as thread_class:
            token = provider.get_access_token(self.session)

        self.assertEqual(token, "fresh")
        self.assertEqual(load_refresh_token(self.store, "cal-1"), "refresh-1")
        thread_class.return_value.start.assert_called_once_with()
        kwargs = thread_class.call_args.kwargs
        self.assertTrue(kwargs["daemon"])
        self.assertEqual(kwargs["args"], ("cal-1", "refresh-2"))

        kwargs["target"](*kwargs["args"])
        self.assertEqual(load_refresh_token(self.store, "cal-1"), "refresh-2")

    def test_unchanged_refresh_token_is_not_rewritten(self) -> None:
        token_response = _response(payload={"access_token": "fresh", "refresh_token": "refresh-1"})
        with mock.patch("calbridge.providers.requests.request", return_value=token_response), mock.patch(
            "calbridge.providers.save_refresh_token"
        ) as save:
            self.provider.get_access_token(self.session)
        save.assert_not_called()

    def test_exchange_code_returns_refresh_token(self) -> None:
        with mock.patch(
            "calbridge.providers.requests.request",
            return_value=_response(payload={"access_token": "a", "refresh_token": "r"}),
        ) as request:
            token = self.provider.exchange_code("auth-code", "https://app.example.com/")

        self.assertEqual(token, "r")
        data = request.call_args.kwargs["data"]
        self.assertEqual(data["grant_type"], "authorization_code")
        self.assertEqual(data["redirect_uri"], "https://app.example.com/oauth/google")


if __name__ == "__main__":
    unittest.main()
