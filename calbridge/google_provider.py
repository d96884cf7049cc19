from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any
from urllib.parse import quote

from calbridge.errors import AppointmentCancelledError, ProviderError
from calbridge.models import (
    ACCESS_FREE_BUSY,
    ACCESS_OWNER,
    ACCESS_READER,
    ACCESS_WRITER,
    ATTENDANCE_ACCEPTED,
    ATTENDANCE_DECLINED,
    ATTENDANCE_NEEDS_ACTION,
    ATTENDANCE_TENTATIVE,
    NOTIFICATION_EMAIL,
    NOTIFICATION_PUSH,
    SERVICE_GOOGLE,
    Appointment,
    AppointmentAttendee,
    AppointmentNotification,
    Calendar,
    all_day_bounds,
    exclusive_end_date,
    parse_iso_datetime,
)
from calbridge.providers import FLAT_DELTA, CalendarProvider, ChangeSet, Cursor, ProviderSession

logger = logging.getLogger(__name__)

BASE_URL = "https://www.googleapis.com/"

ACCESS_ROLES = {
    "owner": ACCESS_OWNER,
    "writer": ACCESS_WRITER,
    "reader": ACCESS_READER,
}
ATTENDANCE_FROM_EXTERNAL = {
    "needsAction": ATTENDANCE_NEEDS_ACTION,
    "declined": ATTENDANCE_DECLINED,
    "tentative": ATTENDANCE_TENTATIVE,
    "accepted": ATTENDANCE_ACCEPTED,
}
ATTENDANCE_TO_EXTERNAL = {value: key for key, value in ATTENDANCE_FROM_EXTERNAL.items()}
NOTIFICATION_FROM_EXTERNAL = {"popup": NOTIFICATION_PUSH, "email": NOTIFICATION_EMAIL}
NOTIFICATION_TO_EXTERNAL = {value: key for key, value in NOTIFICATION_FROM_EXTERNAL.items()}


class GoogleCalendarProvider(CalendarProvider):
    service = SERVICE_GOOGLE
    feed_kind = FLAT_DELTA
    token_url = BASE_URL + "oauth2/v4/token"

    def _events_url(self, calendar: Calendar, appointment_id: str = "") -> str:
        url = f"{BASE_URL}calendar/v3/calendars/{quote(str(calendar.external.calendar_id), safe='')}/events"
        if appointment_id:
            url += f"/{quote(appointment_id, safe='')}"
        return url

    def fetch_changes(self, session: ProviderSession, cursor: Cursor) -> ChangeSet:
        params: dict[str, Any] = {
            "maxResults": self.config.sync_max_results,
            "maxAttendees": self.config.max_attendees,
            "showHiddenInvitations": "true",
            "singleEvents": "true",
        }
        if cursor.sync_bookmark:
            params["syncToken"] = cursor.sync_bookmark
        if cursor.page_bookmark:
            params["pageToken"] = cursor.page_bookmark
        try:
            payload = self._request(session, "GET", self._events_url(session.calendar), params=params)
        except ProviderError as exc:
            if exc.is_gone:
                logger.info("Sync token expired for calendar %s, full sync required", session.calendar.calendar_id)
                return ChangeSet.full_resync()
            raise

        changed: list[dict[str, Any]] = []
        removed: list[str] = []
        for item in payload.get("items") or []:
            if item.get("status") == "cancelled":
                removed.append(self.record_id(item))
            else:
                changed.append(item)
        next_page = payload.get("nextPageToken") or None
        return ChangeSet(
            changed_items=changed,
            removed_ids=removed,
            next_cursor=Cursor(sync_bookmark=payload.get("nextSyncToken") or None, page_bookmark=next_page),
            has_more_pages=bool(next_page),
        )

    def describe_calendar(self, session: ProviderSession) -> dict[str, Any]:
        calendar_ref = quote(str(session.calendar.external.calendar_id), safe="")
        details = self._request(session, "GET", f"{BASE_URL}calendar/v3/users/me/calendarList/{calendar_ref}")
        profile = self._request(session, "GET", f"{BASE_URL}oauth2/v1/userinfo")
        return {
            "name": str(details.get("summary", "") or ""),
            "timezone": str(details.get("timeZone", "") or ""),
            "color": str(details.get("backgroundColor", "") or ""),
            "user_access": ACCESS_ROLES.get(str(details.get("accessRole", "")), ACCESS_FREE_BUSY),
            "email": str(profile.get("email", "") or ""),
        }

    def get_appointment(self, session: ProviderSession, appointment_id: str) -> Appointment:
        payload = self._request(session, "GET", self._events_url(session.calendar, appointment_id))
        if payload.get("status") == "cancelled":
            raise AppointmentCancelledError(appointment_id)
        return self.convert_from_external(payload, session.calendar)

    def post_appointment(self, session: ProviderSession, appointment: Appointment) -> Appointment:
        payload = self._request(
            session, "POST", self._events_url(session.calendar), json_body=self.convert_to_external(appointment)
        )
        return self.convert_from_external(payload, session.calendar)

    def put_appointment(self, session: ProviderSession, appointment: Appointment) -> None:
        self._request(
            session,
            "PATCH",
            self._events_url(session.calendar, appointment.appointment_id),
            params={"sendUpdates": "all"},
            json_body=self.convert_to_external(appointment),
        )

    def delete_appointment(self, session: ProviderSession, appointment_id: str) -> None:
        self._request(session, "DELETE", self._events_url(session.calendar, appointment_id))

    def update_appointment_attendance(
        self, session: ProviderSession, appointment: Appointment, attendance: str
    ) -> None:
        attendee = appointment.attendee_for(session.calendar.external.email)
        if attendee is not None:
            attendee.attendance = attendance
        self.put_appointment(session, appointment)

    def convert_from_external(self, raw: dict[str, Any], calendar: Calendar) -> Appointment:
        start = raw.get("start") or {}
        end = raw.get("end") or {}
        all_day = bool(start.get("date"))
        if all_day:
            first_day = date.fromisoformat(start["date"])
            # Google end dates of all-day events are exclusive.
            last_day = date.fromisoformat(end.get("date") or start["date"]) - timedelta(days=1)
            start_time, end_time = all_day_bounds(first_day, max(first_day, last_day))
        else:
            start_time = parse_iso_datetime(start.get("dateTime"))
            end_time = parse_iso_datetime(end.get("dateTime"))
        reminders = raw.get("reminders") or {}
        return Appointment(
            calendar_id=calendar.calendar_id,
            appointment_id=self.record_id(raw),
            ical_uid=str(raw.get("iCalUID", "") or ""),
            title=str(raw.get("summary") or "?"),
            location=str(raw.get("location", "") or ""),
            description=str(raw.get("description", "") or ""),
            start_time=start_time,
            end_time=end_time,
            all_day=all_day,
            timezone=str(start.get("timeZone") or calendar.timezone or "UTC"),
            link_to_origin=str(raw.get("htmlLink", "") or ""),
            notifications=[
                AppointmentNotification(
                    method=NOTIFICATION_FROM_EXTERNAL.get(str(item.get("method")), NOTIFICATION_PUSH),
                    minutes=int(item.get("minutes", 0) or 0),
                )
                for item in reminders.get("overrides") or []
            ],
            attendees=[
                AppointmentAttendee(
                    email=str(item.get("email", "") or ""),
                    organizer=bool(item.get("organizer", False)),
                    is_self=bool(item.get("self", False)),
                    attendance=ATTENDANCE_FROM_EXTERNAL.get(
                        str(item.get("responseStatus")), ATTENDANCE_NEEDS_ACTION
                    ),
                )
                for item in raw.get("attendees") or []
            ],
            master_appointment_id=raw.get("recurringEventId") or None,
        )

    def convert_to_external(self, appointment: Appointment) -> dict[str, Any]:
        start: dict[str, Any] = {"timeZone": appointment.timezone}
        end: dict[str, Any] = {"timeZone": appointment.timezone}
        if appointment.all_day and appointment.start_time and appointment.end_time:
            start.update({"date": appointment.start_time.date().isoformat(), "dateTime": None})
            end.update({"date": exclusive_end_date(appointment.end_time).isoformat(), "dateTime": None})
        else:
            start.update({"dateTime": appointment.start_time.isoformat() if appointment.start_time else None, "date": None})
            end.update({"dateTime": appointment.end_time.isoformat() if appointment.end_time else None, "date": None})
        if appointment.notifications:
            reminders: dict[str, Any] = {
                "useDefault": False,
                "overrides": [
                    {"method": NOTIFICATION_TO_EXTERNAL.get(item.method, "popup"), "minutes": item.minutes}
                    for item in appointment.notifications
                ],
            }
        else:
            reminders = {"useDefault": True}
        return {
            "summary": appointment.title,
            "location": appointment.location,
            "description": appointment.description,
            "start": start,
            "end": end,
            "reminders": reminders,
            "attendees": [
                {
                    "email": attendee.email,
                    "organizer": attendee.organizer,
                    "self": attendee.is_self,
                    "responseStatus": ATTENDANCE_TO_EXTERNAL.get(attendee.attendance, "needsAction"),
                }
                for attendee in appointment.attendees
            ],
        }
