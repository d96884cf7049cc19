from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calbridge.errors import ProviderError
from calbridge.models import (
    ACCESS_FREE_BUSY,
    ACCESS_OWNER,
    ACCESS_READER,
    ACCESS_WRITER,
    ATTENDANCE_ACCEPTED,
    ATTENDANCE_DECLINED,
    ATTENDANCE_NEEDS_ACTION,
    ATTENDANCE_TENTATIVE,
    NOTIFICATION_PUSH,
    SERVICE_MICROSOFT,
    Appointment,
    AppointmentAttendee,
    AppointmentNotification,
    Calendar,
    all_day_bounds,
    exclusive_end_date,
)
from calbridge.providers import GROUPED_OCCURRENCE, CalendarProvider, ChangeSet, Cursor, ProviderSession

logger = logging.getLogger(__name__)

BASE_URL = "https://graph.microsoft.com/v1.0/"
DEFAULT_CALENDAR_COLOR = "#333"

ATTENDANCE_FROM_EXTERNAL = {
    "none": ATTENDANCE_NEEDS_ACTION,
    "notResponded": ATTENDANCE_NEEDS_ACTION,
    "declined": ATTENDANCE_DECLINED,
    "tentativelyAccepted": ATTENDANCE_TENTATIVE,
    "accepted": ATTENDANCE_ACCEPTED,
    "organizer": ATTENDANCE_ACCEPTED,
}
ATTENDANCE_TO_EXTERNAL = {
    ATTENDANCE_NEEDS_ACTION: "none",
    ATTENDANCE_DECLINED: "declined",
    ATTENDANCE_TENTATIVE: "tentativelyAccepted",
    ATTENDANCE_ACCEPTED: "accepted",
}
ATTENDANCE_ACTIONS = {
    ATTENDANCE_DECLINED: "decline",
    ATTENDANCE_TENTATIVE: "tentativelyAccept",
    ATTENDANCE_ACCEPTED: "accept",
}

_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def _zone(name: Any) -> Any:
    text = str(name or "").strip()
    if not text or text.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def parse_graph_datetime(value: dict[str, Any] | None) -> datetime | None:
    value = value or {}
    text = str(value.get("dateTime") or "").strip()
    if not text:
        return None
    parsed = datetime.fromisoformat(_EXCESS_FRACTION.sub(r"\1", text.replace("Z", "+00:00")))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_zone(value.get("timeZone")))
    return parsed.astimezone(timezone.utc)


def _format_graph_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def _address(value: Any) -> str:
    email = (value or {}).get("emailAddress") or {}
    return str(email.get("address", "") or "")


class MicrosoftCalendarProvider(CalendarProvider):
    service = SERVICE_MICROSOFT
    feed_kind = GROUPED_OCCURRENCE
    token_url = "https://login.microsoftonline.com/common/oauth2/v2.0/token"

    def _calendar_ref(self, calendar: Calendar) -> str:
        return quote(str(calendar.external.calendar_id), safe="")

    def _initial_delta_url(self, calendar: Calendar) -> str:
        return (
            f"{BASE_URL}me/calendars/{self._calendar_ref(calendar)}/calendarView/delta"
            f"?startDateTime={quote(self.config.dawn_of_time)}&endDateTime={quote(self.config.end_of_time)}"
        )

    def fetch_changes(self, session: ProviderSession, cursor: Cursor) -> ChangeSet:
        url = cursor.page_bookmark or cursor.sync_bookmark or self._initial_delta_url(session.calendar)
        headers = {"Prefer": f'odata.maxpagesize={self.config.sync_max_results}, outlook.timezone="UTC"'}
        try:
            payload = self._request(session, "GET", url, headers=headers)
        except ProviderError as exc:
            if exc.is_gone:
                logger.info("Delta link expired for calendar %s, full sync required", session.calendar.calendar_id)
                return ChangeSet.full_resync()
            raise

        changed: list[dict[str, Any]] = []
        removed: list[str] = []
        for item in payload.get("value") or []:
            if "@removed" in item:
                removed.append(self.record_id(item))
            else:
                changed.append(item)
        next_link = payload.get("@odata.nextLink") or None
        if next_link:
            next_cursor = Cursor(sync_bookmark=cursor.sync_bookmark, page_bookmark=next_link)
        else:
            next_cursor = Cursor(sync_bookmark=payload.get("@odata.deltaLink") or cursor.sync_bookmark)
        return ChangeSet(
            changed_items=changed,
            removed_ids=removed,
            next_cursor=next_cursor,
            has_more_pages=bool(next_link),
        )

    def occurrence_master_id(self, raw: dict[str, Any]) -> str | None:
        if raw.get("type") != "occurrence":
            return None
        return str(raw.get("seriesMasterId") or "") or None

    def recurrence_frequency(self, master: dict[str, Any]) -> str:
        pattern = (master.get("recurrence") or {}).get("pattern") or {}
        return str(pattern.get("type", "") or "")

    def describe_calendar(self, session: ProviderSession) -> dict[str, Any]:
        details = self._request(session, "GET", f"{BASE_URL}me/calendars/{self._calendar_ref(session.calendar)}")
        profile = self._request(session, "GET", f"{BASE_URL}me")
        if details.get("canShare"):
            user_access = ACCESS_OWNER
        elif details.get("canEdit"):
            user_access = ACCESS_WRITER
        elif details.get("canViewPrivateItems"):
            user_access = ACCESS_READER
        else:
            user_access = ACCESS_FREE_BUSY
        color = str(details.get("color", "") or "")
        return {
            "name": str(details.get("name", "") or ""),
            "timezone": "",
            "color": DEFAULT_CALENDAR_COLOR if color in {"", "auto"} else color,
            "user_access": user_access,
            "email": str(profile.get("mail") or profile.get("userPrincipalName") or ""),
        }

    def get_appointment(self, session: ProviderSession, appointment_id: str) -> Appointment:
        url = f"{BASE_URL}me/calendars/{self._calendar_ref(session.calendar)}/events/{quote(appointment_id, safe='')}"
        payload = self._request(session, "GET", url, headers={"Prefer": 'outlook.timezone="UTC"'})
        return self.convert_from_external(payload, session.calendar)

    def post_appointment(self, session: ProviderSession, appointment: Appointment) -> Appointment:
        payload = self._request(
            session,
            "POST",
            f"{BASE_URL}me/calendars/{self._calendar_ref(session.calendar)}/events",
            json_body=self.convert_to_external(appointment),
            headers={"Prefer": 'outlook.timezone="UTC"'},
        )
        return self.convert_from_external(payload, session.calendar)

    def put_appointment(self, session: ProviderSession, appointment: Appointment) -> None:
        self._request(
            session,
            "PATCH",
            f"{BASE_URL}me/events/{quote(appointment.appointment_id, safe='')}",
            json_body=self.convert_to_external(appointment),
        )

    def delete_appointment(self, session: ProviderSession, appointment_id: str) -> None:
        self._request(session, "DELETE", f"{BASE_URL}me/events/{quote(appointment_id, safe='')}")

    def update_appointment_attendance(
        self, session: ProviderSession, appointment: Appointment, attendance: str
    ) -> None:
        # Graph rejects attendee status changes through PATCH; each answer has its own action.
        action = ATTENDANCE_ACTIONS.get(attendance)
        if action is None:
            raise ValueError(f"Attendance {attendance} cannot be sent to Microsoft calendars")
        self._request(
            session,
            "POST",
            f"{BASE_URL}me/events/{quote(appointment.appointment_id, safe='')}/{action}",
            json_body={"sendResponse": True},
        )

    def convert_from_external(self, raw: dict[str, Any], calendar: Calendar) -> Appointment:
        start_time = parse_graph_datetime(raw.get("start"))
        end_time = parse_graph_datetime(raw.get("end"))
        all_day = bool(raw.get("isAllDay", False))
        if all_day and start_time is not None:
            first_day = start_time.date()
            # Graph all-day events end at midnight of the following day.
            last_day = (end_time.date() - timedelta(days=1)) if end_time is not None else first_day
            start_time, end_time = all_day_bounds(first_day, max(first_day, last_day))
        organizer = _address(raw.get("organizer"))
        own_email = calendar.external.email
        notifications: list[AppointmentNotification] = []
        if raw.get("isReminderOn"):
            notifications.append(
                AppointmentNotification(
                    method=NOTIFICATION_PUSH,
                    minutes=int(raw.get("reminderMinutesBeforeStart", 0) or 0),
                )
            )
        attendees: list[AppointmentAttendee] = []
        for item in raw.get("attendees") or []:
            email = _address(item)
            attendees.append(
                AppointmentAttendee(
                    email=email,
                    organizer=bool(organizer) and email == organizer,
                    is_self=bool(own_email) and email == own_email,
                    attendance=ATTENDANCE_FROM_EXTERNAL.get(
                        str((item.get("status") or {}).get("response")), ATTENDANCE_NEEDS_ACTION
                    ),
                )
            )
        return Appointment(
            calendar_id=calendar.calendar_id,
            appointment_id=self.record_id(raw),
            ical_uid=str(raw.get("iCalUId", "") or ""),
            title=str(raw.get("subject", "") or ""),
            location=str((raw.get("location") or {}).get("displayName", "") or ""),
            description=str(raw.get("bodyPreview", "") or ""),
            start_time=start_time,
            end_time=end_time,
            all_day=all_day,
            timezone=str((raw.get("start") or {}).get("timeZone") or calendar.timezone or "UTC"),
            link_to_origin=str(raw.get("webLink", "") or ""),
            notifications=notifications,
            attendees=attendees,
        )

    def convert_to_external(self, appointment: Appointment) -> dict[str, Any]:
        start_time = appointment.start_time
        end_time = appointment.end_time
        if appointment.all_day and start_time is not None and end_time is not None:
            start_value = f"{start_time.astimezone(timezone.utc).date().isoformat()}T00:00:00"
            end_value = f"{exclusive_end_date(end_time).isoformat()}T00:00:00"
        else:
            start_value = _format_graph_datetime(start_time) if start_time else None
            end_value = _format_graph_datetime(end_time) if end_time else None
        payload: dict[str, Any] = {
            "subject": appointment.title,
            "location": {"displayName": appointment.location},
            "body": {"content": appointment.description, "contentType": "text"},
            "start": {"dateTime": start_value, "timeZone": "UTC"},
            "end": {"dateTime": end_value, "timeZone": "UTC"},
            "isAllDay": appointment.all_day,
            "isReminderOn": bool(appointment.notifications),
            "attendees": [
                {
                    "status": {"response": ATTENDANCE_TO_EXTERNAL.get(attendee.attendance, "none")},
                    "emailAddress": {"address": attendee.email},
                }
                for attendee in appointment.attendees
            ],
        }
        # Graph refuses reminderMinutesBeforeStart: null.
        if appointment.notifications:
            payload["reminderMinutesBeforeStart"] = appointment.notifications[0].minutes
        return payload
