from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


SERVICE_GOOGLE = "google"
SERVICE_MICROSOFT = "microsoft"
SUPPORTED_SERVICES = {SERVICE_GOOGLE, SERVICE_MICROSOFT}

ACCESS_OWNER = "OWNER"
ACCESS_WRITER = "WRITER"
ACCESS_READER = "READER"
ACCESS_FREE_BUSY = "FREE_BUSY"

ATTENDANCE_NEEDS_ACTION = "NEEDS_ACTION"
ATTENDANCE_DECLINED = "DECLINED"
ATTENDANCE_TENTATIVE = "TENTATIVE"
ATTENDANCE_ACCEPTED = "ACCEPTED"
ATTENDANCE_VALUES = {
    ATTENDANCE_NEEDS_ACTION,
    ATTENDANCE_DECLINED,
    ATTENDANCE_TENTATIVE,
    ATTENDANCE_ACCEPTED,
}

NOTIFICATION_PUSH = "PUSH"
NOTIFICATION_EMAIL = "EMAIL"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""
    api_scope: str = "https://www.googleapis.com/auth/calendar"
    redirect_uri: str = "oauth/google"
    max_attendees: int = 50
    sync_max_results: int = 250

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            api_scope=str(data.get("api_scope", "https://www.googleapis.com/auth/calendar")).strip()
            or "https://www.googleapis.com/auth/calendar",
            redirect_uri=str(data.get("redirect_uri", "oauth/google")).strip() or "oauth/google",
            max_attendees=max(1, int(data.get("max_attendees", 50))),
            sync_max_results=max(1, int(data.get("sync_max_results", 250))),
        )


@dataclass
class MicrosoftConfig:
    client_id: str = ""
    client_secret: str = ""
    api_scope: str = "offline_access Calendars.ReadWrite User.Read"
    redirect_uri: str = "oauth/microsoft"
    sync_max_results: int = 100
    dawn_of_time: str = "2015-01-01T00:00:00Z"
    end_of_time: str = "2035-12-31T23:59:59Z"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MicrosoftConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            api_scope=str(data.get("api_scope", "offline_access Calendars.ReadWrite User.Read")).strip()
            or "offline_access Calendars.ReadWrite User.Read",
            redirect_uri=str(data.get("redirect_uri", "oauth/microsoft")).strip() or "oauth/microsoft",
            sync_max_results=max(1, int(data.get("sync_max_results", 100))),
            dawn_of_time=str(data.get("dawn_of_time", "2015-01-01T00:00:00Z")).strip()
            or "2015-01-01T00:00:00Z",
            end_of_time=str(data.get("end_of_time", "2035-12-31T23:59:59Z")).strip()
            or "2035-12-31T23:59:59Z",
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 300
    max_pages_per_run: int = 20
    occurrence_workers: int = 4
    request_timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            max_pages_per_run=max(1, int(data.get("max_pages_per_run", 20))),
            occurrence_workers=max(1, int(data.get("occurrence_workers", 4))),
            request_timeout_seconds=max(1, int(data.get("request_timeout_seconds", 30))),
        )


@dataclass
class AppConfig:
    google: GoogleConfig = field(default_factory=GoogleConfig)
    microsoft: MicrosoftConfig = field(default_factory=MicrosoftConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleConfig.from_dict(data.get("google")),
            microsoft=MicrosoftConfig.from_dict(data.get("microsoft")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class ExternalCalendarInfo:
    service: str = ""
    calendar_id: str | None = None
    name: str = ""
    email: str = ""
    user_access: str = ""
    sync_bookmark: str | None = None
    page_bookmark: str | None = None
    last_sync_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ExternalCalendarInfo":
        data = data or {}
        return cls(
            service=str(data.get("service", "") or "").strip().lower(),
            calendar_id=_optional_text(data.get("calendar_id")),
            name=str(data.get("name", "") or ""),
            email=str(data.get("email", "") or ""),
            user_access=str(data.get("user_access", "") or ""),
            sync_bookmark=_optional_text(data.get("sync_bookmark")),
            page_bookmark=_optional_text(data.get("page_bookmark")),
            last_sync_at=parse_iso_datetime(data.get("last_sync_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_sync_at"] = serialize_datetime(self.last_sync_at)
        return payload


@dataclass
class Calendar:
    calendar_id: str
    name: str = ""
    color: str = ""
    timezone: str = "UTC"
    external: ExternalCalendarInfo = field(default_factory=ExternalCalendarInfo)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Calendar":
        return cls(
            calendar_id=str(data.get("calendar_id", "")).strip(),
            name=str(data.get("name", "") or ""),
            color=str(data.get("color", "") or ""),
            timezone=str(data.get("timezone", "") or "UTC"),
            external=ExternalCalendarInfo.from_dict(data.get("external")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "name": self.name,
            "color": self.color,
            "timezone": self.timezone,
            "external": self.external.to_dict(),
        }

    @property
    def is_linked(self) -> bool:
        return bool(self.external.calendar_id)

    @property
    def has_bookmark(self) -> bool:
        return bool(self.external.sync_bookmark or self.external.page_bookmark)


@dataclass
class AppointmentNotification:
    method: str = NOTIFICATION_PUSH
    minutes: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppointmentNotification":
        return cls(
            method=str(data.get("method", NOTIFICATION_PUSH) or NOTIFICATION_PUSH),
            minutes=int(data.get("minutes", 0) or 0),
        )


@dataclass
class AppointmentAttendee:
    email: str
    organizer: bool = False
    is_self: bool = False
    attendance: str = ATTENDANCE_NEEDS_ACTION

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppointmentAttendee":
        attendance = str(data.get("attendance", ATTENDANCE_NEEDS_ACTION) or ATTENDANCE_NEEDS_ACTION)
        if attendance not in ATTENDANCE_VALUES:
            attendance = ATTENDANCE_NEEDS_ACTION
        return cls(
            email=str(data.get("email", "") or ""),
            organizer=bool(data.get("organizer", False)),
            is_self=bool(data.get("is_self", False)),
            attendance=attendance,
        )


@dataclass
class Appointment:
    calendar_id: str
    appointment_id: str
    ical_uid: str = ""
    title: str = ""
    location: str = ""
    description: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    all_day: bool = False
    timezone: str = "UTC"
    link_to_origin: str = ""
    notifications: list[AppointmentNotification] = field(default_factory=list)
    attendees: list[AppointmentAttendee] = field(default_factory=list)
    master_appointment_id: str | None = None
    linked_to: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Appointment":
        return cls(
            calendar_id=str(data.get("calendar_id", "")).strip(),
            appointment_id=str(data.get("appointment_id", "")).strip(),
            ical_uid=str(data.get("ical_uid", "") or ""),
            title=str(data.get("title", "") or ""),
            location=str(data.get("location", "") or ""),
            description=str(data.get("description", "") or ""),
            start_time=parse_iso_datetime(data.get("start_time")),
            end_time=parse_iso_datetime(data.get("end_time")),
            all_day=bool(data.get("all_day", False)),
            timezone=str(data.get("timezone", "") or "UTC"),
            link_to_origin=str(data.get("link_to_origin", "") or ""),
            notifications=[
                AppointmentNotification.from_dict(item)
                for item in data.get("notifications") or []
                if isinstance(item, dict)
            ],
            attendees=[
                AppointmentAttendee.from_dict(item)
                for item in data.get("attendees") or []
                if isinstance(item, dict)
            ],
            master_appointment_id=_optional_text(data.get("master_appointment_id")),
            linked_to=[dict(item) for item in data.get("linked_to") or [] if isinstance(item, dict)],
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_time"] = serialize_datetime(self.start_time)
        payload["end_time"] = serialize_datetime(self.end_time)
        return payload

    def clone(self) -> "Appointment":
        return Appointment.from_dict(self.to_dict())

    def with_updates(self, **kwargs: Any) -> "Appointment":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    @property
    def key(self) -> dict[str, str]:
        return {"calendar_id": self.calendar_id, "appointment_id": self.appointment_id}

    def attendee_for(self, email: str) -> AppointmentAttendee | None:
        if not email:
            return None
        for attendee in self.attendees:
            if attendee.email.casefold() == email.casefold():
                return attendee
        return None


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    pages: int
    calendar_id: str
    trigger: str
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "pages": self.pages,
            "calendar_id": self.calendar_id,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }


def all_day_bounds(first_day: date, last_day: date) -> tuple[datetime, datetime]:
    start = date_to_datetime(first_day)
    end = date_to_datetime(last_day, is_end=True)
    return start, end


def exclusive_end_date(end_time: datetime) -> date:
    return _ensure_tz(end_time).astimezone(timezone.utc).date() + timedelta(days=1)
