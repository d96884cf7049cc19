from __future__ import annotations

import logging
from typing import Any

from calbridge.errors import CalendarAlreadyConfiguredError
from calbridge.google_provider import GoogleCalendarProvider
from calbridge.microsoft_provider import MicrosoftCalendarProvider
from calbridge.models import (
    SERVICE_GOOGLE,
    SERVICE_MICROSOFT,
    AppConfig,
    Appointment,
    Calendar,
    ExternalCalendarInfo,
)
from calbridge.persistence import load_calendar, save_calendar, save_refresh_token
from calbridge.providers import CalendarProvider, ProviderSession
from calbridge.reconciler import OccurrenceReconciler
from calbridge.sync_engine import SyncEngine, SyncPassReport

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[CalendarProvider]] = {
    SERVICE_GOOGLE: GoogleCalendarProvider,
    SERVICE_MICROSOFT: MicrosoftCalendarProvider,
}


def build_provider(service: str, config: AppConfig, store: Any) -> CalendarProvider:
    provider_class = PROVIDER_CLASSES.get(str(service or "").strip().lower())
    if provider_class is None:
        raise ValueError(f"Unsupported calendar service: {service!r}")
    provider_config = config.google if provider_class is GoogleCalendarProvider else config.microsoft
    return provider_class(provider_config, store, timeout_seconds=config.sync.request_timeout_seconds)


class CalendarConnector:
    def __init__(self, config: AppConfig, store: Any, engine: SyncEngine | None = None) -> None:
        self.config = config
        self.store = store
        self.engine = engine or SyncEngine(
            store, reconciler=OccurrenceReconciler(store, max_workers=config.sync.occurrence_workers)
        )

    def provider_for(self, calendar: Calendar) -> CalendarProvider:
        return build_provider(calendar.external.service, self.config, self.store)

    def open_session(self, calendar: Calendar) -> ProviderSession:
        return ProviderSession(calendar=calendar)

    def link_calendar(
        self,
        calendar_id: str,
        service: str,
        code: str,
        project_url: str,
        provider_calendar_id: str,
    ) -> Calendar:
        calendar = load_calendar(self.store, calendar_id)
        if calendar.external.calendar_id:
            raise CalendarAlreadyConfiguredError(calendar_id)
        if not str(provider_calendar_id or "").strip():
            raise ValueError("provider_calendar_id is required")
        provider = build_provider(service, self.config, self.store)
        refresh_token = provider.exchange_code(code, project_url)
        save_refresh_token(self.store, calendar_id, refresh_token)
        calendar.external = ExternalCalendarInfo(
            service=provider.service,
            calendar_id=str(provider_calendar_id).strip(),
        )
        save_calendar(self.store, calendar)
        logger.info("Calendar %s linked to %s calendar %s", calendar_id, provider.service, provider_calendar_id)
        return calendar

    def update_calendar_configuration(self, calendar: Calendar, session: ProviderSession | None = None) -> Calendar:
        provider = self.provider_for(calendar)
        session = session or self.open_session(calendar)
        details = provider.describe_calendar(session)
        if not calendar.name or calendar.name == "-":
            calendar.name = details["name"]
        if details.get("timezone"):
            calendar.timezone = details["timezone"]
        if not calendar.color:
            calendar.color = details.get("color", "")
        calendar.external.name = details["name"]
        calendar.external.user_access = details["user_access"]
        calendar.external.email = details["email"]
        save_calendar(self.store, calendar)
        return calendar

    def sync_calendar(
        self,
        calendar: Calendar,
        first_sync: bool = False,
        session: ProviderSession | None = None,
    ) -> bool:
        return self.run_sync_pass(calendar, first_sync=first_sync, session=session).caught_up

    def run_sync_pass(
        self,
        calendar: Calendar,
        first_sync: bool = False,
        session: ProviderSession | None = None,
    ) -> SyncPassReport:
        provider = self.provider_for(calendar)
        return self.engine.run_pass(provider, session or self.open_session(calendar), first_sync=first_sync)

    def get_appointment(self, calendar: Calendar, appointment_id: str) -> Appointment:
        return self.provider_for(calendar).get_appointment(self.open_session(calendar), appointment_id)

    def post_appointment(self, calendar: Calendar, appointment: Appointment) -> Appointment:
        return self.provider_for(calendar).post_appointment(self.open_session(calendar), appointment)

    def put_appointment(self, calendar: Calendar, appointment: Appointment) -> None:
        self.provider_for(calendar).put_appointment(self.open_session(calendar), appointment)

    def delete_appointment(self, calendar: Calendar, appointment_id: str) -> None:
        self.provider_for(calendar).delete_appointment(self.open_session(calendar), appointment_id)

    def update_appointment_attendance(self, calendar: Calendar, appointment: Appointment, attendance: str) -> None:
        self.provider_for(calendar).update_appointment_attendance(
            self.open_session(calendar), appointment, attendance
        )
