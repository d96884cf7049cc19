from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from calbridge.models import Appointment, Calendar, all_day_bounds, utc_now
from calbridge.persistence import delete_appointments, find_occurrences, save_appointments

logger = logging.getLogger(__name__)

DAILY_LIMIT = timedelta(days=60)
WEEKLY_LIMIT = timedelta(days=365)
DEFAULT_LIMIT = timedelta(days=3650)

INHERITED_TEXT_FIELDS = ("title", "location", "description")


def occurrence_limit(frequency: str) -> timedelta:
    normalized = str(frequency or "").strip().lower()
    if normalized == "daily":
        return DAILY_LIMIT
    if normalized == "weekly":
        return WEEKLY_LIMIT
    return DEFAULT_LIMIT


def occurrence_window(frequency: str, now: datetime) -> tuple[datetime, datetime]:
    limit = occurrence_limit(frequency)
    return now - limit, now + limit


def in_window(appointment: Appointment, window: tuple[datetime, datetime]) -> bool:
    start, end = appointment.start_time, appointment.end_time
    if start is None or end is None or start >= end:
        return False
    return window[0] < start < window[1]


def group_occurrences(
    records: Iterable[dict[str, Any]],
    master_id_of: Callable[[dict[str, Any]], str | None],
) -> dict[str, list[dict[str, Any]]]:
    groups: dict[str, list[dict[str, Any]]] = {}
    for record in records:
        master_id = master_id_of(record)
        if not master_id:
            continue
        groups.setdefault(master_id, []).append(record)
    return groups


def inherit_from_master(occurrence: Appointment, master: Appointment) -> Appointment:
    inherited: dict[str, Any] = {
        field_name: getattr(master, field_name)
        for field_name in INHERITED_TEXT_FIELDS
        if not getattr(occurrence, field_name)
    }
    if not occurrence.attendees:
        inherited["attendees"] = master.clone().attendees
    if master.all_day and not occurrence.all_day and occurrence.start_time and occurrence.end_time:
        first_day = occurrence.start_time.date()
        last_day = (occurrence.end_time - timedelta(microseconds=1)).date()
        inherited["start_time"], inherited["end_time"] = all_day_bounds(first_day, max(first_day, last_day))
    return occurrence.with_updates(all_day=master.all_day, master_appointment_id=master.appointment_id, **inherited)


@dataclass
class OccurrenceOutcome:
    master_id: str
    received: int
    inserted: int = 0
    purged: int = 0
    skipped: bool = False
    reason: str = "replaced"


class OccurrenceReconciler:
    """Replaces the stored occurrences of each reported series master with the set seen in this page."""

    def __init__(self, store: Any, max_workers: int = 4) -> None:
        self.store = store
        self.max_workers = max(1, int(max_workers))

    def purge_occurrences(self, calendar_id: str, master_id: str) -> int:
        try:
            stored = find_occurrences(self.store, calendar_id, master_id)
            return delete_appointments(
                self.store, calendar_id, [str(item.get("appointment_id", "")) for item in stored]
            )
        except Exception as exc:
            logger.warning("Could not purge occurrences of %s in calendar %s: %s", master_id, calendar_id, exc)
            return 0

    def materialize(
        self,
        calendar: Calendar,
        provider: Any,
        master_record: dict[str, Any],
        records: list[dict[str, Any]],
        now: datetime,
    ) -> list[Appointment]:
        master = provider.convert_from_external(master_record, calendar)
        window = occurrence_window(provider.recurrence_frequency(master_record), now)
        materialized: dict[str, Appointment] = {}
        for record in records:
            try:
                occurrence = inherit_from_master(provider.convert_from_external(record, calendar), master)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed occurrence of %s: %s", master.appointment_id, exc)
                continue
            if not occurrence.appointment_id or not in_window(occurrence, window):
                continue
            materialized[occurrence.appointment_id] = occurrence
        return list(materialized.values())

    def _reconcile_group(
        self,
        calendar: Calendar,
        provider: Any,
        master_id: str,
        records: list[dict[str, Any]],
        masters: dict[str, dict[str, Any]],
        first_sync: bool,
        now: datetime,
    ) -> OccurrenceOutcome:
        outcome = OccurrenceOutcome(master_id=master_id, received=len(records))
        master_record = masters.get(master_id)
        if master_record is None:
            # The master comes back together with its occurrences on a later page.
            outcome.skipped = True
            outcome.reason = "master_not_in_page"
            return outcome
        try:
            occurrences = self.materialize(calendar, provider, master_record, records, now)
            outcome.purged = self.purge_occurrences(calendar.calendar_id, master_id)
            outcome.inserted = save_appointments(self.store, occurrences, bulk=first_sync)
        except Exception as exc:
            logger.warning(
                "Occurrences of %s in calendar %s not reconciled: %s", master_id, calendar.calendar_id, exc
            )
            outcome.skipped = True
            outcome.reason = "failed"
        return outcome

    def reconcile(
        self,
        calendar: Calendar,
        provider: Any,
        occurrence_records: Iterable[dict[str, Any]],
        page_records: Iterable[dict[str, Any]],
        *,
        first_sync: bool = False,
        now: datetime | None = None,
    ) -> list[OccurrenceOutcome]:
        groups = group_occurrences(occurrence_records, provider.occurrence_master_id)
        if not groups:
            return []
        now = now or utc_now()
        masters = {provider.record_id(record): record for record in page_records}
        logger.info("Master appointments to reconcile in calendar %s: %d", calendar.calendar_id, len(groups))

        def run(item: tuple[str, list[dict[str, Any]]]) -> OccurrenceOutcome:
            master_id, records = item
            return self._reconcile_group(calendar, provider, master_id, records, masters, first_sync, now)

        # Distinct masters touch disjoint index ranges, so their groups may run side by side.
        if self.max_workers == 1 or len(groups) == 1:
            return [run(item) for item in groups.items()]
        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(groups)), thread_name_prefix="calbridge-occurrences"
        ) as executor:
            return list(executor.map(run, groups.items()))
