from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from calbridge.errors import CalendarSyncError
from calbridge.models import Appointment, Calendar, utc_now
from calbridge.persistence import delete_appointments, save_appointments, save_calendar
from calbridge.providers import GROUPED_OCCURRENCE, ChangeSet, Cursor, ProviderSession
from calbridge.reconciler import OccurrenceReconciler

logger = logging.getLogger(__name__)

PHASE_IDLE = "idle"
PHASE_FETCHING = "fetching"
PHASE_CLASSIFYING = "classifying"
PHASE_RECONCILING = "reconciling"
PHASE_PERSISTING = "persisting"
PHASE_BOOKMARK_ADVANCE = "bookmark_advance"
PHASE_DONE = "done"
PHASE_MORE_DATA_PENDING = "more_data_pending"


@dataclass
class SyncPassReport:
    calendar_id: str
    first_sync: bool
    phase: str = PHASE_IDLE
    fetched: int = 0
    upserted: int = 0
    deleted: int = 0
    occurrence_groups: int = 0
    occurrences_inserted: int = 0
    delete_failed: bool = False
    full_resync: bool = False
    caught_up: bool = False


@dataclass
class ClassifiedChanges:
    direct: list[dict[str, Any]]
    occurrences: list[dict[str, Any]]
    removed_ids: list[str]


def classify_changes(provider: Any, change_set: ChangeSet) -> ClassifiedChanges:
    direct: list[dict[str, Any]] = []
    occurrences: list[dict[str, Any]] = []
    grouped = provider.feed_kind == GROUPED_OCCURRENCE
    for record in change_set.changed_items:
        if grouped and provider.occurrence_master_id(record):
            occurrences.append(record)
        else:
            direct.append(record)
    removed_ids = [item for item in dict.fromkeys(change_set.removed_ids) if item]
    return ClassifiedChanges(direct=direct, occurrences=occurrences, removed_ids=removed_ids)


class SyncEngine:
    """Runs one page of incremental synchronization for one calendar per call."""

    def __init__(
        self,
        store: Any,
        reconciler: OccurrenceReconciler | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler or OccurrenceReconciler(store)
        self.clock = clock or utc_now

    def sync_calendar(self, provider: Any, session: ProviderSession, first_sync: bool = False) -> bool:
        return self.run_pass(provider, session, first_sync=first_sync).caught_up

    def run_pass(self, provider: Any, session: ProviderSession, first_sync: bool = False) -> SyncPassReport:
        calendar = session.calendar
        report = SyncPassReport(calendar_id=calendar.calendar_id, first_sync=first_sync)
        if not calendar.is_linked:
            raise CalendarSyncError(calendar.calendar_id, PHASE_IDLE, ValueError("calendar is not linked"))
        logger.info("Sync calendar %s: %s", calendar.calendar_id, "first sync" if first_sync else "delta")

        report.phase = PHASE_FETCHING
        cursor = Cursor.from_calendar(calendar)
        try:
            change_set = provider.fetch_changes(session, cursor)
        except Exception as exc:
            raise CalendarSyncError(calendar.calendar_id, PHASE_FETCHING, exc) from exc

        if change_set.must_full_resync:
            logger.warning("Calendar %s bookmark rejected by provider; resetting for a full sync", calendar.calendar_id)
            report.full_resync = True
            self._advance_bookmark(calendar, Cursor(), report)
            return self._finish(report, caught_up=True)

        report.fetched = len(change_set.changed_items) + len(change_set.removed_ids)
        logger.info(
            "Calendar %s: %d changes fetched, more data after this page: %s",
            calendar.calendar_id,
            report.fetched,
            change_set.has_more_pages,
        )
        if change_set.is_empty:
            if change_set.next_cursor != cursor:
                self._advance_bookmark(calendar, change_set.next_cursor, report)
            return self._finish(report, caught_up=not change_set.has_more_pages)

        report.phase = PHASE_CLASSIFYING
        classified = classify_changes(provider, change_set)

        report.phase = PHASE_RECONCILING
        appointments = self._convert(provider, calendar, classified.direct)
        outcomes = self.reconciler.reconcile(
            calendar,
            provider,
            classified.occurrences,
            change_set.changed_items,
            first_sync=first_sync,
            now=self.clock(),
        )
        report.occurrence_groups = len(outcomes)
        report.occurrences_inserted = sum(outcome.inserted for outcome in outcomes)

        report.phase = PHASE_PERSISTING
        logger.info("Calendar %s: appointments to insert: %d", calendar.calendar_id, len(appointments))
        report.upserted = save_appointments(self.store, appointments, bulk=first_sync)
        logger.info("Calendar %s: appointments to delete: %d", calendar.calendar_id, len(classified.removed_ids))
        try:
            report.deleted = delete_appointments(self.store, calendar.calendar_id, classified.removed_ids)
        except Exception as exc:
            report.delete_failed = True
            logger.warning(
                "Batch delete of %d appointments in calendar %s failed: %s",
                len(classified.removed_ids),
                calendar.calendar_id,
                exc,
            )
        # A removed id may be a series master; its occurrences go with it.
        for removed_id in classified.removed_ids:
            self.reconciler.purge_occurrences(calendar.calendar_id, removed_id)

        self._advance_bookmark(calendar, change_set.next_cursor, report)
        return self._finish(report, caught_up=not change_set.has_more_pages)

    def _convert(self, provider: Any, calendar: Calendar, records: list[dict[str, Any]]) -> list[Appointment]:
        appointments: list[Appointment] = []
        for record in records:
            try:
                appointments.append(provider.convert_from_external(record, calendar))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(
                    "Skipping unreadable record %s of calendar %s: %s",
                    provider.record_id(record),
                    calendar.calendar_id,
                    exc,
                )
        return appointments

    def _advance_bookmark(self, calendar: Calendar, cursor: Cursor, report: SyncPassReport) -> None:
        report.phase = PHASE_BOOKMARK_ADVANCE
        updated = Calendar.from_dict(calendar.to_dict())
        updated.external.sync_bookmark = cursor.sync_bookmark
        updated.external.page_bookmark = cursor.page_bookmark
        updated.external.last_sync_at = self.clock()
        try:
            save_calendar(self.store, updated)
        except Exception as exc:
            raise CalendarSyncError(calendar.calendar_id, PHASE_BOOKMARK_ADVANCE, exc) from exc
        calendar.external = updated.external

    @staticmethod
    def _finish(report: SyncPassReport, caught_up: bool) -> SyncPassReport:
        report.caught_up = caught_up
        report.phase = PHASE_DONE if caught_up else PHASE_MORE_DATA_PENDING
        return report
