from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from calbridge.config_manager import ConfigManager
from calbridge.connector import CalendarConnector
from calbridge.models import AppConfig, Calendar, SyncResult
from calbridge.persistence import has_appointments, list_calendars

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncScheduler:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: Any,
        connector_factory: Callable[[AppConfig, Any], CalendarConnector] = CalendarConnector,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.connector_factory = connector_factory
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self._run_lock = threading.Lock()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calbridge-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _loop(self) -> None:
        self.run_once(trigger="startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_once(trigger="manual" if manual else "scheduled")

    def run_once(self, trigger: str = "manual") -> list[SyncResult]:
        with self._run_lock:
            config = self.config_manager.load()
            connector = self.connector_factory(config, self.state_store)
            calendars = [calendar for calendar in list_calendars(self.state_store) if calendar.is_linked]
            logger.info("Sync run (%s): %d linked calendars", trigger, len(calendars))
            return [
                self.sync_until_caught_up(connector, calendar, trigger, config.sync.max_pages_per_run)
                for calendar in calendars
            ]

    def sync_calendar_now(self, calendar: Calendar, trigger: str = "manual") -> SyncResult:
        with self._run_lock:
            config = self.config_manager.load()
            connector = self.connector_factory(config, self.state_store)
            return self.sync_until_caught_up(connector, calendar, trigger, config.sync.max_pages_per_run)

    def is_first_sync(self, calendar: Calendar) -> bool:
        if calendar.has_bookmark:
            return False
        return not has_appointments(self.state_store, calendar.calendar_id)

    def sync_until_caught_up(
        self,
        connector: CalendarConnector,
        calendar: Calendar,
        trigger: str,
        max_pages: int,
    ) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        session = connector.open_session(calendar)
        pages = 0
        caught_up = False
        try:
            first_sync = self.is_first_sync(calendar)
            while pages < max(1, int(max_pages)):
                report = connector.run_sync_pass(calendar, first_sync=first_sync, session=session)
                pages += 1
                if report.full_resync:
                    # Bookmarks were reset; bulk writes stay off while appointments are stored.
                    first_sync = self.is_first_sync(calendar)
                    continue
                if report.caught_up:
                    caught_up = True
                    break
        except Exception as exc:
            logger.exception("Sync of calendar %s failed after %d pages", calendar.calendar_id, pages)
            return self._record(
                trigger, calendar, STATUS_FAILED, f"{type(exc).__name__}: {exc}", pages, started_at
            )

        if caught_up:
            return self._record(trigger, calendar, STATUS_SUCCESS, f"Caught up after {pages} pages.", pages, started_at)
        logger.info("Calendar %s still has pending pages after %d passes", calendar.calendar_id, pages)
        return self._record(
            trigger, calendar, STATUS_PARTIAL, f"Stopped after {pages} pages; more data pending.", pages, started_at
        )

    def _record(
        self,
        trigger: str,
        calendar: Calendar,
        status: str,
        message: str,
        pages: int,
        started_at: datetime,
    ) -> SyncResult:
        duration_ms = _elapsed_ms(started_at)
        self.state_store.record_sync_run(
            trigger=trigger,
            calendar_id=calendar.calendar_id,
            status=status,
            message=message,
            pages=pages,
            duration_ms=duration_ms,
        )
        return SyncResult(
            status=status,
            message=message,
            duration_ms=duration_ms,
            pages=pages,
            calendar_id=calendar.calendar_id,
            trigger=trigger,
        )
