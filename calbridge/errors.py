from __future__ import annotations

from typing import Any


class CalBridgeError(Exception):
    """Base class for errors surfaced by calbridge operations."""


class ProviderError(CalBridgeError):
    def __init__(self, status_code: int | None, message: str, payload: Any = None) -> None:
        self.status_code = status_code
        self.payload = payload
        super().__init__(f"provider request failed ({status_code or 'no response'}): {message}")

    @property
    def is_gone(self) -> bool:
        return self.status_code == 410


class RecordNotFoundError(CalBridgeError):
    def __init__(self, table: str, key: dict[str, Any]) -> None:
        self.table = table
        self.key = dict(key)
        super().__init__(f"record not found in {table}: {self.key}")


class CalendarAlreadyConfiguredError(CalBridgeError):
    def __init__(self, calendar_id: str) -> None:
        self.calendar_id = calendar_id
        super().__init__(f"calendar {calendar_id} was already configured")


class AppointmentCancelledError(CalBridgeError):
    def __init__(self, appointment_id: str) -> None:
        self.appointment_id = appointment_id
        super().__init__(f"appointment {appointment_id} is cancelled")


class CalendarSyncError(CalBridgeError):
    def __init__(self, calendar_id: str, phase: str, cause: BaseException) -> None:
        self.calendar_id = calendar_id
        self.phase = phase
        self.cause = cause
        super().__init__(f"sync of calendar {calendar_id} failed while {phase}: {cause}")


class ConfigError(CalBridgeError):
    def __init__(self, message: str, section: str | None = None) -> None:
        self.section = section
        super().__init__(message)
