from __future__ import annotations

import logging
from typing import Any, Iterable

from calbridge.errors import RecordNotFoundError
from calbridge.models import Appointment, Calendar

logger = logging.getLogger(__name__)

TABLE_CALENDARS = "calendars"
TABLE_APPOINTMENTS = "appointments"
TABLE_CALENDAR_TOKENS = "calendar_tokens"
INDEX_MASTER_APPOINTMENT = "calendar_id-master_appointment_id-index"

# Attributes owned by the local store; a sync overwrite must carry them over.
STORE_OWNED_FIELDS = ("linked_to",)


def load_calendar(store: Any, calendar_id: str) -> Calendar:
    return Calendar.from_dict(store.get(TABLE_CALENDARS, {"calendar_id": calendar_id}))


def save_calendar(store: Any, calendar: Calendar) -> None:
    store.put(TABLE_CALENDARS, calendar.to_dict())


def list_calendars(store: Any) -> list[Calendar]:
    return [Calendar.from_dict(item) for item in store.scan(TABLE_CALENDARS)]


def list_appointments(store: Any, calendar_id: str) -> list[Appointment]:
    return [Appointment.from_dict(item) for item in store.scan(TABLE_APPOINTMENTS, calendar_id=calendar_id)]


def has_appointments(store: Any, calendar_id: str) -> bool:
    return bool(store.scan(TABLE_APPOINTMENTS, limit=1, calendar_id=calendar_id))


def _preserve_store_owned(appointment: Appointment, stored: dict[str, Any]) -> dict[str, Any]:
    record = appointment.to_dict()
    for field_name in STORE_OWNED_FIELDS:
        if stored.get(field_name):
            record[field_name] = stored[field_name]
    return record


def save_appointments(store: Any, appointments: Iterable[Appointment], bulk: bool = False) -> int:
    """Write appointments without dropping store-owned links; failures are logged and skipped.

    ``bulk`` skips the per-record read and is only safe while the calendar has nothing stored.
    """
    items = list(appointments)
    if not items:
        return 0
    if bulk:
        try:
            store.batch_put(TABLE_APPOINTMENTS, [item.to_dict() for item in items])
        except Exception as exc:
            logger.warning("Batch write of %d appointments failed: %s", len(items), exc)
            return 0
        return len(items)

    saved = 0
    for appointment in items:
        try:
            try:
                stored = store.get(TABLE_APPOINTMENTS, appointment.key)
            except RecordNotFoundError:
                record = appointment.to_dict()
            else:
                record = _preserve_store_owned(appointment, stored)
            store.put(TABLE_APPOINTMENTS, record)
            saved += 1
        except Exception as exc:
            logger.warning(
                "Skipping appointment %s/%s: %s",
                appointment.calendar_id,
                appointment.appointment_id,
                exc,
            )
    return saved


def delete_appointments(store: Any, calendar_id: str, appointment_ids: Iterable[str]) -> int:
    keys = [
        {"calendar_id": calendar_id, "appointment_id": appointment_id}
        for appointment_id in dict.fromkeys(appointment_ids)
        if appointment_id
    ]
    if not keys:
        return 0
    store.batch_delete(TABLE_APPOINTMENTS, keys)
    return len(keys)


def find_occurrences(store: Any, calendar_id: str, master_appointment_id: str) -> list[dict[str, Any]]:
    return store.query(
        TABLE_APPOINTMENTS,
        INDEX_MASTER_APPOINTMENT,
        {"calendar_id": calendar_id, "master_appointment_id": master_appointment_id},
    )


def load_refresh_token(store: Any, calendar_id: str) -> str:
    record = store.get(TABLE_CALENDAR_TOKENS, {"calendar_id": calendar_id})
    return str(record.get("token", "") or "")


def save_refresh_token(store: Any, calendar_id: str, token: str) -> None:
    store.put(TABLE_CALENDAR_TOKENS, {"calendar_id": calendar_id, "token": token})
