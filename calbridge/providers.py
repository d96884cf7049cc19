from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

import requests

from calbridge.errors import ProviderError
from calbridge.models import Appointment, Calendar
from calbridge.persistence import load_refresh_token, save_refresh_token

logger = logging.getLogger(__name__)

# Change-feed variants: how a provider reports recurring-series changes.
FLAT_DELTA = "flat-delta"
GROUPED_OCCURRENCE = "grouped-occurrence"


@dataclass
class Cursor:
    sync_bookmark: str | None = None
    page_bookmark: str | None = None

    @classmethod
    def from_calendar(cls, calendar: Calendar) -> "Cursor":
        return cls(
            sync_bookmark=calendar.external.sync_bookmark or None,
            page_bookmark=calendar.external.page_bookmark or None,
        )

    @property
    def is_empty(self) -> bool:
        return not self.sync_bookmark and not self.page_bookmark


@dataclass
class ChangeSet:
    changed_items: list[dict[str, Any]] = field(default_factory=list)
    removed_ids: list[str] = field(default_factory=list)
    next_cursor: Cursor = field(default_factory=Cursor)
    has_more_pages: bool = False
    must_full_resync: bool = False

    @classmethod
    def full_resync(cls) -> "ChangeSet":
        return cls(next_cursor=Cursor(), must_full_resync=True)

    @property
    def is_empty(self) -> bool:
        return not self.changed_items and not self.removed_ids


@dataclass
class ProviderSession:
    """Per-calendar state for one sequence of provider calls; never shared between calendars."""

    calendar: Calendar
    access_token: str = ""


class CalendarProvider:
    service = ""
    feed_kind = FLAT_DELTA
    token_url = ""

    def __init__(
        self,
        config: Any,
        store: Any,
        timeout_seconds: int = 30,
        persist_tokens_async: bool = True,
    ) -> None:
        self.config = config
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.persist_tokens_async = persist_tokens_async

    def _call(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        try:
            response = requests.request(
                method,
                url,
                params=params,
                data=data,
                json=json_body,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderError(None, str(exc)) from exc
        if response.status_code >= 400:
            raise ProviderError(response.status_code, str(response.text or "")[:500])
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _auth_headers(self, session: ProviderSession) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.get_access_token(session)}"}

    def _request(
        self,
        session: ProviderSession,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        merged = {**(headers or {}), **self._auth_headers(session)}
        try:
            return self._call(method, url, params=params, json_body=json_body, headers=merged)
        except ProviderError as exc:
            if exc.status_code != 401:
                raise
        # Access token rejected: refresh once and replay.
        self.get_access_token(session, force=True)
        merged = {**(headers or {}), **self._auth_headers(session)}
        return self._call(method, url, params=params, json_body=json_body, headers=merged)

    def _oauth_params(self) -> dict[str, str]:
        return {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "scope": self.config.api_scope,
        }

    def redirect_uri(self, project_url: str) -> str:
        return f"{project_url.rstrip('/')}/{self.config.redirect_uri.lstrip('/')}"

    def exchange_code(self, code: str, project_url: str) -> str:
        payload = self._call(
            "POST",
            self.token_url,
            data={
                **self._oauth_params(),
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri(project_url),
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        refresh_token = str(payload.get("refresh_token") or "")
        if not refresh_token:
            raise ProviderError(None, "authorization response did not include a refresh token")
        return refresh_token

    def get_access_token(self, session: ProviderSession, force: bool = False) -> str:
        if session.access_token and not force:
            return session.access_token
        calendar_id = session.calendar.calendar_id
        refresh_token = load_refresh_token(self.store, calendar_id)
        payload = self._call(
            "POST",
            self.token_url,
            data={**self._oauth_params(), "refresh_token": refresh_token, "grant_type": "refresh_token"},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        access_token = str(payload.get("access_token") or "")
        if not access_token:
            raise ProviderError(None, "token response did not include an access token")
        session.access_token = access_token
        rotated = str(payload.get("refresh_token") or "")
        if rotated and rotated != refresh_token:
            if self.persist_tokens_async:
                threading.Thread(
                    target=self._persist_refresh_token,
                    args=(calendar_id, rotated),
                    name=f"calbridge-token-{calendar_id}",
                    daemon=True,
                ).start()
            else:
                self._persist_refresh_token(calendar_id, rotated)
        return access_token

    def _persist_refresh_token(self, calendar_id: str, token: str) -> None:
        try:
            save_refresh_token(self.store, calendar_id, token)
        except Exception as exc:
            logger.warning("Could not persist rotated refresh token for calendar %s: %s", calendar_id, exc)

    def record_id(self, raw: dict[str, Any]) -> str:
        return str(raw.get("id", "") or "")

    def occurrence_master_id(self, raw: dict[str, Any]) -> str | None:
        return None

    def recurrence_frequency(self, master: dict[str, Any]) -> str:
        return ""

    def fetch_changes(self, session: ProviderSession, cursor: Cursor) -> ChangeSet:
        raise NotImplementedError

    def convert_from_external(self, raw: dict[str, Any], calendar: Calendar) -> Appointment:
        raise NotImplementedError

    def convert_to_external(self, appointment: Appointment) -> dict[str, Any]:
        raise NotImplementedError

    def describe_calendar(self, session: ProviderSession) -> dict[str, Any]:
        raise NotImplementedError

    def get_appointment(self, session: ProviderSession, appointment_id: str) -> Appointment:
        raise NotImplementedError

    def post_appointment(self, session: ProviderSession, appointment: Appointment) -> Appointment:
        raise NotImplementedError

    def put_appointment(self, session: ProviderSession, appointment: Appointment) -> None:
        raise NotImplementedError

    def delete_appointment(self, session: ProviderSession, appointment_id: str) -> None:
        raise NotImplementedError

    def update_appointment_attendance(
        self, session: ProviderSession, appointment: Appointment, attendance: str
    ) -> None:
        raise NotImplementedError
