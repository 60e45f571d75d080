from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from calsync.models import CanonicalEventData, ProviderEvent, _ensure_tz

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]
PAGE_SIZE = 2500


def load_credentials(token_file: str) -> Credentials:
    if not token_file:
        raise RuntimeError("Google Calendar token_file is not configured.")
    creds = Credentials.from_authorized_user_file(token_file, SCOPES)
    if creds.valid:
        return creds
    if creds.expired and creds.refresh_token:
        creds.refresh(Request())
        with open(token_file, "w", encoding="utf-8") as handle:
            handle.write(creds.to_json())
        return creds
    raise RuntimeError(f"Google Calendar token in {token_file} is invalid and cannot be refreshed.")


def build_service(token_file: str) -> Any:
    return build("calendar", "v3", credentials=load_credentials(token_file), cache_discovery=False)


class GCalService:
    def __init__(self, calendar_id: str, token_file: str = "", service: Any = None) -> None:
        self.calendar_id = calendar_id
        self.token_file = token_file
        self._service = service

    @property
    def service(self) -> Any:
        if self._service is None:
            self._service = build_service(self.token_file)
        return self._service

    def list_events(self, start: datetime, end: datetime) -> list[ProviderEvent]:
        """Single (already expanded) events between ``start`` and ``end``."""
        events: list[ProviderEvent] = []
        page_token = None
        while True:
            response = (
                self.service.events()
                .list(
                    calendarId=self.calendar_id,
                    timeMin=_ensure_tz(start).isoformat(),
                    timeMax=_ensure_tz(end).isoformat(),
                    singleEvents=True,
                    showDeleted=False,
                    maxResults=PAGE_SIZE,
                    pageToken=page_token,
                )
                .execute()
            )
            for item in response.get("items", []):
                events.append(ProviderEvent.from_api(item))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        logger.info("Fetched %d events from %s", len(events), self.calendar_id)
        return events

    def insert_event(self, data: CanonicalEventData) -> str:
        created = (
            self.service.events()
            .insert(calendarId=self.calendar_id, body=data.to_api_body())
            .execute()
        )
        return str(created.get("id", ""))

    def update_event(self, event_id: str, data: CanonicalEventData) -> None:
        self.service.events().update(
            calendarId=self.calendar_id,
            eventId=event_id,
            body=data.to_api_body(),
        ).execute()

    def delete_event(self, event_id: str) -> None:
        self.service.events().delete(calendarId=self.calendar_id, eventId=event_id).execute()

    def delete_events_by_ids(self, event_ids: list[str]) -> list[str]:
        """Delete each id independently; returns the ids that failed."""
        failed: list[str] = []
        for event_id in event_ids:
            try:
                self.delete_event(event_id)
            except Exception as exc:
                logger.error("Deleting %s from %s failed: %s", event_id, self.calendar_id, exc)
                failed.append(event_id)
        return failed
