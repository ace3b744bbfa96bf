from __future__ import annotations
from datetime import datetime
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo
import os

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .errors import StaleCheckpointError
from .models import Attendee, CalendarEvent
from .state import JsonStore

log = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar.events"]
EVENT_PREFIX = "event/"

def _get_creds(credentials_path: str, token_path: str) -> Credentials:
    creds = None
    if os.path.exists(token_path):
        creds = Credentials.from_authorized_user_file(token_path, SCOPES)
        if creds.valid:
            return creds

    if creds and creds.expired and creds.refresh_token:
        log.info("Refreshing Google Calendar token")
        creds.refresh(Request())
    else:
        flow = InstalledAppFlow.from_client_secrets_file(credentials_path, SCOPES)
        creds = flow.run_local_server(port=0)

    os.makedirs(os.path.dirname(token_path) or ".", exist_ok=True)
    with open(token_path, "w", encoding="utf-8") as f:
        f.write(creds.to_json())
    return creds


def _parse_when(obj: Optional[Dict[str, Any]], tz: ZoneInfo) -> Tuple[Optional[datetime], bool]:
    if not obj:
        return None, False
    # Timed events have "dateTime"; all-day events only have "date"
    if obj.get("dateTime"):
        return datetime.fromisoformat(obj["dateTime"]).astimezone(tz), False
    if obj.get("date"):
        return datetime.fromisoformat(obj["date"]).replace(tzinfo=tz), True
    return None, False


def parse_google_event(item: Dict[str, Any], tz: ZoneInfo) -> CalendarEvent:
    start, all_day = _parse_when(item.get("start"), tz)
    end, _ = _parse_when(item.get("end"), tz)

    attendees = tuple(
        Attendee(
            email=a["email"],
            response_status=a.get("responseStatus", "needsAction"),
            display_name=a.get("displayName"),
        )
        for a in item.get("attendees", [])
        if a.get("email")
    )

    return CalendarEvent(
        event_id=item["id"],
        status=item.get("status", "confirmed"),
        title=item.get("summary", ""),
        location=item.get("location", ""),
        description=item.get("description", ""),
        start=start,
        end=end,
        all_day=all_day,
        attendees=attendees,
    )


class GoogleCalendarSource:
    """Google Calendar access plus a local cache of the raw events seen so far."""

    def __init__(
        self,
        calendar_id: str,
        tz: ZoneInfo,
        store: JsonStore,
        credentials_path: str = "",
        token_path: str = "",
        service: Any = None,
    ) -> None:
        self.calendar_id = calendar_id
        self.tz = tz
        self.store = store
        self.credentials_path = credentials_path
        self.token_path = token_path
        self._service = service

    @property
    def service(self) -> Any:
        if self._service is None:
            creds = _get_creds(self.credentials_path, self.token_path)
            self._service = build("calendar", "v3", credentials=creds, cache_discovery=False)
        return self._service

    def _remember(self, item: Dict[str, Any]) -> None:
        key = EVENT_PREFIX + item["id"]
        if item.get("status") == "cancelled":
            self.store.delete(key)
        else:
            self.store.set(key, item)

    def poll_changes(self, checkpoint: Optional[str]) -> Tuple[List[CalendarEvent], Optional[str]]:
        """Every event changed since ``checkpoint`` (all events when it is None)."""
        events: List[CalendarEvent] = []
        page_token: Optional[str] = None
        next_checkpoint: Optional[str] = None

        while True:
            params: Dict[str, Any] = {"calendarId": self.calendar_id, "singleEvents": True}
            if checkpoint:
                params["syncToken"] = checkpoint
            if page_token:
                params["pageToken"] = page_token

            try:
                resp = self.service.events().list(**params).execute()
            except HttpError as e:
                # 410 Gone means the sync token is expired
                if e.resp.status == 410:
                    raise StaleCheckpointError(f"Sync token for {self.calendar_id} was invalidated") from e
                raise

            items = resp.get("items", [])
            for item in items:
                self._remember(item)
                events.append(parse_google_event(item, self.tz))

            page_token = resp.get("nextPageToken")
            if page_token:
                log.debug("%d items in sync, next page: %s", len(items), page_token)
                continue

            next_checkpoint = resp.get("nextSyncToken")
            if next_checkpoint:
                log.debug("%d items in sync, next sync: %s", len(items), next_checkpoint)
            else:
                log.warning("%d items in sync, missing next token", len(items))
            break

        return events, next_checkpoint

    def get_event(self, event_id: str) -> Optional[CalendarEvent]:
        item = self.store.get(EVENT_PREFIX + event_id)
        if item is None:
            try:
                item = self.service.events().get(calendarId=self.calendar_id, eventId=event_id).execute()
            except HttpError as e:
                if e.resp.status in (404, 410):
                    return None
                raise
            self._remember(item)
        return parse_google_event(item, self.tz)

    def write_attendees(self, event_id: str, attendees: Sequence[Attendee]) -> CalendarEvent:
        log.debug("Updating attendees of %s: %s", event_id, [a.email for a in attendees])
        item = self.service.events().patch(
            calendarId=self.calendar_id,
            eventId=event_id,
            sendUpdates="all",
            body={"attendees": [a.to_google() for a in attendees]},
        ).execute()
        self._remember(item)
        return parse_google_event(item, self.tz)
