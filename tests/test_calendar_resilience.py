from datetime import datetime

import httplib2
import pytest
from googleapiclient.errors import HttpError

from fluffer.calendar_google import EVENT_PREFIX, GoogleCalendarSource, parse_google_event
from fluffer.errors import StaleCheckpointError
from fluffer.models import ACCEPTED, Attendee
from fluffer.state import JsonStore

from fakes import TZ


class _Request:
    def __init__(self, result):
        self._result = result

    def execute(self):
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


class StubEvents:
    def __init__(self, pages=None, items=None):
        self.pages = list(pages or [])
        self.items = items or {}
        self.list_calls = []
        self.patches = []

    def list(self, **params):
        self.list_calls.append(params)
        return _Request(self.pages.pop(0))

    def get(self, calendarId, eventId):
        if eventId not in self.items:
            return _Request(HttpError(httplib2.Response({"status": "404"}), b"{}"))
        return _Request(self.items[eventId])

    def patch(self, calendarId, eventId, sendUpdates, body):
        self.patches.append((eventId, sendUpdates, body))
        return _Request({**self.items[eventId], **body})


class StubService:
    def __init__(self, events: StubEvents):
        self._events = events

    def events(self):
        return self._events


def _source(tmp_path, events: StubEvents) -> GoogleCalendarSource:
    return GoogleCalendarSource("primary", TZ, JsonStore(str(tmp_path / "persist")), service=StubService(events))


TIMED = {
    "id": "E1",
    "status": "confirmed",
    "summary": "Board games",
    "description": "invite: core",
    "start": {"dateTime": "2026-10-24T19:00:00-07:00"},
    "end": {"dateTime": "2026-10-24T21:00:00-07:00"},
    "attendees": [{"email": "a@example.com", "responseStatus": "accepted"}],
}


def test_parses_timed_and_all_day_events():
    timed = parse_google_event(TIMED, TZ)
    all_day = parse_google_event(
        {"id": "E2", "summary": "Con", "start": {"date": "2026-10-24"}, "end": {"date": "2026-10-26"}}, TZ
    )

    assert timed.start == datetime(2026, 10, 24, 19, 0, tzinfo=TZ)
    assert not timed.all_day
    assert timed.attendees == (Attendee("a@example.com", ACCEPTED),)
    assert all_day.all_day
    assert all_day.start == datetime(2026, 10, 24, tzinfo=TZ)
    assert all_day.end == datetime(2026, 10, 26, tzinfo=TZ)


def test_cancelled_items_parse_without_times():
    event = parse_google_event({"id": "E1", "status": "cancelled"}, TZ)

    assert event.cancelled
    assert event.start is None


def test_poll_follows_pages_and_caches_events(tmp_path):
    events = StubEvents(
        pages=[
            {"items": [TIMED], "nextPageToken": "page-2"},
            {"items": [{"id": "E9", "status": "cancelled"}], "nextSyncToken": "sync-1"},
        ]
    )
    source = _source(tmp_path, events)
    source.store.set(EVENT_PREFIX + "E9", {"id": "E9"})

    changed, checkpoint = source.poll_changes("sync-0")

    assert [e.event_id for e in changed] == ["E1", "E9"]
    assert checkpoint == "sync-1"
    assert events.list_calls[0]["syncToken"] == "sync-0"
    assert events.list_calls[1]["pageToken"] == "page-2"
    assert source.store.get(EVENT_PREFIX + "E1") == TIMED
    assert source.store.get(EVENT_PREFIX + "E9") is None


def test_expired_sync_token_raises_stale_checkpoint(tmp_path):
    gone = HttpError(httplib2.Response({"status": "410"}), b'{"error": {"message": "Sync token is no longer valid"}}')
    source = _source(tmp_path, StubEvents(pages=[gone]))

    with pytest.raises(StaleCheckpointError):
        source.poll_changes("sync-0")


def test_get_event_prefers_cache_and_handles_missing(tmp_path):
    events = StubEvents(items={"E1": TIMED})
    source = _source(tmp_path, events)

    assert source.get_event("E1").title == "Board games"
    assert source.store.get(EVENT_PREFIX + "E1") == TIMED
    assert source.get_event("nope") is None


def test_write_attendees_patches_and_refreshes_cache(tmp_path):
    events = StubEvents(items={"E1": TIMED})
    source = _source(tmp_path, events)

    updated = source.write_attendees("E1", [Attendee("b@example.com", "needsAction")])

    assert events.patches == [
        ("E1", "all", {"attendees": [{"email": "b@example.com", "responseStatus": "needsAction"}]})
    ]
    assert updated.attendees == (Attendee("b@example.com", "needsAction"),)
    assert source.store.get(EVENT_PREFIX + "E1")["attendees"] == [
        {"email": "b@example.com", "responseStatus": "needsAction"}
    ]
