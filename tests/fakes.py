from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from fluffer.errors import ArtifactMissingError, StaleCheckpointError
from fluffer.invites import InviteResolver, StaticGroups
from fluffer.models import Attendee, CalendarEvent
from fluffer.reconciler import Reconciler
from fluffer.state import JsonStore, SettingsOwner

TZ = ZoneInfo("America/Los_Angeles")
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=TZ)


def make_event(
    event_id: str = "E1",
    start: Optional[datetime] = None,
    duration: Optional[timedelta] = timedelta(hours=2),
    description: str = "invite: core",
    attendees: Tuple[Attendee, ...] = (),
    status: str = "confirmed",
    title: str = "Board games",
) -> CalendarEvent:
    start = start or NOW + timedelta(days=2)
    return CalendarEvent(
        event_id=event_id,
        status=status,
        title=title,
        location="Rec room",
        description=description,
        start=start,
        end=start + duration if duration else None,
        attendees=attendees,
    )


class FakeCalendar:
    def __init__(self, events: Optional[List[CalendarEvent]] = None) -> None:
        self.events: Dict[str, CalendarEvent] = {e.event_id: e for e in events or []}
        self.pending: List[CalendarEvent] = list(events or [])
        self.checkpoints: List[Optional[str]] = []
        self.writes: List[Tuple[str, List[Attendee]]] = []
        self.stale = False
        self.fail_writes = False

    def push(self, event: CalendarEvent) -> None:
        self.events[event.event_id] = event
        self.pending.append(event)

    def poll_changes(self, checkpoint: Optional[str]) -> Tuple[List[CalendarEvent], Optional[str]]:
        self.checkpoints.append(checkpoint)
        if self.stale and checkpoint:
            raise StaleCheckpointError("sync token expired")
        changed, self.pending = self.pending, []
        return changed, f"token-{len(self.checkpoints)}"

    def get_event(self, event_id: str) -> Optional[CalendarEvent]:
        return self.events.get(event_id)

    def write_attendees(self, event_id: str, attendees) -> CalendarEvent:
        if self.fail_writes:
            raise RuntimeError("rate limited")
        self.writes.append((event_id, list(attendees)))
        event = replace(self.events[event_id], attendees=tuple(attendees))
        self.events[event_id] = event
        return event

    def last_statuses(self) -> Dict[str, str]:
        _, attendees = self.writes[-1]
        return {a.email: a.response_status for a in attendees}


class FakeSurface:
    supports_scheduled_events = True

    def __init__(self, channels=("events",), names: Optional[Dict[str, str]] = None) -> None:
        self.channels = set(channels)
        self.names = names or {}
        self.messages: Dict[str, Tuple[str, object]] = {}
        self.reactions: Dict[str, List[str]] = {}
        self.pinned: set = set()
        self.deleted: List[str] = []
        self.removed: List[Tuple[str, str, str]] = []
        self.waiting_reactions: Dict[str, List[Tuple[str, List[str]]]] = {}
        self.scheduled: Dict[str, object] = {}
        self.fail_delete = False
        self._next_id = 100

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def mention(self, identity: str) -> str:
        return f"<@{identity}>"

    def has_channel(self, name: str) -> bool:
        return name in self.channels

    async def display_name(self, identity: str) -> str:
        return self.names.get(identity, f"User {identity}")

    async def create_message(self, channel, payload) -> str:
        message_id = self._new_id()
        self.messages[message_id] = (channel, payload)
        return message_id

    async def edit_message(self, channel, message_id, payload) -> None:
        if message_id not in self.messages:
            raise ArtifactMissingError(message_id)
        self.messages[message_id] = (channel, payload)

    async def delete_message(self, channel, message_id) -> None:
        if self.fail_delete:
            raise RuntimeError("discord unavailable")
        if message_id not in self.messages:
            raise ArtifactMissingError(message_id)
        del self.messages[message_id]
        self.deleted.append(message_id)

    async def pin_message(self, channel, message_id) -> None:
        self.pinned.add(message_id)

    async def add_reaction(self, channel, message_id, emoji) -> None:
        self.reactions.setdefault(message_id, []).append(emoji)

    async def remove_reaction(self, channel, message_id, emoji, identity) -> None:
        self.removed.append((message_id, emoji, identity))

    async def enumerate_reactions(self, channel, message_id):
        return self.waiting_reactions.get(message_id, [])

    async def create_scheduled_event(self, payload) -> str:
        artifact_id = self._new_id()
        self.scheduled[artifact_id] = payload
        return artifact_id

    async def edit_scheduled_event(self, artifact_id, payload) -> None:
        if artifact_id not in self.scheduled:
            raise ArtifactMissingError(artifact_id)
        self.scheduled[artifact_id] = payload

    async def delete_scheduled_event(self, artifact_id) -> None:
        if artifact_id not in self.scheduled:
            raise ArtifactMissingError(artifact_id)
        del self.scheduled[artifact_id]


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_reconciler(
    tmp_path: Path,
    calendar: Optional[FakeCalendar] = None,
    surface: Optional[FakeSurface] = None,
    groups: Optional[Dict[str, List[str]]] = None,
    clock: Optional[Clock] = None,
) -> Reconciler:
    store = JsonStore(str(tmp_path / "persist"))
    lookup = StaticGroups(groups if groups is not None else {"core": ["U1", "U2"]}, colors={"core": 0x3498DB})
    return Reconciler(
        store,
        calendar or FakeCalendar(),
        surface or FakeSurface(),
        InviteResolver(lookup),
        SettingsOwner(store),
        tz=TZ,
        default_channel="events",
        future_limit_days=14,
        clock=clock or Clock(),
    )
