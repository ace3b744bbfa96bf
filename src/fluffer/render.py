from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .models import RsvpRecord

YES_EMOJI = "✅"
NO_EMOJI = "❌"
NO_RESPONSE_EMOJI = "😾"
ZOOM_EMOJI = "👨‍💻"
RESPONSE_REACTIONS = (YES_EMOJI, NO_EMOJI, ZOOM_EMOJI)

CALENDAR_ICON_URL = "https://www.gstatic.com/images/branding/product/2x/calendar_48dp.png"

# Discord limits for scheduled events
_SCHEDULED_NAME_MAX = 100
_SCHEDULED_DESCRIPTION_MAX = 1000


@dataclass(frozen=True)
class MessagePayload:
    title: str
    description: str
    image: Optional[str]
    color: Optional[int]
    fields: Tuple[Tuple[str, str], ...]
    footer: str
    footer_icon: str = CALENDAR_ICON_URL


@dataclass(frozen=True)
class ScheduledEventPayload:
    name: str
    description: str
    start: datetime
    end: datetime
    location: str


def default_mention(identity: str) -> str:
    return f"<@{identity}>"


def _ordinal(n: int) -> str:
    if 11 <= n % 100 <= 13:
        return f"{n}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"

def _fmt_day(dt: datetime) -> str:
    # Example: Saturday, October 24th 2026
    return f"{dt.strftime('%A, %B')} {_ordinal(dt.day)} {dt.year}"

def _fmt_time(dt: datetime, precise: bool) -> str:
    if precise:
        return dt.strftime("%-I:%M:%S %p").lower()
    return dt.strftime("%-I:%M %p").lower()


def event_time(start: datetime, end: Optional[datetime], all_day: bool, tz: ZoneInfo) -> str:
    start = start.astimezone(tz)
    if end is not None:
        end = end.astimezone(tz)
        # all-day ends are exclusive; show the last day instead
        if all_day:
            end = end - timedelta(days=1)

    precise = start.second > 0 or (end is not None and end.second > 0)

    def _full(dt: datetime) -> str:
        return f"{_fmt_day(dt)} {_fmt_time(dt, precise)}"

    if end is None or end == start:
        return _fmt_day(start) if all_day else _full(start)

    if start.date() == end.date():
        if all_day:
            return _fmt_day(start)
        return f"{_full(start)}—{_fmt_time(end, precise)}"

    if all_day:
        return f"{_fmt_day(start)}—{_fmt_day(end)}"
    return f"{_full(start)}—{_full(end)}"


def response_groups(record: RsvpRecord) -> Tuple[List[str], List[str], List[str], List[str]]:
    """Split invitees into (yes, zoom, no, no response), each sorted."""
    yes, zoom, no, no_response = [], [], [], []
    for identity in sorted(record.invited):
        if identity in record.zoom:
            zoom.append(identity)
        elif identity in record.yes:
            yes.append(identity)
        elif identity in record.no:
            no.append(identity)
        else:
            no_response.append(identity)
    return yes, zoom, no, no_response


def render_message(
    record: RsvpRecord,
    tz: ZoneInfo,
    mention: Callable[[str], str] = default_mention,
) -> MessagePayload:
    yes, zoom, no, no_response = response_groups(record)

    def _line(emoji: str, people: List[str]) -> str:
        return " ".join([emoji, *(mention(p) for p in people)])

    fields: List[Tuple[str, str]] = []
    if record.start is not None:
        fields.append(("When", event_time(record.start, record.end, record.all_day, tz)))
    if record.location:
        fields.append(("Where", record.location))
    fields.extend(
        [
            ("Going", _line(YES_EMOJI, yes)),
            ("Remote", _line(ZOOM_EMOJI, zoom)),
            ("Not Going", _line(NO_EMOJI, no)),
            ("No Response", _line(NO_RESPONSE_EMOJI, no_response)),
        ]
    )

    return MessagePayload(
        title=record.title or "(No title)",
        description=record.description,
        image=record.image,
        color=record.color,
        fields=tuple(fields),
        footer=f"{record.from_now}\n{record.event_id}",
    )


def render_scheduled_event(record: RsvpRecord, now: datetime) -> Optional[ScheduledEventPayload]:
    """Companion scheduled event, only while the event is still ahead of us."""
    if record.start is None or record.start <= now:
        return None
    end = record.end if record.end and record.end > record.start else record.start + timedelta(hours=1)
    return ScheduledEventPayload(
        name=(record.title or "(No title)")[:_SCHEDULED_NAME_MAX],
        description=record.description[:_SCHEDULED_DESCRIPTION_MAX],
        start=record.start,
        end=end,
        location=record.location or "See calendar",
    )
