from datetime import datetime, timedelta, timezone

from fluffer.models import RsvpRecord
from fluffer.render import (
    NO_EMOJI,
    NO_RESPONSE_EMOJI,
    YES_EMOJI,
    ZOOM_EMOJI,
    _ordinal,
    event_time,
    render_message,
    render_scheduled_event,
)

from fakes import NOW, TZ


def _at(day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    return datetime(2026, 10, day, hour, minute, second, tzinfo=TZ)


def test_timed_event_on_one_day():
    assert event_time(_at(24, 19), _at(24, 21, 30), False, TZ) == "Saturday, October 24th 2026 7:00 pm—9:30 pm"


def test_timed_event_with_seconds_uses_precise_times():
    assert (
        event_time(_at(24, 19, 0, 30), _at(24, 21), False, TZ)
        == "Saturday, October 24th 2026 7:00:30 pm—9:00:00 pm"
    )


def test_timed_event_spanning_days():
    assert (
        event_time(_at(24, 19), _at(25, 2), False, TZ)
        == "Saturday, October 24th 2026 7:00 pm—Sunday, October 25th 2026 2:00 am"
    )


def test_timed_event_without_end():
    assert event_time(_at(24, 9, 15), None, False, TZ) == "Saturday, October 24th 2026 9:15 am"


def test_all_day_event_shows_only_the_date():
    assert event_time(_at(24), _at(25), True, TZ) == "Saturday, October 24th 2026"


def test_multi_day_all_day_event_shows_inclusive_range():
    assert event_time(_at(24), _at(27), True, TZ) == "Saturday, October 24th 2026—Monday, October 26th 2026"


def test_times_are_shown_in_display_timezone():
    utc_start = datetime(2026, 10, 25, 9, 0, tzinfo=timezone.utc)
    assert event_time(utc_start, None, False, TZ) == "Sunday, October 25th 2026 2:00 am"


def test_ordinals():
    assert [_ordinal(n) for n in (1, 2, 3, 4, 11, 12, 13, 21, 22, 23, 31)] == [
        "1st", "2nd", "3rd", "4th", "11th", "12th", "13th", "21st", "22nd", "23rd", "31st",
    ]


def test_render_message_groups_responses():
    record = RsvpRecord(
        event_id="E1",
        title="Board games",
        description="Bring snacks",
        location="Rec room",
        image="https://example.com/a.png",
        color=0x3498DB,
        start=_at(24, 19),
        end=_at(24, 21),
        invited={"U1", "U2", "U3", "U4"},
        yes={"U1", "U2"},
        zoom={"U2"},
        no={"U3"},
        from_now="in 5 days",
    )

    payload = render_message(record, TZ)

    assert payload.title == "Board games"
    assert payload.description == "Bring snacks"
    assert payload.image == "https://example.com/a.png"
    assert payload.color == 0x3498DB
    assert [name for name, _ in payload.fields] == ["When", "Where", "Going", "Remote", "Not Going", "No Response"]
    fields = dict(payload.fields)
    assert fields["Going"] == f"{YES_EMOJI} <@U1>"
    assert fields["Remote"] == f"{ZOOM_EMOJI} <@U2>"
    assert fields["Not Going"] == f"{NO_EMOJI} <@U3>"
    assert fields["No Response"] == f"{NO_RESPONSE_EMOJI} <@U4>"
    assert payload.footer == "in 5 days\nE1"


def test_render_message_without_location_or_responses():
    record = RsvpRecord(event_id="E1", start=_at(24, 19))

    payload = render_message(record, TZ, mention=lambda identity: f"@{identity}")

    assert payload.title == "(No title)"
    fields = dict(payload.fields)
    assert "Where" not in fields
    assert fields["Going"] == YES_EMOJI


def test_scheduled_event_only_for_upcoming_events():
    upcoming = RsvpRecord(event_id="E1", title="Board games", start=NOW + timedelta(days=1))
    started = RsvpRecord(event_id="E2", start=NOW - timedelta(minutes=5), end=NOW + timedelta(hours=1))

    payload = render_scheduled_event(upcoming, NOW)

    assert payload.end == upcoming.start + timedelta(hours=1)
    assert payload.location == "See calendar"
    assert render_scheduled_event(started, NOW) is None
