from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Set, Tuple

ACCEPTED = "accepted"
DECLINED = "declined"
NEEDS_ACTION = "needsAction"
TENTATIVE = "tentative"


@dataclass(frozen=True)
class Attendee:
    email: str
    response_status: str = NEEDS_ACTION
    display_name: Optional[str] = None

    def to_google(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"email": self.email, "responseStatus": self.response_status}
        if self.display_name:
            body["displayName"] = self.display_name
        return body


@dataclass(frozen=True)
class CalendarEvent:
    event_id: str
    status: str = "confirmed"          # "confirmed" / "tentative" / "cancelled"
    title: str = ""
    location: str = ""
    description: str = ""
    start: Optional[datetime] = None   # timezone-aware
    end: Optional[datetime] = None     # timezone-aware, exclusive
    all_day: bool = False
    attendees: Tuple[Attendee, ...] = ()

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"


@dataclass
class RsvpRecord:
    event_id: str
    title: str = ""
    location: str = ""
    description: str = ""
    image: Optional[str] = None
    invite: Optional[str] = None
    color: Optional[int] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False

    invited: Set[str] = field(default_factory=set)
    yes: Set[str] = field(default_factory=set)
    no: Set[str] = field(default_factory=set)
    zoom: Set[str] = field(default_factory=set)
    interested: Set[str] = field(default_factory=set)
    uninvited: Set[str] = field(default_factory=set)   # opted out of group invites
    changed: Set[str] = field(default_factory=set)

    message_id: Optional[str] = None
    scheduled_event_id: Optional[str] = None

    cancelled: bool = False
    past: bool = False
    hide: bool = False
    posted: bool = False
    significant_change: bool = False
    stale: bool = False                # artifacts lag the record
    from_now: str = ""

    def status_of(self, identity: str) -> str:
        """The calendar response status implied by the local sets."""
        if identity in self.yes:
            return ACCEPTED
        if identity in self.no:
            return DECLINED
        return NEEDS_ACTION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "title": self.title,
            "location": self.location,
            "description": self.description,
            "image": self.image,
            "invite": self.invite,
            "color": self.color,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "all_day": self.all_day,
            "invited": sorted(self.invited),
            "yes": sorted(self.yes),
            "no": sorted(self.no),
            "zoom": sorted(self.zoom),
            "interested": sorted(self.interested),
            "uninvited": sorted(self.uninvited),
            "changed": sorted(self.changed),
            "message_id": self.message_id,
            "scheduled_event_id": self.scheduled_event_id,
            "cancelled": self.cancelled,
            "past": self.past,
            "hide": self.hide,
            "posted": self.posted,
            "significant_change": self.significant_change,
            "stale": self.stale,
            "from_now": self.from_now,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RsvpRecord":
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            event_id=str(data["event_id"]),
            title=str(data.get("title", "")),
            location=str(data.get("location", "")),
            description=str(data.get("description", "")),
            image=data.get("image"),
            invite=data.get("invite"),
            color=data.get("color"),
            start=_dt(data.get("start")),
            end=_dt(data.get("end")),
            all_day=bool(data.get("all_day", False)),
            invited=set(data.get("invited", [])),
            yes=set(data.get("yes", [])),
            no=set(data.get("no", [])),
            zoom=set(data.get("zoom", [])),
            interested=set(data.get("interested", [])),
            uninvited=set(data.get("uninvited", [])),
            changed=set(data.get("changed", [])),
            message_id=data.get("message_id"),
            scheduled_event_id=data.get("scheduled_event_id"),
            cancelled=bool(data.get("cancelled", False)),
            past=bool(data.get("past", False)),
            hide=bool(data.get("hide", False)),
            posted=bool(data.get("posted", False)),
            significant_change=bool(data.get("significant_change", False)),
            stale=bool(data.get("stale", False)),
            from_now=str(data.get("from_now", "")),
        )
