"""Record-level reconciliation rules.

Everything here is synchronous and free of I/O: the functions take an
:class:`RsvpRecord`, mutate it in place and report what changed. The
:mod:`fluffer.reconciler` module decides when to call them and performs the
resulting writes.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .invites import InviteResolver
from .models import ACCEPTED, DECLINED, NEEDS_ACTION, Attendee, CalendarEvent, RsvpRecord

log = logging.getLogger(__name__)

DEFAULT_MATERIALITY = timedelta(hours=4)

_DIRECTIVE_RE = re.compile(r"^\s*(image|invite)\s*:\s*(.*?)\s*$", re.IGNORECASE)


def parse_directives(description: str) -> Tuple[str, Optional[str], Optional[str]]:
    """Split ``image:`` and ``invite:`` lines out of an event description.

    Returns the remaining text, the image URL and the lower-cased invite group.
    Every directive line is removed, but only the first of each kind counts.
    """
    kept: List[str] = []
    found: Dict[str, str] = {}
    for line in (description or "").splitlines():
        m = _DIRECTIVE_RE.match(line)
        if not m:
            kept.append(line)
            continue
        found.setdefault(m.group(1).lower(), m.group(2))

    image = found.get("image") or None
    invite = (found.get("invite") or "").strip().lstrip("@").lower() or None
    return "\n".join(kept).strip(), image, invite


def ingest_event(
    record: Optional[RsvpRecord],
    event: CalendarEvent,
    resolver: InviteResolver,
    materiality: timedelta = DEFAULT_MATERIALITY,
) -> RsvpRecord:
    if record is None:
        record = RsvpRecord(event_id=event.event_id)

    record.cancelled = event.cancelled
    if record.cancelled:
        return record

    if record.start is not None and event.start is not None:
        if abs(event.start - record.start) > materiality:
            log.info("Start of %s moved from %s to %s", record.event_id, record.start, event.start)
            record.significant_change = True

    record.start = event.start
    record.end = event.end
    record.all_day = event.all_day
    record.title = event.title
    record.location = event.location

    text, image, invite = parse_directives(event.description)
    if record.invite and invite != record.invite:
        log.info("Invite group of %s changed from %s to %s", record.event_id, record.invite, invite)
        record.significant_change = True
    record.description = text
    record.image = image
    record.invite = invite

    if record.invite and record.color is None:
        info = resolver.resolve(record.invite)
        if info is not None:
            record.color = info.color

    return record


def compute_invites(record: RsvpRecord, resolver: InviteResolver) -> bool:
    """Invite every current member of the record's group; True if anyone was added."""
    if not record.invite:
        return False
    info = resolver.resolve(record.invite)
    if info is None:
        return False

    added = set(info.members) - record.invited - record.uninvited
    if not added:
        return False

    log.info("Inviting %d members of %s to %s", len(added), record.invite, record.event_id)
    record.invited |= added
    record.changed |= added
    record.posted = True
    return True


def change_response(
    record: RsvpRecord,
    identity: str,
    going: Optional[bool],
    zoom: bool = False,
    remove: bool = False,
) -> bool:
    """Apply a locally-originated response. Returns True if anything changed."""
    before = _response_state(record, identity)

    if remove:
        record.invited.discard(identity)
        record.yes.discard(identity)
        record.no.discard(identity)
        record.zoom.discard(identity)
        record.interested.discard(identity)
        record.uninvited.add(identity)
    else:
        record.uninvited.discard(identity)
        record.invited.add(identity)
        if going is True:
            record.yes.add(identity)
            record.no.discard(identity)
            if zoom:
                record.zoom.add(identity)
            else:
                record.zoom.discard(identity)
        elif going is False:
            record.no.add(identity)
            record.yes.discard(identity)
            record.zoom.discard(identity)
        else:
            record.yes.discard(identity)
            record.no.discard(identity)
            record.zoom.discard(identity)

    if _response_state(record, identity) == before:
        return False
    record.changed.add(identity)
    return True


def _response_state(record: RsvpRecord, identity: str) -> Tuple[bool, bool, bool, bool]:
    return (
        identity in record.invited,
        identity in record.yes,
        identity in record.no,
        identity in record.zoom,
    )


def _calendar_status(status: str) -> str:
    if status in (ACCEPTED, DECLINED):
        return status
    # tentative has no local counterpart
    return NEEDS_ACTION


def _apply_external(record: RsvpRecord, identity: str, status: str) -> None:
    record.uninvited.discard(identity)
    record.invited.add(identity)
    if status == ACCEPTED:
        record.yes.add(identity)
        record.no.discard(identity)
    elif status == DECLINED:
        record.no.add(identity)
        record.yes.discard(identity)
        record.zoom.discard(identity)
    else:
        record.yes.discard(identity)
        record.no.discard(identity)
        record.zoom.discard(identity)


@dataclass
class MergeResult:
    attendees: List[Attendee]
    dirty: bool = False
    local_changed: bool = False
    reconciled: Set[str] = field(default_factory=set)


def merge_attendance(
    record: RsvpRecord,
    attendees: Sequence[Attendee],
    emails: Dict[str, str],
) -> MergeResult:
    """Reconcile the calendar's attendee list with the record.

    ``emails`` maps identities to calendar addresses; it must cover everyone
    in ``invited`` and ``changed`` and may include other known accounts.

    Identities in ``changed`` win over the calendar; for everyone else the
    calendar's status is copied into the record. The record's local sets are
    updated in place, but ``changed`` is left alone: the caller clears
    ``result.reconciled`` once the write (if any) succeeded.
    """
    by_email = {email.lower(): identity for identity, email in emails.items()}
    responses = {
        emails[identity].lower(): record.status_of(identity)
        for identity in record.invited
        if identity in emails
    }

    result = MergeResult(attendees=[])
    seen: Set[str] = set()

    for attendee in attendees:
        key = attendee.email.lower()
        identity = by_email.get(key)
        if identity is None:
            result.attendees.append(attendee)
            continue
        if identity in seen:
            result.dirty = True
            continue
        seen.add(identity)
        result.reconciled.add(identity)

        if identity in record.changed:
            status = responses.get(key)
            result.dirty = True
            if status is None:
                log.debug("Dropping %s from %s", attendee.email, record.event_id)
                continue
            result.attendees.append(replace(attendee, response_status=status))
            continue

        status = _calendar_status(attendee.response_status)
        if identity not in record.invited or status != record.status_of(identity):
            log.info("Calendar says %s is %s for %s", identity, status, record.event_id)
            _apply_external(record, identity, status)
            result.local_changed = True
        result.attendees.append(attendee)

    for identity in sorted(record.invited - seen):
        email = emails.get(identity)
        if not email:
            log.warning("No address for %s on %s", identity, record.event_id)
            continue
        result.attendees.append(Attendee(email=email, response_status=record.status_of(identity)))
        result.reconciled.add(identity)
        result.dirty = True

    # uninvited identities that never made it to the calendar
    result.reconciled |= record.changed - record.invited - seen
    return result


def placeholder_email(display_name: str, identity: str, domain: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", ".", (display_name or "").lower()).strip(".")
    return f"{slug or identity}@{domain}"


def refresh_visibility(record: RsvpRecord, now: datetime, future_limit_days: int) -> bool:
    """Recompute ``past``/``hide``/``from_now``; True if anything visible changed."""
    before = (record.cancelled, record.past, record.hide, record.from_now)

    if record.cancelled:
        record.hide = True
    elif record.start is None:
        record.hide = True
        record.from_now = ""
    else:
        finish = record.end or record.start
        if finish <= now:
            record.past = True
            record.hide = True
            record.from_now = "past"
        else:
            record.past = False
            if record.start <= now:
                record.from_now = "started"
            else:
                record.from_now = humanize_delta(record.start - now)
            too_far = record.start - now > timedelta(days=future_limit_days)
            record.hide = too_far and not record.invited

    after = (record.cancelled, record.past, record.hide, record.from_now)
    return before != after or record.significant_change


def humanize_delta(delta: timedelta) -> str:
    """A future offset as text, e.g. ``in 3 days``."""
    seconds = abs(delta.total_seconds())
    minutes = seconds / 60
    hours = minutes / 60
    days = hours / 24

    if seconds < 45:
        text = "a few seconds"
    elif seconds < 90:
        text = "a minute"
    elif minutes < 45:
        text = f"{round(minutes)} minutes"
    elif minutes < 90:
        text = "an hour"
    elif hours < 22:
        text = f"{round(hours)} hours"
    elif hours < 36:
        text = "a day"
    elif days < 26:
        text = f"{round(days)} days"
    elif days < 45:
        text = "a month"
    elif days < 320:
        text = f"{round(days / 30.4)} months"
    elif days < 548:
        text = "a year"
    else:
        text = f"{round(days / 365)} years"
    return f"in {text}"
