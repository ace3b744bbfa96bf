"""Drives records through the reconciliation pipeline and performs the writes.

One tick pulls calendar changes, then sweeps every stored record. Commands,
reactions and scheduled-event subscriptions enter through the same
per-record :meth:`Reconciler.process` so that a record's steps never
interleave.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple
from zoneinfo import ZoneInfo

from .engine import (
    DEFAULT_MATERIALITY,
    change_response,
    compute_invites,
    ingest_event,
    merge_attendance,
    placeholder_email,
    refresh_visibility,
)
from .errors import ArtifactMissingError, StaleCheckpointError
from .invites import InviteResolver
from .models import Attendee, CalendarEvent, RsvpRecord
from .render import (
    NO_EMOJI,
    NO_RESPONSE_EMOJI,
    RESPONSE_REACTIONS,
    YES_EMOJI,
    ZOOM_EMOJI,
    MessagePayload,
    ScheduledEventPayload,
    render_message,
    render_scheduled_event,
)
from .state import JsonStore, SettingsOwner

log = logging.getLogger(__name__)

RSVP_PREFIX = "rsvp/"
MESSAGE_PREFIX = "message/"
SCHEDULED_PREFIX = "scheduled/"
SYNC_TOKEN_KEY = "sync-token"

# emoji -> (going, zoom)
REACTION_RESPONSES: Dict[str, Tuple[Optional[bool], bool]] = {
    YES_EMOJI: (True, False),
    NO_EMOJI: (False, False),
    NO_RESPONSE_EMOJI: (None, False),
    ZOOM_EMOJI: (True, True),
}

Mutation = Callable[[RsvpRecord], Any]


class CalendarSource(Protocol):
    def poll_changes(self, checkpoint: Optional[str]) -> Tuple[List[CalendarEvent], Optional[str]]: ...

    def get_event(self, event_id: str) -> Optional[CalendarEvent]: ...

    def write_attendees(self, event_id: str, attendees: Sequence[Attendee]) -> CalendarEvent: ...


class NotificationSurface(Protocol):
    supports_scheduled_events: bool

    def mention(self, identity: str) -> str: ...

    def has_channel(self, name: str) -> bool: ...

    async def display_name(self, identity: str) -> str: ...

    async def create_message(self, channel: str, payload: MessagePayload) -> str: ...

    async def edit_message(self, channel: str, message_id: str, payload: MessagePayload) -> None: ...

    async def delete_message(self, channel: str, message_id: str) -> None: ...

    async def pin_message(self, channel: str, message_id: str) -> None: ...

    async def add_reaction(self, channel: str, message_id: str, emoji: str) -> None: ...

    async def remove_reaction(self, channel: str, message_id: str, emoji: str, identity: str) -> None: ...

    async def enumerate_reactions(self, channel: str, message_id: str) -> List[Tuple[str, List[str]]]: ...

    async def create_scheduled_event(self, payload: ScheduledEventPayload) -> str: ...

    async def edit_scheduled_event(self, artifact_id: str, payload: ScheduledEventPayload) -> None: ...

    async def delete_scheduled_event(self, artifact_id: str) -> None: ...


def _visible_state(record: RsvpRecord) -> tuple:
    # Only include fields that affect rendering.
    return (
        record.title,
        record.description,
        record.location,
        record.image,
        record.color,
        record.start,
        record.end,
        tuple(sorted(record.invited)),
        tuple(sorted(record.yes)),
        tuple(sorted(record.no)),
        tuple(sorted(record.zoom)),
        record.cancelled,
        record.past,
        record.hide,
        record.significant_change,
        record.from_now,
    )


class Reconciler:
    def __init__(
        self,
        store: JsonStore,
        calendar: CalendarSource,
        surface: NotificationSurface,
        resolver: InviteResolver,
        settings: SettingsOwner,
        *,
        tz: ZoneInfo,
        default_channel: str,
        future_limit_days: int = 14,
        materiality: timedelta = DEFAULT_MATERIALITY,
        concurrency: int = 4,
        email_domain: str = "users.noreply.invalid",
        scheduled_events: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.calendar = calendar
        self.surface = surface
        self.resolver = resolver
        self.settings = settings
        self.tz = tz
        self.default_channel = default_channel
        self.future_limit_days = future_limit_days
        self.materiality = materiality
        self.concurrency = concurrency
        self.email_domain = email_domain
        self.scheduled_events = scheduled_events
        self._clock = clock or (lambda: datetime.now(tz=self.tz))

        # per-record locks with their number of holders and waiters
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}
        self._tick_lock = asyncio.Lock()
        self._first_run = True

    def now(self) -> datetime:
        return self._clock()

    # -- storage -----------------------------------------------------------

    def get_record(self, event_id: str) -> Optional[RsvpRecord]:
        data = self.store.get(RSVP_PREFIX + event_id)
        return RsvpRecord.from_dict(data) if data else None

    def record_ids(self) -> List[str]:
        return [key[len(RSVP_PREFIX):] for key in self.store.keys(RSVP_PREFIX)]

    def _save(self, record: RsvpRecord) -> None:
        self.store.set(RSVP_PREFIX + record.event_id, record.to_dict())

    def _forget(self, record: RsvpRecord) -> None:
        log.info("Forgetting %s (cancelled=%s, past=%s)", record.event_id, record.cancelled, record.past)
        if record.message_id:
            self.store.delete(MESSAGE_PREFIX + record.message_id)
        if record.scheduled_event_id:
            self.store.delete(SCHEDULED_PREFIX + record.scheduled_event_id)
        self.store.delete(RSVP_PREFIX + record.event_id)

    def channel_for(self, record: RsvpRecord) -> str:
        channel = self.settings.channel_for(record.invite) or self.default_channel
        if channel != self.default_channel and not self.surface.has_channel(channel):
            log.warning("Unknown channel #%s for %s; using #%s", channel, record.invite, self.default_channel)
            channel = self.default_channel
        return channel

    def _message_channel(self, record: RsvpRecord) -> str:
        index = self.store.get(MESSAGE_PREFIX + record.message_id) if record.message_id else None
        if index:
            return index["channel"]
        return self.channel_for(record)

    def _forget_message(self, record: RsvpRecord) -> None:
        if record.message_id:
            self.store.delete(MESSAGE_PREFIX + record.message_id)
        record.message_id = None

    def _forget_scheduled(self, record: RsvpRecord) -> None:
        if record.scheduled_event_id:
            self.store.delete(SCHEDULED_PREFIX + record.scheduled_event_id)
        record.scheduled_event_id = None

    # -- tick --------------------------------------------------------------

    async def tick(self) -> None:
        if self._tick_lock.locked():
            log.warning("Previous sync still running; skipping this tick")
            return
        async with self._tick_lock:
            seen = await self.pull_changes()
            await self.sweep(skip=seen)
            self._first_run = False

    async def _poll(self, checkpoint: Optional[str]) -> Tuple[List[CalendarEvent], Optional[str]]:
        try:
            return await asyncio.to_thread(self.calendar.poll_changes, checkpoint)
        except StaleCheckpointError:
            log.warning("Sync token was declared invalid by server; starting a full sync")
            self.store.delete(SYNC_TOKEN_KEY)
            return await asyncio.to_thread(self.calendar.poll_changes, None)

    async def pull_changes(self) -> Set[str]:
        """Feed calendar changes through the pipeline; returns the event ids seen."""
        checkpoint = self.store.get(SYNC_TOKEN_KEY)
        log.debug("Sync with token %s", checkpoint)
        try:
            events, next_checkpoint = await self._poll(checkpoint)
        except Exception:
            log.exception("Error during calendar sync")
            return set()

        seen: Set[str] = set()
        for event in events:
            seen.add(event.event_id)
            try:
                await self.process(event.event_id, event=event)
            except Exception:
                log.exception("Error caught during event %s", event.event_id)

        if next_checkpoint:
            self.store.set(SYNC_TOKEN_KEY, next_checkpoint)
        return seen

    async def sweep(self, skip: Iterable[str] = ()) -> None:
        skipped = set(skip)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(event_id: str) -> None:
            async with semaphore:
                try:
                    await self.process(event_id)
                except Exception:
                    log.exception("Error caught during sweep of %s", event_id)

        await asyncio.gather(*(_one(event_id) for event_id in self.record_ids() if event_id not in skipped))

    # -- pipeline ----------------------------------------------------------

    async def process(
        self,
        event_id: str,
        event: Optional[CalendarEvent] = None,
        mutate: Optional[Mutation] = None,
        force_publish: bool = False,
    ) -> Optional[RsvpRecord]:
        lock, users = self._locks.get(event_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[event_id] = (lock, users + 1)
        try:
            async with lock:
                record = self.get_record(event_id)
                if record is None and (event is None or event.cancelled):
                    return None
                if record is None:
                    log.info("New event %s", event_id)
                return await self._run(record, event, mutate, force_publish)
        finally:
            lock, users = self._locks[event_id]
            if users == 1:
                del self._locks[event_id]
            else:
                self._locks[event_id] = (lock, users - 1)

    async def _run(
        self,
        record: Optional[RsvpRecord],
        event: Optional[CalendarEvent],
        mutate: Optional[Mutation],
        force_publish: bool,
    ) -> RsvpRecord:
        if record is None:
            record = ingest_event(None, event, self.resolver, self.materiality)
            event_ingested = True
        else:
            event_ingested = False
        before = _visible_state(record)
        publish = force_publish or self._first_run

        try:
            if event is not None and not event_ingested:
                ingest_event(record, event, self.resolver, self.materiality)
            if mutate is not None:
                mutate(record)

            if not record.cancelled:
                if self._first_run and record.message_id:
                    await self.sync_reactions(record)

                now = self.now()
                # settle past/hide first so far-off and finished events are not invited
                refresh_visibility(record, now, self.future_limit_days)
                invites = False
                if not (record.past or record.hide):
                    invites = compute_invites(record, self.resolver)
                if not record.past and (event is not None or invites or record.changed):
                    await self.sync_attendees(record, event)

            refresh_visibility(record, self.now(), self.future_limit_days)

            if publish or record.stale or _visible_state(record) != before or self._artifacts_out_of_date(record):
                record.stale = True
                await self.publish(record)
                record.stale = False
        except Exception:
            log.exception("Error while processing %s", record.event_id)
            if _visible_state(record) != before:
                record.stale = True
        finally:
            if record.cancelled or record.past:
                self._forget(record)
            else:
                self._save(record)
        return record

    def _artifacts_out_of_date(self, record: RsvpRecord) -> bool:
        if record.hide or record.cancelled:
            return bool(record.message_id or record.scheduled_event_id)
        return record.message_id is None

    async def _emails_for(self, record: RsvpRecord) -> Dict[str, str]:
        emails = dict(self.settings.settings.accounts)
        for identity in sorted(record.invited | record.changed):
            if identity in emails:
                continue
            try:
                name = await self.surface.display_name(identity)
            except Exception:
                log.warning("Could not look up display name for %s", identity, exc_info=True)
                name = ""
            emails[identity] = placeholder_email(name, identity, self.email_domain)
        return emails

    async def sync_attendees(self, record: RsvpRecord, event: Optional[CalendarEvent] = None) -> bool:
        """Merge attendance with the calendar; True if the record's responses changed."""
        if event is None:
            event = await asyncio.to_thread(self.calendar.get_event, record.event_id)
            if event is None:
                log.warning("No calendar event for %s", record.event_id)
                return False

        emails = await self._emails_for(record)
        result = merge_attendance(record, event.attendees, emails)
        if result.dirty:
            try:
                await asyncio.to_thread(self.calendar.write_attendees, record.event_id, result.attendees)
            except Exception:
                log.exception("Failed to update attendees of %s; will retry", record.event_id)
                return result.local_changed
        record.changed -= result.reconciled
        return result.local_changed

    # -- presentation ------------------------------------------------------

    async def publish(self, record: RsvpRecord) -> None:
        if record.hide or record.cancelled or record.significant_change:
            await self._delete_artifacts(record)

        if record.hide or record.cancelled:
            record.significant_change = False
            return

        channel = self.channel_for(record)
        payload = render_message(record, self.tz, self.surface.mention)

        if record.message_id:
            try:
                log.debug("Update message %s for %s", record.message_id, record.event_id)
                await self.surface.edit_message(self._message_channel(record), record.message_id, payload)
            except ArtifactMissingError:
                log.warning("Message missing for rsvp: %s", record.message_id)
                self._forget_message(record)

        if record.message_id is None:
            log.info("Send message for %s to #%s", record.event_id, channel)
            message_id = await self.surface.create_message(channel, payload)
            record.message_id = message_id
            self.store.set(MESSAGE_PREFIX + message_id, {"event_id": record.event_id, "channel": channel})
            for emoji in RESPONSE_REACTIONS:
                await self.surface.add_reaction(channel, message_id, emoji)
            await self.surface.pin_message(channel, message_id)

        record.significant_change = False
        await self._publish_scheduled(record)

    async def _delete_artifacts(self, record: RsvpRecord) -> None:
        """Delete both artifacts; a failure keeps its handle and is re-raised after both were tried."""
        failure: Optional[Exception] = None

        if record.message_id:
            log.info("Delete message %s for %s", record.message_id, record.event_id)
            try:
                await self.surface.delete_message(self._message_channel(record), record.message_id)
                self._forget_message(record)
            except ArtifactMissingError:
                log.warning("Message missing for rsvp: %s", record.message_id)
                self._forget_message(record)
            except Exception as e:
                log.warning("Could not delete message %s: %s", record.message_id, e)
                failure = e

        if record.scheduled_event_id:
            try:
                await self.surface.delete_scheduled_event(record.scheduled_event_id)
                self._forget_scheduled(record)
            except ArtifactMissingError:
                log.warning("Scheduled event missing for rsvp: %s", record.scheduled_event_id)
                self._forget_scheduled(record)
            except Exception as e:
                log.warning("Could not delete scheduled event %s: %s", record.scheduled_event_id, e)
                failure = failure or e

        if failure is not None:
            raise failure

    async def _publish_scheduled(self, record: RsvpRecord) -> None:
        if not (self.scheduled_events and self.surface.supports_scheduled_events):
            return
        payload = render_scheduled_event(record, self.now())
        if payload is None:
            return

        if record.scheduled_event_id:
            try:
                await self.surface.edit_scheduled_event(record.scheduled_event_id, payload)
                return
            except ArtifactMissingError:
                log.warning("Scheduled event missing for rsvp: %s", record.scheduled_event_id)
                self._forget_scheduled(record)

        artifact_id = await self.surface.create_scheduled_event(payload)
        record.scheduled_event_id = artifact_id
        self.store.set(SCHEDULED_PREFIX + artifact_id, record.event_id)

    # -- inbound chat events -----------------------------------------------

    async def sync_reactions(self, record: RsvpRecord) -> None:
        """Apply reactions left on the message while we were not listening."""
        channel = self._message_channel(record)
        try:
            reactions = await self.surface.enumerate_reactions(channel, record.message_id)
        except ArtifactMissingError:
            log.warning("Message missing for rsvp: %s", record.message_id)
            self._forget_message(record)
            return

        for emoji, identities in reactions:
            response = REACTION_RESPONSES.get(emoji)
            for identity in identities:
                log.debug("Handling extra reaction %s from %s", emoji, identity)
                if response is not None:
                    going, zoom = response
                    change_response(record, identity, going, zoom)
                await self.surface.remove_reaction(channel, record.message_id, emoji, identity)

    async def handle_reaction(self, message_id: str, emoji: str, identity: str) -> None:
        index = self.store.get(MESSAGE_PREFIX + message_id)
        if not index:
            return

        response = REACTION_RESPONSES.get(emoji)
        if response is None:
            log.info("%s added unknown reaction %s", identity, emoji)
        else:
            going, zoom = response
            log.info("%s responded %s to %s", identity, emoji, index["event_id"])
            await self.process(index["event_id"], mutate=lambda r: change_response(r, identity, going, zoom))

        try:
            await self.surface.remove_reaction(index["channel"], message_id, emoji, identity)
        except ArtifactMissingError:
            log.warning("Message missing for reaction: %s", message_id)

    async def handle_interest(self, artifact_id: str, identity: str, interested: bool) -> None:
        event_id = self.store.get(SCHEDULED_PREFIX + artifact_id)
        if not event_id:
            return

        def _mutate(record: RsvpRecord) -> None:
            if not interested:
                record.interested.discard(identity)
                return
            record.interested.add(identity)
            record.uninvited.discard(identity)
            if identity not in record.invited:
                record.invited.add(identity)
                record.changed.add(identity)

        await self.process(event_id, mutate=_mutate)

    # -- commands ----------------------------------------------------------

    async def respond(
        self,
        event_id: str,
        identity: str,
        going: Optional[bool],
        zoom: bool = False,
        remove: bool = False,
    ) -> Optional[RsvpRecord]:
        return await self.process(event_id, mutate=lambda r: change_response(r, identity, going, zoom, remove))

    async def recolor(self, event_id: str, color: int) -> Optional[RsvpRecord]:
        def _mutate(record: RsvpRecord) -> None:
            record.color = color

        return await self.process(event_id, mutate=_mutate)

    async def resend(self, event_id: str) -> Optional[RsvpRecord]:
        def _mutate(record: RsvpRecord) -> None:
            record.significant_change = True

        return await self.process(event_id, mutate=_mutate, force_publish=True)

    async def cancel(self, event_id: str) -> Optional[RsvpRecord]:
        def _mutate(record: RsvpRecord) -> None:
            record.cancelled = True

        return await self.process(event_id, mutate=_mutate)

    async def send_invites(self, event_id: str) -> Optional[RsvpRecord]:
        return await self.process(event_id, mutate=lambda r: compute_invites(r, self.resolver))
