from __future__ import annotations

import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .invites import normalize_group
from .reconciler import NotificationSurface, Reconciler
from .state import SettingsOwner

log = logging.getLogger(__name__)

_MENTION_RE = re.compile(r"^(<@[!&]?\d+>|@\S+)$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# response word -> (going, zoom, remove, description)
RSVP_RESPONSES: Dict[str, Tuple[Optional[bool], bool, bool, str]] = {
    "yes": (True, False, False, "going to"),
    "no": (False, False, False, "not going to"),
    "undecided": (None, False, False, "undecided on"),
    "invite": (None, False, False, "undecided on"),
    "uninvite": (None, False, True, "uninvited from"),
    "zoom": (True, True, False, "remotely participating on"),
}

Handler = Callable[[List[str], str, Optional[str]], Awaitable[str]]


class CommandHandler:
    """Text commands; every recognised command returns a reply for the user."""

    def __init__(
        self,
        reconciler: Reconciler,
        surface: NotificationSurface,
        settings: SettingsOwner,
        prefix: str = "!",
    ) -> None:
        self.reconciler = reconciler
        self.surface = surface
        self.settings = settings
        self.prefix = prefix
        self._handlers: Dict[str, Handler] = {
            "rsvp": self.rsvp,
            "google": self.google,
            "channel": self.channel,
            "edit": self.edit,
        }

    async def handle(self, author: str, content: str, mentioned: Optional[str] = None) -> Optional[str]:
        if not content.startswith(self.prefix):
            return None
        args = content[len(self.prefix):].split()
        if not args:
            return None
        handler = self._handlers.get(args[0].lower())
        if handler is None:
            return None
        args = [a for a in args[1:] if not _MENTION_RE.match(a)]
        log.info("Command from %s: %s", author, content)
        return await handler(args, author, mentioned)

    def _title(self, event_id: str) -> str:
        record = self.reconciler.get_record(event_id)
        return record.title if record and record.title else event_id

    async def rsvp(self, args: List[str], author: str, mentioned: Optional[str]) -> str:
        if not args:
            return "Usage: `rsvp <event> [yes|no|undecided|invite|uninvite|zoom]`"
        event_id = args[0]
        response = args[1].lower() if len(args) > 1 else "yes"

        if self.reconciler.get_record(event_id) is None:
            return "Unknown event"
        if response not in RSVP_RESPONSES:
            return "RSVP with one of: `yes`, `no`, `undecided`, `invite`, `uninvite`, or `zoom`"

        going, zoom, remove, what = RSVP_RESPONSES[response]
        who = mentioned or author
        you = self.surface.mention(mentioned) if mentioned else "you"

        title = self._title(event_id)
        await self.reconciler.respond(event_id, who, going, zoom, remove)
        return f"Okay, I've marked {you} as {what} {title}"

    async def google(self, args: List[str], author: str, mentioned: Optional[str]) -> str:
        who = mentioned or author
        you = self.surface.mention(mentioned) if mentioned else "you"
        youre = f"{self.surface.mention(mentioned)} isn't" if mentioned else "You're"

        current = self.settings.email_for(who)
        email = args[0].lower() if args else ""

        if not email:
            if current:
                return (
                    f"I'm inviting {you} to events on `{current}`. "
                    "Provide a new address or `off` to change that."
                )
            return (
                f"{youre} not getting calendar invites to events. "
                "Provide a Google account e-mail address or `off`"
            )

        if email == "off":
            if not current:
                return f"I wasn't inviting {you} to events on Google Calendar anyway!"
            await self.settings.set_account(who, None)
            return f"Okay, I won't invite {you} on Google Calendar anymore."

        if not _EMAIL_RE.match(email):
            return f"`{email}` doesn't look like an e-mail address"
        await self.settings.set_account(who, email)
        return f"Okay! I'll invite {you} to events on Google Calendar using `{email}` from now on."

    async def channel(self, args: List[str], author: str, mentioned: Optional[str]) -> str:
        if len(args) < 2:
            return "Need a role name and a channel"
        role = normalize_group(args[0])
        channel = args[1].lstrip("#").lower()

        if self.reconciler.resolver.resolve(role) is None:
            return "Unknown role"
        if not self.surface.has_channel(channel):
            return "Unknown channel"

        await self.settings.set_channel(role, channel)
        return f"Okay! I'll send invites for @{role} to #{channel} now."

    async def edit(self, args: List[str], author: str, mentioned: Optional[str]) -> str:
        usage = "Specify one of: `color`, `delete`, `resend`, `invite`"
        if not args:
            return usage
        event_id = args[0]
        record = self.reconciler.get_record(event_id)
        if record is None:
            return "Unknown event"
        title = record.title or event_id
        action = args[1].lower() if len(args) > 1 else ""

        if action == "color":
            role = args[2] if len(args) > 2 else record.invite
            info = self.reconciler.resolver.resolve(role)
            if info is None or info.color is None:
                return "Unknown role"
            await self.reconciler.recolor(event_id, info.color)
            return f"Okay I've updated the color for {title}"
        if action == "resend":
            await self.reconciler.resend(event_id)
            return f"Okay, I've announced {title} again"
        if action == "delete":
            await self.reconciler.cancel(event_id)
            return f"Okay, I've cancelled {title}"
        if action == "invite":
            await self.reconciler.send_invites(event_id)
            return f"Okay, I'll send invites for {title}"
        return usage
