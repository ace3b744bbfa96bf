from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import discord

from .errors import ArtifactMissingError, UnknownChannelError
from .invites import GroupInfo, normalize_group
from .render import MessagePayload, ScheduledEventPayload

log = logging.getLogger(__name__)


def to_embed(payload: MessagePayload) -> discord.Embed:
    embed = discord.Embed(
        title=payload.title,
        description=payload.description or None,
        color=payload.color,
    )
    if payload.image:
        embed.set_image(url=payload.image)
    for name, value in payload.fields:
        embed.add_field(name=name, value=value, inline=False)
    embed.set_footer(text=payload.footer, icon_url=payload.footer_icon)
    return embed


class DiscordSurface:
    """Notification surface backed by a single Discord guild."""

    supports_scheduled_events = True

    def __init__(self, client: discord.Client) -> None:
        self.client = client
        self.guild: Optional[discord.Guild] = None

    def resolve_group(self, name: str) -> Optional[GroupInfo]:
        if self.guild is None:
            return None
        group = normalize_group(name)
        role = discord.utils.find(lambda r: r.name.lower() == group, self.guild.roles)
        if role is None:
            return None
        return GroupInfo(
            members=frozenset(str(m.id) for m in role.members if not m.bot),
            color=role.color.value or None,
        )

    def _channel(self, name: str) -> Optional[discord.TextChannel]:
        if self.guild is None:
            return None
        name = name.lstrip("#").lower()
        return discord.utils.find(lambda c: c.name.lower() == name, self.guild.text_channels)

    def _require_channel(self, name: str) -> discord.TextChannel:
        channel = self._channel(name)
        if channel is None:
            raise UnknownChannelError(f"Unknown channel #{name}")
        return channel

    def has_channel(self, name: str) -> bool:
        return self._channel(name) is not None

    def mention(self, identity: str) -> str:
        return f"<@{identity}>"

    async def display_name(self, identity: str) -> str:
        member = self.guild.get_member(int(identity))
        if member is None:
            member = await self.guild.fetch_member(int(identity))
        return member.display_name

    async def _fetch(self, channel: str, message_id: str) -> discord.Message:
        try:
            return await self._require_channel(channel).fetch_message(int(message_id))
        except discord.NotFound as e:
            raise ArtifactMissingError(f"Message {message_id} is gone") from e

    async def create_message(self, channel: str, payload: MessagePayload) -> str:
        message = await self._require_channel(channel).send(embed=to_embed(payload))
        return str(message.id)

    async def edit_message(self, channel: str, message_id: str, payload: MessagePayload) -> None:
        message = await self._fetch(channel, message_id)
        await message.edit(embed=to_embed(payload))

    async def delete_message(self, channel: str, message_id: str) -> None:
        message = await self._fetch(channel, message_id)
        if message.pinned:
            await message.unpin()
        await message.delete()

    async def pin_message(self, channel: str, message_id: str) -> None:
        message = await self._fetch(channel, message_id)
        await message.pin()

    async def add_reaction(self, channel: str, message_id: str, emoji: str) -> None:
        message = await self._fetch(channel, message_id)
        await message.add_reaction(emoji)

    async def remove_reaction(self, channel: str, message_id: str, emoji: str, identity: str) -> None:
        message = await self._fetch(channel, message_id)
        await message.remove_reaction(emoji, discord.Object(id=int(identity)))

    async def enumerate_reactions(self, channel: str, message_id: str) -> List[Tuple[str, List[str]]]:
        message = await self._fetch(channel, message_id)
        found = []
        for reaction in message.reactions:
            users = [str(u.id) async for u in reaction.users() if u.id != self.client.user.id]
            if users:
                found.append((str(reaction.emoji), users))
        return found

    async def _fetch_scheduled(self, artifact_id: str) -> discord.ScheduledEvent:
        try:
            return await self.guild.fetch_scheduled_event(int(artifact_id))
        except discord.NotFound as e:
            raise ArtifactMissingError(f"Scheduled event {artifact_id} is gone") from e

    async def create_scheduled_event(self, payload: ScheduledEventPayload) -> str:
        event = await self.guild.create_scheduled_event(
            name=payload.name,
            description=payload.description,
            start_time=payload.start,
            end_time=payload.end,
            entity_type=discord.EntityType.external,
            privacy_level=discord.PrivacyLevel.guild_only,
            location=payload.location,
        )
        return str(event.id)

    async def edit_scheduled_event(self, artifact_id: str, payload: ScheduledEventPayload) -> None:
        event = await self._fetch_scheduled(artifact_id)
        await event.edit(
            name=payload.name,
            description=payload.description,
            start_time=payload.start,
            end_time=payload.end,
            location=payload.location,
        )

    async def delete_scheduled_event(self, artifact_id: str) -> None:
        event = await self._fetch_scheduled(artifact_id)
        await event.delete()
