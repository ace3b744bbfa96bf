from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import discord
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv

from .calendar_google import GoogleCalendarSource
from .commands import CommandHandler
from .config import AppConfig, LoggingConfig, load_config
from .discord_surface import DiscordSurface
from .invites import InviteResolver
from .reconciler import Reconciler
from .state import JsonStore, SettingsOwner

CONFIG_PATH_DEFAULT = "config.yaml"

log = logging.getLogger("fluffer")


def configure_logging(cfg: LoggingConfig) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if cfg.file:
        handlers.append(logging.FileHandler(cfg.file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, cfg.level, logging.INFO),
        format="%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
        datefmt="[%Y-%m-%d %H:%M:%S]",
        handlers=handlers,
        force=True,
    )
    # discord.py and the Google client are chatty at DEBUG
    logging.getLogger("discord").setLevel(max(logging.INFO, logging.getLogger().level))
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)


class FlufferClient(discord.Client):
    """Discord client wiring chat events into the reconciler."""

    def __init__(self, cfg: AppConfig, store: JsonStore, calendar: GoogleCalendarSource) -> None:
        intents = discord.Intents.default()
        intents.members = True
        intents.message_content = True
        intents.guild_scheduled_events = True
        super().__init__(intents=intents)

        self.cfg = cfg
        self.tz = ZoneInfo(cfg.timezone)
        self.surface = DiscordSurface(self)
        self.settings = SettingsOwner(store)
        self.reconciler = Reconciler(
            store,
            calendar,
            self.surface,
            InviteResolver(self.surface.resolve_group),
            self.settings,
            tz=self.tz,
            default_channel=cfg.discord.channel,
            future_limit_days=cfg.future_limit_days,
            materiality=timedelta(hours=cfg.materiality_hours),
            concurrency=cfg.sweep_concurrency,
            email_domain=cfg.placeholder_email_domain,
            scheduled_events=cfg.discord.scheduled_events,
        )
        self.commands = CommandHandler(self.reconciler, self.surface, self.settings, cfg.discord.command_prefix)
        self.scheduler = AsyncIOScheduler(timezone=self.tz)

    async def on_ready(self) -> None:
        log.info("Discord ready as %s", self.user)
        # on_ready fires again after reconnects
        if self.scheduler.running:
            return

        self.surface.guild = self.guilds[0]
        await self.surface.guild.chunk()
        log.debug("Guild %s fetched with %d members", self.surface.guild.name, self.surface.guild.member_count)

        self.scheduler.add_job(
            self.reconciler.tick,
            "interval",
            seconds=self.cfg.refresh_interval_seconds,
            next_run_time=datetime.now(tz=self.tz),
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot:
            return
        mentioned = next((u for u in message.mentions if not u.bot), None)
        try:
            reply = await self.commands.handle(
                str(message.author.id),
                message.content,
                str(mentioned.id) if mentioned else None,
            )
        except Exception:
            log.exception("Error caught during message")
            return
        if reply:
            await message.reply(reply)

    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        if payload.user_id == self.user.id:
            return
        try:
            await self.reconciler.handle_reaction(str(payload.message_id), str(payload.emoji), str(payload.user_id))
        except Exception:
            log.exception("Error caught during reaction")

    async def _interest(self, event: discord.ScheduledEvent, user: discord.User, interested: bool) -> None:
        try:
            await self.reconciler.handle_interest(str(event.id), str(user.id), interested)
        except Exception:
            log.exception("Error caught during scheduled event subscription")

    async def on_scheduled_event_user_add(self, event: discord.ScheduledEvent, user: discord.User) -> None:
        await self._interest(event, user, True)

    async def on_scheduled_event_user_remove(self, event: discord.ScheduledEvent, user: discord.User) -> None:
        await self._interest(event, user, False)


def run(config_path: str = CONFIG_PATH_DEFAULT) -> None:
    load_dotenv()
    cfg = load_config(config_path)
    configure_logging(cfg.logging)

    token = os.environ.get("DISCORD_TOKEN", "").strip()
    if not token:
        sys.exit("DISCORD_TOKEN is not set")

    store = JsonStore(cfg.storage.path)
    calendar = GoogleCalendarSource(
        cfg.calendar.calendar_id,
        ZoneInfo(cfg.timezone),
        store,
        credentials_path=os.environ.get("GOOGLE_CREDENTIALS_JSON", "credentials.json"),
        token_path=os.environ.get("GOOGLE_TOKEN_JSON", "token.json"),
    )
    # authenticate up front so an interactive OAuth flow happens before we connect
    calendar.service

    client = FlufferClient(cfg, store, calendar)
    client.run(token, log_handler=None)


def main():
    import argparse

    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default=CONFIG_PATH_DEFAULT)
    args = ap.parse_args()

    run(config_path=args.config)


if __name__ == "__main__":
    main()
