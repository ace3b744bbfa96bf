from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
import yaml

@dataclass
class StorageConfig:
    path: str

@dataclass
class CalendarConfig:
    calendar_id: str

@dataclass
class DiscordConfig:
    channel: str
    command_prefix: str
    scheduled_events: bool

@dataclass
class LoggingConfig:
    level: str
    file: Optional[str]

@dataclass
class AppConfig:
    timezone: str
    refresh_interval_seconds: int
    future_limit_days: int
    materiality_hours: float
    sweep_concurrency: int
    placeholder_email_domain: str
    storage: StorageConfig
    calendar: CalendarConfig
    discord: DiscordConfig
    logging: LoggingConfig

def load_config(path: str) -> AppConfig:
    p = Path(path)
    data: Dict[str, Any] = {}
    if p.exists():
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    storage = data.get("storage", {})
    calendar = data.get("calendar", {})
    discord = data.get("discord", {})
    logging_ = data.get("logging", {})

    return AppConfig(
        timezone=str(data.get("timezone", "America/Los_Angeles")),
        refresh_interval_seconds=int(data.get("refresh_interval_seconds", 60)),
        future_limit_days=int(data.get("future_limit_days", 14)),
        materiality_hours=float(data.get("materiality_hours", 4)),
        sweep_concurrency=max(1, int(data.get("sweep_concurrency", 4))),
        placeholder_email_domain=str(data.get("placeholder_email_domain", "users.noreply.invalid")),
        storage=StorageConfig(
            path=str(storage.get("path", "persist")),
        ),
        calendar=CalendarConfig(
            calendar_id=str(calendar.get("calendar_id", "primary")),
        ),
        discord=DiscordConfig(
            channel=str(discord.get("channel", "events")).lstrip("#").lower(),
            command_prefix=str(discord.get("command_prefix", "!")),
            scheduled_events=bool(discord.get("scheduled_events", True)),
        ),
        logging=LoggingConfig(
            level=str(logging_.get("level", "INFO")).upper(),
            file=logging_.get("file", "fluffer.log") or None,
        ),
    )
