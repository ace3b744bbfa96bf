from __future__ import annotations
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote
import asyncio
import json

SETTINGS_KEY = "settings"


class JsonStore:
    """Key-value store keeping one JSON document per key in a directory."""

    def __init__(self, path: str) -> None:
        self.root = Path(path)
        self.root.mkdir(parents=True, exist_ok=True)

    def _file(self, key: str) -> Path:
        return self.root / (quote(key, safe="") + ".json")

    def get(self, key: str) -> Optional[Any]:
        p = self._file(key)
        if not p.exists():
            return None
        return json.loads(p.read_text(encoding="utf-8"))

    def set(self, key: str, value: Any) -> None:
        p = self._file(key)
        tmp = p.with_suffix(".tmp")
        tmp.write_text(json.dumps(value, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(p)

    def delete(self, key: str) -> None:
        self._file(key).unlink(missing_ok=True)

    def keys(self, prefix: str = "") -> List[str]:
        found = []
        for p in self.root.glob("*.json"):
            key = unquote(p.name[: -len(".json")])
            if key.startswith(prefix):
                found.append(key)
        return sorted(found)

    def scan_all(self, prefix: str) -> List[Any]:
        values = []
        for key in self.keys(prefix):
            value = self.get(key)
            if value is not None:
                values.append(value)
        return values


@dataclass
class Settings:
    accounts: Dict[str, str] = field(default_factory=dict)   # identity -> calendar email
    channels: Dict[str, str] = field(default_factory=dict)   # group name -> channel name


def load_settings(store: JsonStore) -> Settings:
    data: Dict[str, Any] = store.get(SETTINGS_KEY) or {}
    return Settings(
        accounts={str(k): str(v) for k, v in data.get("accounts", {}).items()},
        channels={str(k): str(v) for k, v in data.get("channels", {}).items()},
    )


def save_settings(store: JsonStore, settings: Settings) -> None:
    store.set(SETTINGS_KEY, asdict(settings))


class SettingsOwner:
    """Process-wide settings; reads are lock-free, writes go through one lock."""

    def __init__(self, store: JsonStore) -> None:
        self._store = store
        self._lock = asyncio.Lock()
        self.settings = load_settings(store)

    def email_for(self, identity: str) -> Optional[str]:
        return self.settings.accounts.get(identity)

    def identity_for(self, email: str) -> Optional[str]:
        email = email.lower()
        for identity, mapped in self.settings.accounts.items():
            if mapped.lower() == email:
                return identity
        return None

    def channel_for(self, group: Optional[str]) -> Optional[str]:
        if not group:
            return None
        return self.settings.channels.get(group)

    async def set_account(self, identity: str, email: Optional[str]) -> None:
        async with self._lock:
            if email:
                self.settings.accounts[identity] = email
            else:
                self.settings.accounts.pop(identity, None)
            save_settings(self._store, self.settings)

    async def set_channel(self, group: str, channel: str) -> None:
        async with self._lock:
            self.settings.channels[group] = channel
            save_settings(self._store, self.settings)
