from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, Optional

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupInfo:
    members: FrozenSet[str]
    color: Optional[int] = None


GroupLookup = Callable[[str], Optional[GroupInfo]]


def normalize_group(name: Optional[str]) -> str:
    if not name:
        return ""
    return name.strip().lstrip("@").lower()


class InviteResolver:
    """Turns a group name into its members and color.

    The lookup is a plain function so membership can come from a live chat
    connection or from a static table.
    """

    def __init__(self, lookup: GroupLookup) -> None:
        self._lookup = lookup

    def resolve(self, name: Optional[str]) -> Optional[GroupInfo]:
        group = normalize_group(name)
        if not group:
            return None
        try:
            info = self._lookup(group)
        except Exception:
            log.exception("Group lookup failed for %r", group)
            return None
        if info is None:
            log.warning("Unknown invite group %r", group)
        return info


class StaticGroups:
    def __init__(self, groups: Dict[str, Iterable[str]], colors: Optional[Dict[str, int]] = None) -> None:
        self._groups = {normalize_group(k): frozenset(v) for k, v in groups.items()}
        self._colors = {normalize_group(k): v for k, v in (colors or {}).items()}

    def __call__(self, name: str) -> Optional[GroupInfo]:
        members = self._groups.get(normalize_group(name))
        if members is None:
            return None
        return GroupInfo(members=members, color=self._colors.get(normalize_group(name)))
