"""Plain, detached credential tree used for display and editing."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Union

from vigil.util.memory import ProtectedValue

ROOT_DISPLAY_NAME = "All Entries"
NEW_GROUP_NAME = "New Group"

Secret = Union[str, ProtectedValue]

_ID_RE = re.compile(r"^[0-9a-fA-F]{32}$")


def is_valid_id(value: Optional[str]) -> bool:
    """True for a well-formed 32-hex-character identifier."""
    return bool(value) and bool(_ID_RE.match(value))


@dataclass(eq=False)
class Entry:
    id: str
    title: str = ""
    username: str = ""
    password: Secret = ""
    url: Optional[str] = None
    notes: Optional[str] = None
    created: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    modified: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def new(cls) -> Entry:
        """An empty entry; it receives its id on the next export."""
        now = datetime.now(timezone.utc)
        return cls(id="", url="", notes="", created=now, modified=now)

    def password_text(self) -> str:
        if isinstance(self.password, ProtectedValue):
            return self.password.get_text()
        return self.password or ""

    def touch(self) -> None:
        self.modified = datetime.now(timezone.utc)


@dataclass(eq=False)
class Group:
    id: str
    name: str
    entries: List[Entry] = field(default_factory=list)
    groups: List[Group] = field(default_factory=list)

    def iter_groups(self) -> Iterator[Group]:
        yield self
        for sub in self.groups:
            yield from sub.iter_groups()

    def iter_entries(self) -> Iterator[Entry]:
        """Entries of this subtree: own entries first, then each subgroup."""
        yield from self.entries
        for sub in self.groups:
            yield from sub.iter_entries()

    def count_entries(self) -> int:
        return len(self.entries) + sum(sub.count_entries() for sub in self.groups)
