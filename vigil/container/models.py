"""Live object graph of an open container: groups, entries, uuids, times."""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from vigil.util.memory import ProtectedValue

FieldValue = Union[str, ProtectedValue]

# Standard field names
TITLE = "Title"
USERNAME = "UserName"
PASSWORD = "Password"
URL = "URL"
NOTES = "Notes"

PROTECTED_FIELDS = frozenset({PASSWORD})

_HEX32 = re.compile(r"^[0-9a-fA-F]{32}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LiveUuid:
    """16-byte identifier, round-trippable to and from 32 hex characters."""

    __slots__ = ("_bytes",)

    def __init__(self, raw: bytes):
        if len(raw) != 16:
            raise ValueError("uuid must be 16 bytes")
        self._bytes = bytes(raw)

    @classmethod
    def random(cls) -> LiveUuid:
        return cls(secrets.token_bytes(16))

    @classmethod
    def from_hex(cls, value: str) -> LiveUuid:
        if not _HEX32.match(value or ""):
            raise ValueError(f"not a 32-character hex id: {value!r}")
        return cls(bytes.fromhex(value))

    @property
    def bytes(self) -> bytes:
        return self._bytes

    def __str__(self) -> str:
        return self._bytes.hex()

    def __repr__(self) -> str:
        return f"LiveUuid({self._bytes.hex()})"

    def __eq__(self, other):
        if isinstance(other, LiveUuid):
            return self._bytes == other._bytes
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._bytes)


@dataclass
class LiveTimes:
    creation_time: datetime = field(default_factory=utcnow)
    last_mod_time: datetime = field(default_factory=utcnow)


@dataclass(eq=False)
class LiveEntry:
    """An entry as owned by the container.

    ``extra`` carries data the editable tree does not model (icons, tags,
    history, attachments) and must survive a save.
    """

    uuid: LiveUuid = field(default_factory=LiveUuid.random)
    fields: Dict[str, FieldValue] = field(default_factory=dict)
    times: LiveTimes = field(default_factory=LiveTimes)
    extra: Dict[str, Any] = field(default_factory=dict)

    def get_field(self, name: str) -> Optional[FieldValue]:
        return self.fields.get(name)

    def get_text(self, name: str) -> Optional[str]:
        value = self.fields.get(name)
        if value is None:
            return None
        if isinstance(value, ProtectedValue):
            return value.get_text()
        return str(value)

    def set_field(self, name: str, value: Optional[FieldValue]) -> None:
        if value is None:
            self.fields.pop(name, None)
            return
        if name in PROTECTED_FIELDS and isinstance(value, str):
            value = ProtectedValue.from_string(value)
        self.fields[name] = value


@dataclass(eq=False)
class LiveGroup:
    uuid: LiveUuid = field(default_factory=LiveUuid.random)
    name: str = ""
    entries: List[LiveEntry] = field(default_factory=list)
    groups: List[LiveGroup] = field(default_factory=list)
    times: LiveTimes = field(default_factory=LiveTimes)
    extra: Dict[str, Any] = field(default_factory=dict)

    def iter_groups(self):
        """Yield this group and every descendant group, depth first."""
        yield self
        for sub in self.groups:
            yield from sub.iter_groups()

    def iter_entries(self):
        for grp in self.iter_groups():
            yield from grp.entries


# ---------------------------------------------------------------------------
#  JSON payload (inside the encrypted container)
# ---------------------------------------------------------------------------
def _field_to_dict(value: FieldValue) -> Any:
    if isinstance(value, ProtectedValue):
        return {"protected": True, "value": value.get_text()}
    return value


def _field_from_dict(value: Any) -> FieldValue:
    if isinstance(value, dict) and value.get("protected"):
        return ProtectedValue.from_string(value.get("value", ""))
    return str(value)


def _times_to_dict(times: LiveTimes) -> Dict:
    return {
        "created": times.creation_time.isoformat(),
        "modified": times.last_mod_time.isoformat(),
    }


def _times_from_dict(data: Optional[Dict]) -> LiveTimes:
    if not data:
        return LiveTimes()
    return LiveTimes(
        creation_time=datetime.fromisoformat(data["created"]),
        last_mod_time=datetime.fromisoformat(data["modified"]),
    )


def entry_to_dict(entry: LiveEntry) -> Dict:
    return {
        "uuid": str(entry.uuid),
        "fields": {k: _field_to_dict(v) for k, v in entry.fields.items()},
        "times": _times_to_dict(entry.times),
        "extra": entry.extra,
    }


def entry_from_dict(data: Dict) -> LiveEntry:
    return LiveEntry(
        uuid=LiveUuid.from_hex(data["uuid"]),
        fields={k: _field_from_dict(v) for k, v in data.get("fields", {}).items()},
        times=_times_from_dict(data.get("times")),
        extra=data.get("extra", {}),
    )


def group_to_dict(group: LiveGroup) -> Dict:
    return {
        "uuid": str(group.uuid),
        "name": group.name,
        "times": _times_to_dict(group.times),
        "extra": group.extra,
        "entries": [entry_to_dict(e) for e in group.entries],
        "groups": [group_to_dict(g) for g in group.groups],
    }


def group_from_dict(data: Dict) -> LiveGroup:
    return LiveGroup(
        uuid=LiveUuid.from_hex(data["uuid"]),
        name=data.get("name", ""),
        times=_times_from_dict(data.get("times")),
        extra=data.get("extra", {}),
        entries=[entry_from_dict(e) for e in data.get("entries", [])],
        groups=[group_from_dict(g) for g in data.get("groups", [])],
    )
