"""Vigil encrypted container modules."""

from vigil.container.database import Container, Credentials
from vigil.container.models import LiveEntry, LiveGroup, LiveTimes, LiveUuid

__all__ = [
    "Container",
    "Credentials",
    "LiveEntry",
    "LiveGroup",
    "LiveTimes",
    "LiveUuid",
]
