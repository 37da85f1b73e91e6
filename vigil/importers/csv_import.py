"""Import of browser password exports (CSV) into a container."""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional
from urllib.parse import urlparse

from vigil.container.database import Container
from vigil.container.models import PASSWORD, TITLE, URL, USERNAME, LiveGroup

logger = logging.getLogger("vigil.import")

_URL_HEADERS = ("url", "origin")
_USERNAME_HEADERS = ("username", "username field", "usernamevalue")
_PASSWORD_HEADERS = ("password", "password field", "passwordvalue")

DEFAULT_GROUP_NAME = "Imported"


@dataclass
class CsvCredential:
    url: str
    username: str
    password: str

    @property
    def title(self) -> str:
        host = urlparse(self.url).hostname if self.url else None
        return host or self.url or self.username

    def __repr__(self) -> str:
        return f"CsvCredential(url={self.url!r}, username={self.username!r}, password=<hidden>)"


def _column(headers: List[str], names: Iterable[str]) -> Optional[int]:
    for index, header in enumerate(headers):
        if header in names:
            return index
    return None


def parse_csv(text: str) -> List[CsvCredential]:
    """Parse a Chrome/Firefox/Edge style export.

    Raises ValueError when the file is empty, lacks a password column plus
    one of url/username, or has no row with a password.
    """
    rows = [row for row in csv.reader(io.StringIO(text)) if any(c.strip() for c in row)]
    if not rows:
        raise ValueError("CSV file is empty")

    headers = [h.strip().lower() for h in rows[0]]
    url_idx = _column(headers, _URL_HEADERS)
    user_idx = _column(headers, _USERNAME_HEADERS)
    pass_idx = _column(headers, _PASSWORD_HEADERS)
    if pass_idx is None or (url_idx is None and user_idx is None):
        raise ValueError(
            "Could not find required columns (url/origin, username, password) in the CSV file"
        )

    def cell(row: List[str], idx: Optional[int]) -> str:
        if idx is None or idx >= len(row):
            return ""
        return row[idx].strip()

    found = []
    for row in rows[1:]:
        password = cell(row, pass_idx)
        if not password:
            continue
        found.append(CsvCredential(cell(row, url_idx), cell(row, user_idx), password))

    if not found:
        raise ValueError("No valid password entries found in CSV")
    logger.info("Parsed %d credential(s) from CSV", len(found))
    return found


def import_into(
    container: Container,
    credentials: List[CsvCredential],
    group_name: str = DEFAULT_GROUP_NAME,
) -> LiveGroup:
    """Add one new group under the default group holding every credential."""
    group = container.create_group(container.default_group(), group_name)
    for cred in credentials:
        entry = container.create_entry(group)
        entry.set_field(TITLE, cred.title)
        entry.set_field(USERNAME, cred.username)
        entry.set_field(PASSWORD, cred.password)
        entry.set_field(URL, cred.url)
    logger.info("Imported %d entries into group '%s'", len(credentials), group_name)
    return group
