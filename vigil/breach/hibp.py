"""HTTP client for the Have I Been Pwned password-range and breached-account APIs."""

from __future__ import annotations

import hashlib
import logging
from typing import List, Optional, Tuple
from urllib.parse import quote

import httpx

from vigil.breach.models import BreachRecord
from vigil.config import Config
from vigil.errors import BreachLookupError
from vigil.logging_setup import mask_email

logger = logging.getLogger("vigil.hibp")


def password_hash_parts(password: str) -> Tuple[str, str]:
    """SHA-1 of *password* as uppercase hex, split into (5-char prefix, suffix)."""
    digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
    return digest[:5], digest[5:]


def match_range_response(body: str, suffix: str) -> int:
    """Return the breach count for *suffix* in a range response, 0 if absent."""
    for line in body.splitlines():
        hash_suffix, _, count = line.strip().partition(":")
        if hash_suffix.upper() == suffix:
            try:
                return int(count)
            except ValueError:
                return 1
    return 0


class HibpClient:
    """Async client for both lookups.

    Only the first five hex characters of a password hash ever leave the
    process. Email lookups need an API key; without one they return an
    empty list and make no request.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        range_url: str = Config.PWNED_PASSWORDS_URL,
        api_url: str = Config.HIBP_API_URL,
        timeout: float = Config.HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.range_url = range_url.rstrip("/")
        self.api_url = api_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": Config.USER_AGENT},
            transport=transport,
        )

    async def is_password_pwned(self, password: str) -> Tuple[bool, int]:
        prefix, suffix = password_hash_parts(password)
        try:
            response = await self.client.get(
                f"{self.range_url}/range/{prefix}", headers={"Add-Padding": "true"}
            )
        except httpx.HTTPError as e:
            logger.error("Password range lookup failed: %s", e)
            raise BreachLookupError(f"Password range lookup failed: {e}") from e

        if response.status_code != 200:
            logger.error("Password range lookup returned HTTP %d", response.status_code)
            raise BreachLookupError(
                "Failed to check password breach status", response.status_code
            )

        count = match_range_response(response.text, suffix)
        return count > 0, count

    async def check_email_breaches(self, email: str) -> List[BreachRecord]:
        if not self.api_key:
            return []

        url = f"{self.api_url}/breachedaccount/{quote(email, safe='')}"
        try:
            response = await self.client.get(
                url,
                params={"truncateResponse": "false"},
                headers={"hibp-api-key": self.api_key},
            )
        except httpx.HTTPError as e:
            logger.error("Email breach lookup failed for %s: %s", mask_email(email), e)
            raise BreachLookupError(f"Email breach lookup failed: {e}") from e

        if response.status_code == 404:
            return []
        if response.status_code != 200:
            logger.error(
                "Email breach lookup for %s returned HTTP %d",
                mask_email(email),
                response.status_code,
            )
            raise BreachLookupError(
                "Failed to check email breach status", response.status_code
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise BreachLookupError("Malformed breached-account response") from e
        return [BreachRecord.from_api(item) for item in payload]

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> HibpClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
