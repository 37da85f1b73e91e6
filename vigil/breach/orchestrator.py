"""BreachOrchestrator: rate-limited, cache-backed breach scanning of a credential tree."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from vigil.breach.cache import EmailStatusCache, StatusCache
from vigil.breach.hibp import HibpClient
from vigil.breach.models import (
    BreachRecord,
    BreachStatus,
    PasswordStrength,
    relevant_breaches,
)
from vigil.breach.progress import EMAIL, PASSWORD, Notifier, ProgressReporter
from vigil.breach.strength import evaluate_strength
from vigil.config import Config
from vigil.errors import ScanCancelled, ScanInProgress
from vigil.logging_setup import mask_email
from vigil.paths import get_data_dir, get_email_cache_path, get_status_cache_path
from vigil.tree.models import ROOT_DISPLAY_NAME, Entry, Group, is_valid_id
from vigil.util.cancellation import CancellationToken
from vigil.util.rate_limit import IntervalGate

logger = logging.getLogger("vigil.orchestrator")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(_EMAIL_RE.match(value.strip()))


def _progress_key(entry: Entry) -> str:
    # Unsaved entries share the empty id until the next export
    return entry.id if is_valid_id(entry.id) else f"new:{id(entry)}"


@dataclass
class WeakEntriesReport:
    breached: List[Entry] = field(default_factory=list)
    weak: List[Entry] = field(default_factory=list)
    has_checked_entries: bool = False
    all_entries_cached: bool = True


@dataclass
class BreachedEmailsReport:
    breached: List[Tuple[Entry, List[BreachRecord]]] = field(default_factory=list)
    has_checked_emails: bool = False
    all_emails_cached: bool = True


class BreachOrchestrator:
    """Owns all scan state: gates, progress and the single-flight guard.

    Scans are sequential; the only suspension points are the rate-limit
    sleep and the lookup itself. One root scan per lookup kind may run at
    a time.
    """

    def __init__(
        self,
        status_cache: StatusCache,
        email_cache: EmailStatusCache,
        client: HibpClient,
        reporter: Optional[ProgressReporter] = None,
        password_interval: float = Config.PASSWORD_REQUEST_INTERVAL,
        email_interval: float = Config.EMAIL_REQUEST_INTERVAL,
        weak_score_threshold: int = Config.WEAK_SCORE_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        strength_evaluator: Callable[[str], PasswordStrength] = evaluate_strength,
    ):
        self.status_cache = status_cache
        self.email_cache = email_cache
        self.client = client
        self.reporter = reporter or ProgressReporter()
        self.password_gate = IntervalGate(password_interval, PASSWORD, clock, sleep)
        self.email_gate = IntervalGate(email_interval, EMAIL, clock, sleep)
        self.weak_score_threshold = weak_score_threshold
        self.evaluate_strength = strength_evaluator
        self._active: Dict[str, bool] = {PASSWORD: False, EMAIL: False}

    @classmethod
    def from_config(
        cls,
        data_dir: Optional[Path] = None,
        notifier: Optional[Notifier] = None,
        client: Optional[HibpClient] = None,
    ) -> BreachOrchestrator:
        data_dir = data_dir or get_data_dir()
        settings = Config.get_breach_settings(data_dir)
        return cls(
            StatusCache(get_status_cache_path(data_dir)),
            EmailStatusCache(get_email_cache_path(data_dir)),
            client or HibpClient(api_key=Config.get_hibp_api_key(data_dir)),
            ProgressReporter(notifier),
            password_interval=settings["password_interval"],
            email_interval=settings["email_interval"],
            weak_score_threshold=settings["weak_score_threshold"],
        )

    def is_scanning(self, kind: str = PASSWORD) -> bool:
        return self._active[kind]

    # ------------------------------------------------------------------
    #  Single entries
    # ------------------------------------------------------------------
    async def check_entry(
        self, container_path: str, entry: Entry, token: Optional[CancellationToken] = None
    ) -> bool:
        """Return whether the entry's password is known to be breached.

        Entries without a stored id are looked up but never cached.
        """
        key = _progress_key(entry)
        cacheable = is_valid_id(entry.id)
        cached = self.status_cache.get(container_path, entry.id) if cacheable else None
        if cached is not None:
            self.reporter.increment(PASSWORD, key)
            return cached.is_pwned

        try:
            await self.password_gate.wait(token)
            password = entry.password_text()
            try:
                is_pwned, count = await self.client.is_password_pwned(password)
            finally:
                self.password_gate.mark()
            status = BreachStatus(
                is_pwned=is_pwned,
                count=count,
                strength=self.evaluate_strength(password),
                timestamp=0,
                breached_email=self._known_email_breach(container_path, entry),
            )
            if cacheable:
                self.status_cache.set(container_path, entry.id, status)
        except ScanCancelled:
            raise
        except Exception:
            # Failed lookups count toward progress but are never cached
            self.reporter.increment(PASSWORD, key)
            raise

        self.reporter.increment(PASSWORD, key)
        return is_pwned

    async def check_entry_email(
        self, container_path: str, entry: Entry, token: Optional[CancellationToken] = None
    ) -> List[BreachRecord]:
        """Return every cached or fetched breach for the entry's username address."""
        key = _progress_key(entry)
        email = (entry.username or "").strip()
        if not is_valid_email(email) or not self.client.api_key:
            self.reporter.increment(EMAIL, key)
            return []

        cached = self._cached_email_breaches(container_path, entry, email, refresh=True)
        if cached is not None:
            self.reporter.increment(EMAIL, key)
            return cached

        try:
            await self.email_gate.wait(token)
            try:
                breaches = await self.client.check_email_breaches(email)
            finally:
                self.email_gate.mark()
            if is_valid_id(entry.id):
                self.email_cache.set(container_path, entry.id, email, breaches)
        except ScanCancelled:
            raise
        except Exception:
            self.reporter.increment(EMAIL, key)
            raise

        logger.debug("%s: %d breach(es)", mask_email(email), len(breaches))
        self.reporter.increment(EMAIL, key)
        return breaches

    def _known_email_breach(self, container_path: str, entry: Entry) -> Optional[bool]:
        email = (entry.username or "").strip()
        if not is_valid_email(email):
            return None
        breaches = self._cached_email_breaches(container_path, entry, email, refresh=False)
        if breaches is None:
            return None
        return bool(relevant_breaches(breaches, entry.modified))

    def _cached_email_breaches(
        self, container_path: str, entry: Entry, email: str, refresh: bool
    ) -> Optional[List[BreachRecord]]:
        if is_valid_id(entry.id):
            return self.email_cache.get_by_entry(container_path, entry.id, email, refresh=refresh)
        return self.email_cache.get_by_email(container_path, email)

    async def _entry_email_breached(
        self, container_path: str, entry: Entry, token: Optional[CancellationToken]
    ) -> bool:
        breaches = await self.check_entry_email(container_path, entry, token)
        return bool(relevant_breaches(breaches, entry.modified))

    # ------------------------------------------------------------------
    #  Whole trees
    # ------------------------------------------------------------------
    async def check_group(
        self,
        container_path: str,
        group: Group,
        *,
        root_scan: Optional[bool] = False,
        token: Optional[CancellationToken] = None,
    ) -> bool:
        """Scan every password below *group*; True if any is breached.

        ``root_scan=True`` resets and publishes progress for the whole
        tree. ``None`` treats a group carrying the aggregate display name
        as the root.
        """
        return await self._scan(PASSWORD, container_path, group, root_scan, token)

    async def check_group_emails(
        self,
        container_path: str,
        group: Group,
        *,
        root_scan: Optional[bool] = False,
        token: Optional[CancellationToken] = None,
    ) -> bool:
        """Scan every username address below *group*; True on any relevant breach."""
        return await self._scan(EMAIL, container_path, group, root_scan, token)

    async def _scan(
        self,
        kind: str,
        container_path: str,
        group: Group,
        root_scan: Optional[bool],
        token: Optional[CancellationToken],
    ) -> bool:
        if root_scan is None:
            root_scan = group.name == ROOT_DISPLAY_NAME
        if not root_scan:
            return await self._walk(kind, container_path, group, token)

        if self._active[kind]:
            raise ScanInProgress(f"A {kind} breach scan is already running")
        self._active[kind] = True
        try:
            self.reporter.begin(kind, group.count_entries())
            try:
                found = await self._walk(kind, container_path, group, token)
            except BaseException as exc:
                logger.error("%s breach scan aborted: %s", kind, exc)
                self.reporter.fail(kind)
                raise
            self.reporter.finish(kind)
            logger.info("%s breach scan complete (breaches found: %s)", kind, found)
            return found
        finally:
            self._active[kind] = False

    async def _walk(
        self,
        kind: str,
        container_path: str,
        group: Group,
        token: Optional[CancellationToken],
    ) -> bool:
        check = self.check_entry if kind == PASSWORD else self._entry_email_breached
        found = False

        for entry in list(group.entries):
            try:
                found = await check(container_path, entry, token) or found
            except ScanCancelled:
                raise
            except Exception as exc:
                logger.error("Error checking entry %s: %s", entry.id or "<new>", exc)

        for subgroup in list(group.groups):
            try:
                found = await self._walk(kind, container_path, subgroup, token) or found
            except ScanCancelled:
                raise
            except Exception as exc:
                logger.error("Error checking group %s: %s", subgroup.id or "<new>", exc)

        return found

    # ------------------------------------------------------------------
    #  Cache-only queries
    # ------------------------------------------------------------------
    def find_breached_and_weak_entries(self, tree: Group, container_path: str) -> WeakEntriesReport:
        report = WeakEntriesReport()
        statuses = self.status_cache.get_all(container_path)
        for entry in tree.iter_entries():
            status = statuses.get(entry.id)
            if status is None:
                report.all_entries_cached = False
                continue
            report.has_checked_entries = True
            if status.is_pwned:
                report.breached.append(entry)
            if status.strength.score < self.weak_score_threshold:
                report.weak.append(entry)
        return report

    def find_breached_emails(self, tree: Group, container_path: str) -> BreachedEmailsReport:
        report = BreachedEmailsReport()
        for entry in tree.iter_entries():
            email = (entry.username or "").strip()
            if not is_valid_email(email):
                continue
            breaches = self._cached_email_breaches(container_path, entry, email, refresh=False)
            if breaches is None:
                report.all_emails_cached = False
                continue
            report.has_checked_emails = True
            relevant = relevant_breaches(breaches, entry.modified)
            if relevant:
                report.breached.append((entry, relevant))
        return report

    def needs_scan(self, tree: Group, container_path: str) -> bool:
        """True when some entry of *tree* has no valid cached status."""
        report = self.find_breached_and_weak_entries(tree, container_path)
        return not report.all_entries_cached

    def get_entry_breach_status(self, container_path: str, entry_id: str) -> Optional[BreachStatus]:
        return self.status_cache.get(container_path, entry_id)

    def clear_cache(self, container_path: Optional[str] = None) -> None:
        if container_path is None:
            self.status_cache.clear_all()
            self.email_cache.clear_all()
        else:
            self.status_cache.clear_container(container_path)
            self.email_cache.clear_container(container_path)

    async def aclose(self) -> None:
        await self.client.aclose()
