"""Durable, TTL-keyed breach caches (per container, per entry / email)."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from vigil.breach.models import BreachRecord, BreachStatus, EmailBreachStatus
from vigil.config import Config
from vigil.logging_setup import mask_email
from vigil.storage.backend import read_json, write_json_atomic

logger = logging.getLogger("vigil.cache")


def now_ms() -> float:
    return time.time() * 1000


class _JsonStore:
    """One JSON document on disk, re-read on every operation.

    Concurrent writers are last-write-wins; rows are advisory only.
    """

    def __init__(self, path: Path, clock: Optional[Callable[[], float]] = None):
        self.path = Path(path)
        self._clock = clock or now_ms
        self.ttl_ms = Config.CACHE_DURATION_MS

    def _load(self) -> Dict:
        store = read_json(self.path, {})
        return store if isinstance(store, dict) else {}

    def _save(self, store: Dict) -> None:
        write_json_atomic(self.path, store)

    def _is_expired(self, timestamp: float) -> bool:
        return self._clock() - timestamp > self.ttl_ms

    def clear_container(self, container_path: str) -> None:
        store = self._load()
        if store.pop(container_path, None) is not None:
            self._save(store)

    def clear_all(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove %s: %s", self.path.name, exc)


# ============================================================================
#  StatusCache
# ============================================================================
class StatusCache(_JsonStore):
    """``{container_path: {entry_id: BreachStatus}}``"""

    def get(self, container_path: str, entry_id: str) -> Optional[BreachStatus]:
        store = self._load()
        bucket = store.get(container_path)
        if not isinstance(bucket, dict):
            return None
        row = bucket.get(entry_id)
        if row is None:
            return None
        try:
            status = BreachStatus.from_dict(row)
        except (TypeError, ValueError, AttributeError):
            logger.warning("Dropping malformed status row for entry %s", entry_id)
            self._delete(store, container_path, entry_id)
            return None
        if self._is_expired(status.timestamp):
            self._delete(store, container_path, entry_id)
            return None
        return status

    def get_all(self, container_path: str) -> Dict[str, BreachStatus]:
        """Every valid row of one container in a single read; expired rows are purged."""
        store = self._load()
        bucket = store.get(container_path)
        if not isinstance(bucket, dict):
            return {}
        valid: Dict[str, BreachStatus] = {}
        stale = []
        for entry_id, row in bucket.items():
            try:
                status = BreachStatus.from_dict(row)
            except (TypeError, ValueError, AttributeError):
                stale.append(entry_id)
                continue
            if self._is_expired(status.timestamp):
                stale.append(entry_id)
            else:
                valid[entry_id] = status
        if stale:
            for entry_id in stale:
                del bucket[entry_id]
            if not bucket:
                del store[container_path]
            self._save(store)
        return valid

    def set(self, container_path: str, entry_id: str, status: BreachStatus) -> BreachStatus:
        """Store *status*, stamping it with the current time."""
        status.timestamp = self._clock()
        store = self._load()
        store.setdefault(container_path, {})[entry_id] = status.to_dict()
        self._save(store)
        return status

    def clear_one(self, container_path: str, entry_id: str) -> None:
        store = self._load()
        if entry_id in store.get(container_path, {}):
            self._delete(store, container_path, entry_id)

    def _delete(self, store: Dict, container_path: str, entry_id: str) -> None:
        bucket = store.get(container_path)
        if bucket is None:
            return
        bucket.pop(entry_id, None)
        if not bucket:
            del store[container_path]
        self._save(store)


# ============================================================================
#  EmailStatusCache
# ============================================================================
class EmailStatusCache(_JsonStore):
    """``{container_path: {"entries": {...}, "emails": {...}}}``

    The breach list for an address is stored once, under ``emails``; an
    entry row only references the address it was checked with, so two
    entries sharing an address can never disagree. An entry row holds the
    breach list inline only when it was stored without an address.
    """

    @staticmethod
    def _bucket(store: Dict, container_path: str) -> Dict:
        bucket = store.setdefault(container_path, {})
        bucket.setdefault("entries", {})
        bucket.setdefault("emails", {})
        return bucket

    def set(
        self,
        container_path: str,
        entry_id: str,
        email: Optional[str],
        breaches: List[BreachRecord],
    ) -> EmailBreachStatus:
        status = EmailBreachStatus(breaches=list(breaches), timestamp=self._clock())
        store = self._load()
        bucket = self._bucket(store, container_path)
        if email:
            bucket["emails"][email] = status.to_dict()
            bucket["entries"][entry_id] = {"email": email, "timestamp": status.timestamp}
        else:
            bucket["entries"][entry_id] = status.to_dict()
        self._save(store)
        return status

    def get_by_email(self, container_path: str, email: str) -> Optional[List[BreachRecord]]:
        store = self._load()
        bucket = store.get(container_path)
        if not bucket or not isinstance(bucket, dict):
            return None
        row = bucket.get("emails", {}).get(email)
        if row is None:
            return None
        if self._is_expired(float(row.get("timestamp", 0))):
            logger.debug("Email row for %s expired", mask_email(email))
            self._delete_email(store, container_path, email)
            return None
        return EmailBreachStatus.from_dict(row).breaches

    def get_by_entry(
        self,
        container_path: str,
        entry_id: str,
        email: Optional[str],
        refresh: bool = True,
    ) -> Optional[List[BreachRecord]]:
        """Breaches for an entry; the shared email-keyed row wins when valid."""
        store = self._load()
        bucket = store.get(container_path)
        if not bucket or not isinstance(bucket, dict):
            return None
        emails = bucket.get("emails", {})
        entries = bucket.get("entries", {})

        if email:
            row = emails.get(email)
            if row is not None and self._is_expired(float(row.get("timestamp", 0))):
                logger.debug("Email row for %s expired", mask_email(email))
                self._delete_email(store, container_path, email)
                store = self._load()
                bucket = store.get(container_path)
                if not bucket:
                    return None
                emails = bucket.get("emails", {})
                entries = bucket.get("entries", {})
            elif row is not None:
                ref = {"email": email, "timestamp": row["timestamp"]}
                if refresh and entries.get(entry_id) != ref:
                    self._bucket(store, container_path)["entries"][entry_id] = ref
                    self._save(store)
                return EmailBreachStatus.from_dict(row).breaches

        ref = entries.get(entry_id)
        if ref is None:
            return None
        if self._is_expired(float(ref.get("timestamp", 0))):
            self._delete_entry(store, container_path, entry_id)
            return None

        if "email" not in ref:
            return EmailBreachStatus.from_dict(ref).breaches

        # Row was written for another address, or its target is gone
        target = emails.get(ref["email"])
        if (email and ref["email"] != email) or target is None or self._is_expired(
            float(target.get("timestamp", 0))
        ):
            self._delete_entry(store, container_path, entry_id)
            return None
        return EmailBreachStatus.from_dict(target).breaches

    def clear_one(self, container_path: str, entry_id: str) -> None:
        store = self._load()
        if entry_id in store.get(container_path, {}).get("entries", {}):
            self._delete_entry(store, container_path, entry_id)

    def clear_email(self, container_path: str, email: str) -> None:
        store = self._load()
        if email in store.get(container_path, {}).get("emails", {}):
            self._delete_email(store, container_path, email)

    def _delete_entry(self, store: Dict, container_path: str, entry_id: str) -> None:
        bucket = self._bucket(store, container_path)
        bucket["entries"].pop(entry_id, None)
        self._prune(store, container_path)

    def _delete_email(self, store: Dict, container_path: str, email: str) -> None:
        bucket = self._bucket(store, container_path)
        bucket["emails"].pop(email, None)
        self._prune(store, container_path)

    def _prune(self, store: Dict, container_path: str) -> None:
        bucket = store[container_path]
        if not bucket["entries"] and not bucket["emails"]:
            del store[container_path]
        self._save(store)
