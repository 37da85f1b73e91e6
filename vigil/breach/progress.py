"""Scan progress tracking and the persistent progress notification."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Set

from vigil.config import Config

logger = logging.getLogger("vigil.progress")

PASSWORD = "password"
EMAIL = "email"
KINDS = (PASSWORD, EMAIL)

_LABELS = {PASSWORD: "passwords", EMAIL: "emails"}


class Notifier(Protocol):
    """Host notification channel (toasts in a GUI, log lines otherwise).

    ``duration`` is in milliseconds; 0 keeps the notification visible.
    """

    def show(self, message: str, kind: str = "info", duration: int = 0) -> str: ...

    def update(self, toast_id: str, message: str, kind: str = "info", duration: int = 0) -> None: ...


class LoggingNotifier:
    """Notifier for headless hosts: every show/update becomes a log line."""

    def __init__(self, logger_name: str = "vigil.notify"):
        self._log = logging.getLogger(logger_name)
        self._ids = itertools.count(1)
        self.current: Dict[str, str] = {}

    def show(self, message: str, kind: str = "info", duration: int = 0) -> str:
        toast_id = f"toast-{next(self._ids)}"
        self.current[toast_id] = message
        self._log.log(_level(kind), message)
        return toast_id

    def update(self, toast_id: str, message: str, kind: str = "info", duration: int = 0) -> None:
        self.current[toast_id] = message
        self._log.log(_level(kind), message)


def _level(kind: str) -> int:
    return {"error": logging.ERROR, "warning": logging.WARNING}.get(kind, logging.INFO)


@dataclass
class ScanProgress:
    checked: int = 0
    total: int = 0


class ProgressReporter:
    """``{checked, total}`` per lookup kind, pushed as one combined line.

    Each entry id is counted at most once per scan, whether it was served
    from cache, looked up, or failed.
    """

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or LoggingNotifier()
        self.progress: Dict[str, ScanProgress] = {k: ScanProgress() for k in KINDS}
        self._counted: Dict[str, Set[str]] = {k: set() for k in KINDS}
        self._toast_id: Optional[str] = None

    def begin(self, kind: str, total: int) -> None:
        self._counted[kind].clear()
        self.progress[kind] = ScanProgress(0, total)
        self._publish(starting=True)

    def increment(self, kind: str, entry_id: str) -> bool:
        if entry_id in self._counted[kind]:
            return False
        self._counted[kind].add(entry_id)
        self.progress[kind].checked += 1
        self._publish()
        return True

    def finish(self, kind: str) -> None:
        self._reset(kind)
        if self.idle:
            self._finalize("Completed checking for breaches", "success", Config.COMPLETION_TOAST_MS)

    def fail(self, kind: str) -> None:
        self._reset(kind)
        self._finalize(
            f"Error checking {_LABELS[kind]} for breaches", "error", Config.ERROR_TOAST_MS
        )

    @property
    def idle(self) -> bool:
        return all(p.total == 0 for p in self.progress.values())

    def message(self, starting: bool = False) -> str:
        parts = [
            f"{_LABELS[k]} {p.checked}/{p.total}"
            for k, p in self.progress.items()
            if p.total > 0
        ]
        verb = "Starting breach check" if starting else "Checking for breaches"
        return f"{verb}: {', '.join(parts)}" if parts else f"{verb}: nothing to check"

    # ------------------------------------------------------------------
    def _reset(self, kind: str) -> None:
        self._counted[kind].clear()
        self.progress[kind] = ScanProgress()

    def _publish(self, starting: bool = False) -> None:
        if self.idle and not starting:
            return
        text = self.message(starting)
        if self._toast_id is None:
            self._toast_id = self.notifier.show(text, "info", 0)
        else:
            self.notifier.update(self._toast_id, text, "info", 0)

    def _finalize(self, text: str, kind: str, duration: int) -> None:
        if self._toast_id is None:
            return
        self.notifier.update(self._toast_id, text, kind, duration)
        self._toast_id = None
