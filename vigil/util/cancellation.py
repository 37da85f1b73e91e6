"""Cooperative cancellation for long-running scans."""

from __future__ import annotations

import logging

from vigil.errors import ScanCancelled

logger = logging.getLogger("vigil.cancellation")


class CancellationToken:
    """Flag a caller flips to abort a scan at its next suspension point.

    Checked before every rate-limit sleep and every external call. Once
    cancelled a token stays cancelled; create a new one per scan.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason
            logger.info("Scan cancellation requested: %s", reason)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ScanCancelled(self.reason or "cancelled")
