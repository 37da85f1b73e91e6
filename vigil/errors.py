"""Exception types shared across Vigil."""

from __future__ import annotations


class VigilError(Exception):
    """Base class for Vigil errors."""


class BreachLookupError(VigilError):
    """The breach-lookup service could not be reached or answered badly."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ScanInProgress(VigilError):
    """A root scan of the same kind is already running."""


class ScanCancelled(VigilError):
    """The caller cancelled a running scan."""


class SaveError(VigilError):
    """Neither the primary nor the fallback destination could be written."""

    def __init__(self, message: str, attempts: list | None = None):
        super().__init__(message)
        self.attempts = attempts or []
