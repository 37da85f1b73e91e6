"""Vigil breach intelligence modules."""

from vigil.breach.cache import EmailStatusCache, StatusCache
from vigil.breach.hibp import HibpClient
from vigil.breach.models import BreachRecord, BreachStatus, EmailBreachStatus, PasswordStrength
from vigil.breach.orchestrator import BreachOrchestrator

__all__ = [
    "BreachOrchestrator",
    "BreachRecord",
    "BreachStatus",
    "EmailBreachStatus",
    "EmailStatusCache",
    "HibpClient",
    "PasswordStrength",
    "StatusCache",
]
