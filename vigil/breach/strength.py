"""Password strength evaluation (zxcvbn)."""

from __future__ import annotations

from zxcvbn import zxcvbn

from vigil.breach.models import PasswordStrength

# zxcvbn rejects longer input
_MAX_EVALUATED_LENGTH = 72


def evaluate_strength(password: str) -> PasswordStrength:
    if not password:
        return PasswordStrength(score=0, warning="", suggestions=[])
    result = zxcvbn(password[:_MAX_EVALUATED_LENGTH])
    feedback = result.get("feedback") or {}
    return PasswordStrength(
        score=int(result.get("score", 0)),
        warning=feedback.get("warning") or "",
        suggestions=list(feedback.get("suggestions") or []),
    )
