"""Breach and strength status records, persisted in the breach caches."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger("vigil.breach")


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass
class PasswordStrength:
    score: int = 0  # 0 (weak) .. 4 (strong)
    warning: str = ""
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "score": self.score,
            "feedback": {"warning": self.warning, "suggestions": list(self.suggestions)},
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> PasswordStrength:
        if not data:
            return cls()
        feedback = data.get("feedback") or {}
        return cls(
            score=int(data.get("score", 0)),
            warning=feedback.get("warning") or "",
            suggestions=list(feedback.get("suggestions") or []),
        )


@dataclass
class BreachStatus:
    is_pwned: bool
    count: int
    strength: PasswordStrength
    timestamp: float  # epoch ms
    breached_email: Optional[bool] = None

    def to_dict(self) -> Dict:
        data = {
            "isPwned": self.is_pwned,
            "count": self.count,
            "strength": self.strength.to_dict(),
            "timestamp": self.timestamp,
        }
        if self.breached_email is not None:
            data["breachedEmail"] = self.breached_email
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> BreachStatus:
        return cls(
            is_pwned=bool(data.get("isPwned", False)),
            count=max(0, int(data.get("count", 0))),
            strength=PasswordStrength.from_dict(data.get("strength")),
            timestamp=float(data.get("timestamp", 0)),
            breached_email=data.get("breachedEmail"),
        )


@dataclass
class BreachRecord:
    """One breach from the HIBP breached-account API."""

    name: str
    title: str = ""
    domain: str = ""
    breach_date: str = ""  # YYYY-MM-DD
    added_date: str = ""
    modified_date: str = ""
    pwn_count: int = 0
    description: str = ""
    data_classes: List[str] = field(default_factory=list)
    is_verified: bool = False
    is_fabricated: bool = False
    is_sensitive: bool = False
    is_retired: bool = False
    is_spam_list: bool = False
    is_malware: bool = False

    _API_FIELDS = (
        ("name", "Name"),
        ("title", "Title"),
        ("domain", "Domain"),
        ("breach_date", "BreachDate"),
        ("added_date", "AddedDate"),
        ("modified_date", "ModifiedDate"),
        ("pwn_count", "PwnCount"),
        ("description", "Description"),
        ("data_classes", "DataClasses"),
        ("is_verified", "IsVerified"),
        ("is_fabricated", "IsFabricated"),
        ("is_sensitive", "IsSensitive"),
        ("is_retired", "IsRetired"),
        ("is_spam_list", "IsSpamList"),
        ("is_malware", "IsMalware"),
    )

    @classmethod
    def from_api(cls, data: Dict) -> BreachRecord:
        kwargs = {attr: data[key] for attr, key in cls._API_FIELDS if data.get(key) is not None}
        kwargs.setdefault("name", data.get("Name") or "unknown")
        kwargs["pwn_count"] = int(kwargs.get("pwn_count", 0))
        kwargs["data_classes"] = list(kwargs.get("data_classes", []))
        return cls(**kwargs)

    # Persisted with the same PascalCase keys the API uses
    from_dict = from_api

    def to_dict(self) -> Dict:
        return {key: getattr(self, attr) for attr, key in self._API_FIELDS}

    def breach_datetime(self) -> Optional[datetime]:
        if not self.breach_date:
            return None
        try:
            return _as_utc(datetime.fromisoformat(self.breach_date))
        except ValueError:
            logger.debug("Unparseable breach date %r for %s", self.breach_date, self.name)
            return None

    def occurred_after(self, moment: datetime) -> bool:
        """Relevance rule: the breach happened strictly after *moment*."""
        breached = self.breach_datetime()
        return breached is not None and breached > _as_utc(moment)


@dataclass
class EmailBreachStatus:
    breaches: List[BreachRecord]
    timestamp: float  # epoch ms

    def to_dict(self) -> Dict:
        return {
            "breaches": [b.to_dict() for b in self.breaches],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> EmailBreachStatus:
        return cls(
            breaches=[BreachRecord.from_dict(b) for b in data.get("breaches", [])],
            timestamp=float(data.get("timestamp", 0)),
        )


def relevant_breaches(breaches: List[BreachRecord], modified: datetime) -> List[BreachRecord]:
    return [b for b in breaches if b.occurred_after(modified)]
