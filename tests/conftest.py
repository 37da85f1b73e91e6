"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from vigil.breach.cache import EmailStatusCache, StatusCache
from vigil.breach.hibp import HibpClient
from vigil.breach.models import BreachStatus, PasswordStrength
from vigil.breach.orchestrator import BreachOrchestrator
from vigil.breach.progress import ProgressReporter
from vigil.container.database import Container, Credentials
from vigil.container.models import PASSWORD, TITLE, USERNAME
from vigil.tree.models import Entry, Group

# Compat profile: fast enough for tests, still above the KDF floor
COMPAT_KDF = {"time_cost": 3, "memory_cost": 65_536, "parallelism": 2}

CONTAINER_KEY = "/vaults/personal.vgl"
RANGE_URL = "https://api.pwnedpasswords.com"
API_URL = "https://haveibeenpwned.com/api/v3"

T0_MS = 1_700_000_000_000.0


class FakeClock:
    """Wall clock in epoch milliseconds, advanced by hand."""

    def __init__(self, now: float = T0_MS):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeMonotonic:
    """Monotonic seconds; RecordingSleep advances it."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingSleep:
    def __init__(self, clock: FakeMonotonic):
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        self.clock.now += delay


class RecordingNotifier:
    def __init__(self):
        self.events: list[tuple] = []
        self._next = 0

    def show(self, message, kind="info", duration=0):
        self._next += 1
        self.events.append(("show", message, kind, duration))
        return f"t{self._next}"

    def update(self, toast_id, message, kind="info", duration=0):
        self.events.append(("update", message, kind, duration))

    @property
    def messages(self) -> list[str]:
        return [e[1] for e in self.events]


class FakeHibp:
    """Stand-in lookup client counting every network call."""

    def __init__(self, pwned: dict | None = None, breaches: dict | None = None, api_key="key"):
        self.pwned = pwned or {}
        self.breaches = breaches or {}
        self.api_key = api_key
        self.password_calls: list[str] = []
        self.email_calls: list[str] = []
        self.fail_for: set[str] = set()

    async def is_password_pwned(self, password):
        self.password_calls.append(password)
        if password in self.fail_for:
            raise RuntimeError("network down")
        count = self.pwned.get(password, 0)
        return count > 0, count

    async def check_email_breaches(self, email):
        self.email_calls.append(email)
        if email in self.fail_for:
            raise RuntimeError("network down")
        return list(self.breaches.get(email, []))

    async def aclose(self):
        pass


def fixed_strength(password: str) -> PasswordStrength:
    """Deterministic strength: long passwords are strong."""
    return PasswordStrength(score=4 if len(password) >= 12 else 1)


def make_entry(entry_id: str, title: str = "", password: str = "pw", username: str = "",
               modified: datetime | None = None) -> Entry:
    moment = modified or datetime(2020, 1, 1, tzinfo=timezone.utc)
    return Entry(
        id=entry_id,
        title=title or entry_id,
        username=username,
        password=password,
        url="",
        notes="",
        created=moment,
        modified=moment,
    )


def hex_id(n: int) -> str:
    return f"{n:032x}"


def pwned_status(count: int = 10, score: int = 4) -> BreachStatus:
    return BreachStatus(is_pwned=count > 0, count=count,
                        strength=PasswordStrength(score=score), timestamp=0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def sleep(monotonic):
    return RecordingSleep(monotonic)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def status_cache(tmp_path, clock):
    return StatusCache(tmp_path / "breach_status_store.json", clock=clock)


@pytest.fixture
def email_cache(tmp_path, clock):
    return EmailStatusCache(tmp_path / "email_breach_status_store.json", clock=clock)


@pytest.fixture
def fake_hibp():
    return FakeHibp()


@pytest.fixture
def orchestrator(status_cache, email_cache, fake_hibp, notifier, monotonic, sleep):
    return BreachOrchestrator(
        status_cache,
        email_cache,
        fake_hibp,
        ProgressReporter(notifier),
        clock=monotonic,
        sleep=sleep,
        strength_evaluator=fixed_strength,
    )


@pytest.fixture
def hibp_client():
    return HibpClient(api_key="test-key", range_url=RANGE_URL, api_url=API_URL)


@pytest.fixture
def sample_tree():
    """Root with two entries, a subgroup with one entry and an empty subgroup."""
    work = Group(id=hex_id(0x10), name="Work", entries=[make_entry(hex_id(3), "gitlab")])
    empty = Group(id=hex_id(0x11), name="Empty")
    return Group(
        id=hex_id(0x1),
        name="All Entries",
        entries=[make_entry(hex_id(1), "mail"), make_entry(hex_id(2), "bank")],
        groups=[work, empty],
    )


@pytest.fixture
def container():
    """An in-memory container with one group and two entries."""
    c = Container.create(Credentials("MyStr0ng!Pass#99"), name="Test", kdf_params=COMPAT_KDF)
    social = c.create_group(c.root, "Social")
    e1 = c.create_entry(c.root)
    e1.set_field(TITLE, "mail")
    e1.set_field(USERNAME, "alice@example.com")
    e1.set_field(PASSWORD, "hunter2")
    e1.extra["icon"] = 7
    e2 = c.create_entry(social)
    e2.set_field(TITLE, "forum")
    e2.set_field(PASSWORD, "correct horse battery staple")
    yield c
    c.close()
