"""Tests for BreachOrchestrator: caching, rate floors, progress, scans and reports."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from vigil.breach.models import BreachRecord, PasswordStrength
from vigil.breach.orchestrator import BreachOrchestrator, is_valid_email
from vigil.breach.progress import EMAIL, PASSWORD, ProgressReporter
from vigil.errors import ScanCancelled, ScanInProgress
from vigil.tree.models import Group
from vigil.util.cancellation import CancellationToken

from tests.conftest import (
    CONTAINER_KEY,
    FakeHibp,
    fixed_strength,
    hex_id,
    make_entry,
    pwned_status,
)

MODIFIED = datetime(2020, 6, 1, tzinfo=timezone.utc)


def _root(*entries, groups=None):
    return Group(id=hex_id(0xF0), name="All Entries", entries=list(entries), groups=groups or [])


def _breach(name, date):
    return BreachRecord(name=name, title=name, breach_date=date)


class TestIsValidEmail:
    def test_valid(self):
        assert is_valid_email("alice@example.com")
        assert is_valid_email(" alice@example.com ")

    def test_invalid(self):
        assert not is_valid_email("")
        assert not is_valid_email(None)
        assert not is_valid_email("alice")
        assert not is_valid_email("alice@localhost")
        assert not is_valid_email("a b@example.com")


class TestCheckEntry:
    @pytest.mark.asyncio
    async def test_cached_pwned_needs_no_network(self, orchestrator, status_cache, fake_hibp, sleep):
        entry = make_entry(hex_id(1), password="hunter2")
        status_cache.set(CONTAINER_KEY, entry.id, pwned_status(9))
        assert await orchestrator.check_entry(CONTAINER_KEY, entry) is True
        assert fake_hibp.password_calls == []
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_second_call_within_ttl_is_cached(self, orchestrator, fake_hibp):
        fake_hibp.pwned = {"hunter2": 17}
        entry = make_entry(hex_id(1), password="hunter2")
        assert await orchestrator.check_entry(CONTAINER_KEY, entry) is True
        assert await orchestrator.check_entry(CONTAINER_KEY, entry) is True
        assert fake_hibp.password_calls == ["hunter2"]

    @pytest.mark.asyncio
    async def test_result_is_cached_with_strength(self, orchestrator, status_cache, fake_hibp):
        fake_hibp.pwned = {"short": 3}
        entry = make_entry(hex_id(1), password="short")
        await orchestrator.check_entry(CONTAINER_KEY, entry)
        status = status_cache.get(CONTAINER_KEY, entry.id)
        assert status.is_pwned
        assert status.count == 3
        assert status.strength.score == 1
        assert status.breached_email is None

    @pytest.mark.asyncio
    async def test_known_email_breach_recorded(self, orchestrator, status_cache, email_cache):
        entry = make_entry(hex_id(1), password="x", username="a@x.com", modified=MODIFIED)
        email_cache.set(CONTAINER_KEY, "other", "a@x.com", [_breach("Later", "2021-01-01")])
        await orchestrator.check_entry(CONTAINER_KEY, entry)
        assert status_cache.get(CONTAINER_KEY, entry.id).breached_email is True

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self, orchestrator, status_cache, fake_hibp):
        fake_hibp.fail_for = {"pw"}
        entry = make_entry(hex_id(1), password="pw")
        with pytest.raises(RuntimeError):
            await orchestrator.check_entry(CONTAINER_KEY, entry)
        assert status_cache.get(CONTAINER_KEY, entry.id) is None

    @pytest.mark.asyncio
    async def test_rate_floor_between_lookups(self, orchestrator, sleep):
        entries = [make_entry(hex_id(i), password=f"pw{i}") for i in range(1, 5)]
        for entry in entries:
            await orchestrator.check_entry(CONTAINER_KEY, entry)
        assert sleep.calls == [1.5, 1.5, 1.5]
        assert sum(sleep.calls) >= (len(entries) - 1) * 1.5

    @pytest.mark.asyncio
    async def test_no_wait_when_interval_already_elapsed(self, orchestrator, monotonic, sleep):
        await orchestrator.check_entry(CONTAINER_KEY, make_entry(hex_id(1), password="a"))
        monotonic.now += 2.0
        await orchestrator.check_entry(CONTAINER_KEY, make_entry(hex_id(2), password="b"))
        assert sleep.calls == []


class TestCheckEntryEmail:
    @pytest.mark.asyncio
    async def test_shared_email_looked_up_once(self, orchestrator, fake_hibp):
        fake_hibp.breaches = {"a@x.com": [_breach("Adobe", "2013-10-04")]}
        first = make_entry(hex_id(1), username="a@x.com")
        second = make_entry(hex_id(2), username="a@x.com")
        assert len(await orchestrator.check_entry_email(CONTAINER_KEY, first)) == 1
        assert len(await orchestrator.check_entry_email(CONTAINER_KEY, second)) == 1
        assert fake_hibp.email_calls == ["a@x.com"]

    @pytest.mark.asyncio
    async def test_invalid_username_skipped(self, orchestrator, fake_hibp):
        entry = make_entry(hex_id(1), username="alice")
        assert await orchestrator.check_entry_email(CONTAINER_KEY, entry) == []
        assert fake_hibp.email_calls == []

    @pytest.mark.asyncio
    async def test_no_api_key_skips_lookup(self, orchestrator, fake_hibp, sleep):
        fake_hibp.api_key = None
        entries = [make_entry(hex_id(i), username=f"u{i}@x.com") for i in range(1, 4)]
        for entry in entries:
            assert await orchestrator.check_entry_email(CONTAINER_KEY, entry) == []
        assert fake_hibp.email_calls == []
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_email_rate_floor(self, orchestrator, sleep):
        for i in range(1, 4):
            entry = make_entry(hex_id(i), username=f"u{i}@x.com")
            await orchestrator.check_entry_email(CONTAINER_KEY, entry)
        assert sleep.calls == [6.0, 6.0]

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self, orchestrator, email_cache, fake_hibp):
        fake_hibp.fail_for = {"a@x.com"}
        entry = make_entry(hex_id(1), username="a@x.com")
        with pytest.raises(RuntimeError):
            await orchestrator.check_entry_email(CONTAINER_KEY, entry)
        assert email_cache.get_by_email(CONTAINER_KEY, "a@x.com") is None


class TestCheckGroup:
    @pytest.mark.asyncio
    async def test_progress_sequence_with_cached_entry(
        self, orchestrator, status_cache, notifier, fake_hibp
    ):
        cached = make_entry(hex_id(1), password="p1")
        status_cache.set(CONTAINER_KEY, cached.id, pwned_status(0))
        tree = _root(
            cached,
            make_entry(hex_id(2), password="p2"),
            groups=[Group(id=hex_id(0xF1), name="Sub", entries=[make_entry(hex_id(3), password="p3")])],
        )

        assert await orchestrator.check_group(CONTAINER_KEY, tree, root_scan=True) is False

        assert notifier.messages == [
            "Starting breach check: passwords 0/3",
            "Checking for breaches: passwords 1/3",
            "Checking for breaches: passwords 2/3",
            "Checking for breaches: passwords 3/3",
            "Completed checking for breaches",
        ]
        assert notifier.events[-1][2:] == ("success", 10_000)
        assert fake_hibp.password_calls == ["p2", "p3"]
        assert not orchestrator.is_scanning(PASSWORD)

    @pytest.mark.asyncio
    async def test_returns_true_when_any_breached(self, orchestrator, fake_hibp):
        fake_hibp.pwned = {"p3": 5}
        tree = _root(
            make_entry(hex_id(1), password="p1"),
            groups=[Group(id=hex_id(0xF1), name="Sub", entries=[make_entry(hex_id(3), password="p3")])],
        )
        assert await orchestrator.check_group(CONTAINER_KEY, tree, root_scan=True) is True

    @pytest.mark.asyncio
    async def test_failed_entry_skipped_and_counted(
        self, orchestrator, status_cache, fake_hibp, notifier
    ):
        fake_hibp.fail_for = {"p2"}
        tree = _root(*(make_entry(hex_id(i), password=f"p{i}") for i in range(1, 4)))

        await orchestrator.check_group(CONTAINER_KEY, tree, root_scan=True)

        assert fake_hibp.password_calls == ["p1", "p2", "p3"]
        assert status_cache.get(CONTAINER_KEY, hex_id(2)) is None
        assert status_cache.get(CONTAINER_KEY, hex_id(3)) is not None
        assert "Checking for breaches: passwords 3/3" in notifier.messages
        assert notifier.messages[-1] == "Completed checking for breaches"

    @pytest.mark.asyncio
    async def test_unsaved_entries_are_checked_separately(
        self, orchestrator, status_cache, fake_hibp, notifier
    ):
        fake_hibp.pwned = {"hunter2": 3}
        weak = make_entry("", password="hunter2")
        strong = make_entry("", password="a-very-strong-unique-pass")

        found = await orchestrator.check_group(CONTAINER_KEY, _root(weak, strong), root_scan=True)

        assert found is True
        assert fake_hibp.password_calls == ["hunter2", "a-very-strong-unique-pass"]
        assert "Checking for breaches: passwords 2/2" in notifier.messages
        assert status_cache.get_all(CONTAINER_KEY) == {}
        assert await orchestrator.check_entry(CONTAINER_KEY, strong) is False

    @pytest.mark.asyncio
    async def test_unsaved_entries_emails_checked_separately(self, orchestrator, fake_hibp, notifier):
        first = make_entry("", username="a@x.com")
        second = make_entry("", username="b@x.com")

        await orchestrator.check_group_emails(CONTAINER_KEY, _root(first, second), root_scan=True)

        assert fake_hibp.email_calls == ["a@x.com", "b@x.com"]
        assert "Checking for breaches: emails 2/2" in notifier.messages

    @pytest.mark.asyncio
    async def test_subgroup_scan_publishes_nothing(self, orchestrator, notifier):
        sub = Group(id=hex_id(0xF1), name="Sub", entries=[make_entry(hex_id(1), password="p")])
        await orchestrator.check_group(CONTAINER_KEY, sub)
        assert notifier.events == []

    @pytest.mark.asyncio
    async def test_legacy_root_detection_by_name(self, orchestrator, notifier):
        tree = _root(make_entry(hex_id(1), password="p"))
        await orchestrator.check_group(CONTAINER_KEY, tree, root_scan=None)
        assert notifier.messages[0] == "Starting breach check: passwords 0/1"

    @pytest.mark.asyncio
    async def test_concurrent_root_scan_rejected(self, status_cache, email_cache, notifier):
        yields = []

        async def yielding_sleep(delay):
            yields.append(delay)
            await asyncio.sleep(0)

        orch = BreachOrchestrator(
            status_cache,
            email_cache,
            FakeHibp(),
            ProgressReporter(notifier),
            sleep=yielding_sleep,
            strength_evaluator=fixed_strength,
        )
        tree = _root(make_entry(hex_id(1), password="a"), make_entry(hex_id(2), password="b"))

        first = asyncio.create_task(orch.check_group(CONTAINER_KEY, tree, root_scan=True))
        await asyncio.sleep(0)
        assert orch.is_scanning(PASSWORD)
        with pytest.raises(ScanInProgress):
            await orch.check_group(CONTAINER_KEY, tree, root_scan=True)
        await first

        assert not orch.is_scanning(PASSWORD)
        assert notifier.messages[-1] == "Completed checking for breaches"

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, orchestrator, fake_hibp, notifier):
        token = CancellationToken()
        token.cancel()
        tree = _root(make_entry(hex_id(1), password="p"))
        with pytest.raises(ScanCancelled):
            await orchestrator.check_group(CONTAINER_KEY, tree, root_scan=True, token=token)
        assert fake_hibp.password_calls == []
        assert notifier.messages[-1] == "Error checking passwords for breaches"
        assert notifier.events[-1][2:] == ("error", 3_000)
        assert not orchestrator.is_scanning(PASSWORD)

    @pytest.mark.asyncio
    async def test_cancel_during_rate_limit_wait(self, status_cache, email_cache, monotonic):
        token = CancellationToken()

        async def cancelling_sleep(delay):
            monotonic.now += delay
            token.cancel("user")

        hibp = FakeHibp()
        orch = BreachOrchestrator(
            status_cache, email_cache, hibp, clock=monotonic, sleep=cancelling_sleep,
            strength_evaluator=fixed_strength,
        )
        tree = _root(*(make_entry(hex_id(i), password=f"p{i}") for i in range(1, 4)))
        with pytest.raises(ScanCancelled):
            await orch.check_group(CONTAINER_KEY, tree, root_scan=True, token=token)
        assert hibp.password_calls == ["p1"]
        assert status_cache.get(CONTAINER_KEY, hex_id(2)) is None

    @pytest.mark.asyncio
    async def test_rescan_uses_cache(self, orchestrator, fake_hibp, sleep):
        tree = _root(*(make_entry(hex_id(i), password=f"p{i}") for i in range(1, 4)))
        await orchestrator.check_group(CONTAINER_KEY, tree, root_scan=True)
        calls, sleeps = list(fake_hibp.password_calls), list(sleep.calls)
        await orchestrator.check_group(CONTAINER_KEY, tree, root_scan=True)
        assert fake_hibp.password_calls == calls
        assert sleep.calls == sleeps


class TestCheckGroupEmails:
    @pytest.mark.asyncio
    async def test_only_relevant_breaches_count(self, orchestrator, fake_hibp):
        fake_hibp.breaches = {
            "old@x.com": [_breach("Old", "2019-01-01")],
            "new@x.com": [_breach("New", "2021-01-01")],
        }
        old = make_entry(hex_id(1), username="old@x.com", modified=MODIFIED)
        assert await orchestrator.check_group_emails(CONTAINER_KEY, _root(old), root_scan=True) is False

        new = make_entry(hex_id(2), username="new@x.com", modified=MODIFIED)
        assert await orchestrator.check_group_emails(
            CONTAINER_KEY, _root(old, new), root_scan=True
        ) is True

    @pytest.mark.asyncio
    async def test_shared_email_progress(self, orchestrator, fake_hibp, notifier):
        tree = _root(
            make_entry(hex_id(1), username="a@x.com"),
            make_entry(hex_id(2), username="a@x.com"),
            make_entry(hex_id(3), username="no-email"),
        )
        await orchestrator.check_group_emails(CONTAINER_KEY, tree, root_scan=True)
        assert fake_hibp.email_calls == ["a@x.com"]
        assert "Checking for breaches: emails 3/3" in notifier.messages
        assert not orchestrator.is_scanning(EMAIL)


class TestReports:
    def test_breached_and_weak(self, orchestrator, status_cache):
        breached = make_entry(hex_id(1))
        weak = make_entry(hex_id(2))
        unchecked = make_entry(hex_id(3))
        status_cache.set(CONTAINER_KEY, breached.id, pwned_status(4, score=4))
        status_cache.set(CONTAINER_KEY, weak.id, pwned_status(0, score=2))
        tree = _root(breached, weak, unchecked)

        report = orchestrator.find_breached_and_weak_entries(tree, CONTAINER_KEY)

        assert report.breached == [breached]
        assert report.weak == [weak]
        assert report.has_checked_entries
        assert not report.all_entries_cached
        assert orchestrator.needs_scan(tree, CONTAINER_KEY)

    def test_nothing_checked(self, orchestrator):
        report = orchestrator.find_breached_and_weak_entries(_root(make_entry(hex_id(1))), CONTAINER_KEY)
        assert not report.has_checked_entries
        assert not report.all_entries_cached

    def test_all_cached(self, orchestrator, status_cache):
        entry = make_entry(hex_id(1))
        status_cache.set(CONTAINER_KEY, entry.id, pwned_status(0))
        report = orchestrator.find_breached_and_weak_entries(_root(entry), CONTAINER_KEY)
        assert report.all_entries_cached
        assert report.breached == [] and report.weak == []
        assert not orchestrator.needs_scan(_root(entry), CONTAINER_KEY)

    def test_breached_emails_filters_by_relevance(self, orchestrator, email_cache):
        entry = make_entry(hex_id(1), username="a@x.com", modified=MODIFIED)
        unchecked = make_entry(hex_id(2), username="b@x.com")
        no_email = make_entry(hex_id(3), username="bob")
        email_cache.set(
            CONTAINER_KEY, entry.id, "a@x.com",
            [_breach("Old", "2019-12-31"), _breach("New", "2020-06-02")],
        )

        report = orchestrator.find_breached_emails(_root(entry, unchecked, no_email), CONTAINER_KEY)

        assert len(report.breached) == 1
        found, relevant = report.breached[0]
        assert found is entry
        assert [b.name for b in relevant] == ["New"]
        assert report.has_checked_emails
        assert not report.all_emails_cached

    def test_strength_threshold_configurable(self, status_cache, email_cache):
        orch = BreachOrchestrator(status_cache, email_cache, FakeHibp(), weak_score_threshold=4)
        entry = make_entry(hex_id(1))
        status_cache.set(CONTAINER_KEY, entry.id, pwned_status(0, score=3))
        assert orch.find_breached_and_weak_entries(_root(entry), CONTAINER_KEY).weak == [entry]

    def test_clear_cache(self, orchestrator, status_cache, email_cache):
        status_cache.set(CONTAINER_KEY, hex_id(1), pwned_status())
        email_cache.set(CONTAINER_KEY, hex_id(1), "a@x.com", [])
        orchestrator.clear_cache(CONTAINER_KEY)
        assert orchestrator.get_entry_breach_status(CONTAINER_KEY, hex_id(1)) is None
        assert email_cache.get_by_email(CONTAINER_KEY, "a@x.com") is None


def test_from_config_reads_breach_settings(tmp_path):
    (tmp_path / "config.ini").write_text("[breach]\nemail_interval = 8\nweak_score_threshold = 2\n")
    client = FakeHibp()
    orch = BreachOrchestrator.from_config(tmp_path, client=client)
    assert orch.client is client
    assert orch.password_gate.min_interval == 1.5
    assert orch.email_gate.min_interval == 8.0
    assert orch.weak_score_threshold == 2
    assert orch.status_cache.path.parent == orch.email_cache.path.parent
    assert not orch.is_scanning(EMAIL)


def test_strength_object_round_trips_through_cache(status_cache):
    status = pwned_status(1)
    status.strength = PasswordStrength(score=2, warning="common", suggestions=["add words"])
    status_cache.set(CONTAINER_KEY, "e", status)
    got = status_cache.get(CONTAINER_KEY, "e").strength
    assert (got.score, got.warning, got.suggestions) == (2, "common", ["add words"])
