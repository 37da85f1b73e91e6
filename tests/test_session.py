"""Tests for ContainerSession: open/create, durable saves and the fallback path."""

from __future__ import annotations

import pytest

from vigil.container.session import ContainerSession
from vigil.errors import SaveError
from vigil.paths import load_last_container_path
from vigil.storage.backend import StorageBackend
from vigil.tree.models import Entry
from vigil.tree.sync import CredentialTreeSynchronizer as Sync

from tests.conftest import COMPAT_KDF

PASSWORD_TEXT = "MyStr0ng!Pass#99"


@pytest.fixture
def data_dir(tmp_path):
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture
def session(tmp_path, data_dir):
    s = ContainerSession.create(
        tmp_path / "vaults" / "personal.vgl",
        PASSWORD_TEXT,
        name="Personal",
        data_dir=data_dir,
        kdf_params=COMPAT_KDF,
    )
    yield s
    s.close()


def _add_entry(session, title="mail", password="hunter2"):
    entry = Entry.new()
    entry.title = title
    entry.password = password
    Sync.save_entry(session.tree, entry, session.tree.id, is_new=True)
    return entry


class TestOpen:
    def test_create_writes_file(self, session):
        assert session.path.exists()
        assert session.tree.name == "All Entries"
        assert session.container.root.name == "Personal"

    def test_reopen_sees_saved_edits(self, session, data_dir):
        entry = _add_entry(session)
        session.save()
        path = session.path
        session.close()

        reopened = ContainerSession.open(path, PASSWORD_TEXT, data_dir=data_dir)
        try:
            assert [e.title for e in reopened.tree.entries] == ["mail"]
            assert reopened.tree.entries[0].id == entry.id
            assert reopened.tree.entries[0].password_text() == "hunter2"
            assert load_last_container_path(data_dir) == path
        finally:
            reopened.close()

    def test_wrong_password_releases_lock(self, session, data_dir):
        path = session.path
        session.close()
        with pytest.raises(ValueError):
            ContainerSession.open(path, "nope", data_dir=data_dir)
        StorageBackend(path).release()

    def test_container_key_is_resolved_path(self, session):
        assert session.container_key == str(session.path.resolve())


class TestSave:
    def test_unsaved_edits_discarded_by_reload(self, session):
        _add_entry(session)
        assert session.reload_tree().entries == []

    def test_fallback_on_primary_failure(self, session, data_dir, monkeypatch):
        primary = session.path
        original = StorageBackend.write_atomic

        def failing(self, data):
            if self.path == primary:
                raise OSError("disk full")
            return original(self, data)

        monkeypatch.setattr(StorageBackend, "write_atomic", failing)
        _add_entry(session)

        written = session.save()

        assert written == data_dir / "recovered" / "personal.vgl"
        assert written.exists()
        assert session.path == written
        assert load_last_container_path(data_dir) == written

    def test_explicit_fallback_path(self, session, tmp_path, monkeypatch):
        primary = session.path
        original = StorageBackend.write_atomic

        def failing(self, data):
            if self.path == primary:
                raise OSError("read-only")
            return original(self, data)

        monkeypatch.setattr(StorageBackend, "write_atomic", failing)
        target = tmp_path / "elsewhere" / "copy.vgl"
        assert session.save(fallback_path=target) == target

    def test_both_destinations_fail(self, session, monkeypatch):
        def failing(self, data):
            raise OSError("disk full")

        monkeypatch.setattr(StorageBackend, "write_atomic", failing)
        entry = _add_entry(session)

        with pytest.raises(SaveError) as exc_info:
            session.save()

        assert len(exc_info.value.attempts) == 2
        assert session.tree.entries == [entry]
