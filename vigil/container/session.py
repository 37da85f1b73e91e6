"""ContainerSession: an open container with its editable tree and durable saves."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

from vigil.config import Config
from vigil.container.database import Container, Credentials
from vigil.errors import SaveError
from vigil.paths import get_data_dir, get_recovery_dir, save_last_container_path
from vigil.storage.backend import StorageBackend
from vigil.tree.models import Group
from vigil.tree.sync import CredentialTreeSynchronizer

logger = logging.getLogger("vigil.session")

DEFAULT_FILE_NAME = "database.vgl"


class ContainerSession:
    """Host-side glue: load a container, expose its tree, persist edits.

    Saving first reconciles the tree into the live graph, then writes the
    encrypted bytes. After a failed write every edit stays in memory for a retry.
    """

    def __init__(
        self,
        container: Container,
        path: Optional[Path],
        data_dir: Optional[Path] = None,
        storage: Optional[StorageBackend] = None,
    ):
        self.container = container
        self.path = Path(path) if path is not None else None
        self.data_dir = data_dir or get_data_dir()
        self.storage = storage
        self.tree: Group = CredentialTreeSynchronizer.import_tree(container.root)

    # ------------------------------------------------------------------
    #  Open / create
    # ------------------------------------------------------------------
    @classmethod
    def open(
        cls,
        path: Union[str, Path],
        password: Union[str, bytes],
        data_dir: Optional[Path] = None,
    ) -> ContainerSession:
        path = Path(path)
        storage = StorageBackend(path)
        credentials = Credentials(password)
        try:
            container = Container.load(storage.read(), credentials)
        except BaseException:
            storage.release()
            raise
        finally:
            credentials.clear()

        session = cls(container, path, data_dir, storage)
        save_last_container_path(session.data_dir, path)
        return session

    @classmethod
    def create(
        cls,
        path: Union[str, Path],
        password: Union[str, bytes],
        name: str = Config.DEFAULT_CONTAINER_NAME,
        data_dir: Optional[Path] = None,
        kdf_params: dict | None = None,
    ) -> ContainerSession:
        credentials = Credentials(password)
        try:
            container = Container.create(credentials, name=name, kdf_params=kdf_params)
        finally:
            credentials.clear()
        session = cls(container, Path(path), data_dir, StorageBackend(Path(path)))
        session.save()
        return session

    # ------------------------------------------------------------------
    #  Save with fallback destination
    # ------------------------------------------------------------------
    def save(self, fallback_path: Optional[Path] = None) -> Path:
        """Persist the tree; returns the path actually written.

        Raises SaveError when both the primary and the fallback
        destination fail.
        """
        CredentialTreeSynchronizer.export_edits(self.tree, self.container.root, self.container)
        data = self.container.save()

        attempts = []
        if self.path is not None:
            try:
                self._primary_storage().write_atomic(data)
                return self.path
            except OSError as exc:
                logger.error("Saving to %s failed: %s", self.path, exc)
                attempts.append((self.path, str(exc)))

        if fallback_path is None:
            file_name = self.path.name if self.path is not None else DEFAULT_FILE_NAME
            fallback_path = get_recovery_dir(self.data_dir) / file_name

        try:
            StorageBackend(fallback_path, lock=False).write_atomic(data)
        except OSError as exc:
            logger.error("Saving to fallback %s failed: %s", fallback_path, exc)
            attempts.append((fallback_path, str(exc)))
            raise SaveError("Failed to save database", attempts) from exc

        logger.warning("Container saved to fallback location %s", fallback_path)
        self._switch_path(Path(fallback_path))
        return self.path

    def _primary_storage(self) -> StorageBackend:
        if self.storage is not None and self.storage.path == self.path:
            return self.storage
        return StorageBackend(self.path, lock=False)

    def _switch_path(self, new_path: Path) -> None:
        if self.storage is not None:
            self.storage.release()
            self.storage = None
        self.path = new_path
        try:
            self.storage = StorageBackend(new_path)
        except RuntimeError as exc:
            logger.warning("Could not lock %s: %s", new_path, exc)
        save_last_container_path(self.data_dir, new_path)

    # ------------------------------------------------------------------
    def reload_tree(self) -> Group:
        """Discard unsaved tree edits and re-import from the live graph."""
        self.tree = CredentialTreeSynchronizer.import_tree(self.container.root)
        return self.tree

    @property
    def container_key(self) -> str:
        """Identity used to key the breach caches."""
        return str(self.path.resolve()) if self.path is not None else self.container.name

    def close(self) -> None:
        try:
            self.container.close()
        finally:
            if self.storage is not None:
                self.storage.release()
                self.storage = None
