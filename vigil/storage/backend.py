"""StorageBackend: atomic writes with backup, file locking and permissions."""

from __future__ import annotations

import json
import logging
import os
import platform
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any

from vigil.config import Config
from vigil.crypto.formats import is_container

logger = logging.getLogger("vigil.storage")


class StorageBackend:
    """Container file I/O with atomic writes, backup, and cross-platform locking."""

    def __init__(self, path: Path, lock: bool = True):
        self.path = Path(path)
        self.backup_path = self.path.parent / (self.path.name + ".backup")
        self.lock_path = self.path.parent / (self.path.name + ".lock")
        self._lock_file = None

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if lock:
            self._acquire_lock()

    # -- locking ------------------------------------------------------------
    def _acquire_lock(self) -> None:
        try:
            self.lock_path.touch(mode=0o600, exist_ok=True)
            self._lock_file = open(self.lock_path, "r+b")
            if platform.system() != "Windows":
                import fcntl

                fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if self._lock_file is not None:
                try:
                    self._lock_file.close()
                except OSError:
                    pass
                self._lock_file = None
            raise RuntimeError("Container is already in use by another process") from exc

    def release(self) -> None:
        if self._lock_file:
            try:
                self._lock_file.close()
            except OSError:
                pass
            finally:
                self._lock_file = None
            try:
                self.lock_path.unlink()
            except OSError:
                pass

    # -- read / write -------------------------------------------------------
    def write_atomic(self, data: bytes) -> None:
        # 1. Back up current file
        if self.path.exists():
            shutil.copy2(self.path, self.backup_path)
            _secure_permissions(self.backup_path)

        # 2. Temp file + fsync + atomic rename
        _write_bytes_atomic(self.path, data, prefix="vg_tmp_")

        # 3. Cleanup orphaned temps
        self._cleanup_temp_files()
        logger.info("Container saved to %s", self.path.name)

    def read(self) -> bytes:
        if not self.path.exists():
            raise FileNotFoundError(f"Container not found: {self.path}")

        size = self.path.stat().st_size
        if size > Config.MAX_CONTAINER_SIZE:
            raise ValueError(
                f"Container too large: {size} bytes (max {Config.MAX_CONTAINER_SIZE})"
            )

        if platform.system() != "Windows":
            st = self.path.stat()
            if st.st_mode & 0o077:
                logger.warning("Container permissions too open, fixing...")
                os.chmod(self.path, 0o600)

        return self.path.read_bytes()

    def exists(self) -> bool:
        return self.path.exists()

    # -- backup / restore ---------------------------------------------------
    def restore_backup(self) -> bool:
        if self.verify_backup_integrity():
            shutil.copy2(self.backup_path, self.path)
            logger.info("Container restored from backup")
            return True
        return False

    def verify_backup_integrity(self) -> bool:
        if not self.backup_path.exists():
            return False
        try:
            return is_container(self.backup_path.read_bytes())
        except OSError as exc:
            logger.error("Backup unreadable: %s", exc)
            return False

    def _cleanup_temp_files(self) -> None:
        for tmp in self.path.parent.glob("vg_tmp_*"):
            try:
                if time.time() - tmp.stat().st_mtime > 3600:
                    tmp.unlink()
            except OSError:
                pass

    # -- lifecycle ----------------------------------------------------------
    def __del__(self):
        self.release()


# ============================================================================
#  Module helpers (also used by the breach caches)
# ============================================================================
def _secure_permissions(path: Path) -> None:
    if os.name == "nt":
        return
    try:
        os.chmod(path, 0o600)
    except OSError as exc:
        logger.warning("Error setting permissions on %s: %s", path, exc)


def _write_bytes_atomic(path: Path, data: bytes, prefix: str = "tmp_") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    old_umask = None
    try:
        if os.name != "nt":
            old_umask = os.umask(0o077)
        with tempfile.NamedTemporaryFile(
            mode="wb", dir=path.parent, prefix=prefix, suffix=".dat", delete=False
        ) as tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
            temp_path = Path(tmp.name)
    finally:
        if old_umask is not None:
            os.umask(old_umask)

    _secure_permissions(temp_path)
    try:
        temp_path.replace(path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    _secure_permissions(path)


def write_json_atomic(path: Path, document: Any) -> None:
    """Persist *document* as JSON with the same atomic-rename discipline."""
    _write_bytes_atomic(path, json.dumps(document).encode("utf-8"), prefix="json_tmp_")


def read_json(path: Path, default: Any = None) -> Any:
    """Load a JSON document; a missing or corrupt file yields *default*."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Discarding unreadable store %s: %s", path.name, exc)
        return default
