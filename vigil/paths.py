"""Cross-platform directory resolution and well-known file locations."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import platformdirs

logger = logging.getLogger("vigil.paths")

_APP_NAME = "Vigil"
_APP_AUTHOR = "Vigil"


def get_data_dir() -> Path:
    """Return the platform-appropriate data directory (XDG on Linux)."""
    return Path(platformdirs.user_data_dir(_APP_NAME, _APP_AUTHOR))


# -- last opened container ----------------------------------------------------
def save_last_container_path(data_dir: Path, container_path: Path) -> bool:
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        get_last_container_file(data_dir).write_text(
            json.dumps({"path": str(container_path)}), encoding="utf-8"
        )
        return True
    except OSError as exc:
        logger.error("Failed to save last container path: %s", exc)
        return False


def load_last_container_path(data_dir: Path) -> Path | None:
    """Return the last opened container, or None if it no longer exists."""
    marker = get_last_container_file(data_dir)
    if not marker.exists():
        return None
    try:
        stored = json.loads(marker.read_text(encoding="utf-8"))
        path = Path(stored["path"])
    except (OSError, ValueError, KeyError, TypeError) as exc:
        logger.error("Failed to load last container path: %s", exc)
        return None
    return path if path.exists() else None


# -- path helpers -----------------------------------------------------------
def get_status_cache_path(data_dir: Path) -> Path:
    return data_dir / "breach_status_store.json"


def get_email_cache_path(data_dir: Path) -> Path:
    return data_dir / "email_breach_status_store.json"


def get_last_container_file(data_dir: Path) -> Path:
    return data_dir / "last_database.json"


def get_recovery_dir(data_dir: Path) -> Path:
    return data_dir / "recovered"


def get_log_path(data_dir: Path) -> Path:
    return data_dir / "vigil.log"


def get_config_path(data_dir: Path) -> Path:
    return data_dir / "config.ini"
