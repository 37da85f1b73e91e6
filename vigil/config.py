"""Centralised configuration, KDF profiles, and config.ini I/O."""

from __future__ import annotations

import configparser
import logging
import multiprocessing
import os
import secrets
import tempfile
import time
from pathlib import Path

import psutil

logger = logging.getLogger("vigil.config")


# ============================================================================
#  KDF profiles  (compat / balanced / high)
# ============================================================================
KDF_PROFILES = {
    "compat": {
        "time_cost": 3,
        "memory_cost": 65_536,  # 64 MiB
        "parallelism": 2,
    },
    "balanced": {
        "time_cost": 4,
        "memory_cost": 262_144,  # 256 MiB
        "parallelism": min(4, multiprocessing.cpu_count() or 2),
    },
    "high": {
        "time_cost": 6,
        "memory_cost": 524_288,  # 512 MiB
        "parallelism": min(8, multiprocessing.cpu_count() or 2),
    },
}

# Security floor: never go below the compat profile
_KDF_FLOOR = KDF_PROFILES["compat"]

API_KEY_ENV = "VIGIL_HIBP_API_KEY"


# ============================================================================
#  Config class
# ============================================================================
class Config:
    """Centralised settings."""

    # Containers
    MAX_CONTAINER_SIZE = 64 * 1024 * 1024  # 64 MB
    DEFAULT_CONTAINER_NAME = "Vigil Database"

    # Breach intelligence
    CACHE_DURATION_MS = 24 * 60 * 60 * 1000  # 24 h
    PASSWORD_REQUEST_INTERVAL = 1.5  # seconds
    EMAIL_REQUEST_INTERVAL = 6.0  # seconds
    WEAK_SCORE_THRESHOLD = 3
    HTTP_TIMEOUT = 10.0  # seconds

    PWNED_PASSWORDS_URL = "https://api.pwnedpasswords.com"
    HIBP_API_URL = "https://haveibeenpwned.com/api/v3"
    USER_AGENT = "Vigil Password Manager"

    # Notifications
    COMPLETION_TOAST_MS = 10_000
    ERROR_TOAST_MS = 3_000

    # ------------------------------------------------------------------
    #  KDF helpers
    # ------------------------------------------------------------------
    @staticmethod
    def get_kdf_params(data_dir: Path | None = None) -> dict:
        """Read KDF params from config.ini, enforcing a security floor."""
        cfg = _read_config(data_dir)
        try:
            if cfg.has_section("kdf"):
                pars = {
                    "time_cost": cfg.getint(
                        "kdf", "time_cost", fallback=_KDF_FLOOR["time_cost"]
                    ),
                    "memory_cost": cfg.getint(
                        "kdf", "memory_cost", fallback=_KDF_FLOOR["memory_cost"]
                    ),
                    "parallelism": cfg.getint(
                        "kdf", "parallelism", fallback=_KDF_FLOOR["parallelism"]
                    ),
                }
                # Enforce security floor (compat profile)
                pars["memory_cost"] = max(pars["memory_cost"], _KDF_FLOOR["memory_cost"])
                pars["time_cost"] = max(pars["time_cost"], _KDF_FLOOR["time_cost"])
                pars["parallelism"] = max(pars["parallelism"], 2)
                return pars
        except ValueError as exc:
            logger.warning("Invalid [kdf] section, using floor: %s", exc)
        return dict(_KDF_FLOOR)

    @staticmethod
    def calibrate_kdf(data_dir: Path) -> None:
        """Select the highest KDF profile the hardware supports."""
        import argon2
        import argon2.low_level as low

        ram_total = psutil.virtual_memory().total
        ram_cap = ram_total * 3 // 4
        cores = multiprocessing.cpu_count() or 2

        salt = secrets.token_bytes(16)
        pw = b"benchmark"

        best_profile = "compat"
        best_params = dict(KDF_PROFILES["compat"])

        for name in ("compat", "balanced", "high"):
            profile = KDF_PROFILES[name]
            mem_bytes = profile["memory_cost"] * 1024
            if mem_bytes > ram_cap:
                logger.info("Skipping profile '%s': exceeds RAM cap", name)
                continue

            par = min(profile["parallelism"], cores)
            try:
                t0 = time.perf_counter()
                low.hash_secret_raw(
                    pw,
                    salt,
                    time_cost=profile["time_cost"],
                    memory_cost=profile["memory_cost"],
                    parallelism=par,
                    hash_len=32,
                    type=argon2.Type.ID,
                )
                dt = (time.perf_counter() - t0) * 1_000
                best_profile = name
                best_params = {
                    "time_cost": profile["time_cost"],
                    "memory_cost": profile["memory_cost"],
                    "parallelism": par,
                }
                logger.info("Profile '%s' OK (%.0f ms)", name, dt)
            except (MemoryError, OSError):
                logger.warning("Profile '%s' failed (not enough RAM)", name)
                break

        cfg = _read_config(data_dir)
        cfg["kdf"] = {key: str(value) for key, value in best_params.items()}
        _write_config(data_dir, cfg)
        logger.info("KDF calibrated: selected profile '%s'", best_profile)

    @staticmethod
    def config_exists(data_dir: Path) -> bool:
        return (data_dir / "config.ini").exists()

    # ------------------------------------------------------------------
    #  Breach-lookup settings
    # ------------------------------------------------------------------
    @staticmethod
    def get_hibp_api_key(data_dir: Path | None = None) -> str | None:
        """Return the HIBP API key; the environment overrides config.ini."""
        env_key = os.environ.get(API_KEY_ENV)
        if env_key:
            return env_key.strip()
        cfg = _read_config(data_dir)
        key = cfg.get("hibp", "api_key", fallback="").strip()
        return key or None

    @staticmethod
    def set_hibp_api_key(api_key: str | None, data_dir: Path | None = None) -> None:
        if data_dir is None:
            from vigil.paths import get_data_dir

            data_dir = get_data_dir()
        cfg = _read_config(data_dir)
        if not cfg.has_section("hibp"):
            cfg.add_section("hibp")
        if api_key:
            cfg.set("hibp", "api_key", api_key.strip())
        else:
            cfg.remove_option("hibp", "api_key")
        _write_config(data_dir, cfg)
        logger.info("HIBP API key %s", "stored" if api_key else "removed")

    @staticmethod
    def get_breach_settings(data_dir: Path | None = None) -> dict:
        """Rate-limit and threshold settings, with [breach] overrides."""
        settings = {
            "password_interval": Config.PASSWORD_REQUEST_INTERVAL,
            "email_interval": Config.EMAIL_REQUEST_INTERVAL,
            "weak_score_threshold": Config.WEAK_SCORE_THRESHOLD,
        }
        cfg = _read_config(data_dir)
        if not cfg.has_section("breach"):
            return settings
        try:
            # Intervals can be raised but never lowered below the service floor
            settings["password_interval"] = max(
                cfg.getfloat("breach", "password_interval", fallback=settings["password_interval"]),
                Config.PASSWORD_REQUEST_INTERVAL,
            )
            settings["email_interval"] = max(
                cfg.getfloat("breach", "email_interval", fallback=settings["email_interval"]),
                Config.EMAIL_REQUEST_INTERVAL,
            )
            threshold = cfg.getint(
                "breach", "weak_score_threshold", fallback=settings["weak_score_threshold"]
            )
            settings["weak_score_threshold"] = min(max(threshold, 0), 4)
        except ValueError as exc:
            logger.warning("Invalid [breach] section ignored: %s", exc)
        return settings


# ============================================================================
#  config.ini reader / atomic writer
# ============================================================================
def _read_config(data_dir: Path | None) -> configparser.ConfigParser:
    if data_dir is None:
        from vigil.paths import get_data_dir

        data_dir = get_data_dir()

    cfg = configparser.ConfigParser()
    config_path = data_dir / "config.ini"
    if config_path.exists():
        try:
            cfg.read(config_path, encoding="utf-8")
        except configparser.Error as exc:
            logger.error("Unreadable config.ini: %s", exc)
    return cfg


def _write_config(data_dir: Path, cfg: configparser.ConfigParser) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    if os.name != "nt":
        try:
            os.chmod(data_dir, 0o700)
        except OSError:
            pass

    config_path = data_dir / "config.ini"
    fd = tempfile.NamedTemporaryFile(
        mode="w", dir=data_dir, prefix="cfg_tmp_", suffix=".ini", delete=False
    )
    try:
        cfg.write(fd)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        tmp = Path(fd.name)
        if os.name != "nt":
            os.chmod(tmp, 0o600)
        tmp.replace(config_path)
    except BaseException:
        fd.close()
        try:
            Path(fd.name).unlink(missing_ok=True)
        except OSError:
            pass
        raise
