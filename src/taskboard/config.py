"""
Settings loaded from environment variables.

All variables share the TASKBOARD_ prefix. Malformed numeric values fall back
to their defaults instead of failing at startup.
"""

import logging
import os
from dataclasses import dataclass

ENV_PREFIX = "TASKBOARD"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

logger = logging.getLogger(__name__)


def _k(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None or value.strip() == "" else value.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid integer for {name}: {raw!r}")
        return default


def _env_level(name: str, default: str) -> str:
    level = _env(name, default).upper()
    if level not in LOG_LEVELS:
        logger.warning(f"Ignoring unknown log level for {name}: {level!r}")
        return default
    return level


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid number for {name}: {raw!r}")
        return default


@dataclass(frozen=True)
class Settings:
    database_path: str = "taskboard.db"
    busy_timeout_ms: int = 5000
    notify_retries: int = 3
    notify_base_delay: float = 0.05
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000
    events_url: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_path=_env(_k("DATABASE_PATH"), cls.database_path),
            busy_timeout_ms=max(0, _env_int(_k("LOCK_TIMEOUT"), cls.busy_timeout_ms)),
            notify_retries=max(1, _env_int(_k("NOTIFY_RETRIES"), cls.notify_retries)),
            notify_base_delay=max(0.0, _env_float(_k("NOTIFY_BASE_DELAY"), cls.notify_base_delay)),
            log_level=_env_level(_k("LOG_LEVEL"), cls.log_level),
            host=_env(_k("HOST"), cls.host),
            port=_env_int(_k("PORT"), cls.port),
            events_url=_env(_k("EVENTS_URL"), cls.events_url),
        )
