from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("UKF_DB_PATH", "ukfleet.db")
    poll_interval_s: float = _env_float("UKF_POLL_INTERVAL_S", 1.0)
    default_network_driver: str = os.getenv("UKF_DEFAULT_NETWORK_DRIVER", "bridge")
    package_format: str = os.getenv("UKF_PACKAGE_FORMAT", "oci")
    log_level: str = os.getenv("UKF_LOG_LEVEL", "INFO")

    # Drop owned-resource entries whose network/machine no longer exists.
    prune_stale: bool = _env_bool("UKF_PRUNE_STALE", True)

    # Events monitor
    events_pidfile: str = os.getenv(
        "UKF_EVENTS_PIDFILE", os.path.join(os.path.expanduser("~"), ".local", "share", "ukfleet", "events.pid")
    )

    # Status API
    api_host: str = os.getenv("UKF_API_HOST", "127.0.0.1")
    api_port: int = _env_int("UKF_API_PORT", 8000)


settings = Settings()
