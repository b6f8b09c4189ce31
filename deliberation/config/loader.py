from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

_DEFAULT_REALTIME = {
    "settle_resync_seconds": 2.0,
    "max_pending_events": 256,
    "credential_expire_minutes": 5,
}
_DEFAULT_BALLOT_POLICY = {
    "strict_quota": False,
    "lock_on_submit": False,
}
_DEFAULT_ACCESS_TOKEN_EXPIRE_MINUTES = 30


def load_config() -> Dict[str, Any]:
    """Load the application config from YAML, returning an empty mapping on error."""
    try:
        with _CONFIG_PATH.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
            if isinstance(data, dict):
                return data
            logging.warning(
                "Config file %s is not a mapping; using defaults.", _CONFIG_PATH
            )
            return {}
    except FileNotFoundError:
        logging.warning(
            "Configuration file %s not found; using defaults.", _CONFIG_PATH
        )
        return {}
    except Exception as exc:  # noqa: BLE001
        logging.error("Failed to load configuration from %s: %s", _CONFIG_PATH, exc)
        return {}


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        candidate = int(value)
        return candidate if candidate > 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _coerce_non_negative_float(value: Any, fallback: float) -> float:
    try:
        candidate = float(value)
    except Exception:  # noqa: BLE001
        return fallback
    return candidate if candidate >= 0 else fallback


def _coerce_bool(value: Any, fallback: bool) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def get_database_url(default: str) -> str:
    override = os.getenv("DELIBERATION_DATABASE_URL")
    if override:
        return override
    config = load_config()
    url = config.get("database_url")
    return str(url) if url else default


def get_realtime_settings() -> Dict[str, Any]:
    """Return realtime reconciliation settings sourced from config with safe defaults."""
    config = load_config()
    section = config.get("realtime") or {}
    defaults = dict(_DEFAULT_REALTIME)
    return {
        "settle_resync_seconds": _coerce_non_negative_float(
            section.get("settle_resync_seconds"),
            defaults["settle_resync_seconds"],
        ),
        "max_pending_events": _coerce_positive_int(
            section.get("max_pending_events"), defaults["max_pending_events"]
        ),
        "credential_expire_minutes": _coerce_positive_int(
            section.get("credential_expire_minutes"),
            defaults["credential_expire_minutes"],
        ),
    }


def get_ballot_policy() -> Dict[str, bool]:
    """Return the Phase 2 ballot policy switches."""
    config = load_config()
    section = config.get("ballots") or {}
    defaults = dict(_DEFAULT_BALLOT_POLICY)
    return {
        "strict_quota": _coerce_bool(
            section.get("strict_quota"), defaults["strict_quota"]
        ),
        "lock_on_submit": _coerce_bool(
            section.get("lock_on_submit"), defaults["lock_on_submit"]
        ),
    }


def get_access_token_expire_minutes() -> int:
    """
    Return the access token lifetime.

    Priority:
    1) config.yaml auth.access_token_expire_minutes
    2) DELIBERATION_ACCESS_TOKEN_EXPIRE_MINUTES env var
    3) default 30
    """
    config = load_config()
    section = config.get("auth") or {}
    value = _coerce_positive_int(section.get("access_token_expire_minutes"), 0)
    if value:
        return value
    return _coerce_positive_int(
        os.getenv("DELIBERATION_ACCESS_TOKEN_EXPIRE_MINUTES"),
        _DEFAULT_ACCESS_TOKEN_EXPIRE_MINUTES,
    )


_DEFAULT_LOGGING = {
    "directory": "logs",
    "level": "INFO",
    "max_bytes": 5 * 1024 * 1024,
    "backup_count": 3,
}


def get_logging_settings() -> Dict[str, Any]:
    """
    Return log file settings.

    ``LOG_MAX_BYTES``, ``LOG_BACKUP_COUNT`` and ``DELIBERATION_LOG_DIR`` override
    the ``logging`` section of config.yaml.
    """
    config = load_config()
    section = config.get("logging") or {}
    defaults = dict(_DEFAULT_LOGGING)
    level = str(section.get("level") or defaults["level"]).upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        level = defaults["level"]
    max_bytes = _coerce_positive_int(section.get("max_bytes"), defaults["max_bytes"])
    backup_count = _coerce_positive_int(
        section.get("backup_count"), defaults["backup_count"]
    )
    return {
        "directory": os.getenv("DELIBERATION_LOG_DIR")
        or str(section.get("directory") or defaults["directory"]),
        "level": level,
        "max_bytes": _coerce_positive_int(os.getenv("LOG_MAX_BYTES"), max_bytes),
        "backup_count": _coerce_positive_int(os.getenv("LOG_BACKUP_COUNT"), backup_count),
    }
