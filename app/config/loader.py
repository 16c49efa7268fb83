from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

_DEFAULT_DATABASE_URL = "sqlite:///./retro.db"
_DEFAULT_SQLITE = {
    "journal_mode": "WAL",
    "synchronous": "NORMAL",
    "busy_timeout_ms": 30000,
    "write_retries": 5,
    "retry_backoff_ms": 200,
}
_DEFAULT_VOTING = {
    "default_vote_budget": 10,
    "max_votes_per_target": 2,
}
_DEFAULT_PRESENCE = {
    "ttl_seconds": 3 * 60 * 60,
    "heartbeat_interval_seconds": 30,
}
_DEFAULT_REALTIME = {
    "reconnect_delay_seconds": 5,
    "subscriber_queue_size": 256,
}
_DEFAULT_TIMER = {
    "warning_seconds": 300,
    "danger_seconds": 60,
}
_DEFAULT_BOARD = {
    "item_character_limit": 1000,
}


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
        logging.debug("Configuration file %s not found; using defaults.", _CONFIG_PATH)
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


def _env_int(name: str) -> Any:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _positive_int_section(
    section_name: str,
    defaults: Dict[str, int],
    env_overrides: Dict[str, str] | None = None,
) -> Dict[str, int]:
    config = load_config()
    section = config.get(section_name) or {}
    if not isinstance(section, dict):
        section = {}
    settings = dict(defaults)
    for key, fallback in defaults.items():
        raw = section.get(key)
        env_name = (env_overrides or {}).get(key)
        if env_name:
            env_value = _env_int(env_name)
            if env_value is not None:
                raw = env_value
        settings[key] = _coerce_positive_int(raw, fallback)
    return settings


def get_database_url() -> str:
    env_value = os.getenv("RETRO_DATABASE_URL")
    if env_value and env_value.strip():
        return env_value.strip()
    url = load_config().get("database_url")
    return str(url) if url else _DEFAULT_DATABASE_URL


def get_sqlite_settings() -> Dict[str, Any]:
    config = load_config()
    section = config.get("sqlite") or {}
    if not isinstance(section, dict):
        section = {}
    return {
        "journal_mode": str(section.get("journal_mode") or _DEFAULT_SQLITE["journal_mode"]),
        "synchronous": str(section.get("synchronous") or _DEFAULT_SQLITE["synchronous"]),
        "busy_timeout_ms": _coerce_positive_int(
            section.get("busy_timeout_ms"), _DEFAULT_SQLITE["busy_timeout_ms"]
        ),
        "write_retries": _coerce_positive_int(
            section.get("write_retries"), _DEFAULT_SQLITE["write_retries"]
        ),
        "retry_backoff_ms": _coerce_positive_int(
            section.get("retry_backoff_ms"), _DEFAULT_SQLITE["retry_backoff_ms"]
        ),
    }


def get_voting_settings() -> Dict[str, int]:
    """Return vote budget defaults and the per-target cap."""
    return _positive_int_section(
        "voting",
        _DEFAULT_VOTING,
        {"default_vote_budget": "RETRO_DEFAULT_VOTE_BUDGET"},
    )


def get_presence_settings() -> Dict[str, int]:
    return _positive_int_section(
        "presence",
        _DEFAULT_PRESENCE,
        {"ttl_seconds": "RETRO_PRESENCE_TTL_SECONDS"},
    )


def get_realtime_settings() -> Dict[str, int]:
    return _positive_int_section("realtime", _DEFAULT_REALTIME)


def get_timer_settings() -> Dict[str, int]:
    settings = _positive_int_section("timer", _DEFAULT_TIMER)
    if settings["danger_seconds"] > settings["warning_seconds"]:
        settings["danger_seconds"] = settings["warning_seconds"]
    return settings


def get_board_settings() -> Dict[str, int]:
    return _positive_int_section("board", _DEFAULT_BOARD)
