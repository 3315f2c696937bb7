from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}
_LOG_FORMATS = {"text", "json"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class AgentConfigError(ValueError):
    """Raised when agent env configuration is invalid."""


@dataclass(frozen=True)
class AgentConfig:
    api_url: str
    entity_id: str
    token_path: Path | None

    buffer_path: str
    buffer_max_messages: int | None
    buffer_journal_mode: str
    buffer_synchronous: str
    buffer_temp_store: str
    buffer_recover_corruption: bool

    flush_interval_s: float
    flush_batch_size: int
    http_timeout_s: float

    distance_threshold_m: float
    interval_policy_path: Path | None
    deadletter_path: Path

    log_level: str
    log_format: str


def load_agent_config_from_env() -> AgentConfig:
    api_url = os.getenv("GEOBEACON_API_URL", "http://localhost:3000").strip()
    if not api_url:
        raise AgentConfigError("GEOBEACON_API_URL must be non-empty")

    entity_id = os.getenv("GEOBEACON_ENTITY_ID", "demo-entity-001").strip()
    if not entity_id:
        raise AgentConfigError("GEOBEACON_ENTITY_ID must be non-empty")

    token_raw = os.getenv("GEOBEACON_TOKEN_PATH", "./geobeacon_token.json").strip()
    token_path = Path(token_raw).expanduser() if token_raw else None

    buffer_path = os.getenv("GEOBEACON_BUFFER_DB_PATH", "./geobeacon_buffer.sqlite").strip()
    if not buffer_path:
        raise AgentConfigError("GEOBEACON_BUFFER_DB_PATH must be non-empty")

    max_messages = _parse_non_negative_int_env("GEOBEACON_BUFFER_MAX_MESSAGES", default=10_000)

    policy_raw = os.getenv("GEOBEACON_INTERVAL_POLICY_PATH", "").strip()
    deadletter_raw = os.getenv("GEOBEACON_DEADLETTER_PATH", "").strip()
    deadletter_path = Path(deadletter_raw or f"./geobeacon_deadletter_{entity_id}.jsonl")

    log_level = os.getenv("GEOBEACON_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    if log_level not in _LOG_LEVELS:
        raise AgentConfigError(f"GEOBEACON_LOG_LEVEL must be one of: {sorted(_LOG_LEVELS)}")
    log_format = os.getenv("GEOBEACON_LOG_FORMAT", "text").strip().lower() or "text"
    if log_format not in _LOG_FORMATS:
        raise AgentConfigError(f"GEOBEACON_LOG_FORMAT must be one of: {sorted(_LOG_FORMATS)}")

    return AgentConfig(
        api_url=api_url,
        entity_id=entity_id,
        token_path=token_path,
        buffer_path=buffer_path,
        buffer_max_messages=max_messages or None,
        buffer_journal_mode=os.getenv("BUFFER_SQLITE_JOURNAL_MODE", "WAL"),
        buffer_synchronous=os.getenv("BUFFER_SQLITE_SYNCHRONOUS", "NORMAL"),
        buffer_temp_store=os.getenv("BUFFER_SQLITE_TEMP_STORE", "MEMORY"),
        buffer_recover_corruption=_parse_bool_env("BUFFER_RECOVER_CORRUPTION", default=True),
        flush_interval_s=_parse_positive_float_env("GEOBEACON_FLUSH_INTERVAL_S", default=30.0),
        flush_batch_size=_parse_positive_int_env("GEOBEACON_FLUSH_BATCH_SIZE", default=50),
        http_timeout_s=_parse_positive_float_env("GEOBEACON_HTTP_TIMEOUT_S", default=10.0),
        distance_threshold_m=_parse_positive_float_env("GEOBEACON_DISTANCE_THRESHOLD_M", default=10.0),
        interval_policy_path=Path(policy_raw).expanduser() if policy_raw else None,
        deadletter_path=deadletter_path,
        log_level=log_level,
        log_format=log_format,
    )


def _parse_bool_env(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    norm = raw.strip().lower()
    if norm in _TRUE_VALUES:
        return True
    if norm in _FALSE_VALUES:
        return False
    raise AgentConfigError(f"{name} must be one of: {sorted(_TRUE_VALUES | _FALSE_VALUES)}")


def _parse_positive_int_env(name: str, *, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return int(default)
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise AgentConfigError(f"{name} must be an integer") from exc
    if parsed <= 0:
        raise AgentConfigError(f"{name} must be > 0")
    return parsed


def _parse_non_negative_int_env(name: str, *, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return int(default)
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise AgentConfigError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise AgentConfigError(f"{name} must be >= 0")
    return parsed


def _parse_positive_float_env(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return float(default)
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise AgentConfigError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise AgentConfigError(f"{name} must be > 0")
    return parsed
