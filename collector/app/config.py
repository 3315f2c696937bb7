from __future__ import annotations

import os
from dataclasses import dataclass


def _get_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return int(v)


def _get_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


@dataclass(frozen=True)
class Settings:
    log_level: str
    log_format: str

    # Only the most recent updates are kept in memory.
    history_limit: int


def load_settings() -> Settings:
    history_limit = _get_int("COLLECTOR_HISTORY_LIMIT", 100)
    if history_limit <= 0:
        raise ValueError("COLLECTOR_HISTORY_LIMIT must be > 0")

    return Settings(
        log_level=_get_str("LOG_LEVEL", "INFO").upper(),
        log_format=_get_str("LOG_FORMAT", "text").lower(),
        history_limit=history_limit,
    )
