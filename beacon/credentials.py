from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping

PLACEHOLDER_TOKEN = "placeholder-token"

logger = logging.getLogger("geobeacon.credentials")


class TokenStore:
    """Optional bearer-token lookup.

    `GEOBEACON_AUTH_TOKEN` wins over the token file. A missing or unreadable
    file simply means "no token"; sends are never blocked on it.
    """

    def __init__(self, *, path: Path | None = None, env_var: str = "GEOBEACON_AUTH_TOKEN") -> None:
        self.path = path
        self.env_var = env_var

    def get_token(self) -> str | None:
        raw_env = os.getenv(self.env_var)
        if raw_env and raw_env.strip():
            return raw_env.strip()
        if self.path is None:
            return None
        return _read_token_file(self.path)

    def bearer_token(self) -> str:
        return self.get_token() or PLACEHOLDER_TOKEN

    def save_token(self, token: str) -> None:
        if self.path is None:
            raise ValueError("token store has no path configured")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps({"auth_token": token}, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)

    def clear_token(self) -> None:
        if self.path is None:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            return


def _read_token_file(path: Path) -> str | None:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("failed to read token file %s: %r", path, exc)
        return None

    try:
        parsed: Any = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("token file %s is not valid JSON; ignoring", path)
        return None
    if not isinstance(parsed, Mapping):
        return None

    token = parsed.get("auth_token")
    if isinstance(token, str) and token.strip():
        return token.strip()
    return None
