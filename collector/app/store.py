from __future__ import annotations

import threading
from collections import deque
from typing import Any, Dict, List


class LocationHistory:
    """Bounded in-memory record of received updates (newest kept)."""

    def __init__(self, limit: int = 100) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._lock = threading.Lock()
        self._items: deque[Dict[str, Any]] = deque(maxlen=limit)

    def add(self, record: Dict[str, Any]) -> None:
        with self._lock:
            self._items.append(dict(record))

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(item) for item in self._items]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
