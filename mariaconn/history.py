"""Bounded action log kept by each connection handle for diagnostics."""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timezone

MAX_HISTORY = 5


class ActionHistory:
    """Latest action plus a fixed number of earlier ones, most recent first."""

    def __init__(self, capacity: int = MAX_HISTORY) -> None:
        self._lock = threading.Lock()
        self._last = ""
        self._previous: deque[str] = deque(maxlen=capacity)

    @property
    def last(self) -> str:
        with self._lock:
            return self._last

    @property
    def entries(self) -> tuple[str, ...]:
        """Earlier actions, newest first; the oldest fall off past capacity."""

        with self._lock:
            return tuple(self._previous)

    def record(self, action: str, description: str) -> str:
        now = datetime.now(tz=timezone.utc)
        entry = f"[{now:%H:%M:%S}.{now.microsecond // 1000:03d}] [{action}] {description}"
        with self._lock:
            if self._last:
                self._previous.appendleft(self._last)
            self._last = entry
        return entry


__all__ = ["ActionHistory", "MAX_HISTORY"]
