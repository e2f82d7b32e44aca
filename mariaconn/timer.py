"""Single-shot idle timer used for automatic connection close."""

from __future__ import annotations

import asyncio
from typing import Callable

from .loop import DriverLoop


class IdleTimer:
    """Timer on the driver loop; re-arming cancels any pending firing."""

    def __init__(self, driver_loop: DriverLoop, delay: float, callback: Callable[[], None]) -> None:
        self._driver_loop = driver_loop
        self._delay = delay
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._closed = False

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def restart(self) -> None:
        """Schedule a firing ``delay`` seconds from now, replacing any pending one."""

        if self._closed:
            return
        self._driver_loop.call_soon(self._arm)

    def cancel(self) -> None:
        """Drop any pending firing."""

        self._driver_loop.call_soon(self._disarm)

    def close(self) -> None:
        """Cancel and refuse any later ``restart``."""

        self._closed = True
        self.cancel()

    def _arm(self) -> None:
        if self._closed:
            return
        self._disarm()
        self._handle = self._driver_loop.loop.call_later(self._delay, self._fire)

    def _disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        if self._closed:
            return
        self._callback()


__all__ = ["IdleTimer"]
