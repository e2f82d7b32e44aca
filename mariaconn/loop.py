"""Background event loop that owns every driver socket."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, Coroutine, TypeVar

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class DriverLoop:
    """Runs driver coroutines on a dedicated daemon thread.

    Blocking callers wait on the returned future; coroutine callers await it
    from their own loop. Either way the driver connection, its pool and the
    idle timers only ever live on this loop.
    """

    def __init__(self, name: str = "mariaconn-driver") -> None:
        self._loop = asyncio.new_event_loop()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._stopped = False
        self._thread = threading.Thread(
            target=self._loop.run_forever,
            name=name,
            daemon=True,
        )
        self._thread.start()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def is_running(self) -> bool:
        return not self._stopped and not self._loop.is_closed()

    def in_loop_thread(self) -> bool:
        """True when called from the driver loop's own thread."""

        return threading.get_ident() == self._thread.ident

    def submit(self, coro: Coroutine[Any, Any, T]) -> concurrent.futures.Future[T]:
        """Schedule a coroutine on the driver loop and return its future."""

        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run a coroutine on the driver loop and block until it finishes."""

        if self.in_loop_thread():
            coro.close()
            raise RuntimeError("Blocking call issued from the driver loop; use the *_async variant.")
        return self.submit(coro).result()

    async def run_async(self, coro: Coroutine[Any, Any, T]) -> T:
        """Await a coroutine on the driver loop from any event loop."""

        if asyncio.get_running_loop() is self._loop:
            return await coro
        return await asyncio.wrap_future(self.submit(coro))

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> None:
        """Invoke ``callback`` on the driver loop (inline when already there)."""

        if not self.is_running:
            return
        if self.in_loop_thread():
            callback(*args)
            return
        self._loop.call_soon_threadsafe(callback, *args)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        """Start a fire-and-forget task on the driver loop, keeping a reference to it."""

        if not self.is_running:
            coro.close()
            return
        self.call_soon(self._start_task, coro)

    def shutdown(self) -> None:
        """Stop the background event loop (testing helper)."""

        if self._stopped:  # pragma: no cover - defensive
            return
        self._stopped = True
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=1)

    def _start_task(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


_default: DriverLoop | None = None
_default_lock = threading.Lock()


def default_loop() -> DriverLoop:
    """Process-wide driver loop shared by handles that are not given one."""

    global _default
    with _default_lock:
        if _default is None or not _default.is_running:
            _default = DriverLoop()
            LOG.debug("Started default driver loop")
        return _default


__all__ = ["DriverLoop", "default_loop"]
