"""aiomysql adapter: raw connections, pools, transactions and state notifications."""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import aiomysql
import pymysql

from .config import ConnectionOptions
from .models import ConnectionState, IsolationLevel
from .params import Parameters, bind_parameters

LOG = logging.getLogger(__name__)

T = TypeVar("T")

StateListener = Callable[[ConnectionState, ConnectionState], None]


class PoolRegistry:
    """Driver pools keyed by event loop and effective connection string.

    Loops are held weakly, so the pools of a collected loop go with it.
    """

    def __init__(self) -> None:
        self._pools: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, aiomysql.Pool]] = (
            weakref.WeakKeyDictionary()
        )
        self._locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]] = (
            weakref.WeakKeyDictionary()
        )

    async def get(self, key: str, *, minsize: int, maxsize: int, **kwargs: Any) -> aiomysql.Pool:
        """Return the pool for ``key`` on the running loop, creating it on first use."""

        loop = asyncio.get_running_loop()
        pools = self._pools.setdefault(loop, {})
        lock = self._locks.setdefault(loop, {}).setdefault(key, asyncio.Lock())
        async with lock:
            pool = pools.get(key)
            if pool is None:
                pool = await aiomysql.create_pool(minsize=minsize, maxsize=maxsize, **kwargs)
                pools[key] = pool
                LOG.debug("Created driver pool", extra={"minsize": minsize, "maxsize": maxsize})
        return pool

    async def clear(self, key: str) -> None:
        """Close the idle sockets pooled under ``key``."""

        pool = self._pools.get(asyncio.get_running_loop(), {}).get(key)
        if pool is not None:
            await pool.clear()


POOLS = PoolRegistry()


class DriverTransaction:
    """Transaction started on a raw driver connection."""

    def __init__(self, raw: Any, isolation_level: IsolationLevel) -> None:
        self._raw = raw
        self.isolation_level = isolation_level

    @property
    def released(self) -> bool:
        return self._raw is None

    async def commit(self) -> None:
        await self._require_raw().commit()

    async def rollback(self) -> None:
        await self._require_raw().rollback()

    def release(self) -> None:
        """Forget the transaction without committing or rolling back."""

        self._raw = None

    def _require_raw(self) -> Any:
        if self._raw is None:
            raise pymysql.err.InterfaceError(0, "Transaction has been released.")
        return self._raw


class DriverConnection:
    """One aiomysql connection plus the state-change notifications around it."""

    def __init__(self, options: ConnectionOptions) -> None:
        settings = options.effective_settings()
        self._connection_string = options.build_connection_string()
        self._kwargs = settings.driver_kwargs()
        self._pooling = settings.pooling
        self._min_pool_size = settings.min_pool_size
        self._max_pool_size = settings.max_pool_size
        self._command_timeout = settings.command_timeout_seconds or None
        self._allow_user_variables = settings.allow_user_variables
        self._raw: Any | None = None
        self._pool: aiomysql.Pool | None = None
        self._listeners: set[StateListener] = set()
        self._reported = ConnectionState.CLOSED

    @property
    def connection_string(self) -> str:
        """Connection string this driver connection was configured from."""

        return self._connection_string

    @property
    def raw(self) -> Any | None:
        """Underlying aiomysql connection, when one is held."""

        return self._raw

    @property
    def pooled(self) -> bool:
        return self._pooling

    @property
    def state(self) -> ConnectionState:
        if self._raw is not None and not self._raw.closed:
            return ConnectionState.OPEN
        return ConnectionState.CLOSED

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to ``(previous, current)`` state changes; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    async def open(self) -> None:
        if self.state is ConnectionState.OPEN:
            return
        if self._raw is not None:
            # Closed underneath us by the driver; hand the dead socket back first.
            await self.close()
        try:
            if self._pooling:
                pool = await POOLS.get(
                    self._connection_string,
                    minsize=self._min_pool_size,
                    maxsize=self._max_pool_size,
                    **self._kwargs,
                )
                self._raw = await pool.acquire()
                self._pool = pool
            else:
                self._raw = await aiomysql.connect(**self._kwargs)
        finally:
            self._sync_state()

    async def close(self) -> None:
        raw, pool = self._raw, self._pool
        self._raw = None
        self._pool = None
        if raw is None:
            return
        try:
            if pool is not None:
                pool.release(raw)
            elif not raw.closed:
                await raw.ensure_closed()
        finally:
            self._sync_state()

    async def apply_session_settings(self, lock_wait_timeout: int) -> None:
        """Session-level settings applied right after every open."""

        await self.execute("SET @@session.innodb_lock_wait_timeout = %s", (lock_wait_timeout,))

    async def begin(self, isolation_level: IsolationLevel) -> DriverTransaction:
        raw = self._require_raw()
        await self.execute(f"SET TRANSACTION ISOLATION LEVEL {isolation_level.value}")
        try:
            await raw.begin()
        finally:
            self._sync_state()
        return DriverTransaction(raw, isolation_level)

    async def execute(self, sql: str, params: Parameters = None) -> int:
        """Run a statement and return the affected row count."""

        query, args = self._bind(sql, params)
        async with self._cursor() as cursor:
            await self._bounded(cursor.execute(query, args))
            return cursor.rowcount

    async def fetch(
        self, sql: str, params: Parameters = None
    ) -> tuple[tuple[str, ...], tuple[tuple[object, ...], ...], int]:
        """Run a statement and return ``(columns, rows, rowcount)``."""

        query, args = self._bind(sql, params)
        async with self._cursor() as cursor:
            await self._bounded(cursor.execute(query, args))
            columns = tuple(str(column[0]) for column in cursor.description or ())
            rows = await cursor.fetchall() if columns else ()
            return columns, tuple(tuple(row) for row in rows), cursor.rowcount

    async def open_cursor(self, sql: str, params: Parameters = None) -> Any:
        """Execute on an unbuffered cursor; the caller owns closing it."""

        query, args = self._bind(sql, params)
        raw = self._require_raw()
        cursor = await raw.cursor(aiomysql.SSCursor)
        try:
            await self._bounded(cursor.execute(query, args))
        except BaseException:
            await cursor.close()
            self._sync_state()
            raise
        return cursor

    async def clear_pool(self) -> None:
        await POOLS.clear(self._connection_string)

    def dispose(self) -> None:
        """Drop listeners and the raw connection reference."""

        self._listeners.clear()
        raw, self._raw = self._raw, None
        if raw is not None and not raw.closed:
            raw.close()
        self._pool = None

    def _bind(self, sql: str, params: Parameters) -> tuple[str, Any]:
        return bind_parameters(sql, params, allow_user_variables=self._allow_user_variables)

    def _require_raw(self) -> Any:
        if self._raw is None or self._raw.closed:
            raise pymysql.err.InterfaceError(0, "Connection is not open.")
        return self._raw

    @asynccontextmanager
    async def _cursor(self) -> AsyncIterator[Any]:
        cursor = await self._require_raw().cursor()
        try:
            yield cursor
        finally:
            try:
                await cursor.close()
            finally:
                self._sync_state()

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        if self._command_timeout:
            return await asyncio.wait_for(awaitable, self._command_timeout)
        return await awaitable

    def _sync_state(self) -> None:
        current = self.state
        previous = self._reported
        if current is previous:
            return
        self._reported = current
        for listener in tuple(self._listeners):
            listener(previous, current)


__all__ = [
    "DriverConnection",
    "DriverTransaction",
    "POOLS",
    "PoolRegistry",
    "StateListener",
]
