"""Shared fakes standing in for aiomysql connections, cursors and pools."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import pytest

from mariaconn.config import ConnectionOptions
from mariaconn.driver import PoolRegistry
from mariaconn.loop import DriverLoop


@dataclass
class FakeResult:
    columns: tuple[str, ...] = ()
    rows: list[tuple[object, ...]] = field(default_factory=list)
    rowcount: int = 0


class FakeServer:
    """In-process stand-in recording everything the driver is asked to do."""

    def __init__(self) -> None:
        self.statements: list[tuple[str, Any]] = []
        self.events: list[str] = []
        self.connect_kwargs: list[dict[str, Any]] = []
        self.connections: list[FakeConnection] = []
        self.pools: list[FakePool] = []
        self.results: dict[str, FakeResult] = {
            "SELECT 1": FakeResult(columns=("1",), rows=[(1,)], rowcount=1),
        }
        self.errors: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.connect_error: Exception | None = None
        self.begin_error: Exception | None = None
        self.begin_delay: float = 0.0
        self.commit_error: Exception | None = None
        self.rollback_error: Exception | None = None
        self.close_error: Exception | None = None

    def respond(
        self,
        fragment: str,
        *,
        columns: tuple[str, ...] = (),
        rows: list[tuple[object, ...]] | None = None,
        rowcount: int | None = None,
    ) -> None:
        """Answer statements containing ``fragment`` with the given result."""

        rows = list(rows or [])
        count = rowcount if rowcount is not None else (len(rows) if columns else 0)
        self.results[fragment] = FakeResult(columns=columns, rows=rows, rowcount=count)

    def statements_like(self, fragment: str) -> list[tuple[str, Any]]:
        return [entry for entry in self.statements if fragment in entry[0]]

    async def connect(self, **kwargs: Any) -> FakeConnection:
        self.connect_kwargs.append(kwargs)
        if self.connect_error is not None:
            raise self.connect_error
        connection = FakeConnection(self)
        self.connections.append(connection)
        self.events.append("CONNECT")
        return connection

    async def create_pool(self, minsize: int = 1, maxsize: int = 10, **kwargs: Any) -> FakePool:
        pool = FakePool(self, minsize, maxsize, kwargs)
        self.pools.append(pool)
        return pool


class FakeCursor:
    def __init__(self, connection: FakeConnection) -> None:
        self._connection = connection
        self._rows: list[tuple[object, ...]] = []
        self.description: tuple[tuple[object, ...], ...] | None = None
        self.rowcount = -1
        self.closed = False

    async def execute(self, query: str, args: Any = None) -> int:
        server = self._connection.server
        server.statements.append((query, args))
        for fragment, delay in server.delays.items():
            if fragment in query:
                await asyncio.sleep(delay)
        for fragment, error in server.errors.items():
            if fragment in query:
                raise error
        result = FakeResult(rowcount=0)
        for fragment, candidate in server.results.items():
            if fragment in query:
                result = candidate
                break
        self._rows = list(result.rows)
        self.description = (
            tuple((name, None, None, None, None, None, None) for name in result.columns)
            if result.columns
            else None
        )
        self.rowcount = result.rowcount
        return self.rowcount

    async def fetchall(self) -> list[tuple[object, ...]]:
        rows, self._rows = self._rows, []
        return rows

    async def fetchone(self) -> tuple[object, ...] | None:
        if not self._rows:
            return None
        return self._rows.pop(0)

    async def close(self) -> None:
        self.closed = True


class FakeConnection:
    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self._closed = False
        self.in_transaction = False
        self.cursors: list[FakeCursor] = []

    @property
    def closed(self) -> bool:
        return self._closed

    async def cursor(self, *cursor_classes: Any) -> FakeCursor:
        cursor = FakeCursor(self)
        self.cursors.append(cursor)
        return cursor

    async def begin(self) -> None:
        if self.server.begin_delay:
            await asyncio.sleep(self.server.begin_delay)
        if self.server.begin_error is not None:
            raise self.server.begin_error
        self.in_transaction = True
        self.server.events.append("BEGIN")

    async def commit(self) -> None:
        if self.server.commit_error is not None:
            raise self.server.commit_error
        self.in_transaction = False
        self.server.events.append("COMMIT")

    async def rollback(self) -> None:
        if self.server.rollback_error is not None:
            raise self.server.rollback_error
        self.in_transaction = False
        self.server.events.append("ROLLBACK")

    async def ensure_closed(self) -> None:
        if self.server.close_error is not None:
            raise self.server.close_error
        self._closed = True
        self.server.events.append("QUIT")

    def close(self) -> None:
        self._closed = True

    def drop(self) -> None:
        """Simulate the server going away."""

        self._closed = True

    def get_transaction_status(self) -> bool:
        return self.in_transaction


class FakePool:
    def __init__(self, server: FakeServer, minsize: int, maxsize: int, kwargs: dict[str, Any]) -> None:
        self.server = server
        self.minsize = minsize
        self.maxsize = maxsize
        self.kwargs = kwargs
        self.free: list[FakeConnection] = []
        self.used: list[FakeConnection] = []
        self.cleared = 0

    async def acquire(self) -> FakeConnection:
        if self.free:
            connection = self.free.pop()
        else:
            connection = await self.server.connect(**self.kwargs)
        self.used.append(connection)
        self.server.events.append("ACQUIRE")
        return connection

    def release(self, connection: FakeConnection) -> None:
        self.used.remove(connection)
        if not connection.closed:
            self.free.append(connection)
        self.server.events.append("RELEASE")

    async def clear(self) -> None:
        while self.free:
            self.free.pop().close()
        self.cleared += 1
        self.server.events.append("CLEAR")


@pytest.fixture
def fake_server(monkeypatch: pytest.MonkeyPatch) -> FakeServer:
    server = FakeServer()
    monkeypatch.setattr("mariaconn.driver.aiomysql.connect", server.connect)
    monkeypatch.setattr("mariaconn.driver.aiomysql.create_pool", server.create_pool)
    monkeypatch.setattr("mariaconn.driver.POOLS", PoolRegistry())
    return server


@pytest.fixture
def driver_loop() -> Iterator[DriverLoop]:
    loop = DriverLoop(name="mariaconn-test-driver")
    try:
        yield loop
    finally:
        loop.shutdown()


def _make_options(**overrides: Any) -> ConnectionOptions:
    values: dict[str, Any] = {
        "server": "db.internal",
        "database": "app",
        "username": "app",
        "password": "secret",
        "pooling": False,
    }
    values.update(overrides)
    return ConnectionOptions(**values)


@pytest.fixture
def make_options() -> Callable[..., ConnectionOptions]:
    """Builder for unpooled options pointing at the fake server."""

    return _make_options
