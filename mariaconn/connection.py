"""Connection handle owning the lifecycle of one MariaDB driver connection."""

from __future__ import annotations

import asyncio
import concurrent.futures
import itertools
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterator

from .config import ConfigurationError, ConnectionOptions
from .driver import DriverConnection, DriverTransaction
from .history import ActionHistory
from .loop import DriverLoop, default_loop
from .models import ConnectionState, IsolationLevel, QueryResult
from .params import Parameters
from .timer import IdleTimer

LOG = logging.getLogger(__name__)

_ids = itertools.count(1)
_ids_lock = threading.Lock()


def _next_id() -> int:
    with _ids_lock:
        return next(_ids)


class ConnectionDisposedError(RuntimeError):
    """Raised when an operation is attempted on a disposed connection."""


class MariaDbConnection:
    """Lifecycle manager for a single logical MariaDB connection.

    Every operation comes in a blocking form and an ``*_async`` form. Both run
    the driver work on the handle's :class:`DriverLoop`, so the two styles can
    be mixed on one handle. Non-primary handles close themselves after
    ``auto_close_timeout_ms`` of inactivity, except while a transaction is
    active.
    """

    def __init__(
        self,
        options: ConnectionOptions | str | None,
        *,
        is_primary: bool | None = None,
        loop: DriverLoop | None = None,
    ) -> None:
        if options is None:
            raise ConfigurationError("Connection options are required.")
        if isinstance(options, str):
            options = ConnectionOptions(connection_string=options)
        if is_primary is not None:
            options = options.with_overrides(is_primary_connection=is_primary)
        self._options = options.model_copy()
        self._loop = loop or default_loop()
        self._id = _next_id()
        self._created_at = datetime.now(tz=timezone.utc)
        self._history = ActionHistory()
        self._dispose_lock = threading.Lock()
        self._dispose_future: concurrent.futures.Future[None] | None = None
        self._disposed = False
        self._transaction: DriverTransaction | None = None
        self._transaction_attempt: object | None = None
        self._transaction_active = False
        self._driver: DriverConnection | None = DriverConnection(self._options)
        self._unsubscribe = self._driver.subscribe(self._on_state_change)
        self._timer: IdleTimer | None = None
        if self._options.auto_close_enabled:
            self._timer = IdleTimer(
                self._loop,
                self._options.auto_close_timeout_ms / 1000,
                self._on_idle_timeout,
            )
        kind = "primary" if self.is_primary else "secondary"
        self._record("New", f"New {kind} connection created")

    @property
    def id(self) -> int:
        return self._id

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def options(self) -> ConnectionOptions:
        return self._options

    @property
    def state(self) -> ConnectionState:
        driver = self._driver
        if driver is None:
            return ConnectionState.CLOSED
        return driver.state

    @property
    def is_primary(self) -> bool:
        return self._options.is_primary_connection

    @property
    def auto_close_enabled(self) -> bool:
        return self._options.auto_close_enabled

    @property
    def idle_timeout(self) -> float:
        """Idle timeout in seconds."""

        return self._options.auto_close_timeout_ms / 1000

    @property
    def is_transaction_active(self) -> bool:
        return self._transaction_active

    @property
    def transaction(self) -> DriverTransaction | None:
        return self._transaction

    @property
    def driver(self) -> DriverConnection | None:
        return self._driver

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def last_action(self) -> str:
        return self._history.last

    @property
    def action_history(self) -> tuple[str, ...]:
        return self._history.entries

    # -- open / close -----------------------------------------------------

    def open(self) -> None:
        """Open the connection if needed and re-arm the idle timer."""

        self._raise_if_disposed()
        self._loop.run(self._open("Open"))

    async def open_async(self) -> None:
        self._raise_if_disposed()
        await self._loop.run_async(self._open("OpenAsync"))

    def close(self) -> None:
        """Close the connection; a no-op when already closed."""

        if self._driver is None:
            return
        self._loop.run(self._close("Close"))

    async def close_async(self) -> None:
        if self._driver is None:
            return
        await self._loop.run_async(self._close("CloseAsync"))

    # -- transactions -----------------------------------------------------

    def begin_transaction(self, isolation_level: IsolationLevel = IsolationLevel.READ_UNCOMMITTED) -> bool:
        """Start a transaction, opening the connection first if needed."""

        self._raise_if_disposed()
        return self._loop.run(self._begin(isolation_level, "BeginTransaction", None))

    async def begin_transaction_async(
        self, isolation_level: IsolationLevel = IsolationLevel.READ_UNCOMMITTED
    ) -> bool:
        self._raise_if_disposed()
        attempt = object()
        try:
            return await self._loop.run_async(self._begin(isolation_level, "BeginTransactionAsync", attempt))
        except asyncio.CancelledError:
            # The driver may have finished BEGIN before the cancellation reached it.
            self._loop.call_soon(self._discard_cancelled_begin, attempt)
            raise

    def commit(self) -> None:
        self._raise_if_disposed()
        self._loop.run(self._finish_transaction(commit=True, action="Commit"))

    async def commit_async(self) -> None:
        self._raise_if_disposed()
        await self._loop.run_async(self._finish_transaction(commit=True, action="CommitAsync"))

    def rollback(self) -> None:
        self._raise_if_disposed()
        self._loop.run(self._finish_transaction(commit=False, action="Rollback"))

    async def rollback_async(self) -> None:
        self._raise_if_disposed()
        await self._loop.run_async(self._finish_transaction(commit=False, action="RollbackAsync"))

    # -- queries ----------------------------------------------------------

    def execute_non_query(self, sql: str, params: Parameters = None) -> int:
        """Run a statement and return the number of affected rows."""

        self._raise_if_disposed()
        return self._loop.run(self._execute_non_query(sql, params))

    async def execute_non_query_async(self, sql: str, params: Parameters = None) -> int:
        self._raise_if_disposed()
        return await self._loop.run_async(self._execute_non_query(sql, params))

    def execute_scalar(self, sql: str, params: Parameters = None) -> Any:
        """Return the first column of the first row, or ``None``."""

        self._raise_if_disposed()
        return self._loop.run(self._execute_scalar(sql, params))

    async def execute_scalar_async(self, sql: str, params: Parameters = None) -> Any:
        self._raise_if_disposed()
        return await self._loop.run_async(self._execute_scalar(sql, params))

    def execute_query(self, sql: str, params: Parameters = None) -> QueryResult:
        """Run a statement and materialise its full result set."""

        self._raise_if_disposed()
        return self._loop.run(self._execute_query(sql, params))

    async def execute_query_async(self, sql: str, params: Parameters = None) -> QueryResult:
        self._raise_if_disposed()
        return await self._loop.run_async(self._execute_query(sql, params))

    def execute_reader(self, sql: str, params: Parameters = None) -> RowCursor:
        """Run a statement and return a forward-only cursor over its rows."""

        self._raise_if_disposed()
        return self._loop.run(self._execute_reader(sql, params))

    async def execute_reader_async(self, sql: str, params: Parameters = None) -> RowCursor:
        self._raise_if_disposed()
        return await self._loop.run_async(self._execute_reader(sql, params))

    # -- idle timer -------------------------------------------------------

    def reset_auto_close_timer(self) -> None:
        """Re-arm the idle timer unless auto-close is off or a transaction is active."""

        if self._timer is None or self._transaction_active or self._disposed:
            return
        self._timer.restart()
        LOG.debug("Idle timer re-armed", extra={"connection_id": self._id})

    # -- disposal ---------------------------------------------------------

    def dispose(self) -> None:
        """Release the timer and the driver connection; safe to call repeatedly."""

        if self._loop.in_loop_thread():
            raise RuntimeError("Blocking dispose issued from the driver loop; use dispose_async.")
        self._start_dispose("Dispose").result()

    async def dispose_async(self) -> None:
        await asyncio.shield(asyncio.wrap_future(self._start_dispose("DisposeAsync")))

    def __enter__(self) -> MariaDbConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    async def __aenter__(self) -> MariaDbConnection:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.dispose_async()

    def __repr__(self) -> str:
        return (
            f"MariaDbConnection(id={self._id}, state={self.state.value}, "
            f"primary={self.is_primary}, transaction={self._transaction_active})"
        )

    # -- driver-loop internals ----------------------------------------------

    async def _open(self, action: str) -> DriverConnection:
        driver = self._require_driver()
        if driver.state is not ConnectionState.OPEN:
            await driver.open()
            try:
                await driver.apply_session_settings(self._options.innodb_lock_wait_timeout)
            except BaseException:
                await driver.close()
                raise
            self._record(action, "Connection opened")
        self.reset_auto_close_timer()
        return driver

    async def _ensure_open(self) -> DriverConnection:
        # Already open: leave the idle timer to the caller, which re-arms it on success.
        driver = self._require_driver()
        if driver.state is ConnectionState.OPEN:
            return driver
        return await self._open("Open")

    async def _close(self, action: str) -> bool:
        driver = self._driver
        if driver is None or driver.state is not ConnectionState.OPEN:
            return False
        await driver.close()
        self._record(action, "Connection closed")
        return True

    async def _begin(self, isolation_level: IsolationLevel, action: str, attempt: object | None) -> bool:
        try:
            driver = await self._ensure_open()
            transaction = await driver.begin(isolation_level)
        except asyncio.CancelledError:
            self._clear_transaction()
            raise
        except Exception:
            LOG.exception("Failed to begin transaction", extra={"connection_id": self._id})
            self._clear_transaction()
            raise
        self._transaction = transaction
        self._transaction_attempt = attempt
        self._transaction_active = True
        self._record(action, f"Transaction started (isolation level: {isolation_level.value})")
        return True

    async def _finish_transaction(self, *, commit: bool, action: str) -> None:
        transaction = self._transaction
        if transaction is None:
            return
        try:
            if commit:
                await transaction.commit()
                self._record(action, "Transaction committed")
            else:
                await transaction.rollback()
                self._record(action, "Transaction rolled back")
        finally:
            self._clear_transaction()
            self.reset_auto_close_timer()

    def _discard_cancelled_begin(self, attempt: object) -> None:
        transaction = self._transaction
        if transaction is None or self._transaction_attempt is not attempt:
            return
        self._clear_transaction()
        self._loop.spawn(self._rollback_abandoned(transaction))

    async def _rollback_abandoned(self, transaction: DriverTransaction) -> None:
        try:
            await transaction.rollback()
            self._record("Rollback", "Transaction of a cancelled begin rolled back")
        except Exception:
            LOG.exception("Rollback after cancelled begin failed", extra={"connection_id": self._id})
        self.reset_auto_close_timer()

    def _clear_transaction(self) -> None:
        self._transaction = None
        self._transaction_attempt = None
        self._transaction_active = False

    async def _execute_non_query(self, sql: str, params: Parameters) -> int:
        driver = await self._ensure_open()
        affected = await driver.execute(sql, params)
        self.reset_auto_close_timer()
        return affected

    async def _execute_scalar(self, sql: str, params: Parameters) -> Any:
        driver = await self._ensure_open()
        _, rows, _ = await driver.fetch(sql, params)
        self.reset_auto_close_timer()
        if not rows or not rows[0]:
            return None
        return rows[0][0]

    async def _execute_query(self, sql: str, params: Parameters) -> QueryResult:
        started = time.perf_counter()
        driver = await self._ensure_open()
        columns, rows, rowcount = await driver.fetch(sql, params)
        self.reset_auto_close_timer()
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if columns:
            status = f"{len(rows)} row(s)"
            row_count = len(rows)
        else:
            status = f"{rowcount} row(s) affected"
            row_count = rowcount
        return QueryResult(
            columns=columns,
            rows=rows,
            status=status,
            elapsed_ms=elapsed_ms,
            row_count=row_count,
        )

    async def _execute_reader(self, sql: str, params: Parameters) -> RowCursor:
        driver = await self._ensure_open()
        cursor = await driver.open_cursor(sql, params)
        self.reset_auto_close_timer()
        return RowCursor(self._loop, cursor)

    def _on_idle_timeout(self) -> None:
        # Re-check: a transaction may have begun after the timer was armed.
        if self._transaction_active or not self.auto_close_enabled or self._disposed:
            return
        self._loop.spawn(self._auto_close())

    async def _auto_close(self) -> None:
        if self._transaction_active or self._disposed:
            return
        try:
            if await self._close("Close"):
                self._record("AutoClose", "Connection closed automatically after idle timeout")
        except Exception:
            LOG.exception("Automatic close failed", extra={"connection_id": self._id})

    def _on_state_change(self, previous: ConnectionState, current: ConnectionState) -> None:
        if current is ConnectionState.OPEN:
            self.reset_auto_close_timer()
        LOG.debug(
            "Connection state changed",
            extra={"connection_id": self._id, "previous": previous.value, "current": current.value},
        )

    def _start_dispose(self, action: str) -> concurrent.futures.Future[None]:
        with self._dispose_lock:
            if self._dispose_future is None:
                self._disposed = True
                self._dispose_future = self._loop.submit(self._release(action))
            return self._dispose_future

    async def _release(self, action: str) -> None:
        if self._timer is not None:
            self._timer.close()
        if self._transaction is not None:
            self._transaction.release()
        self._clear_transaction()
        driver = self._driver
        if driver is not None:
            try:
                await self._close("CloseAsync" if action == "DisposeAsync" else "Close")
                if self.is_primary or not driver.pooled:
                    await driver.clear_pool()
            finally:
                self._unsubscribe()
                driver.dispose()
                self._driver = None
        self._record(action, "Resources released")

    def _require_driver(self) -> DriverConnection:
        self._raise_if_disposed()
        driver = self._driver
        if driver is None:  # pragma: no cover - disposed flag is set first
            raise ConnectionDisposedError(f"Connection {self._id} has been disposed.")
        return driver

    def _raise_if_disposed(self) -> None:
        if self._disposed:
            raise ConnectionDisposedError(f"Connection {self._id} has been disposed.")

    def _record(self, action: str, description: str) -> None:
        self._history.record(action, description)
        LOG.debug(
            "%s: %s",
            action,
            description,
            extra={"connection_id": self._id, "action": action},
        )


class RowCursor:
    """Forward-only cursor over an unbuffered result set."""

    def __init__(self, loop: DriverLoop, cursor: Any) -> None:
        self._loop = loop
        self._cursor = cursor
        self._closed = False
        self.columns: tuple[str, ...] = tuple(str(column[0]) for column in cursor.description or ())

    @property
    def closed(self) -> bool:
        return self._closed

    def fetchone(self) -> tuple[object, ...] | None:
        """Next row, or ``None`` once the result set is exhausted."""

        return self._loop.run(self._fetchone())

    async def fetchone_async(self) -> tuple[object, ...] | None:
        return await self._loop.run_async(self._fetchone())

    def close(self) -> None:
        self._loop.run(self._close())

    async def close_async(self) -> None:
        await self._loop.run_async(self._close())

    def __iter__(self) -> Iterator[tuple[object, ...]]:
        while True:
            row = self.fetchone()
            if row is None:
                return
            yield row

    async def __aiter__(self) -> AsyncIterator[tuple[object, ...]]:
        while True:
            row = await self.fetchone_async()
            if row is None:
                return
            yield row

    def __enter__(self) -> RowCursor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    async def __aenter__(self) -> RowCursor:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close_async()

    async def _fetchone(self) -> tuple[object, ...] | None:
        if self._closed:
            return None
        row = await self._cursor.fetchone()
        if row is None:
            await self._close()
            return None
        return tuple(row)

    async def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._cursor.close()


__all__ = ["ConnectionDisposedError", "MariaDbConnection", "RowCursor"]
