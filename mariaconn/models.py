"""Shared value types used across the connection, driver and health modules."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ConnectionState(str, Enum):
    """Reported state of a driver connection."""

    CLOSED = "closed"
    OPEN = "open"


class IsolationLevel(str, Enum):
    """Transaction isolation levels understood by MariaDB."""

    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Materialised result set returned by ``execute_query``."""

    columns: tuple[str, ...]
    rows: tuple[tuple[object, ...], ...]
    status: str
    elapsed_ms: int
    row_count: int | None = None


@dataclass(frozen=True, slots=True)
class HealthCheckResult:
    """Outcome of a single health probe."""

    is_healthy: bool
    message: str
    latency_ms: int
    checked_at: datetime
    error: Exception | None = None


@dataclass(frozen=True, slots=True)
class ServerInfo:
    """Basic facts reported by the server for the current session."""

    version: str
    current_database: str
    current_user: str
    connection_id: int


__all__ = [
    "ConnectionState",
    "HealthCheckResult",
    "IsolationLevel",
    "QueryResult",
    "ServerInfo",
]
