"""Health probe issuing a trivial round trip through a factory-made handle."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from .config import ConfigurationError
from .factory import ConnectionFactory
from .models import HealthCheckResult, ServerInfo

LOG = logging.getLogger(__name__)

HEALTH_QUERY = "SELECT 1"


class HealthCheck:
    """Reports whether the configured server answers, and how fast."""

    def __init__(self, factory: ConnectionFactory | None) -> None:
        if factory is None:
            raise ConfigurationError("A connection factory is required.")
        self._factory = factory

    def check_health(self) -> HealthCheckResult:
        """Blocking variant of :meth:`check_health_async`."""

        started = time.perf_counter()
        try:
            with self._factory.create_connection() as connection:
                connection.open()
                value = connection.execute_scalar(HEALTH_QUERY)
        except Exception as exc:
            return self._failure(started, exc)
        return self._verdict(started, value)

    async def check_health_async(self) -> HealthCheckResult:
        """Open a fresh handle, run ``SELECT 1`` and report the outcome.

        Connection failures are returned as an unhealthy result instead of
        being raised.
        """

        started = time.perf_counter()
        try:
            async with self._factory.create_connection() as connection:
                await connection.open_async()
                value = await connection.execute_scalar_async(HEALTH_QUERY)
        except Exception as exc:
            return self._failure(started, exc)
        return self._verdict(started, value)

    def get_server_info(self) -> ServerInfo:
        with self._factory.create_connection() as connection:
            connection.open()
            return ServerInfo(
                version=str(connection.execute_scalar("SELECT VERSION()") or "Unknown"),
                current_database=str(connection.execute_scalar("SELECT DATABASE()") or "Unknown"),
                current_user=str(connection.execute_scalar("SELECT USER()") or "Unknown"),
                connection_id=int(connection.execute_scalar("SELECT CONNECTION_ID()") or 0),
            )

    async def get_server_info_async(self) -> ServerInfo:
        """Version, database, user and connection id of a fresh session."""

        async with self._factory.create_connection() as connection:
            await connection.open_async()
            version = await connection.execute_scalar_async("SELECT VERSION()")
            database = await connection.execute_scalar_async("SELECT DATABASE()")
            user = await connection.execute_scalar_async("SELECT USER()")
            connection_id = await connection.execute_scalar_async("SELECT CONNECTION_ID()")
        return ServerInfo(
            version=str(version or "Unknown"),
            current_database=str(database or "Unknown"),
            current_user=str(user or "Unknown"),
            connection_id=int(connection_id or 0),
        )

    @staticmethod
    def _verdict(started: float, value: object) -> HealthCheckResult:
        latency_ms = _elapsed_ms(started)
        if value == 1:
            return HealthCheckResult(
                is_healthy=True,
                message="MariaDB connection is healthy",
                latency_ms=latency_ms,
                checked_at=datetime.now(tz=timezone.utc),
            )
        LOG.warning("Unexpected health probe response", extra={"value": repr(value)})
        return HealthCheckResult(
            is_healthy=False,
            message="Unexpected server response",
            latency_ms=latency_ms,
            checked_at=datetime.now(tz=timezone.utc),
        )

    @staticmethod
    def _failure(started: float, exc: Exception) -> HealthCheckResult:
        LOG.warning("Health probe failed", extra={"error": str(exc)})
        return HealthCheckResult(
            is_healthy=False,
            message=f"Connection error: {exc}",
            latency_ms=_elapsed_ms(started),
            checked_at=datetime.now(tz=timezone.utc),
            error=exc,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


__all__ = ["HEALTH_QUERY", "HealthCheck"]
