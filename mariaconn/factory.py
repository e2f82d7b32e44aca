"""Factory building connection handles from shared default options."""

from __future__ import annotations

import logging
from typing import Any

from .config import ConfigurationError, ConnectionOptions
from .connection import MariaDbConnection
from .loop import DriverLoop

LOG = logging.getLogger(__name__)


class ConnectionFactory:
    """Creates independent handles that share one set of default options."""

    def __init__(self, default_options: ConnectionOptions | None, *, loop: DriverLoop | None = None) -> None:
        if default_options is None:
            raise ConfigurationError("Default connection options are required.")
        self._default_options = default_options.model_copy()
        self._loop = loop

    @classmethod
    def from_connection_string(cls, connection_string: str, *, loop: DriverLoop | None = None) -> ConnectionFactory:
        """Factory whose defaults come from a raw connection string."""

        if not connection_string or not connection_string.strip():
            raise ConfigurationError("A connection string is required.")
        return cls(ConnectionOptions(connection_string=connection_string), loop=loop)

    @property
    def default_options(self) -> ConnectionOptions:
        """Copy of the options new handles start from."""

        return self._default_options.model_copy()

    def create_connection(self, options: ConnectionOptions | None = None, **overrides: Any) -> MariaDbConnection:
        """Create a handle from ``options`` (or the defaults) with ``overrides`` applied."""

        base = options if options is not None else self._default_options
        if overrides:
            base = base.with_overrides(**overrides)
        connection = MariaDbConnection(base, loop=self._loop)
        LOG.debug(
            "Created connection",
            extra={"connection_id": connection.id, "primary": connection.is_primary},
        )
        return connection

    def create_primary_connection(self) -> MariaDbConnection:
        """Create a long-lived handle that is never closed for idleness."""

        return self.create_connection(is_primary_connection=True, disable_auto_close=True)


__all__ = ["ConnectionFactory"]
