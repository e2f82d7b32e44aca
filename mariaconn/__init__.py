"""Lifecycle-managed MariaDB connections over aiomysql."""

from __future__ import annotations

__version__ = "0.1.0"

from .config import ConfigurationError, ConnectionOptions, load_options, parse_connection_string, save_options
from .connection import ConnectionDisposedError, MariaDbConnection, RowCursor
from .driver import DriverConnection, DriverTransaction
from .factory import ConnectionFactory
from .health import HealthCheck
from .loop import DriverLoop, default_loop
from .models import ConnectionState, HealthCheckResult, IsolationLevel, QueryResult, ServerInfo
from .params import ParameterBindingError, bind_parameters

__all__ = [
    "ConfigurationError",
    "ConnectionDisposedError",
    "ConnectionFactory",
    "ConnectionOptions",
    "ConnectionState",
    "DriverConnection",
    "DriverLoop",
    "DriverTransaction",
    "HealthCheck",
    "HealthCheckResult",
    "IsolationLevel",
    "MariaDbConnection",
    "ParameterBindingError",
    "QueryResult",
    "RowCursor",
    "ServerInfo",
    "__version__",
    "bind_parameters",
    "default_loop",
    "load_options",
    "parse_connection_string",
    "save_options",
]
