"""Connection options, connection-string handling and config file loading."""

from __future__ import annotations

import os
import ssl
from pathlib import Path
from typing import Any, Mapping

import tomllib

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

CONFIG_FILE = Path.home() / ".config" / "mariaconn" / "config.toml"
CONFIG_ENV_VAR = "MARIACONN_CONFIG"

USER_VARIABLES_KEY = "AllowUserVariables"

SSL_MODES = ("None", "Preferred", "Required", "VerifyCA", "VerifyFull")

_TRUE_WORDS = {"true", "yes", "1", "on"}
_FALSE_WORDS = {"false", "no", "0", "off"}

# Normalised key (lowercase, no spaces/underscores) -> ConnectionOptions field.
_KEY_ALIASES: Mapping[str, str] = {
    "server": "server",
    "host": "server",
    "datasource": "server",
    "address": "server",
    "port": "port",
    "database": "database",
    "db": "database",
    "initialcatalog": "database",
    "userid": "username",
    "uid": "username",
    "user": "username",
    "username": "username",
    "password": "password",
    "pwd": "password",
    "pooling": "pooling",
    "minimumpoolsize": "min_pool_size",
    "minpoolsize": "min_pool_size",
    "maximumpoolsize": "max_pool_size",
    "maxpoolsize": "max_pool_size",
    "connectiontimeout": "connection_timeout_seconds",
    "connecttimeout": "connection_timeout_seconds",
    "defaultcommandtimeout": "command_timeout_seconds",
    "commandtimeout": "command_timeout_seconds",
    "sslmode": "ssl_mode",
    "allowuservariables": "allow_user_variables",
}

_INT_FIELDS = {
    "port",
    "min_pool_size",
    "max_pool_size",
    "connection_timeout_seconds",
    "command_timeout_seconds",
}
_BOOL_FIELDS = {"pooling", "allow_user_variables"}


class ConfigurationError(ValueError):
    """Raised when connection configuration is missing or invalid."""


class ConnectionOptions(BaseModel):
    """Settings for one MariaDB connection handle."""

    model_config = ConfigDict(validate_assignment=True)

    server: str = "localhost"
    port: int = Field(default=3306, ge=1, le=65535)
    database: str = ""
    username: str = ""
    password: str = ""
    connection_string: str | None = None
    is_primary_connection: bool = False
    auto_close_timeout_ms: int = Field(default=60_000, ge=0)
    disable_auto_close: bool = False
    pooling: bool = True
    min_pool_size: int = Field(default=0, ge=0)
    max_pool_size: int = Field(default=100, ge=1)
    connection_timeout_seconds: int = Field(default=30, ge=0)
    command_timeout_seconds: int = Field(default=30, ge=0)
    innodb_lock_wait_timeout: int = Field(default=120, ge=1)
    use_ssl: bool = False
    ssl_mode: str = "Preferred"
    allow_user_variables: bool = True

    @field_validator("ssl_mode")
    @classmethod
    def _known_ssl_mode(cls, value: str) -> str:
        for mode in SSL_MODES:
            if mode.lower() == value.strip().lower():
                return mode
        raise ValueError(f"Unknown SSL mode '{value}'; expected one of {', '.join(SSL_MODES)}.")

    @model_validator(mode="after")
    def _pool_bounds(self) -> ConnectionOptions:
        if self.min_pool_size > self.max_pool_size:
            raise ValueError("min_pool_size cannot exceed max_pool_size.")
        return self

    @property
    def auto_close_enabled(self) -> bool:
        """Whether handles built from these options close themselves when idle."""

        return (
            not self.is_primary_connection
            and not self.disable_auto_close
            and self.auto_close_timeout_ms > 0
        )

    def with_overrides(self, **updates: Any) -> ConnectionOptions:
        """Return a validated copy with the given fields replaced."""

        data = self.model_dump()
        data.update(updates)
        try:
            return ConnectionOptions.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc

    def build_connection_string(self) -> str:
        """Return the connection string the driver is opened with.

        A supplied ``connection_string`` wins over the discrete fields; the
        user-variables flag is appended to it when missing so that it appears
        exactly once.
        """

        if self.connection_string and self.connection_string.strip():
            text = self.connection_string.strip()
            if self.allow_user_variables and "allowuservariables" not in _normalise(text):
                return text.rstrip(";") + f";{USER_VARIABLES_KEY}=true"
            return text

        parts = [
            f"Server={self.server}",
            f"Port={self.port}",
            f"Database={self.database}",
            f"User ID={self.username}",
            f"Password={self.password}",
            f"Pooling={_bool_text(self.pooling)}",
            f"Minimum Pool Size={self.min_pool_size}",
            f"Maximum Pool Size={self.max_pool_size}",
            f"Connection Timeout={self.connection_timeout_seconds}",
            f"Default Command Timeout={self.command_timeout_seconds}",
            f"{USER_VARIABLES_KEY}={_bool_text(self.allow_user_variables)}",
        ]
        if self.use_ssl:
            parts.append(f"SslMode={self.ssl_mode}")
        return ";".join(parts)

    def effective_settings(self) -> ConnectionOptions:
        """Options with the final connection string's values applied."""

        if not self.connection_string or not self.connection_string.strip():
            return self
        values = parse_connection_string(self.build_connection_string())
        updates: dict[str, object] = {"connection_string": None}
        for key, raw in values.items():
            updates[key] = _coerce(key, raw)
        if "ssl_mode" in updates:
            updates["use_ssl"] = updates["ssl_mode"] != "None"
        return self.with_overrides(**updates)

    def driver_kwargs(self) -> dict[str, object]:
        """Keyword arguments for ``aiomysql.connect`` / ``aiomysql.create_pool``."""

        settings = self.effective_settings()
        kwargs: dict[str, object] = {
            "host": settings.server,
            "port": settings.port,
            "user": settings.username,
            "password": settings.password,
            "db": settings.database or None,
            "connect_timeout": settings.connection_timeout_seconds or None,
            "autocommit": True,
            "charset": "utf8mb4",
        }
        if settings.use_ssl and settings.ssl_mode != "None":
            kwargs["ssl"] = _ssl_context(settings.ssl_mode)
        return kwargs


def parse_connection_string(text: str) -> dict[str, str]:
    """Split a ``key=value;`` connection string into option field names."""

    values: dict[str, str] = {}
    for segment in text.split(";"):
        if not segment.strip():
            continue
        if "=" not in segment:
            raise ConfigurationError(f"Malformed connection string segment '{segment.strip()}'.")
        key, value = segment.split("=", 1)
        field = _KEY_ALIASES.get(_normalise(key))
        if field is None:
            continue
        values[field] = value.strip()
    return values


def load_options(path: Path | None = None) -> ConnectionOptions:
    """Load the ``[connection]`` table from disk; fall back to defaults if missing."""

    target = path or _config_path()
    try:
        with target.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return ConnectionOptions()
    except (tomllib.TOMLDecodeError, OSError):
        return ConnectionOptions()

    table = raw.get("connection")
    if not isinstance(table, dict):
        return ConnectionOptions()
    data = {key: value for key, value in table.items() if key in ConnectionOptions.model_fields}
    try:
        return ConnectionOptions.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid connection settings in {target}: {exc}") from exc


def save_options(options: ConnectionOptions, path: Path | None = None) -> Path:
    """Persist options as a ``[connection]`` table and return the file written."""

    target = path or _config_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    defaults = ConnectionOptions()
    lines: list[str] = ["[connection]"]
    for name in ConnectionOptions.model_fields:
        value = getattr(options, name)
        if value is None or value == getattr(defaults, name):
            continue
        if isinstance(value, bool):
            lines.append(f"{name} = {str(value).lower()}")
        elif isinstance(value, int):
            lines.append(f"{name} = {value}")
        else:
            escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
            lines.append(f'{name} = "{escaped}"')
    target.write_text("\n".join(lines) + "\n")
    return target


def _config_path() -> Path:
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return CONFIG_FILE


def _normalise(key: str) -> str:
    return key.strip().lower().replace(" ", "").replace("_", "")


def _bool_text(value: bool) -> str:
    return "true" if value else "false"


def _coerce(field: str, raw: str) -> object:
    if field in _BOOL_FIELDS:
        word = raw.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        raise ConfigurationError(f"Expected a boolean for '{field}', got '{raw}'.")
    if field in _INT_FIELDS:
        try:
            return int(raw)
        except ValueError as exc:
            raise ConfigurationError(f"Expected an integer for '{field}', got '{raw}'.") from exc
    return raw


def _ssl_context(mode: str) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if mode == "VerifyFull":
        return context
    context.check_hostname = False
    if mode == "VerifyCA":
        context.verify_mode = ssl.CERT_REQUIRED
    else:
        # Preferred/Required encrypt without verifying the server certificate.
        context.verify_mode = ssl.CERT_NONE
    return context


__all__ = [
    "CONFIG_ENV_VAR",
    "CONFIG_FILE",
    "ConfigurationError",
    "ConnectionOptions",
    "SSL_MODES",
    "USER_VARIABLES_KEY",
    "load_options",
    "parse_connection_string",
    "save_options",
]
