"""Named ``@parameter`` binding on top of the driver's pyformat placeholders."""

from __future__ import annotations

import re
from typing import Any, Mapping, Sequence

_TOKEN = re.compile(
    r"""
    (?P<quoted>'(?:[^'\\]|\\.|'')*'|"(?:[^"\\]|\\.|"")*"|`(?:[^`]|``)*`)
    |(?P<comment>--[^\n]*|\#[^\n]*|/\*.*?\*/)
    |(?P<system>@@[A-Za-z0-9_.$]+)
    |(?P<param>@(?P<name>[A-Za-z_][A-Za-z0-9_$]*))
    |(?P<percent>%)
    """,
    re.VERBOSE | re.DOTALL,
)

Parameters = Mapping[str, Any] | Sequence[Any] | None


class ParameterBindingError(ValueError):
    """Raised when query parameters cannot be bound to the statement."""


def bind_parameters(
    sql: str,
    params: Parameters,
    *,
    allow_user_variables: bool = True,
) -> tuple[str, Mapping[str, Any] | tuple[Any, ...] | None]:
    """Return ``(query, args)`` ready for ``cursor.execute``.

    Mappings bind ``@name`` placeholders (names are case-insensitive and may
    carry the leading ``@`` in the mapping). Sequences are passed through for
    the driver's own ``%s`` placeholders.
    """

    if params is None:
        return sql, None
    if isinstance(params, (str, bytes)):
        raise ParameterBindingError("Parameters must be a mapping or a sequence, not a string.")
    if isinstance(params, Mapping):
        return _bind_named(sql, params, allow_user_variables)
    return sql, tuple(params)


def _bind_named(
    sql: str,
    params: Mapping[str, Any],
    allow_user_variables: bool,
) -> tuple[str, dict[str, Any]]:
    values = {str(key).lstrip("@").lower(): value for key, value in params.items()}
    bound: dict[str, Any] = {}
    pieces: list[str] = []
    cursor = 0
    for match in _TOKEN.finditer(sql):
        pieces.append(sql[cursor : match.start()])
        cursor = match.end()
        text = match.group(0)
        if match.group("name") is not None:
            name = match.group("name").lower()
            if name in values:
                bound[name] = values[name]
                pieces.append(f"%({name})s")
            elif allow_user_variables:
                pieces.append(text)
            else:
                raise ParameterBindingError(f"No value supplied for parameter '@{match.group('name')}'.")
        elif match.group("system") is not None:
            pieces.append(text)
        else:
            # pyformat interpolation runs over the whole statement, literals included.
            pieces.append(text.replace("%", "%%"))
    pieces.append(sql[cursor:])
    return "".join(pieces), bound


__all__ = ["ParameterBindingError", "Parameters", "bind_parameters"]
