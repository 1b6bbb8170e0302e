"""Command-line output helpers: JSON/YAML rendering, coloured times and tables."""

from __future__ import annotations

import dataclasses
import enum
import ipaddress
import json
import sys
from datetime import date as _date
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

import yaml

DATE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
MACHINE_OUTPUT_FORMATS = ("json", "json-line", "yaml")

_LIGHT_GREEN = "\x1b[92m"
_LIGHT_RED = "\x1b[91m"
_RESET = "\x1b[0m"

ROUTES_HEADER = ["ID", "Machine", "Prefix", "Advertised", "Enabled", "Primary"]


def _light_green(text: str) -> str:
    return f"{_LIGHT_GREEN}{text}{_RESET}"


def _light_red(text: str) -> str:
    return f"{_LIGHT_RED}{text}{_RESET}"


def _to_plain(value: Any) -> Any:
    """Convert a result into JSON/YAML friendly built-in types."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, enum.Enum):
        return _to_plain(value.value)
    if isinstance(value, (datetime, _date)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(
        value,
        (
            ipaddress.IPv4Address,
            ipaddress.IPv6Address,
            ipaddress.IPv4Interface,
            ipaddress.IPv6Interface,
            ipaddress.IPv4Network,
            ipaddress.IPv6Network,
        ),
    ):
        return str(value)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _to_plain(to_dict())
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(k): _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_plain(v) for v in value]
    raise TypeError(f"cannot serialize value of type {type(value).__name__}")


def _escape_html(text: str) -> str:
    return text.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")


def format_output(result: Any, override: str, output_format: str) -> str:
    """Render a result in the requested format; an unknown format yields the override text."""
    if output_format == "json":
        return _escape_html(
            json.dumps(_to_plain(result), indent="\t", sort_keys=True, ensure_ascii=False)
        )
    if output_format == "json-line":
        return _escape_html(
            json.dumps(
                _to_plain(result),
                separators=(",", ":"),
                sort_keys=True,
                ensure_ascii=False,
            )
        )
    if output_format == "yaml":
        return yaml.safe_dump(
            _to_plain(result), default_flow_style=False, sort_keys=True, allow_unicode=True
        )
    return override


def success_output(result: Any, override: str, output_format: str) -> None:
    """Print a result in the requested format, or the override text."""
    print(format_output(result, override, output_format))


def error_output(error: BaseException, override: str, output_format: str) -> None:
    """Print an error as ``{"error": ...}`` in the requested format, or the override text."""
    success_output({"error": str(error)}, override, output_format)


def has_machine_output_flag(argv: Optional[Sequence[str]] = None) -> bool:
    """Report whether the arguments ask for machine-readable output."""
    if argv is None:
        argv = sys.argv
    return any(arg in MACHINE_OUTPUT_FORMATS for arg in argv)


def colour_time(date: datetime, now: Optional[datetime] = None) -> str:
    """Format a time, green when it lies in the future and red otherwise."""
    if now is None:
        now = datetime.now(timezone.utc) if date.tzinfo is not None else datetime.now()
    text = date.strftime(DATE_TIME_FORMAT)
    return _light_green(text) if date > now else _light_red(text)


def _field(obj: Any, *names: str) -> Any:
    for name in names:
        if isinstance(obj, dict):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    raise KeyError(f"missing field {names[0]!r}")


def _format_bool(value: Any) -> str:
    return "true" if value else "false"


def routes_table(routes: Sequence[Any]) -> list[list[str]]:
    """Turn routes into table rows, headed by the column names."""
    table = [list(ROUTES_HEADER)]
    for route in routes:
        machine = _field(route, "machine")
        table.append(
            [
                str(_field(route, "id")),
                str(_field(machine, "given_name", "givenName")),
                str(_field(route, "prefix")),
                _format_bool(_field(route, "advertised")),
                _format_bool(_field(route, "enabled")),
                _format_bool(_field(route, "is_primary", "isPrimary")),
            ]
        )
    return table


def version_output(version: str, output_format: str = "") -> None:
    """Print the version, as ``{"version": ...}`` for machine-readable formats."""
    success_output({"version": version}, version, output_format)