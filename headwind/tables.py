"""Tables for users and pre-auth keys, and parsing of key expiration periods."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from .output import DATE_TIME_FORMAT, colour_time

DEFAULT_PREAUTH_KEY_EXPIRY = "1h"

USERS_HEADER = ["ID", "Name", "Created"]
PREAUTHKEYS_HEADER = [
    "ID",
    "Key",
    "Reusable",
    "Ephemeral",
    "Used",
    "Expiration",
    "Created",
    "Tags",
]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_EXPIRATION_RE = re.compile(
    r"(?:(?P<y>[0-9]+)y)?"
    r"(?:(?P<w>[0-9]+)w)?"
    r"(?:(?P<d>[0-9]+)d)?"
    r"(?:(?P<h>[0-9]+)h)?"
    r"(?:(?P<m>[0-9]+)m)?"
    r"(?:(?P<s>[0-9]+)s)?"
    r"(?:(?P<ms>[0-9]+)ms)?"
)

_UNIT_MILLISECONDS = {
    "y": 365 * 24 * 3600 * 1000,
    "w": 7 * 24 * 3600 * 1000,
    "d": 24 * 3600 * 1000,
    "h": 3600 * 1000,
    "m": 60 * 1000,
    "s": 1000,
    "ms": 1,
}

_MAX_NANOSECONDS = 2**63 - 1


def _get(obj: Any, *names: str, default: Any = None) -> Any:
    for name in names:
        if isinstance(obj, dict):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return default


def _format_bool(value: Any) -> str:
    return "true" if value else "false"


def _format_created(value: Optional[datetime]) -> str:
    return (value if value is not None else _EPOCH).strftime(DATE_TIME_FORMAT)


def users_table(users: Sequence[Any]) -> list[list[str]]:
    """Turn users into table rows, headed by the column names."""
    table = [list(USERS_HEADER)]
    for user in users:
        table.append(
            [
                str(_get(user, "id", default="")),
                str(_get(user, "name", default="")),
                _format_created(_get(user, "created_at", "createdAt")),
            ]
        )
    return table


def preauthkeys_table(
    keys: Sequence[Any], now: Optional[datetime] = None
) -> list[list[str]]:
    """Turn pre-auth keys into table rows, headed by the column names.

    Expiration times are coloured against ``now``; ephemeral keys show
    ``N/A`` as their reusability.
    """
    table = [list(PREAUTHKEYS_HEADER)]
    for key in keys:
        expiration = _get(key, "expiration")
        expiration_text = "-" if expiration is None else colour_time(expiration, now)
        ephemeral = bool(_get(key, "ephemeral", default=False))
        reusable = "N/A" if ephemeral else _format_bool(_get(key, "reusable", default=False))
        tags = _get(key, "acl_tags", "aclTags", default=None) or []
        table.append(
            [
                str(_get(key, "id", default="")),
                str(_get(key, "key", default="")),
                reusable,
                _format_bool(ephemeral),
                _format_bool(_get(key, "used", default=False)),
                expiration_text,
                _format_created(_get(key, "created_at", "createdAt")),
                ",".join(tags),
            ]
        )
    return table


def parse_expiration(text: str) -> timedelta:
    """Parse a human-readable period such as '30m', '24h' or '1w2d'.

    Units run from years down to milliseconds and must appear in that order.
    """
    if text == "0":
        return timedelta(0)
    if text == "":
        raise ValueError("empty duration string")
    match = _EXPIRATION_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"not a valid duration string: {text!r}")
    milliseconds = sum(
        int(value) * _UNIT_MILLISECONDS[unit]
        for unit, value in match.groupdict().items()
        if value is not None
    )
    if milliseconds * 1_000_000 > _MAX_NANOSECONDS:
        raise ValueError(f"duration out of range: {text!r}")
    return timedelta(milliseconds=milliseconds)