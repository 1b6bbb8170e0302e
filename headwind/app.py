"""Server-side helpers: database connection strings, socket cleanup and state tracking."""

from __future__ import annotations

import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from .models import User

POSTGRES = "postgres"
SQLITE = "sqlite3"

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}

UserRef = Union[User, str]


class UnsupportedDatabase(ValueError):
    """Raised when the configured database type is not supported."""


def _parse_bool(text: str) -> Optional[bool]:
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return None


def build_db_string(
    db_type: str,
    host: str = "",
    name: str = "",
    user: str = "",
    ssl: str = "",
    port: int = 0,
    password: str = "",
    path: str = "",
) -> str:
    """Build the connection string for a postgres or sqlite3 database."""
    if db_type == POSTGRES:
        parts = [f"host={host} dbname={name} user={user}"]
        ssl_enabled = _parse_bool(ssl)
        if ssl_enabled is None:
            parts.append(f"sslmode={ssl}")
        elif not ssl_enabled:
            parts.append("sslmode=disable")
        if port:
            parts.append(f"port={port}")
        if password:
            parts.append(f"password={password}")
        return " ".join(parts)
    if db_type == SQLITE:
        return path
    raise UnsupportedDatabase(f"unsupported DB: {db_type!r}")


def ensure_unix_socket_absent(path: Union[str, Path]) -> None:
    """Remove a leftover socket file at path; a missing file is fine."""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _user_name(user: UserRef) -> str:
    return user.name if isinstance(user, User) else user


class StateTracker:
    """Remembers, per user, when the network state last changed."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utc_now
        self._lock = threading.Lock()
        self._changes: dict[str, datetime] = {}

    def set_now(self, users: Iterable[UserRef]) -> datetime:
        """Record the current time as the last change for every given user."""
        now = self._clock()
        with self._lock:
            for user in users:
                self._changes[_user_name(user)] = now
        return now

    def last_change(self, *args: UserRef) -> datetime:
        """Return the latest change among the given users, or among all users.

        When nothing is recorded for them, the current time is returned.
        """
        with self._lock:
            if args:
                times = [
                    self._changes[name]
                    for name in map(_user_name, args)
                    if name in self._changes
                ]
            else:
                times = list(self._changes.values())
        if not times:
            return self._clock()
        return max(times)