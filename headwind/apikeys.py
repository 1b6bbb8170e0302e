"""API keys for remote authentication, stored in SQLite with bcrypt hashes."""

from __future__ import annotations

import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

import bcrypt

API_PREFIX_LENGTH = 7
API_KEY_LENGTH = 32
BCRYPT_COST = 10

_SCHEMA = """
CREATE TABLE IF NOT EXISTS api_keys (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    prefix TEXT UNIQUE NOT NULL,
    hash BLOB NOT NULL,
    created_at TEXT,
    expiration TEXT,
    last_seen TEXT
)
"""


class APIKeyError(Exception):
    """Raised when an API key cannot be parsed, stored or verified."""


class APIKeyNotFound(APIKeyError, LookupError):
    """Raised when no API key matches a lookup."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    return None if value is None else value.astimezone(timezone.utc)


def _dump(value: Optional[datetime]) -> Optional[str]:
    value = _to_utc(value)
    return None if value is None else value.isoformat()


def _load(value: Optional[str]) -> Optional[datetime]:
    return None if value is None else datetime.fromisoformat(value)


def _timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class APIKey:
    """A stored API key; only the hash of its secret part is kept."""

    id: int
    prefix: str
    hash: bytes
    created_at: Optional[datetime] = None
    expiration: Optional[datetime] = None
    last_seen: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Return the public fields, timestamps in RFC 3339 form."""
        data: dict[str, Any] = {"id": self.id, "prefix": self.prefix}
        if self.expiration is not None:
            data["expiration"] = _timestamp(self.expiration)
        if self.created_at is not None:
            data["createdAt"] = _timestamp(self.created_at)
        if self.last_seen is not None:
            data["lastSeen"] = _timestamp(self.last_seen)
        return data


class APIKeyStore:
    """Creates, looks up, expires and validates API keys."""

    def __init__(self, path: Union[str, Path] = ":memory:") -> None:
        self._conn = sqlite3.connect(str(path))
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            self._conn.execute(_SCHEMA)

    def __enter__(self) -> "APIKeyStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying database."""
        self._conn.close()

    @staticmethod
    def _row_to_key(row: sqlite3.Row) -> APIKey:
        return APIKey(
            id=row["id"],
            prefix=row["prefix"],
            hash=bytes(row["hash"]),
            created_at=_load(row["created_at"]),
            expiration=_load(row["expiration"]),
            last_seen=_load(row["last_seen"]),
        )

    def create(self, expiration: Optional[datetime] = None) -> tuple[str, APIKey]:
        """Create a key; the full key text is returned only here."""
        prefix = secrets.token_urlsafe(API_PREFIX_LENGTH)
        secret_part = secrets.token_urlsafe(API_KEY_LENGTH)
        hashed = bcrypt.hashpw(secret_part.encode(), bcrypt.gensalt(rounds=BCRYPT_COST))
        created = _now()
        expiration = _to_utc(expiration)
        try:
            with self._conn:
                cursor = self._conn.execute(
                    "INSERT INTO api_keys (prefix, hash, created_at, expiration) VALUES (?, ?, ?, ?)",
                    (prefix, hashed, _dump(created), _dump(expiration)),
                )
        except sqlite3.Error as err:
            raise APIKeyError(f"failed to save API key to database: {err}") from err
        key = APIKey(
            id=cursor.lastrowid,
            prefix=prefix,
            hash=hashed,
            created_at=created,
            expiration=expiration,
        )
        return f"{prefix}.{secret_part}", key

    def list(self) -> list[APIKey]:
        """Return every stored key."""
        rows = self._conn.execute("SELECT * FROM api_keys ORDER BY id").fetchall()
        return [self._row_to_key(row) for row in rows]

    def get(self, prefix: str) -> APIKey:
        """Return the key with the given prefix."""
        row = self._conn.execute("SELECT * FROM api_keys WHERE prefix = ?", (prefix,)).fetchone()
        if row is None:
            raise APIKeyNotFound(f"no API key with prefix {prefix!r}")
        return self._row_to_key(row)

    def get_by_id(self, key_id: int) -> APIKey:
        """Return the key with the given id."""
        row = self._conn.execute("SELECT * FROM api_keys WHERE id = ?", (key_id,)).fetchone()
        if row is None:
            raise APIKeyNotFound(f"no API key with id {key_id}")
        return self._row_to_key(row)

    def destroy(self, key: APIKey) -> None:
        """Delete a key; fails if it does not exist."""
        with self._conn:
            cursor = self._conn.execute("DELETE FROM api_keys WHERE id = ?", (key.id,))
        if cursor.rowcount == 0:
            raise APIKeyNotFound(f"no API key with id {key.id}")

    def expire(self, key: APIKey) -> None:
        """Mark a key as expired now, updating the given record too."""
        now = _now()
        with self._conn:
            self._conn.execute(
                "UPDATE api_keys SET expiration = ? WHERE id = ?", (_dump(now), key.id)
            )
        key.expiration = now

    def validate(self, key_str: str) -> bool:
        """Check a full key: False when expired, an error when it does not match."""
        prefix, sep, secret_part = key_str.partition(".")
        if not sep:
            raise APIKeyError("Failed to parse ApiKey")
        try:
            key = self.get(prefix)
        except APIKeyNotFound as err:
            raise APIKeyNotFound(f"failed to validate api key: {err}") from err
        if key.expiration is not None and key.expiration < _now():
            return False
        if not bcrypt.checkpw(secret_part.encode(), key.hash):
            raise APIKeyError("API key does not match its stored hash")
        return True