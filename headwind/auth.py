"""Bearer-token authentication of API requests against stored API keys."""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Optional

from .apikeys import APIKeyError, APIKeyStore

log = logging.getLogger(__name__)

AUTH_PREFIX = "Bearer "


class AuthenticationError(Exception):
    """Raised when a request cannot be authenticated.

    ``status`` is the HTTP status the request should be answered with.
    """

    def __init__(self, message: str, status: HTTPStatus = HTTPStatus.UNAUTHORIZED) -> None:
        super().__init__(message)
        self.status = status


def parse_bearer_token(header: Optional[str]) -> str:
    """Return the token of an ``Authorization: Bearer <token>`` header value."""
    if header is None or not header.startswith(AUTH_PREFIX):
        raise AuthenticationError(
            'missing "Bearer " prefix in "Authorization" header',
            HTTPStatus.UNAUTHORIZED,
        )
    return header[len(AUTH_PREFIX):]


def check_authorization(store: APIKeyStore, header: Optional[str]) -> bool:
    """Validate an Authorization header value against the key store.

    Returns True when the key is valid; raises AuthenticationError otherwise,
    with an internal-error status when the key could not be validated at all.
    """
    token = parse_bearer_token(header)
    try:
        valid = store.validate(token)
    except APIKeyError as err:
        log.error("failed to validate token: %s", err)
        raise AuthenticationError(
            "failed to validate token", HTTPStatus.INTERNAL_SERVER_ERROR
        ) from err
    if not valid:
        log.info("invalid token")
        raise AuthenticationError("invalid token", HTTPStatus.UNAUTHORIZED)
    return True