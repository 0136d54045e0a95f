"""Identity providers used by the transport to resolve a user id.

A provider maps a bearer token to a user id or raises
``AuthenticationError``. The engine never sees tokens.
"""
from __future__ import annotations

import hmac
import logging
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from codebridge.engine.errors import AuthenticationError

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"


@runtime_checkable
class IdentityProvider(Protocol):
    async def verify(self, token: str | None) -> str: ...


class AnonymousIdentityProvider:
    """Auth disabled: every connection is the same local user."""

    def __init__(self, user_id: str = ANONYMOUS_USER) -> None:
        self._user_id = user_id

    async def verify(self, token: str | None) -> str:
        return self._user_id


class StaticTokenIdentityProvider:
    """Tokens configured up front, e.g. ``BRIDGE_AUTH_TOKENS=tok1:alice``."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = dict(tokens)
        if not self._tokens:
            logger.warning("Token auth enabled with no tokens configured; all connections will be refused")

    async def verify(self, token: str | None) -> str:
        if not token:
            raise AuthenticationError("Authentication token required")
        for known, user_id in self._tokens.items():
            if hmac.compare_digest(known.encode("utf-8"), token.encode("utf-8")):
                return user_id
        raise AuthenticationError("Invalid authentication token")


def provider_from_config(auth_enabled: bool, tokens: Mapping[str, str]) -> IdentityProvider:
    if auth_enabled:
        return StaticTokenIdentityProvider(tokens)
    return AnonymousIdentityProvider()


def extract_token(query: Mapping[str, str], headers: Mapping[str, str]) -> str | None:
    """Token from ``?token=`` or an ``Authorization: Bearer`` header."""
    token = query.get("token")
    if token:
        return token
    header = headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None
