"""Adapters package - Bridge between the engine and connected clients.

This package contains the wire events, the per-connection event bus,
identity providers and the execution rate limiter used by the server.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "IdentityProvider",
    "AnonymousIdentityProvider",
    "StaticTokenIdentityProvider",
    "SlidingWindowRateLimiter",
]

from codebridge.adapters.auth import (
    AnonymousIdentityProvider,
    IdentityProvider,
    StaticTokenIdentityProvider,
)
from codebridge.adapters.event_bus import EventBus
from codebridge.adapters.rate_limit import SlidingWindowRateLimiter
