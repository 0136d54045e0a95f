"""Per-connection outbox bridging engine callbacks to a socket writer.

The SessionManager fires events via callback. The EventBus queues them
in arrival order for the connection's writer loop. Enqueueing never
suspends the caller, so an event published after another is always
delivered after it.

Only ``output`` events are shed when the backlog reaches ``maxsize``;
lifecycle events (``execution_started``, ``execution_stopped``,
``complete``, ``error``) are always queued, so a slow client still
learns how every session ended.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from codebridge.adapters.events import BridgeEvent, dict_to_event

logger = logging.getLogger(__name__)

_SHEDDABLE_EVENTS = frozenset({"output"})


class EventBus:
    """FIFO queue between engine callbacks and one client connection."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[BridgeEvent] = asyncio.Queue()
        self._maxsize = maxsize
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback handed to SessionManager.execute as ``emit``."""
        self.publish(dict_to_event(data))

    def make_callback(self):
        """Return the async callback for SessionManager.execute."""
        return self._callback

    async def emit(self, event: BridgeEvent) -> None:
        self.publish(event)

    def publish(self, event: BridgeEvent) -> None:
        if self._closed:
            logger.debug("EventBus closed, dropping %s", event.event_type)
            self.dropped += 1
            return
        if self._is_backlogged() and event.event_type in _SHEDDABLE_EVENTS:
            self.dropped += 1
            logger.warning(
                "EventBus queue full, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )
            return
        self._queue.put_nowait(event)

    def _is_backlogged(self) -> bool:
        return self._maxsize > 0 and self._queue.qsize() >= self._maxsize

    async def consume(self) -> AsyncIterator[BridgeEvent]:
        """Yield events as they arrive. Stops on close() once drained."""
        while True:
            if self._closed and self._queue.empty():
                break
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop accepting events; consume() ends after the backlog."""
        self._closed = True

    def drain(self) -> list[BridgeEvent]:
        """Remove and return everything still queued."""
        pending: list[BridgeEvent] = []
        while not self._queue.empty():
            pending.append(self._queue.get_nowait())
        return pending
