"""Wire events exchanged with bridge clients.

The engine reports through plain dicts carrying an ``"event"`` key and
snake_case fields. ``dict_to_event`` parses them into typed dataclasses;
``event_to_dict`` turns a dataclass into the JSON frame sent on the
socket: ``{"event": <name>, "data": {<camelCase fields>}}``.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from codebridge.engine.errors import BridgeError


@dataclass
class BridgeEvent:
    """Base event sent to a client."""
    event_type: str = ""


@dataclass
class Connected(BridgeEvent):
    event_type: str = "connected"
    user_id: str = ""


@dataclass
class ExecutionStarted(BridgeEvent):
    event_type: str = "execution_started"
    execution_id: str = ""
    project_id: str = ""


@dataclass
class Output(BridgeEvent):
    event_type: str = "output"
    execution_id: str = ""
    content: str = ""
    timestamp: int = 0
    stream: str = "primary"
    sequence: int = 0


@dataclass
class Complete(BridgeEvent):
    event_type: str = "complete"
    execution_id: str = ""
    project_id: str = ""
    status: str = "success"
    exit_code: int | None = None
    files_changed: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    sync_errors: list[dict[str, str]] = field(default_factory=list)
    duration: int = 0
    error: str | None = None


@dataclass
class ExecutionStopped(BridgeEvent):
    event_type: str = "execution_stopped"
    execution_id: str = ""
    reason: str = "client"


@dataclass
class ErrorEvent(BridgeEvent):
    event_type: str = "error"
    code: str = ""
    message: str = ""
    execution_id: str | None = None


@dataclass
class SyncComplete(BridgeEvent):
    event_type: str = "file:sync_complete"
    status: str = "success"
    action: str = ""
    project_id: str | None = None
    changes: list[str] | None = None
    deleted: list[str] | None = None
    failures: list[dict[str, str]] | None = None


_EVENT_MAP: dict[str, type[BridgeEvent]] = {
    "connected": Connected,
    "execution_started": ExecutionStarted,
    "output": Output,
    "complete": Complete,
    "execution_stopped": ExecutionStopped,
    "error": ErrorEvent,
    "file:sync_complete": SyncComplete,
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def event_to_dict(event: BridgeEvent) -> dict[str, Any]:
    """Convert a typed event into its wire frame. ``None`` fields are omitted."""
    data: dict[str, Any] = {}
    for name in event.__dataclass_fields__:
        if name == "event_type":
            continue
        value = getattr(event, name)
        if value is not None:
            data[_camel(name)] = value
    return {"event": event.event_type, "data": data}


def dict_to_event(data: dict[str, Any]) -> BridgeEvent:
    """Convert an engine event dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, BridgeEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event_type" not in filtered:
        filtered["event_type"] = event_type
    return cls(**filtered)


def error_event(exc: BridgeError, execution_id: str | None = None) -> ErrorEvent:
    return ErrorEvent(code=exc.code, message=exc.message, execution_id=execution_id)


@dataclass(frozen=True)
class ClientMessage:
    """An inbound frame: ``{"event": <name>, "data": {...}}``."""
    event: str
    data: dict[str, Any]


def parse_client_message(raw: str) -> ClientMessage:
    """Parse an inbound text frame.

    Raises:
        BridgeError: code ``BAD_MESSAGE`` for anything that is not a JSON
            object with a string ``event`` and an object ``data``.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise BridgeError(f"Malformed JSON: {exc}", code="BAD_MESSAGE") from exc
    if not isinstance(payload, dict):
        raise BridgeError("Message must be a JSON object", code="BAD_MESSAGE")
    event = payload.get("event")
    if not isinstance(event, str) or not event:
        raise BridgeError("Message is missing an event name", code="BAD_MESSAGE")
    data = payload.get("data", {})
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise BridgeError("Message data must be an object", code="BAD_MESSAGE")
    return ClientMessage(event=event, data=data)
