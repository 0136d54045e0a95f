from __future__ import annotations

import json

import pytest

from codebridge.adapters.auth import (
    AnonymousIdentityProvider,
    IdentityProvider,
    StaticTokenIdentityProvider,
    extract_token,
    provider_from_config,
)
from codebridge.adapters.event_bus import EventBus
from codebridge.adapters.events import (
    BridgeEvent,
    Complete,
    ErrorEvent,
    ExecutionStopped,
    Output,
    SyncComplete,
    dict_to_event,
    error_event,
    event_to_dict,
    parse_client_message,
)
from codebridge.adapters.rate_limit import SlidingWindowRateLimiter
from codebridge.engine.errors import AuthenticationError, BridgeError, RateLimitExceeded, SpawnError


# ── Events ──


def test_output_event_wire_frame() -> None:
    event = dict_to_event({
        "event": "output",
        "execution_id": "exec_1",
        "content": "hello\n",
        "timestamp": 1700000000000,
        "stream": "primary",
        "sequence": 1,
        "unexpected": "ignored",
    })
    assert isinstance(event, Output)
    assert event_to_dict(event) == {
        "event": "output",
        "data": {
            "executionId": "exec_1",
            "content": "hello\n",
            "timestamp": 1700000000000,
            "stream": "primary",
            "sequence": 1,
        },
    }


def test_complete_event_omits_missing_error() -> None:
    frame = event_to_dict(dict_to_event({
        "event": "complete",
        "execution_id": "exec_1",
        "project_id": "proj",
        "status": "success",
        "exit_code": 0,
        "files_changed": ["a.txt"],
        "files_deleted": [],
        "sync_errors": [],
        "duration": 42,
        "error": None,
    }))
    assert frame["event"] == "complete"
    assert frame["data"]["filesChanged"] == ["a.txt"]
    assert frame["data"]["exitCode"] == 0
    assert frame["data"]["syncErrors"] == []
    assert "error" not in frame["data"]


def test_error_and_stop_events() -> None:
    frame = event_to_dict(error_event(SpawnError("claude", "not found"), "exec_9"))
    assert frame == {
        "event": "error",
        "data": {
            "code": "SPAWN_FAILED",
            "message": "Failed to launch claude: not found",
            "executionId": "exec_9",
        },
    }
    assert "executionId" not in event_to_dict(ErrorEvent(code="BAD_MESSAGE", message="x"))["data"]
    assert event_to_dict(ExecutionStopped(execution_id="e"))["event"] == "execution_stopped"
    sync = event_to_dict(SyncComplete(status="success", action="download", changes=["a"]))
    assert sync == {"event": "file:sync_complete", "data": {"status": "success", "action": "download", "changes": ["a"]}}


def test_unknown_engine_event_falls_back_to_base() -> None:
    event = dict_to_event({"event": "mystery"})
    assert type(event) is BridgeEvent
    assert event.event_type == "mystery"


def test_parse_client_message() -> None:
    msg = parse_client_message(json.dumps({"event": "execute", "data": {"projectId": "p", "command": "c"}}))
    assert msg.event == "execute"
    assert msg.data == {"projectId": "p", "command": "c"}
    assert parse_client_message('{"event": "stop"}').data == {}


@pytest.mark.parametrize(
    "raw",
    ["not json", "[1, 2]", '{"data": {}}', '{"event": ""}', '{"event": "stop", "data": [1]}'],
)
def test_parse_client_message_rejects_malformed(raw: str) -> None:
    with pytest.raises(BridgeError) as exc_info:
        parse_client_message(raw)
    assert exc_info.value.code == "BAD_MESSAGE"


# ── Event bus ──


@pytest.mark.asyncio
async def test_event_bus_preserves_order_and_drains_on_close() -> None:
    bus = EventBus()
    callback = bus.make_callback()
    await callback({"event": "execution_started", "execution_id": "e", "project_id": "p"})
    for i in range(3):
        await callback({"event": "output", "execution_id": "e", "content": str(i), "sequence": i + 1})
    await bus.emit(Complete(execution_id="e"))
    bus.close()

    received = [event async for event in bus.consume()]
    assert [e.event_type for e in received] == ["execution_started", "output", "output", "output", "complete"]
    assert [e.content for e in received if isinstance(e, Output)] == ["0", "1", "2"]

    await callback({"event": "output", "execution_id": "e"})
    assert bus.dropped == 1


@pytest.mark.asyncio
async def test_event_bus_sheds_output_but_keeps_lifecycle_events() -> None:
    bus = EventBus(maxsize=2)
    for i in range(3):
        bus.publish(Output(execution_id="e", sequence=i))
    bus.publish(ExecutionStopped(execution_id="e"))
    bus.publish(Complete(execution_id="e", status="cancelled"))
    bus.publish(ErrorEvent(code="SPAWN_FAILED", message="x", execution_id="f"))

    assert bus.dropped == 1
    drained = bus.drain()
    assert [e.event_type for e in drained] == [
        "output", "output", "execution_stopped", "complete", "error",
    ]
    assert [e.sequence for e in drained if isinstance(e, Output)] == [0, 1]


# ── Auth ──


@pytest.mark.asyncio
async def test_static_token_provider() -> None:
    provider = StaticTokenIdentityProvider({"tok-a": "alice"})
    assert isinstance(provider, IdentityProvider)
    assert await provider.verify("tok-a") == "alice"
    with pytest.raises(AuthenticationError):
        await provider.verify("wrong")
    with pytest.raises(AuthenticationError):
        await provider.verify(None)


@pytest.mark.asyncio
async def test_anonymous_provider_and_factory() -> None:
    assert await AnonymousIdentityProvider().verify(None) == "anonymous"
    assert isinstance(provider_from_config(False, {}), AnonymousIdentityProvider)
    assert isinstance(provider_from_config(True, {"t": "u"}), StaticTokenIdentityProvider)


def test_extract_token() -> None:
    assert extract_token({"token": "q"}, {"Authorization": "Bearer h"}) == "q"
    assert extract_token({}, {"Authorization": "Bearer h"}) == "h"
    assert extract_token({}, {"Authorization": "Basic abc"}) is None
    assert extract_token({}, {}) is None


# ── Rate limiting ──


def test_sliding_window_rate_limiter() -> None:
    now = [1000.0]
    limiter = SlidingWindowRateLimiter(max_events=2, window_seconds=60, clock=lambda: now[0])

    assert not limiter.is_limited("alice")
    assert not limiter.is_limited("alice")
    assert limiter.is_limited("alice")
    assert not limiter.is_limited("bob")
    assert limiter.remaining("alice") == 0
    with pytest.raises(RateLimitExceeded):
        limiter.check("alice")

    now[0] += 61
    assert limiter.remaining("alice") == 2
    assert not limiter.is_limited("alice")


def test_rate_limiter_disabled() -> None:
    limiter = SlidingWindowRateLimiter(max_events=0)
    assert not limiter.enabled
    assert not any(limiter.is_limited("u") for _ in range(100))
