"""Core data models for the execution bridge.

All dataclasses and enums in one place to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """ExecutionSession lifecycle states. See lifecycle.py for transition rules."""
    PENDING = "pending"
    HYDRATING = "hydrating"
    RUNNING = "running"
    RECONCILING = "reconciling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SESSION_STATES


TERMINAL_SESSION_STATES = frozenset({
    SessionState.COMPLETED,
    SessionState.FAILED,
    SessionState.CANCELLED,
})


class ProcessState(str, Enum):
    """Process supervisor states."""
    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ProcessState.COMPLETED,
            ProcessState.FAILED,
            ProcessState.TERMINATED,
        )


class StreamName(str, Enum):
    PRIMARY = "primary"
    ERROR = "error"


class SyncAction(str, Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"


def _make_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex[:12]}"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class FileRecord:
    """A project file as held by the durable store."""
    path: str
    content: str
    content_hash: str = ""
    size: int = 0


@dataclass(frozen=True)
class OutputChunk:
    """One piece of child output. Sequence numbers are per stream."""
    stream: StreamName
    payload: str
    sequence: int
    timestamp: int = field(default_factory=_now_ms)


@dataclass(frozen=True)
class ProcessExited:
    """Terminal event of a supervised process. Always delivered last."""
    state: ProcessState
    exit_code: int | None
    error: str | None = None
    duration_seconds: float = 0.0


ProcessEvent = OutputChunk | ProcessExited


@dataclass(frozen=True)
class SyncFailure:
    path: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "error": self.error}


@dataclass
class SyncReport:
    """Outcome of one reconciliation pass."""
    changed: list[str] = field(default_factory=list)
    failed: list[SyncFailure] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    scanned: int = 0

    @property
    def partial(self) -> bool:
        return bool(self.failed)


@dataclass
class ExecutionSession:
    """One supervised run of the agent command against a project.

    Owned exclusively by SessionManager. The private fields hold runtime
    handles and are never serialized.
    """
    project_id: str
    command: str
    user_id: str = "anonymous"
    execution_id: str = field(default_factory=_make_execution_id)
    state: SessionState = SessionState.PENDING
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    exit_code: int | None = None
    files_changed: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    sync_failures: list[SyncFailure] = field(default_factory=list)
    output_sequence: int = 0
    stop_reason: str | None = None
    error: str | None = None
    _task: asyncio.Task | None = field(default=None, repr=False)
    _supervisor: Any = field(default=None, repr=False)

    @property
    def stop_requested(self) -> bool:
        return self.stop_reason is not None

    @property
    def duration_ms(self) -> int:
        end = self.ended_at if self.ended_at is not None else time.time()
        return max(0, int((end - self.started_at) * 1000))


@dataclass(frozen=True)
class ExecutionResult:
    """Terminal summary of a session, as delivered in the ``complete`` event."""
    execution_id: str
    project_id: str
    status: str
    exit_code: int | None
    files_changed: list[str]
    files_deleted: list[str]
    sync_failures: list[SyncFailure]
    duration_ms: int
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "executionId": self.execution_id,
            "projectId": self.project_id,
            "status": self.status,
            "exitCode": self.exit_code,
            "filesChanged": list(self.files_changed),
            "filesDeleted": list(self.files_deleted),
            "syncErrors": [f.to_dict() for f in self.sync_failures],
            "duration": self.duration_ms,
        }
        if self.error:
            payload["error"] = self.error
        return payload
