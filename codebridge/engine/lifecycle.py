"""Session and process state machines.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransition rather than silently proceeding.

ExecutionSession:

    PENDING ──> HYDRATING ──> RUNNING ──> RECONCILING ──┬──> COMPLETED
       │            │            │                      ├──> FAILED
       │            │            │                      └──> CANCELLED
       └────────────┴────────────┴──> FAILED | CANCELLED

Process supervisor:

    IDLE ──> SPAWNING ──┬──> RUNNING ──┬──> COMPLETED
                        │              ├──> FAILED
                        └──> FAILED    └──> TERMINATED
"""
from __future__ import annotations

from .errors import InvalidTransition
from .models import ProcessState, SessionState

SESSION_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.PENDING: {
        SessionState.HYDRATING,
        SessionState.FAILED,
        SessionState.CANCELLED,
    },
    SessionState.HYDRATING: {
        SessionState.RUNNING,
        SessionState.RECONCILING,  # stop requested before spawn
        SessionState.FAILED,
        SessionState.CANCELLED,
    },
    SessionState.RUNNING: {
        SessionState.RECONCILING,
        SessionState.FAILED,
        SessionState.CANCELLED,
    },
    SessionState.RECONCILING: {
        SessionState.COMPLETED,
        SessionState.FAILED,
        SessionState.CANCELLED,
    },
    SessionState.COMPLETED: set(),
    SessionState.FAILED: set(),
    SessionState.CANCELLED: set(),
}

PROCESS_TRANSITIONS: dict[ProcessState, set[ProcessState]] = {
    ProcessState.IDLE: {ProcessState.SPAWNING},
    ProcessState.SPAWNING: {
        ProcessState.RUNNING,
        ProcessState.FAILED,
    },
    ProcessState.RUNNING: {
        ProcessState.COMPLETED,
        ProcessState.FAILED,
        ProcessState.TERMINATED,
    },
    ProcessState.COMPLETED: set(),
    ProcessState.FAILED: set(),
    ProcessState.TERMINATED: set(),
}


def _validate(table: dict, current, target) -> None:
    allowed = table.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise InvalidTransition(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def validate_session_transition(current: SessionState, target: SessionState) -> None:
    """Validate a session state transition. Raises InvalidTransition if invalid."""
    _validate(SESSION_TRANSITIONS, current, target)


def validate_process_transition(current: ProcessState, target: ProcessState) -> None:
    """Validate a supervisor state transition. Raises InvalidTransition if invalid."""
    _validate(PROCESS_TRANSITIONS, current, target)
