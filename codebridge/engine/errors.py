"""Exception hierarchy for the execution bridge.

Every failure carries a machine-readable ``code`` and a human-readable
message so the transport can forward it as a wire ``error`` event.
"""
from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base exception for all bridge errors."""

    code: str = "BRIDGE_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)

    def to_payload(self, execution_id: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if execution_id:
            payload["executionId"] = execution_id
        return payload


class ValidationError(BridgeError):
    """Rejected command, path or request shape. Raised before any side effect."""

    code = "VALIDATION_ERROR"


class DangerousCommandError(ValidationError):
    """Command matched a deny-listed pattern."""

    code = "DANGEROUS_COMMAND"

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        super().__init__("Command contains potentially dangerous patterns")


class AdmissionRejected(BridgeError):
    """Another session (or a manual sync) already holds the project."""

    code = "ADMISSION_REJECTED"

    def __init__(self, project_id: str, active_execution_id: str | None = None) -> None:
        self.project_id = project_id
        self.active_execution_id = active_execution_id
        holder = f" (execution {active_execution_id})" if active_execution_id else ""
        super().__init__(
            f"Project {project_id} already has an active session{holder}; retry later"
        )


class SpawnError(BridgeError):
    """The agent CLI could not be launched."""

    code = "SPAWN_FAILED"

    def __init__(self, executable: str, reason: str) -> None:
        self.executable = executable
        self.reason = reason
        super().__init__(f"Failed to launch {executable}: {reason}")


class SupervisorBusyError(BridgeError):
    """A process is already attached to this supervisor."""

    code = "SUPERVISOR_BUSY"

    def __init__(self) -> None:
        super().__init__("A process is already running on this supervisor")


class ExecutionRuntimeError(BridgeError):
    """The agent process exited non-zero or reported an error."""

    code = "EXECUTION_FAILED"

    def __init__(self, exit_code: int | None, detail: str = "") -> None:
        self.exit_code = exit_code
        msg = f"Process exited with code {exit_code}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class HydrationError(BridgeError):
    """Working directory could not be materialized from the store."""

    code = "HYDRATION_FAILED"


class SyncError(BridgeError):
    """One or more files could not be synchronized."""

    code = "FILE_SYNC_FAILED"

    def __init__(self, message: str, failures: list[Any] | None = None) -> None:
        self.failures = list(failures or [])
        super().__init__(message)


class TransportError(BridgeError):
    """The client connection went away while events were pending."""

    code = "TRANSPORT_ERROR"


class ExecutionNotFound(BridgeError):
    """No active execution matches the requested id."""

    code = "EXECUTION_NOT_FOUND"

    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        super().__init__(f"No active execution with id {execution_id}")


class RateLimitExceeded(BridgeError):
    code = "RATE_LIMIT_EXCEEDED"


class AuthenticationError(BridgeError):
    code = "UNAUTHORIZED"


class InvalidTransition(BridgeError, ValueError):
    """A state machine was asked to make a transition it does not allow."""

    code = "INVALID_TRANSITION"
