"""Execution engine: validation, process supervision and session lifecycle."""
from .models import (
    ExecutionResult,
    ExecutionSession,
    FileRecord,
    OutputChunk,
    ProcessExited,
    ProcessState,
    SessionState,
    StreamName,
    SyncAction,
    SyncFailure,
    SyncReport,
)
from .config import BridgeConfig, load_yaml_config
from .errors import (
    AdmissionRejected,
    AuthenticationError,
    BridgeError,
    DangerousCommandError,
    ExecutionNotFound,
    ExecutionRuntimeError,
    HydrationError,
    InvalidTransition,
    RateLimitExceeded,
    SpawnError,
    SupervisorBusyError,
    SyncError,
    TransportError,
    ValidationError,
)
from .hash_store import HashStore, hash_content
from .process_supervisor import ProcessSupervisor
from .sanitizer import sanitize_path, validate_command, validate_project_id

__all__ = [
    # Models
    "ExecutionResult",
    "ExecutionSession",
    "FileRecord",
    "OutputChunk",
    "ProcessExited",
    "ProcessState",
    "SessionState",
    "StreamName",
    "SyncAction",
    "SyncFailure",
    "SyncReport",
    # Config
    "BridgeConfig",
    "load_yaml_config",
    # Errors
    "AdmissionRejected",
    "AuthenticationError",
    "BridgeError",
    "DangerousCommandError",
    "ExecutionNotFound",
    "ExecutionRuntimeError",
    "HydrationError",
    "InvalidTransition",
    "RateLimitExceeded",
    "SpawnError",
    "SupervisorBusyError",
    "SyncError",
    "TransportError",
    "ValidationError",
    # Components
    "HashStore",
    "hash_content",
    "ProcessSupervisor",
    "sanitize_path",
    "validate_command",
    "validate_project_id",
    # Lazy import (imports shared services)
    "SessionManager",
]


def __getattr__(name: str):
    if name == "SessionManager":
        from .session_manager import SessionManager
        return SessionManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
