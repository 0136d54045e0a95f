"""Execution sessions: admission, lifecycle and result delivery.

The SessionManager is the only owner of ExecutionSession objects. It
admits at most one session (or manual sync) per project, drives each
admitted session through

    hydrate -> run -> reconcile -> teardown -> release -> complete

and reports every step through the session's ``emit`` callback. Events
are plain dicts with an ``"event"`` key, matching what
``codebridge.adapters.events.dict_to_event`` parses.

Admission is check-and-register with no suspension point in between, so
two executes for the same project arriving in the same loop iteration
can never both be admitted.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from .config import BridgeConfig
from .errors import (
    AdmissionRejected,
    BridgeError,
    DangerousCommandError,
    ExecutionNotFound,
    ExecutionRuntimeError,
    HydrationError,
    SpawnError,
    SyncError,
    ValidationError,
)
from .lifecycle import validate_session_transition
from .models import (
    ExecutionResult,
    ExecutionSession,
    OutputChunk,
    ProcessExited,
    SessionState,
    SyncAction,
)
from .process_supervisor import ProcessSupervisor
from .sanitizer import compile_deny_patterns, validate_command, validate_project_id

from codebridge.shared.services.audit import AuditEventType, AuditLogger
from codebridge.shared.services.metrics import BridgeMetrics
from codebridge.shared.services.sync_engine import SyncEngine
from codebridge.shared.services.workdir import WorkingDirectoryManager

logger = logging.getLogger(__name__)

EmitCallback = Callable[[dict[str, Any]], Awaitable[None]]

STOP_REASONS = ("client", "timeout", "shutdown")


async def _discard(_event: dict[str, Any]) -> None:
    return None


class SessionManager:
    """Admits, runs and tracks execution sessions."""

    def __init__(
        self,
        config: BridgeConfig,
        sync_engine: SyncEngine,
        workdirs: WorkingDirectoryManager,
        audit: AuditLogger | None = None,
        metrics: BridgeMetrics | None = None,
        supervisor_factory: Callable[[], ProcessSupervisor] | None = None,
    ) -> None:
        self._config = config
        self._sync = sync_engine
        self._workdirs = workdirs
        self._audit = audit or AuditLogger(enabled=False)
        self._metrics = metrics or BridgeMetrics()
        self._supervisor_factory = supervisor_factory or (
            lambda: ProcessSupervisor(grace_seconds=config.stop_grace_seconds)
        )
        self._deny_patterns = compile_deny_patterns(config.extra_deny_patterns)

        # project_id -> execution_id holding admission
        self._active: dict[str, str] = {}
        # project ids held by a manual file:sync
        self._syncing: set[str] = set()
        self._sessions: dict[str, ExecutionSession] = {}
        self._emitters: dict[str, EmitCallback] = {}
        self._results: OrderedDict[str, ExecutionResult] = OrderedDict()
        self._closing = False

    # ── Queries ──

    def get_session(self, execution_id: str) -> ExecutionSession | None:
        return self._sessions.get(execution_id)

    def get_result(self, execution_id: str) -> ExecutionResult | None:
        return self._results.get(execution_id)

    def active_sessions(self) -> list[ExecutionSession]:
        return [s for s in self._sessions.values() if not s.state.is_terminal]

    def active_project_ids(self) -> set[str]:
        return set(self._active) | set(self._syncing)

    def is_admitted(self, project_id: str) -> bool:
        return project_id in self._active or project_id in self._syncing

    # ── Execute ──

    async def execute(
        self,
        project_id: object,
        command: object,
        user_id: str = "anonymous",
        emit: EmitCallback | None = None,
    ) -> ExecutionSession:
        """Validate, admit and start a session.

        Raises:
            ValidationError: bad project id or command (nothing was started).
            AdmissionRejected: the project is held by another session or sync.
        """
        try:
            project = validate_project_id(project_id)
            cmd = validate_command(
                command,
                max_length=self._config.max_command_length,
                patterns=self._deny_patterns,
            )
        except ValidationError as exc:
            event = (
                AuditEventType.EXECUTION_REJECTED
                if isinstance(exc, DangerousCommandError)
                else AuditEventType.INVALID_INPUT
            )
            self._audit.log_security_event(
                event,
                user_id=user_id,
                project_id=project_id if isinstance(project_id, str) else None,
                command=command if isinstance(command, str) else None,
                error=exc.message,
            )
            self._metrics.execution_rejected()
            logger.warning("Rejected execute user=%s: %s (%s)", user_id, exc.message, exc.code)
            raise

        if self._closing:
            raise AdmissionRejected(project)

        # Check and register without awaiting in between.
        holder = self._active.get(project)
        if holder is not None or project in self._syncing:
            self._metrics.execution_rejected()
            self._audit.log_execution(
                AuditEventType.EXECUTION_REJECTED,
                user_id=user_id,
                project_id=project,
                command=cmd,
                success=False,
                error="project busy",
            )
            logger.info("Admission rejected project=%s holder=%s", project, holder or "sync")
            raise AdmissionRejected(project, holder)

        session = ExecutionSession(project_id=project, command=cmd, user_id=user_id)
        self._active[project] = session.execution_id
        self._sessions[session.execution_id] = session
        self._emitters[session.execution_id] = emit or _discard
        self._metrics.execution_started()
        self._audit.log_execution(
            AuditEventType.EXECUTION_START,
            user_id=user_id,
            project_id=project,
            execution_id=session.execution_id,
            command=cmd,
        )
        logger.info(
            "Admitted execution=%s project=%s user=%s",
            session.execution_id, project, user_id,
        )

        await self._emit(session, {
            "event": "execution_started",
            "execution_id": session.execution_id,
            "project_id": project,
        })
        session._task = asyncio.create_task(
            self._run_session(session),
            name=f"session-{session.execution_id}",
        )
        return session

    async def wait(self, execution_id: str) -> ExecutionResult | None:
        """Wait for a session task to finish and return its result."""
        session = self._sessions.get(execution_id)
        if session is not None and session._task is not None:
            await asyncio.gather(session._task, return_exceptions=True)
        return self._results.get(execution_id)

    # ── Stop ──

    async def stop(
        self,
        execution_id: str,
        user_id: str | None = None,
        reason: str = "client",
    ) -> ExecutionSession:
        """Request cancellation of a running session.

        ``execution_stopped`` is emitted before the process is signalled;
        no ``output`` event for the session follows it. Once the process
        has exited the request is a no-op and the run keeps its own status.

        Raises:
            ExecutionNotFound: unknown, finished, or owned by another user.
        """
        session = self._sessions.get(execution_id)
        if session is None or session.state.is_terminal:
            raise ExecutionNotFound(execution_id)
        if user_id is not None and session.user_id != user_id:
            raise ExecutionNotFound(execution_id)
        if reason not in STOP_REASONS:
            raise ValidationError(f"Unknown stop reason: {reason}")
        if session.stop_requested:
            return session
        supervisor: ProcessSupervisor | None = session._supervisor
        if session.state is SessionState.RECONCILING or (
            supervisor is not None and supervisor.state.is_terminal
        ):
            # The process already exited; the run finishes on its own.
            logger.info(
                "Ignoring stop for execution=%s: process already exited (state=%s)",
                execution_id, session.state.value,
            )
            return session

        session.stop_reason = reason
        logger.info(
            "Stopping execution=%s project=%s reason=%s state=%s",
            execution_id, session.project_id, reason, session.state.value,
        )
        await self._emit(session, {
            "event": "execution_stopped",
            "execution_id": execution_id,
            "reason": reason,
        })
        if supervisor is not None:
            await supervisor.stop()
        return session

    # ── Manual sync ──

    async def sync(
        self,
        project_id: object,
        action: object,
        user_id: str = "anonymous",
    ) -> dict[str, Any]:
        """Run a manual download or upload for a project.

        Raises:
            ValidationError: bad project id or action.
            AdmissionRejected: an execution holds the project.
            SyncError: hydration failed, or upload had no working directory.
        """
        project = validate_project_id(project_id)
        try:
            sync_action = SyncAction(action)
        except ValueError:
            raise ValidationError(f"Invalid sync action: {action!r}") from None

        holder = self._active.get(project)
        if holder is not None or project in self._syncing:
            raise AdmissionRejected(project, holder)
        self._syncing.add(project)
        try:
            result = await self._run_sync(project, sync_action)
        except BridgeError as exc:
            self._audit.log_execution(
                AuditEventType.FILE_SYNC,
                user_id=user_id,
                project_id=project,
                success=False,
                error=exc.message,
                details={"action": sync_action.value},
            )
            raise
        finally:
            self._syncing.discard(project)

        self._audit.log_execution(
            AuditEventType.FILE_SYNC,
            user_id=user_id,
            project_id=project,
            success=result["status"] != "error",
            details={"action": sync_action.value, "status": result["status"]},
        )
        return result

    async def _run_sync(self, project: str, action: SyncAction) -> dict[str, Any]:
        if action is SyncAction.DOWNLOAD:
            try:
                work_dir, records = await self._sync.download(project)
            except HydrationError as exc:
                raise SyncError(exc.message) from exc
            self._metrics.record_sync(downloaded=len(records))
            return {
                "status": "success",
                "action": action.value,
                "changes": [r.path for r in records],
                "workDir": str(work_dir),
            }

        if not self._workdirs.exists(project):
            raise SyncError(f"No working directory for project {project}; download first")
        report = await self._sync.reconcile(project, self._workdirs.root_for(project))
        self._metrics.record_sync(uploaded=len(report.changed), failed=len(report.failed))
        status = "partial" if report.partial else "success"
        if report.failed and not report.changed:
            status = "error"
        return {
            "status": status,
            "action": action.value,
            "changes": list(report.changed),
            "deleted": list(report.deleted),
            "failures": [f.to_dict() for f in report.failed],
        }

    # ── Shutdown ──

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop every active session and wait for their tasks."""
        self._closing = True
        sessions = self.active_sessions()
        if sessions:
            logger.info("Shutting down %d active session(s)", len(sessions))
        for session in sessions:
            try:
                await self.stop(session.execution_id, reason="shutdown")
            except ExecutionNotFound:
                continue
        tasks = [s._task for s in sessions if s._task is not None]
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("%d session task(s) did not finish within %.1fs", len(pending), timeout)
            await asyncio.gather(*pending, return_exceptions=True)

    # ── Session task ──

    def _transition(self, session: ExecutionSession, target: SessionState) -> None:
        validate_session_transition(session.state, target)
        logger.debug(
            "execution=%s %s -> %s", session.execution_id, session.state.value, target.value,
        )
        session.state = target

    async def _emit(self, session: ExecutionSession, event: dict[str, Any]) -> None:
        emit = self._emitters.get(session.execution_id, _discard)
        try:
            await emit(event)
        except Exception as exc:
            # The result stays in the cache; delivery is best effort.
            logger.debug(
                "Dropped %s for execution=%s: %s", event.get("event"), session.execution_id, exc,
            )

    async def _forward_output(self, session: ExecutionSession, chunk: OutputChunk) -> None:
        if session.stop_requested:
            return
        session.output_sequence += 1
        await self._emit(session, {
            "event": "output",
            "execution_id": session.execution_id,
            "content": chunk.payload,
            "timestamp": chunk.timestamp,
            "stream": chunk.stream.value,
            "sequence": chunk.sequence,
        })

    async def _run_session(self, session: ExecutionSession) -> None:
        error: BridgeError | None = None
        exited: ProcessExited | None = None
        work_dir = None
        try:
            self._transition(session, SessionState.HYDRATING)
            try:
                work_dir, records = await self._sync.download(session.project_id)
            except HydrationError as exc:
                error = exc
            else:
                self._metrics.record_sync(downloaded=len(records))

            if error is None and not session.stop_requested:
                exited, error = await self._run_process(session, work_dir)

            if error is None and work_dir is not None:
                self._transition(session, SessionState.RECONCILING)
                report = await self._sync.reconcile(session.project_id, work_dir)
                session.files_changed = list(report.changed)
                session.files_deleted = list(report.deleted)
                session.sync_failures = list(report.failed)
                self._metrics.record_sync(
                    uploaded=len(report.changed), failed=len(report.failed),
                )
        except asyncio.CancelledError:
            session.stop_reason = session.stop_reason or "shutdown"
            raise
        except Exception as exc:
            logger.exception("Session execution=%s crashed", session.execution_id)
            error = BridgeError(f"Internal error: {exc}", code="INTERNAL_ERROR")
        finally:
            await self._finish(session, exited, error)

    async def _run_process(
        self,
        session: ExecutionSession,
        work_dir: Path,
    ) -> tuple[ProcessExited | None, BridgeError | None]:
        supervisor = self._supervisor_factory()
        session._supervisor = supervisor
        self._transition(session, SessionState.RUNNING)
        exited: ProcessExited | None = None
        try:
            async for event in supervisor.run(
                self._config.agent_argv, work_dir, stdin_text=session.command,
            ):
                if isinstance(event, OutputChunk):
                    await self._forward_output(session, event)
                else:
                    exited = event
        except SpawnError as exc:
            logger.error("Spawn failed execution=%s: %s", session.execution_id, exc.message)
            return None, exc
        return exited, None

    async def _finish(
        self,
        session: ExecutionSession,
        exited: ProcessExited | None,
        error: BridgeError | None,
    ) -> None:
        session.ended_at = time.time()
        if exited is not None:
            session.exit_code = exited.exit_code

        if session.stop_requested:
            status, target = "cancelled", SessionState.CANCELLED
        elif error is not None:
            status, target = "error", SessionState.FAILED
            session.error = error.message
        elif session.exit_code == 0:
            status = "partial" if session.sync_failures else "success"
            target = SessionState.COMPLETED
        else:
            status, target = "error", SessionState.FAILED
            session.error = ExecutionRuntimeError(session.exit_code).message

        await self._workdirs.teardown(session.project_id)
        self._transition(session, target)
        if self._active.get(session.project_id) == session.execution_id:
            del self._active[session.project_id]

        result = ExecutionResult(
            execution_id=session.execution_id,
            project_id=session.project_id,
            status=status,
            exit_code=session.exit_code,
            files_changed=list(session.files_changed),
            files_deleted=list(session.files_deleted),
            sync_failures=list(session.sync_failures),
            duration_ms=session.duration_ms,
            error=session.error,
        )
        self._cache_result(result)

        if error is not None and not session.stop_requested:
            await self._emit(session, {
                "event": "error",
                "code": error.code,
                "message": error.message,
                "execution_id": session.execution_id,
            })
        else:
            await self._emit(session, {"event": "complete", **_snake(result)})

        self._emitters.pop(session.execution_id, None)
        self._sessions.pop(session.execution_id, None)
        self._metrics.execution_finished(status, result.duration_ms)
        self._audit.log_execution(
            {
                "success": AuditEventType.EXECUTION_SUCCESS,
                "partial": AuditEventType.EXECUTION_SUCCESS,
                "cancelled": (
                    AuditEventType.EXECUTION_TIMEOUT
                    if session.stop_reason == "timeout"
                    else AuditEventType.EXECUTION_CANCELLED
                ),
            }.get(status, AuditEventType.EXECUTION_FAILED),
            user_id=session.user_id,
            project_id=session.project_id,
            execution_id=session.execution_id,
            command=session.command,
            success=status in ("success", "partial"),
            duration_ms=result.duration_ms,
            error=session.error,
            details={"status": status, "filesChanged": len(result.files_changed)},
        )
        logger.info(
            "Finished execution=%s project=%s status=%s exit_code=%s changed=%d duration=%dms",
            session.execution_id, session.project_id, status, session.exit_code,
            len(result.files_changed), result.duration_ms,
        )

    def _cache_result(self, result: ExecutionResult) -> None:
        self._results[result.execution_id] = result
        self._results.move_to_end(result.execution_id)
        while len(self._results) > max(1, self._config.result_cache_size):
            self._results.popitem(last=False)


def _snake(result: ExecutionResult) -> dict[str, Any]:
    """Result fields in the dict form the event adapters expect."""
    return {
        "execution_id": result.execution_id,
        "project_id": result.project_id,
        "status": result.status,
        "exit_code": result.exit_code,
        "files_changed": list(result.files_changed),
        "files_deleted": list(result.files_deleted),
        "sync_errors": [f.to_dict() for f in result.sync_failures],
        "duration": result.duration_ms,
        "error": result.error,
    }
