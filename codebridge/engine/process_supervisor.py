"""Supervise one agent CLI process bound to a working directory.

``run`` spawns the child in its own process group, feeds it the command
on stdin, and yields ``OutputChunk`` events as stdout/stderr produce
data, followed by exactly one ``ProcessExited`` event. ``stop`` escalates
SIGTERM -> SIGKILL on the process group and is idempotent.

Stdout and stderr are read by independent tasks. Each stream is ordered
by its own sequence counter; the two streams are not ordered relative
to each other.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import AsyncIterator, Mapping, Sequence

from .errors import SpawnError, SupervisorBusyError
from .lifecycle import validate_process_transition
from .models import OutputChunk, ProcessEvent, ProcessExited, ProcessState, StreamName

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096

_EOF = object()


class ProcessSupervisor:
    """Runs at most one child process at a time."""

    def __init__(self, *, grace_seconds: float = 3.0) -> None:
        self._grace_seconds = max(0.0, grace_seconds)
        self._state = ProcessState.IDLE
        self._proc: asyncio.subprocess.Process | None = None
        self._stop_requested = False
        self._stop_task: asyncio.Task | None = None
        self._sequences: dict[StreamName, int] = {s: 0 for s in StreamName}

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def _transition(self, target: ProcessState) -> None:
        validate_process_transition(self._state, target)
        logger.debug("Supervisor pid=%s %s -> %s", self.pid, self._state.value, target.value)
        self._state = target

    async def run(
        self,
        argv: Sequence[str],
        cwd: str | os.PathLike[str],
        stdin_text: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> AsyncIterator[ProcessEvent]:
        """Spawn ``argv`` in ``cwd`` and stream its events.

        Raises:
            SupervisorBusyError: a process was already attached.
            SpawnError: the executable could not be launched.
        """
        if self._state is not ProcessState.IDLE:
            raise SupervisorBusyError()
        self._transition(ProcessState.SPAWNING)
        started = time.monotonic()

        try:
            # Array-based exec; the command text never reaches a shell here.
            self._proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env={**os.environ, **(env or {})},
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            self._transition(ProcessState.FAILED)
            raise SpawnError(argv[0] if argv else "<empty>", exc.strerror or str(exc)) from exc
        except OSError as exc:
            self._transition(ProcessState.FAILED)
            raise SpawnError(argv[0] if argv else "<empty>", str(exc)) from exc

        self._transition(ProcessState.RUNNING)
        proc = self._proc
        logger.info("Spawned %s pid=%s cwd=%s", argv[0], proc.pid, cwd)
        if self._stop_requested:
            # stop() arrived while spawning, before there was a pid to signal.
            self._stop_task = asyncio.create_task(self._escalate(proc))

        queue: asyncio.Queue[object] = asyncio.Queue()
        readers = [
            asyncio.create_task(self._pump(proc.stdout, StreamName.PRIMARY, queue)),
            asyncio.create_task(self._pump(proc.stderr, StreamName.ERROR, queue)),
        ]
        stdin_task = asyncio.create_task(self._feed_stdin(proc, stdin_text))

        try:
            open_streams = len(readers)
            while open_streams:
                item = await queue.get()
                if item is _EOF:
                    open_streams -= 1
                    continue
                if self._stop_requested:
                    continue
                yield item

            exit_code = await proc.wait()
            await asyncio.gather(stdin_task, return_exceptions=True)
            if self._stop_task is not None:
                await asyncio.gather(self._stop_task, return_exceptions=True)

            duration = time.monotonic() - started
            if self._stop_requested:
                self._transition(ProcessState.TERMINATED)
                error = None
            elif exit_code == 0:
                self._transition(ProcessState.COMPLETED)
                error = None
            else:
                self._transition(ProcessState.FAILED)
                error = f"exited with code {exit_code}"
            logger.info(
                "Process pid=%s finished state=%s exit_code=%s duration=%.2fs",
                proc.pid, self._state.value, exit_code, duration,
            )
            yield ProcessExited(
                state=self._state,
                exit_code=exit_code,
                error=error,
                duration_seconds=duration,
            )
        finally:
            # Consumer went away early (or we were cancelled): make sure the
            # child does not outlive its supervisor.
            for task in (*readers, stdin_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(*readers, stdin_task, return_exceptions=True)
            if proc.returncode is None:
                self._stop_requested = True
                await self._escalate(proc)

    async def _feed_stdin(
        self,
        proc: asyncio.subprocess.Process,
        stdin_text: str | None,
    ) -> None:
        if proc.stdin is None:
            return
        try:
            if stdin_text:
                if not stdin_text.endswith("\n"):
                    stdin_text += "\n"
                proc.stdin.write(stdin_text.encode("utf-8"))
                await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Child pid=%s closed stdin before the command was written", proc.pid)
        finally:
            try:
                proc.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                pass

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        name: StreamName,
        queue: asyncio.Queue[object],
    ) -> None:
        try:
            if stream is None:
                return
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = chunk.decode("utf-8", errors="replace")
                if not text:
                    continue
                self._sequences[name] += 1
                await queue.put(OutputChunk(
                    stream=name,
                    payload=text,
                    sequence=self._sequences[name],
                ))
        finally:
            await queue.put(_EOF)

    async def stop(self) -> ProcessState:
        """Request termination. Idempotent; a no-op once the process is terminal."""
        if self._state.is_terminal or self._state is ProcessState.IDLE:
            return self._state
        self._stop_requested = True
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return self._state
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._escalate(proc))
        await asyncio.shield(self._stop_task)
        return self._state

    @staticmethod
    def _signal_process_group(
        proc: asyncio.subprocess.Process,
        sig: signal.Signals,
    ) -> bool:
        """Send a signal to the child's process group when available."""
        if proc.returncode is not None:
            return False
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
            return True
        except ProcessLookupError:
            return False

    async def _escalate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, wait for the grace period, then SIGKILL."""
        if proc.returncode is not None:
            return
        term_sent = self._signal_process_group(proc, signal.SIGTERM)
        logger.info("Sent SIGTERM to pid=%s sent=%s", proc.pid, term_sent)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._grace_seconds)
            return
        except asyncio.TimeoutError:
            pass
        kill_sent = self._signal_process_group(proc, signal.SIGKILL)
        logger.warning(
            "Process pid=%s still running after %.1fs; escalated to SIGKILL sent=%s",
            proc.pid, self._grace_seconds, kill_sent,
        )
        if not kill_sent:
            try:
                proc.kill()
            except ProcessLookupError:
                return
        await proc.wait()
