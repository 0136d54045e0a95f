"""Best-effort cleanup of agent processes left behind by a crashed bridge.

Children are spawned in their own session, so when the bridge dies they
are re-parented to init and keep running in a working directory that
will never be reconciled. At startup we reap them.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            table[int(parts[0])] = ProcessInfo(pid=int(parts[0]), ppid=int(parts[1]), args=parts[2])
        except ValueError:
            continue
    return table


def _process_cwd(pid: int) -> Path | None:
    """Working directory of ``pid`` via /proc, or None where unavailable."""
    try:
        return Path(os.readlink(f"/proc/{pid}/cwd"))
    except OSError:
        return None


def _is_agent_candidate(args: str, agent_executable: str) -> bool:
    name = re.escape(os.path.basename(agent_executable))
    return re.search(rf"(?:^|/|\s){name}(?:\s|$)", args) is not None


def _inside(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
    except (OSError, ValueError):
        return False
    return True


def cleanup_stale_agent_processes(
    workspace_root: str | os.PathLike[str],
    agent_executable: str,
    *,
    current_pid: int | None = None,
    list_processes: Callable[[], dict[int, ProcessInfo]] = _list_processes,
    process_cwd: Callable[[int], Path | None] = _process_cwd,
) -> int:
    """SIGTERM orphaned agent processes running inside ``workspace_root``.

    A process is reaped only when:
    - its command line names the agent executable,
    - it is orphaned (parent is PID 1 or missing), and
    - its working directory lies under ``workspace_root``.

    Where the working directory cannot be read the process is left alone.
    """
    pid = current_pid or os.getpid()
    root = Path(workspace_root)
    try:
        table = list_processes()
    except (OSError, subprocess.SubprocessError) as exc:
        logger.warning("Could not list processes for stale cleanup: %s", exc)
        return 0

    killed = 0
    for proc in table.values():
        if proc.pid == pid or not _is_agent_candidate(proc.args, agent_executable):
            continue
        if proc.ppid != 1 and proc.ppid in table:
            continue
        cwd = process_cwd(proc.pid)
        if cwd is None or not _inside(cwd, root):
            continue
        try:
            os.kill(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger.warning("Failed to reap stale process pid=%s: %s", proc.pid, exc)
            continue
        killed += 1
        logger.info(
            "Reaped stale agent process pid=%s ppid=%s cwd=%s cmd=%s",
            proc.pid, proc.ppid, cwd, proc.args[:180],
        )
    return killed
