"""Structured audit records for executions, syncs and auth.

``AuditLogger`` builds records and fans them out to sinks. Sinks are
plain objects with ``write(record)``; two ship here:

- ``JsonlAuditSink``: one JSON line per record in ``audit-YYYY-MM-DD.log``.
- ``MemoryAuditSink``: bounded ring buffer backing the ``/api/audit`` route.

Sink failures are logged and never propagate into the caller.
"""
from __future__ import annotations

import json
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    AUTH_LOGIN = "AUTH_LOGIN"
    AUTH_LOGOUT = "AUTH_LOGOUT"
    AUTH_FAILED = "AUTH_FAILED"
    EXECUTION_START = "EXECUTION_START"
    EXECUTION_REJECTED = "EXECUTION_REJECTED"
    EXECUTION_SUCCESS = "EXECUTION_SUCCESS"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    EXECUTION_CANCELLED = "EXECUTION_CANCELLED"
    EXECUTION_TIMEOUT = "EXECUTION_TIMEOUT"
    FILE_SYNC = "FILE_SYNC"
    INVALID_INPUT = "INVALID_INPUT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


@dataclass
class AuditRecord:
    event_type: AuditEventType
    success: bool = True
    user_id: str | None = None
    project_id: str | None = None
    execution_id: str | None = None
    command: str | None = None
    duration_ms: int | None = None
    error: str | None = None
    severity: str = "info"
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        """camelCase dict with empty optional fields omitted."""
        raw = asdict(self)
        out: dict[str, Any] = {
            "id": raw["id"],
            "timestamp": raw["timestamp"],
            "eventType": self.event_type.value,
            "success": self.success,
            "severity": self.severity,
        }
        for key, wire in (
            ("user_id", "userId"),
            ("project_id", "projectId"),
            ("execution_id", "executionId"),
            ("command", "command"),
            ("duration_ms", "durationMs"),
            ("error", "error"),
        ):
            if raw[key] is not None:
                out[wire] = raw[key]
        if self.details:
            out["details"] = self.details
        return out


class AuditSink(Protocol):
    def write(self, record: AuditRecord) -> None: ...


class MemoryAuditSink:
    """Keeps the most recent records in memory."""

    def __init__(self, maxlen: int = 1000) -> None:
        self._records: deque[AuditRecord] = deque(maxlen=maxlen)

    def write(self, record: AuditRecord) -> None:
        self._records.append(record)

    def query(
        self,
        *,
        event_type: str | None = None,
        user_id: str | None = None,
        project_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        """Newest first."""
        results: list[AuditRecord] = []
        for record in reversed(self._records):
            if event_type and record.event_type.value != event_type:
                continue
            if user_id and record.user_id != user_id:
                continue
            if project_id and record.project_id != project_id:
                continue
            results.append(record)
            if len(results) >= limit:
                break
        return results

    def __len__(self) -> int:
        return len(self._records)


class JsonlAuditSink:
    """Appends records to a daily JSONL file under ``log_dir``.

    ``write`` only serializes the record; the append runs on a single
    writer thread, so the event loop never blocks on disk and lines keep
    their submission order. ``flush`` waits for pending appends.
    """

    def __init__(self, log_dir: Path | str) -> None:
        self._log_dir = Path(log_dir)
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-writer")

    def path_for(self, when: datetime | None = None) -> Path:
        day = (when or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
        return self._log_dir / f"audit-{day}.log"

    def write(self, record: AuditRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False) + "\n"
        self._writer.submit(self._append, self.path_for(), line)

    def flush(self, timeout: float | None = 10.0) -> None:
        self._writer.submit(lambda: None).result(timeout=timeout)

    def _append(self, path: Path, line: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(line)
        except OSError:
            logger.exception("Audit write to %s failed", path)


class AuditLogger:
    """Builds audit records and forwards them to every sink."""

    def __init__(self, sinks: list[AuditSink] | None = None, *, enabled: bool = True) -> None:
        self._sinks: list[AuditSink] = list(sinks or [])
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    def flush(self) -> None:
        """Wait for sinks that write in the background."""
        for sink in self._sinks:
            flush = getattr(sink, "flush", None)
            if flush is not None:
                flush()

    def log(self, record: AuditRecord) -> None:
        if not self._enabled:
            return
        for sink in self._sinks:
            try:
                sink.write(record)
            except Exception:
                logger.exception("Audit sink %s failed for %s", type(sink).__name__, record.event_type.value)
        if record.severity in ("error", "critical") or not record.success:
            logger.info("AUDIT %s user=%s project=%s error=%s",
                        record.event_type.value, record.user_id, record.project_id, record.error)
        else:
            logger.debug("AUDIT %s user=%s project=%s",
                         record.event_type.value, record.user_id, record.project_id)

    def log_execution(
        self,
        event_type: AuditEventType,
        *,
        user_id: str | None,
        project_id: str | None,
        execution_id: str | None = None,
        command: str | None = None,
        success: bool = True,
        duration_ms: int | None = None,
        error: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.log(AuditRecord(
            event_type=event_type,
            success=success,
            user_id=user_id,
            project_id=project_id,
            execution_id=execution_id,
            command=command,
            duration_ms=duration_ms,
            error=error,
            severity="info" if success else "warning",
            details=dict(details or {}),
        ))

    def log_security_event(
        self,
        event_type: AuditEventType,
        *,
        user_id: str | None,
        error: str,
        command: str | None = None,
        project_id: str | None = None,
        ip_address: str | None = None,
    ) -> None:
        details = {"ipAddress": ip_address} if ip_address else {}
        self.log(AuditRecord(
            event_type=event_type,
            success=False,
            user_id=user_id,
            project_id=project_id,
            command=command,
            error=error,
            severity="warning",
            details=details,
        ))

    def log_auth(
        self,
        event_type: AuditEventType,
        *,
        user_id: str | None,
        ip_address: str | None = None,
        success: bool = True,
    ) -> None:
        self.log(AuditRecord(
            event_type=event_type,
            success=success,
            user_id=user_id,
            severity="info" if success else "warning",
            details={"ipAddress": ip_address} if ip_address else {},
        ))
