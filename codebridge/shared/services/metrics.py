"""In-process bridge metrics.

One ``BridgeMetrics`` is created at startup and handed to the components
that record into it. Counters only; nothing is persisted.
"""
from __future__ import annotations

import os
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any


@dataclass
class _ExecutionStats:
    total: int = 0
    active: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    rejected: int = 0
    durations_ms: deque[int] = field(default_factory=lambda: deque(maxlen=200))


class BridgeMetrics:
    """Counters for executions, connections, file transfers and HTTP requests."""

    def __init__(self) -> None:
        self._started_at = time.time()
        self._executions = _ExecutionStats()
        self.ws_connected_clients = 0
        self.ws_messages_received = 0
        self.ws_messages_sent = 0
        self.files_uploaded = 0
        self.files_downloaded = 0
        self.upload_failures = 0
        self.http_requests = 0
        self.http_errors = 0

    @property
    def uptime_seconds(self) -> float:
        return max(0.0, time.time() - self._started_at)

    # ── Executions ──

    def execution_started(self) -> None:
        self._executions.total += 1
        self._executions.active += 1

    def execution_finished(self, status: str, duration_ms: int) -> None:
        stats = self._executions
        stats.active = max(0, stats.active - 1)
        stats.durations_ms.append(duration_ms)
        if status in ("success", "partial"):
            stats.succeeded += 1
        elif status == "cancelled":
            stats.cancelled += 1
        else:
            stats.failed += 1

    def execution_rejected(self) -> None:
        self._executions.rejected += 1

    @property
    def active_executions(self) -> int:
        return self._executions.active

    # ── Connections / files / HTTP ──

    def client_connected(self) -> None:
        self.ws_connected_clients += 1

    def client_disconnected(self) -> None:
        self.ws_connected_clients = max(0, self.ws_connected_clients - 1)

    def record_sync(self, *, downloaded: int = 0, uploaded: int = 0, failed: int = 0) -> None:
        self.files_downloaded += downloaded
        self.files_uploaded += uploaded
        self.upload_failures += failed

    def record_request(self, status: int) -> None:
        self.http_requests += 1
        if status >= 500:
            self.http_errors += 1

    # ── Reporting ──

    def snapshot(self) -> dict[str, Any]:
        stats = self._executions
        finished = stats.succeeded + stats.failed + stats.cancelled
        durations = list(stats.durations_ms)
        load = os.getloadavg() if hasattr(os, "getloadavg") else (0.0, 0.0, 0.0)
        return {
            "timestamp": int(time.time() * 1000),
            "uptimeSeconds": round(self.uptime_seconds, 3),
            "process": {"pid": os.getpid(), "cpuCount": os.cpu_count(), "loadAverage": list(load)},
            "execution": {
                "totalExecutions": stats.total,
                "activeExecutions": stats.active,
                "succeeded": stats.succeeded,
                "failed": stats.failed,
                "cancelled": stats.cancelled,
                "rejected": stats.rejected,
                "averageExecutionTimeMs": (sum(durations) / len(durations)) if durations else 0.0,
                "successRate": (stats.succeeded / finished) if finished else 1.0,
            },
            "websocket": {
                "connectedClients": self.ws_connected_clients,
                "messagesReceived": self.ws_messages_received,
                "messagesSent": self.ws_messages_sent,
            },
            "files": {
                "uploadCount": self.files_uploaded,
                "downloadCount": self.files_downloaded,
                "uploadFailures": self.upload_failures,
            },
            "api": {"requestCount": self.http_requests, "errorCount": self.http_errors},
        }

    def health(self) -> dict[str, Any]:
        """Coarse health derived from the counters."""
        issues: list[str] = []
        snap = self.snapshot()
        exec_stats = snap["execution"]
        finished = exec_stats["succeeded"] + exec_stats["failed"] + exec_stats["cancelled"]
        if finished >= 10 and exec_stats["successRate"] < 0.5:
            issues.append("Low execution success rate")
        api = snap["api"]
        if api["requestCount"] >= 20 and api["errorCount"] / api["requestCount"] > 0.1:
            issues.append("High HTTP error rate")
        return {"status": "degraded" if issues else "healthy", "issues": issues}
