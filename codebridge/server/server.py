"""HTTP + WebSocket server for the execution bridge.

Clients connect to ``GET /ws`` and exchange JSON frames
``{"event": <name>, "data": {...}}``. Each connection owns an EventBus
drained by a single writer task, so events reach the client in the
order the engine emitted them. A handful of plain HTTP routes expose
health, metrics, the audit trail and cached execution results.

Usage:
    codebridge [--host HOST] [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from aiohttp import WSMsgType, web

from codebridge.adapters.auth import IdentityProvider, extract_token, provider_from_config
from codebridge.adapters.event_bus import EventBus
from codebridge.adapters.events import (
    Connected,
    SyncComplete,
    error_event,
    event_to_dict,
    parse_client_message,
)
from codebridge.adapters.rate_limit import SlidingWindowRateLimiter
from codebridge.engine.config import BridgeConfig
from codebridge.engine.errors import (
    AuthenticationError,
    BridgeError,
    ExecutionNotFound,
    RateLimitExceeded,
    ValidationError,
)
from codebridge.engine.session_manager import SessionManager
from codebridge.shared.services.audit import (
    AuditEventType,
    AuditLogger,
    JsonlAuditSink,
    MemoryAuditSink,
)
from codebridge.shared.services.metrics import BridgeMetrics
from codebridge.shared.services.process_cleanup import cleanup_stale_agent_processes
from codebridge.shared.services.project_store import FilesystemProjectStore, ProjectStore
from codebridge.shared.services.sync_engine import SyncEngine
from codebridge.shared.services.workdir import WorkingDirectoryManager

logger = logging.getLogger(__name__)


# ── Connection state ──


@dataclass
class ClientConnection:
    """One connected WebSocket client."""
    ws: web.WebSocketResponse
    user_id: str
    conn_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    remote: str | None = None
    bus: EventBus = field(default_factory=EventBus)
    writer_task: asyncio.Task | None = None


class BridgeServer:
    """Wires the engine to aiohttp.

    Thin adapter: session state lives in SessionManager. This class only
    handles authentication, message dispatch, event delivery and the
    HTTP routes.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        store: ProjectStore | None = None,
        identity: IdentityProvider | None = None,
        audit: AuditLogger | None = None,
        metrics: BridgeMetrics | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        self._host = self._config.host
        self._port = self._config.port
        self._started_at = time.time()

        self._metrics = metrics or BridgeMetrics()
        self._audit_memory = MemoryAuditSink(maxlen=self._config.audit_memory_size)
        if audit is None:
            audit = AuditLogger(
                [self._audit_memory, JsonlAuditSink(self._config.audit_log_dir)],
                enabled=self._config.audit_enabled,
            )
        else:
            audit.add_sink(self._audit_memory)
        self._audit = audit
        self._identity = identity or provider_from_config(
            self._config.auth_enabled, self._config.auth_tokens,
        )
        self._rate_limiter = SlidingWindowRateLimiter(
            max_events=self._config.rate_limit_max_executions,
            window_seconds=self._config.rate_limit_window_seconds,
        )

        self._store = store or FilesystemProjectStore(self._config.store_root)
        self._workdirs = WorkingDirectoryManager(
            self._config.workspace_root, self._store, self._config.skip_dirs,
        )
        self._sync = SyncEngine(
            self._store, self._workdirs, max_file_size=self._config.max_file_size,
        )
        self._sessions = SessionManager(
            self._config,
            self._sync,
            self._workdirs,
            audit=self._audit,
            metrics=self._metrics,
        )

        self._connections: dict[str, ClientConnection] = {}
        self._timeouts: dict[str, asyncio.TimerHandle] = {}
        self._background: set[asyncio.Task] = set()

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()
        self._app.on_shutdown.append(self._on_shutdown)

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def metrics(self) -> BridgeMetrics:
        return self._metrics

    @property
    def audit_memory(self) -> MemoryAuditSink:
        return self._audit_memory

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            self._metrics.record_request(exc.status)
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            self._metrics.record_request(500)
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        status = getattr(response, "status", 0)
        self._metrics.record_request(status)
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id, status, elapsed_ms,
        )
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/ws", self._handle_ws)
        r.add_get("/health", self._handle_health)
        r.add_get("/metrics", self._handle_metrics)
        r.add_get("/api/audit", self._handle_audit)
        r.add_get("/api/executions/{id}", self._handle_get_execution)
        r.add_post("/api/execute", self._handle_http_execute)

    # ── Lifecycle ──

    async def prepare(self) -> None:
        """Reap leftovers from a previous run before accepting clients."""
        if self._config.cleanup_stale_processes:
            reaped = await asyncio.to_thread(
                cleanup_stale_agent_processes,
                self._config.workspace_root,
                self._config.agent_cli_path,
            )
            if reaped:
                logger.info("Reaped %d stale agent process(es)", reaped)
        await asyncio.to_thread(
            self._workdirs.prune_stale, self._sessions.active_project_ids(),
        )

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        await self.prepare()
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("Bridge server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("Bridge server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        server = getattr(site, "_server", None)
        sockets = getattr(server, "sockets", None) or []
        for sock in sockets:
            return sock.getsockname()[1]
        for addr in getattr(runner, "addresses", []) or []:
            if isinstance(addr, tuple) and len(addr) >= 2:
                return addr[1]
        return None

    async def _on_shutdown(self, app: web.Application) -> None:
        for handle in self._timeouts.values():
            handle.cancel()
        self._timeouts.clear()
        await self._sessions.shutdown()
        for conn in list(self._connections.values()):
            conn.bus.close()
            await conn.ws.close(code=1001, message=b"Server shutdown")
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await asyncio.to_thread(self._audit.flush)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ── WebSocket ──

    async def _handle_ws(self, request: web.Request) -> web.StreamResponse:
        token = extract_token(request.query, request.headers)
        try:
            user_id = await self._identity.verify(token)
        except AuthenticationError as exc:
            self._audit.log_auth(
                AuditEventType.AUTH_FAILED,
                user_id=None,
                ip_address=request.remote,
                success=False,
            )
            logger.warning("WebSocket auth failed from=%s: %s", request.remote, exc.message)
            return web.json_response({"error": exc.message, "code": exc.code}, status=401)

        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        conn = ClientConnection(ws=ws, user_id=user_id, remote=request.remote)
        self._connections[conn.conn_id] = conn
        conn.writer_task = asyncio.create_task(self._write_loop(conn), name=f"ws-writer-{conn.conn_id}")
        self._metrics.client_connected()
        self._audit.log_auth(AuditEventType.AUTH_LOGIN, user_id=user_id, ip_address=request.remote)
        logger.info(
            "WebSocket connected conn=%s user=%s req=%s active_clients=%d",
            conn.conn_id, user_id, request.get("req_id", "unknown"), len(self._connections),
        )
        conn.bus.publish(Connected(user_id=user_id))

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._metrics.ws_messages_received += 1
                    await self._dispatch(conn, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    conn.bus.publish(error_event(
                        BridgeError("Binary frames are not supported", code="BAD_MESSAGE"),
                    ))
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket conn=%s closed with error: %s", conn.conn_id, ws.exception())
                    break
        finally:
            conn.bus.close()
            self._connections.pop(conn.conn_id, None)
            await asyncio.gather(conn.writer_task, return_exceptions=True)
            self._metrics.client_disconnected()
            self._audit.log_auth(AuditEventType.AUTH_LOGOUT, user_id=user_id, ip_address=request.remote)
            logger.info(
                "WebSocket disconnected conn=%s user=%s dropped=%d active_clients=%d",
                conn.conn_id, user_id, conn.bus.dropped, len(self._connections),
            )
        return ws

    async def _write_loop(self, conn: ClientConnection) -> None:
        async for event in conn.bus.consume():
            if conn.ws.closed:
                conn.bus.dropped += 1
                logger.debug("conn=%s closed, dropping %s", conn.conn_id, event.event_type)
                continue
            try:
                await conn.ws.send_json(event_to_dict(event))
                self._metrics.ws_messages_sent += 1
            except (ConnectionResetError, RuntimeError) as exc:
                conn.bus.dropped += 1
                logger.debug("Send failed conn=%s event=%s: %s", conn.conn_id, event.event_type, exc)

    async def _dispatch(self, conn: ClientConnection, raw: str) -> None:
        try:
            message = parse_client_message(raw)
        except BridgeError as exc:
            conn.bus.publish(error_event(exc))
            return

        handlers = {
            "execute": self._on_execute,
            "stop": self._on_stop,
            "file:sync": self._on_file_sync,
        }
        handler = handlers.get(message.event)
        if handler is None:
            conn.bus.publish(error_event(
                BridgeError(f"Unknown event: {message.event}", code="UNKNOWN_EVENT"),
            ))
            return

        execution_id = message.data.get("executionId")
        try:
            await handler(conn, message.data)
        except BridgeError as exc:
            conn.bus.publish(error_event(
                exc, execution_id if isinstance(execution_id, str) else None,
            ))

    async def _on_execute(self, conn: ClientConnection, data: dict[str, Any]) -> None:
        if self._rate_limiter.is_limited(conn.user_id):
            self._audit.log_security_event(
                AuditEventType.RATE_LIMIT_EXCEEDED,
                user_id=conn.user_id,
                project_id=data.get("projectId") if isinstance(data.get("projectId"), str) else None,
                error="execution rate limit exceeded",
                ip_address=conn.remote,
            )
            raise RateLimitExceeded("Too many executions, please try again later")

        session = await self._sessions.execute(
            data.get("projectId"),
            data.get("command"),
            conn.user_id,
            conn.bus.make_callback(),
        )
        self._arm_timeout(session.execution_id)

    async def _on_stop(self, conn: ClientConnection, data: dict[str, Any]) -> None:
        execution_id = data.get("executionId")
        if not isinstance(execution_id, str) or not execution_id:
            raise ValidationError("executionId is required")
        self._disarm_timeout(execution_id)
        await self._sessions.stop(execution_id, user_id=conn.user_id, reason="client")

    async def _on_file_sync(self, conn: ClientConnection, data: dict[str, Any]) -> None:
        result = await self._sessions.sync(data.get("projectId"), data.get("action"), conn.user_id)
        conn.bus.publish(SyncComplete(
            status=result["status"],
            action=result["action"],
            project_id=data.get("projectId"),
            changes=result.get("changes"),
            deleted=result.get("deleted"),
            failures=result.get("failures"),
        ))

    # ── Execution timeout ──

    def _arm_timeout(self, execution_id: str) -> None:
        timeout = self._config.execution_timeout_seconds
        if timeout <= 0:
            return
        loop = asyncio.get_running_loop()
        self._timeouts[execution_id] = loop.call_later(timeout, self._on_timeout, execution_id)

    def _disarm_timeout(self, execution_id: str) -> None:
        handle = self._timeouts.pop(execution_id, None)
        if handle is not None:
            handle.cancel()

    def _on_timeout(self, execution_id: str) -> None:
        self._timeouts.pop(execution_id, None)
        session = self._sessions.get_session(execution_id)
        if session is None or session.state.is_terminal:
            return
        logger.warning(
            "Execution %s exceeded %.1fs; stopping",
            execution_id, self._config.execution_timeout_seconds,
        )
        self._spawn(self._stop_quietly(execution_id, "timeout"), name=f"timeout-{execution_id}")

    async def _stop_quietly(self, execution_id: str, reason: str) -> None:
        try:
            await self._sessions.stop(execution_id, reason=reason)
        except ExecutionNotFound:
            logger.debug("Execution %s already finished before %s stop", execution_id, reason)

    # ── HTTP handlers ──

    async def _authenticate_http(self, request: web.Request) -> str:
        try:
            return await self._identity.verify(extract_token(request.query, request.headers))
        except AuthenticationError as exc:
            raise web.HTTPUnauthorized(
                text=json.dumps({"error": exc.message, "code": exc.code}),
                content_type="application/json",
            ) from exc

    async def _handle_health(self, request: web.Request) -> web.Response:
        health = self._metrics.health()
        return web.json_response({
            "status": health["status"],
            "issues": health["issues"],
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "active_executions": len(self._sessions.active_sessions()),
            "connected_clients": len(self._connections),
        })

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        await self._authenticate_http(request)
        return web.json_response(self._metrics.snapshot())

    async def _handle_audit(self, request: web.Request) -> web.Response:
        await self._authenticate_http(request)
        limit_raw = request.query.get("limit", "100")
        try:
            limit = int(limit_raw)
        except ValueError:
            return web.json_response({"error": "limit must be an integer"}, status=400)
        if limit <= 0:
            return web.json_response({"error": "limit must be > 0"}, status=400)
        records = self._audit_memory.query(
            event_type=request.query.get("eventType"),
            user_id=request.query.get("userId"),
            project_id=request.query.get("projectId"),
            limit=min(limit, 1000),
        )
        return web.json_response({
            "logs": [r.to_dict() for r in records],
            "count": len(records),
        })

    async def _handle_get_execution(self, request: web.Request) -> web.Response:
        await self._authenticate_http(request)
        execution_id = request.match_info["id"]
        result = self._sessions.get_result(execution_id)
        if result is not None:
            return web.json_response(result.to_payload())
        session = self._sessions.get_session(execution_id)
        if session is not None:
            return web.json_response({
                "executionId": session.execution_id,
                "projectId": session.project_id,
                "state": session.state.value,
                "duration": session.duration_ms,
            })
        return web.json_response(
            {"error": f"Execution {execution_id} not found", "code": ExecutionNotFound.code},
            status=404,
        )

    async def _handle_http_execute(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "error": "Use the WebSocket connection at /ws for command execution",
                "code": "USE_WEBSOCKET",
            },
            status=400,
        )
