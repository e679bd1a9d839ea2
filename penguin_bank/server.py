"""HTTP transport for the Penguin Bank MCP server.

JSON-RPC messages arrive as ``POST`` requests on ``/`` or ``/mcp``. A ``GET``
on the same paths with ``Accept: text/event-stream`` opens a one-shot SSE
stream that announces the session id and closes. Responses are plain JSON;
the single-frame SSE response path is kept for clients that insist on
``text/event-stream`` but is currently disabled (see ``_should_stream``).

All components are built explicitly in ``PenguinBankApplication`` so tests
can inject an in-memory store, a private metrics collector or a short tool
timeout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence
from uuid import uuid4

from aiohttp import web

from .config import Settings
from .datastore import BankDataStore, DataStoreError, PostgresDataStore, create_datastore
from .dispatcher import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    ProtocolDispatcher,
    RequestContext,
    contains_method,
    error_response,
    parse_error,
)
from .logger import StructuredLogger, configure_logging
from .metrics import MetricsCollector
from .oauth import OAuthStubs
from .sessions import SessionRegistry
from .tools import BankingTools

LOGGER = logging.getLogger("penguin_bank.server")

SESSION_HEADER = "Mcp-Session-Id"
MCP_PATHS = ("/", "/mcp")

# Set by the observability middleware for the duration of each request.
CURRENT_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("penguin_bank_request_id", default=None)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _json_dumps(payload: Any) -> bytes:
    """Serialize a JSON payload using compact separators."""

    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _wants_event_stream(request: web.Request) -> bool:
    return "text/event-stream" in request.headers.get("Accept", "")


def apply_cors_headers(
    response: web.StreamResponse, origin: Optional[str], allowed_origins: Sequence[str]
) -> None:
    if origin and origin.rstrip("/") in allowed_origins:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Vary"] = "Origin"
    else:
        response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = (
        "Content-Type, Accept, Authorization, Mcp-Session-Id, MCP-Protocol-Version"
    )
    response.headers["Access-Control-Expose-Headers"] = SESSION_HEADER
    response.headers["Access-Control-Max-Age"] = "86400"


def cors_middleware(allowed_origins: Sequence[str]):
    """Answer preflights, add CORS headers and render routing errors as JSON."""

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        origin = request.headers.get("Origin")

        if request.method == "OPTIONS":
            response = web.Response(status=204)
            apply_cors_headers(response, origin, allowed_origins)
            return response

        try:
            response = await handler(request)
        except web.HTTPNotFound:
            response = web.json_response({"error": "Not Found", "path": request.path}, status=404)
        except web.HTTPMethodNotAllowed as exc:
            allowed = sorted(exc.allowed_methods)
            response = web.json_response(
                {"error": "Method Not Allowed", "allowed": allowed},
                status=405,
                headers={"Allow": ", ".join(allowed)},
            )
        except web.HTTPException as exc:
            if exc.status < 400:
                raise
            response = web.json_response({"error": exc.reason, "detail": exc.text}, status=exc.status)

        if not response.prepared:
            apply_cors_headers(response, origin, allowed_origins)
        return response

    return middleware


def observability_middleware(
    logger: StructuredLogger, metrics: MetricsCollector, allowed_origins: Sequence[str]
):
    """Request logging and metrics. Last line of defence for unhandled errors."""

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        request_id = str(uuid4())
        request_id_token = CURRENT_REQUEST_ID.set(request_id)
        user_agent = request.headers.get("User-Agent")
        origin = request.headers.get("Origin")

        logger.log_request(request.method, request.path, request_id, userAgent=user_agent, origin=origin)
        metrics.start_request(
            request_id,
            request.method,
            request.path,
            user_agent,
            origin,
            sse=request.method == "GET" and _wants_event_stream(request),
        )
        started = time.perf_counter()
        status = 500
        try:
            response = await handler(request)
            status = response.status
        except web.HTTPException as exc:
            status = exc.status
            raise
        except asyncio.CancelledError:
            status = 499
            raise
        except Exception as exc:
            logger.error("Unhandled error while serving request", exc=exc, requestId=request_id)
            metrics.increment_error("unhandled_exception")
            response = web.json_response(
                error_response(None, INTERNAL_ERROR, "Internal error", str(exc)), status=500
            )
            apply_cors_headers(response, origin, allowed_origins)
        finally:
            CURRENT_REQUEST_ID.reset(request_id_token)
            metrics.end_request(request_id, status)
            logger.log_response(
                request.method,
                request.path,
                request_id,
                status,
                (time.perf_counter() - started) * 1000.0,
            )

        if not response.prepared:
            response.headers["X-Request-Id"] = request_id
        return response

    return middleware


class PenguinBankApplication:
    """Encapsulates the aiohttp application and the MCP components it serves."""

    def __init__(
        self,
        settings: Settings,
        store: Optional[BankDataStore] = None,
        logger: Optional[StructuredLogger] = None,
        metrics: Optional[MetricsCollector] = None,
        sessions: Optional[SessionRegistry] = None,
    ) -> None:
        self.settings = settings
        self.logger = logger or StructuredLogger("penguin_bank", settings.log_level)
        self.metrics = metrics or MetricsCollector()
        self.sessions = sessions if sessions is not None else SessionRegistry(settings.session_capacity)
        self.store = store if store is not None else create_datastore(settings)
        self.tools = BankingTools(self.store, settings.demo_user_id)
        self.dispatcher = ProtocolDispatcher(
            self.tools,
            self.sessions,
            self.metrics,
            self.logger,
            tool_timeout=settings.tool_timeout_seconds,
        )
        self.oauth = OAuthStubs(settings.oauth_issuer)

        self.app = web.Application(
            middlewares=[
                observability_middleware(self.logger, self.metrics, settings.allowed_origins),
                cors_middleware(settings.allowed_origins),
            ]
        )
        for path in MCP_PATHS:
            self.app.router.add_post(path, self.handle_post)
            self.app.router.add_get(path, self.handle_get, allow_head=False)
        self.app.router.add_get("/health", self.handle_health)
        self.oauth.register_routes(self.app)
        self.app.on_startup.append(self._on_startup)
        self.app.on_cleanup.append(self._on_cleanup)
        self.app[APP_KEY] = self

    async def _on_startup(self, app: web.Application) -> None:
        if not isinstance(self.store, PostgresDataStore):
            return
        try:
            await self.store.init_schema()
            await self.store.seed_demo_data(self.settings.demo_user_id)
        except DataStoreError as exc:
            # Keep serving; tool calls will surface the database error per request.
            self.logger.error("Database initialisation failed", exc=exc)

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.store.close()

    def _apply_cors(self, response: web.StreamResponse, request: web.Request) -> None:
        apply_cors_headers(response, request.headers.get("Origin"), self.settings.allowed_origins)

    def _should_stream(self, request: web.Request) -> bool:
        # Single-frame SSE replies confused several clients; JSON is always used for now.
        return False

    async def _write_sse_frame(
        self, request: web.Request, payload: Any, session_id: Optional[str]
    ) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )
        if session_id:
            response.headers[SESSION_HEADER] = session_id
        self._apply_cors(response, request)
        await response.prepare(request)
        await response.write(b"data: " + _json_dumps(payload) + b"\n\n")
        await response.write_eof()
        return response

    async def handle_post(self, request: web.Request) -> web.StreamResponse:
        context = RequestContext(request_id=CURRENT_REQUEST_ID.get() or str(uuid4()))

        if request.content_type != "application/json":
            return web.json_response(
                error_response(None, INVALID_REQUEST, "Invalid Request: Content-Type must be application/json"),
                status=400,
            )

        body = await request.read()
        try:
            payload = json.loads(body)
        except ValueError as exc:
            self.metrics.increment_error("parse_error")
            return web.json_response(parse_error(str(exc)), status=400)

        session_id = request.headers.get(SESSION_HEADER)
        if session_id:
            context.session_id = (await self.sessions.get_or_create(session_id)).id
        elif contains_method(payload, "initialize"):
            context.session_id = (await self.sessions.get_or_create()).id

        result = await self.dispatcher.handle(payload, context)

        if result is None:
            response: web.StreamResponse = web.Response(status=202)
        elif _wants_event_stream(request) and self._should_stream(request):
            return await self._write_sse_frame(request, result, context.session_id)
        else:
            response = web.json_response(result)

        if context.session_id:
            response.headers[SESSION_HEADER] = context.session_id
        return response

    async def handle_get(self, request: web.Request) -> web.StreamResponse:
        if not _wants_event_stream(request):
            raise web.HTTPMethodNotAllowed(request.method, ["POST", "OPTIONS"])

        session = await self.sessions.get_or_create(request.headers.get(SESSION_HEADER))
        self.logger.info("SSE stream opened", sessionId=session.id, requestId=CURRENT_REQUEST_ID.get())
        frame = {
            "jsonrpc": "2.0",
            "method": "notifications/initialized",
            "params": {"sessionId": session.id},
        }
        return await self._write_sse_frame(request, frame, session.id)

    async def handle_health(self, request: web.Request) -> web.Response:
        """Liveness probe with a metrics snapshot."""

        return web.json_response(
            {
                "status": "healthy",
                "mcp_server_ready": True,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "metrics": self.metrics.get_summary(),
            }
        )


APP_KEY = web.AppKey("penguin_bank", PenguinBankApplication)


def create_app(settings: Optional[Settings] = None) -> web.Application:
    settings = settings or Settings.from_environment()
    log_file = configure_logging(settings.log_level, settings.log_dir)
    if log_file:
        LOGGER.info("Logging to %s", log_file)
    server = PenguinBankApplication(settings)
    LOGGER.info(
        "Penguin Bank MCP server configured (backend=%s, timeout=%ss)",
        settings.data_backend,
        settings.tool_timeout_seconds,
    )
    return server.app


def main() -> None:
    settings = Settings.from_environment()
    app = create_app(settings)
    web.run_app(app, host=settings.host, port=settings.port)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
