"""JSON-RPC 2.0 dispatch for the MCP methods the server understands.

The dispatcher is transport agnostic: it receives decoded JSON values and
returns response envelopes (or ``None`` for notifications). HTTP concerns such
as status codes, headers and session header negotiation live in
``penguin_bank.server``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from uuid import uuid4

from . import __version__
from .config import TOOL_TIMEOUT_SECONDS
from .logger import StructuredLogger
from .metrics import MetricsCollector
from .sessions import SessionRegistry
from .tools import BankingTools, ToolDefinition, ToolResult

LOGGER = logging.getLogger("penguin_bank.dispatcher")

SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")
DEFAULT_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]

SERVER_INFO = {"name": "penguin-bank", "version": __version__}
SERVER_CAPABILITIES = {
    "tools": {"listChanged": False},
    "resources": {"subscribe": False, "listChanged": False},
    "prompts": {"listChanged": False},
}

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

TIMEOUT_MESSAGE = "Error: Tool execution timed out. Please try again with a simpler request."

JsonRpcResponse = Dict[str, Any]


class RpcMethod(str, Enum):
    INITIALIZE = "initialize"
    PING = "ping"
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"
    RESOURCES_LIST = "resources/list"
    PROMPTS_LIST = "prompts/list"


class JsonRpcError(Exception):
    """Raised by method handlers to produce a JSON-RPC error envelope."""

    def __init__(self, code: int, message: str, *, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


@dataclass
class RequestContext:
    """Per-HTTP-request values shared by every message in a batch."""

    request_id: str = field(default_factory=lambda: str(uuid4()))
    session_id: Optional[str] = None


def error_response(request_id: Any, code: int, message: str, data: Any = None) -> JsonRpcResponse:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def success_response(request_id: Any, result: Any) -> JsonRpcResponse:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def parse_error(detail: Optional[str] = None) -> JsonRpcResponse:
    return error_response(None, PARSE_ERROR, "Parse error", detail)


def _valid_id(value: Any) -> bool:
    return value is None or (isinstance(value, (str, int, float)) and not isinstance(value, bool))


def is_notification(message: Any) -> bool:
    if not isinstance(message, dict):
        return False
    method = message.get("method")
    if isinstance(method, str) and method.startswith("notifications/"):
        return True
    return message.get("id") is None


def contains_method(payload: Any, method: str) -> bool:
    """True if ``payload`` (single message or batch) calls ``method``."""

    messages = payload if isinstance(payload, list) else [payload]
    return any(isinstance(message, dict) and message.get("method") == method for message in messages)


class ProtocolDispatcher:
    """Routes JSON-RPC messages to the MCP method handlers."""

    def __init__(
        self,
        tools: BankingTools,
        sessions: SessionRegistry,
        metrics: MetricsCollector,
        logger: StructuredLogger,
        *,
        tool_timeout: float = TOOL_TIMEOUT_SECONDS,
    ) -> None:
        self.tools = tools
        self.sessions = sessions
        self.metrics = metrics
        self.logger = logger
        self.tool_timeout = tool_timeout
        self._handlers: Dict[RpcMethod, Callable[[Dict[str, Any], RequestContext], Awaitable[Any]]] = {
            RpcMethod.INITIALIZE: self.rpc_initialize,
            RpcMethod.PING: self.rpc_ping,
            RpcMethod.TOOLS_LIST: self.rpc_tools_list,
            RpcMethod.TOOLS_CALL: self.rpc_tools_call,
            RpcMethod.RESOURCES_LIST: self.rpc_resources_list,
            RpcMethod.PROMPTS_LIST: self.rpc_prompts_list,
        }

    async def handle(
        self, payload: Any, context: RequestContext
    ) -> Union[JsonRpcResponse, List[JsonRpcResponse], None]:
        """Dispatch a decoded request body, single message or batch."""

        if isinstance(payload, list):
            if not payload:
                return error_response(None, INVALID_REQUEST, "Invalid Request: empty batch")
            return await self.dispatch_batch(payload, context)
        return await self.dispatch(payload, context)

    async def dispatch_batch(self, messages: List[Any], context: RequestContext) -> Optional[List[JsonRpcResponse]]:
        responses: List[JsonRpcResponse] = []
        for message in messages:
            response = await self.dispatch(message, context)
            if response is not None:
                responses.append(response)
        return responses or None

    async def dispatch(self, message: Any, context: RequestContext) -> Optional[JsonRpcResponse]:
        if not isinstance(message, dict):
            return error_response(None, INVALID_REQUEST, "Invalid Request: expected object")

        request_id = message.get("id")
        if not _valid_id(request_id):
            return error_response(None, INVALID_REQUEST, "Invalid Request: id must be a string, number or null")
        if message.get("jsonrpc") != "2.0":
            return error_response(request_id, INVALID_REQUEST, "Invalid Request: jsonrpc must be 2.0")

        method = message.get("method")
        if not isinstance(method, str) or not method:
            return error_response(request_id, INVALID_REQUEST, "Invalid Request: method required")

        params = message.get("params")
        if method.startswith("notifications/"):
            await self._handle_notification(method, params, context)
            return None

        notification = request_id is None
        try:
            rpc_method = RpcMethod(method)
        except ValueError:
            if notification:
                LOGGER.info("Ignoring notification for unknown method %s", method)
                return None
            return error_response(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

        if params is None:
            params = {}
        if not isinstance(params, dict):
            if notification:
                return None
            return error_response(request_id, INVALID_PARAMS, "Invalid params: expected object")

        try:
            result = await self._handlers[rpc_method](params, context)
        except JsonRpcError as exc:
            if notification:
                return None
            return error_response(request_id, exc.code, exc.message, exc.data)
        except Exception as exc:
            self.logger.error(
                "Unhandled error in MCP method",
                exc=exc,
                method=method,
                requestId=context.request_id,
                sessionId=context.session_id,
            )
            if notification:
                return None
            return error_response(request_id, INTERNAL_ERROR, "Internal error", str(exc))

        if notification:
            return None
        return success_response(request_id, result)

    async def _handle_notification(self, method: str, params: Any, context: RequestContext) -> None:
        self.logger.debug("Notification received", method=method, sessionId=context.session_id)
        if not context.session_id:
            return
        if method == "notifications/initialized":
            await self.sessions.mark_initialized(context.session_id)
        else:
            await self.sessions.touch(context.session_id)

    async def rpc_initialize(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        requested = params.get("protocolVersion")
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else DEFAULT_PROTOCOL_VERSION
        client_info = params.get("clientInfo")
        session = await self.sessions.mark_initialized(
            context.session_id,
            protocol_version=version,
            client_info=client_info if isinstance(client_info, dict) else None,
        )
        context.session_id = session.id
        self.logger.info("Session initialized", sessionId=session.id, protocolVersion=version)
        return {
            "protocolVersion": version,
            "capabilities": SERVER_CAPABILITIES,
            "serverInfo": SERVER_INFO,
        }

    async def rpc_ping(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        return {}

    async def rpc_tools_list(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        return {"tools": self.tools.list_tools()}

    async def rpc_resources_list(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        return {"resources": []}

    async def rpc_prompts_list(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        return {"prompts": []}

    async def rpc_tools_call(self, params: Dict[str, Any], context: RequestContext) -> ToolResult:
        name = params.get("name")
        definition = self.tools.get(name)
        if definition is None:
            raise JsonRpcError(
                INTERNAL_ERROR,
                f"Unknown tool: {name}",
                data={"available": list(self.tools.definitions)},
            )
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise JsonRpcError(INVALID_PARAMS, "Invalid params: 'arguments' must be an object")

        self.metrics.start_tool_execution(
            definition.name, context.request_id, len(json.dumps(arguments, default=str))
        )
        started = time.perf_counter()
        result: Optional[ToolResult] = None
        try:
            result = await self._run_with_timeout(definition, arguments, context)
            return result
        finally:
            duration_ms = (time.perf_counter() - started) * 1000.0
            success = result is not None and not result.get("isError", False)
            response_size = len(json.dumps(result, default=str)) if result is not None else None
            self.metrics.end_tool_execution(definition.name, context.request_id, success, response_size)
            self.logger.log_tool_execution(
                definition.name, context.request_id, duration_ms, success, sessionId=context.session_id
            )

    async def _run_with_timeout(
        self, definition: ToolDefinition, arguments: Dict[str, Any], context: RequestContext
    ) -> ToolResult:
        # The tool task is shielded: on timeout it is abandoned and keeps running.
        task = asyncio.ensure_future(self.tools.run(definition, arguments))
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.tool_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Tool execution timed out",
                toolName=definition.name,
                timeoutSeconds=self.tool_timeout,
                requestId=context.request_id,
            )
            task.add_done_callback(_make_abandoned_callback(definition.name))
            return {"content": [{"type": "text", "text": TIMEOUT_MESSAGE}], "isError": True}


def _make_abandoned_callback(tool_name: str) -> Callable[["asyncio.Future[Any]"], None]:
    def _callback(task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Abandoned %s call failed after timeout: %s", tool_name, exc)
        else:
            LOGGER.info("Abandoned %s call completed after timeout", tool_name)

    return _callback
