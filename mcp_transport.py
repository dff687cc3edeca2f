"""JSON-RPC 2.0 (MCP subset) over HTTP+SSE and stdio.

HTTP layout:
  GET  /sse                      open a channel; first event names the POST endpoint
  POST /message?sessionId=<id>   reply is pushed on the channel, POST returns 202
  POST /message                  reply is returned directly in the HTTP body
  GET  /health                   liveness + tool count
  /api/...                       REST shortcuts onto individual tools

Tool work runs in the worker thread pool; the event loop only moves bytes.
"""

import asyncio
import json
import sys
import uuid

from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    Implementation,
    InitializeResult,
    ServerCapabilities,
    ToolsCapability,
)
from sse_starlette.sse import EventSourceResponse
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route

from mcp_tools import McpTools, result_text

SERVER_NAME = "inky-mcp"
SERVER_VERSION = "0.1.0"
PROTOCOL_VERSION = "2024-11-05"
SSE_PING_SECONDS = 15


class JsonRpcError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def _error(request_id, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _dump(model) -> dict:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


# ---------------------------------------------------------------------------
# JSON-RPC processing
# ---------------------------------------------------------------------------

class JsonRpcProcessor:
    """Turns one raw JSON-RPC message into at most one response object."""

    def __init__(self, tools: McpTools, server_name: str = SERVER_NAME,
                 server_version: str = SERVER_VERSION):
        self.tools = tools
        self.server_name = server_name
        self.server_version = server_version
        self._methods = {
            "initialize": self._initialize,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "ping": lambda params: {},
        }

    def handle_payload(self, raw: str | bytes) -> dict | None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return _error(None, PARSE_ERROR, f"Parse error: {e}")
        return self.handle_message(message)

    def handle_message(self, message) -> dict | None:
        if not isinstance(message, dict):
            return _error(None, INVALID_REQUEST, "Invalid Request: expected a JSON object")
        request_id = message.get("id")
        is_notification = "id" not in message
        method = message.get("method")
        if not isinstance(method, str):
            return _error(request_id, INVALID_REQUEST, "Invalid Request: missing method")

        try:
            result = self._dispatch(method, message.get("params"))
        except JsonRpcError as e:
            if is_notification:
                return None
            return _error(request_id, e.code, e.message)
        except Exception as e:
            print(f"[inky] {method} failed: {type(e).__name__}: {e}", file=sys.stderr, flush=True)
            if is_notification:
                return None
            return _error(request_id, INTERNAL_ERROR, f"Internal error: {e}")

        if is_notification:
            return None
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def _dispatch(self, method: str, params) -> dict:
        if method.startswith("notifications/"):
            return {}
        handler = self._methods.get(method)
        if handler is None:
            raise JsonRpcError(METHOD_NOT_FOUND, f"Method not found: {method}")
        if params is not None and not isinstance(params, dict):
            raise JsonRpcError(INVALID_PARAMS, "Invalid params: expected an object")
        return handler(params or {})

    def _initialize(self, params: dict) -> dict:
        client = params.get("clientInfo") or {}
        print(f"[inky] initialize from {client.get('name', 'unknown client')}",
              file=sys.stderr, flush=True)
        return _dump(InitializeResult(
            protocolVersion=PROTOCOL_VERSION,
            capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
            serverInfo=Implementation(name=self.server_name, version=self.server_version),
        ))

    def _tools_list(self, params: dict) -> dict:
        return {"tools": [_dump(tool) for tool in self.tools.tools]}

    def _tools_call(self, params: dict) -> dict:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise JsonRpcError(INVALID_PARAMS, "Missing tool name")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        elif not isinstance(arguments, dict):
            raise JsonRpcError(INVALID_PARAMS, "Invalid arguments: expected an object")
        return _dump(self.tools.call(name, arguments))


# ---------------------------------------------------------------------------
# SSE channels
# ---------------------------------------------------------------------------

class Channel:
    def __init__(self, channel_id: str):
        self.id = channel_id
        self.queue: asyncio.Queue = asyncio.Queue()

    async def push(self, message: dict):
        await self.queue.put(message)


class ChannelRegistry:
    """Open SSE streams, keyed by the sessionId handed out in the endpoint event.

    Only touched from the event loop, so no lock.
    """

    def __init__(self):
        self._channels: dict[str, Channel] = {}

    def open(self) -> Channel:
        channel_id = uuid.uuid4().hex
        channel = Channel(channel_id)
        self._channels[channel_id] = channel
        print(f"[inky] SSE channel {channel_id[:8]} opened", file=sys.stderr, flush=True)
        return channel

    def get(self, channel_id: str) -> Channel | None:
        return self._channels.get(channel_id)

    def close(self, channel_id: str) -> bool:
        closed = self._channels.pop(channel_id, None) is not None
        if closed:
            print(f"[inky] SSE channel {channel_id[:8]} closed", file=sys.stderr, flush=True)
        return closed

    def __len__(self) -> int:
        return len(self._channels)


async def channel_events(channel: Channel, channels: ChannelRegistry):
    """Event stream for one channel: the endpoint event, then every pushed reply."""
    try:
        yield {"event": "endpoint", "data": f"/message?sessionId={channel.id}"}
        while True:
            message = await channel.queue.get()
            yield {"event": "message", "data": json.dumps(message, ensure_ascii=False)}
    finally:
        channels.close(channel.id)


# ---------------------------------------------------------------------------
# Starlette application
# ---------------------------------------------------------------------------

def _tool_response(result) -> Response:
    text = result_text(result)
    if result.isError:
        return PlainTextResponse(text, status_code=400)
    return Response(text, media_type="application/json")


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise ValueError("Invalid JSON body: expected an object")
    return body


def create_app(processor: JsonRpcProcessor, channels: ChannelRegistry | None = None,
               ping_interval: int = SSE_PING_SECONDS) -> Starlette:
    channels = channels if channels is not None else ChannelRegistry()
    tools = processor.tools

    async def sse(request: Request):
        channel = channels.open()
        return EventSourceResponse(channel_events(channel, channels), ping=ping_interval)

    async def message(request: Request):
        session_id = request.query_params.get("sessionId")
        channel = None
        if session_id:
            channel = channels.get(session_id)
            if channel is None:
                return JSONResponse({"error": "Session not found or expired"}, status_code=404)
        body = await request.body()
        response = await run_in_threadpool(processor.handle_payload, body)
        if channel is not None:
            if response is not None:
                await channel.push(response)
            return PlainTextResponse("Accepted", status_code=202)
        if response is None:
            return PlainTextResponse("Accepted", status_code=202)
        return JSONResponse(response)

    async def health(request: Request):
        return JSONResponse({
            "status": "ok",
            "version": processor.server_version,
            "tools": len(tools.tools),
        })

    def rest(tool_name: str):
        async def endpoint(request: Request):
            try:
                body = await _json_body(request)
            except ValueError as e:
                return JSONResponse({"error": str(e)}, status_code=400)
            return _tool_response(await run_in_threadpool(tools.call, tool_name, body))
        return endpoint

    async def variable(request: Request):
        try:
            body = await _json_body(request)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        tool_name = "set_variable" if "value" in body else "get_variable"
        return _tool_response(await run_in_threadpool(tools.call, tool_name, body))

    async def sessions(request: Request):
        return _tool_response(await run_in_threadpool(tools.call, "list_sessions", {}))

    routes = [
        Route("/sse", sse, methods=["GET"]),
        Route("/message", message, methods=["POST"]),
        Route("/health", health, methods=["GET"]),
        Route("/api/compile", rest("compile_ink"), methods=["POST"]),
        Route("/api/start", rest("start_story"), methods=["POST"]),
        Route("/api/choose", rest("choose"), methods=["POST"]),
        Route("/api/variable", variable, methods=["POST"]),
        Route("/api/debug/start", rest("start_debug"), methods=["POST"]),
        Route("/api/debug/step", rest("debug_step"), methods=["POST"]),
        Route("/api/sessions", sessions, methods=["GET"]),
    ]
    middleware = [
        Middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["GET", "POST"],
                   allow_headers=["*"]),
    ]
    app = Starlette(routes=routes, middleware=middleware)
    app.state.channels = channels
    app.state.processor = processor
    return app


# ---------------------------------------------------------------------------
# stdio
# ---------------------------------------------------------------------------

def run_stdio(processor: JsonRpcProcessor, stdin=None, stdout=None):
    """Serve newline-delimited JSON-RPC until stdin closes."""
    stdin = stdin if stdin is not None else sys.stdin
    stdout = stdout if stdout is not None else sys.stdout
    print("[inky] serving JSON-RPC on stdio", file=sys.stderr, flush=True)
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        response = processor.handle_payload(line)
        if response is not None:
            stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
            stdout.flush()
