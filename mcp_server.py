"""Inky MCP server: ink story runtime and debugger as MCP tools.

Serves JSON-RPC over HTTP+SSE (default) or stdio. Each story session runs in
its own node subprocess (ink_bridge.js + inkjs); the debugger steps those
sessions line by line.

Architecture:
  MCP client --JSON-RPC/SSE|stdio--> mcp_server.py --JSON/stdin--> node ink_bridge.js (per session)
                                          |
                                          +--HTTPS--> OpenAI-compatible LLM (optional)
"""

import argparse
import os
import sys

from dotenv import load_dotenv
load_dotenv()

import uvicorn

from debug_engine import TRACE_LIMIT, DebugEngine
from llm_engine import LlmEngine
from mcp_tools import McpTools
from mcp_transport import SERVER_NAME, SERVER_VERSION, JsonRpcProcessor, create_app, run_stdio
from session_manager import SessionManager
from story_runtime import DEFAULT_BRIDGE_TIMEOUT, NodeInkEngine

DEFAULT_PORT = 3001


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="inky-mcp", description="MCP server for ink stories.")
    parser.add_argument("--transport", choices=["sse", "stdio"],
                        default=os.environ.get("INKY_TRANSPORT", "sse"))
    parser.add_argument("--host", default=os.environ.get("INKY_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("INKY_PORT", DEFAULT_PORT)))
    parser.add_argument("--node", default=os.environ.get("INKY_NODE", "node"),
                        help="node executable used for the ink bridge")
    parser.add_argument("--inkjs", default=os.environ.get("INKY_INKJS_MODULE", "inkjs/full"),
                        help="module path require()d by the bridge for inkjs")
    parser.add_argument("--bidify", default=os.environ.get("INKY_BIDIFY_PATH") or None,
                        help="path to a bidify.js module; enables the bidi tools")
    parser.add_argument("--no-debug", action="store_true", default=_env_flag("INKY_DISABLE_DEBUG"),
                        help="hide the debugger tools")
    parser.add_argument("--no-llm", action="store_true",
                        help="hide the LLM tools even when an API key is configured")
    return parser.parse_args(argv)


def build_tools(args: argparse.Namespace) -> McpTools:
    engine = NodeInkEngine(
        node=args.node,
        inkjs_module=args.inkjs,
        bidify_path=args.bidify,
        timeout=DEFAULT_BRIDGE_TIMEOUT,
    )
    sessions = SessionManager()
    debug_engine = None if args.no_debug else DebugEngine(sessions, trace_limit=TRACE_LIMIT)
    llm_engine = None if args.no_llm else LlmEngine.from_env()
    tools = McpTools(engine, sessions, debug_engine=debug_engine, llm_engine=llm_engine)
    print(f"[inky] {len(tools.tools)} tools "
          f"(debug={'on' if debug_engine else 'off'}, "
          f"bidi={'on' if engine.has_bidi else 'off'}, "
          f"llm={llm_engine.model if llm_engine else 'off'})",
          file=sys.stderr, flush=True)
    return tools


def main(argv: list[str] | None = None):
    args = parse_args(argv)
    tools = build_tools(args)
    processor = JsonRpcProcessor(tools, SERVER_NAME, SERVER_VERSION)
    try:
        if args.transport == "stdio":
            run_stdio(processor)
        else:
            print(f"[inky] {SERVER_NAME} {SERVER_VERSION} listening on "
                  f"http://{args.host}:{args.port}/sse", file=sys.stderr, flush=True)
            uvicorn.run(create_app(processor), host=args.host, port=args.port, log_level="warning")
    finally:
        tools.sessions.close_all()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
