"""Tool catalog and dispatcher for the Inky MCP server.

Every tool call goes through McpTools.call(), which is the only place
exceptions are turned into error results. Handlers parse their arguments into
a small dataclass first, so a bad call fails before it touches a session.

Tool groups:
  ink    always present (compile, sessions, choices, variables, state)
  bidi   only when the engine has a bidi helper module
  debug  only when a DebugEngine is configured
  llm    only when an LlmEngine is configured
"""

import json
import sys
from dataclasses import dataclass, field
from typing import Any

from mcp.types import CallToolResult, TextContent, Tool

from debug_engine import DEFAULT_MAX_STEPS, DebugEngine, StepOutcome
from session_manager import SessionManager
from story_runtime import ContinueResult, StoryEngine

DEFAULT_TRACE_ENTRIES = 50


class ToolArgumentError(ValueError):
    """A tool was called with missing or mistyped arguments."""


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

_MISSING = object()


def _get(args: dict, key: str):
    value = args.get(key, _MISSING)
    if value is _MISSING or value is None:
        raise ToolArgumentError(f"missing required argument '{key}'")
    return value


def _require_str(args: dict, key: str) -> str:
    value = _get(args, key)
    if not isinstance(value, str):
        raise ToolArgumentError(f"argument '{key}' must be a string, got {type(value).__name__}")
    return value


def _optional_str(args: dict, key: str) -> str | None:
    if args.get(key) is None:
        return None
    return _require_str(args, key)


def _as_int(key: str, value) -> int:
    # bool is an int subclass; JSON true/false is never a valid index.
    if isinstance(value, bool):
        raise ToolArgumentError(f"argument '{key}' must be an integer, got bool")
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if not isinstance(value, int):
        raise ToolArgumentError(f"argument '{key}' must be an integer, got {type(value).__name__}")
    return value


def _require_int(args: dict, key: str) -> int:
    return _as_int(key, _get(args, key))


def _optional_int(args: dict, key: str, default: int) -> int:
    if args.get(key) is None:
        return default
    return _as_int(key, args[key])


def _optional_bool(args: dict, key: str, default: bool) -> bool:
    value = args.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ToolArgumentError(f"argument '{key}' must be a boolean, got {type(value).__name__}")
    return value


@dataclass
class SourceArgs:
    source: str

    @classmethod
    def from_arguments(cls, args: dict) -> "SourceArgs":
        return cls(source=_require_str(args, "source"))


@dataclass
class StartStoryArgs:
    source: str
    session_id: str | None = None

    @classmethod
    def from_arguments(cls, args: dict) -> "StartStoryArgs":
        return cls(
            source=_require_str(args, "source"),
            session_id=_optional_str(args, "session_id"),
        )


@dataclass
class StartStoryJsonArgs:
    json: str
    session_id: str | None = None
    state_json: str | None = None

    @classmethod
    def from_arguments(cls, args: dict) -> "StartStoryJsonArgs":
        return cls(
            json=_require_str(args, "json"),
            session_id=_optional_str(args, "session_id"),
            state_json=_optional_str(args, "state_json"),
        )


@dataclass
class SessionArgs:
    session_id: str

    @classmethod
    def from_arguments(cls, args: dict) -> "SessionArgs":
        return cls(session_id=_require_str(args, "session_id"))


@dataclass
class ChooseArgs:
    session_id: str
    choice_index: int
    auto_continue: bool = True

    @classmethod
    def from_arguments(cls, args: dict) -> "ChooseArgs":
        return cls(
            session_id=_require_str(args, "session_id"),
            choice_index=_require_int(args, "choice_index"),
            auto_continue=_optional_bool(args, "auto_continue", True),
        )


@dataclass
class VariableArgs:
    session_id: str
    name: str

    @classmethod
    def from_arguments(cls, args: dict) -> "VariableArgs":
        return cls(
            session_id=_require_str(args, "session_id"),
            name=_require_str(args, "name"),
        )


@dataclass
class SetVariableArgs:
    session_id: str
    name: str
    value: Any = None

    @classmethod
    def from_arguments(cls, args: dict) -> "SetVariableArgs":
        # null is a legal value, so only an absent key is an error.
        if "value" not in args:
            raise ToolArgumentError("missing required argument 'value'")
        value = args["value"]
        if isinstance(value, (dict, list)):
            raise ToolArgumentError("argument 'value' must be a string, number, boolean or null")
        return cls(
            session_id=_require_str(args, "session_id"),
            name=_require_str(args, "name"),
            value=value,
        )


@dataclass
class LoadStateArgs:
    session_id: str
    state_json: str

    @classmethod
    def from_arguments(cls, args: dict) -> "LoadStateArgs":
        return cls(
            session_id=_require_str(args, "session_id"),
            state_json=_require_str(args, "state_json"),
        )


@dataclass
class EvaluateFunctionArgs:
    session_id: str
    function_name: str
    args: list = field(default_factory=list)

    @classmethod
    def from_arguments(cls, args: dict) -> "EvaluateFunctionArgs":
        fn_args = args.get("args")
        if fn_args is None:
            fn_args = []
        elif not isinstance(fn_args, list):
            raise ToolArgumentError(f"argument 'args' must be an array, got {type(fn_args).__name__}")
        return cls(
            session_id=_require_str(args, "session_id"),
            function_name=_require_str(args, "function_name"),
            args=fn_args,
        )


@dataclass
class TextArgs:
    text: str

    @classmethod
    def from_arguments(cls, args: dict) -> "TextArgs":
        return cls(text=_require_str(args, "text"))


@dataclass
class JsonArgs:
    json: str

    @classmethod
    def from_arguments(cls, args: dict) -> "JsonArgs":
        return cls(json=_require_str(args, "json"))


@dataclass
class BreakpointArgs:
    session_id: str
    type: str
    target: str

    @classmethod
    def from_arguments(cls, args: dict) -> "BreakpointArgs":
        return cls(
            session_id=_require_str(args, "session_id"),
            type=_require_str(args, "type"),
            target=_require_str(args, "target"),
        )


@dataclass
class RemoveBreakpointArgs:
    session_id: str
    breakpoint_id: str

    @classmethod
    def from_arguments(cls, args: dict) -> "RemoveBreakpointArgs":
        key = "breakpoint_id" if args.get("breakpoint_id") is not None else "id"
        if args.get(key) is None:
            raise ToolArgumentError("missing required argument 'breakpoint_id'")
        return cls(
            session_id=_require_str(args, "session_id"),
            breakpoint_id=_require_str(args, key),
        )


@dataclass
class WatchArgs:
    session_id: str
    variable: str

    @classmethod
    def from_arguments(cls, args: dict) -> "WatchArgs":
        return cls(
            session_id=_require_str(args, "session_id"),
            variable=_require_str(args, "variable"),
        )


@dataclass
class DebugContinueArgs:
    session_id: str
    max_steps: int = DEFAULT_MAX_STEPS

    @classmethod
    def from_arguments(cls, args: dict) -> "DebugContinueArgs":
        return cls(
            session_id=_require_str(args, "session_id"),
            max_steps=_optional_int(args, "max_steps", DEFAULT_MAX_STEPS),
        )


@dataclass
class TraceArgs:
    session_id: str
    last_n: int = DEFAULT_TRACE_ENTRIES

    @classmethod
    def from_arguments(cls, args: dict) -> "TraceArgs":
        return cls(
            session_id=_require_str(args, "session_id"),
            last_n=_optional_int(args, "last_n", DEFAULT_TRACE_ENTRIES),
        )


@dataclass
class MessageArgs:
    message: str

    @classmethod
    def from_arguments(cls, args: dict) -> "MessageArgs":
        return cls(message=_require_str(args, "message"))


@dataclass
class PromptArgs:
    prompt: str

    @classmethod
    def from_arguments(cls, args: dict) -> "PromptArgs":
        return cls(prompt=_require_str(args, "prompt"))


# ---------------------------------------------------------------------------
# Descriptors and results
# ---------------------------------------------------------------------------

def _tool(name: str, description: str, properties: dict | None = None,
          required: list[str] | None = None) -> Tool:
    schema = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return Tool(name=name, description=description, inputSchema=schema)


def _prop(kind: str, description: str) -> dict:
    return {"type": kind, "description": description}


SESSION_ID = _prop("string", "Story session ID")


def text_result(payload: dict) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps(payload, ensure_ascii=False))],
        isError=False,
    )


def error_result(message: str) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=message)], isError=True)


def result_text(result: CallToolResult) -> str:
    """Concatenate the text blocks of a tool result."""
    return "".join(block.text for block in result.content if isinstance(block, TextContent))


def story_payload(session_id: str, result: ContinueResult) -> dict:
    return {
        "session_id": session_id,
        "text": result.text,
        "can_continue": result.can_continue,
        "choices": [c.to_dict() for c in result.choices],
        "tags": list(result.tags),
    }


def step_payload(outcome: StepOutcome) -> dict:
    payload = {
        "text": outcome.text,
        "can_continue": outcome.can_continue,
        "choices": [{"index": c.index, "text": c.text} for c in outcome.choices],
        "tags": list(outcome.tags),
        "step_number": outcome.step_number,
        "is_paused": outcome.is_paused,
    }
    if outcome.hit_breakpoint is not None:
        bp = outcome.hit_breakpoint
        payload["hit_breakpoint"] = {"id": bp.id, "type": bp.type, "target": bp.target}
    if outcome.watch_changes:
        payload["watch_changes"] = {
            name: {"old": old, "new": new}
            for name, (old, new) in outcome.watch_changes.items()
        }
    return payload


# ---------------------------------------------------------------------------
# McpTools
# ---------------------------------------------------------------------------

class McpTools:
    """Owns the tool catalog and routes tools/call requests to handlers."""

    def __init__(self, engine: StoryEngine, sessions: SessionManager,
                 debug_engine: DebugEngine | None = None, llm_engine=None):
        self.engine = engine
        self.sessions = sessions
        self.debug_engine = debug_engine
        self.llm_engine = llm_engine

        entries = list(self._ink_tools())
        if engine.has_bidi:
            entries += self._bidi_tools()
        if debug_engine is not None:
            entries += self._debug_tools()
        if llm_engine is not None:
            entries += self._llm_tools()
        self._tools = [tool for tool, _ in entries]
        self._handlers = {tool.name: handler for tool, handler in entries}

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools)

    @property
    def tool_names(self) -> list[str]:
        return [t.name for t in self._tools]

    def call(self, name: str, arguments: dict | None = None) -> CallToolResult:
        handler = self._handlers.get(name)
        if handler is None:
            return error_result(f"Unknown tool: {name}")
        try:
            return text_result(handler(arguments or {}))
        except Exception as e:
            print(f"[inky] tool {name} failed: {type(e).__name__}: {e}", file=sys.stderr, flush=True)
            return error_result(f"{type(e).__name__}: {e}")

    # -- catalog --------------------------------------------------------------

    def _ink_tools(self):
        return [
            (_tool("compile_ink",
                   "Compile ink source code to JSON. Returns compiled JSON or error messages.",
                   {"source": _prop("string", "Ink source code")}, ["source"]),
             self._compile_ink),
            (_tool("start_story",
                   "Compile ink source and start an interactive story session. "
                   "Returns session ID, initial text, and available choices.",
                   {"source": _prop("string", "Ink source code"),
                    "session_id": _prop("string", "Optional session ID (generated if omitted)")},
                   ["source"]),
             self._start_story),
            (_tool("start_story_json",
                   "Start an interactive story session from pre-compiled JSON, "
                   "optionally restoring a saved state.",
                   {"json": _prop("string", "Compiled ink JSON"),
                    "session_id": _prop("string", "Optional session ID (generated if omitted)"),
                    "state_json": _prop("string", "Optional saved state to restore")},
                   ["json"]),
             self._start_story_json),
            (_tool("choose",
                   "Make a choice in an active story session. Returns subsequent text and new choices.",
                   {"session_id": SESSION_ID,
                    "choice_index": _prop("integer", "Index of the choice (0-based)"),
                    "auto_continue": _prop("boolean",
                                           "Continue to the next choice point (default: true). "
                                           "Set false to step the branch with debug_step.")},
                   ["session_id", "choice_index"]),
             self._choose),
            (_tool("continue_story", "Continue reading the story text in an active session.",
                   {"session_id": SESSION_ID}, ["session_id"]),
             self._continue_story),
            (_tool("get_variable", "Get the value of an ink variable in the story.",
                   {"session_id": SESSION_ID, "name": _prop("string", "Variable name")},
                   ["session_id", "name"]),
             self._get_variable),
            (_tool("set_variable", "Set the value of an ink variable in the story.",
                   {"session_id": SESSION_ID,
                    "name": _prop("string", "Variable name"),
                    "value": {"description": "New value (string, number, boolean or null)"}},
                   ["session_id", "name", "value"]),
             self._set_variable),
            (_tool("save_state", "Save the current story state as JSON for later restoration.",
                   {"session_id": SESSION_ID}, ["session_id"]),
             self._save_state),
            (_tool("load_state", "Load a previously saved story state.",
                   {"session_id": SESSION_ID,
                    "state_json": _prop("string", "State JSON from save_state")},
                   ["session_id", "state_json"]),
             self._load_state),
            (_tool("reset_story", "Reset the story to its beginning.",
                   {"session_id": SESSION_ID}, ["session_id"]),
             self._reset_story),
            (_tool("evaluate_function", "Call an ink function defined in the story.",
                   {"session_id": SESSION_ID,
                    "function_name": _prop("string", "Ink function name"),
                    "args": {"type": "array", "description": "Function arguments"}},
                   ["session_id", "function_name"]),
             self._evaluate_function),
            (_tool("get_global_tags", "Get the global tags defined at the top of the ink story.",
                   {"session_id": SESSION_ID}, ["session_id"]),
             self._get_global_tags),
            (_tool("list_sessions", "List all active story sessions."),
             self._list_sessions),
            (_tool("end_session", "End a story session and free its resources.",
                   {"session_id": SESSION_ID}, ["session_id"]),
             self._end_session),
        ]

    def _bidi_tools(self):
        return [
            (_tool("bidify", "Add Unicode bidi markers (LRI/RLI/PDI) to text for proper RTL display.",
                   {"text": _prop("string", "Text to bidify")}, ["text"]),
             self._bidify),
            (_tool("strip_bidi", "Remove Unicode bidi markers from text.",
                   {"text": _prop("string", "Text to clean")}, ["text"]),
             self._strip_bidi),
            (_tool("bidify_json", "Add bidi markers to story text strings in compiled ink JSON.",
                   {"json": _prop("string", "Compiled ink JSON")}, ["json"]),
             self._bidify_json),
        ]

    def _debug_tools(self):
        return [
            (_tool("start_debug",
                   "Start debugging an existing story session. Adds breakpoints, watches, step execution.",
                   {"session_id": SESSION_ID}, ["session_id"]),
             self._start_debug),
            (_tool("add_breakpoint",
                   "Add a breakpoint. Types: 'knot' (break at knot), 'stitch' (break at stitch), "
                   "'pattern' (regex match on output), 'variable_change' (break when a watched "
                   "variable changes).",
                   {"session_id": SESSION_ID,
                    "type": {"type": "string", "enum": ["knot", "stitch", "pattern", "variable_change"],
                             "description": "Breakpoint type"},
                    "target": _prop("string", "Knot/stitch name, regex pattern, or variable name")},
                   ["session_id", "type", "target"]),
             self._add_breakpoint),
            (_tool("remove_breakpoint", "Remove a breakpoint by ID.",
                   {"session_id": SESSION_ID,
                    "breakpoint_id": _prop("string", "Breakpoint ID (e.g. bp_1)")},
                   ["session_id", "breakpoint_id"]),
             self._remove_breakpoint),
            (_tool("list_breakpoints", "List the breakpoints of a debug session.",
                   {"session_id": SESSION_ID}, ["session_id"]),
             self._list_breakpoints),
            (_tool("debug_step",
                   "Step to the next line of story output, checking breakpoints and watching variables.",
                   {"session_id": SESSION_ID}, ["session_id"]),
             self._debug_step),
            (_tool("debug_continue",
                   "Continue execution until a breakpoint is hit, a choice is reached, or the story ends.",
                   {"session_id": SESSION_ID,
                    "max_steps": _prop("integer", f"Maximum steps (default: {DEFAULT_MAX_STEPS})")},
                   ["session_id"]),
             self._debug_continue),
            (_tool("add_watch",
                   "Add an ink variable to the watch list. Changes are tracked between steps.",
                   {"session_id": SESSION_ID, "variable": _prop("string", "Variable name")},
                   ["session_id", "variable"]),
             self._add_watch),
            (_tool("remove_watch", "Remove a variable from the watch list.",
                   {"session_id": SESSION_ID, "variable": _prop("string", "Variable name")},
                   ["session_id", "variable"]),
             self._remove_watch),
            (_tool("debug_inspect",
                   "Inspect the current debug state: step count, watches, breakpoints, recent visits.",
                   {"session_id": SESSION_ID}, ["session_id"]),
             self._debug_inspect),
            (_tool("debug_trace",
                   "Get the execution trace log (list of steps, text, and variable changes).",
                   {"session_id": SESSION_ID,
                    "last_n": _prop("integer", f"Number of recent entries (default: {DEFAULT_TRACE_ENTRIES})")},
                   ["session_id"]),
             self._debug_trace),
            (_tool("end_debug", "Stop debugging a session. The story session stays active.",
                   {"session_id": SESSION_ID}, ["session_id"]),
             self._end_debug),
        ]

    def _llm_tools(self):
        return [
            (_tool("llm_chat", "Send a chat message to the connected LLM.",
                   {"message": _prop("string", "Message to send")}, ["message"]),
             self._llm_chat),
            (_tool("generate_ink", "Generate ink interactive fiction code from a natural language description.",
                   {"prompt": _prop("string", "Story description")}, ["prompt"]),
             self._generate_ink),
            (_tool("review_ink", "Review ink code for syntax errors, logic issues, and improvements.",
                   {"source": _prop("string", "Ink source code")}, ["source"]),
             self._review_ink),
            (_tool("translate_ink_hebrew", "Translate ink story text to Hebrew, preserving ink syntax.",
                   {"source": _prop("string", "Ink source code")}, ["source"]),
             self._translate_ink_hebrew),
            (_tool("generate_compile_play",
                   "Full pipeline: generate ink from prompt, compile it, start a story session.",
                   {"prompt": _prop("string", "Story description")}, ["prompt"]),
             self._generate_compile_play),
            (_tool("model_info", "Get information about the connected LLM model."),
             self._model_info),
        ]

    # -- ink handlers ---------------------------------------------------------

    def _compile_ink(self, args: dict) -> dict:
        a = SourceArgs.from_arguments(args)
        result = self.engine.compile(a.source)
        payload = {"success": result.success}
        if result.json is not None:
            payload["json"] = result.json
        if result.errors:
            payload["errors"] = list(result.errors)
        if result.warnings:
            payload["warnings"] = list(result.warnings)
        return payload

    def _start_from(self, factory, session_id: str | None, source: str = "",
                    state_json: str | None = None) -> dict:
        sid = self.sessions.create(factory, session_id, source=source)
        if self.debug_engine is not None:
            # A new story under a reused id must not inherit the old debug state.
            self.debug_engine.end_debug(sid)
        try:
            with self.sessions.locked(sid) as session:
                if state_json is not None:
                    session.runtime.load_state(state_json)
                result = session.runtime.continue_story()
        except Exception:
            self.sessions.end(sid)
            raise
        return story_payload(sid, result)

    def _start_story(self, args: dict) -> dict:
        a = StartStoryArgs.from_arguments(args)
        return self._start_from(lambda: self.engine.open_source(a.source), a.session_id, a.source)

    def _start_story_json(self, args: dict) -> dict:
        a = StartStoryJsonArgs.from_arguments(args)
        return self._start_from(lambda: self.engine.open_json(a.json), a.session_id,
                                state_json=a.state_json)

    def _choose(self, args: dict) -> dict:
        a = ChooseArgs.from_arguments(args)
        with self.sessions.locked(a.session_id) as session:
            runtime = session.runtime
            choices = runtime.current_choices()
            if not 0 <= a.choice_index < len(choices):
                raise ValueError(
                    f"Choice index {a.choice_index} out of range ({len(choices)} choices available)"
                )
            runtime.choose(a.choice_index)
            if a.auto_continue:
                result = runtime.continue_story()
            else:
                result = ContinueResult(
                    text="",
                    can_continue=runtime.can_continue(),
                    choices=runtime.current_choices(),
                )
        return story_payload(a.session_id, result)

    def _continue_story(self, args: dict) -> dict:
        a = SessionArgs.from_arguments(args)
        with self.sessions.locked(a.session_id) as session:
            result = session.runtime.continue_story()
        return story_payload(a.session_id, result)

    def _get_variable(self, args: dict) -> dict:
        a = VariableArgs.from_arguments(args)
        with self.sessions.locked(a.session_id) as session:
            value = session.runtime.get_variable(a.name)
        return {"name": a.name, "value": value}

    def _set_variable(self, args: dict) -> dict:
        a = SetVariableArgs.from_arguments(args)
        with self.sessions.locked(a.session_id) as session:
            session.runtime.set_variable(a.name, a.value)
        return {"ok": True, "name": a.name}

    def _save_state(self, args: dict) -> dict:
        a = SessionArgs.from_arguments(args)
        with self.sessions.locked(a.session_id) as session:
            state = session.runtime.save_state()
            session.saved_state = state
        return {"session_id": a.session_id, "state_json": state}

    def _load_state(self, args: dict) -> dict:
        a = LoadStateArgs.from_arguments(args)
        with self.sessions.locked(a.session_id) as session:
            session.runtime.load_state(a.state_json)
        return {"ok": True, "session_id": a.session_id}

    def _reset_story(self, args: dict) -> dict:
        a = SessionArgs.from_arguments(args)
        with self.sessions.locked(a.session_id) as session:
            session.runtime.reset()
            result = session.runtime.continue_story()
        return story_payload(a.session_id, result)

    def _evaluate_function(self, args: dict) -> dict:
        a = EvaluateFunctionArgs.from_arguments(args)
        with self.sessions.locked(a.session_id) as session:
            value = session.runtime.evaluate_function(a.function_name, a.args)
        return {"function": a.function_name, "result": value}

    def _get_global_tags(self, args: dict) -> dict:
        a = SessionArgs.from_arguments(args)
        with self.sessions.locked(a.session_id) as session:
            tags = session.runtime.global_tags()
        return {"tags": list(tags)}

    def _list_sessions(self, args: dict) -> dict:
        return {"sessions": self.sessions.list_ids()}

    def _end_session(self, args: dict) -> dict:
        a = SessionArgs.from_arguments(args)
        ended = self.sessions.end(a.session_id)
        return {"ok": True, "session_id": a.session_id, "ended": ended}

    # -- bidi handlers --------------------------------------------------------

    def _bidify(self, args: dict) -> dict:
        return {"result": self.engine.bidify(TextArgs.from_arguments(args).text)}

    def _strip_bidi(self, args: dict) -> dict:
        return {"result": self.engine.strip_bidi(TextArgs.from_arguments(args).text)}

    def _bidify_json(self, args: dict) -> dict:
        return {"result": self.engine.bidify_json(JsonArgs.from_arguments(args).json)}

    # -- debug handlers -------------------------------------------------------

    def _start_debug(self, args: dict) -> dict:
        a = SessionArgs.from_arguments(args)
        return self.debug_engine.start_debug(a.session_id)

    def _add_breakpoint(self, args: dict) -> dict:
        a = BreakpointArgs.from_arguments(args)
        return self.debug_engine.add_breakpoint(a.session_id, a.type, a.target).to_dict()

    def _remove_breakpoint(self, args: dict) -> dict:
        a = RemoveBreakpointArgs.from_arguments(args)
        removed = self.debug_engine.remove_breakpoint(a.session_id, a.breakpoint_id)
        return {"ok": removed, "breakpoint_id": a.breakpoint_id}

    def _list_breakpoints(self, args: dict) -> dict:
        a = SessionArgs.from_arguments(args)
        return {"breakpoints": [bp.to_dict() for bp in self.debug_engine.list_breakpoints(a.session_id)]}

    def _debug_step(self, args: dict) -> dict:
        a = SessionArgs.from_arguments(args)
        return step_payload(self.debug_engine.step(a.session_id))

    def _debug_continue(self, args: dict) -> dict:
        a = DebugContinueArgs.from_arguments(args)
        return step_payload(self.debug_engine.continue_debug(a.session_id, a.max_steps))

    def _add_watch(self, args: dict) -> dict:
        a = WatchArgs.from_arguments(args)
        watch = self.debug_engine.add_watch(a.session_id, a.variable)
        return {"variable": watch.name, "current_value": watch.last_value}

    def _remove_watch(self, args: dict) -> dict:
        a = WatchArgs.from_arguments(args)
        return {"ok": self.debug_engine.remove_watch(a.session_id, a.variable), "variable": a.variable}

    def _debug_inspect(self, args: dict) -> dict:
        return self.debug_engine.inspect(SessionArgs.from_arguments(args).session_id)

    def _debug_trace(self, args: dict) -> dict:
        a = TraceArgs.from_arguments(args)
        return {"trace": self.debug_engine.get_trace(a.session_id, a.last_n)}

    def _end_debug(self, args: dict) -> dict:
        a = SessionArgs.from_arguments(args)
        return {"ok": self.debug_engine.end_debug(a.session_id), "session_id": a.session_id}

    # -- llm handlers ---------------------------------------------------------

    def _compile_generated(self, ink_source: str):
        try:
            return self.engine.compile(ink_source), None
        except Exception as e:
            print(f"[inky] compiling generated ink failed: {type(e).__name__}: {e}",
                  file=sys.stderr, flush=True)
            return None, f"{type(e).__name__}: {e}"

    def _llm_chat(self, args: dict) -> dict:
        return {"response": self.llm_engine.chat(MessageArgs.from_arguments(args).message)}

    def _generate_ink(self, args: dict) -> dict:
        ink_source = self.llm_engine.generate_ink(PromptArgs.from_arguments(args).prompt)
        result, failure = self._compile_generated(ink_source)
        payload = {"ink_source": ink_source, "compiles": bool(result and result.success)}
        errors = [failure] if failure else list(result.errors)
        if errors:
            payload["compile_errors"] = errors
        return payload

    def _review_ink(self, args: dict) -> dict:
        return {"review": self.llm_engine.review_ink(SourceArgs.from_arguments(args).source)}

    def _translate_ink_hebrew(self, args: dict) -> dict:
        source = SourceArgs.from_arguments(args).source
        return {"translated_ink": self.llm_engine.translate_to_hebrew(source)}

    def _generate_compile_play(self, args: dict) -> dict:
        ink_source = self.llm_engine.generate_ink(PromptArgs.from_arguments(args).prompt)
        result = self.engine.compile(ink_source)
        if not result.success:
            return {"stage": "compile_failed", "ink_source": ink_source, "errors": list(result.errors)}
        story = self._start_from(lambda: self.engine.open_source(ink_source), None, ink_source)
        return {"stage": "playing", "ink_source": ink_source, **story}

    def _model_info(self, args: dict) -> dict:
        return self.llm_engine.model_info()
