"""Tests for the tool catalog and dispatcher.

Verifies catalog assembly per configured collaborator, argument validation,
the uniform error envelope ("Unknown tool: x", "<Class>: <message>"), and the
result shapes of the ink, debug, bidi and LLM tools.
"""

import json
import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from mcp.types import CallToolResult, Tool
from mcp_tools import McpTools, ToolArgumentError, result_text, SetVariableArgs, ChooseArgs

from conftest import FOREST_STORY, LONG_STORY
from fake_ink import FakeInkEngine

INK_TOOLS = {
    "compile_ink", "start_story", "start_story_json", "choose", "continue_story",
    "get_variable", "set_variable", "save_state", "load_state", "reset_story",
    "evaluate_function", "get_global_tags", "list_sessions", "end_session",
}
DEBUG_TOOLS = {
    "start_debug", "add_breakpoint", "remove_breakpoint", "list_breakpoints",
    "debug_step", "debug_continue", "add_watch", "remove_watch",
    "debug_inspect", "debug_trace", "end_debug",
}
BIDI_TOOLS = {"bidify", "strip_bidi", "bidify_json"}
LLM_TOOLS = {
    "llm_chat", "generate_ink", "review_ink", "translate_ink_hebrew",
    "generate_compile_play", "model_info",
}


# ============================================================
# Helpers
# ============================================================

def _ok(tools: McpTools, tool: str, /, **arguments) -> dict:
    """Call a tool, assert success, return the parsed JSON payload."""
    result = tools.call(tool, arguments)
    assert isinstance(result, CallToolResult)
    assert result.isError is False, result_text(result)
    return json.loads(result_text(result))


def _err(tools: McpTools, tool: str, /, **arguments) -> str:
    """Call a tool, assert failure, return the error text."""
    result = tools.call(tool, arguments)
    assert result.isError is True
    return result_text(result)


def _at_cave(tools: McpTools) -> str:
    """Start the forest story and take the cave branch without continuing."""
    sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
    _ok(tools, "choose", session_id=sid, choice_index=0, auto_continue=False)
    return sid


def _mock_llm(ink_source=FOREST_STORY):
    llm = MagicMock()
    llm.generate_ink.return_value = ink_source
    llm.chat.return_value = "hello there"
    llm.review_ink.return_value = "looks fine"
    llm.translate_to_hebrew.return_value = "שלום"
    llm.model_info.return_value = {"model": "gpt-4o-mini", "provider": "openai"}
    return llm


# ============================================================
# Catalog
# ============================================================


class TestCatalog:
    """Catalog contents depend on the configured collaborators."""

    def test_ink_and_debug_tools(self, tools):
        """Default fixture: ink + debug tools, no bidi, no llm."""
        assert set(tools.tool_names) == INK_TOOLS | DEBUG_TOOLS

    def test_without_debug_engine(self, engine, sessions):
        """Debug tools are absent and unknown without a debug engine."""
        tools = McpTools(engine, sessions)
        assert set(tools.tool_names) == INK_TOOLS
        assert _err(tools, "debug_step", session_id="x") == "Unknown tool: debug_step"

    def test_bidi_tools_follow_engine(self, sessions):
        """Bidi tools are listed only when the engine has a bidi helper."""
        tools = McpTools(FakeInkEngine(bidi=True), sessions)
        assert BIDI_TOOLS <= set(tools.tool_names)

    def test_llm_tools_follow_engine(self, engine, sessions):
        """LLM tools are listed only when an LLM engine is configured."""
        tools = McpTools(engine, sessions, llm_engine=_mock_llm())
        assert LLM_TOOLS <= set(tools.tool_names)

    def test_descriptors_are_mcp_tools(self, tools):
        """Every descriptor is an mcp Tool with an object input schema."""
        for tool in tools.tools:
            assert isinstance(tool, Tool)
            assert tool.description
            assert tool.inputSchema["type"] == "object"

    def test_catalog_is_stable(self, tools):
        """The catalog is built once and returned in the same order."""
        assert tools.tool_names == tools.tool_names
        assert [t.name for t in tools.tools] == tools.tool_names

    def test_required_arguments_declared(self, tools):
        """choose declares its required arguments."""
        choose = next(t for t in tools.tools if t.name == "choose")
        assert choose.inputSchema["required"] == ["session_id", "choice_index"]


# ============================================================
# Dispatch errors
# ============================================================


class TestDispatchErrors:
    """call() never raises; failures become error results."""

    def test_unknown_tool(self, tools):
        """Unknown names produce 'Unknown tool: <name>'."""
        assert _err(tools, "fly_to_moon") == "Unknown tool: fly_to_moon"

    def test_missing_argument(self, tools):
        """Missing required arguments name the key."""
        assert _err(tools, "compile_ink") == "ToolArgumentError: missing required argument 'source'"

    def test_wrong_type(self, tools):
        """Mistyped arguments are rejected before any work is done."""
        text = _err(tools, "start_story", source=42)
        assert text.startswith("ToolArgumentError: argument 'source' must be a string")

    def test_bool_is_not_an_index(self, tools):
        """choice_index=true is rejected."""
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        text = _err(tools, "choose", session_id=sid, choice_index=True)
        assert "must be an integer" in text

    def test_exception_class_in_message(self, tools):
        """Handler exceptions surface as '<Class>: <message>'."""
        assert _err(tools, "get_variable", session_id="ghost", name="gold") == \
            "SessionNotFoundError: No story session: ghost"

    def test_none_arguments(self, tools):
        """call() accepts None for tools without arguments."""
        result = tools.call("list_sessions", None)
        assert result.isError is False


class TestArgumentDataclasses:
    """Argument parsing is done by per-tool dataclasses."""

    def test_set_variable_allows_null(self):
        """An explicit null value is accepted."""
        args = SetVariableArgs.from_arguments({"session_id": "s", "name": "n", "value": None})
        assert args.value is None

    def test_set_variable_requires_value_key(self):
        """An absent value key is an error."""
        with pytest.raises(ToolArgumentError, match="missing required argument 'value'"):
            SetVariableArgs.from_arguments({"session_id": "s", "name": "n"})

    def test_choose_defaults(self):
        """auto_continue defaults to True; integral floats are accepted."""
        args = ChooseArgs.from_arguments({"session_id": "s", "choice_index": 1.0})
        assert args.choice_index == 1
        assert args.auto_continue is True


# ============================================================
# Ink tools
# ============================================================


class TestInkTools:
    """Story lifecycle through the tool surface."""

    def test_compile_success(self, tools):
        """compile_ink returns success and JSON."""
        data = _ok(tools, "compile_ink", source=FOREST_STORY)
        assert data["success"] is True
        assert "json" in data
        assert "errors" not in data

    def test_compile_failure_is_not_an_error_result(self, tools):
        """Compile errors are reported in the payload."""
        data = _ok(tools, "compile_ink", source="Hello\n-> nowhere\n")
        assert data["success"] is False
        assert any("nowhere" in e for e in data["errors"])

    def test_start_story_shape(self, tools):
        """start_story runs to the first choice point."""
        data = _ok(tools, "start_story", source=FOREST_STORY)
        assert set(data) == {"session_id", "text", "can_continue", "choices", "tags"}
        assert data["text"].startswith("Welcome to the forest.\n")
        assert data["can_continue"] is False
        assert data["choices"] == [
            {"index": 0, "text": "Enter the cave", "tags": []},
            {"index": 1, "text": "Walk to the town", "tags": []},
        ]
        assert data["tags"] == ["intro"]

    def test_start_story_with_id(self, tools, sessions):
        """A supplied session_id is honoured."""
        data = _ok(tools, "start_story", source=FOREST_STORY, session_id="forest")
        assert data["session_id"] == "forest"
        assert sessions.has("forest")

    def test_start_story_bad_ink(self, tools, sessions):
        """Uncompilable ink fails and registers no session."""
        text = _err(tools, "start_story", source="-> nowhere\n")
        assert text.startswith("FakeInkError:")
        assert len(sessions) == 0

    def test_choose_continues_by_default(self, tools):
        """choose runs the chosen branch to the next choice point or end."""
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        data = _ok(tools, "choose", session_id=sid, choice_index=0)
        assert data["text"] == "cave mouth yawns before you.\nTreasure glitters in the dark.\n"
        assert data["tags"] == ["loot"]
        assert data["can_continue"] is False

    def test_choose_without_continue(self, tools):
        """auto_continue=false selects the choice only."""
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        data = _ok(tools, "choose", session_id=sid, choice_index=1, auto_continue=False)
        assert data["text"] == ""
        assert data["can_continue"] is True
        assert _ok(tools, "continue_story", session_id=sid)["text"] == "The town is busy.\n"

    def test_choose_out_of_range(self, tools):
        """Invalid choice indices are rejected with the available count."""
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        text = _err(tools, "choose", session_id=sid, choice_index=5)
        assert text == "ValueError: Choice index 5 out of range (2 choices available)"

    def test_get_and_set_variable(self, tools):
        """Variables round-trip through get/set."""
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        assert _ok(tools, "get_variable", session_id=sid, name="gold") == {"name": "gold", "value": 5}
        assert _ok(tools, "set_variable", session_id=sid, name="gold", value=50) == {"ok": True, "name": "gold"}
        assert _ok(tools, "get_variable", session_id=sid, name="gold")["value"] == 50
        _ok(tools, "set_variable", session_id=sid, name="name", value=None)
        assert _ok(tools, "get_variable", session_id=sid, name="name")["value"] is None

    def test_set_undeclared_variable(self, tools):
        """Runtime errors surface with their class name."""
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        text = _err(tools, "set_variable", session_id=sid, name="mana", value=3)
        assert text.startswith("FakeInkError: Cannot assign")

    def test_save_load_round_trip(self, tools, sessions):
        """Loading a saved state restores variables and choices."""
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        saved = _ok(tools, "save_state", session_id=sid)
        assert saved["session_id"] == sid
        assert sessions.get(sid).saved_state == saved["state_json"]

        _ok(tools, "choose", session_id=sid, choice_index=0)
        assert _ok(tools, "get_variable", session_id=sid, name="gold")["value"] == 15

        assert _ok(tools, "load_state", session_id=sid, state_json=saved["state_json"]) == \
            {"ok": True, "session_id": sid}
        assert _ok(tools, "get_variable", session_id=sid, name="gold")["value"] == 5
        data = _ok(tools, "choose", session_id=sid, choice_index=1)
        assert data["text"] == "The town is busy.\n"

    def test_start_story_json_with_state(self, tools):
        """start_story_json restores a saved state before continuing."""
        compiled = _ok(tools, "compile_ink", source=FOREST_STORY)["json"]
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        _ok(tools, "set_variable", session_id=sid, name="gold", value=77)
        state = _ok(tools, "save_state", session_id=sid)["state_json"]

        data = _ok(tools, "start_story_json", json=compiled, state_json=state)
        assert data["session_id"] != sid
        assert len(data["choices"]) == 2
        assert _ok(tools, "get_variable", session_id=data["session_id"], name="gold")["value"] == 77

    def test_failed_start_leaves_no_session(self, tools, engine, sessions):
        """A state that fails to load ends the half-built session and closes its runtime."""
        compiled = _ok(tools, "compile_ink", source=FOREST_STORY)["json"]
        text = _err(tools, "start_story_json", json=compiled, state_json="not json")
        assert text.startswith("FakeInkError: invalid state")
        assert sessions.list_ids() == []
        assert engine.opened[-1].closed

    def test_reset_story(self, tools):
        """reset_story restarts from the beginning."""
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        _ok(tools, "choose", session_id=sid, choice_index=0)
        data = _ok(tools, "reset_story", session_id=sid)
        assert data["text"].startswith("Welcome to the forest.")
        assert _ok(tools, "get_variable", session_id=sid, name="visited_cave")["value"] is False

    def test_evaluate_function(self, tools):
        """evaluate_function passes the argument list through."""
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        data = _ok(tools, "evaluate_function", session_id=sid, function_name="double", args=[21])
        assert data == {"function": "double", "result": 42}
        assert "must be an array" in _err(tools, "evaluate_function", session_id=sid,
                                          function_name="double", args=21)

    def test_global_tags(self, tools):
        """Global tags come from the top of the story."""
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        assert _ok(tools, "get_global_tags", session_id=sid) == {
            "tags": ["title: The Forest", "author: Tester"],
        }

    def test_list_and_end_sessions(self, tools, engine):
        """end_session closes the runtime and is idempotent."""
        a = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        b = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        assert sorted(_ok(tools, "list_sessions")["sessions"]) == sorted([a, b])
        assert _ok(tools, "end_session", session_id=a)["ended"] is True
        assert _ok(tools, "end_session", session_id=a)["ended"] is False
        assert _ok(tools, "list_sessions")["sessions"] == [b]
        assert engine.opened[0].closed

    def test_sessions_are_isolated(self, tools):
        """Writes to one session do not leak into another."""
        a = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        b = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        _ok(tools, "set_variable", session_id=a, name="gold", value=1000)
        assert _ok(tools, "get_variable", session_id=b, name="gold")["value"] == 5


# ============================================================
# Debug tools
# ============================================================


class TestDebugTools:
    """Debugger through the tool surface."""

    def test_step_payload(self, tools):
        """debug_step reports hit breakpoints and watch changes as objects."""
        sid = _at_cave(tools)
        _ok(tools, "start_debug", session_id=sid)
        bp = _ok(tools, "add_breakpoint", session_id=sid, type="variable_change", target="gold")
        assert bp == {"id": "bp_1", "type": "variable_change", "target": "gold", "enabled": True}
        assert _ok(tools, "add_watch", session_id=sid, variable="gold") == \
            {"variable": "gold", "current_value": 5}

        first = _ok(tools, "debug_step", session_id=sid)
        assert first["step_number"] == 1
        assert "hit_breakpoint" not in first
        assert "watch_changes" not in first

        second = _ok(tools, "debug_step", session_id=sid)
        assert second["hit_breakpoint"] == {"id": "bp_1", "type": "variable_change", "target": "gold"}
        assert second["watch_changes"] == {"gold": {"old": 5, "new": 15}}
        assert second["is_paused"] is True
        assert second["tags"] == ["loot"]

    def test_step_at_choice_point(self, tools):
        """debug_step on a story waiting for a choice is an error result."""
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        _ok(tools, "start_debug", session_id=sid)
        text = _err(tools, "debug_step", session_id=sid)
        assert text.startswith("DebugStateError:")
        assert "waiting for a choice" in text

    def test_continue_max_steps(self, tools):
        """debug_continue honours max_steps."""
        sid = _ok(tools, "start_story", source=FOREST_STORY)["session_id"]
        _ok(tools, "choose", session_id=sid, choice_index=1, auto_continue=False)
        _ok(tools, "start_debug", session_id=sid)
        data = _ok(tools, "debug_continue", session_id=sid, max_steps=1)
        assert data["step_number"] == 1
        assert data["text"] == "The town is busy.\n"
        assert "must be an integer" in _err(tools, "debug_continue", session_id=sid, max_steps="5")

    def test_remove_breakpoint_accepts_both_names(self, tools):
        """remove_breakpoint takes breakpoint_id or id."""
        sid = _at_cave(tools)
        _ok(tools, "start_debug", session_id=sid)
        _ok(tools, "add_breakpoint", session_id=sid, type="knot", target="cave")
        _ok(tools, "add_breakpoint", session_id=sid, type="knot", target="town")
        assert _ok(tools, "remove_breakpoint", session_id=sid, breakpoint_id="bp_1")["ok"] is True
        assert _ok(tools, "remove_breakpoint", session_id=sid, id="bp_2")["ok"] is True
        assert _ok(tools, "remove_breakpoint", session_id=sid, id="bp_2")["ok"] is False
        assert _ok(tools, "list_breakpoints", session_id=sid) == {"breakpoints": []}
        assert "breakpoint_id" in _err(tools, "remove_breakpoint", session_id=sid)

    def test_invalid_breakpoint_type(self, tools):
        """Unknown breakpoint types are reported as ValueError."""
        sid = _at_cave(tools)
        _ok(tools, "start_debug", session_id=sid)
        assert _err(tools, "add_breakpoint", session_id=sid, type="line", target="3") \
            .startswith("ValueError: Unknown breakpoint type")

    def test_inspect_and_trace(self, tools):
        """debug_inspect and debug_trace reflect the steps taken."""
        sid = _at_cave(tools)
        _ok(tools, "start_debug", session_id=sid)
        _ok(tools, "debug_continue", session_id=sid)
        state = _ok(tools, "debug_inspect", session_id=sid)
        assert state["total_steps"] == 2
        assert state["visit_log_size"] == 2
        trace = _ok(tools, "debug_trace", session_id=sid, last_n=1)["trace"]
        assert len(trace) == 1
        assert trace[0]["step"] == 2

    def test_end_debug_and_end_session(self, tools, debugger):
        """end_debug keeps the story; end_session keeps the debug trace."""
        sid = _at_cave(tools)
        _ok(tools, "start_debug", session_id=sid)
        assert _ok(tools, "end_debug", session_id=sid) == {"ok": True, "session_id": sid}
        assert _ok(tools, "continue_story", session_id=sid)["text"].startswith("cave mouth")

        sid = _at_cave(tools)
        _ok(tools, "start_debug", session_id=sid)
        _ok(tools, "debug_step", session_id=sid)
        _ok(tools, "end_session", session_id=sid)
        assert debugger.is_debugging(sid)
        trace = _ok(tools, "debug_trace", session_id=sid)["trace"]
        assert [entry["step"] for entry in trace] == [1]
        assert _ok(tools, "end_debug", session_id=sid) == {"ok": True, "session_id": sid}
        assert not debugger.is_debugging(sid)

    def test_replacing_session_drops_debug_state(self, tools, debugger):
        """Restarting a story under the same id starts without a debugger."""
        _ok(tools, "start_story", source=FOREST_STORY, session_id="s1")
        _ok(tools, "start_debug", session_id="s1")
        _ok(tools, "start_story", source=LONG_STORY, session_id="s1")
        assert not debugger.is_debugging("s1")


# ============================================================
# Bidi and LLM tools
# ============================================================


class TestBidiTools:
    """Bidi helpers pass through to the engine."""

    def test_bidify_round_trip(self, sessions):
        """bidify adds markers that strip_bidi removes."""
        tools = McpTools(FakeInkEngine(bidi=True), sessions)
        marked = _ok(tools, "bidify", text="שלום world")["result"]
        assert marked != "שלום world"
        assert _ok(tools, "strip_bidi", text=marked)["result"] == "שלום world"

    def test_bidify_json(self, sessions):
        """bidify_json returns the engine's rewritten JSON."""
        tools = McpTools(FakeInkEngine(bidi=True), sessions)
        result = _ok(tools, "bidify_json", json='{"root": []}')["result"]
        assert json.loads(result)["bidi"] is True


class TestLlmTools:
    """LLM tools wire the LLM engine to the story engine."""

    def test_generate_ink_compiles(self, engine, sessions):
        """generate_ink reports whether the generated ink compiles."""
        tools = McpTools(engine, sessions, llm_engine=_mock_llm())
        data = _ok(tools, "generate_ink", prompt="a forest")
        assert data["ink_source"] == FOREST_STORY
        assert data["compiles"] is True
        assert "compile_errors" not in data

    def test_generate_ink_with_errors(self, engine, sessions):
        """Compile errors of generated ink are listed."""
        tools = McpTools(engine, sessions, llm_engine=_mock_llm("-> nowhere\n"))
        data = _ok(tools, "generate_ink", prompt="broken")
        assert data["compiles"] is False
        assert data["compile_errors"]

    def test_generate_compile_play(self, engine, sessions):
        """The pipeline starts a session when the ink compiles."""
        tools = McpTools(engine, sessions, llm_engine=_mock_llm())
        data = _ok(tools, "generate_compile_play", prompt="a forest")
        assert data["stage"] == "playing"
        assert sessions.has(data["session_id"])
        assert len(data["choices"]) == 2

    def test_generate_compile_play_failure(self, engine, sessions):
        """The pipeline stops at compile_failed without a session."""
        tools = McpTools(engine, sessions, llm_engine=_mock_llm("-> nowhere\n"))
        data = _ok(tools, "generate_compile_play", prompt="broken")
        assert data["stage"] == "compile_failed"
        assert len(sessions) == 0

    def test_chat_review_translate_info(self, engine, sessions):
        """Simple LLM tools wrap the engine's answers."""
        llm = _mock_llm()
        tools = McpTools(engine, sessions, llm_engine=llm)
        assert _ok(tools, "llm_chat", message="hi") == {"response": "hello there"}
        assert _ok(tools, "review_ink", source="x") == {"review": "looks fine"}
        assert _ok(tools, "translate_ink_hebrew", source="x") == {"translated_ink": "שלום"}
        assert _ok(tools, "model_info")["model"] == "gpt-4o-mini"
        llm.chat.assert_called_once_with("hi")

    def test_llm_failure_is_error_result(self, engine, sessions):
        """An LLM exception becomes an error result."""
        llm = _mock_llm()
        llm.chat.side_effect = RuntimeError("service down")
        tools = McpTools(engine, sessions, llm_engine=llm)
        assert _err(tools, "llm_chat", message="hi") == "RuntimeError: service down"
