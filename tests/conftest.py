import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.dirname(__file__))
from debug_engine import DebugEngine
from fake_ink import FakeInkEngine
from mcp_tools import McpTools
from session_manager import SessionManager

# Branching story: three lines of intro, then a choice between two knots.
FOREST_STORY = """\
# title: The Forest
# author: Tester
VAR gold = 0
VAR name = "Hero"
VAR visited_cave = false

Welcome to the forest. #intro
~ gold = gold + 5
You have a little gold.
The path splits.
* [Enter the cave] -> cave
* [Walk to the town] -> town

=== cave ===
cave mouth yawns before you.
~ visited_cave = true
~ gold = gold + 10
Treasure glitters in the dark. #loot
-> END

=== town ===
The town is busy.
-> END
"""

# Linear story: twelve lines with one counter update, then the end.
LONG_STORY = "\n".join(
    ["VAR counter = 0"]
    + [f"Step {i}." for i in range(1, 7)]
    + ["~ counter = counter + 1", "A sign reads: [open"]
    + [f"Step {i}." for i in range(7, 12)]
    + ["-> END"]
)


@pytest.fixture
def engine():
    return FakeInkEngine(functions={"double": lambda x: x * 2})


@pytest.fixture
def sessions():
    manager = SessionManager()
    yield manager
    manager.close_all()


@pytest.fixture
def debugger(sessions):
    return DebugEngine(sessions, trace_limit=1000)


@pytest.fixture
def tools(engine, sessions, debugger):
    return McpTools(engine, sessions, debug_engine=debugger)
