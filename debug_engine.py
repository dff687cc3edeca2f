"""Step-level debugger for story sessions.

A debug session wraps an existing story session with:
  - breakpoints on knots, stitches, output patterns and variable changes
  - a watch list with change detection between steps
  - single-line stepping and bounded continue
  - a bounded execution trace

Location breakpoints are matched against the output text: the runtime does
not report which knot or stitch produced a line.
"""

import collections
import json
import os
import re
import sys
import threading
import time
from dataclasses import dataclass, field

from session_manager import SessionManager
from story_runtime import ChoiceInfo

BREAKPOINT_TYPES = ("knot", "stitch", "pattern", "variable_change")

TRACE_LIMIT = int(os.environ.get("INKY_TRACE_LIMIT", "1000"))
TRACE_TEXT_LIMIT = 100
INSPECT_TEXT_LIMIT = 200
RECENT_VISITS = 10
DEFAULT_MAX_STEPS = 100


class DebugSessionNotFoundError(LookupError):
    def __init__(self, session_id: str):
        super().__init__(f"No debug session for: {session_id}. Call start_debug first.")
        self.session_id = session_id

    def __str__(self) -> str:
        return self.args[0]


class DebugStateError(RuntimeError):
    """The story is in a state the requested debug operation cannot handle."""


@dataclass
class Breakpoint:
    id: str
    type: str
    target: str
    enabled: bool = True

    def to_dict(self) -> dict:
        return {"id": self.id, "type": self.type, "target": self.target, "enabled": self.enabled}


@dataclass
class Watch:
    name: str
    last_value: object = None
    change_count: int = 0


@dataclass
class VisitEntry:
    step: int
    text: str
    variables_changed: list[str] = field(default_factory=list)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "text": self.text,
            "vars_changed": list(self.variables_changed),
            "timestamp": self.timestamp,
        }


@dataclass
class DebugSession:
    session_id: str
    breakpoints: list[Breakpoint] = field(default_factory=list)
    watches: dict[str, Watch] = field(default_factory=dict)
    trace: collections.deque = field(default_factory=lambda: collections.deque(maxlen=TRACE_LIMIT))
    total_steps: int = 0
    is_paused: bool = False
    last_output: str = ""
    next_breakpoint: int = 1


@dataclass
class StepOutcome:
    text: str
    can_continue: bool
    choices: list[ChoiceInfo]
    tags: list[str]
    step_number: int
    is_paused: bool
    hit_breakpoint: Breakpoint | None = None
    watch_changes: dict[str, tuple] = field(default_factory=dict)


def _same_value(a, b) -> bool:
    return json.dumps(a, sort_keys=True, default=str) == json.dumps(b, sort_keys=True, default=str)


def breakpoint_matches(bp: Breakpoint, text: str, watch_changes: dict) -> bool:
    """Evaluate one breakpoint against a step's output and watch change-set."""
    if bp.type == "pattern":
        try:
            return re.search(bp.target, text) is not None
        except re.error:
            return bp.target in text
    if bp.type == "variable_change":
        return bp.target in watch_changes
    if bp.type == "knot":
        return f"=== {bp.target}" in text or text.lstrip().startswith(bp.target)
    if bp.type == "stitch":
        return f"= {bp.target}" in text or text.lstrip().startswith(bp.target)
    return False


class DebugEngine:
    """Debug sessions keyed by story session id.

    Every operation runs under the story session's lock, so debug state and
    the runtime it observes are changed by one request at a time.
    """

    def __init__(self, sessions: SessionManager, trace_limit: int | None = None):
        self.sessions = sessions
        self.trace_limit = trace_limit or TRACE_LIMIT
        self._debug: dict[str, DebugSession] = {}
        self._lock = threading.Lock()

    # -- lifecycle ------------------------------------------------------------

    def start_debug(self, session_id: str) -> dict:
        with self.sessions.locked(session_id):
            debug = DebugSession(
                session_id=session_id,
                trace=collections.deque(maxlen=self.trace_limit),
            )
            with self._lock:
                self._debug[session_id] = debug
        print(f"[inky] debug session started for {session_id}", file=sys.stderr, flush=True)
        return {
            "session_id": session_id,
            "debugging": True,
            "message": "Debug session started. Use add_breakpoint, add_watch, debug_step, debug_continue.",
        }

    def end_debug(self, session_id: str) -> bool:
        """Drop the debug session. The story session stays alive."""
        with self._lock:
            removed = self._debug.pop(session_id, None) is not None
        if removed:
            print(f"[inky] debug session ended for {session_id}", file=sys.stderr, flush=True)
        return removed

    def is_debugging(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._debug

    def _require(self, session_id: str) -> DebugSession:
        with self._lock:
            debug = self._debug.get(session_id)
        if debug is None:
            raise DebugSessionNotFoundError(session_id)
        return debug

    # -- breakpoints & watches ------------------------------------------------

    def add_breakpoint(self, session_id: str, bp_type: str, target: str) -> Breakpoint:
        if bp_type not in BREAKPOINT_TYPES:
            raise ValueError(
                f"Unknown breakpoint type: {bp_type!r} (expected one of {', '.join(BREAKPOINT_TYPES)})"
            )
        if not target:
            raise ValueError("Breakpoint target must not be empty")
        with self.sessions.locked(session_id):
            debug = self._require(session_id)
            bp = Breakpoint(id=f"bp_{debug.next_breakpoint}", type=bp_type, target=target)
            debug.next_breakpoint += 1
            debug.breakpoints.append(bp)
        print(f"[inky] {session_id}: breakpoint {bp.id} {bp_type} -> {target}",
              file=sys.stderr, flush=True)
        return bp

    def remove_breakpoint(self, session_id: str, breakpoint_id: str) -> bool:
        with self.sessions.locked(session_id):
            debug = self._require(session_id)
            before = len(debug.breakpoints)
            debug.breakpoints = [bp for bp in debug.breakpoints if bp.id != breakpoint_id]
            return len(debug.breakpoints) != before

    def list_breakpoints(self, session_id: str) -> list[Breakpoint]:
        return list(self._require(session_id).breakpoints)

    def _read_variable(self, runtime, name: str):
        try:
            return runtime.get_variable(name)
        except Exception as e:
            print(f"[inky] watch {name!r} unreadable: {type(e).__name__}: {e}",
                  file=sys.stderr, flush=True)
            return None

    def add_watch(self, session_id: str, name: str) -> Watch:
        with self.sessions.locked(session_id) as session:
            debug = self._require(session_id)
            watch = Watch(name=name, last_value=self._read_variable(session.runtime, name))
            debug.watches[name] = watch
        return watch

    def remove_watch(self, session_id: str, name: str) -> bool:
        with self.sessions.locked(session_id):
            debug = self._require(session_id)
            return debug.watches.pop(name, None) is not None

    # -- execution ------------------------------------------------------------

    def step(self, session_id: str) -> StepOutcome:
        """Advance the story by one line, then check watches and breakpoints."""
        with self.sessions.locked(session_id) as session:
            debug = self._require(session_id)
            runtime = session.runtime
            if not runtime.can_continue():
                if runtime.current_choices():
                    raise DebugStateError(
                        f"Cannot step {session_id}: story is waiting for a choice"
                    )
                raise DebugStateError(f"Cannot step {session_id}: story has ended")

            before = {name: self._read_variable(runtime, name) for name in debug.watches}

            result = runtime.continue_line()
            debug.total_steps += 1
            debug.last_output = result.text

            watch_changes = {}
            for name, watch in debug.watches.items():
                new_value = self._read_variable(runtime, name)
                old_value = before.get(name)
                watch.last_value = new_value
                if not _same_value(old_value, new_value):
                    watch.change_count += 1
                    watch_changes[name] = (old_value, new_value)

            hit = None
            for bp in debug.breakpoints:
                if bp.enabled and breakpoint_matches(bp, result.text, watch_changes):
                    hit = bp
                    break
            if hit is not None:
                debug.is_paused = True
                print(f"[inky] {session_id}: step {debug.total_steps} hit {hit.id}",
                      file=sys.stderr, flush=True)

            debug.trace.append(VisitEntry(
                step=debug.total_steps,
                text=result.text[:TRACE_TEXT_LIMIT],
                variables_changed=list(watch_changes),
            ))

            return StepOutcome(
                text=result.text,
                can_continue=result.can_continue,
                choices=result.choices,
                tags=result.tags,
                step_number=debug.total_steps,
                is_paused=debug.is_paused,
                hit_breakpoint=hit,
                watch_changes=watch_changes,
            )

    def continue_debug(self, session_id: str, max_steps: int = DEFAULT_MAX_STEPS) -> StepOutcome:
        """Step until a breakpoint hits, a choice appears, the story ends or max_steps run out."""
        with self.sessions.locked(session_id):
            debug = self._require(session_id)
            debug.is_paused = False
            outcome = None
            for _ in range(max(max_steps, 0)):
                outcome = self.step(session_id)
                if outcome.hit_breakpoint is not None or not outcome.can_continue or outcome.choices:
                    break
            if outcome is None:
                return StepOutcome(
                    text="",
                    can_continue=False,
                    choices=[],
                    tags=[],
                    step_number=debug.total_steps,
                    is_paused=False,
                )
            return outcome

    # -- inspection -----------------------------------------------------------

    def inspect(self, session_id: str) -> dict:
        with self.sessions.locked(session_id) as session:
            debug = self._require(session_id)
            watches = {name: self._read_variable(session.runtime, name) for name in debug.watches}
            return {
                "session_id": session_id,
                "total_steps": debug.total_steps,
                "is_paused": debug.is_paused,
                "breakpoints": len(debug.breakpoints),
                "watches": watches,
                "watch_change_counts": {name: w.change_count for name, w in debug.watches.items()},
                "last_output": debug.last_output[:INSPECT_TEXT_LIMIT],
                "visit_log_size": len(debug.trace),
                "recent_visits": [
                    {"step": v.step, "text": v.text, "vars_changed": list(v.variables_changed)}
                    for v in list(debug.trace)[-RECENT_VISITS:]
                ],
            }

    def get_trace(self, session_id: str, last_n: int = 50) -> list[dict]:
        debug = self._require(session_id)
        if last_n <= 0:
            return []
        return [v.to_dict() for v in list(debug.trace)[-last_n:]]
