"""Story runtime interface and the inkjs bridge backend.

The server never interprets ink itself. Everything it knows about a story
goes through the two interfaces below:

  StoryEngine   compile ink, open story runtimes, optional bidi text helpers
  StoryRuntime  one running story (continue, choose, variables, state, ...)

The production backend gives every story session its own node subprocess
running ink_bridge.js (inkjs compiler + runtime), so sessions never share
interpreter state:

  SessionManager --> NodeStoryRuntime --JSON/stdin--> node ink_bridge.js
"""

import abc
import collections
import json
import os
import queue
import subprocess
import sys
import threading
from dataclasses import dataclass, field

BRIDGE_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "ink_bridge.js")

DEFAULT_BRIDGE_TIMEOUT = float(os.environ.get("INKY_BRIDGE_TIMEOUT", "30"))


class BridgeError(RuntimeError):
    """The ink bridge reported an error, or is no longer running."""


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class ChoiceInfo:
    index: int
    text: str
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ChoiceInfo":
        return cls(
            index=int(data.get("index", 0)),
            text=data.get("text", ""),
            tags=list(data.get("tags") or []),
        )

    def to_dict(self) -> dict:
        return {"index": self.index, "text": self.text, "tags": list(self.tags)}


@dataclass
class ContinueResult:
    text: str
    can_continue: bool
    choices: list[ChoiceInfo] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ContinueResult":
        return cls(
            text=data.get("text", ""),
            can_continue=bool(data.get("can_continue", False)),
            choices=[ChoiceInfo.from_dict(c) for c in data.get("choices") or []],
            tags=list(data.get("tags") or []),
        )


@dataclass
class CompileResult:
    success: bool
    json: str | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class StoryRuntime(abc.ABC):
    """A single running story. Owned by exactly one session."""

    @abc.abstractmethod
    def continue_story(self) -> ContinueResult:
        """Continue until the next choice point or the end, collecting all text."""

    @abc.abstractmethod
    def continue_line(self) -> ContinueResult:
        """Continue by exactly one line of output."""

    @abc.abstractmethod
    def can_continue(self) -> bool: ...

    @abc.abstractmethod
    def choose(self, index: int) -> None:
        """Select a pending choice without continuing."""

    @abc.abstractmethod
    def current_choices(self) -> list[ChoiceInfo]: ...

    @abc.abstractmethod
    def get_variable(self, name: str): ...

    @abc.abstractmethod
    def set_variable(self, name: str, value) -> None: ...

    @abc.abstractmethod
    def save_state(self) -> str: ...

    @abc.abstractmethod
    def load_state(self, state_json: str) -> None: ...

    @abc.abstractmethod
    def reset(self) -> None: ...

    @abc.abstractmethod
    def evaluate_function(self, name: str, args: list | None = None): ...

    @abc.abstractmethod
    def global_tags(self) -> list[str]: ...

    @abc.abstractmethod
    def close(self) -> None:
        """Release the runtime's execution context. Must be synchronous."""


class StoryEngine(abc.ABC):
    """Compiles ink and opens story runtimes."""

    @property
    def has_bidi(self) -> bool:
        return False

    @abc.abstractmethod
    def compile(self, source: str) -> CompileResult: ...

    @abc.abstractmethod
    def open_source(self, source: str) -> StoryRuntime: ...

    @abc.abstractmethod
    def open_json(self, json_text: str) -> StoryRuntime: ...

    # Bidi helpers are pass-through unless a backend provides them.
    def bidify(self, text: str) -> str:
        return text

    def strip_bidi(self, text: str) -> str:
        return text

    def bidify_json(self, json_text: str) -> str:
        return json_text


# ---------------------------------------------------------------------------
# InkBridge: manages one node subprocess running ink_bridge.js
# ---------------------------------------------------------------------------

class InkBridge:
    STDERR_BUFFER_SIZE = 200  # max lines to keep in ring buffer
    SIGTERM_GRACE_SECONDS = 2

    def __init__(self, node: str = "node", inkjs_module: str = "inkjs/full",
                 bidify_path: str | None = None, timeout: float | None = None):
        self.node = node
        self.inkjs_module = inkjs_module
        self.bidify_path = bidify_path
        self.timeout = timeout if timeout is not None else DEFAULT_BRIDGE_TIMEOUT
        self.proc = None
        self._lock = threading.Lock()
        self._stderr_buffer = collections.deque(maxlen=self.STDERR_BUFFER_SIZE)
        self._stdout_queue = queue.Queue()
        self._start()

    def _start(self):
        env = os.environ.copy()
        env["INKY_INKJS_MODULE"] = self.inkjs_module
        if self.bidify_path:
            env["INKY_BIDIFY_PATH"] = self.bidify_path
        self.proc = subprocess.Popen(
            [self.node, BRIDGE_SCRIPT],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            env=env,
        )
        threading.Thread(target=self._drain_stdout, args=(self.proc,), daemon=True).start()
        # Drain stderr so a chatty bridge can never fill the pipe and deadlock
        threading.Thread(target=self._drain_stderr, args=(self.proc,), daemon=True).start()

    def _drain_stdout(self, proc):
        try:
            while proc.poll() is None:
                line = proc.stdout.readline()
                if not line:
                    break
                self._stdout_queue.put(("line", line))
        except (ValueError, OSError) as e:
            self._stdout_queue.put(("error", str(e)))
        finally:
            self._stdout_queue.put(("eof", None))

    def _drain_stderr(self, proc):
        try:
            while proc.stderr:
                line = proc.stderr.readline()
                if not line:
                    break
                stripped = line.rstrip("\n\r")
                if stripped:
                    self._stderr_buffer.append(stripped)
                    print(f"[inky-stderr] {stripped}", file=sys.stderr, flush=True)
        except (ValueError, OSError):
            # Pipe closed, process is shutting down
            pass

    def get_stderr_log(self) -> list[str]:
        return list(self._stderr_buffer)

    @property
    def alive(self) -> bool:
        return self.proc is not None and self.proc.poll() is None

    def _read_line(self, timeout: float) -> str:
        try:
            kind, data = self._stdout_queue.get(timeout=timeout)
        except queue.Empty:
            # No reply in time: the story is stuck, reclaim the process.
            print(f"[inky-bridge] no reply after {timeout}s, terminating pid {self.proc.pid}",
                  file=sys.stderr, flush=True)
            self._terminate()
            raise TimeoutError(f"ink bridge timed out after {timeout}s")
        if kind == "line":
            return data
        if kind == "error":
            raise BridgeError(f"ink bridge stdout reader error: {data}")
        raise BridgeError("ink bridge stdout closed")

    def send(self, cmd: dict, timeout: float | None = None) -> dict:
        """Send one command and return the bridge's reply.

        Raises BridgeError for error replies or a dead bridge, and
        TimeoutError (after killing the process) when no reply arrives.
        """
        with self._lock:
            if not self.alive:
                raise BridgeError("ink bridge is not running")
            try:
                self.proc.stdin.write(json.dumps(cmd) + "\n")
                self.proc.stdin.flush()
            except (BrokenPipeError, OSError) as e:
                raise BridgeError(f"ink bridge stdin closed: {e}") from e
            line = self._read_line(timeout if timeout is not None else self.timeout)
            try:
                msg = json.loads(line)
            except json.JSONDecodeError as e:
                raise BridgeError(f"malformed bridge reply: {line[:200]!r}") from e
        if msg.get("status") == "error":
            raise BridgeError(msg.get("message", "unknown bridge error"))
        return msg

    def _terminate(self):
        proc, self.proc = self.proc, None
        if proc is None:
            return
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=self.SIGTERM_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass

    def close(self):
        self._terminate()


# ---------------------------------------------------------------------------
# Node-backed runtime and engine
# ---------------------------------------------------------------------------

class NodeStoryRuntime(StoryRuntime):
    def __init__(self, bridge: InkBridge):
        self._bridge = bridge

    @property
    def bridge(self) -> InkBridge:
        return self._bridge

    def continue_story(self) -> ContinueResult:
        return ContinueResult.from_dict(self._bridge.send({"op": "continue"}))

    def continue_line(self) -> ContinueResult:
        return ContinueResult.from_dict(self._bridge.send({"op": "continue-line"}))

    def can_continue(self) -> bool:
        return bool(self._bridge.send({"op": "can-continue"})["value"])

    def choose(self, index: int) -> None:
        self._bridge.send({"op": "choose", "index": index})

    def current_choices(self) -> list[ChoiceInfo]:
        resp = self._bridge.send({"op": "choices"})
        return [ChoiceInfo.from_dict(c) for c in resp.get("choices", [])]

    def get_variable(self, name: str):
        return self._bridge.send({"op": "get-var", "name": name}).get("value")

    def set_variable(self, name: str, value) -> None:
        self._bridge.send({"op": "set-var", "name": name, "value": value})

    def save_state(self) -> str:
        return self._bridge.send({"op": "save-state"})["state"]

    def load_state(self, state_json: str) -> None:
        self._bridge.send({"op": "load-state", "state": state_json})

    def reset(self) -> None:
        self._bridge.send({"op": "reset"})

    def evaluate_function(self, name: str, args: list | None = None):
        resp = self._bridge.send({"op": "eval-fn", "name": name, "args": list(args or [])})
        return resp.get("value")

    def global_tags(self) -> list[str]:
        return list(self._bridge.send({"op": "global-tags"}).get("tags", []))

    def close(self) -> None:
        self._bridge.close()


class NodeInkEngine(StoryEngine):
    """inkjs running under node, one bridge process per story session."""

    def __init__(self, node: str = "node", inkjs_module: str = "inkjs/full",
                 bidify_path: str | None = None, timeout: float | None = None):
        self.node = node
        self.inkjs_module = inkjs_module
        self.bidify_path = bidify_path
        self.timeout = timeout

    @property
    def has_bidi(self) -> bool:
        return bool(self.bidify_path)

    def _new_bridge(self) -> InkBridge:
        return InkBridge(self.node, self.inkjs_module, self.bidify_path, self.timeout)

    def _one_shot(self, cmd: dict) -> dict:
        bridge = self._new_bridge()
        try:
            return bridge.send(cmd)
        finally:
            bridge.close()

    def compile(self, source: str) -> CompileResult:
        resp = self._one_shot({"op": "compile", "source": source})
        return CompileResult(
            success=bool(resp.get("success")),
            json=resp.get("json"),
            errors=list(resp.get("errors") or []),
            warnings=list(resp.get("warnings") or []),
        )

    def _open(self, cmd: dict) -> NodeStoryRuntime:
        bridge = self._new_bridge()
        try:
            bridge.send(cmd)
        except Exception:
            bridge.close()
            raise
        return NodeStoryRuntime(bridge)

    def open_source(self, source: str) -> NodeStoryRuntime:
        return self._open({"op": "load-source", "source": source})

    def open_json(self, json_text: str) -> NodeStoryRuntime:
        return self._open({"op": "load-json", "json": json_text})

    def bidify(self, text: str) -> str:
        if not self.has_bidi:
            return text
        return self._one_shot({"op": "bidify", "text": text})["value"]

    def strip_bidi(self, text: str) -> str:
        if not self.has_bidi:
            return text
        return self._one_shot({"op": "strip-bidi", "text": text})["value"]

    def bidify_json(self, json_text: str) -> str:
        if not self.has_bidi:
            return json_text
        return self._one_shot({"op": "bidify-json", "json": json_text})["value"]
