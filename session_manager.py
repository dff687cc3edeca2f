"""Concurrent registry of live story sessions.

One Session owns one StoryRuntime. The registry lock only guards the
dictionary; work on a session's runtime is serialized by that session's own
lock, so requests for different sessions never wait on each other.
"""

import contextlib
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable

from story_runtime import StoryRuntime


class SessionNotFoundError(LookupError):
    """No live story session with the requested id."""

    def __init__(self, session_id: str):
        super().__init__(f"No story session: {session_id}")
        self.session_id = session_id

    def __str__(self) -> str:
        return self.args[0]


@dataclass
class Session:
    id: str
    runtime: StoryRuntime
    source: str = ""
    saved_state: str | None = None
    created_at: float = field(default_factory=time.time)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)


class SessionManager:
    """Thread-safe session table: create, look up, end."""

    ID_LENGTH = 8

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def _generate_id(self) -> str:
        while True:
            candidate = uuid.uuid4().hex[:self.ID_LENGTH]
            if candidate not in self._sessions:
                return candidate

    def create(self, runtime_factory: Callable[[], StoryRuntime],
               session_id: str | None = None, source: str = "") -> str:
        """Build a runtime with *runtime_factory* and register it.

        A caller-supplied id that is already live replaces that session; the
        old runtime is closed first.
        """
        if session_id:
            self.end(session_id)
        # Built outside the table lock: lookups only ever see finished sessions.
        runtime = runtime_factory()
        with self._lock:
            sid = session_id or self._generate_id()
            replaced = self._sessions.pop(sid, None)
            self._sessions[sid] = Session(id=sid, runtime=runtime, source=source)
        if replaced is not None:
            # Lost a race with a concurrent create for the same id.
            self._close(replaced)
        print(f"[inky] session {sid}: created", file=sys.stderr, flush=True)
        return sid

    def get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    @contextlib.contextmanager
    def locked(self, session_id: str):
        """Look up a session and hold its lock for the duration of the block."""
        session = self.get(session_id)
        with session.lock:
            yield session

    def has(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def list_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def end(self, session_id: str) -> bool:
        """Remove a session and close its runtime. Unknown ids are a no-op."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._close(session)
        print(f"[inky] session {session_id}: ended", file=sys.stderr, flush=True)
        return True

    def _close(self, session: Session):
        # Waits for any in-flight call on this session before closing.
        with session.lock:
            session.runtime.close()

    def close_all(self):
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._close(session)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
