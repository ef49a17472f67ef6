"""Fan-out of live agent terminal output to interactive viewers."""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)

TERMINAL_BUFFER = "agent:terminal:buffer"
TERMINAL_DATA = "agent:terminal:data"
TERMINAL_CLEAR = "agent:terminal:clear"
TERMINAL_CLOSED = "agent:terminal:closed"


class Viewer(Protocol):
    def send(self, event: str, payload: dict) -> None: ...


@dataclass
class TerminalSession:
    agent_id: str
    buffer: deque
    viewers: list = field(default_factory=list)
    created_at: float = field(default_factory=time.monotonic)
    empty_since: float | None = field(default_factory=time.monotonic)
    lock: threading.Lock = field(default_factory=threading.Lock)


class TerminalBroadcastHub:
    """Per-agent ring buffer of output chunks plus a set of live viewers.

    A viewer that connects late first receives the whole buffer, then the
    same live chunks as everyone else. Replay and joining happen under the
    session lock, so no chunk is lost or delivered twice.
    """

    def __init__(self, buffer_size: int = 1000, idle_timeout: float = 30.0):
        self.buffer_size = buffer_size
        self.idle_timeout = idle_timeout
        self._sessions: dict[str, TerminalSession] = {}
        self._lock = threading.Lock()

    def _session(self, agent_id: str) -> TerminalSession:
        with self._lock:
            session = self._sessions.get(agent_id)
            if session is None:
                session = TerminalSession(agent_id=agent_id, buffer=deque(maxlen=self.buffer_size))
                self._sessions[agent_id] = session
            return session

    def append(self, agent_id: str, data: str):
        if not data:
            return
        session = self._session(agent_id)
        with session.lock:
            session.buffer.append(data)
            self._send_all(session, TERMINAL_DATA, {"agentId": agent_id, "data": data})

    def connect(self, agent_id: str, viewer: Viewer):
        session = self._session(agent_id)
        with session.lock:
            history = list(session.buffer)
            try:
                viewer.send(TERMINAL_BUFFER, {"agentId": agent_id, "buffer": history})
            except Exception:
                logger.warning("Terminal viewer for %s failed during replay", agent_id)
                return
            session.viewers.append(viewer)
            session.empty_since = None
        logger.debug("Viewer joined %s (%d viewers)", agent_id, len(session.viewers))

    def disconnect(self, agent_id: str, viewer: Viewer):
        with self._lock:
            session = self._sessions.get(agent_id)
        if session is None:
            return
        with session.lock:
            if viewer in session.viewers:
                session.viewers.remove(viewer)
            if not session.viewers:
                session.empty_since = time.monotonic()

    def clear(self, agent_id: str):
        with self._lock:
            session = self._sessions.get(agent_id)
        if session is None:
            return
        with session.lock:
            session.buffer.clear()
            self._send_all(session, TERMINAL_CLEAR, {"agentId": agent_id})

    def close(self, agent_id: str, reason: str = "closed"):
        """Remove a session, telling any connected viewers first."""
        with self._lock:
            session = self._sessions.pop(agent_id, None)
        if session is None:
            return
        with session.lock:
            self._send_all(session, TERMINAL_CLOSED, {"agentId": agent_id, "reason": reason})
            session.viewers.clear()

    def sweep_idle(self, now: float | None = None) -> list[str]:
        """Drop sessions that have had no viewers for longer than idle_timeout."""
        now = time.monotonic() if now is None else now
        with self._lock:
            expired = [
                agent_id
                for agent_id, session in self._sessions.items()
                if session.empty_since is not None and now - session.empty_since >= self.idle_timeout
            ]
        for agent_id in expired:
            self.close(agent_id, reason="idle")
        return expired

    def get_buffer(self, agent_id: str) -> list[str]:
        with self._lock:
            session = self._sessions.get(agent_id)
        if session is None:
            return []
        with session.lock:
            return list(session.buffer)

    def has_session(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._sessions

    def viewer_count(self, agent_id: str) -> int:
        with self._lock:
            session = self._sessions.get(agent_id)
        return len(session.viewers) if session else 0

    def stats(self) -> dict:
        with self._lock:
            sessions = list(self._sessions.values())
        return {
            "sessions": len(sessions),
            "viewers": sum(len(s.viewers) for s in sessions),
            "buffered_chunks": sum(len(s.buffer) for s in sessions),
        }

    def _send_all(self, session: TerminalSession, event: str, payload: dict):
        for viewer in list(session.viewers):
            try:
                viewer.send(event, payload)
            except Exception:
                logger.warning("Dropping terminal viewer for %s after send failure", session.agent_id)
                session.viewers.remove(viewer)
        if not session.viewers and session.empty_since is None:
            session.empty_since = time.monotonic()
