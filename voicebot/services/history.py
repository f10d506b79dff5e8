from __future__ import annotations

import logging
import os
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional
from uuid import uuid4

from dotenv import load_dotenv

logger = logging.getLogger("voicebot")

load_dotenv()
HISTORY_MAX_TURNS = int(os.getenv("HISTORY_MAX_TURNS", "20"))
SINGLE_SESSION_MODE = os.getenv("SINGLE_SESSION_MODE", "0") == "1"
MAX_SESSIONS = int(os.getenv("MAX_SESSIONS", "1000"))

ROLES = ("user", "assistant", "system")
DEFAULT_SESSION_ID = "default"


class ConversationHistory:
    """
    Ordered conversation turns, capped to the most recent max_turns.

    The cap holds after every append; the oldest turns are dropped first.
    """

    def __init__(self, max_turns: int = HISTORY_MAX_TURNS):
        self.max_turns = max_turns
        self._turns: Deque[Dict[str, str]] = deque(maxlen=max_turns)

    def append(self, role: str, content: str) -> None:
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        self._turns.append({"role": role, "content": content})

    def turns(self) -> List[Dict[str, str]]:
        return [dict(t) for t in self._turns]

    def restore(self, turns: List[Dict[str, str]]) -> None:
        """Replace the history with a snapshot previously taken with turns()."""
        self._turns.clear()
        self._turns.extend(dict(t) for t in turns)

    def clear(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)


@dataclass
class Session:
    session_id: str
    history: ConversationHistory = field(default_factory=ConversationHistory)
    created_at: float = field(default_factory=time.time)


class SessionStore:
    """
    In-process conversation sessions keyed by id.

    Requests without an id get a fresh session. In single-session mode every
    request shares one history, like a process-wide conversation. Concurrent
    requests on the same session can interleave their history writes; nothing
    here serializes them.
    """

    def __init__(self, single_session: bool = SINGLE_SESSION_MODE, max_sessions: int = MAX_SESSIONS):
        self.single_session = single_session
        self.max_sessions = max(1, max_sessions)
        self._sessions: "OrderedDict[str, Session]" = OrderedDict()

    def get(self, session_id: Optional[str] = None) -> Session:
        if self.single_session:
            session_id = DEFAULT_SESSION_ID
        session_id = (session_id or "").strip() or str(uuid4())

        session = self._sessions.get(session_id)
        if session is None:
            session = Session(session_id=session_id)
            self._sessions[session_id] = session
            self._evict()
        else:
            self._sessions.move_to_end(session_id)
        return session

    def clear(self, session_id: Optional[str] = None) -> Session:
        session = self.get(session_id)
        session.history.clear()
        return session

    def _evict(self) -> None:
        while len(self._sessions) > self.max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug(f"Evicted idle session {evicted}")

    def __len__(self) -> int:
        return len(self._sessions)


_STORE: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    global _STORE
    if _STORE is None:
        _STORE = SessionStore()
    return _STORE
