from __future__ import annotations

from runengine.core.config import get_settings
from runengine.core.errors import UnknownSessionError
from runengine.engine.session import Session, SessionMode
from runengine.utils.ids import new_session_id


class SessionStore:
    """In-memory sessions; nothing outlives the process."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def create(self, mode: SessionMode = SessionMode.CHAT, autopilot: bool | None = None) -> Session:
        s = get_settings()
        session = Session(
            new_session_id(),
            mode=mode,
            autopilot=s.DEFAULT_AUTOPILOT if autopilot is None else autopilot,
            max_thoughts=s.LEDGER_MAX_THOUGHTS,
            max_events=s.LEDGER_MAX_EVENTS,
        )
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)
        return session

    def list(self, limit: int = 20) -> list[Session]:
        limit = max(1, min(limit, 200))
        ordered = sorted(self._sessions.values(), key=lambda x: x.created_at, reverse=True)
        return ordered[:limit]

    def find_run(self, run_id: str) -> Session | None:
        for session in self._sessions.values():
            if session.run is not None and session.run.run_id == run_id:
                return session
        return None


session_store = SessionStore()
