from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Iterable
import asyncio
import structlog

from domain.models.errors import SessionNotFoundError
from domain.models.session import Session, normalize_tag

logger = structlog.get_logger(__name__)


class SessionStore(ABC):
    """Persistence boundary for sessions. Implementations own the storage medium."""

    @abstractmethod
    async def load(self, session_id: str) -> Session:
        """Return a session, raising SessionNotFoundError when unknown"""

    @abstractmethod
    async def load_current(self) -> Optional[Session]:
        """Return the current session, or None when none exists yet"""

    @abstractmethod
    async def save(self, session: Session):
        """Insert or replace a session"""

    @abstractmethod
    async def list_all(self) -> List[Session]:
        """All sessions, most recently updated first"""

    @abstractmethod
    async def delete(self, session_id: str):
        pass

    @abstractmethod
    async def rename(self, session_id: str, title: str):
        pass

    @abstractmethod
    async def tag(self, session_id: str, tags: Iterable[str]):
        """Replace the manual tags of a session"""

    @abstractmethod
    async def set_current(self, session_id: Optional[str]):
        pass

    @abstractmethod
    async def current_id(self) -> Optional[str]:
        pass

    async def exists(self, session_id: str) -> bool:
        try:
            await self.load(session_id)
        except SessionNotFoundError:
            return False
        return True


class InMemorySessionStore(SessionStore):
    """Keeps sessions in process memory"""

    def __init__(self, max_sessions: int = 50, max_messages_per_session: int = 100):
        self.max_sessions = max_sessions
        self.max_messages_per_session = max_messages_per_session
        self.sessions: Dict[str, Session] = {}
        self._current_id: Optional[str] = None
        self._lock = asyncio.Lock()

    def _get(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _cap_messages(self, session: Session):
        overflow = len(session.messages) - self.max_messages_per_session
        if overflow > 0:
            session.messages = session.messages[overflow:]
            session.summarized_through = max(0, session.summarized_through - overflow)

    def _trim_sessions(self):
        if len(self.sessions) <= self.max_sessions:
            return

        protected = {sid for sid, s in self.sessions.items() if s.favorite or sid == self._current_id}
        candidates = sorted(
            (s for sid, s in self.sessions.items() if sid not in protected),
            key=lambda s: s.updated_at,
        )
        overflow = len(self.sessions) - self.max_sessions
        removed = [s.id for s in candidates[:overflow]]
        for session_id in removed:
            del self.sessions[session_id]
        if removed:
            logger.info("Trimmed old sessions", removed=len(removed), preserved_favorites=len(protected))

    async def load(self, session_id: str) -> Session:
        async with self._lock:
            return self._get(session_id).model_copy(deep=True)

    async def load_current(self) -> Optional[Session]:
        async with self._lock:
            if self._current_id is None or self._current_id not in self.sessions:
                return None
            return self.sessions[self._current_id].model_copy(deep=True)

    async def save(self, session: Session):
        async with self._lock:
            stored = session.model_copy(deep=True)
            self._cap_messages(stored)
            self.sessions[stored.id] = stored
            self._trim_sessions()

    async def list_all(self) -> List[Session]:
        async with self._lock:
            ordered = sorted(self.sessions.values(), key=lambda s: s.updated_at, reverse=True)
            return [s.model_copy(deep=True) for s in ordered]

    async def delete(self, session_id: str):
        async with self._lock:
            self._get(session_id)
            del self.sessions[session_id]
            if self._current_id == session_id:
                self._current_id = None

    async def rename(self, session_id: str, title: str):
        trimmed = title.strip()
        if not trimmed:
            raise ValueError("session title cannot be empty")
        async with self._lock:
            session = self._get(session_id)
            session.title = trimmed
            session.touch()

    async def tag(self, session_id: str, tags: Iterable[str]):
        async with self._lock:
            session = self._get(session_id)
            normalized: List[str] = []
            for tag in tags:
                value = normalize_tag(tag)
                if value and value not in normalized:
                    normalized.append(value)
            session.manual_tags = normalized
            session.touch()

    async def set_current(self, session_id: Optional[str]):
        async with self._lock:
            if session_id is not None:
                self._get(session_id)
            self._current_id = session_id

    async def current_id(self) -> Optional[str]:
        async with self._lock:
            return self._current_id
