from enum import Enum
from typing import Iterable, List, Optional
import asyncio
import structlog

from domain.context.summarizer import Summarizer
from domain.context.topic_tagger import TopicTagger
from domain.models.errors import SessionNotFoundError
from domain.models.message import Message, MessageRole
from domain.models.session import DEFAULT_SESSION_TITLE, Session
from domain.orchestration.core.main_agent import Agent
from infrastructure.observability.logging import agent_logger
from infrastructure.persistence.session_store import SessionStore

logger = structlog.get_logger(__name__)

SUMMARY_MIN_USER_MESSAGES = 3
SESSION_SUMMARY_TOKENS = 30
TOPIC_SOURCE_MESSAGES = 3


class ContinuityState(str, Enum):
    NO_SESSION = "no_session"
    ACTIVE = "active"


class SessionContinuity:
    """Owns the current session and the ordering of session transitions.

    ``start_new`` and ``switch_to`` always run the same sequence: persist the
    outgoing transcript, cancel the agent's run, reset the agent, load the
    target transcript. The store's current pointer moves only after the load,
    which is the commit point of the transition. Transitions are serialized.
    """

    def __init__(
        self,
        agent: Agent,
        store: SessionStore,
        summarizer: Optional[Summarizer] = None,
        tagger: Optional[TopicTagger] = None,
    ):
        self.agent = agent
        self.store = store
        self.summarizer = summarizer
        self.tagger = tagger
        self._current_id: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ContinuityState:
        return ContinuityState.ACTIVE if self._current_id else ContinuityState.NO_SESSION

    @property
    def current_session_id(self) -> Optional[str]:
        return self._current_id

    async def restore(self) -> Optional[Session]:
        """Activate the store's current session, if any, at startup"""

        async with self._lock:
            session = await self.store.load_current()
            if session is None:
                sessions = await self.store.list_all()
                if not sessions:
                    logger.info("No saved sessions to restore")
                    return None
                session = sessions[0]

            await self._enter(session, persist_outgoing=False)
            return session

    async def ensure_session(self) -> Session:
        """Return the current session, creating one from NoSession"""

        if self._current_id is None:
            return await self.start_new()
        return await self.store.load(self._current_id)

    async def start_new(self) -> Session:
        async with self._lock:
            session = Session()
            await self._enter(session, persist_outgoing=True)
            return session

    async def switch_to(self, session_id: str) -> Session:
        async with self._lock:
            if session_id == self._current_id:
                return await self.store.load(session_id)

            target = await self.store.load(session_id)
            await self._enter(target, persist_outgoing=True)
            return target

    async def delete(self, session_id: str) -> Optional[Session]:
        """Delete a session. Deleting the current one activates a fallback.

        Returns the session that is current afterwards.
        """

        async with self._lock:
            if session_id != self._current_id:
                await self.store.delete(session_id)
                agent_logger.log_session_transition("deleted", from_session=session_id)
                return await self._current_or_none()

            await self.agent.cancel_run()
            await self.store.delete(session_id)
            self._current_id = None

            remaining = await self.store.list_all()
            fallback = remaining[0] if remaining else Session()
            await self._enter(fallback, persist_outgoing=False)
            agent_logger.log_session_transition("deleted", from_session=session_id, to_session=fallback.id)
            return fallback

    async def _enter(self, target: Session, persist_outgoing: bool):
        outgoing = self._current_id

        # 1. persist outgoing
        if persist_outgoing and outgoing is not None:
            await self._persist(outgoing)

        # 2. cancel run, 3. reset agent
        await self.agent.cancel_run()
        await self.agent.reset_for_new_conversation()

        # 4. load target
        self.agent.load_messages(target.messages, target.context_summary, target.summarized_through)

        await self.store.save(target)
        await self.store.set_current(target.id)
        self._current_id = target.id
        agent_logger.log_session_transition(
            "switched" if target.messages else "started",
            from_session=outgoing,
            to_session=target.id,
        )

    async def _current_or_none(self) -> Optional[Session]:
        if self._current_id is None:
            return None
        return await self.store.load(self._current_id)

    # Persistence of the active transcript

    async def save_current(self) -> Optional[Session]:
        """Write the agent's transcript into the current session"""

        async with self._lock:
            if self._current_id is None:
                return None
            return await self._persist(self._current_id)

    async def _persist(self, session_id: str) -> Session:
        try:
            session = await self.store.load(session_id)
        except SessionNotFoundError:
            logger.warning("Current session vanished from store, recreating", session_id=session_id)
            session = Session(id=session_id)

        session.messages = self.agent.get_messages_for_save()
        session.context_summary = self.agent.context.context_summary
        session.summarized_through = self.agent.context.summarized_through
        if session.title == DEFAULT_SESSION_TITLE:
            session.generate_title()
        if self.summarizer is not None and session.summary is None and session.user_message_count >= SUMMARY_MIN_USER_MESSAGES:
            session.summary = await self._summarize(session)
        if self.tagger is not None and not session.topics and session.user_message_count:
            session.topics = await self._extract_topics(session)
        session.touch()

        await self.store.save(session)
        return session

    async def _summarize(self, session: Session) -> Optional[str]:
        text = await self.summarizer.summarize(session.messages, None, SESSION_SUMMARY_TOKENS)
        line = " ".join(text.split())
        return line or None

    async def _extract_topics(self, session: Session) -> List[str]:
        opening = [m.content for m in session.messages if m.role == MessageRole.USER][:TOPIC_SOURCE_MESSAGES]
        topics = await self.tagger.extract_topics(" ".join(opening))
        if topics:
            logger.info("Tagged session", session_id=session.id, topics=topics)
        return topics

    # User actions

    async def list_sessions(self) -> List[Session]:
        return await self.store.list_all()

    async def rename(self, session_id: str, title: str):
        await self.store.rename(session_id, title)

    async def set_tags(self, session_id: str, tags: Iterable[str]):
        await self.store.tag(session_id, tags)

    async def add_tag(self, session_id: str, tag: str) -> bool:
        session = await self.store.load(session_id)
        if not session.add_tag(tag):
            return False
        await self.store.tag(session_id, session.manual_tags)
        return True

    async def remove_tag(self, session_id: str, tag: str) -> bool:
        session = await self.store.load(session_id)
        if not session.remove_tag(tag):
            return False
        await self.store.tag(session_id, session.manual_tags)
        return True

    async def toggle_favorite(self, session_id: str) -> bool:
        session = await self.store.load(session_id)
        session.favorite = not session.favorite
        session.touch()
        await self.store.save(session)
        return session.favorite

    async def toggle_pin(self, message_id: str) -> Optional[bool]:
        """Flip the pin of a message in the current session"""

        pinned = self.agent.context.toggle_pin(message_id)
        if pinned is None:
            return None
        await self.save_current()
        return pinned

    def get_pinned_messages(self) -> List[Message]:
        """Pinned messages of the current session, oldest first"""
        if self._current_id is None:
            return []
        return [m for m in self.agent.get_messages_for_save() if m.pinned]

    async def list_favorites(self) -> List[Session]:
        return [s for s in await self.store.list_all() if s.favorite]

    async def list_all_tags(self) -> List[str]:
        """Sorted union of topics and manual tags across every session"""
        tags = set()
        for session in await self.store.list_all():
            tags.update(session.all_tags)
        return sorted(tags)

    async def list_all_topics(self) -> List[str]:
        topics = set()
        for session in await self.store.list_all():
            topics.update(session.topics)
        return sorted(topics)
