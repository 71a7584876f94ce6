from abc import ABC, abstractmethod
from typing import List
import structlog

from domain.models.errors import ProviderError
from domain.models.message import Message
from domain.models.session import normalize_tag
from domain.provider.base import LLMProvider

logger = structlog.get_logger(__name__)

MAX_TOPICS = 5


class TopicTagger(ABC):
    """Extracts short topic tags from conversation text"""

    @abstractmethod
    async def extract_topics(self, text: str) -> List[str]:
        pass


class ProviderTopicTagger(TopicTagger):
    """Asks a provider (without tools) for a comma-separated topic list.

    Failures are logged and yield no topics; tagging is best-effort and
    never blocks a save.
    """

    instructions = (
        f"List the main topics of the text below as up to {MAX_TOPICS} short "
        "lowercase tags separated by commas. Reply with the tags only."
    )

    def __init__(self, provider: LLMProvider, max_topics: int = MAX_TOPICS):
        self.provider = provider
        self.max_topics = max_topics

    async def extract_topics(self, text: str) -> List[str]:
        try:
            reply = await self.provider.complete([Message.system(self.instructions), Message.user(text)])
        except ProviderError as e:
            logger.warning("Failed to tag session", error=str(e))
            return []

        topics: List[str] = []
        for part in reply.replace("\n", ",").split(","):
            topic = normalize_tag(part.strip(" .#-*\"'"))
            if topic and topic not in topics:
                topics.append(topic)
        return topics[: self.max_topics]
