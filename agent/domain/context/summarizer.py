from abc import ABC, abstractmethod
from typing import List, Optional
import structlog

from domain.context.token_budget import truncate_to_tokens
from domain.models.errors import ProviderError
from domain.models.message import Message, MessageRole
from domain.provider.base import LLMProvider

logger = structlog.get_logger(__name__)

SUMMARY_PREFIX = "Summary of earlier conversation:"
_LINE_LIMIT = 160

_ROLE_LABELS = {
    MessageRole.USER: "User",
    MessageRole.ASSISTANT: "Assistant",
    MessageRole.SYSTEM: "Note",
}


def _label(message: Message) -> str:
    if message.role == MessageRole.TOOL:
        state = "failed" if message.tool_failed else "result"
        return f"Tool {message.tool_name or 'unknown'} ({state})"
    return _ROLE_LABELS[message.role]


def render_transcript(messages: List[Message], line_limit: int = _LINE_LIMIT) -> str:
    lines = []
    for message in messages:
        text = " ".join(message.content.split())
        if len(text) > line_limit:
            text = text[:line_limit].rstrip() + "..."
        lines.append(f"{_label(message)}: {text}")
    return "\n".join(lines)


class Summarizer(ABC):
    """Condenses a block of transcript messages into one summary text"""

    @abstractmethod
    async def summarize(self, messages: List[Message], previous: Optional[str], max_tokens: int) -> str:
        pass


class ExtractiveSummarizer(Summarizer):
    """Deterministic role-labelled digest, truncated to the token ceiling"""

    async def summarize(self, messages: List[Message], previous: Optional[str], max_tokens: int) -> str:
        parts = [SUMMARY_PREFIX]
        if previous:
            parts.append(previous.replace(SUMMARY_PREFIX, "").strip())
        parts.append(render_transcript(messages))
        return truncate_to_tokens("\n".join(p for p in parts if p), max_tokens)


class ProviderSummarizer(Summarizer):
    """Asks a provider (without tools) for the summary, extractive on failure"""

    instructions = (
        "Summarize the conversation below in a few short sentences. Keep names, "
        "dates, decisions and facts the user shared. Do not add commentary."
    )

    def __init__(self, provider: LLMProvider, fallback: Optional[Summarizer] = None):
        self.provider = provider
        self.fallback = fallback or ExtractiveSummarizer()

    async def summarize(self, messages: List[Message], previous: Optional[str], max_tokens: int) -> str:
        transcript = render_transcript(messages)
        if previous:
            transcript = f"Earlier summary: {previous}\n{transcript}"

        try:
            text = await self.provider.complete(
                [Message.system(self.instructions), Message.user(transcript)]
            )
        except ProviderError as e:
            logger.warning("Provider summarization failed, using extractive summary", error=str(e))
            return await self.fallback.summarize(messages, previous, max_tokens)

        text = text.strip()
        if not text:
            return await self.fallback.summarize(messages, previous, max_tokens)
        return truncate_to_tokens(f"{SUMMARY_PREFIX} {text}", max_tokens)
