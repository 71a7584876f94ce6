from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional

from domain.models.message import Message, StreamChunk
from domain.tool.base import ToolDefinition


class LLMProvider(ABC):
    """A pluggable language-model backend.

    ``generate`` streams the model's answer for one segment: zero or more
    text chunks followed, optionally, by a chunk carrying tool calls. It
    raises ``ProviderError`` subclasses for backend failures.
    """

    provider_type: str = "provider"
    display_name: str = "Provider"
    # Most tools the backend handles well; None means no limit
    max_tools: Optional[int] = None
    # Hard ceiling on prompt tokens the backend accepts; None defers to the budget
    context_window: Optional[int] = None

    @abstractmethod
    def generate(self, messages: List[Message], tools: List[ToolDefinition]) -> AsyncIterator[StreamChunk]:
        """Stream a completion for the transcript"""

    @abstractmethod
    async def is_available(self) -> bool:
        """Check capability, credentials or network reachability"""

    async def prewarm(self, hint: Optional[str] = None):
        """Optionally warm up a backend session before the first request"""

    async def reset_session(self):
        """Drop any session-scoped state cached by the backend"""

    async def complete(self, messages: List[Message], tools: Optional[List[ToolDefinition]] = None) -> str:
        """Non-streaming convenience wrapper returning the full text"""
        parts = []
        async for chunk in self.generate(messages, tools or []):
            if chunk.text:
                parts.append(chunk.text)
        return "".join(parts)
