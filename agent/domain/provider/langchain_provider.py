from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
import json
import uuid
import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from domain.models.errors import (
    ContextWindowExceeded,
    GenerationFailed,
    ProviderError,
    RateLimited,
)
from domain.models.message import Message, MessageRole, StreamChunk, ToolCall
from domain.provider.base import LLMProvider
from domain.tool.base import ToolDefinition

logger = structlog.get_logger(__name__)

_RATE_LIMIT_MARKERS = ("rate limit", "ratelimit", "429", "too many requests")
_CONTEXT_MARKERS = ("context length", "context window", "maximum context", "too many tokens", "prompt is too long")


def _parse_arguments(arguments: Optional[str]) -> Dict[str, Any]:
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def to_langchain_messages(messages: List[Message]) -> List[BaseMessage]:
    """Convert transcript messages into langchain messages.

    Tool results are self-describing, so each one expands into the assistant
    tool call that produced it followed by the tool message.
    """

    converted: List[BaseMessage] = []
    for message in messages:
        if message.role == MessageRole.SYSTEM:
            converted.append(SystemMessage(content=message.content))
        elif message.role == MessageRole.USER:
            converted.append(HumanMessage(content=message.content))
        elif message.role == MessageRole.ASSISTANT:
            converted.append(AIMessage(content=message.content))
        else:
            call_id = message.tool_call_id or f"call_{message.id[:12]}"
            converted.append(AIMessage(
                content="",
                tool_calls=[{
                    "name": message.tool_name or "tool",
                    "args": _parse_arguments(message.tool_arguments),
                    "id": call_id,
                }],
            ))
            converted.append(ToolMessage(content=message.content, tool_call_id=call_id))
    return converted


def _chunk_text(chunk: AIMessageChunk) -> str:
    content = chunk.content
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


def map_provider_error(error: Exception) -> ProviderError:
    """Classify a backend exception by its message"""

    text = f"{type(error).__name__} {error}".lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return RateLimited(str(error))
    if any(marker in text for marker in _CONTEXT_MARKERS):
        return ContextWindowExceeded(str(error))
    return GenerationFailed(str(error))


class LangChainProvider(LLMProvider):
    """Adapts a langchain chat model into an LLMProvider"""

    def __init__(
        self,
        model: BaseChatModel,
        provider_type: str = "langchain",
        display_name: Optional[str] = None,
        max_tools: Optional[int] = None,
        context_window: Optional[int] = None,
        availability_check: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.model = model
        self.provider_type = provider_type
        self.display_name = display_name or provider_type
        self.max_tools = max_tools
        self.context_window = context_window
        self._availability_check = availability_check

    async def is_available(self) -> bool:
        if self._availability_check is None:
            return True
        return await self._availability_check()

    async def generate(self, messages: List[Message], tools: List[ToolDefinition]) -> AsyncIterator[StreamChunk]:
        model = self.model
        if tools:
            model = self.model.bind_tools([t.to_openai_schema() for t in tools])

        aggregate: Optional[AIMessageChunk] = None
        try:
            async for chunk in model.astream(to_langchain_messages(messages)):
                aggregate = chunk if aggregate is None else aggregate + chunk
                text = _chunk_text(chunk)
                if text:
                    yield StreamChunk.of_text(text)
        except ProviderError:
            raise
        except Exception as e:
            mapped = map_provider_error(e)
            logger.warning("LangChain generation failed", provider=self.provider_type, error=str(e), kind=mapped.kind.value)
            raise mapped from e

        tool_calls = getattr(aggregate, "tool_calls", None) or []
        if tool_calls:
            yield StreamChunk(tool_calls=[
                ToolCall(
                    id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                    name=call["name"],
                    arguments=json.dumps(call.get("args") or {}),
                )
                for call in tool_calls
            ])
