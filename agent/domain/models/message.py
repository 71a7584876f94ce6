from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    """Transcript message roles"""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


class Message(BaseModel):
    """A single transcript entry.

    Content is immutable once the message is appended to a session; only
    ``pinned`` may be flipped afterwards. Tool-result messages are
    self-describing: they carry the tool name, its arguments and the call id
    next to the result payload held in ``content``.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique message identifier")
    role: MessageRole = Field(description="Author role")
    content: str = Field(default="", description="Message text or tool result payload")
    tool_name: Optional[str] = Field(None, description="Tool that produced this result")
    tool_call_id: Optional[str] = Field(None, description="Provider-side id of the originating tool call")
    tool_arguments: Optional[str] = Field(None, description="JSON arguments the tool was called with")
    tool_failed: bool = Field(default=False, description="Tool result represents a failure")
    image_ref: Optional[str] = Field(None, description="Opaque reference to an attached image")
    pinned: bool = Field(default=False)
    is_summary: bool = Field(default=False, description="Condensed summary of older messages")
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def tool_result(self) -> Optional[str]:
        return self.content if self.role == MessageRole.TOOL else None

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str, image_ref: Optional[str] = None) -> "Message":
        return cls(role=MessageRole.USER, content=content, image_ref=image_ref)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content)

    @classmethod
    def tool(
        cls,
        name: str,
        result: str,
        call_id: Optional[str] = None,
        arguments: Optional[str] = None,
        failed: bool = False,
    ) -> "Message":
        return cls(
            role=MessageRole.TOOL,
            content=result,
            tool_name=name,
            tool_call_id=call_id,
            tool_arguments=arguments,
            tool_failed=failed,
        )

    @classmethod
    def summary(cls, content: str) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=content, is_summary=True)


class ToolCall(BaseModel):
    """A tool invocation requested by the model"""
    id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")
    name: str
    arguments: str = Field(default="{}", description="JSON-encoded arguments")


class StreamChunk(BaseModel):
    """One element of a provider's streamed generation.

    A chunk carries either a text delta or the tool calls the model requested
    at the end of its segment.
    """
    text: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def of_text(cls, text: str) -> "StreamChunk":
        return cls(text=text)

    @classmethod
    def of_tool_call(cls, name: str, arguments: str = "{}", call_id: Optional[str] = None) -> "StreamChunk":
        call = ToolCall(name=name, arguments=arguments) if call_id is None else ToolCall(id=call_id, name=name, arguments=arguments)
        return cls(tool_calls=[call])
