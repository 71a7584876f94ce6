from typing import Dict, Any, Optional, List, Literal
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from domain.models.message import utcnow


class EventType(str, Enum):
    """Server -> client event types"""
    CONNECTION = "connection"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    STREAM_CHUNK = "stream_chunk"
    RESPONSE = "response"
    ERROR = "error"
    SESSION = "session"
    CHAIN_STEP = "chain_step"
    STATUS = "status"


class CommandType(str, Enum):
    """Client -> server commands"""
    USER_MESSAGE = "user_message"
    CANCEL = "cancel"
    NEW_SESSION = "new_session"
    SWITCH_SESSION = "switch_session"
    DELETE_SESSION = "delete_session"
    SWITCH_PROVIDER = "switch_provider"
    RUN_CHAIN = "run_chain"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    session_id: Optional[str] = None


class ConnectionEvent(BaseEvent):
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]


class ThinkingEvent(BaseEvent):
    type: Literal[EventType.THINKING] = EventType.THINKING


class ToolCallEvent(BaseEvent):
    type: Literal[EventType.TOOL_CALL] = EventType.TOOL_CALL
    tool_name: str
    arguments: str


class ToolResultEvent(BaseEvent):
    type: Literal[EventType.TOOL_RESULT] = EventType.TOOL_RESULT
    tool_name: str
    result: str
    success: bool


class StreamChunkEvent(BaseEvent):
    type: Literal[EventType.STREAM_CHUNK] = EventType.STREAM_CHUNK
    text: str


class ResponseEvent(BaseEvent):
    type: Literal[EventType.RESPONSE] = EventType.RESPONSE
    content: str


class ErrorEvent(BaseEvent):
    """Error event. ``kind`` carries the typed error discriminator when known."""
    type: Literal[EventType.ERROR] = EventType.ERROR
    message: str
    kind: Optional[str] = None


class SessionEvent(BaseEvent):
    """The current session changed"""
    type: Literal[EventType.SESSION] = EventType.SESSION
    action: Literal["started", "switched", "deleted", "restored"]
    title: Optional[str] = None
    messages: List[Dict[str, Any]] = Field(default_factory=list)


class ChainStepEvent(BaseEvent):
    type: Literal[EventType.CHAIN_STEP] = EventType.CHAIN_STEP
    chain_step_index: Optional[int] = None
    step_id: Optional[str] = None
    tool_name: Optional[str] = None
    status: str
    output: Optional[str] = None


class StatusEvent(BaseEvent):
    """Provider status and context usage snapshot"""
    type: Literal[EventType.STATUS] = EventType.STATUS
    provider: Optional[str] = None
    provider_status: str
    thinking: str
    context: Dict[str, Any]


class ClientCommand(BaseModel):
    """Inbound command from the client"""
    type: CommandType
    content: Optional[str] = None
    image_ref: Optional[str] = None
    session_id: Optional[str] = None
    provider: Optional[str] = None
    chain_id: Optional[str] = None
    skipped_step_ids: List[str] = Field(default_factory=list)
    synthesize: bool = True
