from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum

from domain.models.message import MessageRole


NEAR_LIMIT_THRESHOLD = 0.8
CRITICAL_THRESHOLD = 0.95


class ThinkingPhase(str, Enum):
    """Agent loop phase"""
    IDLE = "idle"
    THINKING = "thinking"
    USING_TOOL = "using_tool"
    PROCESSING = "processing"


class ThinkingStatus(BaseModel):
    """UI-facing projection of the loop phase. Idle before and after every run."""
    model_config = ConfigDict(frozen=True)

    phase: ThinkingPhase = ThinkingPhase.IDLE
    tool_name: Optional[str] = None

    @classmethod
    def idle(cls) -> "ThinkingStatus":
        return cls(phase=ThinkingPhase.IDLE)

    @classmethod
    def thinking(cls) -> "ThinkingStatus":
        return cls(phase=ThinkingPhase.THINKING)

    @classmethod
    def using_tool(cls, name: str) -> "ThinkingStatus":
        return cls(phase=ThinkingPhase.USING_TOOL, tool_name=name)

    @classmethod
    def processing(cls) -> "ThinkingStatus":
        return cls(phase=ThinkingPhase.PROCESSING)

    @property
    def is_active(self) -> bool:
        return self.phase != ThinkingPhase.IDLE

    @property
    def display_text(self) -> str:
        if self.phase == ThinkingPhase.THINKING:
            return "Thinking..."
        if self.phase == ThinkingPhase.USING_TOOL:
            return f"Using {self.tool_name}..."
        if self.phase == ThinkingPhase.PROCESSING:
            return "Processing..."
        return ""


class ContextStats(BaseModel):
    """Immutable snapshot of context window usage"""
    model_config = ConfigDict(frozen=True)

    current_tokens: int = Field(default=0, description="Tokens in the assembled transcript")
    max_tokens: int = Field(description="Prompt ceiling for the assembled transcript")
    usage_percent: float = Field(default=0.0, ge=0.0, le=1.0)
    per_role_tokens: Dict[MessageRole, int] = Field(default_factory=dict)
    message_count: int = 0
    trimmed_count: int = 0
    summarized: bool = False

    @classmethod
    def empty(cls, max_tokens: int) -> "ContextStats":
        return cls(max_tokens=max_tokens, per_role_tokens={role: 0 for role in MessageRole})

    @property
    def is_near_limit(self) -> bool:
        return self.usage_percent >= NEAR_LIMIT_THRESHOLD

    @property
    def is_critical(self) -> bool:
        return self.usage_percent >= CRITICAL_THRESHOLD

    def to_dict(self) -> Dict:
        return {
            "current_tokens": self.current_tokens,
            "max_tokens": self.max_tokens,
            "usage_percent": round(self.usage_percent, 4),
            "per_role_tokens": {role.value: count for role, count in self.per_role_tokens.items()},
            "message_count": self.message_count,
            "trimmed_count": self.trimmed_count,
            "summarized": self.summarized,
        }
