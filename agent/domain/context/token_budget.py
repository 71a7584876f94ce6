from typing import Iterable
from pydantic import BaseModel, Field, model_validator

from domain.models.message import Message


class TokenBudget(BaseModel):
    """Fixed token budget split into named reserves"""
    total: int = Field(default=4096, gt=0, description="Provider context window")
    system_reserve: int = Field(default=500, ge=0, description="Reserved for system instructions")
    tool_schema_reserve: int = Field(default=400, ge=0, description="Reserved for tool schemas")
    response_reserve: int = Field(default=1200, ge=0, description="Reserved for the model response")
    summarization_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    summary_max_tokens: int = Field(default=150, gt=0)

    @model_validator(mode="after")
    def check_reserves(self) -> "TokenBudget":
        if self.history_budget <= 0:
            raise ValueError("reserves exceed the total token budget")
        return self

    @property
    def history_budget(self) -> int:
        """Tokens left for conversation history"""
        return self.total - self.system_reserve - self.tool_schema_reserve - self.response_reserve

    @property
    def prompt_ceiling(self) -> int:
        """Hard ceiling for the assembled transcript (system prompt included)"""
        return self.total - self.tool_schema_reserve - self.response_reserve

    @property
    def summarization_trigger(self) -> int:
        return int(self.history_budget * self.summarization_threshold)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token for Latin text, 1 per char otherwise"""
    if not text:
        return 0
    ascii_count = sum(1 for ch in text if ord(ch) < 128)
    if ascii_count > len(text) // 2:
        return max(1, len(text) // 4)
    return len(text)


def estimate_message_tokens(message: Message) -> int:
    tokens = estimate_tokens(message.content)
    if message.tool_arguments:
        tokens += estimate_tokens(message.tool_arguments)
    return tokens


def estimate_messages_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut text so its estimate stays within max_tokens"""
    if estimate_tokens(text) <= max_tokens:
        return text
    cut = text[: max_tokens * 4].rstrip()
    if estimate_tokens(cut) <= max_tokens:
        return cut
    return text[:max_tokens]
