from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
import re
import uuid

from domain.models.message import Message, MessageRole, utcnow


DEFAULT_SESSION_TITLE = "New Conversation"
TITLE_MAX_LENGTH = 50


def normalize_tag(tag: str) -> str:
    return tag.strip().lower()


class Session(BaseModel):
    """A persisted conversation"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique session identifier")
    title: str = Field(default=DEFAULT_SESSION_TITLE)
    messages: List[Message] = Field(default_factory=list, description="Ordered transcript")
    summary: Optional[str] = Field(None, description="One-line description shown in session lists")
    context_summary: Optional[str] = Field(None, description="Condensed history used in provider transcripts")
    summarized_through: int = Field(default=0, description="Leading messages folded into context_summary")
    topics: List[str] = Field(default_factory=list)
    manual_tags: List[str] = Field(default_factory=list)
    favorite: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def all_tags(self) -> List[str]:
        return sorted(set(self.topics) | set(self.manual_tags))

    @property
    def user_message_count(self) -> int:
        return sum(1 for m in self.messages if m.role == MessageRole.USER)

    def touch(self):
        self.updated_at = utcnow()

    def generate_title(self) -> str:
        """Derive a title from the first user message"""
        first = next((m for m in self.messages if m.role == MessageRole.USER and m.content.strip()), None)
        if first is None:
            return self.title

        text = re.sub(r"\s+", " ", first.content).strip()
        if len(text) > TITLE_MAX_LENGTH:
            text = text[:TITLE_MAX_LENGTH] + "..."
        self.title = text
        return self.title

    def add_tag(self, tag: str) -> bool:
        normalized = normalize_tag(tag)
        if not normalized or normalized in self.manual_tags:
            return False
        self.manual_tags.append(normalized)
        return True

    def remove_tag(self, tag: str) -> bool:
        normalized = normalize_tag(tag)
        if normalized not in self.manual_tags:
            return False
        self.manual_tags.remove(normalized)
        return True
