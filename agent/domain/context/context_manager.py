from typing import Dict, List, Optional
import structlog

from domain.context.summarizer import ExtractiveSummarizer, Summarizer
from domain.context.token_budget import (
    TokenBudget,
    estimate_message_tokens,
    truncate_to_tokens,
)
from domain.models.agent_state import ContextStats
from domain.models.message import Message, MessageRole
from infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)


class ContextBudgetManager:
    """Keeps the provider-facing transcript inside a fixed token budget.

    The transcript handed to a provider is assembled from four parts:

        system message     never trimmed
        summary            condensed older history, at most one message
        window             committed history not yet folded or trimmed
        pending turn       the user message of the run in flight plus its
                           tool results, committed or discarded as a unit;
                           once the window is exhausted the oldest tool
                           results drop out of the transcript; the user
                           message and the latest result never do

    ``history`` keeps the full committed transcript for persistence; the
    window cursor marks where the provider-facing part starts. Stats are
    recomputed as an immutable snapshot after every mutation, so readers
    always see a consistent view.
    """

    def __init__(
        self,
        budget: Optional[TokenBudget] = None,
        summarizer: Optional[Summarizer] = None,
        keep_recent: int = 4,
    ):
        self.budget = budget or TokenBudget()
        self.summarizer = summarizer or ExtractiveSummarizer()
        self.keep_recent = keep_recent

        self._system: Optional[Message] = None
        self._history: List[Message] = []
        self._window_start = 0
        self._summary: Optional[Message] = None
        self._pending: List[Message] = []
        self._pending_trimmed = 0
        self._trimmed_count = 0
        self._stats = ContextStats.empty(self.max_tokens)

    # Read side

    @property
    def max_tokens(self) -> int:
        return self.budget.prompt_ceiling

    @property
    def stats(self) -> ContextStats:
        return self._stats

    @property
    def system_message(self) -> Optional[Message]:
        return self._system

    @property
    def summary(self) -> Optional[Message]:
        return self._summary

    @property
    def context_summary(self) -> Optional[str]:
        return self._summary.content if self._summary else None

    @property
    def summarized_through(self) -> int:
        """Leading history messages excluded from provider transcripts"""
        return self._window_start

    @property
    def trimmed_count(self) -> int:
        return self._trimmed_count

    @property
    def history(self) -> List[Message]:
        return list(self._history)

    @property
    def window(self) -> List[Message]:
        return self._history[self._window_start:]

    @property
    def pending(self) -> List[Message]:
        return list(self._pending)

    @property
    def visible_pending(self) -> List[Message]:
        """The pending turn as providers see it, minus trimmed tool results"""
        return self._pending[:1] + self._pending[1 + self._pending_trimmed:]

    @property
    def turn_open(self) -> bool:
        return bool(self._pending)

    def transcript(self) -> List[Message]:
        """Current provider-facing transcript, without enforcing the budget"""
        messages = []
        if self._system:
            messages.append(self._system)
        if self._summary:
            messages.append(self._summary)
        messages.extend(self.window)
        messages.extend(self.visible_pending)
        return messages

    def messages_for_save(self) -> List[Message]:
        return list(self._history)

    def history_tokens(self) -> int:
        parts = ([self._summary] if self._summary else []) + self.window + self.visible_pending
        return sum(estimate_message_tokens(m) for m in parts)

    def total_tokens(self) -> int:
        return sum(estimate_message_tokens(m) for m in self.transcript())

    # Mutations

    def set_system_prompt(self, content: str):
        self._system = Message.system(content)
        self._refresh()

    def begin_turn(self, user_message: Message):
        """Open a pending turn with the user's message"""
        if self._pending:
            raise RuntimeError("a turn is already in progress")
        self._pending = [user_message]
        self._pending_trimmed = 0
        self._refresh()

    def append(self, message: Message):
        """Append a message to the pending turn"""
        if not self._pending:
            raise RuntimeError("no turn in progress")
        self._pending.append(message)
        self._refresh()

    def commit_turn(self, final: Optional[Message] = None) -> List[Message]:
        """Move the pending turn (plus an optional final answer) into history"""
        committed = self._pending + ([final] if final is not None else [])
        self._history.extend(committed)
        self._pending = []
        self._pending_trimmed = 0
        self._refresh()
        return committed

    def rollback_turn(self) -> int:
        """Discard the pending turn. Returns the number of dropped messages."""
        dropped = len(self._pending)
        self._pending = []
        self._pending_trimmed = 0
        self._refresh()
        return dropped

    def load(self, messages: List[Message], context_summary: Optional[str] = None, summarized_through: int = 0):
        """Replace working memory with a saved transcript"""
        self._history = [m for m in messages if m.role != MessageRole.SYSTEM]
        self._window_start = max(0, min(summarized_through, len(self._history)))
        self._summary = Message.summary(context_summary) if context_summary else None
        self._pending = []
        self._pending_trimmed = 0
        self._trimmed_count = 0
        self._refresh()
        agent_logger.log_context_update(
            "loaded",
            {"messages": len(self._history), "summarized_through": self._window_start},
        )

    def toggle_pin(self, message_id: str) -> Optional[bool]:
        """Flip the pin flag of a history message. None when the id is unknown."""
        for message in self._history:
            if message.id == message_id:
                message.pinned = not message.pinned
                return message.pinned
        return None

    def reset(self):
        """Clear history, summary and counters. The system message is kept."""
        self._history = []
        self._window_start = 0
        self._summary = None
        self._pending = []
        self._pending_trimmed = 0
        self._trimmed_count = 0
        self._refresh()

    # Budget enforcement

    async def assemble(self, hard_limit: Optional[int] = None) -> List[Message]:
        """Summarize and trim as needed, then return the in-budget transcript"""
        if self.history_tokens() > self.budget.summarization_trigger:
            await self._summarize(self.keep_recent, min_block=2)

        limit = self.max_tokens if hard_limit is None else min(hard_limit, self.max_tokens)
        self._trim_to(limit)
        return self.transcript()

    async def force_compact(self) -> bool:
        """Fold everything foldable into the summary, or trim one message"""
        if await self._summarize(keep_recent=0, min_block=1):
            return True
        return self._trim_oldest()

    def _foldable_end(self, keep_recent: int) -> int:
        window = self.window
        end = len(window) - keep_recent
        if not self._pending:
            # Between runs the latest user message lives in the window
            for index in range(len(window) - 1, -1, -1):
                if window[index].role == MessageRole.USER:
                    end = min(end, index)
                    break
        return max(0, end)

    async def _summarize(self, keep_recent: int, min_block: int) -> bool:
        end = self._foldable_end(keep_recent)
        if end < min_block:
            return False

        block = self.window[:end]
        previous = self.context_summary
        text = await self.summarizer.summarize(block, previous, self.budget.summary_max_tokens)
        text = truncate_to_tokens(text.strip(), self.budget.summary_max_tokens)

        self._summary = Message.summary(text)
        self._window_start += end
        self._refresh()

        metrics.increment_counter("context_summarizations")
        agent_logger.log_context_update(
            "summarized",
            {"folded": end, "summarized_through": self._window_start, "tokens": self._stats.current_tokens},
        )
        return True

    def _trim_oldest(self) -> bool:
        """Remove the oldest removable message (FIFO)"""
        if self._summary is not None:
            self._summary = None
        elif self._window_start < len(self._history) and self._foldable_end(0) > 0:
            self._window_start += 1
        elif 1 + self._pending_trimmed < len(self._pending) - 1:
            # Oldest tool result of the run in flight; the user message and
            # the latest result stay
            self._pending_trimmed += 1
        else:
            return False

        self._trimmed_count += 1
        self._refresh()
        return True

    def _trim_to(self, limit: int):
        removed = 0
        while self.total_tokens() > limit:
            if not self._trim_oldest():
                logger.warning(
                    "Transcript exceeds hard limit but nothing more can be trimmed",
                    tokens=self.total_tokens(),
                    limit=limit,
                )
                break
            removed += 1

        if removed:
            metrics.increment_counter("context_trims", value=removed)
            agent_logger.log_context_update(
                "trimmed",
                {"removed": removed, "trimmed_count": self._trimmed_count, "tokens": self._stats.current_tokens},
            )

    def _refresh(self):
        per_role: Dict[MessageRole, int] = {role: 0 for role in MessageRole}
        transcript = self.transcript()
        for message in transcript:
            per_role[message.role] += estimate_message_tokens(message)

        current = sum(per_role.values())
        self._stats = ContextStats(
            current_tokens=current,
            max_tokens=self.max_tokens,
            usage_percent=min(1.0, current / self.max_tokens) if self.max_tokens > 0 else 1.0,
            per_role_tokens=per_role,
            message_count=len(transcript),
            trimmed_count=self._trimmed_count,
            summarized=self._summary is not None,
        )
