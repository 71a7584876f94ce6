import pytest
from pydantic import ValidationError

from domain.context.context_manager import ContextBudgetManager
from domain.context.summarizer import SUMMARY_PREFIX, ExtractiveSummarizer, ProviderSummarizer
from domain.context.token_budget import TokenBudget, estimate_tokens, truncate_to_tokens
from domain.models.errors import GenerationFailed
from domain.models.message import Message, MessageRole

from conftest import ScriptedProvider, text

TEN_TOKENS = "x" * 40


def small_budget(**overrides) -> TokenBudget:
    values = dict(
        total=200,
        system_reserve=20,
        tool_schema_reserve=20,
        response_reserve=40,
        summarization_threshold=0.8,
        summary_max_tokens=10,
    )
    values.update(overrides)
    return TokenBudget(**values)


def conversation(count: int):
    return [
        Message.user(TEN_TOKENS) if i % 2 == 0 else Message.assistant(TEN_TOKENS)
        for i in range(count)
    ]


def assert_stats_consistent(manager: ContextBudgetManager):
    stats = manager.stats
    assert sum(stats.per_role_tokens.values()) == stats.current_tokens
    assert 0.0 <= stats.usage_percent <= 1.0
    assert stats.current_tokens == manager.total_tokens()


class TestTokenEstimates:
    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("a") == 1
        assert estimate_tokens("abcd" * 10) == 10
        assert estimate_tokens("日本語のテキスト") == 8

    def test_truncate_to_tokens(self):
        assert truncate_to_tokens("short", 10) == "short"
        cut = truncate_to_tokens("word " * 100, 5)
        assert estimate_tokens(cut) <= 5

    def test_budget_derivations(self):
        budget = TokenBudget()
        assert budget.history_budget == 4096 - 500 - 400 - 1200
        assert budget.prompt_ceiling == 4096 - 400 - 1200
        assert budget.summarization_trigger == int(budget.history_budget * 0.8)

    def test_reserves_must_leave_history_budget(self):
        with pytest.raises(ValidationError):
            TokenBudget(total=1000, system_reserve=500, tool_schema_reserve=300, response_reserve=200)


class TestTurns:
    def test_begin_append_commit(self):
        manager = ContextBudgetManager(small_budget())
        manager.set_system_prompt("be brief")
        manager.begin_turn(Message.user("hello"))
        manager.append(Message.tool("echo", '{"echo": "hi"}', arguments='{"text": "hi"}'))
        assert_stats_consistent(manager)

        committed = manager.commit_turn(Message.assistant("done"))

        assert [m.role for m in committed] == [MessageRole.USER, MessageRole.TOOL, MessageRole.ASSISTANT]
        assert manager.pending == []
        assert len(manager.history) == 3
        assert_stats_consistent(manager)

    def test_rollback_discards_pending(self):
        manager = ContextBudgetManager(small_budget())
        manager.load(conversation(2))
        manager.begin_turn(Message.user("new"))
        manager.append(Message.tool("echo", "{}"))

        assert manager.rollback_turn() == 2
        assert len(manager.history) == 2
        assert not manager.turn_open
        assert_stats_consistent(manager)

    def test_turn_guards(self):
        manager = ContextBudgetManager(small_budget())
        with pytest.raises(RuntimeError):
            manager.append(Message.assistant("orphan"))
        manager.begin_turn(Message.user("one"))
        with pytest.raises(RuntimeError):
            manager.begin_turn(Message.user("two"))

    def test_per_role_tokens_match_total_after_every_mutation(self):
        manager = ContextBudgetManager(small_budget())
        manager.set_system_prompt(TEN_TOKENS)
        assert_stats_consistent(manager)
        manager.load(conversation(4))
        assert_stats_consistent(manager)
        manager.begin_turn(Message.user(TEN_TOKENS))
        assert_stats_consistent(manager)
        manager.append(Message.tool("echo", TEN_TOKENS, arguments='{"text": "x"}'))
        assert_stats_consistent(manager)
        manager.commit_turn(Message.assistant(TEN_TOKENS))
        assert_stats_consistent(manager)
        assert manager.stats.per_role_tokens[MessageRole.SYSTEM] == 10
        assert manager.stats.per_role_tokens[MessageRole.USER] == 30


class TestLoadAndReset:
    def test_load_filters_system_and_clamps_cursor(self):
        manager = ContextBudgetManager(small_budget())
        messages = [Message.system("old prompt")] + conversation(3)

        manager.load(messages, context_summary="earlier", summarized_through=10)

        assert len(manager.history) == 3
        assert manager.summarized_through == 3
        assert manager.window == []
        assert manager.summary.is_summary
        assert manager.context_summary == "earlier"

    def test_reset_keeps_system_prompt(self):
        manager = ContextBudgetManager(small_budget())
        manager.set_system_prompt("be brief")
        manager.load(conversation(4), context_summary="earlier", summarized_through=2)

        manager.reset()

        assert manager.history == []
        assert manager.summary is None
        assert manager.trimmed_count == 0
        assert manager.transcript() == [manager.system_message]

    def test_toggle_pin(self):
        manager = ContextBudgetManager(small_budget())
        messages = conversation(2)
        manager.load(messages)

        assert manager.toggle_pin(messages[0].id) is True
        assert manager.history[0].pinned
        assert manager.toggle_pin(messages[0].id) is False
        assert manager.toggle_pin("missing") is None


class TestSummarization:
    @pytest.mark.asyncio
    async def test_summarizes_when_history_crosses_trigger(self):
        manager = ContextBudgetManager(small_budget())
        manager.load(conversation(12))

        transcript = await manager.assemble()

        assert manager.summarized_through == 8
        assert manager.stats.summarized
        assert transcript[0].is_summary
        assert transcript[0].content.startswith(SUMMARY_PREFIX)
        assert len(manager.window) == 4
        assert len(manager.messages_for_save()) == 12
        assert_stats_consistent(manager)

    @pytest.mark.asyncio
    async def test_no_summary_below_trigger(self):
        manager = ContextBudgetManager(small_budget())
        manager.load(conversation(4))

        await manager.assemble()

        assert manager.summary is None
        assert manager.summarized_through == 0

    @pytest.mark.asyncio
    async def test_latest_user_message_never_folded(self):
        manager = ContextBudgetManager(small_budget(), keep_recent=0)
        messages = conversation(11)
        manager.load(messages)

        await manager.assemble()

        assert messages[10] in manager.window

    @pytest.mark.asyncio
    async def test_force_compact_folds_everything_committed(self):
        manager = ContextBudgetManager(small_budget())
        manager.load(conversation(2))
        manager.begin_turn(Message.user("now"))

        assert await manager.force_compact()
        assert manager.window == []
        assert manager.pending[0].content == "now"

    @pytest.mark.asyncio
    async def test_force_compact_with_nothing_to_fold(self):
        manager = ContextBudgetManager(small_budget())
        manager.begin_turn(Message.user("now"))
        assert not await manager.force_compact()


class TestTrimming:
    @pytest.mark.asyncio
    async def test_trims_oldest_until_within_limit(self):
        manager = ContextBudgetManager(small_budget())
        manager.set_system_prompt(TEN_TOKENS)
        messages = conversation(6)
        manager.load(messages)

        await manager.assemble(hard_limit=35)

        assert manager.trimmed_count == 4
        assert manager.stats.trimmed_count == 4
        assert manager.window == messages[4:]
        assert manager.system_message is not None
        assert manager.total_tokens() <= 35
        assert_stats_consistent(manager)

    @pytest.mark.asyncio
    async def test_never_trims_system_or_latest_user(self):
        manager = ContextBudgetManager(small_budget())
        manager.set_system_prompt(TEN_TOKENS)
        messages = conversation(6)
        manager.load(messages)

        await manager.assemble(hard_limit=5)

        assert manager.trimmed_count == 4
        transcript = manager.transcript()
        assert transcript[0] == manager.system_message
        assert messages[4] in transcript

    @pytest.mark.asyncio
    async def test_oldest_pending_tool_results_trimmed_after_window(self):
        manager = ContextBudgetManager(small_budget())
        manager.load(conversation(4))
        user = Message.user(TEN_TOKENS)
        manager.begin_turn(user)
        results = [Message.tool("echo", TEN_TOKENS, call_id=f"c{i}") for i in range(3)]
        for result in results:
            manager.append(result)

        await manager.assemble(hard_limit=25)

        assert manager.window == []
        assert manager.trimmed_count == 6
        assert manager.transcript() == [user, results[2]]
        assert manager.total_tokens() <= 25
        assert len(manager.pending) == 4
        assert_stats_consistent(manager)

    @pytest.mark.asyncio
    async def test_user_message_and_latest_result_never_trimmed(self):
        manager = ContextBudgetManager(small_budget())
        manager.load(conversation(4))
        user = Message.user(TEN_TOKENS)
        manager.begin_turn(user)
        results = [Message.tool("echo", TEN_TOKENS, call_id=f"c{i}") for i in range(3)]
        for result in results:
            manager.append(result)

        await manager.assemble(hard_limit=5)

        assert manager.trimmed_count == 6
        assert manager.transcript() == [user, results[2]]

    @pytest.mark.asyncio
    async def test_commit_keeps_trimmed_tool_results_in_history(self):
        manager = ContextBudgetManager(small_budget())
        manager.begin_turn(Message.user(TEN_TOKENS))
        results = [Message.tool("echo", TEN_TOKENS, call_id=f"c{i}") for i in range(3)]
        for result in results:
            manager.append(result)
        await manager.assemble(hard_limit=25)
        assert results[0] not in manager.transcript()

        final = Message.assistant("done")
        manager.commit_turn(final)

        assert manager.history[1:] == results + [final]
        assert manager.pending == []
        assert results[0] in manager.transcript()

    def test_usage_percent_clamped(self):
        manager = ContextBudgetManager(small_budget())
        manager.load([Message.user("y" * 10_000)])

        assert manager.stats.current_tokens > manager.max_tokens
        assert manager.stats.usage_percent == 1.0
        assert manager.stats.is_critical


class TestSummarizers:
    @pytest.mark.asyncio
    async def test_extractive_summary_respects_ceiling(self):
        summary = await ExtractiveSummarizer().summarize(conversation(20), "before", 10)
        assert summary.startswith(SUMMARY_PREFIX[:10])
        assert estimate_tokens(summary) <= 10

    @pytest.mark.asyncio
    async def test_provider_summarizer_uses_model_text(self):
        provider = ScriptedProvider([text("User asked about trains.")])
        summary = await ProviderSummarizer(provider).summarize(conversation(2), None, 50)

        assert summary == f"{SUMMARY_PREFIX} User asked about trains."
        assert provider.tool_sets == [[]]

    @pytest.mark.asyncio
    async def test_provider_summarizer_falls_back(self):
        provider = ScriptedProvider([GenerationFailed("offline")])
        summary = await ProviderSummarizer(provider).summarize(conversation(2), None, 50)

        assert summary.startswith(SUMMARY_PREFIX)
        assert "User:" in summary
