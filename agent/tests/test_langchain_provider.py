import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel, GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from domain.models.errors import ContextWindowExceeded, GenerationFailed, RateLimited
from domain.models.message import Message
from domain.provider.langchain_provider import LangChainProvider, map_provider_error, to_langchain_messages


class TestMessageConversion:
    def test_roles_map_to_langchain_types(self):
        converted = to_langchain_messages([
            Message.system("be brief"),
            Message.user("weather?"),
            Message.assistant("sunny"),
        ])

        assert [type(m) for m in converted] == [SystemMessage, HumanMessage, AIMessage]
        assert converted[1].content == "weather?"

    def test_tool_result_expands_into_call_and_result(self):
        converted = to_langchain_messages([
            Message.tool("weather", '{"temp": 21}', call_id="call_7", arguments='{"city": "Oslo"}'),
        ])

        call, result = converted
        assert isinstance(call, AIMessage)
        assert call.tool_calls[0]["name"] == "weather"
        assert call.tool_calls[0]["args"] == {"city": "Oslo"}
        assert call.tool_calls[0]["id"] == "call_7"
        assert isinstance(result, ToolMessage)
        assert result.tool_call_id == "call_7"
        assert result.content == '{"temp": 21}'

    def test_unparseable_tool_arguments_become_empty(self):
        call, _ = to_langchain_messages([Message.tool("weather", "{}", call_id="c", arguments="not json")])
        assert call.tool_calls[0]["args"] == {}


class TestErrorMapping:
    @pytest.mark.parametrize(
        "message, expected",
        [
            ("Error code: 429 - Too Many Requests", RateLimited),
            ("rate limit exceeded for model", RateLimited),
            ("This model's maximum context length is 8192 tokens", ContextWindowExceeded),
            ("prompt is too long", ContextWindowExceeded),
            ("internal server error", GenerationFailed),
        ],
    )
    def test_classification(self, message, expected):
        assert isinstance(map_provider_error(RuntimeError(message)), expected)


class TestLangChainProvider:
    @pytest.mark.asyncio
    async def test_streams_text(self):
        model = GenericFakeChatModel(messages=iter([AIMessage(content="hello world")]))
        provider = LangChainProvider(model, provider_type="fake", display_name="Fake model")

        chunks = [c async for c in provider.generate([Message.user("hi")], [])]

        assert "".join(c.text for c in chunks if c.text) == "hello world"
        assert all(not c.tool_calls for c in chunks)

    @pytest.mark.asyncio
    async def test_complete_joins_stream(self):
        model = GenericFakeChatModel(messages=iter([AIMessage(content="one two three")]))
        provider = LangChainProvider(model)

        assert await provider.complete([Message.user("count")]) == "one two three"

    @pytest.mark.asyncio
    async def test_backend_failure_is_typed(self):
        model = FakeListChatModel(responses=["never"], error_on_chunk_number=0)
        provider = LangChainProvider(model)

        with pytest.raises(GenerationFailed):
            async for _ in provider.generate([Message.user("hi")], []):
                pass

    @pytest.mark.asyncio
    async def test_availability_check(self):
        async def offline() -> bool:
            return False

        model = GenericFakeChatModel(messages=iter([]))
        assert await LangChainProvider(model).is_available()
        assert not await LangChainProvider(model, availability_check=offline).is_available()
