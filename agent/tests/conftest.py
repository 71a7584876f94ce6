import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from domain.context.context_manager import ContextBudgetManager
from domain.context.token_budget import TokenBudget
from domain.models.message import Message, StreamChunk
from domain.models.tool_chain import ChainStepStatus, ToolChainStep
from domain.orchestration.core.callbacks import AgentCallbacks
from domain.orchestration.core.main_agent import Agent, AgentConfig
from domain.provider.base import LLMProvider
from domain.provider.gateway import ProviderGateway
from domain.tool.base import Tool, ToolDefinition, ToolPriority
from domain.tool.builtin.calculator import CalculatorTool
from domain.tool.chain_executor import ToolChainCallbacks
from domain.tool.tool_registry import ToolRegistry
from infrastructure.observability.logging import metrics
from infrastructure.persistence.session_store import InMemorySessionStore


def text(*parts: str) -> List[StreamChunk]:
    return [StreamChunk.of_text(p) for p in parts]


def tool_call(name: str, arguments: Optional[Dict[str, Any]] = None, call_id: Optional[str] = None) -> List[StreamChunk]:
    return [StreamChunk.of_tool_call(name, json.dumps(arguments or {}), call_id=call_id)]


class ScriptedProvider(LLMProvider):
    """Plays back one scripted segment per generate() call.

    A segment is a list of StreamChunk items. An exception instance in place
    of a segment is raised before streaming; inside a segment it is raised
    mid-stream. An asyncio.Event inside a segment blocks until set.
    """

    def __init__(
        self,
        script: Optional[List[Any]] = None,
        provider_type: str = "fake",
        available: bool = True,
        max_tools: Optional[int] = None,
        repeat_last: bool = False,
    ):
        self.script = list(script or [])
        self.provider_type = provider_type
        self.display_name = f"Fake {provider_type}"
        self.available = available
        self.max_tools = max_tools
        self.repeat_last = repeat_last
        self.calls: List[List[Message]] = []
        self.tool_sets: List[List[str]] = []
        self.prewarm_hints: List[Optional[str]] = []
        self.reset_count = 0
        self.started = asyncio.Event()

    def _next_segment(self):
        if not self.script:
            raise AssertionError(f"provider {self.provider_type} ran out of script")
        if self.repeat_last and len(self.script) == 1:
            return self.script[0]
        return self.script.pop(0)

    async def is_available(self) -> bool:
        return self.available

    async def prewarm(self, hint: Optional[str] = None):
        self.prewarm_hints.append(hint)

    async def reset_session(self):
        self.reset_count += 1

    async def generate(self, messages: List[Message], tools: List[ToolDefinition]):
        self.calls.append(list(messages))
        self.tool_sets.append([t.name for t in tools])
        self.started.set()
        segment = self._next_segment()
        if isinstance(segment, BaseException):
            raise segment
        for item in segment:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield item


class EchoTool(Tool):
    name = "echo"
    description = "Echo the given text"
    priority = ToolPriority.CORE
    capability = "echo text back"

    def __init__(self):
        self.calls: List[str] = []

    @property
    def parameters_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        }

    async def execute(self, arguments: str) -> str:
        self.calls.append(arguments)
        return json.dumps({"echo": json.loads(arguments)["text"]})


class StaticTool(Tool):
    """Returns a fixed output, raises a fixed error, or blocks on a gate"""

    def __init__(
        self,
        name: str,
        output: str = "{}",
        error: Optional[BaseException] = None,
        gate: Optional[asyncio.Event] = None,
        priority: ToolPriority = ToolPriority.EXTENDED,
    ):
        self.name = name
        self.description = f"{name} tool"
        self.capability = f"use {name}"
        self.priority = priority
        self.output = output
        self.error = error
        self.gate = gate
        self.calls: List[str] = []
        self.started = asyncio.Event()

    async def execute(self, arguments: str) -> str:
        self.calls.append(arguments)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.output


class RecordingCallbacks(AgentCallbacks, ToolChainCallbacks):
    """Records every callback as an (event, payload) tuple"""

    def __init__(self):
        self.events: List[tuple] = []

    @property
    def names(self) -> List[str]:
        return [e[0] for e in self.events]

    async def on_thinking(self):
        self.events.append(("thinking", None))

    async def on_tool_call(self, name: str, arguments: str):
        self.events.append(("tool_call", (name, arguments)))

    async def on_tool_result(self, name: str, result: str, success: bool):
        self.events.append(("tool_result", (name, result, success)))

    async def on_stream_chunk(self, text: str):
        self.events.append(("stream_chunk", text))

    async def on_response(self, content: str):
        self.events.append(("response", content))

    async def on_error(self, error: Exception):
        self.events.append(("error", error))

    async def on_chain_step_start(self, step_index: int, step: ToolChainStep):
        self.events.append(("step_start", step_index))

    async def on_chain_step_complete(self, step_index: int, step: ToolChainStep, result: str, success: bool):
        self.events.append(("step_complete", (step_index, success)))

    async def on_chain_step_skipped(self, step_index: int, step: ToolChainStep, status: ChainStepStatus):
        self.events.append(("step_skipped", (step_index, status)))

    async def on_chain_synthesizing(self):
        self.events.append(("synthesizing", None))


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def callbacks():
    return RecordingCallbacks()


@pytest.fixture
def echo_tool():
    return EchoTool()


@pytest.fixture
def registry(echo_tool):
    registry = ToolRegistry()
    registry.register(echo_tool)
    registry.register(CalculatorTool())
    return registry


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def fast_config():
    return AgentConfig(max_iterations=4, max_retries=3, base_retry_delay=0.0, max_retry_delay=0.01, tool_timeout=1.0)


@pytest.fixture
def make_agent(registry, callbacks, fast_config):
    """Factory building an agent whose gateway is already set up"""

    async def factory(*providers: LLMProvider, budget: Optional[TokenBudget] = None, config: Optional[AgentConfig] = None):
        gateway = ProviderGateway(providers)
        await gateway.setup_provider()
        return Agent(
            gateway,
            registry,
            context=ContextBudgetManager(budget),
            config=config or fast_config,
            callbacks=callbacks,
        )

    return factory
