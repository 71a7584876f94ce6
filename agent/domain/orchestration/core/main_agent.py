from typing import TypedDict, List, Dict, Any, Optional, Literal, Tuple, Awaitable, AsyncIterator
from contextlib import aclosing
from langgraph.graph import StateGraph, END
from pydantic import BaseModel, Field
import asyncio
import json
import random
import time
import uuid
import structlog

from domain.context.context_manager import ContextBudgetManager
from domain.models.agent_state import ContextStats, ThinkingStatus
from domain.models.errors import (
    AgentError,
    ContextWindowExceeded,
    GenerationFailed,
    MaxIterationsReached,
    NoProvider,
    ProviderError,
    ToolError,
    ToolExecutionFailed,
    ToolNotFound,
)
from domain.models.message import Message, StreamChunk, ToolCall
from domain.orchestration.core.callbacks import AgentCallbacks
from domain.provider.base import LLMProvider
from domain.provider.gateway import ProviderGateway
from domain.tool.base import ToolDefinition
from domain.tool.tool_registry import ToolRegistry
from infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a personal assistant. Use the available tools for weather, calendar, "
    "reminders, contacts, calculations, web pages and saved facts. Answer general "
    "questions directly. Be brief, state results rather than process, and if a tool "
    "fails explain what happened and suggest an alternative."
)


class AgentConfig(BaseModel):
    """Agent loop configuration"""
    max_iterations: int = Field(default=10, ge=1, description="Reason/act cycles per run")
    max_retries: int = Field(default=3, ge=1, description="Attempts per generation for transient provider errors")
    base_retry_delay: float = Field(default=1.0, ge=0.0, description="Backoff base in seconds")
    max_retry_delay: float = Field(default=30.0, ge=0.0, description="Backoff cap in seconds")
    tool_timeout: float = Field(default=30.0, gt=0.0, description="Seconds before a tool call is abandoned")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)


class RunCancelled(Exception):
    """Internal signal: the run observed its cancel flag at a checkpoint"""


class RunHandle:
    """Cancellation flag and completion signal of one run"""

    def __init__(self):
        self.run_id = uuid.uuid4().hex[:12]
        self.cancel_event = asyncio.Event()
        self.finished = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check(self):
        if self.cancel_event.is_set():
            raise RunCancelled()


class RunContext:
    """Per-run collaborators, fixed when the run starts"""

    def __init__(self, handle: RunHandle, provider: LLMProvider, tools: List[ToolDefinition]):
        self.handle = handle
        self.provider = provider
        self.tools = tools


class LoopState(TypedDict):
    """State for the reason/act graph"""
    run: RunContext
    iteration: int
    tool_call: Optional[ToolCall]
    final_text: Optional[str]


async def until_cancelled(handle: RunHandle, awaitable: Awaitable):
    """Await ``awaitable`` unless the run is cancelled first.

    On cancellation the pending work is cancelled and awaited before
    ``RunCancelled`` is raised, so nothing keeps running behind the run.
    """

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(handle.cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()
    task.cancel()
    await asyncio.wait({task})
    raise RunCancelled()


async def _next_chunk(stream: AsyncIterator[StreamChunk]) -> Optional[StreamChunk]:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


def encode_tool_error(message: str, suggestion: Optional[str] = None) -> str:
    payload: Dict[str, Any] = {"error": message}
    if suggestion:
        payload["suggestion"] = suggestion
    return json.dumps(payload)


REFUSAL_PHRASES = (
    "i cannot fulfill",
    "i can't fulfill",
    "i'm not able to",
    "i am not able to",
    "i cannot help with",
    "i can't help with",
    "i'm unable to",
    "i am unable to",
    "i cannot assist",
    "i can't assist",
    "sorry, but i cannot",
    "sorry, but i can't",
)

REFUSAL_FALLBACK = (
    "I'm best at helping with tasks like checking your calendar, setting reminders, "
    "getting weather updates, and doing calculations. What can I help you with?"
)


def apply_refusal_fallback(content: str) -> str:
    """Replace a flat refusal with a redirect to what the assistant can do"""
    lowered = content.lower()
    if any(phrase in lowered for phrase in REFUSAL_PHRASES):
        logger.info("Detected refusal response, applying fallback")
        return REFUSAL_FALLBACK
    return content


class Agent:
    """ReAct loop over a provider gateway, a tool registry and a context budget.

    One run is in flight at a time: starting a run cooperatively cancels the
    previous one and waits for it to unwind. Runs resolve with the final
    answer, raise a typed ``AgentError``/``ProviderError``, or return None
    when cancelled.
    """

    def __init__(
        self,
        gateway: ProviderGateway,
        tool_registry: ToolRegistry,
        context: Optional[ContextBudgetManager] = None,
        config: Optional[AgentConfig] = None,
        callbacks: Optional[AgentCallbacks] = None,
    ):
        self.gateway = gateway
        self.tool_registry = tool_registry
        self.context = context or ContextBudgetManager()
        self.config = config or AgentConfig()
        self.callbacks = callbacks or AgentCallbacks()

        self._status = ThinkingStatus.idle()
        self._stream_buffer: List[str] = []
        self._current: Optional[RunHandle] = None
        self._run_lock = asyncio.Lock()
        self._reset_task: Optional[asyncio.Task] = None

        self.workflow = self._create_workflow()

    # Graph

    def _create_workflow(self):
        """Create the reason/act graph"""

        workflow = StateGraph(LoopState)

        workflow.add_node("reason", self.reason_node)
        workflow.add_node("act", self.act_node)

        workflow.set_entry_point("reason")

        workflow.add_conditional_edges(
            "reason",
            self.route_after_reason,
            {
                "act": "act",
                "finish": END,
            }
        )
        workflow.add_edge("act", "reason")

        return workflow.compile()

    def route_after_reason(self, state: LoopState) -> Literal["act", "finish"]:
        return "act" if state.get("tool_call") else "finish"

    async def reason_node(self, state: LoopState) -> Dict[str, Any]:
        """Ask the provider for the next segment"""

        run = state["run"]
        run.handle.check()

        if state["iteration"] >= self.config.max_iterations:
            logger.warning("Agent reached max iterations", iterations=state["iteration"])
            raise MaxIterationsReached(self.config.max_iterations)

        self._status = ThinkingStatus.thinking()
        await self.callbacks.on_thinking()

        text, tool_calls = await self._generate(run)
        iteration = state["iteration"] + 1

        if tool_calls:
            if len(tool_calls) > 1:
                logger.warning(
                    "Provider requested several tool calls, executing only the first",
                    requested=[c.name for c in tool_calls],
                )
            return {"iteration": iteration, "tool_call": tool_calls[0], "final_text": None}

        return {"iteration": iteration, "tool_call": None, "final_text": text}

    async def act_node(self, state: LoopState) -> Dict[str, Any]:
        """Execute the requested tool and feed its result back"""

        run = state["run"]
        call = state["tool_call"]
        run.handle.check()

        if self.tool_registry.get(call.name) is None:
            raise ToolNotFound(call.name)

        self._status = ThinkingStatus.using_tool(call.name)
        await self.callbacks.on_tool_call(call.name, call.arguments)

        try:
            output = await until_cancelled(run.handle, self.tool_registry.execute(call.name, call.arguments))
            message = Message.tool(call.name, output, call_id=call.id, arguments=call.arguments)
        except RunCancelled:
            raise
        except ToolError as e:
            if not e.recoverable:
                raise ToolExecutionFailed(call.name, e) from e
            logger.info("Tool failed, feeding error back to model", tool_name=call.name, error=str(e))
            message = Message.tool(
                call.name,
                encode_tool_error(str(e), e.suggestion),
                call_id=call.id,
                arguments=call.arguments,
                failed=True,
            )
        except Exception as e:
            raise ToolExecutionFailed(call.name, e) from e

        self.context.append(message)
        self._status = ThinkingStatus.processing()
        await self.callbacks.on_tool_result(call.name, message.content, not message.tool_failed)

        return {"tool_call": None}

    # Generation

    def _backoff_delay(self, attempt: int) -> float:
        delay = self.config.base_retry_delay * (2 ** attempt) + random.uniform(0, 0.5)
        return min(delay, self.config.max_retry_delay)

    async def _wait_or_cancel(self, handle: RunHandle, delay: float):
        try:
            await asyncio.wait_for(handle.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RunCancelled()

    async def _generate(self, run: RunContext) -> Tuple[str, List[ToolCall]]:
        """One generation segment with retry, backoff and compaction"""

        attempt = 0
        compacted = False

        while True:
            run.handle.check()
            transcript = await self.context.assemble(hard_limit=run.provider.context_window)
            run.handle.check()

            self._stream_buffer = []
            tool_calls: List[ToolCall] = []
            try:
                async with aclosing(self.gateway.generate(transcript, run.tools, provider=run.provider)) as stream:
                    while True:
                        try:
                            chunk = await until_cancelled(run.handle, _next_chunk(stream))
                        except (ProviderError, RunCancelled):
                            raise
                        except Exception as e:
                            raise GenerationFailed(str(e)) from e
                        if chunk is None:
                            break

                        run.handle.check()
                        if chunk.text and chunk.text != "null":
                            self._stream_buffer.append(chunk.text)
                            await self.callbacks.on_stream_chunk(chunk.text)
                        if chunk.tool_calls:
                            tool_calls = list(chunk.tool_calls)

                return "".join(self._stream_buffer), tool_calls

            except ContextWindowExceeded:
                if compacted or self._stream_buffer:
                    raise
                compacted = True
                if not await self.context.force_compact():
                    raise
                logger.warning("Context window exceeded, compacted history and retrying")

            except ProviderError as e:
                if not e.transient or self._stream_buffer or attempt >= self.config.max_retries - 1:
                    raise
                delay = self._backoff_delay(attempt)
                attempt += 1
                metrics.increment_counter("provider_retries", tags={"kind": e.kind.value})
                logger.info(
                    "Transient provider error, retrying",
                    error=str(e),
                    delay_s=round(delay, 2),
                    attempt=attempt,
                    max_retries=self.config.max_retries,
                )
                await self._wait_or_cancel(run.handle, delay)

    # Run lifecycle

    def _build_system_prompt(self) -> str:
        prompt = self.config.system_prompt
        disabled = self.tool_registry.get_disabled_tool_descriptions()
        if disabled:
            listing = "\n".join(f"- {d['name']}: {d['capability']}" for d in disabled)
            prompt += f"\n\nDISABLED FEATURES (tell the user they can enable these):\n{listing}"
        return prompt

    async def run(self, prompt: str, image_ref: Optional[str] = None) -> Optional[str]:
        """Run the loop for one user message"""

        async with self._run_lock:
            await self.cancel_run()
            handle = RunHandle()
            self._current = handle

        try:
            with structlog.contextvars.bound_contextvars(run_id=handle.run_id):
                return await self._execute(handle, prompt, image_ref)
        finally:
            if self.context.turn_open:
                self._discard_run()
            handle.finished.set()
            if self._current is handle:
                self._current = None

    async def _execute(self, handle: RunHandle, prompt: str, image_ref: Optional[str]) -> Optional[str]:
        start = time.monotonic()
        agent_logger.log_agent_event("run_started", data={"prompt": prompt[:50]})

        self._stream_buffer = []
        provider = self.gateway.active_provider
        if provider is None:
            # No turn is opened without a provider
            error = NoProvider(self.gateway.active_type)
            agent_logger.log_agent_event("run_failed", data={"error": str(error), "kind": error.kind.value})
            await self.callbacks.on_error(error)
            raise error

        self.context.set_system_prompt(self._build_system_prompt())
        self.context.begin_turn(Message.user(prompt, image_ref=image_ref))

        try:
            run = RunContext(handle, provider, self.tool_registry.get_definitions_limited(provider.max_tools))
            final_state = await self.workflow.ainvoke(
                {"run": run, "iteration": 0, "tool_call": None, "final_text": None},
                config={"recursion_limit": 2 * self.config.max_iterations + 5},
            )
            handle.check()

            content = apply_refusal_fallback(final_state["final_text"] or "")
            self.context.commit_turn(Message.assistant(content))
            self._finish_run()
            metrics.record_latency("agent_run", (time.monotonic() - start) * 1000, tags={"outcome": "success"})
            agent_logger.log_agent_event("run_completed", data={"iterations": final_state["iteration"]})
            await self.callbacks.on_response(content)
            return content

        except RunCancelled:
            self._discard_run()
            agent_logger.log_agent_event("run_cancelled")
            return None

        except asyncio.CancelledError:
            self._discard_run()
            raise

        except (AgentError, ProviderError) as e:
            self.context.commit_turn()
            self._finish_run()
            metrics.record_latency("agent_run", (time.monotonic() - start) * 1000, tags={"outcome": "error"})
            agent_logger.log_agent_event("run_failed", data={"error": str(e), "kind": e.kind.value})
            await self.callbacks.on_error(e)
            raise

    def _finish_run(self):
        self._stream_buffer = []
        self._status = ThinkingStatus.idle()
        metrics.set_gauge("context_usage", self.context.stats.usage_percent)

    def _discard_run(self):
        self.context.rollback_turn()
        self._stream_buffer = []
        self._status = ThinkingStatus.idle()

    async def cancel_run(self):
        """Cooperatively cancel the run in flight and wait until it unwinds"""

        handle = self._current
        if handle is None or handle.finished.is_set():
            return
        handle.cancel_event.set()
        await handle.finished.wait()

    async def reset_for_new_conversation(self):
        """Clear local history and provider session state.

        A newer call supersedes one still in flight: the older reset is
        cancelled and awaited before the new one starts, so resets never
        overlap.
        """

        task = asyncio.create_task(self._perform_reset(self._reset_task))
        self._reset_task = task
        try:
            await task
        except asyncio.CancelledError:
            if self._reset_task is not task:
                logger.debug("Reset superseded by a newer reset")
                return
            raise

    async def _perform_reset(self, previous: Optional[asyncio.Task]):
        if previous is not None and not previous.done():
            previous.cancel()
            await asyncio.wait({previous})

        await self.cancel_run()
        self.context.reset()
        self._stream_buffer = []
        self._status = ThinkingStatus.idle()
        await self.gateway.reset_session()
        agent_logger.log_agent_event("conversation_reset")

    # Working memory

    def load_messages(
        self,
        messages: List[Message],
        context_summary: Optional[str] = None,
        summarized_through: int = 0,
    ):
        """Load a saved transcript into working memory"""
        self.context.load(messages, context_summary, summarized_through)

    def get_messages_for_save(self) -> List[Message]:
        return self.context.messages_for_save()

    @property
    def is_running(self) -> bool:
        return self._current is not None and not self._current.finished.is_set()

    @property
    def thinking_status(self) -> ThinkingStatus:
        return self._status

    @property
    def context_stats(self) -> ContextStats:
        return self.context.stats

    @property
    def streaming_text(self) -> str:
        return "".join(self._stream_buffer)
