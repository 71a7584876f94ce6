from typing import Dict, List, Optional, Iterable
import asyncio
import time
import structlog

from domain.models.errors import ChainConfigurationError, InvalidStepTransition
from domain.models.tool_chain import (
    ChainStepStatus,
    STEP_TRANSITIONS,
    StepResult,
    ToolChain,
    ToolChainResult,
    ToolChainStep,
)
from domain.tool.chain_templates import resolve_arguments, validate_template
from domain.tool.tool_registry import ToolRegistry
from infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)


class ToolChainCallbacks:
    """Chain progress notifications. All hooks default to no-ops."""

    async def on_chain_step_start(self, step_index: int, step: ToolChainStep):
        pass

    async def on_chain_step_complete(self, step_index: int, step: ToolChainStep, result: str, success: bool):
        pass

    async def on_chain_step_skipped(self, step_index: int, step: ToolChainStep, status: ChainStepStatus):
        pass

    async def on_chain_synthesizing(self):
        pass


class StepStatusBoard:
    """Ephemeral step id -> status map that only moves forward"""

    def __init__(self, steps: Iterable[ToolChainStep]):
        self._statuses: Dict[str, ChainStepStatus] = {s.id: ChainStepStatus.PENDING for s in steps}

    def __getitem__(self, step_id: str) -> ChainStepStatus:
        return self._statuses[step_id]

    def transition(self, step_id: str, status: ChainStepStatus):
        current = self._statuses[step_id]
        if status not in STEP_TRANSITIONS[current]:
            raise InvalidStepTransition(f"step {step_id}: {current.value} -> {status.value}")
        self._statuses[step_id] = status

    def pending(self) -> List[str]:
        return [sid for sid, status in self._statuses.items() if status == ChainStepStatus.PENDING]

    def snapshot(self) -> Dict[str, ChainStepStatus]:
        return dict(self._statuses)


class ToolChainExecutor:
    """Runs tool chains step by step, piping outputs into later arguments"""

    def __init__(self, tool_registry: ToolRegistry, callbacks: Optional[ToolChainCallbacks] = None):
        self.tool_registry = tool_registry
        self.callbacks = callbacks or ToolChainCallbacks()

    def validate(self, chain: ToolChain, user_input: Optional[str] = None):
        """Fail fast on templates that cannot resolve"""

        seen = set()
        for index, step in enumerate(chain.steps):
            if step.id in seen:
                raise ChainConfigurationError(chain.id, f"duplicate step id '{step.id}'")
            seen.add(step.id)

            problems = validate_template(step.argument_template, index, has_input=user_input is not None)
            if problems:
                detail = "; ".join(f"step {index} ({step.tool_name}) {ref} {problem}" for ref, problem in problems)
                raise ChainConfigurationError(chain.id, detail)

    async def execute(
        self,
        chain: ToolChain,
        skipped_step_ids: Iterable[str] = (),
        user_input: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ToolChainResult:
        """Execute a chain sequentially. Steps never run in parallel."""

        self.validate(chain, user_input)

        skipped = set(skipped_step_ids)
        board = StepStatusBoard(chain.steps)
        outputs: Dict[int, str] = {}
        errors: Dict[str, str] = {}
        aborted = False
        cancelled = False
        start = time.monotonic()

        logger.info("Executing tool chain", chain_id=chain.id, steps=len(chain.steps), skipped=len(skipped))

        try:
            for index, step in enumerate(chain.steps):
                if step.id in skipped:
                    if step.optional:
                        board.transition(step.id, ChainStepStatus.SKIPPED_BY_USER)
                        agent_logger.log_chain_step(chain.id, index, step.tool_name, ChainStepStatus.SKIPPED_BY_USER.value)
                        await self.callbacks.on_chain_step_skipped(index, step, ChainStepStatus.SKIPPED_BY_USER)
                        continue
                    logger.warning("Ignoring skip request for required step", chain_id=chain.id, step_index=index)

                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break

                board.transition(step.id, ChainStepStatus.RUNNING)
                await self.callbacks.on_chain_step_start(index, step)

                arguments = resolve_arguments(step.argument_template, outputs, user_input)
                try:
                    output = await self.tool_registry.execute(step.tool_name, arguments)
                except asyncio.CancelledError:
                    board.transition(step.id, ChainStepStatus.FAILED)
                    errors[step.id] = "cancelled"
                    raise
                except Exception as e:
                    board.transition(step.id, ChainStepStatus.FAILED)
                    errors[step.id] = str(e)
                    agent_logger.log_chain_step(chain.id, index, step.tool_name, ChainStepStatus.FAILED.value, error=str(e))
                    await self.callbacks.on_chain_step_complete(index, step, str(e), False)
                    if not step.optional:
                        logger.error("Chain aborted by required step", chain_id=chain.id, step_index=index, tool_name=step.tool_name)
                        aborted = True
                        break
                    continue

                outputs[index] = output
                board.transition(step.id, ChainStepStatus.COMPLETED)
                agent_logger.log_chain_step(chain.id, index, step.tool_name, ChainStepStatus.COMPLETED.value)
                await self.callbacks.on_chain_step_complete(index, step, output, True)
        except asyncio.CancelledError:
            await self._abort_remaining(chain, board, notify=False)
            logger.info("Tool chain cancelled", chain_id=chain.id)
            raise

        if aborted or cancelled:
            await self._abort_remaining(chain, board)

        duration = time.monotonic() - start
        metrics.record_latency("chain", duration * 1000, tags={"chain": chain.id})

        statuses = board.snapshot()
        result = ToolChainResult(
            chain_id=chain.id,
            step_results=[
                StepResult(
                    step_id=step.id,
                    tool_name=step.tool_name,
                    label=step.label,
                    status=statuses[step.id],
                    optional=step.optional,
                    output=outputs.get(index),
                    error=errors.get(step.id),
                )
                for index, step in enumerate(chain.steps)
            ],
            duration=duration,
            aborted=aborted,
            cancelled=cancelled,
        )
        logger.info(
            "Tool chain finished",
            chain_id=chain.id,
            duration_s=round(duration, 2),
            completed=sum(1 for s in statuses.values() if s == ChainStepStatus.COMPLETED),
            aborted=aborted,
            cancelled=cancelled,
        )
        return result

    async def _abort_remaining(self, chain: ToolChain, board: StepStatusBoard, notify: bool = True):
        pending = set(board.pending())
        for index, step in enumerate(chain.steps):
            if step.id in pending:
                board.transition(step.id, ChainStepStatus.SKIPPED_BY_ABORT)
                agent_logger.log_chain_step(chain.id, index, step.tool_name, ChainStepStatus.SKIPPED_BY_ABORT.value)
                if notify:
                    await self.callbacks.on_chain_step_skipped(index, step, ChainStepStatus.SKIPPED_BY_ABORT)
