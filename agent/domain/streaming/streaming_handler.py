from typing import Callable, Optional
import structlog

from application.websocket.connection_manager import ConnectionManager
from application.websocket.schema.events import (
    ChainStepEvent,
    ErrorEvent,
    ResponseEvent,
    StreamChunkEvent,
    ThinkingEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from domain.models.tool_chain import ChainStepStatus, ToolChainStep
from domain.orchestration.core.callbacks import AgentCallbacks
from domain.tool.chain_executor import ToolChainCallbacks

logger = structlog.get_logger(__name__)


class StreamingHandler(AgentCallbacks, ToolChainCallbacks):
    """Forwards agent and tool chain events to one WebSocket client.

    Every hook awaits the send, so events reach the client in the order the
    agent produced them.
    """

    def __init__(
        self,
        client_id: str,
        connection_manager: ConnectionManager,
        session_id: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.client_id = client_id
        self.connection_manager = connection_manager
        self._session_id = session_id or (lambda: None)

    async def _send(self, event):
        event.session_id = self._session_id()
        await self.connection_manager.send_event(self.client_id, event)

    async def on_thinking(self):
        await self._send(ThinkingEvent())

    async def on_tool_call(self, name: str, arguments: str):
        await self._send(ToolCallEvent(tool_name=name, arguments=arguments))

    async def on_tool_result(self, name: str, result: str, success: bool):
        await self._send(ToolResultEvent(tool_name=name, result=result, success=success))

    async def on_stream_chunk(self, text: str):
        await self._send(StreamChunkEvent(text=text))

    async def on_response(self, content: str):
        await self._send(ResponseEvent(content=content))

    async def on_error(self, error: Exception):
        kind = getattr(error, "kind", None)
        await self._send(ErrorEvent(message=str(error), kind=kind.value if kind is not None else None))

    # Tool chains

    async def on_chain_step_start(self, step_index: int, step: ToolChainStep):
        await self._send(ChainStepEvent(
            chain_step_index=step_index,
            step_id=step.id,
            tool_name=step.tool_name,
            status=ChainStepStatus.RUNNING.value,
        ))

    async def on_chain_step_complete(self, step_index: int, step: ToolChainStep, result: str, success: bool):
        status = ChainStepStatus.COMPLETED if success else ChainStepStatus.FAILED
        await self._send(ChainStepEvent(
            chain_step_index=step_index,
            step_id=step.id,
            tool_name=step.tool_name,
            status=status.value,
            output=result,
        ))

    async def on_chain_step_skipped(self, step_index: int, step: ToolChainStep, status: ChainStepStatus):
        await self._send(ChainStepEvent(
            chain_step_index=step_index,
            step_id=step.id,
            tool_name=step.tool_name,
            status=status.value,
        ))

    async def on_chain_synthesizing(self):
        await self._send(ChainStepEvent(status="synthesizing"))
