from typing import Optional
import asyncio
import time
import structlog
from pydantic import BaseModel, ConfigDict, Field

from domain.models.errors import ToolError, ToolExecutionError
from domain.tool.base import Tool
from domain.tool.tool_validator import ToolParameterValidator
from infrastructure.observability.logging import agent_logger, metrics, MetricsCollector

logger = structlog.get_logger(__name__)


class ToolResult(BaseModel):
    """Outcome of a single tool invocation"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    tool_name: str
    success: bool
    output: Optional[str] = None
    error: Optional[BaseException] = Field(None, description="Raised failure, ToolError or unexpected")
    execution_time_ms: float = 0.0

    def unwrap(self) -> str:
        """Return the output or re-raise the captured failure"""
        if self.error is not None:
            raise self.error
        return self.output or ""


class ToolExecutor:
    """Runs tools with argument validation, a timeout and monitoring"""

    def __init__(self, timeout: float = 30.0, collector: Optional[MetricsCollector] = None):
        self.timeout = timeout
        self.metrics = collector or metrics

    async def execute_tool(self, tool: Tool, arguments: str) -> ToolResult:
        start = time.monotonic()
        try:
            ToolParameterValidator.validate_tool_call(tool, arguments)
            output = await asyncio.wait_for(tool.execute(arguments), timeout=self.timeout)
            result = ToolResult(tool_name=tool.name, success=True, output=output)
        except asyncio.TimeoutError:
            result = ToolResult(
                tool_name=tool.name,
                success=False,
                error=ToolExecutionError(
                    f"timed out after {self.timeout:g}s",
                    suggestion="The operation took too long. Try again or simplify the request.",
                ),
            )
        except ToolError as e:
            result = ToolResult(tool_name=tool.name, success=False, error=e)
        except Exception as e:
            logger.exception("Unexpected tool failure", tool_name=tool.name)
            result = ToolResult(tool_name=tool.name, success=False, error=e)

        result.execution_time_ms = (time.monotonic() - start) * 1000
        self.metrics.record_latency("tool", result.execution_time_ms, tags={"tool": tool.name})
        self.metrics.increment_counter(
            "tool_calls", tags={"tool": tool.name, "success": str(result.success).lower()}
        )
        agent_logger.log_tool_execution(
            tool_name=tool.name,
            arguments=arguments,
            duration_ms=round(result.execution_time_ms, 2),
            success=result.success,
            error=str(result.error) if result.error else None,
        )
        return result
