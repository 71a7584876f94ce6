from typing import Dict, List, Optional, Set
import structlog

from domain.models.errors import ToolNotAvailable
from domain.tool.base import Tool, ToolDefinition
from domain.tool.tool_executor import ToolExecutor

logger = structlog.get_logger(__name__)


class ToolRegistry:
    """Registry for managing available tools"""

    def __init__(self, executor: Optional[ToolExecutor] = None):
        self.tools: Dict[str, Tool] = {}
        self.disabled: Set[str] = set()
        self.executor = executor or ToolExecutor()

    def register(self, tool: Tool, enabled: bool = True):
        """Register a new tool, replacing any tool with the same name"""

        self.tools[tool.name] = tool
        if enabled:
            self.disabled.discard(tool.name)
        else:
            self.disabled.add(tool.name)
        logger.debug("Registered tool", tool_name=tool.name, priority=tool.priority.name, enabled=enabled)

    def unregister(self, name: str):
        self.tools.pop(name, None)
        self.disabled.discard(name)

    def get(self, name: str) -> Optional[Tool]:
        """Get an enabled tool by name"""

        if name in self.disabled:
            return None
        return self.tools.get(name)

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def enable(self, name: str):
        self.disabled.discard(name)

    def disable(self, name: str):
        if name in self.tools:
            self.disabled.add(name)

    def is_enabled(self, name: str) -> bool:
        return name in self.tools and name not in self.disabled

    def tool_names(self) -> List[str]:
        return sorted(self.tools)

    def _sorted(self, tools) -> List[Tool]:
        return sorted(tools, key=lambda t: (t.priority, t.name))

    def schema_for(self, name: str) -> Optional[ToolDefinition]:
        """Provider-facing schema for one enabled tool"""

        tool = self.get(name)
        return tool.to_definition() if tool else None

    def get_definitions(self) -> List[ToolDefinition]:
        """Definitions of enabled tools, core tools first"""

        enabled = [t for t in self.tools.values() if t.name not in self.disabled]
        return [t.to_definition() for t in self._sorted(enabled)]

    def get_definitions_limited(self, max_tools: Optional[int]) -> List[ToolDefinition]:
        definitions = self.get_definitions()
        if max_tools is None:
            return definitions
        return definitions[:max(0, max_tools)]

    def get_all_definitions(self) -> List[ToolDefinition]:
        return [t.to_definition() for t in self._sorted(self.tools.values())]

    def get_disabled_tool_descriptions(self) -> List[Dict[str, str]]:
        """Name and capability of disabled tools, so the model can point users to them"""

        disabled = [t for t in self.tools.values() if t.name in self.disabled]
        return [
            {"name": t.name, "capability": t.capability or t.description}
            for t in self._sorted(disabled)
        ]

    async def execute(self, name: str, arguments: str) -> str:
        """Execute a tool by name, raising ToolError on failure"""

        tool = self.get(name)
        if tool is None:
            raise ToolNotAvailable(
                f"Tool '{name}' not found",
                suggestion="Use one of the available tools or answer directly.",
            )

        result = await self.executor.execute_tool(tool, arguments)
        return result.unwrap()
