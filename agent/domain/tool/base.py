from abc import ABC, abstractmethod
from typing import Dict, Any
from pydantic import BaseModel, Field
from enum import IntEnum


class ToolPriority(IntEnum):
    """Lower values are offered to the model first"""
    CORE = 1
    IMPORTANT = 2
    EXTENDED = 3


class ToolDefinition(BaseModel):
    """Provider-facing schema of a tool"""
    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai_schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class Tool(ABC):
    """Base class for capabilities the model can invoke.

    Subclasses declare ``name``, ``description`` and ``parameters_schema``
    and implement ``execute``, which receives the raw JSON argument string
    and returns a JSON result string. Failures are reported by raising a
    ``ToolError`` subclass.
    """

    name: str = ""
    description: str = ""
    priority: ToolPriority = ToolPriority.EXTENDED
    # Short capability phrase used when the tool is disabled
    capability: str = ""

    @property
    def parameters_schema(self) -> Dict[str, Any]:
        return {"type": "object", "properties": {}}

    @abstractmethod
    async def execute(self, arguments: str) -> str:
        pass

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters_schema,
        )
