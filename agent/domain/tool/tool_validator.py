from typing import Dict, Any
import json
import jsonschema

from domain.models.errors import InvalidToolArguments
from domain.tool.base import Tool


class ToolParameterValidator:
    """Validates raw tool arguments against the tool's JSON schema"""

    @staticmethod
    def parse_arguments(arguments: str) -> Dict[str, Any]:
        """Decode a JSON argument string into an object"""
        if not arguments or not arguments.strip():
            return {}
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError as e:
            raise InvalidToolArguments(
                f"arguments are not valid JSON ({e.msg})",
                suggestion="Pass arguments as a JSON object.",
            ) from e
        if not isinstance(parsed, dict):
            raise InvalidToolArguments("arguments must be a JSON object")
        return parsed

    @staticmethod
    def validate_tool_call(tool: Tool, arguments: str) -> Dict[str, Any]:
        parameters = ToolParameterValidator.parse_arguments(arguments)
        schema = tool.parameters_schema

        try:
            jsonschema.validate(parameters, schema)
        except jsonschema.ValidationError as e:
            raise InvalidToolArguments(
                f"schema validation failed: {e.message}",
                suggestion=f"Check the parameters required by '{tool.name}'.",
            ) from e

        return parameters
