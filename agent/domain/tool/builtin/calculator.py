from typing import Any, Dict
import ast
import json
import math
import operator

from domain.models.errors import InvalidToolArguments, ToolExecutionError
from domain.tool.base import Tool, ToolPriority
from domain.tool.tool_validator import ToolParameterValidator


MAX_EXPRESSION_LENGTH = 500

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_FUNCTIONS = {
    "sqrt": math.sqrt,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "log": math.log,
    "ln": math.log,
    "exp": math.exp,
    "abs": abs,
    "floor": math.floor,
    "ceil": math.ceil,
    "round": round,
    "pow": math.pow,
}

_CONSTANTS = {
    "pi": math.pi,
    "e": math.e,
}


def _evaluate(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left, right = _evaluate(node.left), _evaluate(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > 1000:
            raise ToolExecutionError("exponent too large")
        return _BINARY_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_evaluate(node.operand))
    if isinstance(node, ast.Name) and node.id.lower() in _CONSTANTS:
        return _CONSTANTS[node.id.lower()]
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and not node.keywords:
        func = _FUNCTIONS.get(node.func.id.lower())
        if func is None:
            raise InvalidToolArguments(f"unknown function '{node.func.id}'")
        return func(*[_evaluate(arg) for arg in node.args])
    raise InvalidToolArguments(f"unsupported syntax in expression: {type(node).__name__}")


class CalculatorTool(Tool):
    """Evaluates arithmetic expressions without calling eval()"""

    name = "calculator"
    description = (
        "Evaluate mathematical expressions. Supports +, -, *, /, %, ^, parentheses, "
        "functions (sqrt, sin, cos, tan, log, ln, exp, abs, floor, ceil, round, pow) "
        "and constants (pi, e)."
    )
    priority = ToolPriority.CORE
    capability = "math and unit calculations"

    @property
    def parameters_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "expression": {
                    "type": "string",
                    "description": "The mathematical expression to evaluate",
                }
            },
            "required": ["expression"],
        }

    async def execute(self, arguments: str) -> str:
        expression = ToolParameterValidator.parse_arguments(arguments).get("expression", "")
        if not isinstance(expression, str) or not expression.strip():
            raise InvalidToolArguments("expression cannot be empty")
        if len(expression) > MAX_EXPRESSION_LENGTH:
            raise InvalidToolArguments(f"expression too long (max {MAX_EXPRESSION_LENGTH} characters)")

        try:
            tree = ast.parse(expression.replace("^", "**"), mode="eval")
        except SyntaxError as e:
            raise InvalidToolArguments(
                "could not parse expression",
                suggestion="Check the math expression format. Example: '100 * 0.15' for 15% of 100.",
            ) from e

        try:
            result = float(_evaluate(tree))
        except ZeroDivisionError as e:
            raise ToolExecutionError("division by zero") from e
        except (ValueError, OverflowError, TypeError) as e:
            raise ToolExecutionError(f"failed to evaluate expression: {e}") from e

        if math.isnan(result):
            raise ToolExecutionError(f"expression '{expression}' resulted in an undefined value")

        formatted = str(int(result)) if result.is_integer() and abs(result) < 1e15 else f"{result:.10g}"
        return json.dumps({"expression": expression, "result": result, "formatted": formatted})
