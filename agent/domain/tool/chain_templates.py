"""
Argument templates for tool chains.

A step's ``argument_template`` is a JSON document whose string values may
reference earlier results:

    $N            whole output of step N (truncated, embedded as a string)
    $N.a.b[0].c   value at a dot path inside step N's JSON output
    $input        caller-supplied text

Templates are resolved structurally (parse, substitute, re-serialize) so
substituted text is always correctly JSON-escaped.
"""

from typing import Any, Dict, Iterator, List, Optional, Tuple
import json
import re
import structlog

logger = structlog.get_logger(__name__)

STEP_OUTPUT_LIMIT = 500

REFERENCE_PATTERN = re.compile(r"\$(input|\d+)((?:\.[A-Za-z_][A-Za-z0-9_]*(?:\[\d+\])*)*)")
_COMPONENT_PATTERN = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)((?:\[\d+\])*)")
_INDEX_PATTERN = re.compile(r"\[(\d+)\]")


class TemplateReference:
    """A single $-reference found in a template"""

    __slots__ = ("source", "path")

    def __init__(self, source: str, path: str):
        self.source = source
        self.path = path.lstrip(".")

    @property
    def is_input(self) -> bool:
        return self.source == "input"

    @property
    def step_index(self) -> Optional[int]:
        return None if self.is_input else int(self.source)

    def __repr__(self) -> str:
        suffix = f".{self.path}" if self.path else ""
        return f"${self.source}{suffix}"


def parse_template(template: str) -> Any:
    """Parse a template, raising ValueError when it is not JSON"""
    try:
        return json.loads(template or "{}")
    except json.JSONDecodeError as e:
        raise ValueError(f"argument template is not valid JSON: {e.msg}") from e


def _strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from _strings(item)


def find_references(template: str) -> List[TemplateReference]:
    parsed = parse_template(template)
    return [
        TemplateReference(match.group(1), match.group(2))
        for text in _strings(parsed)
        for match in REFERENCE_PATTERN.finditer(text)
    ]


def extract_json_value(output: str, path: str) -> str:
    """Follow a dot path with [i] indexes into a JSON string"""
    try:
        current: Any = json.loads(output)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Chain argument piping could not parse JSON", path=path)
        return output

    for component in path.split("."):
        match = _COMPONENT_PATTERN.fullmatch(component)
        if match is None:
            return ""
        key, indexes = match.groups()
        if not isinstance(current, dict) or key not in current:
            logger.warning("Chain argument piping key not found", path=path, component=key)
            return ""
        current = current[key]
        for raw_index in _INDEX_PATTERN.findall(indexes):
            index = int(raw_index)
            if not isinstance(current, list) or index >= len(current):
                logger.warning("Chain argument piping index out of bounds", path=path, component=component)
                return ""
            current = current[index]

    if isinstance(current, str):
        return current
    return json.dumps(current)


def _lookup(reference: TemplateReference, outputs: Dict[int, str], user_input: Optional[str]) -> str:
    if reference.is_input:
        return user_input or ""
    output = outputs.get(reference.step_index)
    if output is None:
        # Step was skipped or failed
        return ""
    if reference.path:
        return extract_json_value(output, reference.path)
    return output[:STEP_OUTPUT_LIMIT]


def _substitute(value: Any, outputs: Dict[int, str], user_input: Optional[str]) -> Any:
    if isinstance(value, str):
        return REFERENCE_PATTERN.sub(
            lambda m: _lookup(TemplateReference(m.group(1), m.group(2)), outputs, user_input),
            value,
        )
    if isinstance(value, dict):
        return {k: _substitute(v, outputs, user_input) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v, outputs, user_input) for v in value]
    return value


def resolve_arguments(template: str, outputs: Dict[int, str], user_input: Optional[str] = None) -> str:
    """Resolve all references in a template into a JSON argument string"""
    return json.dumps(_substitute(parse_template(template), outputs, user_input))


def validate_template(template: str, step_index: int, has_input: bool) -> List[Tuple[str, str]]:
    """Return (reference, problem) pairs for a step's template"""
    try:
        references = find_references(template)
    except ValueError as e:
        return [("template", str(e))]

    problems = []
    for reference in references:
        if reference.is_input:
            if not has_input:
                problems.append((repr(reference), "requires caller input but none was provided"))
        elif reference.step_index >= step_index:
            problems.append((repr(reference), f"does not refer to an earlier step than {step_index}"))
    return problems
