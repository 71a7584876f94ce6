"""
Typed error taxonomy for the orchestration core.

Every failure the core can surface is one of three families. Each concrete
class carries a ``kind`` discriminator so callers can match exhaustively
without string parsing:

    AgentError     - the run itself could not complete
    ToolError      - raised by tools and the tool registry
    ProviderError  - raised by language-model backends
"""

from enum import Enum
from typing import Optional


class AgentErrorKind(str, Enum):
    """Agent error discriminator"""
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    NO_PROVIDER = "no_provider"
    TOOL_NOT_FOUND = "tool_not_found"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"


class ToolErrorKind(str, Enum):
    """Tool error discriminator"""
    NOT_AVAILABLE = "not_available"
    PERMISSION_DENIED = "permission_denied"
    INVALID_ARGUMENTS = "invalid_arguments"
    EXECUTION_FAILED = "execution_failed"


class ProviderErrorKind(str, Enum):
    """Provider error discriminator"""
    NOT_AVAILABLE = "not_available"
    RATE_LIMITED = "rate_limited"
    CONTEXT_WINDOW_EXCEEDED = "context_window_exceeded"
    CONCURRENT_REQUEST_REJECTED = "concurrent_request_rejected"
    GENERATION_FAILED = "generation_failed"


# Agent errors

class AgentError(Exception):
    """Base class for failures that abort an agent run"""

    kind: AgentErrorKind


class MaxIterationsReached(AgentError):
    kind = AgentErrorKind.MAX_ITERATIONS_REACHED

    def __init__(self, iterations: int):
        self.iterations = iterations
        super().__init__(f"Maximum iterations reached ({iterations}). The agent may be stuck in a loop.")


class NoProvider(AgentError):
    kind = AgentErrorKind.NO_PROVIDER

    def __init__(self, requested: Optional[str] = None):
        self.requested = requested
        super().__init__("No LLM provider configured.")


class ToolNotFound(AgentError):
    kind = AgentErrorKind.TOOL_NOT_FOUND

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool '{name}' not found.")


class ToolExecutionFailed(AgentError):
    kind = AgentErrorKind.TOOL_EXECUTION_FAILED

    def __init__(self, name: str, cause: BaseException):
        self.name = name
        self.cause = cause
        super().__init__(f"Tool '{name}' failed: {cause}")


# Tool errors

class ToolError(Exception):
    """Base class for tool failures.

    ``recoverable`` decides whether the agent feeds the failure back to the
    model as a failed tool result or aborts the run.
    """

    kind: ToolErrorKind
    recoverable: bool = True

    def __init__(self, message: str, suggestion: Optional[str] = None):
        self.suggestion = suggestion
        super().__init__(message)


class ToolNotAvailable(ToolError):
    kind = ToolErrorKind.NOT_AVAILABLE

    def __init__(self, reason: str, suggestion: Optional[str] = None):
        self.reason = reason
        super().__init__(f"Not available: {reason}", suggestion)


class ToolPermissionDenied(ToolError):
    kind = ToolErrorKind.PERMISSION_DENIED
    recoverable = False

    def __init__(self, permission: str, suggestion: Optional[str] = None):
        self.permission = permission
        super().__init__(f"Permission denied: {permission}", suggestion)


class InvalidToolArguments(ToolError):
    kind = ToolErrorKind.INVALID_ARGUMENTS

    def __init__(self, detail: str, suggestion: Optional[str] = None):
        self.detail = detail
        super().__init__(f"Invalid arguments: {detail}", suggestion)


class ToolExecutionError(ToolError):
    kind = ToolErrorKind.EXECUTION_FAILED

    def __init__(self, reason: str, recoverable: bool = True, suggestion: Optional[str] = None):
        self.reason = reason
        self.recoverable = recoverable
        super().__init__(f"Execution failed: {reason}", suggestion)


# Provider errors

class ProviderError(Exception):
    """Base class for language-model backend failures"""

    kind: ProviderErrorKind
    transient: bool = False


class ProviderNotAvailable(ProviderError):
    kind = ProviderErrorKind.NOT_AVAILABLE

    def __init__(self, provider: Optional[str] = None):
        self.provider = provider
        super().__init__(f"Provider '{provider}' is not available." if provider else "Provider is not available.")


class RateLimited(ProviderError):
    kind = ProviderErrorKind.RATE_LIMITED
    transient = True

    def __init__(self, message: str = "Rate limited by provider."):
        super().__init__(message)


class ContextWindowExceeded(ProviderError):
    kind = ProviderErrorKind.CONTEXT_WINDOW_EXCEEDED

    def __init__(self, message: str = "Context window exceeded."):
        super().__init__(message)


class ConcurrentRequestRejected(ProviderError):
    kind = ProviderErrorKind.CONCURRENT_REQUEST_REJECTED
    transient = True

    def __init__(self, message: str = "Provider rejected a concurrent request."):
        super().__init__(message)


class GenerationFailed(ProviderError):
    kind = ProviderErrorKind.GENERATION_FAILED

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Generation failed: {message}")


# Configuration and state errors

class SessionNotFoundError(KeyError):
    """Raised by session stores for unknown session ids"""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(session_id)

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"


class ChainConfigurationError(ValueError):
    """A tool chain definition cannot be executed as declared"""

    def __init__(self, chain_id: str, detail: str):
        self.chain_id = chain_id
        self.detail = detail
        super().__init__(f"Chain '{chain_id}' is misconfigured: {detail}")


class InvalidStepTransition(RuntimeError):
    """A chain step status was asked to move backward"""
