from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
import uuid

from domain.models.message import utcnow


class ChainStepStatus(str, Enum):
    """Per-step execution status"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED_BY_USER = "skipped_by_user"
    SKIPPED_BY_ABORT = "skipped_by_abort"

    @property
    def is_terminal(self) -> bool:
        return self not in (ChainStepStatus.PENDING, ChainStepStatus.RUNNING)

    @property
    def is_skipped(self) -> bool:
        return self in (ChainStepStatus.SKIPPED_BY_USER, ChainStepStatus.SKIPPED_BY_ABORT)


# Allowed forward moves; anything else is a backward or sideways transition
STEP_TRANSITIONS: Dict[ChainStepStatus, frozenset] = {
    ChainStepStatus.PENDING: frozenset({
        ChainStepStatus.RUNNING,
        ChainStepStatus.SKIPPED_BY_USER,
        ChainStepStatus.SKIPPED_BY_ABORT,
    }),
    ChainStepStatus.RUNNING: frozenset({ChainStepStatus.COMPLETED, ChainStepStatus.FAILED}),
    ChainStepStatus.COMPLETED: frozenset(),
    ChainStepStatus.FAILED: frozenset(),
    ChainStepStatus.SKIPPED_BY_USER: frozenset(),
    ChainStepStatus.SKIPPED_BY_ABORT: frozenset(),
}


class ToolChainStep(BaseModel):
    """A single step of a tool chain"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tool_name: str = Field(description="Registered tool to invoke")
    label: str = Field(description="Human-readable label shown in chain previews")
    argument_template: str = Field(default="{}", description="JSON template with $N, $N.path and $input references")
    optional: bool = Field(default=False, description="Step may be skipped and may fail without halting the chain")


class ToolChain(BaseModel):
    """An ordered multi-step tool workflow. Read-only while executing."""
    id: str
    name: str
    description: str = ""
    icon: str = "link"
    steps: List[ToolChainStep] = Field(default_factory=list)
    built_in: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class StepResult(BaseModel):
    """Outcome of one step"""
    step_id: str
    tool_name: str
    label: str
    status: ChainStepStatus
    optional: bool = False
    output: Optional[str] = None
    error: Optional[str] = None


class ToolChainResult(BaseModel):
    """Outcome of a whole chain run"""
    chain_id: str
    step_results: List[StepResult] = Field(default_factory=list)
    duration: float = 0.0
    aborted: bool = Field(default=False, description="A required step failed")
    cancelled: bool = Field(default=False, description="The run was cancelled before finishing")

    @property
    def statuses(self) -> Dict[str, ChainStepStatus]:
        return {r.step_id: r.status for r in self.step_results}

    @property
    def is_success(self) -> bool:
        if self.aborted or self.cancelled:
            return False
        for result in self.step_results:
            if result.status == ChainStepStatus.FAILED and not result.optional:
                return False
            if not result.status.is_terminal:
                return False
        return True

    @property
    def synthesis_context(self) -> str:
        """Completed step outputs joined for model synthesis"""
        return "\n\n".join(
            f"[{r.label}] {r.output}"
            for r in self.step_results
            if r.status == ChainStepStatus.COMPLETED
        )
