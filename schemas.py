"""
Pydantic schemas for the plan document in ralph-loop.

WHY THIS FILE EXISTS:
--------------------
The plan lives on disk as a markdown file that humans edit by hand. Every
loop iteration re-reads that file and rebuilds these objects from scratch,
so they are snapshots of the document, never the source of truth.

Example plan document:

    # Project: Todo API

    ## Plan

    - [x] Step 1: Create the Flask skeleton
    - [!] Step 2: Add the /todos endpoints
    - [ ] Step 3: Write tests

    ## Notes

    ### Step 2
    **Status**: failed
    **Last Run**: 2026-01-17 10:30:00
    **Notes**: Failed: pytest not installed
    **Retries**: 1

Which parses into:

    Plan(
        project_name="Todo API",
        steps=[
            Step(number=1, status=StepStatus.COMPLETED, ...),
            Step(number=2, status=StepStatus.FAILED, retry_count=1, ...),
            Step(number=3, status=StepStatus.PENDING, ...),
        ],
    )
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# STEP SCHEMAS
# =============================================================================

class StepStatus(str, Enum):
    """Status of a plan step, mirrored by its checkbox marker."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Retry budget exhausted

    @property
    def marker(self) -> str:
        """The character that goes between the checkbox brackets."""
        return STATUS_MARKERS[self]

    @classmethod
    def from_marker(cls, marker: str) -> "StepStatus":
        """Map a checkbox marker back to a status (unknown -> pending)."""
        for status, value in STATUS_MARKERS.items():
            if value == marker:
                return status
        return cls.PENDING


STATUS_MARKERS = {
    StepStatus.PENDING: " ",
    StepStatus.COMPLETED: "x",
    StepStatus.FAILED: "!",
    StepStatus.SKIPPED: "-",
}


class Step(BaseModel):
    """
    A single step of the plan.

    The number is positional: the Nth checkbox line in the document is
    step N, whatever "Step <n>:" label the line happens to carry.
    """
    number: int = Field(ge=1, description="Position of the step (1-indexed)")
    description: str = Field(description="What the agent should do")
    status: StepStatus = Field(default=StepStatus.PENDING)
    last_run: Optional[datetime] = Field(
        default=None,
        description="When the step was last attempted"
    )
    notes: str = Field(default="", description="Summary of the last attempt")
    retry_count: int = Field(
        default=0,
        ge=0,
        description="Failed attempts already made"
    )

    @property
    def is_actionable(self) -> bool:
        """Pending and failed steps still need an agent run."""
        return self.status in (StepStatus.PENDING, StepStatus.FAILED)


class Plan(BaseModel):
    """
    The whole plan document.

    raw_content keeps the text the plan was parsed from, for callers that
    need to patch the document rather than re-render it.
    """
    project_name: str = Field(default="")
    context: str = Field(default="", description="Free-text project background")
    steps: list[Step] = Field(default_factory=list)
    raw_content: str = Field(default="")

    def next_step(self) -> Optional[Step]:
        """Return the first pending or failed step, or None."""
        for step in self.steps:
            if step.is_actionable:
                return step
        return None

    def is_complete(self) -> bool:
        """True when there are steps and all are completed or skipped."""
        if not self.steps:
            return False
        return all(
            step.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)
            for step in self.steps
        )

    def get_step(self, number: int) -> Optional[Step]:
        """Look up a step by number."""
        if 1 <= number <= len(self.steps):
            return self.steps[number - 1]
        return None

    def status_counts(self) -> dict[StepStatus, int]:
        """Count steps per status (every status is present in the result)."""
        counts = {status: 0 for status in StepStatus}
        for step in self.steps:
            counts[step.status] += 1
        return counts

    @property
    def total_steps(self) -> int:
        """Convenience property for step count."""
        return len(self.steps)


# =============================================================================
# EXECUTION SCHEMAS
# =============================================================================

class StepResult(BaseModel):
    """
    Outcome of one agent invocation (or of a loop decision like skipping).

    Example:
        StepResult(
            success=False,
            output="...full transcript...\\nSTEP_FAILED: tests are red",
            reason="tests are red",
            retry_count=2,
        )
    """
    success: bool = Field(description="Whether the step succeeded")
    output: str = Field(default="", description="Full captured transcript")
    reason: str = Field(default="", description="Why the step failed")
    status_override: Optional[StepStatus] = Field(
        default=None,
        description="Explicit status to persist (used for skipped)"
    )
    retry_count: int = Field(default=0, ge=0, description="Retry count to persist")

    @property
    def status(self) -> StepStatus:
        """The status that gets written to the document."""
        if self.status_override is not None:
            return self.status_override
        return StepStatus.COMPLETED if self.success else StepStatus.FAILED
