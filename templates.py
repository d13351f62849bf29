"""
Plan templates for `ralph init`.
"""

import logging
from pathlib import Path
from typing import Optional

from plan_writer import atomic_write_text, render_plan
from schemas import Plan, Step

logger = logging.getLogger("ralph.templates")

DEFAULT_TEMPLATE = """\
# Project: [Your Project Name]

## Context

Add background information about your project here.
Include key technologies, constraints, or any context the AI should know.

## Plan

- [ ] Step 1: Describe your first task here
- [ ] Step 2: Describe your second task here
- [ ] Step 3: Add more steps as needed

## Notes

### Step 1
**Status**: pending
**Last Run**: N/A
**Notes**: (none)

### Step 2
**Status**: pending
**Last Run**: N/A
**Notes**: (none)

### Step 3
**Status**: pending
**Last Run**: N/A
**Notes**: (none)
"""


def _ensure_new(path: Path) -> None:
    if path.exists():
        raise FileExistsError(f"File already exists: {path}")


def create_template(path: Path) -> None:
    """
    Write the default plan template.

    Raises:
        FileExistsError: If the file already exists
        PlanIOError: If it cannot be written
    """
    path = Path(path)
    _ensure_new(path)
    atomic_write_text(path, DEFAULT_TEMPLATE)
    logger.debug("Wrote default template to %s", path)


def create_template_with_steps(
    path: Path,
    project_name: str,
    steps: list[str],
    context: Optional[str] = None
) -> Plan:
    """
    Write a fresh plan with the given step descriptions, all pending.

    Returns:
        The Plan that was written
    """
    path = Path(path)
    _ensure_new(path)

    plan = Plan(
        project_name=project_name,
        context=(context or "").strip(),
        steps=[
            Step(number=i, description=description.strip())
            for i, description in enumerate(steps, 1)
        ],
    )
    atomic_write_text(path, render_plan(plan))
    logger.debug("Wrote %d-step plan to %s", len(plan.steps), path)
    return plan
