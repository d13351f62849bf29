"""
Prompt construction and result evaluation for ralph-loop.

Each step runs in a fresh agent session, so the prompt has to carry all the
situational awareness the agent needs: project, context, the whole plan,
the current step and, on retries, what went wrong last time.

The agent reports back through sentinels at the end of its output:

    STEP_COMPLETE
    STEP_FAILED: <brief reason>
"""

from grammar import SENTINEL_COMPLETE, SENTINEL_FAILED, render_step_line
from schemas import Plan, Step, StepResult, StepStatus

NO_SENTINEL_REASON = (
    f"No {SENTINEL_COMPLETE} or {SENTINEL_FAILED.rstrip(':')} marker found in output"
)


def build_prompt(plan: Plan, step: Step) -> str:
    """Build the prompt for running one step."""
    sections = ["# Task: Execute a Step in the Implementation Plan\n"]

    sections.append(f"## Project Overview\nProject: {plan.project_name}\n")

    if plan.context:
        sections.append(f"### Project Context\n{plan.context}\n")

    plan_lines = ["## Full Plan"]
    for s in plan.steps:
        plan_lines.append(render_step_line(s.number, s.status.marker, s.description))
    sections.append("\n".join(plan_lines) + "\n")

    sections.append(
        f"## Your Current Task\n**Step {step.number}**: {step.description}\n"
    )

    if step.status == StepStatus.FAILED and step.notes:
        sections.append(
            "## Previous Attempt\n"
            "This step failed previously. Here are the notes from the last attempt:\n"
            f"{step.notes}\n\n"
            "Please try a different approach or fix the issues mentioned above.\n"
        )

    sections.append(
        "## Instructions\n"
        f"1. Focus ONLY on completing the current step (Step {step.number})\n"
        "2. Do not work on other steps\n"
        "3. When you have completed the step successfully, output exactly:\n"
        f"   {SENTINEL_COMPLETE}\n"
        "4. If you encounter an error you cannot resolve, output exactly:\n"
        f"   {SENTINEL_FAILED} <brief description of what went wrong>\n"
        f"5. Make sure {SENTINEL_COMPLETE} or {SENTINEL_FAILED.rstrip(':')} "
        "appears at the end of your response\n"
    )

    sections.append("Begin working on the step now.\n")
    return "\n".join(sections)


def parse_result(output: str) -> StepResult:
    """
    Evaluate a transcript by scanning from the last line backward.

    On each line the exact forms are checked before the embedded ones, and
    the first line (from the end) that carries any sentinel decides.
    """
    for raw in reversed(output.split("\n")):
        line = raw.strip()

        if line == SENTINEL_COMPLETE:
            return StepResult(success=True, output=output)

        if line.startswith(SENTINEL_FAILED):
            return _failure(output, line[len(SENTINEL_FAILED):])

        if SENTINEL_COMPLETE in line:
            return StepResult(success=True, output=output)

        if SENTINEL_FAILED in line:
            index = line.index(SENTINEL_FAILED)
            return _failure(output, line[index + len(SENTINEL_FAILED):])

    return StepResult(success=False, output=output, reason=NO_SENTINEL_REASON)


def _failure(output: str, reason: str) -> StepResult:
    return StepResult(success=False, output=output, reason=reason.strip())
