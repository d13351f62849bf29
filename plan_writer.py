"""
Plan document writer for ralph-loop.

WHAT THIS FILE DOES:
-------------------
Records the outcome of a step in the plan document. This is textual
patching, not re-rendering: only the target step's checkbox and its
`### Step <n>` annotation block change. Everything else (hand-written
notes, extra sections, odd formatting) is kept byte for byte.

PATCH ALGORITHM:
---------------
1. Rewrite the checkbox marker of the Nth step line.
2. Rewrite Status / Last Run / Notes / Retries inside the step's block.
3. No annotation section anywhere -> append `## Notes` plus a new block.
4. Section exists but no block for this step -> insert a new block after
   the last annotation content (found by scanning backward from the end).

render_plan() is the other direction: a full document from a Plan, used
only when creating a brand new plan file.
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from errors import PlanIOError
from grammar import (
    FIELD_KINDS,
    HEADING_KINDS,
    NOTES_SECTION_TITLE,
    TIMESTAMP_FORMAT,
    Token,
    TokenKind,
    classify,
    context_body,
    is_notes_section_header,
    is_sentinel_line,
    render_block_header,
    render_last_run,
    render_notes,
    render_retries,
    render_status,
    render_step_line,
    replace_checkbox,
)
from plan_parser import PLAN_ENCODING, read_plan_text
from schemas import Plan, StepResult

logger = logging.getLogger("ralph.writer")

SUMMARY_LIMIT = 100
EMPTY_SUCCESS_SUMMARY = "Completed successfully"
EMPTY_FAILURE_SUMMARY = "(no output)"


# =============================================================================
# NOTES TEXT
# =============================================================================

def summarize_output(output: str, success: bool = True) -> str:
    """
    Pick a one-line summary from an agent transcript.

    Uses the last non-empty line that is not a sentinel, cut to 100
    characters.
    """
    for line in reversed(output.strip().split("\n")):
        line = line.strip()
        if not line or is_sentinel_line(line):
            continue
        if len(line) > SUMMARY_LIMIT:
            return line[:SUMMARY_LIMIT - 3] + "..."
        return line

    return EMPTY_SUCCESS_SUMMARY if success else EMPTY_FAILURE_SUMMARY


def notes_for_result(result: StepResult) -> str:
    """Notes text persisted for a result: failure reason wins over summary."""
    if not result.success and result.reason:
        notes = f"Failed: {result.reason}"
    else:
        notes = summarize_output(result.output, result.success)
    # The field must stay on one line
    return " ".join(notes.split())


# =============================================================================
# TEXTUAL PATCHING
# =============================================================================

def apply_result(
    text: str,
    step_number: int,
    result: StepResult,
    now: Optional[datetime] = None
) -> str:
    """
    Patch the plan text with the outcome of one step.

    Args:
        text: Current document text
        step_number: Positional step number (1-indexed)
        result: What happened
        now: Timestamp to record (defaults to the current time)

    Returns:
        The updated document text
    """
    timestamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    notes = notes_for_result(result)

    trailing_newline = text.endswith("\n")
    lines = text.split("\n")
    if trailing_newline:
        lines.pop()

    tokens = [classify(line) for line in lines]
    skip = set(context_body(tokens))
    visible = [(i, token) for i, token in enumerate(tokens) if i not in skip]

    _patch_checkbox(lines, visible, step_number, result)

    blocks = _find_blocks(tokens, visible, step_number)
    if blocks:
        # Bottom-up so inserted lines don't shift the blocks still to patch
        for start, end in reversed(blocks):
            _patch_block(lines, tokens, start, end, result, timestamp, notes)
    else:
        new_block = _render_block(step_number, result, timestamp, notes)
        if _has_notes_section(visible):
            index = _insertion_index(lines, visible)
            insertion = ["", *new_block]
            if index < len(lines) and lines[index].strip():
                insertion.append("")
            lines[index:index] = insertion
        else:
            if lines and lines[-1].strip():
                lines.append("")
            lines.extend([f"## {NOTES_SECTION_TITLE}", "", *new_block])

    updated = "\n".join(lines)
    if trailing_newline:
        updated += "\n"
    return updated


def _patch_checkbox(
    lines: list[str],
    visible: list[tuple[int, Token]],
    step_number: int,
    result: StepResult
) -> None:
    count = 0
    for index, token in visible:
        if token.kind != TokenKind.STEP:
            continue
        count += 1
        if count == step_number:
            lines[index] = replace_checkbox(lines[index], result.status.marker)
            return
    logger.warning("Step %d has no checkbox line; only notes are updated", step_number)


def _find_blocks(
    tokens: list[Token],
    visible: list[tuple[int, Token]],
    step_number: int
) -> list[tuple[int, int]]:
    """Return (header_index, end_index) for every block of this step."""
    blocks = []
    for index, token in visible:
        if token.kind != TokenKind.BLOCK_HEADER or int(token.value) != step_number:
            continue
        end = index + 1
        while end < len(tokens) and tokens[end].kind not in HEADING_KINDS:
            end += 1
        blocks.append((index, end))
    return blocks


def _patch_block(
    lines: list[str],
    tokens: list[Token],
    start: int,
    end: int,
    result: StepResult,
    timestamp: str,
    notes: str
) -> None:
    """
    Rewrite the known fields of one block, leaving other lines alone.

    Fields the block lacks are added after its last field, so the notes,
    run time and retry count always survive the next parse.
    """
    rendered = {
        TokenKind.STATUS_FIELD: render_status(result.status.value),
        TokenKind.LAST_RUN_FIELD: render_last_run(timestamp),
        TokenKind.NOTES_FIELD: render_notes(notes),
        TokenKind.RETRIES_FIELD: render_retries(result.retry_count),
    }
    last_field = start
    seen = set()

    for index in range(start + 1, end):
        kind = tokens[index].kind
        if kind in FIELD_KINDS:
            lines[index] = rendered[kind]
            seen.add(kind)
            last_field = index

    missing = [
        line for kind, line in rendered.items()
        if kind not in seen
        and (kind != TokenKind.RETRIES_FIELD or result.retry_count > 0)
    ]
    lines[last_field + 1:last_field + 1] = missing


def _render_block(
    step_number: int,
    result: StepResult,
    timestamp: str,
    notes: str
) -> list[str]:
    block = [
        render_block_header(step_number),
        render_status(result.status.value),
        render_last_run(timestamp),
        render_notes(notes),
    ]
    if result.retry_count > 0:
        block.append(render_retries(result.retry_count))
    return block


def _has_notes_section(visible: list[tuple[int, Token]]) -> bool:
    return any(
        token.kind == TokenKind.BLOCK_HEADER or is_notes_section_header(token)
        for _, token in visible
    )


def _insertion_index(lines: list[str], visible: list[tuple[int, Token]]) -> int:
    """
    Where a new block goes when the section exists but the step's block
    does not: after the contiguous run that follows the last `## Notes`
    header or `### Step` header, ending at a blank line or the next heading.
    """
    for index, token in reversed(visible):
        if token.kind == TokenKind.BLOCK_HEADER or is_notes_section_header(token):
            insert_at = index + 1
            while (
                insert_at < len(lines)
                and lines[insert_at].strip()
                and classify(lines[insert_at]).kind not in HEADING_KINDS
            ):
                insert_at += 1
            return insert_at
    return len(lines)


# =============================================================================
# FILE OPERATIONS
# =============================================================================

def update_step(
    path: Path,
    step_number: int,
    result: StepResult,
    now: Optional[datetime] = None
) -> None:
    """
    Read the plan file, patch one step, write the whole file back.

    Raises:
        PlanIOError: If the file cannot be read or written
    """
    path = Path(path)
    content = read_plan_text(path, errors="surrogateescape")
    updated = apply_result(content, step_number, result, now=now)
    atomic_write_text(path, updated)
    logger.debug("Recorded step %d as %s in %s", step_number, result.status.value, path)


def atomic_write_text(path: Path, content: str) -> None:
    """
    Write text via temp file + fsync + rename.

    The plan is never left empty or half-written, even on Ctrl+C.
    """
    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(
            tmp_path, "w", encoding=PLAN_ENCODING, errors="surrogateescape", newline=""
        ) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        if tmp_path.exists():
            tmp_path.unlink()
        raise PlanIOError(f"failed to write plan file {path}: {e}") from e


# =============================================================================
# FULL RENDERING
# =============================================================================

def render_plan(plan: Plan) -> str:
    """Render a complete document from a Plan."""
    lines = [f"# Project: {plan.project_name}", ""]

    if plan.context:
        lines += ["## Context", "", plan.context, ""]

    lines += ["## Plan", ""]
    for step in plan.steps:
        lines.append(render_step_line(step.number, step.status.marker, step.description))

    lines += ["", f"## {NOTES_SECTION_TITLE}"]
    for step in plan.steps:
        last_run = step.last_run.strftime(TIMESTAMP_FORMAT) if step.last_run else None
        lines += [
            "",
            render_block_header(step.number),
            render_status(step.status.value),
            render_last_run(last_run),
            render_notes(step.notes),
        ]
        if step.retry_count > 0:
            lines.append(render_retries(step.retry_count))

    return "\n".join(lines) + "\n"


def write_plan(path: Path, plan: Plan) -> None:
    """Write a freshly rendered plan to disk."""
    atomic_write_text(Path(path), render_plan(plan))
