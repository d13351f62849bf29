"""
Plan document parser for ralph-loop.

WHAT THIS FILE DOES:
-------------------
Turns plan markdown into a Plan. The parser is deliberately lenient: lines
it does not recognise are skipped, so people can annotate the plan freely
without breaking the loop. parse() never raises on content; only
parse_file() can fail, and only because the file could not be read.

HOW IT WORKS:
------------
One top-to-bottom pass over grammar tokens. The scan state (step counter,
context capture, currently open annotation block) lives on a ParserCursor
that is passed through the scan. Annotation blocks are collected by their
declared step number and merged onto steps after the pass; blocks for
steps that have no checkbox line are dropped.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from errors import PlanIOError
from grammar import (
    HEADING_KINDS,
    NO_NOTES,
    NO_TIMESTAMP,
    TIMESTAMP_FORMAT,
    Token,
    TokenKind,
    tokenize,
)
from schemas import Plan, Step, StepStatus

logger = logging.getLogger("ralph.parser")

PLAN_ENCODING = "utf-8"


@dataclass
class Annotation:
    """Fields collected from one `### Step <n>` block."""
    status: str = ""
    last_run: str = ""
    notes: str = ""
    retry_count: int = 0


@dataclass
class ParserCursor:
    """Scan state for a single parse() call."""
    step_counter: int = 0
    in_context: bool = False
    context_captured: bool = False
    context_lines: list[str] = field(default_factory=list)
    open_block: Optional[int] = None
    annotations: dict[int, Annotation] = field(default_factory=dict)

    def open_annotation(self, number: int) -> None:
        self.open_block = number if number > 0 else None
        if self.open_block is not None:
            self.annotations.setdefault(number, Annotation())

    def close_annotation(self) -> None:
        self.open_block = None

    @property
    def current_annotation(self) -> Optional[Annotation]:
        if self.open_block is None:
            return None
        return self.annotations[self.open_block]

    def finish_context(self) -> str:
        self.in_context = False
        self.context_captured = True
        return "\n".join(self.context_lines).strip()


# =============================================================================
# PARSING
# =============================================================================

def read_plan_text(path: Path, errors: str = "replace") -> str:
    """
    Read a plan file as UTF-8 text.

    Bytes that are not valid UTF-8 never fail the read. By default they
    become U+FFFD; the writer asks for "surrogateescape" instead so they
    are written back unchanged.

    Raises:
        PlanIOError: If the file cannot be read
    """
    path = Path(path)
    try:
        return path.read_text(encoding=PLAN_ENCODING, errors=errors)
    except OSError as e:
        raise PlanIOError(f"failed to read plan file {path}: {e}") from e


def parse_file(path: Path) -> Plan:
    """
    Read and parse a plan file.

    Raises:
        PlanIOError: If the file cannot be read
    """
    return parse(read_plan_text(path))


def parse(text: str) -> Plan:
    """Parse plan markdown into a Plan. Never raises on content."""
    plan = Plan(raw_content=text)
    cursor = ParserCursor()

    for token in tokenize(text):
        if cursor.in_context:
            if token.kind in (TokenKind.SECTION_HEADER, TokenKind.CONTEXT_HEADER):
                plan.context = cursor.finish_context()
                # fall through: the header is processed normally below
            else:
                cursor.context_lines.append(token.line)
                continue

        _consume(token, plan, cursor)

    if cursor.in_context:
        # Context ran to the end of the document.
        plan.context = cursor.finish_context()

    _apply_annotations(plan, cursor.annotations)
    return plan


def _consume(token: Token, plan: Plan, cursor: ParserCursor) -> None:
    """Apply one token outside the context block."""
    kind = token.kind

    if kind == TokenKind.TITLE:
        plan.project_name = token.value
        cursor.close_annotation()
        return

    if kind == TokenKind.CONTEXT_HEADER:
        cursor.close_annotation()
        if not cursor.context_captured:
            cursor.in_context = True
        return

    if kind == TokenKind.STEP:
        marker, _label, description = token.groups
        cursor.step_counter += 1
        plan.steps.append(Step(
            number=cursor.step_counter,
            description=(description or "").strip(),
            status=StepStatus.from_marker(marker or " "),
        ))
        return

    if kind == TokenKind.BLOCK_HEADER:
        cursor.open_annotation(int(token.value))
        return

    if kind in HEADING_KINDS:
        cursor.close_annotation()
        return

    annotation = cursor.current_annotation
    if annotation is None:
        return

    if kind == TokenKind.STATUS_FIELD:
        annotation.status = token.value
    elif kind == TokenKind.LAST_RUN_FIELD:
        annotation.last_run = token.value
    elif kind == TokenKind.NOTES_FIELD:
        annotation.notes = token.value
    elif kind == TokenKind.RETRIES_FIELD:
        annotation.retry_count = int(token.value)


def _apply_annotations(plan: Plan, annotations: dict[int, Annotation]) -> None:
    """Merge annotation blocks onto the steps they belong to."""
    for number, annotation in annotations.items():
        step = plan.get_step(number)
        if step is None:
            logger.debug("Dropping annotation block for unknown step %d", number)
            continue

        step.last_run = _parse_timestamp(annotation.last_run)
        if annotation.notes != NO_NOTES:
            step.notes = annotation.notes
        step.retry_count = annotation.retry_count


def _parse_timestamp(value: str) -> Optional[datetime]:
    if not value or value == NO_TIMESTAMP:
        return None
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError:
        logger.debug("Ignoring malformed Last Run value: %r", value)
        return None
