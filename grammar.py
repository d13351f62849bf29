"""
Line grammar for plan documents.

Every line of a plan document is classified into exactly one token kind.
The patterns are compiled once at import; the parser and the writer both
work from the same classification, so there is a single definition of what
a step line or an annotation field looks like.

    # Project: <name>                     TITLE
    ## Context                            CONTEXT_HEADER
    ## <word...>                          SECTION_HEADER
    - [ ] Step 1: <description>           STEP          (marker in " x!-")
    ### Step <n>                          BLOCK_HEADER
    **Status**: <word>                    STATUS_FIELD
    **Last Run**: <YYYY-MM-DD HH:MM:SS>   LAST_RUN_FIELD
    **Notes**: <text>                     NOTES_FIELD
    **Retries**: <n>                      RETRIES_FIELD
    #... (any other heading)              HEADING
    anything else                         TEXT
"""

import re
from enum import Enum
from typing import NamedTuple, Optional


class TokenKind(Enum):
    TITLE = "title"
    CONTEXT_HEADER = "context_header"
    SECTION_HEADER = "section_header"
    STEP = "step"
    BLOCK_HEADER = "block_header"
    STATUS_FIELD = "status_field"
    LAST_RUN_FIELD = "last_run_field"
    NOTES_FIELD = "notes_field"
    RETRIES_FIELD = "retries_field"
    HEADING = "heading"
    TEXT = "text"


# Order matters: the first matching pattern wins.
PATTERNS: list[tuple[TokenKind, "re.Pattern[str]"]] = [
    (TokenKind.TITLE, re.compile(r"^#\s+Project:\s+(.+)$")),
    (TokenKind.CONTEXT_HEADER, re.compile(r"^##\s+Context\s*$")),
    (TokenKind.SECTION_HEADER, re.compile(r"^##\s+(\w.*)$")),
    (TokenKind.STEP, re.compile(r"^-\s+\[([ x!\-])\]\s+(?:Step\s+(\d+):\s+)?(.+)$")),
    (TokenKind.BLOCK_HEADER, re.compile(r"^###\s+Step\s+(\d+)\s*$")),
    (TokenKind.STATUS_FIELD, re.compile(r"^\*\*Status\*\*:\s+(\w+)\s*$")),
    (TokenKind.LAST_RUN_FIELD, re.compile(r"^\*\*Last Run\*\*:\s+(.+)$")),
    (TokenKind.NOTES_FIELD, re.compile(r"^\*\*Notes\*\*:\s+(.*)$")),
    (TokenKind.RETRIES_FIELD, re.compile(r"^\*\*Retries\*\*:\s+(\d+)\s*$")),
    (TokenKind.HEADING, re.compile(r"^#")),
]

CHECKBOX_PATTERN = re.compile(r"\[([ x!\-])\]")

HEADING_KINDS = frozenset({
    TokenKind.TITLE,
    TokenKind.CONTEXT_HEADER,
    TokenKind.SECTION_HEADER,
    TokenKind.BLOCK_HEADER,
    TokenKind.HEADING,
})

FIELD_KINDS = frozenset({
    TokenKind.STATUS_FIELD,
    TokenKind.LAST_RUN_FIELD,
    TokenKind.NOTES_FIELD,
    TokenKind.RETRIES_FIELD,
})

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
NO_TIMESTAMP = "N/A"
NO_NOTES = "(none)"
NOTES_SECTION_TITLE = "Notes"

# Transcript sentinels emitted by the agent
SENTINEL_COMPLETE = "STEP_COMPLETE"
SENTINEL_FAILED = "STEP_FAILED:"


class Token(NamedTuple):
    kind: TokenKind
    line: str
    groups: tuple[Optional[str], ...] = ()

    @property
    def value(self) -> str:
        """The first captured group, stripped ("" if none)."""
        if self.groups and self.groups[0] is not None:
            return self.groups[0].strip()
        return ""


def classify(line: str) -> Token:
    """Classify a single line (without its newline)."""
    for kind, pattern in PATTERNS:
        match = pattern.match(line)
        if match:
            return Token(kind, line, match.groups())
    return Token(TokenKind.TEXT, line)


def tokenize(text: str) -> list[Token]:
    """Classify every line of a document."""
    return [classify(line) for line in text.splitlines()]


def is_notes_section_header(token: Token) -> bool:
    """True for the `## Notes` header that holds annotation blocks."""
    return (
        token.kind == TokenKind.SECTION_HEADER
        and token.value.split()[0] == NOTES_SECTION_TITLE
    )


def is_sentinel_line(line: str) -> bool:
    stripped = line.strip()
    return stripped.startswith(SENTINEL_COMPLETE) or stripped.startswith(SENTINEL_FAILED)


def context_body(tokens: list[Token]) -> range:
    """
    Indices of the lines captured as project context.

    Only the first `## Context` block counts; it ends at the next `##`
    header or at the end of the document.
    """
    for start, token in enumerate(tokens):
        if token.kind != TokenKind.CONTEXT_HEADER:
            continue
        for end in range(start + 1, len(tokens)):
            if tokens[end].kind in (TokenKind.SECTION_HEADER, TokenKind.CONTEXT_HEADER):
                return range(start + 1, end)
        return range(start + 1, len(tokens))
    return range(0)


# =============================================================================
# LINE RENDERING
# =============================================================================

def render_step_line(number: int, marker: str, description: str) -> str:
    return f"- [{marker}] Step {number}: {description}"


def render_block_header(number: int) -> str:
    return f"### Step {number}"


def render_status(status: str) -> str:
    return f"**Status**: {status}"


def render_last_run(timestamp: Optional[str]) -> str:
    return f"**Last Run**: {timestamp or NO_TIMESTAMP}"


def render_notes(notes: str) -> str:
    return f"**Notes**: {notes or NO_NOTES}"


def render_retries(count: int) -> str:
    return f"**Retries**: {count}"


def replace_checkbox(line: str, marker: str) -> str:
    """Swap the first checkbox marker on a step line."""
    return CHECKBOX_PATTERN.sub(f"[{marker}]", line, count=1)
