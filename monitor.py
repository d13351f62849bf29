"""
Output Monitor for ralph-loop.

WHAT THIS FILE DOES:
-------------------
Sits between the agent and the terminal while a step runs. Every chunk of
agent output passes through write() on its way to the real sink; complete
lines are kept in a small trailing buffer and checked against a list of
"the agent is asking me something" heuristics.

Two things raise an advisory:
1. A line that looks like an interactive prompt ("[y/n]", "press enter",
   "are you sure", ...).
2. Silence: no line for stall_seconds, found by a periodic background check.

At most one advisory is shown per step. The monitor never changes what
happens to the step; it only tells the operator that Ctrl+C might be a
good idea.
"""

import asyncio
import logging
import re
import threading
import time
from collections import deque
from typing import Callable, Optional, Protocol

from alerts import AlertManager

logger = logging.getLogger("ralph.monitor")

MAX_RECENT_LINES = 10
CONTEXT_LINES = 5
NO_CONTEXT = "(no context available)"

DEFAULT_STALL_SECONDS = 30.0
DEFAULT_CHECK_INTERVAL = 10.0

PROMPT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\[y/n\]",
        r"\[yes/no\]",
        r"press enter",
        r"press any key",
        r"do you want to (continue|proceed|confirm)",
        r"would you like to",
        r"are you sure",
        r"confirm\?",
        r"proceed\?",
        r"continue\?",
        r"^\s*\?\s+",
        r"waiting for (input|response|confirmation)",
        r"enter .* to continue",
        r"type .* to confirm",
    )
]


def looks_like_prompt(line: str) -> bool:
    """True if the line matches any interactive-prompt heuristic."""
    return any(pattern.search(line) for pattern in PROMPT_PATTERNS)


class OutputSink(Protocol):
    """Anything that accepts chunks of agent output."""

    def write(self, text: str) -> None: ...


class OutputMonitor:
    """
    Output sink wrapper that watches for prompts and stalls.

    Usage:
        monitor = OutputMonitor(sink, alerts)
        monitor.reset()
        async with monitor:
            transcript = await agent.run(prompt, monitor)
    """

    def __init__(
        self,
        sink: OutputSink,
        alerts: Optional[AlertManager] = None,
        stall_seconds: float = DEFAULT_STALL_SECONDS,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sink = sink
        self.alerts = alerts
        self.stall_seconds = stall_seconds
        self.check_interval = check_interval
        self._clock = clock

        self._lock = threading.Lock()
        self._recent: deque[str] = deque(maxlen=MAX_RECENT_LINES)
        self._partial = ""
        self._last_line_at = clock()
        self._warned = False
        self._task: Optional[asyncio.Task] = None

    @property
    def warned(self) -> bool:
        """Whether an advisory has fired for the current step."""
        return self._warned

    def reset(self) -> None:
        """Forget everything about the previous step."""
        with self._lock:
            self._recent.clear()
            self._partial = ""
            self._last_line_at = self._clock()
            self._warned = False

    # =========================================================================
    # STREAM
    # =========================================================================

    def write(self, text: str) -> None:
        """Forward output to the sink and inspect every completed line."""
        self.sink.write(text)

        with self._lock:
            self._partial += text
            *complete, self._partial = self._partial.split("\n")
            for line in complete:
                self._observe(line)

    def flush(self) -> None:
        """Treat any buffered partial line as complete."""
        with self._lock:
            if self._partial:
                line, self._partial = self._partial, ""
                self._observe(line)

    def _observe(self, line: str) -> None:
        # Caller holds the lock
        line = line.rstrip("\r")
        if not line.strip():
            return

        self._recent.append(line)
        self._last_line_at = self._clock()

        if not self._warned and looks_like_prompt(line.strip()):
            self._warned = True
            logger.info("Agent output looks like an interactive prompt: %r", line)
            if self.alerts:
                self.alerts.input_warning(self._context())

    def question_context(self) -> list[str]:
        """Up to the last 5 non-empty lines, for showing in an advisory."""
        with self._lock:
            return self._context()

    def _context(self) -> list[str]:
        lines = [line for line in self._recent if line.strip()]
        return lines[-CONTEXT_LINES:] or [NO_CONTEXT]

    # =========================================================================
    # STALL DETECTION
    # =========================================================================

    def check_stall(self) -> bool:
        """
        Raise the stall advisory if the agent has been quiet too long.

        Returns:
            True if an advisory was raised by this call
        """
        with self._lock:
            if self._warned:
                return False
            silent_for = self._clock() - self._last_line_at
            if silent_for < self.stall_seconds:
                return False
            self._warned = True
            context = self._context()

        logger.info("No agent output for %.0fs", silent_for)
        if self.alerts:
            self.alerts.stall_warning(context, self.stall_seconds)
        return True

    async def _watch(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            self.check_stall()

    async def start(self) -> None:
        """Start the periodic stall check."""
        if self._task is None:
            self._task = asyncio.create_task(self._watch())

    async def stop(self) -> None:
        """Stop the periodic stall check."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> "OutputMonitor":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.flush()
        await self.stop()
