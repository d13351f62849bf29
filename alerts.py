"""
Alert system for ralph-loop.
Boxed terminal warnings for the operator, plus optional macOS notifications.
"""

import logging
import subprocess
from typing import Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

logger = logging.getLogger("ralph.alerts")

BOX_WIDTH = 78
ALERT_STYLE = "bold yellow"
NOTIFICATION_TITLE = "ralph-loop"


class AlertManager:
    """Shows operator-facing alerts while the loop runs unattended."""

    def __init__(
        self,
        terminal: bool = True,
        macos: bool = False,
        console: Optional[Console] = None
    ):
        self.terminal_enabled = terminal
        self.macos_enabled = macos
        self.console = console or Console()

    def _boxed(self, title: str, body: Text):
        self.console.print()
        self.console.print(Panel(
            body,
            title=f"[{ALERT_STYLE}]{title}[/{ALERT_STYLE}]",
            title_align="left",
            border_style=ALERT_STYLE,
            box=box.DOUBLE,
            width=BOX_WIDTH,
        ))
        self.console.print()
        self.console.bell()

    def _notify(self, subtitle: str, message: str, sound: bool):
        """Post a desktop notification through osascript."""
        subtitle = subtitle.replace('"', '\\"')
        message = message.replace('"', '\\"')

        script = (
            f'display notification "{message}" '
            f'with title "{NOTIFICATION_TITLE}" subtitle "{subtitle}"'
        )
        if sound:
            script += '\nbeep'

        try:
            subprocess.run(["osascript", "-e", script], capture_output=True, timeout=5)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("Could not send macOS notification: %s", e)

    def _emit(self, title: str, body: Text, summary: str, sound: bool):
        if self.terminal_enabled:
            self._boxed(title, body)
        if self.macos_enabled:
            self._notify(title, summary, sound)

    # =========================================================================
    # AGENT SUPERVISION ALERTS
    # =========================================================================

    def input_warning(self, context_lines: list[str]):
        """The agent printed something that looks like an interactive prompt."""
        self._advisory(
            "WARNING: Agent is asking for user input!",
            "The agent should be running autonomously without prompts.",
            "AGENT IS ASKING:",
            context_lines,
        )

    def stall_warning(self, context_lines: list[str], silent_for: float):
        """The agent has been silent for a suspiciously long time."""
        self._advisory(
            f"WARNING: No output for {int(silent_for)}+ seconds - agent may be stalled!",
            "The agent might be waiting for input or processing a large task.",
            "LAST OUTPUT:",
            context_lines,
        )

    def _advisory(self, title: str, explanation: str, label: str, context_lines: list[str]):
        body = Text()
        body.append(f"{explanation}\n")
        body.append("Press Ctrl+C to cancel - the step will be retried automatically.\n\n")
        body.append(f"{label}\n", style="bold")
        for line in context_lines:
            body.append(f"  {line}\n")
        body.rstrip()
        self._emit(title, body, explanation, sound=True)

    def warning(self, title: str, message: str = ""):
        """One-off warning, e.g. a step skipped after exhausting its retries."""
        text = message or title
        self._emit(title, Text(text), text, sound=False)
