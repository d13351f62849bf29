"""
Coding-agent invocation for ralph-loop.

WHAT THIS FILE DOES:
-------------------
Runs one external coding-agent CLI for one step and hands back everything
it printed. The loop only sees the Agent interface:

    transcript = await agent.run(prompt, output)

`output` receives the live stream (normally the OutputMonitor wrapping the
console); the return value is the full transcript used for sentinel
evaluation.

SUPPORTED AGENTS:
----------------
- claude:   claude -p --dangerously-skip-permissions [--model M] <prompt>
- opencode: opencode run --format json [-m M] <prompt>
- codex:    codex <prompt>   (needs OPENAI_API_KEY)

All agents run with stdin closed so they cannot block on a keyboard read.
A non-zero exit code is not an error here: whether the step worked is
decided by the sentinels in the transcript.
"""

import asyncio
import contextlib
import logging
import os
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from errors import InvocationError
from monitor import OutputSink

logger = logging.getLogger("ralph.agents")

# Longest single line we accept from an agent
MAX_LINE_BYTES = 1024 * 1024

# Seconds between SIGTERM and SIGKILL when a run is cancelled
KILL_GRACE_SECONDS = 5.0

NONINTERACTIVE_ENV = {
    "CI": "true",
    "NONINTERACTIVE": "1",
}


class ConsoleSink:
    """Writes agent output straight to stdout."""

    def write(self, text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()


class Transcript:
    """
    Output shared by the stdout and stderr readers.

    Both readers append through the same lock, so a chunk is never split
    and the live sink sees chunks in the order they were recorded.
    """

    def __init__(self, sink: OutputSink):
        self.sink = sink
        self._chunks: list[str] = []
        self._lock = asyncio.Lock()

    async def append(self, text: str) -> None:
        async with self._lock:
            self._chunks.append(text)
            self.sink.write(text)

    def text(self) -> str:
        return "".join(self._chunks)


# =============================================================================
# BASE AGENT
# =============================================================================

class Agent(ABC):
    """
    Base class for coding agents.

    All agents must implement:
    - name: short identifier shown to the operator
    - run(): execute a prompt, streaming output, returning the transcript
    """

    name: str = "agent"

    @abstractmethod
    async def run(self, prompt: str, output: OutputSink) -> str:
        """
        Run the agent on a prompt.

        Args:
            prompt: Full step prompt
            output: Live sink for everything the agent prints

        Returns:
            The full transcript

        Raises:
            InvocationError: If the agent could not be started or read
            asyncio.CancelledError: If the run was cancelled (the process
                is terminated first)
        """
        pass


class SubprocessAgent(Agent):
    """An agent that is an external CLI process."""

    executable: str = ""
    extra_env: dict[str, str] = {}

    def __init__(self, model: Optional[str] = None, cwd: Optional[Path] = None):
        self.model = model
        self.cwd = cwd

    @abstractmethod
    def build_command(self, prompt: str) -> list[str]:
        """Full argv for running this prompt."""
        pass

    def build_env(self) -> dict[str, str]:
        return {**os.environ, **self.extra_env}

    def preflight(self) -> None:
        """Check prerequisites before launching. Raises InvocationError."""

    async def run(self, prompt: str, output: OutputSink) -> str:
        self.preflight()
        cmd = self.build_command(prompt)

        output.write(f"[ralph] Starting {self.name} agent...\n")
        logger.debug("Launching %s", cmd[0])

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                cwd=str(self.cwd) if self.cwd else None,
                limit=MAX_LINE_BYTES,
            )
        except OSError as e:
            raise InvocationError(f"failed to start {self.name}: {e}") from e

        output.write(f"[ralph] {self.name} started (PID: {proc.pid})\n")

        transcript = Transcript(output)
        readers = asyncio.gather(
            _pump(proc.stdout, transcript),
            _pump(proc.stderr, transcript),
        )

        try:
            # Both streams are drained before the exit status is read, so
            # output flushed right at exit is not lost.
            await readers
            returncode = await proc.wait()
        except asyncio.CancelledError:
            readers.cancel()
            await _terminate(proc)
            output.write(f"[ralph] {self.name} cancelled\n")
            raise
        except ValueError as e:
            readers.cancel()
            await _terminate(proc)
            raise InvocationError(
                f"{self.name} output line exceeded {MAX_LINE_BYTES} bytes"
            ) from e

        if returncode == 0:
            output.write(f"[ralph] {self.name} completed\n")
        else:
            output.write(f"[ralph] {self.name} exited with code {returncode}\n")
        logger.debug("%s exited with %d", self.name, returncode)

        return transcript.text()


async def _pump(stream: asyncio.StreamReader, transcript: Transcript) -> None:
    """Copy one pipe into the transcript, line by line, until EOF."""
    while True:
        line = await stream.readline()
        if not line:
            return
        await transcript.append(line.decode("utf-8", errors="replace"))


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """SIGTERM, then SIGKILL if the process hangs on."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Agent (PID %d) ignored SIGTERM; killing it", proc.pid)
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


# =============================================================================
# CONCRETE AGENTS
# =============================================================================

class ClaudeAgent(SubprocessAgent):
    """Claude Code in print mode with permission prompts disabled."""

    name = "claude"
    executable = "claude"
    extra_env = NONINTERACTIVE_ENV

    def build_command(self, prompt: str) -> list[str]:
        cmd = [self.executable, "-p", "--dangerously-skip-permissions"]
        if self.model:
            cmd += ["--model", self.model]
        cmd.append(prompt)
        return cmd


class OpencodeAgent(SubprocessAgent):
    """OpenCode's non-interactive `run` mode with JSON output."""

    name = "opencode"
    executable = "opencode"
    extra_env = NONINTERACTIVE_ENV

    def build_command(self, prompt: str) -> list[str]:
        cmd = [self.executable, "run", "--format", "json"]
        if self.model:
            cmd += ["-m", self.model]
        cmd.append(prompt)
        return cmd


class CodexAgent(SubprocessAgent):
    """OpenAI Codex CLI."""

    name = "codex"
    executable = "codex"

    def preflight(self) -> None:
        if not os.environ.get("OPENAI_API_KEY"):
            raise InvocationError("codex requires OPENAI_API_KEY but it's not set")

    def build_command(self, prompt: str) -> list[str]:
        return [self.executable, prompt]


# =============================================================================
# AGENT FACTORY
# =============================================================================

AGENT_TYPES: dict[str, type[SubprocessAgent]] = {
    "claude": ClaudeAgent,
    "opencode": OpencodeAgent,
    "codex": CodexAgent,
}


def parse_agent_type(name: str) -> str:
    """
    Normalise an agent name.

    Raises:
        ValueError: If the name is not a known agent
    """
    normalized = name.strip().lower()
    if normalized not in AGENT_TYPES:
        raise ValueError(
            f"Unknown agent type: '{name}'. "
            f"Must be one of: {', '.join(AGENT_TYPES)}"
        )
    return normalized


def get_agent(name: str, model: Optional[str] = None, cwd: Optional[Path] = None) -> Agent:
    """Create an agent by name."""
    return AGENT_TYPES[parse_agent_type(name)](model=model, cwd=cwd)
