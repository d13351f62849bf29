"""
Orchestration loop for ralph-loop.

WHAT THIS FILE DOES:
-------------------
Runs the plan one step at a time until every step is completed or skipped,
the operator interrupts, or something fatal happens.

STATE MACHINE:
-------------
    LoadPlan -> SelectStep -> Done
                           -> Skip -> LoadPlan              (retry budget used up)
                           -> [Backoff] -> Invoke -> Evaluate -> Persist -> LoadPlan

    Interrupted is reachable from Backoff and Invoke and ends the run.

The plan is re-read from disk at the top of every iteration, so edits made
by hand (or by the agent) between steps are always respected. The file on
disk is the only state carried from one iteration to the next.

FAILURE HANDLING:
----------------
    timeout         -> step failed, retry count +1, loop continues
    no sentinel     -> step failed, retry count +1, loop continues
    Ctrl+C/SIGTERM  -> step failed, retry count unchanged, run ends cleanly
    launch error    -> propagated, plan untouched
    plan I/O error  -> propagated
"""

import asyncio
import logging
import signal
from enum import Enum
from pathlib import Path
from typing import Optional

import ui
from agents import Agent, ConsoleSink
from alerts import AlertManager
from config import LoopConfig, MonitorConfig, format_duration
from errors import RetryBudgetExhausted, StepInterruptedError, StepTimeoutError
from monitor import OutputMonitor, OutputSink
from plan_parser import parse_file
from plan_writer import update_step
from prompts import build_prompt, parse_result
from schemas import Step, StepResult, StepStatus

logger = logging.getLogger("ralph.runner")

INTERRUPTED_OUTPUT = "Interrupted by user"


class RunOutcome(str, Enum):
    """How a run ended (fatal errors are raised instead)."""
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


class LoopRunner:
    """
    Drives an agent through a plan file.

    Usage:
        runner = LoopRunner(get_agent("claude"), Path("plan.md"))
        outcome = await runner.run()
    """

    def __init__(
        self,
        agent: Agent,
        plan_path: Path,
        config: Optional[LoopConfig] = None,
        monitor_config: Optional[MonitorConfig] = None,
        alerts: Optional[AlertManager] = None,
        sink: Optional[OutputSink] = None,
    ):
        self.agent = agent
        self.plan_path = Path(plan_path)
        self.config = config or LoopConfig()
        self.alerts = alerts

        monitor_config = monitor_config or MonitorConfig()
        self.monitor = OutputMonitor(
            sink or ConsoleSink(),
            alerts=alerts,
            stall_seconds=monitor_config.stall_seconds,
            check_interval=monitor_config.check_interval,
        )

        self._stop = asyncio.Event()

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def run(self) -> RunOutcome:
        """Run the loop with SIGINT/SIGTERM turned into a graceful stop."""
        loop = asyncio.get_running_loop()
        installed = []
        previous = {}

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal)
                installed.append(sig)
            except NotImplementedError:
                # No loop signal support on this platform
                previous[sig] = signal.signal(
                    sig, lambda *_: loop.call_soon_threadsafe(self._on_signal)
                )

        try:
            return await self.run_loop()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def request_stop(self) -> None:
        """Ask the loop to stop at the next opportunity."""
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def _on_signal(self) -> None:
        if not self._stop.is_set():
            ui.console.print()
            ui.show_warning("Received interrupt signal. Shutting down gracefully...")
        self.request_stop()

    # =========================================================================
    # MAIN LOOP
    # =========================================================================

    async def run_loop(self) -> RunOutcome:
        """
        Execute steps until the plan is done or the run is interrupted.

        Raises:
            PlanIOError: If the plan cannot be read or written
            InvocationError: If the agent cannot be launched
        """
        while True:
            if self._stop.is_set():
                logger.info("Stop requested; leaving the loop")
                return RunOutcome.INTERRUPTED

            plan = parse_file(self.plan_path)
            step = plan.next_step()
            if step is None:
                ui.console.print()
                ui.show_success("All steps completed!")
                return RunOutcome.COMPLETED

            try:
                self.check_retry_budget(step)
            except RetryBudgetExhausted as e:
                self._skip(step, e)
                continue

            if step.status == StepStatus.FAILED and step.retry_count > 0:
                delay = self.calculate_backoff(step.retry_count)
                ui.show_backoff(
                    format_duration(delay), step.retry_count + 1, self.config.max_retries
                )
                if await self._wait_for_stop(delay):
                    logger.info("Interrupted during backoff before step %d", step.number)
                    return RunOutcome.INTERRUPTED

            ui.show_step_start(step, self.config.max_retries)
            prompt = build_prompt(plan, step)

            try:
                output = await self._invoke(step, prompt)
            except StepTimeoutError as e:
                ui.console.print()
                ui.show_warning(
                    f"Step {step.number} timed out after {format_duration(self.config.timeout)}"
                )
                self._record(step, StepResult(
                    success=False,
                    reason=str(e),
                    retry_count=step.retry_count + 1,
                ))
                continue
            except StepInterruptedError as e:
                self._save_interrupted(step, e)
                return RunOutcome.INTERRUPTED

            result = parse_result(output)
            if result.success:
                result.retry_count = step.retry_count
            else:
                result.retry_count = step.retry_count + 1

            self._record(step, result)
            ui.show_step_result(
                step.number,
                result.success,
                result.reason,
                result.retry_count,
                self.config.max_retries,
            )

    # =========================================================================
    # POLICY
    # =========================================================================

    def calculate_backoff(self, retry_count: int) -> float:
        """Seconds to wait before attempt retry_count + 1."""
        exponent = max(retry_count - 1, 0)
        return self.config.retry_delay * self.config.backoff_factor ** exponent

    def check_retry_budget(self, step: Step) -> None:
        """Raise RetryBudgetExhausted if the step may not run again."""
        if step.retry_count >= self.config.max_retries:
            raise RetryBudgetExhausted(step.number, self.config.max_retries)

    async def _wait_for_stop(self, delay: float) -> bool:
        """Sleep for delay seconds; True if a stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    # =========================================================================
    # INVOCATION
    # =========================================================================

    async def _invoke(self, step: Step, prompt: str) -> str:
        """
        Run the agent under the step deadline, watching for a stop request.

        Raises:
            StepTimeoutError: The deadline passed first
            StepInterruptedError: A stop was requested first
            InvocationError: The agent could not be launched
        """
        self.monitor.reset()

        async with self.monitor:
            agent_task = asyncio.create_task(self.agent.run(prompt, self.monitor))
            stop_task = asyncio.create_task(self._stop.wait())
            try:
                done, _ = await asyncio.wait(
                    {agent_task, stop_task},
                    timeout=self.config.timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                stop_task.cancel()
                if not agent_task.done():
                    await _cancel(agent_task)

        if agent_task in done:
            return agent_task.result()

        if stop_task in done:
            raise StepInterruptedError(step.number)

        raise StepTimeoutError(
            step.number, self.config.timeout, format_duration(self.config.timeout)
        )

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _record(self, step: Step, result: StepResult) -> None:
        update_step(self.plan_path, step.number, result)
        logger.info(
            "Step %d -> %s (retries: %d)", step.number, result.status.value, result.retry_count
        )

    def _skip(self, step: Step, exhausted: RetryBudgetExhausted) -> None:
        ui.console.print()
        ui.show_warning(
            f"Step {step.number} exceeded max retries ({exhausted.max_retries}). "
            "Marking as skipped."
        )
        self._record(step, StepResult(
            success=False,
            reason=str(exhausted),
            status_override=StepStatus.SKIPPED,
            retry_count=step.retry_count,
        ))
        if self.alerts:
            self.alerts.warning(f"Step {step.number} skipped", str(exhausted))

    def _save_interrupted(self, step: Step, interrupted: StepInterruptedError) -> None:
        ui.console.print()
        ui.show_info(f"Saving state for Step {step.number} before exit...")
        self._record(step, StepResult(
            success=False,
            output=INTERRUPTED_OUTPUT,
            reason=str(interrupted),
            retry_count=step.retry_count,
        ))
        ui.show_success("State saved. Run ralph again to continue.")


async def _cancel(task: asyncio.Task) -> None:
    """Cancel a task and wait for it to finish unwinding."""
    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Agent task failed while being cancelled: %r", task.exception())
