"""
Error taxonomy for ralph-loop.

    PlanIOError            plan document unreadable/unwritable      fatal
    InvocationError        agent could not be launched or read      fatal
    StepTimeoutError       per-step deadline exceeded               retried
    StepInterruptedError   operator abort (Ctrl+C / SIGTERM)        clean stop
    RetryBudgetExhausted   step used up its retries                 skipped

Parsing has no error type: malformed content degrades, it does not fail.
"""


class RalphError(Exception):
    """Base class for ralph-loop errors that are not builtin-derived."""


class PlanIOError(OSError):
    """The plan document could not be read or written."""


class InvocationError(RuntimeError):
    """The agent could not be started or communicated with."""


class StepTimeoutError(TimeoutError):
    """A step ran past its deadline."""

    def __init__(self, step_number: int, timeout: float, description: str):
        self.step_number = step_number
        self.timeout = timeout
        super().__init__(f"Step timed out after {description}")


class StepInterruptedError(RalphError):
    """The operator asked the loop to stop while a step was running."""

    def __init__(self, step_number: int):
        self.step_number = step_number
        super().__init__("Interrupted by user (Ctrl+C)")


class RetryBudgetExhausted(RalphError):
    """A step reached the retry limit and must be skipped."""

    def __init__(self, step_number: int, max_retries: int):
        self.step_number = step_number
        self.max_retries = max_retries
        super().__init__(f"Skipped after {max_retries} failed attempts")
