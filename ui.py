"""
Rich terminal UI components for ralph-loop.

WHY THIS FILE EXISTS:
--------------------
The loop narrates what it is doing (which step, retries, waits, results)
between stretches of raw agent output. Keeping that narration here gives it
one consistent look and keeps print calls out of the loop logic.

COMPONENTS:
----------
- show_header() - Run banner
- show_success() / show_error() / show_warning() / show_info() - One-liners
- show_run_settings() - Agent, plan and policy before a run starts
- show_step_start() / show_step_result() - Per-step banners
- show_plan_status() - The `ralph status` report
"""

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from schemas import Plan, Step, StepStatus

# Global console instance for consistent output
console = Console()


# =============================================================================
# COLOR SCHEMES
# =============================================================================

STATUS_COLORS = {
    StepStatus.COMPLETED: "green",
    StepStatus.PENDING: "dim",
    StepStatus.FAILED: "red",
    StepStatus.SKIPPED: "yellow",
}

STATUS_ICONS = {
    StepStatus.COMPLETED: "✓",
    StepStatus.PENDING: "○",
    StepStatus.FAILED: "✗",
    StepStatus.SKIPPED: "⊘",
}


# =============================================================================
# HEADER/SECTION UTILITIES
# =============================================================================

def show_header(title: str, subtitle: str = "") -> None:
    """Display a styled header."""
    console.print()
    console.rule(f"[bold blue]{title}[/bold blue]")
    if subtitle:
        console.print(f"[dim]{subtitle}[/dim]", justify="center")
    console.print()


def show_success(message: str) -> None:
    """Display a success message."""
    console.print(f"[green]✓[/green] {message}")


def show_error(message: str) -> None:
    """Display an error message."""
    console.print(f"[red]✗[/red] {message}")


def show_warning(message: str) -> None:
    """Display a warning message."""
    console.print(f"[yellow]⚠[/yellow] {message}")


def show_info(message: str) -> None:
    """Display an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")


# =============================================================================
# LOOP NARRATION
# =============================================================================

def show_run_settings(
    agent_name: str,
    plan_path: str,
    timeout: str,
    max_retries: int,
    retry_delay: str,
    backoff_factor: float
) -> None:
    """Display what the loop is about to run with."""
    show_header("ralph-loop", "One agent session per plan step")
    console.print(f"[bold]Agent:[/bold] {agent_name}")
    console.print(f"[bold]Plan:[/bold] {plan_path}")
    console.print(
        f"[bold]Policy:[/bold] timeout {timeout}, {max_retries} retries, "
        f"delay {retry_delay} x{backoff_factor:g}"
    )
    console.print("[dim]Press Ctrl+C to stop after saving the current step.[/dim]")


def show_step_start(step: Step, max_retries: int) -> None:
    """Banner printed before the agent starts on a step."""
    console.print()
    console.rule(f"[bold cyan]Running Step {step.number}: {escape(step.description)}[/bold cyan]")
    if step.status == StepStatus.FAILED:
        console.print(
            f"[yellow](Retry attempt {step.retry_count + 1} of {max_retries})[/yellow]"
        )
    console.print()


def show_backoff(seconds: str, attempt: int, max_retries: int) -> None:
    show_info(f"Waiting {seconds} before retry (attempt {attempt} of {max_retries})...")


def show_step_result(step_number: int, success: bool, reason: str,
                     retry_count: int, max_retries: int) -> None:
    """Outcome line after a step run has been recorded."""
    console.print()
    if success:
        show_success(f"Step {step_number} completed successfully")
        return

    show_error(f"Step {step_number} failed: {escape(reason)}")
    if retry_count < max_retries:
        console.print(f"  Will retry (attempt {retry_count + 1} of {max_retries})...")
    else:
        console.print(
            f"  Max retries reached ({max_retries}). "
            "Step will be skipped on next iteration."
        )


# =============================================================================
# PLAN STATUS DISPLAY
# =============================================================================

def format_summary(plan: Plan) -> str:
    """One-line status breakdown."""
    counts = plan.status_counts()
    return (
        f"Summary: {counts[StepStatus.COMPLETED]} completed, "
        f"{counts[StepStatus.FAILED]} failed, "
        f"{counts[StepStatus.SKIPPED]} skipped, "
        f"{counts[StepStatus.PENDING]} pending"
    )


def show_plan_status(plan: Plan) -> None:
    """
    Display a plan the way `ralph status` reports it.

    Args:
        plan: The Plan to display
    """
    show_header(f"Project: {escape(plan.project_name) or '(untitled)'}")

    if plan.context:
        console.print("[bold]Context:[/bold]")
        console.print(plan.context, markup=False)
        console.print()

    if not plan.steps:
        console.print("[dim]No steps found in plan.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("#", justify="right", style="cyan", width=3)
    table.add_column("Status")
    table.add_column("Step")
    table.add_column("Retries", justify="right", style="dim")

    for step in plan.steps:
        color = STATUS_COLORS[step.status]
        icon = STATUS_ICONS[step.status]
        table.add_row(
            str(step.number),
            f"[{color}]{icon} {step.status.value}[/{color}]",
            escape(step.description),
            str(step.retry_count) if step.retry_count else "-",
        )

    console.print(table)
    console.print()
    console.print(format_summary(plan))

    next_step = plan.next_step()
    if plan.is_complete():
        show_success("All steps completed!")
    elif next_step:
        console.print(f"\n[bold]Next step:[/bold] Step {next_step.number} - {escape(next_step.description)}")
