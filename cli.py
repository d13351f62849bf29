#!/usr/bin/env python3
"""
ralph-loop CLI - run a coding agent through a markdown plan, one step at a time.

USAGE:
------
  ralph init                          - Create plan.md from the default template
  ralph init --project X --step ...   - Create a plan with the given steps
  ralph init --config                 - Also write a starter ralph.yaml
  ralph run                           - Work through plan.md with claude
  ralph run -a codex -p tasks.md      - Different agent and plan file
  ralph status                        - Show progress of plan.md

WORKFLOW:
--------
  1. Write the plan (project, context, checkbox steps)
  2. `ralph run` - each step runs in a fresh agent session
  3. Ctrl+C at any time; `ralph run` again picks up where it stopped
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import yaml

import ui
from agents import get_agent, parse_agent_type
from alerts import AlertManager
from config import (
    Config,
    format_duration,
    get_default_config,
    load_config,
    parse_duration,
    save_config,
)
from errors import InvocationError, PlanIOError
from plan_parser import parse_file
from runner import LoopRunner, RunOutcome
from templates import create_template, create_template_with_steps

logger = logging.getLogger("ralph.cli")

VERSION = "0.1.0"


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show debug logging on stderr"
    )

    parser = argparse.ArgumentParser(
        prog="ralph",
        description="Run a coding agent through a markdown plan, one step at a time",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ralph init
  ralph run
  ralph run -a opencode -m anthropic/claude-sonnet-4 -t 45m
  ralph status -p tasks.md
        """
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"ralph-loop {VERSION}"
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    # run
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Execute the plan step by step"
    )
    run_parser.add_argument(
        "-p", "--plan",
        type=Path,
        help="Plan file (default: plan.md)"
    )
    run_parser.add_argument(
        "-a", "--agent",
        help="Agent to use: claude, opencode, codex (default: claude)"
    )
    run_parser.add_argument(
        "-m", "--model",
        help="Model passed through to the agent"
    )
    run_parser.add_argument(
        "-t", "--timeout",
        type=parse_duration,
        help="Per-step timeout, e.g. 30m (default: 30m)"
    )
    run_parser.add_argument(
        "-r", "--max-retries",
        type=int,
        help="Attempts per step before it is skipped (default: 3)"
    )
    run_parser.add_argument(
        "--retry-delay",
        type=parse_duration,
        help="Delay before the first retry, e.g. 5s (default: 5s)"
    )
    run_parser.add_argument(
        "--backoff-factor",
        type=float,
        help="Multiplier applied to the delay on each retry (default: 2.0)"
    )
    run_parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Config file (default: ~/.ralph/config.yaml, ./ralph.yaml)"
    )

    # init
    init_parser = subparsers.add_parser(
        "init",
        parents=[common],
        help="Create a new plan file"
    )
    init_parser.add_argument(
        "-o", "--output",
        type=Path,
        default=Path("plan.md"),
        help="Where to write the plan (default: plan.md)"
    )
    init_parser.add_argument(
        "--project",
        help="Project name (used with --step)"
    )
    init_parser.add_argument(
        "--step",
        action="append",
        dest="steps",
        metavar="TEXT",
        help="Add a step; repeat for several steps"
    )
    init_parser.add_argument(
        "--context",
        help="Project context (used with --step)"
    )
    init_parser.add_argument(
        "--config",
        dest="write_config",
        action="store_true",
        help="Also write a starter ralph.yaml next to the plan"
    )

    # status
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show plan progress"
    )
    status_parser.add_argument(
        "-p", "--plan",
        type=Path,
        default=Path("plan.md"),
        help="Plan file (default: plan.md)"
    )

    return parser


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Layer command-line flags over file configuration."""
    if args.plan is not None:
        config.plan_path = str(args.plan)
    if args.agent is not None:
        config.agent.name = args.agent
    if args.model is not None:
        config.agent.model = args.model
    if args.timeout is not None:
        config.loop.timeout = args.timeout
    if args.max_retries is not None:
        config.loop.max_retries = args.max_retries
    if args.retry_delay is not None:
        config.loop.retry_delay = args.retry_delay
    if args.backoff_factor is not None:
        config.loop.backoff_factor = args.backoff_factor

    config.agent.name = parse_agent_type(config.agent.name)
    config.loop.validate()
    return config


# =============================================================================
# COMMANDS
# =============================================================================

async def run_command(args: argparse.Namespace) -> int:
    """`ralph run`"""
    try:
        config = apply_overrides(load_config(args.config), args)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        ui.show_error(f"Invalid configuration: {e}")
        return 1
    logger.debug("Effective configuration: %s", config)

    plan_path = config.plan_file
    if not plan_path.exists():
        ui.show_error(f"Plan file not found: {plan_path}")
        ui.show_info("Run 'ralph init' to create a new plan file.")
        return 1

    agent = get_agent(config.agent.name, config.agent.model, cwd=Path.cwd())
    alerts = AlertManager(
        terminal=config.alerts.terminal,
        macos=config.alerts.macos_notification,
        console=ui.console,
    )
    runner = LoopRunner(
        agent,
        plan_path,
        config=config.loop,
        monitor_config=config.monitor,
        alerts=alerts,
    )

    ui.show_run_settings(
        agent_name=agent.name + (f" ({config.agent.model})" if config.agent.model else ""),
        plan_path=str(plan_path),
        timeout=format_duration(config.loop.timeout),
        max_retries=config.loop.max_retries,
        retry_delay=format_duration(config.loop.retry_delay),
        backoff_factor=config.loop.backoff_factor,
    )

    try:
        outcome = await runner.run()
    except PlanIOError as e:
        ui.show_error(f"Plan error: {e}")
        return 1
    except InvocationError as e:
        ui.show_error(f"Agent execution failed: {e}")
        return 1

    if outcome == RunOutcome.INTERRUPTED:
        ui.show_warning("Stopped before the plan was finished.")
    return 0


def init_command(args: argparse.Namespace) -> int:
    """`ralph init`"""
    try:
        if args.steps:
            create_template_with_steps(
                args.output,
                args.project or "My Project",
                args.steps,
                context=args.context,
            )
        else:
            create_template(args.output)
    except FileExistsError as e:
        ui.show_error(str(e))
        return 1
    except PlanIOError as e:
        ui.show_error(f"Could not create plan: {e}")
        return 1

    ui.show_success(f"Created plan file: {args.output}")

    if args.write_config:
        config_path = args.output.parent / "ralph.yaml"
        if config_path.exists():
            ui.show_warning(f"Config file already exists, left unchanged: {config_path}")
        else:
            config = get_default_config()
            config.plan_path = args.output.name
            save_config(config, config_path)
            ui.show_success(f"Created config file: {config_path}")

    ui.console.print("\nNext steps:")
    ui.console.print(f"  1. Edit {args.output} to describe your project and steps")
    ui.console.print("  2. Run 'ralph run' to start executing")
    return 0


def status_command(args: argparse.Namespace) -> int:
    """`ralph status`"""
    plan_path: Path = args.plan
    if not plan_path.exists():
        ui.show_error(f"Plan file not found: {plan_path}")
        ui.show_info("Run 'ralph init' to create a new plan file.")
        return 1

    try:
        plan = parse_file(plan_path)
    except PlanIOError as e:
        ui.show_error(f"Plan error: {e}")
        return 1

    ui.show_plan_status(plan)
    return 0


async def async_main(args: argparse.Namespace) -> int:
    """
    Async main function that handles all commands.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    if args.command == "run":
        return await run_command(args)
    if args.command == "init":
        return init_command(args)
    if args.command == "status":
        return status_command(args)

    create_parser().print_help()
    return 0


def main() -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()
    setup_logging(getattr(args, "verbose", False))

    try:
        exit_code = asyncio.run(async_main(args))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        ui.console.print("\n")
        sys.exit(130)


if __name__ == "__main__":
    main()
