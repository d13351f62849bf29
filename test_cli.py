"""
CLI Tests: configuration, commands, alerts

These tests verify the outer layer can:
1. Parse durations and YAML configuration with defaults
2. Combine config files with command-line flags
3. Run the init / status / run commands end to end
4. Render operator alerts

Test list:
1. test_durations - Go-style duration strings
2. test_load_config - YAML sections and defaults
3. test_config_search_and_save - Default locations, save/reload
4. test_config_validation - Bad values are rejected
5. test_parser_and_overrides - Flags override config values
6. test_init_command - Template creation and overwrite refusal
7. test_status_command - Status report and summary line
8. test_run_command - Full run with a fake agent
9. test_run_command_errors - Missing plan and agent launch failure
10. test_main_without_command - Help and exit code
11. test_alert_rendering - Prompt, stall and skip panels
12. test_macos_notification - osascript call and failure handling
"""

import io
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml
from rich.console import Console

sys.path.insert(0, str(Path(__file__).parent))

import cli
from agents import Agent, ClaudeAgent
from alerts import AlertManager
from config import (
    Config,
    format_duration,
    get_config_path,
    get_default_config,
    load_config,
    load_config_from_file,
    parse_duration,
    save_config,
)
from errors import InvocationError
from plan_parser import parse_file
from schemas import StepStatus


STATUS_PLAN = """\
# Project: Todo API

## Context

Flask app.

## Plan

- [x] Step 1: Create the Flask skeleton
- [!] Step 2: Add the /todos endpoints
- [ ] Step 3: Write tests

## Notes

### Step 2
**Status**: failed
**Last Run**: 2026-01-17 10:30:00
**Notes**: Failed: pytest not installed
**Retries**: 1
"""


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run in an empty directory with an empty home, so no config is found."""
    home = tmp_path / "home"
    home.mkdir()
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(work)
    return work


class CompletingAgent(Agent):
    """Completes every step immediately."""

    name = "fake"

    def __init__(self):
        self.calls = 0

    async def run(self, prompt, output):
        self.calls += 1
        text = f"finished call {self.calls}\nSTEP_COMPLETE\n"
        output.write(text)
        return text


# =============================================================================
# TEST 1-4: Configuration
# =============================================================================

def test_durations():
    """
    Test 1: Go-style duration strings.

    Verifies:
    - Units h/m/s/ms and combinations parse to seconds
    - Plain numbers are seconds
    - Garbage and negative values are rejected
    - format_duration writes the compact form back
    """
    assert parse_duration("90s") == 90.0
    assert parse_duration("5m") == 300.0
    assert parse_duration("1h30m") == 5400.0
    assert parse_duration("250ms") == 0.25
    assert parse_duration("1.5h") == 5400.0
    assert parse_duration(12) == 12.0
    assert parse_duration("7") == 7.0

    for bad in ("abc", "5x", "", "-5s", "5 m", True):
        with pytest.raises(ValueError):
            parse_duration(bad)

    assert format_duration(1800) == "30m"
    assert format_duration(5) == "5s"
    assert format_duration(5400) == "1h30m"
    assert format_duration(3600) == "1h"
    assert format_duration(0.25) == "250ms"
    assert format_duration(0) == "0s"

    print("✓ Test 1 passed: Durations parse and format")


def test_load_config(tmp_path):
    """
    Test 2: YAML sections and defaults.

    Verifies:
    - Every section is read
    - Missing keys keep their defaults
    - An empty file gives the defaults
    """
    path = tmp_path / "ralph.yaml"
    path.write_text(
        "plan:\n"
        "  path: tasks.md\n"
        "loop:\n"
        "  timeout: 45m\n"
        "  max_retries: 5\n"
        "agent:\n"
        "  name: opencode\n"
        "  model: anthropic/claude-sonnet-4\n"
        "monitor:\n"
        "  stall_seconds: 1m\n"
        "alerts:\n"
        "  macos_notification: true\n"
    )

    config = load_config_from_file(path)
    assert config.plan_path == "tasks.md"
    assert config.loop.timeout == 2700.0
    assert config.loop.max_retries == 5
    assert config.loop.retry_delay == 5.0
    assert config.loop.backoff_factor == 2.0
    assert config.agent.name == "opencode"
    assert config.agent.model == "anthropic/claude-sonnet-4"
    assert config.monitor.stall_seconds == 60.0
    assert config.monitor.check_interval == 10.0
    assert config.alerts.terminal is True
    assert config.alerts.macos_notification is True

    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    assert load_config_from_file(empty) == get_default_config()

    defaults = get_default_config()
    assert defaults.loop.timeout == 1800.0
    assert defaults.loop.max_retries == 3
    assert defaults.agent.name == "claude"
    assert defaults.plan_file == Path("plan.md")

    print("✓ Test 2 passed: Config loaded with defaults")


def test_config_search_and_save(isolated):
    """
    Test 3: Default locations, save/reload.

    Verifies:
    - No config anywhere -> defaults
    - ./ralph.yaml is picked up
    - An explicit missing path is an error
    - save_config output loads back to the same config
    """
    assert get_config_path() is None
    assert load_config() == get_default_config()

    with pytest.raises(FileNotFoundError):
        load_config(isolated / "nope.yaml")

    config = get_default_config()
    config.plan_path = "work.md"
    config.loop.timeout = 5400.0
    config.loop.retry_delay = 0.25
    config.agent.model = "opus"
    save_config(config, isolated / "ralph.yaml")

    saved = yaml.safe_load((isolated / "ralph.yaml").read_text())
    assert saved["loop"]["timeout"] == "1h30m"
    assert saved["loop"]["retry_delay"] == "250ms"

    assert get_config_path() == Path("./ralph.yaml")
    assert load_config() == config

    print("✓ Test 3 passed: Config search and save work")


def test_config_validation(tmp_path):
    """Test 4: Out-of-range values and bad sections raise ValueError."""
    cases = [
        "loop:\n  max_retries: 0\n",
        "loop:\n  timeout: soon\n",
        "loop:\n  backoff_factor: 0.5\n",
        "loop: [1, 2]\n",
        "- just\n- a list\n",
    ]
    for i, text in enumerate(cases):
        path = tmp_path / f"bad{i}.yaml"
        path.write_text(text)
        with pytest.raises(ValueError):
            load_config_from_file(path)

    print("✓ Test 4 passed: Invalid config rejected")


# =============================================================================
# TEST 5-10: Commands
# =============================================================================

def test_parser_and_overrides():
    """
    Test 5: Flags override config values.

    Verifies:
    - Duration flags are parsed by the argument parser
    - Only flags that were given override the config
    - Unknown agents are rejected
    """
    parser = cli.create_parser()
    args = parser.parse_args([
        "run", "-p", "tasks.md", "-a", "Codex", "-t", "45m", "-r", "5",
        "--retry-delay", "2s", "--backoff-factor", "1.5",
    ])
    config = cli.apply_overrides(Config(), args)

    assert config.plan_path == "tasks.md"
    assert config.agent.name == "codex"
    assert config.agent.model is None
    assert config.loop.timeout == 2700.0
    assert config.loop.max_retries == 5
    assert config.loop.retry_delay == 2.0
    assert config.loop.backoff_factor == 1.5

    args = parser.parse_args(["run", "-m", "opus"])
    base = Config()
    base.loop.max_retries = 7
    config = cli.apply_overrides(base, args)
    assert config.loop.max_retries == 7
    assert config.agent.model == "opus"
    assert config.plan_path == "plan.md"

    with pytest.raises(ValueError):
        cli.apply_overrides(Config(), parser.parse_args(["run", "-a", "gpt"]))

    with pytest.raises(SystemExit):
        parser.parse_args(["run", "-t", "forever"])

    print("✓ Test 5 passed: Overrides applied")


def test_init_command(isolated):
    """
    Test 6: Template creation and overwrite refusal.

    Verifies:
    - Default template is written to plan.md
    - A second init refuses to overwrite
    - --step builds a custom plan
    - --config writes ralph.yaml without replacing an existing one
    """
    parser = cli.create_parser()

    assert cli.init_command(parser.parse_args(["init"])) == 0
    assert len(parse_file(isolated / "plan.md").steps) == 3
    assert cli.init_command(parser.parse_args(["init"])) == 1

    args = parser.parse_args([
        "init", "-o", "custom/tasks.md", "--project", "CLI Tool",
        "--step", "Parse args", "--step", "Add tests", "--context", "Python 3.11",
    ])
    assert cli.init_command(args) == 0

    plan = parse_file(isolated / "custom" / "tasks.md")
    assert plan.project_name == "CLI Tool"
    assert plan.context == "Python 3.11"
    assert [s.description for s in plan.steps] == ["Parse args", "Add tests"]

    # --config writes a starter config beside the plan, once
    args = parser.parse_args(["init", "-o", "with_config/plan.md", "--config"])
    assert cli.init_command(args) == 0
    written = load_config_from_file(isolated / "with_config" / "ralph.yaml")
    assert written.plan_path == "plan.md"
    assert written.loop.timeout == 1800
    assert written.agent.name == "claude"

    (isolated / "with_config" / "plan.md").unlink()
    (isolated / "with_config" / "ralph.yaml").write_text("agent:\n  name: codex\n")
    assert cli.init_command(args) == 0
    assert "codex" in (isolated / "with_config" / "ralph.yaml").read_text()

    print("✓ Test 6 passed: init works")


def test_status_command(isolated, capsys):
    """Test 7: Status report, summary line and next step."""
    (isolated / "plan.md").write_text(STATUS_PLAN, encoding="utf-8")
    parser = cli.create_parser()

    assert cli.status_command(parser.parse_args(["status"])) == 0
    out = capsys.readouterr().out
    assert "Project: Todo API" in out
    assert "Summary: 1 completed, 1 failed, 0 skipped, 1 pending" in out
    assert "Next step: Step 2 - Add the /todos endpoints" in out

    assert cli.status_command(parser.parse_args(["status", "-p", "missing.md"])) == 1
    assert "Plan file not found" in capsys.readouterr().out

    done = STATUS_PLAN.replace("- [!]", "- [x]").replace("- [ ]", "- [-]")
    (isolated / "done.md").write_text(done, encoding="utf-8")
    assert cli.status_command(parser.parse_args(["status", "-p", "done.md"])) == 0
    out = capsys.readouterr().out
    assert "Summary: 2 completed, 0 failed, 1 skipped, 0 pending" in out
    assert "All steps completed!" in out

    # A plan saved in a legacy encoding is still reported, not a crash
    (isolated / "latin1.md").write_bytes(
        b"# Project: Caf\xe9\n\n## Plan\n\n- [x] Step 1: Menu\n- [ ] Step 2: Cr\xe8me\n"
    )
    assert cli.status_command(parser.parse_args(["status", "-p", "latin1.md"])) == 0
    out = capsys.readouterr().out
    assert "Summary: 1 completed, 0 failed, 0 skipped, 1 pending" in out

    print("✓ Test 7 passed: status works")


@pytest.mark.asyncio
async def test_run_command(isolated):
    """
    Test 8: Full run with a fake agent.

    Verifies:
    - Config and flags are combined into a runner
    - Every step gets completed
    - The command exits 0
    """
    (isolated / "plan.md").write_text(STATUS_PLAN, encoding="utf-8")
    agent = CompletingAgent()
    args = cli.create_parser().parse_args(["run", "--retry-delay", "0"])

    with patch("cli.get_agent", return_value=agent) as get_agent:
        assert await cli.run_command(args) == 0

    get_agent.assert_called_once()
    assert get_agent.call_args[0][:2] == ("claude", None)
    assert agent.calls == 2

    plan = parse_file(isolated / "plan.md")
    assert plan.is_complete()
    assert plan.get_step(2).status == StepStatus.COMPLETED
    assert plan.get_step(2).retry_count == 1
    assert plan.get_step(3).notes == "finished call 2"

    print("✓ Test 8 passed: run completes the plan")


@pytest.mark.asyncio
async def test_run_command_errors(isolated, capsys):
    """
    Test 9: Missing plan and agent launch failure.

    Verifies:
    - No plan file -> exit 1 with an init hint
    - Launch failure -> exit 1, plan untouched
    - Bad config -> exit 1
    """
    parser = cli.create_parser()

    assert await cli.run_command(parser.parse_args(["run"])) == 1
    assert "ralph init" in capsys.readouterr().out

    (isolated / "plan.md").write_text(STATUS_PLAN, encoding="utf-8")
    broken = MagicMock(spec=Agent)
    broken.name = "broken"
    broken.run.side_effect = InvocationError("failed to start broken: not found")

    with patch("cli.get_agent", return_value=broken):
        assert await cli.run_command(parser.parse_args(["run", "--retry-delay", "0"])) == 1
    assert "Agent execution failed" in capsys.readouterr().out
    assert (isolated / "plan.md").read_text(encoding="utf-8") == STATUS_PLAN

    (isolated / "ralph.yaml").write_text("loop:\n  max_retries: -1\n")
    assert await cli.run_command(parser.parse_args(["run"])) == 1
    assert "Invalid configuration" in capsys.readouterr().out

    print("✓ Test 9 passed: run errors reported")


def test_main_without_command(monkeypatch, capsys):
    """Test 10: `ralph` alone prints help and exits 0."""
    monkeypatch.setattr(sys, "argv", ["ralph"])

    with pytest.raises(SystemExit) as exc_info:
        cli.main()

    assert exc_info.value.code == 0
    assert "usage: ralph" in capsys.readouterr().out

    # The real agent factory is what run uses by default
    assert isinstance(cli.get_agent("claude"), ClaudeAgent)

    print("✓ Test 10 passed: main prints help")


# =============================================================================
# TEST 11-12: Alerts
# =============================================================================

def test_alert_rendering():
    """
    Test 11: Prompt, stall and skip panels.

    Verifies:
    - Prompt advisory shows the agent's question
    - Stall advisory names the silence threshold
    - Every advisory explains how to cancel
    - Terminal alerts can be disabled
    """
    buffer = io.StringIO()
    alerts = AlertManager(console=Console(file=buffer, width=100))

    alerts.input_warning(["Overwrite config.py? [y/n]"])
    out = buffer.getvalue()
    assert "WARNING: Agent is asking for user input!" in out
    assert "AGENT IS ASKING:" in out
    assert "Overwrite config.py? [y/n]" in out
    assert "Press Ctrl+C to cancel - the step will be retried automatically." in out

    buffer.truncate(0)
    buffer.seek(0)
    alerts.stall_warning(["(no context available)"], 30)
    out = buffer.getvalue()
    assert "WARNING: No output for 30+ seconds - agent may be stalled!" in out
    assert "LAST OUTPUT:" in out
    assert "(no context available)" in out

    buffer.truncate(0)
    buffer.seek(0)
    alerts.warning("Step 2 skipped", "Skipped after 3 failed attempts")
    assert "Skipped after 3 failed attempts" in buffer.getvalue()

    quiet_buffer = io.StringIO()
    quiet = AlertManager(terminal=False, console=Console(file=quiet_buffer))
    quiet.input_warning(["? Continue"])
    assert quiet_buffer.getvalue() == ""

    print("✓ Test 11 passed: Alerts rendered")


def test_macos_notification():
    """Test 12: osascript is invoked; a failure to run it is only logged."""
    alerts = AlertManager(terminal=False, macos=True)

    with patch("alerts.subprocess.run") as run:
        alerts.stall_warning(["working"], 30)
    cmd = run.call_args[0][0]
    assert cmd[:2] == ["osascript", "-e"]
    assert 'subtitle "WARNING: No output for 30+ seconds' in cmd[2]

    with patch("alerts.subprocess.run", side_effect=FileNotFoundError("osascript")):
        alerts.warning("Step 1 skipped", 'Reason with "quotes"')

    print("✓ Test 12 passed: macOS notifications sent")
