"""
Configuration Management for ralph-loop.

WHAT THIS FILE DOES:
-------------------
Loads configuration from YAML files with sensible defaults. Command-line
flags are applied on top by cli.py, so every value here is only a default.

CONFIG FILE LOCATION:
--------------------
Explicit --config path, else the first of:
  1. ~/.ralph/config.yaml
  2. ./ralph.yaml
  3. ./ralph.yml

CONFIG FORMAT:
-------------
```yaml
plan:
  path: "plan.md"

loop:
  timeout: "30m"
  max_retries: 3
  retry_delay: "5s"
  backoff_factor: 2.0

agent:
  name: "claude"
  model: "sonnet"

monitor:
  stall_seconds: 30
  check_interval: 10

alerts:
  terminal: true
  macos_notification: false
```

Durations accept a number of seconds or strings like "90s", "5m",
"1h30m", "250ms".
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml


# =============================================================================
# DURATIONS
# =============================================================================

DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration into seconds.

    Raises:
        ValueError: If the value is negative or not a duration
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")

    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            parts = DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ValueError(f"invalid duration: {value!r}") from None
            seconds = sum(float(n) * DURATION_UNITS[u] for n, u in parts)

    if seconds < 0:
        raise ValueError(f"duration must not be negative: {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    """Render seconds the way they are written in config ("1h30m", "5s")."""
    if seconds < 1 and seconds > 0:
        return f"{round(seconds * 1000)}ms"

    whole = int(seconds)
    hours, rest = divmod(whole, 3600)
    minutes, secs = divmod(rest, 60)

    text = ""
    if hours:
        text += f"{hours}h"
    if minutes:
        text += f"{minutes}m"
    if secs or not text:
        text += f"{secs}s"
    return text


# =============================================================================
# CONFIGURATION DATA CLASSES
# =============================================================================

@dataclass
class LoopConfig:
    """Retry, backoff and timeout policy."""
    timeout: float = 30 * 60.0
    max_retries: int = 3
    retry_delay: float = 5.0
    backoff_factor: float = 2.0

    def validate(self) -> None:
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must not be negative")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be at least 1.0")


@dataclass
class AgentConfig:
    """Which coding agent to run."""
    name: str = "claude"
    model: Optional[str] = None


@dataclass
class MonitorConfig:
    """Output monitor thresholds, in seconds."""
    stall_seconds: float = 30.0
    check_interval: float = 10.0


@dataclass
class AlertConfig:
    """How operator alerts are delivered."""
    terminal: bool = True
    macos_notification: bool = False


@dataclass
class Config:
    """
    Complete configuration for ralph-loop.

    Top-level settings for one `ralph run`.
    Loaded from YAML, with CLI flags layered on top.
    """
    plan_path: str = "plan.md"
    loop: LoopConfig = field(default_factory=LoopConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)

    @property
    def plan_file(self) -> Path:
        """Plan path, expanding ~ if present."""
        return Path(self.plan_path).expanduser()


# =============================================================================
# DEFAULT CONFIGURATION
# =============================================================================

def get_default_config() -> Config:
    """Get the default configuration."""
    return Config()


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================

def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"config section '{name}' must be a mapping")
    return section


def _parse_config(data: dict) -> Config:
    """Build a Config from a parsed YAML mapping."""
    config = get_default_config()

    plan_data = _section(data, "plan")
    if "path" in plan_data:
        config.plan_path = str(plan_data["path"])

    loop_data = _section(data, "loop")
    defaults = config.loop
    config.loop = LoopConfig(
        timeout=parse_duration(loop_data.get("timeout", defaults.timeout)),
        max_retries=int(loop_data.get("max_retries", defaults.max_retries)),
        retry_delay=parse_duration(loop_data.get("retry_delay", defaults.retry_delay)),
        backoff_factor=float(loop_data.get("backoff_factor", defaults.backoff_factor)),
    )
    config.loop.validate()

    agent_data = _section(data, "agent")
    config.agent = AgentConfig(
        name=str(agent_data.get("name", config.agent.name)),
        model=agent_data.get("model"),
    )

    monitor_data = _section(data, "monitor")
    config.monitor = MonitorConfig(
        stall_seconds=parse_duration(
            monitor_data.get("stall_seconds", config.monitor.stall_seconds)
        ),
        check_interval=parse_duration(
            monitor_data.get("check_interval", config.monitor.check_interval)
        ),
    )

    alerts_data = _section(data, "alerts")
    config.alerts = AlertConfig(
        terminal=alerts_data.get("terminal", True),
        macos_notification=alerts_data.get("macos_notification", False),
    )

    return config


def _default_paths() -> list[Path]:
    return [
        Path.home() / ".ralph" / "config.yaml",
        Path("./ralph.yaml"),
        Path("./ralph.yml"),
    ]


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to config file. If None, tries default locations:
              1. ~/.ralph/config.yaml
              2. ./ralph.yaml
              3. ./ralph.yml
              4. Falls back to defaults

    Returns:
        Loaded configuration (or defaults if file not found)
    """
    if path:
        return load_config_from_file(path)

    config_path = get_config_path()
    if config_path:
        return load_config_from_file(config_path)

    return get_default_config()


def load_config_from_file(path: Path) -> Config:
    """
    Load one config file; a missing file is an error.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If a value is out of range or not a valid duration
    """
    path = Path(path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    return _parse_config(data)


def save_config(config: Config, path: Path) -> None:
    """
    Write configuration back as YAML, durations in string form.

    Args:
        config: Configuration to save
        path: Output path
    """
    agent: dict[str, Any] = {"name": config.agent.name}
    if config.agent.model:
        agent["model"] = config.agent.model

    data = {
        "plan": {
            "path": config.plan_path,
        },
        "loop": {
            "timeout": format_duration(config.loop.timeout),
            "max_retries": config.loop.max_retries,
            "retry_delay": format_duration(config.loop.retry_delay),
            "backoff_factor": config.loop.backoff_factor,
        },
        "agent": agent,
        "monitor": {
            "stall_seconds": config.monitor.stall_seconds,
            "check_interval": config.monitor.check_interval,
        },
        "alerts": {
            "terminal": config.alerts.terminal,
            "macos_notification": config.alerts.macos_notification,
        },
    }

    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def get_config_path() -> Optional[Path]:
    """
    Return the first config file found on the search path.

    Returns:
        Path to config file or None if using defaults
    """
    for path in _default_paths():
        if path.exists():
            return path

    return None
