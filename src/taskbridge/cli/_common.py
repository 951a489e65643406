"""Shared helpers for the CLI command modules."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Optional

from rich.console import Console

from .. import AGENT_HOME
from ..config import AgentConfig, load_config
from ..errors import ConfigurationError

console = Console()


def state_badge(state: Optional[str]) -> str:
    """Rich markup for a connection state."""
    return {
        "connected": "[bold green]CONNECTED[/]",
        "syncing": "[bold cyan]SYNCING[/]",
        "error": "[bold red]ERROR[/]",
        "disconnected": "[bold yellow]DISCONNECTED[/]",
    }.get(state or "", "[dim]UNKNOWN[/]")


def load_config_or_exit(home: Optional[str], **overrides: Any) -> AgentConfig:
    """Load the agent config, printing every problem and exiting 1 on failure."""
    try:
        return load_config(home=Path(home).expanduser() if home else None, overrides=overrides)
    except ConfigurationError as exc:
        console.print("[bold red]Invalid agent configuration:[/]")
        for problem in exc.problems:
            console.print(f"  [red]-[/] {problem}")
        sys.exit(1)


__all__ = ["AGENT_HOME", "console", "load_config_or_exit", "state_badge"]
