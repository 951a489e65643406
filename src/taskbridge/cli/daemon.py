"""Agent commands: start, stop, status, config."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click
from rich.panel import Panel

from ..config import DEFAULT_PORT
from ._common import AGENT_HOME, console, load_config_or_exit, state_badge


def register_agent_commands(main: click.Group) -> None:
    """Register the agent command group."""

    @main.group()
    def agent():
        """Background agent: scheduled sync and the local status API."""

    @agent.command("start")
    @click.option("--home", default=AGENT_HOME, type=click.Path())
    @click.option("--port", default=None, type=int, help="Local API port (default: 7842).")
    @click.option("--interval", default=None, type=int, help="Sync interval in minutes.")
    @click.option(
        "--log-level",
        default=None,
        type=click.Choice(["debug", "info", "warn", "error"], case_sensitive=False),
    )
    def agent_start(home: str, port, interval, log_level):
        """Start the sync agent in the foreground.

        Registers with TaskBridge, syncs immediately, then every
        interval. Stop with Ctrl+C or ``taskbridge agent stop``.
        """
        from ..daemon import AgentDaemon, is_running
        from ..errors import RegistrationError

        config = load_config_or_exit(
            home, port=port, sync_interval_minutes=interval, log_level=log_level,
        )

        if is_running(config.home):
            console.print("[yellow]Agent is already running.[/]")
            sys.exit(0)

        svc = AgentDaemon(config)

        console.print(f"\n  [green]Starting agent[/] on port [cyan]{config.port}[/]")
        console.print(f"  Remote: {config.api_base_url}")
        console.print(f"  Log: {config.log_file}")
        console.print(f"  PID: {os.getpid()}")

        try:
            svc.start()
        except RegistrationError as exc:
            console.print(f"\n  [bold red]Registration failed:[/] {exc}\n")
            sys.exit(1)

        if not svc.api_available:
            console.print(f"  [yellow]Local API unavailable: port {config.port} is in use[/]")
        console.print(f"  Sync every {svc.scheduler.interval_minutes} minute(s)")
        console.print("  [dim]Running in foreground (Ctrl+C to stop)[/]\n")
        svc.run_forever()

    @agent.command("stop")
    @click.option("--home", default=AGENT_HOME, type=click.Path())
    def agent_stop(home: str):
        """Stop the running agent."""
        from ..daemon import PID_FILE, read_pid

        home_path = Path(home).expanduser()
        pid = read_pid(home_path)

        if pid is None:
            console.print("[yellow]Agent is not running.[/]")
            return

        import signal as sig

        try:
            os.kill(pid, sig.SIGTERM)
            console.print(f"\n  [green]Sent SIGTERM to agent (PID {pid})[/]\n")
        except ProcessLookupError:
            console.print("[yellow]Agent process not found, cleaning up PID file.[/]")
            (home_path / PID_FILE).unlink(missing_ok=True)

    @agent.command("status")
    @click.option("--home", default=AGENT_HOME, type=click.Path())
    @click.option("--port", default=DEFAULT_PORT, envvar="TASKBRIDGE_PORT", type=int,
                  help="API port to query (default: $TASKBRIDGE_PORT or 7842).")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def agent_status(home: str, port: int, json_out: bool):
        """Show agent status."""
        from ..daemon import get_agent_status, is_running, read_pid

        home_path = Path(home).expanduser()
        pid = read_pid(home_path)

        if not is_running(home_path):
            if json_out:
                click.echo(json.dumps({"running": False}))
            else:
                console.print("\n  [yellow]Agent is not running.[/]\n")
            return

        status = get_agent_status(port)
        if json_out:
            click.echo(json.dumps(status or {"running": True, "pid": pid, "api": "unreachable"}, indent=2))
            return

        if not status:
            console.print(f"\n  [green]Agent running[/] (PID {pid})")
            console.print(f"  [yellow]API unreachable on port {port}[/]\n")
            return

        console.print()
        console.print(
            Panel(
                f"State: {state_badge(status.get('status'))}\n"
                f"{status.get('message') or ''}\n"
                f"PID: [bold]{status.get('pid')}[/]\n"
                f"Sync in progress: [bold]{'yes' if status.get('syncInProgress') else 'no'}[/]\n"
                f"Interval: [bold]{status.get('intervalMinutes')} min[/]\n"
                f"Last sync: {status.get('lastSync') or '[dim]never[/]'}\n"
                f"API: [green]http://127.0.0.1:{port}[/]",
                title="[green]Agent Running[/]",
                border_style="green",
            )
        )
        errors = status.get("recentErrors", [])
        if errors:
            console.print(f"\n[yellow]Recent errors ({len(errors)}):[/]")
            for err in errors[-5:]:
                console.print(f"  [dim]{err}[/]")
        console.print()

    @agent.command("config")
    @click.option("--home", default=AGENT_HOME, type=click.Path())
    def agent_config(home: str):
        """Validate and print the effective configuration (key masked)."""
        config = load_config_or_exit(home)
        click.echo(json.dumps(config.redacted(), indent=2))
