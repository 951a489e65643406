"""Sync commands: trigger a running agent, or run one cycle in-process."""

from __future__ import annotations

import sys

import click
from rich.table import Table

from ..config import DEFAULT_PORT
from ._common import AGENT_HOME, console, load_config_or_exit


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Run sync cycles on demand."""

    @sync.command("now")
    @click.option("--port", default=DEFAULT_PORT, envvar="TASKBRIDGE_PORT", type=int,
                  help="API port of the running agent (default: $TASKBRIDGE_PORT or 7842).")
    def sync_now(port: int):
        """Ask the running agent to sync immediately."""
        import requests

        from ..daemon import request_sync

        try:
            status, body = request_sync(port)
        except requests.RequestException:
            console.print(f"[bold red]Agent not reachable on port {port}.[/] Is it running?")
            sys.exit(1)

        if status == 202:
            console.print("[green]Sync started.[/]")
        elif status == 409:
            console.print(f"[yellow]{body.get('error', 'Sync already in progress')}[/]")
        else:
            console.print(f"[red]Unexpected response {status}:[/] {body}")
            sys.exit(1)

    @sync.command("once")
    @click.option("--home", default=AGENT_HOME, type=click.Path())
    def sync_once(home: str):
        """Register and run a single cycle without starting the agent."""
        from ..automation import OmniFocusAutomation
        from ..errors import RegistrationError
        from ..scheduler import SyncScheduler
        from ..transport import RemoteClient

        config = load_config_or_exit(home)
        client = RemoteClient(config)
        scheduler = SyncScheduler(config, client, OmniFocusAutomation())

        try:
            scheduler.start_up()
        except RegistrationError as exc:
            console.print(f"[bold red]Registration failed:[/] {exc}")
            sys.exit(1)

        result = scheduler.trigger()
        report = result.report
        client.close()

        if report is None or report.aborted:
            reason = report.abort_reason if report else result.reason
            console.print(f"[bold red]Cycle aborted:[/] {reason}")
            sys.exit(1)

        table = Table(title="Mappings")
        table.add_column("Mapping")
        table.add_column("Outcome")
        table.add_column("Detail")
        for r in report.reports:
            color = "green" if r.status.value == "success" else "red"
            detail = r.details.get("error") or f"{r.details.get('tasksFound', 0)} task(s)"
            table.add_row(r.mapping_id, f"[{color}]{r.status.value}[/]", str(detail))
        console.print(table)

        if report.commands:
            ok = sum(1 for c in report.commands if c.success)
            console.print(f"Commands: {ok}/{len(report.commands)} applied")
