"""Pairing commands: pair this device, or serve the pairing endpoints."""

from __future__ import annotations

import os
import sys
import threading
from pathlib import Path

import click

from ._common import AGENT_HOME, console


def register_pair_commands(main: click.Group) -> None:
    """Register the pair command group."""

    @main.group()
    def pair():
        """Device pairing: approve this Mac from a browser."""

    @pair.command("start")
    @click.option("--home", default=AGENT_HOME, type=click.Path())
    @click.option(
        "--server",
        default=lambda: os.environ.get("API_BASE_URL", "http://127.0.0.1:7843"),
        help="Pairing service root URL (default: $API_BASE_URL).",
    )
    @click.option("--timeout", default=600, help="Seconds to wait for approval.")
    @click.option("--open-browser/--no-open-browser", default=True)
    def pair_start(home: str, server: str, timeout: int, open_browser: bool):
        """Pair this device and store the issued agent key."""
        from ..config import save_agent_key
        from ..errors import PairingTimeoutError, SessionNotFoundError, TransportError
        from ..pairing import PairingClient

        client = PairingClient(server)
        try:
            session_id, auth_url = client.start()
        except TransportError as exc:
            console.print(f"[bold red]Could not start pairing:[/] {exc}")
            sys.exit(1)

        console.print(f"\n  Approve this device at:\n  [cyan]{auth_url}[/]\n")
        if open_browser:
            click.launch(auth_url)

        try:
            with console.status("Waiting for approval..."):
                result = client.wait_for_token(session_id, timeout=timeout)
        except SessionNotFoundError:
            console.print("[bold red]Pairing session expired.[/] Run the command again.")
            sys.exit(1)
        except PairingTimeoutError as exc:
            console.print(f"[bold red]{exc}[/]")
            sys.exit(1)
        except TransportError as exc:
            console.print(f"[bold red]Pairing failed:[/] {exc}")
            sys.exit(1)

        path = save_agent_key(Path(home), result["token"])
        console.print(f"[green]Paired[/] as user [bold]{result.get('userId')}[/]")
        console.print(f"  Agent key saved to {path}\n")

    @pair.command("serve")
    @click.option("--host", default="127.0.0.1", help="Bind address.")
    @click.option("--port", default=7843, help="Bind port.")
    @click.option("--public-url", default=None, help="URL browsers use to reach this server.")
    def pair_serve(host: str, port: int, public_url):
        """Run the pairing endpoints (for development and self-hosting)."""
        from ..pairing import InMemorySessionStore, PairingExchange, PairingServer

        exchange = PairingExchange(
            InMemorySessionStore(),
            base_url=public_url or f"http://{host}:{port}",
        )
        server = PairingServer(exchange, host=host, port=port)
        server.start()
        console.print(f"\n  [green]Pairing server[/] on http://{host}:{server.port}")
        console.print("  [dim]Ctrl+C to stop[/]\n")

        stop = threading.Event()
        try:
            while not stop.is_set():
                stop.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            server.stop()
