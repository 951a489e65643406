"""
TaskBridge agent daemon: the long-running process on the user's Mac.

Registers with the remote service, runs a sync cycle on a fixed
interval, and exposes a small loopback HTTP API so the menu-bar app and
the CLI can read status and request an immediate sync:

    GET  /health          liveness and last sync time
    GET  /status          connection state and recent errors
    POST /sync/trigger    start a cycle now (409 if one is running)
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from . import AGENT_HOME
from .automation import AutomationCapability, OmniFocusAutomation
from .config import DEFAULT_PORT, AgentConfig
from .scheduler import SyncScheduler
from .state import AgentState
from .timer import PeriodicTimer
from .transport import RemoteClient

logger = logging.getLogger("taskbridge.daemon")

PID_FILE = "agent.pid"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class AgentDaemon:
    """The agent process.

    Owns the sync timer thread and the local HTTP API thread. All
    collaborators can be injected, which is how the tests run it
    without OmniFocus or a network.

    Args:
        config: Validated agent configuration.
        automation: Local task store access. Defaults to OmniFocus.
        client: Remote transport client. Built from ``config`` when omitted.
    """

    def __init__(
        self,
        config: AgentConfig,
        automation: Optional[AutomationCapability] = None,
        client: Optional[RemoteClient] = None,
    ):
        self.config = config
        self.state = AgentState()
        self.automation = automation or OmniFocusAutomation()
        self.client = client or RemoteClient(config)
        self.scheduler = SyncScheduler(config, self.client, self.automation, self.state)
        self._stop_event = threading.Event()
        self._timer: Optional[PeriodicTimer] = None
        self._server: Optional[ThreadingHTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._log_handler: Optional[logging.Handler] = None

    @property
    def api_available(self) -> bool:
        """True once the local API server is bound and serving."""
        return self._server is not None

    @property
    def port(self) -> int:
        """Port the API server is bound to (resolved after start)."""
        if self._server is not None:
            return self._server.server_address[1]
        return self.config.port

    def start(self) -> None:
        """Register, start the API server, and schedule sync cycles.

        The first cycle runs right away.

        Raises:
            RegistrationError: If the agent cannot register.
        """
        self._write_pid()
        self._setup_logging()
        self._setup_signals()

        logger.info(
            "Agent starting: home=%s port=%d interval=%dm",
            self.config.home, self.config.port, self.config.sync_interval_minutes,
        )

        try:
            self.scheduler.start_up()
        except Exception:
            self._remove_pid()
            raise

        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)

        self._start_api_server()

        self._timer = PeriodicTimer(
            interval=self.scheduler.interval_minutes * 60,
            callback=self.scheduler.trigger,
            fire_immediately=True,
            name="taskbridge-timer",
        )
        self._timer.start()

        logger.info(
            "Agent running: PID %d, sync every %d minute(s)",
            os.getpid(), self.scheduler.interval_minutes,
        )

    def stop(self) -> None:
        """Stop the timer and API server, then clean up."""
        logger.info("Agent stopping...")
        self._stop_event.set()
        self.state.running = False

        if self._timer:
            self._timer.stop()
            self._timer = None

        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._server_thread:
            self._server_thread.join(timeout=5)
            self._server_thread = None

        self.scheduler.stop()
        self.client.close()
        self._remove_pid()
        logger.info("Agent stopped.")

        if self._log_handler:
            logging.getLogger().removeHandler(self._log_handler)
            self._log_handler.close()
            self._log_handler = None

    def run_forever(self) -> None:
        """Block until stop is signaled."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def _start_api_server(self) -> None:
        """Start the local HTTP API in a background thread."""
        state = self.state
        scheduler = self.scheduler

        class AgentHandler(BaseHTTPRequestHandler):
            """HTTP handler for the agent status API."""

            def do_GET(self):
                """Handle GET requests to the agent API."""
                path = urlsplit(self.path).path
                if path == "/health":
                    self._json_response(state.health())
                elif path == "/status":
                    self._json_response(state.snapshot())
                else:
                    self._json_response(
                        {"endpoints": ["/health", "/status", "/sync/trigger"]},
                        status=404,
                    )

            def do_POST(self):
                """Handle POST requests to the agent API."""
                if urlsplit(self.path).path == "/sync/trigger":
                    result = scheduler.trigger_in_background()
                    if result.accepted:
                        self._json_response({"message": "Sync started"}, status=202)
                    else:
                        self._json_response({"error": result.reason}, status=409)
                else:
                    self._json_response({"error": "Not found"}, status=404)

            def _json_response(self, data: dict, status: int = 200):
                body = json.dumps(data, indent=2, default=str).encode()
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format, *args):
                logger.debug("API: %s", format % args)

        try:
            self._server = ThreadingHTTPServer(("127.0.0.1", self.config.port), AgentHandler)
        except OSError as exc:
            logger.error("Failed to start API server: %s", exc)
            self.state.record_error(f"API server: {exc}")
            return
        self._server_thread = threading.Thread(
            target=self._server.serve_forever,
            name="taskbridge-api",
            daemon=True,
        )
        self._server_thread.start()
        logger.info("API server listening on http://127.0.0.1:%d", self.port)

    def _setup_logging(self) -> None:
        """Configure file logging at the configured level."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(self.config.log_level.logging_level)
        self._log_handler = handler

    def _setup_signals(self) -> None:
        """Register signal handlers for graceful shutdown."""
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        logger.info("Received signal %s, stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _write_pid(self) -> None:
        """Write the PID file."""
        pid_path = self.config.home / PID_FILE
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()), encoding="utf-8")

    def _remove_pid(self) -> None:
        """Remove the PID file."""
        pid_path = self.config.home / PID_FILE
        if pid_path.exists():
            pid_path.unlink()


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """Read the agent PID from the PID file.

    Args:
        home: Agent home directory.

    Returns:
        PID as int, or None if not running. A stale file is removed.
    """
    home = (home or Path(AGENT_HOME)).expanduser()
    pid_path = home / PID_FILE
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        pid_path.unlink(missing_ok=True)
        return None


def is_running(home: Optional[Path] = None) -> bool:
    """Check if the agent process is alive."""
    return read_pid(home) is not None


def get_agent_status(port: int = DEFAULT_PORT) -> Optional[dict]:
    """Query the running agent's ``/status`` endpoint.

    Returns:
        Status dict, or None if the agent is unreachable.
    """
    import requests

    try:
        resp = requests.get(f"http://127.0.0.1:{port}/status", timeout=3)
        return resp.json()
    except (requests.RequestException, ValueError):
        return None


def request_sync(port: int = DEFAULT_PORT) -> tuple[int, dict]:
    """Ask the running agent to start a cycle.

    Returns:
        (status_code, body). 202 means accepted, 409 means a cycle is
        already running.

    Raises:
        requests.RequestException: If the agent is unreachable.
    """
    import requests

    resp = requests.post(f"http://127.0.0.1:{port}/sync/trigger", timeout=3)
    try:
        body = resp.json()
    except ValueError:
        body = {}
    return resp.status_code, body
