"""
Connection state: a pure transition table plus the thread-safe holder
the local status API reads from.

    disconnected --registered--> connected
    connected    --cycle_started--> syncing
    syncing      --cycle_completed--> connected
    syncing      --cycle_aborted--> error
    error        --cycle_started--> syncing
    any          --stopped--> disconnected

Pairs not in the table leave the state unchanged.
"""

from __future__ import annotations

import os
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class ConnectionState(str, Enum):
    """Process-wide connection status."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SYNCING = "syncing"
    ERROR = "error"


class StateEvent(str, Enum):
    """Things that move the connection state."""

    REGISTERED = "registered"
    CYCLE_STARTED = "cycle_started"
    COMMANDS_STARTED = "commands_started"
    CYCLE_COMPLETED = "cycle_completed"
    CYCLE_ABORTED = "cycle_aborted"
    STOPPED = "stopped"


_TRANSITIONS: dict[tuple[ConnectionState, StateEvent], ConnectionState] = {
    (ConnectionState.DISCONNECTED, StateEvent.REGISTERED): ConnectionState.CONNECTED,
    (ConnectionState.DISCONNECTED, StateEvent.CYCLE_STARTED): ConnectionState.SYNCING,
    (ConnectionState.DISCONNECTED, StateEvent.CYCLE_ABORTED): ConnectionState.ERROR,
    (ConnectionState.CONNECTED, StateEvent.CYCLE_STARTED): ConnectionState.SYNCING,
    (ConnectionState.CONNECTED, StateEvent.COMMANDS_STARTED): ConnectionState.SYNCING,
    (ConnectionState.CONNECTED, StateEvent.CYCLE_ABORTED): ConnectionState.ERROR,
    (ConnectionState.SYNCING, StateEvent.COMMANDS_STARTED): ConnectionState.SYNCING,
    (ConnectionState.SYNCING, StateEvent.CYCLE_COMPLETED): ConnectionState.CONNECTED,
    (ConnectionState.SYNCING, StateEvent.CYCLE_ABORTED): ConnectionState.ERROR,
    (ConnectionState.ERROR, StateEvent.REGISTERED): ConnectionState.CONNECTED,
    (ConnectionState.ERROR, StateEvent.CYCLE_STARTED): ConnectionState.SYNCING,
    (ConnectionState.ERROR, StateEvent.COMMANDS_STARTED): ConnectionState.SYNCING,
}


def transition(state: ConnectionState, event: StateEvent) -> ConnectionState:
    """Next connection state for an event.

    Args:
        state: Current state.
        event: What happened.

    Returns:
        The new state; ``state`` itself when the pair is not a transition.
    """
    if event == StateEvent.STOPPED:
        return ConnectionState.DISCONNECTED
    return _TRANSITIONS.get((state, event), state)


_MESSAGES = {
    ConnectionState.DISCONNECTED: "Agent is not connected",
    ConnectionState.CONNECTED: "Connected to TaskBridge",
    ConnectionState.SYNCING: "Sync in progress",
    ConnectionState.ERROR: "Last sync failed",
}


class AgentState:
    """Thread-safe mutable agent state.

    Written by the scheduler and command processor, read by the
    local HTTP API. All access is lock-protected; readers never wait
    for a cycle to finish.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.connection: ConnectionState = ConnectionState.DISCONNECTED
        self.running: bool = False
        self.sync_in_progress: bool = False
        self.started_at: Optional[datetime] = None
        self.last_sync: Optional[datetime] = None
        self.automation_version: Optional[str] = None
        self.interval_minutes: Optional[int] = None
        self.cycles_completed: int = 0
        self.message: Optional[str] = None
        self.errors: list[str] = []

    def apply(self, event: StateEvent, message: Optional[str] = None) -> ConnectionState:
        """Apply an event and return the resulting state."""
        with self._lock:
            self.connection = transition(self.connection, event)
            self.message = message
            return self.connection

    def set_sync_in_progress(self, value: bool) -> None:
        """Flag whether a cycle is currently executing."""
        with self._lock:
            self.sync_in_progress = value

    def record_cycle(self, finished_at: Optional[datetime] = None) -> None:
        """Record a cycle that ran to completion."""
        with self._lock:
            self.last_sync = finished_at or datetime.now(timezone.utc)
            self.cycles_completed += 1

    def record_error(self, error: str) -> None:
        """Record an error, keeping only the last 50."""
        with self._lock:
            ts = datetime.now(timezone.utc).isoformat()
            self.errors.append(f"[{ts}] {error}")
            if len(self.errors) > 50:
                self.errors = self.errors[-50:]

    def health(self) -> dict:
        """Body for ``GET /health``."""
        with self._lock:
            return {
                "status": "ok",
                "running": self.running,
                "syncInProgress": self.sync_in_progress,
                "automationVersion": self.automation_version,
                "lastSync": self.last_sync.isoformat() if self.last_sync else None,
            }

    def snapshot(self) -> dict:
        """Body for ``GET /status``; safe for JSON serialization."""
        with self._lock:
            return {
                "status": self.connection.value,
                "running": self.running,
                "syncInProgress": self.sync_in_progress,
                "lastSync": self.last_sync.isoformat() if self.last_sync else None,
                "message": self.message or _MESSAGES[self.connection],
                "intervalMinutes": self.interval_minutes,
                "cyclesCompleted": self.cycles_completed,
                "startedAt": self.started_at.isoformat() if self.started_at else None,
                "recentErrors": self.errors[-10:],
                "pid": os.getpid(),
            }
