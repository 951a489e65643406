"""
Error taxonomy for the agent.

Only ConfigurationError and RegistrationError are allowed to end the
process. Everything else is caught at the component boundary and turned
into a status report, a command acknowledgment, or a state change.
"""

from __future__ import annotations

from typing import Optional


class TaskBridgeError(Exception):
    """Base class for all agent errors."""


class ConfigurationError(TaskBridgeError):
    """Invalid or missing settings at startup.

    Attributes:
        problems: One human-readable line per failed setting.
    """

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("Invalid agent configuration: " + "; ".join(self.problems))


class TransportError(TaskBridgeError):
    """Network failure, timeout, or non-2xx response from the remote service."""

    def __init__(
        self,
        message: str,
        method: str = "",
        endpoint: str = "",
        status_code: Optional[int] = None,
    ):
        self.method = method
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(message)


class RegistrationError(TaskBridgeError):
    """The agent could not register its identity with the remote service."""


class CycleAbortError(TaskBridgeError):
    """The current sync cycle cannot continue (remote unhealthy)."""


class UnknownCommandError(TaskBridgeError):
    """A remote command carried an action this agent does not handle."""

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Unknown command action: {action}")


# ---------------------------------------------------------------------------
# Automation boundary
# ---------------------------------------------------------------------------


class AutomationError(TaskBridgeError):
    """Failure from the local automation capability."""


class AutomationNotFoundError(AutomationError):
    """The targeted project or task does not exist locally."""


class AutomationTimeoutError(AutomationError):
    """The automation call did not finish within its timeout."""


class ScriptFailureError(AutomationError):
    """The automation script failed (application busy, not installed, bad output)."""


# ---------------------------------------------------------------------------
# Device pairing
# ---------------------------------------------------------------------------


class SessionNotFoundError(TaskBridgeError):
    """Pairing session is absent or expired. The two cases are not distinguished."""

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        super().__init__("Session not found or expired")


class InvalidCredentialsError(TaskBridgeError):
    """The pairing login gate rejected the supplied credentials."""


class PairingTimeoutError(TaskBridgeError):
    """The pairing session was not approved before the caller gave up."""
