"""
Remote transport client: authenticated calls to the TaskBridge service.

Every call carries the agent key as a bearer token, times out after 30
seconds, and is attempted exactly once. Failures of any kind (network,
timeout, non-2xx, undecodable body) surface as TransportError; callers
decide whether that becomes a status report, a failed acknowledgment,
or an aborted cycle.
"""

from __future__ import annotations

import logging
import platform
from datetime import datetime, timezone
from typing import Any, Optional

import requests
from pydantic import ValidationError

from . import __version__
from .config import AgentConfig
from .errors import TransportError
from .models import (
    LocalTask,
    ServerConfig,
    SyncCommand,
    SyncMapping,
    SyncStatusReport,
)

logger = logging.getLogger("taskbridge.transport")

API_PREFIX = "/api/agent"
DEFAULT_TIMEOUT_SECONDS = 30
AGENT_CAPABILITIES = ["projects", "tasks", "real-time-sync"]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class RemoteClient:
    """Client for the agent-facing remote API.

    Args:
        config: Validated agent configuration (base URL and key).
        timeout: Per-call timeout in seconds.
        session: Optional requests session, mainly for tests.
    """

    def __init__(
        self,
        config: AgentConfig,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self._base_url = config.api_base_url + API_PREFIX
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {config.agent_key}",
            "Content-Type": "application/json",
            "User-Agent": f"TaskBridge-Agent/{__version__}",
        })

    def _api_call(
        self,
        method: str,
        endpoint: str,
        data: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Make one authenticated API call.

        Args:
            method: HTTP method.
            endpoint: Path below ``/api/agent``.
            data: JSON body.

        Returns:
            Parsed JSON response (empty dict for an empty body).

        Raises:
            TransportError: On network failure, timeout, or status >= 400.
        """
        url = f"{self._base_url}{endpoint}"
        try:
            resp = self._session.request(
                method, url, json=data, timeout=self._timeout,
            )
        except requests.Timeout as exc:
            raise TransportError(
                f"{method} {endpoint} timed out after {self._timeout:g}s",
                method=method, endpoint=endpoint,
            ) from exc
        except requests.RequestException as exc:
            raise TransportError(
                f"{method} {endpoint} failed: {exc}",
                method=method, endpoint=endpoint,
            ) from exc

        if resp.status_code >= 400:
            raise TransportError(
                f"{method} {endpoint}: {resp.status_code} {resp.text[:200]}",
                method=method, endpoint=endpoint, status_code=resp.status_code,
            )

        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as exc:
            raise TransportError(
                f"{method} {endpoint}: response is not JSON",
                method=method, endpoint=endpoint, status_code=resp.status_code,
            ) from exc
        return body if isinstance(body, dict) else {"data": body}

    # -- startup ------------------------------------------------------------

    def register_agent(self, automation_version: str) -> dict:
        """Announce this agent and its capabilities."""
        return self._api_call("POST", "/register", data={
            "version": automation_version,
            "capabilities": AGENT_CAPABILITIES,
            "platform": platform.system().lower(),
            "agentVersion": __version__,
            "pythonVersion": platform.python_version(),
        })

    def get_config(self) -> ServerConfig:
        """Fetch the plan-based configuration for this agent."""
        body = self._api_call("GET", "/config")
        return _parse(ServerConfig, body, "/config")

    # -- per cycle ----------------------------------------------------------

    def health_check(self) -> bool:
        """True if the remote service answers its health endpoint."""
        try:
            self._api_call("GET", "/health")
            return True
        except TransportError as exc:
            logger.warning("Remote health check failed: %s", exc)
            return False

    def get_sync_mappings(self) -> list[SyncMapping]:
        """Fetch the current mapping list.

        Items are validated one by one. A malformed item that still has an
        id comes back as ``SyncMapping.unparseable`` so it can be reported
        on its own; one without an id is logged and dropped.
        """
        body = self._api_call("GET", "/mappings")
        return [m for m in map(_parse_mapping, body.get("mappings") or []) if m is not None]

    def send_task_data(self, mapping_id: str, tasks: list[LocalTask]) -> dict:
        """Forward a project's local task list for remote comparison."""
        return self._api_call("POST", "/task-data", data={
            "mappingId": mapping_id,
            "tasks": [t.to_payload() for t in tasks],
            "timestamp": _timestamp(),
        })

    def report_sync_status(self, report: SyncStatusReport) -> None:
        """Send one mapping's outcome."""
        self._api_call("POST", "/sync-status", data=report.to_payload())

    def get_pending_commands(self) -> list[SyncCommand]:
        """Fetch one batch of queued commands, in server order.

        Malformed commands that carry an id are returned as
        ``SyncCommand.unparseable`` so they still get a failure ack.
        """
        body = self._api_call("GET", "/commands")
        return [c for c in map(_parse_command, body.get("commands") or []) if c is not None]

    def acknowledge_command(
        self,
        command_id: str,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        """Report the outcome of one command."""
        payload: dict[str, Any] = {
            "commandId": command_id,
            "success": success,
            "timestamp": _timestamp(),
        }
        if error is not None:
            payload["error"] = error
        self._api_call("POST", "/commands/ack", data=payload)

    def heartbeat(
        self,
        status: str,
        automation_connected: bool,
        last_sync: Optional[datetime],
    ) -> None:
        """Tell the service this agent is alive."""
        self._api_call("POST", "/heartbeat", data={
            "status": status,
            "omnifocus_connected": automation_connected,
            "last_sync": last_sync.isoformat() if last_sync else None,
        })

    def close(self) -> None:
        """Release pooled connections."""
        self._session.close()


def _parse(model: type, data: Any, endpoint: str):
    """Validate one response item, reporting schema drift as a transport failure."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise TransportError(
            f"GET {endpoint}: malformed {model.__name__}: {exc.error_count()} error(s)",
            method="GET", endpoint=endpoint,
        ) from exc


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'item'}: {err['msg']}"
        for err in exc.errors()
    )


def _item_id(item: Any) -> Optional[str]:
    if not isinstance(item, dict):
        return None
    value = item.get("id")
    if value is None or isinstance(value, (dict, list)) or value == "":
        return None
    return str(value)


def _parse_mapping(item: Any) -> Optional[SyncMapping]:
    try:
        return SyncMapping.model_validate(item)
    except ValidationError as exc:
        error = f"Malformed mapping: {_describe(exc)}"
        mapping_id = _item_id(item)
        if mapping_id is None:
            logger.warning("Skipping mapping without an id: %s", error)
            return None
        logger.warning("Mapping %s: %s", mapping_id, error)
        active = item.get("isActive", item.get("is_active", True))
        return SyncMapping.unparseable(
            mapping_id, error, is_active=active if isinstance(active, bool) else True,
        )


def _parse_command(item: Any) -> Optional[SyncCommand]:
    try:
        return SyncCommand.model_validate(item)
    except ValidationError as exc:
        error = f"Malformed command: {_describe(exc)}"
        command_id = _item_id(item)
        if command_id is None:
            logger.warning("Skipping command without an id: %s", error)
            return None
        action = item.get("action")
        return SyncCommand.unparseable(
            command_id, action if isinstance(action, str) else "", error,
        )
