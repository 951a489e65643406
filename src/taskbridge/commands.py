"""
Command processor: drain one batch of remote commands.

Commands are applied strictly in the order the service returned them.
Each one ends in exactly one acknowledgment, success or failure. A
failed acknowledgment is logged and dropped; the service will hand the
command out again on a later fetch, and it will be applied again (there
is no local deduplication).
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .automation import AutomationCapability
from .errors import TransportError, UnknownCommandError
from .models import CommandAction, CommandResult, SyncCommand
from .state import AgentState, StateEvent
from .transport import RemoteClient

logger = logging.getLogger("taskbridge.commands")


class CommandProcessor:
    """Fetch, apply, and acknowledge pending commands.

    Args:
        automation: Local task store access.
        client: Remote transport client.
        state: Shared agent state, moved to ``syncing`` while a batch runs.
    """

    def __init__(
        self,
        automation: AutomationCapability,
        client: RemoteClient,
        state: Optional[AgentState] = None,
    ):
        self._automation = automation
        self._client = client
        self._state = state
        self._handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            CommandAction.CREATE_TASK.value: self._create_task,
            CommandAction.UPDATE_TASK.value: self._update_task,
            CommandAction.DELETE_TASK.value: self._delete_task,
        }

    def process_pending(self) -> list[CommandResult]:
        """Fetch one batch and process every command in it.

        Returns:
            One result per fetched command, in fetch order.

        Raises:
            TransportError: If the batch itself cannot be fetched.
        """
        commands = self._client.get_pending_commands()
        if not commands:
            logger.debug("No pending commands")
            return []

        logger.info("Processing %d pending command(s)", len(commands))
        if self._state is not None:
            self._state.apply(StateEvent.COMMANDS_STARTED)
        return [self.execute(command) for command in commands]

    def execute(self, command: SyncCommand) -> CommandResult:
        """Apply one command and acknowledge the outcome."""
        error: Optional[str] = None
        try:
            if command.parse_error:
                raise ValueError(command.parse_error)
            self.dispatch(command)
        except UnknownCommandError as exc:
            error = str(exc)
            logger.warning("Rejected command %s: %s", command.id, error)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.error("Failed to execute command %s (%s): %s",
                         command.id, command.action, error)
        else:
            logger.info("Executed command %s: %s", command.id, command.action)

        success = error is None
        return CommandResult(
            command_id=command.id,
            action=command.action,
            success=success,
            error=error,
            acknowledged=self._acknowledge(command, success, error),
        )

    def dispatch(self, command: SyncCommand) -> None:
        """Run the handler for a command's action.

        Raises:
            UnknownCommandError: For actions without a local handler.
            AutomationError: If the automation call fails.
            ValueError: If the payload lacks a required field.
        """
        handler = self._handlers.get(command.action)
        if handler is None:
            raise UnknownCommandError(command.action)
        handler(command.data)

    def _acknowledge(self, command: SyncCommand, success: bool, error: Optional[str]) -> bool:
        try:
            self._client.acknowledge_command(command.id, success, error)
            return True
        except TransportError as exc:
            logger.warning("Acknowledgment for command %s failed: %s", command.id, exc)
            return False

    # -- handlers -----------------------------------------------------------

    def _create_task(self, data: dict[str, Any]) -> None:
        self._automation.create_task(
            _require(data, "projectName"),
            _require(data, "taskName"),
            data.get("options") or {},
        )

    def _update_task(self, data: dict[str, Any]) -> None:
        self._automation.update_task(
            _require(data, "taskId"),
            data.get("updates") or {},
        )

    def _delete_task(self, data: dict[str, Any]) -> None:
        self._automation.delete_task(_require(data, "taskId"))


def _require(data: dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise ValueError(f"Command payload missing '{key}'")
    return value
