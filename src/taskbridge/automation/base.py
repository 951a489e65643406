"""
Automation capability: the agent's only door into the local task store.

Every call is synchronous and bounded by a fixed timeout. Failures are
reported through a closed set of errors:

    AutomationNotFoundError   project or task does not exist
    AutomationTimeoutError    the call exceeded its timeout
    ScriptFailureError        anything else the automation layer reports
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..models import LocalTask

DEFAULT_TIMEOUT_SECONDS = 30


class AutomationCapability(ABC):
    """Read/write access to the locally automated task store."""

    timeout: float = DEFAULT_TIMEOUT_SECONDS

    @abstractmethod
    def get_tasks(self, project_name: str) -> list[LocalTask]:
        """Return every task in a local project.

        Args:
            project_name: Name of the local project.

        Returns:
            Tasks in the order the store reports them.
        """

    @abstractmethod
    def create_task(
        self,
        project_name: str,
        task_name: str,
        options: Optional[dict[str, Any]] = None,
    ) -> LocalTask:
        """Create a task at the end of a project.

        Args:
            project_name: Target project.
            task_name: Name of the new task.
            options: Optional ``note`` and ``dueDate`` (ISO 8601).

        Returns:
            The created task.
        """

    @abstractmethod
    def update_task(self, task_id: str, updates: dict[str, Any]) -> LocalTask:
        """Apply field updates (name, note, completed, dueDate) to a task."""

    @abstractmethod
    def delete_task(self, task_id: str) -> None:
        """Delete a task by id."""

    @abstractmethod
    def get_version(self) -> str:
        """Version string of the automated application."""
