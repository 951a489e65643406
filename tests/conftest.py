"""Shared test fixtures for taskbridge."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest

from taskbridge.automation import AutomationCapability
from taskbridge.config import AgentConfig
from taskbridge.models import LocalTask, ServerConfig
from taskbridge.transport import RemoteClient

AGENT_KEY = "k" * 40


class FakeAutomation(AutomationCapability):
    """In-memory task store keyed by project name.

    ``failures`` maps a project name or task id to the exception the
    next call touching it should raise. ``gate`` (if set) blocks
    ``get_tasks`` until released, for single-flight tests.
    """

    def __init__(self, projects: Optional[dict[str, list[LocalTask]]] = None):
        self.projects: dict[str, list[LocalTask]] = projects or {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple] = []
        self.version = "4.0"
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self._next_id = 1

    def _maybe_fail(self, key: str) -> None:
        if key in self.failures:
            raise self.failures[key]

    def get_tasks(self, project_name: str) -> list[LocalTask]:
        self.calls.append(("get_tasks", project_name))
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        self._maybe_fail(project_name)
        return list(self.projects.get(project_name, []))

    def create_task(self, project_name: str, task_name: str, options: Optional[dict[str, Any]] = None) -> LocalTask:
        self.calls.append(("create_task", project_name, task_name, options))
        self._maybe_fail(project_name)
        task = LocalTask(id=f"t{self._next_id}", name=task_name, project_name=project_name)
        self._next_id += 1
        self.projects.setdefault(project_name, []).append(task)
        return task

    def update_task(self, task_id: str, updates: dict[str, Any]) -> LocalTask:
        self.calls.append(("update_task", task_id, updates))
        self._maybe_fail(task_id)
        return LocalTask(id=task_id, name=updates.get("name", "updated"))

    def delete_task(self, task_id: str) -> None:
        self.calls.append(("delete_task", task_id))
        self._maybe_fail(task_id)

    def get_version(self) -> str:
        self._maybe_fail("version")
        return self.version


@pytest.fixture
def agent_home(tmp_path: Path) -> Path:
    """Provide a temporary agent home directory."""
    home = tmp_path / ".taskbridge"
    home.mkdir()
    return home


@pytest.fixture
def config(agent_home: Path) -> AgentConfig:
    """A valid config pointing at a fake remote."""
    return AgentConfig(
        agent_key=AGENT_KEY,
        api_base_url="https://taskbridge.test",
        sync_interval_minutes=5,
        port=0,
        home=agent_home,
    )


@pytest.fixture
def automation() -> FakeAutomation:
    return FakeAutomation()


@pytest.fixture
def client() -> MagicMock:
    """A healthy remote client with no mappings or commands."""
    mock = MagicMock(spec=RemoteClient)
    mock.health_check.return_value = True
    mock.get_sync_mappings.return_value = []
    mock.get_pending_commands.return_value = []
    mock.get_config.return_value = ServerConfig(plan="PRO", min_sync_interval_minutes=5)
    mock.register_agent.return_value = {"success": True}
    return mock
