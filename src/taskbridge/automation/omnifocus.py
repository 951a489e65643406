"""
OmniFocus automation through JavaScript for Automation (JXA).

Each call shells out to ``osascript -l JavaScript`` with a small
dispatcher script. The script always prints one JSON document: either
the result or ``{"error": "..."}``. Errors whose message starts with
"Project not found" or "Task not found" map to AutomationNotFoundError.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from typing import Any, Optional, Sequence

from ..errors import (
    AutomationError,
    AutomationNotFoundError,
    AutomationTimeoutError,
    ScriptFailureError,
)
from ..models import LocalTask
from .base import DEFAULT_TIMEOUT_SECONDS, AutomationCapability

logger = logging.getLogger("taskbridge.automation.omnifocus")

APP_CANDIDATES = ("OmniFocus", "OmniFocus 4", "OmniFocus 3")

JXA_SCRIPT = r"""
function taskRecord(t, project) {
    return {
        id: t.id(),
        name: t.name(),
        note: t.note() || '',
        completed: t.completed(),
        completionDate: t.completionDate(),
        dueDate: t.dueDate(),
        creationDate: t.creationDate(),
        modificationDate: t.modificationDate(),
        projectId: project ? project.id() : null,
        projectName: project ? project.name() : null
    };
}

function findProject(of, name) {
    const projects = of.defaultDocument.flattenedProjects.whose({ name: name })();
    if (projects.length === 0) { throw new Error('Project not found: ' + name); }
    return projects[0];
}

function findTask(of, id) {
    const tasks = of.defaultDocument.flattenedTasks.whose({ id: id })();
    if (tasks.length === 0) { throw new Error('Task not found: ' + id); }
    return tasks[0];
}

function containingProject(t) {
    try { return t.containingProject(); } catch (e) { return null; }
}

function run(argv) {
    const appName = argv[0];
    const action = argv[1];
    const args = argv.length > 2 ? JSON.parse(argv[2]) : {};
    try {
        const of = Application(appName);
        switch (action) {
            case 'version':
                return JSON.stringify({ version: of.version() });
            case 'getTasks': {
                const project = findProject(of, args.projectName);
                const tasks = project.flattenedTasks();
                return JSON.stringify({ tasks: tasks.map(function (t) { return taskRecord(t, project); }) });
            }
            case 'createTask': {
                const project = findProject(of, args.projectName);
                const options = args.options || {};
                const task = of.Task({ name: args.taskName });
                project.tasks.push(task);
                if (options.note) { task.note = options.note; }
                if (options.dueDate) { task.dueDate = new Date(options.dueDate); }
                return JSON.stringify({ task: taskRecord(task, project) });
            }
            case 'updateTask': {
                const task = findTask(of, args.taskId);
                const u = args.updates || {};
                if (u.name) { task.name = u.name; }
                if (u.note !== undefined) { task.note = u.note; }
                if (u.dueDate !== undefined) { task.dueDate = u.dueDate === null ? null : new Date(u.dueDate); }
                if (u.completed === true) { of.markComplete(task); }
                if (u.completed === false) { of.markIncomplete(task); }
                return JSON.stringify({ task: taskRecord(task, containingProject(task)) });
            }
            case 'deleteTask': {
                of.delete(findTask(of, args.taskId));
                return JSON.stringify({ deleted: true });
            }
            default:
                throw new Error('Unknown action: ' + action);
        }
    } catch (e) {
        return JSON.stringify({ error: e.message });
    }
}
"""


class OmniFocusAutomation(AutomationCapability):
    """Automation capability backed by OmniFocus on macOS.

    Args:
        app_name: Application name. Detected on first use when omitted.
        timeout: Seconds before a call is abandoned.
        osascript: Path to the osascript binary.
    """

    def __init__(
        self,
        app_name: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        osascript: str = "osascript",
    ):
        self._app_name = app_name
        self.timeout = timeout
        self._osascript = osascript
        self._version: Optional[str] = None

    @property
    def app_name(self) -> str:
        """Name of the OmniFocus application being scripted."""
        if self._app_name is None:
            self._app_name, self._version = self._detect()
        return self._app_name

    def available(self) -> bool:
        """True if osascript exists on this machine."""
        return shutil.which(self._osascript) is not None

    def _detect(self) -> tuple[str, str]:
        """Find the first installed OmniFocus application.

        Raises:
            ScriptFailureError: If none of the candidates responds.
        """
        last_error: Optional[AutomationError] = None
        for candidate in APP_CANDIDATES:
            try:
                result = self._run_script(candidate, "version", {})
                version = str(result.get("version", ""))
                logger.debug("Detected %s %s", candidate, version)
                return candidate, version
            except AutomationTimeoutError:
                raise
            except AutomationError as exc:
                last_error = exc
        raise ScriptFailureError(
            f"OmniFocus is not installed or not scriptable: {last_error}"
        )

    def _run_script(self, app_name: str, action: str, args: dict[str, Any]) -> dict:
        """Run one JXA action and decode its JSON output.

        Raises:
            AutomationTimeoutError: If osascript exceeds the timeout.
            AutomationNotFoundError: If the script reports a missing target.
            ScriptFailureError: For any other failure.
        """
        cmd: Sequence[str] = [
            self._osascript, "-l", "JavaScript", "-e", JXA_SCRIPT,
            app_name, action, json.dumps(args),
        ]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise AutomationTimeoutError(
                f"{action} timed out after {self.timeout:g}s"
            ) from exc
        except OSError as exc:
            raise ScriptFailureError(f"Cannot run osascript: {exc}") from exc

        if result.returncode != 0:
            raise ScriptFailureError(
                f"{action} failed: {result.stderr.strip() or 'exit ' + str(result.returncode)}"
            )

        try:
            data = json.loads(result.stdout.strip() or "{}")
        except json.JSONDecodeError as exc:
            raise ScriptFailureError(f"{action} returned invalid JSON") from exc

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            if "not found" in error.lower():
                raise AutomationNotFoundError(error)
            raise ScriptFailureError(error)
        return data

    def _call(self, action: str, **args: Any) -> dict:
        return self._run_script(self.app_name, action, args)

    def get_tasks(self, project_name: str) -> list[LocalTask]:
        data = self._call("getTasks", projectName=project_name)
        return [LocalTask.model_validate(t) for t in data.get("tasks", [])]

    def create_task(
        self,
        project_name: str,
        task_name: str,
        options: Optional[dict[str, Any]] = None,
    ) -> LocalTask:
        data = self._call(
            "createTask",
            projectName=project_name,
            taskName=task_name,
            options=options or {},
        )
        logger.info("Created task '%s' in %s", task_name, project_name)
        return LocalTask.model_validate(data["task"])

    def update_task(self, task_id: str, updates: dict[str, Any]) -> LocalTask:
        data = self._call("updateTask", taskId=task_id, updates=updates)
        logger.info("Updated task %s (%s)", task_id, ", ".join(sorted(updates)))
        return LocalTask.model_validate(data["task"])

    def delete_task(self, task_id: str) -> None:
        self._call("deleteTask", taskId=task_id)
        logger.info("Deleted task %s", task_id)

    def get_version(self) -> str:
        if self._version is None:
            if self._app_name is None:
                self._app_name, self._version = self._detect()
            else:
                self._version = str(self._call("version").get("version", ""))
        return self._version
