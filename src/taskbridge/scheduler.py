"""
Sync scheduler: one cycle at a time, whoever asks.

A cycle is:

    1. remote health check        (unhealthy -> abort, state = error)
    2. fetch mappings             (failure   -> abort, state = error)
    3. sync each active mapping   (failures reported, loop continues)
    4. drain pending commands     (fetch failure logged, cycle continues)
    5. record completion          (state = connected)

Both the periodic timer and manual triggers go through ``trigger``. If a
cycle is already running the request is dropped, not queued.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .automation import AutomationCapability
from .commands import CommandProcessor
from .config import AgentConfig
from .errors import AutomationError, CycleAbortError, RegistrationError, TransportError
from .mapping_sync import MappingSynchronizer
from .models import CycleReport, ServerConfig, SyncOutcome
from .state import AgentState, ConnectionState, StateEvent
from .transport import RemoteClient

logger = logging.getLogger("taskbridge.scheduler")

ALREADY_IN_PROGRESS = "Sync already in progress"


@dataclass
class TriggerResult:
    """What happened to a trigger request."""

    accepted: bool
    reason: Optional[str] = None
    report: Optional[CycleReport] = None


class SyncScheduler:
    """Owns cycle execution, the single-flight guard, and state transitions.

    Args:
        config: Validated agent config.
        client: Remote transport client.
        automation: Local task store access.
        state: Shared agent state. A fresh one is created when omitted.
    """

    def __init__(
        self,
        config: AgentConfig,
        client: RemoteClient,
        automation: AutomationCapability,
        state: Optional[AgentState] = None,
    ):
        self.config = config
        self.state = state or AgentState()
        self.server_config: Optional[ServerConfig] = None
        self._client = client
        self._automation = automation
        self._synchronizer = MappingSynchronizer(automation, client)
        self._processor = CommandProcessor(automation, client, self.state)
        self._cycle_lock = threading.Lock()
        self._clamp_logged = False
        self.state.interval_minutes = config.sync_interval_minutes

    @property
    def interval_minutes(self) -> int:
        """Effective sync interval after any plan-minimum clamp."""
        return self.config.sync_interval_minutes

    @property
    def in_progress(self) -> bool:
        return self._cycle_lock.locked()

    # -- startup ------------------------------------------------------------

    def start_up(self) -> None:
        """Register with the remote service and apply its plan configuration.

        Raises:
            RegistrationError: If registration fails. The agent cannot
                run without a registered identity.
        """
        version = self._automation_version()
        try:
            self._client.register_agent(version)
        except TransportError as exc:
            self.state.apply(StateEvent.CYCLE_ABORTED, f"Registration failed: {exc}")
            raise RegistrationError(f"Agent registration failed: {exc}") from exc
        self.state.apply(StateEvent.REGISTERED)
        logger.info("Registered with TaskBridge (automation version %s)", version)

        try:
            self.server_config = self._client.get_config()
        except TransportError as exc:
            logger.warning("Could not fetch server config, keeping %d minute interval: %s",
                           self.config.sync_interval_minutes, exc)
            return
        self.apply_plan_minimum(self.server_config.min_sync_interval_minutes)

    def apply_plan_minimum(self, minimum: Optional[int]) -> bool:
        """Raise the interval to the plan minimum if needed.

        Returns:
            True if the interval changed.
        """
        previous = self.config.sync_interval_minutes
        self.config, adjusted = self.config.with_plan_minimum(minimum)
        if adjusted:
            self.state.interval_minutes = self.config.sync_interval_minutes
            if not self._clamp_logged:
                logger.info(
                    "Sync interval raised from %d to %d minutes (plan minimum)",
                    previous, self.config.sync_interval_minutes,
                )
                self._clamp_logged = True
        return adjusted

    def _automation_version(self) -> str:
        try:
            version = self._automation.get_version()
        except AutomationError as exc:
            logger.warning("Could not read automation version: %s", exc)
            version = "unknown"
        self.state.automation_version = version
        return version

    # -- cycles -------------------------------------------------------------

    def trigger(self) -> TriggerResult:
        """Run one cycle now unless one is already running.

        Returns:
            ``accepted=False`` with ``reason`` when dropped, otherwise
            ``accepted=True`` with the cycle report.
        """
        if not self._begin():
            return TriggerResult(accepted=False, reason=ALREADY_IN_PROGRESS)
        return TriggerResult(accepted=True, report=self._run_locked())

    def trigger_in_background(self) -> TriggerResult:
        """Like ``trigger``, but the accepted cycle runs on its own thread.

        The in-progress decision is made before returning, so callers can
        answer "accepted" or "already running" without waiting.
        """
        if not self._begin():
            return TriggerResult(accepted=False, reason=ALREADY_IN_PROGRESS)
        thread = threading.Thread(target=self._run_locked, name="taskbridge-sync", daemon=True)
        thread.start()
        return TriggerResult(accepted=True)

    def _begin(self) -> bool:
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Trigger dropped: %s", ALREADY_IN_PROGRESS)
            return False
        self.state.set_sync_in_progress(True)
        return True

    def _run_locked(self) -> CycleReport:
        try:
            return self._run_cycle()
        finally:
            self.state.set_sync_in_progress(False)
            self._cycle_lock.release()

    def _run_cycle(self) -> CycleReport:
        report = CycleReport()
        self.state.apply(StateEvent.CYCLE_STARTED)
        logger.info("Starting sync cycle")

        try:
            self._run_steps(report)
        except CycleAbortError as exc:
            return self._abort(report, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error during sync cycle")
            return self._abort(report, f"Unexpected error: {exc}")

        report.finished_at = datetime.now(timezone.utc)
        self.state.record_cycle(report.finished_at)
        self.state.apply(StateEvent.CYCLE_COMPLETED)
        logger.info(
            "Sync cycle completed: %d mapping(s), %d error(s), %d command(s)",
            len(report.reports), len(report.errors), len(report.commands),
        )
        self._heartbeat(report)
        return report

    def _abort(self, report: CycleReport, reason: str) -> CycleReport:
        report.aborted = True
        report.abort_reason = reason
        report.finished_at = datetime.now(timezone.utc)
        self.state.apply(StateEvent.CYCLE_ABORTED, reason)
        self.state.record_error(reason)
        logger.error("Sync cycle aborted: %s", reason)
        return report

    def _run_steps(self, report: CycleReport) -> None:
        if not self._client.health_check():
            raise CycleAbortError("Web service is not accessible")

        try:
            mappings = self._client.get_sync_mappings()
        except TransportError as exc:
            raise CycleAbortError(f"Could not fetch mappings: {exc}") from exc

        active = [m for m in mappings if m.is_active]
        logger.info("Found %d active sync mapping(s)", len(active))
        for mapping in mappings:
            if not mapping.is_active:
                logger.debug("Skipping inactive mapping %s", mapping.id)
                continue
            result = self._synchronizer.sync(mapping)
            report.reports.append(result)
            if result.status == SyncOutcome.ERROR:
                self.state.record_error(f"Mapping {mapping.id}: {result.details.get('error')}")

        try:
            report.commands = self._processor.process_pending()
        except TransportError as exc:
            logger.error("Failed to process pending commands: %s", exc)
            self.state.record_error(f"Commands: {exc}")

    def _heartbeat(self, report: CycleReport) -> None:
        try:
            self._client.heartbeat(
                status="active",
                automation_connected=self.state.automation_version not in (None, "unknown"),
                last_sync=report.finished_at,
            )
        except TransportError as exc:
            logger.debug("Heartbeat failed: %s", exc)

    def stop(self) -> None:
        """Mark the agent disconnected."""
        self.state.apply(StateEvent.STOPPED)

    @property
    def connection(self) -> ConnectionState:
        return self.state.connection
