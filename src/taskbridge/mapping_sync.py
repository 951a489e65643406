"""
Mapping synchronizer: extract one local project and forward it.

No diffing happens here. The local task list goes to the remote
service as-is; the service compares it with the remote project and
queues commands for whatever needs to change locally.
"""

from __future__ import annotations

import logging

from .automation import AutomationCapability
from .errors import AutomationError, TransportError
from .models import SyncMapping, SyncOutcome, SyncStatusReport
from .transport import RemoteClient

logger = logging.getLogger("taskbridge.mapping_sync")


class MappingSynchronizer:
    """Synchronize single mappings; never raises past ``sync``.

    Args:
        automation: Local task store access.
        client: Remote transport client.
    """

    def __init__(self, automation: AutomationCapability, client: RemoteClient):
        self._automation = automation
        self._client = client

    def sync(self, mapping: SyncMapping) -> SyncStatusReport:
        """Read the mapping's local tasks, forward them, and report.

        Args:
            mapping: An active mapping.

        Returns:
            The report that was (or was attempted to be) sent remotely.
        """
        if mapping.parse_error:
            logger.error("Mapping %s not synced: %s", mapping.id, mapping.parse_error)
            report = _error(mapping, ValueError(mapping.parse_error))
        else:
            logger.info("Syncing: %s", mapping.label)
            report = self._extract_and_forward(mapping)
        self._report(report)
        return report

    def _extract_and_forward(self, mapping: SyncMapping) -> SyncStatusReport:
        try:
            tasks = self._automation.get_tasks(mapping.local_project_name)
        except AutomationError as exc:
            logger.error("Failed to read %s for mapping %s: %s",
                         mapping.local_project_name, mapping.id, exc)
            return _error(mapping, exc)
        except Exception as exc:
            logger.exception("Unexpected automation failure for mapping %s", mapping.id)
            return _error(mapping, exc)

        try:
            self._client.send_task_data(mapping.id, tasks)
        except TransportError as exc:
            logger.error("Failed to send task data for mapping %s: %s", mapping.id, exc)
            return _error(mapping, exc)

        logger.debug("Mapping %s: forwarded %d task(s)", mapping.id, len(tasks))
        return SyncStatusReport(
            mapping_id=mapping.id,
            status=SyncOutcome.SUCCESS,
            details={"tasksFound": len(tasks)},
        )

    def _report(self, report: SyncStatusReport) -> None:
        try:
            self._client.report_sync_status(report)
        except TransportError as exc:
            logger.warning("Could not report status for mapping %s: %s",
                           report.mapping_id, exc)


def _error(mapping: SyncMapping, exc: Exception) -> SyncStatusReport:
    return SyncStatusReport(
        mapping_id=mapping.id,
        status=SyncOutcome.ERROR,
        details={"error": str(exc) or exc.__class__.__name__},
    )
