"""Tests for the shared pydantic models."""

from __future__ import annotations

from datetime import datetime, timezone

from taskbridge.models import (
    CommandResult,
    CycleReport,
    LocalTask,
    ServerConfig,
    SyncCommand,
    SyncMapping,
    SyncOutcome,
    SyncStatusReport,
)


class TestSyncMapping:
    """Parsing remote mapping payloads."""

    def test_from_remote_payload(self):
        m = SyncMapping.model_validate({
            "id": "m1",
            "asanaProjectId": "123",
            "asanaProjectName": "Launch",
            "ofProjectName": "Launch (OF)",
            "isActive": False,
            "lastSyncAt": "2024-01-01T00:00:00Z",
            "userId": "ignored",
        })
        assert m.remote_project_id == "123"
        assert m.local_project_name == "Launch (OF)"
        assert m.is_active is False
        assert m.last_sync_at.year == 2024

    def test_active_by_default(self):
        m = SyncMapping(id="m1", local_project_name="Inbox")
        assert m.is_active is True

    def test_numeric_id_becomes_string(self):
        m = SyncMapping.model_validate({"id": 42, "ofProjectName": "Work"})
        assert m.id == "42"

    def test_unparseable_placeholder(self):
        m = SyncMapping.unparseable("m1", "Malformed mapping: x", is_active=False)
        assert m.parse_error == "Malformed mapping: x"
        assert m.is_active is False

    def test_label(self):
        m = SyncMapping(id="m1", remote_project_name="Launch", local_project_name="Work")
        assert m.label == "Launch <-> Work"


class TestSyncCommand:
    """Parsing remote commands."""

    def test_unknown_action_still_parses(self):
        cmd = SyncCommand.model_validate({"id": "c1", "action": "explode", "mappingId": "m1"})
        assert cmd.action == "explode"
        assert cmd.mapping_id == "m1"
        assert cmd.data == {}

    def test_null_data_is_empty(self):
        cmd = SyncCommand.model_validate({"id": "c1", "action": "sync_project", "data": None})
        assert cmd.data == {}
        assert cmd.parse_error is None

    def test_numeric_ids_become_strings(self):
        cmd = SyncCommand.model_validate({"id": 17, "action": "delete_task", "mappingId": 3})
        assert cmd.id == "17"
        assert cmd.mapping_id == "3"

    def test_unparseable_placeholder(self):
        cmd = SyncCommand.unparseable("c9", "", "Malformed command: action: Field required")
        assert cmd.id == "c9"
        assert cmd.data == {}
        assert cmd.parse_error.startswith("Malformed command")

    def test_result_defaults(self):
        result = CommandResult(command_id="c1", action="create_task", success=True)
        assert result.error is None
        assert result.acknowledged is False


class TestPayloads:
    """Wire formats sent to the remote service."""

    def test_status_report_payload(self):
        ts = datetime(2024, 5, 1, tzinfo=timezone.utc)
        report = SyncStatusReport(
            mapping_id="m1", status=SyncOutcome.SUCCESS,
            details={"tasksFound": 3}, timestamp=ts,
        )
        payload = report.to_payload()
        assert payload["mappingId"] == "m1"
        assert payload["status"] == "success"
        assert payload["details"]["tasksFound"] == 3
        assert payload["details"]["timestamp"] == ts.isoformat()

    def test_local_task_payload_is_camel_case(self):
        task = LocalTask.model_validate({
            "id": "t1", "name": "Write", "completed": True,
            "dueDate": "2024-05-01T09:00:00Z", "projectName": "Work",
        })
        payload = task.to_payload()
        assert payload["dueDate"].startswith("2024-05-01")
        assert payload["projectName"] == "Work"
        assert payload["completionDate"] is None
        assert "due_date" not in payload

    def test_local_task_null_dates(self):
        task = LocalTask.model_validate({"id": "t1", "name": "x", "dueDate": None})
        assert task.due_date is None


class TestServerConfig:
    def test_plan_fields(self):
        cfg = ServerConfig.model_validate({
            "plan": "FREE", "minSyncIntervalMinutes": 60,
            "maxSyncIntervalMinutes": 1440, "features": {"realTimeSync": False},
        })
        assert cfg.min_sync_interval_minutes == 60
        assert cfg.features["realTimeSync"] is False

    def test_minimum_optional(self):
        assert ServerConfig().min_sync_interval_minutes is None


class TestCycleReport:
    def test_errors_and_outcome(self):
        report = CycleReport(reports=[
            SyncStatusReport(mapping_id="a", status=SyncOutcome.SUCCESS),
            SyncStatusReport(mapping_id="b", status=SyncOutcome.ERROR, details={"error": "x"}),
        ])
        assert [r.mapping_id for r in report.errors] == ["b"]
        assert report.outcome_for("a") == SyncOutcome.SUCCESS
        assert report.outcome_for("zzz") is None
