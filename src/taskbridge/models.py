"""
Pydantic models shared by the scheduler, synchronizer, and command processor.

Remote payloads arrive in camelCase; models accept those names as
aliases and expose snake_case attributes. Nothing here is persisted
locally: mappings and commands are fetched fresh every cycle.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_id(value: Any) -> Any:
    """Accept numeric ids from the service as strings."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class CommandAction(str, Enum):
    """Action kinds the remote service can queue."""

    CREATE_TASK = "create_task"
    UPDATE_TASK = "update_task"
    DELETE_TASK = "delete_task"
    SYNC_PROJECT = "sync_project"


class SyncOutcome(str, Enum):
    """Result of synchronizing one mapping."""

    SUCCESS = "success"
    ERROR = "error"


class SyncMapping(BaseModel):
    """Pairing between one remote project and one local project."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    remote_project_id: str = Field(
        default="",
        validation_alias=AliasChoices("remote_project_id", "asanaProjectId", "remoteProjectId"),
    )
    remote_project_name: str = Field(
        default="",
        validation_alias=AliasChoices("remote_project_name", "asanaProjectName", "remoteProjectName"),
    )
    local_project_name: str = Field(
        validation_alias=AliasChoices("local_project_name", "ofProjectName", "localProjectName"),
    )
    is_active: bool = Field(
        default=True,
        validation_alias=AliasChoices("is_active", "isActive"),
    )
    last_sync_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("last_sync_at", "lastSyncAt"),
    )
    parse_error: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def id_as_str(cls, v: Any) -> Any:
        return _as_id(v)

    @classmethod
    def unparseable(cls, mapping_id: str, error: str, is_active: bool = True) -> SyncMapping:
        """Placeholder for a mapping the service sent in a shape we cannot read.

        It is reported as a per-mapping error instead of failing the list.
        """
        return cls.model_construct(
            id=mapping_id, remote_project_id="", remote_project_name="",
            local_project_name="", is_active=is_active, last_sync_at=None,
            parse_error=error,
        )

    @property
    def label(self) -> str:
        """Human-readable ``remote <-> local`` label for logs."""
        return f"{self.remote_project_name or self.remote_project_id} <-> {self.local_project_name}"


class SyncCommand(BaseModel):
    """A remotely queued instruction to mutate local task state.

    ``action`` stays a plain string so that unknown kinds still parse
    and are rejected (and acknowledged) by the dispatcher. ``data`` is
    opaque; anything other than an object is treated as empty.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    action: str
    mapping_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("mapping_id", "mappingId"),
    )
    data: dict[str, Any] = Field(default_factory=dict)
    parse_error: Optional[str] = None

    @field_validator("id", "mapping_id", mode="before")
    @classmethod
    def ids_as_str(cls, v: Any) -> Any:
        return _as_id(v)

    @field_validator("data", mode="before")
    @classmethod
    def data_as_dict(cls, v: Any) -> dict:
        return v if isinstance(v, dict) else {}

    @classmethod
    def unparseable(cls, command_id: str, action: str, error: str) -> SyncCommand:
        """Placeholder for a command that failed validation; it is acknowledged as failed."""
        return cls.model_construct(
            id=command_id, action=action, mapping_id=None, data={}, parse_error=error,
        )


class CommandResult(BaseModel):
    """Outcome of applying and acknowledging one command."""

    command_id: str
    action: str
    success: bool
    error: Optional[str] = None
    acknowledged: bool = False


class SyncStatusReport(BaseModel):
    """Per-mapping result sent to the remote service."""

    mapping_id: str
    status: SyncOutcome
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)

    def to_payload(self) -> dict:
        """Wire format for ``POST /sync-status``."""
        details = dict(self.details)
        details.setdefault("timestamp", self.timestamp.isoformat())
        return {
            "mappingId": self.mapping_id,
            "status": self.status.value,
            "details": details,
            "timestamp": self.timestamp.isoformat(),
        }


class LocalTask(BaseModel):
    """A task as read from the local automation store."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str
    note: str = ""
    completed: bool = False
    completion_date: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("completion_date", "completionDate"),
    )
    due_date: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("due_date", "dueDate"),
    )
    creation_date: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("creation_date", "creationDate"),
    )
    modification_date: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("modification_date", "modificationDate"),
    )
    project_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("project_id", "projectId"),
    )
    project_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("project_name", "projectName"),
    )

    def to_payload(self) -> dict:
        """camelCase dict for ``POST /task-data``."""
        return {
            "id": self.id,
            "name": self.name,
            "note": self.note,
            "completed": self.completed,
            "completionDate": _iso(self.completion_date),
            "dueDate": _iso(self.due_date),
            "creationDate": _iso(self.creation_date),
            "modificationDate": _iso(self.modification_date),
            "projectId": self.project_id,
            "projectName": self.project_name,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ServerConfig(BaseModel):
    """Server-declared agent configuration, tied to the user's plan."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    plan: str = "FREE"
    min_sync_interval_minutes: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("min_sync_interval_minutes", "minSyncIntervalMinutes"),
    )
    max_sync_interval_minutes: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("max_sync_interval_minutes", "maxSyncIntervalMinutes"),
    )
    recommended_sync_interval_minutes: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices(
            "recommended_sync_interval_minutes", "recommendedSyncIntervalMinutes",
        ),
    )
    features: dict[str, bool] = Field(default_factory=dict)


class CycleReport(BaseModel):
    """Everything one sync cycle did."""

    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None
    aborted: bool = False
    abort_reason: Optional[str] = None
    reports: list[SyncStatusReport] = Field(default_factory=list)
    commands: list[CommandResult] = Field(default_factory=list)

    @property
    def errors(self) -> list[SyncStatusReport]:
        """Mapping reports that ended in error."""
        return [r for r in self.reports if r.status == SyncOutcome.ERROR]

    def outcome_for(self, mapping_id: str) -> Optional[SyncOutcome]:
        """Outcome recorded for a mapping in this cycle, if any."""
        for report in self.reports:
            if report.mapping_id == mapping_id:
                return report.status
        return None
