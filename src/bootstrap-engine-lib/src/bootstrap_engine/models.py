"""
bootstrap_engine.models — Bootstrap run and project metadata records.

Defines the canonical data model for the bootstrap DynamoDB tables.

Tables defined here:
    platform-bootstrap-runs      — runs, per-project run history, active-run pointer
    platform-project-metadata    — provisioned backing-database / hosting records
    platform-audit-log           — append-only audit entries

All timestamps are ISO 8601 UTC strings with a trailing "Z".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

# ---------------------------------------------------------------------------
# Enums — constrained vocabulary for status/type fields
# ---------------------------------------------------------------------------


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class LogLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ErrorClassification(StrEnum):
    """Why a provisioning step failed.

    Informational only: every classification is retryable by the caller.
    """

    INVALID_INPUT = "InvalidInput"
    CONFIGURATION_ERROR = "ConfigurationError"
    INVALID_CREDENTIALS = "InvalidCredentials"
    PERMISSION_DENIED = "PermissionDenied"
    RATE_LIMITED = "RateLimited"
    NETWORK_ERROR = "NetworkError"
    RESOURCE_NOT_FOUND = "ResourceNotFound"
    INTEGRITY_ERROR = "IntegrityError"
    UNKNOWN = "Unknown"


class AuditStatus(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ACTIVE_RUN_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.PENDING, RunStatus.RUNNING})
RUNNABLE_STEP_STATUSES: frozenset[StepStatus] = frozenset({StepStatus.PENDING, StepStatus.FAILED})


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


# ---------------------------------------------------------------------------
# Table: platform-bootstrap-runs
# Run item:        PK: RUN#{runId}          SK: METADATA
# History item:    PK: PROJECT#{projectId}  SK: RUN#{createdAt}#{runId}
# Active pointer:  PK: PROJECT#{projectId}  SK: ACTIVE_RUN
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LogEntry:
    """One append-only line in a run's progress log."""

    timestamp: str
    level: LogLevel
    message: str

    def to_item(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "level": self.level.value, "message": self.message}

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> LogEntry:
        return cls(
            timestamp=str(item.get("timestamp", "")),
            level=LogLevel(str(item.get("level", LogLevel.INFO.value))),
            message=str(item.get("message", "")),
        )


@dataclass(frozen=True)
class StepRecord:
    """Status of one registry step within a run.

    metadata: non-secret descriptor returned by a successful step (e.g.
    hosting project id, preview URL).  Never holds key material.
    """

    step: str
    status: StepStatus = StepStatus.PENDING
    started_at: str | None = None
    completed_at: str | None = None
    error_summary: str | None = None
    error_details: str | None = None
    classification: ErrorClassification | None = None
    metadata: dict[str, Any] | None = None

    def to_item(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error_summary": self.error_summary,
            "error_details": self.error_details,
            "classification": self.classification.value if self.classification else None,
            "metadata": dict(self.metadata) if self.metadata else None,
        }

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> StepRecord:
        classification = _str_or_none(item.get("classification"))
        metadata = item.get("metadata")
        return cls(
            step=str(item["step"]),
            status=StepStatus(str(item.get("status", StepStatus.PENDING.value))),
            started_at=_str_or_none(item.get("started_at")),
            completed_at=_str_or_none(item.get("completed_at")),
            error_summary=_str_or_none(item.get("error_summary")),
            error_details=_str_or_none(item.get("error_details")),
            classification=ErrorClassification(classification) if classification else None,
            metadata=dict(metadata) if isinstance(metadata, dict) else None,
        )


@dataclass(frozen=True)
class BootstrapRun:
    """One end-to-end execution attempt of the bootstrap pipeline.

    Lifecycle: PENDING → RUNNING → SUCCEEDED | FAILED
    A FAILED run returns to RUNNING when a failed step is retried.
    step_history holds exactly one StepRecord per registry step, in
    registry order.
    """

    id: str
    project_id: str
    status: RunStatus
    current_step: str | None
    step_history: tuple[StepRecord, ...]
    logs: tuple[LogEntry, ...]
    created_at: str
    updated_at: str
    completed_at: str | None = None

    @property
    def pk(self) -> str:
        return f"RUN#{self.id}"

    @property
    def sk(self) -> str:
        return "METADATA"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    def step_record(self, step_id: str) -> StepRecord | None:
        for record in self.step_history:
            if record.step == step_id:
                return record
        return None

    def to_item(self) -> dict[str, Any]:
        return {
            "PK": self.pk,
            "SK": self.sk,
            "run_id": self.id,
            "project_id": self.project_id,
            "status": self.status.value,
            "current_step": self.current_step,
            "step_history": [record.to_item() for record in self.step_history],
            "logs": [entry.to_item() for entry in self.logs],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> BootstrapRun:
        return cls(
            id=str(item["run_id"]),
            project_id=str(item["project_id"]),
            status=RunStatus(str(item["status"])),
            current_step=_str_or_none(item.get("current_step")),
            step_history=tuple(StepRecord.from_item(s) for s in item.get("step_history") or []),
            logs=tuple(LogEntry.from_item(entry) for entry in item.get("logs") or []),
            created_at=str(item["created_at"]),
            updated_at=str(item.get("updated_at") or item["created_at"]),
            completed_at=_str_or_none(item.get("completed_at")),
        )


# ---------------------------------------------------------------------------
# Table: platform-project-metadata
# PK: PROJECT#{projectId}  SK: BACKING_DATABASE | HOSTING_PROJECT
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackingDatabaseRecord:
    """Backing database provisioned for a project.

    encrypted_*: SecretCipher ciphertext.  Plaintext keys are only ever held
    in memory during the hosting step and are never serialised to callers.
    """

    project_id: str
    project_ref: str
    api_url: str
    encrypted_anon_key: str | None
    encrypted_service_role_key: str | None
    status: str
    created_at: str
    updated_at: str
    region: str | None = None

    @property
    def pk(self) -> str:
        return f"PROJECT#{self.project_id}"

    @property
    def sk(self) -> str:
        return "BACKING_DATABASE"

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> BackingDatabaseRecord:
        return cls(
            project_id=str(item["project_id"]),
            project_ref=str(item.get("project_ref", "")),
            api_url=str(item.get("api_url", "")),
            encrypted_anon_key=_str_or_none(item.get("encrypted_anon_key")),
            encrypted_service_role_key=_str_or_none(item.get("encrypted_service_role_key")),
            status=str(item.get("status", "")),
            created_at=str(item.get("created_at", "")),
            updated_at=str(item.get("updated_at", "")),
            region=_str_or_none(item.get("region")),
        )


@dataclass(frozen=True)
class HostingProjectRecord:
    """Hosting project linked to the project's source repository.

    Recorded as soon as the hosting project exists so a re-run of the
    hosting step reuses it instead of creating a second one.
    """

    project_id: str
    hosting_project_id: str
    hosting_project_name: str
    created_at: str
    updated_at: str
    deployment_id: str | None = None
    preview_url: str | None = None

    @property
    def pk(self) -> str:
        return f"PROJECT#{self.project_id}"

    @property
    def sk(self) -> str:
        return "HOSTING_PROJECT"

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> HostingProjectRecord:
        return cls(
            project_id=str(item["project_id"]),
            hosting_project_id=str(item.get("hosting_project_id", "")),
            hosting_project_name=str(item.get("hosting_project_name", "")),
            created_at=str(item.get("created_at", "")),
            updated_at=str(item.get("updated_at", "")),
            deployment_id=_str_or_none(item.get("deployment_id")),
            preview_url=_str_or_none(item.get("preview_url")),
        )


# ---------------------------------------------------------------------------
# Table: platform-audit-log
# PK: PROJECT#{projectId}  SK: AUDIT#{createdAt}#{entryId}
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditEntry:
    """Append-only audit record.  metadata is always redacted before write."""

    entry_id: str
    project_id: str
    action_type: str
    status: AuditStatus
    summary: str
    created_at: str
    metadata: dict[str, Any] = field(default_factory=dict)
    actor: str | None = None

    @property
    def pk(self) -> str:
        return f"PROJECT#{self.project_id}"

    @property
    def sk(self) -> str:
        return f"AUDIT#{self.created_at}#{self.entry_id}"

    def to_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "PK": self.pk,
            "SK": self.sk,
            "entry_id": self.entry_id,
            "project_id": self.project_id,
            "action_type": self.action_type,
            "status": self.status.value,
            "summary": self.summary,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }
        if self.actor is not None:
            item["actor"] = self.actor
        return item
