"""
bootstrap_engine.audit — Append-only audit trail for bootstrap actions.

Entries land in platform-audit-log under PROJECT#{projectId}.  Metadata is
redacted before it is written; audit is best-effort and never fails the
operation that produced it.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from aws_lambda_powertools import Logger

from bootstrap_engine.models import AuditEntry, AuditStatus

logger = Logger(service="bootstrap-engine")

REDACTED = "[REDACTED]"

ACTION_BOOTSTRAP_START = "bootstrap_start"
ACTION_BOOTSTRAP_STEP = "bootstrap_step"
ACTION_BOOTSTRAP_COMPLETE = "bootstrap_complete"

_SENSITIVE_KEY_FRAGMENTS = ("token", "key", "secret", "password", "authorization", "credential")
_BEARER_PATTERN = re.compile(r"(?i)\bbearer\s+[\w.~+/=-]+")


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


def redact_metadata(value: Any) -> Any:
    """Return a copy of value safe to persist in the audit log.

    Mapping keys that look like credentials have their values replaced;
    bearer tokens embedded in strings are masked.  Floats become Decimal so
    the result can be written to DynamoDB as-is.
    """
    if isinstance(value, dict):
        return {
            str(key): REDACTED if _is_sensitive_key(str(key)) else redact_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_metadata(item) for item in value]
    if isinstance(value, str):
        return _BEARER_PATTERN.sub(f"Bearer {REDACTED}", value)
    if isinstance(value, float):
        return Decimal(str(value))
    return value


class AuditLogger:
    def __init__(
        self,
        table_name: str,
        *,
        dynamodb_resource: Any,
        clock: Callable[[], str],
    ) -> None:
        self._table = dynamodb_resource.Table(table_name)
        self._clock = clock

    def record(
        self,
        project_id: str,
        action_type: str,
        status: AuditStatus,
        summary: str,
        *,
        metadata: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> AuditEntry | None:
        """Write one audit entry.  Returns None when the write failed."""
        entry = AuditEntry(
            entry_id=uuid.uuid4().hex,
            project_id=project_id,
            action_type=action_type,
            status=status,
            summary=summary,
            created_at=self._clock(),
            metadata=redact_metadata(metadata or {}),
            actor=actor,
        )
        try:
            self._table.put_item(Item=entry.to_item())
        except Exception:
            logger.exception(
                "Failed to write audit entry",
                extra={"project_id": project_id, "action_type": action_type},
            )
            return None
        return entry
