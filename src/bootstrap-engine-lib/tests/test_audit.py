from __future__ import annotations

from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

from boto3.dynamodb.conditions import Key
from bootstrap_engine.audit import REDACTED, AuditLogger, redact_metadata
from bootstrap_engine.models import AuditStatus
from botocore.exceptions import ClientError


def _clock() -> str:
    return "2026-03-01T12:00:00.000Z"


def test_redacts_sensitive_keys_recursively() -> None:
    metadata = {
        "runId": "run-1",
        "managementToken": "sbp_secret",
        "nested": {"apiKey": "k", "name": "widgets", "client_secret": "s"},
        "items": [{"password": "p", "step": "verify_deployment"}],
        "Authorization": "Bearer abc",
        "credentials": {"user": "u"},
    }

    redacted = redact_metadata(metadata)

    assert redacted == {
        "runId": "run-1",
        "managementToken": REDACTED,
        "nested": {"apiKey": REDACTED, "name": "widgets", "client_secret": REDACTED},
        "items": [{"password": REDACTED, "step": "verify_deployment"}],
        "Authorization": REDACTED,
        "credentials": REDACTED,
    }
    assert metadata["managementToken"] == "sbp_secret"


def test_masks_bearer_tokens_inside_strings() -> None:
    redacted = redact_metadata({"error": "request failed with header Bearer ghp_abc123.def"})

    assert redacted == {"error": f"request failed with header Bearer {REDACTED}"}


def test_floats_become_decimals() -> None:
    assert redact_metadata({"elapsed": 1.5, "attempts": 3}) == {
        "elapsed": Decimal("1.5"),
        "attempts": 3,
    }


def test_record_writes_redacted_entry(dynamodb: Any) -> None:
    audit = AuditLogger("platform-audit-log", dynamodb_resource=dynamodb, clock=_clock)

    entry = audit.record(
        "acme/widgets",
        "bootstrap_step",
        AuditStatus.FAILED,
        "Step create_backing_database_project failed",
        metadata={"runId": "run-1", "hostingToken": "vercel_secret"},
        actor="user-001",
    )

    assert entry is not None
    items = dynamodb.Table("platform-audit-log").query(
        KeyConditionExpression=Key("PK").eq("PROJECT#acme/widgets")
    )["Items"]
    assert len(items) == 1
    item = items[0]
    assert item["SK"] == f"AUDIT#2026-03-01T12:00:00.000Z#{entry.entry_id}"
    assert item["action_type"] == "bootstrap_step"
    assert item["status"] == "failed"
    assert item["actor"] == "user-001"
    assert item["metadata"] == {"runId": "run-1", "hostingToken": REDACTED}


def test_record_swallows_write_failures() -> None:
    resource = MagicMock()
    resource.Table.return_value.put_item.side_effect = ClientError(
        {"Error": {"Code": "ResourceNotFoundException", "Message": "no table"}},
        "PutItem",
    )
    audit = AuditLogger("platform-audit-log", dynamodb_resource=resource, clock=_clock)

    result = audit.record("acme/widgets", "bootstrap_start", AuditStatus.PENDING, "started")

    assert result is None
    resource.Table.return_value.put_item.assert_called_once()
