"""
bootstrap_engine.store — DynamoDB persistence for runs and project metadata.

BootstrapRunStore
    Run items, per-project run history, and the ACTIVE_RUN pointer that
    enforces "at most one pending/running run per project".  The pointer is
    claimed with a conditional write, so two concurrent create calls for the
    same project converge on one run.

ProjectMetadataStore
    Backing-database and hosting-project records keyed by project id.
    Writes are upserts on the project id, which is the local idempotency key
    for providers that have none of their own.

Both stores accept an injected boto3 DynamoDB resource for tests.
"""

from __future__ import annotations

import os
from decimal import Decimal
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from bootstrap_engine.exceptions import ActiveRunConflict
from bootstrap_engine.models import BackingDatabaseRecord, BootstrapRun, HostingProjectRecord

logger = Logger(service="bootstrap-engine")

_ACTIVE_RUN_SK = "ACTIVE_RUN"
_RUN_HISTORY_PREFIX = "RUN#"
_BACKING_DATABASE_SK = "BACKING_DATABASE"
_HOSTING_PROJECT_SK = "HOSTING_PROJECT"


def _project_pk(project_id: str) -> str:
    return f"PROJECT#{project_id}"


def _run_key(run_id: str) -> dict[str, str]:
    return {"PK": f"RUN#{run_id}", "SK": "METADATA"}


def _active_pointer_key(project_id: str) -> dict[str, str]:
    return {"PK": _project_pk(project_id), "SK": _ACTIVE_RUN_SK}


def _is_conditional_check_failed(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _ddb_value(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    return value


def _build_update_expression(
    attributes: dict[str, Any],
    *,
    set_if_missing: dict[str, Any] | None = None,
) -> tuple[str, dict[str, str], dict[str, Any]]:
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    set_parts: list[str] = []
    for idx, (field, raw_value) in enumerate(attributes.items(), start=1):
        name_key = f"#n{idx}"
        value_key = f":v{idx}"
        names[name_key] = field
        values[value_key] = _ddb_value(raw_value)
        set_parts.append(f"{name_key} = {value_key}")
    offset = len(attributes)
    for idx, (field, raw_value) in enumerate((set_if_missing or {}).items(), start=offset + 1):
        name_key = f"#n{idx}"
        value_key = f":v{idx}"
        names[name_key] = field
        values[value_key] = _ddb_value(raw_value)
        set_parts.append(f"{name_key} = if_not_exists({name_key}, {value_key})")
    return "SET " + ", ".join(set_parts), names, values


def _default_resource(dynamodb_resource: Any) -> Any:
    if dynamodb_resource is not None:
        return dynamodb_resource
    return boto3.resource("dynamodb", region_name=os.environ["AWS_REGION"])


# ---------------------------------------------------------------------------
# BootstrapRunStore
# ---------------------------------------------------------------------------


class BootstrapRunStore:
    """Durable storage for bootstrap runs.

    Item layout (platform-bootstrap-runs):
        RUN#{runId} / METADATA                  — the full run document
        PROJECT#{projectId} / RUN#{ts}#{runId}  — history entry for latest-run lookups
        PROJECT#{projectId} / ACTIVE_RUN        — pointer to the active run

    save_run() is last-write-wins.  Two near-simultaneous executions of the
    same step may both pass the orchestrator's status check; the final put
    is authoritative.

    If the put that records a step's result fails, the step stays "running"
    and neither execute nor retry will accept it.  Recovery is a manual edit
    of the RUN#{runId} item: set that step's status to "failed" (the run
    status too), then retry it through the API.
    """

    def __init__(self, table_name: str, *, dynamodb_resource: Any = None) -> None:
        self._table_name = table_name
        self._table = _default_resource(dynamodb_resource).Table(table_name)

    # -- reads ---------------------------------------------------------------

    def get_run(self, run_id: str) -> BootstrapRun | None:
        response = self._table.get_item(Key=_run_key(run_id), ConsistentRead=True)
        item = response.get("Item")
        if not item:
            return None
        return BootstrapRun.from_item(item)

    def get_active_run_id(self, project_id: str) -> str | None:
        response = self._table.get_item(Key=_active_pointer_key(project_id), ConsistentRead=True)
        item = response.get("Item")
        if not item:
            return None
        run_id = item.get("run_id")
        return str(run_id) if run_id else None

    def find_active_run(self, project_id: str) -> BootstrapRun | None:
        """Return the project's pending/running run, ignoring a stale pointer."""
        run_id = self.get_active_run_id(project_id)
        if run_id is None:
            return None
        run = self.get_run(run_id)
        if run is None or not run.is_active:
            return None
        return run

    def find_latest_run(self, project_id: str) -> BootstrapRun | None:
        """Return the most recently created run for a project, active or not."""
        response = self._table.query(
            KeyConditionExpression=Key("PK").eq(_project_pk(project_id))
            & Key("SK").begins_with(_RUN_HISTORY_PREFIX),
            ScanIndexForward=False,
            Limit=1,
        )
        items = response.get("Items", [])
        if not items:
            return None
        return self.get_run(str(items[0]["run_id"]))

    # -- active-run pointer --------------------------------------------------

    def _put_pointer(self, project_id: str, run_id: str, *, condition: Any) -> None:
        self._table.put_item(
            Item={**_active_pointer_key(project_id), "run_id": run_id, "project_id": project_id},
            ConditionExpression=condition,
        )

    def claim_active_run(self, project_id: str, run_id: str) -> None:
        """Point the project's ACTIVE_RUN at run_id.

        Succeeds when the pointer is free, already ours, or held by a run
        that is no longer active.  Raises ActiveRunConflict otherwise.
        """
        try:
            self._put_pointer(
                project_id,
                run_id,
                condition=Attr("PK").not_exists() | Attr("run_id").eq(run_id),
            )
            return
        except ClientError as exc:
            if not _is_conditional_check_failed(exc):
                raise

        holder_id = self.get_active_run_id(project_id)
        if holder_id is None:
            # Released between our write and our read; claim it fresh.
            condition = Attr("PK").not_exists()
        else:
            holder = self.get_run(holder_id)
            if holder is not None and holder.is_active:
                raise ActiveRunConflict(project_id=project_id, active_run_id=holder_id)
            logger.info(
                "Taking over stale active-run pointer",
                extra={"project_id": project_id, "stale_run_id": holder_id, "run_id": run_id},
            )
            condition = Attr("run_id").eq(holder_id)

        try:
            self._put_pointer(project_id, run_id, condition=condition)
        except ClientError as exc:
            if _is_conditional_check_failed(exc):
                raise ActiveRunConflict(
                    project_id=project_id,
                    active_run_id=self.get_active_run_id(project_id) or "unknown",
                ) from exc
            raise

    def release_active_run(self, project_id: str, run_id: str) -> None:
        """Clear the pointer if (and only if) run_id still holds it."""
        try:
            self._table.delete_item(
                Key=_active_pointer_key(project_id),
                ConditionExpression=Attr("run_id").eq(run_id),
            )
        except ClientError as exc:
            if not _is_conditional_check_failed(exc):
                raise
            logger.debug(
                "Active-run pointer not held by run; nothing to release",
                extra={"project_id": project_id, "run_id": run_id},
            )

    # -- writes --------------------------------------------------------------

    def insert_run(self, run: BootstrapRun) -> BootstrapRun:
        """Persist a new run and claim the project's active-run pointer.

        The run item is written first so a concurrent reader that sees the
        pointer can always resolve it.  If the pointer is held by another
        active run, the orphaned run item is removed and ActiveRunConflict
        is raised for the caller to fall back to the existing run.
        """
        self._table.put_item(Item=run.to_item(), ConditionExpression=Attr("PK").not_exists())
        try:
            self.claim_active_run(run.project_id, run.id)
        except ActiveRunConflict:
            self._table.delete_item(Key=_run_key(run.id))
            raise
        self._table.put_item(
            Item={
                "PK": _project_pk(run.project_id),
                "SK": f"{_RUN_HISTORY_PREFIX}{run.created_at}#{run.id}",
                "run_id": run.id,
                "project_id": run.project_id,
                "created_at": run.created_at,
            }
        )
        return run

    def save_run(self, run: BootstrapRun) -> BootstrapRun:
        """Write the full run document and keep the active pointer in sync."""
        if run.is_active:
            self.claim_active_run(run.project_id, run.id)
        self._table.put_item(Item=run.to_item())
        if not run.is_active:
            self.release_active_run(run.project_id, run.id)
        return run


# ---------------------------------------------------------------------------
# ProjectMetadataStore
# ---------------------------------------------------------------------------


class ProjectMetadataStore:
    """Provisioned-resource records keyed by project id (platform-project-metadata)."""

    def __init__(self, table_name: str, *, dynamodb_resource: Any = None) -> None:
        self._table_name = table_name
        self._table = _default_resource(dynamodb_resource).Table(table_name)

    def _get(self, project_id: str, sort_key: str) -> dict[str, Any] | None:
        response = self._table.get_item(
            Key={"PK": _project_pk(project_id), "SK": sort_key},
            ConsistentRead=True,
        )
        return response.get("Item")

    def _upsert(
        self,
        project_id: str,
        sort_key: str,
        attributes: dict[str, Any],
        *,
        now: str,
    ) -> dict[str, Any]:
        update_expression, names, values = _build_update_expression(
            {"project_id": project_id, "updated_at": now, **attributes},
            set_if_missing={"created_at": now},
        )
        response = self._table.update_item(
            Key={"PK": _project_pk(project_id), "SK": sort_key},
            UpdateExpression=update_expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ReturnValues="ALL_NEW",
        )
        return response.get("Attributes", {})

    def get_backing_database(self, project_id: str) -> BackingDatabaseRecord | None:
        item = self._get(project_id, _BACKING_DATABASE_SK)
        return BackingDatabaseRecord.from_item(item) if item else None

    def upsert_backing_database(
        self,
        project_id: str,
        *,
        project_ref: str,
        api_url: str,
        region: str | None,
        encrypted_anon_key: str | None,
        encrypted_service_role_key: str | None,
        now: str,
        status: str = "created",
    ) -> BackingDatabaseRecord:
        item = self._upsert(
            project_id,
            _BACKING_DATABASE_SK,
            {
                "project_ref": project_ref,
                "api_url": api_url,
                "region": region,
                "encrypted_anon_key": encrypted_anon_key,
                "encrypted_service_role_key": encrypted_service_role_key,
                "status": status,
            },
            now=now,
        )
        return BackingDatabaseRecord.from_item(item)

    def update_backing_database_keys(
        self,
        project_id: str,
        *,
        encrypted_anon_key: str | None,
        encrypted_service_role_key: str | None,
        now: str,
    ) -> None:
        """Rewrite only the key columns of an existing record."""
        update_expression, names, values = _build_update_expression(
            {
                "encrypted_anon_key": encrypted_anon_key,
                "encrypted_service_role_key": encrypted_service_role_key,
                "updated_at": now,
            }
        )
        self._table.update_item(
            Key={"PK": _project_pk(project_id), "SK": _BACKING_DATABASE_SK},
            UpdateExpression=update_expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ConditionExpression=Attr("PK").exists(),
        )

    def iter_backing_databases(self) -> list[BackingDatabaseRecord]:
        """Scan every backing-database record.  Administrative use only."""
        records: list[BackingDatabaseRecord] = []
        kwargs: dict[str, Any] = {"FilterExpression": Attr("SK").eq(_BACKING_DATABASE_SK)}
        while True:
            response = self._table.scan(**kwargs)
            records.extend(BackingDatabaseRecord.from_item(i) for i in response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return records
            kwargs["ExclusiveStartKey"] = last_key

    def get_hosting_project(self, project_id: str) -> HostingProjectRecord | None:
        item = self._get(project_id, _HOSTING_PROJECT_SK)
        return HostingProjectRecord.from_item(item) if item else None

    def upsert_hosting_project(
        self,
        project_id: str,
        *,
        hosting_project_id: str,
        hosting_project_name: str,
        now: str,
        deployment_id: str | None = None,
        preview_url: str | None = None,
    ) -> HostingProjectRecord:
        attributes: dict[str, Any] = {
            "hosting_project_id": hosting_project_id,
            "hosting_project_name": hosting_project_name,
        }
        if deployment_id is not None:
            attributes["deployment_id"] = deployment_id
        if preview_url is not None:
            attributes["preview_url"] = preview_url
        item = self._upsert(project_id, _HOSTING_PROJECT_SK, attributes, now=now)
        return HostingProjectRecord.from_item(item)
