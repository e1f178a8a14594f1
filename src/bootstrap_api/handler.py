"""
bootstrap_api.handler — Project bootstrap REST API Lambda.

Routes (API Gateway proxy):
    POST /v1/bootstrap/runs                     create or return the active run
    GET  /v1/bootstrap/runs?projectId=...       latest run for a project
    GET  /v1/bootstrap/runs/{runId}             run status
    POST /v1/bootstrap/runs/{runId}/step        execute the current (or named) step
    POST /v1/bootstrap/runs/{runId}/retry       reset a failed step to pending
    GET  /v1/bootstrap/backing-database?projectId=...   masked database record
    GET  /v1/bootstrap/steps                    step registry

A failed provisioning step is still a 200: the failure is recorded on the
run and described in stepResult.  Decrypted secrets never leave the engine.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from bootstrap_engine import (
    ActiveRunConflict,
    BootstrapOrchestrator,
    BootstrapRun,
    BootstrapSettings,
    ConfigurationError,
    RunNotFound,
    StepNotRunnable,
    StepOutcome,
    StepParameters,
)
from bootstrap_engine.models import BackingDatabaseRecord, StepRecord
from bootstrap_engine.steps import BOOTSTRAP_STEPS, STEP_DEFINITIONS

logger = Logger(service="bootstrap-api")

_RUNS_PATH = "/v1/bootstrap/runs"
_STEPS_PATH = "/v1/bootstrap/steps"
_BACKING_DATABASE_PATH = "/v1/bootstrap/backing-database"
_RUN_PATH_PATTERN = re.compile(r"^/v1/bootstrap/runs/(?P<run_id>[^/]+)(?P<action>/step|/retry)?$")

_STORED_SECRET_MASK = "•••• (Stored securely)"
_MISSING_SECRET_MASK = "Not configured"


@dataclass(frozen=True)
class BootstrapApiDependencies:
    orchestrator: BootstrapOrchestrator


def _dependencies() -> BootstrapApiDependencies:
    settings = BootstrapSettings.from_env()
    session = boto3.session.Session(region_name=settings.aws_region)
    return BootstrapApiDependencies(
        orchestrator=BootstrapOrchestrator.from_settings(
            settings,
            dynamodb_resource=session.resource("dynamodb"),
            secretsmanager_client=session.client("secretsmanager"),
        )
    )


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body, default=_json_default),
    }


def _error(status_code: int, code: str, message: str) -> dict[str, Any]:
    return _response(status_code, {"error": {"code": code, "message": message}})


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_json_body(event: dict[str, Any], *, required: bool) -> dict[str, Any]:
    raw_body = event.get("body")
    if raw_body is None or raw_body == "":
        if required:
            raise ValueError("Request body is required")
        return {}
    if not isinstance(raw_body, str):
        raise ValueError("Request body must be a JSON string")
    try:
        body = json.loads(raw_body)
    except json.JSONDecodeError as exc:
        raise ValueError("Malformed JSON body") from exc
    if not isinstance(body, dict):
        raise ValueError("JSON body must be an object")
    return body


def _http_method(event: dict[str, Any]) -> str:
    method = event.get("httpMethod")
    if not method:
        method = event.get("requestContext", {}).get("http", {}).get("method")
    return str(method or "").upper()


def _request_path(event: dict[str, Any]) -> str:
    path = event.get("path")
    if not path:
        path = event.get("requestContext", {}).get("http", {}).get("path")
    return str(path or "").rstrip("/")


def _query_param(event: dict[str, Any], name: str) -> str | None:
    params = event.get("queryStringParameters") or {}
    if not isinstance(params, dict):
        return None
    return _str_or_none(params.get(name))


def _caller_sub(event: dict[str, Any]) -> str | None:
    authorizer = event.get("requestContext", {}).get("authorizer", {})
    if not isinstance(authorizer, dict):
        return None
    if isinstance(authorizer.get("lambda"), dict):
        authorizer = authorizer["lambda"]
    claims = authorizer.get("claims") if isinstance(authorizer.get("claims"), dict) else {}
    return _str_or_none(authorizer.get("sub") or claims.get("sub"))


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _serialize_step(record: StepRecord) -> dict[str, Any]:
    return {
        "step": record.step,
        "status": record.status.value,
        "startedAt": record.started_at,
        "completedAt": record.completed_at,
        "errorSummary": record.error_summary,
        "errorDetails": record.error_details,
        "classification": record.classification.value if record.classification else None,
        "metadata": record.metadata,
    }


def _serialize_run(run: BootstrapRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "projectId": run.project_id,
        "status": run.status.value,
        "currentStep": run.current_step,
        "stepHistory": [_serialize_step(record) for record in run.step_history],
        "logs": [
            {"timestamp": entry.timestamp, "level": entry.level.value, "message": entry.message}
            for entry in run.logs
        ],
        "createdAt": run.created_at,
        "updatedAt": run.updated_at,
        "completedAt": run.completed_at,
    }


def _serialize_step_result(outcome: StepOutcome) -> dict[str, Any]:
    result = outcome.result
    if result.ok:
        return {
            "stepId": outcome.step_id,
            "success": True,
            "classification": None,
            "error": None,
            "errorDetails": None,
        }
    return {
        "stepId": outcome.step_id,
        "success": False,
        "classification": result.classification.value,
        "error": result.user_message,
        "errorDetails": result.details,
    }


def _mask(ciphertext: str | None) -> str:
    return _STORED_SECRET_MASK if ciphertext else _MISSING_SECRET_MASK


def _serialize_backing_database(record: BackingDatabaseRecord) -> dict[str, Any]:
    return {
        "projectId": record.project_id,
        "projectRef": record.project_ref,
        "apiUrl": record.api_url,
        "region": record.region,
        "status": record.status,
        "anonKey": _mask(record.encrypted_anon_key),
        "serviceRoleKey": _mask(record.encrypted_service_role_key),
        "createdAt": record.created_at,
        "updatedAt": record.updated_at,
    }


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _handle_create_run(
    event: dict[str, Any], deps: BootstrapApiDependencies, *, actor: str | None
) -> dict[str, Any]:
    body = _parse_json_body(event, required=True)
    project_id = _str_or_none(body.get("projectId"))
    if project_id is None:
        raise ValueError("projectId is required")
    logger.append_keys(project_id=project_id)

    run, created = deps.orchestrator.create_run(project_id, actor=actor)
    logger.append_keys(run_id=run.id)
    return _response(201 if created else 200, {"run": _serialize_run(run), "created": created})


def _handle_latest_run(event: dict[str, Any], deps: BootstrapApiDependencies) -> dict[str, Any]:
    project_id = _query_param(event, "projectId")
    if project_id is None:
        raise ValueError("projectId query parameter is required")
    logger.append_keys(project_id=project_id)
    run = deps.orchestrator.get_latest_run(project_id)
    return _response(200, {"run": _serialize_run(run)})


def _handle_get_run(deps: BootstrapApiDependencies, *, run_id: str) -> dict[str, Any]:
    run = deps.orchestrator.get_run(run_id)
    logger.append_keys(project_id=run.project_id)
    return _response(200, {"run": _serialize_run(run)})


def _handle_execute_step(
    event: dict[str, Any],
    deps: BootstrapApiDependencies,
    *,
    run_id: str,
    actor: str | None,
) -> dict[str, Any]:
    body = _parse_json_body(event, required=False)
    step_id = _str_or_none(body.get("stepId"))
    parameters = StepParameters.from_mapping(body)

    outcome = deps.orchestrator.execute_step(run_id, step_id, parameters, actor=actor)
    logger.append_keys(project_id=outcome.run.project_id)
    logger.info(
        "Bootstrap step executed",
        extra={
            "step": outcome.step_id,
            "success": outcome.success,
            "run_status": outcome.run.status.value,
        },
    )
    return _response(
        200,
        {"run": _serialize_run(outcome.run), "stepResult": _serialize_step_result(outcome)},
    )


def _handle_retry_step(
    event: dict[str, Any],
    deps: BootstrapApiDependencies,
    *,
    run_id: str,
    actor: str | None,
) -> dict[str, Any]:
    body = _parse_json_body(event, required=True)
    step_id = _str_or_none(body.get("stepId"))
    if step_id is None:
        raise ValueError("stepId is required")

    run = deps.orchestrator.retry_step(run_id, step_id, actor=actor)
    logger.append_keys(project_id=run.project_id)
    return _response(200, {"run": _serialize_run(run)})


def _handle_backing_database(
    event: dict[str, Any], deps: BootstrapApiDependencies
) -> dict[str, Any]:
    project_id = _query_param(event, "projectId")
    if project_id is None:
        raise ValueError("projectId query parameter is required")
    record = deps.orchestrator.metadata_store.get_backing_database(project_id)
    if record is None:
        return _error(404, "NOT_FOUND", "No backing database recorded for project")
    return _response(200, {"backingDatabase": _serialize_backing_database(record)})


def _handle_list_steps() -> dict[str, Any]:
    steps = [
        {
            "id": step_id,
            "order": index,
            "name": STEP_DEFINITIONS[step_id].name,
            "description": STEP_DEFINITIONS[step_id].description,
        }
        for index, step_id in enumerate(BOOTSTRAP_STEPS, start=1)
    ]
    return _response(200, {"steps": steps})


@logger.inject_lambda_context(clear_state=True, log_event=False)
def lambda_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    method = _http_method(event)
    path = _request_path(event)
    actor = _caller_sub(event)

    try:
        if path == _STEPS_PATH and method == "GET":
            return _handle_list_steps()

        deps = _dependencies()

        if path == _RUNS_PATH:
            if method == "POST":
                return _handle_create_run(event, deps, actor=actor)
            if method == "GET":
                return _handle_latest_run(event, deps)

        if path == _BACKING_DATABASE_PATH and method == "GET":
            return _handle_backing_database(event, deps)

        match = _RUN_PATH_PATTERN.match(path)
        if match is not None:
            path_params = event.get("pathParameters") or {}
            run_id = _str_or_none(path_params.get("runId")) or match.group("run_id")
            logger.append_keys(run_id=run_id)
            action = match.group("action")
            if action == "/step" and method == "POST":
                return _handle_execute_step(event, deps, run_id=run_id, actor=actor)
            if action == "/retry" and method == "POST":
                return _handle_retry_step(event, deps, run_id=run_id, actor=actor)
            if action is None and method == "GET":
                return _handle_get_run(deps, run_id=run_id)

        return _error(405, "METHOD_NOT_ALLOWED", "Unsupported bootstrap API route")
    except RunNotFound as exc:
        return _error(404, "NOT_FOUND", str(exc))
    except (ActiveRunConflict, StepNotRunnable) as exc:
        return _error(409, "CONFLICT", str(exc))
    except ConfigurationError as exc:
        logger.error("Bootstrap API misconfigured", extra={"error": str(exc)})
        return _error(500, "CONFIGURATION_ERROR", str(exc))
    except ValueError as exc:
        return _error(400, "BAD_REQUEST", str(exc))
    except ClientError as exc:
        logger.exception("AWS client error in bootstrap API handler")
        return _error(502, "AWS_CLIENT_ERROR", exc.response.get("Error", {}).get("Code", "Unknown"))
    except Exception:
        logger.exception("Unhandled bootstrap API handler error")
        return _error(500, "INTERNAL_ERROR", "Internal server error")
