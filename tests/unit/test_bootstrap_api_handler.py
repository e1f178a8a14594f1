from __future__ import annotations

import json
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import boto3
import pytest
from bootstrap_engine import (
    BootstrapOrchestrator,
    BootstrapSettings,
    ConfigurationError,
    SecretCipher,
)
from bootstrap_engine.adapters import AdapterResult, AdapterSuccess
from bootstrap_engine.orchestrator import ProvisioningAdapters
from bootstrap_engine.store import BootstrapRunStore, ProjectMetadataStore
from botocore.exceptions import ClientError
from moto import mock_aws

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from src.bootstrap_api import handler as bootstrap_api_handler

REGION = "eu-west-2"
PROJECT_ID = "acme/widgets"
_REAL_DEPENDENCIES = bootstrap_api_handler._dependencies


class FakeSourceControl:
    def ensure_repo_initialized(self, token: str, repo_full_name: str) -> AdapterResult:
        return AdapterSuccess(
            {"repository": repo_full_name, "defaultBranch": "main", "commitSha": "abc"}
        )


class FakeDatabase:
    def create_project(self, token: str, **_kwargs: Any) -> AdapterResult:
        return AdapterSuccess(
            {
                "projectRef": "abcd1234",
                "apiUrl": "https://abcd1234.supabase.co",
                "region": "us-east-1",
            }
        )

    def fetch_api_keys(self, token: str, project_ref: str) -> AdapterResult:
        return AdapterSuccess({"anonKey": "anon-plaintext", "serviceRoleKey": "service-plaintext"})


class FakeHosting:
    def create_project(self, token: str, **kwargs: Any) -> AdapterResult:
        return AdapterSuccess({"hostingProjectId": "prj_1", "hostingProjectName": kwargs["name"]})

    def set_environment_variables(
        self, token: str, project_id: str, variables: Any, **_kw: Any
    ) -> AdapterResult:
        return AdapterSuccess({"variableCount": len(list(variables))})

    def create_deployment(self, token: str, **_kwargs: Any) -> AdapterResult:
        return AdapterSuccess(
            {"deploymentId": "dpl_1", "previewUrl": "https://acme-widgets.vercel.app"}
        )


class FakeHealth:
    def wait_until_healthy(self, base_url: str, **_kwargs: Any) -> AdapterResult:
        return AdapterSuccess({"statusCode": 200})


class FakeLambdaContext:
    function_name = "bootstrap-api"
    memory_limit_in_mb = 256
    invoked_function_arn = "arn:aws:lambda:eu-west-2:111111111111:function:bootstrap-api"
    aws_request_id = "req-123"


@pytest.fixture
def deps(
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[bootstrap_api_handler.BootstrapApiDependencies]:
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.delenv("SOURCE_CONTROL_TOKEN", raising=False)
    monkeypatch.delenv("HOSTING_TOKEN", raising=False)

    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name=REGION)
        for table_name in ("platform-bootstrap-runs", "platform-project-metadata"):
            dynamodb.create_table(
                TableName=table_name,
                KeySchema=[
                    {"AttributeName": "PK", "KeyType": "HASH"},
                    {"AttributeName": "SK", "KeyType": "RANGE"},
                ],
                AttributeDefinitions=[
                    {"AttributeName": "PK", "AttributeType": "S"},
                    {"AttributeName": "SK", "AttributeType": "S"},
                ],
                BillingMode="PAY_PER_REQUEST",
            )
        orchestrator = BootstrapOrchestrator(
            run_store=BootstrapRunStore("platform-bootstrap-runs", dynamodb_resource=dynamodb),
            metadata_store=ProjectMetadataStore(
                "platform-project-metadata", dynamodb_resource=dynamodb
            ),
            cipher=SecretCipher("handler-test-passphrase"),
            adapters=ProvisioningAdapters(
                source_control=FakeSourceControl(),  # type: ignore[arg-type]
                database=FakeDatabase(),  # type: ignore[arg-type]
                hosting=FakeHosting(),  # type: ignore[arg-type]
                health=FakeHealth(),  # type: ignore[arg-type]
            ),
            settings=BootstrapSettings.from_env(),
        )
        dependencies = bootstrap_api_handler.BootstrapApiDependencies(orchestrator=orchestrator)
        monkeypatch.setattr(bootstrap_api_handler, "_dependencies", lambda: dependencies)
        yield dependencies


def _invoke(
    method: str,
    path: str,
    *,
    body: dict[str, Any] | str | None = None,
    query: dict[str, str] | None = None,
) -> dict[str, Any]:
    event: dict[str, Any] = {
        "httpMethod": method,
        "path": path,
        "queryStringParameters": query,
        "requestContext": {"authorizer": {"sub": "user-001"}},
    }
    if body is not None:
        event["body"] = body if isinstance(body, str) else json.dumps(body)
    return bootstrap_api_handler.lambda_handler(event, FakeLambdaContext())


def _body(response: dict[str, Any]) -> dict[str, Any]:
    return json.loads(response["body"])


def _create_run() -> dict[str, Any]:
    return _body(_invoke("POST", "/v1/bootstrap/runs", body={"projectId": PROJECT_ID}))["run"]


def test_list_steps_needs_no_dependencies(monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom() -> Any:
        raise AssertionError("dependencies should not be built")

    monkeypatch.setattr(bootstrap_api_handler, "_dependencies", _boom)

    response = _invoke("GET", "/v1/bootstrap/steps")

    assert response["statusCode"] == 200
    steps = _body(response)["steps"]
    assert [s["id"] for s in steps] == [
        "ensure_repo_initialized",
        "create_backing_database_project",
        "create_hosting_project",
        "verify_deployment",
    ]
    assert steps[0]["order"] == 1


def test_create_run_then_return_existing(deps: Any) -> None:
    first = _invoke("POST", "/v1/bootstrap/runs", body={"projectId": PROJECT_ID})
    second = _invoke("POST", "/v1/bootstrap/runs", body={"projectId": PROJECT_ID})

    assert first["statusCode"] == 201
    assert second["statusCode"] == 200
    assert _body(first)["created"] is True
    assert _body(second)["created"] is False
    run = _body(first)["run"]
    assert _body(second)["run"]["id"] == run["id"]
    assert run["projectId"] == PROJECT_ID
    assert run["status"] == "pending"
    assert run["currentStep"] == "ensure_repo_initialized"
    assert len(run["stepHistory"]) == 4
    assert run["completedAt"] is None


@pytest.mark.parametrize(
    "body",
    [None, "{not json", "[]", {"projectId": "   "}],
)
def test_create_run_bad_request(deps: Any, body: Any) -> None:
    response = _invoke("POST", "/v1/bootstrap/runs", body=body)

    assert response["statusCode"] == 400
    assert _body(response)["error"]["code"] == "BAD_REQUEST"


def test_get_run_and_latest_run(deps: Any) -> None:
    run = _create_run()

    by_id = _invoke("GET", f"/v1/bootstrap/runs/{run['id']}")
    latest = _invoke("GET", "/v1/bootstrap/runs", query={"projectId": PROJECT_ID})

    assert by_id["statusCode"] == 200
    assert _body(by_id)["run"]["id"] == run["id"]
    assert _body(latest)["run"]["id"] == run["id"]


def test_unknown_run_is_not_found(deps: Any) -> None:
    response = _invoke("GET", "/v1/bootstrap/runs/missing-run")

    assert response["statusCode"] == 404
    assert _body(response)["error"]["code"] == "NOT_FOUND"


def test_latest_run_requires_project_id(deps: Any) -> None:
    response = _invoke("GET", "/v1/bootstrap/runs")

    assert response["statusCode"] == 400


def test_execute_step_reports_classified_failure(deps: Any) -> None:
    run = _create_run()
    _invoke("POST", f"/v1/bootstrap/runs/{run['id']}/step", body={"sourceToken": "ghp_token"})

    response = _invoke("POST", f"/v1/bootstrap/runs/{run['id']}/step", body={})

    assert response["statusCode"] == 200
    payload = _body(response)
    assert payload["stepResult"] == {
        "stepId": "create_backing_database_project",
        "success": False,
        "classification": "InvalidCredentials",
        "error": "Missing required parameter: managementToken, organizationId",
        "errorDetails": payload["stepResult"]["errorDetails"],
    }
    assert payload["run"]["status"] == "failed"
    assert payload["run"]["currentStep"] == "create_backing_database_project"


def test_execute_retry_and_complete(deps: Any) -> None:
    run = _create_run()
    step_path = f"/v1/bootstrap/runs/{run['id']}/step"
    _invoke("POST", step_path, body={"sourceToken": "ghp_token"})
    _invoke("POST", step_path)

    retry = _invoke(
        "POST",
        f"/v1/bootstrap/runs/{run['id']}/retry",
        body={"stepId": "create_backing_database_project"},
    )
    assert retry["statusCode"] == 200
    assert _body(retry)["run"]["status"] == "running"

    _invoke("POST", step_path, body={"managementToken": "sbp_token", "organizationId": "org-1"})
    _invoke("POST", step_path, body={"hostingToken": "vc_token"})
    final = _invoke("POST", step_path)

    payload = _body(final)
    assert payload["stepResult"]["success"] is True
    assert payload["run"]["status"] == "succeeded"
    assert payload["run"]["currentStep"] is None
    assert "anon-plaintext" not in final["body"]


def test_execute_gated_step_conflicts(deps: Any) -> None:
    run = _create_run()

    response = _invoke(
        "POST",
        f"/v1/bootstrap/runs/{run['id']}/step",
        body={"stepId": "verify_deployment"},
    )

    assert response["statusCode"] == 409
    assert _body(response)["error"]["code"] == "CONFLICT"


def test_execute_unknown_step_is_bad_request(deps: Any) -> None:
    run = _create_run()

    response = _invoke(
        "POST", f"/v1/bootstrap/runs/{run['id']}/step", body={"stepId": "deploy_to_mars"}
    )

    assert response["statusCode"] == 400


def test_retry_requires_step_id(deps: Any) -> None:
    run = _create_run()

    response = _invoke("POST", f"/v1/bootstrap/runs/{run['id']}/retry", body={})

    assert response["statusCode"] == 400


def test_backing_database_keys_are_masked(deps: Any) -> None:
    missing = _invoke("GET", "/v1/bootstrap/backing-database", query={"projectId": PROJECT_ID})
    assert missing["statusCode"] == 404

    run = _create_run()
    step_path = f"/v1/bootstrap/runs/{run['id']}/step"
    _invoke("POST", step_path, body={"sourceToken": "ghp_token"})
    _invoke("POST", step_path, body={"managementToken": "sbp_token", "organizationId": "org-1"})

    response = _invoke("GET", "/v1/bootstrap/backing-database", query={"projectId": PROJECT_ID})

    assert response["statusCode"] == 200
    record = _body(response)["backingDatabase"]
    assert record["projectRef"] == "abcd1234"
    assert record["anonKey"] == "•••• (Stored securely)"
    assert record["serviceRoleKey"] == "•••• (Stored securely)"
    assert "plaintext" not in response["body"]
    assert "encrypted" not in response["body"]


def test_unsupported_route(deps: Any) -> None:
    response = _invoke("DELETE", "/v1/bootstrap/runs")

    assert response["statusCode"] == 405


def test_configuration_error_maps_to_500(monkeypatch: pytest.MonkeyPatch) -> None:
    def _misconfigured() -> Any:
        raise ConfigurationError("AWS_REGION must be set")

    monkeypatch.setattr(bootstrap_api_handler, "_dependencies", _misconfigured)

    response = _invoke("POST", "/v1/bootstrap/runs", body={"projectId": PROJECT_ID})

    assert response["statusCode"] == 500
    assert _body(response)["error"]["code"] == "CONFIGURATION_ERROR"


def test_aws_client_error_maps_to_502(deps: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    def _throttled(*_args: Any, **_kwargs: Any) -> Any:
        raise ClientError(
            {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}},
            "GetItem",
        )

    monkeypatch.setattr(deps.orchestrator, "get_run", _throttled)

    response = _invoke("GET", "/v1/bootstrap/runs/run-1")

    assert response["statusCode"] == 502
    assert _body(response)["error"] == {
        "code": "AWS_CLIENT_ERROR",
        "message": "ProvisionedThroughputExceededException",
    }


def test_unreadable_key_secret_leaves_run_routes_working(
    deps: Any, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("BOOTSTRAP_ENCRYPTION_KEY_SECRET_ID", "platform/bootstrap/missing-key")
    monkeypatch.delenv("BOOTSTRAP_ENCRYPTION_KEY", raising=False)
    monkeypatch.setattr(bootstrap_api_handler, "_dependencies", _REAL_DEPENDENCIES)

    created = _invoke("POST", "/v1/bootstrap/runs", body={"projectId": PROJECT_ID})
    run_id = _body(created)["run"]["id"]
    by_id = _invoke("GET", f"/v1/bootstrap/runs/{run_id}")
    latest = _invoke("GET", "/v1/bootstrap/runs", query={"projectId": PROJECT_ID})
    again = _invoke("POST", "/v1/bootstrap/runs", body={"projectId": PROJECT_ID})

    assert created["statusCode"] == 201
    assert by_id["statusCode"] == 200
    assert _body(by_id)["run"]["id"] == run_id
    assert latest["statusCode"] == 200
    assert again["statusCode"] == 200
    assert _body(again)["run"]["id"] == run_id
