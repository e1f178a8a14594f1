"""
bootstrap_engine.adapters.hosting — Vercel project, env var and deployment client.

Every call accepts an optional team id, sent as the teamId query parameter
when the token belongs to a team scope.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any
from urllib.parse import quote

from bootstrap_engine.adapters.base import (
    AdapterFailure,
    AdapterResult,
    AdapterSuccess,
    HttpAdapter,
    ProviderCallFailed,
)
from bootstrap_engine.adapters.source_control import split_repository
from bootstrap_engine.models import ErrorClassification

ALL_TARGETS = ("production", "preview", "development")


def preview_url_from_deployment(deployment: dict[str, Any]) -> str | None:
    url = deployment.get("url")
    if url:
        return url if str(url).startswith("http") else f"https://{url}"
    aliases = deployment.get("alias") or []
    if aliases:
        return f"https://{aliases[0]}"
    return None


class HostingAdapter(HttpAdapter):
    provider = "Vercel"

    def create_project(
        self,
        token: str,
        *,
        name: str,
        repository: str,
        team_id: str | None = None,
    ) -> AdapterResult:
        """Create a project linked to the repository, reusing one with the same name."""
        try:
            response = self._request(
                "POST",
                "/v11/projects",
                token=token,
                action="create the hosting project",
                params={"teamId": team_id},
                json={"name": name, "gitRepository": {"type": "github", "repo": repository}},
                accept=(409,),
            )
            reused = response.status_code == 409
            if reused:
                response = self._request(
                    "GET",
                    f"/v9/projects/{quote(name, safe='')}",
                    token=token,
                    action="read the existing hosting project",
                    params={"teamId": team_id},
                )
        except ProviderCallFailed as exc:
            return exc.failure

        project = self._json(response)
        if not project.get("id"):
            return AdapterFailure(
                classification=ErrorClassification.UNKNOWN,
                user_message="Hosting project response did not include an id",
            )
        return AdapterSuccess(
            {
                "hostingProjectId": str(project["id"]),
                "hostingProjectName": str(project.get("name") or name),
                "reused": reused,
            }
        )

    def set_environment_variables(
        self,
        token: str,
        project_id: str,
        variables: Iterable[tuple[str, str]],
        *,
        team_id: str | None = None,
    ) -> AdapterResult:
        """Upsert encrypted variables on every target; existing keys are overwritten."""
        body = [
            {"key": key, "value": value, "type": "encrypted", "target": list(ALL_TARGETS)}
            for key, value in variables
        ]
        if not body:
            return AdapterSuccess({"variableCount": 0})
        try:
            self._request(
                "POST",
                f"/v10/projects/{quote(project_id, safe='')}/env",
                token=token,
                action="set hosting environment variables",
                params={"teamId": team_id, "upsert": "true"},
                json=body,
            )
        except ProviderCallFailed as exc:
            return exc.failure
        return AdapterSuccess({"variableCount": len(body), "keys": [item["key"] for item in body]})

    def create_deployment(
        self,
        token: str,
        *,
        project_name: str,
        repository: str,
        ref: str,
        team_id: str | None = None,
    ) -> AdapterResult:
        parsed = split_repository(repository)
        if parsed is None:
            return AdapterFailure(
                classification=ErrorClassification.INVALID_INPUT,
                user_message="Invalid repository: expected owner/repo",
                details=f"Got {repository!r}",
            )
        owner, repo = parsed
        try:
            response = self._request(
                "POST",
                "/v13/deployments",
                token=token,
                action="create the deployment",
                params={"teamId": team_id},
                json={
                    "name": project_name,
                    "project": project_name,
                    "target": "production",
                    "gitSource": {"type": "github", "org": owner, "repo": repo, "ref": ref},
                },
            )
        except ProviderCallFailed as exc:
            return exc.failure

        deployment = self._json(response)
        return AdapterSuccess(
            {
                "deploymentId": deployment.get("id"),
                "previewUrl": preview_url_from_deployment(deployment),
                "readyState": deployment.get("readyState"),
            }
        )
