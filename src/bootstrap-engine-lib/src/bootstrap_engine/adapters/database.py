"""
bootstrap_engine.adapters.database — Supabase Management API client.

create_project() returns the project ref and API URL; fetch_api_keys()
returns the anon and service-role keys.  Key values only ever live in the
returned AdapterSuccess.metadata; the caller encrypts them before storage.
"""

from __future__ import annotations

import secrets
from typing import Any
from urllib.parse import quote

from bootstrap_engine.adapters.base import (
    AdapterFailure,
    AdapterResult,
    AdapterSuccess,
    HttpAdapter,
    ProviderCallFailed,
)
from bootstrap_engine.models import ErrorClassification

_ANON_NAMES = frozenset({"anon", "anon_key"})
_SERVICE_ROLE_NAMES = frozenset({"service_role", "service_role_key"})


def api_url_for(project_ref: str) -> str:
    return f"https://{project_ref}.supabase.co"


def _pick_key(entries: list[dict[str, Any]], names: frozenset[str]) -> str | None:
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        if entry.get("name") in names or entry.get("type") in names:
            value = entry.get("api_key") or entry.get("key")
            if value:
                return str(value)
    return None


class DatabaseProvisioningAdapter(HttpAdapter):
    provider = "Supabase"

    def create_project(
        self,
        token: str,
        *,
        name: str,
        organization_id: str,
        region: str,
        plan: str,
    ) -> AdapterResult:
        try:
            response = self._request(
                "POST",
                "/v1/projects",
                token=token,
                action="create the database project",
                json={
                    "name": name,
                    "organization_id": organization_id,
                    "region": region,
                    "plan": plan,
                    # Required by the API; the platform only uses the API keys.
                    "db_pass": secrets.token_urlsafe(32),
                },
            )
        except ProviderCallFailed as exc:
            return exc.failure

        project = self._json(response)
        project_ref = project.get("ref") or project.get("reference") or project.get("id")
        if not project_ref:
            return AdapterFailure(
                classification=ErrorClassification.UNKNOWN,
                user_message="Database project was created but its reference is missing",
                details="Response contained no ref, reference or id",
            )
        return AdapterSuccess(
            {
                "projectRef": str(project_ref),
                "apiUrl": api_url_for(str(project_ref)),
                "region": str(project.get("region") or region),
            }
        )

    def fetch_api_keys(self, token: str, project_ref: str) -> AdapterResult:
        try:
            response = self._request(
                "GET",
                f"/v1/projects/{quote(project_ref, safe='')}/api-keys",
                token=token,
                action="fetch the database API keys",
            )
        except ProviderCallFailed as exc:
            return exc.failure

        payload = self._json(response)
        if isinstance(payload, list):
            anon_key = _pick_key(payload, _ANON_NAMES)
            service_role_key = _pick_key(payload, _SERVICE_ROLE_NAMES)
        elif isinstance(payload, dict):
            anon_key = payload.get("anon_key")
            service_role_key = payload.get("service_role_key")
        else:
            anon_key = service_role_key = None

        if not anon_key or not service_role_key:
            return AdapterFailure(
                classification=ErrorClassification.UNKNOWN,
                user_message="Database API keys are not available yet",
                details=f"Key listing for {project_ref} lacked anon or service_role",
            )
        return AdapterSuccess({"anonKey": anon_key, "serviceRoleKey": service_role_key})
