"""
bootstrap_engine.adapters.base — Result types and HTTP plumbing shared by adapters.

Adapters never raise for provider-side failures.  Every public adapter
method returns AdapterSuccess or AdapterFailure; the HTTP status (or the
transport error) is mapped to an ErrorClassification here so all providers
classify the same way.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

import requests
from aws_lambda_powertools import Logger

from bootstrap_engine.models import ErrorClassification

logger = Logger(service="bootstrap-engine")

_DETAILS_LIMIT = 500


@dataclass(frozen=True)
class AdapterSuccess:
    """metadata may carry secrets in memory; callers decide what to persist."""

    metadata: dict[str, Any] = field(default_factory=dict)
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class AdapterFailure:
    classification: ErrorClassification
    user_message: str
    details: str | None = None
    ok: ClassVar[bool] = False


AdapterResult = AdapterSuccess | AdapterFailure


def classify_status(status_code: int) -> ErrorClassification:
    if status_code == 401:
        return ErrorClassification.INVALID_CREDENTIALS
    if status_code == 403:
        return ErrorClassification.PERMISSION_DENIED
    if status_code == 404:
        return ErrorClassification.RESOURCE_NOT_FOUND
    if status_code == 429:
        return ErrorClassification.RATE_LIMITED
    return ErrorClassification.UNKNOWN


def _truncate(text: str) -> str:
    return text if len(text) <= _DETAILS_LIMIT else text[:_DETAILS_LIMIT] + "..."


def provider_error_message(response: requests.Response) -> str:
    """Best-effort extraction of the provider's own error text."""
    try:
        payload = response.json()
    except ValueError:
        return _truncate(response.text or response.reason or "")
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return _truncate(str(error["message"]))
        if payload.get("message"):
            return _truncate(str(payload["message"]))
        if isinstance(error, str) and error:
            return _truncate(error)
    return _truncate(response.text or "")


class ProviderCallFailed(Exception):
    """Internal short-circuit for multi-request adapter flows."""

    def __init__(self, failure: AdapterFailure) -> None:
        self.failure = failure
        super().__init__(failure.user_message)


class HttpAdapter:
    """Base for adapters that talk to a JSON REST API with a bearer token."""

    provider = "provider"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 20.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def failure_for_status(self, response: requests.Response, action: str) -> AdapterFailure:
        classification = classify_status(response.status_code)
        messages = {
            ErrorClassification.INVALID_CREDENTIALS: f"Invalid {self.provider} credentials",
            ErrorClassification.PERMISSION_DENIED: f"Permission denied by {self.provider}",
            ErrorClassification.RESOURCE_NOT_FOUND: f"{self.provider} resource not found",
            ErrorClassification.RATE_LIMITED: (
                f"{self.provider} rate limit exceeded; wait a few minutes and retry"
            ),
        }
        detail = provider_error_message(response)
        status = f"HTTP {response.status_code}"
        return AdapterFailure(
            classification=classification,
            user_message=messages.get(classification, f"Failed to {action}"),
            details=f"{status}: {detail}" if detail else status,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        token: str,
        action: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
        accept: tuple[int, ...] = (),
    ) -> requests.Response:
        """Send one request; raise ProviderCallFailed unless 2xx or in accept."""
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                headers=self._headers(token),
                json=json,
                params={k: v for k, v in (params or {}).items() if v is not None} or None,
                timeout=self._timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            logger.warning(
                "Provider request failed in transport",
                extra={"provider": self.provider, "action": action, "error": type(exc).__name__},
            )
            raise ProviderCallFailed(
                AdapterFailure(
                    classification=ErrorClassification.NETWORK_ERROR,
                    user_message=f"Network error contacting {self.provider}",
                    details=_truncate(str(exc)),
                )
            ) from exc
        except requests.RequestException as exc:
            raise ProviderCallFailed(
                AdapterFailure(
                    classification=ErrorClassification.UNKNOWN,
                    user_message=f"Failed to {action}",
                    details=_truncate(str(exc)),
                )
            ) from exc

        if response.ok or response.status_code in accept:
            return response

        logger.warning(
            "Provider request rejected",
            extra={
                "provider": self.provider,
                "action": action,
                "status_code": response.status_code,
            },
        )
        raise ProviderCallFailed(self.failure_for_status(response, action))

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {}
