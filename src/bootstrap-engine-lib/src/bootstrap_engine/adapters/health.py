"""
bootstrap_engine.adapters.health — Bounded polling of a deployment health endpoint.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import requests
from aws_lambda_powertools import Logger

from bootstrap_engine.adapters.base import AdapterFailure, AdapterResult, AdapterSuccess
from bootstrap_engine.models import ErrorClassification

logger = Logger(service="bootstrap-engine")


def health_url(base_url: str, path: str) -> str:
    if not base_url.startswith(("http://", "https://")):
        base_url = f"https://{base_url}"
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


class DeploymentHealthAdapter:
    """Polls GET {url}{path} until a 2xx arrives or the timeout elapses.

    clock and sleep are injectable so tests never wait on real time.
    """

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        request_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session or requests.Session()
        self._request_timeout = request_timeout
        self._clock = clock
        self._sleep = sleep

    def wait_until_healthy(
        self,
        base_url: str,
        *,
        path: str,
        timeout_seconds: float,
        interval_seconds: float,
    ) -> AdapterResult:
        url = health_url(base_url, path)
        deadline = self._clock() + timeout_seconds
        attempts = 0
        last_status: int | None = None
        last_error: Exception | None = None

        while True:
            attempts += 1
            remaining = max(deadline - self._clock(), 1.0)
            try:
                response = self._session.get(url, timeout=min(self._request_timeout, remaining))
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_error = exc
            else:
                last_error = None
                last_status = response.status_code
                if 200 <= response.status_code < 300:
                    logger.info(
                        "Deployment healthy",
                        extra={"url": url, "attempts": attempts, "status_code": last_status},
                    )
                    return AdapterSuccess(
                        {"url": url, "attempts": attempts, "statusCode": last_status}
                    )

            if self._clock() + interval_seconds > deadline:
                break
            self._sleep(interval_seconds)

        logger.warning(
            "Deployment did not become healthy",
            extra={"url": url, "attempts": attempts, "last_status": last_status},
        )
        if last_error is not None:
            return AdapterFailure(
                classification=ErrorClassification.NETWORK_ERROR,
                user_message=f"Network error reaching {url}",
                details=f"{type(last_error).__name__}: {last_error}"[:500],
            )
        return AdapterFailure(
            classification=ErrorClassification.UNKNOWN,
            user_message=f"Deployment did not become healthy within {timeout_seconds:g} seconds",
            details=f"Last response from {url}: HTTP {last_status} after {attempts} attempts",
        )
