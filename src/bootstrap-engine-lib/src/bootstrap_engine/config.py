"""
bootstrap_engine.config — Environment-driven settings for the bootstrap engine.

Every tunable is read once per invocation from the Lambda environment.
Table names default to the platform-* naming used by the CDK stacks.

Encryption key material is resolved in this order:
  1. BOOTSTRAP_ENCRYPTION_KEY (raw hex/base64 key or passphrase)
  2. BOOTSTRAP_ENCRYPTION_KEY_SECRET_ID (Secrets Manager secret holding it)
When neither is set the cipher is built without a key and every
encrypt/decrypt raises ConfigurationError.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from bootstrap_engine.exceptions import ConfigurationError

logger = Logger(service="bootstrap-engine")

DEFAULT_RUNS_TABLE = "platform-bootstrap-runs"
DEFAULT_PROJECT_METADATA_TABLE = "platform-project-metadata"
DEFAULT_AUDIT_TABLE = "platform-audit-log"
DEFAULT_DATABASE_REGION = "us-east-1"
DEFAULT_DATABASE_PLAN = "free"
DEFAULT_HEALTH_PATH = "/version.json"
DEFAULT_VERIFY_TIMEOUT_SECONDS = 60.0
DEFAULT_VERIFY_INTERVAL_SECONDS = 5.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 20.0

DEFAULT_SOURCE_CONTROL_API_URL = "https://api.github.com"
DEFAULT_DATABASE_API_URL = "https://api.supabase.com"
DEFAULT_HOSTING_API_URL = "https://api.vercel.com"


def _env(name: str, default: str | None = None) -> str | None:
    value = os.environ.get(name)
    if value is None:
        return default
    text = value.strip()
    return text or default


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class BootstrapSettings:
    aws_region: str
    runs_table: str
    project_metadata_table: str
    audit_table: str
    encryption_key: str | None
    encryption_key_secret_id: str | None
    source_control_token: str | None
    hosting_token: str | None
    hosting_team_id: str | None
    database_region: str
    database_plan: str
    health_path: str
    verify_timeout_seconds: float
    verify_interval_seconds: float
    http_timeout_seconds: float
    source_control_api_url: str
    database_api_url: str
    hosting_api_url: str

    @classmethod
    def from_env(cls) -> BootstrapSettings:
        region = _env("AWS_REGION")
        if not region:
            raise ConfigurationError("AWS_REGION must be set")
        return cls(
            aws_region=region,
            runs_table=_env("BOOTSTRAP_RUNS_TABLE", DEFAULT_RUNS_TABLE) or DEFAULT_RUNS_TABLE,
            project_metadata_table=_env(
                "PROJECT_METADATA_TABLE", DEFAULT_PROJECT_METADATA_TABLE
            )
            or DEFAULT_PROJECT_METADATA_TABLE,
            audit_table=_env("AUDIT_LOG_TABLE", DEFAULT_AUDIT_TABLE) or DEFAULT_AUDIT_TABLE,
            encryption_key=_env("BOOTSTRAP_ENCRYPTION_KEY"),
            encryption_key_secret_id=_env("BOOTSTRAP_ENCRYPTION_KEY_SECRET_ID"),
            source_control_token=_env("SOURCE_CONTROL_TOKEN"),
            hosting_token=_env("HOSTING_TOKEN"),
            hosting_team_id=_env("HOSTING_TEAM_ID"),
            database_region=_env("DATABASE_DEFAULT_REGION", DEFAULT_DATABASE_REGION)
            or DEFAULT_DATABASE_REGION,
            database_plan=_env("DATABASE_DEFAULT_PLAN", DEFAULT_DATABASE_PLAN)
            or DEFAULT_DATABASE_PLAN,
            health_path=_env("BOOTSTRAP_HEALTH_PATH", DEFAULT_HEALTH_PATH) or DEFAULT_HEALTH_PATH,
            verify_timeout_seconds=_env_float(
                "BOOTSTRAP_VERIFY_TIMEOUT_SECONDS", DEFAULT_VERIFY_TIMEOUT_SECONDS
            ),
            verify_interval_seconds=_env_float(
                "BOOTSTRAP_VERIFY_INTERVAL_SECONDS", DEFAULT_VERIFY_INTERVAL_SECONDS
            ),
            http_timeout_seconds=_env_float(
                "PROVISIONING_HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS
            ),
            source_control_api_url=_env("SOURCE_CONTROL_API_URL", DEFAULT_SOURCE_CONTROL_API_URL)
            or DEFAULT_SOURCE_CONTROL_API_URL,
            database_api_url=_env("DATABASE_API_URL", DEFAULT_DATABASE_API_URL)
            or DEFAULT_DATABASE_API_URL,
            hosting_api_url=_env("HOSTING_API_URL", DEFAULT_HOSTING_API_URL)
            or DEFAULT_HOSTING_API_URL,
        )


def resolve_encryption_key(
    settings: BootstrapSettings,
    *,
    secretsmanager_client: Any = None,
) -> str | None:
    """Return the configured key material, fetching it from Secrets Manager if needed.

    Returns None when no key is configured; the cipher reports that lazily.
    Raises ConfigurationError when a secret id is configured but unreadable.
    """
    if settings.encryption_key:
        return settings.encryption_key
    if not settings.encryption_key_secret_id:
        logger.warning("No bootstrap encryption key configured")
        return None

    client = secretsmanager_client or boto3.client(
        "secretsmanager", region_name=settings.aws_region
    )
    try:
        response = client.get_secret_value(SecretId=settings.encryption_key_secret_id)
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "Unknown")
        logger.error(
            "Failed to read bootstrap encryption key secret",
            extra={"secret_id": settings.encryption_key_secret_id, "error_code": code},
        )
        raise ConfigurationError(
            f"Encryption key secret {settings.encryption_key_secret_id!r} is unreadable ({code})"
        ) from exc

    secret_string = str(response.get("SecretString") or "").strip()
    if not secret_string:
        raise ConfigurationError(
            f"Encryption key secret {settings.encryption_key_secret_id!r} is empty"
        )
    return secret_string
