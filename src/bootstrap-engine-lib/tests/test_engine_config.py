from __future__ import annotations

import boto3
import pytest
from bootstrap_engine.cipher import SecretCipher
from bootstrap_engine.config import (
    DEFAULT_HEALTH_PATH,
    DEFAULT_RUNS_TABLE,
    BootstrapSettings,
    resolve_encryption_key,
)
from bootstrap_engine.exceptions import ConfigurationError
from moto import mock_aws

REGION = "eu-west-2"
SECRET_ID = "platform/bootstrap/encryption-key"


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BOOTSTRAP_RUNS_TABLE", raising=False)
    monkeypatch.delenv("BOOTSTRAP_HEALTH_PATH", raising=False)

    settings = BootstrapSettings.from_env()

    assert settings.aws_region == REGION
    assert settings.runs_table == DEFAULT_RUNS_TABLE
    assert settings.health_path == DEFAULT_HEALTH_PATH
    assert settings.verify_timeout_seconds == 60.0
    assert settings.encryption_key is None


def test_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOOTSTRAP_RUNS_TABLE", "dev-bootstrap-runs")
    monkeypatch.setenv("BOOTSTRAP_VERIFY_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("HOSTING_TEAM_ID", "team_1")

    settings = BootstrapSettings.from_env()

    assert settings.runs_table == "dev-bootstrap-runs"
    assert settings.verify_timeout_seconds == 30.0
    assert settings.hosting_team_id == "team_1"


def test_missing_region_is_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AWS_REGION")

    with pytest.raises(ConfigurationError, match="AWS_REGION"):
        BootstrapSettings.from_env()


@pytest.mark.parametrize("raw", ["soon", "0", "-5"])
def test_bad_timeout_is_configuration_error(monkeypatch: pytest.MonkeyPatch, raw: str) -> None:
    monkeypatch.setenv("BOOTSTRAP_VERIFY_TIMEOUT_SECONDS", raw)

    with pytest.raises(ConfigurationError, match="BOOTSTRAP_VERIFY_TIMEOUT_SECONDS"):
        BootstrapSettings.from_env()


def test_key_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOOTSTRAP_ENCRYPTION_KEY", "env-passphrase")

    assert resolve_encryption_key(BootstrapSettings.from_env()) == "env-passphrase"


def test_no_key_configured_returns_none() -> None:
    settings = BootstrapSettings.from_env()

    assert resolve_encryption_key(settings) is None
    assert SecretCipher.from_settings(settings).configured is False


def test_key_from_secrets_manager(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOOTSTRAP_ENCRYPTION_KEY_SECRET_ID", SECRET_ID)
    with mock_aws():
        client = boto3.client("secretsmanager", region_name=REGION)
        client.create_secret(Name=SECRET_ID, SecretString="stored-passphrase\n")
        settings = BootstrapSettings.from_env()

        key = resolve_encryption_key(settings, secretsmanager_client=client)
        ciphertext = SecretCipher.from_settings(settings, secretsmanager_client=client).encrypt(
            "value"
        )

    assert key == "stored-passphrase"
    assert SecretCipher("stored-passphrase").decrypt(ciphertext) == "value"


def test_unreadable_secret_is_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOOTSTRAP_ENCRYPTION_KEY_SECRET_ID", "does/not/exist")
    with mock_aws():
        client = boto3.client("secretsmanager", region_name=REGION)
        with pytest.raises(ConfigurationError, match="unreadable"):
            resolve_encryption_key(BootstrapSettings.from_env(), secretsmanager_client=client)


def test_cipher_defers_unreadable_secret_until_use(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOOTSTRAP_ENCRYPTION_KEY_SECRET_ID", "does/not/exist")
    with mock_aws():
        client = boto3.client("secretsmanager", region_name=REGION)
        cipher = SecretCipher.from_settings(
            BootstrapSettings.from_env(), secretsmanager_client=client
        )

        with pytest.raises(ConfigurationError, match="unreadable"):
            cipher.encrypt("value")
        client.create_secret(Name="does/not/exist", SecretString="late-passphrase")

        assert cipher.configured is True
        assert SecretCipher("late-passphrase").decrypt(cipher.encrypt("value")) == "value"
