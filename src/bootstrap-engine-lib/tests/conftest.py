from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import boto3
import pytest
from moto import mock_aws

REGION = "eu-west-2"
TABLE_NAMES = ("platform-bootstrap-runs", "platform-project-metadata", "platform-audit-log")


@pytest.fixture(autouse=True)
def aws_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set minimal AWS env vars required by the library and moto."""
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    for name in (
        "BOOTSTRAP_ENCRYPTION_KEY",
        "BOOTSTRAP_ENCRYPTION_KEY_SECRET_ID",
        "SOURCE_CONTROL_TOKEN",
        "HOSTING_TOKEN",
        "HOSTING_TEAM_ID",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def dynamodb() -> Iterator[Any]:
    """moto DynamoDB resource with the three bootstrap tables created."""
    with mock_aws():
        resource = boto3.resource("dynamodb", region_name=REGION)
        for table_name in TABLE_NAMES:
            resource.create_table(
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
        yield resource
