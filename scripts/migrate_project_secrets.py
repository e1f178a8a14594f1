#!/usr/bin/env python3
"""
migrate_project_secrets.py — Encrypt legacy plaintext database keys at rest.

Scans every BACKING_DATABASE record in the project metadata table and
rewrites anon/service-role key values that are not already SecretCipher
ciphertext.  Values that already look encrypted are left untouched, so the
script is safe to re-run.

Usage:
    uv run python scripts/migrate_project_secrets.py --dry-run
    uv run python scripts/migrate_project_secrets.py --table-name platform-project-metadata

Reads BOOTSTRAP_ENCRYPTION_KEY or BOOTSTRAP_ENCRYPTION_KEY_SECRET_ID like the
bootstrap API does.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from typing import Any

import boto3

from bootstrap_engine.cipher import SecretCipher
from bootstrap_engine.config import BootstrapSettings
from bootstrap_engine.models import BackingDatabaseRecord
from bootstrap_engine.state import utc_now_iso
from bootstrap_engine.store import ProjectMetadataStore

logger = logging.getLogger("migrate_project_secrets")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


@dataclass(frozen=True)
class MigrationReport:
    scanned: int
    migrated: int
    already_encrypted: int
    project_ids: tuple[str, ...]


def _reencrypt(cipher: SecretCipher, value: str | None) -> str | None:
    if not value or SecretCipher.looks_encrypted(value):
        return value
    return cipher.encrypt(value)


def needs_migration(record: BackingDatabaseRecord) -> bool:
    return any(
        value and not SecretCipher.looks_encrypted(value)
        for value in (record.encrypted_anon_key, record.encrypted_service_role_key)
    )


def migrate_project_secrets(
    store: ProjectMetadataStore,
    cipher: SecretCipher,
    *,
    dry_run: bool = False,
) -> MigrationReport:
    """Encrypt plaintext key values in place; returns what was (or would be) changed."""
    if not cipher.configured:
        raise RuntimeError("Encryption key is not configured; refusing to migrate")

    records = store.iter_backing_databases()
    migrated: list[str] = []
    for record in records:
        if not needs_migration(record):
            continue
        migrated.append(record.project_id)
        if dry_run:
            logger.info("Would encrypt keys for project %s", record.project_id)
            continue
        store.update_backing_database_keys(
            record.project_id,
            encrypted_anon_key=_reencrypt(cipher, record.encrypted_anon_key),
            encrypted_service_role_key=_reencrypt(cipher, record.encrypted_service_role_key),
            now=utc_now_iso(),
        )
        logger.info("Encrypted keys for project %s", record.project_id)

    return MigrationReport(
        scanned=len(records),
        migrated=len(migrated),
        already_encrypted=len(records) - len(migrated),
        project_ids=tuple(migrated),
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Encrypt legacy plaintext project secrets")
    parser.add_argument(
        "--table-name",
        default=None,
        help="Project metadata table (default: $PROJECT_METADATA_TABLE)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report records that would be migrated without writing",
    )
    return parser.parse_args(argv)


def run(args: argparse.Namespace, *, secretsmanager_client: Any = None) -> MigrationReport:
    settings = BootstrapSettings.from_env()
    session = boto3.session.Session(region_name=settings.aws_region)
    store = ProjectMetadataStore(
        args.table_name or settings.project_metadata_table,
        dynamodb_resource=session.resource("dynamodb"),
    )
    cipher = SecretCipher.from_settings(
        settings,
        secretsmanager_client=secretsmanager_client or session.client("secretsmanager"),
    )
    return migrate_project_secrets(store, cipher, dry_run=args.dry_run)


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""
    args = parse_args(argv)
    try:
        report = run(args)
    except Exception as exc:
        logger.error("Secret migration failed: %s", exc)
        return 1

    logger.info(
        "Scanned %d record(s); %s %d; %d already encrypted",
        report.scanned,
        "would migrate" if args.dry_run else "migrated",
        report.migrated,
        report.already_encrypted,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
