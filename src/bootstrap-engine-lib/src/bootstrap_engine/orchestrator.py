"""
bootstrap_engine.orchestrator — Drives bootstrap runs through the step pipeline.

The orchestrator is stateless between calls: every operation loads the run
from BootstrapRunStore, applies a bootstrap_engine.state transition, and
writes the result back.  A caller can therefore resume a run from any
process after a crash or a browser refresh.

Step executors live in STEP_EXECUTORS, keyed by step id.  Each executor
returns AdapterSuccess or AdapterFailure; any exception it raises is turned
into a classified failure of that step and never escapes execute_step().
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from aws_lambda_powertools import Logger

from bootstrap_engine.adapters import (
    AdapterFailure,
    AdapterResult,
    AdapterSuccess,
    DatabaseProvisioningAdapter,
    DeploymentHealthAdapter,
    HostingAdapter,
    SourceControlAdapter,
)
from bootstrap_engine.audit import (
    ACTION_BOOTSTRAP_COMPLETE,
    ACTION_BOOTSTRAP_START,
    ACTION_BOOTSTRAP_STEP,
    AuditLogger,
    redact_metadata,
)
from bootstrap_engine.cipher import SecretCipher
from bootstrap_engine.config import BootstrapSettings
from bootstrap_engine.exceptions import (
    ActiveRunConflict,
    BootstrapError,
    ConfigurationError,
    IntegrityError,
    InvalidInput,
    RunNotFound,
    StepNotRunnable,
)
from bootstrap_engine.models import (
    AuditStatus,
    BootstrapRun,
    ErrorClassification,
    LogLevel,
    RunStatus,
    StepStatus,
)
from bootstrap_engine.state import (
    add_log_entry,
    blocking_step,
    complete_step,
    initial_step_history,
    is_runnable,
    mark_step_running,
    reset_step_for_retry,
    utc_now_iso,
)
from bootstrap_engine.steps import (
    BOOTSTRAP_STEPS,
    CREATE_BACKING_DATABASE_PROJECT,
    CREATE_HOSTING_PROJECT,
    ENSURE_REPO_INITIALIZED,
    VERIFY_DEPLOYMENT,
    is_known_step,
)
from bootstrap_engine.store import BootstrapRunStore, ProjectMetadataStore

logger = Logger(service="bootstrap-engine")

DEFAULT_GIT_REF = "main"
_RESOURCE_NAME_LIMIT = 100

# ---------------------------------------------------------------------------
# Step parameters
# ---------------------------------------------------------------------------

_STRING_PARAMETERS = {
    "managementToken": "management_token",
    "organizationId": "organization_id",
    "databaseProjectName": "database_project_name",
    "databaseRegion": "database_region",
    "databasePlan": "database_plan",
    "hostingToken": "hosting_token",
    "hostingTeamId": "hosting_team_id",
    "repository": "repository",
    "gitRef": "git_ref",
    "sourceToken": "source_token",
    "healthPath": "health_path",
}


@dataclass(frozen=True)
class StepParameters:
    """Caller-supplied inputs for step executors.  Tokens are never persisted."""

    management_token: str | None = None
    organization_id: str | None = None
    database_project_name: str | None = None
    database_region: str | None = None
    database_plan: str | None = None
    hosting_token: str | None = None
    hosting_team_id: str | None = None
    repository: str | None = None
    git_ref: str | None = None
    source_token: str | None = None
    health_path: str | None = None
    environment_variables: tuple[tuple[str, str], ...] = ()

    def __repr__(self) -> str:
        return "StepParameters(<redacted>)"

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> StepParameters:
        """Build from a camelCase request body.  Raises InvalidInput on bad types."""
        payload = payload or {}
        values: dict[str, Any] = {}
        for wire_name, field_name in _STRING_PARAMETERS.items():
            raw = payload.get(wire_name)
            if raw is None:
                continue
            if not isinstance(raw, str):
                raise InvalidInput(f"{wire_name} must be a string")
            values[field_name] = raw.strip() or None

        raw_variables = payload.get("environmentVariables")
        if raw_variables is not None:
            if not isinstance(raw_variables, list):
                raise InvalidInput("environmentVariables must be a list of {key, value} objects")
            variables: list[tuple[str, str]] = []
            for item in raw_variables:
                if not isinstance(item, dict):
                    raise InvalidInput("environmentVariables entries must be objects")
                key, value = item.get("key"), item.get("value")
                if not isinstance(key, str) or not key.strip() or not isinstance(value, str):
                    raise InvalidInput("environmentVariables entries need a string key and value")
                variables.append((key.strip(), value))
            values["environment_variables"] = tuple(variables)

        return cls(**values)


# ---------------------------------------------------------------------------
# Adapters and executor context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProvisioningAdapters:
    source_control: SourceControlAdapter
    database: DatabaseProvisioningAdapter
    hosting: HostingAdapter
    health: DeploymentHealthAdapter

    @classmethod
    def from_settings(cls, settings: BootstrapSettings) -> ProvisioningAdapters:
        timeout = settings.http_timeout_seconds
        return cls(
            source_control=SourceControlAdapter(settings.source_control_api_url, timeout=timeout),
            database=DatabaseProvisioningAdapter(settings.database_api_url, timeout=timeout),
            hosting=HostingAdapter(settings.hosting_api_url, timeout=timeout),
            health=DeploymentHealthAdapter(request_timeout=min(timeout, 10.0)),
        )


@dataclass(frozen=True)
class StepContext:
    run: BootstrapRun
    parameters: StepParameters
    settings: BootstrapSettings
    cipher: SecretCipher
    metadata_store: ProjectMetadataStore
    adapters: ProvisioningAdapters
    clock: Callable[[], str]


StepExecutor = Callable[[StepContext], AdapterResult]


@dataclass(frozen=True)
class StepOutcome:
    run: BootstrapRun
    step_id: str
    result: AdapterResult

    @property
    def success(self) -> bool:
        return self.result.ok


def resource_name(project_id: str) -> str:
    """Provider-safe name derived from a project id: acme/widgets → acme-widgets."""
    slug = re.sub(r"[^a-z0-9]+", "-", project_id.lower()).strip("-")
    return slug[:_RESOURCE_NAME_LIMIT] or "project"


def _missing_credentials(message: str, details: str | None = None) -> AdapterFailure:
    return AdapterFailure(
        classification=ErrorClassification.INVALID_CREDENTIALS,
        user_message=message,
        details=details,
    )


# ---------------------------------------------------------------------------
# Step executors
# ---------------------------------------------------------------------------


def _ensure_repo_initialized(ctx: StepContext) -> AdapterResult:
    token = ctx.parameters.source_token or ctx.settings.source_control_token
    if not token:
        return _missing_credentials(
            "Source control token is required",
            "Provide sourceToken or configure SOURCE_CONTROL_TOKEN",
        )
    repository = ctx.parameters.repository or ctx.run.project_id
    return ctx.adapters.source_control.ensure_repo_initialized(token, repository)


def _create_backing_database_project(ctx: StepContext) -> AdapterResult:
    project_id = ctx.run.project_id
    existing = ctx.metadata_store.get_backing_database(project_id)
    if existing and existing.encrypted_anon_key and existing.encrypted_service_role_key:
        logger.info(
            "Backing database already recorded; skipping provider call",
            extra={"project_id": project_id, "project_ref": existing.project_ref},
        )
        return AdapterSuccess(
            {
                "projectRef": existing.project_ref,
                "apiUrl": existing.api_url,
                "region": existing.region,
                "reused": True,
            }
        )

    params = ctx.parameters
    missing = [
        name
        for name, value in (
            ("managementToken", params.management_token),
            ("organizationId", params.organization_id),
        )
        if not value
    ]
    if missing:
        return _missing_credentials(
            f"Missing required parameter: {', '.join(missing)}",
            "A database management token and organization id are required to create the project",
        )
    if not ctx.cipher.configured:
        # Fail before creating anything we could not store.
        raise ConfigurationError("Encryption key is not configured; cannot store database keys")

    token = params.management_token or ""
    if existing is not None:
        # Created by an earlier attempt whose key fetch failed.
        project_ref, api_url, region = existing.project_ref, existing.api_url, existing.region
    else:
        created = ctx.adapters.database.create_project(
            token,
            name=params.database_project_name or resource_name(project_id),
            organization_id=params.organization_id or "",
            region=params.database_region or ctx.settings.database_region,
            plan=params.database_plan or ctx.settings.database_plan,
        )
        if not created.ok:
            return created
        project_ref = created.metadata["projectRef"]
        api_url = created.metadata["apiUrl"]
        region = created.metadata.get("region")
        ctx.metadata_store.upsert_backing_database(
            project_id,
            project_ref=project_ref,
            api_url=api_url,
            region=region,
            encrypted_anon_key=None,
            encrypted_service_role_key=None,
            status="provisioning",
            now=ctx.clock(),
        )

    keys = ctx.adapters.database.fetch_api_keys(token, project_ref)
    if not keys.ok:
        return keys

    ctx.metadata_store.upsert_backing_database(
        project_id,
        project_ref=project_ref,
        api_url=api_url,
        region=region,
        encrypted_anon_key=ctx.cipher.encrypt(keys.metadata["anonKey"]),
        encrypted_service_role_key=ctx.cipher.encrypt(keys.metadata["serviceRoleKey"]),
        status="created",
        now=ctx.clock(),
    )
    return AdapterSuccess(
        {"projectRef": project_ref, "apiUrl": api_url, "region": region, "reused": False}
    )


def _create_hosting_project(ctx: StepContext) -> AdapterResult:
    project_id = ctx.run.project_id
    params = ctx.parameters
    token = params.hosting_token or ctx.settings.hosting_token
    if not token:
        return _missing_credentials(
            "Hosting token is required",
            "Provide hostingToken or configure HOSTING_TOKEN",
        )
    team_id = params.hosting_team_id or ctx.settings.hosting_team_id
    repository = params.repository or project_id

    database = ctx.metadata_store.get_backing_database(project_id)
    if (
        database is None
        or not database.encrypted_anon_key
        or not database.encrypted_service_role_key
    ):
        return AdapterFailure(
            classification=ErrorClassification.RESOURCE_NOT_FOUND,
            user_message="Backing database not found",
            details=f"Run {CREATE_BACKING_DATABASE_PROJECT} before {CREATE_HOSTING_PROJECT}",
        )
    anon_key = ctx.cipher.decrypt(database.encrypted_anon_key)
    service_role_key = ctx.cipher.decrypt(database.encrypted_service_role_key)

    hosting = ctx.metadata_store.get_hosting_project(project_id)
    if hosting is None:
        created = ctx.adapters.hosting.create_project(
            token, name=resource_name(project_id), repository=repository, team_id=team_id
        )
        if not created.ok:
            return created
        hosting = ctx.metadata_store.upsert_hosting_project(
            project_id,
            hosting_project_id=created.metadata["hostingProjectId"],
            hosting_project_name=created.metadata["hostingProjectName"],
            now=ctx.clock(),
        )
    else:
        logger.info(
            "Reusing recorded hosting project",
            extra={"project_id": project_id, "hosting_project_id": hosting.hosting_project_id},
        )

    variables = [
        ("SUPABASE_URL", database.api_url),
        ("SUPABASE_ANON_KEY", anon_key),
        ("SUPABASE_SERVICE_ROLE_KEY", service_role_key),
        ("VITE_SUPABASE_URL", database.api_url),
        ("VITE_SUPABASE_ANON_KEY", anon_key),
        *params.environment_variables,
    ]
    env_result = ctx.adapters.hosting.set_environment_variables(
        token, hosting.hosting_project_id, variables, team_id=team_id
    )
    if not env_result.ok:
        return env_result

    repo_record = ctx.run.step_record(ENSURE_REPO_INITIALIZED)
    default_branch = (repo_record.metadata or {}).get("defaultBranch") if repo_record else None
    deployment = ctx.adapters.hosting.create_deployment(
        token,
        project_name=hosting.hosting_project_name,
        repository=repository,
        ref=params.git_ref or default_branch or DEFAULT_GIT_REF,
        team_id=team_id,
    )
    if not deployment.ok:
        return deployment

    hosting = ctx.metadata_store.upsert_hosting_project(
        project_id,
        hosting_project_id=hosting.hosting_project_id,
        hosting_project_name=hosting.hosting_project_name,
        deployment_id=deployment.metadata.get("deploymentId"),
        preview_url=deployment.metadata.get("previewUrl"),
        now=ctx.clock(),
    )
    return AdapterSuccess(
        {
            "hostingProjectId": hosting.hosting_project_id,
            "hostingProjectName": hosting.hosting_project_name,
            "deploymentId": hosting.deployment_id,
            "previewUrl": hosting.preview_url,
        }
    )


def _verify_deployment(ctx: StepContext) -> AdapterResult:
    hosting = ctx.metadata_store.get_hosting_project(ctx.run.project_id)
    if hosting is None or not hosting.preview_url:
        return AdapterFailure(
            classification=ErrorClassification.RESOURCE_NOT_FOUND,
            user_message="Deployment preview URL not found",
            details=f"Run {CREATE_HOSTING_PROJECT} before {VERIFY_DEPLOYMENT}",
        )
    return ctx.adapters.health.wait_until_healthy(
        hosting.preview_url,
        path=ctx.parameters.health_path or ctx.settings.health_path,
        timeout_seconds=ctx.settings.verify_timeout_seconds,
        interval_seconds=ctx.settings.verify_interval_seconds,
    )


STEP_EXECUTORS: dict[str, StepExecutor] = {
    ENSURE_REPO_INITIALIZED: _ensure_repo_initialized,
    CREATE_BACKING_DATABASE_PROJECT: _create_backing_database_project,
    CREATE_HOSTING_PROJECT: _create_hosting_project,
    VERIFY_DEPLOYMENT: _verify_deployment,
}

_EXCEPTION_CLASSIFICATIONS: dict[type[BootstrapError], ErrorClassification] = {
    InvalidInput: ErrorClassification.INVALID_INPUT,
    ConfigurationError: ErrorClassification.CONFIGURATION_ERROR,
    IntegrityError: ErrorClassification.INTEGRITY_ERROR,
}


def _failure_from_exception(exc: Exception) -> AdapterFailure:
    if isinstance(exc, BootstrapError):
        for exc_type, classification in _EXCEPTION_CLASSIFICATIONS.items():
            if isinstance(exc, exc_type):
                return AdapterFailure(classification=classification, user_message=str(exc))
        return AdapterFailure(classification=ErrorClassification.UNKNOWN, user_message=str(exc))
    return AdapterFailure(
        classification=ErrorClassification.UNKNOWN,
        user_message="Unexpected error while executing step",
        details=redact_metadata(f"{type(exc).__name__}: {exc}")[:500],
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class BootstrapOrchestrator:
    def __init__(
        self,
        *,
        run_store: BootstrapRunStore,
        metadata_store: ProjectMetadataStore,
        cipher: SecretCipher,
        adapters: ProvisioningAdapters,
        settings: BootstrapSettings,
        audit: AuditLogger | None = None,
        clock: Callable[[], str] = utc_now_iso,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
        executors: Mapping[str, StepExecutor] | None = None,
    ) -> None:
        self._runs = run_store
        self._metadata = metadata_store
        self._cipher = cipher
        self._adapters = adapters
        self._settings = settings
        self._audit = audit
        self._clock = clock
        self._new_id = id_factory
        self._executors = dict(executors or STEP_EXECUTORS)

    @classmethod
    def from_settings(
        cls,
        settings: BootstrapSettings,
        *,
        dynamodb_resource: Any,
        secretsmanager_client: Any = None,
    ) -> BootstrapOrchestrator:
        return cls(
            run_store=BootstrapRunStore(settings.runs_table, dynamodb_resource=dynamodb_resource),
            metadata_store=ProjectMetadataStore(
                settings.project_metadata_table, dynamodb_resource=dynamodb_resource
            ),
            cipher=SecretCipher.from_settings(
                settings, secretsmanager_client=secretsmanager_client
            ),
            adapters=ProvisioningAdapters.from_settings(settings),
            settings=settings,
            audit=AuditLogger(
                settings.audit_table, dynamodb_resource=dynamodb_resource, clock=utc_now_iso
            ),
        )

    @property
    def metadata_store(self) -> ProjectMetadataStore:
        return self._metadata

    def _record_audit(
        self,
        run: BootstrapRun,
        action_type: str,
        status: AuditStatus,
        summary: str,
        *,
        actor: str | None,
        **metadata: Any,
    ) -> None:
        if self._audit is None:
            return
        self._audit.record(
            run.project_id,
            action_type,
            status,
            summary,
            metadata={"runId": run.id, **metadata},
            actor=actor,
        )

    # -- reads ---------------------------------------------------------------

    def get_run(self, run_id: str) -> BootstrapRun:
        if not run_id or not run_id.strip():
            raise InvalidInput("runId is required")
        run = self._runs.get_run(run_id.strip())
        if run is None:
            raise RunNotFound(run_id=run_id)
        return run

    def get_latest_run(self, project_id: str) -> BootstrapRun:
        if not project_id or not project_id.strip():
            raise InvalidInput("projectId is required")
        run = self._runs.find_latest_run(project_id.strip())
        if run is None:
            raise RunNotFound(project_id=project_id)
        return run

    # -- create --------------------------------------------------------------

    def create_run(self, project_id: str, *, actor: str | None = None) -> tuple[BootstrapRun, bool]:
        """Return (run, created).  An existing active run is returned unchanged."""
        if not project_id or not project_id.strip():
            raise InvalidInput("projectId is required")
        project_id = project_id.strip()

        existing = self._runs.find_active_run(project_id)
        if existing is not None:
            logger.info(
                "Active bootstrap run exists; returning it",
                extra={"project_id": project_id, "run_id": existing.id},
            )
            return existing, False

        now = self._clock()
        run = BootstrapRun(
            id=self._new_id(),
            project_id=project_id,
            status=RunStatus.PENDING,
            current_step=BOOTSTRAP_STEPS[0],
            step_history=initial_step_history(),
            logs=add_log_entry((), LogLevel.INFO, "Bootstrap run started", now=now),
            created_at=now,
            updated_at=now,
        )
        try:
            self._runs.insert_run(run)
        except ActiveRunConflict as exc:
            winner = self._runs.get_run(exc.active_run_id)
            if winner is not None and winner.is_active:
                logger.info(
                    "Concurrent bootstrap run creation; returning the winner",
                    extra={"project_id": project_id, "run_id": winner.id},
                )
                return winner, False
            raise

        logger.info("Bootstrap run created", extra={"project_id": project_id, "run_id": run.id})
        self._record_audit(
            run,
            ACTION_BOOTSTRAP_START,
            AuditStatus.PENDING,
            f"Bootstrap started for {project_id}",
            actor=actor,
        )
        return run, True

    # -- execute -------------------------------------------------------------

    def execute_step(
        self,
        run_id: str,
        step_id: str | None = None,
        parameters: StepParameters | None = None,
        *,
        actor: str | None = None,
    ) -> StepOutcome:
        """Run one step.  Provider failures are recorded, not raised.

        Raises InvalidInput for an unknown step id, StepNotRunnable when the
        step is not pending/failed or an earlier step has not succeeded.
        """
        run = self.get_run(run_id)
        target = step_id or run.current_step
        if not target:
            raise StepNotRunnable(
                "",
                f"Bootstrap run {run.id} has no step to execute (status {run.status})",
                status=None,
            )
        if not is_known_step(target):
            raise InvalidInput(f"Unknown bootstrap step: {target!r}")

        record = run.step_record(target)
        if record is None:
            raise StepNotRunnable(target, f"Step {target} is not part of run {run.id}")
        if not is_runnable(record):
            raise StepNotRunnable(
                target,
                f"Step {target} is {record.status}; only pending or failed steps can be executed",
                status=record.status,
            )
        blocker = blocking_step(run.step_history, target)
        if blocker is not None:
            raise StepNotRunnable(
                target,
                f"Step {target} cannot run before {blocker} has succeeded",
                status=record.status,
            )

        run = self._runs.save_run(mark_step_running(run, target, now=self._clock()))
        logger.info("Executing bootstrap step", extra={"run_id": run.id, "step": target})

        context = StepContext(
            run=run,
            parameters=parameters or StepParameters(),
            settings=self._settings,
            cipher=self._cipher,
            metadata_store=self._metadata,
            adapters=self._adapters,
            clock=self._clock,
        )
        try:
            result = self._executors[target](context)
        except BootstrapError as exc:
            logger.warning(
                "Bootstrap step raised",
                extra={"run_id": run.id, "step": target, "error": type(exc).__name__},
            )
            result = _failure_from_exception(exc)
        except Exception as exc:
            logger.exception(
                "Unexpected error in bootstrap step", extra={"run_id": run.id, "step": target}
            )
            result = _failure_from_exception(exc)

        if result.ok:
            run = complete_step(
                run,
                target,
                succeeded=True,
                now=self._clock(),
                metadata=redact_metadata(result.metadata),
            )
        else:
            logger.warning(
                "Bootstrap step failed",
                extra={
                    "run_id": run.id,
                    "step": target,
                    "classification": result.classification.value,
                },
            )
            run = complete_step(
                run,
                target,
                succeeded=False,
                now=self._clock(),
                error_summary=result.user_message,
                error_details=result.details,
                classification=result.classification,
            )
        run = self._runs.save_run(run)

        if result.ok:
            self._record_audit(
                run,
                ACTION_BOOTSTRAP_STEP,
                AuditStatus.SUCCEEDED,
                f"Step {target} succeeded",
                actor=actor,
                step=target,
            )
        else:
            self._record_audit(
                run,
                ACTION_BOOTSTRAP_STEP,
                AuditStatus.FAILED,
                f"Step {target} failed: {result.user_message}",
                actor=actor,
                step=target,
                classification=result.classification.value,
            )
        if run.status == RunStatus.SUCCEEDED:
            logger.info("Bootstrap run completed", extra={"run_id": run.id})
            self._record_audit(
                run,
                ACTION_BOOTSTRAP_COMPLETE,
                AuditStatus.SUCCEEDED,
                f"Bootstrap completed for {run.project_id}",
                actor=actor,
            )
        return StepOutcome(run=run, step_id=target, result=result)

    # -- retry ---------------------------------------------------------------

    def retry_step(self, run_id: str, step_id: str, *, actor: str | None = None) -> BootstrapRun:
        """Move one failed step back to pending.  No other step is touched."""
        run = self.get_run(run_id)
        if not step_id:
            raise InvalidInput("stepId is required")
        if not is_known_step(step_id):
            raise InvalidInput(f"Unknown bootstrap step: {step_id!r}")
        record = run.step_record(step_id)
        if record is None or record.status != StepStatus.FAILED:
            status = record.status if record else None
            raise StepNotRunnable(
                step_id,
                f"Only failed steps can be retried; {step_id} is {status or 'missing'}",
                status=status,
            )

        active = self._runs.find_active_run(run.project_id)
        if active is not None and active.id != run.id:
            raise ActiveRunConflict(project_id=run.project_id, active_run_id=active.id)

        run = self._runs.save_run(reset_step_for_retry(run, step_id, now=self._clock()))
        logger.info("Bootstrap step reset for retry", extra={"run_id": run.id, "step": step_id})
        self._record_audit(
            run,
            ACTION_BOOTSTRAP_STEP,
            AuditStatus.PENDING,
            f"Retrying step {step_id}",
            actor=actor,
            step=step_id,
        )
        return run
