"""
bootstrap_engine — Resumable, idempotent project bootstrap orchestration.

Provisions the backing infrastructure of a new project (source repository,
backing database, hosting project, deployment check) as a fixed sequence of
steps whose state lives entirely in DynamoDB.
"""

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
from bootstrap_engine.models import BootstrapRun, ErrorClassification, RunStatus, StepStatus
from bootstrap_engine.orchestrator import BootstrapOrchestrator, StepOutcome, StepParameters

__all__ = [
    "ActiveRunConflict",
    "BootstrapError",
    "BootstrapOrchestrator",
    "BootstrapRun",
    "BootstrapSettings",
    "ConfigurationError",
    "ErrorClassification",
    "IntegrityError",
    "InvalidInput",
    "RunNotFound",
    "RunStatus",
    "SecretCipher",
    "StepNotRunnable",
    "StepOutcome",
    "StepParameters",
    "StepStatus",
]
