"""
bootstrap_engine.exceptions — Error taxonomy for the bootstrap engine.

Two families live here:

  - Cipher / configuration errors (InvalidInput, ConfigurationError,
    IntegrityError).  Raised by SecretCipher and settings loading.  Inside a
    step they are caught and recorded as that step's failure.
  - Orchestration request errors (RunNotFound, StepNotRunnable,
    ActiveRunConflict).  Raised to the API layer and mapped to 4xx responses.

Provider-side failures are never raised: adapters return AdapterFailure with
an ErrorClassification instead (see bootstrap_engine.adapters.base).
"""

from __future__ import annotations


class BootstrapError(Exception):
    """Base class for every error raised by the bootstrap engine."""

    code = "BOOTSTRAP_ERROR"


class InvalidInput(BootstrapError, ValueError):
    """Raised when a request or a cipher input is malformed."""

    code = "INVALID_INPUT"


class ConfigurationError(BootstrapError):
    """Raised when required configuration (e.g. the encryption key) is missing."""

    code = "CONFIGURATION_ERROR"


class IntegrityError(BootstrapError):
    """Raised when ciphertext fails authentication or cannot be parsed.

    The message never includes key material or partial plaintext.
    """

    code = "INTEGRITY_ERROR"


class RunNotFound(BootstrapError):
    """Raised when a bootstrap run id (or project id) has no stored run."""

    code = "NOT_FOUND"

    def __init__(self, *, run_id: str | None = None, project_id: str | None = None) -> None:
        self.run_id = run_id
        self.project_id = project_id
        if run_id is not None:
            message = f"Bootstrap run not found: {run_id!r}"
        else:
            message = f"No bootstrap run found for project {project_id!r}"
        super().__init__(message)


class StepNotRunnable(BootstrapError):
    """Raised when a step cannot be executed or retried in its current state.

    Attributes:
        step_id: The step the caller targeted.
        status:  The step's current status (None when the step id is unknown).
    """

    code = "STEP_NOT_RUNNABLE"

    def __init__(self, step_id: str, message: str, *, status: str | None = None) -> None:
        self.step_id = step_id
        self.status = status
        super().__init__(message)


class ActiveRunConflict(BootstrapError):
    """Raised when a project already has a different active run.

    Attributes:
        project_id:    Project whose active-run pointer is held.
        active_run_id: Run currently holding the pointer.
    """

    code = "CONFLICT"

    def __init__(self, *, project_id: str, active_run_id: str) -> None:
        self.project_id = project_id
        self.active_run_id = active_run_id
        super().__init__(
            f"Project {project_id!r} already has an active bootstrap run {active_run_id!r}"
        )
