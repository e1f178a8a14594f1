"""
bootstrap_engine.steps — The fixed, ordered bootstrap step registry.

Adding a step is a code change: append it to BOOTSTRAP_STEPS, describe it in
STEP_DEFINITIONS and register an executor in bootstrap_engine.orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType

ENSURE_REPO_INITIALIZED = "ensure_repo_initialized"
CREATE_BACKING_DATABASE_PROJECT = "create_backing_database_project"
CREATE_HOSTING_PROJECT = "create_hosting_project"
VERIFY_DEPLOYMENT = "verify_deployment"

BOOTSTRAP_STEPS: tuple[str, ...] = (
    ENSURE_REPO_INITIALIZED,
    CREATE_BACKING_DATABASE_PROJECT,
    CREATE_HOSTING_PROJECT,
    VERIFY_DEPLOYMENT,
)


@dataclass(frozen=True)
class StepDefinition:
    id: str
    name: str
    description: str


STEP_DEFINITIONS = MappingProxyType(
    {
        ENSURE_REPO_INITIALIZED: StepDefinition(
            id=ENSURE_REPO_INITIALIZED,
            name="Initialize Repository",
            description="Ensure the repository has a default branch with a first commit",
        ),
        CREATE_BACKING_DATABASE_PROJECT: StepDefinition(
            id=CREATE_BACKING_DATABASE_PROJECT,
            name="Create Database Project",
            description="Create the backing database project and store its keys encrypted",
        ),
        CREATE_HOSTING_PROJECT: StepDefinition(
            id=CREATE_HOSTING_PROJECT,
            name="Create Hosting Project",
            description="Create the hosting project, link the repository, and trigger a deploy",
        ),
        VERIFY_DEPLOYMENT: StepDefinition(
            id=VERIFY_DEPLOYMENT,
            name="Verify Deployment",
            description="Poll the deployment health endpoint until it responds",
        ),
    }
)


def is_known_step(step_id: str | None) -> bool:
    return step_id in STEP_DEFINITIONS


def get_step_definition(step_id: str) -> StepDefinition:
    try:
        return STEP_DEFINITIONS[step_id]
    except KeyError:
        raise KeyError(f"Unknown bootstrap step: {step_id!r}") from None


def step_index(step_id: str) -> int:
    """Position of step_id in the pipeline; raises ValueError when unknown."""
    return BOOTSTRAP_STEPS.index(step_id)
