"""
bootstrap_engine.state — Pure state-machine helpers over a run's step history.

Nothing here performs I/O.  Every function takes and returns immutable
records; the orchestrator persists whatever these helpers produce.

Step transitions:
    pending → running → succeeded | failed
    failed  → pending            (explicit retry only)

Run status after a step completes:
    every step succeeded       → succeeded, current_step = None
    the executed step failed   → failed,    current_step = that step
    otherwise                  → running,   current_step = next runnable step
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from bootstrap_engine.models import (
    RUNNABLE_STEP_STATUSES,
    BootstrapRun,
    ErrorClassification,
    LogEntry,
    LogLevel,
    RunStatus,
    StepRecord,
    StepStatus,
)
from bootstrap_engine.steps import BOOTSTRAP_STEPS


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def initial_step_history() -> tuple[StepRecord, ...]:
    return tuple(StepRecord(step=step_id) for step_id in BOOTSTRAP_STEPS)


def add_log_entry(
    logs: Iterable[LogEntry],
    level: LogLevel,
    message: str,
    *,
    now: str,
) -> tuple[LogEntry, ...]:
    return (*logs, LogEntry(timestamp=now, level=level, message=message))


def update_step_record(
    history: Iterable[StepRecord],
    step_id: str,
    **changes: Any,
) -> tuple[StepRecord, ...]:
    """Return a new history with step_id's record updated in place.

    A missing record is appended, so histories written before a step was
    added to the registry still converge on one record per step.
    """
    updated: list[StepRecord] = []
    found = False
    for record in history:
        if record.step == step_id:
            updated.append(dataclasses.replace(record, **changes))
            found = True
        else:
            updated.append(record)
    if not found:
        updated.append(dataclasses.replace(StepRecord(step=step_id), **changes))
    return tuple(updated)


def _status_by_step(history: Iterable[StepRecord]) -> dict[str, StepStatus]:
    return {record.step: record.status for record in history}


def next_runnable_step(history: Iterable[StepRecord]) -> str | None:
    """First pending step in registry order, else first failed step, else None."""
    statuses = _status_by_step(history)
    for step_id in BOOTSTRAP_STEPS:
        if statuses.get(step_id, StepStatus.PENDING) == StepStatus.PENDING:
            return step_id
    for step_id in BOOTSTRAP_STEPS:
        if statuses.get(step_id) == StepStatus.FAILED:
            return step_id
    return None


def all_steps_succeeded(history: Iterable[StepRecord]) -> bool:
    statuses = _status_by_step(history)
    return all(statuses.get(step_id) == StepStatus.SUCCEEDED for step_id in BOOTSTRAP_STEPS)


def blocking_step(history: Iterable[StepRecord], step_id: str) -> str | None:
    """Return the first earlier step that has not succeeded, if any."""
    statuses = _status_by_step(history)
    for earlier in BOOTSTRAP_STEPS:
        if earlier == step_id:
            return None
        if statuses.get(earlier) != StepStatus.SUCCEEDED:
            return earlier
    return None


def is_runnable(record: StepRecord) -> bool:
    return record.status in RUNNABLE_STEP_STATUSES


def mark_step_running(run: BootstrapRun, step_id: str, *, now: str) -> BootstrapRun:
    return dataclasses.replace(
        run,
        status=RunStatus.RUNNING,
        current_step=step_id,
        step_history=update_step_record(
            run.step_history,
            step_id,
            status=StepStatus.RUNNING,
            started_at=now,
            completed_at=None,
        ),
        logs=add_log_entry(run.logs, LogLevel.INFO, f"Executing step: {step_id}", now=now),
        updated_at=now,
    )


def complete_step(
    run: BootstrapRun,
    step_id: str,
    *,
    succeeded: bool,
    now: str,
    error_summary: str | None = None,
    error_details: str | None = None,
    classification: ErrorClassification | None = None,
    metadata: dict[str, Any] | None = None,
) -> BootstrapRun:
    """Record a step outcome and recompute the run's status and current_step."""
    if succeeded:
        history = update_step_record(
            run.step_history,
            step_id,
            status=StepStatus.SUCCEEDED,
            completed_at=now,
            error_summary=None,
            error_details=None,
            classification=None,
            metadata=metadata or None,
        )
        logs = add_log_entry(
            run.logs, LogLevel.INFO, f"Step {step_id} completed successfully", now=now
        )
    else:
        history = update_step_record(
            run.step_history,
            step_id,
            status=StepStatus.FAILED,
            completed_at=now,
            error_summary=error_summary or "Unknown error",
            error_details=error_details,
            classification=classification or ErrorClassification.UNKNOWN,
        )
        logs = add_log_entry(
            run.logs,
            LogLevel.ERROR,
            f"Step {step_id} failed: {error_summary or 'Unknown error'}",
            now=now,
        )

    if all_steps_succeeded(history):
        status, current_step, completed_at = RunStatus.SUCCEEDED, None, now
    elif not succeeded:
        status, current_step, completed_at = RunStatus.FAILED, step_id, None
    else:
        status, current_step, completed_at = RunStatus.RUNNING, next_runnable_step(history), None

    return dataclasses.replace(
        run,
        status=status,
        current_step=current_step,
        step_history=history,
        logs=logs,
        updated_at=now,
        completed_at=completed_at,
    )


def reset_step_for_retry(run: BootstrapRun, step_id: str, *, now: str) -> BootstrapRun:
    """Move a failed step back to pending; other steps are left untouched."""
    return dataclasses.replace(
        run,
        status=RunStatus.RUNNING,
        current_step=step_id,
        step_history=update_step_record(
            run.step_history,
            step_id,
            status=StepStatus.PENDING,
            started_at=None,
            completed_at=None,
            error_summary=None,
            error_details=None,
            classification=None,
        ),
        logs=add_log_entry(run.logs, LogLevel.INFO, f"Retrying step: {step_id}", now=now),
        updated_at=now,
    )
