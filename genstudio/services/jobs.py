from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.core.errors import (
    AlreadyCompletedError,
    AlreadyInProgressError,
    NotFoundError,
    PreconditionFailedError,
    StateConflictError,
)
from genstudio.domain.models import Job, Workspace
from genstudio.domain.states import (
    JOB_SUCCEEDED,
    JOB_TERMINAL_STATES,
    JOB_TRANSITIONS,
    UPSCALE_NO,
    UPSCALE_PENDING,
    UPSCALE_PROCESSED,
    UPSCALE_TRANSITIONS,
    WORKSPACE_TRANSITIONS,
)
from genstudio.persistence.repos import jobs as jobs_repo
from genstudio.persistence.repos import workspaces as workspaces_repo
from genstudio.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_SEED_PATTERN = re.compile(r"Using seed:\s*(\d+)")


@dataclass(frozen=True)
class TransitionResult:
    job: Job
    previous_state: str
    applied: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def extract_seed(logs: str | None) -> int | None:
    # Providers print the sampled seed into the run logs.
    if not logs:
        return None
    match = _SEED_PATTERN.search(logs)
    if match is None:
        return None
    return int(match.group(1))


def _check_edge(transitions: dict[str, frozenset[str]], expected: str, target: str) -> None:
    if target not in transitions.get(expected, frozenset()):
        raise ValueError(f"Illegal transition {expected!r} -> {target!r}")


async def transition_job(
    session: AsyncSession,
    job: Job,
    *,
    target: str,
    values: dict[str, Any] | None = None,
) -> TransitionResult:
    """Move a job from its observed state to ``target`` with a compare-and-swap.

    Terminal states are sticky: a transition requested out of one is a no-op.
    If the stored state changed since ``job`` was read, StateConflictError is raised.
    The caller owns the commit.
    """
    expected = job.state
    if expected in JOB_TERMINAL_STATES:
        logger.info(
            "job_transition_ignored job_id=%s state=%s target=%s", job.id, expected, target
        )
        return TransitionResult(job=job, previous_state=expected, applied=False)
    if target == expected:
        return TransitionResult(job=job, previous_state=expected, applied=False)
    _check_edge(JOB_TRANSITIONS, expected, target)

    payload = dict(values or {})
    if target in JOB_TERMINAL_STATES:
        payload.setdefault("completed_at", _utc_now())
    applied = await jobs_repo.compare_and_set(
        session, job.id, column="state", expected=expected, target=target, values=payload
    )
    refreshed = await jobs_repo.get_job(session, job.id)
    if not applied:
        actual = refreshed.state if refreshed is not None else None
        increment_counter("job_transition_conflicts_total")
        raise StateConflictError("job", job.id, expected, actual)
    assert refreshed is not None
    logger.info(
        "job_transitioned job_id=%s kind=%s from=%s to=%s", job.id, job.kind, expected, target
    )
    return TransitionResult(job=refreshed, previous_state=expected, applied=True)


async def transition_workspace(
    session: AsyncSession,
    workspace: Workspace,
    *,
    expected: str,
    target: str,
    values: dict[str, Any] | None = None,
) -> Workspace:
    _check_edge(WORKSPACE_TRANSITIONS, expected, target)
    applied = await workspaces_repo.compare_and_set_status(
        session, workspace.id, expected=expected, target=target, values=values
    )
    refreshed = await workspaces_repo.get_workspace(session, workspace.id)
    if not applied:
        actual = refreshed.status if refreshed is not None else None
        raise StateConflictError("workspace", workspace.id, expected, actual)
    assert refreshed is not None
    logger.info("workspace_transitioned workspace_id=%s from=%s to=%s", workspace.id, expected, target)
    return refreshed


async def reserve_upscale(session: AsyncSession, parent: Job) -> Job:
    # NO -> PENDING on the parent generation job; re-entrant calls are rejected.
    if parent.state != JOB_SUCCEEDED:
        raise PreconditionFailedError(
            f"Job {parent.id} must be succeeded before upscaling (state={parent.state})"
        )
    if not parent.output_url:
        raise PreconditionFailedError(f"Job {parent.id} has no output to upscale")
    applied = await jobs_repo.compare_and_set(
        session, parent.id, column="upscale_status", expected=UPSCALE_NO, target=UPSCALE_PENDING
    )
    refreshed = await jobs_repo.get_job(session, parent.id)
    if refreshed is None:
        raise NotFoundError(f"Job {parent.id} not found")
    if not applied:
        _raise_for_upscale_status(refreshed)
    return refreshed


def _raise_for_upscale_status(job: Job) -> None:
    if job.upscale_status == UPSCALE_PENDING:
        raise AlreadyInProgressError(f"Upscale already in progress for job {job.id}")
    if job.upscale_status == UPSCALE_PROCESSED:
        raise AlreadyCompletedError(f"Upscale already completed for job {job.id}")
    raise StateConflictError("job.upscale", job.id, UPSCALE_NO, job.upscale_status)


async def transition_upscale(
    session: AsyncSession,
    parent_job_id: str,
    *,
    expected: str,
    target: str,
    values: dict[str, Any] | None = None,
) -> bool:
    _check_edge(UPSCALE_TRANSITIONS, expected, target)
    applied = await jobs_repo.compare_and_set(
        session,
        parent_job_id,
        column="upscale_status",
        expected=expected,
        target=target,
        values=values,
    )
    if applied:
        logger.info(
            "upscale_transitioned job_id=%s from=%s to=%s", parent_job_id, expected, target
        )
    return applied
