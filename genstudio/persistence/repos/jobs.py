from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.domain.models import Job
from genstudio.domain.states import (
    JOB_KIND_GENERATION,
    JOB_STARTING,
    JOB_SUCCEEDED,
    JOB_TERMINAL_STATES,
)


async def create_job(
    session: AsyncSession,
    *,
    principal_id: str,
    kind: str,
    input_json: dict[str, Any],
    provider_job_id: str | None = None,
    state: str = JOB_STARTING,
    workspace_id: str | None = None,
    parent_job_id: str | None = None,
) -> Job:
    job = Job(
        id=uuid4().hex,
        principal_id=principal_id,
        kind=kind,
        input_json=input_json,
        provider_job_id=provider_job_id,
        state=state,
        workspace_id=workspace_id,
        parent_job_id=parent_job_id,
    )
    session.add(job)
    await session.flush()
    return job


async def get_job(
    session: AsyncSession,
    job_id: str,
    *,
    principal_id: str | None = None,
    workspace_id: str | None = None,
) -> Job | None:
    # Always refresh from the database so CAS outcomes are visible to callers.
    stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
    if principal_id is not None:
        stmt = stmt.where(Job.principal_id == principal_id)
    if workspace_id is not None:
        stmt = stmt.where(Job.workspace_id == workspace_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_job_by_provider_id(session: AsyncSession, provider_job_id: str) -> Job | None:
    result = await session.execute(
        select(Job)
        .where(Job.provider_job_id == provider_job_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def compare_and_set(
    session: AsyncSession,
    job_id: str,
    *,
    column: str,
    expected: str,
    target: str,
    values: dict[str, Any] | None = None,
) -> bool:
    # Conditional write on a status column; False means another writer moved it first.
    status_column = getattr(Job, column)
    payload = dict(values or {})
    payload[column] = target
    result = await session.execute(
        update(Job)
        .where(Job.id == job_id, status_column == expected)
        .values(**payload)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def set_provider_job_id(session: AsyncSession, job_id: str, provider_job_id: str) -> bool:
    # The provider id is written at most once.
    result = await session.execute(
        update(Job)
        .where(Job.id == job_id, Job.provider_job_id.is_(None))
        .values(provider_job_id=provider_job_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def link_artifact(session: AsyncSession, job_id: str, artifact_id: str) -> bool:
    result = await session.execute(
        update(Job)
        .where(Job.id == job_id, Job.artifact_id.is_(None))
        .values(artifact_id=artifact_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def set_bookmark(session: AsyncSession, job_id: str, bookmarked: bool) -> None:
    await session.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(bookmarked=bookmarked)
        .execution_options(synchronize_session=False)
    )


async def list_workspace_jobs(
    session: AsyncSession,
    *,
    workspace_id: str,
    kind: str,
    limit: int = 50,
) -> list[Job]:
    result = await session.execute(
        select(Job)
        .where(Job.workspace_id == workspace_id, Job.kind == kind)
        .order_by(Job.created_at.desc(), Job.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_stale_jobs(
    session: AsyncSession,
    *,
    updated_before: datetime,
    limit: int,
) -> list[Job]:
    # Non-terminal jobs whose completion never arrived, plus succeeded jobs missing an artifact.
    stmt = (
        select(Job)
        .where(
            Job.provider_job_id.is_not(None),
            Job.updated_at < updated_before,
            or_(
                Job.state.not_in(sorted(JOB_TERMINAL_STATES)),
                (Job.state == JOB_SUCCEEDED)
                & Job.artifact_id.is_(None)
                & Job.output_url.is_not(None)
                & (Job.kind == JOB_KIND_GENERATION),
            ),
        )
        .order_by(Job.updated_at.asc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def set_upscale_job_id(session: AsyncSession, job_id: str, upscale_job_id: str) -> None:
    await session.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(upscale_job_id=upscale_job_id)
        .execution_options(synchronize_session=False)
    )
