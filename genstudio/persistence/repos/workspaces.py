from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.domain.models import Workspace
from genstudio.domain.states import WORKSPACE_NOT_CREATED


async def create_workspace(
    session: AsyncSession,
    *,
    principal_id: str,
    name: str,
    instance_name: str,
    instance_class: str,
    image_urls: list[str],
) -> Workspace:
    workspace = Workspace(
        id=uuid4().hex,
        principal_id=principal_id,
        name=name,
        instance_name=instance_name,
        instance_class=instance_class,
        image_urls_json=list(image_urls),
        status=WORKSPACE_NOT_CREATED,
    )
    session.add(workspace)
    await session.flush()
    return workspace


async def get_workspace(
    session: AsyncSession,
    workspace_id: str,
    *,
    principal_id: str | None = None,
) -> Workspace | None:
    stmt = select(Workspace).where(Workspace.id == workspace_id).execution_options(populate_existing=True)
    if principal_id is not None:
        stmt = stmt.where(Workspace.principal_id == principal_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_workspaces(session: AsyncSession, *, principal_id: str) -> list[Workspace]:
    result = await session.execute(
        select(Workspace)
        .where(Workspace.principal_id == principal_id)
        .order_by(Workspace.created_at.desc(), Workspace.id.desc())
    )
    return list(result.scalars().all())


async def compare_and_set_status(
    session: AsyncSession,
    workspace_id: str,
    *,
    expected: str,
    target: str,
    values: dict[str, Any] | None = None,
) -> bool:
    payload = dict(values or {})
    payload["status"] = target
    result = await session.execute(
        update(Workspace)
        .where(Workspace.id == workspace_id, Workspace.status == expected)
        .values(**payload)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def set_images_zip_url(session: AsyncSession, workspace_id: str, url: str) -> None:
    await session.execute(
        update(Workspace)
        .where(Workspace.id == workspace_id)
        .values(images_zip_url=url)
        .execution_options(synchronize_session=False)
    )


async def set_training_refs(
    session: AsyncSession,
    workspace_id: str,
    *,
    training_job_id: str,
    provider_model_name: str,
) -> None:
    await session.execute(
        update(Workspace)
        .where(Workspace.id == workspace_id)
        .values(training_job_id=training_job_id, provider_model_name=provider_model_name)
        .execution_options(synchronize_session=False)
    )
