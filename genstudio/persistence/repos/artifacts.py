from __future__ import annotations

from uuid import uuid4

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.domain.models import Artifact


async def find_by_urls(session: AsyncSession, *, principal_id: str, urls: list[str]) -> Artifact | None:
    # Match either the first-seen URL or the current URL.
    candidates = sorted({url for url in urls if url})
    if not candidates:
        return None
    result = await session.execute(
        select(Artifact)
        .where(
            Artifact.principal_id == principal_id,
            or_(Artifact.original_url.in_(candidates), Artifact.url.in_(candidates)),
        )
        .order_by(Artifact.created_at.asc(), Artifact.id.asc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_artifact(
    session: AsyncSession,
    *,
    principal_id: str,
    url: str,
    original_url: str,
    source_tag: str,
    prompt: str | None = None,
    job_id: str | None = None,
) -> Artifact:
    artifact = Artifact(
        id=uuid4().hex,
        principal_id=principal_id,
        url=url,
        original_url=original_url,
        source_tag=source_tag,
        prompt=prompt,
        job_id=job_id,
    )
    session.add(artifact)
    await session.flush()
    return artifact


async def upgrade_url(session: AsyncSession, artifact_id: str, *, expected_url: str, durable_url: str) -> bool:
    # Single in-place upgrade from a provider-hosted URL to a durable one.
    result = await session.execute(
        update(Artifact)
        .where(Artifact.id == artifact_id, Artifact.url == expected_url)
        .values(url=durable_url)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def set_hd_url(session: AsyncSession, artifact_id: str, hd_url: str) -> None:
    await session.execute(
        update(Artifact)
        .where(Artifact.id == artifact_id)
        .values(hd_url=hd_url)
        .execution_options(synchronize_session=False)
    )


async def get_artifact(session: AsyncSession, artifact_id: str, *, principal_id: str | None = None) -> Artifact | None:
    stmt = select(Artifact).where(Artifact.id == artifact_id).execution_options(populate_existing=True)
    if principal_id is not None:
        stmt = stmt.where(Artifact.principal_id == principal_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_artifacts(
    session: AsyncSession,
    *,
    principal_id: str,
    offset: int = 0,
    limit: int = 50,
) -> list[Artifact]:
    result = await session.execute(
        select(Artifact)
        .where(Artifact.principal_id == principal_id)
        .order_by(Artifact.created_at.desc(), Artifact.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def delete_artifact(session: AsyncSession, artifact_id: str) -> bool:
    result = await session.execute(delete(Artifact).where(Artifact.id == artifact_id))
    return int(result.rowcount or 0) == 1
