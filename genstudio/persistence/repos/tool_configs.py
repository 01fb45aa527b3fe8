from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.domain.models import ToolConfig


async def get_tool_config(session: AsyncSession, slug: str) -> ToolConfig | None:
    result = await session.execute(select(ToolConfig).where(ToolConfig.slug == slug))
    return result.scalar_one_or_none()


async def list_tool_configs(session: AsyncSession, *, enabled_only: bool = True) -> list[ToolConfig]:
    stmt = select(ToolConfig).order_by(ToolConfig.slug.asc())
    if enabled_only:
        stmt = stmt.where(ToolConfig.enabled.is_(True))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def upsert_tool_config(
    session: AsyncSession,
    *,
    slug: str,
    model_identifier: str,
    prompt_template: str = "{{prompt}}",
    negative_prompt: str | None = None,
    default_aspect_ratio: str = "1:1",
    default_output_format: str = "jpg",
    credit_cost: int = 1,
    enabled: bool = True,
) -> ToolConfig:
    config = await get_tool_config(session, slug)
    if config is None:
        config = ToolConfig(slug=slug)
        session.add(config)
    config.model_identifier = model_identifier
    config.prompt_template = prompt_template
    config.negative_prompt = negative_prompt
    config.default_aspect_ratio = default_aspect_ratio
    config.default_output_format = default_output_format
    config.credit_cost = credit_cost
    config.enabled = enabled
    await session.flush()
    return config
